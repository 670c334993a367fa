"""
SQLAlchemy implementation of the ``RatingStore`` seam, plus the mappers
between ORM rows and domain entities.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from ..domain.merge import history_fingerprint
from ..domain.models import (
    AssessmentHistory,
    CapabilityAssessment,
    EvidenceResponse,
    HistoricalRating,
    QuestionResponse,
    Rating,
    Tag,
    utcnow,
)
from .exceptions import BusinessLogicError
from .models import AssessmentHistoryORM, CapabilityAssessmentORM, RatingORM, TagORM
from .repositories import AssessmentRepo, HistoryRepo, RatingRepo, TagRepo
from .uow import UnitOfWork

# -------- ORM -> domain --------


def assessment_from_orm(row: CapabilityAssessmentORM) -> CapabilityAssessment:
    return CapabilityAssessment(
        id=row.id,
        capability_area_id=row.capability_area_id,
        capability_area_name=row.capability_area_name,
        capability_domain_id=row.capability_domain_id,
        capability_domain_name=row.capability_domain_name,
        status=row.status,  # type: ignore[arg-type]
        created_at=row.created_at,
        updated_at=row.updated_at,
        tags=tuple(row.tags or ()),
        finalized_at=row.finalized_at,
        overall_score=row.overall_score,
    )


def _questions(raw: list[dict[str, Any]] | None) -> tuple[QuestionResponse, ...]:
    return tuple(QuestionResponse(q["question_index"], q.get("answer")) for q in raw or ())


def _evidence(raw: list[dict[str, Any]] | None) -> tuple[EvidenceResponse, ...]:
    return tuple(
        EvidenceResponse(e["evidence_index"], bool(e.get("provided")), e.get("notes") or "")
        for e in raw or ()
    )


def rating_from_orm(row: RatingORM) -> Rating:
    return Rating(
        id=row.id,
        assessment_id=row.assessment_id,
        dimension_id=row.dimension_id,
        sub_dimension_id=row.sub_dimension_id,
        aspect_id=row.aspect_id,
        current_level=row.current_level,
        target_level=row.target_level,
        previous_level=row.previous_level,
        question_responses=_questions(row.question_responses),
        evidence_responses=_evidence(row.evidence_responses),
        notes=row.notes or "",
        barriers=row.barriers or "",
        plans=row.plans or "",
        carried_forward=bool(row.carried_forward),
        attachment_ids=tuple(row.attachment_ids or ()),
        updated_at=row.updated_at,
    )


def historical_rating_to_json(r: HistoricalRating) -> dict[str, Any]:
    data = asdict(r)
    data["question_responses"] = [asdict(q) for q in r.question_responses]
    data["evidence_responses"] = [asdict(e) for e in r.evidence_responses]
    data["attachment_ids"] = list(r.attachment_ids)
    return data


def historical_rating_from_json(raw: dict[str, Any]) -> HistoricalRating:
    return HistoricalRating(
        dimension_id=raw["dimension_id"],
        sub_dimension_id=raw.get("sub_dimension_id"),
        aspect_id=raw["aspect_id"],
        current_level=int(raw["current_level"]),
        target_level=raw.get("target_level"),
        previous_level=raw.get("previous_level"),
        question_responses=_questions(raw.get("question_responses")),
        evidence_responses=_evidence(raw.get("evidence_responses")),
        notes=raw.get("notes") or "",
        barriers=raw.get("barriers") or "",
        plans=raw.get("plans") or "",
        carried_forward=bool(raw.get("carried_forward")),
        attachment_ids=tuple(raw.get("attachment_ids") or ()),
    )


def history_from_orm(row: AssessmentHistoryORM) -> AssessmentHistory:
    return AssessmentHistory(
        id=row.id,
        capability_assessment_id=row.capability_assessment_id,
        capability_area_id=row.capability_area_id,
        snapshot_date=row.snapshot_date,
        overall_score=row.overall_score,
        tags=tuple(row.tags or ()),
        dimension_scores=dict(row.dimension_scores or {}),
        ratings=tuple(historical_rating_from_json(r) for r in row.ratings or ()),
        fingerprint=row.fingerprint,
    )


def tag_from_orm(row: TagORM) -> Tag:
    return Tag(id=row.id, name=row.name, usage_count=row.usage_count, last_used=row.last_used)


# -------- domain -> ORM --------


def rating_to_orm(r: Rating) -> RatingORM:
    return RatingORM(
        id=r.id,
        assessment_id=r.assessment_id,
        dimension_id=r.dimension_id,
        sub_dimension_id=r.sub_dimension_id,
        aspect_id=r.aspect_id,
        current_level=r.current_level,
        target_level=r.target_level,
        previous_level=r.previous_level,
        question_responses=[asdict(q) for q in r.question_responses],
        evidence_responses=[asdict(e) for e in r.evidence_responses],
        notes=r.notes,
        barriers=r.barriers,
        plans=r.plans,
        carried_forward=r.carried_forward,
        attachment_ids=list(r.attachment_ids),
        updated_at=r.updated_at,
    )


def history_to_orm(h: AssessmentHistory) -> AssessmentHistoryORM:
    return AssessmentHistoryORM(
        id=h.id,
        capability_assessment_id=h.capability_assessment_id,
        capability_area_id=h.capability_area_id,
        snapshot_date=h.snapshot_date,
        tags=list(h.tags),
        overall_score=h.overall_score,
        dimension_scores=dict(h.dimension_scores),
        ratings=[historical_rating_to_json(r) for r in h.ratings],
        fingerprint=history_fingerprint(h),
    )


class SqlRatingStore:
    """``RatingStore`` over one SQLAlchemy session; the caller owns the transaction."""

    def __init__(self, session: Session):
        self.s = session
        self.assessments = AssessmentRepo(session)
        self.ratings = RatingRepo(session)
        self.history = HistoryRepo(session)
        self.tags = TagRepo(session)

    def get_assessment(self, capability_area_id: str) -> CapabilityAssessment | None:
        row = self.assessments.get_current(capability_area_id)
        return assessment_from_orm(row) if row else None

    def get_ratings(self, assessment_id: str) -> list[Rating]:
        return [rating_from_orm(r) for r in self.ratings.list_for_assessment(assessment_id)]

    def list_history(self, capability_area_id: str) -> list[AssessmentHistory]:
        return [history_from_orm(h) for h in self.history.list_for_area(capability_area_id)]

    def get_history(self, history_id: str) -> AssessmentHistory | None:
        row = self.history.get(history_id)
        return history_from_orm(row) if row else None

    def put_assessment(self, assessment: CapabilityAssessment, ratings: Sequence[Rating]) -> None:
        self.assessments.create(
            CapabilityAssessmentORM(
                id=assessment.id,
                capability_area_id=assessment.capability_area_id,
                capability_area_name=assessment.capability_area_name,
                capability_domain_id=assessment.capability_domain_id,
                capability_domain_name=assessment.capability_domain_name,
                status=assessment.status,
                tags=list(assessment.tags),
                overall_score=assessment.overall_score,
                is_current=True,
                created_at=assessment.created_at,
                updated_at=assessment.updated_at,
                finalized_at=assessment.finalized_at,
            )
        )
        for r in ratings:
            self.ratings.create(rating_to_orm(r))

    def demote_assessment(
        self, assessment_id: str, expected_updated_at: datetime | None = None
    ) -> None:
        if not self.assessments.demote(assessment_id, utcnow(), expected_updated_at):
            raise BusinessLogicError(
                f"Assessment {assessment_id} changed since it was read",
                rule="concurrent_modification",
            )

    def put_history(self, history: AssessmentHistory) -> None:
        self.history.create(history_to_orm(history))

    def get_tag(self, name: str) -> Tag | None:
        row = self.tags.get_by_name(name)
        return tag_from_orm(row) if row else None

    def put_tag(self, tag: Tag) -> None:
        self.tags.create(
            TagORM(id=tag.id, name=tag.name, usage_count=tag.usage_count, last_used=tag.last_used)
        )


def sql_transaction_factory(SessionLocal: sessionmaker):
    """Build the per-area transaction factory the merge engine expects."""
    uow = UnitOfWork(SessionLocal)

    @contextmanager
    def transaction() -> Iterator[SqlRatingStore]:
        with uow.begin() as s:
            yield SqlRatingStore(s)

    return transaction
