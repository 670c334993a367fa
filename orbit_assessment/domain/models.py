from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Literal

AssessmentStatus = Literal["in_progress", "finalized"]

IN_PROGRESS: AssessmentStatus = "in_progress"
FINALIZED: AssessmentStatus = "finalized"


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every stored datetime takes."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True, slots=True)
class QuestionResponse:
    question_index: int
    answer: bool | None


@dataclass(frozen=True, slots=True)
class EvidenceResponse:
    evidence_index: int
    provided: bool
    notes: str = ""


@dataclass(slots=True)
class CapabilityAssessment:
    id: str
    capability_area_id: str
    capability_area_name: str
    capability_domain_id: str
    capability_domain_name: str
    status: AssessmentStatus
    created_at: datetime
    updated_at: datetime
    tags: tuple[str, ...] = ()
    finalized_at: datetime | None = None
    overall_score: float | None = None

    @property
    def is_finalized(self) -> bool:
        return self.status == FINALIZED

    def with_changes(self, **changes: Any) -> CapabilityAssessment:
        return replace(self, **changes)


@dataclass(slots=True)
class Rating:
    id: str
    assessment_id: str
    dimension_id: str
    aspect_id: str
    current_level: int  # -1 = N/A, 0 = not rated, 1..5
    updated_at: datetime
    sub_dimension_id: str | None = None
    target_level: int | None = None
    previous_level: int | None = None
    question_responses: tuple[QuestionResponse, ...] = ()
    evidence_responses: tuple[EvidenceResponse, ...] = ()
    notes: str = ""
    barriers: str = ""
    plans: str = ""
    carried_forward: bool = False
    attachment_ids: tuple[str, ...] = ()

    @property
    def key(self) -> tuple[str, str, str | None, str]:
        return (self.assessment_id, self.dimension_id, self.sub_dimension_id, self.aspect_id)

    def to_historical(self) -> HistoricalRating:
        return HistoricalRating(
            dimension_id=self.dimension_id,
            sub_dimension_id=self.sub_dimension_id,
            aspect_id=self.aspect_id,
            current_level=self.current_level,
            target_level=self.target_level,
            previous_level=self.previous_level,
            question_responses=self.question_responses,
            evidence_responses=self.evidence_responses,
            notes=self.notes,
            barriers=self.barriers,
            plans=self.plans,
            carried_forward=self.carried_forward,
            attachment_ids=self.attachment_ids,
        )


@dataclass(frozen=True, slots=True)
class HistoricalRating:
    """Frozen copy of a rating's content, detached from any assessment."""

    dimension_id: str
    aspect_id: str
    current_level: int
    sub_dimension_id: str | None = None
    target_level: int | None = None
    previous_level: int | None = None
    question_responses: tuple[QuestionResponse, ...] = ()
    evidence_responses: tuple[EvidenceResponse, ...] = ()
    notes: str = ""
    barriers: str = ""
    plans: str = ""
    carried_forward: bool = False
    attachment_ids: tuple[str, ...] = ()

    def to_rating(self, rating_id: str, assessment_id: str, updated_at: datetime) -> Rating:
        return Rating(
            id=rating_id,
            assessment_id=assessment_id,
            dimension_id=self.dimension_id,
            sub_dimension_id=self.sub_dimension_id,
            aspect_id=self.aspect_id,
            current_level=self.current_level,
            target_level=self.target_level,
            previous_level=self.previous_level,
            question_responses=self.question_responses,
            evidence_responses=self.evidence_responses,
            notes=self.notes,
            barriers=self.barriers,
            plans=self.plans,
            carried_forward=self.carried_forward,
            attachment_ids=self.attachment_ids,
            updated_at=updated_at,
        )


@dataclass(slots=True)
class AssessmentHistory:
    id: str
    capability_assessment_id: str
    capability_area_id: str
    snapshot_date: datetime
    overall_score: float | None
    tags: tuple[str, ...] = ()
    dimension_scores: dict[str, float] = field(default_factory=dict)
    ratings: tuple[HistoricalRating, ...] = ()
    fingerprint: str | None = None


@dataclass(slots=True)
class Tag:
    id: str
    name: str
    usage_count: int
    last_used: datetime
