"""
Application API layer for ORBIT assessments.

High-level operations over a SQLAlchemy session: the assessment lifecycle,
score and history queries, tag bookkeeping, and bundle export/import. Each
function validates its input, logs with context, re-raises application
errors unchanged and wraps anything unexpected in ``OrbitAssessmentError``.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Literal, NoReturn

from sqlalchemy.orm import Session, sessionmaker

from ..domain.catalog import get_capability_model, get_maturity_model
from ..domain.merge import (
    BundleContents,
    ImportResult,
    MergeEngine,
    ProgressCallback,
    area_locks,
    build_snapshot,
    derive_id,
)
from ..domain.models import (
    FINALIZED,
    IN_PROGRESS,
    AssessmentHistory,
    CapabilityAssessment,
    Rating,
    Tag,
    utcnow,
)
from ..domain.schemas import (
    AssessmentStartInput,
    ExportBundle,
    RatingInput,
    TagRenameInput,
    TagUpdateInput,
    bundle_from_domain,
    bundle_to_domain,
    validate_input,
)
from ..domain.services import AssessmentScore, HistoryComparison, ScoringService
from ..infrastructure.config import get_settings
from ..infrastructure.exceptions import (
    AssessmentNotFoundError,
    BusinessLogicError,
    CapabilityAreaNotFoundError,
    HistoryNotFoundError,
    IntegrityError,
    OrbitAssessmentError,
    UnknownAspectError,
    ValidationError,
    create_user_friendly_error_message,
    log_error_details,
)
from ..infrastructure.logging import get_logger, log_operation, set_context
from ..infrastructure.memory_store import InMemoryRatingStore
from ..infrastructure.models import CapabilityAssessmentORM, TagORM
from ..infrastructure.repositories import AssessmentRepo, HistoryRepo, RatingRepo, TagRepo
from ..infrastructure.sql_store import (
    SqlRatingStore,
    assessment_from_orm,
    history_from_orm,
    rating_from_orm,
    rating_to_orm,
    sql_transaction_factory,
    tag_from_orm,
)

logger = get_logger(__name__)


def _raise_wrapped(e: Exception, message: str, context: dict[str, Any]) -> NoReturn:
    """Log structured details; re-raise application errors, wrap everything else."""
    error_details = log_error_details(e, context)
    logger.error(message, extra={"error_details": error_details})
    if isinstance(e, OrbitAssessmentError):
        raise e
    raise OrbitAssessmentError(
        f"{message}: {str(e)}",
        details=error_details,
        user_message=create_user_friendly_error_message(e),
    ) from e


def _validated(schema, data: dict[str, Any], field: str) -> dict[str, Any]:
    result = validate_input(schema, data)
    if not result.success:
        error_msg = "; ".join(f"{e.field}: {e.message}" for e in result.errors)
        logger.warning(f"Validation failed for {field}: {error_msg}")
        raise ValidationError(field, error_msg)
    return result.data or {}


def _require_assessment(session: Session, assessment_id: str) -> CapabilityAssessmentORM:
    row = AssessmentRepo(session).get(assessment_id)
    if row is None:
        raise AssessmentNotFoundError(assessment_id)
    return row


def _require_editable(row: CapabilityAssessmentORM) -> None:
    if not row.is_current:
        raise BusinessLogicError(
            f"Assessment {row.id} has been superseded and is read-only", rule="superseded_read_only"
        )
    if row.status == FINALIZED:
        raise BusinessLogicError(
            f"Assessment {row.id} is finalized; reopen it before editing", rule="finalized_read_only"
        )


@contextmanager
def _area_write(
    session: Session, row: CapabilityAssessmentORM, status: str | None = IN_PROGRESS
) -> Iterator[datetime]:
    """
    Hold the area lock and confirm against the database that ``row`` is still
    current (and in ``status``) before writing. Yields the write timestamp.

    A concurrent import may have demoted the row after this session read it;
    the conditional UPDATE sees that and refuses.
    """
    with area_locks.get(row.capability_area_id):
        now = utcnow()
        if not AssessmentRepo(session).touch_current(row.id, now, status):
            raise BusinessLogicError(
                f"Assessment {row.id} was superseded or changed by another session",
                rule="superseded_read_only",
            )
        yield now


def _ensure_tags(session: Session, names: list[str]) -> None:
    repo = TagRepo(session)
    for name in names:
        if repo.get_by_name(name) is None:
            repo.create(TagORM(id=str(uuid.uuid4()), name=name, usage_count=0, last_used=utcnow()))


# ---------------------------------------------------------------------------
# Assessment lifecycle
# ---------------------------------------------------------------------------


@log_operation("start_assessment")
def start_assessment(
    session: Session, capability_area_id: str, tags: list[str] | None = None
) -> CapabilityAssessment:
    """
    Begin assessing a capability area.

    Raises:
        CapabilityAreaNotFoundError: If the area is not in the reference model
        BusinessLogicError: If the area already has a current assessment

    Example:
        >>> assessment = start_assessment(session, "provider-enrollment", tags=["baseline"])
        >>> assessment.status
        'in_progress'
    """
    data = _validated(
        AssessmentStartInput,
        {"capability_area_id": capability_area_id, "tags": tags or []},
        "assessment_data",
    )
    capabilities = get_capability_model()
    area = capabilities.area(data["capability_area_id"])
    if area is None:
        raise CapabilityAreaNotFoundError(capability_area_id)
    domain = capabilities.domain(area.domain_id)

    try:
        set_context(area_id=area.id)
        repo = AssessmentRepo(session)
        taken = BusinessLogicError(
            f"Capability area '{area.id}' already has a current assessment",
            rule="one_current_assessment_per_area",
        )
        with area_locks.get(area.id):
            if repo.get_current(area.id) is not None:
                raise taken

            now = utcnow()
            try:
                row = repo.create(
                    CapabilityAssessmentORM(
                        id=str(uuid.uuid4()),
                        capability_area_id=area.id,
                        capability_area_name=area.name,
                        capability_domain_id=area.domain_id,
                        capability_domain_name=domain.name if domain else area.domain_id,
                        status=IN_PROGRESS,
                        tags=data["tags"],
                        is_current=True,
                        created_at=now,
                        updated_at=now,
                    )
                )
            except IntegrityError as e:
                # another session committed a current assessment after our read
                raise taken from e
        _ensure_tags(session, data["tags"])
        logger.info(f"Started assessment {row.id} for area {area.id}")
        return assessment_from_orm(row)

    except Exception as e:
        _raise_wrapped(e, "Failed to start assessment", {"capability_area_id": capability_area_id})


@log_operation("record_rating")
def record_rating(
    session: Session,
    assessment_id: str,
    aspect_id: str,
    current_level: int,
    target_level: int | None = None,
    notes: str = "",
    barriers: str = "",
    plans: str = "",
    question_responses: list[dict[str, Any]] | None = None,
    evidence_responses: list[dict[str, Any]] | None = None,
) -> Rating:
    """
    Record or update the rating of one aspect.

    The dimension and sub-dimension come from the maturity model, and the
    assessment's ``overall_score`` is recomputed after the change.

    Raises:
        ValidationError: If the input is invalid
        UnknownAspectError: If the aspect is not in the maturity model
        AssessmentNotFoundError: If the assessment does not exist
        BusinessLogicError: If the assessment is finalized or superseded

    Example:
        >>> rating = record_rating(session, assessment.id, "data-quality", 3, target_level=4)
    """
    data = _validated(
        RatingInput,
        {
            "assessment_id": assessment_id,
            "aspect_id": aspect_id,
            "current_level": current_level,
            "target_level": target_level,
            "notes": notes,
            "barriers": barriers,
            "plans": plans,
            "question_responses": question_responses or [],
            "evidence_responses": evidence_responses or [],
        },
        "rating_data",
    )
    location = get_maturity_model().locate(data["aspect_id"])
    if location is None:
        raise UnknownAspectError(data["aspect_id"])

    try:
        set_context(assessment_id=assessment_id)
        assessment = _require_assessment(session, assessment_id)
        _require_editable(assessment)

        with _area_write(session, assessment) as now:
            rating_repo = RatingRepo(session)
            existing = rating_repo.get_for_aspect(assessment_id, data["aspect_id"])
            previous_level = existing.previous_level if existing else None
            carried_forward = False
            if existing is not None:
                if existing.current_level != data["current_level"]:
                    previous_level = existing.current_level
                else:
                    carried_forward = existing.carried_forward

            row = rating_repo.upsert(
                rating_id=str(uuid.uuid4()),
                assessment_id=assessment_id,
                dimension_id=location.dimension_id,
                sub_dimension_id=location.sub_dimension_id,
                aspect_id=data["aspect_id"],
                current_level=data["current_level"],
                target_level=data["target_level"],
                previous_level=previous_level,
                carried_forward=carried_forward,
                question_responses=[
                    {"question_index": q["question_index"], "answer": q["answer"]}
                    for q in data["question_responses"]
                ],
                evidence_responses=[
                    {"evidence_index": e["evidence_index"], "provided": e["provided"], "notes": e["notes"]}
                    for e in data["evidence_responses"]
                ],
                notes=data["notes"],
                barriers=data["barriers"],
                plans=data["plans"],
                updated_at=now,
            )

            ratings = [rating_from_orm(r) for r in rating_repo.list_for_assessment(assessment_id)]
            score = ScoringService().score_assessment(assessment_id, ratings)
            AssessmentRepo(session).update(assessment, updated_at=now, overall_score=score.overall_score)

        logger.info(
            f"Recorded level {data['current_level']} for aspect {data['aspect_id']} "
            f"in assessment {assessment_id}"
        )
        return rating_from_orm(row)

    except Exception as e:
        _raise_wrapped(
            e,
            "Failed to record rating",
            {"assessment_id": assessment_id, "aspect_id": aspect_id, "current_level": current_level},
        )


@log_operation("finalize_assessment")
def finalize_assessment(session: Session, assessment_id: str) -> AssessmentHistory:
    """
    Mark an assessment finalized and freeze it into history.

    Re-finalizing content unchanged since the assessment's latest snapshot
    returns that snapshot instead of writing a duplicate.

    Returns:
        The history entry holding the frozen ratings
    """
    try:
        set_context(assessment_id=assessment_id)
        row = _require_assessment(session, assessment_id)
        _require_editable(row)

        with _area_write(session, row) as now:
            scoring = ScoringService()
            ratings = [rating_from_orm(r) for r in RatingRepo(session).list_for_assessment(assessment_id)]
            score = scoring.score_assessment(assessment_id, ratings)

            AssessmentRepo(session).update(
                row,
                status=FINALIZED,
                finalized_at=now,
                updated_at=now,
                overall_score=score.overall_score,
            )
            record_tag_usage(session, list(row.tags or []), when=now)

            # a revisited earlier state is a new history entry, not a clash with the old one
            snapshot = build_snapshot(
                assessment_from_orm(row),
                ratings,
                scoring,
                snapshot_date=now,
                history_id=derive_id("history", assessment_id, now.isoformat()),
            )
            latest = HistoryRepo(session).latest_for_assessment(assessment_id)
            if latest is not None and latest.fingerprint == snapshot.fingerprint:
                logger.info(f"Assessment {assessment_id} unchanged since snapshot {latest.id}")
                return history_from_orm(latest)

            SqlRatingStore(session).put_history(snapshot)
        logger.info(
            f"Finalized assessment {assessment_id} with score {score.overall_score} "
            f"({score.completion_percentage}% complete)"
        )
        return snapshot

    except Exception as e:
        _raise_wrapped(e, "Failed to finalize assessment", {"assessment_id": assessment_id})


@log_operation("reopen_assessment")
def reopen_assessment(session: Session, assessment_id: str) -> CapabilityAssessment:
    """
    Start an edit session on a finalized assessment.

    The assessment returns to ``in_progress`` and every rated aspect is
    carried forward: its level is kept as ``previous_level`` and flagged
    ``carried_forward`` until it is changed. The finalize snapshot stays in
    history, so ``revert_edit`` can restore it.
    """
    try:
        set_context(assessment_id=assessment_id)
        row = _require_assessment(session, assessment_id)
        if not row.is_current:
            raise BusinessLogicError(
                f"Assessment {assessment_id} has been superseded", rule="superseded_read_only"
            )
        if row.status != FINALIZED:
            raise BusinessLogicError(
                f"Assessment {assessment_id} is not finalized", rule="reopen_requires_finalized"
            )

        with _area_write(session, row, status=FINALIZED) as now:
            rating_repo = RatingRepo(session)
            carried = 0
            for rating in rating_repo.list_for_assessment(assessment_id):
                if rating.current_level != 0:
                    rating_repo.update(
                        rating, previous_level=rating.current_level, carried_forward=True, updated_at=now
                    )
                    carried += 1
            AssessmentRepo(session).update(row, status=IN_PROGRESS, finalized_at=None, updated_at=now)
        logger.info(f"Reopened assessment {assessment_id}; carried forward {carried} ratings")
        return assessment_from_orm(row)

    except Exception as e:
        _raise_wrapped(e, "Failed to reopen assessment", {"assessment_id": assessment_id})


@log_operation("revert_edit")
def revert_edit(session: Session, assessment_id: str) -> CapabilityAssessment:
    """
    Abandon an edit session and restore the assessment's latest snapshot.

    The edited ratings are replaced by new rating rows copied from the
    snapshot, and tags, score and ``finalized_at`` come back from it. The
    assessment is ``finalized`` again. The snapshot itself stays in history.

    Raises:
        BusinessLogicError: If the assessment is not in progress, is
            superseded, or has never been snapshotted
    """
    try:
        set_context(assessment_id=assessment_id)
        row = _require_assessment(session, assessment_id)
        _require_editable(row)
        latest = HistoryRepo(session).latest_for_assessment(assessment_id)
        if latest is None:
            raise BusinessLogicError(
                f"Assessment {assessment_id} has no snapshot to revert to",
                rule="revert_requires_snapshot",
            )
        snapshot = history_from_orm(latest)

        with _area_write(session, row) as now:
            rating_repo = RatingRepo(session)
            for rating in rating_repo.list_for_assessment(assessment_id):
                rating_repo.delete(rating)
            for historical in snapshot.ratings:
                restored = historical.to_rating(str(uuid.uuid4()), assessment_id, now)
                rating_repo.create(rating_to_orm(replace(restored, carried_forward=False)))
            AssessmentRepo(session).update(
                row,
                status=FINALIZED,
                tags=list(snapshot.tags),
                overall_score=snapshot.overall_score,
                finalized_at=snapshot.snapshot_date,
                updated_at=now,
            )
        logger.info(f"Reverted assessment {assessment_id} to snapshot {snapshot.id}")
        return assessment_from_orm(row)

    except Exception as e:
        _raise_wrapped(e, "Failed to revert edit", {"assessment_id": assessment_id})


@log_operation("update_tags")
def update_tags(session: Session, assessment_id: str, tags: list[str]) -> CapabilityAssessment:
    data = _validated(TagUpdateInput, {"tags": tags}, "tags")
    try:
        set_context(assessment_id=assessment_id)
        row = _require_assessment(session, assessment_id)
        if not row.is_current:
            raise BusinessLogicError(
                f"Assessment {assessment_id} has been superseded", rule="superseded_read_only"
            )
        with _area_write(session, row, status=None) as now:
            AssessmentRepo(session).update(row, tags=data["tags"], updated_at=now)
            _ensure_tags(session, data["tags"])
        return assessment_from_orm(row)

    except Exception as e:
        _raise_wrapped(e, "Failed to update tags", {"assessment_id": assessment_id, "tags": tags})


@log_operation("get_assessment")
def get_assessment(session: Session, assessment_id: str) -> CapabilityAssessment:
    return assessment_from_orm(_require_assessment(session, assessment_id))


@log_operation("get_current_assessment")
def get_current_assessment(session: Session, capability_area_id: str) -> CapabilityAssessment | None:
    row = AssessmentRepo(session).get_current(capability_area_id)
    return assessment_from_orm(row) if row else None


@log_operation("get_ratings")
def get_ratings(session: Session, assessment_id: str) -> list[Rating]:
    _require_assessment(session, assessment_id)
    return [rating_from_orm(r) for r in RatingRepo(session).list_for_assessment(assessment_id)]


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------


@log_operation("get_assessment_score")
def get_assessment_score(session: Session, assessment_id: str) -> AssessmentScore:
    """Full score tree for one assessment, recomputed from its ratings."""
    try:
        _require_assessment(session, assessment_id)
        ratings = [rating_from_orm(r) for r in RatingRepo(session).list_for_assessment(assessment_id)]
        return ScoringService().score_assessment(assessment_id, ratings)
    except Exception as e:
        _raise_wrapped(e, "Failed to score assessment", {"assessment_id": assessment_id})


def _current_assessments(session: Session, domain_id: str | None = None) -> list[CapabilityAssessment]:
    return [assessment_from_orm(r) for r in AssessmentRepo(session).list_current(domain_id)]


@log_operation("get_domain_score")
def get_domain_score(session: Session, domain_id: str) -> float | None:
    """Mean score of the domain's finalized assessments; ``None`` when none are finalized."""
    return ScoringService.domain_score(_current_assessments(session, domain_id), domain_id)


@log_operation("get_overall_score")
def get_overall_score(session: Session) -> float | None:
    return ScoringService.portfolio_score(_current_assessments(session))


@log_operation("get_dashboard_summary")
def get_dashboard_summary(session: Session) -> dict[str, Any]:
    """
    Portfolio overview: status counts, per-domain scores and per-area completion.

    Example:
        >>> summary = get_dashboard_summary(session)
        >>> summary["status_counts"]["finalized"]
        3
    """
    try:
        capabilities = get_capability_model()
        scoring = ScoringService()
        assessments = _current_assessments(session)
        by_domain = ScoringService.group_by_domain(assessments)
        rating_repo = RatingRepo(session)

        areas = []
        for a in assessments:
            ratings = [rating_from_orm(r) for r in rating_repo.list_for_assessment(a.id)]
            score = scoring.score_assessment(a.id, ratings)
            areas.append(
                {
                    "assessment_id": a.id,
                    "capability_area_id": a.capability_area_id,
                    "capability_area_name": a.capability_area_name,
                    "capability_domain_id": a.capability_domain_id,
                    "status": a.status,
                    "overall_score": score.overall_score,
                    "completion_percentage": score.completion_percentage,
                    "tags": list(a.tags),
                }
            )

        domains = []
        for domain in capabilities.domains:
            in_domain = by_domain.get(domain.id, [])
            domains.append(
                {
                    "domain_id": domain.id,
                    "domain_name": domain.name,
                    "score": ScoringService.domain_score(in_domain, domain.id),
                    "status_counts": ScoringService.status_counts(in_domain, len(domain.areas)),
                    "tags": ScoringService.domain_tags(in_domain, domain.id),
                }
            )

        return {
            "overall_score": ScoringService.portfolio_score(assessments),
            "status_counts": ScoringService.status_counts(assessments, capabilities.total_area_count()),
            "tags_in_use": ScoringService.tags_in_use(assessments),
            "domains": domains,
            "areas": areas,
        }

    except Exception as e:
        _raise_wrapped(e, "Failed to build dashboard summary", {})


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


@log_operation("list_history_for_area")
def list_history_for_area(session: Session, capability_area_id: str) -> list[AssessmentHistory]:
    """Newest first."""
    return [history_from_orm(h) for h in HistoryRepo(session).list_for_area(capability_area_id)]


@log_operation("get_score_trend")
def get_score_trend(session: Session, capability_area_id: str) -> list[tuple[datetime, float | None]]:
    return ScoringService.score_trend(list_history_for_area(session, capability_area_id))


@log_operation("compare_history_entries")
def compare_history_entries(session: Session, older_id: str, newer_id: str) -> HistoryComparison:
    repo = HistoryRepo(session)
    older, newer = repo.get(older_id), repo.get(newer_id)
    if older is None:
        raise HistoryNotFoundError(older_id)
    if newer is None:
        raise HistoryNotFoundError(newer_id)
    return ScoringService.compare_history(history_from_orm(older), history_from_orm(newer))


@log_operation("delete_history_entry")
def delete_history_entry(session: Session, history_id: str) -> None:
    """Explicit user action; nothing else removes history."""
    try:
        repo = HistoryRepo(session)
        row = repo.get(history_id)
        if row is None:
            raise HistoryNotFoundError(history_id)
        repo.delete(row)
        logger.info(f"Deleted history entry {history_id} for area {row.capability_area_id}")
    except Exception as e:
        _raise_wrapped(e, "Failed to delete history entry", {"history_id": history_id})


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------


@log_operation("record_tag_usage")
def record_tag_usage(session: Session, names: list[str], when: datetime | None = None) -> None:
    repo = TagRepo(session)
    when = when or utcnow()
    for name in names:
        row = repo.get_by_name(name)
        if row is None:
            repo.create(TagORM(id=str(uuid.uuid4()), name=name, usage_count=1, last_used=when))
        else:
            repo.record_usage(row, when)


@log_operation("tag_suggestions")
def tag_suggestions(session: Session, query: str, limit: int = 10) -> list[Tag]:
    query = query.strip()
    repo = TagRepo(session)
    rows = repo.search(query, limit) if query else repo.popular(limit)
    return [tag_from_orm(r) for r in rows]


@log_operation("popular_tags")
def popular_tags(session: Session, limit: int = 10) -> list[Tag]:
    return [tag_from_orm(r) for r in TagRepo(session).popular(limit)]


@log_operation("recent_tags")
def recent_tags(session: Session, limit: int = 10) -> list[Tag]:
    return [tag_from_orm(r) for r in TagRepo(session).recent(limit)]


@log_operation("rename_tag")
def rename_tag(session: Session, old_name: str, new_name: str) -> int:
    """
    Rename a tag everywhere it is used on current assessments.

    Returns:
        Number of assessments whose tags changed
    """
    data = _validated(TagRenameInput, {"old_name": old_name, "new_name": new_name}, "tag_name")
    try:
        tag_repo = TagRepo(session)
        tag = tag_repo.get_by_name(data["old_name"])
        if tag is None:
            raise ValidationError("old_name", f"Tag '{old_name}' does not exist", old_name)
        clash = tag_repo.get_by_name(data["new_name"])
        if clash is not None and clash.id != tag.id:
            raise BusinessLogicError(f"Tag '{new_name}' already exists", rule="unique_tag_name")
        tag_repo.update(tag, name=data["new_name"])

        assessment_repo = AssessmentRepo(session)
        changed = 0
        for row in assessment_repo.list_current():
            if data["old_name"] in (row.tags or []):
                new_tags = [data["new_name"] if t == data["old_name"] else t for t in row.tags]
                assessment_repo.update(row, tags=new_tags)
                changed += 1
        logger.info(f"Renamed tag '{old_name}' to '{new_name}' on {changed} assessments")
        return changed

    except Exception as e:
        _raise_wrapped(e, "Failed to rename tag", {"old_name": old_name, "new_name": new_name})


@log_operation("cleanup_unused_tags")
def cleanup_unused_tags(session: Session) -> int:
    """Remove tags that are neither used by a current assessment nor ever counted."""
    repo = TagRepo(session)
    in_use = {t for row in AssessmentRepo(session).list_current() for t in row.tags or []}
    removed = 0
    for tag in repo.unused():
        if tag.name not in in_use:
            repo.delete(tag)
            removed += 1
    logger.info(f"Removed {removed} unused tags")
    return removed


# ---------------------------------------------------------------------------
# Bundles
# ---------------------------------------------------------------------------


def _collect_contents(
    session: Session,
    scope: Literal["full", "domain", "area"],
    scope_id: str | None,
    include_history: bool,
) -> BundleContents:
    assessment_repo = AssessmentRepo(session)
    rating_repo = RatingRepo(session)
    history_repo = HistoryRepo(session)

    if scope == "area":
        rows = [r for r in [assessment_repo.get_current(scope_id or "")] if r is not None]
    else:
        rows = assessment_repo.list_current(scope_id if scope == "domain" else None)

    assessments = [assessment_from_orm(r) for r in rows]
    ratings = {
        a.id: [rating_from_orm(r) for r in rating_repo.list_for_assessment(a.id)] for a in assessments
    }

    history: list[AssessmentHistory] = []
    if include_history:
        capabilities = get_capability_model()
        if scope == "area":
            area_ids = [scope_id or ""]
        elif scope == "domain":
            area_ids = [a.id for a in capabilities.areas_for_domain(scope_id or "")]
        else:
            area_ids = [a.id for a in capabilities.all_areas()]
        for area_id in area_ids:
            history.extend(history_from_orm(h) for h in history_repo.list_for_area(area_id))

    tag_names = {t for a in assessments for t in a.tags} | {t for h in history for t in h.tags}
    tag_repo = TagRepo(session)
    tags = [tag_from_orm(t) for t in (tag_repo.get_by_name(n) for n in sorted(tag_names)) if t]

    return BundleContents(assessments=assessments, ratings=ratings, history=history, tags=tags)


@log_operation("export_bundle")
def export_bundle(
    session: Session,
    scope: Literal["full", "domain", "area"] = "full",
    scope_id: str | None = None,
    include_history: bool = True,
) -> ExportBundle:
    """
    Collect current assessments, their ratings, history and tags into a bundle.

    Example:
        >>> bundle = export_bundle(session, scope="domain", scope_id="provider-management")
        >>> bundle.metadata.total_assessments
        2
    """
    settings = get_settings()
    if not settings.app.enable_data_export:
        raise BusinessLogicError("Data export is disabled", rule="feature_disabled")

    capabilities = get_capability_model()
    if scope == "domain" and capabilities.domain(scope_id or "") is None:
        raise ValidationError("scope_id", f"Unknown capability domain '{scope_id}'", scope_id)
    if scope == "area" and capabilities.area(scope_id or "") is None:
        raise CapabilityAreaNotFoundError(scope_id or "")

    try:
        contents = _collect_contents(session, scope, scope_id, include_history)
        bundle = bundle_from_domain(
            contents,
            app_version=settings.app.version,
            export_date=utcnow(),
            scope=scope,
            scope_details={"id": scope_id} if scope_id else None,
        )
        logger.info(
            f"Exported {bundle.metadata.total_assessments} assessments, "
            f"{bundle.metadata.total_history} history entries ({scope})"
        )
        return bundle

    except Exception as e:
        _raise_wrapped(e, "Failed to export bundle", {"scope": scope, "scope_id": scope_id})


def _snapshot_store(session: Session) -> InMemoryRatingStore:
    """Copy the current database state into memory for a dry run."""
    contents = _collect_contents(session, "full", None, include_history=True)
    store = InMemoryRatingStore.from_snapshot(
        contents.assessments, contents.ratings, contents.history, contents.tags
    )
    return store


@log_operation("import_bundle")
def import_bundle(
    SessionLocal: sessionmaker,
    bundle: ExportBundle,
    progress: ProgressCallback | None = None,
    should_continue: Callable[[], bool] | None = None,
    dry_run: bool = False,
    max_workers: int | None = None,
) -> ImportResult:
    """
    Merge a validated bundle into the database, one transaction per area.

    Args:
        SessionLocal: Session factory; each capability area gets its own session
        bundle: Validated bundle (see ``parse_bundle``)
        progress: Called with (percentage, message) after each area
        should_continue: Checked before each area; returning False stops the import
        dry_run: Evaluate against an in-memory copy and write nothing
        max_workers: Areas merged concurrently (defaults to ``IMPORT_MAX_WORKERS``)

    Returns:
        ImportResult with per-area dispositions and counts
    """
    settings = get_settings()
    if not settings.app.enable_bundle_import:
        raise BusinessLogicError("Bundle import is disabled", rule="feature_disabled")

    contents = bundle_to_domain(bundle)
    engine = MergeEngine()
    set_context(import_id=str(uuid.uuid4()))

    try:
        if dry_run:
            with SessionLocal() as s:
                store = _snapshot_store(s)
            result = engine.merge_bundle(
                contents, store.transaction, progress=progress, should_continue=should_continue
            )
        else:
            result = engine.merge_bundle(
                contents,
                sql_transaction_factory(SessionLocal),
                progress=progress,
                should_continue=should_continue,
                max_workers=max_workers or settings.imports.max_workers,
            )

        logger.info(
            f"Import {'dry run ' if dry_run else ''}finished: "
            f"{result.imported_as_current} current, {result.imported_as_history} history, "
            f"{result.skipped} skipped, {len(result.errors)} errors; "
            f"history entries {result.history_imported} added, {result.history_skipped} skipped"
        )
        return result

    except Exception as e:
        _raise_wrapped(e, "Failed to import bundle", {"dry_run": dry_run})
