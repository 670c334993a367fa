"""
History-merge engine.

Reconciles candidate assessments (usually from an imported bundle) with the
resident data for the same capability area. The decision step is a pure
function that returns the writes to perform; applying those writes is a
separate step against a ``RatingStore``. Writes only ever add records or
change which assessment is current, so no merge loses data.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import uuid
from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import AbstractContextManager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Literal

from ..infrastructure.exceptions import InvalidRatingError, UnknownAspectError
from .catalog import CapabilityModel, get_capability_model
from .contracts import RatingStore
from .models import AssessmentHistory, CapabilityAssessment, HistoricalRating, Rating, Tag
from .services import ScoringService

Disposition = Literal["imported_current", "imported_history", "skipped", "error"]
ProgressCallback = Callable[[int, str], None]
TransactionFactory = Callable[[], AbstractContextManager[RatingStore]]

# Namespace for ids derived from content, so replays produce the same ids.
MERGE_NAMESPACE = uuid.UUID("6f1c2b8e-4d3a-5e7f-9a0b-1c2d3e4f5a6b")

REASON_NO_RESIDENT = "No existing assessment for this capability area"
REASON_IDENTICAL = "Identical to current assessment"
REASON_HISTORY_EXISTS = "Historical entry already exists"
REASON_REPLACED = "Replaced older local assessment (moved to history)"
REASON_OLDER = "Added as historical entry (local is newer)"
REASON_SAME_TIME = "Added as historical entry (same timestamp as local)"

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Fingerprints and snapshots
# ---------------------------------------------------------------------------


def _rating_payload(r: Rating | HistoricalRating) -> dict:
    return {
        "dimension": r.dimension_id,
        "sub_dimension": r.sub_dimension_id,
        "aspect": r.aspect_id,
        "current": r.current_level,
        "target": r.target_level,
        "questions": [asdict(q) for q in r.question_responses],
        "evidence": [asdict(e) for e in r.evidence_responses],
        "notes": r.notes,
        "barriers": r.barriers,
        "plans": r.plans,
        "attachments": sorted(r.attachment_ids),
    }


def content_fingerprint(
    capability_area_id: str,
    tags: Iterable[str],
    ratings: Iterable[Rating | HistoricalRating],
) -> str:
    """
    SHA-256 over the assessment content that matters for identity.

    Ids, timestamps and stored scores are excluded; the score is derived
    from the ratings so equal ratings imply an equal score. The previous
    level and carry-forward flag only record how an edit session started,
    so they are left out as well.
    """
    payload = {
        "area": capability_area_id,
        "tags": sorted(set(tags)),
        "ratings": sorted(
            (_rating_payload(r) for r in ratings),
            key=lambda p: (p["dimension"], p["sub_dimension"] or "", p["aspect"]),
        ),
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def assessment_fingerprint(assessment: CapabilityAssessment, ratings: Iterable[Rating]) -> str:
    return content_fingerprint(assessment.capability_area_id, assessment.tags, ratings)


def history_fingerprint(history: AssessmentHistory) -> str:
    if history.fingerprint:
        return history.fingerprint
    return content_fingerprint(history.capability_area_id, history.tags, history.ratings)


def derive_id(*parts: str) -> str:
    return str(uuid.uuid5(MERGE_NAMESPACE, ":".join(parts)))


def build_snapshot(
    assessment: CapabilityAssessment,
    ratings: Sequence[Rating],
    scoring: ScoringService,
    snapshot_date: datetime | None = None,
    history_id: str | None = None,
) -> AssessmentHistory:
    """Freeze an assessment and its ratings into a history entry."""
    fingerprint = assessment_fingerprint(assessment, ratings)
    score = scoring.score_assessment(assessment.id, ratings)
    return AssessmentHistory(
        id=history_id or derive_id("history", assessment.id, fingerprint),
        capability_assessment_id=assessment.id,
        capability_area_id=assessment.capability_area_id,
        snapshot_date=snapshot_date or assessment.finalized_at or assessment.updated_at,
        overall_score=score.overall_score,
        tags=tuple(assessment.tags),
        dimension_scores=scoring.dimension_score_map(score),
        ratings=tuple(r.to_historical() for r in ratings),
        fingerprint=fingerprint,
    )


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PutAssessment:
    assessment: CapabilityAssessment
    ratings: tuple[Rating, ...]


@dataclass(frozen=True)
class DemoteAssessment:
    assessment_id: str
    # resident version the decision was made against
    expected_updated_at: datetime | None = None


@dataclass(frozen=True)
class PutHistory:
    history: AssessmentHistory


WriteOp = PutAssessment | DemoteAssessment | PutHistory


@dataclass
class ImportItemResult:
    area_id: str
    area_name: str
    action: Disposition
    reason: str | None = None


@dataclass
class MergeDecision:
    area_id: str
    area_name: str
    action: Disposition
    reason: str
    writes: tuple[WriteOp, ...] = ()

    def as_item(self) -> ImportItemResult:
        return ImportItemResult(self.area_id, self.area_name, self.action, self.reason)


def _promote(
    candidate: CapabilityAssessment,
    ratings: Sequence[Rating],
    fingerprint: str,
    overall_score: float | None,
    area_name: str,
    domain_id: str,
    domain_name: str,
) -> PutAssessment:
    new_id = derive_id("assessment", candidate.id, fingerprint)
    promoted = candidate.with_changes(
        id=new_id,
        capability_area_name=area_name,
        capability_domain_id=domain_id,
        capability_domain_name=domain_name,
        overall_score=overall_score,
        tags=tuple(sorted(set(candidate.tags))),
    )
    new_ratings = tuple(
        r.to_historical().to_rating(
            rating_id=derive_id("rating", new_id, r.dimension_id, r.sub_dimension_id or "", r.aspect_id),
            assessment_id=new_id,
            updated_at=r.updated_at,
        )
        for r in ratings
    )
    return PutAssessment(promoted, new_ratings)


def decide_merge(
    candidate: CapabilityAssessment,
    candidate_ratings: Sequence[Rating],
    resident: CapabilityAssessment | None,
    resident_ratings: Sequence[Rating],
    area_history: Sequence[AssessmentHistory],
    *,
    scoring: ScoringService,
    capabilities: CapabilityModel,
) -> MergeDecision:
    """
    Decide how a candidate assessment lands against the resident data.

    Pure: reads only its arguments and returns the writes to perform.
    Problems with the candidate become an ``error`` decision rather than
    an exception.
    """
    area_id = candidate.capability_area_id
    area = capabilities.area(area_id)
    if area is None:
        return MergeDecision(
            area_id,
            candidate.capability_area_name or area_id,
            "error",
            f"Unknown capability area '{area_id}'",
        )
    domain = capabilities.domain(area.domain_id)

    def decision(action: Disposition, reason: str, writes: tuple[WriteOp, ...] = ()) -> MergeDecision:
        return MergeDecision(area_id, area.name, action, reason, writes)

    try:
        score = scoring.score_assessment(candidate.id, candidate_ratings)
    except (UnknownAspectError, InvalidRatingError) as e:
        return decision("error", e.message)

    fingerprint = assessment_fingerprint(candidate, candidate_ratings)
    if resident is not None and assessment_fingerprint(resident, resident_ratings) == fingerprint:
        return decision("skipped", REASON_IDENTICAL)

    history_prints = {history_fingerprint(h) for h in area_history}
    if fingerprint in history_prints:
        return decision("skipped", REASON_HISTORY_EXISTS)

    promote = _promote(
        candidate,
        candidate_ratings,
        fingerprint,
        score.overall_score,
        area.name,
        area.domain_id,
        domain.name if domain else area.domain_id,
    )

    if resident is None:
        return decision("imported_current", REASON_NO_RESIDENT, (promote,))

    if candidate.updated_at > resident.updated_at:
        writes: list[WriteOp] = []
        resident_snapshot = build_snapshot(resident, resident_ratings, scoring)
        if resident_snapshot.fingerprint not in history_prints:
            writes.append(PutHistory(resident_snapshot))
        writes.append(DemoteAssessment(resident.id, resident.updated_at))
        writes.append(promote)
        return decision("imported_current", REASON_REPLACED, tuple(writes))

    reason = REASON_SAME_TIME if candidate.updated_at == resident.updated_at else REASON_OLDER
    snapshot = build_snapshot(candidate, candidate_ratings, scoring)
    return decision("imported_history", reason, (PutHistory(snapshot),))


def apply_decision(decision: MergeDecision, store: RatingStore) -> None:
    for op in decision.writes:
        match op:
            case PutHistory(history=history):
                store.put_history(history)
            case DemoteAssessment(assessment_id=assessment_id, expected_updated_at=expected):
                store.demote_assessment(assessment_id, expected)
            case PutAssessment(assessment=assessment, ratings=ratings):
                store.put_assessment(assessment, ratings)


# ---------------------------------------------------------------------------
# Batch merge
# ---------------------------------------------------------------------------


@dataclass
class BundleContents:
    """Domain-level view of an import bundle."""

    assessments: list[CapabilityAssessment] = field(default_factory=list)
    ratings: dict[str, list[Rating]] = field(default_factory=dict)
    history: list[AssessmentHistory] = field(default_factory=list)
    tags: list[Tag] = field(default_factory=list)

    def area_ids(self) -> list[str]:
        seen: dict[str, None] = {}
        for a in self.assessments:
            seen.setdefault(a.capability_area_id)
        for h in self.history:
            seen.setdefault(h.capability_area_id)
        return list(seen)


@dataclass
class ImportResult:
    success: bool = True
    imported_as_current: int = 0
    imported_as_history: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    details: list[ImportItemResult] = field(default_factory=list)
    history_imported: int = 0
    history_skipped: int = 0
    tags_imported: int = 0
    cancelled: bool = False

    def record(self, item: ImportItemResult) -> None:
        self.details.append(item)
        if item.action == "imported_current":
            self.imported_as_current += 1
        elif item.action == "imported_history":
            self.imported_as_history += 1
        elif item.action == "skipped":
            self.skipped += 1
        else:
            self.errors.append(f"{item.area_name}: {item.reason or 'Unknown error'}")
        self.success = not self.errors


class _AreaLocks:
    """One lock per capability area key, shared by every merge in the process."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = defaultdict(threading.Lock)

    def get(self, area_id: str) -> threading.Lock:
        with self._guard:
            return self._locks[area_id]


area_locks = _AreaLocks()


class MergeEngine:
    def __init__(
        self,
        scoring: ScoringService | None = None,
        capabilities: CapabilityModel | None = None,
        logger: logging.Logger | None = None,
    ):
        self.scoring = scoring or ScoringService()
        self.capabilities = capabilities or get_capability_model()
        self.logger = logger or logging.getLogger(__name__)

    def decide(
        self,
        candidate: CapabilityAssessment,
        candidate_ratings: Sequence[Rating],
        resident: CapabilityAssessment | None,
        resident_ratings: Sequence[Rating],
        area_history: Sequence[AssessmentHistory],
    ) -> MergeDecision:
        return decide_merge(
            candidate,
            candidate_ratings,
            resident,
            resident_ratings,
            area_history,
            scoring=self.scoring,
            capabilities=self.capabilities,
        )

    def merge_assessment(
        self, store: RatingStore, candidate: CapabilityAssessment, ratings: Sequence[Rating]
    ) -> ImportItemResult:
        """Read the resident data, decide, and apply the writes to ``store``."""
        resident = store.get_assessment(candidate.capability_area_id)
        resident_ratings = store.get_ratings(resident.id) if resident else []
        history = store.list_history(candidate.capability_area_id)

        decision = self.decide(candidate, ratings, resident, resident_ratings, history)
        apply_decision(decision, store)
        self.logger.info(
            "Merge decision for area %s: %s (%s)", decision.area_id, decision.action, decision.reason
        )
        return decision.as_item()

    def merge_history_entry(self, store: RatingStore, entry: AssessmentHistory) -> bool:
        """Add a bundle history entry unless its id or content is already stored."""
        if not self.capabilities.is_known_area(entry.capability_area_id):
            self.logger.warning(
                "Skipping history %s for unknown area %s", entry.id, entry.capability_area_id
            )
            return False
        if store.get_history(entry.id) is not None:
            return False
        fingerprint = content_fingerprint(entry.capability_area_id, entry.tags, entry.ratings)
        if any(history_fingerprint(h) == fingerprint for h in store.list_history(entry.capability_area_id)):
            return False
        try:
            score = self.scoring.score_assessment(entry.capability_assessment_id, entry.ratings)
        except (UnknownAspectError, InvalidRatingError) as e:
            self.logger.warning("Skipping history %s: %s", entry.id, e.message)
            return False
        store.put_history(
            AssessmentHistory(
                id=entry.id,
                capability_assessment_id=entry.capability_assessment_id,
                capability_area_id=entry.capability_area_id,
                snapshot_date=entry.snapshot_date,
                overall_score=score.overall_score,
                tags=tuple(sorted(set(entry.tags))),
                dimension_scores=self.scoring.dimension_score_map(score),
                ratings=tuple(entry.ratings),
                fingerprint=fingerprint,
            )
        )
        return True

    def merge_tag(self, store: RatingStore, tag: Tag) -> bool:
        """Tags are added by name; existing tags are left alone."""
        if store.get_tag(tag.name) is not None:
            return False
        store.put_tag(tag)
        return True

    def _merge_area(
        self,
        transaction: TransactionFactory,
        area_id: str,
        bundle: BundleContents,
    ) -> tuple[list[ImportItemResult], int, int]:
        candidates = sorted(
            (a for a in bundle.assessments if a.capability_area_id == area_id),
            key=lambda a: a.updated_at,
        )
        entries = [h for h in bundle.history if h.capability_area_id == area_id]
        area_name = candidates[0].capability_area_name if candidates else area_id
        if (area := self.capabilities.area(area_id)) is not None:
            area_name = area.name

        items: list[ImportItemResult] = []
        added = skipped = 0
        with area_locks.get(area_id):
            try:
                with transaction() as store:
                    for candidate in candidates:
                        items.append(
                            self.merge_assessment(store, candidate, bundle.ratings.get(candidate.id, []))
                        )
                    for entry in entries:
                        if self.merge_history_entry(store, entry):
                            added += 1
                        else:
                            skipped += 1
            except Exception as e:
                self.logger.exception("Merge failed for area %s; rolled back", area_id)
                reason = getattr(e, "message", None) or str(e)
                items = [
                    ImportItemResult(area_id, area_name, "error", reason)
                    for _ in range(max(len(candidates), 1))
                ]
                added = 0
                skipped = len(entries)
        return items, added, skipped

    def merge_bundle(
        self,
        bundle: BundleContents,
        transaction: TransactionFactory,
        progress: ProgressCallback | None = None,
        should_continue: Callable[[], bool] | None = None,
        max_workers: int = 1,
    ) -> ImportResult:
        """
        Merge every capability area in ``bundle``.

        Each area runs in its own transaction from ``transaction``; a failing
        area is rolled back and reported as ``error`` while the others carry
        on. ``should_continue`` is checked before each area starts.
        """
        result = ImportResult()
        area_ids = bundle.area_ids()
        total = len(area_ids) or 1

        def report(done: int, message: str) -> None:
            if progress is not None:
                progress(min(int(done * 100 / total), 100), message)

        report(0, f"Merging {len(area_ids)} capability areas")

        def run(area_id: str):
            if should_continue is not None and not should_continue():
                return area_id, None
            return area_id, self._merge_area(transaction, area_id, bundle)

        done = 0
        if max_workers <= 1:
            for area_id in area_ids:
                _, outcome = run(area_id)
                if outcome is None:
                    result.cancelled = True
                    break
                items, added, skipped = outcome
                done += 1
                self._collect(result, items, added, skipped)
                report(done, f"Processed {items[0].area_name if items else area_id}")
        else:
            with ThreadPoolExecutor(max_workers=max_workers) as pool:
                futures = [pool.submit(run, area_id) for area_id in area_ids]
                for future in futures:
                    area_id, outcome = future.result()
                    if outcome is None:
                        result.cancelled = True
                        continue
                    items, added, skipped = outcome
                    done += 1
                    self._collect(result, items, added, skipped)
                    report(done, f"Processed {items[0].area_name if items else area_id}")

        if bundle.tags and not result.cancelled:
            try:
                with transaction() as store:
                    result.tags_imported = sum(1 for t in bundle.tags if self.merge_tag(store, t))
            except Exception as e:
                self.logger.exception("Tag merge failed; rolled back")
                result.errors.append(f"Tags: {getattr(e, 'message', None) or e}")
                result.success = False

        report(total, "Import complete" if not result.cancelled else "Import cancelled")
        self.logger.info(
            "Bundle merge finished: %d current, %d history, %d skipped, %d errors; "
            "history entries: %d added, %d skipped",
            result.imported_as_current,
            result.imported_as_history,
            result.skipped,
            len(result.errors),
            result.history_imported,
            result.history_skipped,
        )
        return result

    @staticmethod
    def _collect(result: ImportResult, items: list[ImportItemResult], added: int, skipped: int) -> None:
        for item in items:
            result.record(item)
        result.history_imported += added
        result.history_skipped += skipped
