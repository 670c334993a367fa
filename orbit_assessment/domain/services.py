from __future__ import annotations

import logging
from collections import Counter, defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from ..infrastructure.exceptions import InvalidRatingError, UnknownAspectError
from .catalog import (
    DIMENSION_ORDER,
    MAX_LEVEL,
    NOT_APPLICABLE,
    NOT_ASSESSED,
    MaturityModel,
    get_maturity_model,
)
from .models import AssessmentHistory, CapabilityAssessment, HistoricalRating, Rating

_ONE_DECIMAL = Decimal("0.1")


def round_score(value: float | None) -> float | None:
    """Round half-up to one decimal place; ``None`` passes through."""
    if value is None:
        return None
    return float(Decimal(str(value)).quantize(_ONE_DECIMAL, rounding=ROUND_HALF_UP))


def calculate_average(values: Iterable[float | None]) -> float | None:
    """Rounded mean of the non-null values, or ``None`` when there are none."""
    present = [v for v in values if v is not None]
    if not present:
        return None
    return round_score(sum(present) / len(present))


def validate_level(level: int) -> int:
    if not (NOT_APPLICABLE <= level <= MAX_LEVEL):
        raise InvalidRatingError(level)
    return int(level)


@dataclass
class AspectScore:
    aspect_id: str
    name: str
    current_level: int  # 0 when no rating exists
    target_level: int | None = None

    @property
    def is_assessed(self) -> bool:
        return self.current_level != NOT_ASSESSED


@dataclass
class SubDimensionScore:
    id: str
    name: str
    average: float | None
    target_average: float | None
    assessed_count: int
    total_aspects: int
    aspects: list[AspectScore] = field(default_factory=list)


@dataclass
class DimensionScore:
    id: str
    name: str
    required: bool
    average: float | None
    target_average: float | None
    assessed_count: int
    total_aspects: int
    aspects: list[AspectScore] = field(default_factory=list)
    sub_dimensions: list[SubDimensionScore] = field(default_factory=list)


@dataclass
class AssessmentScore:
    assessment_id: str | None
    dimensions: list[DimensionScore]
    overall_score: float | None
    assessed_count: int
    total_aspects: int
    completion_percentage: int

    def dimension(self, dimension_id: str) -> DimensionScore | None:
        return next((d for d in self.dimensions if d.id == dimension_id), None)


@dataclass
class HistoryComparison:
    older_id: str
    newer_id: str
    score_diff: float | None
    dimension_diffs: dict[str, float | None]


def completion_percentage(assessed_count: int, total_aspects: int) -> int:
    if total_aspects <= 0:
        return 0
    pct = Decimal(assessed_count * 100) / Decimal(total_aspects)
    return int(pct.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class ScoringService:
    """
    Turns flat rating sets into the ORBIT score tree.

    Pure computation over the maturity model: missing ratings flow through
    as ``None`` averages, while a rating that contradicts the model raises
    ``UnknownAspectError``.
    """

    def __init__(self, model: MaturityModel | None = None, logger: logging.Logger | None = None):
        self.model = model or get_maturity_model()
        self.logger = logger or logging.getLogger(__name__)

    # -------- validation --------
    def check_rating(self, rating: Rating | HistoricalRating) -> None:
        """Raise when the rating does not sit where the model puts its aspect."""
        location = self.model.locate(rating.aspect_id)
        if location is None:
            raise UnknownAspectError(rating.aspect_id, rating.dimension_id, rating.sub_dimension_id)
        if location.dimension_id != rating.dimension_id:
            raise UnknownAspectError(
                rating.aspect_id,
                rating.dimension_id,
                rating.sub_dimension_id,
                reason=(
                    f"Aspect '{rating.aspect_id}' belongs to dimension "
                    f"'{location.dimension_id}', not '{rating.dimension_id}'"
                ),
            )
        if location.sub_dimension_id != rating.sub_dimension_id:
            raise UnknownAspectError(
                rating.aspect_id,
                rating.dimension_id,
                rating.sub_dimension_id,
                reason=(
                    f"Aspect '{rating.aspect_id}' belongs to sub-dimension "
                    f"'{location.sub_dimension_id}', not '{rating.sub_dimension_id}'"
                ),
            )
        validate_level(rating.current_level)
        if rating.target_level is not None:
            validate_level(rating.target_level)

    def _latest_by_aspect(
        self, ratings: Iterable[Rating | HistoricalRating]
    ) -> dict[str, Rating | HistoricalRating]:
        latest: dict[str, Rating | HistoricalRating] = {}
        for rating in ratings:
            self.check_rating(rating)
            existing = latest.get(rating.aspect_id)
            if existing is None:
                latest[rating.aspect_id] = rating
                continue
            self.logger.warning("Duplicate rating for aspect %s; keeping latest", rating.aspect_id)
            existing_ts = getattr(existing, "updated_at", None)
            new_ts = getattr(rating, "updated_at", None)
            if existing_ts is None or new_ts is None or new_ts >= existing_ts:
                latest[rating.aspect_id] = rating
        return latest

    # -------- assessment scores --------
    def score_assessment(
        self,
        assessment_id: str | None,
        ratings: Iterable[Rating | HistoricalRating],
    ) -> AssessmentScore:
        """
        Score one assessment.

        - Leaf average = mean of positive levels (N/A and unrated excluded).
        - Technology = mean of the rounded sub-dimension averages.
        - Overall = mean of the non-null dimension averages.
        - Completion counts every rating whose level is not 0 (N/A included).
        """
        try:
            by_aspect = self._latest_by_aspect(ratings)
        except (UnknownAspectError, InvalidRatingError):
            self.logger.exception("Integrity error scoring assessment %s", assessment_id)
            raise

        dimensions: list[DimensionScore] = []
        for dim in self.model.dimensions:
            if dim.has_sub_dimensions:
                subs = [
                    self._score_group(sub.id, sub.name, sub.aspects, by_aspect)
                    for sub in dim.sub_dimensions
                ]
                dimensions.append(
                    DimensionScore(
                        id=dim.id,
                        name=dim.name,
                        required=dim.required,
                        average=calculate_average(s.average for s in subs),
                        target_average=calculate_average(s.target_average for s in subs),
                        assessed_count=sum(s.assessed_count for s in subs),
                        total_aspects=sum(s.total_aspects for s in subs),
                        sub_dimensions=subs,
                    )
                )
            else:
                leaf = self._score_group(dim.id, dim.name, dim.aspects, by_aspect)
                dimensions.append(
                    DimensionScore(
                        id=dim.id,
                        name=dim.name,
                        required=dim.required,
                        average=leaf.average,
                        target_average=leaf.target_average,
                        assessed_count=leaf.assessed_count,
                        total_aspects=leaf.total_aspects,
                        aspects=leaf.aspects,
                    )
                )

        assessed = sum(d.assessed_count for d in dimensions)
        total = self.model.total_aspect_count()
        result = AssessmentScore(
            assessment_id=assessment_id,
            dimensions=dimensions,
            overall_score=calculate_average(d.average for d in dimensions),
            assessed_count=assessed,
            total_aspects=total,
            completion_percentage=completion_percentage(assessed, total),
        )
        self.logger.debug(
            "Scored assessment %s: overall=%s, completion=%s%%",
            assessment_id,
            result.overall_score,
            result.completion_percentage,
        )
        return result

    def _score_group(self, group_id, name, aspects, by_aspect) -> SubDimensionScore:
        aspect_scores: list[AspectScore] = []
        for aspect in aspects:
            rating = by_aspect.get(aspect.id)
            aspect_scores.append(
                AspectScore(
                    aspect_id=aspect.id,
                    name=aspect.name,
                    current_level=rating.current_level if rating else NOT_ASSESSED,
                    target_level=rating.target_level if rating else None,
                )
            )
        return SubDimensionScore(
            id=group_id,
            name=name,
            average=calculate_average(a.current_level for a in aspect_scores if a.current_level > 0),
            target_average=calculate_average(
                a.target_level for a in aspect_scores if a.target_level and a.target_level > 0
            ),
            assessed_count=sum(1 for a in aspect_scores if a.is_assessed),
            total_aspects=len(aspect_scores),
            aspects=aspect_scores,
        )

    def overall_score(self, ratings: Iterable[Rating | HistoricalRating]) -> float | None:
        return self.score_assessment(None, ratings).overall_score

    @staticmethod
    def dimension_score_map(score: AssessmentScore) -> dict[str, float]:
        """Flat map for history snapshots: ``dimension`` and ``technology:<sub>`` keys."""
        result: dict[str, float] = {}
        for dim in score.dimensions:
            if dim.average is not None:
                result[dim.id] = dim.average
            for sub in dim.sub_dimensions:
                if sub.average is not None:
                    result[f"{dim.id}:{sub.id}"] = sub.average
        return result

    # -------- rollups over assessments --------
    @staticmethod
    def domain_score(assessments: Iterable[CapabilityAssessment], domain_id: str) -> float | None:
        """Mean overall score of the domain's finalized assessments."""
        return calculate_average(
            a.overall_score
            for a in assessments
            if a.capability_domain_id == domain_id and a.is_finalized
        )

    @staticmethod
    def portfolio_score(assessments: Iterable[CapabilityAssessment]) -> float | None:
        return calculate_average(a.overall_score for a in assessments if a.is_finalized)

    @staticmethod
    def status_counts(
        assessments: Sequence[CapabilityAssessment], total_areas: int
    ) -> dict[str, int]:
        counts = Counter(a.status for a in assessments)
        return {
            "not_started": max(total_areas - len(assessments), 0),
            "in_progress": counts.get("in_progress", 0),
            "finalized": counts.get("finalized", 0),
        }

    # -------- tags --------
    @staticmethod
    def tags_in_use(assessments: Iterable[CapabilityAssessment]) -> list[str]:
        return sorted({t for a in assessments if a.is_finalized for t in a.tags})

    @staticmethod
    def areas_by_tag(assessments: Iterable[CapabilityAssessment], tag: str) -> list[str]:
        return sorted(a.capability_area_id for a in assessments if a.is_finalized and tag in a.tags)

    @staticmethod
    def domain_tags(assessments: Iterable[CapabilityAssessment], domain_id: str) -> list[str]:
        return sorted(
            {
                t
                for a in assessments
                if a.is_finalized and a.capability_domain_id == domain_id
                for t in a.tags
            }
        )

    # -------- history --------
    @staticmethod
    def score_trend(history: Iterable[AssessmentHistory]) -> list[tuple[datetime, float | None]]:
        """Oldest first."""
        ordered = sorted(history, key=lambda h: h.snapshot_date)
        return [(h.snapshot_date, h.overall_score) for h in ordered]

    @staticmethod
    def compare_history(older: AssessmentHistory, newer: AssessmentHistory) -> HistoryComparison:
        def diff(a: float | None, b: float | None) -> float | None:
            if a is None or b is None:
                return None
            return round_score(b - a)

        keys = [k for k in DIMENSION_ORDER if k in older.dimension_scores or k in newer.dimension_scores]
        keys += sorted(
            (set(older.dimension_scores) | set(newer.dimension_scores)) - set(DIMENSION_ORDER)
        )
        return HistoryComparison(
            older_id=older.id,
            newer_id=newer.id,
            score_diff=diff(older.overall_score, newer.overall_score),
            dimension_diffs={
                k: diff(older.dimension_scores.get(k), newer.dimension_scores.get(k)) for k in keys
            },
        )

    @staticmethod
    def group_by_domain(
        assessments: Iterable[CapabilityAssessment],
    ) -> dict[str, list[CapabilityAssessment]]:
        grouped: dict[str, list[CapabilityAssessment]] = defaultdict(list)
        for a in assessments:
            grouped[a.capability_domain_id].append(a)
        return dict(grouped)
