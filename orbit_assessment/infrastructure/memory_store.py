"""
In-memory ``RatingStore`` used for dry-run imports and for pure use of the
merge engine without a database.
"""

from __future__ import annotations

import copy
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime

from ..domain.models import AssessmentHistory, CapabilityAssessment, Rating, Tag
from .exceptions import BusinessLogicError


class InMemoryRatingStore:
    def __init__(self):
        self.assessments: dict[str, CapabilityAssessment] = {}
        self.current: dict[str, str] = {}  # area id -> assessment id
        self.ratings: dict[str, list[Rating]] = {}
        self.history: dict[str, AssessmentHistory] = {}
        self.tags: dict[str, Tag] = {}
        self._lock = threading.RLock()

    @classmethod
    def from_snapshot(
        cls,
        assessments: Sequence[CapabilityAssessment],
        ratings: dict[str, list[Rating]],
        history: Sequence[AssessmentHistory] = (),
        tags: Sequence[Tag] = (),
    ) -> InMemoryRatingStore:
        """Seed a store with current assessments, e.g. copied from the database."""
        store = cls()
        for a in assessments:
            store.put_assessment(a, ratings.get(a.id, []))
        for h in history:
            store.put_history(h)
        for t in tags:
            store.put_tag(t)
        return store

    # -------- RatingStore --------
    def get_assessment(self, capability_area_id: str) -> CapabilityAssessment | None:
        assessment_id = self.current.get(capability_area_id)
        return self.assessments.get(assessment_id) if assessment_id else None

    def get_ratings(self, assessment_id: str) -> list[Rating]:
        return list(self.ratings.get(assessment_id, []))

    def list_history(self, capability_area_id: str) -> list[AssessmentHistory]:
        entries = [h for h in self.history.values() if h.capability_area_id == capability_area_id]
        return sorted(entries, key=lambda h: h.snapshot_date, reverse=True)

    def get_history(self, history_id: str) -> AssessmentHistory | None:
        return self.history.get(history_id)

    def put_assessment(self, assessment: CapabilityAssessment, ratings: Sequence[Rating]) -> None:
        if assessment.id in self.assessments:
            raise ValueError(f"Assessment {assessment.id} already stored")
        if assessment.capability_area_id in self.current:
            raise ValueError(f"Area {assessment.capability_area_id} already has a current assessment")
        self.assessments[assessment.id] = replace(assessment)
        self.ratings[assessment.id] = list(ratings)
        self.current[assessment.capability_area_id] = assessment.id

    def demote_assessment(
        self, assessment_id: str, expected_updated_at: datetime | None = None
    ) -> None:
        assessment = self.assessments.get(assessment_id)
        if (
            assessment is None
            or self.current.get(assessment.capability_area_id) != assessment_id
            or (expected_updated_at is not None and assessment.updated_at != expected_updated_at)
        ):
            raise BusinessLogicError(
                f"Assessment {assessment_id} changed since it was read",
                rule="concurrent_modification",
            )
        del self.current[assessment.capability_area_id]

    def put_history(self, history: AssessmentHistory) -> None:
        if history.id in self.history:
            raise ValueError(f"History entry {history.id} already stored")
        self.history[history.id] = history

    def get_tag(self, name: str) -> Tag | None:
        return self.tags.get(name.lower())

    def put_tag(self, tag: Tag) -> None:
        self.tags[tag.name.lower()] = tag

    # -------- transactions --------
    @contextmanager
    def transaction(self) -> Iterator[InMemoryRatingStore]:
        """Serialized transaction; any exception restores the previous state."""
        with self._lock:
            saved = (
                dict(self.assessments),
                dict(self.current),
                copy.copy(self.ratings),
                dict(self.history),
                dict(self.tags),
            )
            try:
                yield self
            except Exception:
                self.assessments, self.current, self.ratings, self.history, self.tags = saved
                raise

    def row_counts(self) -> dict[str, int]:
        return {
            "assessments": len(self.assessments),
            "ratings": sum(len(r) for r in self.ratings.values()),
            "history": len(self.history),
            "tags": len(self.tags),
        }
