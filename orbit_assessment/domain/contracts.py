from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from .models import AssessmentHistory, CapabilityAssessment, Rating, Tag


class RatingStore(Protocol):
    """
    Storage seam consumed by the merge engine.

    ``get_assessment`` returns the *current* assessment for an area.
    ``demote_assessment`` keeps the record but stops it being current; given
    ``expected_updated_at`` it refuses (raises) if the record changed since it
    was read or is no longer current.
    Nothing on this interface deletes data.
    """

    def get_assessment(self, capability_area_id: str) -> CapabilityAssessment | None: ...

    def get_ratings(self, assessment_id: str) -> list[Rating]: ...

    def list_history(self, capability_area_id: str) -> list[AssessmentHistory]: ...

    def get_history(self, history_id: str) -> AssessmentHistory | None: ...

    def put_assessment(self, assessment: CapabilityAssessment, ratings: Sequence[Rating]) -> None: ...

    def demote_assessment(
        self, assessment_id: str, expected_updated_at: datetime | None = None
    ) -> None: ...

    def put_history(self, history: AssessmentHistory) -> None: ...

    def get_tag(self, name: str) -> Tag | None: ...

    def put_tag(self, tag: Tag) -> None: ...
