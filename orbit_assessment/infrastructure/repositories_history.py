# orbit_assessment/infrastructure/repositories_history.py
from __future__ import annotations

import builtins

from sqlalchemy.orm import Session

from .logging import log_database_operation as log_op
from .models import AssessmentHistoryORM
from .repositories_base import BaseRepository as GenericBaseRepository


class HistoryRepo(GenericBaseRepository[AssessmentHistoryORM]):
    """
    Append-only store of assessment snapshots.

    Only ``delete`` removes rows, and only the explicit user action in the
    application layer calls it.
    """

    model = AssessmentHistoryORM

    def __init__(self, session: Session):
        super().__init__(session)

    @log_op("history.get")
    def get(self, id_: str) -> AssessmentHistoryORM | None:
        return super().get(id_)

    @log_op("history.list_for_area")
    def list_for_area(self, capability_area_id: str) -> builtins.list[AssessmentHistoryORM]:
        """Newest snapshot first."""
        return self.list(
            AssessmentHistoryORM.capability_area_id == capability_area_id,
            order_by=[AssessmentHistoryORM.snapshot_date.desc(), AssessmentHistoryORM.id],
        )

    @log_op("history.latest_for_assessment")
    def latest_for_assessment(self, assessment_id: str) -> AssessmentHistoryORM | None:
        """Most recent snapshot taken from the given assessment."""
        return self.first(
            AssessmentHistoryORM.capability_assessment_id == assessment_id,
            order_by=[AssessmentHistoryORM.snapshot_date.desc(), AssessmentHistoryORM.created_at.desc()],
        )

    @log_op("history.create")
    def create(self, obj: AssessmentHistoryORM) -> AssessmentHistoryORM:
        return self.add(obj)

    @log_op("history.delete")
    def delete(self, obj: AssessmentHistoryORM) -> None:
        super().delete(obj)
