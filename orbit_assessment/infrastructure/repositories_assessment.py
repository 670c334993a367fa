# orbit_assessment/infrastructure/repositories_assessment.py
from __future__ import annotations

import builtins
from datetime import datetime

from sqlalchemy.orm import Session

from .logging import log_database_operation as log_op
from .models import CapabilityAssessmentORM
from .repositories_base import BaseRepository as GenericBaseRepository


class AssessmentRepo(GenericBaseRepository[CapabilityAssessmentORM]):
    """Capability assessments, current and superseded."""

    model = CapabilityAssessmentORM

    def __init__(self, session: Session):
        super().__init__(session)

    @log_op("assessment.get")
    def get(self, id_: str) -> CapabilityAssessmentORM | None:
        return super().get(id_)

    @log_op("assessment.get_current")
    def get_current(self, capability_area_id: str) -> CapabilityAssessmentORM | None:
        return self.first(
            CapabilityAssessmentORM.capability_area_id == capability_area_id,
            CapabilityAssessmentORM.is_current.is_(True),
            order_by=[CapabilityAssessmentORM.updated_at.desc()],
        )

    @log_op("assessment.list_current")
    def list_current(self, domain_id: str | None = None) -> builtins.list[CapabilityAssessmentORM]:
        filters = [CapabilityAssessmentORM.is_current.is_(True)]
        if domain_id is not None:
            filters.append(CapabilityAssessmentORM.capability_domain_id == domain_id)
        return self.list(
            *filters,
            order_by=[
                CapabilityAssessmentORM.capability_domain_id,
                CapabilityAssessmentORM.capability_area_id,
            ],
        )

    @log_op("assessment.list_for_area")
    def list_for_area(self, capability_area_id: str) -> builtins.list[CapabilityAssessmentORM]:
        """Every assessment ever held for the area, newest first."""
        return self.list(
            CapabilityAssessmentORM.capability_area_id == capability_area_id,
            order_by=[CapabilityAssessmentORM.updated_at.desc()],
        )

    @log_op("assessment.create")
    def create(self, obj: CapabilityAssessmentORM) -> CapabilityAssessmentORM:
        return self.add(obj)

    @log_op("assessment.update")
    def update(self, obj: CapabilityAssessmentORM, **fields) -> CapabilityAssessmentORM:
        return super().update(obj, **fields)

    @log_op("assessment.demote")
    def demote(
        self, id_: str, when: datetime, expected_updated_at: datetime | None = None
    ) -> bool:
        """
        Stop the assessment being current; the row and its ratings stay.

        With ``expected_updated_at`` the row is only demoted if nobody has
        changed it since it was read. Returns False when no row matched.
        """
        filters = [CapabilityAssessmentORM.id == id_, CapabilityAssessmentORM.is_current.is_(True)]
        if expected_updated_at is not None:
            filters.append(CapabilityAssessmentORM.updated_at == expected_updated_at)
        return self.update_where(*filters, is_current=False, superseded_at=when) == 1

    @log_op("assessment.touch_current")
    def touch_current(self, id_: str, when: datetime, status: str | None = None) -> bool:
        """Bump ``updated_at`` only while the row is still current (and in ``status``)."""
        filters = [CapabilityAssessmentORM.id == id_, CapabilityAssessmentORM.is_current.is_(True)]
        if status is not None:
            filters.append(CapabilityAssessmentORM.status == status)
        return self.update_where(*filters, updated_at=when) == 1

    @log_op("assessment.delete")
    def delete(self, obj: CapabilityAssessmentORM) -> None:
        super().delete(obj)
