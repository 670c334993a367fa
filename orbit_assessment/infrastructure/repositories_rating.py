# orbit_assessment/infrastructure/repositories_rating.py
from __future__ import annotations

import builtins
from typing import Any

from sqlalchemy.orm import Session

from .logging import log_database_operation as log_op
from .models import RatingORM
from .repositories_base import BaseRepository as GenericBaseRepository


class RatingRepo(GenericBaseRepository[RatingORM]):
    model = RatingORM

    def __init__(self, session: Session):
        super().__init__(session)

    @log_op("rating.list_for_assessment")
    def list_for_assessment(self, assessment_id: str) -> builtins.list[RatingORM]:
        return self.list(
            RatingORM.assessment_id == assessment_id,
            order_by=[RatingORM.dimension_id, RatingORM.sub_dimension_id, RatingORM.aspect_id],
        )

    @log_op("rating.get_for_aspect")
    def get_for_aspect(self, assessment_id: str, aspect_id: str) -> RatingORM | None:
        return self.first(RatingORM.assessment_id == assessment_id, RatingORM.aspect_id == aspect_id)

    @log_op("rating.create")
    def create(self, obj: RatingORM) -> RatingORM:
        return self.add(obj)

    @log_op("rating.upsert")
    def upsert(
        self,
        *,
        rating_id: str,
        assessment_id: str,
        dimension_id: str,
        sub_dimension_id: str | None,
        aspect_id: str,
        **fields: Any,
    ) -> RatingORM:
        """Create or update the rating for one aspect of an assessment."""
        obj = self.get_for_aspect(assessment_id, aspect_id)
        if obj is None:
            obj = RatingORM(
                id=rating_id,
                assessment_id=assessment_id,
                dimension_id=dimension_id,
                sub_dimension_id=sub_dimension_id,
                aspect_id=aspect_id,
                **fields,
            )
            return self.add(obj)
        return self.update(obj, **fields)
