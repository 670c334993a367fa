# orbit_assessment/infrastructure/repositories_tag.py
from __future__ import annotations

import builtins
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm import Session

from .logging import log_database_operation as log_op
from .models import TagORM
from .repositories_base import BaseRepository as GenericBaseRepository


class TagRepo(GenericBaseRepository[TagORM]):
    model = TagORM

    def __init__(self, session: Session):
        super().__init__(session)

    @log_op("tag.get_by_name")
    def get_by_name(self, name: str) -> TagORM | None:
        return self.first(func.lower(TagORM.name) == name.lower())

    @log_op("tag.search")
    def search(self, query: str, limit: int = 10) -> builtins.list[TagORM]:
        """Case-insensitive substring match, most used first."""
        return self.list(
            func.lower(TagORM.name).contains(query.lower()),
            order_by=[TagORM.usage_count.desc(), TagORM.name],
            limit=limit,
        )

    @log_op("tag.popular")
    def popular(self, limit: int = 10) -> builtins.list[TagORM]:
        return self.list(
            TagORM.usage_count > 0, order_by=[TagORM.usage_count.desc(), TagORM.name], limit=limit
        )

    @log_op("tag.recent")
    def recent(self, limit: int = 10) -> builtins.list[TagORM]:
        return self.list(order_by=[TagORM.last_used.desc(), TagORM.name], limit=limit)

    @log_op("tag.unused")
    def unused(self) -> builtins.list[TagORM]:
        return self.list(TagORM.usage_count <= 0, order_by=[TagORM.name])

    @log_op("tag.create")
    def create(self, obj: TagORM) -> TagORM:
        return self.add(obj)

    @log_op("tag.record_usage")
    def record_usage(self, obj: TagORM, when: datetime) -> TagORM:
        return self.update(obj, usage_count=obj.usage_count + 1, last_used=when)

    @log_op("tag.delete")
    def delete(self, obj: TagORM) -> None:
        super().delete(obj)
