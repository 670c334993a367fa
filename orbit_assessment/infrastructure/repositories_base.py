# orbit_assessment/infrastructure/repositories_base.py
from __future__ import annotations

import builtins
from collections.abc import Iterable
from typing import Any, Generic, NoReturn, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .exceptions import handle_database_error
from .logging import get_logger

T = TypeVar("T")  # ORM model type


class BaseRepository(Generic[T]):
    """
    Small generic repository: keyed reads, filtered listing and flush-only writes.

    Entity repos set ``model`` and decorate their public methods with
    ``log_database_operation``. Commits belong to the caller's UnitOfWork.
    """

    model: type[T]  # must be set by subclasses

    def __init__(self, session: Session):
        if not hasattr(self, "model") or self.model is None:
            raise ValueError(f"{self.__class__.__name__}.model must be set to an ORM class.")
        self.s = session
        self.logger = get_logger(self.__class__.__name__)

    def _handle_error(self, exc: SQLAlchemyError, operation: str) -> NoReturn:
        """Log and convert a SQLAlchemy error to the application's DatabaseError family."""
        self.logger.error(f"Database error in {operation}: {exc}", exc_info=True)
        raise handle_database_error(exc, operation) from exc

    # ---------- Read ----------
    def get(self, id_: Any) -> T | None:
        try:
            return self.s.get(self.model, id_)
        except SQLAlchemyError as e:
            self._handle_error(e, f"get {self.model.__name__}")

    def list(
        self,
        *filters: Any,
        order_by: Iterable[Any] | None = None,
        limit: int | None = None,
    ) -> builtins.list[T]:
        stmt = select(self.model)
        for f in filters:
            stmt = stmt.where(f)
        for ob in order_by or ():
            stmt = stmt.order_by(ob)
        if limit:
            stmt = stmt.limit(limit)
        try:
            return builtins.list(self.s.scalars(stmt).all())
        except SQLAlchemyError as e:
            self._handle_error(e, f"list {self.model.__name__}")

    def first(self, *filters: Any, order_by: Iterable[Any] | None = None) -> T | None:
        rows = self.list(*filters, order_by=order_by, limit=1)
        return rows[0] if rows else None

    def count(self, *filters: Any) -> int:
        stmt = select(func.count()).select_from(self.model)
        for f in filters:
            stmt = stmt.where(f)
        try:
            return int(self.s.scalar(stmt) or 0)
        except SQLAlchemyError as e:
            self._handle_error(e, f"count {self.model.__name__}")

    # ---------- Write ----------
    def add(self, obj: T) -> T:
        try:
            self.s.add(obj)
            self.s.flush()  # surface constraint errors inside the transaction
            return obj
        except SQLAlchemyError as e:
            self._handle_error(e, f"add {self.model.__name__}")

    def update(self, obj: T, **fields: Any) -> T:
        for k, v in fields.items():
            setattr(obj, k, v)
        try:
            self.s.flush()
            return obj
        except SQLAlchemyError as e:
            self._handle_error(e, f"update {self.model.__name__}")

    def update_where(self, *filters: Any, **values: Any) -> int:
        """Set ``values`` on rows matching ``filters`` in one UPDATE; returns the row count."""
        stmt = update(self.model)
        for f in filters:
            stmt = stmt.where(f)
        stmt = stmt.values(**values).execution_options(synchronize_session="fetch")
        try:
            return self.s.execute(stmt).rowcount
        except SQLAlchemyError as e:
            self._handle_error(e, f"update {self.model.__name__}")

    def delete(self, obj: T) -> None:
        try:
            self.s.delete(obj)
            self.s.flush()
        except SQLAlchemyError as e:
            self._handle_error(e, f"delete {self.model.__name__}")
