from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.orm import Session, sessionmaker

from .logging import get_logger

logger = get_logger(__name__)


class UnitOfWork:
    """One session, one transaction: commit on success, roll back on any error."""

    def __init__(self, SessionLocal: sessionmaker):
        self.SessionLocal = SessionLocal

    @contextmanager
    def begin(self) -> Iterator[Session]:
        s = self.SessionLocal()
        try:
            yield s
            s.commit()
        except Exception:
            logger.warning("Rolling back transaction", exc_info=True)
            s.rollback()
            raise
        finally:
            s.close()
