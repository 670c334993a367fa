"""
Repository classes for the ORBIT assessment tables.

Each repository wraps one ORM model, flushes but never commits, and
converts SQLAlchemy failures into ``DatabaseError`` subclasses.
"""

from __future__ import annotations

from .repositories_assessment import AssessmentRepo
from .repositories_history import HistoryRepo
from .repositories_rating import RatingRepo
from .repositories_tag import TagRepo

__all__ = [
    "AssessmentRepo",
    "RatingRepo",
    "HistoryRepo",
    "TagRepo",
]
