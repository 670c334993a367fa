from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from ..domain.models import utcnow


class Base(DeclarativeBase):
    pass


class CapabilityAssessmentORM(Base):
    __tablename__ = "capability_assessments"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    capability_area_id: Mapped[str] = mapped_column(String(255), nullable=False)
    capability_area_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    capability_domain_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    capability_domain_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="in_progress")
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    overall_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    # Exactly one current assessment per area; demoted rows are kept.
    is_current: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, nullable=False
    )
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    superseded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('in_progress', 'finalized')", name="ck_assessment_status"),
        Index("ix_assessment_area_current", "capability_area_id", "is_current"),
        # MySQL has no partial indexes; the lifecycle and merge paths guard it there.
        Index(
            "ux_assessment_one_current",
            "capability_area_id",
            unique=True,
            sqlite_where=text("is_current = 1"),
            postgresql_where=text("is_current"),
        ).ddl_if(dialect=("sqlite", "postgresql")),
    )

    ratings: Mapped[list[RatingORM]] = relationship(
        back_populates="assessment", cascade="all, delete-orphan"
    )


class RatingORM(Base):
    __tablename__ = "ratings"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    assessment_id: Mapped[str] = mapped_column(
        ForeignKey("capability_assessments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    dimension_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sub_dimension_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    aspect_id: Mapped[str] = mapped_column(String(128), nullable=False)
    current_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    target_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    previous_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    question_responses: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    evidence_responses: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    barriers: Mapped[str] = mapped_column(Text, nullable=False, default="")
    plans: Mapped[str] = mapped_column(Text, nullable=False, default="")
    carried_forward: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attachment_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("assessment_id", "dimension_id", "aspect_id", name="uq_rating_aspect"),
        CheckConstraint("current_level BETWEEN -1 AND 5", name="ck_rating_current_level"),
        CheckConstraint(
            "target_level IS NULL OR target_level BETWEEN -1 AND 5", name="ck_rating_target_level"
        ),
    )

    assessment: Mapped[CapabilityAssessmentORM] = relationship(back_populates="ratings")


class AssessmentHistoryORM(Base):
    __tablename__ = "assessment_history"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    # Origin reference only: history outlives the assessment it was taken from.
    capability_assessment_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    capability_area_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    snapshot_date: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    overall_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    dimension_scores: Mapped[dict[str, float]] = mapped_column(JSON, nullable=False, default=dict)
    ratings: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, nullable=False
    )


class TagORM(Base):
    __tablename__ = "tags"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_used: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, nullable=False
    )

    __table_args__ = (CheckConstraint("usage_count >= 0", name="ck_tag_usage_count"),)
