"""Builders for domain objects used across the test modules."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta

from orbit_assessment.domain.catalog import get_capability_model, get_maturity_model
from orbit_assessment.domain.models import CapabilityAssessment, Rating

T0 = datetime(2025, 3, 1, 9, 0, 0)


def later(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


def make_assessment(
    area_id: str = "provider-enrollment",
    *,
    assessment_id: str | None = None,
    updated_at: datetime = T0,
    status: str = "finalized",
    tags: tuple[str, ...] = (),
    overall_score: float | None = None,
) -> CapabilityAssessment:
    capabilities = get_capability_model()
    area = capabilities.area(area_id)
    domain = capabilities.domain(area.domain_id) if area else None
    return CapabilityAssessment(
        id=assessment_id or str(uuid.uuid4()),
        capability_area_id=area_id,
        capability_area_name=area.name if area else area_id,
        capability_domain_id=domain.id if domain else "unknown",
        capability_domain_name=domain.name if domain else "Unknown",
        status=status,
        created_at=T0,
        updated_at=updated_at,
        tags=tags,
        finalized_at=updated_at if status == "finalized" else None,
        overall_score=overall_score,
    )


def rate(
    assessment_id: str,
    aspect_id: str,
    level: int,
    target: int | None = None,
    updated_at: datetime = T0,
    **fields,
) -> Rating:
    """Rating placed where the maturity model puts ``aspect_id``."""
    location = get_maturity_model().locate(aspect_id)
    return Rating(
        id=str(uuid.uuid4()),
        assessment_id=assessment_id,
        dimension_id=location.dimension_id if location else fields.pop("dimension_id", "outcomes"),
        sub_dimension_id=location.sub_dimension_id if location else fields.pop("sub_dimension_id", None),
        aspect_id=aspect_id,
        current_level=level,
        target_level=target,
        updated_at=updated_at,
        **fields,
    )


def rate_many(assessment_id: str, levels: dict[str, int], updated_at: datetime = T0) -> list[Rating]:
    return [rate(assessment_id, aspect, level, updated_at=updated_at) for aspect, level in levels.items()]
