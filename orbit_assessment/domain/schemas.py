"""
Pydantic schemas for user input and for the export/import bundle.

Input schemas sanitize free text the way every user-facing form does.
Bundle schemas mirror the camelCase JSON contract and are kept verbatim
(no sanitizing) so that content fingerprints survive an export/import
round trip.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from html import unescape
from typing import Annotated, Any, Literal

from pydantic import (
    AfterValidator,
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from ..infrastructure.exceptions import BundleImportError
from .merge import BundleContents
from .models import (
    AssessmentHistory,
    CapabilityAssessment,
    EvidenceResponse,
    HistoricalRating,
    QuestionResponse,
    Rating,
    Tag,
)

SUPPORTED_VERSIONS = ("1.0",)
MAX_TAG_LENGTH = 50
MAX_TEXT_LENGTH = 10000


def to_naive_utc(value: datetime) -> datetime:
    """Timestamps are compared as naive UTC throughout the engine."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(to_naive_utc)]


def normalize_tags(tags: list[str]) -> list[str]:
    seen: dict[str, None] = {}
    for tag in tags:
        cleaned = " ".join(tag.split())
        if cleaned:
            seen.setdefault(cleaned)
    return list(seen)


# ---------------------------------------------------------------------------
# User input
# ---------------------------------------------------------------------------


class BaseValidationSchema(BaseModel):
    """Base schema with common validation utilities."""

    model_config = ConfigDict(str_strip_whitespace=True, validate_assignment=True)

    @field_validator("*", mode="before")
    def sanitize_strings(cls, v):
        """Strip markup and control characters from free text."""
        if isinstance(v, str):
            cleaned = unescape(v.strip())
            cleaned = re.sub(
                r"<\s*script[^>]*>.*?<\s*/\s*script\s*>",
                "",
                cleaned,
                flags=re.IGNORECASE | re.DOTALL,
            )
            cleaned = re.sub(r"<[^>]+>", "", cleaned)
            cleaned = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]", "", cleaned)
            return cleaned
        return v


class QuestionResponseInput(BaseValidationSchema):
    question_index: int = Field(..., ge=0)
    answer: bool | None = None


class EvidenceResponseInput(BaseValidationSchema):
    evidence_index: int = Field(..., ge=0)
    provided: bool = False
    notes: str = Field("", max_length=2000)


class AssessmentStartInput(BaseValidationSchema):
    """Validation schema for starting an assessment of a capability area."""

    capability_area_id: str = Field(..., min_length=1, max_length=255)
    tags: list[str] = Field(default_factory=list)

    @field_validator("tags")
    def validate_tags(cls, v):
        return TagUpdateInput.validate_tag_list(v)


class RatingInput(BaseValidationSchema):
    """Validation schema for rating a single aspect."""

    assessment_id: str = Field(..., min_length=1)
    aspect_id: str = Field(..., min_length=1)
    current_level: int = Field(..., ge=-1, le=5)
    target_level: int | None = Field(None, ge=1, le=5)
    notes: str = Field("", max_length=MAX_TEXT_LENGTH)
    barriers: str = Field("", max_length=MAX_TEXT_LENGTH)
    plans: str = Field("", max_length=MAX_TEXT_LENGTH)
    question_responses: list[QuestionResponseInput] = Field(default_factory=list)
    evidence_responses: list[EvidenceResponseInput] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_target(self):
        """A target below the current level makes no sense."""
        if (
            self.target_level is not None
            and self.current_level > 0
            and self.target_level < self.current_level
        ):
            raise ValueError("target_level cannot be less than current_level")
        return self


class TagUpdateInput(BaseValidationSchema):
    tags: list[str] = Field(default_factory=list)

    @staticmethod
    def validate_tag_list(v: list[str]) -> list[str]:
        tags = normalize_tags(v)
        too_long = [t for t in tags if len(t) > MAX_TAG_LENGTH]
        if too_long:
            raise ValueError(f"Tags longer than {MAX_TAG_LENGTH} characters: {', '.join(too_long)}")
        return tags

    @field_validator("tags")
    def validate_tags(cls, v):
        return cls.validate_tag_list(v)


class TagRenameInput(BaseValidationSchema):
    old_name: str = Field(..., min_length=1, max_length=MAX_TAG_LENGTH)
    new_name: str = Field(..., min_length=1, max_length=MAX_TAG_LENGTH)

    @model_validator(mode="after")
    def names_differ(self):
        if self.old_name == self.new_name:
            raise ValueError("new_name must differ from old_name")
        return self


class ValidationErrorDetail(BaseModel):
    """Schema for validation error details."""

    field: str
    message: str
    value: Any = None


class ValidationResponse(BaseModel):
    """Schema for validation responses."""

    success: bool
    errors: list[ValidationErrorDetail] = []
    data: dict[str, Any] | None = None


def validate_input(schema_class: type[BaseModel], data: dict[str, Any]) -> ValidationResponse:
    """
    Centralized validation function that returns structured validation results.

    Example:
        >>> result = validate_input(RatingInput, {"assessment_id": "a1", "aspect_id": "x", "current_level": 3})
        >>> if not result.success:
        ...     for error in result.errors:
        ...         print(f"Error in {error.field}: {error.message}")
    """
    try:
        validated = schema_class(**data)
        return ValidationResponse(success=True, data=validated.model_dump())
    except PydanticValidationError as e:
        errors = [
            ValidationErrorDetail(
                field=".".join(str(x) for x in error["loc"]) or "general",
                message=error["msg"],
                value=error.get("input"),
            )
            for error in e.errors()
        ]
        return ValidationResponse(success=False, errors=errors)


# ---------------------------------------------------------------------------
# Bundle records
# ---------------------------------------------------------------------------


class BundleRecord(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore", frozen=True
    )


class QuestionResponseRecord(BundleRecord):
    question_index: int
    answer: bool | None = None


class EvidenceResponseRecord(BundleRecord):
    evidence_index: int
    provided: bool = False
    notes: str = ""


class AssessmentRecord(BundleRecord):
    id: str
    capability_domain_id: str = ""
    capability_domain_name: str = ""
    capability_area_id: str
    capability_area_name: str = ""
    status: Literal["in_progress", "finalized"]
    tags: list[str] = Field(default_factory=list)
    created_at: UtcDatetime
    updated_at: UtcDatetime
    finalized_at: UtcDatetime | None = None
    overall_score: float | None = None


class _RatingContent(BundleRecord):
    dimension_id: str
    sub_dimension_id: str | None = None
    aspect_id: str
    current_level: int = Field(..., ge=-1, le=5)
    target_level: int | None = Field(None, ge=-1, le=5)
    previous_level: int | None = Field(None, ge=-1, le=5)
    question_responses: list[QuestionResponseRecord] = Field(default_factory=list)
    evidence_responses: list[EvidenceResponseRecord] = Field(default_factory=list)
    notes: str = ""
    barriers: str = ""
    plans: str = ""
    carried_forward: bool = False
    attachment_ids: list[str] = Field(default_factory=list)

    @field_validator("sub_dimension_id", mode="before")
    def blank_sub_dimension(cls, v):
        return v or None

    @field_validator("notes", "barriers", "plans", mode="before")
    def none_text(cls, v):
        return "" if v is None else v

    @field_validator("target_level", "previous_level", mode="after")
    def unset_level(cls, v):
        return None if v == 0 else v


class RatingRecord(_RatingContent):
    id: str
    assessment_id: str = Field(
        ...,
        validation_alias=AliasChoices("capabilityAssessmentId", "assessmentId", "assessment_id"),
        serialization_alias="capabilityAssessmentId",
    )
    updated_at: UtcDatetime


class HistoricalRatingRecord(_RatingContent):
    pass


class HistoryRecord(BundleRecord):
    id: str
    capability_assessment_id: str
    capability_area_id: str
    snapshot_date: UtcDatetime
    tags: list[str] = Field(default_factory=list)
    overall_score: float | None = None
    dimension_scores: dict[str, float] = Field(default_factory=dict)
    ratings: list[HistoricalRatingRecord] = Field(default_factory=list)


class TagRecord(BundleRecord):
    id: str
    name: str = Field(..., min_length=1)
    usage_count: int = Field(0, ge=0)
    last_used: UtcDatetime


class AttachmentRecord(BundleRecord):
    """Attachment metadata only; bytes travel outside the JSON body."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str
    rating_id: str | None = None
    file_name: str | None = None


class BundleData(BundleRecord):
    assessments: list[AssessmentRecord] = Field(default_factory=list)
    ratings: list[RatingRecord] = Field(default_factory=list)
    history: list[HistoryRecord] = Field(default_factory=list)
    tags: list[TagRecord] = Field(default_factory=list)
    attachments: list[AttachmentRecord] = Field(default_factory=list)


class BundleMetadata(BundleRecord):
    total_assessments: int = 0
    total_ratings: int = 0
    total_history: int = 0
    total_attachments: int = 0
    capabilities: list[str] = Field(default_factory=list)
    checksum: str | None = None


class ExportBundle(BundleRecord):
    export_version: str
    export_date: UtcDatetime
    app_version: str = ""
    scope: Literal["full", "domain", "area"] = "full"
    scope_details: dict[str, Any] | None = None
    data: BundleData
    metadata: BundleMetadata = Field(default_factory=BundleMetadata)

    @field_validator("export_version")
    def supported_version(cls, v):
        if v not in SUPPORTED_VERSIONS:
            raise ValueError(
                f"Unsupported export version {v}; supported: {', '.join(SUPPORTED_VERSIONS)}"
            )
        return v

    @model_validator(mode="after")
    def ratings_reference_assessments(self):
        """Every rating must belong to an assessment in the same bundle."""
        ids = {a.id for a in self.data.assessments}
        orphans = sorted({r.assessment_id for r in self.data.ratings if r.assessment_id not in ids})
        if orphans:
            raise ValueError(f"Ratings reference unknown assessments: {', '.join(orphans)}")
        return self

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def parse_bundle(data: dict[str, Any], file_path: str | None = None) -> ExportBundle:
    """Validate raw bundle JSON, raising ``BundleImportError`` with every problem found."""
    try:
        return ExportBundle.model_validate(data)
    except PydanticValidationError as e:
        problems = [
            f"{'.'.join(str(x) for x in err['loc']) or 'bundle'}: {err['msg']}" for err in e.errors()
        ]
        raise BundleImportError(
            f"Invalid bundle: {'; '.join(problems[:10])}",
            file_path=file_path,
            details={"file_path": file_path, "errors": problems},
        ) from e


# ---------------------------------------------------------------------------
# Conversion between bundle records and domain entities
# ---------------------------------------------------------------------------


def _historical_from_record(r: _RatingContent) -> HistoricalRating:
    return HistoricalRating(
        dimension_id=r.dimension_id,
        sub_dimension_id=r.sub_dimension_id,
        aspect_id=r.aspect_id,
        current_level=r.current_level,
        target_level=r.target_level,
        previous_level=r.previous_level,
        question_responses=tuple(
            QuestionResponse(q.question_index, q.answer) for q in r.question_responses
        ),
        evidence_responses=tuple(
            EvidenceResponse(e.evidence_index, e.provided, e.notes) for e in r.evidence_responses
        ),
        notes=r.notes,
        barriers=r.barriers,
        plans=r.plans,
        carried_forward=r.carried_forward,
        attachment_ids=tuple(r.attachment_ids),
    )


def bundle_to_domain(bundle: ExportBundle) -> BundleContents:
    ratings: dict[str, list[Rating]] = {}
    for r in bundle.data.ratings:
        ratings.setdefault(r.assessment_id, []).append(
            _historical_from_record(r).to_rating(r.id, r.assessment_id, r.updated_at)
        )

    return BundleContents(
        assessments=[
            CapabilityAssessment(
                id=a.id,
                capability_area_id=a.capability_area_id,
                capability_area_name=a.capability_area_name,
                capability_domain_id=a.capability_domain_id,
                capability_domain_name=a.capability_domain_name,
                status=a.status,
                created_at=a.created_at,
                updated_at=a.updated_at,
                tags=tuple(normalize_tags(a.tags)),
                finalized_at=a.finalized_at,
                overall_score=a.overall_score,
            )
            for a in bundle.data.assessments
        ],
        ratings=ratings,
        history=[
            AssessmentHistory(
                id=h.id,
                capability_assessment_id=h.capability_assessment_id,
                capability_area_id=h.capability_area_id,
                snapshot_date=h.snapshot_date,
                overall_score=h.overall_score,
                tags=tuple(normalize_tags(h.tags)),
                dimension_scores=dict(h.dimension_scores),
                ratings=tuple(_historical_from_record(r) for r in h.ratings),
            )
            for h in bundle.data.history
        ],
        tags=[
            Tag(id=t.id, name=t.name, usage_count=t.usage_count, last_used=t.last_used)
            for t in bundle.data.tags
        ],
    )


def _rating_content(r: Rating | HistoricalRating) -> dict[str, Any]:
    return {
        "dimension_id": r.dimension_id,
        "sub_dimension_id": r.sub_dimension_id,
        "aspect_id": r.aspect_id,
        "current_level": r.current_level,
        "target_level": r.target_level,
        "previous_level": r.previous_level,
        "question_responses": [
            QuestionResponseRecord(question_index=q.question_index, answer=q.answer)
            for q in r.question_responses
        ],
        "evidence_responses": [
            EvidenceResponseRecord(evidence_index=e.evidence_index, provided=e.provided, notes=e.notes)
            for e in r.evidence_responses
        ],
        "notes": r.notes,
        "barriers": r.barriers,
        "plans": r.plans,
        "carried_forward": r.carried_forward,
        "attachment_ids": list(r.attachment_ids),
    }


def bundle_from_domain(
    contents: BundleContents,
    *,
    app_version: str,
    export_date: datetime,
    scope: Literal["full", "domain", "area"] = "full",
    scope_details: dict[str, Any] | None = None,
    attachments: list[dict[str, Any]] | None = None,
) -> ExportBundle:
    assessments = [
        AssessmentRecord(
            id=a.id,
            capability_domain_id=a.capability_domain_id,
            capability_domain_name=a.capability_domain_name,
            capability_area_id=a.capability_area_id,
            capability_area_name=a.capability_area_name,
            status=a.status,
            tags=list(a.tags),
            created_at=a.created_at,
            updated_at=a.updated_at,
            finalized_at=a.finalized_at,
            overall_score=a.overall_score,
        )
        for a in contents.assessments
    ]
    ratings = [
        RatingRecord(id=r.id, assessment_id=r.assessment_id, updated_at=r.updated_at, **_rating_content(r))
        for rs in contents.ratings.values()
        for r in rs
    ]
    history = [
        HistoryRecord(
            id=h.id,
            capability_assessment_id=h.capability_assessment_id,
            capability_area_id=h.capability_area_id,
            snapshot_date=h.snapshot_date,
            tags=list(h.tags),
            overall_score=h.overall_score,
            dimension_scores=dict(h.dimension_scores),
            ratings=[HistoricalRatingRecord(**_rating_content(r)) for r in h.ratings],
        )
        for h in contents.history
    ]
    tags = [
        TagRecord(id=t.id, name=t.name, usage_count=t.usage_count, last_used=t.last_used)
        for t in contents.tags
    ]
    attachment_records = [AttachmentRecord.model_validate(a) for a in attachments or []]

    return ExportBundle(
        export_version=SUPPORTED_VERSIONS[-1],
        export_date=export_date,
        app_version=app_version,
        scope=scope,
        scope_details=scope_details,
        data=BundleData(
            assessments=assessments,
            ratings=ratings,
            history=history,
            tags=tags,
            attachments=attachment_records,
        ),
        metadata=BundleMetadata(
            total_assessments=len(assessments),
            total_ratings=len(ratings),
            total_history=len(history),
            total_attachments=len(attachment_records),
            capabilities=sorted(
                {f"{a.capability_domain_name}/{a.capability_area_name}" for a in contents.assessments}
            ),
        ),
    )
