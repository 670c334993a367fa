"""Tests for input validation and the bundle schemas."""

from datetime import datetime

import pytest

from orbit_assessment.domain.merge import BundleContents
from orbit_assessment.domain.schemas import (
    AssessmentStartInput,
    RatingInput,
    TagRenameInput,
    TagUpdateInput,
    bundle_from_domain,
    bundle_to_domain,
    normalize_tags,
    parse_bundle,
    validate_input,
)
from orbit_assessment.infrastructure.exceptions import BundleImportError
from tests.helpers import T0, make_assessment, rate


def raw_bundle(**overrides):
    data = {
        "exportVersion": "1.0",
        "exportDate": "2025-03-01T10:00:00Z",
        "appVersion": "1.0.0",
        "scope": "full",
        "data": {
            "assessments": [
                {
                    "id": "a1",
                    "capabilityDomainId": "provider-management",
                    "capabilityDomainName": "Provider Management",
                    "capabilityAreaId": "provider-enrollment",
                    "capabilityAreaName": "Provider Enrollment",
                    "status": "finalized",
                    "tags": ["Q1", "  Q1 ", "baseline"],
                    "createdAt": "2025-02-01T08:00:00Z",
                    "updatedAt": "2025-03-01T08:00:00+01:00",
                    "finalizedAt": "2025-03-01T07:00:00Z",
                    "overallScore": 3.0,
                }
            ],
            "ratings": [
                {
                    "id": "r1",
                    "assessmentId": "a1",
                    "dimensionId": "technology",
                    "subDimensionId": "integration",
                    "aspectId": "api-management",
                    "currentLevel": 3,
                    "targetLevel": 0,
                    "notes": None,
                    "questionResponses": [{"questionIndex": 0, "answer": True}],
                    "updatedAt": "2025-03-01T07:00:00Z",
                    "somethingNew": "ignored",
                },
                {
                    "id": "r2",
                    "capabilityAssessmentId": "a1",
                    "dimensionId": "outcomes",
                    "subDimensionId": "",
                    "aspectId": "capability",
                    "currentLevel": -1,
                    "updatedAt": "2025-03-01T07:00:00Z",
                },
            ],
            "history": [],
            "tags": [{"id": "t1", "name": "baseline", "usageCount": 2, "lastUsed": "2025-03-01T07:00:00Z"}],
            "attachments": [{"id": "att1", "ratingId": "r1", "fileName": "evidence.pdf", "size": 1024}],
        },
        "metadata": {"totalAssessments": 1, "totalRatings": 2},
    }
    data.update(overrides)
    return data


class TestInputValidation:
    def test_rating_input_valid(self):
        result = validate_input(
            RatingInput,
            {"assessment_id": "a1", "aspect_id": "data-quality", "current_level": 3, "target_level": 4},
        )
        assert result.success is True
        assert result.data["target_level"] == 4

    def test_rating_input_rejects_out_of_range_level(self):
        result = validate_input(
            RatingInput, {"assessment_id": "a1", "aspect_id": "data-quality", "current_level": 6}
        )
        assert result.success is False
        assert result.errors[0].field == "current_level"

    def test_target_below_current_rejected(self):
        result = validate_input(
            RatingInput,
            {"assessment_id": "a1", "aspect_id": "data-quality", "current_level": 4, "target_level": 2},
        )
        assert result.success is False
        assert "target_level" in result.errors[0].message

    def test_not_applicable_allows_any_target(self):
        result = validate_input(
            RatingInput,
            {"assessment_id": "a1", "aspect_id": "data-quality", "current_level": -1, "target_level": 2},
        )
        assert result.success is True

    def test_notes_are_sanitized(self):
        result = validate_input(
            RatingInput,
            {
                "assessment_id": "a1",
                "aspect_id": "data-quality",
                "current_level": 2,
                "notes": "  <b>needs</b> work  ",
            },
        )
        assert result.success is True
        assert "<b>" not in result.data["notes"]

    def test_tags_normalized(self):
        result = validate_input(AssessmentStartInput, {"capability_area_id": "x", "tags": [" a ", "a", "b  c", ""]})
        assert result.data["tags"] == ["a", "b c"]
        assert normalize_tags(["x", "x", " y"]) == ["x", "y"]

    def test_tag_too_long(self):
        result = validate_input(TagUpdateInput, {"tags": ["x" * 51]})
        assert result.success is False

    def test_rename_to_same_name(self):
        result = validate_input(TagRenameInput, {"old_name": "q1", "new_name": "q1"})
        assert result.success is False


class TestBundleParsing:
    def test_parse_valid_bundle(self):
        bundle = parse_bundle(raw_bundle())
        assessment = bundle.data.assessments[0]
        # offsets are converted to naive UTC
        assert assessment.updated_at == datetime(2025, 3, 1, 7, 0, 0)
        assert assessment.updated_at.tzinfo is None

        r1, r2 = bundle.data.ratings
        assert r1.assessment_id == r2.assessment_id == "a1"
        assert r1.target_level is None
        assert r1.notes == ""
        assert r2.sub_dimension_id is None
        assert bundle.data.attachments[0].file_name == "evidence.pdf"

    def test_unsupported_version(self):
        with pytest.raises(BundleImportError) as exc:
            parse_bundle(raw_bundle(exportVersion="2.0"), file_path="b.json")
        assert "Unsupported export version" in exc.value.message
        assert exc.value.file_path == "b.json"

    def test_orphan_rating_rejected(self):
        data = raw_bundle()
        data["data"]["ratings"][0]["assessmentId"] = "missing"
        with pytest.raises(BundleImportError) as exc:
            parse_bundle(data)
        assert "missing" in exc.value.message

    def test_level_out_of_range_rejected(self):
        data = raw_bundle()
        data["data"]["ratings"][0]["currentLevel"] = 9
        with pytest.raises(BundleImportError):
            parse_bundle(data)

    def test_missing_required_field_reports_location(self):
        data = raw_bundle()
        del data["data"]["assessments"][0]["capabilityAreaId"]
        with pytest.raises(BundleImportError) as exc:
            parse_bundle(data)
        assert any("capabilityAreaId" in e for e in exc.value.details["errors"])


class TestBundleConversion:
    def test_to_domain(self):
        contents = bundle_to_domain(parse_bundle(raw_bundle()))
        (assessment,) = contents.assessments
        assert assessment.tags == ("Q1", "baseline")
        assert [r.aspect_id for r in contents.ratings["a1"]] == ["api-management", "capability"]
        assert contents.ratings["a1"][0].question_responses[0].answer is True
        assert contents.tags[0].name == "baseline"

    def test_from_domain_uses_camel_case(self):
        a = make_assessment(assessment_id="a9", tags=("q1",))
        contents = BundleContents(assessments=[a], ratings={"a9": [rate("a9", "data-quality", 4)]})
        bundle = bundle_from_domain(contents, app_version="1.0.0", export_date=T0)
        payload = bundle.to_json_dict()

        assert payload["exportVersion"] == "1.0"
        assert payload["data"]["assessments"][0]["capabilityAreaId"] == "provider-enrollment"
        assert payload["data"]["ratings"][0]["capabilityAssessmentId"] == "a9"
        assert payload["metadata"]["totalAssessments"] == 1
        assert payload["metadata"]["capabilities"] == ["Provider Management/Provider Enrollment"]

        # the serialized form validates again
        assert parse_bundle(payload).data.ratings[0].current_level == 4
