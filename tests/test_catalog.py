import pytest

from orbit_assessment.domain.catalog import (
    TECHNOLOGY,
    get_capability_model,
    get_maturity_model,
    parse_capability_model,
    parse_maturity_model,
)
from orbit_assessment.infrastructure.exceptions import CatalogError


def test_maturity_model_shape():
    model = get_maturity_model()
    assert model.dimension_ids() == [
        "outcomes",
        "roles",
        "businessArchitecture",
        "informationData",
        TECHNOLOGY,
    ]
    assert model.required_dimension_ids() == ["businessArchitecture", "informationData", TECHNOLOGY]
    assert model.total_aspect_count() == 52
    assert model.aspect_count("outcomes") == 6
    assert model.aspect_count(TECHNOLOGY) == 28
    assert len(model.sub_dimensions(TECHNOLOGY)) == 7


def test_required_dimensions_and_sub_dimension_aspects():
    model = get_maturity_model()
    assert model.is_required("informationData")
    assert not model.is_required("outcomes")
    assert not model.is_required("no-such-dimension")
    assert model.required_aspect_count() == 40

    integration = [a.id for a in model.aspects_of_sub_dimension("integration")]
    assert integration[:2] == ["api-management", "data-exchange"]
    assert len(integration) == 4
    assert model.aspects_of_sub_dimension("no-such-sub-dimension") == []


def test_locate_aspect():
    model = get_maturity_model()
    loc = model.locate("api-management")
    assert loc.dimension_id == TECHNOLOGY
    assert loc.sub_dimension_id == "integration"

    loc = model.locate("data-quality")
    assert loc.dimension_id == "informationData"
    assert loc.sub_dimension_id is None

    assert model.locate("no-such-aspect") is None


def test_level_names_and_descriptions():
    model = get_maturity_model()
    assert model.level_name(-1) == "Not Applicable"
    assert model.level_name(3) == "Defined"
    aspect = model.aspect("cloud-adoption")
    assert len(aspect.level_descriptions) == 5
    assert aspect.describe_level(1) == aspect.level_descriptions[0]
    assert aspect.describe_level(0) is None


def test_duplicate_aspect_ids_rejected():
    aspect = {"id": "dup", "name": "Dup", "description": "", "levels": ["a", "b", "c", "d", "e"]}
    data = {
        "version": "1.0",
        "maturityLevels": [],
        "dimensions": [
            {"id": "outcomes", "name": "Outcomes", "aspects": [aspect]},
            {"id": "roles", "name": "Roles", "aspects": [aspect]},
        ],
    }
    with pytest.raises(CatalogError):
        parse_maturity_model(data)


def test_capability_model_flattens_categories():
    capabilities = get_capability_model()
    assert capabilities.total_area_count() == 14

    area = capabilities.area("data-warehouse")
    assert area.domain_id == "data-management"
    assert area.category_id == "data-foundations"
    assert [a.id for a in capabilities.areas_for_domain("performance-management")] == [
        "quality-measurement",
        "program-integrity",
    ]
    assert capabilities.domain_for_area("claims-payment").id == "claims-encounter-management"
    assert not capabilities.is_known_area("made-up-area")


def test_capability_model_missing_key():
    with pytest.raises(CatalogError):
        parse_capability_model({"domains": [{"id": "x", "name": "X"}]})
