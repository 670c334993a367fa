"""
Read-only reference models: the ORBIT maturity model and the capability
reference model.

Both are loaded once from the packaged JSON files and indexed by id, so every
lookup is a dictionary access. Lookups for unknown ids return ``None`` or an
empty list; only malformed data files raise (``CatalogError``).
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

from ..infrastructure.exceptions import CatalogError
from ..infrastructure.logging import get_logger

logger = get_logger(__name__)

DATA_DIR = Path(__file__).resolve().parent.parent / "data"
ORBIT_MODEL_FILE = DATA_DIR / "orbit_model.json"
CAPABILITIES_FILE = DATA_DIR / "capabilities.json"

NOT_APPLICABLE = -1
NOT_ASSESSED = 0
MIN_LEVEL = 1
MAX_LEVEL = 5

TECHNOLOGY = "technology"
DIMENSION_ORDER = ("outcomes", "roles", "businessArchitecture", "informationData", TECHNOLOGY)


@dataclass(frozen=True, slots=True)
class Aspect:
    id: str
    name: str
    description: str
    level_descriptions: tuple[str, ...]  # index 0 is level 1

    def describe_level(self, level: int) -> str | None:
        if MIN_LEVEL <= level <= MAX_LEVEL:
            return self.level_descriptions[level - 1]
        return None


@dataclass(frozen=True, slots=True)
class SubDimension:
    id: str
    name: str
    description: str
    aspects: tuple[Aspect, ...]


@dataclass(frozen=True, slots=True)
class Dimension:
    id: str
    name: str
    description: str
    required: bool
    aspects: tuple[Aspect, ...] = ()
    sub_dimensions: tuple[SubDimension, ...] = ()

    @property
    def has_sub_dimensions(self) -> bool:
        return bool(self.sub_dimensions)


@dataclass(frozen=True, slots=True)
class MaturityLevel:
    level: int
    name: str
    description: str


@dataclass(frozen=True, slots=True)
class AspectLocation:
    dimension_id: str
    sub_dimension_id: str | None = None


@dataclass(frozen=True, slots=True)
class CapabilityArea:
    id: str
    name: str
    description: str
    domain_id: str
    category_id: str | None = None
    topics: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class CapabilityDomain:
    id: str
    name: str
    layer: str
    description: str
    areas: tuple[CapabilityArea, ...]


class MaturityModel:
    """
    Indexed view over the ORBIT dimensions.

    Technology is the only dimension with sub-dimensions; its aspects are
    reachable both through the dimension (flattened) and per sub-dimension.
    """

    def __init__(
        self,
        version: str,
        dimensions: list[Dimension],
        maturity_levels: list[MaturityLevel],
    ):
        self.version = version
        self.dimensions: tuple[Dimension, ...] = tuple(dimensions)
        self.maturity_levels: tuple[MaturityLevel, ...] = tuple(maturity_levels)

        self._dimensions = {d.id: d for d in self.dimensions}
        self._sub_dimensions: dict[str, SubDimension] = {}
        self._aspects: dict[str, Aspect] = {}
        self._locations: dict[str, AspectLocation] = {}
        self._levels = {lvl.level: lvl for lvl in self.maturity_levels}

        for dim in self.dimensions:
            for aspect in dim.aspects:
                self._index_aspect(aspect, AspectLocation(dim.id))
            for sub in dim.sub_dimensions:
                self._sub_dimensions[sub.id] = sub
                for aspect in sub.aspects:
                    self._index_aspect(aspect, AspectLocation(dim.id, sub.id))

    def _index_aspect(self, aspect: Aspect, location: AspectLocation) -> None:
        if aspect.id in self._aspects:
            raise CatalogError(f"Duplicate aspect id '{aspect.id}'", source=str(ORBIT_MODEL_FILE))
        self._aspects[aspect.id] = aspect
        self._locations[aspect.id] = location

    # -------- dimensions --------
    def dimension(self, dimension_id: str) -> Dimension | None:
        return self._dimensions.get(dimension_id)

    def dimension_ids(self) -> list[str]:
        return [d.id for d in self.dimensions]

    def required_dimension_ids(self) -> list[str]:
        return [d.id for d in self.dimensions if d.required]

    def is_required(self, dimension_id: str) -> bool:
        dim = self._dimensions.get(dimension_id)
        return bool(dim and dim.required)

    # -------- sub-dimensions --------
    def sub_dimension(self, sub_dimension_id: str) -> SubDimension | None:
        return self._sub_dimensions.get(sub_dimension_id)

    def sub_dimensions(self, dimension_id: str = TECHNOLOGY) -> list[SubDimension]:
        dim = self._dimensions.get(dimension_id)
        return list(dim.sub_dimensions) if dim else []

    # -------- aspects --------
    def aspects_of(self, dimension_id: str) -> list[Aspect]:
        """All aspects of a dimension, flattening sub-dimensions."""
        dim = self._dimensions.get(dimension_id)
        if dim is None:
            return []
        if dim.has_sub_dimensions:
            return [a for sub in dim.sub_dimensions for a in sub.aspects]
        return list(dim.aspects)

    def aspects_of_sub_dimension(self, sub_dimension_id: str) -> list[Aspect]:
        sub = self._sub_dimensions.get(sub_dimension_id)
        return list(sub.aspects) if sub else []

    def aspect(self, aspect_id: str) -> Aspect | None:
        return self._aspects.get(aspect_id)

    def locate(self, aspect_id: str) -> AspectLocation | None:
        return self._locations.get(aspect_id)

    def total_aspect_count(self) -> int:
        return len(self._aspects)

    def aspect_count(self, dimension_id: str) -> int:
        return len(self.aspects_of(dimension_id))

    def required_aspect_count(self) -> int:
        return sum(self.aspect_count(d) for d in self.required_dimension_ids())

    # -------- levels --------
    def level(self, level: int) -> MaturityLevel | None:
        return self._levels.get(level)

    def level_name(self, level: int) -> str:
        lvl = self._levels.get(level)
        return lvl.name if lvl else "Unknown"


class CapabilityModel:
    """Capability domains and areas, indexed by id."""

    def __init__(self, version: str, domains: list[CapabilityDomain]):
        self.version = version
        self.domains: tuple[CapabilityDomain, ...] = tuple(domains)
        self._domains = {d.id: d for d in self.domains}
        self._areas: dict[str, CapabilityArea] = {}
        for domain in self.domains:
            for area in domain.areas:
                if area.id in self._areas:
                    raise CatalogError(
                        f"Duplicate capability area id '{area.id}'", source=str(CAPABILITIES_FILE)
                    )
                self._areas[area.id] = area

    def domain(self, domain_id: str) -> CapabilityDomain | None:
        return self._domains.get(domain_id)

    def area(self, area_id: str) -> CapabilityArea | None:
        return self._areas.get(area_id)

    def is_known_area(self, area_id: str) -> bool:
        return area_id in self._areas

    def domain_for_area(self, area_id: str) -> CapabilityDomain | None:
        area = self._areas.get(area_id)
        return self._domains.get(area.domain_id) if area else None

    def areas_for_domain(self, domain_id: str) -> list[CapabilityArea]:
        domain = self._domains.get(domain_id)
        return list(domain.areas) if domain else []

    def all_areas(self) -> list[CapabilityArea]:
        return list(self._areas.values())

    def total_area_count(self) -> int:
        return len(self._areas)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _read_json(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise CatalogError(f"Cannot read {path.name}: {e}", source=str(path)) from e


def _parse_aspect(raw: dict[str, Any]) -> Aspect:
    levels = tuple(raw.get("levels", ()))
    if len(levels) != MAX_LEVEL:
        raise CatalogError(
            f"Aspect '{raw.get('id')}' must describe exactly {MAX_LEVEL} levels",
            source=str(ORBIT_MODEL_FILE),
        )
    return Aspect(
        id=raw["id"],
        name=raw["name"],
        description=raw.get("description", ""),
        level_descriptions=levels,
    )


def parse_maturity_model(data: dict[str, Any]) -> MaturityModel:
    """Build a MaturityModel from its JSON representation."""
    try:
        dimensions: list[Dimension] = []
        for raw_dim in data["dimensions"]:
            subs = tuple(
                SubDimension(
                    id=raw_sub["id"],
                    name=raw_sub["name"],
                    description=raw_sub.get("description", ""),
                    aspects=tuple(_parse_aspect(a) for a in raw_sub["aspects"]),
                )
                for raw_sub in raw_dim.get("subDimensions", ())
            )
            dimensions.append(
                Dimension(
                    id=raw_dim["id"],
                    name=raw_dim["name"],
                    description=raw_dim.get("description", ""),
                    required=bool(raw_dim.get("required", False)),
                    aspects=tuple(_parse_aspect(a) for a in raw_dim.get("aspects", ())),
                    sub_dimensions=subs,
                )
            )
        levels = [
            MaturityLevel(level=int(lvl["level"]), name=lvl["name"], description=lvl["description"])
            for lvl in data["maturityLevels"]
        ]
    except KeyError as e:
        raise CatalogError(f"Maturity model is missing key {e}", source=str(ORBIT_MODEL_FILE)) from e

    return MaturityModel(version=str(data.get("version", "1.0")), dimensions=dimensions, maturity_levels=levels)


def parse_capability_model(data: dict[str, Any]) -> CapabilityModel:
    """Build a CapabilityModel; categorized domains are flattened into their areas."""

    def make_area(raw: dict[str, Any], domain_id: str, category_id: str | None) -> CapabilityArea:
        return CapabilityArea(
            id=raw["id"],
            name=raw["name"],
            description=raw.get("description", ""),
            domain_id=domain_id,
            category_id=category_id,
            topics=tuple(raw.get("topics", ())),
        )

    try:
        domains: list[CapabilityDomain] = []
        for raw in data["domains"]:
            if "categories" in raw:
                areas = tuple(
                    make_area(a, raw["id"], cat["id"])
                    for cat in raw["categories"]
                    for a in cat["areas"]
                )
            else:
                areas = tuple(make_area(a, raw["id"], None) for a in raw["areas"])
            domains.append(
                CapabilityDomain(
                    id=raw["id"],
                    name=raw["name"],
                    layer=raw.get("layer", "core"),
                    description=raw.get("description", ""),
                    areas=areas,
                )
            )
    except KeyError as e:
        raise CatalogError(f"Capability model is missing key {e}", source=str(CAPABILITIES_FILE)) from e

    return CapabilityModel(version=str(data.get("version", "1.0")), domains=domains)


@lru_cache(maxsize=1)
def get_maturity_model() -> MaturityModel:
    model = parse_maturity_model(_read_json(ORBIT_MODEL_FILE))
    logger.debug(
        f"Loaded ORBIT model v{model.version}: "
        f"{len(model.dimensions)} dimensions, {model.total_aspect_count()} aspects"
    )
    return model


@lru_cache(maxsize=1)
def get_capability_model() -> CapabilityModel:
    model = parse_capability_model(_read_json(CAPABILITIES_FILE))
    logger.debug(f"Loaded capability model: {model.total_area_count()} areas")
    return model
