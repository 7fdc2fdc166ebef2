"""
Aggregation pipeline stages

A closed set of stage variants (Match, Group, Sort, Lookup, Unwind, Project,
GeoNear), each able to render itself as a MongoDB stage document, and a
Pipeline builder that checks stage shape and ordering as stages are added:

    pipeline = (Pipeline()
                .match({"age": {"$gt": 25}})
                .group("address.city", count=count(), avgAge=avg("age"), users=push("name"))
                .sort(("count", -1)))

Field paths are written without the leading ``$``; the stages add it.
"""

from typing import Annotated, Any, Dict, Iterator, List, Literal, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator, model_validator

from errors import QueryError
from geo import is_valid_coordinates, point
from repository import validate_filter


def _ref(path: str) -> str:
    return path if path.startswith("$") else f"${path}"


# -----------------------------
# Group accumulators
# -----------------------------

class Accumulator(BaseModel):
    op: Literal["count", "sum", "avg", "push", "min", "max"]
    field: Optional[str] = None

    @model_validator(mode="after")
    def check_field(self):
        if self.op != "count" and not self.field:
            raise ValueError(f"{self.op} accumulator needs a field")
        return self

    def to_mongo(self) -> dict:
        if self.op == "count":
            return {"$sum": 1}
        return {f"${self.op}": _ref(self.field)}


def count() -> Accumulator:
    return Accumulator(op="count")


def total(field: str) -> Accumulator:
    return Accumulator(op="sum", field=field)


def avg(field: str) -> Accumulator:
    return Accumulator(op="avg", field=field)


def push(field: str) -> Accumulator:
    return Accumulator(op="push", field=field)


def minimum(field: str) -> Accumulator:
    return Accumulator(op="min", field=field)


def maximum(field: str) -> Accumulator:
    return Accumulator(op="max", field=field)


# -----------------------------
# Projection values
# -----------------------------

class Round(BaseModel):
    """Numeric field rounded to a number of decimal places."""
    path: str
    places: int = 0

    def to_mongo(self) -> dict:
        return {"$round": [_ref(self.path), self.places]}


ProjectValue = Union[bool, int, str, Round]


# -----------------------------
# Stages
# -----------------------------

class Match(BaseModel):
    kind: Literal["match"] = "match"
    filter: Dict[str, Any]

    @field_validator("filter")
    @classmethod
    def check_filter(cls, v):
        validate_filter(v)
        if _uses_near(v):
            raise ValueError("$near is not allowed in a match stage, use GeoNear")
        return v

    def to_mongo(self) -> dict:
        return {"$match": self.filter}


def _uses_near(query) -> bool:
    if isinstance(query, dict):
        return any(k == "$near" or _uses_near(v) for k, v in query.items())
    if isinstance(query, list):
        return any(_uses_near(c) for c in query)
    return False


class Group(BaseModel):
    kind: Literal["group"] = "group"
    key: Optional[str] = Field(None, description="Field path to group on; None groups everything together")
    accumulators: Dict[str, Accumulator]

    @field_validator("accumulators")
    @classmethod
    def check_accumulators(cls, v):
        if not v:
            raise ValueError("group needs at least one accumulator")
        if "_id" in v:
            raise ValueError("_id is reserved for the group key")
        return v

    def to_mongo(self) -> dict:
        spec = {"_id": _ref(self.key) if self.key else None}
        spec.update({name: acc.to_mongo() for name, acc in self.accumulators.items()})
        return {"$group": spec}


class Sort(BaseModel):
    kind: Literal["sort"] = "sort"
    keys: List[Tuple[str, int]]

    @field_validator("keys")
    @classmethod
    def check_keys(cls, v):
        if not v:
            raise ValueError("sort needs at least one key")
        for field, direction in v:
            if direction not in (1, -1):
                raise ValueError(f"sort direction for {field} must be 1 or -1")
        return v

    def to_mongo(self) -> dict:
        return {"$sort": dict(self.keys)}


class Lookup(BaseModel):
    kind: Literal["lookup"] = "lookup"
    from_collection: str
    local_field: str
    foreign_field: str
    output_field: str

    def to_mongo(self) -> dict:
        return {"$lookup": {
            "from": self.from_collection,
            "localField": self.local_field,
            "foreignField": self.foreign_field,
            "as": self.output_field,
        }}


class Unwind(BaseModel):
    """Flattens an array field. Documents whose array is empty or missing are dropped."""
    kind: Literal["unwind"] = "unwind"
    path: str
    preserve_empty: bool = False

    def to_mongo(self) -> dict:
        if self.preserve_empty:
            return {"$unwind": {"path": _ref(self.path), "preserveNullAndEmptyArrays": True}}
        return {"$unwind": _ref(self.path)}


class Project(BaseModel):
    kind: Literal["project"] = "project"
    fields: Dict[str, ProjectValue]

    @field_validator("fields")
    @classmethod
    def check_fields(cls, v):
        if not v:
            raise ValueError("project needs at least one field")
        excluded = included = False
        for name, value in v.items():
            if isinstance(value, str) and not value.startswith("$"):
                raise ValueError(f"projection of {name} must reference a field path starting with '$'")
            if name == "_id":
                continue
            if value is False or value == 0 and not isinstance(value, Round):
                excluded = True
            else:
                included = True
        if excluded and included:
            raise ValueError("project cannot mix inclusion and exclusion (except for _id)")
        return v

    def to_mongo(self) -> dict:
        spec = {}
        for name, value in self.fields.items():
            spec[name] = value.to_mongo() if isinstance(value, Round) else value
        return {"$project": spec}


class GeoNear(BaseModel):
    """Distance from origin (meters times multiplier) stored in distance_field, nearest first."""
    kind: Literal["geo_near"] = "geo_near"
    origin: List[float]
    distance_field: str
    multiplier: float = 1.0
    max_distance: Optional[float] = Field(None, ge=0, description="Meters")
    query: Optional[Dict[str, Any]] = None
    key: Optional[str] = None

    @field_validator("origin")
    @classmethod
    def check_origin(cls, v):
        if not is_valid_coordinates(v):
            raise ValueError("origin must be [lng, lat] within valid ranges")
        return v

    @field_validator("query")
    @classmethod
    def check_query(cls, v):
        if v is not None:
            validate_filter(v)
        return v

    def to_mongo(self) -> dict:
        spec = {
            "near": point(self.origin[0], self.origin[1]),
            "distanceField": self.distance_field,
            "spherical": True,
            "distanceMultiplier": self.multiplier,
        }
        if self.max_distance is not None:
            spec["maxDistance"] = self.max_distance
        if self.query:
            spec["query"] = self.query
        if self.key:
            spec["key"] = self.key
        return {"$geoNear": spec}


Stage = Annotated[Union[Match, Group, Sort, Lookup, Unwind, Project, GeoNear], Field(discriminator="kind")]


def check_order(stages: Sequence[BaseModel]):
    for position, stage in enumerate(stages):
        if isinstance(stage, GeoNear) and position != 0:
            raise QueryError("GeoNear must be the first stage of a pipeline")


# -----------------------------
# Builder
# -----------------------------

class Pipeline:
    def __init__(self, stages: Optional[Sequence[BaseModel]] = None):
        self.stages: List[BaseModel] = []
        for stage in stages or []:
            self.add(stage)

    def add(self, stage: BaseModel) -> "Pipeline":
        if not isinstance(stage, (Match, Group, Sort, Lookup, Unwind, Project, GeoNear)):
            raise QueryError(f"Unsupported pipeline stage: {type(stage).__name__}")
        check_order(self.stages + [stage])
        self.stages.append(stage)
        return self

    def _build(self, cls, **kwargs) -> "Pipeline":
        try:
            stage = cls(**kwargs)
        except ValidationError as e:
            raise QueryError(f"Invalid {cls.__name__} stage: {e}") from e
        return self.add(stage)

    def match(self, filter: dict) -> "Pipeline":
        return self._build(Match, filter=filter)

    def group(self, key: Optional[str], **accumulators: Accumulator) -> "Pipeline":
        return self._build(Group, key=key, accumulators=accumulators)

    def sort(self, *keys: Tuple[str, int]) -> "Pipeline":
        return self._build(Sort, keys=list(keys))

    def lookup(self, from_collection: str, local_field: str, foreign_field: str, output_field: str) -> "Pipeline":
        return self._build(Lookup, from_collection=from_collection, local_field=local_field,
                           foreign_field=foreign_field, output_field=output_field)

    def unwind(self, path: str, preserve_empty: bool = False) -> "Pipeline":
        return self._build(Unwind, path=path, preserve_empty=preserve_empty)

    def project(self, fields: Optional[Dict[str, ProjectValue]] = None, **more: ProjectValue) -> "Pipeline":
        return self._build(Project, fields={**(fields or {}), **more})

    def geo_near(self, origin: Sequence[float], distance_field: str, multiplier: float = 1.0,
                 max_distance: Optional[float] = None, query: Optional[dict] = None) -> "Pipeline":
        return self._build(GeoNear, origin=list(origin), distance_field=distance_field,
                           multiplier=multiplier, max_distance=max_distance, query=query)

    def to_mongo(self) -> List[dict]:
        return [stage.to_mongo() for stage in self.stages]

    def __iter__(self) -> Iterator[BaseModel]:
        return iter(self.stages)

    def __len__(self) -> int:
        return len(self.stages)

    @classmethod
    def from_specs(cls, specs: Sequence[dict]) -> "Pipeline":
        """Build from plain stage dicts, e.g. ``[{"kind": "sort", "keys": [["age", 1]]}]``."""
        try:
            stages = TypeAdapter(List[Stage]).validate_python(list(specs))
        except ValidationError as e:
            raise QueryError(f"Invalid pipeline: {e}") from e
        return cls(stages)
