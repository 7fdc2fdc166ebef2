"""
Database Schemas

Pydantic models for the documents stored in the customer and city
collections, the index declarations that guard them, and the outcomes of
repository write operations.

Stored field names are camelCase (``zipCode``, ``cityId``, ``createdAt``);
the models use snake_case attributes with those names as aliases.
A field explicitly set to None is stored as null; a field never set is
left out of the document.
"""

from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple, Union

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, field_validator

from geo import is_valid_coordinates


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentModel(BaseModel):
    # Fields outside the model are kept and stored as given
    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True, extra="allow")

    id: Optional[ObjectId] = Field(None, alias="_id")

    def to_document(self) -> dict:
        """Serialise the explicitly set fields, nested ones included, under their stored names."""
        data = self.model_dump(by_alias=True, exclude_unset=True)
        for key, value in (self.model_extra or {}).items():
            data.setdefault(key, value)
        if data.get("_id") is None:
            data.pop("_id", None)
        return data


class GeoPoint(BaseModel):
    """GeoJSON point; coordinates are [longitude, latitude]."""
    type: str = Field(default="Point", pattern="^Point$")
    coordinates: List[float]

    def model_post_init(self, __context: Any) -> None:
        # type is part of every stored point, set or not
        self.model_fields_set.add("type")

    @field_validator("coordinates")
    @classmethod
    def check_range(cls, v):
        if not is_valid_coordinates(v):
            raise ValueError("coordinates must be [lng, lat] with lng in [-180, 180] and lat in [-90, 90]")
        return v


class Address(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    street: Optional[str] = None
    city: Optional[str] = None
    zip_code: Optional[str] = Field(None, alias="zipCode")


class Customer(DocumentModel):
    """
    Customers collection schema
    Collection name: "customers"
    """
    name: str = Field(..., description="Full name")
    email: str = Field(..., description="Email address, unique across customers")
    age: int = Field(..., ge=0, description="Age in years")
    address: Optional[Address] = None
    location: Optional[GeoPoint] = None
    hobbies: List[str] = Field(default_factory=list)
    city_id: Optional[ObjectId] = Field(None, alias="cityId", description="Reference to a City _id")
    category: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")

    def to_document(self) -> dict:
        data = super().to_document()
        # Always stamp creation time, even when the caller did not pass one
        data.setdefault("createdAt", self.created_at)
        return data


class City(DocumentModel):
    """
    Cities collection schema
    Collection name: "cities"
    """
    name: str = Field(..., description="City name, unique")
    state: str
    country: str
    location: GeoPoint


# -----------------------------
# Index declarations
# -----------------------------

class IndexSpec(BaseModel):
    """One index: ordered key spec plus options."""
    keys: List[Tuple[str, Union[int, str]]]
    unique: bool = False
    name: Optional[str] = None

    @field_validator("keys")
    @classmethod
    def check_keys(cls, v):
        if not v:
            raise ValueError("index needs at least one key")
        for field, direction in v:
            if direction not in (1, -1, "2dsphere"):
                raise ValueError(f"unsupported index direction for {field}: {direction!r}")
        return v

    @property
    def index_name(self) -> str:
        # Same naming rule the server applies when no name is given
        return self.name or "_".join(f"{field}_{direction}" for field, direction in self.keys)


# -----------------------------
# Write outcomes
# -----------------------------

class Outcome(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)


class InsertManyOutcome(Outcome):
    inserted_ids: List[Any] = Field(default_factory=list)
    failed: List[int] = Field(default_factory=list, description="Input positions that were not inserted")


class UpdateOutcome(Outcome):
    matched_count: int
    modified_count: int
    upserted_id: Optional[Any] = None


class DeleteOutcome(Outcome):
    deleted_count: int
