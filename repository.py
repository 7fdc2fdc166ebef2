"""
Record repository

Typed CRUD over a single collection. Filters, projections and mutations use
the MongoDB query dialect and are checked here before they reach the store,
so malformed input fails fast with QueryError whatever the backend.

Filter grammar: equality (including dot paths such as ``address.city``),
``$eq $ne $gt $gte $lt $lte $in $nin $exists $regex $size``, the logical
``$and $or $nor``, and the geo predicates ``$near`` / ``$geoWithin``
(see geo.near_filter and geo.within_filter).
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Type, Union

from pydantic import BaseModel, ValidationError
from pymongo.errors import BulkWriteError, ConnectionFailure, OperationFailure, PyMongoError
from pymongo.errors import DuplicateKeyError as DriverDuplicateKeyError

from database import Session
from errors import (
    DataLayerError, DuplicateKeyError, InvalidRecordError, QueryError,
    StoreConnectionError, StoreUnavailableError,
)
from schemas import Customer, DeleteOutcome, DocumentModel, InsertManyOutcome, UpdateOutcome

logger = logging.getLogger(__name__)

FIELD_OPERATORS = {
    "$eq", "$ne", "$gt", "$gte", "$lt", "$lte", "$in", "$nin",
    "$exists", "$regex", "$options", "$size", "$near", "$geoWithin",
}
LOGICAL_OPERATORS = {"$and", "$or", "$nor"}
MUTATION_OPERATORS = {"$set", "$unset", "$inc", "$push", "$setOnInsert"}


@contextmanager
def translate_driver_errors(action: str):
    """Re-raise pymongo errors as data layer errors."""
    try:
        yield
    except DriverDuplicateKeyError as e:
        raise DuplicateKeyError(f"{action}: {e}") from e
    except OperationFailure as e:
        raise QueryError(f"{action}: {e}") from e
    except ConnectionFailure as e:
        raise StoreConnectionError(f"{action}: {e}") from e
    except PyMongoError as e:
        raise DataLayerError(f"{action}: {e}") from e


# -----------------------------
# Input checks
# -----------------------------

def validate_filter(query) -> dict:
    if query is None:
        return {}
    if not isinstance(query, dict):
        raise QueryError(f"Filter must be a mapping, got {type(query).__name__}")
    for key, cond in query.items():
        if not isinstance(key, str) or not key:
            raise QueryError(f"Invalid filter key: {key!r}")
        if key.startswith("$"):
            if key not in LOGICAL_OPERATORS:
                raise QueryError(f"Unsupported logical operator: {key}")
            if not isinstance(cond, list) or not cond:
                raise QueryError(f"{key} requires a non-empty list of clauses")
            for clause in cond:
                validate_filter(clause)
            continue
        if isinstance(cond, dict) and any(k.startswith("$") for k in cond):
            if not all(k.startswith("$") for k in cond):
                raise QueryError(f"Cannot mix operators and fields in condition on {key}")
            for op, arg in cond.items():
                if op not in FIELD_OPERATORS:
                    raise QueryError(f"Unsupported operator {op} on {key}")
                if op in ("$in", "$nin") and not isinstance(arg, list):
                    raise QueryError(f"{op} on {key} requires a list")
                if op in ("$near", "$geoWithin") and (not isinstance(arg, dict) or "$geometry" not in arg):
                    raise QueryError(f"{op} on {key} requires $geometry")
    return query


def validate_projection(projection) -> Optional[dict]:
    if projection is None:
        return None
    if not isinstance(projection, dict) or not projection:
        raise QueryError("Projection must be a non-empty mapping")
    flags = {}
    for field, value in projection.items():
        if value not in (0, 1, True, False):
            raise QueryError(f"Projection value for {field} must be 0/1, got {value!r}")
        flags[field] = bool(value)
    rest = {f: v for f, v in flags.items() if f != "_id"}
    if rest and len(set(rest.values())) > 1:
        raise QueryError("Projection cannot mix inclusion and exclusion (except for _id)")
    return projection


def validate_mutation(mutation) -> dict:
    if not isinstance(mutation, dict) or not mutation:
        raise QueryError("Mutation must be a non-empty mapping of update operators")
    for op, changes in mutation.items():
        if op not in MUTATION_OPERATORS:
            raise QueryError(f"Unsupported update operator: {op}")
        if not isinstance(changes, dict) or not changes:
            raise QueryError(f"{op} requires a non-empty mapping of fields")
    return mutation


# -----------------------------
# Repository
# -----------------------------

class RecordRepository:
    """CRUD over one collection, validated against a document model."""

    def __init__(self, session: Session, collection: str, model: Type[DocumentModel] = Customer):
        self.session = session
        self.collection_name = collection
        self.model = model

    def _handle(self):
        if self.session is None or not self.session.is_open:
            raise StoreUnavailableError(f"No open session for {self.collection_name}")
        return self.session.collection(self.collection_name)

    def _to_document(self, record: Union[BaseModel, dict]) -> dict:
        if isinstance(record, dict):
            try:
                record = self.model.model_validate(record)
            except ValidationError as e:
                raise InvalidRecordError(f"Invalid {self.model.__name__}: {e}") from e
        elif not isinstance(record, self.model):
            raise InvalidRecordError(f"Expected {self.model.__name__}, got {type(record).__name__}")
        return record.to_document()

    # ----- Insert -----
    def insert_one(self, record: Union[BaseModel, dict]) -> Any:
        handle = self._handle()
        document = self._to_document(record)
        with translate_driver_errors(f"Insert into {self.collection_name} failed"):
            result = handle.insert_one(document)
        logger.debug(f"Inserted {result.inserted_id} into {self.collection_name}")
        return result.inserted_id

    def insert_many(self, records: List[Union[BaseModel, dict]]) -> InsertManyOutcome:
        """Unordered bulk insert; documents that fail are reported, the rest stay inserted."""
        handle = self._handle()
        documents, positions, invalid = [], [], []
        for position, record in enumerate(records):
            try:
                documents.append(self._to_document(record))
            except InvalidRecordError as e:
                logger.warning(f"Skipping record {position} for {self.collection_name}: {e}")
                invalid.append(position)
                continue
            positions.append(position)
        if not documents:
            return InsertManyOutcome(failed=invalid)
        with translate_driver_errors(f"Bulk insert into {self.collection_name} failed"):
            try:
                result = handle.insert_many(documents, ordered=False)
            except BulkWriteError as e:
                rejected = {err["index"] for err in e.details.get("writeErrors", [])}
                # The driver assigns _id client-side, so surviving ids are known
                inserted = [d["_id"] for i, d in enumerate(documents) if i not in rejected]
                failed = sorted(invalid + [positions[i] for i in rejected])
                logger.warning(f"Bulk insert into {self.collection_name}: {len(inserted)} inserted, "
                               f"{len(failed)} failed at positions {failed}")
                return InsertManyOutcome(inserted_ids=inserted, failed=failed)
        return InsertManyOutcome(inserted_ids=list(result.inserted_ids), failed=invalid)

    # ----- Read -----
    def find(self, filter: Optional[dict] = None, projection: Optional[dict] = None) -> Iterator[dict]:
        handle = self._handle()
        query = validate_filter(filter)
        projection = validate_projection(projection)
        return self._iterate(handle.find(query, projection))

    def _iterate(self, cursor) -> Iterator[dict]:
        with translate_driver_errors(f"Find on {self.collection_name} failed"):
            for doc in cursor:
                yield doc

    def find_one(self, filter: Optional[dict] = None) -> Optional[dict]:
        handle = self._handle()
        query = validate_filter(filter)
        with translate_driver_errors(f"Find one on {self.collection_name} failed"):
            return handle.find_one(query)

    def find_records(self, filter: Optional[dict] = None) -> Iterator[DocumentModel]:
        for doc in self.find(filter):
            try:
                yield self.model.model_validate(doc)
            except ValidationError as e:
                raise InvalidRecordError(f"Stored document {doc.get('_id')} is not a valid {self.model.__name__}: {e}") from e

    def count(self, filter: Optional[dict] = None) -> int:
        handle = self._handle()
        query = validate_filter(filter)
        with translate_driver_errors(f"Count on {self.collection_name} failed"):
            return handle.count_documents(query)

    # ----- Update -----
    def update_one(self, filter: dict, mutation: dict, upsert: bool = False) -> UpdateOutcome:
        handle = self._handle()
        query = validate_filter(filter)
        validate_mutation(mutation)
        with translate_driver_errors(f"Update on {self.collection_name} failed"):
            result = handle.update_one(query, mutation, upsert=upsert)
        return UpdateOutcome(matched_count=result.matched_count,
                             modified_count=result.modified_count,
                             upserted_id=result.upserted_id)

    def update_many(self, filter: dict, mutation: dict) -> UpdateOutcome:
        handle = self._handle()
        query = validate_filter(filter)
        validate_mutation(mutation)
        with translate_driver_errors(f"Update many on {self.collection_name} failed"):
            result = handle.update_many(query, mutation)
        return UpdateOutcome(matched_count=result.matched_count, modified_count=result.modified_count)

    # ----- Delete -----
    def delete_one(self, filter: dict) -> DeleteOutcome:
        handle = self._handle()
        query = validate_filter(filter)
        with translate_driver_errors(f"Delete on {self.collection_name} failed"):
            result = handle.delete_one(query)
        return DeleteOutcome(deleted_count=result.deleted_count)

    def delete_many(self, filter: Optional[dict] = None) -> DeleteOutcome:
        handle = self._handle()
        query = validate_filter(filter)
        with translate_driver_errors(f"Delete many on {self.collection_name} failed"):
            result = handle.delete_many(query)
        return DeleteOutcome(deleted_count=result.deleted_count)
