import logging
from typing import Dict, Iterable, List

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure, PyMongoError

from database import Session
from errors import IndexConflictError, QueryError
from schemas import IndexSpec

logger = logging.getLogger(__name__)

GEOSPHERE = "2dsphere"

CUSTOMER_INDEXES = [
    IndexSpec(keys=[("email", ASCENDING)], unique=True),
    IndexSpec(keys=[("age", ASCENDING)]),
    IndexSpec(keys=[("address.city", ASCENDING)]),
    IndexSpec(keys=[("location", GEOSPHERE)]),
    IndexSpec(keys=[("cityId", ASCENDING)]),
    IndexSpec(keys=[("address.city", ASCENDING), ("age", DESCENDING)]),
]

CITY_INDEXES = [
    IndexSpec(keys=[("name", ASCENDING)], unique=True),
    IndexSpec(keys=[("location", GEOSPHERE)]),
]


class IndexManager:
    """Ensures declared indexes exist. Safe to run any number of times."""

    def __init__(self, session: Session):
        self.session = session

    def ensure_indexes(self, collection: str, specs: Iterable[IndexSpec]) -> List[str]:
        handle = self.session.collection(collection)
        names = []
        for spec in specs:
            try:
                name = handle.create_index(spec.keys, unique=spec.unique, name=spec.index_name)
            except OperationFailure as e:
                # Duplicate values under a unique key, or a clashing declaration
                logger.error(f"Index {spec.index_name} on {collection} conflicts: {e}")
                raise IndexConflictError(f"Cannot create index {spec.index_name} on {collection}: {e}") from e
            except PyMongoError as e:
                raise QueryError(f"Index creation failed on {collection}: {e}") from e
            names.append(name)
        logger.info(f"Indexes ensured on {collection}: {', '.join(names)}")
        return names

    def index_names(self, collection: str) -> List[str]:
        return sorted(self.index_info(collection))

    def index_info(self, collection: str) -> Dict[str, dict]:
        return self.session.collection(collection).index_information()

    def ensure_default_indexes(self, customers: str, cities: str) -> Dict[str, List[str]]:
        return {
            customers: self.ensure_indexes(customers, CUSTOMER_INDEXES),
            cities: self.ensure_indexes(cities, CITY_INDEXES),
        }
