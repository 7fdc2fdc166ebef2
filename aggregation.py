import logging
from typing import Iterator, List, Sequence, Union

from pydantic import BaseModel

from database import Session
from errors import StoreUnavailableError
from pipeline import Pipeline, Round, avg, count, push
from repository import translate_driver_errors

logger = logging.getLogger(__name__)

NYC = (-74.006, 40.7128)


class AggregationEngine:
    """Runs pipelines stage by stage, in order, on the store."""

    def __init__(self, session: Session):
        self.session = session

    def run(self, collection: str, stages: Union[Pipeline, Sequence[BaseModel]]) -> Iterator[dict]:
        if self.session is None or not self.session.is_open:
            raise StoreUnavailableError(f"No open session for aggregation on {collection}")
        pipeline = stages if isinstance(stages, Pipeline) else Pipeline(stages)
        handle = self.session.collection(collection)
        logger.debug(f"Aggregating {collection}: {pipeline.to_mongo()}")
        return self._iterate(collection, handle, pipeline.to_mongo())

    def _iterate(self, collection, handle, stages: List[dict]) -> Iterator[dict]:
        with translate_driver_errors(f"Aggregation on {collection} failed"):
            for doc in handle.aggregate(stages):
                yield doc

    def customers_by_city(self, customers: str, min_age: int = 25) -> List[dict]:
        return list(self.run(customers, customers_by_city(min_age)))

    def customers_with_city(self, customers: str, cities: str) -> List[dict]:
        return list(self.run(customers, customers_with_city(cities)))

    def distance_from(self, collection: str, origin=NYC, distance_field: str = "distanceFromNYC",
                      multiplier: float = 0.001, places: int = 2) -> List[dict]:
        return list(self.run(collection, distance_from(origin, distance_field, multiplier, places)))


# -----------------------------
# Canned pipelines
# -----------------------------

def customers_by_city(min_age: int = 25) -> Pipeline:
    """Customers older than min_age grouped by address.city, biggest group first."""
    return (Pipeline()
            .match({"age": {"$gt": min_age}})
            .group("address.city", count=count(), avgAge=avg("age"), users=push("name"))
            .sort(("count", -1)))


def customers_with_city(cities: str) -> Pipeline:
    """Customers joined with their City. Customers whose cityId resolves to nothing are dropped."""
    return (Pipeline()
            .lookup(cities, "cityId", "_id", "cityInfo")
            .unwind("cityInfo")
            .project({"name": 1, "email": 1, "city": "$cityInfo.name", "state": "$cityInfo.state"}))


def distance_from(origin, distance_field: str = "distanceFromNYC", multiplier: float = 0.001,
                  places: int = 2) -> Pipeline:
    """Documents with a location, nearest first, distance in meters * multiplier rounded to places."""
    return (Pipeline()
            .geo_near(origin, distance_field, multiplier=multiplier)
            .project({"name": 1, "city": "$address.city", distance_field: Round(path=distance_field, places=places)}))
