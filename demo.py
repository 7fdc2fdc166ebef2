"""
End-to-end demo scenario

Runs the data layer through a fixed sequence of steps, one state per step:

    Idle -> Connected -> Reset -> Indexed -> Seeded -> Populated -> Verified
         -> Mutated -> Aggregated -> GeoQueried -> Cleaned -> Disconnected

The first step that raises is logged and stops the run. The session is
closed no matter what, so every run ends in Disconnected.

    python demo.py          # configured from DATABASE_URL / DATABASE_NAME
"""

import logging
import sys
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from aggregation import NYC, AggregationEngine
from config import Config, setup_logging
from database import Session
from errors import DataLayerError
from geo import near_filter, point, polygon, within_filter
from indexes import IndexManager
from repository import RecordRepository
from schemas import Address, City, Customer, GeoPoint, utcnow

logger = logging.getLogger(__name__)


class DemoState(str, Enum):
    IDLE = "Idle"
    CONNECTED = "Connected"
    RESET = "Reset"
    INDEXED = "Indexed"
    SEEDED = "Seeded"
    POPULATED = "Populated"
    VERIFIED = "Verified"
    MUTATED = "Mutated"
    AGGREGATED = "Aggregated"
    GEO_QUERIED = "GeoQueried"
    CLEANED = "Cleaned"
    DISCONNECTED = "Disconnected"


class DemoReport(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    final_state: DemoState = DemoState.IDLE
    visited: List[DemoState] = Field(default_factory=list)
    results: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    failed_step: Optional[DemoState] = None
    final_count: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and DemoState.CLEANED in self.visited


# -----------------------------
# Seed data
# -----------------------------

CITIES = [
    City(name="New York", state="NY", country="USA", location=GeoPoint(coordinates=[-74.006, 40.7128])),
    City(name="Los Angeles", state="CA", country="USA", location=GeoPoint(coordinates=[-118.2437, 34.0522])),
    City(name="Chicago", state="IL", country="USA", location=GeoPoint(coordinates=[-87.6298, 41.8781])),
    City(name="Boston", state="MA", country="USA", location=GeoPoint(coordinates=[-71.0589, 42.3601])),
    City(name="Miami", state="FL", country="USA", location=GeoPoint(coordinates=[-80.1918, 25.7617])),
]


def build_customers(city_ids: Dict[str, Any]) -> List[Customer]:
    return [
        Customer(name="John Doe", email="john@example.com", age=30,
                 address=Address(street="123 Main St", city="New York", zip_code="10001"),
                 location=GeoPoint(coordinates=[-74.006, 40.7128]),
                 hobbies=["reading", "swimming"], city_id=city_ids["New York"]),
        Customer(name="Jane Smith", email="jane@example.com", age=25,
                 address=Address(street="456 Oak Ave", city="Los Angeles", zip_code="90210"),
                 location=GeoPoint(coordinates=[-118.2437, 34.0522]),
                 hobbies=["painting", "hiking"], city_id=city_ids["Los Angeles"]),
        Customer(name="Bob Johnson", email="bob@example.com", age=35,
                 address=Address(street="789 Pine Rd", city="Chicago", zip_code="60601"),
                 location=GeoPoint(coordinates=[-87.6298, 41.8781]),
                 hobbies=["cooking", "traveling"], city_id=city_ids["Chicago"]),
        Customer(name="Alice Brown", email="alice@example.com", age=28,
                 address=Address(street="321 Elm St", city="Boston", zip_code="02101"),
                 location=GeoPoint(coordinates=[-71.0589, 42.3601]),
                 hobbies=["photography", "yoga"], city_id=city_ids["Boston"]),
    ]


NORTHEAST = polygon([-80, 35], [-60, 35], [-60, 50], [-80, 50])


# -----------------------------
# Orchestrator
# -----------------------------

class DemoOrchestrator:
    STEPS = [
        (DemoState.CONNECTED, "connect"),
        (DemoState.RESET, "reset"),
        (DemoState.INDEXED, "create_indexes"),
        (DemoState.SEEDED, "seed_cities"),
        (DemoState.POPULATED, "insert_documents"),
        (DemoState.VERIFIED, "read_documents"),
        (DemoState.MUTATED, "update_documents"),
        (DemoState.AGGREGATED, "run_aggregation"),
        (DemoState.GEO_QUERIED, "run_geospatial_queries"),
        (DemoState.CLEANED, "delete_documents"),
    ]

    def __init__(self, config: Config):
        self.config = config
        self.state = DemoState.IDLE
        self.session: Optional[Session] = None
        self.customers: Optional[RecordRepository] = None
        self.cities: Optional[RecordRepository] = None
        self.city_ids: Dict[str, Any] = {}

    def _transition(self, state: DemoState, report: DemoReport):
        self.state = state
        report.visited.append(state)
        report.final_state = state

    def run(self) -> DemoReport:
        report = DemoReport(visited=[DemoState.IDLE])
        logger.info("=== Demo started ===")
        try:
            for state, step in self.STEPS:
                logger.info(f"--- {step.replace('_', ' ').title()} ---")
                try:
                    result = getattr(self, step)()
                except Exception as e:
                    logger.error(f"Step {step} failed, aborting: {e}")
                    report.error = f"{type(e).__name__}: {e}"
                    report.failed_step = state
                    break
                report.results[state.value] = result
                self._transition(state, report)
            else:
                report.final_count = report.results[DemoState.CLEANED.value]["final_count"]
                logger.info("=== Demo completed successfully ===")
        finally:
            self.disconnect()
            self._transition(DemoState.DISCONNECTED, report)
        return report

    # ----- Steps -----
    def connect(self):
        self.session = Session.open(self.config.DATABASE_URL, self.config.DATABASE_NAME,
                                    timeout_ms=self.config.SERVER_SELECTION_TIMEOUT_MS)
        self.customers = RecordRepository(self.session, self.config.CUSTOMERS_COLLECTION, Customer)
        self.cities = RecordRepository(self.session, self.config.CITIES_COLLECTION, City)
        logger.info(f"Using collections: {self.config.CUSTOMERS_COLLECTION}, {self.config.CITIES_COLLECTION}")
        return {"database": self.session.db_name}

    def reset(self):
        customers = self.customers.delete_many({}).deleted_count
        cities = self.cities.delete_many({}).deleted_count
        logger.info(f"Cleared {customers} customers and {cities} cities")
        return {"customers_deleted": customers, "cities_deleted": cities}

    def create_indexes(self):
        return IndexManager(self.session).ensure_default_indexes(
            self.config.CUSTOMERS_COLLECTION, self.config.CITIES_COLLECTION)

    def seed_cities(self):
        outcome = self.cities.insert_many(CITIES)
        if outcome.failed:
            raise DataLayerError(f"Seeding cities failed at positions {outcome.failed}")
        self.city_ids = {city.name: _id for city, _id in zip(CITIES, outcome.inserted_ids)}
        logger.info(f"Seeded {len(self.city_ids)} cities")
        return {"city_ids": dict(self.city_ids)}

    def insert_documents(self):
        john, *others = build_customers(self.city_ids)
        john_id = self.customers.insert_one(john)
        logger.info(f"Single document inserted: {john_id}")
        outcome = self.customers.insert_many(others)
        logger.info(f"Multiple documents inserted: {outcome.inserted_ids}")
        return {"inserted_id": john_id, "inserted_ids": outcome.inserted_ids, "failed": outcome.failed}

    def read_documents(self):
        all_users = list(self.customers.find({}))
        logger.info(f"Found {len(all_users)} users")

        young_users = list(self.customers.find({"age": {"$lt": 30}}))
        logger.info(f"Found {len(young_users)} users under 30")

        user_names = list(self.customers.find({}, {"name": 1, "email": 1, "_id": 0}))
        logger.info(f"User names and emails: {user_names}")

        one_user = self.customers.find_one({"name": "John Doe"})
        logger.info(f"Found user: {one_user['name'] if one_user else 'Not found'}")

        city_users = list(self.customers.find({
            "address.city": {"$in": ["New York", "Los Angeles"]},
            "age": {"$gte": 25},
        }))
        logger.info(f"Found {len(city_users)} users in NY/LA aged 25+")

        total_count = self.customers.count()
        logger.info(f"Total users: {total_count}")

        return {
            "all_users": all_users, "young_users": young_users, "user_names": user_names,
            "one_user": one_user, "city_users": city_users, "total_count": total_count,
        }

    def update_documents(self):
        update_result = self.customers.update_one(
            {"email": "john@example.com"},
            {
                "$set": {"age": 31, "address.zipCode": "10002", "updatedAt": utcnow()},
                "$push": {"hobbies": "gaming"},
            },
        )
        logger.info(f"Single document updated: {update_result.modified_count}")

        bulk_update_result = self.customers.update_many(
            {"age": {"$lt": 30}},
            {"$set": {"category": "young", "updatedAt": utcnow()}},
        )
        logger.info(f"Multiple documents updated: {bulk_update_result.modified_count}")

        upsert_result = self.customers.update_one(
            {"email": "newuser@example.com"},
            {"$set": {
                "name": "New User",
                "age": 22,
                "address": {"street": "999 New St", "city": "Miami", "zipCode": "33101"},
                "location": point(-80.1918, 25.7617),
                "hobbies": ["surfing"],
                "cityId": self.city_ids.get("Miami"),
                "createdAt": utcnow(),
            }},
            upsert=True,
        )
        logger.info(f"Upsert result: {'Created new user' if upsert_result.upserted_id else 'Updated existing user'}")

        return {"update": update_result, "bulk_update": bulk_update_result, "upsert": upsert_result}

    def run_aggregation(self):
        engine = AggregationEngine(self.session)
        by_city = engine.customers_by_city(self.config.CUSTOMERS_COLLECTION)
        logger.info(f"Aggregation result: {by_city}")
        with_city = engine.customers_with_city(self.config.CUSTOMERS_COLLECTION, self.config.CITIES_COLLECTION)
        logger.info(f"Customers with city: {len(with_city)}")
        return {"by_city": by_city, "with_city": with_city}

    def run_geospatial_queries(self):
        nearby_users = list(self.customers.find(near_filter(NYC, max_distance=1000000)))
        logger.info(f"Users within 1000km of NYC: {len(nearby_users)}")
        for user in nearby_users:
            logger.info(f"- {user['name']} in {user.get('address', {}).get('city')}")

        northeastern_users = list(self.customers.find(within_filter(NORTHEAST)))
        logger.info(f"Users in northeastern US: {len(northeastern_users)}")
        for user in northeastern_users:
            logger.info(f"- {user['name']} in {user.get('address', {}).get('city')}")

        users_with_distance = AggregationEngine(self.session).distance_from(self.config.CUSTOMERS_COLLECTION)
        logger.info("Users sorted by distance from NYC:")
        for user in users_with_distance:
            logger.info(f"- {user['name']} in {user.get('city')}: {user['distanceFromNYC']} km")

        return {
            "nearby_users": nearby_users,
            "northeastern_users": northeastern_users,
            "users_with_distance": users_with_distance,
        }

    def delete_documents(self):
        delete_result = self.customers.delete_one({"email": "newuser@example.com"})
        logger.info(f"Single document deleted: {delete_result.deleted_count}")

        bulk_delete_result = self.customers.delete_many({"category": "young"})
        logger.info(f"Multiple documents deleted: {bulk_delete_result.deleted_count}")

        final_count = self.customers.count()
        logger.info(f"Final user count: {final_count}")
        return {"delete": delete_result, "bulk_delete": bulk_delete_result, "final_count": final_count}

    def disconnect(self):
        if self.session is not None:
            self.session.close()


def main() -> int:
    config = Config()
    setup_logging(config.LOG_LEVEL)
    config.log_summary()
    report = DemoOrchestrator(config).run()
    return 0 if report.succeeded else 1


if __name__ == "__main__":
    sys.exit(main())
