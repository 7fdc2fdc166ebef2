import uuid

import pytest

import memstore
from config import Config
from database import Session
from indexes import CITY_INDEXES, CUSTOMER_INDEXES, IndexManager
from repository import RecordRepository
from schemas import City, Customer

DB_NAME = "testdb"


@pytest.fixture
def memory_uri():
    name = f"test-{uuid.uuid4().hex}"
    yield f"memory://{name}"
    memstore.drop_server(name)


@pytest.fixture
def session(memory_uri):
    s = Session.open(memory_uri, DB_NAME)
    yield s
    s.close()


@pytest.fixture
def config(memory_uri, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", memory_uri)
    monkeypatch.setenv("DATABASE_NAME", DB_NAME)
    monkeypatch.setenv("CUSTOMERS_COLLECTION", "customers")
    monkeypatch.setenv("CITIES_COLLECTION", "cities")
    return Config()


@pytest.fixture
def customers(session):
    return RecordRepository(session, "customers", Customer)


@pytest.fixture
def cities(session):
    return RecordRepository(session, "cities", City)


@pytest.fixture
def indexed(session):
    manager = IndexManager(session)
    manager.ensure_indexes("customers", CUSTOMER_INDEXES)
    manager.ensure_indexes("cities", CITY_INDEXES)
    return manager


def make_customer(name, age, city=None, coords=None, city_id=None, email=None):
    doc = {
        "name": name,
        "email": email or f"{name.lower().replace(' ', '.')}@example.com",
        "age": age,
    }
    if city is not None:
        doc["address"] = {"street": "1 Test St", "city": city, "zipCode": "00000"}
    if coords is not None:
        doc["location"] = {"type": "Point", "coordinates": list(coords)}
    if city_id is not None:
        doc["cityId"] = city_id
    return doc
