import pytest
from fastapi.testclient import TestClient

from config import Config
from demo import DemoOrchestrator
from main import app, get_config, to_json


@pytest.fixture
def client(config):
    app.dependency_overrides[get_config] = lambda: config
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def seeded(config):
    orchestrator = DemoOrchestrator(config)
    try:
        orchestrator.connect()
        orchestrator.reset()
        orchestrator.create_indexes()
        orchestrator.seed_cities()
        orchestrator.insert_documents()
    finally:
        orchestrator.disconnect()


def test_root(client):
    assert client.get("/").json() == {"message": "Customer Atlas API running"}


def test_health_check(client, seeded):
    body = client.get("/test").json()
    assert body["connection_status"] == "Connected"
    assert set(body["collections"]) == {"customers", "cities"}


def test_customers_joined_with_city(client, seeded):
    response = client.get("/customers")
    assert response.status_code == 200
    rows = response.json()
    assert len(rows) == 4
    john = next(r for r in rows if r["name"] == "John Doe")
    assert john["city"] == "New York"
    assert john["state"] == "NY"
    assert isinstance(john["id"], str)


def test_cities(client, seeded):
    rows = client.get("/cities").json()
    assert {r["name"] for r in rows} == {"New York", "Los Angeles", "Chicago", "Boston", "Miami"}
    assert all(isinstance(r["id"], str) for r in rows)


def test_city_aggregation(client, seeded):
    rows = client.get("/customers/aggregation/city").json()
    assert [r["count"] for r in rows] == [1, 1, 1]
    assert {r["_id"] for r in rows} == {"New York", "Chicago", "Boston"}
    assert all("id" not in r for r in rows)


def test_failure_returns_500_with_error(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("DATABASE_NAME", "testdb")
    app.dependency_overrides[get_config] = lambda: Config()
    try:
        response = TestClient(app).get("/customers")
    finally:
        app.dependency_overrides.clear()
    assert response.status_code == 500
    assert "not configured" in response.json()["error"]


def test_to_json_renders_object_ids():
    from bson import ObjectId
    oid = ObjectId()
    assert to_json({"_id": oid, "cityId": oid, "tags": [oid]}) == {"id": str(oid), "cityId": str(oid), "tags": [str(oid)]}


def test_to_json_leaves_group_keys_under_underscore_id():
    assert to_json([{"_id": "Boston", "count": 2}]) == [{"_id": "Boston", "count": 2}]
