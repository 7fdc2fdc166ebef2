from datetime import datetime

import pytest
from bson import ObjectId

from errors import DuplicateKeyError, InvalidRecordError, QueryError, StoreUnavailableError
from repository import RecordRepository
from schemas import Address, Customer, GeoPoint

from conftest import make_customer


@pytest.fixture
def people(indexed, customers):
    customers.insert_one(make_customer("John Doe", 30, "New York", (-74.006, 40.7128)))
    customers.insert_many([
        make_customer("Jane Smith", 25, "Los Angeles", (-118.2437, 34.0522)),
        make_customer("Bob Johnson", 35, "Chicago", (-87.6298, 41.8781)),
        make_customer("Alice Brown", 28, "Boston", (-71.0589, 42.3601)),
    ])
    return customers


def test_insert_one_returns_store_assigned_id(customers):
    record = Customer(name="Ann", email="ann@example.com", age=40)
    inserted_id = customers.insert_one(record)
    assert isinstance(inserted_id, ObjectId)
    stored = customers.find_one({"_id": inserted_id})
    assert stored["email"] == "ann@example.com"
    assert isinstance(stored["createdAt"], datetime)


def test_insert_one_duplicate_email(people):
    with pytest.raises(DuplicateKeyError):
        people.insert_one(make_customer("John Doe", 50))


def test_insert_many_reports_partial_failure(people):
    outcome = people.insert_many([
        make_customer("Carl", 20),
        make_customer("Jane Smith", 60),
        make_customer("Dora", 22),
    ])
    assert outcome.failed == [1]
    assert len(outcome.inserted_ids) == 2
    assert people.count() == 6
    names = {d["name"] for d in people.find({"_id": {"$in": outcome.inserted_ids}})}
    assert names == {"Carl", "Dora"}


def test_insert_rejects_invalid_location(customers):
    with pytest.raises(InvalidRecordError):
        customers.insert_one(make_customer("Far", 30, coords=(200, 10)))
    with pytest.raises(QueryError):
        customers.insert_one(make_customer("Neg", -1))


def test_null_field_differs_from_absent(customers):
    customers.insert_one(Customer(name="With", email="with@example.com", age=1, city_id=None))
    customers.insert_one(Customer(name="Without", email="without@example.com", age=1))
    assert customers.count({"cityId": {"$exists": True}}) == 1
    assert customers.find_one({"name": "With"})["cityId"] is None
    assert "cityId" not in customers.find_one({"name": "Without"})


def test_find_filters(people):
    assert len(list(people.find({}))) == 4
    assert {d["name"] for d in people.find({"age": {"$lt": 30}})} == {"Jane Smith", "Alice Brown"}
    ny_la = people.find({"address.city": {"$in": ["New York", "Los Angeles"]}, "age": {"$gte": 25}})
    assert len(list(ny_la)) == 2
    assert people.count({"$or": [{"age": 35}, {"address.city": "Boston"}]}) == 2


def test_find_is_lazy(people):
    results = people.find({})
    assert next(results)["name"] == "John Doe"


def test_find_projection(people):
    rows = list(people.find({}, {"name": 1, "email": 1, "_id": 0}))
    assert rows[0] == {"name": "John Doe", "email": "john.doe@example.com"}
    with_id = people.find_one({"name": "Bob Johnson"})
    projected = next(people.find({"name": "Bob Johnson"}, {"name": 1}))
    assert projected == {"_id": with_id["_id"], "name": "Bob Johnson"}
    excluded = next(people.find({"name": "Bob Johnson"}, {"location": 0, "address": 0}))
    assert "location" not in excluded and "address" not in excluded and "age" in excluded


def test_find_one_absent_is_none(people):
    assert people.find_one({"name": "Nobody"}) is None


def test_find_records_returns_models(people):
    records = list(people.find_records({"name": "Alice Brown"}))
    assert len(records) == 1
    assert isinstance(records[0], Customer)
    assert records[0].address.zip_code == "00000"


@pytest.mark.parametrize("bad_filter", [
    "age > 3",
    {"age": {"$between": [1, 2]}},
    {"age": {"$in": 5}},
    {"$xor": [{"age": 1}]},
    {"age": {"$gt": 1, "name": "x"}},
])
def test_malformed_filter_raises_query_error(people, bad_filter):
    with pytest.raises(QueryError):
        list(people.find(bad_filter))


def test_mixed_projection_raises_query_error(people):
    with pytest.raises(QueryError):
        people.find({}, {"name": 1, "age": 0})


def test_update_one_set_and_push(people):
    outcome = people.update_one(
        {"email": "john.doe@example.com"},
        {"$set": {"age": 31, "address.zipCode": "10002"}, "$push": {"hobbies": "gaming"}},
    )
    assert (outcome.matched_count, outcome.modified_count, outcome.upserted_id) == (1, 1, None)
    john = people.find_one({"name": "John Doe"})
    assert john["age"] == 31
    assert john["address"]["zipCode"] == "10002"
    assert john["address"]["city"] == "New York"
    assert john["hobbies"] == ["gaming"]


def test_update_many(people):
    outcome = people.update_many({"age": {"$lt": 30}}, {"$set": {"category": "young"}})
    assert outcome.matched_count == 2
    assert outcome.modified_count == 2
    assert people.count({"category": "young"}) == 2


def test_upsert_creates_once_then_updates(people):
    mutation = {"$set": {"name": "New User", "age": 22}}
    first = people.update_one({"email": "newuser@example.com"}, mutation, upsert=True)
    assert first.upserted_id is not None
    assert first.matched_count == 0
    assert people.count({"email": "newuser@example.com", "name": "New User", "age": 22}) == 1

    second = people.update_one({"email": "newuser@example.com"}, {"$set": {"age": 23}}, upsert=True)
    assert second.upserted_id is None
    assert second.matched_count == 1
    assert people.count({"email": "newuser@example.com"}) == 1
    assert people.find_one({"email": "newuser@example.com"})["_id"] == first.upserted_id


def test_update_without_upsert_on_no_match(people):
    outcome = people.update_one({"email": "ghost@example.com"}, {"$set": {"age": 1}})
    assert (outcome.matched_count, outcome.modified_count, outcome.upserted_id) == (0, 0, None)
    assert people.count() == 4


def test_update_to_duplicate_email_raises(people):
    with pytest.raises(DuplicateKeyError):
        people.update_one({"name": "Jane Smith"}, {"$set": {"email": "john.doe@example.com"}})


@pytest.mark.parametrize("bad_mutation", [{}, {"age": 3}, {"$rename": {"a": "b"}}, {"$set": {}}])
def test_malformed_mutation_raises_query_error(people, bad_mutation):
    with pytest.raises(QueryError):
        people.update_one({"name": "John Doe"}, bad_mutation)


def test_delete_one_and_many(people):
    assert people.delete_one({"name": "John Doe"}).deleted_count == 1
    assert people.delete_one({"name": "John Doe"}).deleted_count == 0
    assert people.delete_many({"age": {"$gte": 28}}).deleted_count == 2
    assert people.count() == 1


def test_delete_all_resets_count(people, cities):
    cities.insert_one({"name": "Boston", "state": "MA", "country": "USA",
                       "location": {"type": "Point", "coordinates": [-71.0589, 42.3601]}})
    people.delete_many({})
    cities.delete_many({})
    assert people.count() == 0
    assert cities.count() == 0


def test_operations_without_open_session(session, customers):
    session.close()
    with pytest.raises(StoreUnavailableError):
        customers.count()
    with pytest.raises(StoreUnavailableError):
        customers.find({})
    with pytest.raises(StoreUnavailableError):
        customers.insert_one(make_customer("Late", 1))
    with pytest.raises(StoreUnavailableError):
        RecordRepository(None, "customers").count()


def test_typed_insert_uses_stored_field_names(customers):
    customers.insert_one(Customer(
        name="Typed", email="typed@example.com", age=33,
        address=Address(street="1 A St", city="Miami", zip_code="33101"),
        location=GeoPoint(coordinates=[-80.1918, 25.7617]),
    ))
    stored = customers.find_one({"name": "Typed"})
    assert stored["address"]["zipCode"] == "33101"
    assert stored["location"] == {"type": "Point", "coordinates": [-80.1918, 25.7617]}


def test_fields_outside_the_model_are_stored(customers):
    customers.insert_one({**make_customer("Extra", 30), "score": 7, "tags": ["vip"]})
    stored = customers.find_one({"name": "Extra"})
    assert stored["score"] == 7
    assert stored["tags"] == ["vip"]


def test_unset_nested_fields_are_absent(customers):
    customers.insert_one(Customer(name="Nested", email="nested@example.com", age=40,
                                  address=Address(city="Boston")))
    assert customers.find_one({"name": "Nested"})["address"] == {"city": "Boston"}


def test_insert_many_reports_invalid_records(people):
    outcome = people.insert_many([
        make_customer("Carl", 20),
        {"name": "No Email"},
        make_customer("Jane Smith", 60),
        make_customer("Dora", 22),
    ])
    assert outcome.failed == [1, 2]
    assert people.count() == 6
    names = {d["name"] for d in people.find({"_id": {"$in": outcome.inserted_ids}})}
    assert names == {"Carl", "Dora"}


def test_update_rejects_invalid_location(people):
    with pytest.raises(QueryError):
        people.update_one({"name": "John Doe"},
                          {"$set": {"location": {"type": "Point", "coordinates": [500, 100]}}})
    assert people.find_one({"name": "John Doe"})["location"]["coordinates"] == [-74.006, 40.7128]


def test_upsert_rejects_invalid_location(people):
    with pytest.raises(QueryError):
        people.update_one({"email": "far@example.com"},
                          {"$set": {"name": "Far", "location": {"type": "Point", "coordinates": [999, 0]}}},
                          upsert=True)
    assert people.count({"email": "far@example.com"}) == 0
