import pytest

from errors import QueryError
from pipeline import GeoNear, Match, Pipeline, Round, Sort, avg, count, push, total


def test_city_report_pipeline_renders_mongo_stages():
    pipeline = (Pipeline()
                .match({"age": {"$gt": 25}})
                .group("address.city", count=count(), avgAge=avg("age"), users=push("name"))
                .sort(("count", -1)))
    assert pipeline.to_mongo() == [
        {"$match": {"age": {"$gt": 25}}},
        {"$group": {
            "_id": "$address.city",
            "count": {"$sum": 1},
            "avgAge": {"$avg": "$age"},
            "users": {"$push": "$name"},
        }},
        {"$sort": {"count": -1}},
    ]


def test_join_and_geo_stages_render():
    joined = (Pipeline()
              .lookup("cities", "cityId", "_id", "cityInfo")
              .unwind("cityInfo")
              .project({"name": 1, "city": "$cityInfo.name"}))
    assert joined.to_mongo() == [
        {"$lookup": {"from": "cities", "localField": "cityId", "foreignField": "_id", "as": "cityInfo"}},
        {"$unwind": "$cityInfo"},
        {"$project": {"name": 1, "city": "$cityInfo.name"}},
    ]

    ranked = Pipeline().geo_near([-74.006, 40.7128], "dist", multiplier=0.001).project(
        {"name": 1, "dist": Round(path="dist", places=2)})
    geo_stage = ranked.to_mongo()[0]["$geoNear"]
    assert geo_stage["near"] == {"type": "Point", "coordinates": [-74.006, 40.7128]}
    assert geo_stage["spherical"] is True
    assert geo_stage["distanceMultiplier"] == 0.001
    assert ranked.to_mongo()[1] == {"$project": {"name": 1, "dist": {"$round": ["$dist", 2]}}}


def test_unwind_preserving_empty_arrays():
    assert Pipeline().unwind("tags", preserve_empty=True).to_mongo() == [
        {"$unwind": {"path": "$tags", "preserveNullAndEmptyArrays": True}}]


def test_group_without_key_and_sum():
    stage = Pipeline().group(None, total=total("age")).to_mongo()[0]
    assert stage == {"$group": {"_id": None, "total": {"$sum": "$age"}}}


def test_geo_near_must_be_first():
    with pytest.raises(QueryError):
        Pipeline().match({"age": 1}).geo_near([0, 0], "d")
    with pytest.raises(QueryError):
        Pipeline([Match(filter={}), GeoNear(origin=[0, 0], distance_field="d")])


@pytest.mark.parametrize("build", [
    lambda p: p.sort(("age", 2)),
    lambda p: p.sort(),
    lambda p: p.group("city"),
    lambda p: p.project({"name": 1, "age": 0}),
    lambda p: p.project({"city": "address.city"}),
    lambda p: p.geo_near([190, 0], "d"),
    lambda p: p.match({"age": {"$foo": 1}}),
    lambda p: p.match({"location": {"$near": {"$geometry": {"type": "Point", "coordinates": [0, 0]}}}}),
])
def test_builder_rejects_invalid_stages(build):
    with pytest.raises(QueryError):
        build(Pipeline())


def test_project_allows_id_exclusion_with_inclusion():
    stage = Pipeline().project({"_id": 0, "name": 1}).to_mongo()[0]
    assert stage == {"$project": {"_id": 0, "name": 1}}


def test_from_specs_builds_typed_stages():
    pipeline = Pipeline.from_specs([
        {"kind": "match", "filter": {"age": {"$gte": 18}}},
        {"kind": "sort", "keys": [["age", 1], ["name", -1]]},
    ])
    assert isinstance(pipeline.stages[1], Sort)
    assert pipeline.to_mongo()[1] == {"$sort": {"age": 1, "name": -1}}
    assert len(pipeline) == 2


def test_from_specs_rejects_unknown_kind():
    with pytest.raises(QueryError):
        Pipeline.from_specs([{"kind": "explode"}])
