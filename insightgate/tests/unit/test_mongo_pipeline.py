from __future__ import annotations

import pytest

from insightgate.core.errors import UnsafeQuery
from insightgate.domain.schema import EngineTag
from insightgate.providers.engines.mongodb import MongoAdapter, parse_pipeline


def test_find_with_projection_sort_and_limit() -> None:
    parsed = parse_pipeline('db.orders.find({"total": {"$gt": 10}}, {"total": 1}).sort({"total": -1}).limit(3);')
    assert parsed.collection == "orders"
    assert parsed.stages == [
        {"$match": {"total": {"$gt": 10}}},
        {"$project": {"total": 1}},
        {"$sort": {"total": -1}},
        {"$limit": 3},
    ]


def test_empty_find_yields_no_stages() -> None:
    assert parse_pipeline("db.orders.find()").stages == []
    assert parse_pipeline("db.orders.find({})").stages == []


def test_aggregate_with_get_collection() -> None:
    parsed = parse_pipeline(
        'db.getCollection("order-items").aggregate([{"$group": {"_id": "$sku", "n": {"$sum": 1}}}])'
    )
    assert parsed.collection == "order-items"
    assert parsed.stages == [{"$group": {"_id": "$sku", "n": {"$sum": 1}}}]


def test_string_values_with_brackets_do_not_confuse_parser() -> None:
    parsed = parse_pipeline('db.notes.find({"text": "a (tricky) [value]"})')
    assert parsed.stages == [{"$match": {"text": "a (tricky) [value]"}}]


@pytest.mark.parametrize(
    "text",
    [
        'db.orders.aggregate([{"$out": "copy"}])',
        'db.orders.aggregate([{"$merge": {"into": "copy"}}])',
        'db.orders.find({"$where": "this.total > 1"})',
        'db.orders.aggregate([{"$match": {"$expr": {"$function": {"body": "x"}}}}])',
        "db.orders.insertOne({})",
        "db.orders.deleteMany({})",
        "db.orders.findOneAndUpdate({}, {})",
    ],
)
def test_writes_and_server_side_javascript_are_mutations(text: str) -> None:
    with pytest.raises(UnsafeQuery) as excinfo:
        parse_pipeline(text)
    assert excinfo.value.mutation is True


@pytest.mark.parametrize(
    "text",
    [
        "SELECT * FROM orders",
        "db.orders.find({status: 'open'})",
        'db.orders.aggregate([{"$indexStats": {}}])',
        'db.orders.find({}).explain()',
        'db.orders.distinct("status")',
        'db.orders.find({"a": 1}',
        'db.orders.find({}).limit(-1)',
    ],
)
def test_malformed_or_unsupported_text_is_rejected(text: str) -> None:
    with pytest.raises(UnsafeQuery) as excinfo:
        parse_pipeline(text)
    assert excinfo.value.mutation is False


def test_probe_query_round_trips_through_parser() -> None:
    adapter = MongoAdapter()
    probe = adapter.probe_query("orders", limit=5)
    parsed = parse_pipeline(probe)
    assert parsed.collection == "orders"
    assert parsed.stages == [{"$limit": 5}]
    assert adapter.probe_query(None, limit=5) is None
    assert adapter.engine is EngineTag.MONGODB
