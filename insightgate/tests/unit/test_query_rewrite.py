from __future__ import annotations

from insightgate.agent.rewrite import (
    RELAX_WIDEN,
    apply_dialect_rules,
    find_enum_mismatches,
    relax_query,
)
from insightgate.domain.schema import ColumnInfo, EngineTag, SchemaSnapshot, TableInfo
from insightgate.providers.engines.mongodb import parse_pipeline


def _orders_snapshot(engine: EngineTag = EngineTag.POSTGRESQL) -> SchemaSnapshot:
    return SchemaSnapshot(
        engine=engine,
        database_name="shop",
        tables=(
            TableInfo(
                name="Orders",
                columns=(
                    ColumnInfo(name="id", type="integer", nullable=False, is_primary_key=True),
                    ColumnInfo(name="customerName", type="text"),
                    ColumnInfo(
                        name="status",
                        type="USER-DEFINED",
                        enum_values=("pending", "delivered", "returned"),
                    ),
                ),
            ),
        ),
    )


def test_relax_without_where_returns_query_unchanged() -> None:
    query = "SELECT region, SUM(amount) FROM sales GROUP BY region"
    assert relax_query(query, EngineTag.SQLITE) == query


def test_relax_drops_status_equality_only() -> None:
    query = "SELECT * FROM sales WHERE region = 'north' AND status = 'shipped' ORDER BY id"
    relaxed = relax_query(query, EngineTag.SQLITE)
    assert "status" not in relaxed
    assert "region = 'north'" in relaxed
    assert relaxed.endswith("ORDER BY id")


def test_relax_strips_where_when_no_status_filter() -> None:
    query = "SELECT * FROM sales WHERE amount > 100"
    assert relax_query(query, EngineTag.SQLITE) == "SELECT * FROM sales"


def test_relax_single_status_filter_removes_where() -> None:
    assert relax_query("SELECT * FROM sales WHERE status = 'shipped'", EngineTag.SQLITE) == "SELECT * FROM sales"


def test_relax_widen_uses_enum_values_from_snapshot() -> None:
    snapshot = _orders_snapshot()
    relaxed = relax_query(
        "SELECT * FROM orders WHERE status = 'shipped'",
        EngineTag.POSTGRESQL,
        strategy=RELAX_WIDEN,
        status_values=("ignored",),
        snapshot=snapshot,
    )
    assert relaxed == "SELECT * FROM orders WHERE status IN ('pending', 'delivered', 'returned')"


def test_relax_widen_falls_back_to_configured_values() -> None:
    relaxed = relax_query(
        "SELECT * FROM sales WHERE order_status = 'shipped'",
        EngineTag.MYSQL,
        strategy=RELAX_WIDEN,
        status_values=("delivered", "shipped"),
    )
    assert relaxed == "SELECT * FROM sales WHERE order_status IN ('delivered', 'shipped')"


def test_relax_leaves_string_literals_inside_subqueries_alone() -> None:
    query = "SELECT * FROM sales WHERE id IN (SELECT sale_id FROM refunds WHERE status = 'open')"
    assert relax_query(query, EngineTag.SQLITE) == "SELECT * FROM sales"


def test_relax_document_pipeline_drops_status_key() -> None:
    relaxed = relax_query(
        'db.orders.find({"status": "shipped", "region": "north"}).limit(5)',
        EngineTag.MONGODB,
    )
    parsed = parse_pipeline(relaxed)
    assert parsed.collection == "orders"
    assert parsed.stages == [{"$match": {"region": "north"}}, {"$limit": 5}]


def test_relax_document_pipeline_without_match_is_unchanged() -> None:
    query = 'db.orders.aggregate([{"$limit": 5}])'
    assert relax_query(query, EngineTag.MONGODB) == query


def test_relax_document_pipeline_widen() -> None:
    relaxed = relax_query(
        'db.orders.aggregate([{"$match": {"status": "shipped"}}])',
        EngineTag.MONGODB,
        strategy=RELAX_WIDEN,
        status_values=("delivered", "shipped"),
    )
    stages = parse_pipeline(relaxed).stages
    assert stages == [{"$match": {"status": {"$in": ["delivered", "shipped"]}}}]


def test_postgres_mixed_case_identifiers_are_quoted() -> None:
    snapshot = _orders_snapshot()
    rewritten = apply_dialect_rules("SELECT customerName FROM Orders", EngineTag.POSTGRESQL, snapshot)
    assert rewritten == 'SELECT "customerName" FROM "Orders"'


def test_mysql_double_quoted_identifiers_become_backticks() -> None:
    snapshot = _orders_snapshot(EngineTag.MYSQL)
    rewritten = apply_dialect_rules('SELECT "status" FROM orders WHERE "status" = \'x\'', EngineTag.MYSQL, snapshot)
    assert rewritten == "SELECT `status` FROM orders WHERE `status` = 'x'"


def test_dialect_rules_are_noop_for_other_engines() -> None:
    query = "SELECT customerName FROM Orders"
    assert apply_dialect_rules(query, EngineTag.SQLITE, _orders_snapshot(EngineTag.SQLITE)) == query


def test_enum_mismatch_is_reported_not_replaced() -> None:
    mismatches = find_enum_mismatches("SELECT * FROM orders WHERE status = 'shipped'", _orders_snapshot())
    assert len(mismatches) == 1
    assert mismatches[0].column == "status"
    assert mismatches[0].value == "shipped"
    assert mismatches[0].allowed == ("pending", "delivered", "returned")

    assert find_enum_mismatches("SELECT * FROM orders WHERE status = 'delivered'", _orders_snapshot()) == []


def test_postgres_quoting_skips_function_calls_and_respects_position() -> None:
    snapshot = SchemaSnapshot(
        engine=EngineTag.POSTGRESQL,
        database_name="web",
        tables=(
            TableInfo(
                name="Visits",
                columns=(
                    ColumnInfo(name="Count", type="integer"),
                    ColumnInfo(name="Date", type="date"),
                    ColumnInfo(name="created", type="timestamp"),
                ),
            ),
        ),
    )
    rewritten = apply_dialect_rules("SELECT COUNT(*), DATE(created) FROM visits", EngineTag.POSTGRESQL, snapshot)
    assert rewritten == 'SELECT COUNT(*), DATE(created) FROM "Visits"'

    rewritten = apply_dialect_rules("SELECT visits.count FROM visits", EngineTag.POSTGRESQL, snapshot)
    assert rewritten == 'SELECT "Visits"."Count" FROM "Visits"'


def test_enum_mismatch_is_reported_for_quoted_column() -> None:
    mismatches = find_enum_mismatches("SELECT * FROM \"Orders\" WHERE \"status\" = 'done'", _orders_snapshot())
    assert [(item.column, item.value) for item in mismatches] == [("status", "done")]
