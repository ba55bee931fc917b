from __future__ import annotations

import pytest

from insightgate.agent.validation import is_read_only, strip_code_fences, validate_query
from insightgate.core.errors import UnsafeQuery
from insightgate.domain.schema import EngineTag


@pytest.mark.parametrize(
    "text",
    [
        "INSERT INTO sales VALUES (1)",
        "update sales set status = 'x'",
        "Delete FROM sales",
        "DROP TABLE users;",
        "drop table users",
        "TRUNCATE sales",
    ],
)
def test_mutation_leads_are_rejected_as_mutations(text: str) -> None:
    with pytest.raises(UnsafeQuery) as excinfo:
        validate_query(text, EngineTag.POSTGRESQL)
    assert excinfo.value.mutation is True
    assert excinfo.value.code == "UNSAFE_QUERY"


def test_non_read_text_is_rejected_without_mutation_flag() -> None:
    with pytest.raises(UnsafeQuery) as excinfo:
        validate_query("Here is your answer: the sales went up", EngineTag.MYSQL)
    assert excinfo.value.mutation is False


def test_empty_text_is_rejected() -> None:
    with pytest.raises(UnsafeQuery):
        validate_query("   ", EngineTag.SQLITE)
    with pytest.raises(UnsafeQuery):
        validate_query(None, EngineTag.SQLITE)


def test_select_and_with_are_accepted_and_normalized() -> None:
    assert validate_query("SELECT * FROM sales;", EngineTag.SQLITE) == "SELECT * FROM sales"
    query = "WITH totals AS (SELECT region, SUM(amount) AS total FROM sales GROUP BY region) SELECT * FROM totals"
    assert validate_query(query, EngineTag.POSTGRESQL) == query


def test_code_fences_are_stripped() -> None:
    text = "```sql\nSELECT id FROM sales\n```"
    assert strip_code_fences(text) == "SELECT id FROM sales"
    assert validate_query(text, EngineTag.SQLITE) == "SELECT id FROM sales"


def test_stacked_statements_are_rejected() -> None:
    with pytest.raises(UnsafeQuery) as excinfo:
        validate_query("SELECT 1; DROP TABLE sales", EngineTag.POSTGRESQL)
    assert excinfo.value.mutation is True

    with pytest.raises(UnsafeQuery) as excinfo:
        validate_query("SELECT 1; SELECT 2", EngineTag.POSTGRESQL)
    assert excinfo.value.mutation is False


def test_mutation_keyword_inside_cte_is_rejected() -> None:
    with pytest.raises(UnsafeQuery) as excinfo:
        validate_query("WITH gone AS (DELETE FROM sales RETURNING *) SELECT * FROM gone", EngineTag.POSTGRESQL)
    assert excinfo.value.mutation is True


def test_keywords_inside_string_literals_are_allowed() -> None:
    query = "SELECT * FROM audit WHERE action = 'DELETE'"
    assert validate_query(query, EngineTag.POSTGRESQL) == query


def test_select_into_is_rejected() -> None:
    with pytest.raises(UnsafeQuery):
        validate_query("SELECT * INTO backup FROM sales", EngineTag.SQLSERVER)


def test_document_engine_uses_pipeline_grammar() -> None:
    assert validate_query('db.orders.find({"status": "open"})', EngineTag.MONGODB)
    with pytest.raises(UnsafeQuery):
        validate_query("SELECT * FROM orders", EngineTag.MONGODB)
    with pytest.raises(UnsafeQuery) as excinfo:
        validate_query("db.orders.drop()", EngineTag.MONGODB)
    assert excinfo.value.mutation is True


def test_is_read_only() -> None:
    assert is_read_only("select 1", EngineTag.SQLITE)
    assert not is_read_only("DELETE FROM sales", EngineTag.SQLITE)
