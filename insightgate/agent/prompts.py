from __future__ import annotations

import json
from typing import Any

from insightgate.agent.rewrite import EnumMismatch
from insightgate.domain.schema import EngineTag, SchemaSnapshot


ENGINE_LABELS: dict[EngineTag, str] = {
    EngineTag.POSTGRESQL: "PostgreSQL",
    EngineTag.MYSQL: "MySQL 8.0",
    EngineTag.SQLSERVER: "Microsoft SQL Server",
    EngineTag.SQLITE: "SQLite",
    EngineTag.MONGODB: "MongoDB",
}

_COMMON_SQL_RULES = [
    "Use only the tables and columns provided in the schema.",
    "Return ONLY the query, no explanations and no comments.",
    "ONLY generate a single SELECT statement, NEVER INSERT, UPDATE, DELETE or DDL.",
    "If the question is about analysis, include aggregations and grouping.",
    "Consider the conversation history to understand follow-up questions.",
]

_ENGINE_RULES: dict[EngineTag, list[str]] = {
    EngineTag.POSTGRESQL: [
        "Table and column names are case-sensitive: wrap mixed-case names in double quotes.",
        "Compare enum columns only against the listed VALUES.",
    ],
    EngineTag.MYSQL: [
        "Use only MySQL 8.0 compatible syntax.",
        "Do not use multiple CTEs (WITH ... AS ...); use subqueries if needed.",
        "Do not use double quotes for table or column names. Use backticks or no quotes.",
        "With ONLY_FULL_GROUP_BY, every non-aggregated selected column must appear in GROUP BY.",
    ],
    EngineTag.SQLSERVER: [
        "Use T-SQL syntax: limit rows with SELECT TOP n, not LIMIT.",
        "Quote identifiers with square brackets when needed.",
    ],
    EngineTag.SQLITE: [
        "Use SQLite syntax; date functions are date(), strftime() and julianday().",
    ],
}

_DOCUMENT_RULES = [
    "Return ONLY one read query, no explanations.",
    'Use exactly one of: db.<collection>.find(<filter>, <projection>) or db.<collection>.aggregate([<stages>]).',
    "Arguments must be strict JSON: double-quoted keys and strings, no functions.",
    "Allowed stages: $match, $project, $group, $sort, $limit, $skip, $unwind, $count, $addFields, "
    "$lookup, $facet, $bucket, $sortByCount, $replaceRoot, $sample.",
    "Never use $out, $merge, $where, $function or any write method.",
]


def _display_name(name: str, engine: EngineTag) -> str:
    if engine is EngineTag.POSTGRESQL and name != name.lower():
        return f'"{name}"'
    return name


def format_schema_for_prompt(snapshot: SchemaSnapshot) -> str:
    blocks: list[str] = []
    for table in snapshot.tables:
        column_parts: list[str] = []
        for column in table.columns:
            text = f"{_display_name(column.name, snapshot.engine)} ({column.type})"
            if column.is_primary_key:
                text += " [PRIMARY KEY]"
            if not column.nullable:
                text += " [NOT NULL]"
            if column.enum_values:
                text += " [VALUES: " + ", ".join(column.enum_values) + "]"
            column_parts.append(text)
        header = f"Table: {_display_name(table.name, snapshot.engine)}"
        if table.row_count is not None:
            header += f" (~{table.row_count} rows)"
        label = "Fields" if snapshot.engine.is_document else "Columns"
        blocks.append(f"{header}\n{label}: {', '.join(column_parts)}")
    return "\n\n".join(blocks)


def engine_rules(engine: EngineTag) -> list[str]:
    if engine.is_document:
        return list(_DOCUMENT_RULES)
    return _COMMON_SQL_RULES + _ENGINE_RULES.get(engine, [])


def build_query_prompt(
    snapshot: SchemaSnapshot,
    question: str,
    conversation_context: str | None = None,
) -> str:
    engine = snapshot.engine
    kind = "MongoDB query" if engine.is_document else "SQL query"
    lines = [
        f"You are a database expert. Generate a {ENGINE_LABELS[engine]} {kind} to answer the user's question.",
        "",
        "Database Schema:",
        format_schema_for_prompt(snapshot) or "(no tables)",
        "",
        f"User Question: {question.strip()}",
    ]
    if conversation_context:
        lines += ["", "Conversation History:", conversation_context.strip()]
    lines += ["", "Requirements:"]
    lines += [f"- {rule}" for rule in engine_rules(engine)]
    lines += ["", "Query:"]
    return "\n".join(lines)


def build_repair_prompt(
    base_prompt: str,
    error_text: str,
    engine: EngineTag,
    *,
    previous_query: str | None = None,
    enum_mismatches: list[EnumMismatch] | None = None,
    status_values: tuple[str, ...] = (),
) -> str:
    lines = [base_prompt, ""]
    if previous_query:
        lines += ["The previous query was:", previous_query, ""]
    lines += [
        f"It failed on {ENGINE_LABELS[engine]} with the following error:",
        error_text.strip() or "(no error text)",
        "",
        "Return only the corrected query.",
    ]
    if engine.is_document:
        lines.append("- Follow the find/aggregate grammar exactly with strict JSON arguments.")
    else:
        lines += [
            "- Do not use multiple CTEs.",
            "- Check that every table alias is defined before use and every column exists on its table.",
        ]
        if engine is EngineTag.MYSQL:
            lines.append("- Do not use double quotes for identifiers; use backticks.")
        elif engine is EngineTag.POSTGRESQL:
            lines.append("- Quote mixed-case identifiers with double quotes.")
        elif engine is EngineTag.SQLSERVER:
            lines.append("- Use TOP n instead of LIMIT and square brackets for identifiers.")
    for mismatch in enum_mismatches or []:
        allowed = ", ".join(f"'{value}'" for value in mismatch.allowed)
        lines.append(
            f"- '{mismatch.value}' is not a valid value for {mismatch.column}; "
            f"allowed values are {allowed}."
        )
    if status_values and not enum_mismatches:
        values = ", ".join(f"'{value}'" for value in status_values)
        lines.append(f"- For status filters use an explicit set such as IN ({values}) instead of guessing one literal.")
    return "\n".join(lines)


def build_insight_prompt(
    question: str,
    query_text: str,
    rows: list[dict[str, Any]],
    conversation_context: str | None = None,
) -> str:
    lines = [
        "You are a business analyst. Analyze the query result below and answer the user's question.",
        "",
        f"User Question: {question.strip()}",
        "",
        f"Query: {query_text}",
        f"Rows returned: {len(rows)}",
        "Data:",
        json.dumps(rows, default=str),
    ]
    if conversation_context:
        lines += ["", "Conversation History:", conversation_context.strip()]
    lines += [
        "",
        "Do not mention database details or query specifics.",
        "Return clean JSON (no markdown) with this structure:",
        '{"insights": "...", "recommendations": ["..."], "confidence": 1-10}',
    ]
    return "\n".join(lines)
