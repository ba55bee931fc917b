from __future__ import annotations

import re

import sqlparse

from insightgate.core.errors import UnsafeQuery
from insightgate.domain.schema import EngineTag
from insightgate.providers.engines.mongodb import parse_pipeline


_FENCE_BLOCK_RE = re.compile(r"```[A-Za-z0-9_+\-]*[ \t]*\n?(.*?)```", re.DOTALL)
_READ_LEAD_RE = re.compile(r"^\s*(SELECT|WITH)\b", re.IGNORECASE)
_MUTATION_LEAD_RE = re.compile(
    r"^\s*(INSERT|UPDATE|DELETE|DROP|ALTER|CREATE|TRUNCATE|MERGE|REPLACE|UPSERT|GRANT|REVOKE"
    r"|EXEC|EXECUTE|CALL|ATTACH|DETACH|PRAGMA|SET|USE|BEGIN|COMMIT|ROLLBACK|VACUUM|LOCK|COPY)\b",
    re.IGNORECASE,
)

# Keyword tokens that never belong in a read; REPLACE and SET are omitted since
# they also occur as a string function and in CHARACTER SET clauses.
MUTATION_KEYWORDS = frozenset(
    {
        "INSERT",
        "UPDATE",
        "DELETE",
        "DROP",
        "ALTER",
        "CREATE",
        "TRUNCATE",
        "MERGE",
        "UPSERT",
        "GRANT",
        "REVOKE",
        "EXEC",
        "EXECUTE",
        "CALL",
        "INTO",
        "ATTACH",
        "DETACH",
        "PRAGMA",
        "VACUUM",
    }
)


def strip_code_fences(text: str | None) -> str:
    raw = (text or "").strip()
    if "```" not in raw:
        return raw
    match = _FENCE_BLOCK_RE.search(raw)
    if match is not None:
        return match.group(1).strip()
    return raw.replace("```", "").strip()


def _normalize_sql(text: str) -> str:
    cleaned = sqlparse.format(text, strip_comments=True).strip()
    while cleaned.endswith(";"):
        cleaned = cleaned[:-1].rstrip()
    return cleaned


def validate_sql(text: str) -> str:
    cleaned = _normalize_sql(strip_code_fences(text))
    if not cleaned:
        raise UnsafeQuery("Empty query text")
    if _MUTATION_LEAD_RE.match(cleaned):
        raise UnsafeQuery("Statement does not start with a read keyword", detail=cleaned[:200], mutation=True)
    if not _READ_LEAD_RE.match(cleaned):
        raise UnsafeQuery("Statement does not start with SELECT", detail=cleaned[:200])

    statements = [statement for statement in sqlparse.split(cleaned) if statement.strip().strip(";")]
    if len(statements) > 1:
        trailing_mutation = any(_MUTATION_LEAD_RE.match(item) for item in statements[1:])
        raise UnsafeQuery("Only one statement is allowed", detail=cleaned[:200], mutation=trailing_mutation)

    # Token scan ignores keywords inside string literals and quoted identifiers.
    parsed = sqlparse.parse(cleaned)[0]
    for token in parsed.flatten():
        if token.is_keyword and token.normalized in MUTATION_KEYWORDS:
            raise UnsafeQuery(
                f"Mutation keyword {token.normalized} found in statement",
                detail=cleaned[:200],
                mutation=True,
            )
    return cleaned


def validate_pipeline(text: str) -> str:
    cleaned = strip_code_fences(text).strip().rstrip(";").strip()
    if not cleaned:
        raise UnsafeQuery("Empty query text")
    parse_pipeline(cleaned)
    return cleaned


def validate_query(text: str | None, engine: EngineTag) -> str:
    """Return the executable form of generated text or raise UnsafeQuery.

    SQL engines accept a single SELECT (optionally WITH ...) statement with no
    mutation keyword anywhere; the document engine accepts the constrained
    find/aggregate grammar.
    """
    if engine.is_document:
        return validate_pipeline(text or "")
    return validate_sql(text or "")


def is_read_only(text: str | None, engine: EngineTag) -> bool:
    try:
        validate_query(text, engine)
    except UnsafeQuery:
        return False
    return True
