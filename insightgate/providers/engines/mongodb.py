from __future__ import annotations

from dataclasses import dataclass
from itertools import islice
import json
import re
from typing import Any

from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import ConfigurationError

from insightgate.core.errors import UnsafeQuery
from insightgate.domain.schema import ColumnInfo, EngineTag, TableInfo
from insightgate.providers.engines.base import EngineAdapter, jsonable_row


# Stages that only read or reshape documents already in flight.
READ_STAGES = frozenset(
    {
        "$match",
        "$project",
        "$group",
        "$sort",
        "$limit",
        "$skip",
        "$unwind",
        "$count",
        "$addFields",
        "$lookup",
        "$facet",
        "$bucket",
        "$sortByCount",
        "$replaceRoot",
        "$sample",
    }
)
# Write stages and server-side JavaScript are rejected wherever they appear.
FORBIDDEN_OPERATORS = frozenset({"$out", "$merge", "$where", "$function", "$accumulator"})

_WRITE_METHODS_RE = re.compile(
    r"^(insert|update|delete|remove|drop|replace|rename|create|bulkwrite|findoneand|findandmodify)",
    re.IGNORECASE,
)
_HEAD_RE = re.compile(
    r"^db\.(?:getCollection\(\s*[\"']([^\"']+)[\"']\s*\)|([A-Za-z_][\w\-]*(?:\.[A-Za-z_][\w\-]*)*?))\.([A-Za-z]+)\(",
)

_SYNTHETIC_COLUMNS = (
    ColumnInfo(name="_id", type="ObjectId", nullable=False, is_primary_key=True),
    ColumnInfo(name="document", type="JSON", nullable=True),
)


@dataclass(frozen=True)
class ParsedPipeline:
    collection: str
    stages: list[dict[str, Any]]


@dataclass
class MongoHandle:
    client: MongoClient
    database: Database


def _call_arguments(text: str, start: int) -> tuple[str, int]:
    # Return the text between the parenthesis opened at start-1 and its match.
    depth = 1
    index = start
    quote: str | None = None
    while index < len(text):
        char = text[index]
        if quote is not None:
            if char == "\\":
                index += 2
                continue
            if char == quote:
                quote = None
        elif char in {'"', "'"}:
            quote = char
        elif char in "([{":
            depth += 1
        elif char in ")]}":
            depth -= 1
            if depth == 0:
                return text[start:index], index + 1
        index += 1
    raise UnsafeQuery("Unbalanced pipeline description", detail=text[:200])


def _load_json(fragment: str) -> Any:
    try:
        return json.loads(fragment)
    except ValueError as exc:
        raise UnsafeQuery(
            "Pipeline arguments must be strict JSON",
            detail=str(exc),
        ) from exc


def _check_operators(value: Any) -> None:
    if isinstance(value, dict):
        for key, item in value.items():
            if key in FORBIDDEN_OPERATORS:
                raise UnsafeQuery(f"Operator {key} is not allowed", mutation=True)
            _check_operators(item)
    elif isinstance(value, list):
        for item in value:
            _check_operators(item)


def validate_stages(stages: Any) -> list[dict[str, Any]]:
    if not isinstance(stages, list):
        raise UnsafeQuery("aggregate() expects a list of stages")
    _check_operators(stages)
    for stage in stages:
        if not isinstance(stage, dict) or len(stage) != 1:
            raise UnsafeQuery("Each pipeline stage must be a single-key object")
        name = next(iter(stage))
        if name not in READ_STAGES:
            raise UnsafeQuery(f"Pipeline stage {name} is not a read stage")
    return stages


def parse_pipeline(text: str) -> ParsedPipeline:
    """Translate the constrained shell-style grammar into an aggregation pipeline.

    Accepted forms::

        db.<collection>.aggregate([<stage>, ...])
        db.<collection>.find(<filter>[, <projection>])[.sort(<keys>)][.limit(<n>)]

    Arguments must be strict JSON.
    """
    source = (text or "").strip().rstrip(";").strip()
    match = _HEAD_RE.match(source)
    if match is None:
        raise UnsafeQuery("Document query must start with db.<collection>.find( or .aggregate(")
    collection = match.group(1) or match.group(2)
    method = match.group(3)
    if _WRITE_METHODS_RE.match(method):
        raise UnsafeQuery(f"Collection method {method} is not a read", mutation=True)
    args, position = _call_arguments(source, match.end())

    if method == "aggregate":
        if source[position:].strip():
            raise UnsafeQuery("Unexpected text after aggregate()")
        stages = validate_stages(_load_json(args) if args.strip() else [])
        return ParsedPipeline(collection=collection, stages=stages)

    if method != "find":
        raise UnsafeQuery(f"Collection method {method} is not supported")

    find_args = _load_json(f"[{args}]") if args.strip() else []
    if len(find_args) > 2 or not all(isinstance(item, dict) for item in find_args):
        raise UnsafeQuery("find() accepts a filter and an optional projection object")
    stages: list[dict[str, Any]] = []
    if find_args and find_args[0]:
        stages.append({"$match": find_args[0]})
    if len(find_args) == 2 and find_args[1]:
        stages.append({"$project": find_args[1]})

    # Only .sort() and .limit() may be chained after find().
    rest = source[position:].strip()
    while rest:
        chained = re.match(r"^\.(sort|limit|skip)\(", rest)
        if chained is None:
            raise UnsafeQuery("Only .sort(), .skip() and .limit() may follow find()")
        chained_args, end = _call_arguments(rest, chained.end())
        value = _load_json(chained_args)
        if chained.group(1) == "sort":
            if not isinstance(value, dict):
                raise UnsafeQuery("sort() expects an object")
            stages.append({"$sort": value})
        else:
            if not isinstance(value, int) or value < 0:
                raise UnsafeQuery(f"{chained.group(1)}() expects a non-negative integer")
            stages.append({f"${chained.group(1)}": value})
        rest = rest[end:].strip()

    return ParsedPipeline(collection=collection, stages=validate_stages(stages))


class MongoAdapter(EngineAdapter):
    engine = EngineTag.MONGODB

    def connect(self, connection_string: str, *, database_name: str, timeout_s: float) -> MongoHandle:
        timeout_ms = max(1, int(timeout_s * 1000))
        client: MongoClient = MongoClient(
            connection_string,
            serverSelectionTimeoutMS=timeout_ms,
            connectTimeoutMS=timeout_ms,
            socketTimeoutMS=timeout_ms,
        )
        try:
            # MongoClient connects lazily; ping forces authentication and reachability.
            client.admin.command("ping")
            try:
                database = client.get_default_database()
            except ConfigurationError:
                database = client[database_name]
        except Exception:
            client.close()
            raise
        return MongoHandle(client=client, database=database)

    def introspect(self, handle: MongoHandle) -> list[TableInfo]:
        tables: list[TableInfo] = []
        for name in sorted(handle.database.list_collection_names()):
            if name.startswith("system."):
                continue
            tables.append(
                TableInfo(
                    name=name,
                    columns=_SYNTHETIC_COLUMNS,
                    row_count=int(handle.database[name].estimated_document_count()),
                )
            )
        return tables

    def execute(self, handle: MongoHandle, query_text: str, *, max_rows: int) -> list[dict[str, Any]]:
        parsed = parse_pipeline(query_text)
        stages = list(parsed.stages)
        if not any("$limit" in stage or "$count" in stage for stage in stages):
            stages.append({"$limit": max_rows})
        cursor = handle.database[parsed.collection].aggregate(stages)
        try:
            return [jsonable_row(document) for document in islice(cursor, max_rows)]
        finally:
            cursor.close()

    def close(self, handle: MongoHandle) -> None:
        handle.client.close()

    def quote_identifier(self, name: str) -> str:
        return name

    def probe_query(self, table: str | None, *, limit: int) -> str | None:
        if table is None:
            return None
        return f'db.getCollection("{table}").aggregate([{{"$limit": {int(limit)}}}])'
