"""Token-level rewrite rules applied to validated queries.

Two pipelines live here:

* relaxation, used when a query returns no rows: drop (or widen) an equality
  filter on a status-like column, otherwise strip the top-level WHERE clause;
* dialect rules, applied to every validated draft: identifier quoting fixes
  that do not change query meaning.

Rules operate on sqlparse token lists rather than regular expressions over the
raw text so string literals and nested subqueries are never touched by accident.
Invalid enum literals are reported (for repair prompts) and never replaced with
a guessed value.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import re
from typing import Any, Callable, Iterable

import sqlparse
from sqlparse import sql
from sqlparse import tokens as T

from insightgate.domain.schema import EngineTag, SchemaSnapshot
from insightgate.providers.engines.mongodb import parse_pipeline


logger = logging.getLogger(__name__)

_STATUS_COLUMN_RE = re.compile(r"^(status|state|\w+_status|status_\w+)$", re.IGNORECASE)

RELAX_DROP = "drop"
RELAX_WIDEN = "widen"


@dataclass
class Piece:
    # Flattened token; rules mutate value in place and the query is re-joined.
    ttype: Any
    value: str


@dataclass(frozen=True)
class RewriteContext:
    engine: EngineTag
    snapshot: SchemaSnapshot | None = None


RewriteRule = Callable[[list[Piece], RewriteContext], None]


@dataclass(frozen=True)
class EnumMismatch:
    column: str
    value: str
    allowed: tuple[str, ...]


def _statement(query: str) -> sql.Statement:
    return sqlparse.parse(query)[0]


def _text(tokens: Iterable[sql.Token]) -> str:
    return "".join(str(token) for token in tokens).strip()


def _quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _top_level_where(statement: sql.Statement) -> sql.Where | None:
    for token in statement.tokens:
        if isinstance(token, sql.Where):
            return token
    return None


def _conjuncts(where: sql.Where) -> list[list[sql.Token]] | None:
    # Split on top-level AND; give up on OR since dropping a disjunct widens unpredictably.
    parts: list[list[sql.Token]] = [[]]
    between_open = False
    for token in where.tokens[1:]:
        if token.is_keyword and token.normalized == "OR":
            return None
        if token.is_keyword and token.normalized == "BETWEEN":
            between_open = True
        if token.is_keyword and token.normalized == "AND":
            if between_open:
                between_open = False
                parts[-1].append(token)
                continue
            parts.append([])
            continue
        parts[-1].append(token)
    return parts


def _column_name(token: sql.Token) -> str:
    if isinstance(token, sql.Identifier):
        return token.get_real_name() or str(token)
    return str(token).strip('"`[]')


def _status_equality(part: list[sql.Token]) -> tuple[str, str, str] | None:
    # Match `<status-like column> = '<literal>'` and return (column text, column name, literal).
    meaningful = [token for token in part if not token.is_whitespace]
    if len(meaningful) == 1 and isinstance(meaningful[0], sql.Comparison):
        comparison = meaningful[0]
        operator = next((token for token in comparison.tokens if token.ttype is T.Operator.Comparison), None)
        left, right = comparison.left, comparison.right
    elif len(meaningful) == 3 and meaningful[1].ttype is T.Operator.Comparison:
        # Column names the lexer reads as keywords are never grouped into a Comparison.
        left, operator, right = meaningful
    else:
        return None
    if operator is None or operator.value != "=":
        return None
    if right.ttype not in T.Literal.String.Single:
        return None
    name = _column_name(left)
    if not _STATUS_COLUMN_RE.match(name):
        return None
    literal = str(right)[1:-1].replace("''", "'")
    return str(left).strip(), name, literal


def _replace_where(statement: sql.Statement, where: sql.Where, replacement: str) -> str:
    index = statement.tokens.index(where)
    prefix = _text(statement.tokens[:index])
    suffix = _text(statement.tokens[index + 1:])
    return " ".join(part for part in (prefix, replacement, suffix) if part)


def _allowed_values(
    column: str,
    snapshot: SchemaSnapshot | None,
    default_values: tuple[str, ...],
) -> tuple[str, ...]:
    if snapshot is not None:
        for table in snapshot.tables:
            info = table.column(column)
            if info is not None and info.enum_values:
                return info.enum_values
    return default_values


def relax_sql(
    query: str,
    *,
    strategy: str = RELAX_DROP,
    status_values: tuple[str, ...] = (),
    snapshot: SchemaSnapshot | None = None,
) -> str:
    statement = _statement(query)
    where = _top_level_where(statement)
    if where is None:
        return query

    parts = _conjuncts(where)
    if parts is not None:
        matches = {index: _status_equality(part) for index, part in enumerate(parts)}
        status_parts = {index: match for index, match in matches.items() if match is not None}
        if status_parts:
            kept: list[str] = []
            for index, part in enumerate(parts):
                match = status_parts.get(index)
                if match is None:
                    kept.append(_text(part))
                    continue
                if strategy != RELAX_WIDEN:
                    continue
                column_text, column_name, literal = match
                values = _allowed_values(column_name, snapshot, status_values)
                if not values:
                    continue
                logger.warning(
                    "relax_status_widened column=%s literal=%s values=%d",
                    column_name,
                    literal,
                    len(values),
                )
                in_list = ", ".join(_quote_literal(value) for value in values)
                kept.append(f"{column_text} IN ({in_list})")
            replacement = ("WHERE " + " AND ".join(kept)) if kept else ""
            return _replace_where(statement, where, replacement)

    return _replace_where(statement, where, "")


def relax_pipeline(
    query: str,
    *,
    strategy: str = RELAX_DROP,
    status_values: tuple[str, ...] = (),
) -> str:
    parsed = parse_pipeline(query)
    stages = [dict(stage) for stage in parsed.stages]
    match_indexes = [index for index, stage in enumerate(stages) if "$match" in stage]
    if not match_indexes:
        return query

    changed = False
    for index in match_indexes:
        condition = dict(stages[index]["$match"])
        for key in list(condition):
            if not _STATUS_COLUMN_RE.match(key.split(".")[-1]) or isinstance(condition[key], (dict, list)):
                continue
            if strategy == RELAX_WIDEN and status_values:
                condition[key] = {"$in": list(status_values)}
            else:
                del condition[key]
            changed = True
        stages[index] = {"$match": condition}

    if changed:
        stages = [stage for stage in stages if stage != {"$match": {}}]
    else:
        # No status filter: drop every top-level $match stage.
        stages = [stage for stage in stages if "$match" not in stage]
    return f'db.getCollection("{parsed.collection}").aggregate({json.dumps(stages)})'


def relax_query(
    query: str,
    engine: EngineTag,
    *,
    strategy: str = RELAX_DROP,
    status_values: tuple[str, ...] = (),
    snapshot: SchemaSnapshot | None = None,
) -> str:
    """Loosen a query that returned no rows; returns the input unchanged when nothing applies."""
    if engine.is_document:
        return relax_pipeline(query, strategy=strategy, status_values=status_values)
    return relax_sql(query, strategy=strategy, status_values=status_values, snapshot=snapshot)


def _snapshot_names(snapshot: SchemaSnapshot | None) -> set[str]:
    names: set[str] = set()
    if snapshot is None:
        return names
    for table in snapshot.tables:
        names.add(table.name)
        names.update(column.name for column in table.columns)
    return names


_TABLE_KEYWORDS = {"FROM", "JOIN", "INTO", "UPDATE", "TABLE"}


def _is_table_keyword(value: str) -> bool:
    # sqlparse lexes `LEFT JOIN` and friends as one keyword token.
    words = value.upper().split()
    return bool(words) and words[-1] in _TABLE_KEYWORDS


def _neighbour(pieces: list[Piece], index: int, step: int) -> Piece | None:
    index += step
    while 0 <= index < len(pieces):
        if pieces[index].ttype not in T.Whitespace and pieces[index].ttype not in T.Comment:
            return pieces[index]
        index += step
    return None


def _mixed_case(names: Iterable[str]) -> dict[str, str]:
    return {name.lower(): name for name in names if name != name.lower()}


def quote_case_sensitive_identifiers(pieces: list[Piece], context: RewriteContext) -> None:
    # PostgreSQL folds unquoted names to lower case, so mixed-case names need quotes.
    snapshot = context.snapshot
    if snapshot is None:
        return
    tables = _mixed_case(table.name for table in snapshot.tables)
    columns = _mixed_case(column.name for table in snapshot.tables for column in table.columns)
    if not tables and not columns:
        return
    for index, piece in enumerate(pieces):
        if piece.ttype not in T.Name:
            continue
        following = _neighbour(pieces, index, 1)
        if following is not None and following.value == "(":
            # Function call such as COUNT( or DATE(.
            continue
        previous = _neighbour(pieces, index, -1)
        if previous is not None and previous.ttype in T.Keyword and _is_table_keyword(previous.value):
            candidates = tables
        elif following is not None and following.value == ".":
            # Qualifier: `Orders.id`.
            candidates = tables
        else:
            candidates = columns
        name = candidates.get(piece.value.lower())
        if name is not None:
            piece.value = f'"{name}"'


def backtick_double_quoted_identifiers(pieces: list[Piece], context: RewriteContext) -> None:
    # MySQL reads "x" as a string literal; only known identifiers are converted.
    known = {name.lower() for name in _snapshot_names(context.snapshot)}
    for piece in pieces:
        if piece.ttype not in T.String.Symbol or not piece.value.startswith('"'):
            continue
        inner = piece.value[1:-1].replace('""', '"')
        if inner.lower() in known:
            piece.value = "`" + inner.replace("`", "``") + "`"


DIALECT_RULES: dict[EngineTag, tuple[RewriteRule, ...]] = {
    EngineTag.POSTGRESQL: (quote_case_sensitive_identifiers,),
    EngineTag.MYSQL: (backtick_double_quoted_identifiers,),
}


def apply_rules(query: str, rules: Iterable[RewriteRule], context: RewriteContext) -> str:
    pieces = [Piece(token.ttype, token.value) for token in _statement(query).flatten()]
    for rule in rules:
        rule(pieces, context)
    return "".join(piece.value for piece in pieces)


def apply_dialect_rules(query: str, engine: EngineTag, snapshot: SchemaSnapshot | None) -> str:
    rules = DIALECT_RULES.get(engine)
    if not rules:
        return query
    return apply_rules(query, rules, RewriteContext(engine=engine, snapshot=snapshot))


def _equality_literals(query: str) -> Iterable[tuple[str, str]]:
    # Flat scan for `<name> = '<literal>'`; works whether or not the lexer grouped a Comparison.
    meaningful = [token for token in _statement(query).flatten() if not token.is_whitespace]
    for index in range(1, len(meaningful) - 1):
        operator = meaningful[index]
        if operator.ttype is not T.Operator.Comparison or operator.value != "=":
            continue
        left, right = meaningful[index - 1], meaningful[index + 1]
        if right.ttype not in T.Literal.String.Single:
            continue
        if left.ttype not in T.Name and left.ttype not in T.Keyword and left.ttype not in T.String.Symbol:
            continue
        yield _column_name(left), str(right)[1:-1].replace("''", "'")


def find_enum_mismatches(query: str, snapshot: SchemaSnapshot | None) -> list[EnumMismatch]:
    """Report `<enum column> = '<literal>'` comparisons whose literal is not a known label."""
    if snapshot is None or snapshot.engine.is_document:
        return []
    enum_columns: dict[str, tuple[str, ...]] = {}
    for table in snapshot.tables:
        for column in table.columns:
            if column.enum_values:
                enum_columns.setdefault(column.name.lower(), column.enum_values)
    if not enum_columns:
        return []

    mismatches: list[EnumMismatch] = []
    for name, literal in _equality_literals(query):
        allowed = enum_columns.get(name.lower())
        if allowed is not None and literal not in allowed:
            mismatches.append(EnumMismatch(column=name, value=literal, allowed=allowed))
    return mismatches
