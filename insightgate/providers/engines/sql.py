from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.engine.url import URL
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from insightgate.domain.schema import ColumnInfo, TableInfo, build_table
from insightgate.providers.engines.base import EngineAdapter, jsonable_row


logger = logging.getLogger(__name__)

# Bypass bind-parameter parsing so literals such as '10:30' or '%foo%' reach the driver untouched.
_RAW_EXECUTION = {"no_parameters": True}


@dataclass
class SqlHandle:
    engine: Engine
    connection: Connection


class SqlAlchemyAdapter(EngineAdapter):
    """Shared connect/execute/close bracket for the relational engines."""

    # SQLAlchemy driver name substituted into the tenant's URL scheme.
    drivername: str = ""
    quote_open = '"'
    quote_close = '"'

    def build_url(self, connection_string: str) -> URL:
        url = make_url(connection_string.strip())
        return url.set(drivername=self.drivername)

    def connect_args(self, timeout_s: float) -> dict[str, Any]:
        return {}

    def prepare(self, connection: Connection) -> None:
        # Hook for per-session read-only settings.
        return None

    def connect(self, connection_string: str, *, database_name: str, timeout_s: float) -> SqlHandle:
        engine = create_engine(
            self.build_url(connection_string),
            poolclass=NullPool,
            connect_args=self.connect_args(timeout_s),
        )
        try:
            connection = engine.connect()
        except Exception:
            engine.dispose()
            raise
        try:
            self.prepare(connection)
        except Exception:
            connection.close()
            engine.dispose()
            raise
        return SqlHandle(engine=engine, connection=connection)

    def fetch(self, handle: SqlHandle, sql: str, *, max_rows: int | None = None) -> list[dict[str, Any]]:
        result = handle.connection.exec_driver_sql(sql, execution_options=_RAW_EXECUTION)
        if not result.returns_rows:
            return []
        mappings = result.mappings()
        rows = mappings.fetchmany(max_rows) if max_rows is not None else mappings.all()
        result.close()
        return [dict(row) for row in rows]

    def execute(self, handle: SqlHandle, query_text: str, *, max_rows: int) -> list[dict[str, Any]]:
        return [jsonable_row(row) for row in self.fetch(handle, query_text, max_rows=max_rows)]

    def close(self, handle: SqlHandle) -> None:
        # Never commit: closing with an open transaction rolls it back.
        try:
            handle.connection.close()
        finally:
            handle.engine.dispose()

    def quote_identifier(self, name: str) -> str:
        escaped = name.replace(self.quote_close, self.quote_close * 2)
        return f"{self.quote_open}{escaped}{self.quote_close}"

    def probe_query(self, table: str | None, *, limit: int) -> str | None:
        if table is None:
            return self.schema_probe_query(limit=limit)
        return f"SELECT * FROM {self.quote_identifier(table)} LIMIT {int(limit)}"

    def schema_probe_query(self, *, limit: int) -> str | None:
        return None

    def row_counts(self, handle: SqlHandle, tables: list[str]) -> dict[str, int]:
        return {}

    def introspect(self, handle: SqlHandle) -> list[TableInfo]:
        columns_by_table = self.load_columns(handle)
        try:
            counts = self.row_counts(handle, list(columns_by_table))
        except SQLAlchemyError as exc:
            # Row counts are optional metadata; keep the snapshot without them.
            logger.warning("introspect_row_counts_failed engine=%s error=%s", self.engine.value, type(exc).__name__)
            counts = {}
        return [
            build_table(name, columns, counts.get(name))
            for name, columns in columns_by_table.items()
        ]

    def load_columns(self, handle: SqlHandle) -> dict[str, list[ColumnInfo]]:
        raise NotImplementedError


def group_columns(rows: list[dict[str, Any]], *, enum_labels: dict[str, tuple[str, ...]] | None = None) -> dict[str, list[ColumnInfo]]:
    # Rows carry table_name, column_name, data_type, is_nullable, column_default, is_primary_key.
    grouped: dict[str, list[ColumnInfo]] = {}
    for row in rows:
        enum_values: tuple[str, ...] = ()
        udt_name = row.get("udt_name")
        if enum_labels and udt_name in enum_labels:
            enum_values = enum_labels[udt_name]
        default = row.get("column_default")
        grouped.setdefault(str(row["table_name"]), []).append(
            ColumnInfo(
                name=str(row["column_name"]),
                type=str(row["data_type"]),
                nullable=str(row.get("is_nullable", "YES")).upper() == "YES",
                is_primary_key=_truthy(row.get("is_primary_key")),
                default_value=str(default) if default is not None else None,
                enum_values=enum_values,
            )
        )
    return grouped


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.upper() in {"1", "PRI", "TRUE", "YES"}
    return bool(value)
