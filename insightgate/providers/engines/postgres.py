from __future__ import annotations

from typing import Any

from sqlalchemy.engine import Connection

from insightgate.domain.schema import ColumnInfo, EngineTag
from insightgate.providers.engines.sql import SqlAlchemyAdapter, SqlHandle, group_columns


_COLUMNS_SQL = """
SELECT c.table_name, c.column_name, c.data_type, c.udt_name, c.is_nullable, c.column_default,
       CASE WHEN pk.column_name IS NOT NULL THEN 1 ELSE 0 END AS is_primary_key
FROM information_schema.columns c
JOIN information_schema.tables t
  ON t.table_schema = c.table_schema AND t.table_name = c.table_name
LEFT JOIN (
    SELECT kcu.table_schema, kcu.table_name, kcu.column_name
    FROM information_schema.table_constraints tc
    JOIN information_schema.key_column_usage kcu
      ON tc.constraint_name = kcu.constraint_name AND tc.table_schema = kcu.table_schema
    WHERE tc.constraint_type = 'PRIMARY KEY'
) pk
  ON pk.table_schema = c.table_schema
 AND pk.table_name = c.table_name
 AND pk.column_name = c.column_name
WHERE c.table_schema = 'public' AND t.table_type = 'BASE TABLE'
ORDER BY c.table_name, c.ordinal_position
"""

_ENUMS_SQL = """
SELECT t.typname, e.enumlabel
FROM pg_type t
JOIN pg_enum e ON e.enumtypid = t.oid
ORDER BY t.typname, e.enumsortorder
"""

_ROW_COUNTS_SQL = """
SELECT c.relname AS table_name, c.reltuples::bigint AS row_count
FROM pg_class c
JOIN pg_namespace n ON n.oid = c.relnamespace
WHERE n.nspname = 'public' AND c.relkind = 'r'
"""


class PostgresAdapter(SqlAlchemyAdapter):
    engine = EngineTag.POSTGRESQL
    drivername = "postgresql+psycopg"

    def connect_args(self, timeout_s: float) -> dict[str, Any]:
        return {"connect_timeout": max(1, int(timeout_s))}

    def prepare(self, connection: Connection) -> None:
        # First statement of the autobegun transaction, so the whole session is read-only.
        connection.exec_driver_sql("SET TRANSACTION READ ONLY")

    def load_columns(self, handle: SqlHandle) -> dict[str, list[ColumnInfo]]:
        enum_labels: dict[str, list[str]] = {}
        for row in self.fetch(handle, _ENUMS_SQL):
            enum_labels.setdefault(str(row["typname"]), []).append(str(row["enumlabel"]))
        rows = []
        for row in self.fetch(handle, _COLUMNS_SQL):
            if row.get("data_type") == "USER-DEFINED" and row.get("udt_name"):
                # Report the enum type name instead of the generic marker.
                row = {**row, "data_type": row["udt_name"]}
            rows.append(row)
        return group_columns(
            rows,
            enum_labels={name: tuple(labels) for name, labels in enum_labels.items()},
        )

    def row_counts(self, handle: SqlHandle, tables: list[str]) -> dict[str, int]:
        counts: dict[str, int] = {}
        for row in self.fetch(handle, _ROW_COUNTS_SQL):
            value = row.get("row_count")
            # reltuples is -1 for tables never analyzed.
            if value is not None and int(value) >= 0:
                counts[str(row["table_name"])] = int(value)
        return counts

    def schema_probe_query(self, *, limit: int) -> str | None:
        return (
            "SELECT table_name FROM information_schema.tables "
            f"WHERE table_schema = 'public' ORDER BY table_name LIMIT {int(limit)}"
        )
