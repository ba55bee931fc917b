from __future__ import annotations

from typing import Any

from insightgate.domain.schema import ColumnInfo, EngineTag
from insightgate.providers.engines.sql import SqlAlchemyAdapter, SqlHandle, group_columns


_COLUMNS_SQL = """
SELECT c.TABLE_NAME AS table_name, c.COLUMN_NAME AS column_name, c.COLUMN_TYPE AS data_type,
       c.IS_NULLABLE AS is_nullable, c.COLUMN_DEFAULT AS column_default,
       c.COLUMN_KEY AS is_primary_key
FROM information_schema.COLUMNS c
JOIN information_schema.TABLES t
  ON t.TABLE_SCHEMA = c.TABLE_SCHEMA AND t.TABLE_NAME = c.TABLE_NAME
WHERE c.TABLE_SCHEMA = DATABASE() AND t.TABLE_TYPE = 'BASE TABLE'
ORDER BY c.TABLE_NAME, c.ORDINAL_POSITION
"""

_ROW_COUNTS_SQL = """
SELECT TABLE_NAME AS table_name, TABLE_ROWS AS row_count
FROM information_schema.TABLES
WHERE TABLE_SCHEMA = DATABASE() AND TABLE_TYPE = 'BASE TABLE'
"""


class MySQLAdapter(SqlAlchemyAdapter):
    engine = EngineTag.MYSQL
    drivername = "mysql+pymysql"
    quote_open = "`"
    quote_close = "`"

    def connect_args(self, timeout_s: float) -> dict[str, Any]:
        seconds = max(1, int(timeout_s))
        return {"connect_timeout": seconds}

    def load_columns(self, handle: SqlHandle) -> dict[str, list[ColumnInfo]]:
        rows = []
        for row in self.fetch(handle, _COLUMNS_SQL):
            # COLUMN_KEY is 'PRI' for primary key members, '' / 'MUL' / 'UNI' otherwise.
            rows.append({**row, "is_primary_key": row.get("is_primary_key") == "PRI"})
        return group_columns(rows)

    def row_counts(self, handle: SqlHandle, tables: list[str]) -> dict[str, int]:
        return {
            str(row["table_name"]): int(row["row_count"])
            for row in self.fetch(handle, _ROW_COUNTS_SQL)
            if row.get("row_count") is not None
        }

    def schema_probe_query(self, *, limit: int) -> str | None:
        return (
            "SELECT TABLE_NAME FROM information_schema.TABLES "
            f"WHERE TABLE_SCHEMA = DATABASE() ORDER BY TABLE_NAME LIMIT {int(limit)}"
        )
