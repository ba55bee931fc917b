from __future__ import annotations

import re
from typing import Any

from sqlalchemy.engine.url import URL

from insightgate.domain.schema import ColumnInfo, EngineTag
from insightgate.providers.engines.sql import SqlAlchemyAdapter, SqlHandle, group_columns


_COLUMNS_SQL = """
SELECT c.TABLE_NAME AS table_name, c.COLUMN_NAME AS column_name, c.DATA_TYPE AS data_type,
       c.IS_NULLABLE AS is_nullable, c.COLUMN_DEFAULT AS column_default,
       CASE WHEN pk.COLUMN_NAME IS NOT NULL THEN 1 ELSE 0 END AS is_primary_key
FROM INFORMATION_SCHEMA.COLUMNS c
JOIN INFORMATION_SCHEMA.TABLES t
  ON t.TABLE_SCHEMA = c.TABLE_SCHEMA AND t.TABLE_NAME = c.TABLE_NAME
LEFT JOIN (
    SELECT ku.TABLE_SCHEMA, ku.TABLE_NAME, ku.COLUMN_NAME
    FROM INFORMATION_SCHEMA.TABLE_CONSTRAINTS tc
    JOIN INFORMATION_SCHEMA.KEY_COLUMN_USAGE ku
      ON tc.CONSTRAINT_NAME = ku.CONSTRAINT_NAME AND tc.TABLE_SCHEMA = ku.TABLE_SCHEMA
    WHERE tc.CONSTRAINT_TYPE = 'PRIMARY KEY'
) pk
  ON pk.TABLE_SCHEMA = c.TABLE_SCHEMA
 AND pk.TABLE_NAME = c.TABLE_NAME
 AND pk.COLUMN_NAME = c.COLUMN_NAME
WHERE t.TABLE_TYPE = 'BASE TABLE'
ORDER BY c.TABLE_NAME, c.ORDINAL_POSITION
"""

_ROW_COUNTS_SQL = """
SELECT t.name AS table_name, SUM(p.rows) AS row_count
FROM sys.tables t
JOIN sys.partitions p ON p.object_id = t.object_id AND p.index_id IN (0, 1)
GROUP BY t.name
"""

# ADO-style "Server=host,1433;Database=db;User Id=u;Password=p" descriptors.
_KV_RE = re.compile(r"\s*([^=;]+?)\s*=\s*([^;]*)")


def _parse_key_values(text: str) -> dict[str, str]:
    return {key.lower(): value.strip() for key, value in _KV_RE.findall(text)}


class SqlServerAdapter(SqlAlchemyAdapter):
    engine = EngineTag.SQLSERVER
    drivername = "mssql+pymssql"
    quote_open = "["
    quote_close = "]"

    def build_url(self, connection_string: str) -> URL:
        text = connection_string.strip()
        if "://" in text:
            return super().build_url(text)
        options = _parse_key_values(text)
        server = options.get("server") or options.get("data source") or "localhost"
        host, _, port = server.replace("tcp:", "").partition(",")
        return URL.create(
            self.drivername,
            username=options.get("user id") or options.get("uid"),
            password=options.get("password") or options.get("pwd"),
            host=host or "localhost",
            port=int(port) if port else None,
            database=options.get("database") or options.get("initial catalog"),
        )

    def connect_args(self, timeout_s: float) -> dict[str, Any]:
        seconds = max(1, int(timeout_s))
        return {"login_timeout": seconds}

    def load_columns(self, handle: SqlHandle) -> dict[str, list[ColumnInfo]]:
        return group_columns(self.fetch(handle, _COLUMNS_SQL))

    def row_counts(self, handle: SqlHandle, tables: list[str]) -> dict[str, int]:
        return {
            str(row["table_name"]): int(row["row_count"])
            for row in self.fetch(handle, _ROW_COUNTS_SQL)
            if row.get("row_count") is not None
        }

    def probe_query(self, table: str | None, *, limit: int) -> str | None:
        if table is None:
            return self.schema_probe_query(limit=limit)
        return f"SELECT TOP {int(limit)} * FROM {self.quote_identifier(table)}"

    def schema_probe_query(self, *, limit: int) -> str | None:
        return (
            f"SELECT TOP {int(limit)} TABLE_NAME FROM INFORMATION_SCHEMA.TABLES "
            "WHERE TABLE_TYPE = 'BASE TABLE' ORDER BY TABLE_NAME"
        )
