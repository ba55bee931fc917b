from __future__ import annotations

from pathlib import Path
from typing import Any

from sqlalchemy.engine.url import URL

from insightgate.domain.schema import ColumnInfo, EngineTag
from insightgate.providers.engines.detect import sqlite_path
from insightgate.providers.engines.sql import SqlAlchemyAdapter, SqlHandle


_TABLES_SQL = (
    "SELECT name FROM sqlite_master "
    "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
)


class SQLiteAdapter(SqlAlchemyAdapter):
    engine = EngineTag.SQLITE
    drivername = "sqlite"

    def build_url(self, connection_string: str) -> URL:
        path = Path(sqlite_path(connection_string).split("?", 1)[0]).expanduser().resolve()
        # Read-only URI mode: a missing file fails to open instead of being created.
        return URL.create(
            "sqlite",
            database=f"file:{path.as_posix()}",
            query={"mode": "ro", "uri": "true"},
        )

    def connect_args(self, timeout_s: float) -> dict[str, Any]:
        # Worker threads open the connection; allow it to be closed from another.
        return {"timeout": float(timeout_s), "check_same_thread": False}

    def load_columns(self, handle: SqlHandle) -> dict[str, list[ColumnInfo]]:
        grouped: dict[str, list[ColumnInfo]] = {}
        for table_row in self.fetch(handle, _TABLES_SQL):
            table = str(table_row["name"])
            columns: list[ColumnInfo] = []
            for row in self.fetch(handle, f"PRAGMA table_info({self.quote_identifier(table)})"):
                default = row.get("dflt_value")
                columns.append(
                    ColumnInfo(
                        name=str(row["name"]),
                        type=str(row.get("type") or ""),
                        nullable=not bool(row.get("notnull")),
                        is_primary_key=bool(row.get("pk")),
                        default_value=str(default) if default is not None else None,
                    )
                )
            grouped[table] = columns
        return grouped

    def row_counts(self, handle: SqlHandle, tables: list[str]) -> dict[str, int]:
        counts: dict[str, int] = {}
        for table in tables:
            rows = self.fetch(handle, f"SELECT COUNT(*) AS row_count FROM {self.quote_identifier(table)}")
            counts[table] = int(rows[0]["row_count"]) if rows else 0
        return counts

    def schema_probe_query(self, *, limit: int) -> str | None:
        return f"SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name LIMIT {int(limit)}"
