from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EngineTag(str, Enum):
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    SQLSERVER = "sqlserver"
    SQLITE = "sqlite"
    MONGODB = "mongodb"

    @property
    def is_document(self) -> bool:
        return self is EngineTag.MONGODB


@dataclass(frozen=True)
class ColumnInfo:
    name: str
    type: str
    nullable: bool = True
    is_primary_key: bool = False
    default_value: str | None = None
    # Only populated for native enum columns on engines that expose enum metadata.
    enum_values: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "type": self.type,
            "nullable": self.nullable,
            "is_primary_key": self.is_primary_key,
        }
        if self.default_value is not None:
            payload["default_value"] = self.default_value
        if self.enum_values:
            payload["enum_values"] = list(self.enum_values)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ColumnInfo":
        return cls(
            name=str(payload["name"]),
            type=str(payload["type"]),
            nullable=bool(payload.get("nullable", True)),
            is_primary_key=bool(payload.get("is_primary_key", False)),
            default_value=payload.get("default_value"),
            enum_values=tuple(str(value) for value in payload.get("enum_values") or ()),
        )


@dataclass(frozen=True)
class TableInfo:
    name: str
    columns: tuple[ColumnInfo, ...] = ()
    row_count: int | None = None

    def column(self, name: str) -> ColumnInfo | None:
        lowered = name.lower()
        for column in self.columns:
            if column.name.lower() == lowered:
                return column
        return None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "name": self.name,
            "columns": [column.to_dict() for column in self.columns],
        }
        if self.row_count is not None:
            payload["row_count"] = self.row_count
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "TableInfo":
        row_count = payload.get("row_count")
        return cls(
            name=str(payload["name"]),
            columns=tuple(ColumnInfo.from_dict(item) for item in payload["columns"]),
            row_count=int(row_count) if row_count is not None else None,
        )


def build_table(name: str, columns: list[ColumnInfo], row_count: int | None = None) -> TableInfo:
    # Keep the first occurrence when metadata joins report a column twice.
    seen: set[str] = set()
    unique: list[ColumnInfo] = []
    for column in columns:
        if column.name in seen:
            continue
        seen.add(column.name)
        unique.append(column)
    return TableInfo(name=name, columns=tuple(unique), row_count=row_count)


@dataclass(frozen=True)
class SchemaSnapshot:
    engine: EngineTag
    database_name: str
    tables: tuple[TableInfo, ...] = ()

    def table(self, name: str) -> TableInfo | None:
        lowered = name.lower()
        for table in self.tables:
            if table.name.lower() == lowered:
                return table
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "engine": self.engine.value,
            "database_name": self.database_name,
            "tables": [table.to_dict() for table in self.tables],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SchemaSnapshot":
        return cls(
            engine=EngineTag(payload["engine"]),
            database_name=str(payload["database_name"]),
            tables=tuple(TableInfo.from_dict(item) for item in payload["tables"]),
        )


@dataclass(frozen=True)
class ConnectionDescriptor:
    engine: EngineTag
    database_name: str
    # Fernet token; the gateway decrypts it per call and never stores the plaintext.
    encrypted_secret: str | None = None
    # Plaintext connection string, accepted only from CLI and test callers.
    connection_string: str | None = field(default=None, repr=False)
    database_id: str | None = None
    tenant_id: str | None = None
