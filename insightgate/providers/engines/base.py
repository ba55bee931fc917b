from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta
from decimal import Decimal
import math
from typing import Any
from uuid import UUID

from insightgate.domain.schema import EngineTag, TableInfo


class EngineAdapter(ABC):
    """Capability surface every engine driver implements.

    Methods are synchronous driver calls; the gateway runs them in a worker
    thread under a timeout and owns the connect/close bracket.
    """

    engine: EngineTag

    @abstractmethod
    def connect(self, connection_string: str, *, database_name: str, timeout_s: float) -> Any:
        ...

    @abstractmethod
    def introspect(self, handle: Any) -> list[TableInfo]:
        ...

    @abstractmethod
    def execute(self, handle: Any, query_text: str, *, max_rows: int) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    def close(self, handle: Any) -> None:
        ...

    @abstractmethod
    def quote_identifier(self, name: str) -> str:
        ...

    @abstractmethod
    def probe_query(self, table: str | None, *, limit: int) -> str | None:
        # Bounded read used as the last-resort answer; None when no probe exists.
        ...


def jsonable_value(value: Any) -> Any:
    # Normalize driver types so rows can be cached, hashed and serialized as JSON.
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, Decimal):
        if not value.is_finite():
            return None
        return int(value) if value == value.to_integral_value() and value.as_tuple().exponent >= 0 else float(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, dict):
        return {str(key): jsonable_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [jsonable_value(item) for item in value]
    return str(value)


def jsonable_row(row: dict[str, Any]) -> dict[str, Any]:
    return {str(key): jsonable_value(value) for key, value in row.items()}
