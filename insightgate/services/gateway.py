from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time
from typing import Any, Callable, TypeVar

from insightgate.agent.validation import validate_query
from insightgate.core.config import Settings, get_settings
from insightgate.core.errors import (
    ConnectionFailed,
    InsightGateError,
    QueryExecutionFailed,
)
from insightgate.domain.schema import ConnectionDescriptor, EngineTag, SchemaSnapshot
from insightgate.providers.engines import detect
from insightgate.providers.engines.base import EngineAdapter
from insightgate.providers.engines.factory import AdapterFactory, get_engine_adapter
from insightgate.services.security.secrets import ConnectionSecretBox
from insightgate.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Driver messages are kept as private detail; cap them so logs and envelopes stay small.
_DETAIL_LIMIT = 500


@dataclass(frozen=True)
class ConnectionCheck:
    ok: bool
    engine: EngineTag | None = None
    error: InsightGateError | None = None


class _Progress:
    # Written by the worker thread so a timeout can be attributed to a phase.
    def __init__(self) -> None:
        self.phase = "connect"


def _detail(exc: BaseException) -> str:
    text = str(exc) or type(exc).__name__
    return text[:_DETAIL_LIMIT]


class DatabaseGateway:
    """Connect / introspect / execute against tenant databases.

    Every call opens its own connection and closes it before returning; no
    pool is shared across calls or tenants. The connect-operate-close bracket
    runs in one worker thread so a timed-out call still closes its connection
    when the driver returns.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        secret_box: ConnectionSecretBox | None = None,
        adapters: dict[EngineTag, AdapterFactory] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._secret_box = secret_box
        self._adapters = adapters

    def detect_engine(self, connection_string: str) -> EngineTag:
        return detect.detect_engine(connection_string)

    def describe(
        self,
        connection_string: str,
        *,
        database_id: str | None = None,
        tenant_id: str | None = None,
    ) -> ConnectionDescriptor:
        # Plaintext descriptor for CLI and registration flows.
        engine = detect.detect_engine(connection_string)
        return ConnectionDescriptor(
            engine=engine,
            database_name=detect.extract_database_name(connection_string, engine),
            connection_string=connection_string,
            database_id=database_id,
            tenant_id=tenant_id,
        )

    def adapter_for(self, engine: EngineTag) -> EngineAdapter:
        return get_engine_adapter(engine, self._adapters)

    def probe_query(self, engine: EngineTag, table: str | None, *, limit: int) -> str | None:
        return self.adapter_for(engine).probe_query(table, limit=limit)

    def _secret_for(self, descriptor: ConnectionDescriptor) -> str:
        if descriptor.connection_string:
            return descriptor.connection_string
        if not descriptor.encrypted_secret:
            raise ConnectionFailed("Database connection is not configured", detail="descriptor has no secret")
        if self._secret_box is None:
            self._secret_box = ConnectionSecretBox()
        return self._secret_box.decrypt(descriptor.encrypted_secret)

    def _bracket(
        self,
        adapter: EngineAdapter,
        descriptor: ConnectionDescriptor,
        secret: str,
        operation: Callable[[Any], T] | None,
        progress: _Progress,
    ) -> T | None:
        try:
            handle = adapter.connect(
                secret,
                database_name=descriptor.database_name,
                timeout_s=self._settings.db_connect_timeout_s,
            )
        except InsightGateError:
            raise
        except Exception as exc:
            raise ConnectionFailed("Could not connect to database", detail=_detail(exc)) from exc

        progress.phase = "operate"
        try:
            if operation is None:
                return None
            return operation(handle)
        except InsightGateError:
            raise
        except Exception as exc:
            raise QueryExecutionFailed("Query execution failed", detail=_detail(exc)) from exc
        finally:
            try:
                adapter.close(handle)
            except Exception as exc:  # noqa: BLE001 - close failures never mask the result
                logger.warning("gateway_close_failed engine=%s error=%s", descriptor.engine.value, type(exc).__name__)
            progress.phase = "closed"

    async def _run(
        self,
        descriptor: ConnectionDescriptor,
        operation: Callable[[Any], T] | None,
        *,
        action: str,
    ) -> T | None:
        adapter = self.adapter_for(descriptor.engine)
        secret = self._secret_for(descriptor)
        progress = _Progress()
        timeout_s = self._settings.db_connect_timeout_s
        if operation is not None:
            timeout_s += self._settings.db_query_timeout_s

        integration = f"db.{descriptor.engine.value}"
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(self._bracket, adapter, descriptor, secret, operation, progress),
                timeout=timeout_s,
            )
        except asyncio.TimeoutError as exc:
            record_external_call(integration=integration, latency_ms=(time.monotonic() - start) * 1000.0, success=False)
            logger.warning(
                "gateway_timeout engine=%s action=%s phase=%s timeout_s=%.1f",
                descriptor.engine.value,
                action,
                progress.phase,
                timeout_s,
            )
            if progress.phase == "connect":
                raise ConnectionFailed("Database connection timed out", detail=f"timeout_s={timeout_s}") from exc
            raise QueryExecutionFailed("Query timed out", detail=f"timeout_s={timeout_s}") from exc
        except InsightGateError as exc:
            record_external_call(integration=integration, latency_ms=(time.monotonic() - start) * 1000.0, success=False)
            logger.info(
                "gateway_call_failed engine=%s action=%s code=%s",
                descriptor.engine.value,
                action,
                exc.code,
            )
            raise
        record_external_call(integration=integration, latency_ms=(time.monotonic() - start) * 1000.0, success=True)
        return result

    async def test_connection(self, descriptor: ConnectionDescriptor) -> ConnectionCheck:
        try:
            await self._run(descriptor, None, action="test")
        except InsightGateError as exc:
            return ConnectionCheck(ok=False, engine=descriptor.engine, error=exc)
        return ConnectionCheck(ok=True, engine=descriptor.engine)

    async def introspect_schema(self, descriptor: ConnectionDescriptor) -> SchemaSnapshot:
        adapter = self.adapter_for(descriptor.engine)
        tables = await self._run(descriptor, adapter.introspect, action="introspect")
        logger.info(
            "gateway_introspected engine=%s tables=%d",
            descriptor.engine.value,
            len(tables or []),
        )
        return SchemaSnapshot(
            engine=descriptor.engine,
            database_name=descriptor.database_name,
            tables=tuple(tables or ()),
        )

    async def execute_read_query(self, descriptor: ConnectionDescriptor, query_text: str) -> list[dict[str, Any]]:
        # Re-check before any connection is opened, whoever the caller is.
        query = validate_query(query_text, descriptor.engine)
        adapter = self.adapter_for(descriptor.engine)
        max_rows = self._settings.query_max_rows

        def _execute(handle: Any) -> list[dict[str, Any]]:
            return adapter.execute(handle, query, max_rows=max_rows)

        rows = await self._run(descriptor, _execute, action="execute")
        return rows or []
