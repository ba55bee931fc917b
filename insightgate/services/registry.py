from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
import logging
from typing import Callable, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from insightgate.domain.models import TenantDatabase
from insightgate.domain.schema import ConnectionDescriptor, EngineTag, SchemaSnapshot
from insightgate.persistence.repos import databases as databases_repo
from insightgate.services.security.secrets import ConnectionSecretBox


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredSnapshot:
    snapshot: SchemaSnapshot
    updated_at: datetime


def as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on round trip; stored timestamps are always UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ConnectionRegistry(Protocol):
    async def get_connection_descriptor(
        self,
        tenant_id: str,
        database_id: str | None = None,
    ) -> ConnectionDescriptor | None:
        ...

    async def save_schema_snapshot(self, database_id: str, snapshot: SchemaSnapshot, timestamp: datetime) -> None:
        ...

    async def load_schema_snapshot(self, database_id: str) -> StoredSnapshot | None:
        ...


class InMemoryConnectionRegistry:
    """Process-local registry used by tests and the CLI."""

    def __init__(self) -> None:
        self._descriptors: dict[str, ConnectionDescriptor] = {}
        self._snapshots: dict[str, StoredSnapshot] = {}
        self.lookups = 0

    def register(self, tenant_id: str, descriptor: ConnectionDescriptor, *, database_id: str | None = None) -> ConnectionDescriptor:
        database_id = database_id or descriptor.database_id or f"db-{len(self._descriptors) + 1}"
        stored = replace(descriptor, tenant_id=tenant_id, database_id=database_id)
        self._descriptors[database_id] = stored
        return stored

    def disconnect(self, tenant_id: str, database_id: str) -> bool:
        descriptor = self._descriptors.get(database_id)
        if descriptor is None or descriptor.tenant_id != tenant_id:
            return False
        del self._descriptors[database_id]
        return True

    async def get_connection_descriptor(
        self,
        tenant_id: str,
        database_id: str | None = None,
    ) -> ConnectionDescriptor | None:
        self.lookups += 1
        if database_id is not None:
            descriptor = self._descriptors.get(database_id)
            return descriptor if descriptor is not None and descriptor.tenant_id == tenant_id else None
        matches = [item for item in self._descriptors.values() if item.tenant_id == tenant_id]
        return matches[-1] if matches else None

    async def save_schema_snapshot(self, database_id: str, snapshot: SchemaSnapshot, timestamp: datetime) -> None:
        self._snapshots[database_id] = StoredSnapshot(snapshot=snapshot, updated_at=as_utc(timestamp))

    async def load_schema_snapshot(self, database_id: str) -> StoredSnapshot | None:
        return self._snapshots.get(database_id)


def _descriptor(row: TenantDatabase) -> ConnectionDescriptor:
    return ConnectionDescriptor(
        engine=EngineTag(row.engine),
        database_name=row.database_name,
        encrypted_secret=row.encrypted_secret,
        database_id=row.id,
        tenant_id=row.tenant_id,
    )


class SqlConnectionRegistry:
    """Control-plane registry backed by the tenant_databases table."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        *,
        secret_box: ConnectionSecretBox | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._secret_box = secret_box

    def _box(self) -> ConnectionSecretBox:
        if self._secret_box is None:
            self._secret_box = ConnectionSecretBox()
        return self._secret_box

    async def get_connection_descriptor(
        self,
        tenant_id: str,
        database_id: str | None = None,
    ) -> ConnectionDescriptor | None:
        async with self._session_factory() as session:
            row = await databases_repo.get_active_database(session, tenant_id, database_id)
            return _descriptor(row) if row is not None else None

    async def save_schema_snapshot(self, database_id: str, snapshot: SchemaSnapshot, timestamp: datetime) -> None:
        async with self._session_factory() as session:
            updated = await databases_repo.update_schema_cache(session, database_id, snapshot.to_dict(), timestamp)
            if not updated:
                logger.warning("schema_snapshot_target_missing database_id=%s", database_id)
                return
            await session.commit()

    async def load_schema_snapshot(self, database_id: str) -> StoredSnapshot | None:
        async with self._session_factory() as session:
            row = await databases_repo.get_database(session, database_id)
            if row is None or not row.schema_cache or row.last_schema_update is None:
                return None
            try:
                snapshot = SchemaSnapshot.from_dict(row.schema_cache)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("schema_snapshot_corrupt database_id=%s error=%s", database_id, type(exc).__name__)
                return None
            return StoredSnapshot(snapshot=snapshot, updated_at=as_utc(row.last_schema_update))

    async def register_database(
        self,
        tenant_id: str,
        descriptor: ConnectionDescriptor,
        *,
        name: str,
    ) -> ConnectionDescriptor:
        # Callers test the connection first; only the encrypted secret is persisted.
        if not descriptor.connection_string:
            raise ValueError("descriptor must carry a plaintext connection string to register")
        async with self._session_factory() as session:
            row = await databases_repo.create_database(
                session,
                tenant_id=tenant_id,
                name=name,
                engine=descriptor.engine.value,
                database_name=descriptor.database_name,
                encrypted_secret=self._box().encrypt(descriptor.connection_string),
            )
            stored = _descriptor(row)
            await session.commit()
        logger.info(
            "database_registered tenant_id=%s database_id=%s engine=%s",
            tenant_id,
            stored.database_id,
            stored.engine.value,
        )
        return stored

    async def reconnect_database(
        self,
        tenant_id: str,
        database_id: str,
        descriptor: ConnectionDescriptor,
    ) -> ConnectionDescriptor | None:
        if not descriptor.connection_string:
            raise ValueError("descriptor must carry a plaintext connection string to reconnect")
        async with self._session_factory() as session:
            row = await databases_repo.reconnect_database(
                session,
                tenant_id,
                database_id,
                engine=descriptor.engine.value,
                database_name=descriptor.database_name,
                encrypted_secret=self._box().encrypt(descriptor.connection_string),
            )
            if row is None:
                return None
            stored = _descriptor(row)
            await session.commit()
        logger.info("database_reconnected tenant_id=%s database_id=%s", tenant_id, database_id)
        return stored

    async def disconnect_database(self, tenant_id: str, database_id: str) -> bool:
        async with self._session_factory() as session:
            disconnected = await databases_repo.disconnect_database(session, tenant_id, database_id)
            if disconnected:
                await session.commit()
                logger.info("database_disconnected tenant_id=%s database_id=%s", tenant_id, database_id)
            return disconnected
