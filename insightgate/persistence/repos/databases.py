from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from insightgate.domain.models import TenantDatabase


async def get_database(session: AsyncSession, database_id: str) -> TenantDatabase | None:
    result = await session.execute(select(TenantDatabase).where(TenantDatabase.id == database_id))
    return result.scalar_one_or_none()


async def get_active_database(
    session: AsyncSession,
    tenant_id: str,
    database_id: str | None = None,
) -> TenantDatabase | None:
    # Tenant scoping is part of every lookup; without an id the newest active row wins.
    stmt = select(TenantDatabase).where(
        TenantDatabase.tenant_id == tenant_id,
        TenantDatabase.is_active.is_(True),
    )
    if database_id is not None:
        stmt = stmt.where(TenantDatabase.id == database_id)
    stmt = stmt.order_by(TenantDatabase.created_at.desc(), TenantDatabase.id.desc()).limit(1)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_databases_by_tenant(session: AsyncSession, tenant_id: str) -> list[TenantDatabase]:
    result = await session.execute(
        select(TenantDatabase)
        .where(TenantDatabase.tenant_id == tenant_id)
        .order_by(TenantDatabase.created_at, TenantDatabase.id)
    )
    return list(result.scalars().all())


async def create_database(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str,
    engine: str,
    database_name: str,
    encrypted_secret: str,
) -> TenantDatabase:
    row = TenantDatabase(
        tenant_id=tenant_id,
        name=name,
        engine=engine,
        database_name=database_name,
        encrypted_secret=encrypted_secret,
        is_active=True,
    )
    session.add(row)
    await session.flush()
    return row


async def reconnect_database(
    session: AsyncSession,
    tenant_id: str,
    database_id: str,
    *,
    engine: str,
    database_name: str,
    encrypted_secret: str,
) -> TenantDatabase | None:
    # Fetch first to enforce tenant scoping and avoid accidental upserts.
    row = await session.get(TenantDatabase, database_id)
    if row is None or row.tenant_id != tenant_id:
        return None
    row.engine = engine
    row.database_name = database_name
    row.encrypted_secret = encrypted_secret
    row.is_active = True
    row.disconnected_at = None
    # New credentials may point at a different schema.
    row.schema_cache = None
    row.last_schema_update = None
    return row


async def disconnect_database(session: AsyncSession, tenant_id: str, database_id: str) -> bool:
    row = await session.get(TenantDatabase, database_id)
    if row is None or row.tenant_id != tenant_id or not row.is_active:
        return False
    row.is_active = False
    row.disconnected_at = datetime.now(timezone.utc)
    return True


async def update_schema_cache(
    session: AsyncSession,
    database_id: str,
    payload: dict[str, Any],
    timestamp: datetime,
) -> bool:
    row = await session.get(TenantDatabase, database_id)
    if row is None:
        return False
    row.schema_cache = payload
    row.last_schema_update = timestamp
    return True
