from __future__ import annotations

from typing import Callable

from insightgate.core.errors import UnsupportedEngine
from insightgate.domain.schema import EngineTag
from insightgate.providers.engines.base import EngineAdapter
from insightgate.providers.engines.mongodb import MongoAdapter
from insightgate.providers.engines.mysql import MySQLAdapter
from insightgate.providers.engines.postgres import PostgresAdapter
from insightgate.providers.engines.sqlite import SQLiteAdapter
from insightgate.providers.engines.sqlserver import SqlServerAdapter


AdapterFactory = Callable[[], EngineAdapter]

# One entry per engine; adding an engine means adding one adapter and one line here.
ENGINE_ADAPTERS: dict[EngineTag, AdapterFactory] = {
    EngineTag.POSTGRESQL: PostgresAdapter,
    EngineTag.MYSQL: MySQLAdapter,
    EngineTag.SQLSERVER: SqlServerAdapter,
    EngineTag.SQLITE: SQLiteAdapter,
    EngineTag.MONGODB: MongoAdapter,
}


def get_engine_adapter(
    engine: EngineTag,
    adapters: dict[EngineTag, AdapterFactory] | None = None,
) -> EngineAdapter:
    registry = adapters if adapters is not None else ENGINE_ADAPTERS
    factory = registry.get(engine)
    if factory is None:
        raise UnsupportedEngine(f"No adapter registered for {engine.value}")
    return factory()
