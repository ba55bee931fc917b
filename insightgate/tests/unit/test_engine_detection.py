from __future__ import annotations

import pytest

from insightgate.core.errors import UnsupportedEngine
from insightgate.domain.schema import EngineTag
from insightgate.providers.engines.detect import detect_engine, extract_database_name, sqlite_path


@pytest.mark.parametrize(
    ("descriptor", "expected"),
    [
        ("postgresql://u:p@db:5432/shop", EngineTag.POSTGRESQL),
        ("postgres://u:p@db/shop", EngineTag.POSTGRESQL),
        ("postgresql+psycopg://u:p@db/shop", EngineTag.POSTGRESQL),
        ("mysql://u:p@db:3306/shop", EngineTag.MYSQL),
        ("MySQL://u:p@db/shop", EngineTag.MYSQL),
        ("mariadb://u:p@db/shop", EngineTag.MYSQL),
        ("mssql://u:p@db:1433/shop", EngineTag.SQLSERVER),
        ("sqlserver://u:p@db/shop", EngineTag.SQLSERVER),
        ("mongodb://u:p@db:27017/shop", EngineTag.MONGODB),
        ("mongodb+srv://u:p@cluster.example.net/shop", EngineTag.MONGODB),
        ("sqlite:///tmp/shop.db", EngineTag.SQLITE),
        ("/var/data/shop.sqlite3", EngineTag.SQLITE),
        ("reports.db", EngineTag.SQLITE),
    ],
)
def test_detect_engine_by_scheme_or_suffix(descriptor: str, expected: EngineTag) -> None:
    assert detect_engine(descriptor) is expected


@pytest.mark.parametrize(
    "descriptor",
    ["", "oracle://u:p@db/shop", "redis://localhost:6379/0", "just some text", "mongodb+foo://db/x"],
)
def test_detect_engine_rejects_unknown_descriptors(descriptor: str) -> None:
    with pytest.raises(UnsupportedEngine) as excinfo:
        detect_engine(descriptor)
    assert excinfo.value.code == "UNSUPPORTED_ENGINE"


def test_detect_engine_is_pure() -> None:
    descriptor = "postgresql://u:p@db/shop"
    assert detect_engine(descriptor) is detect_engine(descriptor)


def test_extract_database_name_per_engine() -> None:
    assert extract_database_name("postgresql://u:p@db:5432/analytics", EngineTag.POSTGRESQL) == "analytics"
    assert extract_database_name("mysql://u:p@db/shop?charset=utf8mb4", EngineTag.MYSQL) == "shop"
    assert extract_database_name("mongodb://db:27017/events?authSource=admin", EngineTag.MONGODB) == "events"
    assert extract_database_name("sqlite:////srv/data/ledger.sqlite", EngineTag.SQLITE) == "ledger"
    assert extract_database_name("mssql://u:p@db;database=Billing", EngineTag.SQLSERVER) == "Billing"
    assert extract_database_name("postgresql://u:p@db", EngineTag.POSTGRESQL) == "unknown"


def test_sqlite_path_handles_absolute_and_relative_forms() -> None:
    assert sqlite_path("sqlite:///srv/shop.db") == "/srv/shop.db"
    assert sqlite_path("sqlite:////srv/shop.db") == "/srv/shop.db"
    assert sqlite_path("sqlite://shop.db") == "shop.db"
    assert sqlite_path("shop.db") == "shop.db"
