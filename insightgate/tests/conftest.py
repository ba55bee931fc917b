from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, Callable

import pytest

from insightgate.core.config import Settings, get_settings
from insightgate.services.telemetry import reset_telemetry


_SALES_ROWS = [
    (1, "north", "delivered", 120.50),
    (2, "south", "delivered", 80.00),
    (3, "north", "processing", 42.25),
    (4, "east", "cancelled", 15.00),
]


@pytest.fixture(autouse=True)
def isolate_process_state() -> None:
    # Settings and telemetry are process-wide; reset them so tests cannot leak into each other.
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_telemetry()


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    def _make(**overrides: Any) -> Settings:
        # Ignore any developer .env so defaults are predictable.
        return Settings(_env_file=None, **overrides)

    return _make


@pytest.fixture
def sales_db(tmp_path: Path) -> Path:
    """SQLite file with a `sales` table that has rows but none with status 'shipped'."""
    path = tmp_path / "shop.db"
    connection = sqlite3.connect(path)
    try:
        connection.executescript(
            """
            CREATE TABLE sales (
                id INTEGER PRIMARY KEY,
                region TEXT NOT NULL,
                status TEXT NOT NULL,
                amount NUMERIC
            );
            CREATE TABLE customers (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL
            );
            """
        )
        connection.executemany("INSERT INTO sales VALUES (?, ?, ?, ?)", _SALES_ROWS)
        connection.executemany("INSERT INTO customers VALUES (?, ?)", [(1, "Ada"), (2, "Linus")])
        connection.commit()
    finally:
        connection.close()
    return path


@pytest.fixture
def sales_url(sales_db: Path) -> str:
    return f"sqlite:///{sales_db}"
