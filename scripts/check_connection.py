from __future__ import annotations

import argparse
import asyncio
import sys

from insightgate.core.errors import (
    ConnectionFailed,
    InsightGateError,
    SecretConfigurationError,
    UnsupportedEngine,
)
from insightgate.core.logging import configure_logging
from insightgate.services.gateway import DatabaseGateway


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Detect the engine of a connection string, test it and summarize its schema."
    )
    parser.add_argument("connection_string", help="Tenant database connection string")
    parser.add_argument("--no-introspect", action="store_true", help="Only test the connection")
    return parser


def _format_error(exc: Exception) -> tuple[int, str]:
    # Map known gateway failures to stable, actionable messages.
    if isinstance(exc, UnsupportedEngine):
        return 2, f"UNSUPPORTED_ENGINE: {exc.message}"
    if isinstance(exc, SecretConfigurationError):
        return 2, f"SECRET_CONFIGURATION_ERROR: {exc.message}"
    if isinstance(exc, ConnectionFailed):
        return 3, f"CONNECTION_FAILED: {exc.message} ({exc.detail})"
    if isinstance(exc, InsightGateError):
        return 4, f"{exc.code}: {exc.message} ({exc.detail})"
    return 1, f"UNKNOWN_ERROR: {exc}"


async def _run(args: argparse.Namespace) -> int:
    gateway = DatabaseGateway()
    descriptor = gateway.describe(args.connection_string)
    print(f"engine={descriptor.engine.value} database={descriptor.database_name}")

    check = await gateway.test_connection(descriptor)
    if not check.ok:
        raise check.error
    print("connection=ok")
    if args.no_introspect:
        return 0

    snapshot = await gateway.introspect_schema(descriptor)
    for table in snapshot.tables:
        rows = "?" if table.row_count is None else table.row_count
        print(f"- {table.name} columns={len(table.columns)} rows={rows}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface actionable errors
        code, message = _format_error(exc)
        print(message, file=sys.stderr)
        return code


if __name__ == "__main__":
    raise SystemExit(main())
