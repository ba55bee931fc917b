from __future__ import annotations

import argparse
import asyncio
import sys

from insightgate.core.errors import InsightGateError
from insightgate.core.logging import configure_logging
from insightgate.persistence.db import SessionLocal
from insightgate.services.gateway import DatabaseGateway
from insightgate.services.registry import SqlConnectionRegistry
from insightgate.services.security.secrets import ConnectionSecretBox


def _build_parser() -> argparse.ArgumentParser:
    # Connection strings are read from stdin by default to keep them out of shell history.
    parser = argparse.ArgumentParser(description="Register, reconnect or disconnect a tenant database")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--name", default=None, help="Display name (defaults to the database name)")
    parser.add_argument("--connection-string", default=None, help="Connection string (default: read stdin)")
    parser.add_argument("--reconnect", default=None, metavar="DATABASE_ID", help="Replace the secret of a database")
    parser.add_argument("--disconnect", default=None, metavar="DATABASE_ID", help="Deactivate a database")
    return parser


async def _register(args: argparse.Namespace) -> int:
    secret_box = ConnectionSecretBox()
    registry = SqlConnectionRegistry(SessionLocal, secret_box=secret_box)

    if args.disconnect:
        if not await registry.disconnect_database(args.tenant, args.disconnect):
            print(f"NOT_FOUND: no active database {args.disconnect} for tenant {args.tenant}", file=sys.stderr)
            return 2
        print(f"disconnected database_id={args.disconnect}")
        return 0

    connection_string = (args.connection_string or sys.stdin.readline()).strip()
    if not connection_string:
        print("MISSING_CONNECTION_STRING: pass --connection-string or pipe it on stdin", file=sys.stderr)
        return 2

    gateway = DatabaseGateway(secret_box=secret_box)
    descriptor = gateway.describe(connection_string, tenant_id=args.tenant)
    # Never store a descriptor that cannot be reached.
    check = await gateway.test_connection(descriptor)
    if not check.ok:
        raise check.error

    if args.reconnect:
        stored = await registry.reconnect_database(args.tenant, args.reconnect, descriptor)
        if stored is None:
            print(f"NOT_FOUND: no database {args.reconnect} for tenant {args.tenant}", file=sys.stderr)
            return 2
    else:
        stored = await registry.register_database(
            args.tenant,
            descriptor,
            name=args.name or descriptor.database_name,
        )
    print(f"database_id={stored.database_id} engine={stored.engine.value} database={stored.database_name}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_register(args))
    except InsightGateError as exc:
        print(f"{exc.code}: {exc.message}", file=sys.stderr)
        return 3
    except Exception as exc:  # noqa: BLE001 - surface actionable errors
        print(f"UNKNOWN_ERROR: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
