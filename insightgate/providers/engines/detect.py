from __future__ import annotations

import re
from pathlib import PurePath
from urllib.parse import unquote, urlsplit

from insightgate.core.errors import UnsupportedEngine
from insightgate.domain.schema import EngineTag


_SCHEME_RE = re.compile(r"^([a-z][a-z0-9+.\-]*)://", re.IGNORECASE)

_SCHEMES: dict[str, EngineTag] = {
    "postgresql": EngineTag.POSTGRESQL,
    "postgres": EngineTag.POSTGRESQL,
    "mysql": EngineTag.MYSQL,
    "mariadb": EngineTag.MYSQL,
    "mssql": EngineTag.SQLSERVER,
    "sqlserver": EngineTag.SQLSERVER,
    "mongodb": EngineTag.MONGODB,
    "mongodb+srv": EngineTag.MONGODB,
    "sqlite": EngineTag.SQLITE,
}

_SQLITE_SUFFIXES = (".db", ".sqlite", ".sqlite3")

_SQLSERVER_DATABASE_RE = re.compile(r"(?:^|;)\s*(?:database|initial catalog)\s*=\s*([^;]+)", re.IGNORECASE)


def _scheme(descriptor: str) -> str | None:
    match = _SCHEME_RE.match(descriptor)
    if match is None:
        return None
    return match.group(1).lower()


def detect_engine(descriptor: str) -> EngineTag:
    # Pure function of the descriptor text: scheme token first, then file suffix.
    text = (descriptor or "").strip()
    scheme = _scheme(text)
    if scheme is not None:
        if scheme in _SCHEMES:
            return _SCHEMES[scheme]
        # SQLAlchemy-style driver suffixes such as postgresql+psycopg.
        base = scheme.split("+", 1)[0]
        if base in _SCHEMES and base != "mongodb":
            return _SCHEMES[base]
    elif text.lower().endswith(_SQLITE_SUFFIXES):
        return EngineTag.SQLITE
    raise UnsupportedEngine(
        "Unsupported database type",
        detail=f"scheme={scheme or 'none'}",
    )


def sqlite_path(descriptor: str) -> str:
    # sqlite:///abs/path and sqlite:////abs/path both name /abs/path; sqlite://rel names rel.
    text = descriptor.strip()
    scheme = _scheme(text)
    if scheme is None:
        return text
    remainder = text[len(scheme) + 3:]
    if remainder.startswith("/"):
        return "/" + remainder.lstrip("/")
    return remainder


def extract_database_name(descriptor: str, engine: EngineTag) -> str:
    text = (descriptor or "").strip()
    if engine is EngineTag.SQLITE:
        path = sqlite_path(text).split("?", 1)[0]
        stem = PurePath(path).stem
        return stem or "unknown"
    if engine is EngineTag.SQLSERVER and _scheme(text) is None:
        match = _SQLSERVER_DATABASE_RE.search(text)
        return match.group(1).strip() if match else "unknown"
    try:
        parts = urlsplit(text)
    except ValueError:
        return "unknown"
    name = unquote(parts.path.lstrip("/")).split("/", 1)[0]
    if not name and engine is EngineTag.SQLSERVER:
        # mssql://host;database=name style.
        match = _SQLSERVER_DATABASE_RE.search(text)
        return match.group(1).strip() if match else "unknown"
    return name or "unknown"
