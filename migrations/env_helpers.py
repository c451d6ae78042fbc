"""Database URL resolution for Alembic.

Kept apart from env.py so it can be imported without an alembic context.
The runtime connects with psycopg2 using DATABASE_URL as-is; Alembic goes
through SQLAlchemy and needs a `postgresql+psycopg2://` URL instead.
"""

from __future__ import annotations

import os
import re
from urllib.parse import quote_plus, urlsplit, urlunsplit

SQLALCHEMY_SCHEME = "postgresql+psycopg2"

# key=value or key='quoted value' with backslash escapes
_DSN_PAIR = re.compile(r"(\w+)\s*=\s*('(?:[^'\\]|\\.)*'|\S+)")
_DSN_ESCAPE = re.compile(r"\\(.)")


def parse_keyword_dsn(dsn: str) -> dict[str, str]:
    """Parse a libpq `key=value` connection string."""
    params: dict[str, str] = {}
    for key, raw in _DSN_PAIR.findall(dsn):
        if raw.startswith("'") and raw.endswith("'") and len(raw) >= 2:
            raw = _DSN_ESCAPE.sub(r"\1", raw[1:-1])
        params[key] = raw
    return params


def keyword_dsn_to_url(dsn: str) -> str:
    """Convert a libpq keyword DSN to a SQLAlchemy URL.

    A host starting with "/" is a unix socket directory and goes into the
    query string; anything else becomes HOST:PORT.
    """
    params = parse_keyword_dsn(dsn)
    password = params.get("password") or os.environ.get("DB_PASSWORD", "")

    credentials = quote_plus(params.get("user", ""))
    if password:
        credentials += ":" + quote_plus(password)
    dbname = quote_plus(params.get("dbname", ""))
    host = params.get("host", "localhost")

    if host.startswith("/"):
        return f"{SQLALCHEMY_SCHEME}://{credentials}@/{dbname}?host={quote_plus(host)}"
    port = params.get("port", "5432")
    return f"{SQLALCHEMY_SCHEME}://{credentials}@{host}:{port}/{dbname}"


def _with_password(url: str, password: str) -> str:
    parts = urlsplit(url)
    if parts.password or not parts.hostname:
        return url
    netloc = f"{quote_plus(parts.username or '')}:{quote_plus(password)}@{parts.hostname}"
    if parts.port:
        netloc += f":{parts.port}"
    return urlunsplit(parts._replace(netloc=netloc))


def get_database_url() -> str:
    """DATABASE_URL normalized for SQLAlchemy.

    Raises:
        RuntimeError: If DATABASE_URL is not set.
    """
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required to run migrations")
    if "://" not in url:
        return keyword_dsn_to_url(url)

    scheme, rest = url.split("://", 1)
    if scheme in ("postgres", "postgresql"):
        url = f"{SQLALCHEMY_SCHEME}://{rest}"

    password = os.environ.get("DB_PASSWORD", "")
    if password:
        url = _with_password(url, password)
    return url
