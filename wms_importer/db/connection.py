from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from ..models.config_models import DatabaseConfig

"""Database connection helpers.

Connection parameters resolve in this order:
1. ``.env`` (loaded with override so it wins over the inherited environment)
2. DATABASE_URL / PGDSN, or the individual PGHOST / PGPORT / PGUSER /
   PGPASSWORD / PGDATABASE variables
3. the ``database`` section of the import config (fallback for missing parts)
"""

__all__ = [
    "db_connection",
    "load_env_file",
    "resolve_dsn",
]


def load_env_file(path: Path, override: bool = True) -> bool:
    """Load .env via python-dotenv; returns False when the file is absent."""
    if not path.exists():
        return False
    return load_dotenv(dotenv_path=path, override=override)


def resolve_dsn(db_cfg: DatabaseConfig) -> str:
    dsn = os.getenv("DATABASE_URL") or os.getenv("PGDSN") or db_cfg.dsn
    if dsn:
        return dsn
    host = os.getenv("PGHOST", db_cfg.host or "localhost")
    port = os.getenv("PGPORT", str(db_cfg.port) if db_cfg.port else "5432")
    user = os.getenv("PGUSER", db_cfg.user or "postgres")
    password = os.getenv("PGPASSWORD", db_cfg.password or "")
    database = os.getenv("PGDATABASE", db_cfg.database or "postgres")
    dsn = f"host={host} port={port} user={user} dbname={database}"
    if password:
        dsn += f" password={password}"
    return dsn


@contextmanager
def db_connection(db_cfg: DatabaseConfig, autocommit: bool = False) -> Iterator[Any]:  # pragma: no cover (thin wrapper)
    """Yield a psycopg2 connection; closed on exit.

    Transaction boundaries belong to the caller (PostgresStore commits per
    batch); anything left open here is rolled back.
    """
    try:
        import psycopg2
    except Exception as e:
        raise RuntimeError(f"psycopg2 not available: {e}") from e

    conn = psycopg2.connect(resolve_dsn(db_cfg))
    conn.autocommit = autocommit
    try:
        yield conn
    finally:
        if not conn.closed:
            if not autocommit:
                conn.rollback()
            conn.close()
