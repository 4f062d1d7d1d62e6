from __future__ import annotations

import logging
import os
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from psycopg2.pool import ThreadedConnectionPool

from ..config.loader import DatabaseConfig

"""PostgreSQL connection handling.

接続情報の解決優先順位:
    1. DATABASE_URL / PGDSN (DSN 全体)
    2. config/import.yml の database.dsn
    3. 個別 PGHOST / PGPORT / PGUSER / PGPASSWORD / PGDATABASE
    4. config/import.yml の database セクション (不足分のフォールバック)

The CLI loads `.env` (override) before resolving, so `.env` wins over the process
environment.
"""

__all__ = [
    "resolve_dsn",
    "ConnectionPool",
]

logger = logging.getLogger(__name__)


def resolve_dsn(cfg: DatabaseConfig, env: Mapping[str, str] | None = None) -> str:
    env = os.environ if env is None else env
    dsn = env.get("DATABASE_URL") or env.get("PGDSN") or cfg.dsn
    if dsn:
        return dsn
    host = env.get("PGHOST", cfg.host or "localhost")
    port = env.get("PGPORT", str(cfg.port) if cfg.port else "5432")
    user = env.get("PGUSER", cfg.user or "postgres")
    password = env.get("PGPASSWORD", cfg.password or "")
    database = env.get("PGDATABASE", cfg.database or "postgres")
    dsn = f"host={host} port={port} user={user} dbname={database}"
    if password:
        dsn += f" password={password}"
    return dsn


class ConnectionPool:
    """Thread-safe pool; one connection per execution worker."""

    def __init__(self, dsn: str, minconn: int = 1, maxconn: int = 4) -> None:
        self._pool = ThreadedConnectionPool(minconn, maxconn, dsn)

    @classmethod
    def from_config(cls, cfg: DatabaseConfig, maxconn: int = 4) -> ConnectionPool:
        return cls(resolve_dsn(cfg), maxconn=maxconn)

    @contextmanager
    def connection(self) -> Iterator[Any]:
        """Borrow a connection; commit on success, rollback on error."""
        conn = self._pool.getconn()
        try:
            yield conn
            conn.commit()
        except BaseException:
            if not conn.closed:
                conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)

    @contextmanager
    def cursor(self) -> Iterator[Any]:
        with self.connection() as conn:
            cur = conn.cursor()
            try:
                yield cur
            finally:
                cur.close()

    def close(self) -> None:
        self._pool.closeall()

    def ping(self) -> None:
        """Raises psycopg2.Error if the database is unreachable."""
        with self.cursor() as cur:
            cur.execute("SELECT 1")
            cur.fetchone()
        logger.debug("database ping ok")
