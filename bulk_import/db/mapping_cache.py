from __future__ import annotations

import logging
from typing import Any

import psycopg2
from psycopg2 import sql

from ..errors import ExternalServiceError
from ..models.mapping import FieldMapping, MappingCacheEntry, MappingStrategy
from ..services.mapping_cache import CacheStatistics, summarize
from .connection import ConnectionPool

"""PostgreSQL mapping cache.

Table layout (UNIQUE (source_field, target_field)):

    source_field text, target_field text, confidence double precision,
    strategy text, usage_count integer, last_used_at timestamptz

The upsert is a single INSERT ... ON CONFLICT statement, so concurrent learners
never lose usage increments and confidence only moves up.
"""

__all__ = ["PostgresMappingCache", "CREATE_TABLE_SQL"]

logger = logging.getLogger(__name__)

CREATE_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS {table} (
    source_field text NOT NULL,
    target_field text NOT NULL,
    confidence double precision NOT NULL,
    strategy text NOT NULL,
    usage_count integer NOT NULL DEFAULT 1,
    last_used_at timestamptz NOT NULL DEFAULT now(),
    UNIQUE (source_field, target_field)
)
"""

_COLUMNS = "source_field, target_field, confidence, strategy, usage_count, last_used_at"


def _entry(row: tuple[Any, ...]) -> MappingCacheEntry:
    source, target, confidence, strategy, usage, last_used = row
    return MappingCacheEntry(source, target, float(confidence), MappingStrategy(strategy),
                             int(usage), last_used)


class PostgresMappingCache:
    def __init__(self, pool: ConnectionPool, table: str = "field_mapping_cache") -> None:
        self.pool = pool
        self.table = table

    def _run(self, query: sql.Composable, params: tuple[Any, ...] = ()) -> list[tuple[Any, ...]]:
        try:
            with self.pool.cursor() as cur:
                cur.execute(query, params)
                return cur.fetchall() if cur.description is not None else []
        except psycopg2.Error as e:
            raise ExternalServiceError(f"mapping cache query failed: {e}") from e

    def ensure_table(self) -> None:
        self._run(sql.SQL(CREATE_TABLE_SQL).format(table=sql.Identifier(self.table)))

    def entries_for(self, source_field: str) -> list[MappingCacheEntry]:
        query = sql.SQL("SELECT " + _COLUMNS + " FROM {} WHERE source_field = %s").format(
            sql.Identifier(self.table)
        )
        return [_entry(r) for r in self._run(query, (source_field,))]

    def lookup(self, source_field: str) -> MappingCacheEntry | None:
        query = sql.SQL(
            "SELECT " + _COLUMNS + " FROM {} WHERE source_field = %s "
            "ORDER BY usage_count DESC, confidence DESC LIMIT 1"
        ).format(sql.Identifier(self.table))
        rows = self._run(query, (source_field,))
        return _entry(rows[0]) if rows else None

    def touch(self, source_field: str, target_field: str) -> MappingCacheEntry | None:
        query = sql.SQL(
            "UPDATE {} SET usage_count = usage_count + 1, last_used_at = now() "
            "WHERE source_field = %s AND target_field = %s RETURNING " + _COLUMNS
        ).format(sql.Identifier(self.table))
        rows = self._run(query, (source_field, target_field))
        return _entry(rows[0]) if rows else None

    def upsert(self, mapping: FieldMapping) -> MappingCacheEntry:
        query = sql.SQL(
            "INSERT INTO {t} (source_field, target_field, confidence, strategy) "
            "VALUES (%s, %s, %s, %s) "
            "ON CONFLICT (source_field, target_field) DO UPDATE SET "
            "usage_count = {t}.usage_count + 1, "
            "confidence = GREATEST({t}.confidence, EXCLUDED.confidence), "
            "strategy = EXCLUDED.strategy, "
            "last_used_at = now() "
            "RETURNING " + _COLUMNS
        ).format(t=sql.Identifier(self.table))
        rows = self._run(query, (mapping.source_field, mapping.target_field,
                                 mapping.confidence, mapping.strategy.value))
        return _entry(rows[0])

    def strategy_statistics(self) -> CacheStatistics:
        query = sql.SQL("SELECT " + _COLUMNS + " FROM {}").format(sql.Identifier(self.table))
        return summarize([_entry(r) for r in self._run(query)])
