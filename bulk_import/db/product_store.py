from __future__ import annotations

import logging
from typing import Any

import psycopg2
from psycopg2 import sql

from ..models.catalogue import ProductRecord
from ..services.stores import StoreWriteError
from .connection import ConnectionPool

"""PostgreSQL product store.

create: INSERT ... RETURNING id
update: UPDATE ... WHERE id = %s (0 rows -> StoreWriteError)
Each call runs in its own transaction; failures are reported per record.
"""

__all__ = ["PostgresProductStore"]

logger = logging.getLogger(__name__)


class PostgresProductStore:
    def __init__(self, pool: ConnectionPool, table: str = "products") -> None:
        self.pool = pool
        self.table = table

    def create(self, record: ProductRecord) -> Any:
        payload = record.to_payload()
        if not payload:
            raise StoreWriteError("record has no values to insert")
        columns = list(payload)
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING id").format(
            sql.Identifier(self.table),
            sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        )
        try:
            with self.pool.cursor() as cur:
                cur.execute(query, [payload[c] for c in columns])
                row = cur.fetchone()
        except psycopg2.Error as e:
            raise StoreWriteError(f"insert failed: {e}") from e
        if row is None:
            raise StoreWriteError("insert returned no id")
        return row[0]

    def update(self, product_id: Any, record: ProductRecord) -> None:
        payload = record.to_payload()
        if not payload:
            return
        query = sql.SQL("UPDATE {} SET {} WHERE id = %s").format(
            sql.Identifier(self.table),
            sql.SQL(", ").join(
                sql.SQL("{} = {}").format(sql.Identifier(c), sql.Placeholder()) for c in payload
            ),
        )
        try:
            with self.pool.cursor() as cur:
                cur.execute(query, [*payload.values(), product_id])
                updated = cur.rowcount
        except psycopg2.Error as e:
            raise StoreWriteError(f"update of {product_id} failed: {e}") from e
        if updated == 0:
            raise StoreWriteError(f"product {product_id} not found")
