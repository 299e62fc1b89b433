"""Durable key-value store used by the session and policy services.

Records are JSON documents addressed by ``(table, partition_key, sort_key)``.
Every record may carry an ``expires_at`` (epoch ms); expired records are
invisible to reads and are removed by ``purge_expired``.
"""

import json
import logging
import time
from typing import Protocol

import oracledb

from ..errors import StoreError
from .schema import RECORD_TABLES

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class KeyValueStore(Protocol):
    async def get(self, table: str, partition_key: str, sort_key: str = "") -> dict | None: ...

    async def put(self, table: str, partition_key: str, sort_key: str, item: dict,
                  expires_at: int | None = None) -> None: ...

    async def update(self, table: str, partition_key: str, sort_key: str, changes: dict,
                     expires_at: int | None = None) -> bool: ...

    async def delete(self, table: str, partition_key: str, sort_key: str = "") -> int: ...

    async def query(self, table: str, partition_key: str, sort_key_prefix: str | None = None,
                    limit: int | None = None, reverse: bool = False) -> list[dict]: ...

    async def purge_expired(self, table: str) -> int: ...


def check_table(table: str) -> str:
    """Table names are interpolated into SQL, so only known tables pass."""
    if table not in RECORD_TABLES:
        raise StoreError(f"Unknown record table: {table!r}")
    return table


def _escape_like(prefix: str) -> str:
    return prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


async def _read_lob(val):
    """Read a LOB value to string, or return as-is if already a string."""
    if val is None:
        return None
    if isinstance(val, oracledb.AsyncLOB):
        return await val.read()
    if hasattr(val, "read") and not isinstance(val, str):
        result = val.read()
        if hasattr(result, "__await__"):
            return await result
        return result
    return val


async def _decode_record(raw) -> dict:
    data = await _read_lob(raw)
    if isinstance(data, str):
        try:
            decoded = json.loads(data)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Discarding undecodable record payload")
            return {}
        return decoded if isinstance(decoded, dict) else {}
    if isinstance(data, dict):
        return data
    return {}


class OracleKeyValueStore:
    """KeyValueStore over one Oracle table per logical table."""

    def __init__(self, pool):
        self.pool = pool

    async def get(self, table: str, partition_key: str, sort_key: str = "") -> dict | None:
        check_table(table)
        async with self.pool.acquire() as conn:
            cursor = conn.cursor()
            await cursor.execute(
                f"""
                SELECT record_data FROM {table}
                WHERE partition_key = :pk AND sort_key = :sk
                  AND (expires_at IS NULL OR expires_at > :now)
                """,
                {"pk": partition_key, "sk": sort_key, "now": now_ms()},
            )
            row = await cursor.fetchone()
            return (await _decode_record(row[0])) if row else None

    async def put(self, table: str, partition_key: str, sort_key: str, item: dict,
                  expires_at: int | None = None) -> None:
        check_table(table)
        async with self.pool.acquire() as conn:
            cursor = conn.cursor()
            await cursor.execute(
                f"""
                MERGE INTO {table} t
                USING (SELECT :pk AS partition_key, :sk AS sort_key FROM DUAL) src
                ON (t.partition_key = src.partition_key AND t.sort_key = src.sort_key)
                WHEN MATCHED THEN
                    UPDATE SET record_data = :data, expires_at = :expires_at,
                               updated_at = :updated_at
                WHEN NOT MATCHED THEN
                    INSERT (partition_key, sort_key, record_data, expires_at, updated_at)
                    VALUES (:pk, :sk, :data, :expires_at, :updated_at)
                """,
                {
                    "pk": partition_key,
                    "sk": sort_key,
                    "data": json.dumps(item),
                    "expires_at": expires_at,
                    "updated_at": now_ms(),
                },
            )
            await conn.commit()

    async def update(self, table: str, partition_key: str, sort_key: str, changes: dict,
                     expires_at: int | None = None) -> bool:
        """Shallow-merge ``changes`` into an existing record.

        Read and write happen on one connection but are not atomic; concurrent
        updates to the same record are last-write-wins.
        """
        check_table(table)
        async with self.pool.acquire() as conn:
            cursor = conn.cursor()
            await cursor.execute(
                f"""
                SELECT record_data, expires_at FROM {table}
                WHERE partition_key = :pk AND sort_key = :sk
                  AND (expires_at IS NULL OR expires_at > :now)
                """,
                {"pk": partition_key, "sk": sort_key, "now": now_ms()},
            )
            row = await cursor.fetchone()
            if not row:
                return False

            record = await _decode_record(row[0])
            record.update(changes)
            await cursor.execute(
                f"""
                UPDATE {table}
                SET record_data = :data, expires_at = :expires_at, updated_at = :updated_at
                WHERE partition_key = :pk AND sort_key = :sk
                """,
                {
                    "pk": partition_key,
                    "sk": sort_key,
                    "data": json.dumps(record),
                    "expires_at": expires_at if expires_at is not None else row[1],
                    "updated_at": now_ms(),
                },
            )
            await conn.commit()
        return True

    async def delete(self, table: str, partition_key: str, sort_key: str = "") -> int:
        check_table(table)
        async with self.pool.acquire() as conn:
            cursor = conn.cursor()
            await cursor.execute(
                f"DELETE FROM {table} WHERE partition_key = :pk AND sort_key = :sk",
                {"pk": partition_key, "sk": sort_key},
            )
            deleted = cursor.rowcount
            await conn.commit()
        return deleted

    async def query(self, table: str, partition_key: str, sort_key_prefix: str | None = None,
                    limit: int | None = None, reverse: bool = False) -> list[dict]:
        check_table(table)
        sql = f"""
            SELECT record_data FROM {table}
            WHERE partition_key = :pk
              AND (expires_at IS NULL OR expires_at > :now)
        """
        params = {"pk": partition_key, "now": now_ms()}

        if sort_key_prefix:
            sql += " AND sort_key LIKE :prefix ESCAPE '\\'"
            params["prefix"] = _escape_like(sort_key_prefix) + "%"

        sql += " ORDER BY sort_key DESC" if reverse else " ORDER BY sort_key ASC"

        if limit is not None:
            sql += " FETCH FIRST :limit ROWS ONLY"
            params["limit"] = limit

        async with self.pool.acquire() as conn:
            cursor = conn.cursor()
            await cursor.execute(sql, params)
            rows = await cursor.fetchall()
            return [await _decode_record(row[0]) for row in rows]

    async def purge_expired(self, table: str) -> int:
        check_table(table)
        async with self.pool.acquire() as conn:
            cursor = conn.cursor()
            await cursor.execute(
                f"DELETE FROM {table} WHERE expires_at IS NOT NULL AND expires_at <= :now",
                {"now": now_ms()},
            )
            purged = cursor.rowcount
            await conn.commit()
        logger.info("Purged %d expired records from %s", purged, table)
        return purged
