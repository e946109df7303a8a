"""
PostgreSQL Realtime Store

Persists store nodes in a single table and pushes changes through
LISTEN/NOTIFY, so several server processes can share generation sessions.

Each ``set`` stores the written value as one row at its path and drops any
rows below it. Reads assemble a node from its own row plus descendant rows,
falling back to the nearest ancestor row's JSON.

Usage:
    store = PostgresStore(database_url)
    await store.connect()
    unsubscribe = store.subscribe("generations/abc", on_value)
    await store.set("generations/abc", {...})
"""

import json
import logging
from typing import Any, Optional

import asyncpg
from tenacity import retry, stop_after_attempt, wait_exponential

from .store import (
    Callback,
    ListenerRegistry,
    RealtimeStore,
    StoreError,
    Unsubscribe,
    resolve_server_timestamps,
    split_path,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS realtime_nodes (
    path TEXT PRIMARY KEY,
    value JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
)
"""

# Rows at or below $1. Uses left() instead of LIKE since ids contain '_'.
SELECT_SUBTREE_SQL = """
SELECT path, value FROM realtime_nodes
WHERE path = $1 OR left(path, length($1) + 1) = $1 || '/'
ORDER BY path
"""

SELECT_ANCESTOR_SQL = """
SELECT path, value FROM realtime_nodes
WHERE left($1, length(path) + 1) = path || '/'
ORDER BY length(path) DESC
LIMIT 1
"""

DELETE_SUBTREE_SQL = """
DELETE FROM realtime_nodes
WHERE path = $1 OR left(path, length($1) + 1) = $1 || '/'
"""

UPSERT_SQL = """
INSERT INTO realtime_nodes (path, value, updated_at)
VALUES ($1, $2::jsonb, NOW())
ON CONFLICT (path) DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()
"""

WRITE_TIME_SQL = "SELECT (EXTRACT(EPOCH FROM clock_timestamp()) * 1000)::bigint"

NOTIFY_SQL = "SELECT pg_notify($1, $2)"


def _decode(raw: Any) -> Any:
    return json.loads(raw) if isinstance(raw, str) else raw


def assemble_subtree(path: str, rows: list) -> Optional[Any]:
    """Build the value at `path` from its row and descendant rows (sorted by path)."""
    base = split_path(path)
    root: Any = None

    for row in rows:
        relative = split_path(row["path"])[len(base):]
        value = _decode(row["value"])

        if not relative:
            root = value
            continue

        if not isinstance(root, dict):
            root = {}
        node = root
        for part in relative[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[relative[-1]] = value

    return root


class PostgresStore(RealtimeStore):
    """Realtime store backed by PostgreSQL with LISTEN/NOTIFY push."""

    def __init__(
        self,
        database_url: str = "",
        pool_min_size: int = 2,
        pool_max_size: int = 10,
        channel: str = "realtime_nodes",
        pool: Optional[asyncpg.Pool] = None,
    ):
        self.database_url = database_url
        self.pool_min_size = pool_min_size
        self.pool_max_size = pool_max_size
        self.channel = channel

        self._pool = pool
        self._listen_conn: Optional[asyncpg.Connection] = None
        self._listeners = ListenerRegistry(self.get)

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=1, max=10), reraise=True)
    async def _create_pool(self) -> asyncpg.Pool:
        return await asyncpg.create_pool(
            self.database_url,
            min_size=self.pool_min_size,
            max_size=self.pool_max_size,
        )

    async def connect(self):
        """Open the pool, create the table and start listening for changes."""
        if self._pool is None:
            if not self.database_url:
                raise StoreError("connect", "-", "DATABASE_URL not configured")
            self._pool = await self._create_pool()

        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)

        self._listen_conn = await self._pool.acquire()
        await self._listen_conn.add_listener(self.channel, self._on_notify)
        logger.info(f"Postgres realtime store listening on channel {self.channel}")

    def _on_notify(self, connection, pid, channel, payload):
        self._listeners.notify(payload)

    async def get(self, path: str) -> Optional[Any]:
        try:
            async with self._pool.acquire() as conn:
                rows = await conn.fetch(SELECT_SUBTREE_SQL, path)
                if rows:
                    return assemble_subtree(path, rows)

                ancestor = await conn.fetchrow(SELECT_ANCESTOR_SQL, path)
        except (asyncpg.PostgresError, OSError) as e:
            raise StoreError("get", path, str(e)) from e

        if not ancestor:
            return None

        node = _decode(ancestor["value"])
        for part in split_path(path)[len(split_path(ancestor["path"])):]:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    async def set(self, path: str, value: Any) -> None:
        if value is None:
            await self.delete(path)
            return

        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    write_time = await conn.fetchval(WRITE_TIME_SQL)
                    resolved = resolve_server_timestamps(value, int(write_time))
                    await conn.execute(DELETE_SUBTREE_SQL, path)
                    await conn.execute(UPSERT_SQL, path, json.dumps(resolved))
                    await conn.execute(NOTIFY_SQL, self.channel, path)
        except (asyncpg.PostgresError, OSError) as e:
            raise StoreError("set", path, str(e)) from e

    async def delete(self, path: str) -> None:
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(DELETE_SUBTREE_SQL, path)
                    await conn.execute(NOTIFY_SQL, self.channel, path)
        except (asyncpg.PostgresError, OSError) as e:
            raise StoreError("delete", path, str(e)) from e

    def subscribe(self, path: str, callback: Callback) -> Unsubscribe:
        return self._listeners.add(path, callback)

    async def close(self) -> None:
        self._listeners.clear()

        if self._listen_conn is not None:
            await self._listen_conn.remove_listener(self.channel, self._on_notify)
            await self._pool.release(self._listen_conn)
            self._listen_conn = None

        if self._pool is not None:
            await self._pool.close()
            self._pool = None

        logger.info("Postgres realtime store closed")
