"""
PostgresStore Tests

Uses a mocked asyncpg pool; no database is needed.

Run with:
    python -m pytest tests/test_postgres_store.py -v
"""

import asyncio
import copy
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from services.realtime.postgres_store import (
    DELETE_SUBTREE_SQL,
    NOTIFY_SQL,
    SELECT_ANCESTOR_SQL,
    SELECT_SUBTREE_SQL,
    UPSERT_SQL,
    PostgresStore,
    assemble_subtree,
)
from services.realtime.service import RealtimeService
from services.realtime.store import SERVER_TIMESTAMP, StoreError


def row(path, value):
    return {"path": path, "value": json.dumps(value)}


class TestAssembleSubtree:
    """Rebuilding nested values from rows."""

    def test_single_row(self):
        assert assemble_subtree("generations/s1", [row("generations/s1", {"progress": 10})]) == {
            "progress": 10
        }

    def test_descendant_rows(self):
        rows = [
            row("messages/s1/0001", {"type": "progress"}),
            row("messages/s1/0002", {"type": "complete"}),
        ]
        assert assemble_subtree("messages/s1", rows) == {
            "0001": {"type": "progress"},
            "0002": {"type": "complete"},
        }

    def test_nested_descendants(self):
        rows = [
            row("generations/a", {"status": "analyzing"}),
            row("generations/b", {"status": "completed"}),
        ]
        assert assemble_subtree("generations", rows) == {
            "a": {"status": "analyzing"},
            "b": {"status": "completed"},
        }

    def test_no_rows(self):
        assert assemble_subtree("generations/s1", []) is None


class TestPostgresStore:
    """SQL issued by the store against a mocked pool."""

    @pytest.fixture
    def mock_conn(self):
        """Connection with a working transaction() context."""
        conn = AsyncMock()
        conn.fetch = AsyncMock(return_value=[])
        conn.fetchrow = AsyncMock(return_value=None)
        conn.fetchval = AsyncMock(return_value=1_700_000_000_000)
        conn.execute = AsyncMock()
        conn.transaction = MagicMock(return_value=AsyncMock(
            __aenter__=AsyncMock(return_value=None),
            __aexit__=AsyncMock(return_value=None)
        ))
        return conn

    @pytest.fixture
    def mock_db_pool(self, mock_conn):
        """Create a mock database pool."""
        pool = AsyncMock()
        pool.acquire = MagicMock(return_value=AsyncMock(
            __aenter__=AsyncMock(return_value=mock_conn),
            __aexit__=AsyncMock(return_value=None)
        ))
        return pool

    @pytest.mark.asyncio
    async def test_set_writes_in_transaction(self, mock_db_pool, mock_conn):
        store = PostgresStore(pool=mock_db_pool)

        await store.set("generations/s1", {"status": "analyzing", "updated_at": SERVER_TIMESTAMP})

        calls = mock_conn.execute.await_args_list
        assert calls[0].args == (DELETE_SUBTREE_SQL, "generations/s1")
        assert calls[1].args[0] == UPSERT_SQL
        assert calls[1].args[1] == "generations/s1"
        assert json.loads(calls[1].args[2]) == {
            "status": "analyzing",
            "updated_at": 1_700_000_000_000,
        }
        assert calls[2].args == (NOTIFY_SQL, "realtime_nodes", "generations/s1")
        mock_conn.transaction.assert_called_once()

    @pytest.mark.asyncio
    async def test_set_none_deletes(self, mock_db_pool, mock_conn):
        store = PostgresStore(pool=mock_db_pool)

        await store.set("generations/s1", None)

        calls = mock_conn.execute.await_args_list
        assert calls[0].args == (DELETE_SUBTREE_SQL, "generations/s1")
        assert calls[1].args == (NOTIFY_SQL, "realtime_nodes", "generations/s1")

    @pytest.mark.asyncio
    async def test_get_subtree(self, mock_db_pool, mock_conn):
        mock_conn.fetch.return_value = [row("generations/s1", {"progress": 30})]
        store = PostgresStore(pool=mock_db_pool)

        assert await store.get("generations/s1") == {"progress": 30}
        mock_conn.fetch.assert_awaited_once_with(SELECT_SUBTREE_SQL, "generations/s1")
        mock_conn.fetchrow.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_get_falls_back_to_ancestor(self, mock_db_pool, mock_conn):
        mock_conn.fetchrow.return_value = row("generations/s1", {"files": {"main": {"name": "a.py"}}})
        store = PostgresStore(pool=mock_db_pool)

        assert await store.get("generations/s1/files/main") == {"name": "a.py"}
        mock_conn.fetchrow.assert_awaited_once_with(SELECT_ANCESTOR_SQL, "generations/s1/files/main")

    @pytest.mark.asyncio
    async def test_get_missing(self, mock_db_pool):
        store = PostgresStore(pool=mock_db_pool)
        assert await store.get("generations/none") is None

    @pytest.mark.asyncio
    async def test_database_errors_wrapped(self, mock_db_pool, mock_conn):
        mock_conn.fetch.side_effect = ConnectionResetError("connection lost")
        store = PostgresStore(pool=mock_db_pool)

        with pytest.raises(StoreError) as exc_info:
            await store.get("generations/s1")

        assert exc_info.value.operation == "get"
        assert exc_info.value.path == "generations/s1"

    @pytest.mark.asyncio
    async def test_notification_dispatches_listener(self, mock_db_pool, mock_conn):
        mock_conn.fetch.return_value = [row("generations/s1", {"progress": 50})]
        store = PostgresStore(pool=mock_db_pool)

        seen = []
        store.subscribe("generations/s1", seen.append)
        for _ in range(3):
            await asyncio.sleep(0)
        seen.clear()

        store._on_notify(None, 1234, "realtime_nodes", "generations/s1")
        for _ in range(3):
            await asyncio.sleep(0)

        assert seen == [{"progress": 50}]

    @pytest.mark.asyncio
    async def test_unrelated_notification_ignored(self, mock_db_pool, mock_conn):
        mock_conn.fetch.return_value = [row("generations/s1", {"progress": 50})]
        store = PostgresStore(pool=mock_db_pool)

        seen = []
        store.subscribe("generations/s1", seen.append)
        for _ in range(3):
            await asyncio.sleep(0)
        seen.clear()

        store._on_notify(None, 1234, "realtime_nodes", "messages/s1/0001")
        for _ in range(3):
            await asyncio.sleep(0)

        assert seen == []

    @pytest.mark.asyncio
    async def test_connect_requires_url(self):
        store = PostgresStore()

        with pytest.raises(StoreError):
            await store.connect()

    @pytest.mark.asyncio
    async def test_close_releases_listen_connection(self, mock_db_pool):
        store = PostgresStore(pool=mock_db_pool)
        listen_conn = AsyncMock()
        store._listen_conn = listen_conn

        await store.close()

        listen_conn.remove_listener.assert_awaited_once_with("realtime_nodes", store._on_notify)
        mock_db_pool.release.assert_awaited_once_with(listen_conn)
        mock_db_pool.close.assert_awaited_once()


class SlowReadStore(PostgresStore):
    """PostgresStore whose reads snapshot a dict, then take a scripted time."""

    def __init__(self, data: dict, delays: list[float]):
        super().__init__(pool=MagicMock())
        self.data = data
        self.delays = list(delays)

    async def get(self, path):
        value = copy.deepcopy(self.data.get(path))
        await asyncio.sleep(self.delays.pop(0) if self.delays else 0)
        return value


class TestNotificationOrdering:
    """Notifications that arrive while a listener read is in flight."""

    @pytest.mark.asyncio
    async def test_write_during_slow_read_delivers_newest_only(self):
        store = SlowReadStore({"generations/s1": {"progress": 30}}, delays=[0.05, 0])
        seen = []
        store.subscribe("generations/s1", lambda v: seen.append(v["progress"]))
        await asyncio.sleep(0)
        assert len(store._listeners._tasks) == 1

        store.data["generations/s1"] = {"progress": 50}
        store._on_notify(None, 1234, "realtime_nodes", "generations/s1")
        await asyncio.sleep(0.1)

        assert seen == [50]
        assert not store._listeners._tasks

    @pytest.mark.asyncio
    async def test_notify_during_read_runs_one_read_at_a_time(self):
        store = SlowReadStore({"generations/s1": {"progress": 10}}, delays=[0.05, 0.05])
        in_flight = []
        peak = []
        original_get = store.get

        async def counting_get(path):
            in_flight.append(path)
            peak.append(len(in_flight))
            try:
                return await original_get(path)
            finally:
                in_flight.pop()

        store._listeners._reader = counting_get
        store.subscribe("generations/s1", print)
        await asyncio.sleep(0)

        for _ in range(3):
            store._on_notify(None, 1234, "realtime_nodes", "generations/s1")
            await asyncio.sleep(0)
        await asyncio.sleep(0.2)

        assert max(peak) == 1
        assert len(peak) == 2

    @pytest.mark.asyncio
    async def test_latest_message_not_delivered_twice(self, fast_config):
        log = {"0000000000001_000000": {"type": "progress", "data": {"n": 1}, "timestamp": 1}}
        store = SlowReadStore({"messages/s1": log}, delays=[0.05, 0])
        service = RealtimeService(store, fast_config)
        seen = []

        service.subscribe_to_messages("s1", seen.append)
        await asyncio.sleep(0)
        store._on_notify(None, 1234, "realtime_nodes", "messages/s1")
        await asyncio.sleep(0.1)

        # A later notification with the log unchanged hands over nothing new
        store._on_notify(None, 1234, "realtime_nodes", "messages/s1")
        await asyncio.sleep(0.05)

        assert [m.data["n"] for m in seen] == [1]
