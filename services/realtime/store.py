"""
Realtime Store

Path-addressed document store with push subscriptions. The generation
service only talks to this contract, so the backing database can be swapped.

Paths look like ``generations/{session_id}`` or
``messages/{session_id}/{key}``. A subscription on a path sees the node and
its whole subtree.

Usage:
    store = MemoryStore()
    unsubscribe = store.subscribe("generations/abc", print)
    await store.set("generations/abc", {"status": "analyzing"})
    unsubscribe()
"""

import asyncio
import copy
import inspect
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .models import now_ms

logger = logging.getLogger(__name__)

Callback = Callable[[Any], None]
Unsubscribe = Callable[[], None]


class _ServerTimestamp:
    """Placeholder replaced with the store's write time."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


class StoreError(Exception):
    """Raised when a read or write against the realtime store fails."""

    def __init__(self, operation: str, path: str, reason: str):
        self.operation = operation
        self.path = path
        self.reason = reason
        super().__init__(f"Store {operation} failed for {path}: {reason}")


def resolve_server_timestamps(value: Any, write_time: int) -> Any:
    """Replace every SERVER_TIMESTAMP in a JSON-like value with write_time."""
    if value is SERVER_TIMESTAMP:
        return write_time
    if isinstance(value, dict):
        return {k: resolve_server_timestamps(v, write_time) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_server_timestamps(v, write_time) for v in value]
    return value


def split_path(path: str) -> list[str]:
    parts = [p for p in path.strip("/").split("/") if p]
    if not parts:
        raise ValueError(f"Invalid store path: {path!r}")
    return parts


def paths_overlap(subscribed: str, written: str) -> bool:
    """True when a write at `written` changes what a listener on `subscribed` sees."""
    sub = "/".join(split_path(subscribed))
    wrote = "/".join(split_path(written))
    return sub == wrote or wrote.startswith(sub + "/") or sub.startswith(wrote + "/")


class RealtimeStore(ABC):
    """Contract for the document store behind generation sessions."""

    @abstractmethod
    async def get(self, path: str) -> Optional[Any]:
        """One-shot read of a node and its subtree."""

    @abstractmethod
    async def set(self, path: str, value: Any) -> None:
        """Overwrite a node. Returns once the write is acknowledged."""

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Remove a node and its subtree."""

    @abstractmethod
    def subscribe(self, path: str, callback: Callback) -> Unsubscribe:
        """
        Register a push listener.

        The callback fires once with the current value (if any) and again
        after writes at or below `path`. Several writes landing before the
        listener is dispatched produce a single callback with the latest value.
        """

    async def close(self) -> None:
        """Release backend resources."""


@dataclass
class _Subscription:
    sub_id: int
    path: str
    callback: Callback
    active: bool = True
    pending: bool = False
    # Async readers: a read is in flight, and a write landed during it
    reading: bool = False
    dirty: bool = False
    loop: Optional[asyncio.AbstractEventLoop] = field(default=None, repr=False)


class ListenerRegistry:
    """
    Coalescing dispatch for store subscriptions.

    Backends call ``notify(path)`` after a write; each overlapping listener
    gets at most one pending dispatch, which reads the value at dispatch time.
    The reader may be a plain function or a coroutine function. With a
    coroutine reader a listener never has two reads in flight; a write that
    lands during a read forces a re-read before anything is delivered.
    """

    def __init__(self, reader: Callable[[str], Any]):
        self._reader = reader
        self._async_reader = inspect.iscoroutinefunction(reader)
        self._subscriptions: dict[int, _Subscription] = {}
        self._ids = itertools.count(1)
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._subscriptions)

    def add(self, path: str, callback: Callback, fire_initial: bool = True) -> Unsubscribe:
        sub = _Subscription(
            sub_id=next(self._ids),
            path=path,
            callback=callback,
            loop=asyncio.get_running_loop(),
        )
        self._subscriptions[sub.sub_id] = sub
        logger.debug(f"Listener {sub.sub_id} added on {path}")

        if fire_initial:
            self._schedule(sub)

        def unsubscribe():
            if sub.active:
                sub.active = False
                self._subscriptions.pop(sub.sub_id, None)
                logger.debug(f"Listener {sub.sub_id} removed from {path}")

        return unsubscribe

    def notify(self, path: str):
        for sub in list(self._subscriptions.values()):
            if paths_overlap(sub.path, path):
                self._schedule(sub)

    def clear(self):
        for sub in self._subscriptions.values():
            sub.active = False
        self._subscriptions.clear()

    def _schedule(self, sub: _Subscription):
        if not sub.active:
            return
        if sub.reading:
            sub.dirty = True
            return
        if sub.pending:
            return
        sub.pending = True
        if self._async_reader:
            task = sub.loop.create_task(self._dispatch_async(sub))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            sub.loop.call_soon(self._dispatch, sub)

    def _dispatch(self, sub: _Subscription):
        sub.pending = False
        if not sub.active:
            return
        self._deliver(sub, self._reader(sub.path))

    async def _dispatch_async(self, sub: _Subscription):
        sub.pending = False
        sub.reading = True
        try:
            while sub.active:
                sub.dirty = False
                try:
                    value = await self._reader(sub.path)
                except Exception as e:
                    logger.error(f"Store listener read failed on {sub.path}: {e}")
                    return
                # Superseded by a write during the read
                if sub.dirty:
                    continue
                if sub.active:
                    self._deliver(sub, value)
                return
        finally:
            sub.reading = False

    def _deliver(self, sub: _Subscription, value: Any):
        if value is None:
            return

        try:
            sub.callback(value)
        except Exception as e:
            logger.error(f"Store listener error on {sub.path}: {e}")


class MemoryStore(RealtimeStore):
    """
    In-process realtime store.

    Holds a nested dict tree. Each write suspends once after scheduling
    listener dispatch, so sequential awaited writes are each observed while
    writes issued without yielding in between are coalesced.
    """

    def __init__(self, clock: Callable[[], int] = now_ms):
        self._root: dict[str, Any] = {}
        self._clock = clock
        self._listeners = ListenerRegistry(self._read)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _read(self, path: str) -> Optional[Any]:
        node: Any = self._root
        for part in split_path(path):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return copy.deepcopy(node)

    def _write(self, path: str, value: Any):
        parts = split_path(path)
        node = self._root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value

    def _remove(self, path: str):
        parts = split_path(path)
        node: Any = self._root
        for part in parts[:-1]:
            if not isinstance(node, dict) or part not in node:
                return
            node = node[part]
        if isinstance(node, dict):
            node.pop(parts[-1], None)

    async def get(self, path: str) -> Optional[Any]:
        return self._read(path)

    async def set(self, path: str, value: Any) -> None:
        if value is None:
            await self.delete(path)
            return

        resolved = resolve_server_timestamps(copy.deepcopy(value), self._clock())
        self._write(path, resolved)
        self._listeners.notify(path)
        await asyncio.sleep(0)

    async def delete(self, path: str) -> None:
        self._remove(path)
        self._listeners.notify(path)
        await asyncio.sleep(0)

    def subscribe(self, path: str, callback: Callback) -> Unsubscribe:
        return self._listeners.add(path, callback)

    async def close(self) -> None:
        self._listeners.clear()


def create_store(config) -> RealtimeStore:
    """
    Build the store selected by configuration.

    Args:
        config: core.config.Config

    Returns:
        An unconnected store. PostgresStore needs ``await store.connect()``.
    """
    backend = config.store.backend
    if backend == "memory":
        return MemoryStore()
    if backend == "postgres":
        # Import here to avoid circular imports
        from .postgres_store import PostgresStore

        return PostgresStore(
            database_url=config.store.database_url,
            pool_min_size=config.store.pool_min_size,
            pool_max_size=config.store.pool_max_size,
            channel=config.store.notify_channel,
        )
    raise ValueError(f"Unknown realtime store backend: {backend}")
