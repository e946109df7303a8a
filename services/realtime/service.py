"""
Realtime Generation Service

Coordinates generation sessions on top of a RealtimeStore:
- Progress documents at ``generations/{session_id}`` (full overwrite per update)
- Append-only message logs at ``messages/{session_id}/{key}``
- Push subscriptions to both feeds
- The scripted generation run (``stream_generation``)

One service instance is shared by every consumer in a process. It is built
explicitly and handed to consumers; call ``disconnect_all`` at teardown.

Usage:
    service = RealtimeService(MemoryStore(), config)

    unsubscribe = service.subscribe_to_generation(session_id, print)
    await service.stream_generation(session_id, "user-42", on_progress, on_message)
    service.disconnect_all()
"""

import asyncio
import itertools
import json
import logging
from typing import Callable, Optional, Union

from core.config import Config, get_config

from .models import (
    GeneratedFile,
    GenerationProgress,
    GenerationStatus,
    MessageType,
    StreamMessage,
    now_ms,
)
from .store import SERVER_TIMESTAMP, RealtimeStore, Unsubscribe

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[GenerationProgress], None]
MessageCallback = Callable[[StreamMessage], None]

CANCELLED_MESSAGE = "Generation cancelled"


class GenerationCancelled(Exception):
    """Raised inside the generation script when its cancel event is set."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(CANCELLED_MESSAGE)


def generation_path(session_id: str) -> str:
    return f"generations/{session_id}"


def messages_path(session_id: str) -> str:
    return f"messages/{session_id}"


def scaffold_files() -> list[GeneratedFile]:
    """Files produced by the simulated generation run."""
    return [
        GeneratedFile(
            name="package.json",
            path="/package.json",
            content=json.dumps({"name": "generated-app", "version": "1.0.0"}, indent=2),
            language="json",
        ),
        GeneratedFile(
            name="index.html",
            path="/index.html",
            content=(
                "<!DOCTYPE html><html><head><title>Generated App</title></head>"
                "<body><h1>Hello World</h1></body></html>"
            ),
            language="html",
        ),
    ]


class RealtimeService:
    """
    Orchestrates realtime generation sessions.

    Tracks every listener it hands out so ``disconnect_all`` can release
    them, including several listeners registered for the same session.
    """

    def __init__(self, store: RealtimeStore, config: Optional[Config] = None):
        self.store = store
        self.config = config or get_config()

        self._listeners: dict[str, list[Unsubscribe]] = {}
        self._teardown_handles: set[asyncio.TimerHandle] = set()
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._message_seq = itertools.count()

    # ------------------------------------------------------------------
    # Progress document
    # ------------------------------------------------------------------

    async def start_generation_session(self, session_id: str, user_id: str):
        """Create the initial session record (initializing, 0%)."""
        record = GenerationProgress(
            session_id=session_id,
            user_id=user_id,
            status=GenerationStatus.INITIALIZING,
            progress=0,
            current_step="Starting AI generation...",
        ).to_dict()
        record["created_at"] = SERVER_TIMESTAMP

        await self.store.set(generation_path(session_id), record)
        logger.info(f"Generation session {session_id} started for user {user_id}")

    async def update_progress(
        self,
        session_id: str,
        status: Union[GenerationStatus, str],
        progress: int,
        current_step: str,
        files: Optional[list[GeneratedFile]] = None,
    ):
        """
        Overwrite the session record with the given fields.

        Neither the status transition nor progress monotonicity is checked;
        callers own the ordering.
        """
        record = GenerationProgress(
            session_id=session_id,
            status=GenerationStatus(status),
            progress=progress,
            current_step=current_step,
            files=list(files) if files is not None else None,
        ).to_dict()
        record["updated_at"] = SERVER_TIMESTAMP

        await self.store.set(generation_path(session_id), record)
        logger.debug(f"Session {session_id}: {record['status']} {progress}% - {current_step}")

    async def complete_generation(self, session_id: str, files: list[GeneratedFile]):
        """Mark generation as completed."""
        await self.update_progress(
            session_id,
            GenerationStatus.COMPLETED,
            100,
            "Generation completed successfully",
            files,
        )
        logger.info(f"Generation session {session_id} completed with {len(files)} files")

    async def error_generation(self, session_id: str, error: str):
        """Mark generation as failed. Progress drops back to 0."""
        record = GenerationProgress(
            session_id=session_id,
            status=GenerationStatus.ERROR,
            progress=0,
            current_step="Generation failed",
            error=error,
        ).to_dict()
        record["updated_at"] = SERVER_TIMESTAMP

        await self.store.set(generation_path(session_id), record)
        logger.warning(f"Generation session {session_id} failed: {error}")

    def subscribe_to_generation(
        self,
        session_id: str,
        callback: ProgressCallback,
    ) -> Unsubscribe:
        """
        Listen to progress updates for a session.

        The callback fires with the current record (if any) and after every write.
        """

        def on_value(value):
            if isinstance(value, dict):
                callback(GenerationProgress.from_dict(value))

        unsubscribe = self.store.subscribe(generation_path(session_id), on_value)
        return self._track(session_id, unsubscribe)

    async def get_generation_status(self, session_id: str) -> Optional[GenerationProgress]:
        """One-shot read of a session record."""
        value = await self.store.get(generation_path(session_id))
        if not isinstance(value, dict):
            return None
        return GenerationProgress.from_dict(value)

    # ------------------------------------------------------------------
    # Message log
    # ------------------------------------------------------------------

    def _next_message_key(self) -> str:
        # Fixed-width timestamp + sequence: sorts in write order, unique per process
        return f"{now_ms():013d}_{next(self._message_seq):06d}"

    async def send_message(self, session_id: str, message: StreamMessage):
        """Append a message to the session's log."""
        entry = message.to_dict()
        entry["created_at"] = SERVER_TIMESTAMP

        key = self._next_message_key()
        await self.store.set(f"{messages_path(session_id)}/{key}", entry)
        logger.debug(f"Session {session_id}: message {message.type.value} ({key})")

    def subscribe_to_messages(
        self,
        session_id: str,
        callback: MessageCallback,
        delivery: Optional[str] = None,
    ) -> Unsubscribe:
        """
        Listen to a session's message log.

        Args:
            session_id: Session to watch
            callback: Called with each delivered StreamMessage
            delivery: "latest" hands over only the newest entry per dispatch,
                so entries written between dispatches are skipped.
                "all" hands over every entry newer than the last one
                delivered to this listener, in key order.
                Defaults to the configured policy.
        """
        delivery = delivery or self.config.generation.message_delivery
        if delivery not in ("latest", "all"):
            raise ValueError(f"Unknown message delivery policy: {delivery}")

        last_key: Optional[str] = None

        def on_value(value):
            nonlocal last_key
            if not isinstance(value, dict) or not value:
                return

            keys = sorted(value)
            if delivery == "latest":
                # Re-reads of an unchanged log hand over nothing
                pending = keys[-1:] if keys[-1] != last_key else []
            else:
                pending = [k for k in keys if last_key is None or k > last_key]

            for key in pending:
                last_key = key
                entry = value[key]
                if isinstance(entry, dict):
                    callback(StreamMessage.from_dict(entry))

        unsubscribe = self.store.subscribe(messages_path(session_id), on_value)
        return self._track(f"messages_{session_id}", unsubscribe)

    async def get_messages(
        self,
        session_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[StreamMessage], int]:
        """
        Page through a session's message log, newest first.

        Returns:
            (messages, total) where total counts the whole log
        """
        log = await self.store.get(messages_path(session_id))
        if not isinstance(log, dict):
            return [], 0

        keys = sorted(log, reverse=True)
        page = [
            StreamMessage.from_dict(log[key])
            for key in keys[offset:offset + limit]
            if isinstance(log[key], dict)
        ]
        return page, len(keys)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _track(self, key: str, unsubscribe: Unsubscribe) -> Unsubscribe:
        listeners = self._listeners.setdefault(key, [])
        if listeners:
            logger.debug(f"Additional listener on {key} ({len(listeners) + 1} active)")
        listeners.append(unsubscribe)

        def dispose():
            unsubscribe()
            tracked = self._listeners.get(key)
            if tracked and unsubscribe in tracked:
                tracked.remove(unsubscribe)
                if not tracked:
                    del self._listeners[key]

        return dispose

    @property
    def listener_count(self) -> int:
        return sum(len(v) for v in self._listeners.values())

    def disconnect_all(self):
        """Dispose every tracked listener and pending delayed teardown."""
        for handle in self._teardown_handles:
            handle.cancel()
        self._teardown_handles.clear()

        for listeners in self._listeners.values():
            for unsubscribe in listeners:
                unsubscribe()
        count = self.listener_count
        self._listeners.clear()

        logger.info(f"Disconnected {count} realtime listeners")

    def _schedule_teardown(self, disposers: list[Unsubscribe]):
        """Dispose listeners after the configured grace period."""
        handle: Optional[asyncio.TimerHandle] = None

        def teardown():
            self._teardown_handles.discard(handle)
            for dispose in disposers:
                dispose()

        loop = asyncio.get_running_loop()
        handle = loop.call_later(self.config.generation.listener_grace_period, teardown)
        self._teardown_handles.add(handle)

    def cancel_generation(self, session_id: str) -> bool:
        """
        Ask a running ``stream_generation`` to stop at its next phase boundary.

        Returns:
            True if a running generation was signalled
        """
        event = self._cancel_events.get(session_id)
        if event is None:
            return False
        event.set()
        logger.info(f"Cancellation requested for session {session_id}")
        return True

    def is_running(self, session_id: str) -> bool:
        return session_id in self._cancel_events

    async def cleanup_old_sessions(self, max_age_hours: Optional[float] = None) -> int:
        """
        Delete sessions (record and message log) not written within max_age_hours.

        Message logs with no session record are swept too, aged by their
        newest entry.

        Returns:
            Number of sessions removed
        """
        if max_age_hours is None:
            max_age_hours = self.config.generation.session_max_age_hours
        cutoff = now_ms() - int(max_age_hours * 60 * 60 * 1000)

        sessions = await self.store.get("generations")
        if not isinstance(sessions, dict):
            sessions = {}

        removed = 0
        for session_id, record in sessions.items():
            if not isinstance(record, dict):
                continue
            last_write = record.get("updated_at") or record.get("created_at") or record.get("timestamp", 0)
            if last_write >= cutoff or self.is_running(session_id):
                continue

            await self.store.delete(generation_path(session_id))
            await self.store.delete(messages_path(session_id))
            removed += 1
            logger.info(f"Cleaned up generation session {session_id}")

        logs = await self.store.get("messages")
        if isinstance(logs, dict):
            for session_id, log in logs.items():
                if session_id in sessions or self.is_running(session_id):
                    continue
                entries = [e for e in log.values() if isinstance(e, dict)] if isinstance(log, dict) else []
                last_write = max(
                    (e.get("created_at") or e.get("timestamp", 0) for e in entries),
                    default=0,
                )
                if last_write >= cutoff:
                    continue

                await self.store.delete(messages_path(session_id))
                removed += 1
                logger.info(f"Cleaned up orphaned message log {session_id}")

        return removed

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    async def _pause(self, seconds: float, cancel_event: asyncio.Event, session_id: str):
        """Sleep between phases, waking early on cancellation."""
        if seconds > 0:
            try:
                await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
            except asyncio.TimeoutError:
                pass
        else:
            await asyncio.sleep(0)

        if cancel_event.is_set():
            raise GenerationCancelled(session_id)

    async def stream_generation(
        self,
        session_id: str,
        user_id: str,
        on_progress: Optional[ProgressCallback] = None,
        on_message: Optional[MessageCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        """
        Run the scripted generation for a session with live updates.

        Phases: analyzing (10%), generating (30% then +20% per file),
        reviewing (80%), completed (100%). Failures inside the script end the
        session in the error state and emit an error message instead of
        raising. Listeners opened here are released after the grace period.

        Args:
            session_id: Session to (re)start; an existing record is overwritten
            user_id: Owner of the session
            on_progress: Optional progress listener for this run
            on_message: Optional message listener for this run
            cancel_event: Optional token; when set the script stops at the
                next phase boundary. One is created if not given so
                ``cancel_generation`` can reach this run.
        """
        await self.start_generation_session(session_id, user_id)

        disposers = []
        if on_progress is not None:
            disposers.append(self.subscribe_to_generation(session_id, on_progress))
        if on_message is not None:
            disposers.append(self.subscribe_to_messages(session_id, on_message))

        cancel_event = cancel_event or asyncio.Event()
        self._cancel_events[session_id] = cancel_event

        cfg = self.config.generation

        try:
            # Step 1: Analyzing
            await self.update_progress(session_id, GenerationStatus.ANALYZING, 10, "Analyzing requirements...")
            await self.send_message(session_id, StreamMessage(
                type=MessageType.PROGRESS,
                data={"step": "analyzing", "message": "Breaking down your requirements..."},
            ))
            await self._pause(cfg.analyze_delay, cancel_event, session_id)

            # Step 2: Generating
            await self.update_progress(session_id, GenerationStatus.GENERATING, 30, "Generating code structure...")
            await self.send_message(session_id, StreamMessage(
                type=MessageType.PROGRESS,
                data={"step": "generating", "message": "Creating project structure..."},
            ))

            files = scaffold_files()
            for i, file in enumerate(files):
                await self.update_progress(
                    session_id,
                    GenerationStatus.GENERATING,
                    30 + (i + 1) * 20,
                    f"Generating {file.name}...",
                    files[:i + 1],
                )
                await self.send_message(session_id, StreamMessage(
                    type=MessageType.FILE,
                    data=file.to_dict(),
                ))
                await self._pause(cfg.file_delay, cancel_event, session_id)

            # Step 3: Reviewing
            await self.update_progress(session_id, GenerationStatus.REVIEWING, 80, "Reviewing generated code...")
            await self.send_message(session_id, StreamMessage(
                type=MessageType.PROGRESS,
                data={"step": "reviewing", "message": "Optimizing and reviewing code quality..."},
            ))
            await self._pause(cfg.review_delay, cancel_event, session_id)

            # Step 4: Complete
            await self.complete_generation(session_id, files)
            await self.send_message(session_id, StreamMessage(
                type=MessageType.COMPLETE,
                data={
                    "files": [f.to_dict() for f in files],
                    "message": "Generation completed successfully!",
                },
            ))

        except GenerationCancelled as e:
            await self.error_generation(session_id, str(e))
            await self.send_message(session_id, StreamMessage(
                type=MessageType.ERROR,
                data={"error": str(e), "cancelled": True},
            ))

        except Exception as e:
            logger.exception(f"Generation script failed for session {session_id}: {e}")
            message = str(e) or "Unknown error"
            await self.error_generation(session_id, message)
            await self.send_message(session_id, StreamMessage(
                type=MessageType.ERROR,
                data={"error": message},
            ))

        finally:
            if self._cancel_events.get(session_id) is cancel_event:
                del self._cancel_events[session_id]
            if disposers:
                self._schedule_teardown(disposers)
