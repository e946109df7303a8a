"""
Generation State Manager

Consumer-side state for one generation at a time. Subscribes to a session's
progress and message feeds and reduces them into a single GenerationState
that a UI layer can render or observe.

Usage:
    async with GenerationStateManager(service) as generation:
        generation.on_change(render)
        session_id = await generation.start_generation("user-42")
        ...
        generation.stop_generation()
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

from .models import GenerationProgress, StreamMessage, new_session_id
from .service import RealtimeService
from .store import Unsubscribe

logger = logging.getLogger(__name__)


@dataclass
class GenerationState:
    """UI-facing snapshot of a generation."""
    is_generating: bool = False
    progress: Optional[GenerationProgress] = None
    messages: list[StreamMessage] = field(default_factory=list)
    error: Optional[str] = None


class GenerationStateManager:
    """
    Bridges the push-based RealtimeService to one consolidated state object.

    Every state change replaces ``state`` with a new GenerationState and
    notifies observers registered via ``on_change``.
    """

    def __init__(self, service: RealtimeService, max_messages: Optional[int] = None):
        self.service = service
        # 0 / None: keep every message
        self.max_messages = (
            max_messages if max_messages is not None
            else service.config.generation.max_messages
        )

        self.state = GenerationState()
        self.session_id: Optional[str] = None

        self._unsubscribers: list[Unsubscribe] = []
        self._observers: list[Callable[[GenerationState], None]] = []

    async def __aenter__(self) -> "GenerationStateManager":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()

    def on_change(self, callback: Callable[[GenerationState], None]) -> Callable[[], None]:
        """Register an observer called with every new state. Returns a remover."""
        self._observers.append(callback)

        def remove():
            if callback in self._observers:
                self._observers.remove(callback)

        return remove

    def _set_state(self, **changes):
        self.state = replace(self.state, **changes)
        for observer in list(self._observers):
            try:
                observer(self.state)
            except Exception as e:
                logger.error(f"Generation state observer error: {e}")

    def _on_progress(self, progress: GenerationProgress):
        changes = {"progress": progress, "error": progress.error or None}
        if progress.status.is_terminal:
            changes["is_generating"] = False
        self._set_state(**changes)

    def _on_message(self, message: StreamMessage):
        messages = self.state.messages + [message]
        if self.max_messages:
            messages = messages[-self.max_messages:]
        self._set_state(messages=messages)

    def _subscribe(self, session_id: str):
        # Previous session's listeners are released before attaching new ones
        self._dispose_subscriptions()
        self._unsubscribers = [
            self.service.subscribe_to_generation(session_id, self._on_progress),
            self.service.subscribe_to_messages(session_id, self._on_message),
        ]

    def _dispose_subscriptions(self):
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    async def start_generation(self, user_id: str) -> Optional[str]:
        """
        Start a new generation session and follow it until the script ends.

        Returns:
            The new session id, or None when the request was rejected
            (the reason is in ``state.error``).
        """
        if not user_id:
            self._set_state(error="A user id is required to start generation")
            return None

        session_id = new_session_id()
        self.session_id = session_id

        self._set_state(is_generating=True, progress=None, messages=[], error=None)

        try:
            self._subscribe(session_id)

            await self.service.stream_generation(
                session_id,
                user_id,
                on_progress=lambda p: logger.debug(f"Progress update: {p.status.value} {p.progress}%"),
                on_message=lambda m: logger.debug(f"Message received: {m.type.value}"),
            )
        except Exception as e:
            self._set_state(is_generating=False, error=str(e) or "Generation failed")
            raise

        return session_id

    def stop_generation(self, cancel: bool = False):
        """
        Stop following the current session.

        Without ``cancel`` the service keeps running the script and writing
        updates; they are just no longer observed here. With ``cancel`` the
        running script is also asked to halt at its next phase boundary.
        """
        self._dispose_subscriptions()

        if cancel and self.session_id:
            self.service.cancel_generation(self.session_id)

        self._set_state(is_generating=False)

    def clear_generation(self):
        """Reset local state. Subscriptions are left untouched."""
        self._set_state(is_generating=False, progress=None, messages=[], error=None)

    async def get_generation_status(self, session_id: str) -> Optional[GenerationProgress]:
        """One-shot read of a session's record."""
        return await self.service.get_generation_status(session_id)

    def resume_generation(self, session_id: str):
        """Re-attach to an existing session without restarting its script."""
        if not session_id:
            self._set_state(error="A session id is required to resume generation")
            return

        self.session_id = session_id
        self._set_state(is_generating=True, error=None)
        self._subscribe(session_id)

    def close(self):
        """Release all subscriptions and the service's listeners."""
        self._dispose_subscriptions()
        self.service.disconnect_all()
