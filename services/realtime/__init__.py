"""
Realtime Generation Sessions

Live progress and message feeds for AI generation runs.

Usage:
    from services.realtime import MemoryStore, RealtimeService, GenerationStateManager

    service = RealtimeService(MemoryStore())
    async with GenerationStateManager(service) as generation:
        session_id = await generation.start_generation("user-42")
"""

from .models import (
    GeneratedFile,
    GenerationProgress,
    GenerationStatus,
    MessageType,
    StreamMessage,
    new_session_id,
)
from .store import SERVER_TIMESTAMP, MemoryStore, RealtimeStore, StoreError, create_store
from .service import GenerationCancelled, RealtimeService
from .generation_state import GenerationState, GenerationStateManager

__all__ = [
    "GeneratedFile",
    "GenerationProgress",
    "GenerationStatus",
    "MessageType",
    "StreamMessage",
    "new_session_id",
    "SERVER_TIMESTAMP",
    "MemoryStore",
    "RealtimeStore",
    "StoreError",
    "create_store",
    "GenerationCancelled",
    "RealtimeService",
    "GenerationState",
    "GenerationStateManager",
]
