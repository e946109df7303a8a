"""
Stich Services

Core services for realtime generation:
- realtime: session store, generation service and client-side state
- streaming: SSE progress streaming over HTTP
"""

from .realtime import (
    RealtimeService,
    GenerationStateManager,
    GenerationStatus,
    MemoryStore,
)

__all__ = [
    "RealtimeService",
    "GenerationStateManager",
    "GenerationStatus",
    "MemoryStore",
]
