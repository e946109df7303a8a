"""
SSE Progress Streaming Service

Provides real-time visibility into generation sessions via Server-Sent
Events (SSE). Designed for browser and CLI consumption.

Usage:
    # Start server
    from services.streaming import SSEServer
    server = SSEServer(service, host="0.0.0.0", port=8765)
    await server.start()

    # In CLI
    curl -N http://localhost:8765/stream/session_123
"""

from .sse_server import SSEServer, SSEClient, StartGenerationRequest
from .events import SSEEvent, parse_sse_line

__all__ = [
    "SSEServer",
    "SSEClient",
    "StartGenerationRequest",
    "SSEEvent",
    "parse_sse_line",
]
