"""
SSE Event Framing

Formats realtime session updates as Server-Sent Events and parses them back
on the client side.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import uuid4

from services.realtime.models import GenerationProgress, StreamMessage

# Stream event names
EVENT_CONNECTED = "connected"
EVENT_PROGRESS = "progress"
EVENT_MESSAGE = "message"


@dataclass
class SSEEvent:
    """A single SSE frame."""

    event: str
    data: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid4()))

    @classmethod
    def from_progress(cls, progress: GenerationProgress) -> "SSEEvent":
        return cls(event=EVENT_PROGRESS, data=progress.to_dict())

    @classmethod
    def from_message(cls, message: StreamMessage) -> "SSEEvent":
        return cls(event=EVENT_MESSAGE, data=message.to_dict())

    @property
    def is_terminal(self) -> bool:
        """True for the complete/error message that ends a session's stream."""
        return self.event == EVENT_MESSAGE and self.data.get("type") in ("complete", "error")

    def to_sse(self) -> str:
        """Format as SSE message."""
        json_data = json.dumps(self.data)
        return f"id: {self.event_id}\nevent: {self.event}\ndata: {json_data}\n\n"


def parse_sse_line(line: str) -> Optional[tuple[str, str]]:
    """
    Split one SSE line into (field, value).

    Returns None for blank lines and comments (heartbeats).
    """
    line = line.rstrip("\r\n")
    if not line or line.startswith(":"):
        return None

    name, sep, value = line.partition(":")
    if not sep:
        return name, ""
    if value.startswith(" "):
        value = value[1:]
    return name, value
