"""
Realtime Generation Models

Defines the session record and stream message shapes written to the
realtime store. Stored documents use the ``to_dict`` form.
"""

import random
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class GenerationStatus(str, Enum):
    """Lifecycle of a generation session."""
    INITIALIZING = "initializing"
    ANALYZING = "analyzing"
    GENERATING = "generating"
    REVIEWING = "reviewing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (GenerationStatus.COMPLETED, GenerationStatus.ERROR)

    @property
    def order(self) -> int:
        """Position in the forward walk; both terminal states share the last slot."""
        return {
            GenerationStatus.INITIALIZING: 0,
            GenerationStatus.ANALYZING: 1,
            GenerationStatus.GENERATING: 2,
            GenerationStatus.REVIEWING: 3,
            GenerationStatus.COMPLETED: 4,
            GenerationStatus.ERROR: 4,
        }[self]


class MessageType(str, Enum):
    """Types of stream messages."""
    PROGRESS = "progress"
    FILE = "file"
    ERROR = "error"
    COMPLETE = "complete"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_session_id() -> str:
    """Time-prefixed session id with a random base36 suffix."""
    alphabet = string.digits + string.ascii_lowercase
    suffix = "".join(random.choices(alphabet, k=9))
    return f"session_{now_ms()}_{suffix}"


@dataclass
class GeneratedFile:
    """A single generated source file."""
    name: str
    path: str
    content: str
    language: str

    def to_dict(self) -> dict[str, str]:
        return {
            "name": self.name,
            "path": self.path,
            "content": self.content,
            "language": self.language,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GeneratedFile":
        return cls(
            name=data.get("name", ""),
            path=data.get("path", ""),
            content=data.get("content", ""),
            language=data.get("language", ""),
        )


@dataclass
class GenerationProgress:
    """Current state of one generation session (the progress document)."""
    session_id: str = ""
    user_id: Optional[str] = None
    status: GenerationStatus = GenerationStatus.INITIALIZING
    progress: int = 0  # 0-100
    current_step: str = ""
    files: Optional[list[GeneratedFile]] = None
    error: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)

    # Server-side write times, filled in by the store
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the stored document. Unset optional fields are omitted."""
        data: dict[str, Any] = {
            "session_id": self.session_id,
            "status": self.status.value,
            "progress": self.progress,
            "current_step": self.current_step,
            "timestamp": self.timestamp,
        }
        if self.user_id is not None:
            data["user_id"] = self.user_id
        if self.files is not None:
            data["files"] = [f.to_dict() for f in self.files]
        if self.error is not None:
            data["error"] = self.error
        if self.created_at is not None:
            data["created_at"] = self.created_at
        if self.updated_at is not None:
            data["updated_at"] = self.updated_at
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GenerationProgress":
        """Create from a stored document."""
        files = data.get("files")
        return cls(
            session_id=data.get("session_id", ""),
            user_id=data.get("user_id"),
            status=GenerationStatus(data.get("status", "initializing")),
            progress=int(data.get("progress", 0)),
            current_step=data.get("current_step", ""),
            files=[GeneratedFile.from_dict(f) for f in files] if files is not None else None,
            error=data.get("error"),
            timestamp=int(data.get("timestamp", 0)),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass
class StreamMessage:
    """A discrete event appended to a session's message log."""
    type: MessageType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StreamMessage":
        return cls(
            type=MessageType(data.get("type", "progress")),
            data=data.get("data") or {},
            timestamp=int(data.get("timestamp", 0)),
        )
