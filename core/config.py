"""
Configuration management for Stich realtime generation.

Centralizes all configuration including:
- Realtime store backend and database endpoints
- Generation script timings and listener lifecycle
- SSE server settings
"""

import os
from dataclasses import dataclass, field
from typing import Literal, Optional


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return int(raw)


@dataclass
class StoreConfig:
    """Realtime store configuration."""

    backend: str = field(default_factory=lambda: os.getenv("REALTIME_STORE", "memory").lower())
    database_url: str = field(default_factory=lambda: os.getenv("DATABASE_URL", ""))
    pool_min_size: int = field(default_factory=lambda: _env_int("DATABASE_POOL_MIN", 2))
    pool_max_size: int = field(default_factory=lambda: _env_int("DATABASE_POOL_MAX", 10))
    notify_channel: str = "realtime_nodes"


@dataclass
class GenerationConfig:
    """Timings and delivery policy for generation sessions."""

    # Scripted phase delays (seconds)
    analyze_delay: float = field(default_factory=lambda: _env_float("GENERATION_ANALYZE_DELAY", 2.0))
    file_delay: float = field(default_factory=lambda: _env_float("GENERATION_FILE_DELAY", 1.5))
    review_delay: float = field(default_factory=lambda: _env_float("GENERATION_REVIEW_DELAY", 2.0))

    # Listeners opened by stream_generation stay alive this long after the script ends
    listener_grace_period: float = field(
        default_factory=lambda: _env_float("GENERATION_LISTENER_GRACE", 10.0)
    )

    # "latest" coalesces to the newest message, "all" delivers every new message
    message_delivery: Literal["latest", "all"] = field(
        default_factory=lambda: os.getenv("GENERATION_MESSAGE_DELIVERY", "latest").lower()
    )

    # 0 keeps every message for the life of a state manager
    max_messages: int = field(default_factory=lambda: _env_int("GENERATION_MAX_MESSAGES", 0))

    session_max_age_hours: float = field(
        default_factory=lambda: _env_float("GENERATION_SESSION_MAX_AGE_HOURS", 24.0)
    )


@dataclass
class ServerConfig:
    """SSE server configuration."""

    host: str = field(default_factory=lambda: os.getenv("STICH_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _env_int("STICH_PORT", 8765))
    heartbeat_interval: int = 30


@dataclass
class Config:
    """Main configuration class."""

    store: StoreConfig = field(default_factory=StoreConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        return cls()

    def validate(self) -> list[str]:
        """Validate configuration and return list of issues."""
        issues = []

        if self.store.backend not in ("memory", "postgres"):
            issues.append(f"Unknown REALTIME_STORE backend: {self.store.backend}")

        if self.store.backend == "postgres" and not self.store.database_url:
            issues.append("DATABASE_URL not configured (needed for postgres store)")

        if self.generation.message_delivery not in ("latest", "all"):
            issues.append(
                f"GENERATION_MESSAGE_DELIVERY must be 'latest' or 'all', "
                f"got {self.generation.message_delivery}"
            )

        for name in ("analyze_delay", "file_delay", "review_delay", "listener_grace_period"):
            if getattr(self.generation, name) < 0:
                issues.append(f"generation.{name} must not be negative")

        if self.generation.max_messages < 0:
            issues.append("GENERATION_MAX_MESSAGES must not be negative")

        return issues


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reload_config():
    """Reload configuration from environment."""
    global _config
    _config = Config.from_env()
