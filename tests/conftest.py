"""
Shared fixtures for realtime generation tests.

Run with:
    python -m pytest tests/ -v
"""

import os
import sys

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import Config, GenerationConfig, ServerConfig, StoreConfig
from services.realtime import MemoryStore, RealtimeService


def make_config(**generation) -> Config:
    """Config with instant phase delays unless overridden."""
    settings = {
        "analyze_delay": 0.0,
        "file_delay": 0.0,
        "review_delay": 0.0,
        "listener_grace_period": 0.0,
        "message_delivery": "latest",
        "max_messages": 0,
        "session_max_age_hours": 24.0,
    }
    settings.update(generation)
    return Config(
        store=StoreConfig(backend="memory", database_url=""),
        generation=GenerationConfig(**settings),
        server=ServerConfig(host="127.0.0.1", port=8765),
    )


@pytest.fixture
def fast_config():
    return make_config()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def service(store, fast_config):
    return RealtimeService(store, fast_config)


@pytest.fixture
def config_factory():
    return make_config
