"""
Stich Core Components

Provides foundational infrastructure for realtime generation:
- Environment-driven configuration
"""

from .config import Config, get_config, reload_config

__all__ = ["Config", "get_config", "reload_config"]
