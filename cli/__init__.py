"""
Stich CLI Tools

Command-line tools for interacting with generation sessions.

Tools:
- progress_monitor: Real-time progress visualization over SSE
"""

from .progress_monitor import ProgressMonitor

__all__ = ["ProgressMonitor"]
