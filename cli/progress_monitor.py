#!/usr/bin/env python3
"""
CLI Progress Monitor for Generation Sessions

Connects to the SSE server and displays real-time progress with visual formatting.

Usage:
    python -m cli.progress_monitor session_123
    python -m cli.progress_monitor --server http://localhost:8765 session_123
"""

import argparse
import asyncio
import json
from typing import Optional

import aiohttp

from services.streaming.events import EVENT_CONNECTED, EVENT_MESSAGE, EVENT_PROGRESS, parse_sse_line


# ANSI color codes
class Colors:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    CYAN = "\033[36m"
    WHITE = "\033[37m"

    # Clear line
    CLEAR_LINE = "\033[2K\r"


def colored(text: str, color: str) -> str:
    """Apply color to text."""
    return f"{color}{text}{Colors.RESET}"


def progress_bar(percent: float, width: int = 30) -> str:
    """Create a visual progress bar."""
    percent = max(0.0, min(100.0, percent))
    filled = int(percent / 100 * width)
    bar = "█" * filled + "░" * (width - filled)

    # Color based on progress
    if percent >= 100:
        color = Colors.GREEN
    elif percent >= 50:
        color = Colors.CYAN
    elif percent >= 25:
        color = Colors.YELLOW
    else:
        color = Colors.WHITE

    return colored(f"[{bar}]", color) + f" {percent:5.1f}%"


STATUS_ICONS = {
    "initializing": ("🚀", Colors.WHITE),
    "analyzing": ("🔍", Colors.BLUE),
    "generating": ("⏳", Colors.CYAN),
    "reviewing": ("🧐", Colors.MAGENTA),
    "completed": ("✅", Colors.GREEN),
    "error": ("❌", Colors.RED),
}


def format_progress(record: dict) -> str:
    """Format a session record as a single progress line."""
    status = record.get("status", "initializing")
    icon, color = STATUS_ICONS.get(status, ("•", Colors.WHITE))
    step = record.get("current_step", "")

    line = (
        f"{icon} {colored(status.upper().ljust(12), color)} "
        f"{progress_bar(record.get('progress', 0))} "
        f"{colored(step[:40], Colors.WHITE)}"
    )
    if record.get("error"):
        line += "\n" + colored(f"    Error: {record['error']}", Colors.RED)
    return line


def format_message(message: dict) -> str:
    """Format a stream message for display."""
    message_type = message.get("type", "progress")
    data = message.get("data") or {}

    if message_type == "file":
        name = data.get("name", "file")
        language = data.get("language", "")
        return f"📄 Generated {colored(name, Colors.CYAN)} {colored(f'({language})', Colors.DIM)}"

    if message_type == "complete":
        lines = [colored(f"✅ {data.get('message', 'Generation completed')}", Colors.GREEN)]
        for file in data.get("files", []):
            lines.append(colored(f"    → {file.get('path', file.get('name', ''))}", Colors.DIM))
        return "\n".join(lines)

    if message_type == "error":
        return colored(f"🔴 {data.get('error', 'Unknown error')}", Colors.RED)

    step = data.get("step", "")
    text = data.get("message", "")
    return f"•  {colored(step, Colors.BOLD)} {text}".rstrip()


class ProgressMonitor:
    """CLI progress monitor for generation sessions."""

    def __init__(
        self,
        session_id: str,
        server_url: str = "http://localhost:8765",
    ):
        self.session_id = session_id
        self.server_url = server_url.rstrip("/")
        self.stream_url = f"{self.server_url}/stream/{session_id}"

        self._running = False
        self._last_progress: Optional[int] = None

    async def start(self):
        """Start monitoring progress."""
        self._running = True

        print(colored("\n╔═══════════════════════════════════════════╗", Colors.CYAN))
        print(colored("║  Stich Generation Monitor                 ║", Colors.CYAN))
        print(colored("╚═══════════════════════════════════════════╝", Colors.CYAN))
        print(f"Session: {colored(self.session_id, Colors.BOLD)}")
        print(f"Server:  {colored(self.stream_url, Colors.DIM)}")
        print(colored("─" * 45, Colors.DIM))
        print()

        retry_count = 0
        max_retries = 5

        while self._running and retry_count < max_retries:
            try:
                await self._stream_events()
                break  # Clean exit
            except aiohttp.ClientError:
                retry_count += 1
                if retry_count < max_retries:
                    wait = 2 ** retry_count
                    print(
                        colored(
                            f"\n⚠️ Connection lost. Retrying in {wait}s... ({retry_count}/{max_retries})",
                            Colors.YELLOW,
                        )
                    )
                    await asyncio.sleep(wait)
                else:
                    print(colored(f"\n❌ Failed to connect after {max_retries} attempts", Colors.RED))
            except asyncio.CancelledError:
                break

        print(colored("─" * 45, Colors.DIM))
        print(colored("Monitor stopped.", Colors.DIM))

    async def _stream_events(self):
        """Stream and display events."""
        async with aiohttp.ClientSession() as session:
            async with session.get(self.stream_url) as response:
                if response.status != 200:
                    raise aiohttp.ClientError(f"Server returned {response.status}")

                event_name = ""
                async for raw in response.content:
                    if not self._running:
                        break

                    parsed = parse_sse_line(raw.decode("utf-8"))
                    if parsed is None:
                        continue

                    name, value = parsed
                    if name == "event":
                        event_name = value
                    elif name == "data":
                        try:
                            self.handle_event(event_name, json.loads(value))
                        except json.JSONDecodeError:
                            pass

    def handle_event(self, event_name: str, data: dict):
        """Handle incoming event."""
        if event_name == EVENT_PROGRESS:
            # Only redraw when progress moves or the session ends
            progress = data.get("progress", 0)
            if progress != self._last_progress or data.get("status") in ("completed", "error"):
                self._last_progress = progress
                print(format_progress(data))

        elif event_name == EVENT_MESSAGE:
            print(format_message(data))
            if data.get("type") in ("complete", "error"):
                self._running = False

        elif event_name == EVENT_CONNECTED:
            print(colored("Connected to progress stream", Colors.DIM))

    def stop(self):
        """Stop monitoring."""
        self._running = False


async def main():
    parser = argparse.ArgumentParser(
        description="Monitor generation session progress",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    %(prog)s session_123
    %(prog)s --server http://remote:8765 session_456
        """,
    )
    parser.add_argument(
        "session_id",
        help="Session ID to monitor",
    )
    parser.add_argument(
        "--server",
        default="http://localhost:8765",
        help="SSE server URL (default: http://localhost:8765)",
    )

    args = parser.parse_args()

    monitor = ProgressMonitor(
        session_id=args.session_id,
        server_url=args.server,
    )

    try:
        await monitor.start()
    except KeyboardInterrupt:
        print(colored("\n\nInterrupted by user.", Colors.YELLOW))
        monitor.stop()


if __name__ == "__main__":
    asyncio.run(main())
