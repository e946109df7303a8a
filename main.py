#!/usr/bin/env python3
"""
Stich Production - Main Entry Point

Runs realtime generation sessions with SSE progress streaming.

Usage:
    # Start server mode (SSE + API)
    python main.py server

    # Run a single generation in-process
    python main.py generate --user user-42

    # Monitor an existing session
    python main.py monitor session_123

    # Remove stale sessions from the store
    python main.py cleanup --max-age-hours 24
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("stich")


async def _open_store(config):
    """Create the configured store and connect it when it needs a database."""
    from services.realtime.postgres_store import PostgresStore
    from services.realtime.store import create_store

    store = create_store(config)
    if isinstance(store, PostgresStore):
        await store.connect()
    return store


async def start_server(host: Optional[str] = None, port: Optional[int] = None):
    """Start the SSE server for generation sessions."""
    from core.config import get_config
    from services.realtime import RealtimeService
    from services.streaming import SSEServer

    config = get_config()
    host = host or config.server.host
    port = port or config.server.port

    store = await _open_store(config)
    service = RealtimeService(store, config)
    server = SSEServer(
        service,
        host=host,
        port=port,
        heartbeat_interval=config.server.heartbeat_interval,
    )
    await server.start()

    logger.info(f"Stich server running at http://{host}:{port} ({config.store.backend} store)")
    logger.info("Press Ctrl+C to stop")

    # Keep running until interrupted
    stop_event = asyncio.Event()

    def handle_signal():
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal)

    await stop_event.wait()
    await server.stop()
    await store.close()

    logger.info("Server stopped")


async def run_generation(user_id: str) -> bool:
    """
    Run one generation session in-process and print its progress.

    Args:
        user_id: Owner of the new session

    Returns:
        True when the session completed
    """
    from core.config import get_config
    from services.realtime import GenerationStateManager, GenerationStatus, RealtimeService
    from cli.progress_monitor import format_message, format_progress

    config = get_config()
    store = await _open_store(config)
    service = RealtimeService(store, config)

    seen_messages = 0
    last_progress = None

    def print_state(state):
        nonlocal seen_messages, last_progress
        if state.progress is not None and state.progress.to_dict() != last_progress:
            last_progress = state.progress.to_dict()
            print(format_progress(last_progress))
        for message in state.messages[seen_messages:]:
            print(format_message(message.to_dict()))
        seen_messages = len(state.messages)

    try:
        async with GenerationStateManager(service) as manager:
            manager.on_change(print_state)
            session_id = await manager.start_generation(user_id)
            if session_id is None:
                logger.error(manager.state.error)
                return False

            final = await service.get_generation_status(session_id)
            logger.info(f"Session {session_id} finished with status {final.status.value if final else 'unknown'}")
            return final is not None and final.status == GenerationStatus.COMPLETED
    finally:
        await store.close()


async def monitor_session(session_id: str, server_url: str = "http://localhost:8765"):
    """Monitor an existing session's progress."""
    from cli.progress_monitor import ProgressMonitor

    monitor = ProgressMonitor(session_id=session_id, server_url=server_url)
    await monitor.start()


async def cleanup_sessions(max_age_hours: Optional[float] = None) -> int:
    """Delete sessions whose last update is older than the cutoff."""
    from core.config import get_config
    from services.realtime import RealtimeService

    config = get_config()
    store = await _open_store(config)
    try:
        service = RealtimeService(store, config)
        removed = await service.cleanup_old_sessions(max_age_hours)
    finally:
        await store.close()

    logger.info(f"Removed {removed} stale sessions")
    return removed


def main():
    parser = argparse.ArgumentParser(
        description="Stich Production - Realtime Generation Sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Start SSE server
    python main.py server

    # Run a generation and watch it locally
    python main.py generate --user user-42

    # Monitor session progress
    python main.py monitor session_1700000000000_abc123def

    # Check server status
    python main.py status
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Server command
    server_parser = subparsers.add_parser("server", help="Start SSE server")
    server_parser.add_argument("--host", help="Host to bind (default: STICH_HOST or 0.0.0.0)")
    server_parser.add_argument("--port", type=int, help="Port to bind (default: STICH_PORT or 8765)")

    # Generate command
    gen_parser = subparsers.add_parser("generate", help="Run a generation session in-process")
    gen_parser.add_argument("--user", "-u", required=True, help="User id that owns the session")

    # Monitor command
    mon_parser = subparsers.add_parser("monitor", help="Monitor session progress")
    mon_parser.add_argument("session_id", help="Session ID to monitor")
    mon_parser.add_argument(
        "--server",
        default="http://localhost:8765",
        help="SSE server URL",
    )

    # Status command
    status_parser = subparsers.add_parser("status", help="Check server status")
    status_parser.add_argument(
        "--server",
        default="http://localhost:8765",
        help="SSE server URL",
    )

    # Cleanup command
    cleanup_parser = subparsers.add_parser("cleanup", help="Delete stale sessions")
    cleanup_parser.add_argument(
        "--max-age-hours",
        type=float,
        help="Age cutoff in hours (default: GENERATION_SESSION_MAX_AGE_HOURS or 24)",
    )

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    from core.config import get_config

    errors = get_config().validate()
    if errors:
        for error in errors:
            logger.error(f"Config error: {error}")
        sys.exit(2)

    # Run appropriate command
    if args.command == "server":
        asyncio.run(start_server(host=args.host, port=args.port))

    elif args.command == "generate":
        result = asyncio.run(run_generation(args.user))
        sys.exit(0 if result else 1)

    elif args.command == "monitor":
        asyncio.run(monitor_session(args.session_id, args.server))

    elif args.command == "cleanup":
        asyncio.run(cleanup_sessions(args.max_age_hours))

    elif args.command == "status":
        import aiohttp

        async def check_status():
            async with aiohttp.ClientSession() as session:
                try:
                    async with session.get(f"{args.server}/status") as resp:
                        if resp.status == 200:
                            data = await resp.json()
                            print(f"Server: {args.server}")
                            print("Status: Online")
                            print(f"Connected clients: {data['clients']['total']}")
                            print(f"Running generations: {len(data['generations']['running'])}")
                            for sid, count in data["clients"]["by_session"].items():
                                print(f"  - {sid}: {count} clients")
                        else:
                            print(f"Server returned status {resp.status}")
                except aiohttp.ClientError as e:
                    print(f"Cannot connect to server: {e}")
                    sys.exit(1)

        asyncio.run(check_status())


if __name__ == "__main__":
    main()
