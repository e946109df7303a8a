"""
SSE Server for Realtime Generation Sessions

Exposes the RealtimeService over HTTP and Server-Sent Events.

Features:
- Start generation sessions in the background
- One stream per session with message replay for late-joining clients
- Cancellation of running sessions
- Heartbeat to keep connections alive
- JSON-formatted events for easy parsing

Usage:
    service = RealtimeService(MemoryStore())
    server = SSEServer(service, host="0.0.0.0", port=8765)
    await server.start()

    # From CLI
    curl -X POST http://localhost:8765/generations -d '{"user_id": "user-42"}'
    curl -N http://localhost:8765/stream/{session_id}
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from uuid import uuid4

from aiohttp import web
from pydantic import BaseModel, Field, ValidationError

from services.realtime.models import new_session_id
from services.realtime.service import RealtimeService

from .events import EVENT_CONNECTED, SSEEvent

logger = logging.getLogger(__name__)


class StartGenerationRequest(BaseModel):
    """Body of POST /generations."""
    user_id: str = Field(min_length=1)
    session_id: Optional[str] = Field(default=None, min_length=1)


@dataclass
class SSEClient:
    """Represents a connected SSE client."""

    client_id: str = field(default_factory=lambda: str(uuid4()))
    session_id: str = ""
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    connected_at: datetime = field(default_factory=datetime.utcnow)
    user_agent: str = ""


def _error(status: int, code: str, message: str, details=None) -> web.Response:
    body = {"error": {"code": code, "message": message}}
    if details is not None:
        body["error"]["details"] = details
    return web.json_response(body, status=status)


class SSEServer:
    """
    HTTP + SSE front for generation sessions.

    Usage:
        server = SSEServer(service)
        await server.start()
        ...
        await server.stop()

    ``build_app()`` returns the aiohttp application without binding a port.
    """

    def __init__(
        self,
        service: RealtimeService,
        host: str = "0.0.0.0",
        port: int = 8765,
        heartbeat_interval: int = 30,
    ):
        self.service = service
        self.host = host
        self.port = port
        self.heartbeat_interval = heartbeat_interval

        # Client tracking
        self._clients: dict[str, SSEClient] = {}  # client_id -> client
        self._session_clients: dict[str, set[str]] = {}  # session_id -> client_ids

        # Background generations
        self._running_tasks: dict[str, asyncio.Task] = {}

        self._app: Optional[web.Application] = None
        self._runner: Optional[web.AppRunner] = None
        self._started_at: Optional[datetime] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self._handle_index)
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/status", self._handle_status)
        app.router.add_post("/generations", self._handle_start_generation)
        app.router.add_get("/generations/{session_id}", self._handle_get_generation)
        app.router.add_get("/generations/{session_id}/messages", self._handle_get_messages)
        app.router.add_post("/generations/{session_id}/cancel", self._handle_cancel)
        app.router.add_get("/stream/{session_id}", self._handle_stream)
        app.on_shutdown.append(self._on_shutdown)
        self._app = app
        return app

    async def start(self):
        """Start the SSE server."""
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        self._started_at = datetime.utcnow()

        logger.info(f"SSE server started at http://{self.host}:{self.port}")

    async def stop(self):
        """Stop the SSE server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        logger.info("SSE server stopped")

    async def _on_shutdown(self, app: web.Application):
        # Wake every stream so its handler can return
        for client in list(self._clients.values()):
            client.queue.put_nowait(None)

        for task in list(self._running_tasks.values()):
            task.cancel()
        if self._running_tasks:
            await asyncio.gather(*self._running_tasks.values(), return_exceptions=True)

        self.service.disconnect_all()

    async def _handle_index(self, request: web.Request) -> web.Response:
        """Handle index route - show usage info."""
        return web.Response(
            text="""
Stich Realtime Generation Server

Endpoints:
  POST /generations                      - Start a generation session
  GET  /generations/{session_id}         - Current session record
  GET  /generations/{session_id}/messages - Message log (?limit=50&offset=0)
  POST /generations/{session_id}/cancel  - Cancel a running session
  GET  /stream/{session_id}              - SSE stream of progress and messages
  GET  /status                           - Server status and connected clients
  GET  /health                           - Health check

Start Generation:
  curl -X POST http://localhost:8765/generations \\
    -H "Content-Type: application/json" \\
    -d '{"user_id": "user-42"}'

Monitor Progress:
  curl -N http://localhost:8765/stream/{session_id}
            """,
            content_type="text/plain",
        )

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Health check endpoint."""
        return web.json_response({
            "status": "healthy",
            "service": "realtime",
            "connected_clients": len(self._clients),
            "running_generations": len(self._running_tasks),
            "timestamp": datetime.utcnow().isoformat(),
        })

    async def _handle_status(self, request: web.Request) -> web.Response:
        """Server status endpoint."""
        uptime = (datetime.utcnow() - self._started_at).total_seconds() if self._started_at else 0
        return web.json_response({
            "server": {
                "host": self.host,
                "port": self.port,
                "uptime_seconds": round(uptime, 1),
            },
            "clients": {
                "total": len(self._clients),
                "by_session": {
                    sid: len(clients)
                    for sid, clients in self._session_clients.items()
                },
            },
            "generations": {
                "running": sorted(self._running_tasks),
                "listeners": self.service.listener_count,
            },
        })

    async def _handle_start_generation(self, request: web.Request) -> web.Response:
        """Start a generation session in the background."""
        try:
            body = await request.json()
        except Exception:
            return _error(400, "INVALID_JSON", "Invalid JSON body")

        try:
            payload = StartGenerationRequest.model_validate(body)
        except ValidationError as e:
            return _error(
                400,
                "VALIDATION_ERROR",
                "Validation failed",
                e.errors(include_url=False, include_context=False),
            )

        session_id = payload.session_id or new_session_id()
        if session_id in self._running_tasks:
            return _error(409, "ALREADY_RUNNING", f"Session {session_id} is already generating")

        task = asyncio.create_task(self._run_generation(session_id, payload.user_id))
        self._running_tasks[session_id] = task

        logger.info(f"Starting generation {session_id} for user {payload.user_id}")

        return web.json_response({
            "session_id": session_id,
            "status": "started",
            "stream_url": f"/stream/{session_id}",
            "status_url": f"/generations/{session_id}",
        }, status=201)

    async def _run_generation(self, session_id: str, user_id: str):
        """Run one generation script in the background."""
        try:
            await self.service.stream_generation(session_id, user_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Store failures before the script starts are the only ones that reach here
            logger.exception(f"Generation {session_id} could not run: {e}")
        finally:
            self._running_tasks.pop(session_id, None)

    async def _handle_get_generation(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        progress = await self.service.get_generation_status(session_id)
        if progress is None:
            return _error(404, "NOT_FOUND", "Session not found")
        return web.json_response(progress.to_dict())

    async def _handle_get_messages(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]
        try:
            limit = int(request.query.get("limit", "50"))
            offset = int(request.query.get("offset", "0"))
        except ValueError:
            return _error(400, "VALIDATION_ERROR", "limit and offset must be integers")
        if limit < 1 or offset < 0:
            return _error(400, "VALIDATION_ERROR", "limit must be positive and offset not negative")

        messages, total = await self.service.get_messages(session_id, limit=limit, offset=offset)
        return web.json_response({
            "session_id": session_id,
            "messages": [m.to_dict() for m in messages],
            "total": total,
        })

    async def _handle_cancel(self, request: web.Request) -> web.Response:
        session_id = request.match_info["session_id"]

        if self.service.cancel_generation(session_id):
            return web.json_response({"session_id": session_id, "status": "cancelling"}, status=202)

        if await self.service.get_generation_status(session_id) is None:
            return _error(404, "NOT_FOUND", "Session not found")
        return _error(409, "NOT_RUNNING", f"Session {session_id} is not generating")

    async def _handle_stream(self, request: web.Request) -> web.StreamResponse:
        """Handle SSE stream connection."""
        session_id = request.match_info["session_id"]

        client = SSEClient(
            session_id=session_id,
            user_agent=request.headers.get("User-Agent", ""),
        )

        # Register client
        self._clients[client.client_id] = client
        self._session_clients.setdefault(session_id, set()).add(client.client_id)

        logger.info(f"Client {client.client_id} connected for session {session_id}")

        response = web.StreamResponse(
            status=200,
            reason="OK",
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",  # Disable nginx buffering
            },
        )
        await response.prepare(request)

        # Every logged message is replayed to new clients, then streamed live
        unsubscribers = [
            self.service.subscribe_to_generation(
                session_id, lambda p: client.queue.put_nowait(SSEEvent.from_progress(p))
            ),
            self.service.subscribe_to_messages(
                session_id, lambda m: client.queue.put_nowait(SSEEvent.from_message(m)), delivery="all"
            ),
        ]

        try:
            connect_event = SSEEvent(
                event=EVENT_CONNECTED,
                data={"client_id": client.client_id, "session_id": session_id},
            )
            await response.write(connect_event.to_sse().encode())

            while True:
                try:
                    event = await asyncio.wait_for(
                        client.queue.get(),
                        timeout=self.heartbeat_interval,
                    )
                except asyncio.TimeoutError:
                    await response.write(b": heartbeat\n\n")
                    continue

                # Disconnect signal
                if event is None:
                    break

                await response.write(event.to_sse().encode())
                if event.is_terminal:
                    break

        except (ConnectionResetError, asyncio.CancelledError):
            pass
        finally:
            for unsubscribe in unsubscribers:
                unsubscribe()
            self._disconnect_client(client.client_id)

        return response

    def _disconnect_client(self, client_id: str):
        """Disconnect and cleanup client."""
        client = self._clients.pop(client_id, None)
        if client:
            session_id = client.session_id
            if session_id in self._session_clients:
                self._session_clients[session_id].discard(client_id)
                if not self._session_clients[session_id]:
                    del self._session_clients[session_id]

            logger.info(f"Client {client_id} disconnected")

    def get_client_count(self, session_id: Optional[str] = None) -> int:
        """Get number of connected clients."""
        if session_id:
            return len(self._session_clients.get(session_id, set()))
        return len(self._clients)
