"""
SSE Server Tests

Drives the aiohttp application in-process with aiohttp's test client.

Run with:
    python -m pytest tests/test_sse_server.py -v
"""

import json
from contextlib import asynccontextmanager

import pytest
from aiohttp.test_utils import TestClient, TestServer

from services.realtime import RealtimeService
from services.streaming import SSEEvent, SSEServer, parse_sse_line
from services.streaming.events import EVENT_MESSAGE, EVENT_PROGRESS
from services.realtime.models import GenerationProgress, MessageType, StreamMessage


@asynccontextmanager
async def serving(server: SSEServer):
    client = TestClient(TestServer(server.build_app()))
    await client.start_server()
    try:
        yield client
    finally:
        await client.close()


async def finish(server: SSEServer, session_id: str):
    task = server._running_tasks.get(session_id)
    if task is not None:
        await task


def parse_stream(body: str) -> list[tuple[str, dict]]:
    """Collect (event, data) pairs from a raw SSE body."""
    events = []
    event_name = ""
    for line in body.splitlines():
        parsed = parse_sse_line(line)
        if parsed is None:
            continue
        name, value = parsed
        if name == "event":
            event_name = value
        elif name == "data":
            events.append((event_name, json.loads(value)))
    return events


class TestEvents:
    """SSE framing helpers."""

    def test_progress_event_frame(self):
        event = SSEEvent.from_progress(GenerationProgress(session_id="s1", progress=10))
        frame = event.to_sse()

        assert frame.startswith(f"id: {event.event_id}\n")
        assert "event: progress\n" in frame
        assert frame.endswith("\n\n")
        assert not event.is_terminal

    def test_terminal_messages(self):
        complete = SSEEvent.from_message(StreamMessage(MessageType.COMPLETE, {}))
        error = SSEEvent.from_message(StreamMessage(MessageType.ERROR, {"error": "x"}))
        file = SSEEvent.from_message(StreamMessage(MessageType.FILE, {}))

        assert complete.is_terminal
        assert error.is_terminal
        assert not file.is_terminal

    def test_parse_sse_line(self):
        assert parse_sse_line("event: progress\n") == ("event", "progress")
        assert parse_sse_line('data: {"a": 1}') == ("data", '{"a": 1}')
        assert parse_sse_line(": heartbeat") is None
        assert parse_sse_line("") is None


class TestGenerationEndpoints:
    """Start, inspect and cancel sessions over HTTP."""

    @pytest.mark.asyncio
    async def test_health(self, service):
        async with serving(SSEServer(service)) as client:
            resp = await client.get("/health")
            assert resp.status == 200
            data = await resp.json()
            assert data["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_start_generation_runs_to_completion(self, service):
        server = SSEServer(service)
        async with serving(server) as client:
            resp = await client.post("/generations", json={"user_id": "user-42"})
            assert resp.status == 201
            body = await resp.json()
            session_id = body["session_id"]
            assert session_id.startswith("session_")
            assert body["stream_url"] == f"/stream/{session_id}"

            await finish(server, session_id)

            resp = await client.get(f"/generations/{session_id}")
            assert resp.status == 200
            record = await resp.json()
            assert record["status"] == "completed"
            assert record["progress"] == 100

    @pytest.mark.asyncio
    async def test_start_generation_validation(self, service):
        async with serving(SSEServer(service)) as client:
            resp = await client.post("/generations", json={})
            assert resp.status == 400
            assert (await resp.json())["error"]["code"] == "VALIDATION_ERROR"

            resp = await client.post("/generations", json={"user_id": ""})
            assert resp.status == 400

            resp = await client.post("/generations", data="not json")
            assert resp.status == 400
            assert (await resp.json())["error"]["code"] == "INVALID_JSON"

    @pytest.mark.asyncio
    async def test_duplicate_and_cancel(self, store, config_factory):
        service = RealtimeService(store, config_factory(analyze_delay=30.0))
        server = SSEServer(service)
        async with serving(server) as client:
            resp = await client.post("/generations", json={"user_id": "user-42", "session_id": "s1"})
            assert resp.status == 201

            resp = await client.post("/generations", json={"user_id": "user-42", "session_id": "s1"})
            assert resp.status == 409

            # Let the background task register its cancel token
            while not service.is_running("s1"):
                await client.get("/health")

            resp = await client.post("/generations/s1/cancel")
            assert resp.status == 202
            await finish(server, "s1")

            record = await (await client.get("/generations/s1")).json()
            assert record["status"] == "error"
            assert record["error"] == "Generation cancelled"

            resp = await client.post("/generations/s1/cancel")
            assert resp.status == 409

    @pytest.mark.asyncio
    async def test_unknown_session(self, service):
        async with serving(SSEServer(service)) as client:
            assert (await client.get("/generations/nope")).status == 404
            assert (await client.post("/generations/nope/cancel")).status == 404

    @pytest.mark.asyncio
    async def test_message_paging(self, service):
        await service.stream_generation("s1", "user-42")

        async with serving(SSEServer(service)) as client:
            resp = await client.get("/generations/s1/messages?limit=2")
            assert resp.status == 200
            body = await resp.json()
            assert body["total"] == 6
            assert [m["type"] for m in body["messages"]] == ["complete", "progress"]

            resp = await client.get("/generations/s1/messages?limit=0")
            assert resp.status == 400

            resp = await client.get("/generations/s1/messages?offset=abc")
            assert resp.status == 400


class TestStream:
    """The per-session SSE stream."""

    @pytest.mark.asyncio
    async def test_stream_replays_finished_session(self, service):
        await service.stream_generation("s1", "user-42")
        server = SSEServer(service)

        async with serving(server) as client:
            resp = await client.get("/stream/s1")
            assert resp.status == 200
            assert resp.headers["Content-Type"].startswith("text/event-stream")

            events = parse_stream(await resp.text())

        names = [name for name, _ in events]
        assert names[0] == "connected"
        assert EVENT_PROGRESS in names

        messages = [data for name, data in events if name == EVENT_MESSAGE]
        assert [m["type"] for m in messages] == [
            "progress", "progress", "file", "file", "progress", "complete",
        ]
        assert server.get_client_count() == 0

    @pytest.mark.asyncio
    async def test_stream_releases_listeners(self, service):
        await service.stream_generation("s1", "user-42")

        async with serving(SSEServer(service)) as client:
            resp = await client.get("/stream/s1")
            await resp.text()

            assert service.listener_count == 0
