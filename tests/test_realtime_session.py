"""Tests for RealtimeSession using an in-memory WebSocket."""

from __future__ import annotations

import asyncio
import json
import random
from unittest.mock import AsyncMock

import pytest

from async_genai.backoff import BackoffPolicy
from async_genai.exceptions import (
    APIError,
    ConnectionDroppedError,
    NotConnectedError,
    RequestTimeoutError,
    RetriesExhaustedError,
    SessionClosedError,
    TransientError,
)
from async_genai.realtime.session import RealtimeSession
from async_genai.realtime.transport import TransportClosed
from async_genai.types import SessionState


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeConnection:
    """WebSocket stand-in: tests push inbound frames, outbound ones are recorded."""

    def __init__(self):
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []
        self.closed = False
        self.on_send = None

    def push(self, message) -> None:
        if not isinstance(message, (str, bytes, Exception)):
            message = json.dumps(message)
        self.inbound.put_nowait(message)

    async def send(self, data: str) -> None:
        if self.closed:
            raise TransportClosed(code=1006, clean=False)
        message = json.loads(data)
        self.sent.append(message)
        if self.on_send is not None:
            self.on_send(self, message)

    async def recv(self):
        item = await self.inbound.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


class FakeConnector:
    """Hands out the given connections (or raises the given errors) in order."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls: list[tuple[str, dict]] = []

    async def __call__(self, url, headers):
        self.calls.append((url, dict(headers)))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _session(connector, **kwargs) -> RealtimeSession:
    policy = BackoffPolicy(
        base_delay=0.01, jitter=0.0, max_attempts=kwargs.pop("max_attempts", 2),
        max_elapsed=60.0, rng=random.Random(0),
    )
    kwargs.setdefault("sleep", AsyncMock())
    return RealtimeSession("wss://test/realtime", connector=connector, policy=policy, **kwargs)


async def _until(predicate, timeout: float = 1.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_connect_and_close(self):
        conn = FakeConnection()
        connector = FakeConnector(conn)
        session = _session(connector)
        assert session.state is SessionState.DISCONNECTED

        await session.connect("sk-test")
        assert session.state is SessionState.OPEN
        assert connector.calls[0][1]["Authorization"] == "Bearer sk-test"

        await session.close()
        assert session.state is SessionState.CLOSED
        assert conn.closed

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        session = _session(FakeConnector(FakeConnection()))
        await session.connect()
        await session.close()
        await session.close()
        assert session.state is SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_connect_after_close(self):
        session = _session(FakeConnector(FakeConnection()))
        await session.connect()
        await session.close()
        with pytest.raises(SessionClosedError):
            await session.connect()

    @pytest.mark.asyncio
    async def test_connect_retries_transient_failure(self):
        sleep = AsyncMock()
        connector = FakeConnector(TransientError("HTTP 503", status_code=503), FakeConnection())
        session = _session(connector, sleep=sleep)
        await session.connect()
        assert session.is_open
        assert len(connector.calls) == 2
        sleep.assert_awaited_once()
        await session.close()

    @pytest.mark.asyncio
    async def test_connect_gives_up(self):
        connector = FakeConnector(TransientError("down"), TransientError("down"))
        session = _session(connector, max_attempts=1)
        with pytest.raises(RetriesExhaustedError):
            await session.connect()
        assert session.state is SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_close_during_connect_stays_closed(self):
        gate = asyncio.Event()
        conn = FakeConnection()

        async def slow_connector(url, headers):
            await gate.wait()
            return conn

        session = _session(slow_connector)
        task = asyncio.create_task(session.connect())
        await _until(lambda: session.state is SessionState.CONNECTING)

        await session.close()
        assert session.state is SessionState.CLOSED
        gate.set()

        with pytest.raises(SessionClosedError):
            await task
        assert session.state is SessionState.CLOSED
        assert conn.closed
        with pytest.raises(NotConnectedError):
            await session.send({"type": "x"})

    @pytest.mark.asyncio
    async def test_context_manager(self):
        conn = FakeConnection()
        async with _session(FakeConnector(conn)) as session:
            assert session.is_open
        assert session.state is SessionState.CLOSED


# ---------------------------------------------------------------------------
# Messaging
# ---------------------------------------------------------------------------

class TestMessaging:
    @pytest.mark.asyncio
    async def test_send_before_connect(self):
        session = _session(FakeConnector())
        with pytest.raises(NotConnectedError):
            await session.send({"type": "x"})
        with pytest.raises(NotConnectedError):
            await session.receive()

    @pytest.mark.asyncio
    async def test_send_requires_type(self):
        async with _session(FakeConnector(FakeConnection())) as session:
            with pytest.raises(ValueError):
                await session.send({"payload": 1})

    @pytest.mark.asyncio
    async def test_sends_in_call_order(self):
        conn = FakeConnection()
        async with _session(FakeConnector(conn)) as session:
            await asyncio.gather(*(session.send({"type": "append", "n": i}) for i in range(5)))
        assert [m["n"] for m in conn.sent] == [0, 1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_receive_in_arrival_order(self):
        conn = FakeConnection()
        async with _session(FakeConnector(conn)) as session:
            conn.push({"type": "a"})
            conn.push(b'{"type": "b"}')
            conn.push({"type": "c"})
            received = [(await session.receive(timeout=1)).type for _ in range(3)]
        assert received == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_request_matches_correlation_id(self):
        conn = FakeConnection()

        def respond(c, message):
            c.push({"type": "server.note"})
            c.push({"type": "session.updated", "request_id": message["request_id"]})

        conn.on_send = respond
        async with _session(FakeConnector(conn)) as session:
            reply = await session.request({"type": "session.update"}, timeout=1)
            assert reply.type == "session.updated"
            assert reply.correlation_id == "req_1"
            assert conn.sent[0]["request_id"] == "req_1"
            note = await session.receive(timeout=1)
            assert note.type == "server.note"
            assert session.pending_count == 0

    @pytest.mark.asyncio
    async def test_request_error_reply(self):
        conn = FakeConnection()
        conn.on_send = lambda c, m: c.push(
            {"type": "error", "error": {"message": "bad voice", "code": "invalid", "request_id": m["request_id"]}},
        )
        async with _session(FakeConnector(conn)) as session:
            with pytest.raises(APIError, match="bad voice"):
                await session.request({"type": "session.update"}, timeout=1)

    @pytest.mark.asyncio
    async def test_request_timeout(self):
        async with _session(FakeConnector(FakeConnection())) as session:
            with pytest.raises(RequestTimeoutError):
                await session.request({"type": "session.update"}, timeout=0.02)
            assert session.pending_count == 0

    @pytest.mark.asyncio
    async def test_full_queue_does_not_block_replies(self):
        conn = FakeConnection()

        def respond(c, message):
            if "request_id" not in message:
                return
            c.push({"type": "note", "n": 1})
            c.push({"type": "note", "n": 2})
            c.push({"type": "ping", "id": "p1"})
            c.push({"type": "session.updated", "request_id": message["request_id"]})

        conn.on_send = respond
        async with _session(FakeConnector(conn), queue_size=1) as session:
            reply = await session.request({"type": "session.update"}, timeout=1)
            assert reply.type == "session.updated"
            await _until(lambda: {"type": "pong", "id": "p1"} in conn.sent)

            # Oldest unsolicited event was dropped to make room.
            event = await session.receive(timeout=1)
            assert event.data["n"] == 2

    @pytest.mark.asyncio
    async def test_ping_answered_with_pong(self):
        conn = FakeConnection()
        async with _session(FakeConnector(conn)) as session:
            conn.push({"type": "ping", "id": "p1"})
            conn.push({"type": "after"})
            event = await session.receive(timeout=1)
            assert event.type == "after"
        assert {"type": "pong", "id": "p1"} in conn.sent

    @pytest.mark.asyncio
    async def test_malformed_frame_surfaces_protocol_error(self):
        conn = FakeConnection()
        async with _session(FakeConnector(conn)) as session:
            conn.push("{not json")
            conn.push({"no_type": True})
            first = await session.receive(timeout=1)
            second = await session.receive(timeout=1)
        assert first.is_error and first.data["error"]["type"] == "protocol_error"
        assert second.is_error and second.data["error"]["type"] == "protocol_error"


# ---------------------------------------------------------------------------
# Drops and shutdown
# ---------------------------------------------------------------------------

class TestDrops:
    @pytest.mark.asyncio
    async def test_reconnects_after_drop(self):
        first, second = FakeConnection(), FakeConnection()
        connector = FakeConnector(first, second)
        async with _session(connector) as session:
            first.push(TransportClosed(code=1006, clean=False))
            await _until(lambda: len(connector.calls) == 2 and session.is_open)
            assert first.closed

            second.push({"type": "hello.again"})
            event = await session.receive(timeout=1)
            assert event.type == "hello.again"

    @pytest.mark.asyncio
    async def test_pending_request_fails_on_drop(self):
        first, second = FakeConnection(), FakeConnection()
        first.on_send = lambda c, m: c.push(TransportClosed(code=1006, clean=False))
        connector = FakeConnector(first, second)
        async with _session(connector) as session:
            with pytest.raises(ConnectionDroppedError):
                await session.request({"type": "response.create"}, timeout=1)
            await _until(lambda: session.is_open and len(connector.calls) == 2)

    @pytest.mark.asyncio
    async def test_idle_timeout_counts_as_drop(self):
        first, second = FakeConnection(), FakeConnection()
        connector = FakeConnector(first, second)
        session = _session(connector, idle_timeout=0.02)
        await session.connect()
        await _until(lambda: len(connector.calls) == 2 and session.is_open)
        await session.close()

    @pytest.mark.asyncio
    async def test_drop_without_reconnect_closes(self):
        conn = FakeConnection()
        session = _session(FakeConnector(conn), reconnect=False)
        await session.connect()
        conn.push(TransportClosed(code=1006, clean=False))

        event = await session.receive(timeout=1)
        assert event.is_error
        assert event.data["error"]["type"] == "connection_lost"
        with pytest.raises(SessionClosedError):
            await session.receive(timeout=1)
        assert session.state is SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_clean_close_by_peer(self):
        conn = FakeConnection()
        session = _session(FakeConnector(conn))
        await session.connect()
        conn.push({"type": "last"})
        conn.push(TransportClosed(code=1000, reason="bye", clean=True))

        received = [event.type async for event in session]
        assert received == ["last"]
        assert session.state is SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_close_fails_pending_requests(self):
        session = _session(FakeConnector(FakeConnection()))
        await session.connect()
        task = asyncio.create_task(session.request({"type": "response.create"}, timeout=5))
        await _until(lambda: session.pending_count == 1)
        await session.close()
        with pytest.raises(SessionClosedError):
            await task
        with pytest.raises(NotConnectedError):
            await session.send({"type": "x"})
