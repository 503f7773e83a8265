"""Realtime WebSocket session.

State machine::

    DISCONNECTED -> CONNECTING -> OPEN -> CLOSING -> CLOSED
                                  OPEN -> RECONNECTING -> OPEN   (transient drop, reconnect on)
                                  OPEN -> CLOSED                 (drop, reconnect off)

One reader task owns the inbound side of the connection.  It routes each
frame either to the pending :meth:`RealtimeSession.request` waiting on the
frame's correlation id, or to the general event queue read by
:meth:`RealtimeSession.receive`.  Outbound frames are written under a lock,
one whole frame at a time, in call order.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping

from async_genai.backoff import BackoffPolicy, Continue
from async_genai.exceptions import (
    APIError,
    ConnectionDroppedError,
    GenAIError,
    NotConnectedError,
    RequestTimeoutError,
    RetriesExhaustedError,
    SessionClosedError,
    TransientError,
)
from async_genai.realtime.transport import (
    TransportClosed,
    WebSocketConnection,
    WebSocketConnector,
    WebsocketsConnector,
)
from async_genai.types import ErrorKind, RealtimeEvent, SessionState

_logger = logging.getLogger(__name__)

# Marks the end of the event queue.
_CLOSED = object()

SleepFn = Callable[[float], Awaitable[Any]]


def _error_event(error_type: str, message: str) -> RealtimeEvent:
    data = {"type": "error", "error": {"type": error_type, "message": message}}
    return RealtimeEvent(type="error", data=data)


class RealtimeSession:
    """Persistent bidirectional session over a WebSocket.

    Parameters
    ----------
    url:
        Realtime endpoint (``wss://...``).
    connector:
        Opens the transport; defaults to :class:`WebsocketsConnector`.
    policy:
        Backoff policy for connect and reconnect attempts.
    idle_timeout:
        Seconds without any inbound frame before the connection is
        considered dropped.
    reconnect:
        Reconnect transparently after a transient drop.
    correlation_key:
        Field that carries the correlation id in outbound requests and
        their inbound responses.
    queue_size:
        Bound on buffered unsolicited events (0 = unbounded).  When the
        bound is hit the oldest buffered event is dropped; correlated
        replies never pass through this queue.
    headers:
        Extra handshake headers.
    """

    def __init__(
        self,
        url: str,
        *,
        connector: WebSocketConnector | None = None,
        policy: BackoffPolicy | None = None,
        idle_timeout: float = 60.0,
        reconnect: bool = True,
        correlation_key: str = "request_id",
        queue_size: int = 0,
        headers: Mapping[str, str] | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.url = url
        self.idle_timeout = idle_timeout
        self.reconnect = reconnect
        self.correlation_key = correlation_key
        self._connector = connector or WebsocketsConnector()
        self._policy = policy or BackoffPolicy()
        self._extra_headers = dict(headers or {})
        self._sleep = sleep

        self._state = SessionState.DISCONNECTED
        self._conn: WebSocketConnection | None = None
        self._handshake_headers: dict[str, str] = {}
        self._reader: asyncio.Task[None] | None = None
        self._events: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size)
        self._pending: dict[str, asyncio.Future[RealtimeEvent]] = {}
        self._send_lock = asyncio.Lock()
        self._sequence = 0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is SessionState.OPEN

    @property
    def sequence(self) -> int:
        """Last correlation sequence number issued."""
        return self._sequence

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self, auth: str | Mapping[str, str] | None = None) -> None:
        """Open the connection and start the reader.

        *auth* is a bearer token or a mapping of handshake headers.
        """
        if self._state is SessionState.OPEN:
            return
        if self._state in (SessionState.CLOSING, SessionState.CLOSED):
            raise SessionClosedError("session is closed; create a new one")
        if self._state is not SessionState.DISCONNECTED:
            raise NotConnectedError(f"connect() while {self._state.value}")

        headers = dict(self._extra_headers)
        if isinstance(auth, str):
            headers["Authorization"] = f"Bearer {auth}"
        elif auth:
            headers.update(auth)
        self._handshake_headers = headers

        self._set_state(SessionState.CONNECTING)
        try:
            conn = await self._open()
        except BaseException:
            if self._state is SessionState.CONNECTING:
                self._set_state(SessionState.DISCONNECTED)
            raise
        self._conn = conn
        if self._state is not SessionState.CONNECTING:
            # close() ran while the handshake was in flight.
            await self._close_transport()
            raise SessionClosedError("session closed while connecting")
        self._set_state(SessionState.OPEN)
        self._reader = asyncio.create_task(self._read_loop(), name=f"realtime-reader:{self.url}")

    async def close(self) -> None:
        """Close the session.  Idempotent; safe from any state."""
        if self._state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        self._set_state(SessionState.CLOSING)

        reader, self._reader = self._reader, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.wait([reader])

        await self._close_transport()
        self._fail_pending(SessionClosedError("session closed"))
        self._mark_closed()

    async def __aenter__(self) -> RealtimeSession:
        if self._state is SessionState.DISCONNECTED:
            await self.connect()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, message: Mapping[str, Any]) -> None:
        """Send one JSON message.  Requires an open session."""
        if self._state is not SessionState.OPEN:
            raise NotConnectedError(f"cannot send while {self._state.value}")
        if "type" not in message:
            raise ValueError("realtime messages need a 'type' field")
        await self._write(json.dumps(message, separators=(",", ":")))

    async def request(
        self,
        message: Mapping[str, Any],
        timeout: float | None = None,
    ) -> RealtimeEvent:
        """Send *message* and wait for the inbound frame that answers it.

        The message is stamped with a fresh correlation id under
        ``correlation_key``.  An ``error`` reply raises :class:`APIError`.
        """
        if self._state is not SessionState.OPEN:
            raise NotConnectedError(f"cannot send while {self._state.value}")

        self._sequence += 1
        cid = f"req_{self._sequence}"
        outbound = dict(message)
        outbound[self.correlation_key] = cid

        future: asyncio.Future[RealtimeEvent] = asyncio.get_running_loop().create_future()
        self._pending[cid] = future
        try:
            await self.send(outbound)
            event = await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(f"no response to {cid} within {timeout}s") from None
        finally:
            self._pending.pop(cid, None)

        if event.is_error:
            raise APIError.from_body(None, event.data, fallback=f"request {cid} failed")
        return event

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def receive(self, timeout: float | None = None) -> RealtimeEvent:
        """Return the next unsolicited inbound event, in arrival order."""
        if self._state is SessionState.DISCONNECTED:
            raise NotConnectedError("session is not connected")
        if self._state is SessionState.CLOSED and self._events.empty():
            raise SessionClosedError("session closed")

        try:
            item = await asyncio.wait_for(self._events.get(), timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(f"no event within {timeout}s") from None

        if item is _CLOSED:
            # Leave the marker for any other waiting receiver.
            self._events.put_nowait(_CLOSED)
            raise SessionClosedError("session closed")
        return item

    def __aiter__(self) -> AsyncIterator[RealtimeEvent]:
        return self

    async def __anext__(self) -> RealtimeEvent:
        try:
            return await self.receive()
        except SessionClosedError:
            raise StopAsyncIteration from None

    # ------------------------------------------------------------------
    # Internals: connection management
    # ------------------------------------------------------------------

    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            _logger.debug("Realtime session %s: %s -> %s", self.url, self._state.value, state.value)
            self._state = state

    async def _open(self) -> WebSocketConnection:
        """Open the transport, retrying transient failures."""
        backoff = self._policy.start()
        while True:
            try:
                return await self._connector(self.url, self._handshake_headers)
            except (TransientError, OSError) as e:
                decision = self._policy.next(backoff, ErrorKind.TRANSIENT)
                if not isinstance(decision, Continue):
                    raise RetriesExhaustedError(
                        f"cannot connect to {self.url}: {decision.reason}",
                        attempts=decision.state.attempt + 1,
                        last_error=e,
                    ) from e
                backoff = decision.state
                _logger.warning(
                    "Realtime connect failed (attempt %d/%d): %s, retrying in %.2fs",
                    backoff.attempt, backoff.max_attempts, e, decision.delay,
                )
                await self._sleep(decision.delay)

    async def _close_transport(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            await conn.close()
        except (TransportClosed, OSError) as e:
            _logger.debug("Error while closing transport: %s", e)

    def _fail_pending(self, error: GenAIError) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    def _mark_closed(self) -> None:
        self._set_state(SessionState.CLOSED)
        try:
            self._events.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            pass  # receivers see CLOSED once they drain the queue

    async def _write(self, payload: str) -> None:
        async with self._send_lock:
            conn = self._conn
            if conn is None or self._state is not SessionState.OPEN:
                raise NotConnectedError(f"cannot send while {self._state.value}")
            try:
                await conn.send(payload)
            except TransportClosed as e:
                raise ConnectionDroppedError(f"connection lost while sending: {e}") from e

    # ------------------------------------------------------------------
    # Internals: reader task
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        try:
            while True:
                conn = self._conn
                if conn is None:
                    return
                try:
                    raw = await asyncio.wait_for(conn.recv(), self.idle_timeout)
                except asyncio.TimeoutError:
                    reason = f"no activity for {self.idle_timeout}s"
                except TransportClosed as e:
                    if self._state in (SessionState.CLOSING, SessionState.CLOSED):
                        return
                    if e.clean:
                        _logger.info("Realtime session closed by peer: %s", e)
                        await self._shutdown(None)
                        return
                    reason = str(e)
                else:
                    await self._dispatch(raw)
                    continue

                if not await self._recover(reason):
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            _logger.exception("Realtime reader failed")
            await self._shutdown(_error_event("internal_error", str(e)))

    async def _recover(self, reason: str) -> bool:
        """Handle a transient drop.  Returns True when the session is open again."""
        _logger.warning("Realtime connection dropped: %s", reason)
        self._fail_pending(ConnectionDroppedError(f"connection dropped: {reason}"))
        await self._close_transport()

        if not self.reconnect:
            await self._shutdown(_error_event("connection_lost", reason))
            return False

        self._set_state(SessionState.RECONNECTING)
        try:
            self._conn = await self._open()
        except GenAIError as e:
            _logger.error("Realtime reconnect failed: %s", e)
            await self._shutdown(_error_event("connection_lost", str(e)))
            return False
        _logger.info("Realtime session reconnected to %s", self.url)
        self._set_state(SessionState.OPEN)
        return True

    async def _shutdown(self, final_event: RealtimeEvent | None) -> None:
        """Close from inside the reader task."""
        self._reader = None
        self._set_state(SessionState.CLOSING)
        await self._close_transport()
        self._fail_pending(SessionClosedError("session closed"))
        if final_event is not None:
            self._enqueue(final_event)
        self._mark_closed()

    def _enqueue(self, event: RealtimeEvent) -> None:
        """Queue an unsolicited event without blocking the reader.

        A full queue loses its oldest event.
        """
        if self._events.full():
            dropped = self._events.get_nowait()
            _logger.warning(
                "Event queue full (%d); dropping oldest %s event",
                self._events.maxsize, getattr(dropped, "type", "?"),
            )
        self._events.put_nowait(event)

    async def _dispatch(self, raw: str | bytes) -> None:
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                self._enqueue(_error_event("protocol_error", f"binary frame is not UTF-8: {e}"))
                return
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            self._enqueue(_error_event("protocol_error", f"malformed frame: {e}"))
            return
        if not isinstance(data, dict) or not isinstance(data.get("type"), str):
            self._enqueue(_error_event("protocol_error", "frame has no 'type' field"))
            return

        if data["type"] == "ping":
            await self._answer_ping(data)
            return

        cid = data.get(self.correlation_key)
        if cid is None and data["type"] == "error" and isinstance(data.get("error"), dict):
            cid = data["error"].get(self.correlation_key)
        event = RealtimeEvent(
            type=data["type"],
            data=data,
            correlation_id=None if cid is None else str(cid),
        )

        if event.correlation_id is not None:
            future = self._pending.pop(event.correlation_id, None)
            if future is not None:
                if not future.done():
                    future.set_result(event)
                return
        self._enqueue(event)

    async def _answer_ping(self, data: dict[str, Any]) -> None:
        pong: dict[str, Any] = {"type": "pong"}
        if "id" in data:
            pong["id"] = data["id"]
        try:
            await self._write(json.dumps(pong, separators=(",", ":")))
        except (NotConnectedError, ConnectionDroppedError) as e:
            _logger.debug("Could not answer ping: %s", e)
