"""Streaming response driver.

Drives one streaming HTTP call through the :class:`SSEDecoder` and hands
the caller a lazy, single-consumer sequence of ``StreamEvent`` values.
Transient failures before the first delta are retried per the
:class:`BackoffPolicy`; after the first delta they end the stream with an
``Error`` event.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable

import httpx

from async_genai.backoff import BackoffPolicy, Continue, classify_status, parse_retry_after
from async_genai.exceptions import APIError, SSEProtocolError
from async_genai.streaming.sse import DEFAULT_MAX_FRAME_SIZE, SSEDecoder
from async_genai.types import Delta, Done, Error, ErrorKind, SSEFrame, StreamEvent

_logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


class _RetryableFailure(Exception):
    """Internal: an attempt failed in a way the policy may retry."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


# ---------------------------------------------------------------------------
# EventStream
# ---------------------------------------------------------------------------

class EventStream:
    """Single-consumer async iterator over ``StreamEvent`` values.

    Use as ``async with driver.stream(...) as events: async for ev in events``.
    Leaving the block, or calling :meth:`aclose`, releases the HTTP
    connection even if the stream was not exhausted.  The sequence cannot be
    restarted; issue a new call instead.
    """

    def __init__(self, agen: AsyncGenerator[StreamEvent, None]) -> None:
        self._agen = agen
        self._iterating = False

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        if self._iterating:
            raise RuntimeError("EventStream supports a single consumer")
        self._iterating = True
        return self._agen

    async def __aenter__(self) -> EventStream:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._agen.aclose()

    async def collect(self) -> list[StreamEvent]:
        """Drain the stream into a list (terminal event included)."""
        return [event async for event in self]


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------

class StreamingDriver:
    """Issue streaming calls over an ``httpx.AsyncClient``-compatible client.

    Parameters
    ----------
    client:
        Object exposing ``stream(method, url, **kwargs)`` as an async
        context manager yielding an ``httpx.Response``.
    policy:
        Backoff policy for reconnects before the first delta.
    max_frame_size:
        Upper bound for a single SSE frame.
    sleep:
        Coroutine used to wait between attempts (injectable for tests).
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        policy: BackoffPolicy | None = None,
        max_frame_size: int = DEFAULT_MAX_FRAME_SIZE,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._client = client
        self._policy = policy or BackoffPolicy()
        self._max_frame_size = max_frame_size
        self._sleep = sleep

    def stream(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        headers: dict[str, str] | None = None,
        timeout: float | httpx.Timeout | None = None,
    ) -> EventStream:
        """Start a streaming call.  Nothing is sent until iteration begins."""
        return EventStream(
            self._run(method, url, json=json, headers=headers, timeout=timeout),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(
        self,
        method: str,
        url: str,
        *,
        json: Any,
        headers: dict[str, str] | None,
        timeout: float | httpx.Timeout | None,
    ) -> AsyncGenerator[StreamEvent, None]:
        state = self._policy.start()
        delivered = False
        kwargs: dict[str, Any] = {"json": json, "headers": headers}
        if timeout is not None:
            kwargs["timeout"] = timeout

        while True:
            decoder = SSEDecoder(self._max_frame_size)
            try:
                async with self._client.stream(method, url, **kwargs) as resp:
                    if resp.status_code >= 400:
                        await self._raise_for_status(resp)

                    async for chunk in resp.aiter_bytes():
                        for frame in decoder.feed(chunk):
                            event = _frame_to_event(frame)
                            if isinstance(event, Error):
                                yield event
                                return
                            delivered = True
                            yield event
                        if decoder.done:
                            yield Done()
                            return

                    for frame in decoder.finish():
                        event = _frame_to_event(frame)
                        yield event
                        if isinstance(event, Error):
                            return
                        delivered = True
                    yield Done()
                    return

            except APIError as e:
                yield Error(ErrorKind.API, str(e), status_code=e.status_code)
                return
            except SSEProtocolError as e:
                yield Error(ErrorKind.PROTOCOL, str(e))
                return
            except (_RetryableFailure, httpx.TimeoutException, httpx.TransportError) as e:
                message = _describe(e)
                if delivered:
                    _logger.warning("Stream interrupted after first delta: %s", message)
                    yield Error(ErrorKind.TRANSIENT, f"stream interrupted: {message}")
                    return
                retry_after = e.retry_after if isinstance(e, _RetryableFailure) else None
                decision = self._policy.next(state, ErrorKind.TRANSIENT, retry_after)
                if not isinstance(decision, Continue):
                    _logger.warning("Stream retries exhausted: %s", decision.reason)
                    yield Error(
                        ErrorKind.RETRIES_EXHAUSTED,
                        f"{decision.reason}; last error: {message}",
                    )
                    return
                state = decision.state
                _logger.warning(
                    "Stream error (attempt %d/%d): %s, retrying in %.2fs",
                    state.attempt, state.max_attempts, message, decision.delay,
                )
                # The response context has exited; no connection is held here.
                await self._sleep(decision.delay)

    @staticmethod
    async def _raise_for_status(resp: httpx.Response) -> None:
        body_bytes = await resp.aread()
        kind = classify_status(resp.status_code)
        if kind is ErrorKind.TRANSIENT:
            raise _RetryableFailure(
                f"HTTP {resp.status_code}",
                retry_after=parse_retry_after(resp.headers.get("retry-after")),
            )
        text = body_bytes.decode("utf-8", errors="replace")
        try:
            body = json.loads(text)
        except json.JSONDecodeError:
            body = None
        raise APIError.from_body(resp.status_code, body, fallback=text.strip())


def _describe(exc: BaseException) -> str:
    text = str(exc)
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__


def _frame_to_event(frame: SSEFrame) -> StreamEvent:
    """Turn a decoded frame into ``Delta`` or a terminal ``Error``."""
    try:
        data: Any = json.loads(frame.data)
    except json.JSONDecodeError:
        data = frame.data

    if frame.event == "error":
        return Error(ErrorKind.API, _error_message(data))
    if isinstance(data, dict) and isinstance(data.get("error"), (dict, str)):
        return Error(ErrorKind.API, _error_message(data))
    return Delta(data=data, event=frame.event, id=frame.id)


def _error_message(data: Any) -> str:
    if isinstance(data, dict):
        err = data.get("error", data)
        if isinstance(err, dict):
            return str(err.get("message") or err)
        return str(err)
    return str(data)
