"""High-level async client.

Wires a :class:`~async_genai.config.ClientConfig` into one shared
``httpx.AsyncClient`` and hands out the call executor, streaming driver and
realtime sessions built on top of it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable
from urllib.parse import urlencode, urlsplit

import httpx

from async_genai.backoff import BackoffPolicy
from async_genai.config import ClientConfig, load_config
from async_genai.executor import CallExecutor
from async_genai.realtime.session import RealtimeSession
from async_genai.realtime.transport import WebSocketConnector, WebsocketsConnector
from async_genai.streaming.driver import EventStream, StreamingDriver

_logger = logging.getLogger(__name__)


class AsyncGenAIClient:
    """Async client for a generative-AI HTTP/WebSocket API.

    Usage::

        async with AsyncGenAIClient(load_config()) as client:
            reply = await client.post("/chat/completions", json=payload)
            async for event in client.stream("/chat/completions", json=payload):
                ...
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        connector: WebSocketConnector | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or load_config()
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(
            base_url=self.config.base_url,
            headers=self.config.headers(),
            timeout=httpx.Timeout(self.config.timeout, connect=self.config.connect_timeout),
        )
        self._connector = connector
        self._sleep = sleep
        self._closed = False

        self.executor = CallExecutor(self._http, self._policy(), sleep=sleep)
        self.driver = StreamingDriver(
            self._http,
            self._policy(),
            max_frame_size=self.config.stream.max_frame_size,
            sleep=sleep,
        )

    def _policy(self) -> BackoffPolicy:
        return BackoffPolicy.from_spec(self.config.retry)

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def post(self, path: str, json: Any = None, **kwargs: Any) -> Any:
        """POST *json* and return the decoded body (see :meth:`CallExecutor.execute`)."""
        return await self.executor.execute("POST", path, json=json, **kwargs)

    def stream(self, path: str, json: Any = None, **kwargs: Any) -> EventStream:
        """POST *json* and stream the SSE response as events."""
        kwargs.setdefault(
            "timeout",
            httpx.Timeout(
                self.config.timeout,
                connect=self.config.connect_timeout,
                read=self.config.stream.read_timeout,
            ),
        )
        return self.driver.stream("POST", path, json=json, **kwargs)

    def realtime(self, model: str | None = None) -> RealtimeSession:
        """Create (but do not connect) a realtime session.

        Connect with ``await session.connect(api_key)`` or use the session
        as an async context manager; the configured API key is sent either
        way.
        """
        spec = self.config.realtime
        url = spec.url
        model = model or spec.model
        if model:
            sep = "&" if urlsplit(url).query else "?"
            url = f"{url}{sep}{urlencode({'model': model})}"

        headers = dict(spec.extra_headers)
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"

        connector = self._connector or WebsocketsConnector(
            ping_interval=spec.ping_interval,
            ping_timeout=spec.ping_timeout,
            open_timeout=self.config.connect_timeout,
        )
        return RealtimeSession(
            url,
            connector=connector,
            policy=self._policy(),
            idle_timeout=spec.idle_timeout,
            reconnect=spec.reconnect,
            correlation_key=spec.correlation_key,
            queue_size=spec.queue_size,
            headers=headers,
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._owns_http:
            await self._http.aclose()
        _logger.debug("Client closed")

    async def __aenter__(self) -> AsyncGenAIClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
