"""WebSocket transport contract and the ``websockets``-backed default.

The realtime session only needs three coroutines from a connection
(``send``, ``recv``, ``close``) plus a connector that opens one.  Transport
closure is reported as :class:`TransportClosed` so the session never has to
know which WebSocket library is underneath.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Mapping, Protocol

from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedOK,
    InvalidHandshake,
    InvalidStatus,
    InvalidURI,
)

from async_genai.backoff import classify_status
from async_genai.exceptions import APIError, ConfigurationError, TransientError
from async_genai.types import ErrorKind

_logger = logging.getLogger(__name__)


class TransportClosed(Exception):
    """The WebSocket is closed.

    ``clean`` is true for a normal closing handshake (code 1000/1001).
    """

    def __init__(self, code: int | None = None, reason: str = "", clean: bool = False):
        super().__init__(f"websocket closed (code={code}, reason={reason!r})")
        self.code = code
        self.reason = reason
        self.clean = clean


class WebSocketConnection(Protocol):
    """An open, message-framed WebSocket."""

    async def send(self, data: str) -> None:
        ...

    async def recv(self) -> str | bytes:
        ...

    async def close(self) -> None:
        ...


WebSocketConnector = Callable[[str, Mapping[str, str]], Awaitable[WebSocketConnection]]


# ---------------------------------------------------------------------------
# websockets adapter
# ---------------------------------------------------------------------------

class WebsocketsConnection:
    """Adapts a ``websockets`` client connection to :class:`WebSocketConnection`.

    Protocol-level pings are answered by ``websockets`` itself, and its
    keepalive pings (``ping_interval``/``ping_timeout``) detect dead peers.
    """

    def __init__(self, ws: ClientConnection) -> None:
        self._ws = ws

    async def send(self, data: str) -> None:
        try:
            await self._ws.send(data)
        except ConnectionClosed as e:
            raise _closed(e) from e

    async def recv(self) -> str | bytes:
        try:
            return await self._ws.recv()
        except ConnectionClosed as e:
            raise _closed(e) from e

    async def close(self) -> None:
        await self._ws.close()


class WebsocketsConnector:
    """Open connections with ``websockets.asyncio.client.connect``."""

    def __init__(
        self,
        ping_interval: float | None = 20.0,
        ping_timeout: float | None = 20.0,
        open_timeout: float | None = 10.0,
        max_size: int | None = 16 * 1024 * 1024,
    ) -> None:
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.open_timeout = open_timeout
        self.max_size = max_size

    async def __call__(self, url: str, headers: Mapping[str, str]) -> WebsocketsConnection:
        try:
            ws = await ws_connect(
                url,
                additional_headers=dict(headers),
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
                open_timeout=self.open_timeout,
                max_size=self.max_size,
            )
        except InvalidURI as e:
            raise ConfigurationError(f"invalid realtime URL: {url}", config_key="realtime.url") from e
        except InvalidStatus as e:
            status = e.response.status_code
            if classify_status(status) is ErrorKind.TRANSIENT:
                raise TransientError(f"handshake rejected: HTTP {status}", status_code=status) from e
            raise APIError(f"handshake rejected: HTTP {status}", status_code=status) from e
        except (InvalidHandshake, OSError) as e:
            raise TransientError(f"cannot connect to {url}: {e}") from e
        _logger.debug("WebSocket connected to %s", url)
        return WebsocketsConnection(ws)


def _closed(exc: ConnectionClosed) -> TransportClosed:
    frame = exc.rcvd or exc.sent
    code = frame.code if frame is not None else None
    reason = frame.reason if frame is not None else ""
    return TransportClosed(code=code, reason=reason, clean=isinstance(exc, ConnectionClosedOK))
