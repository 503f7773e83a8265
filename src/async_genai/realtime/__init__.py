"""Realtime (WebSocket) session."""

from async_genai.realtime.session import RealtimeSession
from async_genai.realtime.transport import (
    TransportClosed,
    WebSocketConnection,
    WebSocketConnector,
    WebsocketsConnection,
    WebsocketsConnector,
)

__all__ = [
    "RealtimeSession",
    "TransportClosed",
    "WebSocketConnection",
    "WebSocketConnector",
    "WebsocketsConnection",
    "WebsocketsConnector",
]
