"""SSE decoding and streaming response driver."""

from async_genai.streaming.driver import EventStream, StreamingDriver
from async_genai.streaming.sse import DONE_SENTINEL, SSEDecoder

__all__ = [
    "DONE_SENTINEL",
    "EventStream",
    "SSEDecoder",
    "StreamingDriver",
]
