"""Incremental Server-Sent-Events decoder.

Bytes go in through :meth:`SSEDecoder.feed` in whatever chunks the transport
delivers; complete frames come out.  A chunk boundary may fall anywhere: in
the middle of a line, between ``\\r`` and ``\\n``, or inside a multi-byte
UTF-8 sequence.
"""

from __future__ import annotations

import codecs
import logging

from async_genai.exceptions import FrameTooLargeError, SSEProtocolError
from async_genai.types import SSEFrame

_logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"
DEFAULT_MAX_FRAME_SIZE = 1024 * 1024


class SSEDecoder:
    """Stateful ``event:`` / ``data:`` / ``id:`` frame parser.

    After a frame whose data is ``[DONE]`` the decoder reports
    :attr:`done` and discards all further input.
    """

    def __init__(self, max_frame_size: int = DEFAULT_MAX_FRAME_SIZE) -> None:
        self.max_frame_size = max_frame_size
        self.done = False
        self.last_event_id: str | None = None
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="strict")
        self._buffer = ""  # text not yet terminated by "\n"
        self._buffer_bytes = 0
        self._reset_frame()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def feed(self, chunk: bytes) -> list[SSEFrame]:
        """Consume *chunk* and return the frames it completes.

        Raises
        ------
        FrameTooLargeError
            The frame under construction outgrew ``max_frame_size``.  The
            outcome does not depend on how the input was chunked.
        SSEProtocolError
            The input is not valid UTF-8.
        """
        if self.done or not chunk:
            return []
        try:
            text = self._utf8.decode(chunk)
        except UnicodeDecodeError as e:
            raise SSEProtocolError(f"event stream is not valid UTF-8: {e}") from e

        newline = text.find("\n")
        if newline < 0:
            self._buffer += text
            self._buffer_bytes += len(text.encode("utf-8"))
            self._check_size()
            return []

        # Only the first line can span the previous chunk.
        buf = self._buffer + text
        newline += len(self._buffer)
        pos = 0
        frames: list[SSEFrame] = []
        while newline >= 0:
            line = buf[pos:newline]
            pos = newline + 1
            if line.endswith("\r"):
                line = line[:-1]
            frame = self._process_line(line)
            if self.done:
                break
            if frame is not None:
                frames.append(frame)
            newline = buf.find("\n", pos)

        if self.done:
            self._buffer = ""
            self._buffer_bytes = 0
            return frames
        self._buffer = buf[pos:]
        self._buffer_bytes = len(self._buffer.encode("utf-8"))
        self._check_size()
        return frames

    def finish(self) -> list[SSEFrame]:
        """Flush at end of stream.  A trailing unterminated frame is dispatched."""
        if self.done:
            return []
        try:
            tail = self._utf8.decode(b"", final=True)
        except UnicodeDecodeError as e:
            raise SSEProtocolError(f"event stream ends mid UTF-8 sequence: {e}") from e
        self._buffer += tail

        frames: list[SSEFrame] = []
        if self._buffer:
            line = self._buffer.rstrip("\r")
            self._buffer = ""
            self._buffer_bytes = 0
            frame = self._process_line(line)
            if frame is not None:
                frames.append(frame)
        frame = self._dispatch()
        if frame is not None:
            frames.append(frame)
        return frames

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _reset_frame(self) -> None:
        self._data: list[str] = []
        self._event: str | None = None
        self._id: str | None = None
        self._retry: int | None = None
        self._frame_bytes = 0

    def _check_size(self) -> None:
        size = self._frame_bytes + self._buffer_bytes
        if size > self.max_frame_size:
            raise FrameTooLargeError(size, self.max_frame_size)

    def _process_line(self, line: str) -> SSEFrame | None:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None  # comment / keep-alive

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if name in ("data", "event", "id", "retry"):
            self._frame_bytes += len(line.encode("utf-8")) + 1
            if self._frame_bytes > self.max_frame_size:
                raise FrameTooLargeError(self._frame_bytes, self.max_frame_size)

        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        elif name == "id":
            if "\0" not in value:
                self._id = value
        elif name == "retry":
            if value.isdigit():
                self._retry = int(value)
        else:
            _logger.debug("Ignoring unknown SSE field %r", name)
        return None

    def _dispatch(self) -> SSEFrame | None:
        """Close the current frame at a blank line."""
        if self._id is not None:
            self.last_event_id = self._id

        if not self._data:
            self._reset_frame()
            return None

        frame = SSEFrame(
            data="\n".join(self._data),
            event=self._event,
            id=self._id,
            retry=self._retry,
        )
        self._reset_frame()
        if frame.data == DONE_SENTINEL:
            self.done = True
            return None
        return frame
