"""Line framing for the stdio transport.

The child writes one JSON-RPC message per line to stdout, but may interleave
human-readable diagnostics. FrameDecoder turns arbitrary-sized byte chunks
into parsed messages and keeps the most recent raw lines in a bounded ring
(DiagnosticLog) that is returned to callers as `logs`.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any

from ..errors import ProtocolError
from ..messages import parse_line

__all__ = ["DiagnosticLog", "FrameDecoder"]

logger = logging.getLogger(__name__)

DEFAULT_LOG_CAPACITY = 50


class DiagnosticLog:
    """Fixed-capacity ring of the most recent raw output lines."""

    def __init__(self, capacity: int = DEFAULT_LOG_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._lines: deque[str] = deque(maxlen=capacity)
        self.total = 0

    @property
    def capacity(self) -> int:
        return self._lines.maxlen or 0

    def append(self, line: str) -> None:
        self._lines.append(line)
        self.total += 1

    def snapshot(self) -> list[str]:
        """Copy of the retained lines, oldest first."""
        return list(self._lines)

    def __len__(self) -> int:
        return len(self._lines)


class FrameDecoder:
    """Splits a byte stream into line-delimited JSON messages.

    A single partial-line accumulator is kept across `feed` calls, so a message
    split over several reads is reassembled before parsing. `\\n` and `\\r\\n`
    both terminate a line. Lines that are not JSON objects are kept in the
    diagnostic log only.

    Example:
        decoder = FrameDecoder()
        decoder.feed(b'{"id": 1, "res')   # -> []
        decoder.feed(b'ult": {}}\\n')      # -> [{"id": 1, "result": {}}]
    """

    def __init__(self, log: DiagnosticLog | None = None) -> None:
        self.log = log if log is not None else DiagnosticLog()
        self._buffer = bytearray()
        self.malformed = 0

    @property
    def pending_bytes(self) -> int:
        """Size of the retained partial line."""
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        """Consume a chunk and return every complete message it finishes."""
        messages: list[dict[str, Any]] = []
        self._buffer.extend(chunk)
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            raw = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            message = self._decode_line(raw)
            if message is not None:
                messages.append(message)
        return messages

    def flush(self) -> list[dict[str, Any]]:
        """Treat the retained tail as a final line (end of stream)."""
        raw = bytes(self._buffer)
        self._buffer.clear()
        message = self._decode_line(raw)
        return [message] if message is not None else []

    def _decode_line(self, raw: bytes) -> dict[str, Any] | None:
        # strip() also drops the \r of a \r\n terminator
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return None
        self.log.append(line)
        try:
            return parse_line(line)
        except ProtocolError as e:
            self.malformed += 1
            logger.debug(f"Ignoring non-protocol output: {e}")
            return None
