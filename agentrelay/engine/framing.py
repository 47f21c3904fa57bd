"""Split a provider's stdout byte stream into complete lines.

Pipes deliver arbitrary chunks: a JSON record can arrive split across
several reads, and one read can carry many records. The framer buffers
the partial tail so its output never depends on chunk boundaries.
"""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


class LineFramer:
    """Incremental newline splitter with no line length limit."""

    def __init__(self) -> None:
        self._buffer = b""

    def feed(self, chunk: bytes) -> list[str]:
        """Add *chunk* and return every line it completes."""
        if not chunk:
            return []
        self._buffer += chunk
        *complete, self._buffer = self._buffer.split(b"\n")
        lines: list[str] = []
        for raw in complete:
            text = raw.decode("utf-8", errors="replace").rstrip("\r")
            if text.strip():
                lines.append(text)
        return lines

    @property
    def pending(self) -> int:
        """Bytes held for an incomplete trailing line."""
        return len(self._buffer)

    def close(self) -> list[str]:
        """End of stream. An unterminated trailing line is discarded."""
        if self._buffer.strip():
            logger.debug(
                "Discarding %d bytes of unterminated output at EOF",
                len(self._buffer),
            )
        self._buffer = b""
        return []


async def iter_lines(
    stream: asyncio.StreamReader,
    framer: LineFramer | None = None,
) -> AsyncIterator[str]:
    """Yield complete lines from *stream* until EOF."""
    framer = framer or LineFramer()
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            for line in framer.close():
                yield line
            return
        for line in framer.feed(chunk):
            yield line
