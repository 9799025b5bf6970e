"""
Framing of raw process output into line chunks.

Chunks are split on "\\n" or "\\r" and tagged with the terminator that ended them,
so that progress-bar style output ("\\r" without "\\n") can be rendered in place.
"\\r\\n" counts as a single newline.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from .types import LineEnding


Frame = tuple[LineEnding, bytes]

_CR = 0x0D
_LF = 0x0A


class LineFramer:
    """Incremental splitter; feed bytes in, get complete chunks out."""

    def __init__(self) -> None:
        self._buffer = bytearray()
        # a "\r" seen as the last byte so far; the next byte decides CR vs CRLF
        self._pending_cr = False
        # the pending "\r" was already flushed; a "\n" right after it is its CRLF tail
        self._skip_lf = False

    @property
    def pending_cr(self) -> bool:
        return self._pending_cr

    def feed(self, data: bytes) -> list[Frame]:
        frames: list[Frame] = []
        if not data:
            return frames

        start = 0
        if self._skip_lf:
            self._skip_lf = False
            if data[0] == _LF:
                start = 1
        elif self._pending_cr:
            self._pending_cr = False
            if data[0] == _LF:
                frames.append(self._take(LineEnding.NEWLINE))
                start = 1
            else:
                frames.append(self._take(LineEnding.CARRIAGE_RETURN))

        index = start
        size = len(data)
        while index < size:
            byte = data[index]
            if byte == _LF:
                self._buffer += data[start:index]
                frames.append(self._take(LineEnding.NEWLINE))
                start = index + 1
            elif byte == _CR:
                self._buffer += data[start:index]
                if index + 1 == size:
                    self._pending_cr = True
                    return frames
                if data[index + 1] == _LF:
                    frames.append(self._take(LineEnding.NEWLINE))
                    index += 1
                else:
                    frames.append(self._take(LineEnding.CARRIAGE_RETURN))
                start = index + 1
            index += 1

        self._buffer += data[start:]
        return frames

    def flush_pending(self) -> list[Frame]:
        """Give up waiting for a "\\n" after a trailing "\\r" and emit the chunk now."""
        if not self._pending_cr:
            return []
        self._pending_cr = False
        self._skip_lf = True
        return [self._take(LineEnding.CARRIAGE_RETURN)]

    def close(self) -> list[Frame]:
        """Flush what is left at end of stream."""
        if self._pending_cr:
            self._pending_cr = False
            return [self._take(LineEnding.CARRIAGE_RETURN)]
        if self._buffer:
            # unterminated tail is reported as a regular line
            return [self._take(LineEnding.NEWLINE)]
        return []

    def _take(self, ending: LineEnding) -> Frame:
        chunk = bytes(self._buffer)
        self._buffer.clear()
        return ending, chunk


async def frame_stream(
    reader: asyncio.StreamReader, *, chunk_size: int = 4096, cr_grace_sec: float = 0.05
) -> AsyncIterator[Frame]:
    """Read `reader` until EOF and yield framed chunks as they complete.

    A trailing "\\r" is held for at most `cr_grace_sec`, so an in-place progress
    update followed by a pause is still delivered right away.
    """
    framer = LineFramer()
    while True:
        if framer.pending_cr:
            try:
                data = await asyncio.wait_for(reader.read(chunk_size), timeout=cr_grace_sec)
            except asyncio.TimeoutError:  # noqa: UP041
                for frame in framer.flush_pending():
                    yield frame
                continue
        else:
            data = await reader.read(chunk_size)
        if not data:
            break
        for frame in framer.feed(data):
            yield frame
    for frame in framer.close():
        yield frame


__all__ = ["Frame", "LineFramer", "frame_stream"]
