from __future__ import annotations

from asyncio import Queue
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Generic, TypeVar


T = TypeVar("T")


class ChannelClosed(Exception):
    """Raised by receive() once the channel is closed and drained."""


_CLOSED = object()


@dataclass(slots=True)
class Channel(Generic[T]):
    """Unbounded many-producer / single-consumer queue with an explicit end of feed."""

    _queue: Queue = field(init=False, repr=False)
    _closed: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self._queue: Queue[T | object] = Queue()

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, item: T) -> None:
        """Enqueue without waiting; the queue is unbounded so producers never block."""
        if self._closed:
            raise ChannelClosed("send on a closed channel")
        self._queue.put_nowait(item)

    def close(self) -> None:
        """Mark end of feed (idempotent). Items already queued are still delivered."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def receive(self) -> T:
        item = await self._queue.get()
        if item is _CLOSED:
            # keep the marker so later receivers see the close as well
            self._queue.put_nowait(_CLOSED)
            raise ChannelClosed("channel closed")
        return item  # type: ignore[return-value]

    async def __aiter__(self) -> AsyncIterator[T]:
        while True:
            try:
                yield await self.receive()
            except ChannelClosed:
                return


__all__ = ["Channel", "ChannelClosed"]
