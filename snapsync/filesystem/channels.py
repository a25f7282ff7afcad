"""Bounded single-producer channels for streaming entries and file chunks."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Generic, TypeVar

from snapsync.exceptions import ChannelClosedError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

T = TypeVar("T")

_CLOSED = object()


class Channel(Generic[T]):
    """An asyncio channel with a fixed capacity and an explicit close.

    ``send`` waits while ``capacity`` items are pending, giving the producer
    backpressure. A capacity of 0 is accepted and behaves as a single-slot
    hand-off. The producer owns the channel and must call ``close`` on every
    exit path; consumers iterating with ``async for`` stop once the channel is
    closed and drained.
    """

    def __init__(self, capacity: int = 0) -> None:
        if capacity < 0:
            raise ValueError(f"channel capacity must be non-negative, got {capacity}")
        self.capacity = capacity
        self._items: asyncio.Queue[object] = asyncio.Queue()
        self._slots = asyncio.Semaphore(max(capacity, 1))
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, item: T) -> None:
        """Send an item, waiting for a free slot."""
        if self._closed:
            raise ChannelClosedError("send on closed channel")
        await self._slots.acquire()
        if self._closed:
            self._slots.release()
            raise ChannelClosedError("send on closed channel")
        self._items.put_nowait(item)

    def close(self) -> None:
        """Close the channel. Items already sent can still be received."""
        if self._closed:
            return
        self._closed = True
        self._items.put_nowait(_CLOSED)

    async def receive(self) -> T:
        """Receive the next item.

        Raises ChannelClosedError once the channel is closed and drained.
        """
        item = await self._items.get()
        if item is _CLOSED:
            # leave the marker for any other receiver
            self._items.put_nowait(_CLOSED)
            raise ChannelClosedError("receive on closed channel")
        self._slots.release()
        return item  # type: ignore[return-value]

    async def __aiter__(self) -> AsyncIterator[T]:
        while True:
            try:
                item = await self.receive()
            except ChannelClosedError:
                return
            yield item
