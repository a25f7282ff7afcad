"""Protocols for walkers and file systems, plus the producer side of the entry stream."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from snapsync.exceptions import WalkError

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from snapsync.filesystem.channels import Channel
    from snapsync.filesystem.entries import FSEntry

logger = logging.getLogger(__name__)


@runtime_checkable
class Walker(Protocol):
    """Traverses a file system root and emits its entries, parents first."""

    async def walk(
        self,
        fs_name: str,
        root: str,
        entries: Channel[FSEntry],
        consumer: asyncio.Future[None],
    ) -> None:
        """Send every entry under ``root`` on ``entries``.

        The walker is the only producer on ``entries`` and closes it on every
        exit path. ``consumer`` completes with the receiving side's error; the
        walker stops as soon as it fails and waits for it before returning.
        """
        ...


@dataclass
class FileStream:
    """Contents of one file being streamed from a source.

    ``producer`` finishes once every chunk has been sent and ``chunks`` closed;
    it raises if reading the source failed.
    """

    chunks: Channel[bytes]
    producer: asyncio.Task[None]


@runtime_checkable
class FileSource(Protocol):
    """Read side of a one-way sync."""

    def stream_file_data(self, entry: FSEntry) -> FileStream:
        """Start streaming the contents of ``entry``."""
        ...


@runtime_checkable
class FileDestination(Protocol):
    """Write side of a one-way sync. Paths are relative to the destination root."""

    async def mk_dir(self, path: str) -> None: ...

    async def mk_file(self, path: str, chunks: Channel[bytes]) -> None: ...

    async def rm_dir(self, path: str) -> None: ...

    async def rm_file(self, path: str) -> None: ...

    async def mv_dir(self, from_path: str, to_path: str) -> None: ...

    async def mv_file(self, from_path: str, to_path: str) -> None: ...


def _consumer_error(consumer: asyncio.Future[None]) -> WalkError:
    if consumer.cancelled():
        return WalkError("entry consumer was cancelled before the walk completed")
    exc = consumer.exception()
    if exc is None:
        return WalkError("entry consumer stopped before the walk completed")
    error = WalkError(f"entry consumer failed: {exc}")
    error.__cause__ = exc
    return error


async def emit(entries: Channel[FSEntry], consumer: asyncio.Future[None], entry: FSEntry) -> None:
    """Send one entry, giving up as soon as the consumer fails."""
    if consumer.done():
        raise _consumer_error(consumer)

    send = asyncio.ensure_future(entries.send(entry))
    try:
        await asyncio.wait({send, consumer}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if not send.done():
            send.cancel()

    if send.done() and not send.cancelled():
        send.result()
        return
    raise _consumer_error(consumer)


@asynccontextmanager
async def producing(
    entries: Channel[FSEntry], consumer: asyncio.Future[None], fs_name: str
) -> AsyncGenerator[None]:
    """Close ``entries`` when the walk ends and rendezvous with the consumer.

    On success the consumer's outcome becomes the walk's outcome. On failure
    the walker's error wins and the consumer's, if any, is attached as a note.
    Cancellation closes the channel and propagates without waiting.
    """
    try:
        yield
    except asyncio.CancelledError:
        entries.close()
        raise
    except BaseException as exc:
        entries.close()
        logger.debug("Walk of %r aborted: %s", fs_name, exc)
        if not consumer.cancelled():
            try:
                await consumer
            except Exception as consumer_exc:  # noqa: BLE001
                if exc.__cause__ is not consumer_exc:
                    exc.add_note(f"entry consumer for {fs_name!r} also failed: {consumer_exc}")
        raise

    entries.close()
    if consumer.cancelled():
        raise _consumer_error(consumer)
    try:
        await consumer
    except Exception as exc:
        raise WalkError(f"cannot store entries of {fs_name!r}: {exc}") from exc
