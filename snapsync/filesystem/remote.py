"""Remote (cloud) file system: tree walker and sync source/destination.

The wire client itself lives outside this package; anything implementing
``RemoteClient`` can be plugged in.
"""

from __future__ import annotations

import asyncio
import logging
import posixpath
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from snapsync.exceptions import TransferError, WalkError
from snapsync.filesystem.base import FileStream, emit, producing
from snapsync.filesystem.channels import Channel
from snapsync.filesystem.entries import FSEntry

if TYPE_CHECKING:
    from snapsync.config import Settings
    from snapsync.schemas.remote import RemoteFile, RemoteFolderListing, RemoteMetadata

logger = logging.getLogger(__name__)

O_WRITE = 0x0002
O_CREAT = 0x0040
O_EXCL = 0x0080
O_TRUNC = 0x0200
O_APPEND = 0x0400


@dataclass(frozen=True)
class FolderRef:
    """Reference to a remote folder, either by path or by folder ID."""

    path: str | None = None
    folder_id: int | None = None

    @classmethod
    def by_path(cls, path: str) -> FolderRef:
        return cls(path=path)

    @classmethod
    def by_id(cls, folder_id: int) -> FolderRef:
        return cls(folder_id=folder_id)


@dataclass(frozen=True)
class FileRef:
    """Reference to a remote file, either by path or by file ID."""

    path: str | None = None
    file_id: int | None = None

    @classmethod
    def by_path(cls, path: str) -> FileRef:
        return cls(path=path)

    @classmethod
    def by_id(cls, file_id: int) -> FileRef:
        return cls(file_id=file_id)


@runtime_checkable
class RemoteClient(Protocol):
    """Calls the remote storage API. Authentication is the client's business."""

    async def list_folder(
        self,
        folder: FolderRef,
        *,
        recursive: bool = False,
        show_deleted: bool = False,
        no_files: bool = False,
        no_shares: bool = False,
    ) -> RemoteFolderListing: ...

    async def file_open(self, flags: int, file: FileRef) -> RemoteFile: ...

    async def file_read(self, fd: int, count: int) -> bytes:
        """Read at most ``count`` bytes; a shorter result means end of file."""
        ...

    async def file_write(self, fd: int, data: bytes) -> int: ...

    async def file_close(self, fd: int) -> None: ...

    async def create_folder_if_not_exists(self, path: str) -> None: ...

    async def delete_folder(self, path: str) -> None: ...

    async def delete_file(self, path: str) -> None: ...

    async def rename_folder(self, from_path: str, to_path: str) -> None: ...

    async def rename_file(self, from_path: str, to_path: str) -> None: ...


def _remote_path(root: str, relative: str) -> str:
    return posixpath.normpath(posixpath.join(root, relative.lstrip("/")))


class RemoteWalker:
    """Walks a remote tree from a single recursive listing.

    The listing is expanded depth-first with an explicit stack; entries the
    remote side reports as deleted are skipped.
    """

    def __init__(self, client: RemoteClient) -> None:
        self.client = client

    async def walk(
        self,
        fs_name: str,
        root: str,
        entries: Channel[FSEntry],
        consumer: asyncio.Future[None],
    ) -> None:
        async with producing(entries, consumer, fs_name):
            try:
                listing = await self.client.list_folder(
                    FolderRef.by_path(root),
                    recursive=True,
                    show_deleted=False,
                    no_files=False,
                    no_shares=False,
                )
            except Exception as exc:
                raise WalkError(f"cannot list contents of {root!r}: {exc}") from exc
            if not listing.metadata.name:
                raise WalkError(f"cannot list contents of {root!r}: no data")
            await self._expand(fs_name, listing.metadata, entries, consumer)

    async def _expand(
        self,
        fs_name: str,
        top: RemoteMetadata,
        entries: Channel[FSEntry],
        consumer: asyncio.Future[None],
    ) -> None:
        # (metadata, parent folder path relative to the walk root)
        stack: list[tuple[RemoteMetadata, str]] = [(top, "/")]
        is_top = True
        while stack:
            item, path = stack.pop()
            name = "" if is_top else item.name
            parent_entry_id = item.entry_id if is_top else item.parent_folder_id
            is_top = False

            if item.is_folder:
                folder_path = posixpath.join(path, name)
                children = [child for child in item.contents if not child.is_deleted]
                # reversed so that children pop off the stack in listing order
                stack.extend((child, folder_path) for child in reversed(children))

            await emit(
                entries,
                consumer,
                FSEntry(
                    fs_name=fs_name,
                    entry_id=item.entry_id,
                    is_folder=item.is_folder,
                    path=path,
                    name=name,
                    parent_entry_id=parent_entry_id,
                    created=item.created,
                    modified=item.modified,
                    size=None if item.is_folder else item.size,
                    hash="" if item.is_folder else f"{item.hash}",
                    is_deleted=item.is_deleted,
                    deleted_entry_id=item.deleted_file_id,
                ),
            )


class RemoteFileSystem:
    """A remote folder acting as a sync source or destination.

    Files are read and written through descriptor primitives in
    ``chunk_size`` pieces.
    """

    def __init__(self, client: RemoteClient, settings: Settings, root: str = "/") -> None:
        self.client = client
        self.root = root
        self.chunk_size = settings.transfer_chunk_size
        self.chunk_channel_size = settings.chunk_channel_size

    def stream_file_data(self, entry: FSEntry) -> FileStream:
        chunks: Channel[bytes] = Channel(self.chunk_channel_size)
        producer = asyncio.create_task(self._read(entry, chunks))
        return FileStream(chunks=chunks, producer=producer)

    async def _read(self, entry: FSEntry, chunks: Channel[bytes]) -> None:
        try:
            remote_file = await self.client.file_open(0, FileRef.by_id(entry.entry_id))
            try:
                while True:
                    data = await self.client.file_read(remote_file.fd, self.chunk_size)
                    if data:
                        await chunks.send(data)
                    if len(data) < self.chunk_size:
                        break
            finally:
                await self.client.file_close(remote_file.fd)
        except Exception as exc:
            raise TransferError(
                f"cannot read remote file {entry.full_path} (file ID {entry.entry_id}): {exc}"
            ) from exc
        finally:
            chunks.close()

    async def mk_dir(self, path: str) -> None:
        await self.client.create_folder_if_not_exists(_remote_path(self.root, path))

    async def mk_file(self, path: str, chunks: Channel[bytes]) -> None:
        target = _remote_path(self.root, path)
        remote_file = await self.client.file_open(
            O_WRITE | O_CREAT | O_TRUNC, FileRef.by_path(target)
        )
        try:
            async for data in chunks:
                await self.client.file_write(remote_file.fd, data)
        finally:
            await self.client.file_close(remote_file.fd)

    async def rm_dir(self, path: str) -> None:
        await self.client.delete_folder(_remote_path(self.root, path))

    async def rm_file(self, path: str) -> None:
        await self.client.delete_file(_remote_path(self.root, path))

    async def mv_dir(self, from_path: str, to_path: str) -> None:
        await self.client.rename_folder(
            _remote_path(self.root, from_path), _remote_path(self.root, to_path)
        )

    async def mv_file(self, from_path: str, to_path: str) -> None:
        await self.client.rename_file(
            _remote_path(self.root, from_path), _remote_path(self.root, to_path)
        )
