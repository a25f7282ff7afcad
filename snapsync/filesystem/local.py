"""Local file system: tree walker, content hashing, and sync source/destination."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import posixpath
import stat
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from snapsync.exceptions import TransferError, WalkError
from snapsync.filesystem.base import FileStream, emit, producing
from snapsync.filesystem.channels import Channel
from snapsync.filesystem.entries import FSEntry
from snapsync.services.datetime_service import from_timestamp

if TYPE_CHECKING:
    from collections.abc import Callable

    from snapsync.config import Settings

logger = logging.getLogger(__name__)

ROOT = "/"


def hash_data(reader: BinaryIO, buffer_size: int = 2_097_152) -> str:
    """Compute the SHA-1 hex digest of everything readable from ``reader``."""
    sha = hashlib.sha1(usedforsecurity=False)
    for chunk in iter(lambda: reader.read(buffer_size), b""):
        sha.update(chunk)
    return sha.hexdigest()


def hash_file_data(file_path: Path, buffer_size: int = 2_097_152) -> str:
    """Compute the SHA-1 hex digest of a file without loading it whole."""
    with open(file_path, "rb") as f:
        return hash_data(f, buffer_size)


def _created_time(st: os.stat_result) -> float:
    return getattr(st, "st_birthtime", st.st_ctime)


def _scan_dir(directory: Path) -> list[tuple[str, os.stat_result]]:
    """List a directory without following symlinks, sorted by name."""
    children: list[tuple[str, os.stat_result]] = []
    with os.scandir(directory) as it:
        for dir_entry in it:
            children.append((dir_entry.name, dir_entry.stat(follow_symlinks=False)))
    children.sort(key=lambda child: child[0])
    return children


def _absolute(root: Path, relative: str) -> Path:
    return root / relative.lstrip("/")


class LocalWalker:
    """Walks a local directory tree.

    Entry IDs are inode numbers. Subtrees living on another device (mount
    points) are pruned so that a walk never mixes file systems.
    """

    def __init__(self, settings: Settings) -> None:
        self.hash_buffer_size = settings.hash_buffer_size

    async def walk(
        self,
        fs_name: str,
        root: str,
        entries: Channel[FSEntry],
        consumer: asyncio.Future[None],
    ) -> None:
        async with producing(entries, consumer, fs_name):
            await self._walk(fs_name, Path(root), entries, consumer)

    async def _walk(
        self,
        fs_name: str,
        root: Path,
        entries: Channel[FSEntry],
        consumer: asyncio.Future[None],
    ) -> None:
        try:
            root_stat = await asyncio.to_thread(os.stat, root)
        except OSError as exc:
            raise WalkError(f"cannot read walk root {root}: {exc}") from exc
        if not stat.S_ISDIR(root_stat.st_mode):
            raise WalkError(f"path is not pointing at a directory: {root}")

        device = root_stat.st_dev
        folder_ids: dict[str, int] = {ROOT: root_stat.st_ino}
        await emit(
            entries,
            consumer,
            self._entry(fs_name, ROOT, "", root_stat, parent_entry_id=root_stat.st_ino),
        )

        pending = [ROOT]
        while pending:
            relative_dir = pending.pop()
            parent_entry_id = folder_ids.get(relative_dir)
            if parent_entry_id is None:
                raise WalkError(
                    f"unable to determine parent folder ID for {relative_dir!r} in {fs_name!r}"
                )

            directory = _absolute(root, relative_dir)
            try:
                children = await asyncio.to_thread(_scan_dir, directory)
            except OSError as exc:
                raise WalkError(f"cannot list directory {directory}: {exc}") from exc

            subdirs: list[str] = []
            for name, st in children:
                relative = posixpath.join(relative_dir, name)
                if st.st_dev != device:
                    logger.debug("Skipping %s: on another device", relative)
                    continue

                if stat.S_ISDIR(st.st_mode):
                    folder_ids[relative] = st.st_ino
                    entry = self._entry(fs_name, relative_dir, name, st, parent_entry_id)
                    subdirs.append(relative)
                elif stat.S_ISREG(st.st_mode):
                    file_path = directory / name
                    try:
                        content_hash = await asyncio.to_thread(
                            hash_file_data, file_path, self.hash_buffer_size
                        )
                    except OSError as exc:
                        raise WalkError(f"cannot hash file {file_path}: {exc}") from exc
                    entry = self._entry(
                        fs_name, relative_dir, name, st, parent_entry_id, content_hash
                    )
                else:
                    logger.debug("Skipping %s: not a regular file or directory", relative)
                    continue

                await emit(entries, consumer, entry)

            # reversed so that the first subdirectory by name is walked first
            pending.extend(reversed(subdirs))

    @staticmethod
    def _entry(
        fs_name: str,
        path: str,
        name: str,
        st: os.stat_result,
        parent_entry_id: int,
        content_hash: str = "",
    ) -> FSEntry:
        is_folder = stat.S_ISDIR(st.st_mode)
        return FSEntry(
            fs_name=fs_name,
            entry_id=st.st_ino,
            is_folder=is_folder,
            path=path,
            name=name,
            parent_entry_id=parent_entry_id,
            created=from_timestamp(_created_time(st)),
            modified=from_timestamp(st.st_mtime),
            size=None if is_folder else st.st_size,
            hash=content_hash,
        )


class LocalFileSystem:
    """A local directory acting as a sync source or destination.

    Entry paths are relative to ``root``; "/" is the root itself.
    """

    def __init__(self, root: Path, settings: Settings) -> None:
        self.root = root
        self.chunk_size = settings.transfer_chunk_size
        self.chunk_channel_size = settings.chunk_channel_size

    def _resolve(self, path: str) -> Path:
        """Map an entry path below the root, refusing anything that escapes it.

        Only the parent is resolved: a symlink at the final component is the
        entry itself, not the file it points to.
        """
        root = self.root.resolve()
        target = _absolute(self.root, path)
        if target == self.root or target.name in (".", ".."):
            resolved = target.resolve()
        else:
            resolved = target.parent.resolve() / target.name
        if not resolved.is_relative_to(root):
            raise ValueError(f"path escapes the file system root: {path!r}")
        return resolved

    def stream_file_data(self, entry: FSEntry) -> FileStream:
        chunks: Channel[bytes] = Channel(self.chunk_channel_size)
        producer = asyncio.create_task(self._read(self._resolve(entry.full_path), chunks))
        return FileStream(chunks=chunks, producer=producer)

    async def _read(self, file_path: Path, chunks: Channel[bytes]) -> None:
        try:
            try:
                f = await asyncio.to_thread(open, file_path, "rb")
            except OSError as exc:
                raise TransferError(f"cannot open {file_path}: {exc}") from exc
            try:
                while True:
                    try:
                        data = await asyncio.to_thread(f.read, self.chunk_size)
                    except OSError as exc:
                        raise TransferError(f"cannot read {file_path}: {exc}") from exc
                    if not data:
                        break
                    await chunks.send(data)
            finally:
                f.close()
        finally:
            chunks.close()

    async def mk_dir(self, path: str) -> None:
        target = self._resolve(path)
        await asyncio.to_thread(target.mkdir, mode=0o750, parents=True, exist_ok=True)

    async def mk_file(self, path: str, chunks: Channel[bytes]) -> None:
        target = self._resolve(path)
        f = await asyncio.to_thread(open, target, "wb")
        try:
            async for data in chunks:
                await asyncio.to_thread(f.write, data)
        finally:
            await asyncio.to_thread(f.close)

    # Removals and moves that find their work already done succeed, so a sync
    # interrupted halfway can simply be run again.

    async def rm_dir(self, path: str) -> None:
        try:
            await asyncio.to_thread(os.rmdir, self._resolve(path))
        except FileNotFoundError:
            logger.debug("Directory %s already removed", path)

    async def rm_file(self, path: str) -> None:
        try:
            await asyncio.to_thread(os.remove, self._resolve(path))
        except FileNotFoundError:
            logger.debug("File %s already removed", path)

    async def mv_dir(self, from_path: str, to_path: str) -> None:
        await self._move(os.rename, from_path, to_path)

    async def mv_file(self, from_path: str, to_path: str) -> None:
        await self._move(os.replace, from_path, to_path)

    async def _move(self, move: Callable[[Path, Path], None], from_path: str, to_path: str) -> None:
        source, target = self._resolve(from_path), self._resolve(to_path)
        try:
            await asyncio.to_thread(move, source, target)
        except FileNotFoundError:
            if source.exists() or not target.exists():
                raise
            logger.debug("%s already moved to %s", from_path, to_path)
