"""One-way sync: replay a snapshot diff from a source onto a destination."""

from __future__ import annotations

import asyncio
import logging
import posixpath
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from snapsync.exceptions import (
    MutationShapeError,
    SnapSyncError,
    SyncApplyError,
    TransferError,
    UnknownMutationError,
)
from snapsync.filesystem.entries import MutationKind, Version

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from snapsync.filesystem.base import FileDestination, FileSource
    from snapsync.filesystem.entries import FSEntry, FSMutation
    from snapsync.services.snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)

# Moved entries wait under the destination root with this name plus their entry ID.
STAGING_PREFIX = "/.snapsync-staging-"

# Versions each kind must carry, in order.
EXPECTED_VERSIONS: dict[MutationKind, tuple[Version, ...]] = {
    MutationKind.CREATED: (Version.NEW,),
    MutationKind.DELETED: (Version.PREVIOUS,),
    MutationKind.MODIFIED: (Version.PREVIOUS, Version.NEW),
    MutationKind.MOVED: (Version.PREVIOUS, Version.NEW),
}


def validate_mutation(mutation: FSMutation) -> None:
    """Check that a mutation has the shape its kind requires.

    Raises UnknownMutationError for a kind outside MutationKind and
    MutationShapeError for a wrong number or order of records, records of
    different entries, or a modified folder.
    """
    expected = EXPECTED_VERSIONS.get(mutation.kind)  # type: ignore[call-overload]
    if expected is None:
        raise UnknownMutationError(
            f"unknown mutation kind {mutation.kind!r} for entry {mutation.entry_id}"
        )

    if len(mutation.details) != len(expected):
        raise MutationShapeError(
            f"{mutation.kind} mutation for entry {mutation.entry_id} must carry "
            f"{len(expected)} record(s), got {len(mutation.details)}"
        )
    versions = tuple(detail.version for detail in mutation.details)
    if versions != expected:
        raise MutationShapeError(
            f"{mutation.kind} mutation for entry {mutation.entry_id} must carry "
            f"{[str(v) for v in expected]} records, got {[str(v) for v in versions]}"
        )
    if len({detail.entry.entry_id for detail in mutation.details}) != 1:
        raise MutationShapeError(
            f"{mutation.kind} mutation mixes records of entries "
            f"{[detail.entry.entry_id for detail in mutation.details]}"
        )

    entry = mutation.details[-1].entry
    if mutation.kind == MutationKind.MODIFIED and entry.is_folder:
        raise MutationShapeError(
            f"folder {entry.full_path} (entry {entry.entry_id}) cannot be modified"
        )


def _previous(mutation: FSMutation) -> FSEntry:
    return mutation.details[0].entry


def _new(mutation: FSMutation) -> FSEntry:
    return mutation.details[-1].entry


class Step(StrEnum):
    """Destination work done for one mutation, listed in the order steps run."""

    STAGE = "stage"
    REMOVE = "remove"
    ARRIVE = "arrive"
    WRITE = "write"


def staging_path(entry: FSEntry) -> str:
    """Where a moved entry waits between leaving its old path and reaching its new one."""
    return f"{STAGING_PREFIX}{entry.entry_id}"


def plan_mutations(mutations: Iterable[FSMutation]) -> list[tuple[Step, FSMutation]]:
    """Arrange validated mutations into steps that are safe to apply in order.

    1. stage: every moved entry leaves for its staging path, deepest first
    2. remove: deletions, deepest first
    3. arrive: created folders and staged entries take their new paths,
       shallowest first, folders before files
    4. write: created and modified files

    Moved entries appear twice, once to stage and once to arrive. With every
    moved entry out of the way before anything is removed, a deleted folder
    only holds deleted entries, and a new path is free once deletions ran.
    """
    stage: list[FSMutation] = []
    remove: list[FSMutation] = []
    arrive: list[FSMutation] = []
    write: list[FSMutation] = []
    for mutation in mutations:
        if mutation.kind == MutationKind.MOVED:
            stage.append(mutation)
            arrive.append(mutation)
        elif mutation.kind == MutationKind.DELETED:
            remove.append(mutation)
        elif mutation.kind == MutationKind.CREATED and _new(mutation).is_folder:
            arrive.append(mutation)
        else:
            write.append(mutation)

    stage.sort(key=lambda m: (-_previous(m).depth, _previous(m).full_path))
    remove.sort(key=lambda m: (-_previous(m).depth, _previous(m).full_path))
    arrive.sort(key=lambda m: (_new(m).depth, not _new(m).is_folder, _new(m).full_path))
    write.sort(key=lambda m: (_new(m).full_path, m.kind))
    return (
        [(Step.STAGE, m) for m in stage]
        + [(Step.REMOVE, m) for m in remove]
        + [(Step.ARRIVE, m) for m in arrive]
        + [(Step.WRITE, m) for m in write]
    )


def relocate(path: str, folder_moves: Sequence[tuple[str, str]]) -> str:
    """Map a Previous-generation path to where earlier folder moves put it."""
    for from_path, to_path in folder_moves:
        if path == from_path:
            path = to_path
        elif path.startswith(from_path.rstrip("/") + "/"):
            path = to_path + path[len(from_path.rstrip("/")) :]
    return path


def reuses_path(removed: FSEntry, arrival: FSMutation) -> bool:
    """Whether ``arrival`` can take the path of ``removed`` without it being removed first.

    A file overwrites a file and a created folder adopts the emptied folder;
    any other arrival needs the path cleared.
    """
    new = _new(arrival)
    if removed.is_folder != new.is_folder:
        return False
    return not removed.is_folder or arrival.kind == MutationKind.CREATED


def _under(path: str, folder: str) -> bool:
    return path == folder or path.startswith(folder.rstrip("/") + "/")


def kept_deletions(mutations: Sequence[FSMutation]) -> set[int]:
    """Return the IDs of deleted entries whose path is handed over instead of removed.

    An entry is kept only when its arrival ``reuses_path``, it is not carried
    off inside a moved folder, and its parent folder stays too.
    """
    arrivals = {
        _new(m).full_path: m
        for m in mutations
        if m.kind in (MutationKind.CREATED, MutationKind.MOVED)
    }
    moved_folders = [
        _previous(m).full_path
        for m in mutations
        if m.kind == MutationKind.MOVED and _new(m).is_folder and _previous(m).depth > 0
    ]
    deleted = sorted(
        (_previous(m) for m in mutations if m.kind == MutationKind.DELETED),
        key=lambda entry: entry.depth,
    )

    kept: set[int] = set()
    removed_folders: set[str] = set()
    for entry in deleted:
        if entry.depth == 0:
            continue
        path = entry.full_path
        arrival = arrivals.get(path)
        if (
            arrival is not None
            and reuses_path(entry, arrival)
            and posixpath.dirname(path) not in removed_folders
            and not any(_under(path, folder) for folder in moved_folders)
        ):
            kept.add(entry.entry_id)
        elif entry.is_folder:
            removed_folders.add(path)
    return kept


@dataclass
class _ApplyRun:
    """Bookkeeping for one ``apply`` call."""

    # (path before, path after) for every folder moved so far, in order
    folder_moves: list[tuple[str, str]] = field(default_factory=list)
    # deleted entries whose path an arriving entry takes over as it is
    kept: set[int] = field(default_factory=set)


def _task_error(task: asyncio.Task[None]) -> BaseException | None:
    return None if task.cancelled() else task.exception()


class OneWaySync:
    """Replays the diff of one file system from ``source`` onto ``destination``."""

    def __init__(
        self, source: FileSource, destination: FileDestination, store: SnapshotStore
    ) -> None:
        self.source = source
        self.destination = destination
        self.store = store

    async def sync(self, fs_name: str) -> int:
        """Apply the pending diff of ``fs_name`` and mark it consumed.

        Does nothing for a Stable file system. On failure the Changed flag is
        left set so the same diff is applied again next time. Returns the
        number of mutations applied.
        """
        await self.store.claim(fs_name)
        try:
            state = await self.store.tracking_state(fs_name)
            if not state.is_changed:
                logger.info("Nothing to sync for %r", fs_name)
                return 0
            mutations = await self.store.mutations(fs_name)
            logger.info("Syncing %d mutations of %r", len(mutations), fs_name)
            await self.apply(mutations)
            await self.store.set_changed(fs_name, False)
        except SnapSyncError as exc:
            logger.error("Sync of %r failed: %s", fs_name, exc)
            raise
        finally:
            await self.store.release(fs_name)
        logger.info("Synced %r", fs_name)
        return len(mutations)

    async def apply(self, mutations: Sequence[FSMutation]) -> None:
        """Apply ``mutations`` to the destination.

        Every mutation is validated before the destination is touched.
        """
        for mutation in mutations:
            validate_mutation(mutation)

        run = _ApplyRun(kept=kept_deletions(mutations))

        for step, mutation in plan_mutations(mutations):
            await self._apply_step(step, mutation, run)

    async def _apply_step(self, step: Step, mutation: FSMutation, run: _ApplyRun) -> None:
        entry = _new(mutation)
        try:
            if step == Step.STAGE:
                await self._stage(mutation, run)
            elif step == Step.REMOVE:
                await self._remove(entry, run)
            elif mutation.kind == MutationKind.MOVED:
                await self._place(mutation)
            elif entry.is_folder:
                if entry.depth == 0:
                    logger.debug("Destination root already exists")
                    return
                logger.info("Creating folder %s", entry.full_path)
                await self.destination.mk_dir(entry.full_path)
            else:
                logger.info("Writing file %s (%s)", entry.full_path, mutation.kind)
                await self._transfer(entry, entry.full_path)
        except SnapSyncError:
            raise
        except Exception as exc:
            raise SyncApplyError(
                f"cannot apply {mutation.kind} mutation of entry {entry.entry_id} "
                f"({entry.full_path}): {exc}"
            ) from exc

    async def _stage(self, mutation: FSMutation, run: _ApplyRun) -> None:
        previous, new = _previous(mutation), _new(mutation)
        if previous.depth == 0:
            logger.warning("Not moving the destination root of %r", new.fs_name)
            return
        from_path, to_path = previous.full_path, staging_path(new)
        if new.is_folder:
            run.folder_moves.append((from_path, to_path))
        logger.debug("Moving %s aside to %s", from_path, to_path)
        try:
            if new.is_folder:
                await self.destination.mv_dir(from_path, to_path)
            else:
                await self.destination.mv_file(from_path, to_path)
        except FileNotFoundError:
            # neither at its old path nor staged: an earlier run already placed it
            logger.debug("Entry %d already moved on from %s", new.entry_id, from_path)

    async def _place(self, mutation: FSMutation) -> None:
        previous, new = _previous(mutation), _new(mutation)
        if previous.depth == 0:
            return
        from_path, to_path = staging_path(new), new.full_path
        logger.info("Moving %s to %s", previous.full_path, to_path)
        if new.is_folder:
            await self.destination.mv_dir(from_path, to_path)
        else:
            await self.destination.mv_file(from_path, to_path)

    async def _remove(self, entry: FSEntry, run: _ApplyRun) -> None:
        if entry.depth == 0:
            logger.warning("Not removing the destination root of %r", entry.fs_name)
            return
        path = relocate(entry.full_path, run.folder_moves)
        if entry.entry_id in run.kept:
            logger.debug("Keeping %s: taken over by an arriving entry", path)
            return
        logger.info("Removing %s", path)
        if entry.is_folder:
            await self.destination.rm_dir(path)
        else:
            await self.destination.rm_file(path)

    async def _transfer(self, entry: FSEntry, path: str) -> None:
        """Stream one file from the source into the destination.

        The writer is cancelled as soon as the reader fails, and the reader
        as soon as the writer fails.
        """
        stream = self.source.stream_file_data(entry)
        writer = asyncio.create_task(self.destination.mk_file(path, stream.chunks))
        tasks = {stream.producer, writer}
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            pending = [task for task in tasks if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.wait(pending)

        read_error = _task_error(stream.producer)
        if read_error is not None:
            raise TransferError(
                f"cannot read {entry.full_path} (entry {entry.entry_id}): {read_error}"
            ) from read_error
        write_error = _task_error(writer)
        if write_error is not None:
            raise TransferError(f"cannot write {path}: {write_error}") from write_error
        if writer.cancelled():
            raise TransferError(f"writing {path} was cancelled")
