"""Versioned snapshot store: two generations of entries per file system and their diff."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from sqlalchemy import and_, delete, func, insert, or_, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import aliased

from snapsync.database import create_engine
from snapsync.exceptions import FileSystemBusyError, SnapshotStoreError
from snapsync.filesystem.channels import Channel
from snapsync.filesystem.entries import (
    EntryMutation,
    FSEntry,
    FSMutation,
    MutationKind,
    TrackingState,
    Version,
)
from snapsync.models.filesystem import FileSystemEntry
from snapsync.models.tracking import TrackedFileSystem, TrackerDiff
from snapsync.services.datetime_service import ensure_utc, now_utc
from snapsync.services.migration_service import Migrator

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from sqlalchemy import ColumnElement, Select
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from snapsync.config import Settings

logger = logging.getLogger(__name__)


def _to_entry(row: FileSystemEntry) -> FSEntry:
    return FSEntry(
        fs_name=row.fs_name,
        entry_id=row.entry_id,
        is_folder=row.is_folder,
        path=row.path,
        name=row.name,
        parent_entry_id=row.parent_entry_id,
        created=ensure_utc(row.created),
        modified=ensure_utc(row.modified),
        size=row.size,
        hash=row.hash,
        is_deleted=row.is_deleted,
        deleted_entry_id=row.deleted_entry_id,
    )


def _to_row(entry: FSEntry, version: Version) -> dict[str, object]:
    return {
        "fs_name": entry.fs_name,
        "version": version,
        "entry_id": entry.entry_id,
        "is_folder": entry.is_folder,
        "is_deleted": entry.is_deleted,
        "deleted_entry_id": entry.deleted_entry_id,
        "path": entry.path,
        "name": entry.name,
        "parent_entry_id": entry.parent_entry_id,
        "created": ensure_utc(entry.created),
        "modified": ensure_utc(entry.modified),
        "size": entry.size,
        "hash": entry.hash,
    }


def diff_queries(fs_name: str) -> dict[MutationKind, Select[tuple[FileSystemEntry, ...]]]:
    """Build the four classification queries between Previous and New.

    Created and Deleted select one entity; Modified and Moved select the
    (previous, new) pair. Entries marked deleted by the remote side take part
    in neither generation. An entry whose parent and content both changed is
    reported by both the Moved and the Modified query. An entry ID that turned
    from a file into a folder or back is a different entry: it is reported as
    Deleted (Previous) plus Created (New) and never as Modified or Moved.
    """
    previous = aliased(FileSystemEntry, name="previous")
    new = aliased(FileSystemEntry, name="new")

    def generation(alias: type[FileSystemEntry], version: Version) -> ColumnElement[bool]:
        return and_(
            alias.fs_name == fs_name,
            alias.version == version,
            alias.is_deleted.is_(False),
        )

    same_entry_in_new = and_(
        new.entry_id == previous.entry_id,
        new.is_folder == previous.is_folder,
        generation(new, Version.NEW),
    )
    same_entry_in_previous = and_(
        previous.entry_id == new.entry_id,
        previous.is_folder == new.is_folder,
        generation(previous, Version.PREVIOUS),
    )

    return {
        MutationKind.CREATED: (
            select(new)
            .outerjoin(previous, same_entry_in_previous)
            .where(generation(new, Version.NEW), previous.entry_id.is_(None))
            .order_by(new.entry_id)
        ),
        MutationKind.DELETED: (
            select(previous)
            .outerjoin(new, same_entry_in_new)
            .where(generation(previous, Version.PREVIOUS), new.entry_id.is_(None))
            .order_by(previous.entry_id)
        ),
        # folders carry no content, whatever their hash column holds
        MutationKind.MODIFIED: (
            select(previous, new)
            .join(new, same_entry_in_new)
            .where(
                generation(previous, Version.PREVIOUS),
                previous.is_folder.is_(False),
                new.hash != previous.hash,
            )
            .order_by(previous.entry_id)
        ),
        # a rename in place moves the entry as much as a new parent does
        MutationKind.MOVED: (
            select(previous, new)
            .join(new, same_entry_in_new)
            .where(
                generation(previous, Version.PREVIOUS),
                or_(
                    new.parent_entry_id != previous.parent_entry_id,
                    new.name != previous.name,
                ),
            )
            .order_by(previous.entry_id)
        ),
    }


class SnapshotSession:
    """Snapshot operations bound to one database transaction.

    Obtained from ``SnapshotStore.transaction()``; nothing is visible to other
    sessions until the transaction commits.
    """

    def __init__(self, session: AsyncSession, settings: Settings) -> None:
        self.session = session
        self.insert_batch_size = settings.insert_batch_size
        self.entries_channel_size = settings.entries_channel_size
        self._consumers: list[asyncio.Task[None]] = []

    async def rotate(self, fs_name: str) -> None:
        """Drop the Previous generation and relabel New as Previous."""
        try:
            await self.session.execute(
                delete(FileSystemEntry).where(
                    FileSystemEntry.fs_name == fs_name,
                    FileSystemEntry.version == Version.PREVIOUS,
                )
            )
            await self.session.execute(
                update(FileSystemEntry)
                .where(
                    FileSystemEntry.fs_name == fs_name,
                    FileSystemEntry.version == Version.NEW,
                )
                .values(version=Version.PREVIOUS)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            raise SnapshotStoreError(f"cannot rotate generations of {fs_name!r}: {exc}") from exc
        logger.debug("Rotated generations of %r", fs_name)

    async def clear_new(self, fs_name: str) -> None:
        """Drop the New generation, leaving Previous untouched."""
        try:
            await self.session.execute(
                delete(FileSystemEntry).where(
                    FileSystemEntry.fs_name == fs_name,
                    FileSystemEntry.version == Version.NEW,
                )
            )
        except SQLAlchemyError as exc:
            raise SnapshotStoreError(
                f"cannot clear the New generation of {fs_name!r}: {exc}"
            ) from exc
        logger.debug("Cleared New generation of %r", fs_name)

    def ingest(self, fs_name: str) -> tuple[Channel[FSEntry], asyncio.Task[None]]:
        """Start a consumer storing every entry received as version New.

        Returns the channel to send entries on and the consumer task. The
        consumer stops at the first failed insert and raises; the producer
        must then close the channel.
        """
        entries: Channel[FSEntry] = Channel(self.entries_channel_size)
        consumer = asyncio.create_task(self.consume(fs_name, entries))
        self._consumers.append(consumer)
        return entries, consumer

    async def consume(self, fs_name: str, entries: Channel[FSEntry]) -> None:
        """Insert entries from ``entries`` as version New until it is closed."""
        batch: list[dict[str, object]] = []
        count = 0
        async for entry in entries:
            if entry.fs_name != fs_name:
                raise SnapshotStoreError(
                    f"entry {entry.entry_id} belongs to {entry.fs_name!r}, not {fs_name!r}"
                )
            batch.append(_to_row(entry, Version.NEW))
            if len(batch) >= self.insert_batch_size:
                await self._insert(fs_name, batch)
                count += len(batch)
                batch = []
        if batch:
            await self._insert(fs_name, batch)
            count += len(batch)
        logger.debug("Stored %d entries for %r", count, fs_name)

    async def _insert(self, fs_name: str, rows: list[dict[str, object]]) -> None:
        try:
            await self.session.execute(insert(FileSystemEntry), rows)
        except SQLAlchemyError as exc:
            first, last = rows[0]["entry_id"], rows[-1]["entry_id"]
            logger.error("Failed to store entries %s..%s of %r: %s", first, last, fs_name, exc)
            raise SnapshotStoreError(
                f"cannot store entries of {fs_name!r} (entry IDs {first}..{last}): {exc}"
            ) from exc

    async def stop_consumers(self) -> None:
        """Cancel consumers still running, e.g. when the walk was cancelled."""
        pending = [task for task in self._consumers if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)
        self._consumers.clear()

    async def entries(self, fs_name: str, version: Version) -> list[FSEntry]:
        """Return every entry of one generation, ordered by entry ID."""
        try:
            result = await self.session.execute(
                select(FileSystemEntry)
                .where(FileSystemEntry.fs_name == fs_name, FileSystemEntry.version == version)
                .order_by(FileSystemEntry.entry_id)
            )
        except SQLAlchemyError as exc:
            raise SnapshotStoreError(f"cannot read entries of {fs_name!r}: {exc}") from exc
        return [_to_entry(row) for row in result.scalars().all()]

    async def is_empty(self, fs_name: str) -> bool:
        """Return True when neither generation holds any entry."""
        try:
            count = await self.session.scalar(
                select(func.count()).where(FileSystemEntry.fs_name == fs_name)
            )
        except SQLAlchemyError as exc:
            raise SnapshotStoreError(f"cannot count entries of {fs_name!r}: {exc}") from exc
        return not count

    async def mutations(self, fs_name: str) -> list[FSMutation]:
        """Classify the differences between Previous and New, grouped by kind."""
        mutations: list[FSMutation] = []
        try:
            for kind, query in diff_queries(fs_name).items():
                result = await self.session.execute(query)
                if kind in (MutationKind.CREATED, MutationKind.DELETED):
                    version = Version.NEW if kind == MutationKind.CREATED else Version.PREVIOUS
                    mutations.extend(
                        FSMutation(kind=kind, details=[EntryMutation(version, _to_entry(row))])
                        for row in result.scalars().all()
                    )
                else:
                    mutations.extend(
                        FSMutation(
                            kind=kind,
                            details=[
                                EntryMutation(Version.PREVIOUS, _to_entry(previous)),
                                EntryMutation(Version.NEW, _to_entry(new)),
                            ],
                        )
                        for previous, new in result.all()
                    )
        except SQLAlchemyError as exc:
            raise SnapshotStoreError(f"cannot compute mutations of {fs_name!r}: {exc}") from exc
        logger.debug("Found %d mutations for %r", len(mutations), fs_name)
        return mutations

    async def tracking_state(self, fs_name: str) -> TrackingState:
        """Return the flags of a file system; never-refreshed ones are Stable."""
        try:
            row = await self.session.get(TrackedFileSystem, fs_name, populate_existing=True)
        except SQLAlchemyError as exc:
            raise SnapshotStoreError(f"cannot read tracking state of {fs_name!r}: {exc}") from exc
        if row is None:
            return TrackingState(fs_name=fs_name)
        return TrackingState(
            fs_name=fs_name,
            is_changed=row.is_changed,
            sync_in_progress=row.sync_in_progress,
        )

    async def _ensure_tracked(self, fs_name: str) -> None:
        await self.session.execute(
            sqlite_insert(TrackedFileSystem)
            .values(fs_name=fs_name, is_changed=False, sync_in_progress=False)
            .on_conflict_do_nothing(index_elements=["fs_name"])
        )

    async def set_changed(self, fs_name: str, changed: bool) -> None:
        try:
            await self._ensure_tracked(fs_name)
            await self.session.execute(
                update(TrackedFileSystem)
                .where(TrackedFileSystem.fs_name == fs_name)
                .values(is_changed=changed)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            raise SnapshotStoreError(f"cannot update tracking state of {fs_name!r}: {exc}") from exc

    async def claim(self, fs_name: str) -> None:
        """Set the sync-in-progress flag, failing if it is already set."""
        try:
            await self._ensure_tracked(fs_name)
            result = await self.session.execute(
                update(TrackedFileSystem)
                .where(
                    TrackedFileSystem.fs_name == fs_name,
                    TrackedFileSystem.sync_in_progress.is_(False),
                )
                .values(sync_in_progress=True)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            raise SnapshotStoreError(f"cannot claim {fs_name!r}: {exc}") from exc
        if result.rowcount != 1:
            raise FileSystemBusyError(fs_name)

    async def release(self, fs_name: str) -> None:
        try:
            await self.session.execute(
                update(TrackedFileSystem)
                .where(TrackedFileSystem.fs_name == fs_name)
                .values(sync_in_progress=False)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            raise SnapshotStoreError(f"cannot release {fs_name!r}: {exc}") from exc

    async def release_all(self) -> int:
        """Clear every sync-in-progress flag and return how many were set."""
        try:
            result = await self.session.execute(
                update(TrackedFileSystem)
                .where(TrackedFileSystem.sync_in_progress.is_(True))
                .values(sync_in_progress=False)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            raise SnapshotStoreError(f"cannot clear stale claims: {exc}") from exc
        return result.rowcount

    async def record_diff(self, fs_name: str) -> int:
        """Record a completed refresh cycle and return its diff ID."""
        diff = TrackerDiff(fs_name=fs_name, timestamp=now_utc())
        try:
            self.session.add(diff)
            await self.session.flush()
        except SQLAlchemyError as exc:
            raise SnapshotStoreError(f"cannot record refresh of {fs_name!r}: {exc}") from exc
        return diff.diff_id


class SnapshotStore:
    """Owns the persisted snapshots and tracking flags.

    Every method runs in its own transaction. Use ``transaction()`` to group
    several operations into one unit of work.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        engine: AsyncEngine | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.engine = engine

    @classmethod
    async def open(cls, settings: Settings) -> SnapshotStore:
        """Create the engine, bring the schema up to date and return a store.

        A database belongs to one process at a time, so claims still set at
        this point were left behind by a process that died mid-refresh or
        mid-sync and are cleared.
        """
        engine, session_factory = create_engine(settings)
        store = cls(session_factory, settings, engine)
        try:
            await Migrator(engine).migrate_up()
            stale = await store.release_all()
        except BaseException:
            await engine.dispose()
            raise
        if stale:
            logger.warning("Cleared %d stale sync claim(s) left by an earlier run", stale)
        return store

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[SnapshotSession]:
        """Yield a SnapshotSession; commit on success, roll back on any error."""
        async with self.session_factory() as session:
            snapshot = SnapshotSession(session, self.settings)
            try:
                async with session.begin():
                    try:
                        yield snapshot
                    finally:
                        await snapshot.stop_consumers()
            except SQLAlchemyError as exc:
                raise SnapshotStoreError(f"snapshot transaction failed: {exc}") from exc

    async def rotate(self, fs_name: str) -> None:
        async with self.transaction() as snapshot:
            await snapshot.rotate(fs_name)

    async def clear_new(self, fs_name: str) -> None:
        async with self.transaction() as snapshot:
            await snapshot.clear_new(fs_name)

    def ingest(self, fs_name: str) -> tuple[Channel[FSEntry], asyncio.Task[None]]:
        """Like ``SnapshotSession.ingest`` but committing on its own once the channel closes."""
        entries: Channel[FSEntry] = Channel(self.settings.entries_channel_size)
        consumer = asyncio.create_task(self._ingest(fs_name, entries))
        return entries, consumer

    async def _ingest(self, fs_name: str, entries: Channel[FSEntry]) -> None:
        async with self.transaction() as snapshot:
            await snapshot.consume(fs_name, entries)

    async def entries(self, fs_name: str, version: Version) -> list[FSEntry]:
        async with self.transaction() as snapshot:
            return await snapshot.entries(fs_name, version)

    async def is_empty(self, fs_name: str) -> bool:
        async with self.transaction() as snapshot:
            return await snapshot.is_empty(fs_name)

    async def mutations(self, fs_name: str) -> list[FSMutation]:
        async with self.transaction() as snapshot:
            return await snapshot.mutations(fs_name)

    async def tracking_state(self, fs_name: str) -> TrackingState:
        async with self.transaction() as snapshot:
            return await snapshot.tracking_state(fs_name)

    async def set_changed(self, fs_name: str, changed: bool) -> None:
        async with self.transaction() as snapshot:
            await snapshot.set_changed(fs_name, changed)

    async def claim(self, fs_name: str) -> None:
        async with self.transaction() as snapshot:
            await snapshot.claim(fs_name)

    async def release(self, fs_name: str) -> None:
        async with self.transaction() as snapshot:
            await snapshot.release(fs_name)

    async def release_all(self) -> int:
        async with self.transaction() as snapshot:
            return await snapshot.release_all()
