"""Shared test fixtures for snapsync."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import pytest

from snapsync.config import Settings
from snapsync.database import create_engine
from snapsync.filesystem.entries import FSEntry
from snapsync.services.snapshot_store import SnapshotStore

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable, Iterable
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine

FS_NAME = "remote"
ROOT_ID = 1
TIMESTAMP = datetime(2013, 3, 21, 18, 31, 49, tzinfo=timezone.utc)


def _entry(
    entry_id: int,
    path: str,
    name: str,
    parent_entry_id: int,
    *,
    is_folder: bool = False,
    size: int | None = None,
    content_hash: str = "",
) -> FSEntry:
    return FSEntry(
        fs_name=FS_NAME,
        entry_id=entry_id,
        is_folder=is_folder,
        path=path,
        name=name,
        parent_entry_id=parent_entry_id,
        created=TIMESTAMP,
        modified=TIMESTAMP,
        size=size,
        hash=content_hash,
    )


@pytest.fixture
def sample_tree() -> list[FSEntry]:
    """root, Folder2, Folder2/File2, Folder3 and File000, parents first."""
    return [
        _entry(ROOT_ID, "/", "", ROOT_ID, is_folder=True),
        _entry(20001, "/", "Folder2", ROOT_ID, is_folder=True),
        _entry(
            20002, "/Folder2", "File2", 20001, size=789, content_hash="9876543210100020002"
        ),
        _entry(30001, "/", "Folder3", ROOT_ID, is_folder=True),
        _entry(1000003, "/", "File000", ROOT_ID, size=456, content_hash="9876543210101000003"),
    ]


def change_entry(entries: Iterable[FSEntry], entry_id: int, **changes: object) -> list[FSEntry]:
    """Return a copy of ``entries`` with one entry's fields replaced."""
    return [
        replace(entry, **changes) if entry.entry_id == entry_id else entry  # type: ignore[arg-type]
        for entry in entries
    ]


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings with a throwaway database and small buffers to exercise backpressure."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'db' / 'snapsync.db'}",
        entries_channel_size=2,
        chunk_channel_size=2,
        transfer_chunk_size=4,
        hash_buffer_size=8,
        insert_batch_size=3,
    )


@pytest.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine]:
    """Create a test database engine with no schema."""
    engine, _ = create_engine(test_settings)
    yield engine
    await engine.dispose()


@pytest.fixture
async def store(test_settings: Settings) -> AsyncGenerator[SnapshotStore]:
    """A snapshot store on a freshly migrated database."""
    snapshot_store = await SnapshotStore.open(test_settings)
    yield snapshot_store
    await snapshot_store.close()


@pytest.fixture
def load_new(
    store: SnapshotStore,
) -> Callable[[Iterable[FSEntry]], Awaitable[None]]:
    """Return a helper storing entries as the New generation of their file system."""

    async def _load(entries: Iterable[FSEntry], fs_name: str = FS_NAME) -> None:
        channel, consumer = store.ingest(fs_name)
        for entry in entries:
            await channel.send(entry)
        channel.close()
        await consumer

    return _load
