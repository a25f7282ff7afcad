"""Refresh orchestration: the Stable/Changed state machine over one file system."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from snapsync.exceptions import SnapSyncError

if TYPE_CHECKING:
    from snapsync.filesystem.base import Walker
    from snapsync.filesystem.entries import FSMutation, TrackingState
    from snapsync.services.snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)


class Tracker:
    """Keeps the two snapshot generations of each file system current.

    A file system is Stable while its last diff has been synced and Changed
    while a diff is waiting. Refreshing a Stable file system slides New into
    Previous before walking; refreshing a Changed one only rebuilds New so the
    pending diff keeps its Previous baseline.
    """

    def __init__(self, store: SnapshotStore) -> None:
        self.store = store

    async def refresh(self, fs_name: str, walker: Walker, root: str) -> int:
        """Walk ``root`` into the New generation and flag the file system Changed.

        Rotation or clearing, ingestion and the flag update commit together;
        any failure rolls all of them back. Returns the recorded diff ID.
        """
        await self.store.claim(fs_name)
        try:
            async with self.store.transaction() as snapshot:
                state = await snapshot.tracking_state(fs_name)
                if state.is_changed:
                    logger.info("Refreshing %r: unsynced changes pending, rebuilding New", fs_name)
                    await snapshot.clear_new(fs_name)
                else:
                    logger.info("Refreshing %r: rotating generations", fs_name)
                    await snapshot.rotate(fs_name)

                entries, consumer = snapshot.ingest(fs_name)
                await walker.walk(fs_name, root, entries, consumer)

                await snapshot.set_changed(fs_name, True)
                diff_id = await snapshot.record_diff(fs_name)
        except asyncio.CancelledError:
            logger.info("Refresh of %r cancelled", fs_name)
            raise
        except SnapSyncError as exc:
            logger.error("Refresh of %r failed: %s", fs_name, exc)
            raise
        finally:
            await self.store.release(fs_name)
        logger.info("Refreshed %r (diff %d)", fs_name, diff_id)
        return diff_id

    async def tracking_state(self, fs_name: str) -> TrackingState:
        return await self.store.tracking_state(fs_name)

    async def list_mutations(self, fs_name: str) -> list[FSMutation]:
        """Return the diff between the Previous and New generations."""
        return await self.store.mutations(fs_name)

    async def mark_synced(self, fs_name: str) -> None:
        """Record that the pending diff has been applied (Changed to Stable)."""
        await self.store.set_changed(fs_name, False)
        logger.info("Marked %r as synced", fs_name)
