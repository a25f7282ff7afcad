"""Tests for the versioned snapshot store and its diff."""

from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from snapsync.exceptions import FileSystemBusyError, SnapshotStoreError
from snapsync.filesystem.entries import MutationKind, Version
from snapsync.services.snapshot_store import SnapshotStore, diff_queries
from tests.conftest import FS_NAME, change_entry

if TYPE_CHECKING:
    from snapsync.config import Settings
    from snapsync.filesystem.entries import FSEntry


class TestDiff:
    async def test_first_walk_is_all_created(
        self, store: SnapshotStore, load_new, sample_tree: list[FSEntry]
    ) -> None:
        await load_new(sample_tree)

        mutations = await store.mutations(FS_NAME)

        assert len(mutations) == len(sample_tree)
        assert {m.kind for m in mutations} == {MutationKind.CREATED}
        assert {m.entry_id for m in mutations} == {e.entry_id for e in sample_tree}
        for mutation in mutations:
            assert len(mutation.details) == 1
            assert mutation.details[0].version == Version.NEW

    async def test_unchanged_tree_after_rotate_has_no_mutations(
        self, store: SnapshotStore, load_new, sample_tree: list[FSEntry]
    ) -> None:
        await load_new(sample_tree)
        await store.rotate(FS_NAME)
        await load_new(sample_tree)

        assert await store.mutations(FS_NAME) == []

    async def test_empty_new_is_all_deleted(
        self, store: SnapshotStore, load_new, sample_tree: list[FSEntry]
    ) -> None:
        await load_new(sample_tree)
        await store.rotate(FS_NAME)
        await load_new([])

        mutations = await store.mutations(FS_NAME)

        assert len(mutations) == len(sample_tree)
        assert {m.kind for m in mutations} == {MutationKind.DELETED}
        for mutation in mutations:
            assert [d.version for d in mutation.details] == [Version.PREVIOUS]

    async def test_content_change_is_modified(
        self, store: SnapshotStore, load_new, sample_tree: list[FSEntry]
    ) -> None:
        await load_new(sample_tree)
        await store.rotate(FS_NAME)
        await load_new(change_entry(sample_tree, 20002, hash="1111111111111111111"))

        mutations = await store.mutations(FS_NAME)

        assert len(mutations) == 1
        (mutation,) = mutations
        assert mutation.kind == MutationKind.MODIFIED
        previous, new = (d.entry for d in mutation.details)
        assert [d.version for d in mutation.details] == [Version.PREVIOUS, Version.NEW]
        assert previous.hash == "9876543210100020002"
        assert new.hash == "1111111111111111111"
        assert previous.parent_entry_id == new.parent_entry_id == 20001

    async def test_parent_change_is_moved(
        self, store: SnapshotStore, load_new, sample_tree: list[FSEntry]
    ) -> None:
        await load_new(sample_tree)
        await store.rotate(FS_NAME)
        await load_new(change_entry(sample_tree, 20002, path="/Folder3", parent_entry_id=30001))

        mutations = await store.mutations(FS_NAME)

        assert len(mutations) == 1
        (mutation,) = mutations
        assert mutation.kind == MutationKind.MOVED
        previous, new = (d.entry for d in mutation.details)
        assert previous.full_path == "/Folder2/File2"
        assert new.full_path == "/Folder3/File2"
        assert previous.hash == new.hash

    async def test_move_with_content_change_reports_both(
        self, store: SnapshotStore, load_new, sample_tree: list[FSEntry]
    ) -> None:
        await load_new(sample_tree)
        await store.rotate(FS_NAME)
        await load_new(
            change_entry(
                sample_tree, 20002, path="/Folder3", parent_entry_id=30001, hash="42"
            )
        )

        mutations = await store.mutations(FS_NAME)

        assert sorted(m.kind for m in mutations) == [MutationKind.MODIFIED, MutationKind.MOVED]
        assert {m.entry_id for m in mutations} == {20002}

    async def test_file_turned_folder_is_deleted_and_created(
        self, store: SnapshotStore, load_new, sample_tree: list[FSEntry]
    ) -> None:
        # the freed inode of File000 was handed to a new folder of the same name
        await load_new(sample_tree)
        await store.rotate(FS_NAME)
        await load_new(change_entry(sample_tree, 1000003, is_folder=True, size=None, hash=""))

        mutations = await store.mutations(FS_NAME)

        assert [(m.kind, m.entry_id) for m in mutations] == [
            (MutationKind.CREATED, 1000003),
            (MutationKind.DELETED, 1000003),
        ]
        created, deleted = (m.details[0].entry for m in mutations)
        assert created.is_folder
        assert not deleted.is_folder
        assert created.full_path == deleted.full_path == "/File000"

    async def test_folder_turned_file_is_deleted_and_created(
        self, store: SnapshotStore, load_new, sample_tree: list[FSEntry]
    ) -> None:
        await load_new(sample_tree)
        await store.rotate(FS_NAME)
        await load_new(change_entry(sample_tree, 30001, is_folder=False, size=1, hash="42"))

        mutations = await store.mutations(FS_NAME)

        assert [(m.kind, m.entry_id) for m in mutations] == [
            (MutationKind.CREATED, 30001),
            (MutationKind.DELETED, 30001),
        ]

    async def test_folder_hash_is_never_compared(
        self, store: SnapshotStore, load_new, sample_tree: list[FSEntry]
    ) -> None:
        await load_new(sample_tree)
        await store.rotate(FS_NAME)
        await load_new(change_entry(sample_tree, 30001, hash="stray"))

        assert await store.mutations(FS_NAME) == []

    async def test_rename_in_place_is_moved(
        self, store: SnapshotStore, load_new, sample_tree: list[FSEntry]
    ) -> None:
        await load_new(sample_tree)
        await store.rotate(FS_NAME)
        await load_new(change_entry(sample_tree, 20002, name="Renamed"))

        mutations = await store.mutations(FS_NAME)

        assert [(m.kind, m.entry_id) for m in mutations] == [(MutationKind.MOVED, 20002)]
        previous, new = (d.entry for d in mutations[0].details)
        assert previous.full_path == "/Folder2/File2"
        assert new.full_path == "/Folder2/Renamed"

    async def test_entries_marked_deleted_are_ignored(
        self, store: SnapshotStore, load_new, sample_tree: list[FSEntry]
    ) -> None:
        await load_new(sample_tree)
        await store.rotate(FS_NAME)
        await load_new(change_entry(sample_tree, 1000003, is_deleted=True))

        mutations = await store.mutations(FS_NAME)

        assert [(m.kind, m.entry_id) for m in mutations] == [(MutationKind.DELETED, 1000003)]

    async def test_file_systems_are_isolated(
        self, store: SnapshotStore, load_new, sample_tree: list[FSEntry]
    ) -> None:
        await load_new(sample_tree)
        await load_new([replace(e, fs_name="other") for e in sample_tree], fs_name="other")
        await store.rotate("other")

        assert len(await store.mutations(FS_NAME)) == len(sample_tree)
        assert {m.kind for m in await store.mutations("other")} == {MutationKind.DELETED}

    def test_kinds_and_versions_are_bound_parameters(self) -> None:
        for query in diff_queries("x'; DROP TABLE filesystem; --").values():
            sql = str(query)
            assert "DROP TABLE" not in sql
            assert "'P'" not in sql
            assert "'N'" not in sql


class TestGenerations:
    async def test_rotate_moves_new_to_previous(
        self, store: SnapshotStore, load_new, sample_tree: list[FSEntry]
    ) -> None:
        await load_new(sample_tree)

        await store.rotate(FS_NAME)

        assert await store.entries(FS_NAME, Version.NEW) == []
        assert await store.entries(FS_NAME, Version.PREVIOUS) == sorted(
            sample_tree, key=lambda e: e.entry_id
        )

    async def test_rotate_discards_old_previous(
        self, store: SnapshotStore, load_new, sample_tree: list[FSEntry]
    ) -> None:
        await load_new(sample_tree)
        await store.rotate(FS_NAME)
        await load_new(sample_tree[:2])

        await store.rotate(FS_NAME)

        previous = await store.entries(FS_NAME, Version.PREVIOUS)
        assert [e.entry_id for e in previous] == sorted(e.entry_id for e in sample_tree[:2])

    async def test_clear_new_keeps_previous(
        self, store: SnapshotStore, load_new, sample_tree: list[FSEntry]
    ) -> None:
        await load_new(sample_tree)
        await store.rotate(FS_NAME)
        await load_new(sample_tree[:3])

        await store.clear_new(FS_NAME)

        assert await store.entries(FS_NAME, Version.NEW) == []
        assert len(await store.entries(FS_NAME, Version.PREVIOUS)) == len(sample_tree)

    async def test_failed_rotate_leaves_both_generations(
        self, store: SnapshotStore, load_new, sample_tree: list[FSEntry]
    ) -> None:
        await load_new(sample_tree)
        await store.rotate(FS_NAME)
        await load_new(change_entry(sample_tree, 20002, hash="changed"))
        previous_before = await store.entries(FS_NAME, Version.PREVIOUS)
        new_before = await store.entries(FS_NAME, Version.NEW)

        original_execute = AsyncSession.execute
        calls = 0

        async def fail_second_statement(self, statement, *args, **kwargs):  # type: ignore[no-untyped-def]
            nonlocal calls
            calls += 1
            if calls == 2:
                raise OperationalError("UPDATE filesystem", {}, Exception("disk I/O error"))
            return await original_execute(self, statement, *args, **kwargs)

        with patch.object(AsyncSession, "execute", fail_second_statement):
            with pytest.raises(SnapshotStoreError, match="cannot rotate"):
                await store.rotate(FS_NAME)

        assert calls == 2
        assert await store.entries(FS_NAME, Version.PREVIOUS) == previous_before
        assert await store.entries(FS_NAME, Version.NEW) == new_before

    async def test_is_empty(
        self, store: SnapshotStore, load_new, sample_tree: list[FSEntry]
    ) -> None:
        assert await store.is_empty(FS_NAME)
        await load_new(sample_tree)
        assert not await store.is_empty(FS_NAME)


class TestIngest:
    async def test_roundtrip_preserves_fields(
        self, store: SnapshotStore, load_new, sample_tree: list[FSEntry]
    ) -> None:
        await load_new(sample_tree)

        stored = {e.entry_id: e for e in await store.entries(FS_NAME, Version.NEW)}

        for entry in sample_tree:
            assert stored[entry.entry_id] == entry

    async def test_duplicate_entry_fails_and_stores_nothing(
        self, store: SnapshotStore, sample_tree: list[FSEntry]
    ) -> None:
        channel, consumer = store.ingest(FS_NAME)
        await channel.send(sample_tree[0])
        await channel.send(sample_tree[0])
        channel.close()

        with pytest.raises(SnapshotStoreError, match="cannot store entries"):
            await consumer

        assert await store.is_empty(FS_NAME)

    async def test_entry_of_another_file_system_is_rejected(
        self, store: SnapshotStore, sample_tree: list[FSEntry]
    ) -> None:
        channel, consumer = store.ingest("other")
        await channel.send(sample_tree[0])
        channel.close()

        with pytest.raises(SnapshotStoreError, match="belongs to"):
            await consumer

    async def test_transaction_rolls_back_ingested_entries(
        self, store: SnapshotStore, sample_tree: list[FSEntry]
    ) -> None:
        with pytest.raises(RuntimeError):
            async with store.transaction() as snapshot:
                channel, consumer = snapshot.ingest(FS_NAME)
                for entry in sample_tree:
                    await channel.send(entry)
                channel.close()
                await consumer
                raise RuntimeError("abort")

        assert await store.is_empty(FS_NAME)

    async def test_transaction_cancels_abandoned_consumer(self, store: SnapshotStore) -> None:
        with pytest.raises(RuntimeError):
            async with store.transaction() as snapshot:
                _, consumer = snapshot.ingest(FS_NAME)
                raise RuntimeError("walker never started")

        assert consumer.cancelled()


class TestTrackingFlags:
    async def test_unknown_file_system_is_stable(self, store: SnapshotStore) -> None:
        state = await store.tracking_state(FS_NAME)
        assert not state.is_changed
        assert not state.sync_in_progress

    async def test_set_changed(self, store: SnapshotStore) -> None:
        await store.set_changed(FS_NAME, True)
        assert (await store.tracking_state(FS_NAME)).is_changed
        await store.set_changed(FS_NAME, False)
        assert not (await store.tracking_state(FS_NAME)).is_changed

    async def test_claim_is_exclusive(self, store: SnapshotStore) -> None:
        await store.claim(FS_NAME)
        assert (await store.tracking_state(FS_NAME)).sync_in_progress

        with pytest.raises(FileSystemBusyError):
            await store.claim(FS_NAME)
        await store.claim("other")

        await store.release(FS_NAME)
        await store.claim(FS_NAME)

    async def test_reopening_clears_claims_left_by_a_crash(
        self, store: SnapshotStore, test_settings: Settings
    ) -> None:
        await store.claim(FS_NAME)
        await store.claim("other")
        await store.close()

        reopened = await SnapshotStore.open(test_settings)
        try:
            assert not (await reopened.tracking_state(FS_NAME)).sync_in_progress
            await reopened.claim(FS_NAME)
            await reopened.claim("other")
        finally:
            await reopened.close()

    async def test_release_all_counts_cleared_claims(self, store: SnapshotStore) -> None:
        await store.set_changed("idle", True)
        await store.claim(FS_NAME)

        assert await store.release_all() == 1
        assert await store.release_all() == 0
        assert (await store.tracking_state("idle")).is_changed

    async def test_record_diff_ids_increase(self, store: SnapshotStore) -> None:
        async with store.transaction() as snapshot:
            first = await snapshot.record_diff(FS_NAME)
            second = await snapshot.record_diff(FS_NAME)
        assert second > first
