"""Snapshot entries and the mutations computed between two generations of them."""

from __future__ import annotations

import posixpath
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class Version(StrEnum):
    """Generation tag attached to every stored entry."""

    PREVIOUS = "P"
    NEW = "N"


class MutationKind(StrEnum):
    """How an entry differs between the Previous and New generations."""

    CREATED = "created"
    DELETED = "deleted"
    MODIFIED = "modified"
    MOVED = "moved"


@dataclass(frozen=True)
class FSEntry:
    """One file or folder observed during a walk.

    ``entry_id`` is the inode number for local trees and the folder/file ID
    for remote ones. It is only unique within one ``fs_name``.
    ``path`` is the POSIX path of the parent folder relative to the walked
    root ("/" for top-level entries); it is kept for convenience, identity
    comes from ``entry_id`` and ``parent_entry_id``.
    """

    fs_name: str
    entry_id: int
    is_folder: bool
    path: str
    name: str
    parent_entry_id: int
    created: datetime
    modified: datetime
    size: int | None = None
    hash: str = ""
    is_deleted: bool = False
    deleted_entry_id: int = 0

    @property
    def full_path(self) -> str:
        """Path of the entry itself, relative to the walked root."""
        return posixpath.join(self.path, self.name)

    @property
    def depth(self) -> int:
        """Number of path components below the root (the root itself is 0)."""
        return len([part for part in self.full_path.split("/") if part])


@dataclass(frozen=True)
class EntryMutation:
    """A stored entry as it appears in one generation."""

    version: Version
    entry: FSEntry


@dataclass
class FSMutation:
    """A classified difference for one entry ID.

    Created and Deleted carry one record; Modified and Moved carry two,
    ordered Previous then New.
    """

    kind: MutationKind
    details: list[EntryMutation] = field(default_factory=list)

    @property
    def entry_id(self) -> int | None:
        """Entry ID shared by all records, or None for an empty mutation."""
        return self.details[0].entry.entry_id if self.details else None


@dataclass
class TrackingState:
    """Tracking flags of one file system."""

    fs_name: str
    is_changed: bool = False
    sync_in_progress: bool = False
