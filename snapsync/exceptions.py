"""Application-level exception types.

Convention:
- ``SnapSyncError`` is the root of everything the core raises on purpose.
  Callers that only want to know "did the refresh/sync fail" catch it.
- Errors coming from a library (SQLAlchemy, ``OSError``) are never leaked
  bare from the store or the walkers; they are wrapped in the matching
  subclass with ``raise ... from exc`` so the original stays on ``__cause__``.
- ``asyncio.CancelledError`` is never wrapped; cancellation propagates as is.
"""

from __future__ import annotations


class SnapSyncError(Exception):
    """Base class for all snapsync errors."""


class SnapshotStoreError(SnapSyncError):
    """Raised when a snapshot store operation fails at the database level.

    The transaction that was running is rolled back before this propagates,
    so the stored generations are exactly as they were before the call.
    """


class MigrationError(SnapshotStoreError):
    """Raised when the database schema cannot be brought up to date."""


class MigrationInProgressError(MigrationError):
    """Raised when the last recorded migration never finished."""

    def __init__(self, version: int) -> None:
        self.version = version
        super().__init__(
            f"unable to apply database migration: migration version {version} is recorded "
            "'in progress', probably as the result of a previous failure"
        )


class FileSystemBusyError(SnapSyncError):
    """Raised when a refresh or sync targets a file system already being worked on."""

    def __init__(self, fs_name: str) -> None:
        self.fs_name = fs_name
        super().__init__(f"file system {fs_name!r} is already being refreshed or synced")


class WalkError(SnapSyncError):
    """Raised when a tree walk cannot complete."""


class MutationError(SnapSyncError):
    """Base class for mutations that cannot be applied as described."""


class MutationShapeError(MutationError):
    """Raised when a mutation does not carry the records its kind requires."""


class UnknownMutationError(MutationError):
    """Raised for a mutation kind the applier does not know about."""


class TransferError(SnapSyncError):
    """Raised when streaming a file from a source to a destination fails."""


class SyncApplyError(SnapSyncError):
    """Raised when the destination rejects a directory or move operation."""


class ChannelClosedError(SnapSyncError):
    """Raised when sending on a channel that has already been closed."""
