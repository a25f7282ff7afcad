"""SQLAlchemy ORM models for snapsync."""

from snapsync.models.base import Base
from snapsync.models.filesystem import FileSystemEntry
from snapsync.models.migration import SchemaMigration
from snapsync.models.tracking import TrackedFileSystem, TrackerDiff

__all__ = [
    "Base",
    "FileSystemEntry",
    "SchemaMigration",
    "TrackedFileSystem",
    "TrackerDiff",
]
