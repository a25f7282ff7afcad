"""Per file system tracking state and refresh bookkeeping."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from snapsync.models.base import Base


class TrackedFileSystem(Base):
    """Tracking flags for one file system.

    ``is_changed`` is set when a refresh populated the New generation and no
    sync has consumed the resulting diff yet. ``sync_in_progress`` is the
    claim that serializes refreshes and syncs of the same file system.
    """

    __tablename__ = "tracked_filesystem"

    fs_name: Mapped[str] = mapped_column(String, primary_key=True)
    is_changed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sync_in_progress: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class TrackerDiff(Base):
    """One row per successful refresh cycle."""

    __tablename__ = "tracker_diff"

    diff_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    fs_name: Mapped[str] = mapped_column(String, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
