"""Snapshot entry model: two generations of file system state per tracked file system."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Enum, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from snapsync.filesystem.entries import Version
from snapsync.models.base import Base

VersionType = Enum(
    Version,
    name="snapshot_version",
    native_enum=False,
    length=1,
    values_callable=lambda enum: [member.value for member in enum],
    validate_strings=True,
)


class FileSystemEntry(Base):
    """One file or folder observed by a walk, labelled with its generation."""

    __tablename__ = "filesystem"

    fs_name: Mapped[str] = mapped_column(String, primary_key=True)
    version: Mapped[Version] = mapped_column(VersionType, primary_key=True)
    entry_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    is_folder: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_entry_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    path: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    parent_entry_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    modified: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)  # files only
    hash: Mapped[str] = mapped_column(Text, nullable=False, default="")  # files only

    __table_args__ = (Index("idx_filesystem_entry", "fs_name", "entry_id"),)
