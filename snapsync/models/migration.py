"""Schema migration bookkeeping model."""

from __future__ import annotations

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from snapsync.models.base import Base


class SchemaMigration(Base):
    """Latest migration step and whether it finished."""

    __tablename__ = "schema_migrations"

    version: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    status: Mapped[str] = mapped_column(String, nullable=False)
