"""Ordered, recorded schema migrations for the snapshot database."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import select, text
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from snapsync.exceptions import MigrationError, MigrationInProgressError
from snapsync.models import Base, FileSystemEntry, SchemaMigration, TrackedFileSystem, TrackerDiff

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy import Connection
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

MIGRATION_IN_PROGRESS = "in progress"
MIGRATION_APPLIED = "applied"


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    apply: Callable[[Connection], None]


def _create_snapshot_tables(conn: Connection) -> None:
    Base.metadata.create_all(
        conn,
        tables=[
            FileSystemEntry.__table__,  # type: ignore[list-item]
            TrackedFileSystem.__table__,  # type: ignore[list-item]
            TrackerDiff.__table__,  # type: ignore[list-item]
        ],
    )


def _index_tracker_diff(conn: Connection) -> None:
    conn.execute(
        text("CREATE INDEX IF NOT EXISTS idx_tracker_diff_fs_name ON tracker_diff (fs_name)")
    )


MIGRATIONS: tuple[Migration, ...] = (
    Migration(1, "create snapshot and tracking tables", _create_snapshot_tables),
    Migration(2, "index refresh history by file system", _index_tracker_diff),
)


class Migrator:
    """Applies pending migrations in order, recording each one's status.

    A step is recorded "in progress" before it runs and "applied" after it
    commits. A step left "in progress" means an earlier run crashed halfway;
    the database then needs manual attention and nothing else is applied.
    """

    def __init__(self, engine: AsyncEngine, migrations: tuple[Migration, ...] = MIGRATIONS) -> None:
        self.engine = engine
        self.migrations = migrations

    async def current_version(self) -> int:
        """Return the latest applied version, 0 for a fresh database."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(SchemaMigration.__table__.create, checkfirst=True)
                row = (
                    await conn.execute(
                        select(SchemaMigration.version, SchemaMigration.status)
                        .order_by(SchemaMigration.version.desc())
                        .limit(1)
                    )
                ).first()
        except SQLAlchemyError as exc:
            raise MigrationError(f"cannot read migration status: {exc}") from exc
        if row is None:
            return 0
        if row.status == MIGRATION_IN_PROGRESS:
            raise MigrationInProgressError(row.version)
        if row.status != MIGRATION_APPLIED:
            raise MigrationError(
                f"migration version {row.version} has unknown status {row.status!r}"
            )
        return row.version

    async def migrate_up(self) -> int:
        """Apply every migration newer than the recorded version and return the new version."""
        current = await self.current_version()
        latest = self.migrations[-1].version if self.migrations else 0
        if current > latest:
            raise MigrationError(
                f"database is at migration version {current}, "
                f"newer than the latest known version {latest}"
            )
        if current == latest:
            logger.debug("Database schema is up to date (version %d)", current)
            return current

        for migration in self.migrations:
            if migration.version <= current:
                continue
            logger.info("Applying migration %d: %s", migration.version, migration.description)
            await self._record(migration.version, MIGRATION_IN_PROGRESS)
            try:
                async with self.engine.begin() as conn:
                    await conn.run_sync(migration.apply)
            except SQLAlchemyError as exc:
                logger.error("Migration %d failed: %s", migration.version, exc)
                raise MigrationError(f"migration {migration.version} failed: {exc}") from exc
            await self._record(migration.version, MIGRATION_APPLIED)
        logger.info("Database schema migrated from version %d to %d", current, latest)
        return latest

    async def _record(self, version: int, status: str) -> None:
        statement = sqlite_insert(SchemaMigration).values(version=version, status=status)
        statement = statement.on_conflict_do_update(
            index_elements=["version"], set_={"status": status}
        )
        try:
            async with self.engine.begin() as conn:
                await conn.execute(statement)
        except SQLAlchemyError as exc:
            raise MigrationError(f"cannot record migration {version} as {status!r}: {exc}") from exc
