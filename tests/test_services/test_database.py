"""Tests for database engine and session management."""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import text

from snapsync.database import create_engine, get_session

if TYPE_CHECKING:
    from pathlib import Path

    from snapsync.config import Settings


class TestDatabase:
    async def test_engine_connects(self, db_engine) -> None:  # type: ignore[no-untyped-def]
        async with db_engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            assert result.scalar() == 1

    def test_database_directory_is_created(self, test_settings: Settings, tmp_path: Path) -> None:
        create_engine(test_settings)
        assert (tmp_path / "db").is_dir()

    async def test_session_works(self, test_settings: Settings) -> None:
        engine, session_factory = create_engine(test_settings)
        try:
            async for session in get_session(session_factory):
                result = await session.execute(text("SELECT 42"))
                assert result.scalar() == 42
        finally:
            await engine.dispose()

    async def test_rollback_undoes_ddl(self, db_engine) -> None:  # type: ignore[no-untyped-def]
        """The transaction starts with the first statement, whatever its kind."""
        async with db_engine.connect() as conn:
            transaction = await conn.begin()
            await conn.execute(text("CREATE TABLE scratch (x INTEGER)"))
            await transaction.rollback()

        async with db_engine.connect() as conn:
            result = await conn.execute(
                text("SELECT count(*) FROM sqlite_master WHERE name = 'scratch'")
            )
            assert result.scalar() == 0
