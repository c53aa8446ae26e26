"""
Tests for the row-level security helpers.

The test database is SQLite, so these cover the dialect checks and the
Postgres statements issued through a mocked session.
"""
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from db.rls import BOOKMARK_POLICIES, OWNER_SETTING, bind_owner, enable_bookmark_rls, ensure_bookmark_rls


async def test__bind_owner__skipped_on_sqlite(db_session: AsyncSession) -> None:
    """SQLite has no session settings; nothing is bound."""
    assert await bind_owner(db_session, "auth0|user-a") is False


async def test__bind_owner__sets_transaction_local_setting_on_postgres() -> None:
    """On Postgres the owner is bound with set_config(..., is_local=true)."""
    session = MagicMock()
    session.bind.dialect.name = "postgresql"
    session.execute = AsyncMock()

    assert await bind_owner(session, "auth0|user-a") is True

    statement, params = session.execute.await_args.args
    assert "set_config" in str(statement)
    assert "true" in str(statement)
    assert params == {"name": OWNER_SETTING, "value": "auth0|user-a"}


async def test__enable_bookmark_rls__skipped_on_sqlite(async_engine: AsyncEngine) -> None:
    """Other dialects report that the bootstrap was skipped."""
    async with async_engine.begin() as conn:
        details = await enable_bookmark_rls(conn)

    assert details["skipped"] == "sqlite"
    assert details["ok"] is False
    assert set(details["policies"]) == set(BOOKMARK_POLICIES)


async def test__ensure_bookmark_rls__logs_skip(
    async_engine: AsyncEngine, caplog: pytest.LogCaptureFixture,
) -> None:
    """Start-up carries on with a warning when RLS cannot apply."""
    with caplog.at_level(logging.WARNING, logger="db.rls"):
        async with async_engine.begin() as conn:
            await ensure_bookmark_rls(conn)

    assert "skipping RLS bootstrap" in caplog.text


def test__policies__compare_owner_with_session_setting() -> None:
    """Every policy restricts rows to the bound owner."""
    assert set(BOOKMARK_POLICIES) == {"select_owner", "insert_owner", "delete_owner"}
    for clause in BOOKMARK_POLICIES.values():
        assert f"current_setting('{OWNER_SETTING}', true)" in clause
