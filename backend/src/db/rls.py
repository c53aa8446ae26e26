"""
Postgres row-level security for the bookmarks table.

The application binds the owner of each transaction to the
``app.current_user_id`` setting; the policies below only expose rows whose
``user_id`` matches it. Other dialects skip both steps.
"""
import logging

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

logger = logging.getLogger(__name__)

OWNER_SETTING = "app.current_user_id"

BOOKMARK_POLICIES: dict[str, str] = {
    "select_owner": f"FOR SELECT USING (user_id = current_setting('{OWNER_SETTING}', true))",
    "insert_owner": f"FOR INSERT WITH CHECK (user_id = current_setting('{OWNER_SETTING}', true))",
    "delete_owner": f"FOR DELETE USING (user_id = current_setting('{OWNER_SETTING}', true))",
}


def _is_postgres(dialect_name: str) -> bool:
    return dialect_name.startswith("postgres")


async def bind_owner(session: AsyncSession, owner_id: str) -> bool:
    """
    Scope the session's current transaction to ``owner_id``.

    Returns True when the setting was applied (Postgres only).
    """
    if not _is_postgres(session.bind.dialect.name):
        return False
    # is_local=true: the setting ends with the transaction
    await session.execute(
        text("SELECT set_config(:name, :value, true)"),
        {"name": OWNER_SETTING, "value": owner_id},
    )
    return True


async def enable_bookmark_rls(connection: AsyncConnection) -> dict:
    """
    Enable RLS on ``bookmarks`` and create the owner policies that are missing.

    Requires table owner privileges. Returns a details dict with ``enabled``,
    per-policy status and an overall ``ok`` flag; errors are reported in the
    dict rather than raised so start-up can continue.
    """
    details: dict = {
        "enabled": False,
        "policies": {policy: False for policy in BOOKMARK_POLICIES},
    }
    if not _is_postgres(connection.dialect.name):
        details["skipped"] = connection.dialect.name
        details["ok"] = False
        return details

    try:
        async with connection.begin_nested():
            await connection.execute(text("ALTER TABLE bookmarks ENABLE ROW LEVEL SECURITY"))
            await connection.execute(text("ALTER TABLE bookmarks FORCE ROW LEVEL SECURITY"))
        details["enabled"] = True
    except SQLAlchemyError as e:
        details["error"] = str(e)
        if "permission denied" in str(e).lower() or "must be owner" in str(e).lower():
            details["hint"] = "Requires table owner privileges to enable RLS/policies"
        details["ok"] = False
        return details

    for policy_key, clause in BOOKMARK_POLICIES.items():
        policy_name = f"bookmarks_{policy_key}"
        try:
            async with connection.begin_nested():
                result = await connection.execute(
                    text(
                        "SELECT 1 FROM pg_policies WHERE schemaname = current_schema() "
                        "AND tablename = 'bookmarks' AND policyname = :policy LIMIT 1",
                    ),
                    {"policy": policy_name},
                )
                if result.scalar() is None:
                    await connection.execute(
                        text(f"CREATE POLICY {policy_name} ON bookmarks {clause}"),
                    )
            details["policies"][policy_key] = True
        except SQLAlchemyError as e:
            details.setdefault("policy_errors", {})[policy_key] = str(e)

    details["ok"] = details["enabled"] and all(details["policies"].values())
    return details


async def ensure_bookmark_rls(connection: AsyncConnection) -> None:
    """Enable RLS during start-up and log what could not be applied."""
    details = await enable_bookmark_rls(connection)
    if details.get("skipped"):
        logger.warning(
            "RLS_ENFORCED is set but the database is %s; skipping RLS bootstrap",
            details["skipped"],
        )
        return
    if details.get("error"):
        logger.error(
            "RLS enablement error for table 'bookmarks': %s (hint: %s)",
            details["error"],
            details.get("hint"),
        )
        return
    missing = [policy for policy, ok in details["policies"].items() if not ok]
    if missing:
        logger.warning("Missing RLS policies for table 'bookmarks': %s", ", ".join(missing))
    else:
        logger.info("Postgres row-level security policies ensured for 'bookmarks'")
