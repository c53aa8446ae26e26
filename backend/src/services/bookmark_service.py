"""
Record store for bookmarks.

Every operation is scoped to one owner. Writes publish a change notification
on the owner's bookmark channel after they commit, so every open view of
that owner can reconcile.
"""
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.rls import bind_owner
from models.bookmark import Bookmark
from schemas.bookmark import (
    BookmarkChange,
    BookmarkCreate,
    BookmarkKey,
    BookmarkRecord,
    ChangeType,
)
from services.change_feed import ChangeFeed, publish_bookmark_change
from services.exceptions import BookmarkNotFoundError, FeedUnavailableError, StoreError

logger = logging.getLogger(__name__)


class BookmarkStore(ABC):
    """Owner-scoped bookmark persistence."""

    @abstractmethod
    async def select(self, owner_id: str) -> list[BookmarkRecord]:
        """Return the owner's bookmarks, newest first."""

    @abstractmethod
    async def insert(self, owner_id: str, data: BookmarkCreate) -> BookmarkRecord:
        """Create a bookmark owned by ``owner_id`` and return it."""

    @abstractmethod
    async def delete(self, bookmark_id: UUID, owner_id: str) -> None:
        """
        Delete a bookmark only if it belongs to ``owner_id``.

        Raises:
            BookmarkNotFoundError: If no bookmark with that id is owned by ``owner_id``.
        """


class SqlBookmarkStore(BookmarkStore):
    """Bookmark store backed by async SQLAlchemy."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        feed: ChangeFeed,
        *,
        rls_enforced: bool = False,
    ) -> None:
        self._session_factory = session_factory
        self._feed = feed
        self._rls_enforced = rls_enforced

    @asynccontextmanager
    async def _transaction(self, owner_id: str, action: str) -> AsyncIterator[AsyncSession]:
        """
        Run one owner-scoped transaction.

        Commits on success; database errors are rolled back and re-raised as
        StoreError so callers never see driver exceptions.
        """
        async with self._session_factory() as session:
            try:
                if self._rls_enforced:
                    await bind_owner(session, owner_id)
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.warning("Bookmark %s failed for %s: %s", action, owner_id, e)
                raise StoreError(f"Could not {action} bookmark") from e
            except Exception:
                await session.rollback()
                raise

    async def select(self, owner_id: str) -> list[BookmarkRecord]:
        async with self._transaction(owner_id, "load") as session:
            result = await session.execute(
                select(Bookmark)
                .where(Bookmark.user_id == owner_id)
                .order_by(Bookmark.created_at.desc(), Bookmark.id),
            )
            bookmarks = [BookmarkRecord.model_validate(b) for b in result.scalars()]
        logger.debug("Loaded %d bookmarks for %s", len(bookmarks), owner_id)
        return bookmarks

    async def insert(self, owner_id: str, data: BookmarkCreate) -> BookmarkRecord:
        async with self._transaction(owner_id, "add") as session:
            bookmark = Bookmark(user_id=owner_id, title=data.title, url=str(data.url))
            session.add(bookmark)
            await session.flush()
            record = BookmarkRecord.model_validate(bookmark)

        await self._notify(BookmarkChange(type=ChangeType.INSERT, new=record))
        return record

    async def delete(self, bookmark_id: UUID, owner_id: str) -> None:
        async with self._transaction(owner_id, "delete") as session:
            result = await session.execute(
                delete(Bookmark).where(
                    Bookmark.id == bookmark_id,
                    Bookmark.user_id == owner_id,
                ),
            )
            if result.rowcount == 0:
                raise BookmarkNotFoundError(bookmark_id)

        await self._notify(
            BookmarkChange(
                type=ChangeType.DELETE,
                old=BookmarkKey(id=bookmark_id, user_id=owner_id),
            ),
        )

    async def _notify(self, change: BookmarkChange) -> None:
        """Publish a committed change; open views fall back to their own timers on failure."""
        try:
            await publish_bookmark_change(self._feed, change)
        except FeedUnavailableError as e:
            logger.warning(
                "Change notification for bookmark %s not published: %s",
                change.bookmark_id,
                e,
            )
