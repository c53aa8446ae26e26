"""
Local state reconciliation for one open bookmark view.

Three unordered sources feed the view's list: the initial load, the result
of the view's own writes (applied by a delayed fallback check), and the
change-notification feed. Every merge is idempotent: inserts are skipped
when the id is already present, removals of absent ids are no-ops. Either
the fallback or the notification may arrive first.

Inserts are prepended as they are observed rather than re-sorted, so the
order is "most recently observed first". It matches creation order for the
sequential writes of a single user but is not guaranteed across concurrent
inserts from several tabs.
"""
import asyncio
import logging
from collections.abc import Callable
from uuid import UUID

from pydantic import ValidationError

from schemas.auth import AuthSession, Identity
from schemas.bookmark import BookmarkChange, BookmarkCreate, BookmarkRecord, ChangeType, DashboardState
from services.bookmark_service import BookmarkStore
from services.change_feed import (
    ChangeFeed,
    FeedStatus,
    Subscription,
    subscribe_bookmark_changes,
)
from services.exceptions import FeedUnavailableError, StoreError

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_DELAY = 0.5


def _validation_message(error: ValidationError) -> str:
    messages = []
    for err in error.errors():
        loc = err.get("loc") or ("value",)
        messages.append(f"{loc[-1]}: {err.get('msg', 'invalid')}")
    return "; ".join(messages) or "invalid input"


class BookmarkReconciler:
    """
    Keeps one identity's bookmark list consistent for a single view.

    The owner of the reconciler must call ``close()`` when the view goes
    away; that releases the feed subscription and cancels pending fallback
    checks so nothing mutates the state afterwards.
    """

    def __init__(
        self,
        store: BookmarkStore,
        feed: ChangeFeed,
        *,
        fallback_delay: float = DEFAULT_FALLBACK_DELAY,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self._store = store
        self._feed = feed
        self._fallback_delay = fallback_delay
        self._on_change = on_change

        self._identity: Identity | None = None
        self._bookmarks: list[BookmarkRecord] = []
        self._error: str | None = None
        self._loading = True
        self._fetching = False
        self._submitting = False
        self._deleting: set[UUID] = set()

        self._subscription: Subscription | None = None
        self._timers: set[asyncio.Task] = set()
        self._closed = False
        # Bumped whenever the identity is torn down; stale awaits compare against it
        self._generation = 0
        # Notifications received while a load is in flight, replayed over its result
        self._buffer: list[BookmarkChange] | None = None
        # Ids seen deleted for this identity; a late insert fallback must not revive them
        self._removed: set[UUID] = set()

    # -- read-only view -------------------------------------------------

    @property
    def identity(self) -> Identity | None:
        return self._identity

    @property
    def bookmarks(self) -> list[BookmarkRecord]:
        """Current list, newest observed first (a copy)."""
        return list(self._bookmarks)

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def submitting(self) -> bool:
        return self._submitting

    @property
    def deleting(self) -> frozenset[UUID]:
        """Ids with a delete in flight."""
        return frozenset(self._deleting)

    @property
    def subscription(self) -> Subscription | None:
        return self._subscription

    @property
    def pending_checks(self) -> int:
        """Number of fallback checks not yet run."""
        return len(self._timers)

    def snapshot(self) -> DashboardState:
        """Serializable state for rendering."""
        return DashboardState(
            bookmarks=list(self._bookmarks),
            error=self._error,
            loading=self._loading,
            fetching=self._fetching,
            submitting=self._submitting,
            deleting=sorted(self._deleting, key=str),
        )

    # -- lifecycle ------------------------------------------------------

    async def start(self, session: AuthSession) -> None:
        """
        Bind the session's identity, subscribe to its changes and load its bookmarks.

        The subscription is opened before the load so that writes landing
        between the store read and the subscription are not missed; changes
        that arrive during the load are replayed over its result.
        """
        self._ensure_open()
        self._identity = session.identity
        owner_id = session.identity.id
        generation = self._generation
        self._loading = True
        self._buffer = []
        self._notify()

        await self._subscribe()
        if not self._is_current(owner_id, generation):
            return
        await self.load()
        if not self._is_current(owner_id, generation):
            return

        self._loading = False
        self._notify()

    async def change_identity(self, session: AuthSession | None) -> None:
        """
        Tear down everything bound to the current identity and start over.

        With ``None`` the reconciler stays idle with an empty list.
        """
        self._ensure_open()
        await self._release()
        self._identity = None
        self._bookmarks = []
        self._error = None
        self._deleting.clear()
        self._removed.clear()
        self._submitting = False
        self._fetching = False
        if session is None:
            self._loading = False
            self._notify()
            return
        await self.start(session)

    async def close(self) -> None:
        """Release the subscription and cancel pending fallback checks."""
        if self._closed:
            return
        self._closed = True
        await self._release()
        logger.debug("Reconciler closed for %s", self._identity.id if self._identity else None)

    async def _release(self) -> None:
        self._generation += 1
        self._buffer = None
        if self._subscription is not None:
            subscription, self._subscription = self._subscription, None
            await subscription.unsubscribe()
        timers = list(self._timers)
        for timer in timers:
            timer.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        self._timers.clear()

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("Reconciler is closed")

    async def _subscribe(self) -> None:
        if self._identity is None or self._closed:
            return
        owner_id = self._identity.id
        generation = self._generation
        if self._subscription is not None:
            previous, self._subscription = self._subscription, None
            await previous.unsubscribe()
        try:
            subscription = await subscribe_bookmark_changes(
                self._feed,
                owner_id,
                self.apply_change,
                events=(ChangeType.INSERT, ChangeType.DELETE),
                on_status=self._on_feed_status,
            )
        except FeedUnavailableError as e:
            logger.error("[Realtime] Connection failed for %s: %s", owner_id, e)
            return
        if not self._is_current(owner_id, generation) or self._subscription is not None:
            # Torn down or superseded while subscribing
            await subscription.unsubscribe()
            return
        self._subscription = subscription

    def _on_feed_status(self, feed_status: FeedStatus) -> None:
        if feed_status == FeedStatus.SUBSCRIBED:
            logger.info("[Realtime] Connected")
        elif feed_status in (FeedStatus.CHANNEL_ERROR, FeedStatus.TIMED_OUT):
            logger.error("[Realtime] Connection failed: %s", feed_status)

    # -- operations -----------------------------------------------------

    async def load(self) -> bool:
        """
        Replace the list with the store's contents for the identity.

        Changes notified while the store read is in flight are held back and
        replayed over the loaded list. On failure the list is left empty and
        the error message is set.
        """
        if self._identity is None:
            return False
        owner_id = self._identity.id
        generation = self._generation
        self._fetching = True
        self._error = None
        if self._buffer is None:
            self._buffer = []
        self._notify()
        try:
            bookmarks = await self._store.select(owner_id)
        except StoreError as e:
            logger.error("[fetchBookmarks] Error: %s", e)
            if self._is_current(owner_id, generation):
                self._buffer = None
                self._bookmarks = []
                self._error = f"Failed to load bookmarks: {e.message}"
            return False
        finally:
            if self._is_current(owner_id, generation):
                self._fetching = False
                self._notify()

        if not self._is_current(owner_id, generation):
            return False
        buffered, self._buffer = self._buffer or [], None
        logger.info("[fetchBookmarks] Loaded %d bookmarks", len(bookmarks))
        self._bookmarks = list(bookmarks)
        for change in buffered:
            self._merge(change)
        self._notify()
        return True

    async def create(self, title: str, url: str) -> BookmarkRecord | None:
        """
        Insert a bookmark for the identity.

        Blank input is ignored without contacting the store. On success a
        fallback check adds the record if no notification has done so
        within the fallback delay.
        """
        self._ensure_open()
        if self._identity is None:
            self._set_error("You must be logged in to add bookmarks")
            return None
        if not title.strip() or not url.strip():
            return None
        try:
            data = BookmarkCreate(title=title, url=url)
        except ValidationError as e:
            self._set_error(f"Failed to add bookmark: {_validation_message(e)}")
            return None

        owner_id = self._identity.id
        generation = self._generation
        self._submitting = True
        self._error = None
        self._notify()
        try:
            record = await self._store.insert(owner_id, data)
        except StoreError as e:
            logger.error("[Insert] Error: %s", e)
            if self._is_current(owner_id, generation):
                self._error = f"Failed to add bookmark: {e.message}"
            return None
        finally:
            self._submitting = False
            self._notify()

        if self._is_current(owner_id, generation):
            self._schedule(lambda: self._add_if_missing(record))
        return record

    async def delete(self, bookmark_id: UUID) -> bool:
        """
        Delete one of the identity's bookmarks.

        A request for an id whose delete is still in flight is ignored. On
        success a fallback check removes the record if no notification has
        done so within the fallback delay.
        """
        self._ensure_open()
        if self._identity is None:
            self._set_error("You must be logged in to delete bookmarks")
            return False
        if bookmark_id in self._deleting:
            return False

        owner_id = self._identity.id
        generation = self._generation
        self._deleting.add(bookmark_id)
        self._error = None
        self._notify()
        try:
            await self._store.delete(bookmark_id, owner_id)
        except StoreError as e:
            logger.error("[Delete] Error: %s", e)
            if self._is_current(owner_id, generation):
                self._error = f"Failed to delete bookmark: {e.message}"
            return False
        finally:
            self._deleting.discard(bookmark_id)
            self._notify()

        if self._is_current(owner_id, generation):
            self._removed.add(bookmark_id)
            self._schedule(lambda: self._remove_if_present(bookmark_id, fallback=True))
        return True

    async def apply_change(self, change: BookmarkChange) -> None:
        """Merge a change notification into the list."""
        if self._closed or self._identity is None:
            return
        if change.owner_id != self._identity.id:
            return
        if self._buffer is not None:
            self._buffer.append(change)
            return
        self._merge(change)

    def dismiss_error(self) -> None:
        """Clear the error message."""
        if self._error is not None:
            self._error = None
            self._notify()

    # -- merging --------------------------------------------------------

    def _merge(self, change: BookmarkChange) -> None:
        if change.type == ChangeType.INSERT and change.new is not None:
            if self._add_if_missing(change.new):
                logger.info("[Realtime] Bookmark added")
        elif change.type == ChangeType.DELETE and change.old is not None:
            self._removed.add(change.old.id)
            if self._remove_if_present(change.old.id):
                logger.info("[Realtime] Bookmark deleted")

    def _add_if_missing(self, record: BookmarkRecord) -> bool:
        if record.id in self._removed:
            return False
        if any(b.id == record.id for b in self._bookmarks):
            return False
        self._bookmarks.insert(0, record)
        self._notify()
        return True

    def _remove_if_present(self, bookmark_id: UUID, fallback: bool = False) -> bool:
        remaining = [b for b in self._bookmarks if b.id != bookmark_id]
        if len(remaining) == len(self._bookmarks):
            return False
        if fallback:
            logger.info("[handleDelete] Fallback: Removing bookmark from state")
        self._bookmarks = remaining
        self._notify()
        return True

    def _schedule(self, check: Callable[[], object]) -> None:
        """Run ``check`` after the fallback delay unless the reconciler is torn down first."""

        async def run_later() -> None:
            await asyncio.sleep(self._fallback_delay)
            if not self._closed:
                check()

        timer = asyncio.create_task(run_later())
        self._timers.add(timer)
        timer.add_done_callback(self._timers.discard)

    # -- helpers --------------------------------------------------------

    def _is_current(self, owner_id: str, generation: int) -> bool:
        """False when the view was closed or switched identity while awaiting."""
        return (
            not self._closed
            and generation == self._generation
            and self._identity is not None
            and self._identity.id == owner_id
        )

    def _set_error(self, message: str) -> None:
        self._error = message
        self._notify()

    def _notify(self) -> None:
        if self._on_change is not None and not self._closed:
            self._on_change()
