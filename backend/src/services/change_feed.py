"""
Change-notification feed.

Publishers push JSON messages to named channels; subscribers receive them
through a cancellable ``Subscription`` handle. Bookmark changes travel on one
channel per owner (``bookmarks:<owner>``) and session events on
``auth:<owner>``, so a subscription only ever sees its own identity's events.

Two backends are provided: Redis pub/sub, which fans out across workers, and
an in-process fan-out used when Redis is disabled or unreachable.
"""
import asyncio
import contextlib
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from enum import StrEnum
from typing import Any

from pydantic import ValidationError
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from core.redis import RedisClient
from schemas.bookmark import BookmarkChange, ChangeType
from services.exceptions import FeedUnavailableError

logger = logging.getLogger(__name__)

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]


class FeedStatus(StrEnum):
    """Connection status of a subscription."""

    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


StatusHandler = Callable[[FeedStatus], None]


def bookmarks_channel(owner_id: str) -> str:
    """Channel carrying bookmark inserts/deletes for one owner."""
    return f"bookmarks:{owner_id}"


def auth_channel(owner_id: str) -> str:
    """Channel carrying sign-in/sign-out events for one identity."""
    return f"auth:{owner_id}"


class Subscription(ABC):
    """Handle for one subscription; release it with ``unsubscribe()``."""

    def __init__(
        self,
        channel: str,
        handler: MessageHandler,
        on_status: StatusHandler | None = None,
    ) -> None:
        self.channel = channel
        self._handler = handler
        self._on_status = on_status
        self._status: FeedStatus | None = None
        self._active = True

    @property
    def status(self) -> FeedStatus | None:
        """Last reported connection status."""
        return self._status

    @property
    def is_active(self) -> bool:
        """False once unsubscribed; no messages are delivered afterwards."""
        return self._active

    def _set_status(self, status: FeedStatus) -> None:
        if status == self._status:
            return
        self._status = status
        if self._on_status is not None:
            self._on_status(status)

    async def _deliver(self, message: dict[str, Any]) -> None:
        if not self._active:
            return
        try:
            await self._handler(message)
        except Exception:
            logger.exception("Change feed handler failed on channel %s", self.channel)

    @abstractmethod
    async def unsubscribe(self) -> None:
        """Stop delivery and release the underlying connection."""


class ChangeFeed(ABC):
    """Publish/subscribe channel for change notifications."""

    backend: str = ""

    @abstractmethod
    async def publish(self, channel: str, message: dict[str, Any]) -> None:
        """
        Publish a JSON-serializable message.

        Raises:
            FeedUnavailableError: If the message could not be handed to the transport.
        """

    @abstractmethod
    async def subscribe(
        self,
        channel: str,
        handler: MessageHandler,
        on_status: StatusHandler | None = None,
    ) -> Subscription:
        """Deliver every message published on ``channel`` to ``handler``."""

    async def close(self) -> None:  # noqa: B027
        """Release every subscription held by this feed."""


class _MemorySubscription(Subscription):
    def __init__(
        self,
        feed: "InMemoryChangeFeed",
        channel: str,
        handler: MessageHandler,
        on_status: StatusHandler | None,
    ) -> None:
        super().__init__(channel, handler, on_status)
        self._feed = feed

    async def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._feed._discard(self)
        self._set_status(FeedStatus.CLOSED)


class InMemoryChangeFeed(ChangeFeed):
    """
    In-process fan-out.

    Delivery happens inside ``publish``, so only views served by the same
    worker are notified.
    """

    backend = "memory"

    def __init__(self) -> None:
        self._subscriptions: dict[str, list[_MemorySubscription]] = {}

    def subscriber_count(self, channel: str) -> int:
        """Number of active subscriptions on ``channel``."""
        return len(self._subscriptions.get(channel, []))

    async def publish(self, channel: str, message: dict[str, Any]) -> None:
        # Round-trip through JSON so subscribers get the same shapes as over Redis
        payload = json.dumps(message)
        for subscription in list(self._subscriptions.get(channel, [])):
            await subscription._deliver(json.loads(payload))

    async def subscribe(
        self,
        channel: str,
        handler: MessageHandler,
        on_status: StatusHandler | None = None,
    ) -> Subscription:
        subscription = _MemorySubscription(self, channel, handler, on_status)
        self._subscriptions.setdefault(channel, []).append(subscription)
        subscription._set_status(FeedStatus.SUBSCRIBED)
        return subscription

    def _discard(self, subscription: _MemorySubscription) -> None:
        subscriptions = self._subscriptions.get(subscription.channel, [])
        if subscription in subscriptions:
            subscriptions.remove(subscription)
        if not subscriptions:
            self._subscriptions.pop(subscription.channel, None)

    async def close(self) -> None:
        for subscriptions in list(self._subscriptions.values()):
            for subscription in list(subscriptions):
                await subscription.unsubscribe()


class _RedisSubscription(Subscription):
    """
    One Redis pub/sub connection with its own listener task.

    The listener resubscribes after ``retry_delay`` whenever the connection
    fails or the subscribe call times out, until ``unsubscribe()`` is called.
    ``ready`` is set once the first subscribe attempt has reported a status.
    """

    def __init__(  # noqa: PLR0913
        self,
        feed: "RedisChangeFeed",
        redis_client: RedisClient,
        name: str,
        channel: str,
        handler: MessageHandler,
        on_status: StatusHandler | None,
        subscribe_timeout: float,
        retry_delay: float,
    ) -> None:
        super().__init__(channel, handler, on_status)
        self._feed = feed
        self._redis = redis_client
        self._name = name
        self._subscribe_timeout = subscribe_timeout
        self._retry_delay = retry_delay
        self._task: asyncio.Task | None = None
        self.ready = asyncio.Event()

    def _set_status(self, status: FeedStatus) -> None:
        super()._set_status(status)
        self.ready.set()

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=f"change-feed:{self.channel}")

    async def _run(self) -> None:
        while self._active:
            pubsub = self._redis.pubsub()
            if pubsub is None:
                logger.warning("Redis unavailable; cannot subscribe to %s", self.channel)
                self._set_status(FeedStatus.CHANNEL_ERROR)
            else:
                try:
                    await asyncio.wait_for(
                        pubsub.subscribe(self._name), timeout=self._subscribe_timeout,
                    )
                    self._set_status(FeedStatus.SUBSCRIBED)
                    async for raw in pubsub.listen():
                        await self._handle_raw(raw)
                except TimeoutError:
                    logger.warning("Subscribing to %s timed out", self.channel)
                    self._set_status(FeedStatus.TIMED_OUT)
                except RedisError as e:
                    logger.warning("Subscription to %s failed: %s", self.channel, e)
                    self._set_status(FeedStatus.CHANNEL_ERROR)
                finally:
                    await self._close_pubsub(pubsub)
            if self._active:
                await asyncio.sleep(self._retry_delay)

    async def _handle_raw(self, raw: dict[str, Any] | None) -> None:
        if not raw or raw.get("type") != "message":
            return
        try:
            message = json.loads(raw["data"])
        except (TypeError, ValueError):
            logger.warning("Discarding malformed message on %s", self.channel)
            return
        await self._deliver(message)

    async def _close_pubsub(self, pubsub: PubSub) -> None:
        try:
            await pubsub.unsubscribe()
            await pubsub.aclose()
        except RedisError as e:
            logger.debug("Closing pub/sub for %s failed: %s", self.channel, e)

    async def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        task = self._task
        if task is not None and not task.done():
            if task is asyncio.current_task():
                # Called from our own handler: let the handler return first
                asyncio.get_running_loop().call_soon(task.cancel)
            else:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._feed._subscriptions.discard(self)
        self._set_status(FeedStatus.CLOSED)


class RedisChangeFeed(ChangeFeed):
    """Redis pub/sub feed shared by every worker connected to the same server."""

    backend = "redis"

    def __init__(
        self,
        redis_client: RedisClient,
        *,
        prefix: str = "smartbooking:",
        subscribe_timeout: float = 5.0,
        retry_delay: float = 1.0,
    ) -> None:
        self._redis = redis_client
        self._prefix = prefix
        self._subscribe_timeout = subscribe_timeout
        self._retry_delay = retry_delay
        self._subscriptions: set[_RedisSubscription] = set()

    async def publish(self, channel: str, message: dict[str, Any]) -> None:
        published = await self._redis.publish(self._prefix + channel, json.dumps(message))
        if not published:
            raise FeedUnavailableError(f"Could not publish to {channel}")

    async def subscribe(
        self,
        channel: str,
        handler: MessageHandler,
        on_status: StatusHandler | None = None,
    ) -> Subscription:
        if not self._redis.is_connected:
            raise FeedUnavailableError("Redis is not connected")
        subscription = _RedisSubscription(
            self,
            self._redis,
            self._prefix + channel,
            channel,
            handler,
            on_status,
            subscribe_timeout=self._subscribe_timeout,
            retry_delay=self._retry_delay,
        )
        self._subscriptions.add(subscription)
        subscription.start()
        # Messages published before SUBSCRIBE completes would never reach us
        try:
            await subscription.ready.wait()
        except asyncio.CancelledError:
            await subscription.unsubscribe()
            raise
        return subscription

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            await subscription.unsubscribe()
        self._subscriptions.clear()


def create_change_feed(redis_client: RedisClient | None) -> ChangeFeed:
    """Use Redis when it is connected, otherwise fall back to in-process delivery."""
    if redis_client is not None and redis_client.is_connected:
        logger.info("Change feed using Redis pub/sub")
        return RedisChangeFeed(redis_client)
    logger.warning("Redis unavailable; change notifications limited to this process")
    return InMemoryChangeFeed()


async def publish_bookmark_change(feed: ChangeFeed, change: BookmarkChange) -> None:
    """Publish ``change`` on its owner's bookmark channel."""
    await feed.publish(bookmarks_channel(change.owner_id), change.model_dump(mode="json"))


async def subscribe_bookmark_changes(
    feed: ChangeFeed,
    owner_id: str,
    handler: Callable[[BookmarkChange], Awaitable[None]],
    *,
    events: Iterable[ChangeType] = (ChangeType.INSERT, ChangeType.DELETE),
    on_status: StatusHandler | None = None,
) -> Subscription:
    """Subscribe to the owner's bookmark changes of the given kinds."""
    wanted = frozenset(events)
    channel = bookmarks_channel(owner_id)

    async def on_message(message: dict[str, Any]) -> None:
        try:
            change = BookmarkChange.model_validate(message)
        except ValidationError:
            logger.warning("Discarding malformed bookmark change on %s", channel)
            return
        if change.type in wanted:
            await handler(change)

    return await feed.subscribe(channel, on_message, on_status=on_status)


# Global change feed state using a container to avoid global statement
class _FeedState:
    """Container for global change feed state."""

    feed: ChangeFeed | None = None


_state = _FeedState()


def get_change_feed() -> ChangeFeed | None:
    """Get the global change feed instance."""
    return _state.feed


def set_change_feed(feed: ChangeFeed | None) -> None:
    """Set the global change feed instance."""
    _state.feed = feed
