"""Pytest fixtures for testing."""
import asyncio
import os
from collections.abc import AsyncGenerator, Callable, Generator, Iterator
from datetime import UTC, datetime
from typing import Any
from unittest.mock import patch
from uuid import UUID, uuid4

# Must be set before any app imports that trigger Settings validation
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["DEV_MODE"] = "false"
os.environ["REDIS_ENABLED"] = "false"
os.environ["SESSION_COOKIE_SECURE"] = "false"
os.environ["FALLBACK_DELAY_MS"] = "50"

import pytest  # noqa: E402
from fastapi import FastAPI, HTTPException, status  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402

from core.config import Settings  # noqa: E402
from core.session import SessionProvider  # noqa: E402
from models.base import Base  # noqa: E402
from schemas.auth import AuthSession, Identity  # noqa: E402
from schemas.bookmark import (  # noqa: E402
    BookmarkChange,
    BookmarkCreate,
    BookmarkKey,
    BookmarkRecord,
    ChangeType,
)
from services.bookmark_service import BookmarkStore, SqlBookmarkStore  # noqa: E402
from services.change_feed import ChangeFeed, InMemoryChangeFeed, publish_bookmark_change  # noqa: E402
from services.exceptions import BookmarkNotFoundError, StoreError  # noqa: E402

USER_A_ID = "auth0|user-a"
USER_B_ID = "google-oauth2|user-b"

# Token value -> claims returned by the patched decode_jwt
TEST_TOKENS: dict[str, dict[str, Any]] = {
    "token-user-a": {"sub": USER_A_ID, "email": "user-a@test.com", "exp": 4102444800},
    "token-user-b": {"sub": USER_B_ID, "email": "user-b@test.com", "exp": 4102444800},
}


class FakeBookmarkStore(BookmarkStore):
    """
    In-memory store that publishes changes like the SQL store.

    ``publish`` turns notifications off to exercise the fallback path,
    ``fail_with`` makes every call raise, and ``gate`` holds every call
    until it is set.
    """

    def __init__(self, feed: ChangeFeed | None = None) -> None:
        self.feed = feed
        self.records: dict[UUID, BookmarkRecord] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.publish = True
        self.fail_with: StoreError | None = None
        self.gate: asyncio.Event | None = None

    def seed(
        self,
        owner_id: str,
        title: str,
        url: str,
        created_at: datetime | None = None,
    ) -> BookmarkRecord:
        record = BookmarkRecord(
            id=uuid4(),
            user_id=owner_id,
            title=title,
            url=url,
            created_at=created_at or datetime.now(UTC),
        )
        self.records[record.id] = record
        return record

    def calls_to(self, name: str) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == name]

    async def _enter(self, *call: Any) -> None:
        self.calls.append(call)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with

    async def select(self, owner_id: str) -> list[BookmarkRecord]:
        await self._enter("select", owner_id)
        owned = [r for r in self.records.values() if r.user_id == owner_id]
        return sorted(owned, key=lambda r: r.created_at, reverse=True)

    async def insert(self, owner_id: str, data: BookmarkCreate) -> BookmarkRecord:
        await self._enter("insert", owner_id, data.title, str(data.url))
        record = self.seed(owner_id, data.title, str(data.url))
        if self.feed is not None and self.publish:
            await publish_bookmark_change(
                self.feed, BookmarkChange(type=ChangeType.INSERT, new=record),
            )
        return record

    async def delete(self, bookmark_id: UUID, owner_id: str) -> None:
        await self._enter("delete", bookmark_id, owner_id)
        record = self.records.get(bookmark_id)
        if record is None or record.user_id != owner_id:
            raise BookmarkNotFoundError(bookmark_id)
        del self.records[bookmark_id]
        if self.feed is not None and self.publish:
            await publish_bookmark_change(
                self.feed,
                BookmarkChange(
                    type=ChangeType.DELETE,
                    old=BookmarkKey(id=bookmark_id, user_id=owner_id),
                ),
            )


def make_session(user_id: str, email: str | None = None) -> AuthSession:
    """Build a session without going through token validation."""
    return AuthSession(
        identity=Identity(id=user_id, email=email, provider=user_id.split("|", 1)[0]),
        token=f"token-for-{user_id}",
    )


def fake_decode_jwt(token: str, settings: Settings, audience: str | None = None) -> dict:  # noqa: ARG001
    """Stand-in for Auth0 validation: only tokens in TEST_TOKENS are valid."""
    if token not in TEST_TOKENS:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        )
    return TEST_TOKENS[token]


@pytest.fixture
def settings() -> Settings:
    """Settings for a local, non-dev deployment with a short fallback delay."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        AUTH0_DOMAIN="test.auth0.com",
        AUTH0_AUDIENCE="https://api.smartbooking.test",
        AUTH0_CLIENT_ID="test-client-id",
        AUTH0_CLIENT_SECRET="test-client-secret",
        APP_URL="http://testserver",
        REDIS_ENABLED=False,
        SESSION_COOKIE_SECURE=False,
        FALLBACK_DELAY_MS=50,
    )


@pytest.fixture
def session_a() -> AuthSession:
    """Session for User A."""
    return make_session(USER_A_ID, "user-a@test.com")


@pytest.fixture
def session_b() -> AuthSession:
    """Session for User B."""
    return make_session(USER_B_ID, "user-b@test.com")


@pytest.fixture
def feed() -> InMemoryChangeFeed:
    """In-process change feed."""
    return InMemoryChangeFeed()


@pytest.fixture
def fake_store(feed: InMemoryChangeFeed) -> FakeBookmarkStore:
    """In-memory store publishing to ``feed``."""
    return FakeBookmarkStore(feed)


@pytest.fixture
def fake_tokens() -> Iterator[dict[str, dict[str, Any]]]:
    """Patch token validation so the tokens in TEST_TOKENS are accepted."""
    with patch("core.session.decode_jwt", side_effect=fake_decode_jwt):
        yield TEST_TOKENS


@pytest.fixture
async def async_engine() -> AsyncGenerator[AsyncEngine]:
    """Create a fresh in-memory database for each test."""
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """A session on the test database."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def sql_store(
    session_factory: async_sessionmaker[AsyncSession],
    feed: InMemoryChangeFeed,
) -> SqlBookmarkStore:
    """SQL store on the test database publishing to ``feed``."""
    return SqlBookmarkStore(session_factory, feed)


@pytest.fixture
def app(
    settings: Settings,
    feed: InMemoryChangeFeed,
    sql_store: SqlBookmarkStore,
    session_factory: async_sessionmaker[AsyncSession],
    fake_tokens: dict,  # noqa: ARG001
) -> Generator[FastAPI]:
    """The application with its services replaced by test instances."""
    from api.dependencies import (  # noqa: PLC0415
        get_bookmark_store,
        get_change_feed,
        get_session_provider,
        get_settings,
    )
    from api.main import app as application  # noqa: PLC0415
    from db.session import get_async_session  # noqa: PLC0415

    provider = SessionProvider(settings, feed)

    async def override_get_async_session() -> AsyncGenerator[AsyncSession]:
        async with session_factory() as session:
            yield session

    application.dependency_overrides[get_settings] = lambda: settings
    application.dependency_overrides[get_change_feed] = lambda: feed
    application.dependency_overrides[get_session_provider] = lambda: provider
    application.dependency_overrides[get_bookmark_store] = lambda: sql_store
    application.dependency_overrides[get_async_session] = override_get_async_session

    yield application

    application.dependency_overrides.clear()


def _client(application: FastAPI, token: str | None) -> AsyncClient:
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return AsyncClient(
        transport=ASGITransport(app=application),
        base_url="http://test",
        headers=headers,
    )


@pytest.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Client authenticated as User A."""
    async with _client(app, "token-user-a") as test_client:
        yield test_client


@pytest.fixture
async def client_as_user_b(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Client authenticated as User B."""
    async with _client(app, "token-user-b") as test_client:
        yield test_client


@pytest.fixture
async def anonymous_client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Client without credentials."""
    async with _client(app, None) as test_client:
        yield test_client


@pytest.fixture
def wait_for() -> Callable:
    """Poll an async condition until it holds, failing after a timeout."""

    async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        async with asyncio.timeout(timeout):
            while not predicate():  # noqa: ASYNC110
                await asyncio.sleep(0.005)

    return _wait_for
