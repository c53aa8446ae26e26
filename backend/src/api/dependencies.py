"""FastAPI dependencies for injection."""
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials

from core.auth import security
from core.config import Settings, get_settings
from core.session import SessionProvider
from core.session import get_session_provider as get_global_session_provider
from db.session import get_async_session, get_session_factory
from schemas.auth import AuthSession
from services.bookmark_service import BookmarkStore, SqlBookmarkStore
from services.change_feed import ChangeFeed
from services.change_feed import get_change_feed as get_global_change_feed

__all__ = [
    "get_async_session",
    "get_bookmark_store",
    "get_change_feed",
    "get_current_session",
    "get_optional_session",
    "get_session_provider",
    "get_settings",
    "session_from_token",
]


def get_change_feed() -> ChangeFeed:
    """The change feed created at start-up."""
    feed = get_global_change_feed()
    if feed is None:
        raise RuntimeError("Change feed is not initialized")
    return feed


def get_session_provider() -> SessionProvider:
    """The session provider created at start-up."""
    provider = get_global_session_provider()
    if provider is None:
        raise RuntimeError("Session provider is not initialized")
    return provider


def get_bookmark_store(
    feed: ChangeFeed = Depends(get_change_feed),
    settings: Settings = Depends(get_settings),
) -> BookmarkStore:
    """SQL-backed store that notifies ``feed`` after each committed write."""
    return SqlBookmarkStore(
        get_session_factory(),
        feed,
        rls_enforced=settings.rls_enforced,
    )


def session_from_token(
    provider: SessionProvider,
    settings: Settings,
    bearer_token: str | None,
    cookie_token: str | None,
) -> AuthSession | None:
    """
    Resolve the caller's session.

    A bearer token is an API access token (audience = the API); the cookie
    holds the ID token from the sign-in flow (audience = the client id).
    """
    if bearer_token:
        return provider.get_session(bearer_token, audience=settings.auth0_audience or None)
    return provider.get_session(cookie_token)


def get_optional_session(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    provider: SessionProvider = Depends(get_session_provider),
    settings: Settings = Depends(get_settings),
) -> AuthSession | None:
    """Current session, or None for anonymous callers."""
    return session_from_token(
        provider,
        settings,
        credentials.credentials if credentials else None,
        request.cookies.get(settings.session_cookie_name),
    )


def get_current_session(
    session: AuthSession | None = Depends(get_optional_session),
) -> AuthSession:
    """Current session; 401 for anonymous callers."""
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return session
