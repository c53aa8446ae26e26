"""FastAPI application entry point."""
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from api.routers import bookmarks, health, live, pages
from core.config import get_settings
from core.redis import RedisClient, set_redis_client
from core.session import SessionProvider, set_session_provider
from db.rls import ensure_bookmark_rls
from db.session import dispose_engine, get_engine, init_db
from services.change_feed import create_change_feed, set_change_feed

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None]:
    """Manage application lifespan - startup and shutdown."""
    app_settings = get_settings()
    logging.basicConfig(
        level=app_settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if app_settings.dev_mode:
        logger.warning("DEV_MODE is enabled: every request is signed in as the development user")

    # Startup: Connect to Redis
    redis_client = RedisClient(
        url=app_settings.redis_url,
        enabled=app_settings.redis_enabled,
        pool_size=app_settings.redis_pool_size,
    )
    await redis_client.connect()
    set_redis_client(redis_client)

    # Startup: Change feed (Redis pub/sub, or in-process when Redis is unavailable)
    feed = create_change_feed(redis_client)
    set_change_feed(feed)
    set_session_provider(SessionProvider(app_settings, feed))

    # Startup: Database schema and row-level security
    await init_db()
    if app_settings.rls_enforced:
        async with get_engine().begin() as conn:
            await ensure_bookmark_rls(conn)

    yield

    # Shutdown: reverse order
    set_session_provider(None)
    await feed.close()
    set_change_feed(None)
    await dispose_engine()
    await redis_client.close()
    set_redis_client(None)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        """Process request and add security headers to response."""
        response = await call_next(request)
        # HSTS: enforce HTTPS for 1 year, including subdomains
        response.headers["Strict-Transport-Security"] = (
            "max-age=31536000; includeSubDomains"
        )
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Pages are never meant to be framed
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "same-origin"
        return response


app_settings = get_settings()

app = FastAPI(
    title="SmartBooking",
    description="Personal bookmarks that stay in sync across every open tab.",
    version="0.1.0",
    lifespan=lifespan,
)

# Security headers middleware (runs after CORS, adds headers to responses)
app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=app_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(pages.router)
app.include_router(live.router)
app.include_router(bookmarks.router)
