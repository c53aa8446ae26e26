"""Server-rendered pages and the sign-in flow."""
import logging
import secrets
from datetime import UTC, datetime
from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates

from api.dependencies import get_optional_session, get_session_provider, get_settings
from core.auth import AuthExchangeError, build_authorize_url, exchange_code
from core.config import Settings
from core.session import SessionProvider
from schemas.auth import AuthSession

logger = logging.getLogger(__name__)

router = APIRouter(tags=["pages"], include_in_schema=False)

templates = Jinja2Templates(directory=Path(__file__).resolve().parent.parent / "templates")

STATE_COOKIE_NAME = "smartbooking_oauth_state"
STATE_COOKIE_MAX_AGE = 600
AUTH_ERROR_PATH = "/auth/auth-code-error"


def _redirect(location: str) -> RedirectResponse:
    return RedirectResponse(location, status_code=303)


def _set_session_cookie(response: Response, settings: Settings, session: AuthSession) -> None:
    max_age = None
    if session.expires_at is not None:
        max_age = max(int((session.expires_at - datetime.now(UTC)).total_seconds()), 0)
    response.set_cookie(
        settings.session_cookie_name,
        session.token,
        max_age=max_age,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
    )


@router.get("/", response_class=HTMLResponse)
async def index(
    request: Request,
    session: AuthSession | None = Depends(get_optional_session),
) -> HTMLResponse:
    """Landing page showing who is signed in, if anyone."""
    return templates.TemplateResponse(request, "index.html", {"session": session})


@router.get("/login")
async def login(settings: Settings = Depends(get_settings)) -> RedirectResponse:
    """Start the sign-in flow."""
    if settings.dev_mode:
        return _redirect("/dashboard")
    state = secrets.token_urlsafe(32)
    response = RedirectResponse(build_authorize_url(settings, state), status_code=302)
    response.set_cookie(
        STATE_COOKIE_NAME,
        state,
        max_age=STATE_COOKIE_MAX_AGE,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
    )
    return response


@router.get("/auth/callback")
async def auth_callback(  # noqa: PLR0911
    request: Request,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    settings: Settings = Depends(get_settings),
    provider: SessionProvider = Depends(get_session_provider),
) -> RedirectResponse:
    """Finish the sign-in flow; any failure lands on the error page."""
    if error:
        logger.warning("Identity provider returned error: %s", error)
        return _redirect(AUTH_ERROR_PATH)
    expected_state = request.cookies.get(STATE_COOKIE_NAME)
    if not code or not state or not expected_state:
        return _redirect(AUTH_ERROR_PATH)
    if not secrets.compare_digest(state, expected_state):
        logger.warning("OAuth state mismatch")
        return _redirect(AUTH_ERROR_PATH)

    try:
        tokens = await exchange_code(settings, code)
    except AuthExchangeError as e:
        logger.warning("Code exchange failed: %s", e)
        return _redirect(AUTH_ERROR_PATH)

    try:
        session = provider.get_session(tokens["id_token"])
    except HTTPException as e:
        logger.warning("Could not validate ID token: %s", e.detail)
        return _redirect(AUTH_ERROR_PATH)
    if session is None:
        return _redirect(AUTH_ERROR_PATH)

    response = _redirect("/dashboard")
    _set_session_cookie(response, settings, session)
    response.delete_cookie(STATE_COOKIE_NAME)
    await provider.sign_in(session)
    return response


@router.get(AUTH_ERROR_PATH, response_class=HTMLResponse)
async def auth_code_error(request: Request) -> HTMLResponse:
    """Explain a failed sign-in."""
    return templates.TemplateResponse(request, "auth_code_error.html", {})


@router.post("/logout")
async def logout(
    session: AuthSession | None = Depends(get_optional_session),
    settings: Settings = Depends(get_settings),
    provider: SessionProvider = Depends(get_session_provider),
) -> RedirectResponse:
    """End the session in every open tab."""
    if session is not None:
        await provider.sign_out(session)
    response = _redirect("/")
    response.delete_cookie(settings.session_cookie_name)
    return response


@router.get("/dashboard", response_model=None)
async def dashboard(
    request: Request,
    session: AuthSession | None = Depends(get_optional_session),
) -> HTMLResponse | RedirectResponse:
    """Authenticated landing page; the bookmark list is driven by the live socket."""
    if session is None:
        return _redirect("/")
    return templates.TemplateResponse(request, "dashboard.html", {"session": session})
