"""
Session provider.

Reads sessions from ID tokens (point-in-time) and pushes session lifecycle
events to every open view of an identity (subscription), so signing out in
one tab sends the others back to the landing page.
"""
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from fastapi import HTTPException, status
from pydantic import ValidationError

from core.auth import DEV_IDENTITY, decode_jwt, identity_from_claims
from core.config import Settings
from schemas.auth import AuthEvent, AuthSession, AuthStateChange
from services.change_feed import ChangeFeed, StatusHandler, Subscription, auth_channel
from services.exceptions import FeedUnavailableError

logger = logging.getLogger(__name__)

AuthStateHandler = Callable[[AuthStateChange], Awaitable[None]]


class SessionProvider:
    """Validates session tokens and relays sign-in/sign-out events."""

    def __init__(self, settings: Settings, feed: ChangeFeed) -> None:
        self._settings = settings
        self._feed = feed

    def get_session(self, token: str | None, audience: str | None = None) -> AuthSession | None:
        """
        Return the session for ``token``, or None when there is no valid session.

        ``audience`` defaults to the client id, which is what ID tokens are
        issued for. In DEV_MODE every caller gets the development identity.

        Raises:
            HTTPException: 503 if the provider's signing keys are unreachable.
        """
        if self._settings.dev_mode:
            return AuthSession(identity=DEV_IDENTITY, token=token or "dev")
        if not token:
            return None
        try:
            claims = decode_jwt(
                token, self._settings, audience=audience or self._settings.auth0_client_id,
            )
            identity = identity_from_claims(claims)
        except HTTPException as e:
            if e.status_code != status.HTTP_401_UNAUTHORIZED:
                raise
            logger.debug("Ignoring invalid session token: %s", e.detail)
            return None

        expires_at = None
        if isinstance(claims.get("exp"), int | float):
            expires_at = datetime.fromtimestamp(claims["exp"], UTC)
        return AuthSession(identity=identity, token=token, expires_at=expires_at)

    async def sign_in(self, session: AuthSession) -> None:
        """Announce a new session for the identity."""
        logger.info("Signed in as %s", session.identity.email or session.user_id)
        await self._publish(AuthStateChange(event=AuthEvent.SIGNED_IN, user_id=session.user_id))

    async def sign_out(self, session: AuthSession) -> None:
        """Announce the end of the identity's session to every open view."""
        logger.info("Signed out %s", session.identity.email or session.user_id)
        await self._publish(AuthStateChange(event=AuthEvent.SIGNED_OUT, user_id=session.user_id))

    async def on_auth_state_change(
        self,
        user_id: str,
        handler: AuthStateHandler,
        on_status: StatusHandler | None = None,
    ) -> Subscription:
        """Subscribe to session events for ``user_id``."""
        channel = auth_channel(user_id)

        async def on_message(message: dict[str, Any]) -> None:
            try:
                change = AuthStateChange.model_validate(message)
            except ValidationError:
                logger.warning("Discarding malformed session event on %s", channel)
                return
            await handler(change)

        return await self._feed.subscribe(channel, on_message, on_status=on_status)

    async def _publish(self, change: AuthStateChange) -> None:
        try:
            await self._feed.publish(auth_channel(change.user_id), change.model_dump(mode="json"))
        except FeedUnavailableError as e:
            logger.warning("Session event %s not published: %s", change.event, e)


# Global session provider state using a container to avoid global statement
class _SessionState:
    """Container for global session provider state."""

    provider: SessionProvider | None = None


_state = _SessionState()


def get_session_provider() -> SessionProvider | None:
    """Get the global session provider instance."""
    return _state.provider


def set_session_provider(provider: SessionProvider | None) -> None:
    """Set the global session provider instance."""
    _state.provider = provider
