"""Schemas for authenticated identities and session events."""
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel


class Identity(BaseModel):
    """The authenticated user as reported by the identity provider."""

    id: str
    email: str | None = None
    provider: str | None = None


class AuthSession(BaseModel):
    """A validated session: the identity plus the ID token it was read from."""

    identity: Identity
    token: str
    expires_at: datetime | None = None

    @property
    def user_id(self) -> str:
        """Owner id used to scope store operations."""
        return self.identity.id


class AuthEvent(StrEnum):
    """Session lifecycle events pushed to open views."""

    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"


class AuthStateChange(BaseModel):
    """A session lifecycle event for one identity."""

    event: AuthEvent
    user_id: str
