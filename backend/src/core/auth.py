"""Authentication module for Auth0 JWT validation and the authorization-code flow."""
import logging
from typing import Any

import httpx
import jwt
from fastapi import HTTPException, status
from fastapi.security import HTTPBearer
from jwt import PyJWKClient

from core.config import Settings
from schemas.auth import Identity

logger = logging.getLogger(__name__)


# HTTP Bearer token scheme
security = HTTPBearer(auto_error=False)

# Cache for JWKS client (reuse across requests)
_jwks_clients: dict[str, PyJWKClient] = {}

DEV_IDENTITY = Identity(
    id="dev|local-development-user",
    email="dev@localhost",
    provider="dev",
)


class AuthExchangeError(Exception):
    """Raised when the provider does not return tokens for an authorization code."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


def get_jwks_client(settings: Settings) -> PyJWKClient:
    """Get or create a cached JWKS client for the given settings."""
    if settings.auth0_jwks_url not in _jwks_clients:
        _jwks_clients[settings.auth0_jwks_url] = PyJWKClient(
            settings.auth0_jwks_url,
            cache_jwk_set=True,
            lifespan=3600,  # Cache keys for 1 hour
        )
    return _jwks_clients[settings.auth0_jwks_url]


def decode_jwt(token: str, settings: Settings, audience: str | None = None) -> dict:
    """
    Decode and validate a JWT token from Auth0.

    ID tokens are issued for the client id, API access tokens for the API
    audience; ``audience`` defaults to the latter.

    Raises:
        HTTPException: If token is invalid, expired, or has wrong audience/issuer.
    """
    try:
        jwks_client = get_jwks_client(settings)
        signing_key = jwks_client.get_signing_key_from_jwt(token)

        return jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            audience=audience or settings.auth0_audience,
            issuer=settings.auth0_issuer,
        )

    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidAudienceError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid audience",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidIssuerError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid issuer",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.PyJWKClientConnectionError as e:
        logger.error("Failed to fetch JWKS from Auth0: %s", e, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not validate credentials",
        )
    except jwt.PyJWTError as e:
        # Log full details for debugging (server-side only)
        logger.warning("JWT validation failed: %s", e, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )


def provider_from_subject(subject: str) -> str | None:
    """Auth0 subjects are '<connection>|<id>', e.g. 'google-oauth2|1234'."""
    if "|" not in subject:
        return None
    return subject.split("|", 1)[0] or None


def identity_from_claims(claims: dict[str, Any]) -> Identity:
    """
    Build the identity from validated token claims.

    Raises:
        HTTPException: If the token carries no subject.
    """
    subject = claims.get("sub")
    if not subject:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing sub claim",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return Identity(
        id=subject,
        email=claims.get("email"),
        provider=provider_from_subject(subject),
    )


def build_authorize_url(settings: Settings, state: str) -> str:
    """URL that starts the provider's authorization-code flow."""
    return f"{settings.auth0_authorize_url}?{settings.authorize_query(state)}"


async def exchange_code(
    settings: Settings,
    code: str,
    client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """
    Exchange an authorization code for the provider's tokens.

    Returns:
        The token response; always contains ``id_token``.

    Raises:
        AuthExchangeError: On transport errors, non-2xx responses, or a
            response without an ID token.
    """
    payload = {
        "grant_type": "authorization_code",
        "client_id": settings.auth0_client_id,
        "client_secret": settings.auth0_client_secret,
        "code": code,
        "redirect_uri": settings.callback_url,
    }
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=10.0)
    try:
        response = await client.post(settings.auth0_token_url, json=payload)
        response.raise_for_status()
        tokens = response.json()
    except httpx.HTTPStatusError as e:
        logger.warning("Auth0 token exchange rejected: %s", e.response.status_code)
        raise AuthExchangeError(f"Token exchange failed with status {e.response.status_code}") from e
    except httpx.HTTPError as e:
        logger.error("Auth0 token exchange failed: %s", e, exc_info=True)
        raise AuthExchangeError("Could not reach the identity provider") from e
    except ValueError as e:
        raise AuthExchangeError("Identity provider returned invalid JSON") from e
    finally:
        if owns_client:
            await client.aclose()

    if not isinstance(tokens, dict) or not tokens.get("id_token"):
        raise AuthExchangeError("Identity provider returned no ID token")
    return tokens
