"""Application configuration using pydantic-settings."""
from functools import lru_cache
from urllib.parse import urlencode, urlparse

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Database
    database_url: str
    db_pool_size: int = Field(default=5, validation_alias="DB_POOL_SIZE")
    db_max_overflow: int = Field(default=10, validation_alias="DB_MAX_OVERFLOW")

    # Postgres row-level security: bind app.current_user_id per transaction
    rls_enforced: bool = Field(default=False, validation_alias="RLS_ENFORCED")

    # Auth0 (OAuth identity provider)
    auth0_domain: str = Field(default="", validation_alias="AUTH0_DOMAIN")
    auth0_audience: str = Field(default="", validation_alias="AUTH0_AUDIENCE")
    auth0_client_id: str = Field(default="", validation_alias="AUTH0_CLIENT_ID")
    auth0_client_secret: str = Field(default="", validation_alias="AUTH0_CLIENT_SECRET")
    # Optional social connection to jump straight to, e.g. "google-oauth2"
    auth0_connection: str = Field(default="", validation_alias="AUTH0_CONNECTION")

    # Development mode - bypasses auth for local development
    dev_mode: bool = Field(default=False, validation_alias="DEV_MODE")

    # Public base URL of this application, used to build the OAuth callback URL
    app_url: str = Field(default="http://localhost:8000", validation_alias="APP_URL")

    # CORS - comma-separated list of allowed origins (stored as string, parsed via property)
    cors_origins_str: str = Field(
        default="http://localhost:8000",
        validation_alias="CORS_ORIGINS",
    )

    # Redis - carries the change-notification feed between workers
    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")
    redis_enabled: bool = Field(default=True, validation_alias="REDIS_ENABLED")
    redis_pool_size: int = Field(default=20, validation_alias="REDIS_POOL_SIZE")

    # Delay before the live view reconciles a write that no notification confirmed
    fallback_delay_ms: int = Field(default=500, ge=0, validation_alias="FALLBACK_DELAY_MS")

    # Session cookie
    session_cookie_name: str = Field(
        default="smartbooking_session", validation_alias="SESSION_COOKIE_NAME",
    )
    session_cookie_secure: bool = Field(default=True, validation_alias="SESSION_COOKIE_SECURE")

    max_title_length: int = Field(default=500, validation_alias="MAX_TITLE_LENGTH")

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    @model_validator(mode="after")
    def validate_dev_mode_security(self) -> "Settings":
        """
        Prevent DEV_MODE from being enabled with a production database.

        DEV_MODE completely bypasses authentication, so it is only accepted with
        SQLite or a database on the local host.
        """
        if not self.dev_mode or self.is_sqlite:
            return self

        try:
            parsed = urlparse(self.database_url)
            hostname = parsed.hostname or ""
        except ValueError:
            hostname = ""

        local_hosts = {"localhost", "127.0.0.1", "0.0.0.0", "::1"}
        if hostname.lower() not in local_hosts:
            raise ValueError(
                f"DEV_MODE cannot be enabled with a non-local database. "
                f"Database host '{hostname}' appears to be a production database. "
                f"DEV_MODE bypasses all authentication and must only be used locally.",
            )

        return self

    @property
    def is_sqlite(self) -> bool:
        """True when the configured database is SQLite."""
        return self.database_url.startswith("sqlite")

    @property
    def cors_origins(self) -> list[str]:
        """Parse comma-separated CORS origins string into a list."""
        if not self.cors_origins_str:
            return []
        return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]

    @property
    def auth0_issuer(self) -> str:
        """Get the Auth0 issuer URL."""
        return f"https://{self.auth0_domain}/"

    @property
    def auth0_jwks_url(self) -> str:
        """Get the Auth0 JWKS URL for fetching public keys."""
        return f"https://{self.auth0_domain}/.well-known/jwks.json"

    @property
    def auth0_authorize_url(self) -> str:
        """Get the Auth0 authorization endpoint."""
        return f"https://{self.auth0_domain}/authorize"

    @property
    def auth0_token_url(self) -> str:
        """Get the Auth0 token endpoint used for the code exchange."""
        return f"https://{self.auth0_domain}/oauth/token"

    @property
    def callback_url(self) -> str:
        """OAuth redirect URI registered with the provider."""
        return f"{self.app_url.rstrip('/')}/auth/callback"

    @property
    def fallback_delay(self) -> float:
        """Fallback delay in seconds."""
        return self.fallback_delay_ms / 1000

    def authorize_query(self, state: str) -> str:
        """Encode the query string for the authorization request."""
        params = {
            "response_type": "code",
            "client_id": self.auth0_client_id,
            "redirect_uri": self.callback_url,
            "scope": "openid profile email",
            "state": state,
        }
        if self.auth0_audience:
            params["audience"] = self.auth0_audience
        if self.auth0_connection:
            params["connection"] = self.auth0_connection
        return urlencode(params)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
