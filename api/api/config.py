"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from enum import Enum
from typing import Self

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PlatformEnv(str, Enum):
    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class APISettings(BaseSettings):
    """FastAPI application settings.

    All values can be overridden via environment variables prefixed with
    ``API_`` (e.g. ``API_PORT=9000``) or through a ``.env`` file in the
    working directory.  Database and dispatcher tuning live in
    :class:`groupbuy_core.config.CoreSettings` (``GROUPBUY_`` prefix).
    """

    model_config = SettingsConfigDict(
        env_prefix="API_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    platform_env: PlatformEnv = PlatformEnv.DEV

    # Origins permitted by the CORS middleware (host dashboard, storefront).
    cors_origins: list[str] = ["http://localhost:3000"]
    cors_allow_credentials: bool = True

    @model_validator(mode="after")
    def _validate_cors_credentials_not_wildcard(self) -> Self:
        """Reject wildcard origins when credentials are enabled.

        Browsers silently reject ``Access-Control-Allow-Origin: *`` when
        credentials are allowed, so fail at startup instead.
        """
        if self.cors_allow_credentials and "*" in self.cors_origins:
            raise ValueError(
                "Cannot use wildcard origins with credentials. "
                "Specify explicit origins instead of '*' when "
                "cors_allow_credentials=True."
            )
        return self

    @model_validator(mode="after")
    def _validate_session_secret(self) -> Self:
        if self.platform_env is not PlatformEnv.DEV and self.session_secret.get_secret_value() == _DEV_SESSION_SECRET:
            raise ValueError(f"API_SESSION_SECRET must be set in {self.platform_env.value} mode")
        return self

    # Rate limiting, keyed per tenant.
    rate_limit_enabled: bool = True
    rate_limit_default_per_minute: int = 120
    rate_limit_burst_multiplier: float = 1.5
    # Route templates (fnmatch globs) mapped to per-minute limits.
    rate_limit_routes: dict[str, int] = {
        "/api/public/*/orders": 30,
        "/api/webhooks/line/*": 300,
    }

    # HMAC key for host session tokens.
    session_secret: SecretStr = SecretStr("groupbuy-dev-session-secret-change-me")

    # Structured JSON logging for log aggregation.
    structured_logging: bool = False

    # Run the notification dispatcher inside the API process.
    dispatcher_enabled: bool = False

    # Outbound LINE Messaging API.
    line_api_base_url: str = "https://api.line.me"
    line_api_timeout: float = 10.0


_DEV_SESSION_SECRET = "groupbuy-dev-session-secret-change-me"


def load_api_settings() -> APISettings:
    """Construct settings from the environment / ``.env`` file."""
    return APISettings()
