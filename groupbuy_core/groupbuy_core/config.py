"""Core configuration loaded from environment variables."""

from __future__ import annotations

import logging

from pydantic import BaseModel, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class ChannelCredentials(BaseModel):
    """Messaging channel secret/token pair for one tenant.

    Both values are opaque to the core.  The secret signs inbound webhooks,
    the access token authorises outbound pushes.
    """

    channel_secret: SecretStr
    channel_access_token: SecretStr = SecretStr("")


class CoreSettings(BaseSettings):
    """Core settings loaded from environment variables with GROUPBUY_ prefix.

    ``channel_credentials`` is a JSON object keyed by tenant slug, e.g.::

        GROUPBUY_CHANNEL_CREDENTIALS='{"acme": {"channel_secret": "...", "channel_access_token": "..."}}'

    It is injected from the environment or a secret store and is never
    persisted in the database.
    """

    model_config = SettingsConfigDict(
        env_prefix="GROUPBUY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite+aiosqlite:///.groupbuy/state.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Idempotency ledger
    idempotency_retention_hours: int = 24
    idempotency_stale_lock_seconds: int = 300
    idempotency_retry_after_seconds: int = 2

    # Notification dispatcher
    dispatcher_max_attempts: int = 3
    dispatcher_base_delay_seconds: float = 5.0
    dispatcher_max_delay_seconds: float = 900.0
    dispatcher_jitter: bool = True
    dispatcher_lease_seconds: int = 60
    dispatcher_batch_size: int = 20
    dispatcher_concurrency: int = 4
    dispatcher_poll_interval_seconds: float = 2.0

    # Webhook event routing
    webhook_identity_event_types: list[str] = ["accountLink"]
    webhook_delivery_event_types: list[str] = ["delivery"]
    # Recorded events still unapplied after this long are replayed by the
    # dispatcher sweep; after ``webhook_max_attempts`` failures they are parked.
    webhook_replay_after_seconds: float = 30.0
    webhook_max_attempts: int = 5

    # Per-tenant messaging channel credentials, keyed by tenant slug.
    channel_credentials: dict[str, ChannelCredentials] = {}

    @field_validator("dispatcher_max_attempts")
    @classmethod
    def _validate_max_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("dispatcher_max_attempts must be at least 1")
        return value

    def credentials_for(self, tenant_slug: str) -> ChannelCredentials | None:
        """Return the channel credentials for *tenant_slug*, if configured."""
        return self.channel_credentials.get(tenant_slug)


def load_core_settings() -> CoreSettings:
    """Construct settings from the environment / ``.env`` file."""
    return CoreSettings()
