"""Domain error taxonomy.

Every fault the core raises on purpose derives from :class:`CoreError` and
carries a stable ``error_code``.  The HTTP layer maps these codes onto the
public error envelope; nothing here knows about status codes.
"""

from __future__ import annotations

import logging
from typing import Any

# Security-relevant events (isolation violations, forged webhooks) are
# emitted on a dedicated logger so they can be routed to anomaly detection.
security_logger = logging.getLogger("groupbuy.security")


class CoreError(Exception):
    """Base class for all expected domain failures."""

    error_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ScopeRequired(TypeError):
    """A data-access call was made without a :class:`ScopeToken`.

    This is a programming error, not a runtime condition, so it derives from
    ``TypeError`` rather than :class:`CoreError` and is never mapped to a
    client-facing code other than ``INTERNAL_ERROR``.
    """


class TenantNotFound(CoreError):
    error_code = "TENANT_NOT_FOUND"


class EntityNotFound(CoreError):
    error_code = "NOT_FOUND"


class CrossTenantAccessDenied(CoreError):
    """An entity owned by another tenant was addressed through a scope."""

    error_code = "CROSS_TENANT_DENIED"


class IdempotencyKeyConflict(CoreError):
    """The idempotency key was already used with a different request body."""

    error_code = "IDEMPOTENCY_CONFLICT"


class IdempotencyInProgress(CoreError):
    """The first request for this key has not finished yet."""

    error_code = "IDEMPOTENCY_IN_PROGRESS"

    def __init__(self, message: str, *, retry_after: int = 2) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class WebhookSignatureInvalid(CoreError):
    error_code = "WEBHOOK_SIGNATURE_INVALID"


class StaleOrderState(CoreError):
    """The caller's expected version no longer matches the stored order."""

    error_code = "STALE_ORDER_STATE"

    def __init__(self, message: str, *, current_version: int | None = None) -> None:
        super().__init__(message, details={"current_version": current_version})
        self.current_version = current_version


class IllegalTransition(CoreError):
    error_code = "ILLEGAL_TRANSITION"


class ValidationFailed(CoreError):
    """Input rejected before anything was written.

    ``details`` is a list of ``{"field": ..., "message": ...}`` entries.
    """

    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, errors: list[dict[str, str]] | None = None) -> None:
        super().__init__(message, details=errors or [])
        self.errors = errors or []

    @classmethod
    def single(cls, field: str, message: str) -> ValidationFailed:
        return cls(message, errors=[{"field": field, "message": message}])


class DeliveryError(Exception):
    """Outbound notification push failed.

    Not a :class:`CoreError`: it never reaches a client.  ``retryable``
    tells the dispatcher whether another attempt can succeed.
    """

    def __init__(self, message: str, *, retryable: bool, status_code: int | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code
