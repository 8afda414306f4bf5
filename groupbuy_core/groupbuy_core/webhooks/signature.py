"""LINE webhook signature verification.

``X-Line-Signature`` is ``base64(HMAC-SHA256(channel_secret, raw_body))``.
It must be checked against the raw bytes before anything parses them.
"""

from __future__ import annotations

import base64
import hashlib
import hmac

from groupbuy_core.errors import WebhookSignatureInvalid, security_logger


def compute_signature(channel_secret: str, body: bytes) -> str:
    digest = hmac.new(channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(body: bytes, signature_header: str | None, channel_secret: str | None, *, tenant: str) -> None:
    """Constant-time check of *signature_header* over *body*.

    Parameters
    ----------
    body:
        Raw request body, exactly as received.
    signature_header:
        Value of ``X-Line-Signature``.
    channel_secret:
        The tenant's channel secret.  ``None`` or empty fails closed.
    tenant:
        Tenant slug, used only for the security log line.

    Raises
    ------
    WebhookSignatureInvalid
        Missing header, missing secret or mismatched digest.
    """
    if not signature_header:
        reason = "missing signature header"
    elif not channel_secret:
        reason = "no channel secret configured"
    elif not hmac.compare_digest(compute_signature(channel_secret, body), signature_header.strip()):
        reason = "signature mismatch"
    else:
        return

    security_logger.warning("Webhook signature rejected tenant=%s reason=%s bytes=%d", tenant, reason, len(body))
    raise WebhookSignatureInvalid("Webhook signature verification failed")
