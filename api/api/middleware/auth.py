"""Host session-token authentication.

Every route under ``/api/host/`` requires ``Authorization: Bearer <token>``
where the token is::

    gbs.<urlsafe-base64(JSON claims)>.<hex HMAC-SHA256(secret, base64 segment)>

Claims are ``sub``, ``tenant_id``, ``role`` and ``exp`` (UNIX seconds).
Tokens are minted by the host login flow, which lives outside this
service; :func:`sign_session_token` exists for that flow and for tests.

Public intake, webhooks, health and metrics are not host routes and pass
through untouched.  Webhooks authenticate by signature instead.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from typing import Any

from pydantic import BaseModel, Field, ValidationError
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from api.errors import error_response

logger = logging.getLogger(__name__)

_TOKEN_PREFIX = "gbs"
_HOST_PREFIX = "/api/host/"


class SessionClaims(BaseModel):
    sub: str = Field(..., min_length=1)
    tenant_id: str = Field(..., min_length=1, max_length=64)
    role: str = Field(..., min_length=1)
    exp: int


class InvalidSessionToken(Exception):
    """The bearer token is malformed, forged, or expired."""


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, segment: str) -> str:
    return hmac.new(secret.encode("utf-8"), segment.encode("ascii"), hashlib.sha256).hexdigest()


def sign_session_token(claims: dict[str, Any], secret: str) -> str:
    """Serialise and sign *claims* into a ``gbs.`` token."""
    payload = json.dumps(claims, separators=(",", ":"), sort_keys=True).encode("utf-8")
    segment = _b64encode(payload)
    return f"{_TOKEN_PREFIX}.{segment}.{_sign(secret, segment)}"


def verify_session_token(token: str, secret: str, *, now: float | None = None) -> SessionClaims:
    """Return the claims of a valid token.

    Raises
    ------
    InvalidSessionToken
        With a short reason: bad format, bad signature, bad claims, expired.
    """
    parts = token.split(".")
    if len(parts) != 3 or parts[0] != _TOKEN_PREFIX:
        raise InvalidSessionToken("malformed token")
    _, segment, signature = parts

    if not hmac.compare_digest(_sign(secret, segment), signature):
        raise InvalidSessionToken("bad signature")

    try:
        claims = SessionClaims.model_validate(json.loads(_b64decode(segment)))
    except (binascii.Error, UnicodeDecodeError, ValueError, ValidationError) as exc:
        raise InvalidSessionToken("invalid claims") from exc

    if claims.exp <= (time.time() if now is None else now):
        raise InvalidSessionToken("token expired")
    return claims


def _is_host_path(path: str) -> bool:
    return path.startswith(_HOST_PREFIX)


class HostAuthenticationMiddleware(BaseHTTPMiddleware):
    """Verify host session tokens and populate ``request.state``.

    On success ``request.state`` carries ``tenant_id``, ``sub`` and
    ``role``; the tenant scope for the request is derived from
    ``tenant_id`` alone.  Failures return the ``UNAUTHENTICATED`` envelope.
    """

    def __init__(self, app: Any, secret: str) -> None:
        super().__init__(app)
        self._secret = secret

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not _is_host_path(request.url.path):
            return await call_next(request)

        auth_header = request.headers.get("authorization")
        if not auth_header:
            return error_response(request, "UNAUTHENTICATED", "Missing Authorization header")

        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return error_response(request, "UNAUTHENTICATED", "Authorization header must use Bearer scheme")

        try:
            claims = verify_session_token(parts[1].strip(), self._secret)
        except InvalidSessionToken as exc:
            logger.info("Host token rejected path=%s reason=%s", request.url.path, exc)
            return error_response(request, "UNAUTHENTICATED", f"Invalid token: {exc}")

        request.state.tenant_id = claims.tenant_id
        request.state.sub = claims.sub
        request.state.role = claims.role
        return await call_next(request)
