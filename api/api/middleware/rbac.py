"""Role-based access control for host routes.

Three roles form a strict hierarchy (VIEWER < STAFF < OWNER); each role
holds every permission of the roles below it.

Usage in routers::

    @router.get("/orders/{order_id}")
    async def get_order(
        ...,
        _role: Role = Depends(require_permission(Permission.READ_ORDERS)),
    ) -> ...:
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum, IntEnum

from fastapi import Depends, HTTPException, Request

logger = logging.getLogger(__name__)


class Role(IntEnum):
    """Host roles ordered by privilege level."""

    VIEWER = 0
    STAFF = 1
    OWNER = 2


_ROLE_LOOKUP: dict[str, Role] = {r.name.lower(): r for r in Role}


def parse_role(raw: str) -> Role:
    """Convert a token ``role`` claim into a :class:`Role`.

    Raises :class:`ValueError` if the string does not map to a known role.
    """
    try:
        return _ROLE_LOOKUP[raw.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown role '{raw}'. Valid roles: {sorted(_ROLE_LOOKUP)}")


class Permission(str, Enum):
    """Capability tags checked by endpoint guards."""

    READ_ORDERS = "read:orders"
    TRANSITION_ORDERS = "transition:orders"
    CANCEL_ORDERS = "cancel:orders"
    READ_NOTIFICATIONS = "read:notifications"
    REQUEUE_NOTIFICATIONS = "requeue:notifications"
    RELEASE_IDEMPOTENCY = "release:idempotency"


_VIEWER_PERMS: frozenset[Permission] = frozenset({Permission.READ_ORDERS})

_STAFF_PERMS: frozenset[Permission] = _VIEWER_PERMS | frozenset(
    {
        Permission.TRANSITION_ORDERS,
        Permission.READ_NOTIFICATIONS,
    }
)

_OWNER_PERMS: frozenset[Permission] = _STAFF_PERMS | frozenset(
    {
        Permission.CANCEL_ORDERS,
        Permission.REQUEUE_NOTIFICATIONS,
        Permission.RELEASE_IDEMPOTENCY,
    }
)

ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.VIEWER: _VIEWER_PERMS,
    Role.STAFF: _STAFF_PERMS,
    Role.OWNER: _OWNER_PERMS,
}


def role_has_permission(role: Role, permission: Permission) -> bool:
    """Return ``True`` if *role* grants *permission*."""
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


def get_user_role(request: Request) -> Role:
    """Return the role carried by the verified host token.

    Raises
    ------
    HTTPException(401)
        If no authenticated identity is on the request.
    HTTPException(403)
        If the role claim is not a recognised role.
    """
    raw_role: str | None = getattr(request.state, "role", None)
    if raw_role is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return parse_role(raw_role)
    except ValueError:
        logger.warning("Unrecognised role claim '%s'; denying access", raw_role)
        raise HTTPException(status_code=403, detail=f"Unrecognised role '{raw_role}'")


def ensure_permission(role: Role, permission: Permission) -> None:
    """Raise ``HTTPException(403)`` unless *role* grants *permission*."""
    if not role_has_permission(role, permission):
        logger.info("Permission denied: role=%s requires %s", role.name, permission.value)
        raise HTTPException(
            status_code=403,
            detail=f"Permission denied: role '{role.name.lower()}' does not have '{permission.value}' permission",
        )


def require_permission(permission: Permission) -> Callable[..., Role]:
    """Return a FastAPI dependency that enforces *permission*.

    The resolved :class:`Role` is returned so handlers can make further
    per-action checks with :func:`ensure_permission`.
    """

    def _guard(role: Role = Depends(get_user_role)) -> Role:
        ensure_permission(role, permission)
        return role

    return _guard
