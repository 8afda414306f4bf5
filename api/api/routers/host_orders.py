"""Host order management: status transitions and re-fetch."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from groupbuy_core.models.order import OrderAction

from api.dependencies import HostScopeDep, OrderActionsDep
from api.middleware.prometheus import ORDER_TRANSITIONS_TOTAL
from api.middleware.rbac import Permission, Role, ensure_permission, require_permission
from api.schemas import OrderResponse, TransitionRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/host/orders", tags=["host"])


@router.post("/{order_id}/transition", response_model=OrderResponse)
async def transition_order(
    order_id: str,
    body: TransitionRequest,
    scope: HostScopeDep,
    actions: OrderActionsDep,
    role: Role = Depends(require_permission(Permission.TRANSITION_ORDERS)),
) -> OrderResponse:
    """Apply a host action if ``expected_version`` is still current.

    A stale version returns ``STALE_ORDER_STATE`` with the current version
    in ``details``; the caller re-fetches and decides again.
    """
    if body.action is OrderAction.CANCEL:
        ensure_permission(role, Permission.CANCEL_ORDERS)
    snapshot = await actions.apply(scope, order_id, body.action, body.expected_version, body.details())
    ORDER_TRANSITIONS_TOTAL.labels(action=body.action.value).inc()
    return OrderResponse.from_snapshot(snapshot)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: str,
    scope: HostScopeDep,
    actions: OrderActionsDep,
    _role: Role = Depends(require_permission(Permission.READ_ORDERS)),
) -> OrderResponse:
    return OrderResponse.from_snapshot(await actions.get(scope, order_id))
