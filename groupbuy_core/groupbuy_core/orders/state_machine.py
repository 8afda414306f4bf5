"""Order status state machine.

Legal moves::

    Created ──(auto)──▶ PendingPayment ──▶ Paid ──▶ Shipping ──▶ Completed
                              │              │
                              └──▶ Cancelled ◀┘

``Completed`` and ``Cancelled`` are terminal.  Every transition is a
compare-and-swap on the order's version counter; a caller holding an old
version gets :class:`StaleOrderState` and nothing is written.  A successful
customer-facing transition enqueues its notification in the same unit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from groupbuy_core.errors import IllegalTransition, StaleOrderState
from groupbuy_core.models.order import (
    NotificationTarget,
    NotificationTrigger,
    OrderStatus,
)
from groupbuy_core.notifications.queue import enqueue
from groupbuy_core.state.gateway import ScopedUnit
from groupbuy_core.state.tables import OrderTable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transition:
    source: OrderStatus
    target: OrderStatus
    notify_customer: bool


_TRANSITIONS: tuple[Transition, ...] = (
    Transition(OrderStatus.CREATED, OrderStatus.PENDING_PAYMENT, notify_customer=False),
    Transition(OrderStatus.PENDING_PAYMENT, OrderStatus.PAID, notify_customer=True),
    Transition(OrderStatus.PENDING_PAYMENT, OrderStatus.CANCELLED, notify_customer=True),
    Transition(OrderStatus.PAID, OrderStatus.CANCELLED, notify_customer=True),
    Transition(OrderStatus.PAID, OrderStatus.SHIPPING, notify_customer=True),
    Transition(OrderStatus.SHIPPING, OrderStatus.COMPLETED, notify_customer=True),
)

TRANSITIONS: dict[tuple[OrderStatus, OrderStatus], Transition] = {(t.source, t.target): t for t in _TRANSITIONS}

TERMINAL_STATES: frozenset[OrderStatus] = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})


def allowed_targets(source: OrderStatus) -> frozenset[OrderStatus]:
    """Statuses reachable from *source* in one step."""
    return frozenset(t.target for t in _TRANSITIONS if t.source is source)


def lookup(source: OrderStatus, target: OrderStatus) -> Transition:
    transition = TRANSITIONS.get((source, target))
    if transition is None:
        raise IllegalTransition(f"Cannot move order from {source.value} to {target.value}")
    return transition


async def transition(
    unit: ScopedUnit,
    order_id: str,
    target: OrderStatus,
    expected_version: int,
    *,
    extra_values: dict[str, Any] | None = None,
    notify_details: dict[str, Any] | None = None,
) -> OrderTable:
    """Move one order to *target* inside the caller's unit.

    Parameters
    ----------
    unit:
        Open scoped unit; the transition, its notification and any side
        records the caller writes commit together.
    order_id:
        Order to move.  Must belong to the unit's tenant.
    target:
        Desired status.
    expected_version:
        The version the caller last saw.
    extra_values:
        Additional order columns to set in the same CAS write.
    notify_details:
        Extra template fields for the customer notification.

    Returns
    -------
    OrderTable
        The order as stored after the transition.

    Raises
    ------
    StaleOrderState
        *expected_version* is not the stored version (checked first, so a
        caller with stale data always learns to re-fetch).
    IllegalTransition
        The move is not in the transition table.
    """
    order = await unit.get(OrderTable, order_id)
    if order.version != expected_version:
        raise StaleOrderState(
            f"Order {order_id} is at version {order.version}, not {expected_version}",
            current_version=order.version,
        )

    source = OrderStatus(order.status)
    step = lookup(source, target)

    values: dict[str, Any] = {"status": target.value, "updated_at": datetime.now(UTC)}
    if extra_values:
        values.update(extra_values)
    swapped = await unit.compare_and_swap(OrderTable, order_id, expected_version, values)
    if not swapped:
        current = await unit.get(OrderTable, order_id)
        raise StaleOrderState(
            f"Order {order_id} changed concurrently (now version {current.version})",
            current_version=current.version,
        )

    order = await unit.get(OrderTable, order_id)
    logger.info(
        "Order transition tenant=%s order=%s %s -> %s version=%d",
        unit.scope.tenant_slug,
        order_id,
        source.value,
        target.value,
        order.version,
    )

    if step.notify_customer:
        await enqueue(
            unit,
            target=NotificationTarget.CUSTOMER,
            trigger=NotificationTrigger.STATUS_CHANGED,
            order=order,
            status=target,
            details=notify_details,
        )
    return order
