"""Host actions on orders.

Each action is one state-machine transition plus the record that drives
it (payment, shipment), written in a single unit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from groupbuy_core.errors import StaleOrderState, ValidationFailed
from groupbuy_core.models.order import OrderAction, OrderStatus, PaymentStatus, ShipmentStatus
from groupbuy_core.orders import state_machine
from groupbuy_core.state.gateway import ScopedUnit, TenantDataGateway
from groupbuy_core.state.tables import OrderItemTable, OrderTable, PaymentTable, ShipmentTable
from groupbuy_core.tenancy import ScopeToken

logger = logging.getLogger(__name__)

ACTION_TARGETS: dict[OrderAction, OrderStatus] = {
    OrderAction.CONFIRM_PAYMENT: OrderStatus.PAID,
    OrderAction.SHIP: OrderStatus.SHIPPING,
    OrderAction.COMPLETE: OrderStatus.COMPLETED,
    OrderAction.CANCEL: OrderStatus.CANCELLED,
}


@dataclass(frozen=True)
class ActionDetails:
    """Optional inputs carried by host actions."""

    provider_reference: str | None = None
    carrier_reference: str | None = None
    amount: int | None = None
    reason: str | None = None


@dataclass(frozen=True)
class OrderSnapshot:
    """Detached view of an order and its lines."""

    order: OrderTable
    items: list[OrderItemTable]
    payments: list[PaymentTable]
    shipments: list[ShipmentTable]


class OrderActions:
    """Apply host actions and read orders back for a tenant."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def apply(
        self,
        scope: ScopeToken,
        order_id: str,
        action: OrderAction,
        expected_version: int,
        details: ActionDetails | None = None,
    ) -> OrderSnapshot:
        """Run *action* against the order and return its new state.

        Raises
        ------
        StaleOrderState, IllegalTransition, CrossTenantAccessDenied,
        EntityNotFound, ValidationFailed
        """
        details = details or ActionDetails()
        target = ACTION_TARGETS[action]

        async with TenantDataGateway(self._session_factory, scope).unit() as unit:
            if action is OrderAction.CONFIRM_PAYMENT:
                await self._confirm_payment(unit, order_id, expected_version, details)
            elif action is OrderAction.SHIP:
                await state_machine.transition(
                    unit,
                    order_id,
                    target,
                    expected_version,
                    notify_details={"carrier_reference": details.carrier_reference},
                )
                await unit.add(
                    ShipmentTable(
                        order_id=order_id,
                        carrier_reference=details.carrier_reference,
                        status=ShipmentStatus.IN_TRANSIT.value,
                    )
                )
            elif action is OrderAction.COMPLETE:
                await state_machine.transition(unit, order_id, target, expected_version)
                await unit.update_where(
                    ShipmentTable,
                    ShipmentTable.order_id == order_id,
                    ShipmentTable.status == ShipmentStatus.IN_TRANSIT.value,
                    values={"status": ShipmentStatus.DELIVERED.value, "delivered_at": datetime.now(UTC)},
                )
            else:
                await state_machine.transition(
                    unit,
                    order_id,
                    target,
                    expected_version,
                    extra_values={"cancel_reason": details.reason},
                    notify_details={"reason": details.reason},
                )
                await unit.update_where(
                    PaymentTable,
                    PaymentTable.order_id == order_id,
                    PaymentTable.status == PaymentStatus.CONFIRMED.value,
                    values={"status": PaymentStatus.VOIDED.value},
                )

            snapshot = await self._snapshot(unit, order_id)

        logger.info(
            "Host action tenant=%s order=%s action=%s -> %s",
            scope.tenant_slug,
            order_id,
            action.value,
            snapshot.order.status,
        )
        return snapshot

    async def get(self, scope: ScopeToken, order_id: str) -> OrderSnapshot:
        async with TenantDataGateway(self._session_factory, scope).unit() as unit:
            return await self._snapshot(unit, order_id)

    async def _confirm_payment(
        self,
        unit: ScopedUnit,
        order_id: str,
        expected_version: int,
        details: ActionDetails,
    ) -> None:
        order = await unit.get(OrderTable, order_id)
        if order.version != expected_version:
            raise StaleOrderState(
                f"Order {order_id} is at version {order.version}, not {expected_version}",
                current_version=order.version,
            )
        if details.amount is not None and details.amount != order.total_amount:
            raise ValidationFailed.single(
                "amount", f"Payment amount {details.amount} does not match order total {order.total_amount}"
            )
        await state_machine.transition(unit, order_id, OrderStatus.PAID, expected_version)
        await unit.add(
            PaymentTable(
                order_id=order_id,
                amount=order.total_amount,
                provider_reference=details.provider_reference,
                status=PaymentStatus.CONFIRMED.value,
            )
        )

    @staticmethod
    async def _snapshot(unit: ScopedUnit, order_id: str) -> OrderSnapshot:
        order = await unit.get(OrderTable, order_id)
        items = await unit.find(OrderItemTable, OrderItemTable.order_id == order_id, order_by=(OrderItemTable.position,))
        payments = await unit.find(PaymentTable, PaymentTable.order_id == order_id, order_by=(PaymentTable.created_at,))
        shipments = await unit.find(
            ShipmentTable, ShipmentTable.order_id == order_id, order_by=(ShipmentTable.created_at,)
        )
        return OrderSnapshot(order=order, items=items, payments=payments, shipments=shipments)
