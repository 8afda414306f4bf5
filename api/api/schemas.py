"""Request and response models for the HTTP surface.

Order submissions reuse :class:`groupbuy_core.models.order.OrderSubmission`
directly; everything here is specific to the wire format.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from groupbuy_core.models.order import OrderAction, OrderStatus
from groupbuy_core.orders.actions import ActionDetails, OrderSnapshot
from groupbuy_core.state.tables import NotificationEventTable
from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


class OrderCreatedResponse(BaseModel):
    """Outcome of ``POST /api/public/{tenant_slug}/orders``; identical on replay."""

    order_id: str
    status: OrderStatus
    version: int
    total_amount: int


class TransitionRequest(BaseModel):
    """Body of ``POST /api/host/orders/{order_id}/transition``."""

    action: OrderAction
    expected_version: int = Field(..., ge=1)
    provider_reference: str | None = Field(default=None, max_length=256)
    carrier_reference: str | None = Field(default=None, max_length=256)
    amount: int | None = Field(default=None, ge=0)
    reason: str | None = Field(default=None, max_length=1000)

    def details(self) -> ActionDetails:
        return ActionDetails(
            provider_reference=self.provider_reference,
            carrier_reference=self.carrier_reference,
            amount=self.amount,
            reason=self.reason,
        )


class OrderItemResponse(BaseModel):
    product_id: str
    variant_id: str | None = None
    product_name: str
    quantity: int
    unit_price: int
    line_total: int


class PaymentResponse(BaseModel):
    amount: int
    provider_reference: str | None = None
    status: str
    created_at: datetime


class ShipmentResponse(BaseModel):
    carrier_reference: str | None = None
    status: str
    created_at: datetime
    delivered_at: datetime | None = None


class OrderResponse(BaseModel):
    """Full order view returned by host routes."""

    order_id: str
    status: OrderStatus
    version: int
    total_amount: int
    note: str | None = None
    cancel_reason: str | None = None
    created_at: datetime
    updated_at: datetime
    items: list[OrderItemResponse] = Field(default_factory=list)
    payments: list[PaymentResponse] = Field(default_factory=list)
    shipments: list[ShipmentResponse] = Field(default_factory=list)

    @classmethod
    def from_snapshot(cls, snapshot: OrderSnapshot) -> OrderResponse:
        order = snapshot.order
        return cls(
            order_id=order.id,
            status=OrderStatus(order.status),
            version=order.version,
            total_amount=order.total_amount,
            note=order.note,
            cancel_reason=order.cancel_reason,
            created_at=order.created_at,
            updated_at=order.updated_at,
            items=[
                OrderItemResponse(
                    product_id=i.product_id,
                    variant_id=i.variant_id,
                    product_name=i.product_name,
                    quantity=i.quantity,
                    unit_price=i.unit_price,
                    line_total=i.line_total,
                )
                for i in snapshot.items
            ],
            payments=[
                PaymentResponse(
                    amount=p.amount,
                    provider_reference=p.provider_reference,
                    status=p.status,
                    created_at=p.created_at,
                )
                for p in snapshot.payments
            ],
            shipments=[
                ShipmentResponse(
                    carrier_reference=s.carrier_reference,
                    status=s.status,
                    created_at=s.created_at,
                    delivered_at=s.delivered_at,
                )
                for s in snapshot.shipments
            ],
        )


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class WebhookAcceptedResponse(BaseModel):
    status: str = "accepted"


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


class NotificationResponse(BaseModel):
    """A queued notification as seen by operators."""

    id: str
    order_id: str | None = None
    target: str
    trigger: str
    status: str
    attempts: int
    last_error: str | None = None
    provider_status: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    dead_lettered_at: datetime | None = None

    @classmethod
    def from_row(cls, row: NotificationEventTable) -> NotificationResponse:
        return cls(
            id=row.id,
            order_id=row.order_id,
            target=row.target,
            trigger=row.trigger,
            status=row.status,
            attempts=row.attempts,
            last_error=row.last_error,
            provider_status=row.provider_status,
            payload=dict(row.payload or {}),
            created_at=row.created_at,
            dead_lettered_at=row.dead_lettered_at,
        )


class IdempotencyReleaseResponse(BaseModel):
    key: str
    released: bool
