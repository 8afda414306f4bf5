"""Order-domain enumerations and request/outcome models."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class OrderStatus(str, Enum):
    CREATED = "Created"
    PENDING_PAYMENT = "PendingPayment"
    PAID = "Paid"
    SHIPPING = "Shipping"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class OrderAction(str, Enum):
    """Host-facing actions, each mapping onto exactly one target status."""

    CONFIRM_PAYMENT = "confirm-payment"
    SHIP = "ship"
    COMPLETE = "complete"
    CANCEL = "cancel"


class IdempotencyStatus(str, Enum):
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"


class NotificationStatus(str, Enum):
    PENDING = "Pending"
    SENT = "Sent"
    FAILED = "Failed"
    DEAD_LETTERED = "DeadLettered"


class NotificationTarget(str, Enum):
    HOST = "host"
    CUSTOMER = "customer"


class NotificationTrigger(str, Enum):
    ORDER_CREATED = "order_created"
    STATUS_CHANGED = "status_changed"


class PaymentStatus(str, Enum):
    CONFIRMED = "confirmed"
    VOIDED = "voided"


class ShipmentStatus(str, Enum):
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"


# ---------------------------------------------------------------------------
# Intake request
# ---------------------------------------------------------------------------


class CustomerInput(BaseModel):
    """Customer identity as handed to the core by the storefront.

    ``reference`` is the storefront's stable identifier for a signed-in
    customer.  Guests omit it and set ``guest``.
    """

    reference: str | None = Field(default=None, max_length=128)
    display_name: str | None = Field(default=None, max_length=256)
    guest: bool = False

    @model_validator(mode="after")
    def _reference_or_guest(self) -> CustomerInput:
        if not self.guest and not self.reference:
            raise ValueError("customer.reference is required unless guest is true")
        return self


class LineItemInput(BaseModel):
    product_id: str = Field(..., min_length=1, max_length=64)
    variant_id: str | None = Field(default=None, max_length=64)
    quantity: int = Field(..., gt=0, le=10_000)


class OrderSubmission(BaseModel):
    """Public order body.  Any client-side total is ignored."""

    customer: CustomerInput
    items: list[LineItemInput] = Field(..., min_length=1, max_length=100)
    note: str | None = Field(default=None, max_length=1000)

    def normalized(self) -> dict[str, Any]:
        """Canonical form used for fingerprinting.

        Items are sorted so that reordering the same cart does not count
        as a different request.
        """
        items = sorted(
            (
                {"product_id": i.product_id, "variant_id": i.variant_id or "", "quantity": i.quantity}
                for i in self.items
            ),
            key=lambda i: (i["product_id"], i["variant_id"], i["quantity"]),
        )
        return {
            "customer": {
                "reference": self.customer.reference or "",
                "display_name": self.customer.display_name or "",
                "guest": self.customer.guest,
            },
            "items": items,
            "note": self.note or "",
        }


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


class IntakeOutcome(BaseModel):
    """Result of an order submission; stored verbatim for replays."""

    order_id: str
    status: OrderStatus
    version: int
    total_amount: int
    replayed: bool = False

    def snapshot(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"replayed"})
