"""Order intake engine.

Turns a public order submission into exactly one order per idempotency key:

1. fingerprint the normalized body;
2. reserve the key in the ledger (or replay / reject);
3. in one unit: validate the cart against the tenant's catalog, price it
   server-side, create the order and its items in ``Created``, run the
   automatic ``Created → PendingPayment`` step, complete the ledger record
   and enqueue the host's "new order" notification;
4. on any failure in step 3, release the reservation so the client may
   retry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from groupbuy_core.config import CoreSettings
from groupbuy_core.errors import CrossTenantAccessDenied, EntityNotFound, ValidationFailed
from groupbuy_core.idempotency.ledger import IdempotencyLedger, LedgerAction, fingerprint, validate_key
from groupbuy_core.models.order import (
    IntakeOutcome,
    NotificationTarget,
    NotificationTrigger,
    OrderStatus,
    OrderSubmission,
)
from groupbuy_core.notifications.queue import enqueue
from groupbuy_core.orders import state_machine
from groupbuy_core.state.gateway import ScopedUnit, TenantDataGateway
from groupbuy_core.state.tables import (
    CustomerTable,
    OrderItemTable,
    OrderTable,
    ProductTable,
    ProductVariantTable,
)
from groupbuy_core.tenancy import ScopeToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _PricedLine:
    product_id: str
    variant_id: str | None
    name: str
    quantity: int
    unit_price: int

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


class OrderIntakeEngine:
    """Exactly-once order creation on top of the idempotency ledger.

    Parameters
    ----------
    session_factory:
        Async session factory for the state store.
    settings:
        Core settings (ledger retention and stale-lock timeout).
    ledger:
        Optional ledger instance; one is built from *settings* otherwise.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: CoreSettings,
        ledger: IdempotencyLedger | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger or IdempotencyLedger(session_factory, settings)

    async def submit(self, scope: ScopeToken, submission: OrderSubmission, idempotency_key: str | None) -> IntakeOutcome:
        """Create an order or replay the outcome stored for the key.

        Raises
        ------
        ValidationFailed
            Missing key, unknown/foreign/unorderable product or variant.
        IdempotencyKeyConflict
            The key was used with a different body.
        IdempotencyInProgress
            A concurrent attempt holds the key.
        """
        key = validate_key(idempotency_key)
        request_fingerprint = fingerprint(submission.normalized())

        decision = await self._ledger.begin_or_replay(scope, key, request_fingerprint)
        if decision.action is LedgerAction.REPLAY:
            outcome = IntakeOutcome.model_validate(decision.outcome)
            return outcome.model_copy(update={"replayed": True})

        reservation_id = decision.reservation_id
        assert reservation_id is not None  # noqa: S101
        try:
            outcome = await self._create(scope, submission, key, reservation_id)
        except Exception:
            try:
                await self._ledger.release(scope, key, reservation_id)
            except Exception:
                logger.exception(
                    "Could not release idempotency reservation tenant=%s key=%s; it expires as stale",
                    scope.tenant_slug,
                    key,
                )
            raise

        logger.info(
            "Order created tenant=%s order=%s total=%d items=%d",
            scope.tenant_slug,
            outcome.order_id,
            outcome.total_amount,
            len(submission.items),
        )
        return outcome

    async def _create(
        self,
        scope: ScopeToken,
        submission: OrderSubmission,
        key: str,
        reservation_id: str,
    ) -> IntakeOutcome:
        async with TenantDataGateway(self._session_factory, scope).unit() as unit:
            lines = await self._price_lines(unit, submission)
            total = sum(line.line_total for line in lines)
            customer = await self._customer_for(unit, submission)

            order = await unit.add(
                OrderTable(
                    customer_id=customer.id,
                    status=OrderStatus.CREATED.value,
                    version=1,
                    total_amount=total,
                    idempotency_key=key,
                    note=submission.note,
                )
            )
            for position, line in enumerate(lines):
                await unit.add(
                    OrderItemTable(
                        order_id=order.id,
                        product_id=line.product_id,
                        variant_id=line.variant_id,
                        product_name=line.name,
                        quantity=line.quantity,
                        unit_price=line.unit_price,
                        line_total=line.line_total,
                        position=position,
                    )
                )

            order = await state_machine.transition(unit, order.id, OrderStatus.PENDING_PAYMENT, order.version)

            outcome = IntakeOutcome(
                order_id=order.id,
                status=OrderStatus(order.status),
                version=order.version,
                total_amount=order.total_amount,
            )
            await self._ledger.complete(unit, key, reservation_id, order_id=order.id, outcome=outcome.snapshot())

            await enqueue(
                unit,
                target=NotificationTarget.HOST,
                trigger=NotificationTrigger.ORDER_CREATED,
                order=order,
                status=OrderStatus(order.status),
                details={"item_count": sum(line.quantity for line in lines)},
            )
        return outcome

    async def _price_lines(self, unit: ScopedUnit, submission: OrderSubmission) -> list[_PricedLine]:
        """Resolve every line against the catalog; collect all errors first."""
        now = datetime.now(UTC)
        errors: list[dict[str, str]] = []
        lines: list[_PricedLine] = []

        for index, item in enumerate(submission.items):
            field = f"items[{index}]"
            try:
                product = await unit.get(ProductTable, item.product_id)
            except (EntityNotFound, CrossTenantAccessDenied):
                # A foreign product is reported exactly like a missing one.
                errors.append({"field": f"{field}.product_id", "message": "Unknown product"})
                continue
            if not product.active or (product.orderable_until is not None and product.orderable_until <= now):
                errors.append({"field": f"{field}.product_id", "message": "Product is not currently orderable"})
                continue

            unit_price = product.price
            name = product.name
            if item.variant_id:
                variant = await unit.find_one(
                    ProductVariantTable,
                    ProductVariantTable.id == item.variant_id,
                    ProductVariantTable.product_id == product.id,
                )
                if variant is None:
                    errors.append({"field": f"{field}.variant_id", "message": "Unknown variant for this product"})
                    continue
                if not variant.active:
                    errors.append({"field": f"{field}.variant_id", "message": "Variant is not currently orderable"})
                    continue
                if variant.price is not None:
                    unit_price = variant.price
                name = f"{product.name} ({variant.name})"

            lines.append(
                _PricedLine(
                    product_id=product.id,
                    variant_id=item.variant_id or None,
                    name=name,
                    quantity=item.quantity,
                    unit_price=unit_price,
                )
            )

        if errors:
            raise ValidationFailed("Order contains invalid line items", errors=errors)
        return lines

    async def _customer_for(self, unit: ScopedUnit, submission: OrderSubmission) -> CustomerTable:
        """Reuse the tenant's customer for this reference, or create one."""
        info = submission.customer
        if info.guest or not info.reference:
            return await unit.add(CustomerTable(display_name=info.display_name, is_guest=True))

        existing = await unit.find_one(CustomerTable, CustomerTable.reference == info.reference)
        if existing is not None:
            return existing
        return await unit.add(CustomerTable(reference=info.reference, display_name=info.display_name, is_guest=False))


