"""Tests for order intake, the status state machine and host actions."""

from __future__ import annotations

import asyncio
import logging

import pytest
from groupbuy_core.errors import (
    CrossTenantAccessDenied,
    IdempotencyInProgress,
    IdempotencyKeyConflict,
    IllegalTransition,
    StaleOrderState,
    ValidationFailed,
)
from groupbuy_core.idempotency.ledger import IdempotencyLedger
from groupbuy_core.models.order import (
    CustomerInput,
    LineItemInput,
    NotificationTarget,
    OrderAction,
    OrderStatus,
    OrderSubmission,
    PaymentStatus,
    ShipmentStatus,
)
from groupbuy_core.orders import state_machine
from groupbuy_core.orders.actions import ActionDetails, OrderActions
from groupbuy_core.orders.intake import OrderIntakeEngine
from groupbuy_core.state.gateway import TenantDataGateway
from groupbuy_core.state.tables import (
    CustomerTable,
    IdempotencyRecordTable,
    NotificationEventTable,
    OrderTable,
    ProductTable,
)
from sqlalchemy.exc import OperationalError

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _count(session_factory, scope, model, *criteria) -> int:
    async with TenantDataGateway(session_factory, scope).unit() as unit:
        return await unit.count(model, *criteria)


async def _notifications(session_factory, scope) -> list[NotificationEventTable]:
    async with TenantDataGateway(session_factory, scope).unit() as unit:
        return await unit.find(NotificationEventTable, order_by=(NotificationEventTable.created_at,))


# ---------------------------------------------------------------------------
# State machine table
# ---------------------------------------------------------------------------


class TestTransitionTable:
    def test_allowed_targets(self):
        assert state_machine.allowed_targets(OrderStatus.PENDING_PAYMENT) == {
            OrderStatus.PAID,
            OrderStatus.CANCELLED,
        }
        assert state_machine.allowed_targets(OrderStatus.PAID) == {OrderStatus.SHIPPING, OrderStatus.CANCELLED}

    @pytest.mark.parametrize("terminal", [OrderStatus.COMPLETED, OrderStatus.CANCELLED])
    def test_terminal_states_have_no_exits(self, terminal):
        assert state_machine.allowed_targets(terminal) == frozenset()
        assert terminal in state_machine.TERMINAL_STATES

    @pytest.mark.parametrize(
        "source,target",
        [
            (OrderStatus.PENDING_PAYMENT, OrderStatus.SHIPPING),
            (OrderStatus.SHIPPING, OrderStatus.CANCELLED),
            (OrderStatus.CREATED, OrderStatus.PAID),
            (OrderStatus.COMPLETED, OrderStatus.CANCELLED),
        ],
    )
    def test_illegal_moves(self, source, target):
        with pytest.raises(IllegalTransition):
            state_machine.lookup(source, target)

    def test_automatic_step_is_not_customer_facing(self):
        step = state_machine.lookup(OrderStatus.CREATED, OrderStatus.PENDING_PAYMENT)
        assert step.notify_customer is False


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------


class TestIntake:
    @pytest.mark.asyncio
    async def test_creates_pending_payment_order(self, session_factory, settings, acme, submission_for):
        engine = OrderIntakeEngine(session_factory, settings)
        outcome = await engine.submit(acme.scope, submission_for(acme), "k1")

        assert outcome.status is OrderStatus.PENDING_PAYMENT
        assert outcome.total_amount == 500
        assert outcome.version == 2
        assert outcome.replayed is False

        events = await _notifications(session_factory, acme.scope)
        assert [e.target for e in events] == [NotificationTarget.HOST.value]
        assert "total 500" in events[0].payload["text"]

    @pytest.mark.asyncio
    async def test_variant_price_overrides_product(self, session_factory, settings, acme):
        engine = OrderIntakeEngine(session_factory, settings)
        submission = OrderSubmission(
            customer=CustomerInput(reference="c"),
            items=[LineItemInput(product_id=acme.product_id, variant_id=acme.variant_id, quantity=3)],
        )
        outcome = await engine.submit(acme.scope, submission, "k-variant")
        assert outcome.total_amount == 900

    @pytest.mark.asyncio
    async def test_replay_returns_same_outcome(self, session_factory, settings, acme, submission_for):
        engine = OrderIntakeEngine(session_factory, settings)
        first = await engine.submit(acme.scope, submission_for(acme), "k1")
        second = await engine.submit(acme.scope, submission_for(acme), "k1")

        assert second.replayed is True
        assert second.snapshot() == first.snapshot()
        assert await _count(session_factory, acme.scope, OrderTable) == 1

    @pytest.mark.asyncio
    async def test_reused_key_with_other_body_conflicts(self, session_factory, settings, acme, submission_for):
        engine = OrderIntakeEngine(session_factory, settings)
        await engine.submit(acme.scope, submission_for(acme, quantity=2), "k1")
        with pytest.raises(IdempotencyKeyConflict):
            await engine.submit(acme.scope, submission_for(acme, quantity=3), "k1")

    @pytest.mark.asyncio
    async def test_concurrent_retries_create_one_order(self, session_factory, settings, acme, submission_for):
        engine = OrderIntakeEngine(session_factory, settings)
        results = await asyncio.gather(
            *(engine.submit(acme.scope, submission_for(acme), "k-race") for _ in range(4)),
            return_exceptions=True,
        )
        outcomes = [r for r in results if not isinstance(r, BaseException)]
        errors = [r for r in results if isinstance(r, BaseException)]

        assert all(isinstance(e, IdempotencyInProgress) for e in errors)
        assert len({o.order_id for o in outcomes}) == 1
        assert await _count(session_factory, acme.scope, OrderTable) == 1

    @pytest.mark.asyncio
    async def test_missing_key_is_rejected(self, session_factory, settings, acme, submission_for):
        engine = OrderIntakeEngine(session_factory, settings)
        with pytest.raises(ValidationFailed):
            await engine.submit(acme.scope, submission_for(acme), None)

    @pytest.mark.asyncio
    async def test_foreign_product_is_unknown(self, session_factory, settings, acme, globex, submission_for):
        engine = OrderIntakeEngine(session_factory, settings)
        with pytest.raises(ValidationFailed) as exc:
            await engine.submit(acme.scope, submission_for(globex), "k1")

        assert exc.value.errors == [{"field": "items[0].product_id", "message": "Unknown product"}]
        assert await _count(session_factory, acme.scope, OrderTable) == 0
        assert await _count(session_factory, acme.scope, IdempotencyRecordTable) == 0

    @pytest.mark.asyncio
    async def test_inactive_product_is_rejected(self, session_factory, settings, acme, submission_for):
        async with TenantDataGateway(session_factory, acme.scope).unit() as unit:
            await unit.update_where(ProductTable, ProductTable.id == acme.product_id, values={"active": False})

        engine = OrderIntakeEngine(session_factory, settings)
        with pytest.raises(ValidationFailed) as exc:
            await engine.submit(acme.scope, submission_for(acme), "k1")
        assert exc.value.errors[0]["message"] == "Product is not currently orderable"

    @pytest.mark.asyncio
    async def test_failed_attempt_releases_key(self, session_factory, settings, acme, submission_for):
        engine = OrderIntakeEngine(session_factory, settings)
        bad = OrderSubmission(
            customer=CustomerInput(reference="c"),
            items=[LineItemInput(product_id="nope", quantity=1)],
        )
        with pytest.raises(ValidationFailed):
            await engine.submit(acme.scope, bad, "k1")

        outcome = await engine.submit(acme.scope, submission_for(acme), "k1")
        assert outcome.status is OrderStatus.PENDING_PAYMENT

    @pytest.mark.asyncio
    async def test_release_failure_keeps_original_error(
        self, session_factory, settings, acme, monkeypatch, caplog
    ):
        async def _broken_release(self, scope, key, reservation_id):
            raise OperationalError("DELETE FROM idempotency_records", {}, Exception("database is locked"))

        monkeypatch.setattr(IdempotencyLedger, "release", _broken_release)
        caplog.set_level(logging.ERROR, logger="groupbuy_core.orders.intake")
        bad = OrderSubmission(
            customer=CustomerInput(reference="c"),
            items=[LineItemInput(product_id="nope", quantity=1)],
        )

        with pytest.raises(ValidationFailed):
            await OrderIntakeEngine(session_factory, settings).submit(acme.scope, bad, "k1")
        assert any("Could not release idempotency reservation" in r.getMessage() for r in caplog.records)

    @pytest.mark.asyncio
    async def test_customer_reused_by_reference(self, session_factory, settings, acme, submission_for):
        engine = OrderIntakeEngine(session_factory, settings)
        await engine.submit(acme.scope, submission_for(acme, reference="r1"), "k1")
        await engine.submit(acme.scope, submission_for(acme, reference="r1", quantity=1), "k2")
        assert await _count(session_factory, acme.scope, CustomerTable) == 1

    def test_guest_or_reference_required(self):
        with pytest.raises(ValueError):
            CustomerInput(display_name="Anon")
        assert CustomerInput(guest=True).guest is True


# ---------------------------------------------------------------------------
# Host actions
# ---------------------------------------------------------------------------


class TestHostActions:
    @pytest.mark.asyncio
    async def test_full_lifecycle(self, session_factory, settings, acme, submission_for):
        intake = OrderIntakeEngine(session_factory, settings)
        actions = OrderActions(session_factory)
        outcome = await intake.submit(acme.scope, submission_for(acme), "k1")

        paid = await actions.apply(
            acme.scope,
            outcome.order_id,
            OrderAction.CONFIRM_PAYMENT,
            outcome.version,
            ActionDetails(provider_reference="pay-1"),
        )
        assert paid.order.status == OrderStatus.PAID.value
        assert paid.payments[0].amount == 500

        shipped = await actions.apply(
            acme.scope,
            outcome.order_id,
            OrderAction.SHIP,
            paid.order.version,
            ActionDetails(carrier_reference="TRK-9"),
        )
        assert shipped.shipments[0].status == ShipmentStatus.IN_TRANSIT.value

        done = await actions.apply(acme.scope, outcome.order_id, OrderAction.COMPLETE, shipped.order.version)
        assert done.order.status == OrderStatus.COMPLETED.value
        assert done.order.version == 5
        assert done.shipments[0].status == ShipmentStatus.DELIVERED.value
        assert done.shipments[0].delivered_at is not None

        events = await _notifications(session_factory, acme.scope)
        targets = [e.target for e in events]
        assert targets.count(NotificationTarget.HOST.value) == 1
        assert targets.count(NotificationTarget.CUSTOMER.value) == 3
        assert any("TRK-9" in e.payload["text"] for e in events)

    @pytest.mark.asyncio
    async def test_stale_version_changes_nothing(self, session_factory, settings, acme, submission_for):
        intake = OrderIntakeEngine(session_factory, settings)
        actions = OrderActions(session_factory)
        outcome = await intake.submit(acme.scope, submission_for(acme), "k1")

        with pytest.raises(StaleOrderState) as exc:
            await actions.apply(acme.scope, outcome.order_id, OrderAction.CONFIRM_PAYMENT, outcome.version - 1)
        assert exc.value.current_version == outcome.version

        snapshot = await actions.get(acme.scope, outcome.order_id)
        assert snapshot.order.status == OrderStatus.PENDING_PAYMENT.value
        assert snapshot.payments == []
        assert len(await _notifications(session_factory, acme.scope)) == 1

    @pytest.mark.asyncio
    async def test_illegal_action(self, session_factory, settings, acme, submission_for):
        intake = OrderIntakeEngine(session_factory, settings)
        actions = OrderActions(session_factory)
        outcome = await intake.submit(acme.scope, submission_for(acme), "k1")
        with pytest.raises(IllegalTransition):
            await actions.apply(acme.scope, outcome.order_id, OrderAction.SHIP, outcome.version)

    @pytest.mark.asyncio
    async def test_concurrent_actions_one_wins(self, session_factory, settings, acme, submission_for):
        intake = OrderIntakeEngine(session_factory, settings)
        actions = OrderActions(session_factory)
        outcome = await intake.submit(acme.scope, submission_for(acme), "k1")

        results = await asyncio.gather(
            actions.apply(acme.scope, outcome.order_id, OrderAction.CONFIRM_PAYMENT, outcome.version),
            actions.apply(acme.scope, outcome.order_id, OrderAction.CANCEL, outcome.version),
            return_exceptions=True,
        )
        assert sum(1 for r in results if isinstance(r, StaleOrderState)) == 1
        snapshot = await actions.get(acme.scope, outcome.order_id)
        assert snapshot.order.version == outcome.version + 1

    @pytest.mark.asyncio
    async def test_payment_amount_must_match(self, session_factory, settings, acme, submission_for):
        intake = OrderIntakeEngine(session_factory, settings)
        actions = OrderActions(session_factory)
        outcome = await intake.submit(acme.scope, submission_for(acme), "k1")
        with pytest.raises(ValidationFailed):
            await actions.apply(
                acme.scope,
                outcome.order_id,
                OrderAction.CONFIRM_PAYMENT,
                outcome.version,
                ActionDetails(amount=499),
            )

    @pytest.mark.asyncio
    async def test_stale_payment_reports_version_before_amount(
        self, session_factory, settings, acme, submission_for
    ):
        intake = OrderIntakeEngine(session_factory, settings)
        actions = OrderActions(session_factory)
        outcome = await intake.submit(acme.scope, submission_for(acme), "k1")
        with pytest.raises(StaleOrderState) as exc:
            await actions.apply(
                acme.scope,
                outcome.order_id,
                OrderAction.CONFIRM_PAYMENT,
                outcome.version + 1,
                ActionDetails(amount=499),
            )
        assert exc.value.current_version == outcome.version

    @pytest.mark.asyncio
    async def test_cancel_after_payment_voids_it(self, session_factory, settings, acme, submission_for):
        intake = OrderIntakeEngine(session_factory, settings)
        actions = OrderActions(session_factory)
        outcome = await intake.submit(acme.scope, submission_for(acme), "k1")
        paid = await actions.apply(acme.scope, outcome.order_id, OrderAction.CONFIRM_PAYMENT, outcome.version)

        cancelled = await actions.apply(
            acme.scope,
            outcome.order_id,
            OrderAction.CANCEL,
            paid.order.version,
            ActionDetails(reason="sold out"),
        )
        assert cancelled.order.cancel_reason == "sold out"
        assert cancelled.payments[0].status == PaymentStatus.VOIDED.value
        with pytest.raises(IllegalTransition):
            await actions.apply(acme.scope, outcome.order_id, OrderAction.COMPLETE, cancelled.order.version)

    @pytest.mark.asyncio
    async def test_other_tenant_cannot_act(self, session_factory, settings, acme, globex, submission_for):
        intake = OrderIntakeEngine(session_factory, settings)
        actions = OrderActions(session_factory)
        outcome = await intake.submit(acme.scope, submission_for(acme), "k1")
        with pytest.raises(CrossTenantAccessDenied):
            await actions.apply(globex.scope, outcome.order_id, OrderAction.CANCEL, outcome.version)
        with pytest.raises(CrossTenantAccessDenied):
            await actions.get(globex.scope, outcome.order_id)
