"""Tests for the notification queue, dispatcher, backoff and LINE client."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import httpx
import pytest
from groupbuy_core.errors import DeliveryError, IllegalTransition
from groupbuy_core.models.order import (
    CustomerInput,
    LineItemInput,
    NotificationStatus,
    NotificationTarget,
    NotificationTrigger,
    OrderAction,
    OrderStatus,
    OrderSubmission,
)
from groupbuy_core.notifications.backoff import BackoffPolicy, compute_delay, next_attempt_at
from groupbuy_core.notifications.dispatcher import NotificationDispatcher
from groupbuy_core.notifications.provider import LineMessagingClient
from groupbuy_core.notifications.queue import NotificationQueue
from groupbuy_core.notifications.templates import render, short_ref
from groupbuy_core.orders.actions import OrderActions
from groupbuy_core.orders.intake import OrderIntakeEngine
from groupbuy_core.state.gateway import TenantDataGateway
from groupbuy_core.state.tables import NotificationEventTable
from groupbuy_core.webhooks.router import WebhookEvent, WebhookEventRouter

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class RecordingProvider:
    """Messaging provider double that records pushes or fails on demand."""

    def __init__(self, error: DeliveryError | None = None) -> None:
        self.error = error
        self.pushes: list[dict[str, str]] = []

    async def push(self, *, access_token: str, to: str, text: str, retry_key: str) -> None:
        self.pushes.append({"access_token": access_token, "to": to, "text": text, "retry_key": retry_key})
        if self.error is not None:
            raise self.error


async def _events(session_factory, scope) -> list[NotificationEventTable]:
    async with TenantDataGateway(session_factory, scope).unit() as unit:
        return await unit.find(NotificationEventTable, order_by=(NotificationEventTable.created_at,))


async def _make_due(session_factory, scope) -> None:
    async with TenantDataGateway(session_factory, scope).unit() as unit:
        await unit.update_where(
            NotificationEventTable,
            NotificationEventTable.status == NotificationStatus.PENDING.value,
            NotificationEventTable.attempts > 0,
            values={"next_attempt_at": datetime.now(UTC) - timedelta(seconds=1)},
        )


# ---------------------------------------------------------------------------
# Backoff and templates
# ---------------------------------------------------------------------------


class TestBackoff:
    def test_exponential_without_jitter(self):
        policy = BackoffPolicy(base_delay=2.0, max_delay=100.0, jitter=False)
        assert [compute_delay(n, policy) for n in range(4)] == [2.0, 4.0, 8.0, 16.0]

    def test_capped_at_max_delay(self):
        policy = BackoffPolicy(base_delay=10.0, max_delay=30.0, jitter=False)
        assert compute_delay(10, policy) == 30.0

    def test_jitter_stays_in_band(self):
        policy = BackoffPolicy(base_delay=10.0, max_delay=1000.0, jitter=True)
        for _ in range(50):
            assert 5.0 <= compute_delay(0, policy) <= 15.0

    def test_next_attempt_after_first_failure_uses_base(self):
        now = datetime(2026, 1, 1, tzinfo=UTC)
        policy = BackoffPolicy(base_delay=5.0, jitter=False)
        assert next_attempt_at(now, 1, policy) == now + timedelta(seconds=5)

    def test_exhausted(self):
        policy = BackoffPolicy(max_attempts=3)
        assert not policy.exhausted(2)
        assert policy.exhausted(3)


class TestTemplates:
    def test_host_new_order(self):
        text = render(
            NotificationTarget.HOST,
            NotificationTrigger.ORDER_CREATED,
            order_id="abcd1234-0000",
            status=OrderStatus.PENDING_PAYMENT,
            total_amount=12500,
            details={"item_count": 3},
        )
        assert text == "New order ABCD1234: 3 item(s), total 12,500."

    def test_customer_shipping_mentions_tracking(self):
        text = render(
            NotificationTarget.CUSTOMER,
            NotificationTrigger.STATUS_CHANGED,
            order_id="abcd1234-0000",
            status=OrderStatus.SHIPPING,
            total_amount=500,
            details={"carrier_reference": "TRK-1"},
        )
        assert "TRK-1" in text

    def test_short_ref(self):
        assert short_ref("abcd1234-5678") == "ABCD1234"


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class TestDispatcher:
    @pytest.mark.asyncio
    async def test_host_notification_is_sent(self, session_factory, settings, acme, submission_for):
        await OrderIntakeEngine(session_factory, settings).submit(acme.scope, submission_for(acme), "k1")
        provider = RecordingProvider()
        dispatcher = NotificationDispatcher(session_factory, provider, settings, worker_id="w1")

        report = await dispatcher.run_once()

        assert report.sent == 1
        assert provider.pushes[0]["to"] == "U-host-acme"
        assert provider.pushes[0]["access_token"] == "acme-token"
        events = await _events(session_factory, acme.scope)
        assert provider.pushes[0]["retry_key"] == events[0].id
        assert events[0].status == NotificationStatus.SENT.value
        assert events[0].attempts == 1

    @pytest.mark.asyncio
    async def test_sent_events_are_not_redelivered(self, session_factory, settings, acme, submission_for):
        await OrderIntakeEngine(session_factory, settings).submit(acme.scope, submission_for(acme), "k1")
        provider = RecordingProvider()
        dispatcher = NotificationDispatcher(session_factory, provider, settings, worker_id="w1")
        await dispatcher.run_once()
        report = await dispatcher.run_once()
        assert report.claimed == 0
        assert len(provider.pushes) == 1

    @pytest.mark.asyncio
    async def test_dead_letter_after_three_retryable_failures(self, session_factory, settings, acme, submission_for):
        await OrderIntakeEngine(session_factory, settings).submit(acme.scope, submission_for(acme), "k1")
        provider = RecordingProvider(DeliveryError("HTTP 503", retryable=True, status_code=503))
        dispatcher = NotificationDispatcher(session_factory, provider, settings, worker_id="w1")

        outcomes = []
        states = []
        for _ in range(3):
            report = await dispatcher.run_once()
            outcomes.append((report.retried, report.dead_lettered))
            row = (await _events(session_factory, acme.scope))[0]
            states.append((row.status, row.attempts))
            await _make_due(session_factory, acme.scope)

        assert outcomes == [(1, 0), (1, 0), (0, 1)]
        # Retryable failures keep the row Pending until the ceiling.
        assert states == [
            (NotificationStatus.PENDING.value, 1),
            (NotificationStatus.PENDING.value, 2),
            (NotificationStatus.DEAD_LETTERED.value, 3),
        ]
        event = (await _events(session_factory, acme.scope))[0]
        assert event.status == NotificationStatus.DEAD_LETTERED.value
        assert event.attempts == 3
        assert "503" in event.last_error

        # Dead letters are no longer claimed.
        assert (await dispatcher.run_once()).claimed == 0

    @pytest.mark.asyncio
    async def test_permanent_failure_dead_letters_immediately(
        self, session_factory, settings, acme, submission_for
    ):
        await OrderIntakeEngine(session_factory, settings).submit(acme.scope, submission_for(acme), "k1")
        provider = RecordingProvider(DeliveryError("HTTP 400", retryable=False, status_code=400))
        report = await NotificationDispatcher(session_factory, provider, settings).run_once()
        assert report.dead_lettered == 1

    @pytest.mark.asyncio
    async def test_unbound_customer_is_dead_lettered(self, session_factory, settings, acme):
        intake = OrderIntakeEngine(session_factory, settings)
        outcome = await intake.submit(
            acme.scope,
            OrderSubmission(
                customer=CustomerInput(guest=True),
                items=[LineItemInput(product_id=acme.product_id, quantity=1)],
            ),
            "k-guest",
        )
        await OrderActions(session_factory).apply(
            acme.scope, outcome.order_id, OrderAction.CONFIRM_PAYMENT, outcome.version
        )
        provider = RecordingProvider()
        report = await NotificationDispatcher(session_factory, provider, settings).run_once()

        assert report.sent == 1
        assert report.dead_lettered == 1
        assert [p["to"] for p in provider.pushes] == ["U-host-acme"]

    @pytest.mark.asyncio
    async def test_missing_credentials_dead_letter(self, session_factory, settings, acme, submission_for):
        await OrderIntakeEngine(session_factory, settings).submit(acme.scope, submission_for(acme), "k1")
        bare = settings.model_copy(update={"channel_credentials": {}})
        report = await NotificationDispatcher(session_factory, RecordingProvider(), bare).run_once()
        assert report.dead_lettered == 1

    @pytest.mark.asyncio
    async def test_report_callback(self, session_factory, settings, acme, submission_for):
        await OrderIntakeEngine(session_factory, settings).submit(acme.scope, submission_for(acme), "k1")
        reports = []
        dispatcher = NotificationDispatcher(session_factory, RecordingProvider(), settings, on_report=reports.append)
        await dispatcher.run_once()
        assert reports[0].sent == 1

    @pytest.mark.asyncio
    async def test_pass_replays_recorded_webhooks(self, session_factory, settings, acme):
        replaying = settings.model_copy(update={"webhook_replay_after_seconds": 0.0})
        await WebhookEventRouter(session_factory, replaying).record(
            acme.scope, [WebhookEvent(event_id="f1", event_type="follow", raw={"type": "follow"})]
        )

        dispatcher = NotificationDispatcher(session_factory, RecordingProvider(), replaying)
        first = await dispatcher.run_once()
        second = await dispatcher.run_once()

        assert (first.webhooks_replayed, first.webhooks_failed) == (1, 0)
        assert second.webhooks_replayed == 0


class TestQueueLeases:
    @pytest.mark.asyncio
    async def test_claimed_rows_are_exclusive(self, session_factory, settings, acme, submission_for):
        await OrderIntakeEngine(session_factory, settings).submit(acme.scope, submission_for(acme), "k1")
        queue = NotificationQueue(session_factory, settings)

        first = await queue.claim(acme.scope, "w1", limit=10)
        second = await queue.claim(acme.scope, "w2", limit=10)
        assert len(first) == 1
        assert second == []

    @pytest.mark.asyncio
    async def test_expired_lease_is_reclaimable(self, session_factory, settings, acme, submission_for):
        await OrderIntakeEngine(session_factory, settings).submit(acme.scope, submission_for(acme), "k1")
        queue = NotificationQueue(session_factory, settings)
        [claimed] = await queue.claim(acme.scope, "crashed-worker", limit=10)

        later = datetime.now(UTC) + timedelta(seconds=settings.dispatcher_lease_seconds + 1)
        reclaimed = await queue.claim(acme.scope, "w2", limit=10, now=later)
        assert [e.id for e in reclaimed] == [claimed.id]

        # The crashed worker's late write-back is discarded.
        assert await queue.mark_sent(acme.scope, claimed.id, "crashed-worker") is False
        assert await queue.mark_sent(acme.scope, claimed.id, "w2") is True

    @pytest.mark.asyncio
    async def test_due_tenants(self, session_factory, settings, acme, globex, submission_for):
        await OrderIntakeEngine(session_factory, settings).submit(globex.scope, submission_for(globex), "k1")
        scopes = await NotificationQueue(session_factory, settings).due_tenants()
        assert [s.tenant_slug for s in scopes] == ["globex"]

    @pytest.mark.asyncio
    async def test_requeue_dead_letter(self, session_factory, settings, acme, submission_for):
        await OrderIntakeEngine(session_factory, settings).submit(acme.scope, submission_for(acme), "k1")
        queue = NotificationQueue(session_factory, settings)
        [claimed] = await queue.claim(acme.scope, "w1", limit=1)
        await queue.mark_failed(acme.scope, claimed.id, "w1", "HTTP 400", permanent=True)

        dead = await queue.list_dead_letters(acme.scope)
        assert [e.id for e in dead] == [claimed.id]

        requeued = await queue.requeue(acme.scope, claimed.id)
        assert requeued.status == NotificationStatus.PENDING.value
        assert requeued.attempts == 0
        with pytest.raises(IllegalTransition):
            await queue.requeue(acme.scope, claimed.id)


# ---------------------------------------------------------------------------
# LINE client
# ---------------------------------------------------------------------------


def _client(handler) -> LineMessagingClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return LineMessagingClient(base_url="https://line.test", http_client=http)


class TestLineMessagingClient:
    @pytest.mark.asyncio
    async def test_push_sends_retry_key(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={})

        await _client(handler).push(access_token="tok", to="U1", text="hi", retry_key="n-1")

        assert seen[0].url.path == "/v2/bot/message/push"
        assert seen[0].headers["Authorization"] == "Bearer tok"
        assert seen[0].headers["X-Line-Retry-Key"] == "n-1"

    @pytest.mark.asyncio
    async def test_conflict_counts_as_success(self):
        await _client(lambda r: httpx.Response(409)).push(access_token="t", to="U", text="x", retry_key="k")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,retryable", [(500, True), (503, True), (429, True), (408, True), (400, False)])
    async def test_error_classification(self, status, retryable):
        with pytest.raises(DeliveryError) as exc:
            await _client(lambda r: httpx.Response(status)).push(access_token="t", to="U", text="x", retry_key="k")
        assert exc.value.retryable is retryable
        assert exc.value.status_code == status

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(DeliveryError) as exc:
            await _client(handler).push(access_token="t", to="U", text="x", retry_key="k")
        assert exc.value.retryable is True
