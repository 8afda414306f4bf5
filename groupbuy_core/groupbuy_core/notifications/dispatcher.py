"""Background notification dispatcher.

Each pass finds tenants with due events, leases a bounded batch per tenant
and pushes the batch through the messaging provider with bounded
concurrency.  Outcomes are written back through the queue:

* success → ``Sent``
* retryable failure → stays ``Pending`` with a backoff-scheduled ``next_attempt_at``
* permanent failure, or the attempt ceiling reached → ``DeadLettered``

Delivery is at-least-once.  A push can succeed and the write-back fail (or
the lease expire first); the next attempt reuses the notification id as the
provider retry key so the provider drops the duplicate.

Each pass also replays webhook events that were recorded but not applied
(see :meth:`WebhookEventRouter.sweep`).
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from groupbuy_core.config import CoreSettings
from groupbuy_core.errors import DeliveryError, EntityNotFound
from groupbuy_core.models.order import NotificationStatus, NotificationTarget
from groupbuy_core.notifications.provider import MessagingProvider
from groupbuy_core.notifications.queue import ClaimedEvent, NotificationQueue
from groupbuy_core.state.gateway import TenantDataGateway
from groupbuy_core.state.tables import CustomerTable
from groupbuy_core.webhooks.router import WebhookEventRouter

logger = logging.getLogger(__name__)


@dataclass
class DispatchReport:
    """Tally of one dispatcher pass."""

    claimed: int = 0
    sent: int = 0
    retried: int = 0
    dead_lettered: int = 0
    lost_lease: int = 0
    webhooks_replayed: int = 0
    webhooks_failed: int = 0

    def merge(self, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class NotificationDispatcher:
    """Lease-based worker pool draining the notification queue.

    Parameters
    ----------
    session_factory:
        Async session factory for the state store.
    provider:
        Outbound messaging provider.
    settings:
        Batch size, concurrency, poll interval, lease and backoff settings,
        and per-tenant channel credentials.
    worker_id:
        Lease owner stamp; defaults to ``host:pid:random``.
    on_report:
        Optional callback invoked with the :class:`DispatchReport` of every
        pass (used for metrics).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: MessagingProvider,
        settings: CoreSettings,
        *,
        worker_id: str | None = None,
        on_report: Callable[[DispatchReport], None] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._provider = provider
        self._settings = settings
        self._queue = NotificationQueue(session_factory, settings)
        self._webhooks = WebhookEventRouter(session_factory, settings)
        self._worker_id = worker_id or default_worker_id()
        self._semaphore = asyncio.Semaphore(max(settings.dispatcher_concurrency, 1))
        self._on_report = on_report
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def worker_id(self) -> str:
        return self._worker_id

    # -- Lifecycle -----------------------------------------------------------

    def start(self) -> None:
        """Launch the polling loop on the running event loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.ensure_future(self._run_loop())
        logger.info("Notification dispatcher started (worker=%s)", self._worker_id)

    async def stop(self) -> None:
        """Cancel the polling loop and wait for it to finish."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Notification dispatcher stopped (worker=%s)", self._worker_id)

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Dispatcher pass failed; retrying after poll interval")
            await asyncio.sleep(self._settings.dispatcher_poll_interval_seconds)

    # -- One pass ------------------------------------------------------------

    async def run_once(self) -> DispatchReport:
        """Claim and deliver everything currently due, once."""
        report = DispatchReport()
        for scope in await self._queue.due_tenants():
            events = await self._queue.claim(scope, self._worker_id, limit=self._settings.dispatcher_batch_size)
            report.claimed += len(events)
            outcomes = await asyncio.gather(*(self._deliver_one(event) for event in events))
            for outcome in outcomes:
                report.merge(outcome)

        if report.claimed:
            logger.info(
                "Dispatch pass: claimed=%d sent=%d retried=%d dead_lettered=%d lost_lease=%d",
                report.claimed,
                report.sent,
                report.retried,
                report.dead_lettered,
                report.lost_lease,
            )
        await self._replay_webhooks(report)
        if self._on_report is not None:
            self._on_report(report)
        return report

    async def _replay_webhooks(self, report: DispatchReport) -> None:
        for result in await self._webhooks.sweep(limit=self._settings.dispatcher_batch_size):
            if result.outcome == "failed":
                report.webhooks_failed += 1
            elif not result.duplicate:
                report.webhooks_replayed += 1
        if report.webhooks_replayed or report.webhooks_failed:
            logger.info(
                "Webhook sweep: replayed=%d failed=%d", report.webhooks_replayed, report.webhooks_failed
            )

    async def _deliver_one(self, event: ClaimedEvent) -> str:
        async with self._semaphore:
            try:
                access_token, recipient = await self._resolve_delivery(event)
                await self._provider.push(
                    access_token=access_token,
                    to=recipient,
                    text=str(event.payload.get("text", "")),
                    retry_key=event.id,
                )
            except DeliveryError as exc:
                status = await self._queue.mark_failed(
                    event.scope, event.id, self._worker_id, str(exc), permanent=not exc.retryable
                )
                return self._failure_outcome(status)
            except Exception as exc:
                logger.exception("Unexpected error delivering notification %s", event.id)
                status = await self._queue.mark_failed(
                    event.scope, event.id, self._worker_id, f"{type(exc).__name__}: {exc}"
                )
                return self._failure_outcome(status)

            if await self._queue.mark_sent(event.scope, event.id, self._worker_id):
                return "sent"
            return "lost_lease"

    @staticmethod
    def _failure_outcome(status: NotificationStatus | None) -> str:
        if status is None:
            return "lost_lease"
        if status is NotificationStatus.DEAD_LETTERED:
            return "dead_lettered"
        return "retried"

    async def _resolve_delivery(self, event: ClaimedEvent) -> tuple[str, str]:
        """Return ``(access_token, recipient)`` or raise a permanent failure.

        Recipients are resolved at delivery time so a customer who binds
        their messaging account after ordering still gets later updates.
        """
        credentials = self._settings.credentials_for(event.scope.tenant_slug)
        if credentials is None or not credentials.channel_access_token.get_secret_value():
            raise DeliveryError(f"No channel access token configured for tenant '{event.scope.tenant_slug}'", retryable=False)

        async with TenantDataGateway(self._session_factory, event.scope).unit() as unit:
            if event.target is NotificationTarget.HOST:
                recipient = (await unit.tenant()).host_messaging_id
            else:
                customer_id = event.payload.get("customer_id")
                try:
                    customer = await unit.get(CustomerTable, str(customer_id))
                except EntityNotFound as exc:
                    raise DeliveryError(f"Customer {customer_id} not found", retryable=False) from exc
                recipient = customer.messaging_user_id

        if not recipient:
            raise DeliveryError(f"No messaging recipient bound for {event.target.value} notification", retryable=False)
        return credentials.channel_access_token.get_secret_value(), recipient
