"""Inbound LINE webhook routing.

The HTTP layer calls :meth:`WebhookEventRouter.verify` on the raw body
first; only a verified body is handed to :meth:`WebhookEventRouter.parse`.
Verified events then go through two steps:

1. :meth:`~WebhookEventRouter.record` stores every event as ``received``
   (``INSERT ... ON CONFLICT DO NOTHING`` on ``(tenant, webhookEventId)``)
   before the webhook is acknowledged, so an acknowledged event is durable;
2. :meth:`~WebhookEventRouter.handle` claims a ``received`` record, routes
   it by event type (identity binding, delivery status, or ignored) and
   stores the result in the same unit as the side effect.  A record that is
   no longer ``received`` is a duplicate and returns the stored result.

A failed apply leaves the record ``received`` with ``attempts`` and
``last_error``; :meth:`~WebhookEventRouter.sweep` replays such records
until ``webhook_max_attempts`` is reached, after which they are parked as
``failed`` for an operator.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from groupbuy_core.config import CoreSettings
from groupbuy_core.errors import ValidationFailed
from groupbuy_core.models.order import NotificationStatus
from groupbuy_core.state.gateway import ScopedUnit, TenantDataGateway
from groupbuy_core.state.tables import CustomerTable, NotificationEventTable, TenantTable, WebhookEventRecordTable
from groupbuy_core.tenancy import ScopeToken
from groupbuy_core.webhooks.signature import verify_signature

logger = logging.getLogger(__name__)

_WER = WebhookEventRecordTable
_NE = NotificationEventTable
_TERMINAL_NOTIFICATION = (NotificationStatus.SENT.value, NotificationStatus.DEAD_LETTERED.value)
_DELIVERY_STATUSES = frozenset({"delivered", "failed"})
_KEY = ["tenant_id", "event_id"]

RECEIVED = "received"
PROCESSING = "processing"
PROCESSED = "processed"
IGNORED = "ignored"
FAILED = "failed"


@dataclass(frozen=True)
class WebhookEvent:
    """One provider event extracted from a verified webhook body."""

    event_id: str
    event_type: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WebhookResult:
    event_id: str
    status: str
    outcome: str
    duplicate: bool = False


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


class WebhookEventRouter:
    """Verify, record and apply provider webhook events.

    Parameters
    ----------
    session_factory:
        Async session factory for the state store.
    settings:
        Supplies channel secrets, the event-type routing lists and the
        replay policy.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], settings: CoreSettings) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._identity_types = frozenset(settings.webhook_identity_event_types)
        self._delivery_types = frozenset(settings.webhook_delivery_event_types)
        self._replay_after = timedelta(seconds=settings.webhook_replay_after_seconds)
        self._max_attempts = max(settings.webhook_max_attempts, 1)

    def verify(self, scope: ScopeToken, body: bytes, signature: str | None) -> None:
        """Raise :class:`WebhookSignatureInvalid` unless *body* is authentic."""
        credentials = self._settings.credentials_for(scope.tenant_slug)
        secret = credentials.channel_secret.get_secret_value() if credentials else None
        verify_signature(body, signature, secret, tenant=scope.tenant_slug)

    @staticmethod
    def parse(body: bytes) -> list[WebhookEvent]:
        """Extract events from a verified body.

        Events without a ``webhookEventId`` cannot be deduplicated and are
        skipped with a warning.
        """
        try:
            document = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValidationFailed.single("body", f"Webhook body is not valid JSON: {exc}") from exc
        if not isinstance(document, dict) or not isinstance(document.get("events", []), list):
            raise ValidationFailed.single("events", "Webhook body must be an object with an 'events' list")

        events: list[WebhookEvent] = []
        for index, raw in enumerate(document.get("events", [])):
            if not isinstance(raw, dict):
                logger.warning("Skipping non-object webhook event at index %d", index)
                continue
            event_id = raw.get("webhookEventId")
            if not event_id or not isinstance(event_id, str):
                logger.warning("Skipping webhook event without webhookEventId (type=%s)", raw.get("type"))
                continue
            events.append(WebhookEvent(event_id=event_id, event_type=str(raw.get("type", "")), raw=raw))
        return events

    # -- Record --------------------------------------------------------------

    @staticmethod
    def _received_row(event: WebhookEvent) -> dict[str, Any]:
        return {
            "event_id": event.event_id,
            "event_type": event.event_type[:64],
            "signature_verified": True,
            "status": RECEIVED,
            "payload": event.raw,
            "attempts": 0,
            "received_at": datetime.now(UTC),
        }

    async def record(self, scope: ScopeToken, events: list[WebhookEvent]) -> int:
        """Durably store verified events in one unit; returns how many were new.

        Must succeed before the webhook is acknowledged.  A store error
        propagates so the provider gets a non-2xx and redelivers.
        """
        new = 0
        async with TenantDataGateway(self._session_factory, scope).unit() as unit:
            for event in events:
                if await unit.insert_if_absent(_WER, self._received_row(event), index_elements=_KEY):
                    new += 1
        if new < len(events):
            logger.info(
                "Webhook redelivery tenant=%s events=%d already_recorded=%d",
                scope.tenant_slug,
                len(events),
                len(events) - new,
            )
        return new

    # -- Apply ---------------------------------------------------------------

    async def process(self, scope: ScopeToken, events: list[WebhookEvent]) -> list[WebhookResult]:
        """Apply each event in its own unit.

        One failing event never stops the rest of the batch; its record stays
        ``received`` for the sweep.
        """
        results: list[WebhookResult] = []
        for event in events:
            try:
                results.append(await self.handle(scope, event))
            except Exception as exc:
                logger.exception(
                    "Webhook event failed tenant=%s event=%s type=%s",
                    scope.tenant_slug,
                    event.event_id,
                    event.event_type,
                )
                await self._record_failure(scope, event, f"{type(exc).__name__}: {exc}")
                results.append(WebhookResult(event_id=event.event_id, status=RECEIVED, outcome="failed"))
        if results:
            logger.info(
                "Webhook batch tenant=%s events=%d duplicates=%d failed=%d",
                scope.tenant_slug,
                len(results),
                sum(1 for r in results if r.duplicate),
                sum(1 for r in results if r.outcome == "failed"),
            )
        return results

    async def handle(self, scope: ScopeToken, event: WebhookEvent) -> WebhookResult:
        """Apply one event exactly once per ``(tenant, event id)``."""
        async with TenantDataGateway(self._session_factory, scope).unit() as unit:
            await unit.insert_if_absent(_WER, self._received_row(event), index_elements=_KEY)
            claimed = await unit.update_where(
                _WER,
                _WER.event_id == event.event_id,
                _WER.status == RECEIVED,
                values={"status": PROCESSING},
            )
            if not claimed:
                record = await unit.find_one(_WER, _WER.event_id == event.event_id)
                stored = dict(record.result or {}) if record is not None else {}
                logger.info("Duplicate webhook event tenant=%s event=%s", scope.tenant_slug, event.event_id)
                return WebhookResult(
                    event_id=event.event_id,
                    status=record.status if record is not None else PROCESSING,
                    outcome=str(stored.get("outcome", "pending")),
                    duplicate=True,
                )

            if event.event_type in self._identity_types:
                outcome = await self._bind_identity(unit, event)
                status = PROCESSED
            elif event.event_type in self._delivery_types:
                outcome = await self._apply_delivery_status(unit, event)
                status = PROCESSED
            else:
                outcome = "unsupported_event_type"
                status = IGNORED

            await unit.update_where(
                _WER,
                _WER.event_id == event.event_id,
                values={
                    "status": status,
                    "result": {"outcome": outcome},
                    "processed_at": datetime.now(UTC),
                    "last_error": None,
                },
            )

        logger.debug("Webhook event tenant=%s event=%s -> %s", scope.tenant_slug, event.event_id, outcome)
        return WebhookResult(event_id=event.event_id, status=status, outcome=outcome)

    async def _record_failure(self, scope: ScopeToken, event: WebhookEvent, error: str) -> None:
        try:
            async with TenantDataGateway(self._session_factory, scope).unit() as unit:
                await unit.insert_if_absent(_WER, self._received_row(event), index_elements=_KEY)
                record = await unit.find_one(_WER, _WER.event_id == event.event_id, _WER.status == RECEIVED)
                if record is None:
                    return
                attempts = record.attempts + 1
                values: dict[str, Any] = {"attempts": attempts, "last_error": error[:2000]}
                if attempts >= self._max_attempts:
                    values["status"] = FAILED
                await unit.update_where(_WER, _WER.event_id == event.event_id, _WER.status == RECEIVED, values=values)
        except SQLAlchemyError:
            logger.exception("Could not record webhook failure tenant=%s event=%s", scope.tenant_slug, event.event_id)
            return

        if attempts >= self._max_attempts:
            logger.error(
                "Webhook event parked after %d attempts tenant=%s event=%s error=%s",
                attempts,
                scope.tenant_slug,
                event.event_id,
                error,
            )

    # -- Replay --------------------------------------------------------------

    async def tenants_with_pending(self, now: datetime | None = None) -> list[ScopeToken]:
        """Return scopes of tenants holding events still ``received`` past the replay delay.

        Only tenant identity crosses this query.
        """
        cutoff = (now or datetime.now(UTC)) - self._replay_after
        stmt = (
            select(TenantTable.id, TenantTable.slug)
            .where(
                TenantTable.id.in_(
                    select(_WER.tenant_id).where(_WER.status == RECEIVED, _WER.received_at <= cutoff).distinct()
                )
            )
            .order_by(TenantTable.slug)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return [ScopeToken(tenant_id=r.id, tenant_slug=r.slug) for r in rows]

    async def replay_pending(
        self,
        scope: ScopeToken,
        *,
        limit: int = 100,
        now: datetime | None = None,
    ) -> list[WebhookResult]:
        """Re-apply up to *limit* of one tenant's unapplied events, oldest first."""
        cutoff = (now or datetime.now(UTC)) - self._replay_after
        async with TenantDataGateway(self._session_factory, scope).unit() as unit:
            records = await unit.find(
                _WER,
                _WER.status == RECEIVED,
                _WER.received_at <= cutoff,
                order_by=(_WER.received_at,),
                limit=limit,
            )
            events = [
                WebhookEvent(event_id=r.event_id, event_type=r.event_type, raw=_as_dict(r.payload)) for r in records
            ]
        if events:
            logger.info("Replaying %d webhook event(s) tenant=%s", len(events), scope.tenant_slug)
        return await self.process(scope, events)

    async def sweep(self, *, limit: int = 100, now: datetime | None = None) -> list[WebhookResult]:
        """Replay unapplied events of every tenant."""
        results: list[WebhookResult] = []
        for scope in await self.tenants_with_pending(now):
            results.extend(await self.replay_pending(scope, limit=limit, now=now))
        return results

    # -- Routes --------------------------------------------------------------

    async def _bind_identity(self, unit: ScopedUnit, event: WebhookEvent) -> str:
        link = _as_dict(event.raw.get("link"))
        if link.get("result") != "ok":
            return "link_failed"
        nonce = link.get("nonce")
        user_id = _as_dict(event.raw.get("source")).get("userId")
        if not nonce or not user_id or not isinstance(nonce, str) or not isinstance(user_id, str):
            return "missing_fields"

        customer = await unit.find_one(CustomerTable, CustomerTable.link_nonce == nonce)
        if customer is None:
            return "unknown_nonce"
        if customer.messaging_user_id == user_id:
            return "already_bound"

        await unit.update_where(
            CustomerTable,
            CustomerTable.id == customer.id,
            values={"messaging_user_id": user_id, "updated_at": datetime.now(UTC)},
        )
        logger.info("Bound messaging identity tenant=%s customer=%s", unit.scope.tenant_slug, customer.id)
        return "bound"

    async def _apply_delivery_status(self, unit: ScopedUnit, event: WebhookEvent) -> str:
        delivery = _as_dict(event.raw.get("delivery"))
        notification_id = delivery.get("notificationId")
        reported = delivery.get("status")
        if not notification_id or not isinstance(notification_id, str) or reported not in _DELIVERY_STATUSES:
            return "missing_fields"

        # Tenant-filtered: a foreign id looks exactly like an unknown one.
        notification = await unit.find_one(_NE, _NE.id == notification_id)
        if notification is None:
            return "unknown_notification"

        values: dict[str, Any] = {
            "provider_status": reported,
            "provider_report_count": _NE.provider_report_count + 1,
        }
        if reported == "delivered" and notification.status not in _TERMINAL_NOTIFICATION:
            values.update(
                {
                    "status": NotificationStatus.SENT.value,
                    "sent_at": datetime.now(UTC),
                    "lease_owner": None,
                    "lease_expires_at": None,
                }
            )
        await unit.update_where(_NE, _NE.id == notification.id, values=values)
        return f"delivery_{reported}"
