"""Durable notification queue with lease-based claiming.

Rows live in ``notification_events``.  A row is *due* when it is
``Pending``, its ``next_attempt_at`` has passed and it holds no live
lease.  A retryable failure leaves the row ``Pending``; ``attempts``,
``last_error`` and ``next_attempt_at`` carry the retry state.

Claiming stamps ``lease_owner`` / ``lease_expires_at`` with a conditional
UPDATE, so two workers can never both own a row; a worker that dies
simply lets its lease run out and the row becomes due again.

Every state change after the claim is guarded by ``lease_owner`` so a
worker whose lease expired cannot overwrite a newer owner's result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import ColumnElement, and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from groupbuy_core.config import CoreSettings
from groupbuy_core.errors import IllegalTransition
from groupbuy_core.models.order import (
    NotificationStatus,
    NotificationTarget,
    NotificationTrigger,
    OrderStatus,
)
from groupbuy_core.notifications import templates
from groupbuy_core.notifications.backoff import BackoffPolicy, next_attempt_at
from groupbuy_core.state.gateway import ScopedUnit, TenantDataGateway
from groupbuy_core.state.tables import NotificationEventTable, OrderTable, TenantTable
from groupbuy_core.tenancy import ScopeToken

logger = logging.getLogger(__name__)

_NE = NotificationEventTable
_CLAIMABLE = (NotificationStatus.PENDING.value,)


def _due(now: datetime) -> ColumnElement[bool]:
    return and_(
        _NE.status.in_(_CLAIMABLE),
        _NE.next_attempt_at <= now,
        or_(_NE.lease_expires_at.is_(None), _NE.lease_expires_at <= now),
    )


# ---------------------------------------------------------------------------
# Enqueue (runs inside the caller's unit)
# ---------------------------------------------------------------------------


async def enqueue(
    unit: ScopedUnit,
    *,
    target: NotificationTarget,
    trigger: NotificationTrigger,
    order: OrderTable,
    status: OrderStatus,
    details: dict[str, Any] | None = None,
) -> NotificationEventTable:
    """Stage a notification in the same unit as the change that caused it."""
    text = templates.render(
        target,
        trigger,
        order_id=order.id,
        status=status,
        total_amount=order.total_amount,
        details=details,
    )
    payload: dict[str, Any] = {
        "text": text,
        "order_status": status.value,
        "customer_id": order.customer_id,
    }
    event = await unit.add(
        NotificationEventTable(
            order_id=order.id,
            target=target.value,
            trigger=trigger.value,
            payload=payload,
            status=NotificationStatus.PENDING.value,
            attempts=0,
            next_attempt_at=datetime.now(UTC),
        )
    )
    logger.debug(
        "Enqueued notification id=%s tenant=%s target=%s trigger=%s",
        event.id,
        unit.scope.tenant_slug,
        target.value,
        trigger.value,
    )
    return event


# ---------------------------------------------------------------------------
# Claimed work item
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClaimedEvent:
    """Immutable snapshot of a row this worker holds the lease on."""

    id: str
    scope: ScopeToken
    target: NotificationTarget
    trigger: NotificationTrigger
    order_id: str | None
    payload: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0


class NotificationQueue:
    """Claim, settle and administer queued notifications.

    Parameters
    ----------
    session_factory:
        Async session factory for the state store.
    settings:
        Supplies the lease length and the backoff policy.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], settings: CoreSettings) -> None:
        self._session_factory = session_factory
        self._lease = timedelta(seconds=settings.dispatcher_lease_seconds)
        self._policy = BackoffPolicy.from_settings(settings)

    @property
    def policy(self) -> BackoffPolicy:
        return self._policy

    async def due_tenants(self, now: datetime | None = None) -> list[ScopeToken]:
        """Return scopes of tenants that currently have due events.

        Only tenant identity crosses this query; event rows are read
        through the gateway afterwards.
        """
        now = now or datetime.now(UTC)
        stmt = (
            select(TenantTable.id, TenantTable.slug)
            .where(TenantTable.id.in_(select(_NE.tenant_id).where(_due(now)).distinct()))
            .order_by(TenantTable.slug)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return [ScopeToken(tenant_id=r.id, tenant_slug=r.slug) for r in rows]

    async def claim(
        self,
        scope: ScopeToken,
        owner: str,
        *,
        limit: int,
        now: datetime | None = None,
    ) -> list[ClaimedEvent]:
        """Lease up to *limit* due events of one tenant to *owner*."""
        now = now or datetime.now(UTC)
        claimed: list[ClaimedEvent] = []
        async with TenantDataGateway(self._session_factory, scope).unit() as unit:
            candidates = await unit.find(
                _NE,
                _due(now),
                order_by=(_NE.next_attempt_at, _NE.created_at),
                limit=limit,
                for_update=True,
                skip_locked=True,
            )
            for event in candidates:
                won = await unit.update_where(
                    _NE,
                    _NE.id == event.id,
                    _due(now),
                    values={"lease_owner": owner, "lease_expires_at": now + self._lease},
                )
                if won != 1:
                    continue
                claimed.append(
                    ClaimedEvent(
                        id=event.id,
                        scope=scope,
                        target=NotificationTarget(event.target),
                        trigger=NotificationTrigger(event.trigger),
                        order_id=event.order_id,
                        payload=dict(event.payload),
                        attempts=event.attempts,
                    )
                )
        if claimed:
            logger.debug("Claimed %d notification(s) tenant=%s owner=%s", len(claimed), scope.tenant_slug, owner)
        return claimed

    async def mark_sent(self, scope: ScopeToken, event_id: str, owner: str) -> bool:
        """Record a successful push.  Returns ``False`` if the lease was lost."""
        now = datetime.now(UTC)
        async with TenantDataGateway(self._session_factory, scope).unit() as unit:
            updated = await unit.update_where(
                _NE,
                _NE.id == event_id,
                _NE.lease_owner == owner,
                _NE.status.in_(_CLAIMABLE),
                values={
                    "status": NotificationStatus.SENT.value,
                    "attempts": _NE.attempts + 1,
                    "sent_at": now,
                    "lease_owner": None,
                    "lease_expires_at": None,
                    "last_error": None,
                },
            )
        if not updated:
            logger.warning("Lease lost before mark_sent: event=%s owner=%s", event_id, owner)
        return updated == 1

    async def mark_failed(
        self,
        scope: ScopeToken,
        event_id: str,
        owner: str,
        error: str,
        *,
        permanent: bool = False,
    ) -> NotificationStatus | None:
        """Record a failed push and schedule a retry or dead-letter the row.

        Returns the new status, or ``None`` if this worker no longer holds
        the lease.
        """
        now = datetime.now(UTC)
        async with TenantDataGateway(self._session_factory, scope).unit() as unit:
            event = await unit.find_one(_NE, _NE.id == event_id, _NE.lease_owner == owner, _NE.status.in_(_CLAIMABLE))
            if event is None:
                logger.warning("Lease lost before mark_failed: event=%s owner=%s", event_id, owner)
                return None

            attempts = event.attempts + 1
            values: dict[str, Any] = {
                "attempts": attempts,
                "last_error": error[:2000],
                "lease_owner": None,
                "lease_expires_at": None,
            }
            if permanent or self._policy.exhausted(attempts):
                status = NotificationStatus.DEAD_LETTERED
                values["dead_lettered_at"] = now
            else:
                status = NotificationStatus.PENDING
                values["next_attempt_at"] = next_attempt_at(now, attempts, self._policy)
            values["status"] = status.value

            await unit.update_where(_NE, _NE.id == event_id, _NE.lease_owner == owner, values=values)

        if status is NotificationStatus.DEAD_LETTERED:
            logger.error(
                "Notification dead-lettered: tenant=%s event=%s attempts=%d permanent=%s error=%s",
                scope.tenant_slug,
                event_id,
                attempts,
                permanent,
                error,
            )
        else:
            logger.info("Notification retry scheduled: event=%s attempts=%d", event_id, attempts)
        return status

    # -- Operator surface ----------------------------------------------------

    async def list_dead_letters(self, scope: ScopeToken, *, limit: int = 100) -> list[NotificationEventTable]:
        async with TenantDataGateway(self._session_factory, scope).unit() as unit:
            return await unit.find(
                _NE,
                _NE.status == NotificationStatus.DEAD_LETTERED.value,
                order_by=(_NE.dead_lettered_at.desc(),),
                limit=limit,
            )

    async def requeue(self, scope: ScopeToken, event_id: str) -> NotificationEventTable:
        """Put a dead-lettered event back in the queue with a fresh budget.

        Raises
        ------
        IllegalTransition
            If the event is not dead-lettered.
        """
        async with TenantDataGateway(self._session_factory, scope).unit() as unit:
            event = await unit.get(_NE, event_id)
            if event.status != NotificationStatus.DEAD_LETTERED.value:
                raise IllegalTransition(f"Notification {event_id} is {event.status}; only DeadLettered can be requeued")
            await unit.update_where(
                _NE,
                _NE.id == event_id,
                _NE.status == NotificationStatus.DEAD_LETTERED.value,
                values={
                    "status": NotificationStatus.PENDING.value,
                    "attempts": 0,
                    "next_attempt_at": datetime.now(UTC),
                    "dead_lettered_at": None,
                    "lease_owner": None,
                    "lease_expires_at": None,
                },
            )
            event = await unit.get(_NE, event_id)
        logger.info("Requeued dead-lettered notification tenant=%s event=%s", scope.tenant_slug, event_id)
        return event
