"""Idempotency ledger.

Makes order creation exactly-once under client retries.  A key moves
through two states per tenant::

    (absent) --begin_or_replay--> InProgress --complete--> Completed
                                      |
                                      +--release / stale reap--> (absent)

Reservation is a single ``INSERT ... ON CONFLICT DO NOTHING``: of two
concurrent requests with the same unused key exactly one inserts, the
other reads back whatever the winner left.  Expired records and
``InProgress`` records older than the stale-lock timeout are deleted in
the same unit, just before the insert.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from sqlalchemy import and_, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from groupbuy_core.config import CoreSettings
from groupbuy_core.errors import (
    EntityNotFound,
    IdempotencyInProgress,
    IdempotencyKeyConflict,
    ValidationFailed,
)
from groupbuy_core.models.order import IdempotencyStatus
from groupbuy_core.state.gateway import ScopedUnit, TenantDataGateway
from groupbuy_core.state.tables import IdempotencyRecordTable
from groupbuy_core.tenancy import ScopeToken

logger = logging.getLogger(__name__)

_MAX_KEY_LENGTH = 128
_RECORD = IdempotencyRecordTable


def fingerprint(normalized_body: dict[str, Any]) -> str:
    """Return the SHA-256 hex digest of a canonical JSON rendering."""
    canonical = json.dumps(normalized_body, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def validate_key(key: str | None) -> str:
    if key is None or not key.strip():
        raise ValidationFailed.single("Idempotency-Key", "Idempotency-Key header is required")
    key = key.strip()
    if len(key) > _MAX_KEY_LENGTH:
        raise ValidationFailed.single("Idempotency-Key", f"Idempotency-Key must be at most {_MAX_KEY_LENGTH} characters")
    return key


class LedgerAction(str, Enum):
    PROCEED = "proceed"
    REPLAY = "replay"


@dataclass(frozen=True)
class LedgerDecision:
    """Outcome of :meth:`IdempotencyLedger.begin_or_replay`.

    ``reservation_id`` identifies the slot on ``PROCEED``; ``outcome`` holds
    the stored snapshot on ``REPLAY``.
    """

    action: LedgerAction
    reservation_id: str | None = None
    outcome: dict[str, Any] | None = None


class IdempotencyLedger:
    """Reserve, complete and replay idempotency keys per tenant.

    Parameters
    ----------
    session_factory:
        Async session factory for the state store.
    settings:
        Supplies the retention window and the stale-lock timeout.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], settings: CoreSettings) -> None:
        self._session_factory = session_factory
        self._retention = timedelta(hours=settings.idempotency_retention_hours)
        self._stale_after = timedelta(seconds=settings.idempotency_stale_lock_seconds)
        self._retry_after = settings.idempotency_retry_after_seconds

    async def begin_or_replay(self, scope: ScopeToken, key: str, request_fingerprint: str) -> LedgerDecision:
        """Reserve *key* for a new request or return the stored outcome.

        Raises
        ------
        IdempotencyKeyConflict
            The key was used before with a different fingerprint.
        IdempotencyInProgress
            Another attempt holds the key and has not finished.
        """
        now = datetime.now(UTC)
        reservation_id = uuid.uuid4().hex

        async with TenantDataGateway(self._session_factory, scope).unit() as unit:
            # Reap first: a write statement up front also takes the SQLite
            # write lock before the insert, so the whole check is serialised.
            reaped = await unit.delete_where(
                _RECORD,
                _RECORD.key == key,
                or_(
                    _RECORD.expires_at <= now,
                    and_(
                        _RECORD.status == IdempotencyStatus.IN_PROGRESS.value,
                        _RECORD.created_at <= now - self._stale_after,
                    ),
                ),
            )
            if reaped:
                logger.info("Reaped expired/stale idempotency slot tenant=%s key=%s", scope.tenant_slug, key)

            inserted = await unit.insert_if_absent(
                _RECORD,
                {
                    "key": key,
                    "fingerprint": request_fingerprint,
                    "status": IdempotencyStatus.IN_PROGRESS.value,
                    "reservation_id": reservation_id,
                    "created_at": now,
                    "expires_at": now + self._retention,
                },
                index_elements=["tenant_id", "key"],
            )
            if inserted:
                return LedgerDecision(action=LedgerAction.PROCEED, reservation_id=reservation_id)

            record = await unit.find_one(_RECORD, _RECORD.key == key)

        if record is None:
            # Released between our insert attempt and the read; the caller
            # simply tries again.
            raise IdempotencyInProgress("Idempotency key is being processed", retry_after=self._retry_after)
        if record.fingerprint != request_fingerprint:
            raise IdempotencyKeyConflict(
                "Idempotency key was already used with a different request body",
            )
        if record.status == IdempotencyStatus.IN_PROGRESS.value:
            raise IdempotencyInProgress("Idempotency key is being processed", retry_after=self._retry_after)

        logger.debug("Replaying idempotent outcome tenant=%s key=%s", scope.tenant_slug, key)
        return LedgerDecision(action=LedgerAction.REPLAY, outcome=dict(record.outcome or {}))

    async def complete(
        self,
        unit: ScopedUnit,
        key: str,
        reservation_id: str,
        *,
        order_id: str,
        outcome: dict[str, Any],
    ) -> None:
        """Mark the reservation completed inside the caller's unit.

        Runs in the same transaction as the order insert so the record and
        the order become visible together.  If the slot was reaped and
        re-reserved in the meantime the update matches nothing and the
        whole unit is abandoned.
        """
        updated = await unit.update_where(
            _RECORD,
            _RECORD.key == key,
            _RECORD.reservation_id == reservation_id,
            _RECORD.status == IdempotencyStatus.IN_PROGRESS.value,
            values={
                "status": IdempotencyStatus.COMPLETED.value,
                "order_id": order_id,
                "outcome": outcome,
                "completed_at": datetime.now(UTC),
            },
        )
        if updated != 1:
            raise IdempotencyInProgress("Idempotency reservation was lost before completion", retry_after=self._retry_after)

    async def release(self, scope: ScopeToken, key: str, reservation_id: str) -> bool:
        """Drop our own ``InProgress`` slot after a failed attempt."""
        async with TenantDataGateway(self._session_factory, scope).unit() as unit:
            deleted = await unit.delete_where(
                _RECORD,
                _RECORD.key == key,
                _RECORD.reservation_id == reservation_id,
                _RECORD.status == IdempotencyStatus.IN_PROGRESS.value,
            )
        if deleted:
            logger.info("Released idempotency slot tenant=%s key=%s", scope.tenant_slug, key)
        return deleted > 0

    async def force_release(self, scope: ScopeToken, key: str, *, ignore_age: bool = False) -> bool:
        """Operator release of an ``InProgress`` slot.

        By default only slots older than the stale-lock timeout are
        released.  Completed records are never touched.

        Raises
        ------
        EntityNotFound
            If no record exists for *key*.
        """
        now = datetime.now(UTC)
        async with TenantDataGateway(self._session_factory, scope).unit() as unit:
            criteria = [
                _RECORD.key == key,
                _RECORD.status == IdempotencyStatus.IN_PROGRESS.value,
            ]
            if not ignore_age:
                criteria.append(_RECORD.created_at <= now - self._stale_after)
            deleted = await unit.delete_where(_RECORD, *criteria)
            if not deleted and await unit.count(_RECORD, _RECORD.key == key) == 0:
                raise EntityNotFound(f"Idempotency key '{key}' not found")
        if deleted:
            logger.warning("Force-released idempotency slot tenant=%s key=%s", scope.tenant_slug, key)
        return deleted > 0

    async def purge_expired(self, scope: ScopeToken) -> int:
        """Delete records past their retention window; returns the count."""
        now = datetime.now(UTC)
        async with TenantDataGateway(self._session_factory, scope).unit() as unit:
            return await unit.delete_where(_RECORD, _RECORD.expires_at <= now)
