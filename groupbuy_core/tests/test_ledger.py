"""Tests for the idempotency ledger."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from groupbuy_core.errors import (
    EntityNotFound,
    IdempotencyInProgress,
    IdempotencyKeyConflict,
    ValidationFailed,
)
from groupbuy_core.idempotency.ledger import IdempotencyLedger, LedgerAction, fingerprint, validate_key
from groupbuy_core.state.gateway import TenantDataGateway
from groupbuy_core.state.tables import IdempotencyRecordTable


class TestFingerprint:
    def test_key_order_does_not_matter(self):
        assert fingerprint({"a": 1, "b": [1, 2]}) == fingerprint({"b": [1, 2], "a": 1})

    def test_different_bodies_differ(self):
        assert fingerprint({"a": 1}) != fingerprint({"a": 2})


class TestValidateKey:
    @pytest.mark.parametrize("key", [None, "", "   "])
    def test_missing_key(self, key):
        with pytest.raises(ValidationFailed) as exc:
            validate_key(key)
        assert exc.value.errors[0]["field"] == "Idempotency-Key"

    def test_overlong_key(self):
        with pytest.raises(ValidationFailed):
            validate_key("k" * 129)

    def test_strips_whitespace(self):
        assert validate_key("  k1 ") == "k1"


class TestBeginOrReplay:
    @pytest.mark.asyncio
    async def test_first_use_proceeds(self, session_factory, settings, acme):
        ledger = IdempotencyLedger(session_factory, settings)
        decision = await ledger.begin_or_replay(acme.scope, "k1", "fp")
        assert decision.action is LedgerAction.PROCEED
        assert decision.reservation_id

    @pytest.mark.asyncio
    async def test_second_use_while_in_progress(self, session_factory, settings, acme):
        ledger = IdempotencyLedger(session_factory, settings)
        await ledger.begin_or_replay(acme.scope, "k1", "fp")
        with pytest.raises(IdempotencyInProgress) as exc:
            await ledger.begin_or_replay(acme.scope, "k1", "fp")
        assert exc.value.retry_after == settings.idempotency_retry_after_seconds

    @pytest.mark.asyncio
    async def test_mismatched_fingerprint_conflicts(self, session_factory, settings, acme):
        ledger = IdempotencyLedger(session_factory, settings)
        await ledger.begin_or_replay(acme.scope, "k1", "fp-a")
        with pytest.raises(IdempotencyKeyConflict):
            await ledger.begin_or_replay(acme.scope, "k1", "fp-b")

    @pytest.mark.asyncio
    async def test_completed_key_replays(self, session_factory, settings, acme):
        ledger = IdempotencyLedger(session_factory, settings)
        decision = await ledger.begin_or_replay(acme.scope, "k1", "fp")
        async with TenantDataGateway(session_factory, acme.scope).unit() as unit:
            await ledger.complete(unit, "k1", decision.reservation_id, order_id="o-1", outcome={"order_id": "o-1"})

        replay = await ledger.begin_or_replay(acme.scope, "k1", "fp")
        assert replay.action is LedgerAction.REPLAY
        assert replay.outcome == {"order_id": "o-1"}

    @pytest.mark.asyncio
    async def test_keys_are_per_tenant(self, session_factory, settings, acme, globex):
        ledger = IdempotencyLedger(session_factory, settings)
        first = await ledger.begin_or_replay(acme.scope, "shared", "fp-a")
        second = await ledger.begin_or_replay(globex.scope, "shared", "fp-b")
        assert first.action is LedgerAction.PROCEED
        assert second.action is LedgerAction.PROCEED

    @pytest.mark.asyncio
    async def test_concurrent_reservations_admit_one(self, session_factory, settings, acme):
        ledger = IdempotencyLedger(session_factory, settings)
        results = await asyncio.gather(
            *(ledger.begin_or_replay(acme.scope, "race", "fp") for _ in range(5)),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, BaseException)]
        losers = [r for r in results if isinstance(r, BaseException)]
        assert len(winners) == 1
        assert all(isinstance(r, IdempotencyInProgress) for r in losers)

    @pytest.mark.asyncio
    async def test_stale_in_progress_is_reaped(self, session_factory, settings, acme):
        ledger = IdempotencyLedger(session_factory, settings)
        await ledger.begin_or_replay(acme.scope, "k1", "fp")
        await _age_record(session_factory, acme.scope, "k1", seconds=settings.idempotency_stale_lock_seconds + 1)

        decision = await ledger.begin_or_replay(acme.scope, "k1", "fp")
        assert decision.action is LedgerAction.PROCEED


class TestCompleteAndRelease:
    @pytest.mark.asyncio
    async def test_complete_with_lost_reservation_fails(self, session_factory, settings, acme):
        ledger = IdempotencyLedger(session_factory, settings)
        await ledger.begin_or_replay(acme.scope, "k1", "fp")
        with pytest.raises(IdempotencyInProgress):
            async with TenantDataGateway(session_factory, acme.scope).unit() as unit:
                await ledger.complete(unit, "k1", "not-my-reservation", order_id="o", outcome={})

    @pytest.mark.asyncio
    async def test_release_frees_the_key(self, session_factory, settings, acme):
        ledger = IdempotencyLedger(session_factory, settings)
        decision = await ledger.begin_or_replay(acme.scope, "k1", "fp-a")
        assert await ledger.release(acme.scope, "k1", decision.reservation_id) is True

        again = await ledger.begin_or_replay(acme.scope, "k1", "fp-b")
        assert again.action is LedgerAction.PROCEED

    @pytest.mark.asyncio
    async def test_force_release_respects_age(self, session_factory, settings, acme):
        ledger = IdempotencyLedger(session_factory, settings)
        await ledger.begin_or_replay(acme.scope, "k1", "fp")
        assert await ledger.force_release(acme.scope, "k1") is False
        assert await ledger.force_release(acme.scope, "k1", ignore_age=True) is True

    @pytest.mark.asyncio
    async def test_force_release_unknown_key(self, session_factory, settings, acme):
        ledger = IdempotencyLedger(session_factory, settings)
        with pytest.raises(EntityNotFound):
            await ledger.force_release(acme.scope, "nope")

    @pytest.mark.asyncio
    async def test_purge_expired(self, session_factory, settings, acme):
        ledger = IdempotencyLedger(session_factory, settings)
        await ledger.begin_or_replay(acme.scope, "old", "fp")
        await ledger.begin_or_replay(acme.scope, "fresh", "fp")
        async with TenantDataGateway(session_factory, acme.scope).unit() as unit:
            await unit.update_where(
                IdempotencyRecordTable,
                IdempotencyRecordTable.key == "old",
                values={"expires_at": datetime.now(UTC) - timedelta(seconds=1)},
            )
        assert await ledger.purge_expired(acme.scope) == 1


async def _age_record(session_factory, scope, key: str, *, seconds: int) -> None:
    async with TenantDataGateway(session_factory, scope).unit() as unit:
        await unit.update_where(
            IdempotencyRecordTable,
            IdempotencyRecordTable.key == key,
            values={"created_at": datetime.now(UTC) - timedelta(seconds=seconds)},
        )
