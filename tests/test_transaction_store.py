"""Tests for the in-memory transaction store compare-and-set semantics."""

import asyncio
from datetime import timedelta

import pytest

from subscriptions.errors import AlreadyResolved, DuplicateTrackingId, UnknownTransaction
from subscriptions.models import (
    PendingRegistration,
    PendingTransaction,
    RegistrationState,
    TransactionState,
)
from subscriptions.tiers import Tier

from conftest import T0


def make_txn(tracking_id="tx1", ttl_minutes=15, **overrides) -> PendingTransaction:
    fields = dict(
        tracking_id=tracking_id,
        user_id="user-1",
        target_tier=Tier.HEALTH_CHAMPION,
        amount=150,
        currency="KES",
        channel="254712345678",
        reference="user-1:health_champion",
        initiated_at=T0,
        expires_at=T0 + timedelta(minutes=ttl_minutes),
    )
    fields.update(overrides)
    return PendingTransaction(**fields)


class TestCreateAndResolve:

    @pytest.mark.asyncio
    async def test_duplicate_tracking_id_rejected(self, store):
        await store.create_pending(make_txn())
        with pytest.raises(DuplicateTrackingId):
            await store.create_pending(make_txn())

    @pytest.mark.asyncio
    async def test_resolve_returns_prior_state(self, store):
        await store.create_pending(make_txn())
        prior = await store.resolve("tx1", TransactionState.SUCCESS, now=T0)
        assert prior == TransactionState.INITIATED
        txn = await store.get("tx1")
        assert txn.state == TransactionState.SUCCESS
        assert txn.resolved_at == T0
        assert txn.needs_settlement

    @pytest.mark.asyncio
    async def test_second_resolve_is_already_resolved(self, store):
        await store.create_pending(make_txn())
        await store.resolve("tx1", TransactionState.FAILED)
        with pytest.raises(AlreadyResolved) as exc_info:
            await store.resolve("tx1", TransactionState.SUCCESS)
        assert exc_info.value.state == TransactionState.FAILED
        assert (await store.get("tx1")).state == TransactionState.FAILED

    @pytest.mark.asyncio
    async def test_resolve_unknown(self, store):
        with pytest.raises(UnknownTransaction):
            await store.resolve("nope", TransactionState.SUCCESS)

    @pytest.mark.asyncio
    async def test_resolve_requires_terminal_outcome(self, store):
        await store.create_pending(make_txn())
        with pytest.raises(ValueError):
            await store.resolve("tx1", TransactionState.INITIATED)

    @pytest.mark.asyncio
    async def test_concurrent_resolves_have_one_winner(self, store):
        await store.create_pending(make_txn())
        results = await asyncio.gather(
            store.resolve("tx1", TransactionState.SUCCESS),
            store.resolve("tx1", TransactionState.FAILED),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, AlreadyResolved)]
        assert len(winners) == 1
        assert len(losers) == 1


class TestSweep:

    @pytest.mark.asyncio
    async def test_sweep_times_out_only_expired_initiated(self, store):
        await store.create_pending(make_txn("old", ttl_minutes=5))
        await store.create_pending(make_txn("fresh", ttl_minutes=30))
        await store.create_pending(make_txn("done", ttl_minutes=5))
        await store.resolve("done", TransactionState.SUCCESS)

        swept = await store.sweep(T0 + timedelta(minutes=10))

        assert [t.tracking_id for t in swept] == ["old"]
        assert (await store.get("old")).state == TransactionState.TIMED_OUT
        assert (await store.get("fresh")).state == TransactionState.INITIATED
        assert (await store.get("done")).state == TransactionState.SUCCESS

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(self, store):
        await store.create_pending(make_txn(ttl_minutes=1))
        now = T0 + timedelta(minutes=2)
        assert len(await store.sweep(now)) == 1
        assert await store.sweep(now) == []

    @pytest.mark.asyncio
    async def test_callback_after_sweep_loses(self, store):
        await store.create_pending(make_txn(ttl_minutes=1))
        await store.sweep(T0 + timedelta(minutes=2))
        with pytest.raises(AlreadyResolved) as exc_info:
            await store.resolve("tx1", TransactionState.SUCCESS)
        assert exc_info.value.state == TransactionState.TIMED_OUT


class TestCompensationAndSettlement:

    @pytest.mark.asyncio
    async def test_compensate_only_from_timed_out(self, store):
        await store.create_pending(make_txn())
        with pytest.raises(AlreadyResolved):
            await store.compensate("tx1")

        await store.sweep(T0 + timedelta(hours=1))
        txn = await store.compensate("tx1")
        assert txn.state == TransactionState.SUCCESS

    @pytest.mark.asyncio
    async def test_mark_settled_once(self, store):
        await store.create_pending(make_txn())
        await store.resolve("tx1", TransactionState.SUCCESS, now=T0)
        assert await store.mark_settled("tx1", now=T0)
        assert not await store.mark_settled("tx1", now=T0)
        assert not (await store.get("tx1")).needs_settlement

    @pytest.mark.asyncio
    async def test_get_unsettled_respects_cutoff(self, store):
        await store.create_pending(make_txn())
        await store.resolve("tx1", TransactionState.SUCCESS, now=T0)
        assert await store.get_unsettled(resolved_before=T0 - timedelta(seconds=1)) == []
        unsettled = await store.get_unsettled(resolved_before=T0)
        assert [t.tracking_id for t in unsettled] == ["tx1"]


class TestRegistrations:

    @staticmethod
    def registration(tracking_id="tx2"):
        return PendingRegistration.with_ttl(
            600, now=T0, email="new@example.com", phone="0712345678",
            target_tier=Tier.GLOBAL_ADVOCATE, tracking_id=tracking_id,
        )

    @pytest.mark.asyncio
    async def test_transition_is_compare_and_set(self, store):
        await store.create_registration(self.registration())
        updated = await store.transition_registration(
            "tx2", RegistrationState.AWAITING_PAYMENT, RegistrationState.PAYMENT_CONFIRMED, now=T0
        )
        assert updated.confirmed_at == T0

        with pytest.raises(AlreadyResolved):
            await store.transition_registration(
                "tx2", RegistrationState.AWAITING_PAYMENT, RegistrationState.PAYMENT_FAILED
            )

    @pytest.mark.asyncio
    async def test_transition_unknown(self, store):
        with pytest.raises(UnknownTransaction):
            await store.transition_registration(
                "missing", RegistrationState.AWAITING_PAYMENT, RegistrationState.PAYMENT_CONFIRMED
            )

    @pytest.mark.asyncio
    async def test_expired_registrations(self, store):
        await store.create_registration(self.registration())
        assert await store.get_expired_registrations(T0 + timedelta(minutes=9)) == []
        expired = await store.get_expired_registrations(T0 + timedelta(minutes=10))
        assert [r.tracking_id for r in expired] == ["tx2"]

        assert await store.delete_registration("tx2")
        assert await store.get_registration("tx2") is None
