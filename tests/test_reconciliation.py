"""Tests for the background reconciliation task."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from subscriptions.models import ReconcileReport
from tasks import reconciliation
from tasks.reconciliation import (
    get_reconciliation_stats,
    reconciliation_loop,
    reset_reconciliation_stats,
    run_reconcile_pass,
)


@pytest.fixture(autouse=True)
def fresh_stats():
    reset_reconciliation_stats()
    yield
    reset_reconciliation_stats()


class TestReconcilePass:

    @pytest.mark.asyncio
    async def test_pass_records_stats(self, orchestrator, gateway, ledger, clock):
        await ledger.create_account("user-1", phone="0712345678")
        gateway.next_tracking_ids.append("tx1")
        await orchestrator.initiate_upgrade("user-1", "health_champion")
        clock.advance(minutes=20)

        report = await run_reconcile_pass(orchestrator)

        assert report.timed_out == ["tx1"]
        stats = await get_reconciliation_stats(orchestrator)
        assert stats["passes"] == 1
        assert stats["last_report"]["timed_out"] == ["tx1"]
        assert stats["retry_queue"] == {"total": 0, "pending": 0, "dead_letter": 0}


class TestReconciliationLoop:

    @pytest.mark.asyncio
    async def test_loop_survives_failing_pass(self, orchestrator):
        calls = {"n": 0}

        async def flaky(now=None):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("db blip")
            return ReconcileReport()

        with patch.object(orchestrator, "reconcile", side_effect=flaky), \
                patch.object(reconciliation.config, "ENABLED", True):
            task = asyncio.create_task(reconciliation_loop(orchestrator, interval=0))
            for _ in range(50):
                await asyncio.sleep(0)
                if calls["n"] >= 3:
                    break
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert calls["n"] >= 2
        stats = await get_reconciliation_stats()
        assert stats["failures"] == 1
        assert stats["passes"] >= 1

    @pytest.mark.asyncio
    async def test_disabled_loop_returns(self, orchestrator):
        orchestrator.reconcile = AsyncMock()
        with patch.object(reconciliation.config, "ENABLED", False):
            await reconciliation_loop(orchestrator, interval=0)
        orchestrator.reconcile.assert_not_awaited()
