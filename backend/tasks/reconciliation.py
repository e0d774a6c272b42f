"""
Reconciliation Loop
===================
Background task that drives `PaymentOrchestrator.reconcile()` on a fixed
interval, independent of request traffic.

Each pass:
- times out INITIATED transactions whose TTL has passed
- purges expired pending registrations
- re-applies SUCCESS transactions whose entitlement never landed
- retries parked SUCCESS callbacks, dead-lettering exhausted ones
"""

import asyncio
import os
from datetime import datetime
from typing import Optional

import structlog

from subscriptions.models import ReconcileReport, utcnow
from subscriptions.orchestrator import PaymentOrchestrator

# Configure logger
logger = structlog.get_logger().bind(component="reconciliation")


# =============================================================================
# CONFIGURATION
# =============================================================================

class ReconciliationConfig:
    """Reconciliation loop configuration"""

    # Seconds between passes
    CHECK_INTERVAL = int(os.getenv("RECONCILE_INTERVAL", "60"))

    # Enable/disable the loop (tests and one-shot tooling turn it off)
    ENABLED = os.getenv("RECONCILE_ENABLED", "true").lower() == "true"


config = ReconciliationConfig()


class _PassStats:
    def __init__(self):
        self.passes = 0
        self.failures = 0
        self.last_run_at: Optional[datetime] = None
        self.last_report: Optional[ReconcileReport] = None
        self.last_error: Optional[str] = None


_stats = _PassStats()


# =============================================================================
# RECONCILIATION LOGIC
# =============================================================================

async def run_reconcile_pass(orchestrator: PaymentOrchestrator) -> ReconcileReport:
    """One pass. Also called from the admin surface to force a sweep."""
    report = await orchestrator.reconcile()
    _stats.passes += 1
    _stats.last_run_at = utcnow()
    _stats.last_report = report
    _stats.last_error = None

    if report.timed_out or report.registrations_purged or report.settled:
        logger.info(
            "reconcile_pass_changed_state",
            timed_out=len(report.timed_out),
            registrations_purged=len(report.registrations_purged),
            settled=len(report.settled),
        )
    if report.callbacks_dead_lettered:
        logger.error(
            "callbacks_require_manual_intervention",
            dead_lettered=report.callbacks_dead_lettered,
        )
    return report


async def reconciliation_loop(orchestrator: PaymentOrchestrator, interval: Optional[int] = None):
    """
    Runs until cancelled. A failing pass is logged and the loop carries on;
    the next pass picks up whatever the failed one left behind.
    """
    interval = interval if interval is not None else config.CHECK_INTERVAL
    logger.info("reconciliation_loop_started", interval=interval, enabled=config.ENABLED)

    if not config.ENABLED:
        logger.info("reconciliation_loop_disabled")
        return

    while True:
        try:
            await run_reconcile_pass(orchestrator)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            _stats.failures += 1
            _stats.last_error = str(e)
            logger.error("reconciliation_pass_failed", error=str(e), exc_info=True)

        # Sleep until next pass
        await asyncio.sleep(interval)


# =============================================================================
# HEALTH CHECK
# =============================================================================

async def get_reconciliation_stats(orchestrator: Optional[PaymentOrchestrator] = None) -> dict:
    """Get reconciliation statistics for monitoring"""
    stats = {
        "enabled": config.ENABLED,
        "interval_seconds": config.CHECK_INTERVAL,
        "passes": _stats.passes,
        "failures": _stats.failures,
        "last_run_at": _stats.last_run_at.isoformat() if _stats.last_run_at else None,
        "last_error": _stats.last_error,
    }
    if _stats.last_report is not None:
        stats["last_report"] = _stats.last_report.model_dump()

    if orchestrator is not None:
        try:
            stats["retry_queue"] = await orchestrator.get_retry_queue_stats()
        except Exception as e:
            stats["retry_queue_error"] = str(e)

    return stats


def reset_reconciliation_stats() -> None:
    global _stats
    _stats = _PassStats()
