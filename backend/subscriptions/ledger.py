"""
Subscription Ledger
===================
Single source of truth for a user's tier and period bounds.

Writes are optimistic: read the row, compute the new row, then
compare-and-set on `version`. A lost race raises LedgerWriteConflict inside
the repository; the ledger re-reads and retries with bounded exponential
backoff before surfacing the conflict as transient.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Optional

import structlog
from pydantic import BaseModel

from subscriptions.config import settings
from subscriptions.errors import LedgerWriteConflict, UnknownUser, ValidationError
from subscriptions.models import (
    SubscriptionDetails,
    SubscriptionRecord,
    SubscriptionStatus,
    add_one_month,
    utcnow,
)
from subscriptions.tiers import FREE_TIER, Tier, is_premium

logger = structlog.get_logger().bind(component="subscription_ledger")

# Enough to recognise redelivered callbacks; older ids are already settled
MAX_APPLIED_TRACKING_IDS = 50


# =============================================================================
# REPOSITORY
# =============================================================================

class ILedgerRepository(ABC):

    @abstractmethod
    async def get(self, user_id: str) -> Optional[SubscriptionRecord]:
        pass

    @abstractmethod
    async def insert(self, record: SubscriptionRecord) -> SubscriptionRecord:
        """Insert a new row. Returns the existing row if the user already has one."""

    @abstractmethod
    async def compare_and_set(self, record: SubscriptionRecord, expected_version: int) -> SubscriptionRecord:
        """Write `record` only if the stored version still equals expected_version."""


class InMemoryLedgerRepository(ILedgerRepository):

    def __init__(self):
        self._records: dict[str, SubscriptionRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str) -> Optional[SubscriptionRecord]:
        async with self._lock:
            return self._records.get(user_id)

    async def insert(self, record: SubscriptionRecord) -> SubscriptionRecord:
        async with self._lock:
            existing = self._records.get(record.user_id)
            if existing is not None:
                return existing
            self._records[record.user_id] = record
            return record

    async def compare_and_set(self, record: SubscriptionRecord, expected_version: int) -> SubscriptionRecord:
        async with self._lock:
            current = self._records.get(record.user_id)
            if current is None:
                raise UnknownUser(f"No subscription record for {record.user_id}")
            if current.version != expected_version:
                raise LedgerWriteConflict(
                    f"Version moved {expected_version} -> {current.version} for {record.user_id}"
                )
            stored = record.model_copy(update={"version": expected_version + 1})
            self._records[record.user_id] = stored
            return stored


# =============================================================================
# LEDGER
# =============================================================================

class TierChangeResult(BaseModel):
    record: SubscriptionRecord
    applied: bool
    previous_tier: Optional[Tier] = None
    # Paid tier sits below an active one; tracking id recorded, tier kept
    superseded: bool = False


Mutation = Callable[[SubscriptionRecord, datetime], Optional[SubscriptionRecord]]


class SubscriptionLedger:

    def __init__(
        self,
        repository: Optional[ILedgerRepository] = None,
        max_retries: int = settings.LEDGER_MAX_RETRIES,
        retry_base_delay: float = settings.LEDGER_RETRY_BASE_DELAY,
    ):
        self.repository = repository or InMemoryLedgerRepository()
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay

    # -------------------------------------------------------------------------
    # accounts
    # -------------------------------------------------------------------------

    async def create_account(
        self,
        user_id: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SubscriptionRecord:
        """Materialise a user's row on the free tier. Idempotent."""
        now = now or utcnow()
        record = await self.repository.insert(SubscriptionRecord(
            user_id=user_id,
            email=email,
            phone=phone,
            created_at=now,
            updated_at=now,
        ))
        logger.info("account_ensured", user_id=user_id, tier=record.tier.value)
        return record

    async def get_record(self, user_id: str) -> Optional[SubscriptionRecord]:
        return await self.repository.get(user_id)

    async def require_record(self, user_id: str) -> SubscriptionRecord:
        record = await self.repository.get(user_id)
        if record is None:
            raise UnknownUser(f"User not found: {user_id}")
        return record

    # -------------------------------------------------------------------------
    # writes
    # -------------------------------------------------------------------------

    async def apply_tier_change(
        self,
        user_id: str,
        tier: Tier,
        tracking_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        now: Optional[datetime] = None,
        keep_higher_active: bool = False,
    ) -> TierChangeResult:
        """
        Set the user's tier. Premium tiers get a fresh one-month period;
        the free tier clears the period fields.

        Replays are no-ops: a tracking id that was already applied, or a
        tracking-id-less change to the tier the user already holds, changes
        nothing (in particular the period is not extended again).

        With `keep_higher_active`, a tier ranked below the user's currently
        active tier is not applied. The tracking id is still recorded so the
        payment counts as consumed, and the result is flagged `superseded`.
        The check runs inside the CAS loop, so a concurrent write is re-read.
        """
        superseded = False

        def mutate(record: SubscriptionRecord, at: datetime) -> Optional[SubscriptionRecord]:
            nonlocal superseded
            superseded = False
            if tracking_id and tracking_id in record.applied_tracking_ids:
                return None
            if keep_higher_active and record.tier.rank > tier.rank and (
                record.status(at) == SubscriptionStatus.ACTIVE
            ):
                superseded = True
                update = {"updated_at": at}
                if tracking_id:
                    update["applied_tracking_ids"] = (
                        record.applied_tracking_ids + [tracking_id]
                    )[-MAX_APPLIED_TRACKING_IDS:]
                return record.model_copy(update=update)
            if not tracking_id and record.tier == tier and (
                record.status(at) != SubscriptionStatus.EXPIRED
            ):
                return None

            update = {
                "tier": tier,
                "cancel_at_period_end": False,
                "external_subscription_id": tracking_id,
                "updated_at": at,
            }
            if is_premium(tier):
                update["period_start"] = at
                update["period_end"] = add_one_month(at)
            else:
                update["period_start"] = None
                update["period_end"] = None
            if customer_id:
                update["external_customer_id"] = customer_id
            if tracking_id:
                update["applied_tracking_ids"] = (
                    record.applied_tracking_ids + [tracking_id]
                )[-MAX_APPLIED_TRACKING_IDS:]
            return record.model_copy(update=update)

        before, after = await self._mutate(user_id, mutate, now)
        if superseded:
            logger.warning("tier_change_superseded",
                           user_id=user_id,
                           held_tier=before.tier.value,
                           paid_tier=tier.value,
                           tracking_id=tracking_id)
            return TierChangeResult(record=after or before, applied=False,
                                    previous_tier=before.tier, superseded=True)

        applied = after is not None
        if applied:
            logger.info("tier_change_applied",
                        user_id=user_id,
                        from_tier=before.tier.value,
                        to_tier=tier.value,
                        tracking_id=tracking_id,
                        period_end=after.period_end.isoformat() if after.period_end else None)
        else:
            logger.info("tier_change_noop", user_id=user_id, tier=tier.value, tracking_id=tracking_id)
        return TierChangeResult(record=after or before, applied=applied, previous_tier=before.tier)

    async def cancel_at_period_end(self, user_id: str, now: Optional[datetime] = None) -> TierChangeResult:
        """Keep the entitlement until period_end, then let it lapse."""

        def mutate(record: SubscriptionRecord, at: datetime) -> Optional[SubscriptionRecord]:
            if not is_premium(record.tier):
                raise ValidationError("Free tier has nothing to cancel")
            if record.cancel_at_period_end:
                return None
            return record.model_copy(update={"cancel_at_period_end": True, "updated_at": at})

        before, after = await self._mutate(user_id, mutate, now)
        return TierChangeResult(record=after or before, applied=after is not None, previous_tier=before.tier)

    async def reactivate(self, user_id: str, now: Optional[datetime] = None) -> TierChangeResult:
        """Undo a pending cancellation while the period is still running."""

        def mutate(record: SubscriptionRecord, at: datetime) -> Optional[SubscriptionRecord]:
            if not record.cancel_at_period_end:
                return None
            if record.status(at) != SubscriptionStatus.ACTIVE:
                raise ValidationError("Subscription period already ended; purchase a new one")
            return record.model_copy(update={"cancel_at_period_end": False, "updated_at": at})

        before, after = await self._mutate(user_id, mutate, now)
        return TierChangeResult(record=after or before, applied=after is not None, previous_tier=before.tier)

    async def _mutate(
        self,
        user_id: str,
        mutation: Mutation,
        now: Optional[datetime],
    ) -> tuple[SubscriptionRecord, Optional[SubscriptionRecord]]:
        """Read-modify-CAS loop. Returns (row read, row written or None for no-op)."""
        attempt = 0
        while True:
            current = await self.require_record(user_id)
            at = now or utcnow()
            updated = mutation(current, at)
            if updated is None:
                return current, None
            try:
                stored = await self.repository.compare_and_set(updated, current.version)
                return current, stored
            except LedgerWriteConflict:
                attempt += 1
                if attempt > self.max_retries:
                    logger.error("ledger_conflict_exhausted", user_id=user_id, attempts=attempt)
                    raise
                delay = self.retry_base_delay * (2 ** (attempt - 1))
                logger.warning("ledger_conflict_retry", user_id=user_id, attempt=attempt, delay=delay)
                await asyncio.sleep(delay)

    # -------------------------------------------------------------------------
    # reads
    # -------------------------------------------------------------------------

    async def get_status(self, user_id: str, now: Optional[datetime] = None) -> SubscriptionDetails:
        record = await self.require_record(user_id)
        return SubscriptionDetails(
            user_id=user_id,
            tier=record.tier,
            status=record.status(now or utcnow()),
            period_end=record.period_end,
            cancel_at_period_end=record.cancel_at_period_end,
            external_subscription_id=record.external_subscription_id,
        )
