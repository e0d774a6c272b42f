"""
Domain Models
=============
Pydantic records shared by the store, the ledger and the orchestrator.

Records are treated as immutable values: every mutation goes through
`model_copy(update=...)` and a compare-and-set in the owning store.
"""

import calendar
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, computed_field

from subscriptions.tiers import FREE_TIER, Tier, is_premium


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def add_one_month(moment: datetime) -> datetime:
    """Same day next month, clamped to the month's last day (Jan 31 -> Feb 28/29)."""
    year = moment.year + (1 if moment.month == 12 else 0)
    month = 1 if moment.month == 12 else moment.month + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


# =============================================================================
# ENUMS
# =============================================================================

class TransactionState(str, Enum):
    INITIATED = "INITIATED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"

    @property
    def is_terminal(self) -> bool:
        return self != TransactionState.INITIATED


class TransactionKind(str, Enum):
    UPGRADE = "upgrade"
    REGISTRATION = "registration"


class SubscriptionStatus(str, Enum):
    FREE = "free"
    ACTIVE = "active"
    EXPIRED = "expired"


class RegistrationState(str, Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    COMPLETED = "completed"


# =============================================================================
# STATUS DERIVATION
# =============================================================================

def derive_status(tier: Tier, period_end: Optional[datetime], now: datetime) -> SubscriptionStatus:
    """The one place subscription status is computed."""
    if not is_premium(tier):
        return SubscriptionStatus.FREE
    if period_end is not None and period_end > now:
        return SubscriptionStatus.ACTIVE
    return SubscriptionStatus.EXPIRED


# =============================================================================
# LEDGER RECORDS
# =============================================================================

class SubscriptionRecord(BaseModel):
    """Per-user entitlement row. Status is derived, never stored."""
    user_id: str
    email: Optional[str] = None
    phone: Optional[str] = None

    tier: Tier = FREE_TIER
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False

    # Tracking id of the payment behind the current tier (audit / disputes)
    external_subscription_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    applied_tracking_ids: list[str] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1  # Optimistic locking

    def status(self, now: Optional[datetime] = None) -> SubscriptionStatus:
        return derive_status(self.tier, self.period_end, now or utcnow())


class SubscriptionDetails(BaseModel):
    """Consumer-facing read model."""
    user_id: str
    tier: Tier
    status: SubscriptionStatus
    period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    external_subscription_id: Optional[str] = None


# =============================================================================
# PENDING STATE
# =============================================================================

class PendingTransaction(BaseModel):
    """A push payment awaiting its confirmation callback."""
    tracking_id: str
    kind: TransactionKind = TransactionKind.UPGRADE
    user_id: Optional[str] = None  # None for the registration flow
    target_tier: Tier
    amount: float
    currency: str
    channel: str
    reference: str

    state: TransactionState = TransactionState.INITIATED
    initiated_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    resolved_at: Optional[datetime] = None

    # Set once the entitlement effect of a SUCCESS has been committed
    settled_at: Optional[datetime] = None
    callback_metadata: dict[str, Any] = Field(default_factory=dict)
    version: int = 1

    @computed_field
    @property
    def needs_settlement(self) -> bool:
        return self.state == TransactionState.SUCCESS and self.settled_at is None


class PendingRegistration(BaseModel):
    """Pre-account record for register-and-pay. Dead once expires_at passes."""
    temp_id: str = Field(default_factory=lambda: f"temp_{uuid.uuid4().hex[:12]}")
    email: str
    phone: str
    full_name: Optional[str] = None
    target_tier: Tier
    tracking_id: str
    state: RegistrationState = RegistrationState.AWAITING_PAYMENT
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    confirmed_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    @classmethod
    def with_ttl(cls, ttl_seconds: int, now: Optional[datetime] = None, **fields) -> "PendingRegistration":
        created = now or utcnow()
        return cls(created_at=created, expires_at=created + timedelta(seconds=ttl_seconds), **fields)


# =============================================================================
# GATEWAY / CALLBACK PAYLOADS
# =============================================================================

class PushResult(BaseModel):
    tracking_id: Optional[str] = None
    accepted: bool
    message: str = ""


class CallbackStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class CallbackMetadata(BaseModel):
    user_id: Optional[str] = None
    target_tier: Optional[Tier] = None


class CallbackPayload(BaseModel):
    """Inbound webhook body, validated before any store is touched."""
    tracking_id: str = Field(..., min_length=1, max_length=128)
    status: CallbackStatus
    amount: float = Field(..., ge=0)
    currency: str = Field(..., min_length=3, max_length=3)
    metadata: CallbackMetadata = Field(default_factory=CallbackMetadata)
    challenge: Optional[str] = None


class CallbackOutcome(str, Enum):
    APPLIED = "applied"                      # upgrade granted
    PAYMENT_CONFIRMED = "payment_confirmed"  # registration awaiting account
    RECORDED_FAILURE = "recorded_failure"
    ALREADY_RESOLVED = "already_resolved"
    UNKNOWN_TRANSACTION = "unknown_transaction"
    EXPIRED_REGISTRATION = "expired_registration"
    COMPENSATED = "compensated"              # late success granted after timeout
    SUPERSEDED = "superseded"                # paid tier below one already active; refund review
    DEFERRED = "deferred"                    # parked in the retry queue
    DROPPED = "dropped"                      # failure callback not recorded; the sweep covers it


class CallbackResult(BaseModel):
    tracking_id: str
    outcome: CallbackOutcome
    state: Optional[TransactionState] = None
    message: str = ""


class RegistrationResult(BaseModel):
    requires_payment: bool
    registration: Optional[PendingRegistration] = None
    message: str = ""


class CallbackEvent(BaseModel):
    """A SUCCESS callback that could not be made durable yet."""
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    payload: CallbackPayload
    attempt_count: int = 0
    max_attempts: int = 10
    last_error: Optional[str] = None
    dead_letter: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    next_retry_at: Optional[datetime] = None

    @computed_field
    @property
    def is_retriable(self) -> bool:
        return self.attempt_count < self.max_attempts and not self.dead_letter


class ReconcileReport(BaseModel):
    timed_out: list[str] = Field(default_factory=list)
    registrations_purged: list[str] = Field(default_factory=list)
    settled: list[str] = Field(default_factory=list)
    callbacks_retried: int = 0
    callbacks_dead_lettered: int = 0
