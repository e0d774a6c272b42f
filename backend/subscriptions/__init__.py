# subscriptions/__init__.py
# ============================================================================
# SUBSCRIPTION & PAYMENT RECONCILIATION CORE
# ============================================================================
# Push-payment initiation, callback correlation and the entitlement ledger
# ============================================================================

from subscriptions.audit import AuditEventType, AuditLogEntry, InMemoryAuditLog
from subscriptions.config import configure_logging, settings
from subscriptions.entitlements import EntitlementChecker
from subscriptions.errors import (
    AlreadyResolved,
    AuthenticationFailed,
    DuplicateTrackingId,
    ExpiredRegistration,
    GatewayError,
    GatewayUnavailable,
    InvalidChannel,
    LedgerWriteConflict,
    SubscriptionError,
    UnknownTransaction,
    UnknownUser,
    ValidationError,
)
from subscriptions.gateway_client import (
    CircuitBreaker,
    InMemoryGatewayClient,
    IntaSendClient,
    normalize_phone,
)
from subscriptions.ledger import InMemoryLedgerRepository, SubscriptionLedger
from subscriptions.models import (
    CallbackOutcome,
    CallbackPayload,
    CallbackResult,
    CallbackStatus,
    PendingRegistration,
    PendingTransaction,
    ReconcileReport,
    SubscriptionRecord,
    SubscriptionStatus,
    TransactionState,
    utcnow,
)
from subscriptions.orchestrator import PaymentOrchestrator
from subscriptions.retry_queue import InMemoryCallbackRetryQueue
from subscriptions.tiers import FREE_TIER, Tier, get_tier_info
from subscriptions.transaction_store import InMemoryTransactionStore

__all__ = [
    "AuditEventType",
    "AuditLogEntry",
    "InMemoryAuditLog",
    "configure_logging",
    "settings",
    "EntitlementChecker",
    "AlreadyResolved",
    "AuthenticationFailed",
    "DuplicateTrackingId",
    "ExpiredRegistration",
    "GatewayError",
    "GatewayUnavailable",
    "InvalidChannel",
    "LedgerWriteConflict",
    "SubscriptionError",
    "UnknownTransaction",
    "UnknownUser",
    "ValidationError",
    "CircuitBreaker",
    "InMemoryGatewayClient",
    "IntaSendClient",
    "normalize_phone",
    "InMemoryLedgerRepository",
    "SubscriptionLedger",
    "CallbackOutcome",
    "CallbackPayload",
    "CallbackResult",
    "CallbackStatus",
    "PendingRegistration",
    "PendingTransaction",
    "ReconcileReport",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "TransactionState",
    "utcnow",
    "PaymentOrchestrator",
    "InMemoryCallbackRetryQueue",
    "FREE_TIER",
    "Tier",
    "get_tier_info",
    "InMemoryTransactionStore",
]
