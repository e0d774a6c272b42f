"""Shared fixtures for the subscription core tests."""

from datetime import datetime, timedelta, timezone

import pytest

from subscriptions.audit import InMemoryAuditLog
from subscriptions.gateway_client import InMemoryGatewayClient
from subscriptions.ledger import InMemoryLedgerRepository, SubscriptionLedger
from subscriptions.models import CallbackMetadata, CallbackPayload, CallbackStatus
from subscriptions.orchestrator import PaymentOrchestrator
from subscriptions.retry_queue import InMemoryCallbackRetryQueue
from subscriptions.tiers import Tier
from subscriptions.transaction_store import InMemoryTransactionStore

T0 = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock injected wherever `now` matters."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return InMemoryGatewayClient()


@pytest.fixture
def store():
    return InMemoryTransactionStore()


@pytest.fixture
def ledger():
    return SubscriptionLedger(InMemoryLedgerRepository(), max_retries=3, retry_base_delay=0)


@pytest.fixture
def audit_log():
    return InMemoryAuditLog()


@pytest.fixture
def retry_queue():
    return InMemoryCallbackRetryQueue()


@pytest.fixture
def orchestrator(gateway, store, ledger, audit_log, retry_queue, clock):
    return PaymentOrchestrator(
        gateway=gateway,
        store=store,
        ledger=ledger,
        audit_log=audit_log,
        retry_queue=retry_queue,
        currency="KES",
        transaction_ttl_seconds=900,
        registration_ttl_seconds=600,
        grant_late_success=False,
        callback_max_attempts=3,
        callback_retry_delay_seconds=30,
        settlement_grace_seconds=60,
        clock=clock,
    )


def make_payload(
    tracking_id: str,
    status: CallbackStatus = CallbackStatus.SUCCESS,
    amount: float = 150,
    currency: str = "KES",
    user_id: str = None,
    target_tier: Tier = None,
) -> CallbackPayload:
    return CallbackPayload(
        tracking_id=tracking_id,
        status=status,
        amount=amount,
        currency=currency,
        metadata=CallbackMetadata(user_id=user_id, target_tier=target_tier),
    )


@pytest.fixture
def payload_factory():
    return make_payload
