"""
Transaction Store
=================
Pending push transactions and pending registrations, keyed by the
gateway-issued tracking id.

Every state change is a compare-and-set against the current state so that a
callback and the TTL sweep racing on the same row produce exactly one winner.
The loser gets AlreadyResolved and must not perform side effects.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

import structlog

from subscriptions.errors import AlreadyResolved, DuplicateTrackingId, UnknownTransaction
from subscriptions.models import (
    PendingRegistration,
    PendingTransaction,
    RegistrationState,
    TransactionState,
    utcnow,
)

logger = structlog.get_logger().bind(component="transaction_store")


# =============================================================================
# INTERFACE
# =============================================================================

class ITransactionStore(ABC):

    # -- transactions ---------------------------------------------------------

    @abstractmethod
    async def create_pending(self, txn: PendingTransaction) -> PendingTransaction:
        """Insert an INITIATED record. Raises DuplicateTrackingId on collision."""

    @abstractmethod
    async def get(self, tracking_id: str) -> Optional[PendingTransaction]:
        pass

    @abstractmethod
    async def resolve(
        self,
        tracking_id: str,
        outcome: TransactionState,
        now: Optional[datetime] = None,
        metadata: Optional[dict] = None,
    ) -> TransactionState:
        """
        CAS INITIATED -> outcome. Returns the prior state.
        Raises UnknownTransaction or AlreadyResolved.
        """

    @abstractmethod
    async def sweep(self, now: Optional[datetime] = None) -> list[PendingTransaction]:
        """CAS every expired INITIATED record to TIMED_OUT. Returns those transitioned."""

    @abstractmethod
    async def compensate(self, tracking_id: str, now: Optional[datetime] = None) -> PendingTransaction:
        """CAS TIMED_OUT -> SUCCESS for a late payment. Raises AlreadyResolved otherwise."""

    @abstractmethod
    async def mark_settled(self, tracking_id: str, now: Optional[datetime] = None) -> bool:
        """Record that the entitlement effect of a SUCCESS has been committed."""

    @abstractmethod
    async def get_unsettled(self, resolved_before: datetime, limit: int = 100) -> list[PendingTransaction]:
        pass

    @abstractmethod
    async def discard(self, tracking_id: str) -> bool:
        pass

    # -- registrations --------------------------------------------------------

    @abstractmethod
    async def create_registration(self, registration: PendingRegistration) -> PendingRegistration:
        pass

    @abstractmethod
    async def get_registration(self, tracking_id: str) -> Optional[PendingRegistration]:
        pass

    @abstractmethod
    async def transition_registration(
        self,
        tracking_id: str,
        expected: RegistrationState,
        new_state: RegistrationState,
        now: Optional[datetime] = None,
    ) -> PendingRegistration:
        """CAS on registration state. Raises UnknownTransaction or AlreadyResolved."""

    @abstractmethod
    async def delete_registration(self, tracking_id: str) -> bool:
        pass

    @abstractmethod
    async def get_expired_registrations(self, now: Optional[datetime] = None) -> list[PendingRegistration]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryTransactionStore(ITransactionStore):
    """
    Lock-guarded in-memory store. Each operation is a single short
    read-modify-write under the lock, never spanning an await on I/O.
    """

    def __init__(self):
        self._transactions: dict[str, PendingTransaction] = {}
        self._registrations: dict[str, PendingRegistration] = {}
        self._lock = asyncio.Lock()

    async def create_pending(self, txn: PendingTransaction) -> PendingTransaction:
        async with self._lock:
            if txn.tracking_id in self._transactions:
                logger.error("duplicate_tracking_id", tracking_id=txn.tracking_id)
                raise DuplicateTrackingId(
                    f"Tracking id already exists: {txn.tracking_id}", txn.tracking_id
                )
            self._transactions[txn.tracking_id] = txn
        logger.info("pending_created",
                    tracking_id=txn.tracking_id,
                    kind=txn.kind.value,
                    target_tier=txn.target_tier.value)
        return txn

    async def get(self, tracking_id: str) -> Optional[PendingTransaction]:
        async with self._lock:
            return self._transactions.get(tracking_id)

    async def resolve(
        self,
        tracking_id: str,
        outcome: TransactionState,
        now: Optional[datetime] = None,
        metadata: Optional[dict] = None,
    ) -> TransactionState:
        if not outcome.is_terminal:
            raise ValueError("resolve() needs a terminal outcome")

        async with self._lock:
            txn = self._transactions.get(tracking_id)
            if txn is None:
                raise UnknownTransaction(f"No pending transaction {tracking_id}", tracking_id)
            if txn.state.is_terminal:
                raise AlreadyResolved(
                    f"Transaction {tracking_id} already {txn.state.value}",
                    tracking_id,
                    state=txn.state,
                )
            self._transactions[tracking_id] = txn.model_copy(update={
                "state": outcome,
                "resolved_at": now or utcnow(),
                "callback_metadata": metadata or txn.callback_metadata,
                "version": txn.version + 1,
            })
            prior = txn.state

        logger.info("transaction_resolved", tracking_id=tracking_id, outcome=outcome.value)
        return prior

    async def sweep(self, now: Optional[datetime] = None) -> list[PendingTransaction]:
        now = now or utcnow()
        transitioned = []
        async with self._lock:
            for tracking_id, txn in self._transactions.items():
                if txn.state == TransactionState.INITIATED and txn.expires_at <= now:
                    timed_out = txn.model_copy(update={
                        "state": TransactionState.TIMED_OUT,
                        "resolved_at": now,
                        "version": txn.version + 1,
                    })
                    self._transactions[tracking_id] = timed_out
                    transitioned.append(timed_out)

        if transitioned:
            logger.info("sweep_timed_out", count=len(transitioned))
        return transitioned

    async def compensate(self, tracking_id: str, now: Optional[datetime] = None) -> PendingTransaction:
        async with self._lock:
            txn = self._transactions.get(tracking_id)
            if txn is None:
                raise UnknownTransaction(f"No pending transaction {tracking_id}", tracking_id)
            if txn.state != TransactionState.TIMED_OUT:
                raise AlreadyResolved(
                    f"Transaction {tracking_id} is {txn.state.value}, not TIMED_OUT",
                    tracking_id,
                    state=txn.state,
                )
            updated = txn.model_copy(update={
                "state": TransactionState.SUCCESS,
                "resolved_at": now or utcnow(),
                "version": txn.version + 1,
            })
            self._transactions[tracking_id] = updated
        return updated

    async def mark_settled(self, tracking_id: str, now: Optional[datetime] = None) -> bool:
        async with self._lock:
            txn = self._transactions.get(tracking_id)
            if txn is None or txn.settled_at is not None:
                return False
            self._transactions[tracking_id] = txn.model_copy(update={
                "settled_at": now or utcnow(),
                "version": txn.version + 1,
            })
            return True

    async def get_unsettled(self, resolved_before: datetime, limit: int = 100) -> list[PendingTransaction]:
        async with self._lock:
            pending = [
                t for t in self._transactions.values()
                if t.needs_settlement and t.resolved_at is not None and t.resolved_at <= resolved_before
            ]
            return pending[:limit]

    async def discard(self, tracking_id: str) -> bool:
        async with self._lock:
            return self._transactions.pop(tracking_id, None) is not None

    async def create_registration(self, registration: PendingRegistration) -> PendingRegistration:
        async with self._lock:
            if registration.tracking_id in self._registrations:
                raise DuplicateTrackingId(
                    f"Registration already exists: {registration.tracking_id}",
                    registration.tracking_id,
                )
            self._registrations[registration.tracking_id] = registration
        logger.info("registration_created",
                    tracking_id=registration.tracking_id,
                    temp_id=registration.temp_id,
                    expires_at=registration.expires_at.isoformat())
        return registration

    async def get_registration(self, tracking_id: str) -> Optional[PendingRegistration]:
        async with self._lock:
            return self._registrations.get(tracking_id)

    async def transition_registration(
        self,
        tracking_id: str,
        expected: RegistrationState,
        new_state: RegistrationState,
        now: Optional[datetime] = None,
    ) -> PendingRegistration:
        async with self._lock:
            registration = self._registrations.get(tracking_id)
            if registration is None:
                raise UnknownTransaction(f"No pending registration {tracking_id}", tracking_id)
            if registration.state != expected:
                raise AlreadyResolved(
                    f"Registration {tracking_id} is {registration.state.value}",
                    tracking_id,
                )
            update = {"state": new_state}
            if new_state == RegistrationState.PAYMENT_CONFIRMED:
                update["confirmed_at"] = now or utcnow()
            updated = registration.model_copy(update=update)
            self._registrations[tracking_id] = updated
        return updated

    async def delete_registration(self, tracking_id: str) -> bool:
        async with self._lock:
            return self._registrations.pop(tracking_id, None) is not None

    async def get_expired_registrations(self, now: Optional[datetime] = None) -> list[PendingRegistration]:
        now = now or utcnow()
        async with self._lock:
            return [r for r in self._registrations.values() if r.is_expired(now)]
