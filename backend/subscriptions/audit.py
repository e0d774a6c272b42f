"""Append-only audit trail keyed by gateway tracking id."""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from subscriptions.models import utcnow


class AuditEventType(str, Enum):
    PAYMENT_INITIATED = "payment.initiated"
    CALLBACK_RECEIVED = "callback.received"
    PAYMENT_CONFIRMED = "payment.confirmed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_TIMED_OUT = "payment.timed_out"
    PAYMENT_LATE_SUCCESS = "payment.late_success"
    TIER_CHANGED = "tier.changed"
    SUBSCRIPTION_CANCELLED = "subscription.cancelled"
    SUBSCRIPTION_REACTIVATED = "subscription.reactivated"
    REGISTRATION_CREATED = "registration.created"
    REGISTRATION_CONFIRMED = "registration.confirmed"
    REGISTRATION_COMPLETED = "registration.completed"
    REGISTRATION_EXPIRED = "registration.expired"
    CALLBACK_DEFERRED = "callback.deferred"
    CALLBACK_DEAD_LETTER = "callback.dead_letter"


class AuditLogEntry(BaseModel):
    """Immutable audit log entry"""
    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tracking_id: Optional[str] = None
    event_type: AuditEventType
    entity_type: str  # "transaction", "registration", "subscription", "callback"
    entity_id: str
    previous_state: Optional[dict] = None
    new_state: Optional[dict] = None
    metadata: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    actor: str = "system"  # "system", "callback", "user", "admin", "reconciler"


class IAuditLog(ABC):

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_tracking_id(self, tracking_id: str) -> list[AuditLogEntry]:
        pass

    @abstractmethod
    async def get_by_entity(self, entity_id: str) -> list[AuditLogEntry]:
        pass


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: list[AuditLogEntry] = []
        self._by_tracking: dict[str, list[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)
            if entry.tracking_id:
                self._by_tracking[entry.tracking_id].append(entry)

    async def get_by_tracking_id(self, tracking_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return list(self._by_tracking.get(tracking_id, []))

    async def get_by_entity(self, entity_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return [e for e in self._logs if e.entity_id == entity_id]
