"""
Callback Retry Queue
====================
Holds SUCCESS callbacks that could not be made durable on first delivery.
Drained by the reconciliation sweep; exhausted events stay parked as dead
letters for manual intervention instead of being dropped.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from subscriptions.models import CallbackEvent, utcnow


class ICallbackRetryQueue(ABC):

    @abstractmethod
    async def enqueue(self, event: CallbackEvent) -> None:
        pass

    @abstractmethod
    async def get_due(self, now: Optional[datetime] = None, limit: int = 100) -> list[CallbackEvent]:
        pass

    @abstractmethod
    async def update(self, event: CallbackEvent) -> None:
        pass

    @abstractmethod
    async def mark_processed(self, event_id: str) -> None:
        pass

    @abstractmethod
    async def get_stats(self) -> dict:
        pass


class InMemoryCallbackRetryQueue(ICallbackRetryQueue):

    def __init__(self):
        self._queue: dict[str, CallbackEvent] = {}
        self._lock = asyncio.Lock()

    async def enqueue(self, event: CallbackEvent) -> None:
        async with self._lock:
            self._queue[event.event_id] = event

    async def get_due(self, now: Optional[datetime] = None, limit: int = 100) -> list[CallbackEvent]:
        now = now or utcnow()
        async with self._lock:
            due = [
                e for e in self._queue.values()
                if not e.dead_letter and (e.next_retry_at is None or e.next_retry_at <= now)
            ]
            return due[:limit]

    async def update(self, event: CallbackEvent) -> None:
        async with self._lock:
            if event.event_id in self._queue:
                self._queue[event.event_id] = event

    async def mark_processed(self, event_id: str) -> None:
        async with self._lock:
            self._queue.pop(event_id, None)

    async def get_stats(self) -> dict:
        async with self._lock:
            return {
                "total": len(self._queue),
                "pending": sum(1 for e in self._queue.values() if not e.dead_letter),
                "dead_letter": sum(1 for e in self._queue.values() if e.dead_letter),
            }
