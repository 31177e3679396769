from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from flowstate.schemas.context import ContextEvent, WorkContext

EVENT_RETENTION = timedelta(days=30)
SNAPSHOT_TTL = timedelta(days=1)
MAX_PATTERNS_PER_USER = 1000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContextStore(ABC):
    """
    Durable context state:

    - context events, one per transition, kept for EVENT_RETENTION
    - one snapshot per user (latest context), kept for SNAPSHOT_TTL
    - mined patterns / training data per user, newest first
    """

    async def ping(self) -> None:
        return None

    @abstractmethod
    async def append_event(self, event: ContextEvent) -> None:
        ...

    @abstractmethod
    async def events_between(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        *,
        limit: Optional[int] = None,
    ) -> List[ContextEvent]:
        """Events for `user_id` in [start, end], oldest first. `limit` keeps the newest."""

    @abstractmethod
    async def latest_event(self, user_id: str) -> Optional[ContextEvent]:
        ...

    @abstractmethod
    async def put_snapshot(self, user_id: str, context: WorkContext) -> None:
        ...

    @abstractmethod
    async def get_snapshot(self, user_id: str) -> Optional[WorkContext]:
        ...

    @abstractmethod
    async def append_pattern(self, user_id: str, pattern: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def patterns(self, user_id: str, *, limit: int = 10) -> List[Dict[str, Any]]:
        ...

    async def close(self) -> None:
        return None


class InMemoryContextStore(ContextStore):
    """Process-local store with the same retention rules as the Redis one."""

    def __init__(self, *, event_retention: timedelta = EVENT_RETENTION, snapshot_ttl: timedelta = SNAPSHOT_TTL):
        self.event_retention = event_retention
        self.snapshot_ttl = snapshot_ttl
        self._lock = asyncio.Lock()
        self._events: Dict[str, List[ContextEvent]] = defaultdict(list)
        self._snapshots: Dict[str, tuple[WorkContext, datetime]] = {}
        self._patterns: Dict[str, List[Dict[str, Any]]] = defaultdict(list)

    def _prune(self, user_id: str, now: datetime) -> None:
        cutoff = now - self.event_retention
        events = self._events[user_id]
        if events and events[0].timestamp < cutoff:
            self._events[user_id] = [e for e in events if e.timestamp >= cutoff]

    async def append_event(self, event: ContextEvent) -> None:
        async with self._lock:
            events = self._events[event.user_id]
            events.append(event)
            events.sort(key=lambda e: e.timestamp)
            self._prune(event.user_id, _utcnow())

    async def events_between(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        *,
        limit: Optional[int] = None,
    ) -> List[ContextEvent]:
        async with self._lock:
            self._prune(user_id, _utcnow())
            out = [
                e
                for e in self._events.get(user_id, ())
                if (start is None or e.timestamp >= start) and (end is None or e.timestamp <= end)
            ]
        if limit is not None:
            out = out[-limit:] if limit > 0 else []
        return out

    async def latest_event(self, user_id: str) -> Optional[ContextEvent]:
        events = await self.events_between(user_id, limit=1)
        return events[-1] if events else None

    async def put_snapshot(self, user_id: str, context: WorkContext) -> None:
        async with self._lock:
            self._snapshots[user_id] = (context, _utcnow())

    async def get_snapshot(self, user_id: str) -> Optional[WorkContext]:
        async with self._lock:
            entry = self._snapshots.get(user_id)
            if entry is None:
                return None
            context, stored_at = entry
            if _utcnow() - stored_at > self.snapshot_ttl:
                del self._snapshots[user_id]
                return None
            return context

    async def append_pattern(self, user_id: str, pattern: Dict[str, Any]) -> None:
        async with self._lock:
            items = self._patterns[user_id]
            items.insert(0, pattern)
            del items[MAX_PATTERNS_PER_USER:]

    async def patterns(self, user_id: str, *, limit: int = 10) -> List[Dict[str, Any]]:
        async with self._lock:
            return list(self._patterns.get(user_id, ())[:limit])
