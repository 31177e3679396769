from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import orjson
from redis.asyncio import Redis

from flowstate.context.store import EVENT_RETENTION, MAX_PATTERNS_PER_USER, SNAPSHOT_TTL, ContextStore
from flowstate.schemas.context import ContextEvent, WorkContext


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _score(ts: datetime) -> float:
    return ts.timestamp() * 1000.0


@dataclass
class StoreKeys:
    prefix: str

    def events(self, user_id: str) -> str:
        return f"{self.prefix}:events:{user_id}"

    def snapshot(self, user_id: str) -> str:
        return f"{self.prefix}:snapshot:{user_id}"

    def patterns(self, user_id: str) -> str:
        return f"{self.prefix}:patterns:{user_id}"


class RedisContextStore(ContextStore):
    """
    Redis-backed context persistence.

    - events: one sorted set per user, scored by event time (ms), pruned past retention
    - snapshot: one key per user, expires after the snapshot TTL
    - patterns: one capped list per user, newest first
    """

    def __init__(
        self,
        *,
        redis: Redis,
        key_prefix: str,
        event_retention: timedelta = EVENT_RETENTION,
        snapshot_ttl: timedelta = SNAPSHOT_TTL,
        max_patterns: int = MAX_PATTERNS_PER_USER,
    ):
        self.redis = redis
        self.keys = StoreKeys(prefix=key_prefix)
        self.event_retention = event_retention
        self.snapshot_ttl = snapshot_ttl
        self.max_patterns = max_patterns

    async def ping(self) -> None:
        await self.redis.ping()

    async def append_event(self, event: ContextEvent) -> None:
        key = self.keys.events(event.user_id)
        data = orjson.dumps(event.model_dump(mode="json", by_alias=True))
        cutoff = _score(_utcnow() - self.event_retention)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zadd(key, {data: _score(event.timestamp)})
            pipe.zremrangebyscore(key, "-inf", f"({cutoff}")
            pipe.expire(key, int(self.event_retention.total_seconds()))
            await pipe.execute()

    async def events_between(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        *,
        limit: Optional[int] = None,
    ) -> List[ContextEvent]:
        key = self.keys.events(user_id)
        floor = _score(_utcnow() - self.event_retention)
        low = max(floor, _score(start)) if start is not None else floor
        high: Any = _score(end) if end is not None else "+inf"

        if limit is not None:
            if limit <= 0:
                return []
            raw = await self.redis.zrevrangebyscore(key, high, low, start=0, num=limit)
            raw = list(reversed(raw))
        else:
            raw = await self.redis.zrangebyscore(key, low, high)
        return [ContextEvent.model_validate(orjson.loads(item)) for item in raw]

    async def latest_event(self, user_id: str) -> Optional[ContextEvent]:
        events = await self.events_between(user_id, limit=1)
        return events[-1] if events else None

    async def put_snapshot(self, user_id: str, context: WorkContext) -> None:
        payload = {
            "context": context.model_dump(mode="json", by_alias=True),
            "storedAt": _utcnow().isoformat(),
        }
        await self.redis.set(
            self.keys.snapshot(user_id),
            orjson.dumps(payload),
            ex=int(self.snapshot_ttl.total_seconds()),
        )

    async def get_snapshot(self, user_id: str) -> Optional[WorkContext]:
        raw = await self.redis.get(self.keys.snapshot(user_id))
        if not raw:
            return None
        obj = orjson.loads(raw)
        return WorkContext.model_validate(obj.get("context") or {})

    async def append_pattern(self, user_id: str, pattern: Dict[str, Any]) -> None:
        key = self.keys.patterns(user_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lpush(key, orjson.dumps(pattern, option=orjson.OPT_NON_STR_KEYS))
            pipe.ltrim(key, 0, self.max_patterns - 1)
            pipe.expire(key, int(self.event_retention.total_seconds()))
            await pipe.execute()

    async def patterns(self, user_id: str, *, limit: int = 10) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        raw = await self.redis.lrange(self.keys.patterns(user_id), 0, limit - 1)
        return [orjson.loads(item) for item in raw]

    async def close(self) -> None:
        await self.redis.aclose()
