# flowstate/core/bus/async_service.py
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from redis import asyncio as aioredis

from .codec import FlowCodec
from .bus_schemas import BaseEnvelope
from .enforce import ChannelCatalogEnforcer, enforcer as default_enforcer

logger = logging.getLogger("flowstate.bus.async")


def stream_key(channel: str) -> str:
    return f"stream:{channel}"


class FlowBusAsync:
    """
    Async Redis bus client.

    Publishes go to Redis pub/sub. Channels with a catalog retention hint are also
    appended to a Redis stream trimmed to that retention window.
    """

    def __init__(
        self,
        url: str,
        *,
        enabled: bool = True,
        codec: Optional[FlowCodec] = None,
        catalog: Optional[ChannelCatalogEnforcer] = None,
    ):
        self.url = url
        self.enabled = enabled
        self.codec = codec or FlowCodec()
        self.catalog = catalog or default_enforcer
        self._redis: Optional[aioredis.Redis] = None

    async def connect(self) -> None:
        if not self.enabled:
            return
        if self._redis is None:
            self._redis = aioredis.from_url(self.url, decode_responses=False)
            await self._redis.ping()

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    @property
    def connected(self) -> bool:
        return self._redis is not None

    @property
    def redis(self) -> aioredis.Redis:
        if self._redis is None:
            raise RuntimeError("FlowBusAsync not connected. Call await connect().")
        return self._redis

    async def publish(self, channel: str, msg: BaseEnvelope | Dict[str, Any]) -> None:
        if not self.enabled:
            return
        self.catalog.validate(channel)
        data = self.codec.encode(msg)
        await self.redis.publish(channel, data)

        retention = self.catalog.retention_for(channel)
        if retention:
            min_id = int((time.time() - retention) * 1000)
            await self.redis.xadd(stream_key(channel), {"data": data}, minid=min_id, approximate=True)

    @asynccontextmanager
    async def subscribe(self, *channels: str, patterns: bool = False) -> AsyncIterator[aioredis.client.PubSub]:
        if not self.enabled:
            raise RuntimeError("Bus disabled")
        pubsub = self.redis.pubsub()
        if patterns:
            await pubsub.psubscribe(*channels)
        else:
            await pubsub.subscribe(*channels)
        try:
            yield pubsub
        finally:
            try:
                if patterns:
                    await pubsub.punsubscribe(*channels)
                else:
                    await pubsub.unsubscribe(*channels)
            finally:
                await pubsub.aclose()

    async def iter_messages(self, pubsub: aioredis.client.PubSub) -> AsyncIterator[dict]:
        """
        Unified async message iterator. Yields dicts with fields similar to redis-py's listen().
        """
        async for msg in pubsub.listen():
            mtype = msg.get("type")
            if mtype not in ("message", "pmessage"):
                continue
            yield msg
