# flowstate/core/bus/bus_service_chassis.py
from __future__ import annotations

import asyncio
import traceback
from dataclasses import dataclass
from uuid import uuid4
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from .async_service import FlowBusAsync
from .bus_schemas import BaseEnvelope, ErrorInfo, ServiceRef


EnvelopeHandler = Callable[[BaseEnvelope], Awaitable[None]]


@dataclass(frozen=True)
class ChassisConfig:
    service_name: str
    service_version: str
    node_name: str
    bus_url: str = "redis://localhost:6379/0"
    bus_enabled: bool = True

    # system behaviors
    heartbeat_interval_sec: float = 10.0
    connect_timeout_sec: float = 10.0
    shutdown_timeout_sec: float = 10.0

    # system channels (stable defaults)
    health_channel: str = "system.health"
    error_channel: str = "system.error"


class _SystemHealthPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)
    status: str = "ok"
    service: str
    node: str
    version: str
    details: dict[str, Any] = Field(default_factory=dict)


class BaseChassis:
    """
    Shared chassis behavior:

    - bus connect (with timeout) / disconnect
    - periodic heartbeat publishing
    - exception wrapping to system.error
    """

    def __init__(self, cfg: ChassisConfig, *, bus: Optional[FlowBusAsync] = None):
        self.cfg = cfg
        self.bus = bus or FlowBusAsync(cfg.bus_url, enabled=cfg.bus_enabled)

        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._started = False

    def _source(self) -> ServiceRef:
        return ServiceRef(name=self.cfg.service_name, version=self.cfg.service_version, node=self.cfg.node_name)

    async def connect(self) -> None:
        """Connect the bus or raise. Startup treats a failure here as fatal."""
        # Compute timeout before creating the coroutine so failures don't leak "never awaited".
        timeout = float(self.cfg.connect_timeout_sec or 10.0)
        logger.info(f"Connecting bus url={self.cfg.bus_url}")
        await asyncio.wait_for(self.bus.connect(), timeout=timeout)

    async def start_background(self, stop: Optional[asyncio.Event] = None) -> None:
        """Run until `stop` is set or `stop()` is called. Embedded in the web app lifespan."""
        if self._started:
            return
        self._started = True

        if self.cfg.bus_enabled and not self.bus.connected:
            await self.connect()

        self._tasks.append(asyncio.create_task(self._heartbeat_loop(), name=f"{self.cfg.service_name}-heartbeat"))
        self._tasks.append(asyncio.create_task(self._run(), name=f"{self.cfg.service_name}-run"))

        waiters = [asyncio.create_task(self._stop.wait())]
        if stop is not None:
            waiters.append(asyncio.create_task(stop.wait()))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for t in waiters:
                t.cancel()
            await self._shutdown()

    async def stop(self) -> None:
        self._stop.set()

    async def _heartbeat_loop(self) -> None:
        while not self._stop.is_set():
            try:
                node = self.cfg.node_name or "unknown"
                env = BaseEnvelope(
                    kind="system.health",
                    source=self._source(),
                    payload=_SystemHealthPayload(
                        service=self.cfg.service_name,
                        node=node,
                        version=self.cfg.service_version,
                        details={"chassis": type(self).__name__},
                    ).model_dump(mode="json"),
                )
                await self.bus.publish(self.cfg.health_channel, env)
            except Exception as e:
                # Don't recurse into _publish_error if the bus is down; just log.
                logger.warning(f"Heartbeat publish failed: {e}")
            await asyncio.sleep(float(self.cfg.heartbeat_interval_sec or 10.0))

    async def _publish_error(self, err: BaseException, *, when: str, env: BaseEnvelope | None = None) -> None:
        try:
            info = ErrorInfo(
                type=type(err).__name__,
                message=str(err),
                stack="".join(traceback.format_exception(type(err), err, err.__traceback__)),
                details={"when": when},
            )
            out = BaseEnvelope(
                kind="system.error",
                source=self._source(),
                correlation_id=(env.correlation_id if env else uuid4()),
                payload=info.model_dump(mode="json"),
            )
            await self.bus.publish(self.cfg.error_channel, out)
        except Exception:
            logger.exception("Failed publishing system.error")

    async def _shutdown(self) -> None:
        for t in self._tasks:
            if not t.done():
                t.cancel()

        try:
            await asyncio.wait_for(
                asyncio.gather(*self._tasks, return_exceptions=True),
                timeout=float(self.cfg.shutdown_timeout_sec or 10.0),
            )
        except asyncio.TimeoutError:
            logger.warning("Shutdown timeout waiting for tasks")

        try:
            await self.bus.close()
        except Exception:
            logger.exception("Bus close failed")

    async def _run(self) -> None:
        raise NotImplementedError


class Hunter(BaseChassis):
    """
    Fire-and-forget consumer. Subscribes to channels and routes every decoded
    envelope by kind; `handler`, when given, takes kinds with no route.

    A message that fails to decode or to process is logged, reported on
    system.error and dropped; there is no retry.
    """

    def __init__(
        self,
        cfg: ChassisConfig,
        *,
        channels: Sequence[str],
        routes: Optional[Mapping[str, EnvelopeHandler]] = None,
        handler: Optional[EnvelopeHandler] = None,
        patterns: bool = False,
        bus: Optional[FlowBusAsync] = None,
    ):
        super().__init__(cfg, bus=bus)
        self.channels = list(channels)
        self.patterns = patterns
        self.routes: Dict[str, EnvelopeHandler] = dict(routes or {})
        self.handler = handler

    async def _run(self) -> None:
        logger.info(f"Hunter subscribing channels={self.channels} kinds={sorted(self.routes)} bus={self.cfg.bus_url}")

        async with self.bus.subscribe(*self.channels, patterns=self.patterns) as pubsub:
            async for msg in self.bus.iter_messages(pubsub):
                if self._stop.is_set():
                    break
                await self.dispatch(msg)

    async def dispatch(self, msg: Any) -> None:
        if not isinstance(msg, dict):
            return
        data = msg.get("data")
        if data is None:
            return

        channel = msg.get("channel")
        decoded = self.bus.codec.decode(data, channel=channel)
        if not decoded.ok or decoded.envelope is None:
            logger.warning(f"Dropping undecodable message channel={channel!r} error={decoded.error}")
            await self._publish_error(
                RuntimeError(decoded.error or "decode_failed"),
                when="hunter.decode",
                env=None,
            )
            return

        env = decoded.envelope
        handler = self.routes.get(env.kind, self.handler)
        if handler is None:
            logger.debug(f"No route for kind={env.kind} channel={channel!r}; ignored")
            return
        try:
            await handler(env)
        except Exception as e:
            logger.warning(f"Dropping message kind={env.kind} id={env.id}: {e}")
            await self._publish_error(e, when="hunter.handle", env=env)
