from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import FastAPI
from loguru import logger
from redis.asyncio import Redis

from flowstate.context.aggregator import ContextAggregator
from flowstate.context.classifier import ActivityClassifier
from flowstate.context.engine import ContextEngineService
from flowstate.context.predictor import StatePredictorService
from flowstate.core.bus.async_service import FlowBusAsync
from flowstate.core.bus.bus_schemas import BaseEnvelope, ServiceRef, SignalPayload
from flowstate.core.bus.bus_service_chassis import ChassisConfig, EnvelopeHandler, Hunter
from flowstate.core.bus.codec import FlowCodec
from flowstate.core.bus.contracts import KINDS
from flowstate.core.bus.enforce import ChannelCatalogEnforcer

from .api_routes import router as api_router
from .settings import settings
from .store import RedisContextStore
from .websocket_handler import websocket_endpoint


def _ensure_logging() -> None:
    """Route `flowstate.*` library logs to stdout at the configured level."""
    level = getattr(logging, (settings.log_level or "INFO").upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format="%(asctime)s %(name)s %(levelname)s - %(message)s")
    else:
        root.setLevel(level)


_ensure_logging()


def _source() -> ServiceRef:
    return ServiceRef(name=settings.service_name, version=settings.service_version, node=settings.node_name)


def _cfg() -> ChassisConfig:
    return ChassisConfig(
        service_name=settings.service_name,
        service_version=settings.service_version,
        node_name=settings.node_name,
        bus_url=settings.flowstate_bus_url,
        bus_enabled=settings.flowstate_bus_enabled,
        heartbeat_interval_sec=float(settings.heartbeat_interval_sec),
        connect_timeout_sec=float(settings.bus_connect_timeout_sec),
        health_channel=settings.health_channel,
        error_channel=settings.error_channel,
        shutdown_timeout_sec=float(settings.shutdown_grace_sec),
    )


SignalApply = Callable[[ContextEngineService, str, Dict[str, Any]], Awaitable[Any]]

SIGNAL_HANDLERS: Dict[str, SignalApply] = {
    KINDS.ide_activity: ContextEngineService.handle_ide_activity,
    KINDS.git_event: ContextEngineService.handle_git_event,
    KINDS.calendar_event: ContextEngineService.handle_calendar_event,
    KINDS.biometric_data: ContextEngineService.handle_biometric_data,
}


def signal_channel_kinds() -> Dict[str, str]:
    return {
        settings.channel_ide_activity: KINDS.ide_activity,
        settings.channel_git_events: KINDS.git_event,
        settings.channel_calendar_events: KINDS.calendar_event,
        settings.channel_biometric_data: KINDS.biometric_data,
    }


def _signal_route(app: FastAPI, apply: SignalApply) -> EnvelopeHandler:
    async def handle(env: BaseEnvelope) -> None:
        engine: Optional[ContextEngineService] = getattr(app.state, "engine", None)
        if engine is None:
            return
        signal = SignalPayload.from_envelope(env)
        await apply(engine, signal.user_id, signal.body())
        logger.debug(f"Applied signal kind={env.kind} user={signal.user_id}")

    return handle


def build_hunter(app: FastAPI, catalog: Optional[ChannelCatalogEnforcer] = None) -> Hunter:
    """One consumer for every signal channel; the codec stamps each message with its channel's kind."""
    channel_kinds = signal_channel_kinds()
    bus = FlowBusAsync(
        settings.flowstate_bus_url,
        enabled=settings.flowstate_bus_enabled,
        codec=FlowCodec(channel_kinds=channel_kinds),
        catalog=catalog,
    )
    return Hunter(
        _cfg(),
        channels=list(channel_kinds),
        routes={kind: _signal_route(app, apply) for kind, apply in SIGNAL_HANDLERS.items()},
        bus=bus,
    )


def build_engine(store: RedisContextStore, bus: FlowBusAsync) -> ContextEngineService:
    async def publish(channel: str, kind: str, payload: Dict[str, Any]) -> None:
        await bus.publish(channel, BaseEnvelope(kind=kind, source=_source(), payload=payload))

    predictor = StatePredictorService(
        model_path=settings.sequence_model_path,
        cache_ttl_sec=float(settings.prediction_cache_ttl_sec),
    )
    return ContextEngineService(
        store=store,
        classifier=ActivityClassifier(model_path=settings.activity_model_path),
        aggregator=ContextAggregator(),
        predictor=predictor,
        publisher=publish,
        freshness_sec=float(settings.freshness_window_sec),
        changes_channel=settings.channel_context_changes,
        predictions_channel=settings.channel_context_predictions,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    catalog = ChannelCatalogEnforcer(enforce=settings.flowstate_bus_enforce_catalog)

    # 1) Store (fatal if unreachable)
    redis = Redis.from_url(settings.store_redis_url, decode_responses=False)
    store = RedisContextStore(
        redis=redis,
        key_prefix=settings.store_key_prefix,
        event_retention=timedelta(days=settings.event_retention_days),
        snapshot_ttl=timedelta(seconds=settings.snapshot_ttl_sec),
        max_patterns=settings.max_patterns_per_user,
    )
    await store.ping()
    logger.info(f"Context store ready url={settings.store_redis_url} prefix={settings.store_key_prefix}")

    # 2) Outbound bus (fatal if unreachable)
    bus = FlowBusAsync(settings.flowstate_bus_url, enabled=settings.flowstate_bus_enabled, catalog=catalog)
    await asyncio.wait_for(bus.connect(), timeout=float(settings.bus_connect_timeout_sec))

    # 3) Engine + best-effort models
    engine = build_engine(store, bus)
    await engine.start(model_timeout_sec=float(settings.model_load_timeout_sec))
    app.state.engine = engine

    # 4) One inbound consumer for all signal channels (fatal if it cannot join)
    hunter = build_hunter(app, catalog)
    consumer: Optional[asyncio.Task] = None
    if settings.flowstate_bus_enabled:
        await hunter.connect()
        consumer = asyncio.create_task(hunter.start_background(), name="context-signal-hunter")
        logger.info(f"Context engine consuming channels={hunter.channels}")

    try:
        yield
    finally:
        if consumer is not None:
            await hunter.stop()
            try:
                await asyncio.wait_for(consumer, timeout=float(settings.shutdown_grace_sec) + 1.0)
            except Exception as e:
                logger.warning(f"Consumer shutdown did not complete cleanly: {e}")
        app.state.engine = None
        try:
            await engine.close()
        except Exception:
            logger.exception("Context store close failed")
        try:
            await bus.close()
        except Exception:
            logger.exception("Bus close failed")


app = FastAPI(title="flowstate-context-engine", lifespan=lifespan)
app.include_router(api_router)
app.add_api_websocket_route("/ws", websocket_endpoint)


@app.get("/health")
async def health() -> Dict[str, Any]:
    engine: Optional[ContextEngineService] = getattr(app.state, "engine", None)
    return {
        "ok": engine is not None,
        "service": settings.service_name,
        "node": settings.node_name,
        "version": settings.service_version,
        "training": engine.training_stats() if engine is not None else None,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)
