# services/flowstate-context-engine/app/websocket_handler.py
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from flowstate.context.engine import ContextEngineService
from flowstate.context.subscriptions import Subscription
from flowstate.schemas.context import ContextEvent, utcnow

logger = logging.getLogger("context-engine.ws")


@dataclass
class _Session:
    user_id: Optional[str] = None
    subscriptions: Dict[str, Subscription] = field(default_factory=dict)

    def close(self) -> None:
        for sub in self.subscriptions.values():
            sub.unsubscribe()
        self.subscriptions.clear()


def _now() -> str:
    return utcnow().isoformat()


def _error(message: str) -> Dict[str, Any]:
    return {"type": "error", "message": message, "timestamp": _now()}


async def drain_queue(websocket: WebSocket, queue: asyncio.Queue) -> None:
    """Single writer for the socket; replies and pushed changes go through `queue`."""
    try:
        while websocket.client_state.name == "CONNECTED":
            msg = await queue.get()
            await websocket.send_json(msg)
            queue.task_done()
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.error(f"drain_queue error: {e}", exc_info=True)


def _change_forwarder(queue: asyncio.Queue):
    def forward(event: ContextEvent) -> None:
        queue.put_nowait(
            {
                "type": "context_change",
                "userId": event.user_id,
                "eventType": event.event_type,
                "context": event.context.to_wire(),
                "timestamp": event.timestamp.isoformat(),
            }
        )

    return forward


async def handle_message(
    engine: ContextEngineService,
    session: _Session,
    data: Dict[str, Any],
    outbox: asyncio.Queue,
) -> Dict[str, Any]:
    msg_type = data.get("type")

    if msg_type == "ping":
        return {"type": "pong", "timestamp": _now()}

    user_id = data.get("userId") or session.user_id
    if not user_id:
        return _error("userId required")

    if msg_type == "authenticate":
        session.user_id = user_id
        return {"type": "authenticated", "userId": user_id, "timestamp": _now()}

    if msg_type == "subscribe_context":
        if user_id not in session.subscriptions:
            session.subscriptions[user_id] = engine.subscribe_to_context_changes(user_id, _change_forwarder(outbox))
        return {"type": "subscribed", "userId": user_id, "timestamp": _now()}

    if msg_type == "unsubscribe_context":
        sub = session.subscriptions.pop(user_id, None)
        if sub is not None:
            sub.unsubscribe()
        return {"type": "unsubscribed", "userId": user_id, "timestamp": _now()}

    if msg_type == "get_context":
        context = await engine.get_current_context(user_id)
        return {"type": "context", "userId": user_id, "context": context.to_wire(), "timestamp": _now()}

    if msg_type == "update_context":
        update = data.get("contextUpdate")
        if not isinstance(update, dict):
            return _error("contextUpdate must be an object")
        context = await engine.update_context(user_id, update, source="websocket")
        return {"type": "context_updated", "userId": user_id, "context": context.to_wire(), "timestamp": _now()}

    if msg_type == "get_predictions":
        predictions = await engine.predict_next_actions(user_id)
        return {
            "type": "predictions",
            "userId": user_id,
            "predictions": [p.to_wire() for p in predictions],
            "timestamp": _now(),
        }

    return _error(f"Unknown message type: {msg_type}")


async def websocket_endpoint(websocket: WebSocket):
    engine: Optional[ContextEngineService] = getattr(websocket.app.state, "engine", None)

    await websocket.accept()
    outbox: asyncio.Queue = asyncio.Queue()
    drain_task = asyncio.create_task(drain_queue(websocket, outbox))
    session = _Session()
    await outbox.put({"type": "connected", "timestamp": _now()})

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await outbox.put(_error("Invalid JSON"))
                continue
            if not isinstance(data, dict):
                await outbox.put(_error("Message must be a JSON object"))
                continue
            if engine is None:
                await outbox.put(_error("context_engine_not_ready"))
                continue

            try:
                reply = await handle_message(engine, session, data, outbox)
            except ValidationError as e:
                reply = _error(f"Invalid message: {e.error_count()} validation error(s)")
            except Exception as e:
                logger.error(f"WebSocket message failed type={data.get('type')!r}: {e}", exc_info=True)
                reply = _error("Internal error")
            await outbox.put(reply)
    except WebSocketDisconnect:
        logger.info("WebSocket disconnected user=%s", session.user_id)
    finally:
        session.close()
        drain_task.cancel()
