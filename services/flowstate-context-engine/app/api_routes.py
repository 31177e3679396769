from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from flowstate.context.engine import ContextEngineService
from flowstate.schemas.context import ActivityFeedback, ContextAggregatorInput, ContextUpdate

logger = logging.getLogger("context-engine.api")

router = APIRouter()

INSIGHTS_MIN_DAYS = 1
INSIGHTS_MAX_DAYS = 30


def get_engine(request: Request) -> ContextEngineService:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="context_engine_not_ready")
    return engine


def _field_errors(exc: ValidationError) -> List[Dict[str, Any]]:
    return [{"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]} for err in exc.errors()]


def _aware(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is not None and ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


async def _guard(what: str, user_id: str, coro):
    """Await `coro`, mapping validation errors to 422 and anything else to a generic 500."""
    try:
        return await coro
    except HTTPException:
        raise
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=_field_errors(exc))
    except Exception:
        logger.exception("%s failed for user %s", what, user_id)
        raise HTTPException(status_code=500, detail="internal_error")


@router.get("/context/{user_id}")
async def get_context(user_id: str, engine: ContextEngineService = Depends(get_engine)) -> JSONResponse:
    context = await _guard("get_context", user_id, engine.get_current_context(user_id))
    return JSONResponse(context.to_wire())


@router.put("/context/{user_id}")
async def put_context(
    user_id: str,
    update: ContextUpdate,
    engine: ContextEngineService = Depends(get_engine),
) -> JSONResponse:
    context = await _guard("update_context", user_id, engine.update_context(user_id, update, source="api"))
    return JSONResponse(context.to_wire())


@router.get("/context/{user_id}/history")
async def get_history(
    user_id: str,
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    engine: ContextEngineService = Depends(get_engine),
) -> JSONResponse:
    start, end = _aware(start_date), _aware(end_date)
    if start is not None and end is not None and start > end:
        raise HTTPException(status_code=422, detail="startDate must not be after endDate")
    events = await _guard("get_history", user_id, engine.get_context_history(user_id, start, end, limit=limit))
    return JSONResponse([e.to_wire() for e in events])


@router.post("/context/{user_id}/predictions")
async def post_predictions(user_id: str, engine: ContextEngineService = Depends(get_engine)) -> JSONResponse:
    predictions = await _guard("predict", user_id, engine.predict_next_actions(user_id))
    return JSONResponse([p.to_wire() for p in predictions])


@router.get("/context/{user_id}/insights")
async def get_insights(
    user_id: str,
    days: int = Query(7, ge=INSIGHTS_MIN_DAYS, le=INSIGHTS_MAX_DAYS),
    engine: ContextEngineService = Depends(get_engine),
) -> JSONResponse:
    insights = await _guard("insights", user_id, engine.get_insights(user_id, days))
    return JSONResponse(insights)


@router.post("/context/{user_id}/signals")
async def post_signals(
    user_id: str,
    inputs: ContextAggregatorInput = Body(...),
    engine: ContextEngineService = Depends(get_engine),
) -> JSONResponse:
    context = await _guard("ingest_signals", user_id, engine.ingest_signals(user_id, inputs))
    return JSONResponse(context.to_wire())


@router.post("/context/{user_id}/feedback")
async def post_feedback(
    user_id: str,
    feedback: ActivityFeedback,
    engine: ContextEngineService = Depends(get_engine),
) -> Dict[str, Any]:
    matched = await _guard("feedback", user_id, engine.record_activity_feedback(user_id, feedback))
    return {"matched": matched, "training": engine.training_stats()}


@router.get("/training/stats")
async def training_stats(engine: ContextEngineService = Depends(get_engine)) -> Dict[str, Any]:
    return engine.training_stats()
