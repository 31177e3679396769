from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

import numpy as np

from flowstate.schemas.context import ContextEvent, PredictedAction, WorkContext

from .learning import load_model_best_effort, save_model, train_sequence_model
from .patterns import analyze_patterns
from .timeutil import Clock, day_index, local_now

logger = logging.getLogger("flowstate.context.predictor")

MAX_PREDICTIONS = 5
AGREEMENT_BOOST = 1.2

CACHE_TTL_SEC = 300.0
CACHE_BUCKET_SEC = 300
CACHE_MAX_ENTRIES = 1000

SEQUENCE_LENGTH = 10
MIN_SEQUENCE_HISTORY = 10
SEQUENCE_HISTORY_LIMIT = 100
MODEL_MIN_PROBABILITY = 0.3
RETRAIN_MIN_EVENTS = 100
MIN_TRAINING_WINDOWS = 50

LOW_FOCUS = 30
HIGH_FOCUS = 80

ACTIVITY_ENCODING: Dict[str, float] = {
    "coding": 0.2,
    "reviewing": 0.4,
    "planning": 0.6,
    "debugging": 0.8,
    "meeting": 1.0,
}

# Fixed output vocabulary of the sequence model.
ACTION_VOCABULARY: Tuple[str, ...] = (
    "take_break",
    "run_tests",
    "git_commit",
    "provide_feedback",
    "update_documentation",
    "create_tasks",
    "meeting_followup",
    "sync_with_team",
    "complex_task",
    "switch_task",
)

ACTION_DELAY_MIN: Dict[str, int] = {
    "take_break": 2,
    "run_tests": 10,
    "git_commit": 20,
    "provide_feedback": 5,
    "update_documentation": 15,
    "create_tasks": 5,
    "meeting_followup": 30,
    "sync_with_team": 10,
    "complex_task": 1,
    "switch_task": 5,
}
DEFAULT_DELAY_MIN = 10

ACTION_DESCRIPTIONS: Dict[str, str] = {
    "take_break": "Take a short break to restore focus",
    "run_tests": "Run tests to verify recent code changes",
    "git_commit": "Consider committing your changes",
    "provide_feedback": "Provide feedback on the code review",
    "update_documentation": "Document the recent changes",
    "create_tasks": "Create tasks based on current work",
    "meeting_followup": "Create follow-up tasks from meeting",
    "sync_with_team": "Sync progress with team members",
    "complex_task": "Good time to tackle complex tasks",
    "switch_task": "Consider switching to a different task",
}

# Action that usually follows each activity; also the sequence model's training target.
FOLLOW_UP_ACTION: Dict[str, str] = {
    "coding": "run_tests",
    "reviewing": "provide_feedback",
    "debugging": "update_documentation",
    "planning": "create_tasks",
    "meeting": "meeting_followup",
}


Predicate = Callable[[WorkContext, datetime], bool]


@dataclass(frozen=True)
class PredictionRule:
    action_type: str
    description: str
    confidence: float
    delay_min: int
    when: Predicate


def _activity(name: str) -> Predicate:
    return lambda ctx, now: ctx.activity_type == name


def _hours(start: int, end: int, *, working_only: bool) -> Predicate:
    def check(ctx: WorkContext, now: datetime) -> bool:
        if working_only and not ctx.environment_factors.working_hours:
            return False
        return start <= now.hour <= end

    return check


TIME_RULES: Tuple[PredictionRule, ...] = (
    PredictionRule("standup_meeting", "Daily standup meeting likely to start soon", 0.7, 15, _hours(8, 10, working_only=True)),
    PredictionRule("break", "Lunch break recommended", 0.6, 30, _hours(11, 13, working_only=False)),
    PredictionRule("day_wrapup", "Consider wrapping up and planning for tomorrow", 0.8, 60, _hours(16, 17, working_only=True)),
)

ACTIVITY_RULES: Tuple[PredictionRule, ...] = (
    PredictionRule("run_tests", "Run tests to verify recent code changes", 0.8, 10, _activity("coding")),
    PredictionRule(
        "git_commit",
        "Consider committing your changes",
        0.7,
        20,
        lambda ctx, now: ctx.activity_type == "coding" and bool(ctx.project_context.active_files),
    ),
    PredictionRule("provide_feedback", "Provide feedback on the code review", 0.9, 5, _activity("reviewing")),
    PredictionRule("update_documentation", "Document the debugging findings", 0.6, 15, _activity("debugging")),
    PredictionRule("create_tasks", "Create tasks based on planning session", 0.8, 5, _activity("planning")),
    PredictionRule("meeting_followup", "Create follow-up tasks from meeting", 0.7, 30, _activity("meeting")),
)

FOCUS_RULES: Tuple[PredictionRule, ...] = (
    PredictionRule("take_break", "Take a short break to restore focus", 0.9, 2, lambda ctx, now: ctx.focus_level < LOW_FOCUS),
    PredictionRule(
        "switch_task",
        "Switch to a lighter task or administrative work",
        0.7,
        5,
        lambda ctx, now: ctx.focus_level < LOW_FOCUS,
    ),
    PredictionRule(
        "complex_task",
        "Good time to tackle complex or challenging tasks",
        0.8,
        1,
        lambda ctx, now: ctx.focus_level > HIGH_FOCUS,
    ),
)

COLLABORATION_RULES: Tuple[PredictionRule, ...] = (
    PredictionRule(
        "sync_with_team",
        "Sync progress with active collaborators",
        0.7,
        10,
        lambda ctx, now: bool(ctx.collaboration_state.active_collaborators),
    ),
    PredictionRule(
        "offer_help",
        "Consider offering help to team members",
        0.5,
        30,
        lambda ctx, now: ctx.collaboration_state.meeting_status == "available"
        and ctx.environment_factors.working_hours,
    ),
)

RULES: Tuple[PredictionRule, ...] = TIME_RULES + ACTIVITY_RULES + FOCUS_RULES + COLLABORATION_RULES


def next_action_for(context: WorkContext) -> str:
    """Training target: the action a context is most likely to lead to."""
    if context.focus_level < LOW_FOCUS:
        return "take_break"
    if context.focus_level > HIGH_FOCUS:
        return "complex_task"
    return FOLLOW_UP_ACTION.get(context.activity_type, "run_tests")


def context_complexity(context: WorkContext) -> float:
    score = len(context.project_context.active_files) * 0.1
    score += len(context.collaboration_state.active_collaborators) * 0.2
    score += len(context.project_context.recent_commits) * 0.1
    return min(1.0, score)


def context_features(context: WorkContext) -> List[float]:
    ts = context.timestamp.astimezone()
    return [
        ACTIVITY_ENCODING.get(context.activity_type, 0.0),
        context.focus_level / 100.0,
        float(len(context.collaboration_state.active_collaborators)),
        1.0 if context.environment_factors.working_hours else 0.0,
        ts.hour / 24.0,
        day_index(ts) / 7.0,
        context.confidence,
        float(len(context.project_context.active_files)),
        float(len(context.project_context.recent_commits)),
        context_complexity(context),
    ]


def feature_window(history: Sequence[WorkContext], current: WorkContext) -> List[List[float]]:
    """Last SEQUENCE_LENGTH contexts, left-padded with `current`."""
    recent = list(history[-SEQUENCE_LENGTH:])
    while len(recent) < SEQUENCE_LENGTH:
        recent.insert(0, current)
    return [context_features(c) for c in recent]


def training_windows(events: Sequence[ContextEvent]) -> Tuple[List[List[List[float]]], List[str]]:
    ordered = sorted(events, key=lambda e: e.timestamp)
    windows: List[List[List[float]]] = []
    labels: List[str] = []
    for i in range(len(ordered) - SEQUENCE_LENGTH):
        window = ordered[i : i + SEQUENCE_LENGTH]
        windows.append([context_features(e.context) for e in window])
        labels.append(next_action_for(ordered[i + SEQUENCE_LENGTH].context))
    return windows, labels


def combine_predictions(predictions: Sequence[PredictedAction], *, limit: int = MAX_PREDICTIONS) -> List[PredictedAction]:
    """
    Merge candidates that name the same action.

    Each group keeps the first candidate's description, the mean confidence
    boosted by AGREEMENT_BOOST (capped at 1.0) and the earliest timing. The
    result is sorted by confidence, highest first.
    """
    grouped: "OrderedDict[str, List[PredictedAction]]" = OrderedDict()
    for p in predictions:
        grouped.setdefault(p.action_type, []).append(p)

    combined = []
    for group in grouped.values():
        mean = sum(p.confidence for p in group) / len(group)
        combined.append(
            group[0].model_copy(
                update={
                    "confidence": min(1.0, mean * AGREEMENT_BOOST),
                    "suggested_timing": min(p.suggested_timing for p in group),
                }
            )
        )
    combined.sort(key=lambda p: p.confidence, reverse=True)
    return combined[:limit]


SequenceTrainer = Callable[[Sequence[Sequence[Sequence[float]]], Sequence[str]], Tuple[Any, Any]]


@dataclass
class _CacheEntry:
    predictions: List[PredictedAction]
    stored_at: datetime


class StatePredictorService:
    """Ranked next-action predictions from rules plus an optional sequence model."""

    def __init__(
        self,
        *,
        clock: Clock = local_now,
        model: Any = None,
        trainer: Optional[SequenceTrainer] = None,
        model_path: Optional[str | Path] = None,
        cache_ttl_sec: float = CACHE_TTL_SEC,
        cache_max_entries: int = CACHE_MAX_ENTRIES,
    ) -> None:
        self.clock = clock
        self._model = model
        self._trainer: SequenceTrainer = trainer or train_sequence_model
        self.model_path = Path(model_path) if model_path else None
        self.cache_ttl_sec = float(cache_ttl_sec)
        self.cache_max_entries = int(cache_max_entries)
        self._cache: "OrderedDict[tuple, _CacheEntry]" = OrderedDict()
        self._history: Dict[str, Deque[ContextEvent]] = {}
        self._patterns: Dict[str, Dict[str, Any]] = {}
        self._training_task: Optional[asyncio.Task] = None

    @property
    def model_loaded(self) -> bool:
        return self._model is not None

    @property
    def training_task(self) -> Optional[asyncio.Task]:
        return self._training_task

    def use_model(self, model: Any) -> None:
        self._model = model

    async def load_model(self, *, timeout_sec: float = 10.0) -> bool:
        model = await load_model_best_effort(self.model_path, timeout_sec=timeout_sec, label="sequence")
        if model is None:
            return False
        self.use_model(model)
        logger.info("StatePredictorService using sequence model from %s", self.model_path)
        return True

    def patterns_for(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self._patterns.get(user_id)

    def record_context(self, user_id: str, event: ContextEvent) -> None:
        """Append one applied context to the user's sequence history."""
        history = self._history.get(user_id)
        if history is None:
            history = self._history[user_id] = deque(maxlen=SEQUENCE_HISTORY_LIMIT)
        history.append(event)

    def sequence_window(self, user_id: str, context: WorkContext) -> List[List[float]]:
        history = self._history.get(user_id) or ()
        return feature_window([e.context for e in history], context)

    # ── prediction ──────────────────────────────────────────

    def cache_key(self, context: WorkContext, user_id: Optional[str], now: datetime) -> tuple:
        bucket = int(now.timestamp() // CACHE_BUCKET_SEC)
        return (user_id or "anonymous", context.activity_type, round(context.focus_level), bucket)

    async def predict(self, context: WorkContext, user_id: Optional[str] = None) -> List[PredictedAction]:
        try:
            now = self.clock()
            key = self.cache_key(context, user_id, now)
            cached = self._cache.get(key)
            if cached is not None and (now - cached.stored_at).total_seconds() < self.cache_ttl_sec:
                self._cache.move_to_end(key)
                return list(cached.predictions)

            predictions = self._compute(context, user_id, now)
            self._store(key, predictions, now)
            return list(predictions)
        except Exception:
            logger.exception("Failed to predict next actions")
            return []

    def _store(self, key: tuple, predictions: List[PredictedAction], now: datetime) -> None:
        self._cache[key] = _CacheEntry(predictions=predictions, stored_at=now)
        self._cache.move_to_end(key)
        while len(self._cache) > self.cache_max_entries:
            self._cache.popitem(last=False)

    def _compute(self, context: WorkContext, user_id: Optional[str], now: datetime) -> List[PredictedAction]:
        candidates: List[PredictedAction] = []
        if self._model is not None and user_id:
            candidates.extend(self.predict_with_model(context, user_id, now))
        candidates.extend(self.predict_with_rules(context, now))
        return combine_predictions(candidates)

    def predict_with_rules(self, context: WorkContext, now: datetime) -> List[PredictedAction]:
        return [
            PredictedAction(
                action_type=rule.action_type,
                description=rule.description,
                confidence=rule.confidence,
                suggested_timing=now + timedelta(minutes=rule.delay_min),
                context=context,
            )
            for rule in RULES
            if rule.when(context, now)
        ]

    def predict_with_model(self, context: WorkContext, user_id: str, now: datetime) -> List[PredictedAction]:
        if len(self._history.get(user_id) or ()) < MIN_SEQUENCE_HISTORY:
            return []

        window = self.sequence_window(user_id, context)
        rows = np.asarray([window], dtype=float).reshape(1, -1)
        try:
            probabilities = np.asarray(self._model.predict_proba(rows))[0]
            classes = [str(c) for c in self._model.classes_]
        except Exception as exc:
            logger.warning("Sequence model failed (%s); using rule-based predictions only", exc)
            self._model = None
            return []
        finally:
            del rows

        out = []
        for action, p in zip(classes, probabilities):
            if action not in ACTION_VOCABULARY or p <= MODEL_MIN_PROBABILITY:
                continue
            out.append(
                PredictedAction(
                    action_type=action,
                    description=ACTION_DESCRIPTIONS.get(action, "Recommended action"),
                    confidence=float(p),
                    suggested_timing=now + timedelta(minutes=ACTION_DELAY_MIN.get(action, DEFAULT_DELAY_MIN)),
                    context=context,
                )
            )
        out.sort(key=lambda p: p.confidence, reverse=True)
        return out

    # ── learning ────────────────────────────────────────────

    async def learn_from_historical_data(self, user_id: str, events: Sequence[ContextEvent]) -> Dict[str, Any]:
        """
        Keep `events` as the user's sequence history and mine patterns from them.
        With enough events the sequence model is retrained in the background;
        this call never waits for that.
        """
        ordered = sorted(events, key=lambda e: e.timestamp)
        self._history[user_id] = deque(ordered, maxlen=SEQUENCE_HISTORY_LIMIT)
        patterns = analyze_patterns(ordered)
        self._patterns[user_id] = patterns

        if len(ordered) >= RETRAIN_MIN_EVENTS:
            if self._training_task is None or self._training_task.done():
                self._training_task = asyncio.create_task(
                    self._train(user_id, ordered), name=f"sequence-train-{user_id}"
                )
        logger.info("Learned patterns for user %s from %d historical contexts", user_id, len(ordered))
        return patterns

    async def _train(self, user_id: str, events: Sequence[ContextEvent]) -> bool:
        windows, labels = training_windows(events)
        if len(windows) < MIN_TRAINING_WINDOWS:
            logger.warning("Insufficient data for sequence training user=%s windows=%d", user_id, len(windows))
            return False
        try:
            model, report = await asyncio.to_thread(self._trainer, windows, labels)
        except Exception as exc:
            logger.error("Sequence model training failed for user %s: %s", user_id, exc)
            return False

        self._model = model
        logger.info("Sequence model trained user=%s report=%s", user_id, report)
        if self.model_path is not None:
            try:
                await asyncio.to_thread(save_model, model, self.model_path)
            except Exception as exc:
                logger.warning("Failed to save sequence model to %s: %s", self.model_path, exc)
        return True
