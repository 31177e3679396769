from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from flowstate.core.bus.contracts import CHANNELS, KINDS
from flowstate.schemas.context import (
    ActivityFeedback,
    BiometricData,
    CalendarData,
    CommitInfo,
    ContextAggregatorInput,
    ContextEvent,
    ContextEventType,
    ContextUpdate,
    GitEvent,
    PredictedAction,
    WorkContext,
    clamp,
)

from .aggregator import ContextAggregator
from .classifier import ActivityClassifier
from .patterns import compute_insights
from .predictor import StatePredictorService
from .signals import snake_key
from .store import ContextStore
from .subscriptions import ContextCallback, Subscription, SubscriptionRegistry
from .timeutil import Clock, environment_at, local_now

logger = logging.getLogger("flowstate.context.engine")

FRESHNESS_WINDOW_SEC = 300.0
MAX_USER_HISTORY = 100
LEARNING_LOOKBACK = timedelta(days=30)
MIN_TIMESTAMP_STEP = timedelta(microseconds=1)

# (channel, kind, payload) -> publish
ContextPublisher = Callable[[str, str, Dict[str, Any]], Awaitable[None]]

_NESTED_GROUPS = ("project_context", "collaboration_state", "environment_factors")


def default_context(now: datetime) -> WorkContext:
    return WorkContext(
        activity_type="coding",
        focus_level=50,
        environment_factors=environment_at(now),
        timestamp=now,
        confidence=0.5,
    )


def merge_context(current: WorkContext, update: ContextUpdate) -> WorkContext:
    """Apply a partial update. Nested groups merge field by field; lists are replaced."""
    data = current.model_dump()
    for field, value in update.model_dump(exclude_none=True).items():
        if field in _NESTED_GROUPS:
            data[field].update({snake_key(str(k)): v for k, v in value.items()})
        else:
            data[field] = value
    return WorkContext.model_validate(data)


def transition_type(previous: Optional[WorkContext], current: WorkContext) -> ContextEventType:
    if previous is None or previous.activity_type != current.activity_type:
        return "activity_change"
    if previous.focus_level != current.focus_level:
        return "focus_change"
    if previous.collaboration_state != current.collaboration_state:
        return "collaboration_change"
    return "environment_change"


@dataclass
class _CachedContext:
    context: WorkContext
    cached_at: datetime


class ContextEngineService:
    """
    Owns each user's current context and recent transitions.

    Per user: no context -> default context (first read) -> cached context
    (every successful update). Updates are last-write-wins by arrival order;
    nothing serializes two in-flight updates for the same user.
    """

    def __init__(
        self,
        *,
        store: ContextStore,
        classifier: Optional[ActivityClassifier] = None,
        aggregator: Optional[ContextAggregator] = None,
        predictor: Optional[StatePredictorService] = None,
        publisher: Optional[ContextPublisher] = None,
        clock: Clock = local_now,
        freshness_sec: float = FRESHNESS_WINDOW_SEC,
        history_limit: int = MAX_USER_HISTORY,
        changes_channel: str = CHANNELS.context_changes,
        predictions_channel: str = CHANNELS.context_predictions,
    ) -> None:
        self.store = store
        self.clock = clock
        self.classifier = classifier or ActivityClassifier(clock=clock)
        self.aggregator = aggregator or ContextAggregator(clock=clock)
        self.predictor = predictor or StatePredictorService(clock=clock)
        self.publisher = publisher
        self.freshness_sec = float(freshness_sec)
        self.history_limit = int(history_limit)
        self.changes_channel = changes_channel
        self.predictions_channel = predictions_channel

        self.subscriptions = SubscriptionRegistry()
        self._cache: Dict[str, _CachedContext] = {}
        self._history: Dict[str, Deque[ContextEvent]] = defaultdict(lambda: deque(maxlen=self.history_limit))
        self._learned: set[str] = set()

    async def start(self, *, model_timeout_sec: float = 10.0) -> None:
        """Best-effort model loading; a missing or broken model leaves rule-only mode."""
        await asyncio.gather(
            self.classifier.load_model(timeout_sec=model_timeout_sec),
            self.predictor.load_model(timeout_sec=model_timeout_sec),
        )
        logger.info(
            "ContextEngineService started classifier=%s sequence_model=%s",
            self.classifier.strategy_name,
            self.predictor.model_loaded,
        )

    async def close(self) -> None:
        self.subscriptions.clear()
        await self.store.close()

    # ── current context ─────────────────────────────────────

    def cached(self, user_id: str) -> Optional[WorkContext]:
        entry = self._cache.get(user_id)
        return entry.context if entry else None

    def history(self, user_id: str) -> List[ContextEvent]:
        return list(self._history.get(user_id, ()))

    async def get_current_context(self, user_id: str) -> WorkContext:
        now = self.clock()
        entry = self._cache.get(user_id)
        if entry is not None and (now - entry.cached_at).total_seconds() < self.freshness_sec:
            return entry.context

        context = await self._rebuild(user_id, now)
        self._cache[user_id] = _CachedContext(context=context, cached_at=now)
        return context

    async def _rebuild(self, user_id: str, now: datetime) -> WorkContext:
        snapshot = await self.store.get_snapshot(user_id)
        if snapshot is not None:
            return snapshot
        latest = await self.store.latest_event(user_id)
        if latest is not None:
            return latest.context
        logger.debug("No stored context for user %s; using default", user_id)
        return default_context(now)

    async def update_context(
        self,
        user_id: str,
        partial: ContextUpdate | Dict[str, Any] | None,
        *,
        source: str = "context-engine",
    ) -> WorkContext:
        update = partial if isinstance(partial, ContextUpdate) else ContextUpdate.model_validate(partial or {})
        previous = await self.get_current_context(user_id)

        merged = merge_context(previous, update)
        now = self.clock()
        merged.timestamp = max(now, previous.timestamp + MIN_TIMESTAMP_STEP)

        event = ContextEvent(
            user_id=user_id,
            event_type=transition_type(previous, merged),
            context=merged,
            previous_context=previous,
            timestamp=merged.timestamp,
            source=source,
        )
        await self.store.append_event(event)
        await self.store.put_snapshot(user_id, merged)

        self._cache[user_id] = _CachedContext(context=merged, cached_at=now)
        self._history[user_id].append(event)
        self.predictor.record_context(user_id, event)

        await self.subscriptions.notify(event)
        await self._publish(
            self.changes_channel,
            KINDS.context_change,
            {"userId": user_id, "context": merged.to_wire(), "timestamp": merged.timestamp.isoformat()},
        )
        return merged

    async def _publish(self, channel: str, kind: str, payload: Dict[str, Any]) -> None:
        if self.publisher is None:
            return
        try:
            await self.publisher(channel, kind, payload)
        except Exception as exc:
            logger.warning("Publish to %s failed: %s", channel, exc)

    async def get_context_history(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        *,
        limit: Optional[int] = None,
    ) -> List[ContextEvent]:
        return await self.store.events_between(user_id, start, end, limit=limit)

    def subscribe_to_context_changes(self, user_id: str, callback: ContextCallback) -> Subscription:
        return self.subscriptions.subscribe(user_id, callback)

    # ── prediction ──────────────────────────────────────────

    async def learn_from_history(self, user_id: str) -> Dict[str, Any]:
        """Feed the user's stored history to the predictor and persist the mined patterns."""
        now = self.clock()
        events = await self.store.events_between(user_id, now - LEARNING_LOOKBACK, None)
        patterns = await self.predictor.learn_from_historical_data(user_id, events)
        self._learned.add(user_id)
        if events:
            await self.store.append_pattern(
                user_id,
                {"type": "patterns", "createdAt": now.isoformat(), "events": len(events), "patterns": patterns},
            )
        return patterns

    async def predict_next_actions(
        self,
        user_id: str,
        context: Optional[WorkContext] = None,
    ) -> List[PredictedAction]:
        if context is None:
            context = await self.get_current_context(user_id)
        if user_id not in self._learned:
            try:
                await self.learn_from_history(user_id)
            except Exception as exc:
                logger.warning("Could not load history for predictions user=%s: %s", user_id, exc)

        predictions = await self.predictor.predict(context, user_id)
        await self._publish(
            self.predictions_channel,
            KINDS.context_predictions,
            {
                "userId": user_id,
                "predictions": [p.to_wire() for p in predictions],
                "context": context.to_wire(),
                "timestamp": self.clock().isoformat(),
            },
        )
        return predictions

    # ── inbound signals ─────────────────────────────────────

    async def handle_ide_activity(self, user_id: str, activity: Any) -> WorkContext:
        result = self.classifier.classify(activity, source="ide-activity")
        self.classifier.train_in_background()
        return await self.update_context(
            user_id,
            ContextUpdate(activity_type=result.activity_type, confidence=result.confidence),
            source="ide-activity",
        )

    async def handle_git_event(self, user_id: str, event: Any) -> WorkContext:
        commit = GitEvent.model_validate(event).as_commit()
        current = await self.get_current_context(user_id)
        commits: List[CommitInfo] = [commit]
        commits.extend(c for c in current.project_context.recent_commits if c.hash != commit.hash)
        return await self.update_context(
            user_id,
            ContextUpdate(project_context={"recent_commits": [c.model_dump() for c in commits]}),
            source="git-events",
        )

    async def handle_calendar_event(self, user_id: str, data: Any) -> WorkContext:
        calendar = CalendarData.model_validate(data)
        return await self.update_context(
            user_id,
            ContextUpdate(collaboration_state={"meeting_status": calendar.meeting_status}),
            source="calendar-events",
        )

    async def handle_biometric_data(self, user_id: str, data: Any) -> WorkContext:
        bio = BiometricData.model_validate(data)
        if bio.heart_rate_variability is None and bio.stress_level is None:
            logger.debug("Biometric sample without HRV or stress for user %s; ignored", user_id)
            return await self.get_current_context(user_id)
        focus = clamp((bio.heart_rate_variability or 0.0) - (bio.stress_level or 0.0), 0.0, 100.0)
        return await self.update_context(user_id, ContextUpdate(focus_level=focus), source="biometric-data")

    async def ingest_signals(
        self,
        user_id: str,
        inputs: ContextAggregatorInput | Dict[str, Any],
    ) -> WorkContext:
        """Run a sparse signal bag through the aggregator and apply the result."""
        if not isinstance(inputs, ContextAggregatorInput):
            inputs = ContextAggregatorInput.model_validate(inputs)
        classification = None
        if inputs.ide_activity is not None:
            classification = self.classifier.classify(inputs.ide_activity, source="signals")

        current = await self.get_current_context(user_id)
        aggregated = self.aggregator.aggregate(
            user_id,
            inputs,
            current,
            self.history(user_id) or None,
            classification=classification,
        )
        update = ContextUpdate(
            activity_type=aggregated.activity_type,
            project_context=aggregated.project_context.model_dump(),
            focus_level=aggregated.focus_level,
            collaboration_state=aggregated.collaboration_state.model_dump(),
            environment_factors=aggregated.environment_factors.model_dump(),
            confidence=aggregated.confidence,
        )
        return await self.update_context(user_id, update, source="context-aggregator")

    # ── feedback / insights ─────────────────────────────────

    async def record_activity_feedback(self, user_id: str, feedback: ActivityFeedback | Dict[str, Any]) -> bool:
        if not isinstance(feedback, ActivityFeedback):
            feedback = ActivityFeedback.model_validate(feedback)
        matched = self.classifier.add_training_label(feedback.timestamp, feedback.activity_type)
        await self.store.append_pattern(
            user_id,
            {
                "type": "activity_feedback",
                "timestamp": feedback.timestamp.isoformat(),
                "activityType": feedback.activity_type,
                "matched": matched,
            },
        )
        if matched:
            self.classifier.train_in_background()
        return matched

    async def get_insights(self, user_id: str, days: int = 7) -> Dict[str, Any]:
        end = self.clock()
        events = await self.store.events_between(user_id, end - timedelta(days=days), end)
        return compute_insights(events, days=days)

    def training_stats(self) -> Dict[str, Any]:
        stats = self.classifier.training_stats()
        stats["sequenceModelLoaded"] = self.predictor.model_loaded
        return stats
