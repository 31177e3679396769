from __future__ import annotations

"""Multi-source context fusion.

`ContextAggregator.aggregate` folds a sparse bag of signal groups into one
`WorkContext`:

  - activity type: weighted-candidate selection across sources (the calendar
    is authoritative while a meeting is in progress)
  - focus level: weighted mean of per-source focus estimates
  - project / collaboration / environment: additive merges onto the current
    context, with clock-derived environment fields always recomputed
  - confidence: averaged source coverage plus history and consistency bonuses

The aggregator keeps a short per-user history of its own outputs; it never
touches the engine's cache or the store.
"""

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from flowstate.schemas.context import (
    ActivityClassificationResult,
    CollaborationState,
    CommitInfo,
    ContextAggregatorInput,
    ContextEvent,
    EnvironmentData,
    EnvironmentFactors,
    IdeActivity,
    ProjectInfo,
    WorkContext,
    clamp,
)

from .signals import is_code_file, is_markdown
from .timeutil import Clock, day_index, environment_at, local_now

logger = logging.getLogger("flowstate.context.aggregator")

# Per-source aggregation weights
AGGREGATION_WEIGHTS: Dict[str, float] = {
    "ide_activity": 0.4,
    "git_events": 0.2,
    "calendar_data": 0.3,
    "biometric_data": 0.1,
    "environment_data": 0.05,
}
HISTORY_WEIGHT = 0.3
CONTINUITY_CONFIDENCE = 0.2

# Raw candidate confidences
CALENDAR_MEETING_CONFIDENCE = 0.95
MEETING_CONFIDENCE_FLOOR = 0.9
HISTORY_OVERALL_CONFIDENCE = 0.4
HISTORY_DEFAULT_CONFIDENCE = 0.3
HISTORY_WINDOW = 10

IDE_CODING_BASE = 0.7
IDE_CODING_MAX_BOOST = 0.2
IDE_CODING_MIN_EDITS = 5
IDE_LONG_VIEW_SEC = 300

# Focus amplifiers, relative to the aggregation weights
BIOMETRIC_FOCUS_AMPLIFIER = 10
IDE_FOCUS_AMPLIFIER = 5
ENVIRONMENT_FOCUS_AMPLIFIER = 8
HISTORY_FOCUS_WEIGHT = 0.2
DEFAULT_FOCUS = 50.0

BASE_CONFIDENCE = 0.3
HISTORY_CONFIDENCE_BONUS = 0.1
HISTORY_BONUS_MIN_EVENTS = 10
CONSISTENCY_CONFIDENCE_BONUS = 0.1
CONSISTENCY_MIN_CONFIDENCE = 0.7
MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 1.0

MAX_HISTORY = 100

DEBUG_KEYWORDS = ("debug", "console.log")
PLANNING_KEYWORDS = frozenset({"plan", "todo", "spec", "requirement", "design"})


@dataclass(frozen=True)
class ActivityCandidate:
    activity: str
    confidence: float
    source: str


@dataclass(frozen=True)
class FocusContribution:
    value: float
    weight: float
    source: str


def _lower_keywords(ide: IdeActivity) -> List[str]:
    return [str(k).lower() for k in ide.keywords]


def analyze_ide_activity(ide: IdeActivity) -> tuple[str, float]:
    keywords = _lower_keywords(ide)
    action = ide.action_type

    if action == "debugging" or any(k in keywords for k in DEBUG_KEYWORDS):
        return "debugging", 0.85

    if action == "reviewing" or (ide.file_type or "").lower() == "diff" or "review" in keywords:
        return "reviewing", 0.8

    if is_markdown(ide.file_type) and any(k in PLANNING_KEYWORDS for k in keywords):
        return "planning", 0.75

    if action == "editing" and ide.number_of_edits > IDE_CODING_MIN_EDITS and is_code_file(ide.file_type):
        if ide.continuous_editing_time > 0:
            boost = ide.continuous_editing_time / 60.0 * 0.01
        else:
            boost = ide.number_of_edits / 50.0
        return "coding", IDE_CODING_BASE + min(IDE_CODING_MAX_BOOST, boost)

    if action == "viewing" and ide.time_spent_in_file > IDE_LONG_VIEW_SEC:
        return "reviewing", 0.6

    return "coding", 0.5


def analyze_git_events(events: Sequence[CommitInfo]) -> tuple[str, float]:
    message = (events[0].message or "").lower()
    if "review" in message or "feedback" in message:
        return "reviewing", 0.7
    if "fix" in message or "debug" in message:
        return "debugging", 0.75
    if "plan" in message or "design" in message:
        return "planning", 0.7
    return "coding", 0.6


def _similar_time(events: Iterable[ContextEvent], now: datetime) -> List[ContextEvent]:
    out = []
    for event in events:
        ts = event.timestamp.astimezone(now.tzinfo)
        if abs(ts.hour - now.hour) <= 1 and day_index(ts) == day_index(now):
            out.append(event)
    return out


def predict_activity_from_history(history: Sequence[ContextEvent], now: datetime) -> tuple[str, float]:
    similar = _similar_time(history[-HISTORY_WINDOW:], now)
    if similar:
        activity, count = Counter(e.context.activity_type for e in similar).most_common(1)[0]
        return activity, count / len(similar)

    overall = Counter(e.context.activity_type for e in history).most_common(1)
    if overall:
        return overall[0][0], HISTORY_OVERALL_CONFIDENCE
    return "coding", HISTORY_DEFAULT_CONFIDENCE


def biometric_focus(bio: Any) -> float:
    if bio.concentration is not None:
        return clamp(bio.concentration, 0.0, 100.0)

    focus = 50.0
    if bio.heart_rate_variability is not None:
        focus += (bio.heart_rate_variability - 50) * 0.5
    if bio.stress_level is not None:
        focus += (50 - bio.stress_level) * 0.6
    if bio.heart_rate is not None:
        deviation = abs(bio.heart_rate - 80)
        focus += max(0.0, (20 - deviation) * 0.5)
    return clamp(focus, 0.0, 100.0)


def ide_focus(ide: IdeActivity) -> float:
    focus = 50.0
    if ide.continuous_editing_time > 0:
        focus += min(30.0, ide.continuous_editing_time / 60.0)
    if ide.interruption_count is not None:
        focus -= min(25.0, ide.interruption_count * 3.0)

    if ide.keystroke_pattern == "steady":
        focus += 15
    elif ide.keystroke_pattern == "irregular":
        focus -= 10

    if ide.number_of_edits > 0 and ide.time_spent_in_file > 0:
        rate = ide.number_of_edits / (ide.time_spent_in_file / 60.0)
        if 2 < rate < 20:
            focus += 10
    return clamp(focus, 0.0, 100.0)


def environment_focus(env: EnvironmentData) -> float:
    focus = 50.0
    focus += 10 if env.working_hours else -5

    if env.location == "office":
        focus += 5
    elif env.location == "home":
        focus -= 3

    if env.network_quality == "poor":
        focus -= 10
    elif env.network_quality == "excellent":
        focus += 5

    if env.device_type == "desktop":
        focus += 5
    elif env.device_type == "mobile":
        focus -= 10
    return clamp(focus, 0.0, 100.0)


def predict_focus_from_history(history: Sequence[ContextEvent], now: datetime) -> float:
    similar = _similar_time(history, now)
    pool = similar or list(history)
    if not pool:
        return DEFAULT_FOCUS
    return sum(e.context.focus_level for e in pool) / len(pool) or DEFAULT_FOCUS


class ContextAggregator:
    def __init__(self, *, clock: Clock = local_now, max_history: int = MAX_HISTORY) -> None:
        self.clock = clock
        self.max_history = max_history
        self._history: Dict[str, List[ContextEvent]] = defaultdict(list)

    def history(self, user_id: str) -> List[ContextEvent]:
        return list(self._history.get(user_id, ()))

    def aggregate(
        self,
        user_id: str,
        inputs: ContextAggregatorInput | Dict[str, Any] | None,
        current_context: Optional[WorkContext] = None,
        user_history: Optional[Sequence[ContextEvent]] = None,
        classification: Optional[ActivityClassificationResult] = None,
    ) -> WorkContext:
        """
        When `classification` is given it stands in for the IDE reading, so a
        learned classifier strategy decides the IDE candidate.
        """
        if inputs is None:
            inputs = ContextAggregatorInput()
        elif not isinstance(inputs, ContextAggregatorInput):
            inputs = ContextAggregatorInput.model_validate(inputs)

        history = list(user_history) if user_history is not None else self.history(user_id)
        now = self.clock()

        activity = self.resolve_activity(inputs, current_context, history, now, classification)
        confidence = self.overall_confidence(inputs, current_context, history, classification)
        if inputs.calendar_data is not None and inputs.calendar_data.in_meeting:
            confidence = max(confidence, MEETING_CONFIDENCE_FLOOR)

        context = WorkContext(
            activity_type=activity,
            project_context=self.merge_project(inputs, current_context),
            focus_level=self.resolve_focus(inputs, current_context, history, now),
            collaboration_state=self.merge_collaboration(inputs, current_context),
            environment_factors=self.merge_environment(inputs, current_context, now),
            timestamp=now,
            confidence=confidence,
        )
        self._remember(user_id, context, now)
        return context

    # ── activity ────────────────────────────────────────────

    @staticmethod
    def ide_reading(
        inputs: ContextAggregatorInput,
        classification: Optional[ActivityClassificationResult] = None,
    ) -> Optional[tuple[str, float]]:
        if classification is not None:
            return classification.activity_type, classification.confidence
        if inputs.ide_activity is not None:
            return analyze_ide_activity(inputs.ide_activity)
        return None

    def activity_candidates(
        self,
        inputs: ContextAggregatorInput,
        current_context: Optional[WorkContext],
        history: Sequence[ContextEvent],
        now: datetime,
        classification: Optional[ActivityClassificationResult] = None,
    ) -> List[ActivityCandidate]:
        candidates: List[ActivityCandidate] = []

        if inputs.calendar_data is not None and inputs.calendar_data.in_meeting:
            candidates.append(
                ActivityCandidate(
                    "meeting",
                    CALENDAR_MEETING_CONFIDENCE * AGGREGATION_WEIGHTS["calendar_data"],
                    "calendar",
                )
            )

        ide = self.ide_reading(inputs, classification)
        if ide is not None:
            activity, raw = ide
            candidates.append(ActivityCandidate(activity, raw * AGGREGATION_WEIGHTS["ide_activity"], "ide"))

        if inputs.git_events:
            activity, raw = analyze_git_events(inputs.git_events)
            candidates.append(ActivityCandidate(activity, raw * AGGREGATION_WEIGHTS["git_events"], "git"))

        if history:
            activity, raw = predict_activity_from_history(history, now)
            candidates.append(ActivityCandidate(activity, raw * HISTORY_WEIGHT, "history"))

        if current_context is not None:
            candidates.append(ActivityCandidate(current_context.activity_type, CONTINUITY_CONFIDENCE, "continuity"))

        return candidates

    def resolve_activity(
        self,
        inputs: ContextAggregatorInput,
        current_context: Optional[WorkContext],
        history: Sequence[ContextEvent],
        now: datetime,
        classification: Optional[ActivityClassificationResult] = None,
    ) -> str:
        # A meeting in progress overrides every other source.
        if inputs.calendar_data is not None and inputs.calendar_data.in_meeting:
            return "meeting"

        candidates = self.activity_candidates(inputs, current_context, history, now, classification)
        if not candidates:
            return "coding"

        best = candidates[0]
        for candidate in candidates[1:]:
            if candidate.confidence > best.confidence:
                best = candidate
        logger.debug("Selected activity %s (%.3f from %s)", best.activity, best.confidence, best.source)
        return best.activity

    # ── focus ───────────────────────────────────────────────

    def focus_contributions(
        self,
        inputs: ContextAggregatorInput,
        history: Sequence[ContextEvent],
        now: datetime,
    ) -> List[FocusContribution]:
        out: List[FocusContribution] = []
        if inputs.biometric_data is not None:
            out.append(
                FocusContribution(
                    biometric_focus(inputs.biometric_data),
                    AGGREGATION_WEIGHTS["biometric_data"] * BIOMETRIC_FOCUS_AMPLIFIER,
                    "biometric",
                )
            )
        if inputs.ide_activity is not None:
            out.append(
                FocusContribution(
                    ide_focus(inputs.ide_activity),
                    AGGREGATION_WEIGHTS["ide_activity"] * IDE_FOCUS_AMPLIFIER,
                    "ide",
                )
            )
        if inputs.environment_data is not None:
            out.append(
                FocusContribution(
                    environment_focus(inputs.environment_data),
                    AGGREGATION_WEIGHTS["environment_data"] * ENVIRONMENT_FOCUS_AMPLIFIER,
                    "environment",
                )
            )
        if history:
            out.append(FocusContribution(predict_focus_from_history(history, now), HISTORY_FOCUS_WEIGHT, "history"))
        return out

    def resolve_focus(
        self,
        inputs: ContextAggregatorInput,
        current_context: Optional[WorkContext],
        history: Sequence[ContextEvent],
        now: datetime,
    ) -> float:
        contributions = self.focus_contributions(inputs, history, now)
        total = sum(c.weight for c in contributions)
        if not contributions or total <= 0:
            focus = current_context.focus_level if current_context is not None else DEFAULT_FOCUS
        else:
            focus = sum(c.value * c.weight for c in contributions) / total
        return clamp(focus, 0.0, 100.0, default=DEFAULT_FOCUS)

    # ── merges ──────────────────────────────────────────────

    def merge_project(self, inputs: ContextAggregatorInput, current_context: Optional[WorkContext]) -> ProjectInfo:
        base = current_context.project_context if current_context is not None else ProjectInfo()
        project = base.model_copy(deep=True)

        ide = inputs.ide_activity
        if ide is not None:
            if ide.project_id:
                project.project_id = ide.project_id
            if ide.project_name:
                project.name = ide.project_name
            if ide.repository:
                project.repository = ide.repository
            if ide.branch:
                project.current_branch = ide.branch
            if ide.active_file and ide.active_file not in project.active_files:
                project.active_files = [ide.active_file] + project.active_files

        if inputs.git_events:
            known = {c.hash for c in project.recent_commits}
            fresh: List[CommitInfo] = []
            for event in inputs.git_events:
                if event.hash in known:
                    continue
                known.add(event.hash)
                fresh.append(event.as_commit())
            project.recent_commits = fresh + project.recent_commits
        return project

    def merge_collaboration(
        self, inputs: ContextAggregatorInput, current_context: Optional[WorkContext]
    ) -> CollaborationState:
        base = current_context.collaboration_state if current_context is not None else CollaborationState()
        collab = base.model_copy(deep=True)

        calendar = inputs.calendar_data
        if calendar is not None:
            if calendar.in_meeting:
                collab.meeting_status = "in-meeting"
                if calendar.meeting_participants is not None:
                    collab.active_collaborators = list(calendar.meeting_participants)
            else:
                collab.meeting_status = "available"

        if inputs.ide_activity is not None and inputs.ide_activity.collaborators:
            merged = list(collab.active_collaborators)
            for person in inputs.ide_activity.collaborators:
                if person not in merged:
                    merged.append(person)
            collab.active_collaborators = merged
        return collab

    def merge_environment(
        self,
        inputs: ContextAggregatorInput,
        current_context: Optional[WorkContext],
        now: datetime,
    ) -> EnvironmentFactors:
        base = current_context.environment_factors if current_context is not None else None
        env = environment_at(now, base)
        supplied = inputs.environment_data
        if supplied is not None:
            overrides = supplied.model_dump(
                include={"device_type", "network_quality", "location"},
                exclude_none=True,
            )
            if overrides:
                env = env.model_copy(update=overrides)
        return env

    # ── confidence ──────────────────────────────────────────

    def _present_sources(self, inputs: ContextAggregatorInput) -> List[str]:
        present = []
        for source in AGGREGATION_WEIGHTS:
            value = getattr(inputs, source)
            if value:
                present.append(source)
        return present

    def is_consistent(
        self,
        inputs: ContextAggregatorInput,
        current_context: WorkContext,
        classification: Optional[ActivityClassificationResult] = None,
    ) -> bool:
        ide = self.ide_reading(inputs, classification)
        if ide is None:
            return False
        activity, raw = ide
        return activity == current_context.activity_type and raw > CONSISTENCY_MIN_CONFIDENCE

    def overall_confidence(
        self,
        inputs: ContextAggregatorInput,
        current_context: Optional[WorkContext],
        history: Sequence[ContextEvent],
        classification: Optional[ActivityClassificationResult] = None,
    ) -> float:
        confidence = BASE_CONFIDENCE
        factors = 1
        for source in self._present_sources(inputs):
            confidence += AGGREGATION_WEIGHTS[source]
            factors += 1

        if len(history) > HISTORY_BONUS_MIN_EVENTS:
            confidence += HISTORY_CONFIDENCE_BONUS
        if current_context is not None and self.is_consistent(inputs, current_context, classification):
            confidence += CONSISTENCY_CONFIDENCE_BONUS

        return clamp(confidence / factors, MIN_CONFIDENCE, MAX_CONFIDENCE)

    # ── history ─────────────────────────────────────────────

    def _remember(self, user_id: str, context: WorkContext, now: datetime) -> None:
        history = self._history[user_id]
        history.append(
            ContextEvent(
                user_id=user_id,
                event_type="activity_change",
                context=context,
                timestamp=now,
                source="context-aggregator",
            )
        )
        if len(history) > self.max_history:
            del history[: len(history) - self.max_history]
