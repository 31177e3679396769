from __future__ import annotations

"""Pattern mining over a user's context history.

Everything here is a pure function of a list of `ContextEvent`s; results are
plain JSON-ready dicts with camelCase keys so they can be persisted or served
as-is.
"""

from collections import Counter, defaultdict
from datetime import datetime
from typing import Any, Dict, List, Sequence

from flowstate.schemas.context import ACTIVITY_TYPES, ContextEvent, WorkContext

ACTIVITY_PRODUCTIVITY: Dict[str, float] = {
    "coding": 0.9,
    "reviewing": 0.7,
    "planning": 0.6,
    "debugging": 0.8,
    "meeting": 0.4,
}
COMMON_TRANSITION_MIN_PROBABILITY = 0.3
FREQUENT_TRANSITION_MIN_COUNT = 2
DISRUPTIVE_FOCUS_DROP = -20
TOP_N = 3


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _ordered(events: Sequence[ContextEvent]) -> List[ContextEvent]:
    return sorted(events, key=lambda e: e.timestamp)


def _local_hour(ts: datetime) -> int:
    return ts.astimezone().hour


def productivity_score(context: WorkContext) -> float:
    score = ACTIVITY_PRODUCTIVITY.get(context.activity_type, 0.0) * 40
    score += context.focus_level * 0.4
    if context.project_context.active_files:
        score += 10
    if context.project_context.recent_commits:
        score += 10
    return min(100.0, score)


def transition_counts(events: Sequence[ContextEvent]) -> Dict[str, Dict[str, int]]:
    counts: Dict[str, Counter] = defaultdict(Counter)
    for prev, curr in zip(events, events[1:]):
        counts[prev.context.activity_type][curr.context.activity_type] += 1
    return {src: dict(dst) for src, dst in counts.items()}


def analyze_transitions(events: Sequence[ContextEvent]) -> Dict[str, Any]:
    counts = transition_counts(events)
    probabilities: Dict[str, Dict[str, float]] = {}
    for src, targets in counts.items():
        total = sum(targets.values())
        probabilities[src] = {dst: n / total for dst, n in targets.items()}

    common = []
    for src, targets in probabilities.items():
        dst, p = max(targets.items(), key=lambda kv: kv[1])
        if p > COMMON_TRANSITION_MIN_PROBABILITY:
            common.append({"from": src, "to": dst, "probability": p})
    common.sort(key=lambda t: t["probability"], reverse=True)

    return {"transitions": counts, "probabilities": probabilities, "mostCommonTransitions": common}


def analyze_focus(events: Sequence[ContextEvent]) -> Dict[str, Any]:
    by_hour: Dict[int, List[float]] = defaultdict(list)
    by_activity: Dict[str, List[float]] = defaultdict(list)
    for e in events:
        by_hour[_local_hour(e.timestamp)].append(e.context.focus_level)
        by_activity[e.context.activity_type].append(e.context.focus_level)

    hourly = [{"hour": h, "avgFocus": _mean(levels)} for h, levels in sorted(by_hour.items())]
    peak = [h["hour"] for h in sorted(hourly, key=lambda h: h["avgFocus"], reverse=True)[:TOP_N]]
    return {
        "avgHourlyFocus": hourly,
        "peakFocusHours": peak,
        "overallAvgFocus": _mean([e.context.focus_level for e in events]),
        "focusByActivity": {a: _mean(levels) for a, levels in by_activity.items()},
    }


def analyze_collaboration(events: Sequence[ContextEvent]) -> Dict[str, Any]:
    collaborative = [e for e in events if e.context.collaboration_state.active_collaborators]
    by_hour = Counter(_local_hour(e.timestamp) for e in collaborative)
    return {
        "collaborationRatio": len(collaborative) / len(events) if events else 0.0,
        "collaborationByHour": dict(sorted(by_hour.items())),
        "avgCollaborators": sum(len(e.context.collaboration_state.active_collaborators) for e in collaborative)
        / max(1, len(collaborative)),
        "peakCollaborationHours": [h for h, _ in by_hour.most_common(TOP_N)],
    }


def analyze_productivity(events: Sequence[ContextEvent]) -> Dict[str, Any]:
    by_hour: Dict[int, List[float]] = defaultdict(list)
    scores = []
    for e in events:
        score = productivity_score(e.context)
        scores.append(score)
        by_hour[_local_hour(e.timestamp)].append(score)

    hourly = [{"hour": h, "avgScore": _mean(s)} for h, s in sorted(by_hour.items())]
    peak = [h["hour"] for h in sorted(hourly, key=lambda h: h["avgScore"], reverse=True)[:TOP_N]]
    return {
        "avgHourlyProductivity": hourly,
        "peakProductivityHours": peak,
        "overallProductivity": _mean(scores),
    }


def analyze_workflow(events: Sequence[ContextEvent]) -> Dict[str, Any]:
    switches = []
    for prev, curr in zip(events, events[1:]):
        if prev.context.activity_type == curr.context.activity_type:
            continue
        switches.append(
            {
                "from": prev.context.activity_type,
                "to": curr.context.activity_type,
                "durationMs": (curr.timestamp - prev.timestamp).total_seconds() * 1000.0,
                "focusChange": curr.context.focus_level - prev.context.focus_level,
            }
        )

    disruptive = sorted(
        (s for s in switches if s["focusChange"] < DISRUPTIVE_FOCUS_DROP),
        key=lambda s: s["focusChange"],
    )[:5]
    return {
        "contextSwitchFrequency": len(switches) / max(1, len(events)),
        "avgSwitchTime": _mean([s["durationMs"] for s in switches]),
        "avgFocusImpact": _mean([abs(s["focusChange"]) for s in switches]),
        "mostDisruptiveSwitches": disruptive,
    }


def simple_patterns(events: Sequence[ContextEvent]) -> List[Dict[str, Any]]:
    """Dominant activity per hour plus transitions seen more than twice."""
    patterns: List[Dict[str, Any]] = []

    hourly: Dict[int, Counter] = defaultdict(Counter)
    for e in events:
        hourly[_local_hour(e.timestamp)][e.context.activity_type] += 1
    for hour, activities in sorted(hourly.items()):
        activity, frequency = activities.most_common(1)[0]
        patterns.append({"type": "time_pattern", "hour": hour, "activity": activity, "frequency": frequency})

    for src, targets in transition_counts(events).items():
        dst, n = max(targets.items(), key=lambda kv: kv[1])
        if n > FREQUENT_TRANSITION_MIN_COUNT:
            patterns.append({"type": "transition_pattern", "from": src, "to": dst, "frequency": n})
    return patterns


def analyze_patterns(events: Sequence[ContextEvent]) -> Dict[str, Any]:
    ordered = _ordered(events)
    return {
        "patterns": simple_patterns(ordered),
        "contextTransitions": analyze_transitions(ordered),
        "focusPatterns": analyze_focus(ordered),
        "collaborationPatterns": analyze_collaboration(ordered),
        "productivityCycles": analyze_productivity(ordered),
        "workflowEfficiency": analyze_workflow(ordered),
    }


def compute_insights(events: Sequence[ContextEvent], *, days: int) -> Dict[str, Any]:
    """Aggregate stats served by the insights endpoint."""
    total = len(events)
    counts = Counter(e.context.activity_type for e in events)
    distribution = {a: (counts.get(a, 0) / total * 100.0 if total else 0.0) for a in ACTIVITY_TYPES}

    by_hour: Dict[int, List[float]] = defaultdict(list)
    for e in events:
        by_hour[_local_hour(e.timestamp)].append(productivity_score(e.context))
    ranked = sorted(by_hour.items(), key=lambda kv: _mean(kv[1]), reverse=True)

    collaborative = sum(1 for e in events if e.context.collaboration_state.active_collaborators)
    return {
        "days": days,
        "totalEvents": total,
        "activityDistribution": distribution,
        "averageFocus": _mean([e.context.focus_level for e in events]),
        "productiveHours": [hour for hour, _ in ranked[:TOP_N]],
        "collaborationFrequency": collaborative / total * 100.0 if total else 0.0,
    }
