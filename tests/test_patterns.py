import unittest
from datetime import datetime, timedelta, timezone

from flowstate.context.patterns import (
    analyze_patterns,
    analyze_transitions,
    analyze_workflow,
    compute_insights,
    productivity_score,
    simple_patterns,
)
from flowstate.schemas.context import CollaborationState, ContextEvent, ProjectInfo, WorkContext

T0 = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)


def _event(minute, activity, focus=50.0, collaborators=()):
    ts = T0 + timedelta(minutes=minute)
    return ContextEvent(
        user_id="u",
        context=WorkContext(
            activity_type=activity,
            focus_level=focus,
            collaboration_state=CollaborationState(active_collaborators=list(collaborators)),
            timestamp=ts,
        ),
        timestamp=ts,
    )


class TestPatternAnalysis(unittest.TestCase):
    def test_productivity_score(self):
        plain = WorkContext(activity_type="coding", focus_level=50)
        busy = WorkContext(activity_type="coding", focus_level=100, project_context=ProjectInfo(active_files=["a.py"]))
        self.assertAlmostEqual(productivity_score(plain), 0.9 * 40 + 20)
        self.assertAlmostEqual(productivity_score(busy), min(100.0, 36 + 40 + 10))

    def test_transitions_count_consecutive_pairs(self):
        events = [_event(0, "coding"), _event(5, "debugging"), _event(10, "coding"), _event(15, "debugging")]
        result = analyze_transitions(events)

        self.assertEqual(result["transitions"], {"coding": {"debugging": 2}, "debugging": {"coding": 1}})
        self.assertEqual(result["probabilities"]["coding"]["debugging"], 1.0)
        self.assertIn(result["mostCommonTransitions"][0]["from"], {"coding", "debugging"})

    def test_frequent_transitions_become_patterns(self):
        events = []
        for i in range(4):
            events += [_event(i * 10, "coding"), _event(i * 10 + 5, "reviewing")]
        patterns = simple_patterns(events)

        transition = [p for p in patterns if p["type"] == "transition_pattern"]
        self.assertEqual(
            transition,
            [
                {"type": "transition_pattern", "from": "coding", "to": "reviewing", "frequency": 4},
                {"type": "transition_pattern", "from": "reviewing", "to": "coding", "frequency": 3},
            ],
        )
        self.assertTrue(any(p["type"] == "time_pattern" for p in patterns))

    def test_workflow_flags_disruptive_switches(self):
        events = [_event(0, "coding", 90), _event(10, "meeting", 40), _event(20, "meeting", 45)]
        result = analyze_workflow(events)

        self.assertAlmostEqual(result["contextSwitchFrequency"], 1 / 3)
        self.assertAlmostEqual(result["avgSwitchTime"], 10 * 60 * 1000)
        self.assertEqual(result["mostDisruptiveSwitches"][0]["focusChange"], -50)

    def test_analyze_patterns_sorts_by_time(self):
        events = [_event(10, "debugging"), _event(0, "coding")]
        result = analyze_patterns(events)
        self.assertEqual(result["contextTransitions"]["transitions"], {"coding": {"debugging": 1}})
        self.assertEqual(
            set(result),
            {
                "patterns",
                "contextTransitions",
                "focusPatterns",
                "collaborationPatterns",
                "productivityCycles",
                "workflowEfficiency",
            },
        )

    def test_empty_history_is_safe(self):
        result = analyze_patterns([])
        self.assertEqual(result["patterns"], [])
        self.assertEqual(result["focusPatterns"]["overallAvgFocus"], 0.0)


class TestInsights(unittest.TestCase):
    def test_empty_history(self):
        insights = compute_insights([], days=7)
        self.assertEqual(insights["totalEvents"], 0)
        self.assertEqual(insights["averageFocus"], 0.0)
        self.assertEqual(insights["productiveHours"], [])
        self.assertEqual(set(insights["activityDistribution"].values()), {0.0})

    def test_distribution_focus_and_collaboration(self):
        events = [
            _event(0, "coding", 80),
            _event(1, "coding", 60, collaborators=["ann"]),
            _event(2, "reviewing", 40),
            _event(3, "meeting", 20, collaborators=["ann", "bo"]),
        ]
        insights = compute_insights(events, days=3)

        self.assertEqual(insights["days"], 3)
        self.assertEqual(insights["totalEvents"], 4)
        self.assertAlmostEqual(insights["activityDistribution"]["coding"], 50.0)
        self.assertEqual(insights["activityDistribution"]["planning"], 0.0)
        self.assertAlmostEqual(insights["averageFocus"], 50.0)
        self.assertAlmostEqual(insights["collaborationFrequency"], 50.0)
        self.assertEqual(insights["productiveHours"], [T0.astimezone().hour])


if __name__ == "__main__":
    unittest.main()
