from datetime import datetime, timedelta, timezone

import pytest

from flowstate.context.aggregator import (
    MEETING_CONFIDENCE_FLOOR,
    ContextAggregator,
    analyze_git_events,
    analyze_ide_activity,
    biometric_focus,
    environment_focus,
    ide_focus,
    predict_activity_from_history,
)
from flowstate.schemas.context import (
    ActivityClassificationResult,
    BiometricData,
    CommitInfo,
    ContextEvent,
    EnvironmentData,
    IdeActivity,
    ProjectInfo,
    WorkContext,
)

# Wednesday, mid-morning
T0 = datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc)


def _aggregator(**kwargs) -> ContextAggregator:
    return ContextAggregator(clock=lambda: T0, **kwargs)


def _history(activity: str, n: int, *, focus: float = 50.0) -> list:
    return [
        ContextEvent(
            user_id="u",
            context=WorkContext(activity_type=activity, focus_level=focus, timestamp=T0 - timedelta(minutes=n - i)),
            timestamp=T0 - timedelta(minutes=n - i),
        )
        for i in range(n)
    ]


# ── per-source analysis ───────────────────────────────────


def test_ide_analysis_rules() -> None:
    assert analyze_ide_activity(IdeActivity(keywords=["console.log"])) == ("debugging", 0.85)
    assert analyze_ide_activity(IdeActivity(file_type="diff")) == ("reviewing", 0.8)
    assert analyze_ide_activity(IdeActivity(file_type="md", keywords=["TODO"])) == ("planning", 0.75)
    assert analyze_ide_activity(IdeActivity(action_type="viewing", time_spent_in_file=400)) == ("reviewing", 0.6)
    assert analyze_ide_activity(IdeActivity(action_type="editing", number_of_edits=3, file_type="py")) == ("coding", 0.5)


def test_ide_coding_boost_from_continuous_editing() -> None:
    activity, confidence = analyze_ide_activity(
        IdeActivity(action_type="editing", number_of_edits=12, file_type="py", continuous_editing_time=600)
    )
    assert activity == "coding"
    assert confidence == pytest.approx(0.8)


def test_ide_coding_boost_is_capped() -> None:
    _, by_edits = analyze_ide_activity(IdeActivity(action_type="editing", number_of_edits=40, file_type="py"))
    _, by_time = analyze_ide_activity(
        IdeActivity(action_type="editing", number_of_edits=40, file_type="py", continuous_editing_time=7200)
    )
    assert by_edits == pytest.approx(0.9)
    assert by_time == pytest.approx(0.9)


def test_git_analysis_uses_newest_message() -> None:
    assert analyze_git_events([CommitInfo(hash="1", message="Address review feedback")]) == ("reviewing", 0.7)
    assert analyze_git_events([CommitInfo(hash="1", message="fix crash")]) == ("debugging", 0.75)
    assert analyze_git_events([CommitInfo(hash="1", message="Design notes")]) == ("planning", 0.7)
    assert analyze_git_events([CommitInfo(hash="1", message="add endpoint")]) == ("coding", 0.6)


def test_focus_estimators() -> None:
    assert biometric_focus(BiometricData(concentration=130)) == 100.0
    assert biometric_focus(BiometricData(heart_rate_variability=70, stress_level=30, heart_rate=80)) == pytest.approx(
        50 + 10 + 12 + 10
    )
    assert ide_focus(IdeActivity(keystroke_pattern="steady", interruption_count=10)) == pytest.approx(40.0)
    assert environment_focus(
        EnvironmentData(working_hours=True, location="office", network_quality="excellent", device_type="desktop")
    ) == pytest.approx(75.0)


# ── aggregation ───────────────────────────────────────────


def test_calendar_meeting_is_authoritative() -> None:
    ctx = _aggregator().aggregate(
        "meeting-user",
        {
            "ideActivity": {"keywords": ["debug"], "fileType": "py"},
            "calendarData": {"inMeeting": True, "meetingParticipants": ["ann", "bo"]},
        },
        current_context=WorkContext(activity_type="coding"),
    )
    assert ctx.activity_type == "meeting"
    assert ctx.confidence >= MEETING_CONFIDENCE_FLOOR
    assert ctx.collaboration_state.meeting_status == "in-meeting"
    assert ctx.collaboration_state.active_collaborators == ["ann", "bo"]


def test_strongest_weighted_candidate_wins() -> None:
    ctx = _aggregator().aggregate(
        "ide-user",
        {"ideActivity": {"keywords": ["debug"], "fileType": "py"}},
        current_context=WorkContext(activity_type="coding"),
    )
    # debugging 0.85 * 0.4 beats continuity 0.2
    assert ctx.activity_type == "debugging"


def test_continuity_beats_weak_git_signal() -> None:
    inputs = {"gitEvents": [{"hash": "a1", "message": "fix crash on save"}]}
    assert _aggregator().aggregate("git-a", inputs).activity_type == "debugging"
    ctx = _aggregator().aggregate("git-b", inputs, current_context=WorkContext(activity_type="planning"))
    assert ctx.activity_type == "planning"


def test_history_at_similar_time_contributes() -> None:
    ctx = _aggregator().aggregate(
        "history-user",
        {},
        current_context=WorkContext(activity_type="coding"),
        user_history=_history("planning", 10),
    )
    # 1.0 * 0.3 = 0.3 > continuity 0.2
    assert ctx.activity_type == "planning"


def test_history_confidence_is_frequency_at_similar_time() -> None:
    history = _history("coding", 1) + _history("planning", 3)
    activity, confidence = predict_activity_from_history(history, T0)
    assert activity == "planning"
    assert confidence == pytest.approx(0.75)

    # Thursday has no similar events, so the overall favourite is used
    assert predict_activity_from_history(history, T0 + timedelta(days=1)) == ("planning", 0.4)


def test_no_sources_keeps_current_focus() -> None:
    ctx = _aggregator().aggregate("quiet", {}, current_context=WorkContext(focus_level=42))
    assert ctx.focus_level == 42
    assert ctx.activity_type == "coding"


def test_focus_is_weighted_mean_of_sources() -> None:
    agg = _aggregator()
    only_bio = agg.aggregate("focus-a", {"biometricData": {"concentration": 80}})
    assert only_bio.focus_level == pytest.approx(80.0)

    mixed = agg.aggregate(
        "focus-b",
        {"biometricData": {"concentration": 80}, "ideActivity": {"keystrokePattern": "steady"}},
    )
    # biometric 80 @ 1.0, ide 65 @ 2.0
    assert mixed.focus_level == pytest.approx(70.0)


def test_confidence_averages_source_weights() -> None:
    agg = _aggregator()
    only_ide = agg.aggregate("conf-a", {"ideActivity": {"fileType": "txt"}})
    assert only_ide.confidence == pytest.approx((0.3 + 0.4) / 2)

    with_history = agg.aggregate("conf-b", {"ideActivity": {"fileType": "txt"}}, user_history=_history("coding", 11))
    assert with_history.confidence == pytest.approx((0.3 + 0.4 + 0.1) / 2)

    nothing = agg.aggregate("conf-c", {})
    assert 0.1 <= nothing.confidence <= 1.0


def test_project_merge_prepends_new_files_and_commits() -> None:
    current = WorkContext(
        project_context=ProjectInfo(
            project_id="p1",
            name="api",
            active_files=["a.py"],
            recent_commits=[CommitInfo(hash="c1", message="init")],
        )
    )
    ctx = _aggregator().aggregate(
        "proj",
        {
            "ideActivity": {"activeFile": "b.py", "branch": "feature/x"},
            "gitEvents": [{"hash": "c2", "message": "add route"}, {"hash": "c1", "message": "init"}],
        },
        current_context=current,
    )
    project = ctx.project_context
    assert project.project_id == "p1"
    assert project.current_branch == "feature/x"
    assert project.active_files == ["b.py", "a.py"]
    assert [c.hash for c in project.recent_commits] == ["c2", "c1"]
    # the current context is not mutated
    assert current.project_context.active_files == ["a.py"]


def test_active_files_are_capped() -> None:
    current = WorkContext(project_context=ProjectInfo(active_files=[f"f{i}.py" for i in range(10)]))
    ctx = _aggregator().aggregate("cap", {"ideActivity": {"activeFile": "new.py"}}, current_context=current)
    assert len(ctx.project_context.active_files) == 10
    assert ctx.project_context.active_files[0] == "new.py"


def test_environment_is_recomputed_with_overrides() -> None:
    ctx = _aggregator().aggregate(
        "env",
        {"environmentData": {"deviceType": "laptop", "location": "office", "workingHours": False}},
    )
    env = ctx.environment_factors
    assert env.time_of_day == "10:30:00"
    assert env.day_of_week == "Wednesday"
    assert env.working_hours is True
    assert env.device_type == "laptop"
    assert env.location == "office"


def test_history_is_bounded() -> None:
    agg = _aggregator(max_history=100)
    for _ in range(105):
        agg.aggregate("busy", {"ideActivity": {"fileType": "py", "numberOfEdits": 1}})
    assert len(agg.history("busy")) == 100
    assert agg.history("someone-else") == []


def test_empty_inputs_without_context_default_to_coding() -> None:
    ctx = _aggregator().aggregate("empty", {})
    assert ctx.activity_type == "coding"
    assert ctx.focus_level == 50
    assert 0.1 <= ctx.confidence <= 1.0


def test_classifier_result_replaces_ide_analysis() -> None:
    inputs = {"ideActivity": {"keywords": ["debug"], "fileType": "py"}}
    verdict = ActivityClassificationResult(activity_type="reviewing", confidence=0.9, timestamp=T0)

    plain = _aggregator().aggregate("clf-a", inputs, current_context=WorkContext(activity_type="coding"))
    classified = _aggregator().aggregate(
        "clf-b",
        inputs,
        current_context=WorkContext(activity_type="reviewing"),
        classification=verdict,
    )

    assert plain.activity_type == "debugging"
    assert classified.activity_type == "reviewing"
    # ide 0.4 + consistency bonus 0.1 over base + one source
    assert classified.confidence == pytest.approx((0.3 + 0.4 + 0.1) / 2)
