import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

from fastapi import FastAPI
from fastapi.testclient import TestClient

SERVICE_ROOT = Path(__file__).resolve().parents[1]
REPO_ROOT = Path(__file__).resolve().parents[3]
sys.path.insert(0, str(SERVICE_ROOT))
sys.path.insert(1, str(REPO_ROOT))

from app import api_routes  # noqa: E402
from flowstate.context.engine import ContextEngineService  # noqa: E402
from flowstate.context.store import InMemoryContextStore  # noqa: E402


def _build_client(engine=None):
    app = FastAPI()
    app.include_router(api_routes.router)
    app.state.engine = engine if engine is not None else ContextEngineService(store=InMemoryContextStore())
    return TestClient(app)


def test_not_ready_returns_503():
    app = FastAPI()
    app.include_router(api_routes.router)
    app.state.engine = None
    response = TestClient(app).get("/context/u1")

    assert response.status_code == 503
    assert response.json()["detail"] == "context_engine_not_ready"


def test_get_context_defaults():
    with _build_client() as client:
        response = client.get("/context/u1")

    assert response.status_code == 200
    body = response.json()
    assert body["activityType"] == "coding"
    assert body["focusLevel"] == 50
    assert body["confidence"] == 0.5
    assert set(body) >= {"projectContext", "collaborationState", "environmentFactors", "timestamp"}


def test_put_context_merges_partial_update():
    with _build_client() as client:
        client.put("/context/u1", json={"projectContext": {"name": "api"}})
        response = client.put("/context/u1", json={"focusLevel": 120, "projectContext": {"activeFiles": ["a.py"]}})
        read_back = client.get("/context/u1").json()

    assert response.status_code == 200
    assert response.json()["focusLevel"] == 100
    assert read_back["projectContext"]["name"] == "api"
    assert read_back["projectContext"]["activeFiles"] == ["a.py"]


def test_put_context_rejects_unknown_activity():
    with _build_client() as client:
        response = client.put("/context/u1", json={"activityType": "sleeping"})
    assert response.status_code == 422


def test_history_filters_and_limits():
    with _build_client() as client:
        for level in (10, 20, 30):
            client.put("/context/u1", json={"focusLevel": level})
        everything = client.get("/context/u1/history").json()
        latest = client.get("/context/u1/history", params={"limit": 1}).json()
        future = client.get(
            "/context/u1/history",
            params={"startDate": (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()},
        ).json()

    assert [e["context"]["focusLevel"] for e in everything] == [10, 20, 30]
    assert [e["context"]["focusLevel"] for e in latest] == [30]
    assert everything[0]["eventType"] == "focus_change"
    assert everything[0]["userId"] == "u1"
    assert future == []


def test_history_rejects_inverted_range():
    now = datetime.now(timezone.utc)
    with _build_client() as client:
        response = client.get(
            "/context/u1/history",
            params={"startDate": now.isoformat(), "endDate": (now - timedelta(days=1)).isoformat()},
        )
    assert response.status_code == 422


def test_predictions_are_ranked():
    with _build_client() as client:
        client.put("/context/u1", json={"focusLevel": 10})
        response = client.post("/context/u1/predictions")

    assert response.status_code == 200
    predictions = response.json()
    assert 0 < len(predictions) <= 5
    assert "take_break" in [p["actionType"] for p in predictions]
    confidences = [p["confidence"] for p in predictions]
    assert confidences == sorted(confidences, reverse=True)


def test_insights_days_are_bounded():
    with _build_client() as client:
        client.put("/context/u1", json={"activityType": "planning"})
        ok = client.get("/context/u1/insights")
        too_many = client.get("/context/u1/insights", params={"days": 31})
        too_few = client.get("/context/u1/insights", params={"days": 0})

    assert ok.status_code == 200
    assert ok.json()["days"] == 7
    assert ok.json()["totalEvents"] == 1
    assert ok.json()["activityDistribution"]["planning"] == 100.0
    assert too_many.status_code == 422
    assert too_few.status_code == 422


def test_signals_are_aggregated():
    with _build_client() as client:
        response = client.post(
            "/context/u1/signals",
            json={"calendarData": {"inMeeting": True}, "biometricData": {"concentration": 70}},
        )

    assert response.status_code == 200
    body = response.json()
    assert body["activityType"] == "meeting"
    assert body["focusLevel"] == 70
    assert body["collaborationState"]["meetingStatus"] == "in-meeting"


def test_feedback_and_training_stats():
    with _build_client() as client:
        client.post("/context/u1/signals", json={"ideActivity": {"fileType": "py", "numberOfEdits": 3}})
        matched = client.post(
            "/context/u1/feedback",
            json={"timestamp": datetime.now(timezone.utc).isoformat(), "activityType": "debugging"},
        )
        invalid = client.post(
            "/context/u1/feedback",
            json={"timestamp": datetime.now(timezone.utc).isoformat(), "activityType": "napping"},
        )
        stats = client.get("/training/stats")

    assert matched.status_code == 200
    assert matched.json()["matched"] is True
    assert invalid.status_code == 422
    assert stats.json()["labeledSamples"] == 1
    assert stats.json()["labelDistribution"] == {"debugging": 1}


def test_unexpected_errors_map_to_500():
    class _BrokenStore(InMemoryContextStore):
        async def get_snapshot(self, user_id):
            raise ConnectionError("redis down")

    with _build_client(ContextEngineService(store=_BrokenStore())) as client:
        response = client.get("/context/u1")

    assert response.status_code == 500
    assert response.json()["detail"] == "internal_error"
