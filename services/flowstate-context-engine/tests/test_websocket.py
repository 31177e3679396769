import sys
from pathlib import Path

from fastapi import FastAPI
from fastapi.testclient import TestClient

SERVICE_ROOT = Path(__file__).resolve().parents[1]
REPO_ROOT = Path(__file__).resolve().parents[3]
sys.path.insert(0, str(SERVICE_ROOT))
sys.path.insert(1, str(REPO_ROOT))

from app.websocket_handler import websocket_endpoint  # noqa: E402
from flowstate.context.engine import ContextEngineService  # noqa: E402
from flowstate.context.store import InMemoryContextStore  # noqa: E402


def _build_client(engine=None, ready=True):
    app = FastAPI()
    app.add_api_websocket_route("/ws", websocket_endpoint)
    if ready:
        app.state.engine = engine if engine is not None else ContextEngineService(store=InMemoryContextStore())
    else:
        app.state.engine = None
    return TestClient(app)


def test_connect_and_ping():
    with _build_client() as client:
        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json()["type"] == "connected"
            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"


def test_user_id_required_until_authenticated():
    with _build_client() as client:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "get_context"})
            error = ws.receive_json()
            assert error["type"] == "error"
            assert "userId" in error["message"]

            ws.send_json({"type": "authenticate", "userId": "u1"})
            authed = ws.receive_json()
            assert (authed["type"], authed["userId"]) == ("authenticated", "u1")

            ws.send_json({"type": "get_context"})
            reply = ws.receive_json()
            assert reply["type"] == "context"
            assert reply["userId"] == "u1"
            assert reply["context"]["activityType"] == "coding"


def test_subscription_pushes_changes():
    with _build_client() as client:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "subscribe_context", "userId": "u1"})
            assert ws.receive_json()["type"] == "subscribed"

            ws.send_json({"type": "update_context", "userId": "u1", "contextUpdate": {"activityType": "debugging"}})
            messages = [ws.receive_json(), ws.receive_json()]
            by_type = {m["type"]: m for m in messages}

            assert set(by_type) == {"context_change", "context_updated"}
            assert by_type["context_change"]["context"]["activityType"] == "debugging"
            assert by_type["context_change"]["eventType"] == "activity_change"
            assert by_type["context_updated"]["context"]["activityType"] == "debugging"

            ws.send_json({"type": "unsubscribe_context", "userId": "u1"})
            assert ws.receive_json()["type"] == "unsubscribed"
            ws.send_json({"type": "update_context", "userId": "u1", "contextUpdate": {"focusLevel": 10}})
            assert ws.receive_json()["type"] == "context_updated"
            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"


def test_predictions_over_socket():
    with _build_client() as client:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "update_context", "userId": "u1", "contextUpdate": {"focusLevel": 10}})
            ws.receive_json()
            ws.send_json({"type": "get_predictions", "userId": "u1"})
            reply = ws.receive_json()

    assert reply["type"] == "predictions"
    assert "take_break" in [p["actionType"] for p in reply["predictions"]]


def test_bad_messages_keep_socket_open():
    with _build_client() as client:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text("{not json")
            assert ws.receive_json()["message"] == "Invalid JSON"

            ws.send_json(["not", "an", "object"])
            assert ws.receive_json()["type"] == "error"

            ws.send_json({"type": "dance", "userId": "u1"})
            assert ws.receive_json()["message"] == "Unknown message type: dance"

            ws.send_json({"type": "update_context", "userId": "u1", "contextUpdate": "focus"})
            assert ws.receive_json()["type"] == "error"

            ws.send_json({"type": "update_context", "userId": "u1", "contextUpdate": {"activityType": "sleeping"}})
            assert ws.receive_json()["message"].startswith("Invalid message")

            ws.send_json({"type": "ping"})
            assert ws.receive_json()["type"] == "pong"


def test_engine_not_ready():
    with _build_client(ready=False) as client:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "get_context", "userId": "u1"})
            assert ws.receive_json()["message"] == "context_engine_not_ready"


def test_service_app_registers_socket_route():
    from app.main import app as service_app

    paths = {getattr(route, "path", None) for route in service_app.routes}
    assert {"/ws", "/health"} <= paths
