import asyncio
import json
from contextlib import asynccontextmanager

import pytest
from pydantic import ValidationError

from flowstate.core.bus.async_service import FlowBusAsync
from flowstate.core.bus.bus_schemas import BaseEnvelope, ServiceRef, SignalPayload
from flowstate.core.bus.bus_service_chassis import ChassisConfig, Hunter
from flowstate.core.bus.codec import LEGACY_KIND, FlowCodec
from flowstate.core.bus.contracts import CHANNELS, KINDS
from flowstate.core.bus.enforce import ChannelCatalogEnforcer


class _RecordingBus(FlowBusAsync):
    def __init__(self) -> None:
        super().__init__("redis://unused", enabled=False)
        self.published = []

    async def publish(self, channel, msg) -> None:
        self.published.append((channel, msg))


class _FeedBus(_RecordingBus):
    """Serves queued pub/sub messages, then idles like a quiet subscription."""

    def __init__(self, messages) -> None:
        super().__init__()
        self.messages = list(messages)
        self.subscribed = ()
        self.closed = False

    @property
    def connected(self) -> bool:
        return True

    @asynccontextmanager
    async def subscribe(self, *channels, patterns=False):
        self.subscribed = channels
        yield None

    async def iter_messages(self, pubsub):
        for msg in self.messages:
            yield msg
        await asyncio.Event().wait()

    async def close(self) -> None:
        self.closed = True


def _cfg() -> ChassisConfig:
    return ChassisConfig(service_name="context-engine", service_version="0.1.0", node_name="test")


def _message(channel: str, body) -> dict:
    return {"channel": channel.encode("utf-8"), "data": json.dumps(body).encode("utf-8")}


# ── codec ─────────────────────────────────────────────────


def test_envelope_round_trip() -> None:
    codec = FlowCodec()
    env = BaseEnvelope(
        kind=KINDS.context_change,
        source=ServiceRef(name="context-engine"),
        payload={"userId": "u", "context": {"activityType": "coding"}},
    )
    raw = json.loads(codec.encode(env))
    assert raw["schema"] == "flowstate.envelope"

    decoded = codec.decode(json.dumps(raw).encode("utf-8"), channel=CHANNELS.ide_activity)
    assert decoded.ok
    # an explicit envelope keeps its own kind whatever channel it came from
    assert decoded.envelope.kind == KINDS.context_change
    assert decoded.envelope.payload["context"]["activityType"] == "coding"


def test_producer_message_takes_its_channel_kind() -> None:
    message = {"userId": "u", "data": {"fileType": "py"}, "timestamp": "2025-01-15T10:30:00Z", "source": "vscode"}
    decoded = FlowCodec().decode(json.dumps(message), channel=CHANNELS.ide_activity.encode("utf-8"))

    assert decoded.ok
    assert decoded.envelope.kind == KINDS.ide_activity
    assert decoded.envelope.is_signal
    assert decoded.envelope.source.name == "vscode"
    assert decoded.envelope.payload == message


def test_renamed_channels_map_through_codec() -> None:
    codec = FlowCodec(channel_kinds={"team-a.git": KINDS.git_event})
    assert codec.decode(b'{"userId": "u", "hash": "c1"}', channel="team-a.git").envelope.kind == KINDS.git_event
    assert codec.decode(b'{"userId": "u"}', channel=CHANNELS.git_events).envelope.kind == LEGACY_KIND


def test_undecodable_payloads_are_reported() -> None:
    codec = FlowCodec()
    bad_json = codec.decode(b"{not json")
    assert bad_json.ok is False
    assert bad_json.envelope is None
    assert bad_json.error.startswith("invalid_json")

    assert codec.decode(b"[1, 2]").error == "not_an_object"

    broken = codec.decode(json.dumps({"schema": "flowstate.envelope", "source": {"name": "x"}}))
    assert broken.ok is False
    assert broken.error.startswith("envelope_validation_failed")


# ── signal payloads ───────────────────────────────────────


def test_signal_payload_nested_data_is_the_body() -> None:
    signal = SignalPayload.model_validate(
        {"userId": "u1", "data": {"fileType": "py", "numberOfEdits": 4}, "timestamp": "2025-01-15T10:30:00Z"}
    )
    assert signal.user_id == "u1"
    assert signal.body() == {"fileType": "py", "numberOfEdits": 4}


def test_signal_payload_flat_message_drops_framing_keys() -> None:
    signal = SignalPayload.model_validate(
        {"userId": "u2", "heartRateVariability": 60, "timestamp": "2025-01-15T10:30:00Z", "source": "watch"}
    )
    assert signal.body() == {"heartRateVariability": 60}


def test_signal_payload_requires_user() -> None:
    with pytest.raises(ValidationError):
        SignalPayload.model_validate({"inMeeting": True})


# ── catalog ───────────────────────────────────────────────


def test_catalog_knows_context_channels() -> None:
    catalog = ChannelCatalogEnforcer(enforce=True)
    for channel in (CHANNELS.ide_activity, CHANNELS.context_changes, CHANNELS.context_predictions):
        catalog.validate(channel)
    assert catalog.retention_for(CHANNELS.context_predictions) == 3600.0
    assert catalog.retention_for("system.health") is None
    with pytest.raises(ValueError):
        catalog.validate("not-a-channel")


def test_wildcard_catalog_entries() -> None:
    catalog = ChannelCatalogEnforcer(catalog={"signals.*": {"retention_sec": 60}})
    assert catalog.retention_for("signals.ide") == 60.0
    with pytest.raises(ValueError):
        ChannelCatalogEnforcer(catalog={"*": {}}).validate("x")


# ── hunter ────────────────────────────────────────────────


def test_hunter_routes_by_kind() -> None:
    seen = []

    async def on_ide(env: BaseEnvelope) -> None:
        seen.append(("ide", env.payload["fileType"]))

    async def on_git(env: BaseEnvelope) -> None:
        seen.append(("git", env.payload["hash"]))

    bus = _RecordingBus()
    hunter = Hunter(
        _cfg(),
        channels=[CHANNELS.ide_activity, CHANNELS.git_events],
        routes={KINDS.ide_activity: on_ide, KINDS.git_event: on_git},
        bus=bus,
    )

    async def run():
        await hunter.dispatch(_message(CHANNELS.git_events, {"userId": "u", "hash": "c1"}))
        await hunter.dispatch(_message(CHANNELS.ide_activity, {"userId": "u", "fileType": "py"}))
        await hunter.dispatch(_message("unrouted", {"userId": "u"}))

    asyncio.run(run())
    assert seen == [("git", "c1"), ("ide", "py")]
    assert bus.published == []


def test_hunter_fallback_handler_takes_unrouted_kinds() -> None:
    seen = []

    async def handler(env: BaseEnvelope) -> None:
        seen.append(env.kind)

    hunter = Hunter(_cfg(), channels=["misc"], handler=handler, bus=_RecordingBus())
    asyncio.run(hunter.dispatch(_message("misc", {"userId": "u"})))
    assert seen == [LEGACY_KIND]


def test_hunter_reports_handler_failures() -> None:
    async def on_git(env: BaseEnvelope) -> None:
        SignalPayload.from_envelope(env)

    bus = _RecordingBus()
    hunter = Hunter(_cfg(), channels=[CHANNELS.git_events], routes={KINDS.git_event: on_git}, bus=bus)

    async def run():
        await hunter.dispatch(_message(CHANNELS.git_events, {"hash": "c1"}))
        await hunter.dispatch({"channel": CHANNELS.git_events, "data": b"garbage"})

    asyncio.run(run())
    assert [channel for channel, _ in bus.published] == ["system.error", "system.error"]
    handled, undecodable = (msg for _, msg in bus.published)
    assert handled.kind == "system.error"
    assert handled.payload["type"] == "ValidationError"
    assert handled.payload["details"] == {"when": "hunter.handle"}
    assert undecodable.payload["details"] == {"when": "hunter.decode"}


def test_hunter_runs_until_stopped() -> None:
    seen = []

    async def on_git(env: BaseEnvelope) -> None:
        seen.append(env.payload["hash"])

    bus = _FeedBus([_message(CHANNELS.git_events, {"userId": "u", "hash": "c1"})])
    hunter = Hunter(_cfg(), channels=[CHANNELS.git_events], routes={KINDS.git_event: on_git}, bus=bus)

    async def run():
        consumer = asyncio.create_task(hunter.start_background())
        for _ in range(100):
            if seen:
                break
            await asyncio.sleep(0.01)
        await hunter.stop()
        await asyncio.wait_for(consumer, timeout=2)

    asyncio.run(run())
    assert seen == ["c1"]
    assert bus.subscribed == (CHANNELS.git_events,)
    assert bus.published[0][0] == "system.health"
    assert bus.closed is True
