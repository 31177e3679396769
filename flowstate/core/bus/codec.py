# flowstate/core/bus/codec.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import orjson
from pydantic import BaseModel, ValidationError

from .bus_schemas import ENVELOPE_SCHEMA, ENVELOPE_VERSION, BaseEnvelope
from .contracts import CHANNELS, KINDS

# Kind for a bare producer message that arrived on a channel with no signal kind.
LEGACY_KIND = "legacy.message"

DEFAULT_CHANNEL_KINDS: Dict[str, str] = {
    CHANNELS.ide_activity: KINDS.ide_activity,
    CHANNELS.git_events: KINDS.git_event,
    CHANNELS.calendar_events: KINDS.calendar_event,
    CHANNELS.biometric_data: KINDS.biometric_data,
}


@dataclass(frozen=True)
class DecodeResult:
    envelope: Optional[BaseEnvelope]
    raw: Dict[str, Any]
    ok: bool
    error: Optional[str] = None


def _channel_name(channel: Any) -> Optional[str]:
    if isinstance(channel, (bytes, bytearray)):
        return channel.decode("utf-8", "ignore")
    return channel


class FlowCodec:
    """
    Bytes <-> BaseEnvelope for the context bus.

    Signal producers (IDE plugins, git hooks, calendar sync, wearables) publish
    bare `{userId, ..., timestamp}` dicts. The codec wraps them into envelopes
    whose kind comes from the channel they arrived on, so consumers route on
    `envelope.kind` only.
    """

    def __init__(self, *, channel_kinds: Optional[Mapping[str, str]] = None):
        self.channel_kinds: Dict[str, str] = dict(DEFAULT_CHANNEL_KINDS if channel_kinds is None else channel_kinds)

    def encode(self, obj: BaseModel | Dict[str, Any]) -> bytes:
        if isinstance(obj, BaseModel):
            # by_alias keeps `schema_id` on the wire as `schema`
            return obj.model_dump_json(by_alias=True).encode("utf-8")
        return orjson.dumps(obj, default=str)

    def decode(self, data: bytes | str, *, channel: Any = None) -> DecodeResult:
        try:
            raw = orjson.loads(data)
        except orjson.JSONDecodeError as e:
            return DecodeResult(envelope=None, raw={}, ok=False, error=f"invalid_json: {e}")

        if not isinstance(raw, dict):
            return DecodeResult(envelope=None, raw={}, ok=False, error="not_an_object")

        if raw.get("schema") != ENVELOPE_SCHEMA:
            raw = self.wrap_signal(raw, channel=_channel_name(channel))

        try:
            return DecodeResult(envelope=BaseEnvelope.model_validate(raw), raw=raw, ok=True)
        except ValidationError as e:
            return DecodeResult(envelope=None, raw=raw, ok=False, error=f"envelope_validation_failed: {e.error_count()} errors")

    def wrap_signal(self, message: Dict[str, Any], *, channel: Optional[str] = None) -> Dict[str, Any]:
        kind = message.get("kind") or self.channel_kinds.get(channel or "", LEGACY_KIND)
        producer = message.get("source")
        return {
            "schema": ENVELOPE_SCHEMA,
            "schema_version": ENVELOPE_VERSION,
            "kind": kind,
            "source": {"name": producer if isinstance(producer, str) and producer else "producer"},
            "payload": message,
        }
