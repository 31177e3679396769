# flowstate/core/bus/bus_schemas.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional
from uuid import UUID, uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

ENVELOPE_SCHEMA = "flowstate.envelope"
ENVELOPE_VERSION = "1.0.0"

# Keys that frame a producer message rather than describe the signal.
SIGNAL_FRAME_KEYS = frozenset({"userId", "user_id", "timestamp", "kind", "source", "correlation_id", "reply_to", "data"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ServiceRef(BaseModel):
    """Producer/consumer identity carried on every envelope."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(..., description="Logical service or producer name (e.g. 'context-engine', 'vscode').")
    node: Optional[str] = None
    version: Optional[str] = None


class ErrorInfo(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: str
    message: str
    stack: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class BaseEnvelope(BaseModel):
    """
    Versioned envelope for everything that crosses the bus.

    Inbound signals arrive as `signal.*` kinds, outbound context traffic as
    `context.*` kinds (see contracts.KINDS). Extra fields are rejected.

    NOTE: `schema_id` carries alias "schema" to avoid shadowing BaseModel.schema.
    """
    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        validate_default=True,
        str_strip_whitespace=True,
        populate_by_name=True,
    )

    schema_id: Literal["flowstate.envelope"] = Field(ENVELOPE_SCHEMA, alias="schema")
    schema_version: str = ENVELOPE_VERSION

    id: UUID = Field(default_factory=uuid4)
    correlation_id: UUID = Field(default_factory=uuid4)

    kind: str = Field(..., description="Message kind (e.g. 'signal.ide.activity.v1', 'context.change.v1').")
    source: ServiceRef
    created_at: datetime = Field(default_factory=utcnow)
    reply_to: Optional[str] = None

    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("created_at")
    @classmethod
    def _ensure_tz(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @property
    def is_signal(self) -> bool:
        return self.kind.startswith("signal.")


class SignalPayload(BaseModel):
    """
    Producer message `{userId, <signal fields>, timestamp}`.

    Producers either nest the signal under `data` or send its fields flat
    beside the framing keys; `body()` returns the signal either way.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    user_id: str = Field(..., min_length=1, validation_alias=AliasChoices("userId", "user_id"))
    timestamp: Optional[datetime] = None
    data: Optional[Dict[str, Any]] = None

    @classmethod
    def from_envelope(cls, env: BaseEnvelope) -> "SignalPayload":
        return cls.model_validate(env.payload)

    def body(self) -> Dict[str, Any]:
        if self.data is not None:
            return dict(self.data)
        return {k: v for k, v in (self.model_extra or {}).items() if k not in SIGNAL_FRAME_KEYS}
