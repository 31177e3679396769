from __future__ import annotations

"""Shared schema: work context

Everything the context engine reads from producers, keeps in its cache, persists
and hands to clients. Field names are snake_case in Python and camelCase on the
wire (`activityType`, `focusLevel`, ...); both spellings are accepted on input.

Numeric invariants are enforced by the models themselves:
  - focus_level is clamped to [0, 100]
  - every confidence is clamped to [0, 1]
  - active_files / recent_commits keep at most 10 entries
Models that are mutated in place validate on assignment, so the clamps hold at
every mutation site.
"""

import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, get_args
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


ActivityType = Literal["coding", "reviewing", "planning", "debugging", "meeting"]
MeetingStatus = Literal["in-meeting", "available", "busy"]
ContextEventType = Literal["activity_change", "focus_change", "collaboration_change", "environment_change"]
DeviceType = Literal["desktop", "laptop", "mobile", "tablet"]
NetworkQuality = Literal["poor", "fair", "good", "excellent"]

ACTIVITY_TYPES: tuple[str, ...] = get_args(ActivityType)
MAX_ACTIVE_FILES = 10
MAX_RECENT_COMMITS = 10


def clamp(value: Any, low: float, high: float, *, default: Optional[float] = None) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        v = float("nan")
    if math.isnan(v):
        return low if default is None else default
    if v < low:
        return low
    if v > high:
        return high
    return v


def clamp01(value: Any) -> float:
    return clamp(value, 0.0, 1.0)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(v: datetime) -> datetime:
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


class WireModel(BaseModel):
    """Base for payload models: camelCase aliases, snake_case attribute access."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ─────────────────────────────────────────────────────────────
# Work context
# ─────────────────────────────────────────────────────────────

class CommitInfo(WireModel):
    hash: str
    message: str = ""
    author: Optional[str] = None
    timestamp: Optional[datetime] = None
    branch: Optional[str] = None
    files_changed: Optional[int] = None

    @field_validator("timestamp")
    @classmethod
    def _ensure_tz(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _aware(v) if v is not None else None


class ProjectInfo(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore", validate_assignment=True)

    project_id: str = "unknown"
    name: str = "Unknown Project"
    repository: Optional[str] = None
    current_branch: Optional[str] = None
    active_files: List[str] = Field(default_factory=list)
    recent_commits: List[CommitInfo] = Field(default_factory=list)

    @field_validator("active_files")
    @classmethod
    def _cap_files(cls, v: List[str]) -> List[str]:
        return list(v[:MAX_ACTIVE_FILES])

    @field_validator("recent_commits")
    @classmethod
    def _cap_commits(cls, v: List[CommitInfo]) -> List[CommitInfo]:
        return list(v[:MAX_RECENT_COMMITS])


class CollaborationState(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore", validate_assignment=True)

    active_collaborators: List[str] = Field(default_factory=list)
    shared_artifacts: List[str] = Field(default_factory=list)
    communication_channels: List[str] = Field(default_factory=list)
    meeting_status: MeetingStatus = "available"


class EnvironmentFactors(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore", validate_assignment=True)

    time_of_day: str = "00:00:00"
    day_of_week: str = "Monday"
    working_hours: bool = False
    device_type: DeviceType = "desktop"
    network_quality: NetworkQuality = "good"
    location: Optional[str] = None


class WorkContext(WireModel):
    """Point-in-time inferred state of what a user is doing."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore", validate_assignment=True)

    activity_type: ActivityType = "coding"
    project_context: ProjectInfo = Field(default_factory=ProjectInfo)
    focus_level: float = 50.0
    collaboration_state: CollaborationState = Field(default_factory=CollaborationState)
    environment_factors: EnvironmentFactors = Field(default_factory=EnvironmentFactors)
    timestamp: datetime = Field(default_factory=utcnow)
    confidence: float = 0.5

    @field_validator("focus_level", mode="before")
    @classmethod
    def _clamp_focus(cls, v: Any) -> float:
        return clamp(v, 0.0, 100.0, default=50.0)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float:
        return clamp01(v)

    @field_validator("timestamp")
    @classmethod
    def _ensure_tz(cls, v: datetime) -> datetime:
        return _aware(v)


class ContextEvent(WireModel):
    """Immutable record of one context transition."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore", frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    user_id: str
    event_type: ContextEventType = "activity_change"
    context: WorkContext
    previous_context: Optional[WorkContext] = None
    timestamp: datetime = Field(default_factory=utcnow)
    source: str = "context-engine"

    @field_validator("timestamp")
    @classmethod
    def _ensure_tz(cls, v: datetime) -> datetime:
        return _aware(v)


class PredictedAction(WireModel):
    action_type: str
    description: str
    confidence: float
    suggested_timing: datetime
    context: WorkContext

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float:
        return clamp01(v)

    @field_validator("suggested_timing")
    @classmethod
    def _ensure_tz(cls, v: datetime) -> datetime:
        return _aware(v)


class ActivityClassificationResult(WireModel):
    activity_type: ActivityType = "coding"
    confidence: float = 0.5
    features: Dict[str, float] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float:
        return clamp01(v)


# ─────────────────────────────────────────────────────────────
# Signal inputs
# ─────────────────────────────────────────────────────────────

class IdeActivity(WireModel):
    """One raw IDE observation. Unknown producer fields are kept."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    file_type: Optional[str] = None
    action_type: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    keyword_frequency: Dict[str, float] = Field(default_factory=dict)
    time_spent_in_file: float = 0.0
    number_of_edits: int = 0
    interruption_count: Optional[int] = None
    continuous_editing_time: float = 0.0
    keystroke_pattern: Optional[str] = None

    project_id: Optional[str] = None
    project_name: Optional[str] = None
    active_file: Optional[str] = None
    repository: Optional[str] = None
    branch: Optional[str] = None
    collaborators: List[str] = Field(default_factory=list)

    git_activity: Optional[Dict[str, Any]] = None
    calendar_status: Optional[str] = None


class GitEvent(CommitInfo):
    type: Optional[str] = None
    repository: Optional[str] = None

    def as_commit(self) -> CommitInfo:
        return CommitInfo.model_validate(self.model_dump(include=set(CommitInfo.model_fields)))


class CalendarData(WireModel):
    in_meeting: bool = False
    status: Optional[MeetingStatus] = None
    meeting_participants: Optional[List[str]] = None
    meeting_type: Optional[str] = None

    @model_validator(mode="after")
    def _sync_status(self) -> "CalendarData":
        if self.status == "in-meeting":
            self.in_meeting = True
        return self

    @property
    def meeting_status(self) -> MeetingStatus:
        if self.in_meeting:
            return "in-meeting"
        return self.status or "available"


class BiometricData(WireModel):
    heart_rate: Optional[float] = None
    heart_rate_variability: Optional[float] = None
    stress_level: Optional[float] = None
    concentration: Optional[float] = None


class EnvironmentData(WireModel):
    time_of_day: Optional[str] = None
    day_of_week: Optional[str] = None
    working_hours: Optional[bool] = None
    device_type: Optional[DeviceType] = None
    network_quality: Optional[NetworkQuality] = None
    location: Optional[str] = None


class ContextAggregatorInput(WireModel):
    """Sparse bag of signal groups; absent groups do not contribute."""

    ide_activity: Optional[IdeActivity] = None
    git_events: List[GitEvent] = Field(default_factory=list)
    calendar_data: Optional[CalendarData] = None
    biometric_data: Optional[BiometricData] = None
    environment_data: Optional[EnvironmentData] = None


class ContextUpdate(WireModel):
    """Partial WorkContext. Nested groups are merged field by field."""

    activity_type: Optional[ActivityType] = None
    project_context: Optional[Dict[str, Any]] = None
    focus_level: Optional[float] = None
    collaboration_state: Optional[Dict[str, Any]] = None
    environment_factors: Optional[Dict[str, Any]] = None
    confidence: Optional[float] = None


class ActivityFeedback(WireModel):
    timestamp: datetime
    activity_type: ActivityType

    @field_validator("timestamp")
    @classmethod
    def _ensure_tz(cls, v: datetime) -> datetime:
        return _aware(v)
