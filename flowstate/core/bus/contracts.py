from __future__ import annotations

"""
Channel map + envelope kinds for the context pipeline.

These constants are the defaults; services may rename channels through settings.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class BusChannels:
    """Canonical bus channels consumed and produced by the context engine."""

    # Signal producers -> context engine
    ide_activity: str = "ide-activity"
    git_events: str = "git-events"
    calendar_events: str = "calendar-events"
    biometric_data: str = "biometric-data"

    # Context engine -> consumers
    context_changes: str = "context-changes"
    context_predictions: str = "context-predictions"


@dataclass(frozen=True)
class EnvelopeKinds:
    """Canonical envelope kinds (use these exact strings)."""

    ide_activity: str = "signal.ide.activity.v1"
    git_event: str = "signal.git.event.v1"
    calendar_event: str = "signal.calendar.event.v1"
    biometric_data: str = "signal.biometric.v1"

    context_change: str = "context.change.v1"
    context_predictions: str = "context.predictions.v1"


CHANNELS = BusChannels()
KINDS = EnvelopeKinds()
