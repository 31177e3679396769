from __future__ import annotations

from datetime import datetime
from typing import Callable

from flowstate.schemas.context import EnvironmentFactors

Clock = Callable[[], datetime]

WORKDAY_START_HOUR = 9
WORKDAY_END_HOUR = 17


def local_now() -> datetime:
    """Timezone-aware wall clock in the host's local zone."""
    return datetime.now().astimezone()


def day_index(dt: datetime) -> int:
    """Day of week with Sunday = 0 ... Saturday = 6."""
    return dt.isoweekday() % 7


def is_working_hours(dt: datetime) -> bool:
    # Monday to Friday, 09:00 through the 17:xx hour
    return 1 <= day_index(dt) <= 5 and WORKDAY_START_HOUR <= dt.hour <= WORKDAY_END_HOUR


def time_of_day(dt: datetime) -> str:
    return dt.strftime("%H:%M:%S")


def day_name(dt: datetime) -> str:
    return dt.strftime("%A")


def environment_at(dt: datetime, base: EnvironmentFactors | None = None) -> EnvironmentFactors:
    """Return `base` (or defaults) with the clock-derived fields recomputed for `dt`."""
    data = base.model_dump() if base is not None else {}
    data.update(
        time_of_day=time_of_day(dt),
        day_of_week=day_name(dt),
        working_hours=is_working_hours(dt),
    )
    return EnvironmentFactors.model_validate(data)
