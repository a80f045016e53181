"""Shared constants for contentflow scheduling and execution."""

from __future__ import annotations

from typing import Dict, Mapping, Optional

from .errors import InvalidIntervalError

MANUAL_INTERVAL = "manual"
PROJECT_SCHEDULE_INTERVAL = "project_schedule"

# slug -> (label, seconds)
SCHEDULER_INTERVALS: Dict[str, tuple[str, int]] = {
    "every_5_minutes": ("Every 5 Minutes", 300),
    "hourly": ("Hourly", 3600),
    "every_2_hours": ("Every 2 Hours", 7200),
    "every_4_hours": ("Every 4 Hours", 14400),
    "qtrdaily": ("Every 6 Hours", 21600),
    "twicedaily": ("Twice Daily", 43200),
    "daily": ("Daily", 86400),
    "weekly": ("Weekly", 604800),
}

DEFAULT_MAX_CONCURRENT_JOBS = 2
DEFAULT_STUCK_TIMEOUT_HOURS = 6
DEFAULT_JOB_RETENTION_DAYS = 30
DEFAULT_STEP_TIMEOUT_SECONDS = 300.0
DEFAULT_TRIGGER_POLL_SECONDS = 5.0
DEFAULT_MAINTENANCE_INTERVAL_SECONDS = 3600.0
DEFAULT_RETAINED_OUTCOMES = 100

JOBS_TOPIC = "contentflow.jobs"
RUN_FLOW_TRIGGER = "contentflow.run_flow"

HANDLER_ENTRY_POINT_GROUP = "contentflow.handlers"


def interval_table(extra: Optional[Mapping[str, int]] = None) -> Dict[str, int]:
    """Return ``slug -> seconds`` for every schedulable interval."""
    table = {slug: seconds for slug, (_, seconds) in SCHEDULER_INTERVALS.items()}
    if extra:
        table.update(extra)
    return table


def interval_seconds(
    interval: str, intervals: Optional[Mapping[str, int]] = None
) -> Optional[int]:
    """Seconds for ``interval`` or ``None`` for manual/unknown slugs."""
    table = intervals if intervals is not None else interval_table()
    return table.get(interval)


def validate_interval(
    interval: str,
    allow_inherit: bool = False,
    intervals: Optional[Mapping[str, int]] = None,
) -> str:
    """Return ``interval`` unchanged if recognized, raise otherwise.

    ``project_schedule`` is only accepted where an inherited schedule makes
    sense (``allow_inherit=True``); it is never schedulable on its own.
    """
    if interval == MANUAL_INTERVAL:
        return interval
    if interval == PROJECT_SCHEDULE_INTERVAL and allow_inherit:
        return interval
    if interval_seconds(interval, intervals) is None:
        raise InvalidIntervalError(interval)
    return interval
