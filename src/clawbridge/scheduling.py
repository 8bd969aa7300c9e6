"""Recurrence collaborator: turns a task's schedule into its next ``next_run``.

The store treats ``next_run`` as an opaque ISO 8601 string.  This module is
the one place that knows what ``schedule_type`` / ``schedule_value`` mean.
"""

from datetime import datetime, timedelta, timezone

from croniter import croniter

from clawbridge.db import format_timestamp
from clawbridge.models import ScheduledTask

RECURRING_TYPES = ("cron", "interval")


def compute_next_run(
    schedule_type: str, schedule_value: str, base: datetime | None = None
) -> str | None:
    """Compute the next run time for a scheduled task.

    Returns an ISO 8601 string for the next run time:
    - "cron": Next occurrence based on cron expression
    - "interval": *base* + milliseconds offset
    - "once": The timestamp in schedule_value, normalised to the store format
    - Unknown types: Returns None

    Raises:
        ValueError: if *schedule_value* is not valid for *schedule_type*.
    """
    if base is None:
        base = datetime.now(timezone.utc)

    if schedule_type == "cron":
        if not croniter.is_valid(schedule_value):
            raise ValueError(f"Invalid cron expression: {schedule_value!r}")
        return format_timestamp(croniter(schedule_value, base).get_next(datetime))
    if schedule_type == "interval":
        interval_ms = int(schedule_value)
        if interval_ms <= 0:
            raise ValueError(f"Interval must be positive, got {interval_ms} ms")
        return format_timestamp(base + timedelta(milliseconds=interval_ms))
    if schedule_type == "once":
        when = datetime.fromisoformat(schedule_value.replace("Z", "+00:00"))
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        return format_timestamp(when)
    return None


def next_run_after_run(task: ScheduledTask, base: datetime | None = None) -> str | None:
    """Return the ``next_run`` to record once *task* has just run.

    One-shot and unknown schedule types never run again, which makes the
    store mark the task completed.
    """
    if task.schedule_type not in RECURRING_TYPES:
        return None
    return compute_next_run(task.schedule_type, task.schedule_value, base)
