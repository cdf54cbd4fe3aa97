"""Next-run computation for recurring jobs (cron expressions evaluated in UTC)."""

from datetime import UTC, datetime
from typing import Any

from croniter import croniter

from zapninja.models.domain.queue_domain import RecurringJob


def is_valid_cron(expression: str) -> bool:
    return croniter.is_valid(expression)


def next_run_ms(schedule: RecurringJob | dict[str, Any], after_ms: int) -> int:
    """
    First occurrence strictly after ``after_ms``.

    Interval schedules are aligned to multiples of the interval so every
    process computes the same slot and the deterministic job id dedupes.
    """
    if isinstance(schedule, RecurringJob):
        schedule = schedule.to_repeat()

    cron = schedule.get("cron")
    if cron:
        start = datetime.fromtimestamp(after_ms / 1000, UTC)
        upcoming = croniter(cron, start).get_next(datetime)
        return int(upcoming.timestamp() * 1000)

    every_ms = int(float(schedule["every_seconds"]) * 1000)
    if every_ms <= 0:
        raise ValueError("every_seconds must be positive")
    return (after_ms // every_ms + 1) * every_ms


def repeat_job_id(repeat_key: str, run_at_ms: int) -> str:
    return f"repeat:{repeat_key}:{run_at_ms}"
