from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from croniter import croniter

# Upper bound on how many missed minutes are counted for the backlog log line.
_BACKLOG_COUNT_LIMIT = 1000


@dataclass(frozen=True, slots=True)
class DueRun:
    scheduled_at: datetime
    skipped: int


def _zone(timezone: str | None) -> ZoneInfo:
    return ZoneInfo(timezone or "UTC")


def due_run(
    expression: str, timezone: str | None, *, after: datetime, now: datetime
) -> DueRun | None:
    """Return the latest scheduled time in ``(after, now]``, or ``None`` if nothing is due.

    Earlier scheduled times in the window are not returned; their number is reported in
    ``skipped``.
    """

    zone = _zone(timezone)
    # croniter.get_prev is exclusive; nudge so a schedule exactly at ``now`` counts.
    latest = croniter(expression, now.astimezone(zone) + timedelta(seconds=1)).get_prev(datetime)
    if latest <= after.astimezone(zone):
        return None

    skipped = 0
    walker = croniter(expression, after.astimezone(zone))
    while skipped < _BACKLOG_COUNT_LIMIT:
        candidate = walker.get_next(datetime)
        if candidate >= latest:
            break
        skipped += 1
    return DueRun(scheduled_at=latest.astimezone(UTC), skipped=skipped)


def next_run(expression: str, timezone: str | None, *, after: datetime) -> datetime:
    zone = _zone(timezone)
    return croniter(expression, after.astimezone(zone)).get_next(datetime).astimezone(UTC)


def idempotency_key(trigger_id: str, scheduled_at: datetime) -> str:
    return f"cron:{trigger_id}:{scheduled_at.astimezone(UTC):%Y%m%dT%H%M}"
