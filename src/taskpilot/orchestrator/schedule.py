"""Cron evaluation for recurring tasks."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterError, croniter

from taskpilot.errors import SchedulingError
from taskpilot.storage.common import to_utc_aware, utc_now

logger = logging.getLogger(__name__)

FALLBACK_INTERVAL = timedelta(days=1)


def next_cron_occurrence(cron: str, timezone: str, now: datetime) -> datetime:
    """Next occurrence strictly after `now`, as aware UTC.

    The expression is evaluated in `timezone` wall-clock time, so `0 9 * * *`
    in America/New_York fires at 09:00 local across DST changes.
    """

    now = to_utc_aware(now)
    try:
        zone = ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as error:
        raise SchedulingError(f"Unknown timezone: {timezone!r}") from error
    if not croniter.is_valid(cron):
        raise SchedulingError(f"Invalid cron expression: {cron!r}")
    local_now = now.astimezone(zone)
    try:
        occurrence = croniter(cron, local_now).get_next(datetime)
    except (CroniterError, ValueError) as error:
        raise SchedulingError(f"Invalid cron expression: {cron!r}") from error
    result = occurrence.astimezone(now.tzinfo)
    if result <= now:
        raise SchedulingError(f"Cron expression {cron!r} yielded no future occurrence.")
    return result


def compute_next_run(
    cron: str | None,
    timezone: str | None,
    now: datetime | None = None,
) -> datetime:
    """Next run time; falls back to `now + 1 day` with a warning on bad input."""

    now = now or utc_now()
    try:
        if not cron:
            raise SchedulingError("Cron expression is empty.")
        return next_cron_occurrence(cron, timezone or "UTC", now)
    except SchedulingError as error:
        logger.warning("Falling back to +1 day for schedule %r: %s", cron, error)
        return now + FALLBACK_INTERVAL


def validate_schedule(cron: str, timezone: str) -> None:
    """Raise SchedulingError unless the cron expression and timezone are usable."""

    next_cron_occurrence(cron, timezone, utc_now())
