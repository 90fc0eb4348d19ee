"""
Period boundary calculation.

A period window is `[period_start, period_end)` in UTC at second precision,
with `period_end` equal to "now". `period_start` is part of the notification
log's identity, so the result must be identical for identical inputs.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from usage_guard.models.notification_rule import Period

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True)
class PeriodBoundaries:
    period_start: datetime
    period_end: datetime

    @property
    def start_label(self) -> str:
        return format_timestamp(self.period_start)

    @property
    def end_label(self) -> str:
        return format_timestamp(self.period_end)


def format_timestamp(value: datetime) -> str:
    return value.strftime(TIMESTAMP_FORMAT)


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return utc_now()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).replace(microsecond=0)


def compute_period_boundaries(
    period: Period | str, now: Optional[datetime] = None
) -> PeriodBoundaries:
    """
    Map a period kind to its current window.

    hour  -> start of the previous clock hour
    day   -> midnight today
    week  -> midnight of the most recent Monday
    month -> midnight on the 1st
    Unknown kinds are treated as "hour". Naive `now` values are read as UTC.
    """
    end = _normalize_now(now)
    kind = period.value if isinstance(period, Period) else str(period or "").lower()
    midnight = end.replace(hour=0, minute=0, second=0)

    if kind == Period.DAY.value:
        start = midnight
    elif kind == Period.WEEK.value:
        start = midnight - timedelta(days=end.weekday())
    elif kind == Period.MONTH.value:
        start = midnight.replace(day=1)
    else:
        start = end.replace(minute=0, second=0) - timedelta(hours=1)

    return PeriodBoundaries(period_start=start, period_end=end)
