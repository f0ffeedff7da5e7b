"""Canonical schedule values and the instant matching predicate.

A schedule is either a crontab (five sets of allowed values, with cron's
day-of-month/day-of-week rule already applied) or a set of UTC timestamps at
minute granularity. Both are immutable; the parsers in ``foreman.cron`` and
``foreman.timestamps`` are the only producers.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterator, List, Optional, Tuple, Union

from croniter import CroniterBadDateError, croniter

UTC = timezone.utc
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M+00"

MINUTE = "minute"
HOUR = "hour"
DOM = "dom"
MONTH = "month"
DOW = "dow"
TIMESTAMP = "timestamp"
CRON_FIELDS = (MINUTE, HOUR, DOM, MONTH, DOW)

Slot = Tuple[str, str]


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def truncate_minute(value: datetime) -> datetime:
    return ensure_aware_utc(value).replace(second=0, microsecond=0)


def format_minute(value: datetime) -> str:
    """Render an instant the way timestamp schedules store it."""
    return truncate_minute(value).strftime(TIMESTAMP_FORMAT)


def parse_minute(text: str) -> datetime:
    """Inverse of :func:`format_minute` for canonical strings only."""
    return datetime.strptime(text[:-3], "%Y-%m-%d %H:%M").replace(tzinfo=UTC)


def cron_weekday(value: datetime) -> int:
    # cron counts from Sunday = 0
    return value.isoweekday() % 7


@dataclass(frozen=True)
class CrontabSchedule:
    minute: Tuple[int, ...]
    hour: Tuple[int, ...]
    dom: Tuple[int, ...]
    month: Tuple[int, ...]
    dow: Tuple[int, ...]

    def matches(self, instant: datetime) -> bool:
        at = ensure_aware_utc(instant)
        if at.minute not in self.minute or at.hour not in self.hour or at.month not in self.month:
            return False
        return at.day in self.dom or cron_weekday(at) in self.dow

    def to_text(self) -> str:
        # A cleared field is written as "*" so that re-parsing clears it again;
        # every populated field is written as explicit values.
        return " ".join(_format_field(getattr(self, name)) for name in CRON_FIELDS)

    def slots(self) -> Iterator[Slot]:
        for name in CRON_FIELDS:
            for value in getattr(self, name):
                yield name, str(value)

    def next_after(self, after: datetime) -> Optional[datetime]:
        iterator = croniter(self.to_text(), ensure_aware_utc(after))
        try:
            return ensure_aware_utc(iterator.get_next(datetime))
        except CroniterBadDateError:
            # valid fields that never meet, e.g. February 30th
            return None


@dataclass(frozen=True)
class TimestampSchedule:
    timestamps: Tuple[str, ...]

    def matches(self, instant: datetime) -> bool:
        return format_minute(instant) in self.timestamps

    def to_text(self) -> str:
        return "{" + ",".join(f'"{stamp}"' for stamp in self.timestamps) + "}"

    def slots(self) -> Iterator[Slot]:
        for stamp in self.timestamps:
            yield TIMESTAMP, stamp

    def next_after(self, after: datetime) -> Optional[datetime]:
        after_utc = ensure_aware_utc(after)
        upcoming = [parse_minute(stamp) for stamp in self.timestamps]
        upcoming = [moment for moment in upcoming if moment > after_utc]
        return min(upcoming) if upcoming else None


Schedule = Union[CrontabSchedule, TimestampSchedule]


def matches(schedule: Schedule, instant: datetime) -> bool:
    """True when ``schedule`` fires at the minute containing ``instant``."""
    return schedule.matches(instant)


def next_fire_after(schedule: Schedule, after: datetime) -> Optional[datetime]:
    return schedule.next_after(after)


def next_fire_times(schedule: Schedule, count: int, after: datetime) -> List[datetime]:
    runs: List[datetime] = []
    cursor = ensure_aware_utc(after)
    while len(runs) < count:
        nxt = schedule.next_after(cursor)
        if nxt is None:
            break
        runs.append(nxt)
        cursor = nxt + timedelta(seconds=1)
    return runs


def schedule_slots(schedule: Schedule) -> List[Slot]:
    """Index keys of a schedule: one (field, value) pair per allowed value."""
    return list(schedule.slots())


def instant_slots(instant: datetime) -> dict:
    """Index keys an instant must hit, keyed by field."""
    at = truncate_minute(instant)
    return {
        MINUTE: str(at.minute),
        HOUR: str(at.hour),
        DOM: str(at.day),
        MONTH: str(at.month),
        DOW: str(cron_weekday(at)),
        TIMESTAMP: format_minute(at),
    }


def _format_field(values: Tuple[int, ...]) -> str:
    if not values:
        return "*"
    runs: List[str] = []
    start = prev = values[0]
    for value in values[1:]:
        if value == prev + 1:
            prev = value
            continue
        runs.append(_format_run(start, prev))
        start = prev = value
    runs.append(_format_run(start, prev))
    return ",".join(runs)


def _format_run(start: int, end: int) -> str:
    return str(start) if start == end else f"{start}-{end}"
