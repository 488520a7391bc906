"""Cron expressions — field parsing and next-occurrence search.

Supports the classic 5-field form (minute, hour, day-of-month, month,
day-of-week) with ``*``, single values, comma lists, ranges (``a-b``) and
steps (``*/n``, ``a-b/n``).  Day-of-week uses 0 for Sunday.

Matching is done on the wall-clock reading of each candidate instant in the
schedule's timezone.  Wall-clock times skipped by a DST jump never match;
times repeated by a DST fallback match once per instant.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.scheduler.errors import CronError, UnschedulableError

logger = logging.getLogger(__name__)

DEFAULT_HORIZON_DAYS = 1462  # four years, so Feb 29 schedules resolve

_FIELD_NAMES = ("minute", "hour", "day-of-month", "month", "day-of-week")
_FIELD_BOUNDS = ((0, 59), (0, 23), (1, 31), (1, 12), (0, 6))


def _to_int(text: str) -> int | None:
    text = text.strip()
    if text.isascii() and text.isdigit():
        return int(text)
    return None


def parse_field(expr: str, low: int, high: int) -> list[int]:
    """Expand one cron field into the sorted values it allows.

    Values outside ``[low, high]`` and unparsable parts are dropped rather
    than rejected, so the result may be empty.
    """
    values: set[int] = set()
    for part in expr.split(","):
        base, sep, step_text = part.partition("/")
        step = 1
        if sep:
            parsed_step = _to_int(step_text)
            if parsed_step is None or parsed_step <= 0:
                continue
            step = parsed_step

        if base == "*":
            candidates = range(low, high + 1, step)
        elif "-" in base:
            start_text, _, end_text = base.partition("-")
            start, end = _to_int(start_text), _to_int(end_text)
            if start is None or end is None:
                continue
            candidates = range(start, min(end, high) + 1, step)
        else:
            value = _to_int(base)
            if value is None:
                continue
            candidates = range(value, value + 1)

        values.update(v for v in candidates if low <= v <= high)
    return sorted(values)


def resolve_timezone(name: str) -> ZoneInfo:
    """Return the ZoneInfo for an IANA name, raising CronError if unknown."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        msg = f"Unknown timezone: {name!r}"
        raise CronError(msg) from exc


@dataclass(frozen=True)
class CronExpression:
    """A parsed 5-field cron expression."""

    source: str
    minutes: tuple[int, ...]
    hours: tuple[int, ...]
    days: tuple[int, ...]
    months: tuple[int, ...]
    weekdays: tuple[int, ...]
    day_restricted: bool
    weekday_restricted: bool

    @classmethod
    def parse(cls, text: str) -> CronExpression:
        """Parse *text*. Raises CronError on a wrong field count or a dead field."""
        fields = text.split()
        if len(fields) != 5:
            msg = (
                f"Invalid cron expression {text!r}: "
                f"expected 5 fields, got {len(fields)}"
            )
            raise CronError(msg)

        parsed: list[tuple[int, ...]] = []
        for name, field, (low, high) in zip(_FIELD_NAMES, fields, _FIELD_BOUNDS, strict=True):
            values = parse_field(field, low, high)
            if not values:
                msg = f"Cron {name} field {field!r} matches no values in {low}-{high}"
                raise CronError(msg)
            parsed.append(tuple(values))

        minutes, hours, days, months, weekdays = parsed
        return cls(
            source=" ".join(fields),
            minutes=minutes,
            hours=hours,
            days=days,
            months=months,
            weekdays=weekdays,
            day_restricted=fields[2] != "*",
            weekday_restricted=fields[4] != "*",
        )

    def matches_day(self, day: date) -> bool:
        """Month plus the day-of-month / day-of-week rule (OR when both restricted)."""
        if day.month not in self.months:
            return False
        dom_match = day.day in self.days
        dow_match = day.isoweekday() % 7 in self.weekdays
        if not self.day_restricted and not self.weekday_restricted:
            return True
        if not self.day_restricted:
            return dow_match
        if not self.weekday_restricted:
            return dom_match
        return dom_match or dow_match

    def matches(self, local: datetime) -> bool:
        """Whether a wall-clock datetime satisfies every field."""
        return (
            self.matches_day(local.date())
            and local.hour in self.hours
            and local.minute in self.minutes
        )

    def _instants_on(self, day: date, tz: ZoneInfo) -> list[datetime]:
        """All UTC instants on a local calendar day whose wall clock matches."""
        found: set[datetime] = set()
        for hour in self.hours:
            for minute in self.minutes:
                wall = datetime.combine(day, time(hour, minute))
                for fold in (0, 1):
                    instant = wall.replace(tzinfo=tz, fold=fold).astimezone(UTC)
                    # Wall times inside a DST gap do not round-trip.
                    if instant.astimezone(tz).replace(tzinfo=None) == wall:
                        found.add(instant)
        return sorted(found)


def _coerce(cron_expression: str | CronExpression) -> CronExpression:
    if isinstance(cron_expression, CronExpression):
        return cron_expression
    return CronExpression.parse(cron_expression)


def next_occurrence(
    cron_expression: str | CronExpression,
    timezone: str,
    after: datetime,
    *,
    horizon_days: int = DEFAULT_HORIZON_DAYS,
) -> datetime:
    """Return the first matching instant strictly after *after*'s minute.

    The search starts at the minute following *after* (seconds zeroed).
    Naive datetimes are taken as UTC.  The result is an aware UTC datetime.

    Raises:
        CronError: malformed expression or unknown timezone.
        UnschedulableError: nothing matches within *horizon_days*.
    """
    expr = _coerce(cron_expression)
    tz = resolve_timezone(timezone)
    if after.tzinfo is None:
        after = after.replace(tzinfo=UTC)

    start = after.astimezone(UTC).replace(second=0, microsecond=0) + timedelta(minutes=1)
    # Begin a day early: a fallback at local midnight can rewind the date.
    first_day = start.astimezone(tz).date() - timedelta(days=1)

    for offset in range(horizon_days + 2):
        day = first_day + timedelta(days=offset)
        if not expr.matches_day(day):
            continue
        for instant in expr._instants_on(day, tz):
            if instant >= start:
                return instant

    msg = (
        f"No occurrence of {expr.source!r} ({timezone}) within "
        f"{horizon_days} days after {after.isoformat()}"
    )
    raise UnschedulableError(msg)


def next_occurrences(
    cron_expression: str | CronExpression,
    timezone: str,
    after: datetime,
    count: int,
    *,
    horizon_days: int = DEFAULT_HORIZON_DAYS,
) -> list[datetime]:
    """Return the next *count* occurrences after *after*, in order."""
    expr = _coerce(cron_expression)
    results: list[datetime] = []
    cursor = after
    for _ in range(count):
        cursor = next_occurrence(expr, timezone, cursor, horizon_days=horizon_days)
        results.append(cursor)
    return results


def validate_cron(expression: str) -> tuple[bool, str | None]:
    """Return ``(True, None)`` or ``(False, reason)`` without raising."""
    try:
        CronExpression.parse(expression)
    except CronError as exc:
        return False, str(exc)
    return True, None


# -- Human-readable descriptions -----------------------------------------------

_WEEKDAY_NAMES = {
    "it": ("domenica", "lunedì", "martedì", "mercoledì", "giovedì", "venerdì", "sabato"),
    "en": ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"),
}


def describe(cron_expression: str, locale: str = "it") -> str:
    """Describe common patterns in Italian or English; otherwise echo the input."""
    parts = cron_expression.split()
    if len(parts) != 5:
        return cron_expression

    minute, hour, day, month, weekday = parts
    italian = locale == "it"
    at_time = f"{hour.zfill(2)}:{minute.zfill(2)}"
    fixed_time = minute.isdigit() and hour.isdigit()

    if fixed_time and day == "*" and month == "*" and weekday == "*":
        return f"Ogni giorno alle {at_time}" if italian else f"Every day at {at_time}"

    if fixed_time and day == "*" and month == "*" and weekday != "*":
        names = _WEEKDAY_NAMES["it" if italian else "en"]
        index = _to_int(weekday)
        day_name = names[index] if index is not None and index < len(names) else weekday
        return f"Ogni {day_name} alle {at_time}" if italian else f"Every {day_name} at {at_time}"

    if minute == "0" and "/" in hour:
        interval = hour.split("/")[1]
        return f"Ogni {interval} ore" if italian else f"Every {interval} hours"

    return cron_expression
