"""Extended cron expression parsing and evaluation.

A schedule is either one of the special forms ``@reboot``,
``@every <interval>`` and ``@after <interval>``, or five whitespace-separated
fields: minute, hour, day of month, month and day of week.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Iterator, NamedTuple, Optional, Tuple

from dateutil.relativedelta import relativedelta

from async_timetable.errors import CronFormatError, CronRangeError

REBOOT = "@reboot"
EVERY = "@every"
AFTER = "@after"

# (name, min, max) per field; 0 and 7 both denote Sunday
FIELD_RANGES = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day", 1, 31),
    ("month", 1, 12),
    ("weekday", 0, 7),
)

# Horizon of occurrences_from, in months after the reference month
LOOKAHEAD_MONTHS = 12

_INT = re.compile(r"^\d+$")
_ANY = re.compile(r"^\*$")
_RANGE = re.compile(r"^(\d+)-(\d+)$")
_STEP = re.compile(r"^(\d+)/(\d+)$")
_RANGE_STEP = re.compile(r"^(\d+)-(\d+)/(\d+)$")
_ANY_STEP = re.compile(r"^\*/(\d+)$")

_INTERVAL_TIME = re.compile(r"^(-)?(\d+):(\d{1,2})(?::(\d{1,2}(?:\.\d+)?))?$")
_INTERVAL_PART = re.compile(r"(-?\d+(?:\.\d+)?)\s*([a-z]+)")

# Fixed-length conversions as done by EXTRACT(epoch FROM interval)
_INTERVAL_UNITS = {
    "microsecond": timedelta(microseconds=1),
    "millisecond": timedelta(milliseconds=1),
    "second": timedelta(seconds=1),
    "minute": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
    "month": timedelta(days=30),
    "year": timedelta(days=365.25),
}
_UNIT_ALIASES = {
    "us": "microsecond", "usec": "microsecond", "usecs": "microsecond",
    "microseconds": "microsecond",
    "ms": "millisecond", "msec": "millisecond", "msecs": "millisecond",
    "milliseconds": "millisecond",
    "s": "second", "sec": "second", "secs": "second", "seconds": "second",
    "m": "minute", "min": "minute", "mins": "minute", "minutes": "minute",
    "h": "hour", "hr": "hour", "hrs": "hour", "hours": "hour",
    "d": "day", "days": "day",
    "w": "week", "weeks": "week",
    "mon": "month", "mons": "month", "months": "month",
    "y": "year", "yr": "year", "yrs": "year", "years": "year",
}


class CronFields(NamedTuple):
    """Allowed values of each cron field, sorted and de-duplicated."""

    minutes: Tuple[int, ...]
    hours: Tuple[int, ...]
    days: Tuple[int, ...]
    months: Tuple[int, ...]
    weekdays: Tuple[int, ...]


class SpecialSchedule(NamedTuple):
    """A parsed ``@reboot``, ``@every`` or ``@after`` schedule."""

    kind: str
    interval: Optional[timedelta] = None


def _expand_item(item: str, low: int, high: int, field: str) -> range:
    if _INT.match(item):
        value = int(item)
        return range(value, value + 1)
    if _ANY.match(item):
        return range(low, high + 1)

    match = _RANGE.match(item)
    if match:
        start, end = int(match.group(1)), int(match.group(2))
        if start > end:
            raise CronFormatError(item, f"Empty range ({item!r}) in {field} field")
        return range(start, end + 1)

    match = _STEP.match(item) or _RANGE_STEP.match(item) or _ANY_STEP.match(item)
    if match:
        groups = [int(g) for g in match.groups()]
        step = groups[-1]
        if step == 0:
            raise CronFormatError(item, f"Step size cannot be zero ({item!r})")
        if len(groups) == 1:
            return range(low, high + 1, step)
        if groups[0] > high:
            raise CronRangeError(field, (groups[0],), (low, high))
        if len(groups) == 2:
            return range(groups[0], high + 1, step)
        if groups[0] > groups[1]:
            raise CronFormatError(item, f"Empty range ({item!r}) in {field} field")
        return range(groups[0], groups[1] + 1, step)

    raise CronFormatError(
        item,
        f"Value ({item!r}) not recognized in {field} field. Values allowed: "
        "numbers (value list with ','), any value with '*', "
        "range of values with '-' and step values with '/'",
    )


def parse_cron(cron: str) -> CronFields:
    """
    Split a five-field cron expression into allowed value sets.

    Args:
        cron: Cron expression such as ``"*/15 8-18 * * 1-5"``

    Returns:
        CronFields with sorted, de-duplicated values per field

    Raises:
        CronFormatError: If a field token matches no grammar alternative
        CronRangeError: If a resolved value falls outside its field's domain
    """
    if cron is None:
        raise CronFormatError(cron, "Cron expression is required")
    elements = cron.split()
    if len(elements) != len(FIELD_RANGES):
        raise CronFormatError(
            cron,
            f"Expected {len(FIELD_RANGES)} fields separated by space or tab, "
            f"got {len(elements)} in {cron!r}",
        )

    fields = []
    for element, (field, low, high) in zip(elements, FIELD_RANGES):
        values = set()
        for item in element.split(","):
            # expand against the domain only for '*' forms, literal values are
            # range checked afterwards
            values.update(_expand_item(item, low, high, field))
        resolved = tuple(sorted(values))
        if resolved[0] < low or resolved[-1] > high:
            raise CronRangeError(field, resolved, (low, high))
        fields.append(resolved)

    return CronFields(*fields)


def parse_interval(text: str) -> timedelta:
    """
    Parse PostgreSQL style interval text into a timedelta.

    Accepts unit lists (``"1 hour 30 minutes"``, ``"10 mins"``), clock
    notation (``"00:05:00"``), both combined (``"2 days 01:00"``) and a bare
    number of seconds.
    """
    if text is None or not text.strip():
        raise CronFormatError(text, "Interval is empty")

    rest = text.strip().lower()
    total = timedelta()

    clock = rest.split()[-1]
    match = _INTERVAL_TIME.match(clock)
    if match:
        sign, hours, minutes, seconds = match.groups()
        clock_delta = timedelta(
            hours=int(hours), minutes=int(minutes), seconds=float(seconds or 0)
        )
        total += -clock_delta if sign else clock_delta
        rest = rest[: len(rest) - len(clock)].strip()
    elif re.match(r"^-?\d+(?:\.\d+)?$", rest):
        return timedelta(seconds=float(rest))

    position = 0
    for part in _INTERVAL_PART.finditer(rest):
        if rest[position:part.start()].strip():
            raise CronFormatError(text, f"Invalid interval: {text!r}")
        amount, unit = part.groups()
        unit = _UNIT_ALIASES.get(unit, unit)
        if unit not in _INTERVAL_UNITS:
            raise CronFormatError(text, f"Unknown interval unit {unit!r} in {text!r}")
        total += _INTERVAL_UNITS[unit] * float(amount)
        position = part.end()

    if rest[position:].strip():
        raise CronFormatError(text, f"Invalid interval: {text!r}")
    if position == 0 and not match:
        raise CronFormatError(text, f"Invalid interval: {text!r}")
    return total


def special_schedule(cron: Optional[str]) -> Optional[SpecialSchedule]:
    """
    Recognize the special schedule forms.

    Returns None for five-field expressions (and for a missing schedule).
    Raises CronFormatError when an ``@every``/``@after`` interval is not a
    positive, parseable interval.
    """
    if cron is None:
        return None
    value = cron.strip()
    if value == REBOOT:
        return SpecialSchedule(kind=REBOOT)
    prefix = value[: len(EVERY)]
    if prefix in (EVERY, AFTER):
        interval = parse_interval(value[len(EVERY):])
        if interval <= timedelta():
            raise CronFormatError(cron, f"Interval must be positive in {cron!r}")
        return SpecialSchedule(kind=prefix, interval=interval)
    return None


def is_valid_cron(cron: Optional[str]) -> bool:
    """Check a schedule string against the extended cron format."""
    if cron is None:
        return False
    try:
        if special_schedule(cron) is not None:
            return True
        parse_cron(cron)
    except (CronFormatError, CronRangeError):
        return False
    return True


def _pg_weekday(ts: datetime) -> int:
    """Day of week numbered from Sunday = 0."""
    return ts.isoweekday() % 7


def _month_start(ts: datetime) -> datetime:
    return ts.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def _matching_days(month_start: datetime, fields: CronFields) -> Iterator[datetime]:
    month_end = month_start + relativedelta(months=1, days=-1)
    for day in range(1, month_end.day + 1):
        if day not in fields.days:
            continue
        candidate = month_start.replace(day=day)
        if _pg_weekday(candidate) in fields.weekdays:
            yield candidate


def _cron_runs(reference: datetime, fields: CronFields) -> Iterator[datetime]:
    times = [(hour, minute) for hour in fields.hours for minute in fields.minutes]
    for offset in range(LOOKAHEAD_MONTHS + 1):
        month_start = _month_start(reference + relativedelta(months=offset))
        if month_start.month not in fields.months:
            continue
        for day in _matching_days(month_start, fields):
            for hour, minute in times:
                run = day.replace(hour=hour, minute=minute)
                if run > reference:
                    yield run


def occurrences_from(reference: datetime, cron: str) -> Iterator[datetime]:
    """
    Lazily enumerate the instants strictly after ``reference`` matching ``cron``.

    Only months within LOOKAHEAD_MONTHS of the reference are inspected, so a
    schedule whose next match lies further away yields nothing. Days of week
    are matched with Sunday = 0 only; ``7`` never selects a Sunday here.

    Args:
        reference: Instant to start after (exclusive)
        cron: Five-field cron expression

    Returns:
        Generator of ascending datetimes in the reference's timezone
    """
    fields = parse_cron(cron)
    return _cron_runs(reference, fields)


def next_run(cron: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """Get the first occurrence of ``cron`` after ``now`` (defaults to UTC now)."""
    if now is None:
        now = datetime.now(timezone.utc)
    return next(occurrences_from(now, cron), None)


def is_cron_in_time(cron: Optional[str], ts: datetime) -> bool:
    """
    Check whether ``ts`` is listed in the cron expression.

    A missing schedule is always due. Day of week matches under either the
    Sunday = 0 or the ISO Monday = 1 .. Sunday = 7 numbering.
    """
    if cron is None:
        return True
    fields = parse_cron(cron)
    return (
        ts.month in fields.months
        and (_pg_weekday(ts) in fields.weekdays or ts.isoweekday() in fields.weekdays)
        and ts.day in fields.days
        and ts.hour in fields.hours
        and ts.minute in fields.minutes
    )
