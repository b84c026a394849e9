"""
Cron schedule parsing and fire time computation.

Supported expressions:
- 5 fields (Unix cron): minute hour day-of-month month day-of-week.
  Day of week runs 0-7 with both 0 and 7 meaning Sunday; seconds are 0.
- 6 fields (Quartz): second minute hour day-of-month month day-of-week.
  Day of week runs 1-7 with 1 meaning Sunday.
- 7 fields (Quartz): the 6 fields followed by a year (1970-2199).

Each field accepts '*', single values, ranges ('a-b', wrapping when a > b),
steps ('*/s', 'a/s', 'a-b/s') and comma separated lists. Month and day
names (JAN-DEC, SUN-SAT) are case insensitive. The day fields also accept:
- '?': no restriction (same as '*')
- day-of-month: 'L' (last day), 'L-n' (n days before the last day),
  'nW' (weekday nearest to day n), 'LW' (last weekday of the month)
- day-of-week: 'L' (Saturday), 'nL' (last weekday n of the month),
  'n#k' (k-th weekday n of the month)

When both day fields are restricted a day matches if either one matches,
as in Vixie cron. When only one is restricted, only that one applies.

Fire times are evaluated on the wall clock of the schedule's timezone.
Wall-clock times skipped by a DST transition never fire; wall-clock times
repeated by a DST transition fire on their first occurrence only.
"""

import bisect
import calendar
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Dict, FrozenSet, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cronjobs.errors import InvalidScheduleError

MIN_YEAR = 1970
MAX_YEAR = 2199
DEFAULT_TIMEZONE = "UTC"
UTC = timezone.utc

MONTH_NAMES = {
    'JAN': 1, 'FEB': 2, 'MAR': 3, 'APR': 4, 'MAY': 5, 'JUN': 6,
    'JUL': 7, 'AUG': 8, 'SEP': 9, 'OCT': 10, 'NOV': 11, 'DEC': 12,
}

# Quartz numbering (SUN=1). Unix numbering is one lower (SUN=0).
DAY_NAMES = {
    'SUN': 1, 'MON': 2, 'TUE': 3, 'WED': 4, 'THU': 5, 'FRI': 6, 'SAT': 7,
}
UNIX_DAY_NAMES = {name: value - 1 for name, value in DAY_NAMES.items()}

_OFFSET_PATTERN = re.compile(
    r'^(?:UTC|GMT)?\s*([+-])(\d{1,2})(?::?(\d{2}))?$',
    re.IGNORECASE | re.ASCII,
)
_LAST_DAY_PATTERN = re.compile(r'^L(?:-(\d+))?$', re.ASCII)
_NEAREST_WEEKDAY_PATTERN = re.compile(r'^(\d+)W$', re.ASCII)
_LAST_WEEKDAY_PATTERN = re.compile(r'^(\w+)L$', re.ASCII)
_NTH_WEEKDAY_PATTERN = re.compile(r'^(\w+)#(\d+)$', re.ASCII)

# Special day entries are (kind, value, nth) tuples.
LAST_DAY = 'L'
LAST_WEEKDAY_OF_MONTH = 'LW'
NEAREST_WEEKDAY = 'W'
LAST_DAY_OF_WEEK = 'DL'
NTH_DAY_OF_WEEK = '#'


@dataclass(frozen=True)
class _FieldSpec:
    name: str
    low: int
    high: int
    names: Optional[Dict[str, int]] = None


SECOND = _FieldSpec('second', 0, 59)
MINUTE = _FieldSpec('minute', 0, 59)
HOUR = _FieldSpec('hour', 0, 23)
DAY_OF_MONTH = _FieldSpec('day-of-month', 1, 31)
MONTH = _FieldSpec('month', 1, 12, MONTH_NAMES)
DAY_OF_WEEK = _FieldSpec('day-of-week', 1, 7, DAY_NAMES)
UNIX_DAY_OF_WEEK = _FieldSpec('day-of-week', 0, 7, UNIX_DAY_NAMES)
YEAR = _FieldSpec('year', MIN_YEAR, MAX_YEAR)


@dataclass(frozen=True)
class CronField:
    """One parsed field of a cron expression."""
    name: str
    values: FrozenSet[int]
    restricted: bool = True
    specials: FrozenSet[Tuple[str, int, int]] = frozenset()
    wildcard: str = field(default='*', compare=False)
    _ordered: Tuple[int, ...] = field(default=(), init=False, compare=False, repr=False)

    def __post_init__(self):
        object.__setattr__(self, '_ordered', tuple(sorted(self.values)))

    def __contains__(self, value: int) -> bool:
        return value in self.values

    def next_value(self, value: int) -> Optional[int]:
        """Smallest allowed value >= value, or None."""
        index = bisect.bisect_left(self._ordered, value)
        if index < len(self._ordered):
            return self._ordered[index]
        return None

    def to_text(self) -> str:
        """Render the field back to cron syntax."""
        if not self.restricted:
            return self.wildcard
        parts = [str(value) for value in self._ordered]
        for kind, value, nth in sorted(self.specials):
            if kind == LAST_DAY:
                parts.append(f"L-{value}" if value else "L")
            elif kind == LAST_WEEKDAY_OF_MONTH:
                parts.append("LW")
            elif kind == NEAREST_WEEKDAY:
                parts.append(f"{value}W")
            elif kind == LAST_DAY_OF_WEEK:
                parts.append(f"{value}L")
            elif kind == NTH_DAY_OF_WEEK:
                parts.append(f"{value}#{nth}")
        return ",".join(parts)


def _full_field(spec: _FieldSpec, wildcard: str = '*') -> CronField:
    return CronField(
        spec.name,
        frozenset(range(spec.low, spec.high + 1)),
        restricted=False,
        wildcard=wildcard,
    )


def _quartz_weekday(value: int) -> int:
    return value % 7 + 1


def _identity(value: int) -> int:
    return value


def _is_number(text: str) -> bool:
    # str.isdigit also accepts superscripts and other non-ASCII digits
    return text.isascii() and text.isdigit()


def _parse_value(text: str, spec: _FieldSpec) -> int:
    if spec.names and text in spec.names:
        return spec.names[text]
    if not _is_number(text):
        raise InvalidScheduleError(f"Invalid value '{text}' in {spec.name} field")
    value = int(text)
    if not spec.low <= value <= spec.high:
        raise InvalidScheduleError(
            f"Value {value} out of range {spec.low}-{spec.high} in {spec.name} field"
        )
    return value


def _expand(element: str, spec: _FieldSpec) -> List[int]:
    """Expand a single list element (value, range or step) to its values."""
    step = None
    base = element
    if '/' in element:
        base, _, step_text = element.partition('/')
        if not _is_number(step_text) or int(step_text) < 1:
            raise InvalidScheduleError(
                f"Invalid step '{step_text}' in {spec.name} field"
            )
        step = int(step_text)

    if base == '*':
        start, end = spec.low, spec.high
    elif '-' in base:
        start_text, _, end_text = base.partition('-')
        start = _parse_value(start_text, spec)
        end = _parse_value(end_text, spec)
    else:
        start = _parse_value(base, spec)
        end = spec.high if step is not None else start

    if start <= end:
        sequence = list(range(start, end + 1))
    else:
        sequence = list(range(start, spec.high + 1)) + list(range(spec.low, end + 1))

    if step is not None:
        sequence = sequence[::step]
    return sequence


def _parse_field(text: str, spec: _FieldSpec, day_kind: Optional[str] = None,
                 convert=_identity) -> CronField:
    token = text.strip().upper()
    if token in ('*', '?'):
        if token == '?' and day_kind is None:
            raise InvalidScheduleError(
                f"'?' is only allowed in the day-of-month and day-of-week fields, "
                f"not in {spec.name}"
            )
        if day_kind == 'dow':
            return _full_field(DAY_OF_WEEK, token)
        return _full_field(spec, token)

    values = set()
    specials = set()
    for element in token.split(','):
        if not element:
            raise InvalidScheduleError(f"Empty list element in {spec.name} field")

        if day_kind == 'dom':
            match = _LAST_DAY_PATTERN.match(element)
            if match:
                offset = int(match.group(1) or 0)
                if offset > 30:
                    raise InvalidScheduleError(f"Offset from last day must be <= 30, got {offset}")
                specials.add((LAST_DAY, offset, 0))
                continue
            if element == 'LW':
                specials.add((LAST_WEEKDAY_OF_MONTH, 0, 0))
                continue
            match = _NEAREST_WEEKDAY_PATTERN.match(element)
            if match:
                specials.add((NEAREST_WEEKDAY, _parse_value(match.group(1), spec), 0))
                continue

        if day_kind == 'dow':
            if element == 'L':
                values.add(convert(spec.names['SAT']))
                continue
            match = _LAST_WEEKDAY_PATTERN.match(element)
            if match:
                weekday = convert(_parse_value(match.group(1), spec))
                specials.add((LAST_DAY_OF_WEEK, weekday, 0))
                continue
            match = _NTH_WEEKDAY_PATTERN.match(element)
            if match:
                weekday = convert(_parse_value(match.group(1), spec))
                nth = int(match.group(2))
                if not 1 <= nth <= 5:
                    raise InvalidScheduleError(f"Weekday occurrence must be 1-5, got {nth}")
                specials.add((NTH_DAY_OF_WEEK, weekday, nth))
                continue

        values.update(convert(value) for value in _expand(element, spec))

    name = DAY_OF_WEEK.name if day_kind == 'dow' else spec.name
    return CronField(name, frozenset(values), specials=frozenset(specials))


def resolve_timezone(name: Union[str, tzinfo, None]) -> tzinfo:
    """
    Resolve a timezone name to a tzinfo.

    Accepts IANA names ('Asia/Kolkata'), 'UTC', 'GMT', 'Z' and fixed
    offsets ('GMT+5:30', 'UTC-03:00', '+0530'). None or an empty string
    resolves to UTC.

    Raises:
        InvalidScheduleError: If the name is not a known timezone
    """
    if isinstance(name, tzinfo):
        return name
    if name is None or not name.strip():
        return timezone.utc

    text = name.strip()
    if text.upper() in ('UTC', 'GMT', 'Z'):
        return timezone.utc

    match = _OFFSET_PATTERN.match(text)
    if match:
        sign, hours, minutes = match.group(1), int(match.group(2)), int(match.group(3) or 0)
        if hours > 18 or minutes > 59:
            raise InvalidScheduleError(f"Timezone offset out of range: '{text}'")
        offset = timedelta(hours=hours, minutes=minutes)
        if sign == '-':
            offset = -offset
        return timezone(offset, text)

    try:
        return ZoneInfo(text)
    except (ZoneInfoNotFoundError, ValueError, OSError) as e:
        raise InvalidScheduleError(f"Unknown timezone '{text}'") from e


def _timezone_name(value: Union[str, tzinfo, None]) -> str:
    if value is None:
        return DEFAULT_TIMEZONE
    if isinstance(value, tzinfo):
        return getattr(value, 'key', None) or str(value)
    return value.strip() or DEFAULT_TIMEZONE


def _nearest_weekday(year: int, month: int, day: int, last: int) -> int:
    """Weekday nearest to the given day without leaving the month."""
    weekday = date(year, month, day).weekday()
    if weekday == 5:
        return day - 1 if day > 1 else day + 2
    if weekday == 6:
        return day + 1 if day < last else day - 2
    return day


@dataclass(frozen=True)
class CronSchedule:
    """
    Parsed cron schedule bound to a timezone.

    Two schedules compare equal when they fire at the same times, which
    is also what ``parse(s.to_cron(), s.timezone) == s`` relies on.
    """
    second: CronField
    minute: CronField
    hour: CronField
    day_of_month: CronField
    month: CronField
    day_of_week: CronField
    year: CronField
    timezone: str = DEFAULT_TIMEZONE
    expression: str = field(default='', compare=False)
    zone: tzinfo = field(default=UTC, compare=False, repr=False)

    def __str__(self):
        return f"{self.expression or self.to_cron()} ({self.timezone})"

    def to_cron(self) -> str:
        """Equivalent 7-field Quartz expression."""
        return " ".join(
            f.to_text() for f in (
                self.second, self.minute, self.hour, self.day_of_month,
                self.month, self.day_of_week, self.year,
            )
        )

    def _dom_matches(self, day: date, last: int) -> bool:
        if day.day in self.day_of_month.values:
            return True
        for kind, value, _ in self.day_of_month.specials:
            if kind == LAST_DAY and day.day == last - value:
                return True
            if kind == LAST_WEEKDAY_OF_MONTH and \
                    day.day == _nearest_weekday(day.year, day.month, last, last):
                return True
            if kind == NEAREST_WEEKDAY and value <= last and \
                    day.day == _nearest_weekday(day.year, day.month, value, last):
                return True
        return False

    def _dow_matches(self, day: date, last: int) -> bool:
        weekday = _quartz_weekday(day.isoweekday())
        if weekday in self.day_of_week.values:
            return True
        for kind, value, nth in self.day_of_week.specials:
            if kind == LAST_DAY_OF_WEEK and weekday == value and day.day > last - 7:
                return True
            if kind == NTH_DAY_OF_WEEK and weekday == value and (day.day - 1) // 7 + 1 == nth:
                return True
        return False

    def matches_day(self, day: date) -> bool:
        """True if the date satisfies the day-of-month/day-of-week rules."""
        last = calendar.monthrange(day.year, day.month)[1]
        dom, dow = self.day_of_month, self.day_of_week
        if dom.restricted and dow.restricted:
            return self._dom_matches(day, last) or self._dow_matches(day, last)
        if dom.restricted:
            return self._dom_matches(day, last)
        if dow.restricted:
            return self._dow_matches(day, last)
        return True

    def _next_local(self, current: datetime) -> Optional[datetime]:
        """First naive wall-clock time >= current matching every field."""
        while current.year <= MAX_YEAR:
            if current.year not in self.year:
                year = self.year.next_value(current.year)
                if year is None:
                    return None
                current = datetime(year, 1, 1)
                continue

            if current.month not in self.month:
                month = self.month.next_value(current.month)
                if month is None:
                    current = datetime(current.year + 1, 1, 1)
                else:
                    current = datetime(current.year, month, 1)
                continue

            if not self.matches_day(current.date()):
                current = datetime(current.year, current.month, current.day) + timedelta(days=1)
                continue

            if current.hour not in self.hour:
                hour = self.hour.next_value(current.hour)
                if hour is None:
                    current = datetime(current.year, current.month, current.day) + timedelta(days=1)
                else:
                    current = current.replace(hour=hour, minute=0, second=0)
                continue

            if current.minute not in self.minute:
                minute = self.minute.next_value(current.minute)
                if minute is None:
                    current = current.replace(minute=0, second=0) + timedelta(hours=1)
                else:
                    current = current.replace(minute=minute, second=0)
                continue

            if current.second not in self.second:
                second = self.second.next_value(current.second)
                if second is None:
                    current = current.replace(second=0) + timedelta(minutes=1)
                else:
                    current = current.replace(second=second)
                continue

            return current
        return None

    def _exists(self, fire_time: datetime) -> bool:
        round_trip = fire_time.astimezone(timezone.utc).astimezone(self.zone)
        return round_trip.replace(tzinfo=None) == fire_time.replace(tzinfo=None)

    def next_fire_time(self, after: datetime) -> Optional[datetime]:
        """
        Earliest fire time strictly after the given instant.

        Args:
            after: Reference instant. Naive values are read as wall-clock
                time in the schedule's timezone.

        Returns:
            Aware datetime in the schedule's timezone, or None when the
            schedule has no future fire time.
        """
        if after.tzinfo is None:
            after = after.replace(tzinfo=self.zone)
        after_utc = after.astimezone(timezone.utc)
        local = after.astimezone(self.zone).replace(tzinfo=None, microsecond=0)

        candidate = local + timedelta(seconds=1)
        while True:
            naive = self._next_local(candidate)
            if naive is None:
                return None
            fire_time = naive.replace(tzinfo=self.zone)
            if self._exists(fire_time) and fire_time.astimezone(timezone.utc) > after_utc:
                return fire_time
            candidate = naive + timedelta(seconds=1)


def parse(expression: str, timezone: Union[str, tzinfo, None] = None) -> CronSchedule:
    """
    Parse a cron expression bound to a timezone.

    Args:
        expression: 5, 6 or 7 field cron expression
        timezone: Timezone name (see resolve_timezone); defaults to UTC

    Returns:
        Parsed CronSchedule

    Raises:
        InvalidScheduleError: If the expression or timezone is invalid
    """
    if not isinstance(expression, str) or not expression.strip():
        raise InvalidScheduleError("Cron expression must be a non-empty string")

    zone = resolve_timezone(timezone)
    parts = expression.split()

    try:
        if len(parts) == 5:
            second = CronField(SECOND.name, frozenset({0}))
            minute, hour, dom, month, dow = parts
            dow_field = _parse_field(dow, UNIX_DAY_OF_WEEK, 'dow', _quartz_weekday)
            year_field = _full_field(YEAR)
        elif len(parts) in (6, 7):
            second_text, minute, hour, dom, month, dow = parts[:6]
            second = _parse_field(second_text, SECOND)
            dow_field = _parse_field(dow, DAY_OF_WEEK, 'dow')
            year_field = _parse_field(parts[6], YEAR) if len(parts) == 7 else _full_field(YEAR)
        else:
            raise InvalidScheduleError(
                f"expected 5, 6 or 7 fields, got {len(parts)}"
            )

        return CronSchedule(
            second=second,
            minute=_parse_field(minute, MINUTE),
            hour=_parse_field(hour, HOUR),
            day_of_month=_parse_field(dom, DAY_OF_MONTH, 'dom'),
            month=_parse_field(month, MONTH),
            day_of_week=dow_field,
            year=year_field,
            timezone=_timezone_name(timezone),
            expression=" ".join(parts),
            zone=zone,
        )
    except InvalidScheduleError as e:
        raise InvalidScheduleError(f"Invalid cron expression '{expression}': {e}") from e


def is_valid(expression: str, timezone: Union[str, tzinfo, None] = None) -> bool:
    """Check whether an expression parses, without raising."""
    try:
        parse(expression, timezone)
        return True
    except InvalidScheduleError:
        return False
