# fynflow/core/scheduler/cron.py
"""
Five-field cron expressions: ``minute hour day month weekday``.

Each field is ``*``, a number, ``*/N``, ``a-b`` (optionally ``a-b/N``),
or a comma separated list of those. Weekday 0 is Sunday.

Day matching follows classic cron: when both the day-of-month and the
weekday field are restricted (do not start with ``*``), a day matches if
either field matches; otherwise both must match.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from functools import lru_cache

FIELD_NAMES: tuple[str, ...] = ('minute', 'hour', 'day', 'month', 'weekday')
FIELD_RANGES: tuple[tuple[int, int], ...] = (
    (0, 59),  # minute
    (0, 23),  # hour
    (1, 31),  # day of month
    (1, 12),  # month
    (0, 6),  # weekday (0=Sunday)
)

# Longest gap between matching days is a Feb 29 (8 years around 2100).
_MAX_SEARCH_DAYS = 366 * 9


class InvalidCronExpression(ValueError):
    """Raised when a cron expression cannot be parsed."""

    def __init__(self, expression: str, reason: str) -> None:
        super().__init__(f"invalid cron expression '{expression}': {reason}")
        self.expression = expression
        self.reason = reason


@dataclass(frozen=True)
class CronExpression:
    """Parsed cron expression, evaluated in UTC."""

    expression: str
    minutes: tuple[int, ...]
    hours: tuple[int, ...]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]
    day_restricted: bool
    weekday_restricted: bool

    def matches_date(self, value: date) -> bool:
        """Whether cron fires on this calendar date (at some hour/minute)."""
        if value.month not in self.months:
            return False
        day_ok = value.day in self.days
        # date.weekday(): Monday=0; cron: Sunday=0
        weekday_ok = (value.weekday() + 1) % 7 in self.weekdays
        if self.day_restricted and self.weekday_restricted:
            return day_ok or weekday_ok
        return day_ok and weekday_ok

    def matches(self, value: datetime) -> bool:
        """Whether ``value`` (converted to UTC) falls on a cron slot."""
        utc = value.astimezone(timezone.utc) if value.tzinfo else value
        return (
            utc.minute in self.minutes
            and utc.hour in self.hours
            and self.matches_date(utc.date())
        )

    def next_after(self, from_time: datetime) -> datetime:
        """Return the first slot strictly after ``from_time`` as a UTC datetime."""
        if from_time.tzinfo is None:
            raise ValueError('from_time must be timezone-aware')

        start = from_time.astimezone(timezone.utc).replace(
            second=0, microsecond=0
        ) + timedelta(minutes=1)
        start_date = start.date()

        for day_offset in range(_MAX_SEARCH_DAYS):
            candidate_date = start_date + timedelta(days=day_offset)
            if not self.matches_date(candidate_date):
                continue
            same_day = day_offset == 0
            for hour in self.hours:
                if same_day and hour < start.hour:
                    continue
                for minute in self.minutes:
                    if same_day and hour == start.hour and minute < start.minute:
                        continue
                    return datetime(
                        candidate_date.year,
                        candidate_date.month,
                        candidate_date.day,
                        hour,
                        minute,
                        tzinfo=timezone.utc,
                    )

        raise RuntimeError(
            f"Could not calculate next run for '{self.expression}' "
            f'within {_MAX_SEARCH_DAYS} days'
        )


def _parse_number(expression: str, token: str, field_name: str) -> int:
    if not token.isdigit():
        raise InvalidCronExpression(
            expression, f"{field_name} field has non-numeric value '{token}'"
        )
    return int(token)


def _parse_field(
    expression: str, value: str, field_name: str, low: int, high: int
) -> set[int]:
    """Parse a single cron field into the set of values it selects."""
    result: set[int] = set()
    for part in value.split(','):
        if not part:
            raise InvalidCronExpression(
                expression, f'{field_name} field has an empty list element'
            )

        step = 1
        if '/' in part:
            base, step_token = part.split('/', 1)
            step = _parse_number(expression, step_token, field_name)
            if step == 0:
                raise InvalidCronExpression(
                    expression, f'{field_name} field has a zero step'
                )
        else:
            base = part

        if base == '*':
            start, end = low, high
        elif '-' in base:
            start_token, end_token = base.split('-', 1)
            start = _parse_number(expression, start_token, field_name)
            end = _parse_number(expression, end_token, field_name)
            if start > end:
                raise InvalidCronExpression(
                    expression, f"{field_name} range '{base}' is reversed"
                )
        else:
            if '/' in part:
                # 'a/N' is not part of the accepted grammar
                raise InvalidCronExpression(
                    expression,
                    f"{field_name} step '{part}' must apply to '*' or a range",
                )
            start = end = _parse_number(expression, base, field_name)

        if start < low or end > high:
            raise InvalidCronExpression(
                expression,
                f'{field_name} value out of range {low}-{high} in {part!r}',
            )
        result.update(range(start, end + 1, step))
    return result


@lru_cache(maxsize=256)
def parse_cron(expression: str) -> CronExpression:
    """Parse and validate a five-field cron expression.

    Raises:
        InvalidCronExpression: On syntax errors, out-of-range values, or
            expressions that can never fire (e.g. ``0 0 31 2 *``).
    """
    fields = expression.split()
    if len(fields) != 5:
        raise InvalidCronExpression(
            expression, f'expected 5 fields, got {len(fields)}'
        )

    parsed = [
        _parse_field(expression, value, name, low, high)
        for value, name, (low, high) in zip(fields, FIELD_NAMES, FIELD_RANGES)
    ]
    minutes, hours, days, months, weekdays = parsed

    day_restricted = not fields[2].startswith('*')
    weekday_restricted = not fields[4].startswith('*')

    if day_restricted and not weekday_restricted:
        # Leap-year February, so '29 2' stays valid
        longest = max(calendar.monthrange(2024, m)[1] for m in months)
        if min(days) > longest:
            raise InvalidCronExpression(
                expression, 'day-of-month never occurs in the selected months'
            )

    return CronExpression(
        expression=expression,
        minutes=tuple(sorted(minutes)),
        hours=tuple(sorted(hours)),
        days=frozenset(days),
        months=frozenset(months),
        weekdays=frozenset(weekdays),
        day_restricted=day_restricted,
        weekday_restricted=weekday_restricted,
    )


def is_valid_cron(expression: str) -> bool:
    """Return True if ``expression`` parses as a five-field cron expression."""
    try:
        parse_cron(expression)
    except InvalidCronExpression:
        return False
    return True
