"""Cron expression parsing on top of APScheduler's ``CronTrigger``.

Expressions use the classic five-field crontab layout. The one place
where crontab and APScheduler disagree is day-of-week numbering
(crontab: 0 or 7 is Sunday; APScheduler: 0 is Monday), so numeric
weekdays are rewritten as names before they reach APScheduler.

When both day-of-month and day-of-week are restricted, crontab fires on
days matching either field while a single ``CronTrigger`` requires both,
so such expressions become an ``OrTrigger`` of one trigger per field.
"""

from __future__ import annotations

from datetime import datetime, timezone as dt_timezone
from typing import Any

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger

MACROS: dict[str, str] = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

# Index is the crontab weekday number; 7 is an alias for Sunday
_CRON_WEEKDAYS = ["sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun"]
_WEEKDAY_NAMES = _CRON_WEEKDAYS[:7]


def _weekday_number(token: str, expression: str) -> int:
    if token.isdigit():
        number = int(token)
        if 0 <= number <= 7:
            return number
    elif token[:3] in _WEEKDAY_NAMES:
        return _WEEKDAY_NAMES.index(token[:3])
    raise ValueError(f"Invalid day-of-week value {token!r} in '{expression}'")


def _translate_weekday_item(item: str, expression: str) -> list[str]:
    base, has_step, step_text = item.partition("/")
    step = 1
    if has_step:
        if not step_text.isdigit() or int(step_text) < 1:
            raise ValueError(f"Invalid day-of-week step {item!r} in '{expression}'")
        step = int(step_text)

    if base in ("*", "?"):
        start, end = 0, 6
    elif "-" in base:
        first, _, last = base.partition("-")
        start = _weekday_number(first, expression)
        end = _weekday_number(last, expression)
        # "sat-sun" style ranges end on Sunday
        if end == 0 and start > 0:
            end = 7
    else:
        start = _weekday_number(base, expression)
        end = 6 if has_step else start

    if start > end:
        raise ValueError(f"Invalid day-of-week range {item!r} in '{expression}'")

    return [_CRON_WEEKDAYS[day] for day in range(start, end + 1, step)]


def translate_day_of_week(field: str, expression: str = "") -> str:
    """Rewrite a crontab day-of-week field as APScheduler weekday names.

    >>> translate_day_of_week("1-5")
    'mon,tue,wed,thu,fri'
    >>> translate_day_of_week("0,6")
    'sun,sat'
    """
    field = field.strip().lower()
    if field in ("*", "?"):
        return "*"

    days: list[str] = []
    for item in field.split(","):
        item = item.strip()
        if not item:
            raise ValueError(f"Empty day-of-week item in '{expression or field}'")
        days.extend(_translate_weekday_item(item, expression or field))

    return ",".join(dict.fromkeys(days))


def _split_fields(expression: str) -> list[str]:
    stripped = expression.strip()
    if stripped.startswith("@"):
        if stripped.lower() not in MACROS:
            raise ValueError(f"Unsupported cron macro: '{expression}'")
        stripped = MACROS[stripped.lower()]

    parts = stripped.split()
    if len(parts) != 5:
        raise ValueError(f"Cron expression must have 5 fields, got {len(parts)}: '{expression}'")
    return parts


def _restricted(field: str) -> bool:
    # Vixie cron: a field starting with "*" (including "*/2") is unrestricted
    return not field.startswith("*") and field != "?"


def parse_cron_fields(expression: str) -> dict[str, str]:
    """Parse a crontab expression into ``CronTrigger`` keyword arguments.

    Supports the standard 5-field format ``minute hour day month day_of_week``
    and the ``@hourly``-style macros.

    Raises:
        ValueError: On a malformed expression.
    """
    parts = _split_fields(expression)
    return {
        "minute": parts[0],
        "hour": parts[1],
        "day": parts[2],
        "month": parts[3],
        "day_of_week": translate_day_of_week(parts[4], expression),
    }


def build_trigger(expression: str, timezone: Any = "UTC") -> BaseTrigger:
    """Build the APScheduler trigger for ``expression`` in ``timezone``.

    Returns a ``CronTrigger``, or an ``OrTrigger`` of two when both day
    fields are restricted (``0 0 1 * 1`` fires on the 1st and on Mondays).

    Raises:
        ValueError: When the expression or one of its fields is invalid.
    """
    fields = parse_cron_fields(expression)
    try:
        parts = _split_fields(expression)
        if _restricted(parts[2]) and _restricted(parts[4]):
            return OrTrigger([
                CronTrigger(**{**fields, "day_of_week": "*"}, timezone=timezone),
                CronTrigger(**{**fields, "day": "*"}, timezone=timezone),
            ])
        return CronTrigger(**fields, timezone=timezone)
    except ValueError as exc:
        raise ValueError(f"Invalid cron expression '{expression}': {exc}") from exc


def validate_cron_expression(expression: str) -> str:
    """Return ``expression`` unchanged if it builds a trigger, else raise ``ValueError``."""
    build_trigger(expression)
    return expression


def next_fire_times(
    expression: str,
    count: int = 5,
    start: datetime | None = None,
    timezone: Any = "UTC",
) -> list[datetime]:
    """The next ``count`` fire times of ``expression`` after ``start`` (default now)."""
    trigger = build_trigger(expression, timezone)
    now = start or datetime.now(dt_timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=dt_timezone.utc)

    fire_times: list[datetime] = []
    previous: datetime | None = None
    while len(fire_times) < count:
        fire_time = trigger.get_next_fire_time(previous, now)
        if fire_time is None:
            break
        fire_times.append(fire_time)
        previous = now = fire_time

    return fire_times
