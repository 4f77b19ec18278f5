"""Standard 5-field crontab expressions on top of APScheduler's CronTrigger.

APScheduler numbers weekdays from Monday (0) while crontab numbers them from
Sunday (0 or 7), so the day-of-week field is rewritten to weekday names
before the trigger is built.
"""

from __future__ import annotations

from datetime import tzinfo

from apscheduler.triggers.cron import CronTrigger

DAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")


def _day_value(token: str) -> int:
    token = token.strip().lower()
    if token in DAY_NAMES:
        return DAY_NAMES.index(token)
    if token.isdigit() and int(token) <= 7:
        return int(token)
    raise ValueError(f"invalid day of week: {token!r}")


def translate_day_of_week(field: str) -> str:
    """Rewrite a crontab day-of-week field (0/7 = Sunday) as weekday names."""
    if field == "*":
        return field

    days: set[int] = set()
    for item in field.split(","):
        base, _, step_text = item.partition("/")
        step = 1
        if step_text:
            if not step_text.isdigit() or int(step_text) < 1:
                raise ValueError(f"invalid day-of-week step: {item!r}")
            step = int(step_text)

        if base == "*":
            first, last = 0, 6
        elif "-" in base:
            start, end = base.split("-", 1)
            first, last = _day_value(start), _day_value(end)
        else:
            first = _day_value(base)
            last = 6 if step_text else first

        if first > last:
            raise ValueError(f"day-of-week range runs backwards: {item!r}")
        days.update(day % 7 for day in range(first, last + 1, step))

    return ",".join(DAY_NAMES[day] for day in sorted(days))


def crontab_trigger(expression: str, timezone: tzinfo | str | None = None) -> CronTrigger:
    """Build a CronTrigger from ``minute hour day month day_of_week``."""
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"cron expression must have exactly 5 fields, got {len(fields)}")
    minute, hour, day, month, day_of_week = fields
    return CronTrigger(
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=translate_day_of_week(day_of_week),
        timezone=timezone,
    )
