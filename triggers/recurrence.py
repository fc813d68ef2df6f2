"""Next-occurrence maths for recurring reminders and alarms.

Everything here is pure: the caller passes in the current time. Arithmetic is
done on wall-clock time so a daily 09:00 reminder stays at 09:00 across DST
changes.
"""

from calendar import monthrange
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from dateutil.relativedelta import relativedelta

from . import config
from .types import DAY_ABBREVIATIONS, EVERY_DAY, WEEKDAYS, WEEKENDS, RecurrenceRule, RecurrenceType


def next_occurrence(
    current: datetime,
    rule: Optional[RecurrenceRule],
    occurrence_count: int = 0,
) -> Optional[datetime]:
    """Calculate the occurrence after `current`.

    Args:
        current: The current (or last) occurrence
        rule: Recurrence rule, None means one-shot
        occurrence_count: Occurrences already fired, checked against max_occurrences

    Returns:
        The next occurrence, or None if the rule has ended
    """
    if rule is None or not rule.is_recurring:
        return None

    if rule.max_occurrences is not None and occurrence_count >= rule.max_occurrences:
        return None

    if rule.end_date is not None and current > rule.end_date:
        return None

    if rule.type == RecurrenceType.DAILY:
        candidate = _next_daily(current, rule.interval)
    elif rule.type == RecurrenceType.WEEKLY:
        candidate = _next_weekly(current, rule.interval, rule.days_of_week)
    elif rule.type == RecurrenceType.MONTHLY:
        candidate = _next_monthly(current, rule.interval, rule.day_of_month)
    elif rule.type == RecurrenceType.YEARLY:
        candidate = _next_yearly(current, rule.interval)
    else:
        candidate = _next_custom(current, rule)

    if rule.end_date is not None and candidate > rule.end_date:
        return None

    return candidate


def next_occurrence_after(
    current: datetime,
    rule: Optional[RecurrenceRule],
    now: datetime,
    occurrence_count: int = 0,
) -> Optional[datetime]:
    """Advance through the rule until the occurrence is strictly after `now`.

    Occurrences that fell in the past (device off, late delivery) are skipped
    rather than fired in a burst.
    """
    candidate = next_occurrence(current, rule, occurrence_count)
    iterations = 0
    while candidate is not None and candidate <= now:
        iterations += 1
        if iterations > config.MAX_RANGE_ITERATIONS * 10:
            return None
        candidate = next_occurrence(candidate, rule, occurrence_count)
    return candidate


def _next_daily(current: datetime, interval: int) -> datetime:
    return current + relativedelta(days=interval)


def _next_weekly(current: datetime, interval: int, days_of_week: Optional[tuple[int, ...]]) -> datetime:
    if not days_of_week:
        return current + relativedelta(weeks=interval)

    today = current.isoweekday()
    later = [d for d in days_of_week if d > today]
    if later:
        return current + relativedelta(days=later[0] - today)

    # Wrapped into a new week: first matching day, then skip interval-1 weeks
    days_ahead = (7 - today) + days_of_week[0] + 7 * (interval - 1)
    return current + relativedelta(days=days_ahead)


def _clamp_day(value: datetime, day_of_month: int) -> datetime:
    last_day = monthrange(value.year, value.month)[1]
    return value.replace(day=min(day_of_month, last_day))


def _next_monthly(current: datetime, interval: int, day_of_month: Optional[int]) -> datetime:
    candidate = current + relativedelta(months=interval)
    if day_of_month is None:
        return candidate

    candidate = _clamp_day(candidate, day_of_month)
    if candidate <= current:
        candidate = _clamp_day(candidate + relativedelta(months=interval, day=1), day_of_month)
    return candidate


def _next_yearly(current: datetime, interval: int) -> datetime:
    # relativedelta clamps Feb 29 to Feb 28 in non-leap years
    return current + relativedelta(years=interval)


def _next_custom(current: datetime, rule: RecurrenceRule) -> datetime:
    if rule.days_of_week:
        return _next_weekly(current, rule.interval, rule.days_of_week)
    if rule.day_of_month is not None:
        return _next_monthly(current, rule.interval, rule.day_of_month)
    return _next_daily(current, rule.interval)


def occurrences_in_range(
    rule: Optional[RecurrenceRule],
    start_time: datetime,
    range_start: date,
    range_end: date,
) -> list[datetime]:
    """Expand a rule into concrete occurrences for calendar display.

    Both range bounds are inclusive calendar days. Expansion stops after
    MAX_RANGE_ITERATIONS steps.
    """
    if rule is None or not rule.is_recurring:
        return []

    occurrences = []
    current = start_time
    iterations = 0

    while current.date() <= range_end and iterations < config.MAX_RANGE_ITERATIONS:
        if current.date() >= range_start:
            occurrences.append(current)

        nxt = next_occurrence(current, rule)
        if nxt is None or nxt == current:
            break
        current = nxt
        iterations += 1

    return occurrences


def matches_date(rule: Optional[RecurrenceRule], day: date, start_day: date) -> bool:
    """Check whether a calendar day carries an occurrence of the rule."""
    if rule is None or not rule.is_recurring:
        return False

    if rule.type == RecurrenceType.DAILY:
        delta = (day - start_day).days
        return delta >= 0 and delta % rule.interval == 0

    if rule.type == RecurrenceType.WEEKLY:
        return bool(rule.days_of_week) and day.isoweekday() in rule.days_of_week

    if rule.type == RecurrenceType.MONTHLY:
        if rule.day_of_month is None:
            return False
        last_day = monthrange(day.year, day.month)[1]
        if rule.day_of_month == day.day:
            return True
        return rule.day_of_month > last_day and day.day == last_day

    if rule.type == RecurrenceType.YEARLY:
        return day.month == start_day.month and day.day == start_day.day

    return False


def next_alarm_trigger(hour: int, minute: int, repeat_days: Iterable[int], now: datetime) -> datetime:
    """Next local time at hh:mm strictly after `now`.

    For repeating alarms the result lands on one of `repeat_days`.
    """
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)

    days = set(repeat_days)
    if days:
        for _ in range(7):
            if candidate.isoweekday() in days:
                break
            candidate += timedelta(days=1)

    return candidate


def describe(rule: Optional[RecurrenceRule]) -> str:
    """Human-readable summary, e.g. "Every 2 weeks on Mon, Wed"."""
    if rule is None or rule.type == RecurrenceType.NONE:
        return "Does not repeat"

    if rule.type == RecurrenceType.DAILY:
        return "Daily" if rule.interval == 1 else f"Every {rule.interval} days"

    if rule.type == RecurrenceType.WEEKLY:
        days = rule.days_of_week
        if not days:
            days_str = "Weekly"
        elif days == WEEKDAYS:
            days_str = "Weekdays"
        elif days == WEEKENDS:
            days_str = "Weekends"
        elif days == EVERY_DAY:
            days_str = "Every day"
        else:
            days_str = ", ".join(DAY_ABBREVIATIONS[d] for d in days)
        return days_str if rule.interval == 1 else f"Every {rule.interval} weeks on {days_str}"

    if rule.type == RecurrenceType.MONTHLY:
        suffix = f" on day {rule.day_of_month}" if rule.day_of_month else ""
        if rule.interval == 1:
            return f"Monthly{suffix}"
        return f"Every {rule.interval} months{suffix}"

    if rule.type == RecurrenceType.YEARLY:
        return "Yearly" if rule.interval == 1 else f"Every {rule.interval} years"

    return "Custom"
