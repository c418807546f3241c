"""Civil-day helpers.

Billing works on calendar days in one business zone (``BILLING_TIME_ZONE``).
Anything that looks like a point in time is converted to that zone's calendar
day before it is compared or shifted, so "today", watermarks and holiday
ranges all line up regardless of the server zone.
"""
from __future__ import annotations

from datetime import date, datetime, time, timedelta
from functools import lru_cache
from zoneinfo import ZoneInfo

from django.conf import settings
from django.utils import timezone
from django.utils.dateparse import parse_datetime


DAY_KEY_FORMAT = '%Y-%m-%d'


@lru_cache(maxsize=8)
def _zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def billing_timezone() -> ZoneInfo:
    return _zone(getattr(settings, 'BILLING_TIME_ZONE', settings.TIME_ZONE))


def civil_day(value) -> date | None:
    """Return the business-zone calendar day for a date, datetime or day key."""
    if value is None:
        return None

    if isinstance(value, str):
        text = value.strip()
        if len(text) == 10:
            return date.fromisoformat(text)
        parsed = parse_datetime(text)
        if parsed is None:
            raise ValueError(f'Unrecognised date value: {value!r}')
        value = parsed

    if isinstance(value, datetime):
        if timezone.is_naive(value):
            # Naive datetimes are already business wall-clock time.
            return value.date()
        return timezone.localtime(value, billing_timezone()).date()

    if isinstance(value, date):
        return value

    raise TypeError(f'Cannot convert {type(value).__name__} to a civil day.')


def day_key(value) -> str | None:
    day = civil_day(value)
    return day.strftime(DAY_KEY_FORMAT) if day else None


def from_day_key(key: str) -> date:
    return datetime.strptime(key, DAY_KEY_FORMAT).date()


def add_days(value, days: int) -> date:
    return civil_day(value) + timedelta(days=days)


def days_between(start, end) -> int:
    return (civil_day(end) - civil_day(start)).days


def today(now=None) -> date:
    return civil_day(now or timezone.now())


def start_of_day(value) -> datetime:
    """Midnight of the civil day, as an aware datetime in the business zone."""
    return datetime.combine(civil_day(value), time.min, tzinfo=billing_timezone())


def latest_day(*values) -> date | None:
    days = [civil_day(value) for value in values if value is not None]
    return max(days) if days else None
