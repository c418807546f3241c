from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, Sequence

from django.conf import settings

from apps.core.billing.exceptions import ScheduleResolutionError
from apps.core.utils.dates import civil_day

from .models import DAY_CHOICES


logger = logging.getLogger(__name__)

DAY_LABELS = dict(DAY_CHOICES)
ONE_WEEK = timedelta(days=7)


@dataclass(frozen=True)
class TemplateSlot:
    template_id: object
    day_of_week: int | None
    start_date: date | None = None
    end_date: date | None = None
    level_id: object = None
    name: str = ''


@dataclass(frozen=True)
class HolidayRange:
    start_date: date
    end_date: date
    template_id: object = None
    level_id: object = None

    def applies_to(self, slot: TemplateSlot) -> bool:
        if self.template_id is not None:
            return self.template_id == slot.template_id
        if self.level_id is not None:
            return self.level_id == slot.level_id
        return True

    def covers(self, day: date) -> bool:
        return civil_day(self.start_date) <= day <= civil_day(self.end_date)


@dataclass(frozen=True)
class Cancellation:
    template_id: object
    date: date


@dataclass(frozen=True, order=True)
class Occurrence:
    date: date
    slot_order: int
    template_id: object = None


@dataclass(frozen=True)
class CreditConsumption:
    paid_through: date | None
    next_due: date | None
    remaining: int
    covered: int


def weekday_label(target_date: date) -> str:
    return DAY_LABELS[target_date.weekday()]


def week_range(anchor_date: date):
    monday = anchor_date - timedelta(days=anchor_date.weekday())
    return monday, monday + timedelta(days=6)


def next_weekday_on_or_after(start: date, day_of_week: int) -> date:
    return start + timedelta(days=(day_of_week % 7 - start.weekday()) % 7)


def _max_horizon_weeks() -> int:
    return getattr(settings, 'BILLING_MAX_HORIZON_WEEKS', 520)


def _buffer_weeks() -> int:
    return getattr(settings, 'BILLING_HORIZON_BUFFER_WEEKS', 4)


def resolve_occurrence_horizon(*, start_date, occurrences_needed, sessions_per_week, end_date=None, buffer_weeks=None):
    start = civil_day(start_date)
    cadence = max(1, sessions_per_week or 1)
    weeks_to_cover = max(1, -(-max(occurrences_needed, 1) // cadence))
    if buffer_weeks is None:
        buffer_weeks = _buffer_weeks()
    projected = start + timedelta(weeks=weeks_to_cover + buffer_weeks)
    end = civil_day(end_date)
    if end and projected > end:
        return end
    return projected


def _walk(start: date, limit: date, slots: Sequence[TemplateSlot], cancelled: set, holidays: Sequence[HolidayRange]):
    seen = set()
    occurrences = []
    for order, slot in enumerate(slots):
        window_start = max(start, civil_day(slot.start_date)) if slot.start_date else start
        window_limit = min(limit, civil_day(slot.end_date)) if slot.end_date else limit
        if window_start > window_limit:
            continue

        closures = [holiday for holiday in holidays if holiday.applies_to(slot)]
        cursor = next_weekday_on_or_after(window_start, slot.day_of_week)
        while cursor <= window_limit:
            key = (slot.template_id, cursor)
            if key not in seen and key not in cancelled and not any(h.covers(cursor) for h in closures):
                seen.add(key)
                occurrences.append(Occurrence(date=cursor, slot_order=order, template_id=slot.template_id))
            cursor += ONE_WEEK

    occurrences.sort()
    return occurrences


def build_occurrence_schedule(
    *,
    start_date,
    templates: Iterable[TemplateSlot],
    occurrences_needed: int,
    sessions_per_week: int = 1,
    cancellations: Iterable[Cancellation] = (),
    holidays: Iterable[HolidayRange] = (),
    end_date=None,
    horizon=None,
    buffer_weeks=None,
) -> list[Occurrence]:
    """
    Walk the weekly slots forward from ``start_date`` and return the billable
    occurrences in calendar order.

    Holidays and cancellations consume weeks without yielding an occurrence,
    so the horizon keeps growing until ``occurrences_needed`` dates exist. The
    walk stops early only at ``end_date``, when every slot has ended, or at an
    explicit ``horizon``.
    """
    start = civil_day(start_date)
    end = civil_day(end_date)
    slots = [slot for slot in templates if slot.day_of_week is not None]
    if not slots:
        raise ScheduleResolutionError('No recurring class template is configured for this enrolment.')

    cancelled = {(item.template_id, civil_day(item.date)) for item in cancellations}
    holidays = list(holidays)

    if horizon is not None:
        return _walk(start, civil_day(horizon), slots, cancelled, holidays)

    limit = resolve_occurrence_horizon(
        start_date=start,
        end_date=end,
        occurrences_needed=occurrences_needed,
        sessions_per_week=sessions_per_week,
        buffer_weeks=buffer_weeks,
    )
    slot_ends = [civil_day(slot.end_date) for slot in slots]
    last_slot_day = max(slot_ends) if all(slot_ends) else None
    max_limit = start + timedelta(weeks=_max_horizon_weeks())

    while True:
        occurrences = _walk(start, limit, slots, cancelled, holidays)
        if len(occurrences) >= occurrences_needed:
            return occurrences
        if (end and limit >= end) or (last_slot_day and limit >= last_slot_day):
            return occurrences
        if limit >= max_limit:
            raise ScheduleResolutionError(
                f'Could not find {occurrences_needed} class occurrences after {start.isoformat()} '
                f'within {_max_horizon_weeks()} weeks.'
            )

        extension = max((limit - start).days // 7, 4)
        limit = min(limit + timedelta(weeks=extension), max_limit)
        if end:
            limit = min(limit, end)
        logger.debug('Extending occurrence horizon to %s (have %s of %s)', limit, len(occurrences), occurrences_needed)


def occurrence_day(occurrence) -> date:
    return occurrence.date if isinstance(occurrence, Occurrence) else civil_day(occurrence)


def consume_occurrences_for_credits(occurrences: Sequence, credits: int) -> CreditConsumption:
    remaining = credits
    paid_through = None
    next_due = None
    covered = 0

    for occurrence in occurrences:
        if remaining <= 0:
            next_due = occurrence_day(occurrence)
            break
        paid_through = occurrence_day(occurrence)
        covered += 1
        remaining -= 1

    return CreditConsumption(paid_through=paid_through, next_due=next_due, remaining=max(remaining, 0), covered=covered)
