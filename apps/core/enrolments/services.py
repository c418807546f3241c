from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, timedelta

from django.core.exceptions import ValidationError

from apps.core.billing.exceptions import ScheduleResolutionError
from apps.core.schedule.models import SATURDAY
from apps.core.schedule.services import build_occurrence_schedule, consume_occurrences_for_credits
from apps.core.utils.dates import civil_day, days_between, latest_day

from .models import BillingPlan


@dataclass(frozen=True)
class CoverageWindow:
    coverage_start: date | None
    coverage_end: date | None
    coverage_end_base: date | None
    sessions: int


@dataclass(frozen=True)
class BlockPricing:
    total_cents: int
    per_class_cents: int
    last_class_cents: int
    class_count: int

    @property
    def unit_prices(self):
        if self.class_count <= 0:
            return []
        return [self.per_class_cents] * (self.class_count - 1) + [self.last_class_cents]


def resolve_sessions_per_week(sessions_per_week) -> int:
    return sessions_per_week if sessions_per_week and sessions_per_week > 0 else 1


def limit_weekly_templates(templates, sessions_per_week):
    """One slot per weekday, earliest weekdays first, capped at the plan cadence."""
    seen = set()
    unique = []
    for template in templates:
        if template.day_of_week is None or template.day_of_week in seen:
            continue
        seen.add(template.day_of_week)
        unique.append(template)

    if not sessions_per_week or sessions_per_week <= 0 or len(unique) <= sessions_per_week:
        return unique
    return sorted(unique, key=lambda template: template.day_of_week)[:sessions_per_week]


def resolve_weekly_coverage_start(*, enrolment_start, paid_through, today) -> date:
    next_after_paid = civil_day(paid_through) + timedelta(days=1) if paid_through else None
    return latest_day(enrolment_start, next_after_paid, today)


def resolve_weekly_coverage(
    *,
    enrolment_start,
    enrolment_end,
    paid_through,
    today,
    duration_weeks,
    sessions_per_week,
    templates,
    holidays=(),
    cancellations=(),
) -> CoverageWindow:
    if not duration_weeks or duration_weeks <= 0:
        raise ValidationError('Weekly plans require durationWeeks to be greater than zero.')

    cadence = resolve_sessions_per_week(sessions_per_week)
    sessions = duration_weeks * cadence
    slots = limit_weekly_templates(templates, cadence)
    start = resolve_weekly_coverage_start(enrolment_start=enrolment_start, paid_through=paid_through, today=today)

    occurrences = build_occurrence_schedule(
        start_date=start,
        end_date=enrolment_end,
        templates=slots,
        cancellations=cancellations,
        holidays=holidays,
        occurrences_needed=sessions,
        sessions_per_week=cadence,
    )
    consumed = consume_occurrences_for_credits(occurrences, sessions)
    if consumed.paid_through is None:
        raise ScheduleResolutionError('Unable to resolve coverage end for this enrolment.')

    baseline = build_occurrence_schedule(
        start_date=start,
        end_date=enrolment_end,
        templates=slots,
        occurrences_needed=sessions,
        sessions_per_week=cadence,
    )
    base_consumed = consume_occurrences_for_credits(baseline, sessions)

    return CoverageWindow(
        coverage_start=occurrences[0].date,
        coverage_end=consumed.paid_through,
        coverage_end_base=base_consumed.paid_through or consumed.paid_through,
        sessions=consumed.covered,
    )


def resolve_block_coverage(
    *,
    enrolment_start,
    enrolment_end,
    paid_through,
    credits,
    templates,
    holidays=(),
    cancellations=(),
) -> CoverageWindow:
    """Display range for a block purchase. Empty when it cannot be placed."""
    empty = CoverageWindow(coverage_start=None, coverage_end=None, coverage_end_base=None, sessions=0)
    if credits <= 0:
        return empty

    start = civil_day(paid_through) + timedelta(days=1) if paid_through else civil_day(enrolment_start)
    try:
        occurrences = build_occurrence_schedule(
            start_date=start,
            end_date=enrolment_end,
            templates=templates,
            cancellations=cancellations,
            holidays=holidays,
            occurrences_needed=credits,
            sessions_per_week=len(templates) or 1,
        )
        baseline = build_occurrence_schedule(
            start_date=start,
            end_date=enrolment_end,
            templates=templates,
            occurrences_needed=credits,
            sessions_per_week=len(templates) or 1,
        )
    except ScheduleResolutionError:
        return empty

    if not occurrences:
        return empty

    consumed = consume_occurrences_for_credits(occurrences, credits)
    base_consumed = consume_occurrences_for_credits(baseline, credits)
    return CoverageWindow(
        coverage_start=occurrences[0].date,
        coverage_end=consumed.paid_through,
        coverage_end_base=base_consumed.paid_through,
        sessions=consumed.covered,
    )


def calculate_overdue_weeks(paid_through, today) -> int:
    if paid_through is None:
        return 1
    days_behind = days_between(paid_through, today)
    if days_behind <= 0:
        return 0
    return max(1, math.ceil(days_behind / 7))


def calculate_overdue_blocks(credits_remaining, block_class_count) -> int:
    credits = credits_remaining or 0
    if credits > 0:
        return 0
    block = max(block_class_count or 1, 1)
    return max(1, math.ceil(-credits / block))


def resolve_block_length(block_class_count) -> int:
    if block_class_count is None or block_class_count <= 0:
        raise ValidationError('PER_CLASS plans require blockClassCount to be greater than zero.')
    return block_class_count


def validate_custom_block_length(custom_block_length, plan_block_length):
    if custom_block_length is None:
        return None
    if isinstance(custom_block_length, bool) or not isinstance(custom_block_length, int):
        raise ValidationError('Custom block length must be an integer.')
    if custom_block_length < plan_block_length:
        raise ValidationError(
            f'Custom block length must be at least the plan block length ({plan_block_length}).'
        )
    return custom_block_length


def calculate_block_pricing(*, price_cents, block_length, custom_block_length=None) -> BlockPricing:
    """
    Price a block by class.

    The plan price is split into equal whole-cent units and the leftover
    cents ride on the last class, so the default block always totals exactly
    ``price_cents``. A longer custom block repeats the base unit for the extra
    classes and keeps the leftover on its last class.
    """
    block_length = resolve_block_length(block_length)
    class_count = custom_block_length or block_length
    per_class, remainder = divmod(price_cents, block_length)
    last_class = per_class + remainder
    return BlockPricing(
        total_cents=per_class * (class_count - 1) + last_class,
        per_class_cents=per_class,
        last_class_cents=last_class,
        class_count=class_count,
    )


def assert_plan_matches_templates(plan, templates):
    weekdays = {template.day_of_week for template in templates if template.day_of_week is not None}
    if not weekdays:
        return
    if plan.is_saturday_only and weekdays != {SATURDAY}:
        raise ValidationError('Saturday-only plans can only be used with Saturday classes.')
    cadence = resolve_sessions_per_week(plan.sessions_per_week)
    if cadence > len(weekdays):
        raise ValidationError(
            f'Plan requires {cadence} sessions per week but the enrolment has {len(weekdays)} class day(s).'
        )


def assert_weekly_plan_selection(*, plan, current_level_id, templates):
    if plan.billing_type != BillingPlan.TYPE_PER_WEEK:
        raise ValidationError('Only weekly plans can be selected for this enrolment.')
    if not plan.duration_weeks or plan.duration_weeks <= 0:
        raise ValidationError('Weekly plans require a valid duration.')
    if current_level_id is not None and plan.level_id != current_level_id:
        raise ValidationError('Selected plan must match the enrolment level.')
    assert_plan_matches_templates(plan, templates)


def filter_weekly_plan_options(*, plans, current_level_id, templates):
    options = []
    for plan in plans:
        try:
            assert_weekly_plan_selection(plan=plan, current_level_id=current_level_id, templates=templates)
        except ValidationError:
            continue
        options.append(plan)
    return options
