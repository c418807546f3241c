from datetime import date

from django.core.exceptions import ValidationError
from django.test import SimpleTestCase, TestCase

from apps.core.billing.exceptions import ScheduleResolutionError
from apps.core.billing.models import Invoice, InvoiceLineItem
from apps.core.billing.records import PlanRecord
from apps.core.families.models import Family, Student
from apps.core.schedule.services import HolidayRange, TemplateSlot

from .models import BillingPlan, Enrolment, EnrolmentCreditEvent
from .services import (
    assert_weekly_plan_selection,
    calculate_block_pricing,
    calculate_overdue_blocks,
    calculate_overdue_weeks,
    filter_weekly_plan_options,
    limit_weekly_templates,
    resolve_block_coverage,
    resolve_block_length,
    resolve_weekly_coverage,
    resolve_weekly_coverage_start,
    validate_custom_block_length,
)


MONDAY = TemplateSlot(template_id=1, day_of_week=0)
WEDNESDAY = TemplateSlot(template_id=2, day_of_week=2)
FRIDAY = TemplateSlot(template_id=3, day_of_week=4)
SATURDAY = TemplateSlot(template_id=4, day_of_week=5)


def weekly_plan(**overrides):
    fields = {
        'id': 10,
        'name': 'Term',
        'billing_type': BillingPlan.TYPE_PER_WEEK,
        'price_cents': 22000,
        'duration_weeks': 10,
        'sessions_per_week': 1,
    }
    fields.update(overrides)
    return PlanRecord(**fields)


class OverdueTests(SimpleTestCase):
    def test_weekly_overdue_rounds_up_to_whole_weeks(self):
        self.assertEqual(calculate_overdue_weeks(date(2026, 1, 1), date(2026, 1, 15)), 2)
        self.assertEqual(calculate_overdue_weeks(date(2026, 1, 1), date(2026, 1, 16)), 3)
        self.assertEqual(calculate_overdue_weeks(date(2026, 1, 14), date(2026, 1, 15)), 1)

    def test_weekly_covered_through_today_is_not_overdue(self):
        self.assertEqual(calculate_overdue_weeks(date(2026, 1, 15), date(2026, 1, 15)), 0)
        self.assertEqual(calculate_overdue_weeks(date(2026, 2, 1), date(2026, 1, 15)), 0)

    def test_weekly_without_watermark_is_one_period_overdue(self):
        self.assertEqual(calculate_overdue_weeks(None, date(2026, 1, 15)), 1)

    def test_block_overdue(self):
        self.assertEqual(calculate_overdue_blocks(-6, 5), 2)
        self.assertEqual(calculate_overdue_blocks(-5, 5), 1)
        self.assertEqual(calculate_overdue_blocks(0, 5), 1)
        self.assertEqual(calculate_overdue_blocks(3, 5), 0)
        self.assertEqual(calculate_overdue_blocks(-3, None), 3)


class BlockPricingTests(SimpleTestCase):
    def test_remainder_goes_to_last_class(self):
        pricing = calculate_block_pricing(price_cents=1000, block_length=3)

        self.assertEqual(pricing.per_class_cents, 333)
        self.assertEqual(pricing.last_class_cents, 334)
        self.assertEqual(pricing.unit_prices, [333, 333, 334])
        self.assertEqual(pricing.total_cents, 1000)
        self.assertEqual(sum(pricing.unit_prices), pricing.total_cents)

    def test_custom_block_repeats_base_unit(self):
        pricing = calculate_block_pricing(price_cents=1000, block_length=3, custom_block_length=5)

        self.assertEqual(pricing.class_count, 5)
        self.assertEqual(pricing.unit_prices, [333, 333, 333, 333, 334])
        self.assertEqual(pricing.total_cents, 1666)

    def test_even_split(self):
        pricing = calculate_block_pricing(price_cents=12500, block_length=5, custom_block_length=7)

        self.assertEqual(pricing.per_class_cents, 2500)
        self.assertEqual(pricing.total_cents, 17500)

    def test_block_length_validation(self):
        with self.assertRaises(ValidationError):
            resolve_block_length(None)
        with self.assertRaises(ValidationError):
            resolve_block_length(0)
        self.assertEqual(resolve_block_length(5), 5)

    def test_custom_block_length_validation(self):
        self.assertIsNone(validate_custom_block_length(None, 5))
        self.assertEqual(validate_custom_block_length(8, 5), 8)
        for invalid in (4, 6.5, '6', True):
            with self.subTest(invalid=invalid), self.assertRaises(ValidationError):
                validate_custom_block_length(invalid, 5)


class WeeklyCoverageTests(SimpleTestCase):
    def test_coverage_starts_at_latest_of_start_watermark_and_today(self):
        self.assertEqual(
            resolve_weekly_coverage_start(
                enrolment_start=date(2025, 1, 6),
                paid_through=date(2025, 2, 3),
                today=date(2025, 1, 20),
            ),
            date(2025, 2, 4),
        )
        self.assertEqual(
            resolve_weekly_coverage_start(
                enrolment_start=date(2025, 1, 6),
                paid_through=date(2025, 2, 3),
                today=date(2025, 3, 1),
            ),
            date(2025, 3, 1),
        )
        self.assertEqual(
            resolve_weekly_coverage_start(enrolment_start=date(2025, 1, 6), paid_through=None, today=date(2025, 1, 1)),
            date(2025, 1, 6),
        )

    def test_four_weeks_from_start(self):
        window = resolve_weekly_coverage(
            enrolment_start=date(2025, 1, 6),
            enrolment_end=None,
            paid_through=None,
            today=date(2025, 1, 6),
            duration_weeks=4,
            sessions_per_week=1,
            templates=[MONDAY],
        )

        self.assertEqual(window.coverage_start, date(2025, 1, 6))
        self.assertEqual(window.coverage_end, date(2025, 1, 27))
        self.assertEqual(window.coverage_end_base, date(2025, 1, 27))
        self.assertEqual(window.sessions, 4)

    def test_holiday_pushes_coverage_by_displaced_week_only(self):
        window = resolve_weekly_coverage(
            enrolment_start=date(2025, 1, 6),
            enrolment_end=None,
            paid_through=None,
            today=date(2025, 1, 6),
            duration_weeks=4,
            sessions_per_week=1,
            templates=[MONDAY],
            holidays=[HolidayRange(start_date=date(2025, 1, 13), end_date=date(2025, 1, 19))],
        )

        self.assertEqual(window.coverage_end, date(2025, 2, 3))
        self.assertEqual(window.coverage_end_base, date(2025, 1, 27))

    def test_two_sessions_per_week(self):
        window = resolve_weekly_coverage(
            enrolment_start=date(2025, 1, 6),
            enrolment_end=None,
            paid_through=None,
            today=date(2025, 1, 6),
            duration_weeks=4,
            sessions_per_week=2,
            templates=[MONDAY, WEDNESDAY, FRIDAY],
        )

        self.assertEqual(window.coverage_end, date(2025, 1, 29))
        self.assertEqual(window.sessions, 8)

    def test_weekly_requires_duration(self):
        with self.assertRaises(ValidationError):
            resolve_weekly_coverage(
                enrolment_start=date(2025, 1, 6),
                enrolment_end=None,
                paid_through=None,
                today=date(2025, 1, 6),
                duration_weeks=None,
                sessions_per_week=1,
                templates=[MONDAY],
            )

    def test_weekly_requires_template(self):
        with self.assertRaises(ScheduleResolutionError):
            resolve_weekly_coverage(
                enrolment_start=date(2025, 1, 6),
                enrolment_end=None,
                paid_through=None,
                today=date(2025, 1, 6),
                duration_weeks=4,
                sessions_per_week=1,
                templates=[],
            )

    def test_limit_weekly_templates_keeps_earliest_unique_weekdays(self):
        duplicate_monday = TemplateSlot(template_id=9, day_of_week=0)
        limited = limit_weekly_templates([WEDNESDAY, MONDAY, duplicate_monday, FRIDAY], 2)

        self.assertEqual(limited, [MONDAY, WEDNESDAY])


class BlockCoverageTests(SimpleTestCase):
    def test_block_coverage_range(self):
        window = resolve_block_coverage(
            enrolment_start=date(2025, 1, 6),
            enrolment_end=None,
            paid_through=None,
            credits=3,
            templates=[MONDAY],
        )

        self.assertEqual(window.coverage_start, date(2025, 1, 6))
        self.assertEqual(window.coverage_end, date(2025, 1, 20))

    def test_block_coverage_is_best_effort(self):
        window = resolve_block_coverage(
            enrolment_start=date(2025, 1, 6),
            enrolment_end=None,
            paid_through=None,
            credits=3,
            templates=[],
        )

        self.assertIsNone(window.coverage_start)
        self.assertIsNone(window.coverage_end)


class PlanSelectionTests(SimpleTestCase):
    def test_valid_weekly_plan(self):
        assert_weekly_plan_selection(plan=weekly_plan(), current_level_id=None, templates=[MONDAY])

    def test_rejects_block_plan(self):
        plan = weekly_plan(billing_type=BillingPlan.TYPE_PER_CLASS, block_class_count=5)
        with self.assertRaises(ValidationError):
            assert_weekly_plan_selection(plan=plan, current_level_id=None, templates=[MONDAY])

    def test_rejects_other_level(self):
        with self.assertRaises(ValidationError):
            assert_weekly_plan_selection(plan=weekly_plan(level_id=2), current_level_id=1, templates=[MONDAY])

    def test_rejects_cadence_above_class_days(self):
        with self.assertRaises(ValidationError):
            assert_weekly_plan_selection(plan=weekly_plan(sessions_per_week=2), current_level_id=None, templates=[MONDAY])

    def test_saturday_only_plans(self):
        plan = weekly_plan(is_saturday_only=True)
        assert_weekly_plan_selection(plan=plan, current_level_id=None, templates=[SATURDAY])
        with self.assertRaises(ValidationError):
            assert_weekly_plan_selection(plan=plan, current_level_id=None, templates=[MONDAY])

    def test_filter_weekly_plan_options(self):
        plans = [
            weekly_plan(id=1),
            weekly_plan(id=2, sessions_per_week=2),
            weekly_plan(id=3, duration_weeks=0),
            weekly_plan(id=4, level_id=7),
        ]

        options = filter_weekly_plan_options(plans=plans, current_level_id=7, templates=[MONDAY])

        self.assertEqual([plan.id for plan in options], [4])


class EnrolmentModelTests(TestCase):
    def setUp(self):
        self.family = Family.objects.create(name='Nguyen family')
        self.student = Student.objects.create(family=self.family, first_name='Lan')
        self.plan = BillingPlan.objects.create(
            name='Term',
            billing_type=BillingPlan.TYPE_PER_WEEK,
            price_cents=22000,
            duration_weeks=10,
            sessions_per_week=1,
        )
        self.enrolment = Enrolment.objects.create(
            student=self.student,
            plan=self.plan,
            start_date=date(2025, 1, 6),
        )

    def test_plan_requires_type_specific_fields(self):
        with self.assertRaises(ValidationError):
            BillingPlan.objects.create(name='Broken', billing_type=BillingPlan.TYPE_PER_WEEK, price_cents=100)
        with self.assertRaises(ValidationError):
            BillingPlan.objects.create(name='Broken', billing_type=BillingPlan.TYPE_PER_CLASS, price_cents=100)

    def test_invoiced_plan_pricing_is_locked(self):
        invoice = Invoice.objects.create(family=self.family, amount_cents=22000, status=Invoice.STATUS_PAID)
        InvoiceLineItem.objects.create(
            invoice=invoice,
            description='Term',
            unit_price_cents=22000,
            amount_cents=22000,
            plan=self.plan,
        )

        self.plan.name = 'Term (renamed)'
        self.plan.save()

        self.plan.price_cents = 25000
        with self.assertRaises(ValidationError):
            self.plan.save()

    def test_credit_events_are_append_only(self):
        event = EnrolmentCreditEvent.objects.create(
            enrolment=self.enrolment,
            event_type=EnrolmentCreditEvent.TYPE_PURCHASE,
            credits_delta=5,
            occurred_on=date(2025, 1, 6),
        )

        event.credits_delta = 50
        with self.assertRaises(ValidationError):
            event.save()
        with self.assertRaises(ValidationError):
            event.delete()

    def test_for_family_follows_student(self):
        other = Family.objects.create(name='Other family')

        self.assertEqual(list(Enrolment.objects.for_family(self.family)), [self.enrolment])
        self.assertFalse(Enrolment.objects.for_family(other).exists())
