from datetime import date

from django.core.exceptions import ValidationError
from django.test import SimpleTestCase, TestCase, override_settings

from apps.core.billing.exceptions import ScheduleResolutionError

from .models import ClassCancellation, ClassTemplate
from .services import (
    Cancellation,
    HolidayRange,
    TemplateSlot,
    build_occurrence_schedule,
    consume_occurrences_for_credits,
    next_weekday_on_or_after,
    resolve_occurrence_horizon,
    week_range,
)


MONDAY = TemplateSlot(template_id='mon', day_of_week=0, name='Monday juniors')
WEDNESDAY = TemplateSlot(template_id='wed', day_of_week=2, name='Wednesday juniors')


def _dates(occurrences):
    return [occurrence.date for occurrence in occurrences]


class OccurrenceScheduleTests(SimpleTestCase):
    def test_two_templates_interleave_by_calendar_date(self):
        occurrences = build_occurrence_schedule(
            start_date=date(2025, 1, 6),
            templates=[WEDNESDAY, MONDAY],
            occurrences_needed=8,
            sessions_per_week=2,
        )

        self.assertEqual(
            _dates(occurrences)[:8],
            [
                date(2025, 1, 6),
                date(2025, 1, 8),
                date(2025, 1, 13),
                date(2025, 1, 15),
                date(2025, 1, 20),
                date(2025, 1, 22),
                date(2025, 1, 27),
                date(2025, 1, 29),
            ],
        )
        self.assertEqual(consume_occurrences_for_credits(occurrences, 8).paid_through, date(2025, 1, 29))

    def test_holiday_week_is_skipped_and_walk_extends(self):
        occurrences = build_occurrence_schedule(
            start_date=date(2025, 1, 6),
            templates=[MONDAY],
            holidays=[HolidayRange(start_date=date(2025, 1, 13), end_date=date(2025, 1, 19))],
            occurrences_needed=4,
        )

        self.assertEqual(
            _dates(occurrences)[:4],
            [date(2025, 1, 6), date(2025, 1, 20), date(2025, 1, 27), date(2025, 2, 3)],
        )

    def test_cancellation_only_matches_its_own_template(self):
        occurrences = build_occurrence_schedule(
            start_date=date(2025, 1, 6),
            templates=[MONDAY, WEDNESDAY],
            cancellations=[Cancellation(template_id='wed', date=date(2025, 1, 8))],
            occurrences_needed=4,
            sessions_per_week=2,
        )

        self.assertEqual(
            _dates(occurrences)[:4],
            [date(2025, 1, 6), date(2025, 1, 13), date(2025, 1, 15), date(2025, 1, 20)],
        )

    def test_scoped_holiday_only_closes_matching_template_or_level(self):
        junior_monday = TemplateSlot(template_id='jm', day_of_week=0, level_id=1)
        senior_wednesday = TemplateSlot(template_id='sw', day_of_week=2, level_id=2)

        occurrences = build_occurrence_schedule(
            start_date=date(2025, 1, 6),
            templates=[junior_monday, senior_wednesday],
            holidays=[
                HolidayRange(start_date=date(2025, 1, 6), end_date=date(2025, 1, 12), level_id=1),
                HolidayRange(start_date=date(2025, 1, 15), end_date=date(2025, 1, 15), template_id='sw'),
            ],
            occurrences_needed=0,
            horizon=date(2025, 1, 19),
        )

        self.assertEqual(
            [(occurrence.template_id, occurrence.date) for occurrence in occurrences],
            [('sw', date(2025, 1, 8)), ('jm', date(2025, 1, 13))],
        )

    def test_same_template_twice_does_not_duplicate_dates(self):
        occurrences = build_occurrence_schedule(
            start_date=date(2025, 1, 6),
            templates=[MONDAY, MONDAY],
            occurrences_needed=0,
            horizon=date(2025, 1, 20),
        )

        self.assertEqual(_dates(occurrences), [date(2025, 1, 6), date(2025, 1, 13), date(2025, 1, 20)])

    def test_enrolment_end_date_bounds_the_walk(self):
        occurrences = build_occurrence_schedule(
            start_date=date(2025, 1, 6),
            end_date=date(2025, 1, 20),
            templates=[MONDAY],
            occurrences_needed=10,
        )

        self.assertEqual(_dates(occurrences), [date(2025, 1, 6), date(2025, 1, 13), date(2025, 1, 20)])

    def test_template_window_bounds_the_walk(self):
        ending = TemplateSlot(template_id='t', day_of_week=0, start_date=date(2025, 1, 13), end_date=date(2025, 1, 27))

        occurrences = build_occurrence_schedule(
            start_date=date(2025, 1, 1),
            templates=[ending],
            occurrences_needed=10,
        )

        self.assertEqual(_dates(occurrences), [date(2025, 1, 13), date(2025, 1, 20), date(2025, 1, 27)])

    def test_long_closure_keeps_extending_the_horizon(self):
        occurrences = build_occurrence_schedule(
            start_date=date(2025, 1, 6),
            templates=[MONDAY],
            holidays=[HolidayRange(start_date=date(2025, 1, 6), end_date=date(2025, 6, 30))],
            occurrences_needed=2,
        )

        self.assertEqual(_dates(occurrences)[:2], [date(2025, 7, 7), date(2025, 7, 14)])

    def test_missing_weekday_raises(self):
        with self.assertRaises(ScheduleResolutionError):
            build_occurrence_schedule(
                start_date=date(2025, 1, 6),
                templates=[TemplateSlot(template_id='x', day_of_week=None)],
                occurrences_needed=1,
            )

    @override_settings(BILLING_MAX_HORIZON_WEEKS=52)
    def test_unreachable_target_raises(self):
        with self.assertRaises(ScheduleResolutionError):
            build_occurrence_schedule(
                start_date=date(2025, 1, 6),
                templates=[MONDAY],
                holidays=[HolidayRange(start_date=date(2025, 1, 1), end_date=date(2030, 12, 31))],
                occurrences_needed=1,
            )


class CreditConsumptionTests(SimpleTestCase):
    def setUp(self):
        self.occurrences = build_occurrence_schedule(
            start_date=date(2025, 1, 6),
            templates=[MONDAY],
            occurrences_needed=0,
            horizon=date(2025, 2, 3),
        )

    def test_consumes_one_credit_per_occurrence(self):
        result = consume_occurrences_for_credits(self.occurrences, 3)

        self.assertEqual(result.paid_through, date(2025, 1, 20))
        self.assertEqual(result.next_due, date(2025, 1, 27))
        self.assertEqual(result.covered, 3)
        self.assertEqual(result.remaining, 0)

    def test_more_credits_than_occurrences(self):
        result = consume_occurrences_for_credits(self.occurrences[:2], 5)

        self.assertEqual(result.paid_through, date(2025, 1, 13))
        self.assertIsNone(result.next_due)
        self.assertEqual(result.remaining, 3)

    def test_no_credits_covers_nothing(self):
        result = consume_occurrences_for_credits(self.occurrences, 0)

        self.assertIsNone(result.paid_through)
        self.assertEqual(result.next_due, date(2025, 1, 6))


class CalendarHelperTests(SimpleTestCase):
    def test_next_weekday_on_or_after(self):
        self.assertEqual(next_weekday_on_or_after(date(2025, 1, 7), 0), date(2025, 1, 13))
        self.assertEqual(next_weekday_on_or_after(date(2025, 1, 6), 0), date(2025, 1, 6))

    def test_week_range_runs_monday_to_sunday(self):
        self.assertEqual(week_range(date(2025, 1, 8)), (date(2025, 1, 6), date(2025, 1, 12)))

    def test_horizon_covers_needed_weeks_plus_buffer(self):
        horizon = resolve_occurrence_horizon(
            start_date=date(2025, 1, 6),
            occurrences_needed=8,
            sessions_per_week=2,
            buffer_weeks=4,
        )
        self.assertEqual(horizon, date(2025, 3, 3))

        bounded = resolve_occurrence_horizon(
            start_date=date(2025, 1, 6),
            end_date=date(2025, 2, 1),
            occurrences_needed=8,
            sessions_per_week=2,
            buffer_weeks=4,
        )
        self.assertEqual(bounded, date(2025, 2, 1))


class ClassCancellationModelTests(TestCase):
    def test_cancellation_must_fall_on_class_weekday(self):
        template = ClassTemplate.objects.create(name='Monday juniors', day_of_week=0)
        cancellation = ClassCancellation(template=template, date=date(2025, 1, 7))

        with self.assertRaises(ValidationError):
            cancellation.full_clean()

        cancellation.date = date(2025, 1, 6)
        cancellation.full_clean()
