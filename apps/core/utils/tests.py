from datetime import date, datetime, timezone as dt_timezone

from django.test import SimpleTestCase, override_settings

from . import dates


@override_settings(BILLING_TIME_ZONE='Australia/Brisbane')
class CivilDayTests(SimpleTestCase):
    def test_aware_datetime_uses_business_zone(self):
        late_utc = datetime(2026, 1, 14, 15, 0, tzinfo=dt_timezone.utc)
        self.assertEqual(dates.civil_day(late_utc), date(2026, 1, 15))

    def test_naive_datetime_keeps_its_calendar_day(self):
        self.assertEqual(dates.civil_day(datetime(2026, 1, 14, 23, 30)), date(2026, 1, 14))

    def test_day_key_and_timestamp_strings(self):
        self.assertEqual(dates.civil_day('2026-01-15'), date(2026, 1, 15))
        self.assertEqual(dates.civil_day('2026-01-14T15:00:00Z'), date(2026, 1, 15))
        self.assertEqual(dates.day_key(date(2026, 1, 5)), '2026-01-05')
        self.assertEqual(dates.from_day_key('2026-01-05'), date(2026, 1, 5))

    def test_unrecognised_values(self):
        with self.assertRaises(ValueError):
            dates.civil_day('not a date')
        with self.assertRaises(TypeError):
            dates.civil_day(20260115)
        self.assertIsNone(dates.civil_day(None))
        self.assertIsNone(dates.day_key(None))

    def test_arithmetic_runs_on_civil_days(self):
        self.assertEqual(dates.days_between(date(2026, 1, 1), '2026-01-15'), 14)
        self.assertEqual(dates.add_days('2026-01-31', 1), date(2026, 2, 1))
        self.assertEqual(dates.latest_day(None, date(2026, 1, 2), '2026-01-09'), date(2026, 1, 9))
        self.assertIsNone(dates.latest_day(None, None))

    def test_today_and_start_of_day(self):
        now = datetime(2026, 3, 1, 20, 0, tzinfo=dt_timezone.utc)
        self.assertEqual(dates.today(now), date(2026, 3, 2))

        midnight = dates.start_of_day(date(2026, 3, 2))
        self.assertEqual(midnight.utcoffset().total_seconds(), 10 * 3600)
        self.assertEqual((midnight.hour, midnight.minute), (0, 0))
