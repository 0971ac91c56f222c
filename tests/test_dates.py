import pathlib
import sys
import time
import unittest
from datetime import date, datetime, timedelta, timezone

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from services.dates import normalize_date, parse_client_date


class NormalizeDateTests(unittest.TestCase):
    def test_day_first_date_truncates_to_midnight(self):
        self.assertEqual(normalize_date('19/08/2024', keep_time=False), '2024-08-19 00:00:00')

    def test_iso_timestamp_keeps_time(self):
        self.assertEqual(
            normalize_date('2024-08-19T14:30:00.000Z', keep_time=True),
            '2024-08-19 14:30:00',
        )

    def test_iso_timestamp_without_time_flag_drops_time(self):
        self.assertEqual(
            normalize_date('2024-08-19T14:30:00.000Z', keep_time=False),
            '2024-08-19 00:00:00',
        )

    def test_unparseable_value_is_logged_and_nulled(self):
        with self.assertLogs('services.dates', level='WARNING') as captured:
            self.assertIsNone(normalize_date('not-a-date', keep_time=True))
        self.assertIn('not-a-date', captured.output[0])

    def test_empty_values_resolve_to_none(self):
        self.assertIsNone(normalize_date(None, keep_time=True))
        self.assertIsNone(normalize_date('', keep_time=False))
        self.assertIsNone(normalize_date('   ', keep_time=False))

    def test_accepts_dot_and_dash_separators(self):
        self.assertEqual(normalize_date('19.08.2024', keep_time=False), '2024-08-19 00:00:00')
        self.assertEqual(normalize_date('19-08-2024', keep_time=False), '2024-08-19 00:00:00')
        self.assertEqual(normalize_date('5/1/2024', keep_time=False), '2024-01-05 00:00:00')

    def test_day_first_with_time_component(self):
        self.assertEqual(normalize_date('19/08/2024 09:15', keep_time=True), '2024-08-19 09:15:00')
        self.assertEqual(normalize_date('19/08/2024 09:15:42', keep_time=True), '2024-08-19 09:15:42')

    def test_impossible_calendar_day_is_rejected(self):
        with self.assertLogs('services.dates', level='WARNING'):
            self.assertIsNone(normalize_date('31/02/2024', keep_time=False))

    def test_offsets_are_converted_to_utc(self):
        self.assertEqual(
            normalize_date('2024-08-19T23:30:00-05:00', keep_time=True),
            '2024-08-20 04:30:00',
        )

    def test_naive_iso_values_are_not_shifted(self):
        self.assertEqual(normalize_date('2024-08-19T23:30:00', keep_time=True), '2024-08-19 23:30:00')
        self.assertEqual(normalize_date('2024-08-19', keep_time=True), '2024-08-19 00:00:00')

    def test_locale_month_names(self):
        self.assertEqual(normalize_date('19 Aug 2024', keep_time=False), '2024-08-19 00:00:00')

    def test_epoch_milliseconds(self):
        self.assertEqual(normalize_date(0, keep_time=True), '1970-01-01 00:00:00')
        self.assertEqual(normalize_date(86_400_000 + 1_500, keep_time=True), '1970-01-02 00:00:01')

    def test_date_and_datetime_objects(self):
        aware = datetime(2024, 8, 19, 16, 30, 5, 999, tzinfo=timezone(timedelta(hours=2)))
        self.assertEqual(normalize_date(aware, keep_time=True), '2024-08-19 14:30:05')
        self.assertEqual(normalize_date(date(2024, 8, 19), keep_time=True), '2024-08-19 00:00:00')

    def test_booleans_are_not_dates(self):
        with self.assertLogs('services.dates', level='WARNING'):
            self.assertIsNone(normalize_date(True, keep_time=True))

    def test_parse_client_date_raises_for_garbage(self):
        with self.assertRaises(ValueError):
            parse_client_date('not-a-date')


@pytest.mark.skipif(not hasattr(time, 'tzset'), reason='tzset is not available on this platform')
@pytest.mark.parametrize('zone', ['UTC', 'America/Bogota', 'Asia/Tokyo', 'Pacific/Kiritimati'])
def test_results_do_not_depend_on_host_timezone(monkeypatch, zone):
    monkeypatch.setenv('TZ', zone)
    time.tzset()
    try:
        assert normalize_date('19/08/2024', keep_time=False) == '2024-08-19 00:00:00'
        assert normalize_date('2024-08-19T14:30:00.000Z', keep_time=True) == '2024-08-19 14:30:00'
        assert normalize_date(0, keep_time=True) == '1970-01-01 00:00:00'
    finally:
        monkeypatch.undo()
        time.tzset()
