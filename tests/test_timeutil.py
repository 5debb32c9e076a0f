#!/usr/bin/env python3
"""
Tests for timestamp parsing and relative time formatting
"""

import unittest
import sys
import os
from datetime import datetime, timedelta, timezone

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from build_monitor.timeutil import format_last_run, parse_timestamp, time_ago

NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)


class TestParseTimestamp(unittest.TestCase):

    def test_zulu_suffix(self):
        self.assertEqual(parse_timestamp('2026-10-19T10:20:30.123Z'),
                         datetime(2026, 10, 19, 10, 20, 30, 123000, tzinfo=timezone.utc))

    def test_offset(self):
        parsed = parse_timestamp('2026-10-19T12:00:00+02:00')
        self.assertEqual(parsed, NOW - timedelta(hours=2))

    def test_naive_is_utc(self):
        self.assertEqual(parse_timestamp('2026-10-19T12:00:00'), NOW)

    def test_empty_and_invalid(self):
        self.assertIsNone(parse_timestamp(None))
        self.assertIsNone(parse_timestamp(''))
        self.assertIsNone(parse_timestamp('yesterday'))


class TestTimeAgo(unittest.TestCase):

    def ago(self, **kwargs):
        return time_ago(NOW - timedelta(**kwargs), NOW)

    def test_phrases(self):
        self.assertEqual(self.ago(seconds=10), 'a few seconds ago')
        self.assertEqual(self.ago(seconds=60), 'a minute ago')
        self.assertEqual(self.ago(minutes=5), '5 minutes ago')
        self.assertEqual(self.ago(minutes=60), 'an hour ago')
        self.assertEqual(self.ago(hours=3), '3 hours ago')
        self.assertEqual(self.ago(hours=30), 'a day ago')
        self.assertEqual(self.ago(days=3), '3 days ago')
        self.assertEqual(self.ago(days=30), 'a month ago')
        self.assertEqual(self.ago(days=400), 'a year ago')
        self.assertEqual(self.ago(days=1000), '3 years ago')

    def test_future(self):
        self.assertEqual(time_ago(NOW + timedelta(hours=2), NOW), 'in 2 hours')

    def test_none(self):
        self.assertEqual(time_ago(None, NOW), '')


class TestFormatLastRun(unittest.TestCase):

    def test_format(self):
        self.assertEqual(format_last_run(datetime(2026, 10, 19, 14, 3, 0)), 'Mon, 2026-10-19 14:03:00')


if __name__ == '__main__':
    unittest.main()
