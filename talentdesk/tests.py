"""
talentdesk/tests.py

Covers:
  - text_utils.strip_json_fence
  - text_utils.digits_only
  - text_utils.normalize_name
  - text_utils.to_safe_int
"""

from django.test import SimpleTestCase

from talentdesk.text_utils import (
    digits_only,
    normalize_name,
    strip_json_fence,
    to_safe_int,
)


class StripJsonFenceTests(SimpleTestCase):
    def test_strips_json_fenced_block(self):
        raw = '```json\n{"key": "value"}\n```'
        self.assertEqual(strip_json_fence(raw), '{"key": "value"}')

    def test_strips_plain_fenced_block(self):
        raw = '```\n{"key": "value"}\n```'
        self.assertEqual(strip_json_fence(raw), '{"key": "value"}')

    def test_no_fence_returns_as_is(self):
        self.assertEqual(strip_json_fence('  {"key": "value"} '), '{"key": "value"}')

    def test_empty_and_none(self):
        self.assertEqual(strip_json_fence(""), "")
        self.assertEqual(strip_json_fence(None), "")

    def test_case_insensitive_json_tag(self):
        self.assertEqual(strip_json_fence('```JSON\n{"a": 1}\n```'), '{"a": 1}')

    def test_fence_after_preamble(self):
        raw = 'Here is the data:\n```json\n{"a": 1}\n```\nDone.'
        self.assertEqual(strip_json_fence(raw), '{"a": 1}')


class DigitsOnlyTests(SimpleTestCase):
    def test_strips_formatting(self):
        self.assertEqual(digits_only("+44 (0) 7700-900.123"), "4407700900123")

    def test_empty(self):
        self.assertEqual(digits_only(""), "")
        self.assertEqual(digits_only(None), "")


class NormalizeNameTests(SimpleTestCase):
    def test_lowercases_and_collapses(self):
        self.assertEqual(normalize_name("  Jane   DOE "), "jane doe")

    def test_drops_non_letters(self):
        self.assertEqual(normalize_name("O'Brien-Smith, Jr."), "obriensmith jr")

    def test_empty(self):
        self.assertEqual(normalize_name(None), "")


class ToSafeIntTests(SimpleTestCase):
    def test_numbers(self):
        self.assertEqual(to_safe_int(7), 7)
        self.assertEqual(to_safe_int(7.6), 8)

    def test_strings(self):
        self.assertEqual(to_safe_int("12 years"), 12)
        self.assertEqual(to_safe_int("about 3.5"), 4)
        self.assertEqual(to_safe_int("-2"), -2)

    def test_unreadable_returns_default(self):
        self.assertEqual(to_safe_int("n/a"), 0)
        self.assertEqual(to_safe_int(None, default=5), 5)
        self.assertEqual(to_safe_int(True, default=1), 1)
