"""
cvs/tests.py

Covers:
  - detect_file_type / extract_text : magic bytes, DOCX via python-docx, minimum text
  - load_cv_file                    : storage read, URL fallback, size limits
  - CVParser                        : forced tool call, retries, error categories,
                                      JSON text fallback, truncation
  - cvs.validation                  : email/phone cleaning, regex fallback, defaults
"""

import io
import shutil
import tempfile
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import anthropic
import httpx
import requests
from django.core.files.base import ContentFile
from django.core.files.storage import default_storage
from django.test import SimpleTestCase, override_settings
from docx import Document

from cvs.parser import CVParseError, CVParser, detect_file_type, extract_text, load_cv_file
from cvs.prompts import EXTRACTION_TOOL_NAME
from cvs.validation import (
    clean_email,
    clean_extracted_data,
    clean_phone,
    extract_contact_fallback,
)
from imports.errors import ErrorCategory

CV_TEXT = (
    "Jane Doe\nSenior Accountant\njane.doe@gmail.com | +44 7700 900123\n"
    "Experience: 2015-2019 Deloitte, 2019-2024 KPMG. ACA qualified."
)

_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


# ── Helpers ────────────────────────────────────────────────────────────────────

def _status_error(cls, status: int):
    return cls(f"HTTP {status}", response=httpx.Response(status, request=_REQUEST), body=None)


def _message(*blocks, stop_reason="tool_use"):
    return SimpleNamespace(
        content=list(blocks),
        stop_reason=stop_reason,
        usage=SimpleNamespace(input_tokens=1200, output_tokens=800),
    )


def _tool_block(data: dict):
    return SimpleNamespace(type="tool_use", name=EXTRACTION_TOOL_NAME, input=data)


def _text_block(text: str):
    return SimpleNamespace(type="text", text=text)


def _docx_bytes(*paragraphs) -> bytes:
    doc = Document()
    for text in paragraphs:
        doc.add_paragraph(text)
    buffer = io.BytesIO()
    doc.save(buffer)
    return buffer.getvalue()


def _import_file(**kwargs):
    defaults = dict(file_name="cv.txt", file_path="", file_url="")
    defaults.update(kwargs)
    return SimpleNamespace(**defaults)


# ─────────────────────────────────────────────────────────────────────────────
# File type and text extraction
# ─────────────────────────────────────────────────────────────────────────────

class TextExtractionTests(SimpleTestCase):
    def test_magic_bytes_win_over_extension(self):
        self.assertEqual(detect_file_type("cv.docx", b"%PDF-1.7 ..."), "pdf")
        self.assertEqual(detect_file_type("cv.pdf", b"PK\x03\x04..."), "docx")
        self.assertEqual(detect_file_type("cv.bin", b"\xd0\xcf\x11\xe0..."), "doc")
        self.assertEqual(detect_file_type("cv.txt", b"{\\rtf1 hello"), "rtf")

    def test_extension_used_when_magic_unknown(self):
        self.assertEqual(detect_file_type("CV.DOC", b"plain"), "doc")
        self.assertEqual(detect_file_type("notes", b"plain"), "txt")

    def test_plain_text(self):
        self.assertIn("Senior Accountant", extract_text("cv.txt", CV_TEXT.encode()))

    def test_docx_paragraphs(self):
        content = _docx_bytes("Jane Doe", "Senior Accountant with ten years in audit and advisory.")
        text = extract_text("cv.docx", content)
        self.assertIn("Jane Doe", text)
        self.assertIn("ten years in audit", text)

    def test_too_little_text_is_a_parse_error(self):
        with self.assertRaises(CVParseError) as ctx:
            extract_text("cv.txt", b"Jane Doe")
        self.assertEqual(ctx.exception.category, ErrorCategory.PARSE_ERROR)

    def test_corrupt_docx_is_a_parse_error(self):
        with self.assertRaises(CVParseError) as ctx:
            extract_text("cv.docx", b"PK\x03\x04" + b"\x00" * 300)
        self.assertEqual(ctx.exception.category, ErrorCategory.PARSE_ERROR)


# ─────────────────────────────────────────────────────────────────────────────
# Loading
# ─────────────────────────────────────────────────────────────────────────────

class LoadCVFileTests(SimpleTestCase):
    def setUp(self):
        self.media_root = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.media_root, ignore_errors=True)
        overrider = override_settings(MEDIA_ROOT=self.media_root)
        overrider.enable()
        self.addCleanup(overrider.disable)

    def test_reads_from_storage(self):
        path = default_storage.save("cv-uploads/jane.txt", ContentFile(CV_TEXT.encode() * 2))
        name, content = load_cv_file(_import_file(file_name="jane.txt", file_path=path))
        self.assertEqual(name, "jane.txt")
        self.assertTrue(content.startswith(b"Jane Doe"))

    @patch("cvs.parser.requests.get")
    def test_falls_back_to_file_url(self, mock_get):
        mock_get.return_value = MagicMock(content=CV_TEXT.encode() * 2)
        _, content = load_cv_file(_import_file(
            file_path="cv-uploads/missing.txt", file_url="https://files.example.com/cv.txt",
        ))
        self.assertTrue(content.startswith(b"Jane Doe"))
        mock_get.assert_called_once()

    @patch("cvs.parser.requests.get", side_effect=requests.Timeout("slow"))
    def test_download_timeout_is_categorised(self, _):
        with self.assertRaises(CVParseError) as ctx:
            load_cv_file(_import_file(file_url="https://files.example.com/cv.txt"))
        self.assertEqual(ctx.exception.category, ErrorCategory.TIMEOUT)

    def test_missing_file(self):
        with self.assertRaises(CVParseError) as ctx:
            load_cv_file(_import_file(file_path="cv-uploads/nothing.pdf"))
        self.assertEqual(ctx.exception.category, ErrorCategory.FILE_ERROR)

    def test_size_limits(self):
        small = default_storage.save("cv-uploads/small.pdf", ContentFile(b"%PDF-1.4"))
        with self.assertRaises(CVParseError) as ctx:
            load_cv_file(_import_file(file_path=small))
        self.assertEqual(ctx.exception.category, ErrorCategory.FILE_ERROR)
        self.assertIn("too small", str(ctx.exception))

        with patch("cvs.parser.MAX_CV_FILE_SIZE_BYTES", 150):
            big = default_storage.save("cv-uploads/big.txt", ContentFile(b"x" * 200))
            with self.assertRaises(CVParseError) as ctx:
                load_cv_file(_import_file(file_path=big))
        self.assertIn("too large", str(ctx.exception))


# ─────────────────────────────────────────────────────────────────────────────
# Claude extraction
# ─────────────────────────────────────────────────────────────────────────────

@override_settings(ANTHROPIC_MODEL="claude-test", ANTHROPIC_MAX_TOKENS=4096)
@patch("cvs.parser.load_cv_file", return_value=("jane.txt", CV_TEXT.encode()))
class CVParserTests(SimpleTestCase):
    def setUp(self):
        self.client = MagicMock()
        self.sleeps = []
        self.parser = CVParser(client=self.client, max_attempts=3, sleep=self.sleeps.append)

    def test_forces_extraction_tool_and_cleans_output(self, _):
        self.client.messages.create.return_value = _message(_tool_block({
            "name": "Jane Doe",
            "email": "Jane.Doe@gmail.con",
            "phone": "+44 7700 900123",
            "cv_score": 140,
        }))

        data = self.parser.parse(_import_file())

        kwargs = self.client.messages.create.call_args.kwargs
        self.assertEqual(kwargs["model"], "claude-test")
        self.assertEqual(kwargs["tool_choice"], {"type": "tool", "name": EXTRACTION_TOOL_NAME})
        self.assertIn("Senior Accountant", kwargs["messages"][0]["content"])
        self.assertEqual(data["email"], "jane.doe@gmail.com")
        self.assertEqual(data["cv_score"], 100)
        self.assertEqual(data["sector"], "Other")

    def test_retries_rate_limit_then_succeeds(self, _):
        self.client.messages.create.side_effect = [
            _status_error(anthropic.RateLimitError, 429),
            _message(_tool_block({"name": "Jane Doe", "email": "jane@example.com"})),
        ]

        data = self.parser.parse(_import_file())

        self.assertEqual(data["name"], "Jane Doe")
        self.assertEqual(self.client.messages.create.call_count, 2)
        self.assertEqual(len(self.sleeps), 1)
        self.assertTrue(0.9 <= self.sleeps[0] <= 1.1)

    def test_gives_up_after_max_attempts(self, _):
        self.client.messages.create.side_effect = anthropic.APITimeoutError(request=_REQUEST)

        with self.assertRaises(CVParseError) as ctx:
            self.parser.parse(_import_file())

        self.assertEqual(ctx.exception.category, ErrorCategory.TIMEOUT)
        self.assertEqual(self.client.messages.create.call_count, 3)
        self.assertEqual(len(self.sleeps), 2)

    def test_payment_required_is_not_retried(self, _):
        self.client.messages.create.side_effect = _status_error(anthropic.APIStatusError, 402)

        with self.assertRaises(CVParseError) as ctx:
            self.parser.parse(_import_file())

        self.assertEqual(ctx.exception.category, ErrorCategory.PAYMENT_REQUIRED)
        self.assertEqual(self.client.messages.create.call_count, 1)

    def test_error_categories(self, _):
        cases = [
            (anthropic.APIConnectionError(request=_REQUEST), ErrorCategory.NETWORK_ERROR),
            (_status_error(anthropic.InternalServerError, 500), ErrorCategory.AI_ERROR),
        ]
        for exc, expected in cases:
            with self.subTest(expected=expected):
                self.client.messages.create.reset_mock()
                self.client.messages.create.side_effect = exc
                with self.assertRaises(CVParseError) as ctx:
                    CVParser(client=self.client, max_attempts=1).parse(_import_file())
                self.assertEqual(ctx.exception.category, expected)

    def test_json_text_is_accepted_when_no_tool_call(self, _):
        self.client.messages.create.return_value = _message(
            _text_block('```json\n{"name": "Jane Doe", "email": "jane@example.com",}\n```'),
            stop_reason="end_turn",
        )

        data = self.parser.parse(_import_file())

        self.assertEqual(data["name"], "Jane Doe")

    def test_no_usable_output_is_a_parse_error(self, _):
        self.client.messages.create.return_value = _message(stop_reason="end_turn")

        with self.assertRaises(CVParseError) as ctx:
            self.parser.parse(_import_file())

        self.assertEqual(ctx.exception.category, ErrorCategory.PARSE_ERROR)
        self.assertEqual(self.sleeps, [])

    def test_truncated_output_is_a_parse_error(self, _):
        self.client.messages.create.return_value = _message(
            _tool_block({"name": "Jane"}), stop_reason="max_tokens",
        )

        with self.assertRaises(CVParseError) as ctx:
            self.parser.parse(_import_file())

        self.assertEqual(ctx.exception.category, ErrorCategory.PARSE_ERROR)


# ─────────────────────────────────────────────────────────────────────────────
# Validation
# ─────────────────────────────────────────────────────────────────────────────

class ValidationTests(SimpleTestCase):
    def test_clean_email(self):
        self.assertEqual(clean_email("  John@Hotmail.con "), "john@hotmail.com")
        self.assertEqual(clean_email("john@gmail.co"), "john@gmail.com")
        self.assertEqual(clean_email("john@company.co.uk"), "john@company.co.uk")
        self.assertIsNone(clean_email("not an email"))
        self.assertIsNone(clean_email("n/a"))
        self.assertIsNone(clean_email(None))

    def test_clean_phone(self):
        self.assertEqual(clean_phone(" +44  7700   900123 "), "+44 7700 900123")
        self.assertIsNone(clean_phone("12345"))
        self.assertIsNone(clean_phone("Not provided"))

    def test_fallback_extraction(self):
        found = extract_contact_fallback(CV_TEXT)
        self.assertEqual(found["email"], "jane.doe@gmail.com")
        self.assertEqual(found["phone"], "+44 7700 900123")

    def test_fallback_skips_date_ranges(self):
        found = extract_contact_fallback("Worked 2015-2019 at ACME. Call 020 7946 0958.")
        self.assertEqual(found["phone"], "020 7946 0958")

    def test_defaults_for_empty_output(self):
        data = clean_extracted_data({})
        self.assertEqual(data["name"], "Unknown")
        self.assertEqual(data["email"], "not-provided@unknown.com")
        self.assertEqual(data["phone"], "Not provided")
        self.assertEqual(data["location"], "Not specified")
        self.assertEqual(data["seniority_level"], "Mid-Level")
        self.assertEqual(data["education_level"], "Other")
        self.assertEqual(data["cv_score"], 50)
        self.assertEqual(data["cv_score_breakdown"]["completeness"]["max"], 20)
        self.assertEqual(data["ai_profile"]["hard_skills"], [])

    def test_backfills_contact_details_from_text(self):
        data = clean_extracted_data({"name": "Jane Doe", "email": "", "phone": None}, CV_TEXT)
        self.assertEqual(data["email"], "jane.doe@gmail.com")
        self.assertEqual(data["phone"], "+44 7700 900123")

    def test_profile_and_numbers_are_normalised(self):
        data = clean_extracted_data({
            "years_experience": "9 years",
            "seniority_level": "Senior",
            "cv_score": -4,
            "ai_profile": {"hard_skills": ["IFRS", " ", "Excel"], "education": {"field": "Accounting"}},
            "cv_score_breakdown": {"completeness": {"score": 18, "max": 20, "notes": "Complete"}},
        })
        self.assertEqual(data["years_experience"], 9)
        self.assertEqual(data["cv_score"], 0)
        self.assertEqual(data["ai_profile"]["hard_skills"], ["IFRS", "Excel"])
        self.assertEqual(data["ai_profile"]["experience_years"], 9)
        self.assertEqual(data["ai_profile"]["seniority"], "Senior")
        self.assertEqual(data["ai_profile"]["education"], {"level": "Other", "field": "Accounting", "institution": ""})
        self.assertEqual(data["cv_score_breakdown"]["completeness"]["score"], 18)
        self.assertEqual(data["cv_score_breakdown"]["summary"], "CV has not been fully evaluated.")
