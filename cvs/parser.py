"""
cvs/parser.py

The extraction call for one uploaded CV.

Public API:
  load_cv_file(file)            → (file_name, bytes)     storage, then file_url
  detect_file_type(name, data)  → "pdf" | "docx" | "doc" | "rtf" | "txt"
  extract_text(name, data)      → str
  CVParser().parse(file)        → cleaned dict (cvs.validation)

Every failure is raised as CVParseError (an ImportFileError) carrying its
ErrorCategory, so the batch processor never has to guess from message text.

Anthropic failure       Category
──────────────────────  ────────────────
429 RateLimitError      RATE_LIMIT
402                     PAYMENT_REQUIRED
APITimeoutError         TIMEOUT
APIConnectionError      NETWORK_ERROR
any other APIError      AI_ERROR
no tool output          PARSE_ERROR
"""

import io
import logging
import re
import time
from pathlib import Path

import anthropic
import json_repair
import pdfplumber
import requests
from django.conf import settings
from django.core.files.storage import default_storage
from docx import Document

from cvs.prompts import EXTRACTION_TOOL, EXTRACTION_TOOL_NAME, SYSTEM_PROMPT, build_user_prompt
from cvs.validation import clean_extracted_data
from imports.errors import ErrorCategory, ImportFileError, is_retryable
from imports.rate_limiter import calculate_backoff_delay
from talentdesk.constants import (
    MAX_CV_FILE_SIZE_BYTES,
    MAX_CV_TEXT_LENGTH,
    MIN_CV_FILE_SIZE_BYTES,
    MIN_CV_TEXT_LENGTH,
    PDF_MAX_PAGES,
)
from talentdesk.text_utils import strip_json_fence

logger = logging.getLogger(__name__)

# Seconds allowed for fetching a CV from its file_url.
DOWNLOAD_TIMEOUT_SECONDS = 30

_MAGIC_BYTES = (
    (b"%PDF", "pdf"),
    (b"PK\x03\x04", "docx"),
    (b"\xd0\xcf\x11\xe0", "doc"),
    (b"{\\rtf", "rtf"),
)

_EXTENSIONS = {".pdf": "pdf", ".docx": "docx", ".doc": "doc", ".rtf": "rtf"}

# Runs of printable text inside a legacy binary .doc.
_DOC_TEXT_RUN_RE = re.compile(rb"[\x20-\x7e\r\n\t]{4,}")
_RTF_CONTROL_RE = re.compile(r"\\[a-zA-Z]+-?\d* ?|[{}]")


class CVParseError(ImportFileError):
    """Raised when a CV cannot be loaded, read or extracted."""


# ─────────────────────────────────────────────────────────────────────────────
# Loading
# ─────────────────────────────────────────────────────────────────────────────

def load_cv_file(file) -> tuple[str, bytes]:
    """
    Read the bytes of a BulkImportFile from default_storage, or from its
    file_url when the object is not in local storage.
    """
    content = None

    if file.file_path:
        try:
            if default_storage.exists(file.file_path):
                with default_storage.open(file.file_path, "rb") as fh:
                    content = fh.read()
        except OSError as exc:
            raise CVParseError(
                f"Could not read {file.file_path} from storage: {exc}", ErrorCategory.FILE_ERROR,
            ) from exc

    if content is None and file.file_url:
        content = _download(file.file_url)

    if content is None:
        raise CVParseError(f"File not found: {file.file_name}", ErrorCategory.FILE_ERROR)

    size = len(content)
    if size < MIN_CV_FILE_SIZE_BYTES:
        raise CVParseError(
            f"File too small ({size} bytes) — likely empty or corrupted", ErrorCategory.FILE_ERROR,
        )
    if size > MAX_CV_FILE_SIZE_BYTES:
        raise CVParseError(
            f"File too large ({size / 1024 / 1024:.1f} MB, max {MAX_CV_FILE_SIZE_BYTES // 1024 // 1024} MB)",
            ErrorCategory.FILE_ERROR,
        )

    return file.file_name, content


def _download(url: str) -> bytes:
    try:
        response = requests.get(url, timeout=DOWNLOAD_TIMEOUT_SECONDS)
        response.raise_for_status()
    except requests.Timeout as exc:
        raise CVParseError(f"Timed out downloading CV: {exc}", ErrorCategory.TIMEOUT) from exc
    except requests.ConnectionError as exc:
        raise CVParseError(f"Network error downloading CV: {exc}", ErrorCategory.NETWORK_ERROR) from exc
    except requests.RequestException as exc:
        raise CVParseError(f"Failed to download CV: {exc}", ErrorCategory.FILE_ERROR) from exc
    return response.content


# ─────────────────────────────────────────────────────────────────────────────
# Text extraction
# ─────────────────────────────────────────────────────────────────────────────

def detect_file_type(file_name: str, content: bytes) -> str:
    """Magic bytes first; the extension only decides when they are inconclusive."""
    for magic, file_type in _MAGIC_BYTES:
        if content.startswith(magic):
            return file_type
    return _EXTENSIONS.get(Path(file_name or "").suffix.lower(), "txt")


def extract_text(file_name: str, content: bytes) -> str:
    file_type = detect_file_type(file_name, content)

    try:
        if file_type == "pdf":
            text = _pdf_text(content)
        elif file_type == "docx":
            text = _docx_text(content)
        elif file_type == "doc":
            text = _doc_text(content)
        elif file_type == "rtf":
            text = _RTF_CONTROL_RE.sub("", content.decode("latin-1"))
        else:
            text = content.decode("utf-8", errors="ignore")
    except Exception as exc:  # noqa: BLE001
        raise CVParseError(
            f"Could not read {file_type.upper()} content of {file_name}: {exc}", ErrorCategory.PARSE_ERROR,
        ) from exc

    text = re.sub(r"[ \t]+", " ", text or "").strip()
    logger.debug("Extracted %s chars of text from %s (%s)", len(text), file_name, file_type)

    if len(text) < MIN_CV_TEXT_LENGTH:
        raise CVParseError(
            f"Could not extract sufficient text from document "
            f"(got {len(text)} chars, need {MIN_CV_TEXT_LENGTH}+)",
            ErrorCategory.PARSE_ERROR,
        )
    return text


def _pdf_text(content: bytes) -> str:
    with pdfplumber.open(io.BytesIO(content)) as pdf:
        parts = []
        for page in pdf.pages[:PDF_MAX_PAGES]:
            text = page.extract_text()
            if text:
                parts.append(text)
        return "\n".join(parts)


def _docx_text(content: bytes) -> str:
    doc = Document(io.BytesIO(content))
    lines = [p.text for p in doc.paragraphs]
    for table in doc.tables:
        for row in table.rows:
            lines.append(" | ".join(cell.text for cell in row.cells))
    return "\n".join(lines)


def _doc_text(content: bytes) -> str:
    runs = _DOC_TEXT_RUN_RE.findall(content)
    return "\n".join(run.decode("ascii", errors="ignore") for run in runs)


# ─────────────────────────────────────────────────────────────────────────────
# Claude extraction
# ─────────────────────────────────────────────────────────────────────────────

class CVParser:
    """
    Loads a CV, extracts its text and asks Claude for the structured record.

    The client is created lazily so the parser can be built without an API
    key (tests inject a mock client instead).
    """

    def __init__(self, client: anthropic.Anthropic | None = None, max_attempts: int | None = None, sleep=time.sleep):
        self._client = client
        self.max_attempts = max_attempts or settings.BULK_IMPORT_PARSE_MAX_ATTEMPTS
        self._sleep = sleep

    @property
    def client(self) -> anthropic.Anthropic:
        if self._client is None:
            api_key = settings.ANTHROPIC_API_KEY
            if not api_key:
                raise CVParseError("ANTHROPIC_API_KEY is not configured.", ErrorCategory.AI_ERROR)
            self._client = anthropic.Anthropic(
                api_key=api_key,
                timeout=settings.ANTHROPIC_TIMEOUT_SECONDS,
                max_retries=0,
            )
        return self._client

    # ── Public API ─────────────────────────────────────────────────────────────

    def parse(self, file) -> dict:
        file_name, content = load_cv_file(file)
        text = extract_text(file_name, content)
        if len(text) > MAX_CV_TEXT_LENGTH:
            logger.debug("Truncating CV text for %s from %s chars", file_name, len(text))
            text = text[:MAX_CV_TEXT_LENGTH]

        raw = self._extract_with_retry(text, file_name)
        data = clean_extracted_data(raw, text)
        logger.info("Parsed CV %s → %s <%s>", file_name, data["name"], data["email"])
        return data

    # ── Internals ──────────────────────────────────────────────────────────────

    def _extract_with_retry(self, text: str, file_name: str) -> dict:
        attempt = 0
        while True:
            try:
                return self._send_message(text)
            except CVParseError as exc:
                attempt += 1
                if not is_retryable(exc.category) or attempt >= self.max_attempts:
                    raise
                delay_ms = calculate_backoff_delay(attempt - 1)
                logger.warning(
                    "Extraction attempt %s/%s for %s failed (%s: %s) — retrying in %sms",
                    attempt, self.max_attempts, file_name, exc.category, exc, delay_ms,
                )
                self._sleep(delay_ms / 1000)

    def _send_message(self, text: str) -> dict:
        """
        One Messages API call with the extraction tool forced.

        Returns the tool input dict. Raises CVParseError with a category.
        """
        try:
            message = self.client.messages.create(
                model=settings.ANTHROPIC_MODEL,
                max_tokens=settings.ANTHROPIC_MAX_TOKENS,
                temperature=0.1,
                system=SYSTEM_PROMPT,
                tools=[EXTRACTION_TOOL],
                tool_choice={"type": "tool", "name": EXTRACTION_TOOL_NAME},
                messages=[{"role": "user", "content": build_user_prompt(text)}],
            )
        except anthropic.RateLimitError as exc:
            raise CVParseError(f"Rate limited by Anthropic: {exc}", ErrorCategory.RATE_LIMIT) from exc
        except anthropic.APITimeoutError as exc:
            raise CVParseError(f"Anthropic request timed out: {exc}", ErrorCategory.TIMEOUT) from exc
        except anthropic.APIConnectionError as exc:
            raise CVParseError(f"Could not reach Anthropic: {exc}", ErrorCategory.NETWORK_ERROR) from exc
        except anthropic.APIStatusError as exc:
            category = ErrorCategory.PAYMENT_REQUIRED if exc.status_code == 402 else ErrorCategory.AI_ERROR
            raise CVParseError(f"Anthropic API error ({exc.status_code}): {exc}", category) from exc
        except anthropic.APIError as exc:
            raise CVParseError(f"Anthropic API error: {exc}", ErrorCategory.AI_ERROR) from exc

        stop_reason = getattr(message, "stop_reason", None)
        logger.debug(
            "Claude usage: input_tokens=%s output_tokens=%s stop_reason=%s",
            getattr(message.usage, "input_tokens", "?"),
            getattr(message.usage, "output_tokens", "?"),
            stop_reason,
        )

        if stop_reason == "max_tokens":
            raise CVParseError(
                f"Extraction was truncated at ANTHROPIC_MAX_TOKENS ({settings.ANTHROPIC_MAX_TOKENS})",
                ErrorCategory.PARSE_ERROR,
            )

        for block in message.content or []:
            if getattr(block, "type", None) == "tool_use" and block.name == EXTRACTION_TOOL_NAME:
                if isinstance(block.input, dict):
                    return block.input
                return _parse_tool_json(str(block.input))

        # No tool call: accept a JSON object written as plain text.
        for block in message.content or []:
            if getattr(block, "type", None) == "text" and block.text.strip():
                return _parse_tool_json(block.text)

        raise CVParseError(
            "Failed to parse CV — the model did not return extract_cv_data output",
            ErrorCategory.PARSE_ERROR,
        )


def _parse_tool_json(raw: str) -> dict:
    """Parse (and if needed repair) a JSON object from model output."""
    text = strip_json_fence(raw)
    result = json_repair.repair_json(text, return_objects=True)
    if not isinstance(result, dict) or not result:
        raise CVParseError(
            f"Expected a JSON object from the model. Raw: {raw[:200]}", ErrorCategory.PARSE_ERROR,
        )
    logger.info("Recovered extraction output from non-tool JSON text")
    return result
