"""
talentdesk/constants.py

Central repository for cross-cutting, operationally-tunable constants.

Rules for what belongs here:
  - Pure Python only — no Django model imports (prevents circular import risk).
  - Referenced by more than one module, or genuinely tunable at the ops level.

What intentionally stays elsewhere:
  - TextChoices on models        — Django convention, DB-validated.
  - Batch / limiter defaults     — settings.py (env-overridable) and the
                                   dataclass defaults in imports/.
"""

# ── Bulk import: file limits ───────────────────────────────────────────────────

# Files outside this size window are rejected before any extraction call.
MAX_CV_FILE_SIZE_BYTES = 10 * 1024 * 1024
MIN_CV_FILE_SIZE_BYTES = 100

# Minimum characters of extracted text before a document is worth sending to
# the model. Scanned PDFs without a text layer fall below this.
MIN_CV_TEXT_LENGTH = 50

# Maximum characters of CV text sent to the model in a single request.
MAX_CV_TEXT_LENGTH = 30000

# Maximum PDF pages read by pdfplumber.
PDF_MAX_PAGES = 10

# ── Bulk import: continuation scheduling ──────────────────────────────────────

# Timeouts for the continuation POST. A read timeout means the request was
# delivered and the next invocation is running.
CONTINUATION_CONNECT_TIMEOUT_SECONDS = 5
CONTINUATION_READ_TIMEOUT_SECONDS = 2

# ── Duplicate detection ────────────────────────────────────────────────────────

# Placeholder written when the model found no email; never used for dedup.
PLACEHOLDER_EMAIL = "not-provided@unknown.com"

# Minimum difflib SequenceMatcher ratio for a fuzzy candidate name match.
DUPLICATE_NAME_THRESHOLD = 0.90

# Minimum significant digits for a phone-number match.
MIN_PHONE_DIGITS = 7
