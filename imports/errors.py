"""
imports/errors.py

Error taxonomy for bulk CV import.

Failures carry an explicit ErrorCategory from the point where they happen
(ImportFileError). categorize_exception() only has to handle exceptions that
escape without one, and does so by exception type, never by message text.

Category           Retryable   Trips circuit breaker
─────────────────  ─────────   ─────────────────────
RATE_LIMIT         yes         yes
NETWORK_ERROR      yes         yes
TIMEOUT            yes         yes
AI_ERROR           yes         yes
PAYMENT_REQUIRED   no          yes
FILE_ERROR         no          no
PARSE_ERROR        no          no
DB_ERROR           no          no
UNKNOWN            no          no
"""

import anthropic
import requests
from django.db import DatabaseError, models


class ErrorCategory(models.TextChoices):
    RATE_LIMIT = "RATE_LIMIT", "Rate limited"
    PAYMENT_REQUIRED = "PAYMENT_REQUIRED", "Payment required"
    FILE_ERROR = "FILE_ERROR", "File error"
    PARSE_ERROR = "PARSE_ERROR", "Parse error"
    TIMEOUT = "TIMEOUT", "Timeout"
    NETWORK_ERROR = "NETWORK_ERROR", "Network error"
    DB_ERROR = "DB_ERROR", "Database error"
    AI_ERROR = "AI_ERROR", "AI service error"
    UNKNOWN = "UNKNOWN", "Unknown"


# Transient failures: a retry of the same file may succeed without any change.
RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.RATE_LIMIT,
    ErrorCategory.NETWORK_ERROR,
    ErrorCategory.TIMEOUT,
    ErrorCategory.AI_ERROR,
})

# Failures that say the extraction service is unhealthy, as opposed to a
# problem with one particular file. Only these count towards opening the
# circuit breaker.
SERVICE_CATEGORIES = RETRYABLE_CATEGORIES | {ErrorCategory.PAYMENT_REQUIRED}


class ImportFileError(Exception):
    """Raised when one file cannot be parsed or imported. Always categorised."""

    def __init__(self, message: str, category: str = ErrorCategory.UNKNOWN):
        super().__init__(message)
        self.category = ErrorCategory(category)

    @property
    def retryable(self) -> bool:
        return is_retryable(self.category)


def is_retryable(category: str) -> bool:
    return category in RETRYABLE_CATEGORIES


def categorize_exception(exc: BaseException) -> ErrorCategory:
    """Map an exception to its ErrorCategory by type."""
    if isinstance(exc, ImportFileError):
        return exc.category
    if isinstance(exc, DatabaseError):
        return ErrorCategory.DB_ERROR
    if isinstance(exc, (requests.Timeout, anthropic.APITimeoutError, TimeoutError)):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, (requests.ConnectionError, anthropic.APIConnectionError, ConnectionError)):
        return ErrorCategory.NETWORK_ERROR
    if isinstance(exc, anthropic.RateLimitError):
        return ErrorCategory.RATE_LIMIT
    if isinstance(exc, anthropic.APIStatusError) and exc.status_code == 402:
        return ErrorCategory.PAYMENT_REQUIRED
    if isinstance(exc, anthropic.APIError):
        return ErrorCategory.AI_ERROR
    return ErrorCategory.UNKNOWN
