"""
imports/processor.py

One processing invocation for a bulk import session.

Public API:
  process_import_session(session_id, continuation=False, retry_failed=False,
                         file_ids=None, ...)      → BatchResult

Per invocation:
  1. Fresh CircuitBreaker + AdaptiveRateLimiter (nothing carries over).
  2. Failed files are resubmitted whenever a retry was asked for
     (retry_failed or file_ids). First invocation (not a continuation):
     session → processing.
  3. Up to batch_size files, each driven through
        pending → parsing → parsed → importing → imported
     while the time budget lasts and the breaker allows calls.
  4. Session counts recomputed from file rows.
  5. Files left over → schedule_continuation().

A file failure is recorded on the file and never escapes this module. The
only exception callers see is BulkImportSession.DoesNotExist.
"""

import logging
import time
from dataclasses import asdict, dataclass, field

from django.db import DatabaseError, transaction
from django.utils import timezone

from candidates.services import (
    create_submission_from_parsed,
    find_duplicate_candidate,
    suggest_merge_action,
)
from cvs.parser import CVParser
from imports.batch import (
    create_batch_context,
    has_reached_batch_limit,
    load_batch_config,
    schedule_continuation,
    should_continue_processing,
    should_send_heartbeat,
    update_heartbeat,
)
from imports.circuit_breaker import CircuitBreaker
from imports.errors import SERVICE_CATEGORIES, ErrorCategory, ImportFileError, categorize_exception
from imports.models import BulkImportFile, BulkImportSession
from imports.rate_limiter import AdaptiveRateLimiter
from imports.store import (
    check_for_duplicate,
    compute_avg_parse_time_ms,
    compute_error_breakdown,
    get_files_to_process,
    has_remaining_files,
    mark_file_failed,
    mark_file_imported,
    mark_file_importing,
    mark_file_parsed,
    mark_file_processing_started,
    resubmit_files,
    update_session_progress,
)

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    should_continue: bool = False
    continuation_scheduled: bool = False
    error_breakdown: dict = field(default_factory=dict)

    def as_dict(self) -> dict:
        return asdict(self)


class FileSkipped(Exception):
    """The file is already past the step this invocation wanted to run."""


# ─────────────────────────────────────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────────────────────────────────────

def process_import_session(
    session_id,
    continuation: bool = False,
    retry_failed: bool = False,
    file_ids=None,
    config=None,
    parser=None,
    breaker: CircuitBreaker | None = None,
    limiter: AdaptiveRateLimiter | None = None,
    schedule_next: bool = True,
) -> BatchResult:
    """
    Run one invocation. With schedule_next=False leftover files are reported
    through should_continue but no continuation request is sent; the
    management command uses this to drive a session inline.
    """
    session = BulkImportSession.objects.get(pk=session_id)

    config = config or load_batch_config()
    ctx = create_batch_context(session.pk, config)
    breaker = breaker or CircuitBreaker()
    limiter = limiter or AdaptiveRateLimiter()
    parser = parser or CVParser()
    result = BatchResult()

    if retry_failed or file_ids:
        resubmit_files(session.pk, file_ids)
    if not continuation:
        limiter.reset()
        _start_session(session.pk)

    files = get_files_to_process(
        session.pk, retry_failed=retry_failed, file_ids=file_ids, limit=config.batch_size,
    )
    logger.info(
        "Import session=%s: invocation started (continuation=%s, retry_failed=%s, %s file(s) queued)",
        session.pk, continuation, retry_failed, len(files),
    )

    for index, file in enumerate(files):
        if not should_continue_processing(ctx):
            logger.info(
                "Import session=%s: time budget spent after %sms — handing off",
                session.pk, round(ctx.elapsed_ms()),
            )
            break
        if has_reached_batch_limit(ctx):
            break
        if not breaker.can_execute():
            logger.warning(
                "Import session=%s: circuit breaker open (%sms cooldown left) — stopping batch",
                session.pk, round(breaker.get_remaining_cooldown_ms()),
            )
            break

        try:
            _process_file(file, parser, breaker, limiter, added_by=session.created_by)
        except FileSkipped:
            continue
        except Exception as exc:  # noqa: BLE001
            category = categorize_exception(exc)
            _record_failure(file, exc, category)
            result.failed += 1
            result.error_breakdown[str(category)] = result.error_breakdown.get(str(category), 0) + 1
        else:
            result.succeeded += 1

        result.processed += 1
        ctx.processed_count += 1
        if should_send_heartbeat(ctx):
            # processing_file names the file about to start, None at batch end.
            upcoming = files[index + 1].pk if index + 1 < len(files) else None
            update_heartbeat(session.pk, upcoming)

    _finish_invocation(session.pk)

    result.should_continue = has_remaining_files(session.pk)
    if result.should_continue and schedule_next:
        result.continuation_scheduled = schedule_continuation(session.pk)

    logger.info(
        "Import session=%s: invocation done processed=%s succeeded=%s failed=%s "
        "continue=%s scheduled=%s breaker=%s delay=%sms",
        session.pk, result.processed, result.succeeded, result.failed,
        result.should_continue, result.continuation_scheduled,
        breaker.state, limiter.current_delay_ms,
    )
    return result


# ─────────────────────────────────────────────────────────────────────────────
# Session bookkeeping
# ─────────────────────────────────────────────────────────────────────────────

def _start_session(session_id) -> None:
    now = timezone.now()
    BulkImportSession.objects.filter(pk=session_id).update(
        status=BulkImportSession.Status.PROCESSING,
        last_heartbeat=now,
    )
    BulkImportSession.objects.filter(pk=session_id, started_at__isnull=True).update(started_at=now)


def _finish_invocation(session_id) -> None:
    try:
        error_breakdown = compute_error_breakdown(session_id)
        avg_parse_time_ms = compute_avg_parse_time_ms(session_id)
    except DatabaseError:
        logger.warning("Import session=%s: diagnostics not recomputed", session_id, exc_info=True)
        error_breakdown, avg_parse_time_ms = None, None

    update_session_progress(
        session_id,
        error_breakdown=error_breakdown,
        avg_parse_time_ms=avg_parse_time_ms,
    )


# ─────────────────────────────────────────────────────────────────────────────
# One file
# ─────────────────────────────────────────────────────────────────────────────

def _process_file(file: BulkImportFile, parser, breaker, limiter, added_by=None) -> None:
    """
    Drive one file to `imported`. Raises on failure; raises FileSkipped when a
    concurrent invocation already moved the file on.
    """
    if file.status in (BulkImportFile.Status.PARSED, BulkImportFile.Status.IMPORTING):
        if not file.parsed_data:
            raise ImportFileError("File was marked parsed without extraction data", ErrorCategory.PARSE_ERROR)
        parsed = file.parsed_data
    else:
        if not mark_file_processing_started(file.pk):
            raise FileSkipped(file.pk)
        parsed, parse_time_ms = _extract(file, parser, breaker, limiter)
        if not mark_file_parsed(file.pk, parsed, parse_time_ms):
            raise FileSkipped(file.pk)

    if not mark_file_importing(file.pk):
        raise FileSkipped(file.pk)

    with transaction.atomic():
        duplicate = check_for_duplicate(parsed.get("email", ""))
        if duplicate.is_duplicate:
            submission_id = duplicate.existing_id
            logger.info(
                "File=%s (%s) matches existing candidate=%s — linked, not re-created",
                file.pk, file.file_name, submission_id,
            )
        else:
            _log_possible_duplicate(file, parsed)
            submission_id = create_submission_from_parsed(
                parsed, cv_file_url=file.file_url, added_by=added_by,
            ).pk
        if not mark_file_imported(file.pk, submission_id, was_duplicate=duplicate.is_duplicate):
            raise FileSkipped(file.pk)

    logger.info("File=%s (%s) imported as candidate=%s", file.pk, file.file_name, submission_id)


def _log_possible_duplicate(file: BulkImportFile, parsed: dict) -> None:
    """
    Phone and fuzzy-name matches are too weak to merge automatically. The
    file is still imported as a new candidate; the match is logged so a
    recruiter can review it.
    """
    match = find_duplicate_candidate("", name=parsed.get("name", ""), phone=parsed.get("phone", ""))
    if not match.is_duplicate:
        return
    suggestion = suggest_merge_action(match)
    logger.info(
        "File=%s (%s) may duplicate candidate=%s [%s, %s%%] — suggested action: %s (%s)",
        file.pk, file.file_name, suggestion.existing_id,
        match.match_type, match.confidence, suggestion.action, suggestion.reason,
    )


def _extract(file, parser, breaker, limiter) -> tuple[dict, int]:
    """Paced extraction call, with its outcome fed to the limiter and breaker."""
    limiter.wait_for_next_request()
    started = time.monotonic()
    try:
        parsed = parser.parse(file)
    except Exception as exc:
        category = categorize_exception(exc)
        if category == ErrorCategory.RATE_LIMIT:
            limiter.on_rate_limit()
        else:
            limiter.on_error()
        if category in SERVICE_CATEGORIES:
            breaker.on_failure(category)
        raise

    limiter.on_success()
    breaker.on_success()
    return parsed, round((time.monotonic() - started) * 1000)


def _record_failure(file: BulkImportFile, exc: Exception, category: str) -> None:
    logger.warning(
        "File=%s (%s) failed [%s]: %s",
        file.pk, file.file_name, category, exc,
        exc_info=category == ErrorCategory.UNKNOWN,
    )
    try:
        mark_file_failed(file.pk, str(exc) or exc.__class__.__name__, category, file.retry_count)
    except DatabaseError:
        logger.error("Could not record failure for file=%s", file.pk, exc_info=True)
