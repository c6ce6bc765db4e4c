"""
Tests for the bulk CV import app.

Covers:
  - CircuitBreaker state machine (closed → open → half-open → closed)
  - AdaptiveRateLimiter pacing, backoff and recovery; calculate_backoff_delay
  - Batch context bounds, heartbeat cadence, SystemSetting overrides
  - schedule_continuation delivery semantics
  - Store: pull filters/ordering, guarded transitions, count recomputation,
    completed_at written once
  - categorize_exception
  - process_import_session end to end with a fake parser
  - Trigger endpoint and session views
  - process_bulk_import management command
"""

import json
import shutil
import tempfile
from io import StringIO
from unittest.mock import MagicMock, patch

import requests
from django.contrib.auth import get_user_model
from django.core.files.uploadedfile import SimpleUploadedFile
from django.core.management import CommandError, call_command
from django.db import DatabaseError
from django.test import TestCase, SimpleTestCase, override_settings
from django.urls import reverse

from candidates.models import CVSubmission
from config.models import SystemSetting
from cvs.validation import clean_extracted_data
from imports import batch, store
from imports.batch import BatchConfig, create_batch_context
from imports.circuit_breaker import CLOSED, HALF_OPEN, OPEN, CircuitBreaker
from imports.errors import ErrorCategory, ImportFileError, categorize_exception, is_retryable
from imports.models import BulkImportFile, BulkImportSession
from imports.processor import BatchResult, process_import_session
from imports.rate_limiter import AdaptiveRateLimiter, calculate_backoff_delay

Status = BulkImportFile.Status


class FakeClock:
    """Monotonic millisecond clock advanced by hand."""

    def __init__(self, start: float = 1_000_000):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class FakeParser:
    """
    Stands in for cvs.parser.CVParser.

    ``failures`` maps file_name → ImportFileError to raise for that file;
    every other file parses to a unique candidate.
    """

    def __init__(self, failures=None, email_for=None):
        self.failures = failures or {}
        self.email_for = email_for or {}
        self.calls = []

    def parse(self, file):
        self.calls.append(file.file_name)
        if file.file_name in self.failures:
            raise self.failures[file.file_name]
        stem = file.file_name.rsplit(".", 1)[0]
        return clean_extracted_data({
            "name": f"Candidate {stem}",
            "email": self.email_for.get(file.file_name, f"{stem}@example.com"),
            "phone": "+44 7700 900123",
            "job_title": "Accountant",
            "cv_score": 72,
        })


def _make_session(n_files: int = 0, status=BulkImportSession.Status.PENDING, **file_kwargs) -> BulkImportSession:
    session = BulkImportSession.objects.create(status=status, total_files=n_files, pending_count=n_files)
    for i in range(1, n_files + 1):
        BulkImportFile.objects.create(
            session=session,
            file_name=f"cv{i}.pdf",
            file_path=f"cv-uploads/cv{i}.pdf",
            **file_kwargs,
        )
    return session


def _quiet_limiter() -> AdaptiveRateLimiter:
    return AdaptiveRateLimiter(sleep=lambda seconds: None)


def _run(session, parser=None, **kwargs) -> BatchResult:
    kwargs.setdefault("config", BatchConfig(batch_size=5, max_execution_time_ms=60000))
    kwargs.setdefault("limiter", _quiet_limiter())
    return process_import_session(session.pk, parser=parser or FakeParser(), **kwargs)


# ─────────────────────────────────────────────────────────────────────────────
# Circuit breaker
# ─────────────────────────────────────────────────────────────────────────────

class CircuitBreakerTests(SimpleTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.breaker = CircuitBreaker(clock=self.clock)

    def _fail(self, times: int, category=ErrorCategory.AI_ERROR):
        for _ in range(times):
            self.breaker.on_failure(category)

    def test_opens_after_failure_threshold(self):
        self._fail(2)
        self.assertEqual(self.breaker.state, CLOSED)
        self.assertTrue(self.breaker.can_execute())

        self._fail(1)
        self.assertEqual(self.breaker.state, OPEN)
        self.assertFalse(self.breaker.can_execute())
        self.assertEqual(self.breaker.get_state().last_error_category, ErrorCategory.AI_ERROR)

    def test_success_in_closed_state_clears_failure_streak(self):
        self._fail(2)
        self.breaker.on_success()
        self._fail(2)
        self.assertEqual(self.breaker.state, CLOSED)

    def test_moves_to_half_open_lazily_after_reset_timeout(self):
        self._fail(3)
        self.clock.advance(29999)
        self.assertFalse(self.breaker.can_execute())
        self.assertEqual(self.breaker.state, OPEN)

        self.clock.advance(1)
        self.assertTrue(self.breaker.can_execute())
        self.assertEqual(self.breaker.state, HALF_OPEN)

    def test_half_open_closes_after_success_threshold(self):
        self._fail(3)
        self.clock.advance(30000)
        self.breaker.can_execute()

        self.breaker.on_success()
        self.assertEqual(self.breaker.state, HALF_OPEN)
        self.breaker.on_success()
        self.assertEqual(self.breaker.state, CLOSED)
        self.assertEqual(self.breaker.get_state().failures, 0)

    def test_any_failure_in_half_open_reopens(self):
        self._fail(3)
        self.clock.advance(30000)
        self.breaker.can_execute()
        self.breaker.on_success()

        self._fail(1, ErrorCategory.TIMEOUT)
        self.assertEqual(self.breaker.state, OPEN)
        self.assertFalse(self.breaker.can_execute())

    def test_remaining_cooldown(self):
        self.assertEqual(self.breaker.get_remaining_cooldown_ms(), 0)
        self._fail(3)
        self.clock.advance(10000)
        self.assertEqual(self.breaker.get_remaining_cooldown_ms(), 20000)

    def test_force_close_and_overrides(self):
        breaker = CircuitBreaker(clock=self.clock, failure_threshold=1)
        breaker.on_failure()
        self.assertTrue(breaker.is_open())
        breaker.force_close()
        self.assertEqual(breaker.state, CLOSED)

    def test_get_state_is_a_snapshot(self):
        snapshot = self.breaker.get_state()
        snapshot.failures = 99
        self.assertEqual(self.breaker.get_state().failures, 0)


# ─────────────────────────────────────────────────────────────────────────────
# Rate limiter
# ─────────────────────────────────────────────────────────────────────────────

class AdaptiveRateLimiterTests(SimpleTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.sleeps = []
        self.limiter = AdaptiveRateLimiter(clock=self.clock, sleep=self.sleeps.append)

    def test_first_request_does_not_wait(self):
        self.limiter.wait_for_next_request()
        self.assertEqual(self.sleeps, [])

    def test_waits_for_remaining_delay(self):
        self.limiter.wait_for_next_request()
        self.clock.advance(500)
        self.limiter.wait_for_next_request()
        self.assertEqual(self.sleeps, [1.0])

    def test_no_wait_when_delay_already_elapsed(self):
        self.limiter.wait_for_next_request()
        self.clock.advance(2000)
        self.limiter.wait_for_next_request()
        self.assertEqual(self.sleeps, [])

    def test_rate_limit_doubles_delay_up_to_max(self):
        self.limiter.on_rate_limit()
        self.assertEqual(self.limiter.current_delay_ms, 3000)
        for _ in range(5):
            self.limiter.on_rate_limit()
        self.assertEqual(self.limiter.current_delay_ms, 10000)
        self.assertEqual(self.limiter.consecutive_failures, 6)

    def test_other_error_grows_delay_by_a_fifth(self):
        self.limiter.on_error()
        self.assertEqual(self.limiter.current_delay_ms, 1800)
        self.assertEqual(self.limiter.consecutive_successes, 0)

    def test_recovery_starts_on_third_consecutive_success(self):
        self.limiter.on_success()
        self.limiter.on_success()
        self.assertEqual(self.limiter.current_delay_ms, 1500)
        self.limiter.on_success()
        self.assertEqual(self.limiter.current_delay_ms, 1350)
        self.limiter.on_success()
        self.assertEqual(self.limiter.current_delay_ms, 1215)

    def test_recovery_never_goes_below_min_delay(self):
        for _ in range(50):
            self.limiter.on_success()
        self.assertEqual(self.limiter.current_delay_ms, 500)

    def test_failure_breaks_success_streak(self):
        self.limiter.on_success()
        self.limiter.on_success()
        self.limiter.on_error()
        self.limiter.on_success()
        self.assertEqual(self.limiter.get_stats()["consecutive_successes"], 1)

    def test_reset_restores_initial_state(self):
        self.limiter.on_rate_limit()
        self.limiter.wait_for_next_request()
        self.limiter.reset()
        self.assertEqual(self.limiter.get_stats(), {
            "current_delay_ms": 1500,
            "consecutive_successes": 0,
            "consecutive_failures": 0,
        })
        self.limiter.wait_for_next_request()
        self.assertEqual(self.sleeps, [])


class BackoffDelayTests(SimpleTestCase):
    @patch("imports.rate_limiter.random.random", return_value=0.5)
    def test_exponential_without_jitter(self, _):
        self.assertEqual(
            [calculate_backoff_delay(a) for a in range(6)],
            [1000, 2000, 4000, 8000, 16000, 30000],
        )

    @patch("imports.rate_limiter.random.random", return_value=1.0)
    def test_jitter_is_bounded(self, _):
        self.assertEqual(calculate_backoff_delay(1), 2200)
        self.assertEqual(calculate_backoff_delay(10), 33000)


# ─────────────────────────────────────────────────────────────────────────────
# Batch context and continuation
# ─────────────────────────────────────────────────────────────────────────────

class BatchContextTests(TestCase):
    def test_defaults_and_partial_overrides(self):
        ctx = create_batch_context(1, batch_size=3)
        self.assertEqual(ctx.config, BatchConfig(batch_size=3, max_execution_time_ms=20000, heartbeat_interval=2))
        self.assertEqual(ctx.processed_count, 0)

    def test_time_budget(self):
        clock = FakeClock()
        ctx = create_batch_context(1, clock=clock)
        clock.advance(19999)
        self.assertTrue(batch.should_continue_processing(ctx))
        clock.advance(1)
        self.assertFalse(batch.should_continue_processing(ctx))

    def test_batch_limit(self):
        ctx = create_batch_context(1, batch_size=2)
        ctx.processed_count = 1
        self.assertFalse(batch.has_reached_batch_limit(ctx))
        ctx.processed_count = 2
        self.assertTrue(batch.has_reached_batch_limit(ctx))

    def test_heartbeat_cadence(self):
        ctx = create_batch_context(1, heartbeat_interval=2)
        due = []
        for count in range(0, 6):
            ctx.processed_count = count
            due.append(batch.should_send_heartbeat(ctx))
        self.assertEqual(due, [False, False, True, False, True, False])

    @override_settings(BULK_IMPORT_BATCH_SIZE=5, BULK_IMPORT_MAX_EXECUTION_MS=20000, BULK_IMPORT_HEARTBEAT_INTERVAL=2)
    def test_load_batch_config_prefers_system_settings(self):
        SystemSetting.objects.create(key="bulk_import_batch_size", value=" 8 ")
        SystemSetting.objects.create(key="bulk_import_heartbeat_interval", value="not-a-number")
        config = batch.load_batch_config()
        self.assertEqual(config, BatchConfig(batch_size=8, max_execution_time_ms=20000, heartbeat_interval=2))

    @override_settings(BULK_IMPORT_BATCH_SIZE=5, BULK_IMPORT_MAX_EXECUTION_MS=20000, BULK_IMPORT_HEARTBEAT_INTERVAL=2)
    def test_load_batch_config_rejects_non_positive_overrides(self):
        SystemSetting.objects.create(key="bulk_import_heartbeat_interval", value="0")
        SystemSetting.objects.create(key="bulk_import_batch_size", value="-3")

        with self.assertLogs("config.models", level="WARNING") as logs:
            config = batch.load_batch_config()

        self.assertEqual(config, BatchConfig(batch_size=5, max_execution_time_ms=20000, heartbeat_interval=2))
        self.assertEqual(len(logs.output), 2)

    def test_update_heartbeat_records_file(self):
        session = _make_session(1)
        file = session.files.get()
        batch.update_heartbeat(session.pk, file.pk)
        session.refresh_from_db()
        self.assertIsNotNone(session.last_heartbeat)
        self.assertEqual(session.processing_file_id, file.pk)


@override_settings(
    BULK_IMPORT_TRIGGER_URL="https://talentdesk.example.com/imports/process/",
    BULK_IMPORT_TRIGGER_SECRET="s3cret",
)
class ScheduleContinuationTests(SimpleTestCase):
    @patch("imports.batch.requests.post")
    def test_posts_continuation_payload_with_token(self, mock_post):
        mock_post.return_value = MagicMock(ok=True, status_code=200)

        self.assertTrue(batch.schedule_continuation(42))

        _, kwargs = mock_post.call_args
        self.assertEqual(kwargs["json"], {"session_id": 42, "continuation": True})
        self.assertEqual(kwargs["headers"]["X-Import-Token"], "s3cret")

    @patch("imports.batch.requests.post", side_effect=requests.ReadTimeout("still running"))
    def test_read_timeout_counts_as_scheduled(self, _):
        self.assertTrue(batch.schedule_continuation(42))

    @patch("imports.batch.requests.post", side_effect=requests.ConnectionError("refused"))
    def test_connection_failure_is_not_retried(self, mock_post):
        self.assertFalse(batch.schedule_continuation(42))
        self.assertEqual(mock_post.call_count, 1)

    @patch("imports.batch.requests.post")
    def test_non_2xx_is_a_failure(self, mock_post):
        mock_post.return_value = MagicMock(ok=False, status_code=503, text="unavailable")
        self.assertFalse(batch.schedule_continuation(42))

    @override_settings(BULK_IMPORT_TRIGGER_URL="")
    @patch("imports.batch.requests.post")
    def test_missing_url(self, mock_post):
        self.assertFalse(batch.schedule_continuation(42))
        mock_post.assert_not_called()


# ─────────────────────────────────────────────────────────────────────────────
# Error taxonomy
# ─────────────────────────────────────────────────────────────────────────────

class ErrorCategoryTests(SimpleTestCase):
    def test_categorize_by_type(self):
        self.assertEqual(
            categorize_exception(ImportFileError("bad", ErrorCategory.FILE_ERROR)),
            ErrorCategory.FILE_ERROR,
        )
        self.assertEqual(categorize_exception(DatabaseError("locked")), ErrorCategory.DB_ERROR)
        self.assertEqual(categorize_exception(requests.Timeout()), ErrorCategory.TIMEOUT)
        self.assertEqual(categorize_exception(requests.ConnectionError()), ErrorCategory.NETWORK_ERROR)
        self.assertEqual(categorize_exception(ValueError("rate limit")), ErrorCategory.UNKNOWN)

    def test_retryable_categories(self):
        self.assertTrue(is_retryable(ErrorCategory.RATE_LIMIT))
        self.assertTrue(is_retryable(ErrorCategory.AI_ERROR))
        self.assertFalse(is_retryable(ErrorCategory.PAYMENT_REQUIRED))
        self.assertFalse(is_retryable(ErrorCategory.PARSE_ERROR))
        self.assertTrue(ImportFileError("x", ErrorCategory.TIMEOUT).retryable)


# ─────────────────────────────────────────────────────────────────────────────
# Store
# ─────────────────────────────────────────────────────────────────────────────

class StoreTests(TestCase):
    def test_get_files_to_process_orders_by_retry_count(self):
        session = _make_session()
        for name, retries in (("b.pdf", 2), ("a.pdf", 0), ("c.pdf", 1)):
            BulkImportFile.objects.create(session=session, file_name=name, retry_count=retries)

        names = [f.file_name for f in store.get_files_to_process(session.pk)]
        self.assertEqual(names, ["a.pdf", "c.pdf", "b.pdf"])

    def test_get_files_to_process_status_sets(self):
        session = _make_session()
        for status in Status.values:
            BulkImportFile.objects.create(session=session, file_name=f"{status}.pdf", status=status)

        default = {f.status for f in store.get_files_to_process(session.pk)}
        retry = {f.status for f in store.get_files_to_process(session.pk, retry_failed=True)}
        self.assertEqual(default, {Status.PENDING, Status.PARSING, Status.PARSED, Status.IMPORTING})
        self.assertEqual(retry, {Status.ERROR, Status.PENDING})

    def test_get_files_to_process_id_filter_and_limit(self):
        session = _make_session(4)
        ids = list(session.files.values_list("pk", flat=True))
        picked = store.get_files_to_process(session.pk, file_ids=ids[1:], limit=2)
        self.assertEqual([f.pk for f in picked], ids[1:3])

    def test_transitions_are_guarded_and_idempotent(self):
        session = _make_session(1)
        file = session.files.get()

        self.assertFalse(store.mark_file_parsed(file.pk, {"name": "x"}))
        self.assertTrue(store.mark_file_processing_started(file.pk))
        self.assertTrue(store.mark_file_parsed(file.pk, {"name": "x"}, parse_time_ms=1200))
        self.assertFalse(store.mark_file_parsed(file.pk, {"name": "y"}))
        self.assertTrue(store.mark_file_importing(file.pk))
        self.assertTrue(store.mark_file_imported(file.pk, None))
        self.assertFalse(store.mark_file_imported(file.pk, None))
        self.assertFalse(store.mark_file_failed(file.pk, "late", ErrorCategory.UNKNOWN, 0))

        file.refresh_from_db()
        self.assertEqual(file.status, Status.IMPORTED)
        self.assertEqual(file.parsed_data, {"name": "x"})
        self.assertIsNotNone(file.processed_at)

    def test_mark_file_failed_records_category_and_retry_count(self):
        session = _make_session(1)
        file = session.files.get()
        store.mark_file_processing_started(file.pk)
        self.assertTrue(store.mark_file_failed(file.pk, "timed out", ErrorCategory.TIMEOUT, 2))

        file.refresh_from_db()
        self.assertEqual(file.status, Status.ERROR)
        self.assertEqual(file.error_category, ErrorCategory.TIMEOUT)
        self.assertEqual(file.retry_count, 2)

    def test_resubmit_files_resets_errors_and_bumps_retry_count(self):
        session = _make_session(2, status=BulkImportSession.Status.PROCESSING)
        first, second = session.files.all()
        BulkImportFile.objects.filter(pk=first.pk).update(
            status=Status.ERROR, error_category=ErrorCategory.AI_ERROR, error_message="boom",
        )

        self.assertEqual(store.resubmit_files(session.pk), 1)

        first.refresh_from_db()
        self.assertEqual(first.status, Status.PENDING)
        self.assertEqual(first.retry_count, 1)
        self.assertEqual(first.error_message, "")
        self.assertEqual(first.error_category, "")

    def test_recompute_session_counts_partitions_files(self):
        session = _make_session()
        layout = [Status.PENDING, Status.PARSING, Status.PARSED, Status.IMPORTING,
                  Status.IMPORTED, Status.IMPORTED, Status.ERROR]
        for i, status in enumerate(layout):
            BulkImportFile.objects.create(session=session, file_name=f"{i}.pdf", status=status)

        counts = store.recompute_session_counts(session.pk)
        self.assertEqual(counts, store.SessionCounts(
            total_files=7, parsed_count=1, imported_count=2, failed_count=1, pending_count=3,
        ))

    def test_update_session_progress_sets_completed_at_once(self):
        session = _make_session(1, status=BulkImportSession.Status.PROCESSING)
        file = session.files.get()
        BulkImportFile.objects.filter(pk=file.pk).update(status=Status.IMPORTED)

        store.update_session_progress(session.pk)
        session.refresh_from_db()
        self.assertEqual(session.status, BulkImportSession.Status.COMPLETED)
        first_completed_at = session.completed_at
        self.assertIsNotNone(first_completed_at)

        store.update_session_progress(session.pk)
        session.refresh_from_db()
        self.assertEqual(session.completed_at, first_completed_at)

    def test_update_session_progress_keeps_processing_while_pending(self):
        session = _make_session(2, status=BulkImportSession.Status.PROCESSING)
        BulkImportFile.objects.filter(pk=session.files.first().pk).update(status=Status.ERROR)

        counts = store.update_session_progress(session.pk, error_breakdown={"AI_ERROR": 1}, avg_parse_time_ms=900)

        session.refresh_from_db()
        self.assertEqual(counts.pending_count, 1)
        self.assertEqual(session.status, BulkImportSession.Status.PROCESSING)
        self.assertIsNone(session.completed_at)
        self.assertEqual(session.error_breakdown, {"AI_ERROR": 1})
        self.assertEqual(session.avg_parse_time_ms, 900)

    @patch("imports.store.recompute_session_counts", side_effect=DatabaseError("gone"))
    def test_update_session_progress_failure_leaves_session_untouched(self, _):
        session = _make_session(1, status=BulkImportSession.Status.PROCESSING)
        self.assertIsNone(store.update_session_progress(session.pk))
        session.refresh_from_db()
        self.assertEqual(session.status, BulkImportSession.Status.PROCESSING)
        self.assertEqual(session.pending_count, 1)

    def test_error_breakdown_and_average_parse_time(self):
        session = _make_session()
        BulkImportFile.objects.create(session=session, file_name="a", status=Status.ERROR, error_category="TIMEOUT")
        BulkImportFile.objects.create(session=session, file_name="b", status=Status.ERROR, error_category="TIMEOUT")
        BulkImportFile.objects.create(session=session, file_name="c", status=Status.ERROR)
        BulkImportFile.objects.create(session=session, file_name="d", status=Status.IMPORTED, parse_time_ms=1000)
        BulkImportFile.objects.create(session=session, file_name="e", status=Status.IMPORTED, parse_time_ms=2001)

        self.assertEqual(store.compute_error_breakdown(session.pk), {"TIMEOUT": 2, "UNKNOWN": 1})
        self.assertEqual(store.compute_avg_parse_time_ms(session.pk), 1500)

    def test_check_for_duplicate_is_case_insensitive(self):
        existing = CVSubmission.objects.create(name="Jane Doe", email="jane@example.com")
        self.assertEqual(
            store.check_for_duplicate("JANE@Example.com"),
            store.DuplicateCheck(is_duplicate=True, existing_id=existing.pk),
        )
        self.assertFalse(store.check_for_duplicate("other@example.com").is_duplicate)


# ─────────────────────────────────────────────────────────────────────────────
# Processor
# ─────────────────────────────────────────────────────────────────────────────

@patch("imports.processor.schedule_continuation", return_value=True)
class ProcessImportSessionTests(TestCase):
    def test_seven_files_take_two_invocations(self, mock_schedule):
        session = _make_session(7)

        first = _run(session)

        self.assertEqual((first.processed, first.succeeded, first.failed), (5, 5, 0))
        self.assertTrue(first.should_continue)
        self.assertTrue(first.continuation_scheduled)
        mock_schedule.assert_called_once_with(session.pk)
        session.refresh_from_db()
        self.assertEqual(session.status, BulkImportSession.Status.PROCESSING)
        self.assertEqual((session.imported_count, session.pending_count), (5, 2))
        self.assertIsNotNone(session.started_at)
        self.assertIsNone(session.completed_at)

        second = _run(session, continuation=True)

        self.assertEqual(second.processed, 2)
        self.assertFalse(second.should_continue)
        self.assertFalse(second.continuation_scheduled)
        self.assertEqual(mock_schedule.call_count, 1)
        session.refresh_from_db()
        self.assertEqual(session.status, BulkImportSession.Status.COMPLETED)
        self.assertEqual(session.imported_count, 7)
        self.assertEqual(session.pending_count, 0)
        self.assertIsNotNone(session.completed_at)
        self.assertEqual(CVSubmission.objects.filter(source=CVSubmission.Source.ADMIN_BULK).count(), 7)

        completed_at = session.completed_at
        third = _run(session, continuation=True)
        session.refresh_from_db()
        self.assertEqual(third.processed, 0)
        self.assertEqual(session.completed_at, completed_at)

    def test_counts_always_partition_files(self, _):
        session = _make_session(6)
        parser = FakeParser(failures={
            "cv2.pdf": ImportFileError("unreadable", ErrorCategory.FILE_ERROR),
            "cv4.pdf": ImportFileError("no text", ErrorCategory.PARSE_ERROR),
        })

        result = _run(session, parser=parser)

        session.refresh_from_db()
        self.assertEqual(result.error_breakdown, {"FILE_ERROR": 1, "PARSE_ERROR": 1})
        self.assertEqual(
            session.parsed_count + session.imported_count + session.failed_count + session.pending_count,
            session.files.count(),
        )
        self.assertEqual(session.error_breakdown, {"FILE_ERROR": 1, "PARSE_ERROR": 1})
        failed = session.files.get(file_name="cv2.pdf")
        self.assertEqual(failed.status, Status.ERROR)
        self.assertEqual(failed.error_message, "unreadable")

    def test_open_breaker_stops_the_batch(self, mock_schedule):
        session = _make_session(5)
        ai_down = ImportFileError("overloaded", ErrorCategory.AI_ERROR)
        parser = FakeParser(failures={f"cv{i}.pdf": ai_down for i in range(1, 6)})
        breaker = CircuitBreaker()

        result = _run(session, parser=parser, breaker=breaker)

        self.assertEqual(result.processed, 3)
        self.assertEqual(result.error_breakdown, {"AI_ERROR": 3})
        self.assertTrue(breaker.is_open())
        self.assertTrue(result.should_continue)
        self.assertTrue(result.continuation_scheduled)
        self.assertEqual(session.files.filter(status=Status.PENDING).count(), 2)

    def test_file_level_errors_do_not_open_breaker(self, _):
        session = _make_session(5)
        bad = ImportFileError("too small", ErrorCategory.FILE_ERROR)
        parser = FakeParser(failures={f"cv{i}.pdf": bad for i in range(1, 6)})
        breaker = CircuitBreaker()

        result = _run(session, parser=parser, breaker=breaker)

        self.assertEqual(result.processed, 5)
        self.assertEqual(breaker.state, CLOSED)

    def test_rate_limit_slows_the_limiter(self, _):
        session = _make_session(2)
        parser = FakeParser(failures={"cv1.pdf": ImportFileError("429", ErrorCategory.RATE_LIMIT)})
        limiter = _quiet_limiter()

        _run(session, parser=parser, limiter=limiter, continuation=True)

        self.assertEqual(limiter.consecutive_successes, 1)
        self.assertEqual(limiter.current_delay_ms, 3000)

    def test_unexpected_exception_is_recorded_as_unknown(self, _):
        session = _make_session(1)
        parser = FakeParser(failures={"cv1.pdf": KeyError("surprise")})

        result = _run(session, parser=parser)

        self.assertEqual(result.failed, 1)
        self.assertEqual(session.files.get().error_category, ErrorCategory.UNKNOWN)

    def test_time_budget_exhausted_processes_nothing(self, mock_schedule):
        session = _make_session(2)
        result = _run(session, config=BatchConfig(batch_size=5, max_execution_time_ms=0))

        self.assertEqual(result.processed, 0)
        self.assertTrue(result.should_continue)
        mock_schedule.assert_called_once()

    def test_duplicate_email_links_existing_candidate(self, _):
        existing = CVSubmission.objects.create(name="Jane Doe", email="jane@example.com")
        session = _make_session(1)

        _run(session, parser=FakeParser(email_for={"cv1.pdf": "Jane@Example.com"}))

        file = session.files.get()
        self.assertEqual(file.status, Status.IMPORTED)
        self.assertTrue(file.was_duplicate)
        self.assertEqual(file.cv_submission_id, existing.pk)
        self.assertEqual(CVSubmission.objects.count(), 1)

    def test_placeholder_email_never_deduplicates(self, _):
        CVSubmission.objects.create(name="Someone", email="not-provided@unknown.com")
        session = _make_session(1)

        _run(session, parser=FakeParser(email_for={"cv1.pdf": ""}))

        self.assertFalse(session.files.get().was_duplicate)
        self.assertEqual(CVSubmission.objects.count(), 2)

    def test_parsed_file_skips_extraction(self, _):
        session = _make_session()
        BulkImportFile.objects.create(
            session=session,
            file_name="ready.pdf",
            status=Status.PARSED,
            parsed_data=clean_extracted_data({"name": "Ready Person", "email": "ready@example.com"}),
        )
        parser = FakeParser()

        result = _run(session, parser=parser, continuation=True)

        self.assertEqual(result.succeeded, 1)
        self.assertEqual(parser.calls, [])
        self.assertTrue(CVSubmission.objects.filter(email="ready@example.com").exists())

    def test_retry_failed_resubmits_error_files(self, _):
        session = _make_session(2, status=BulkImportSession.Status.COMPLETED)
        first, second = session.files.all()
        BulkImportFile.objects.filter(pk=first.pk).update(status=Status.ERROR, error_category="TIMEOUT")
        BulkImportFile.objects.filter(pk=second.pk).update(status=Status.IMPORTED)

        result = _run(session, retry_failed=True)

        first.refresh_from_db()
        self.assertEqual(result.processed, 1)
        self.assertEqual(first.status, Status.IMPORTED)
        self.assertEqual(first.retry_count, 1)
        session.refresh_from_db()
        self.assertEqual(session.status, BulkImportSession.Status.COMPLETED)
        self.assertEqual(session.error_breakdown, {})

    def test_heartbeat_written_during_batch(self, _):
        session = _make_session(3)
        with patch("imports.processor.update_heartbeat") as mock_heartbeat:
            _run(session)
        mock_heartbeat.assert_called_once()
        self.assertEqual(mock_heartbeat.call_args[0][0], session.pk)

    def test_heartbeat_points_at_the_file_about_to_start(self, _):
        session = _make_session(4)
        third = session.files.get(file_name="cv3.pdf")

        with patch("imports.processor.update_heartbeat") as mock_heartbeat:
            _run(session)

        self.assertEqual(
            [c.args for c in mock_heartbeat.call_args_list],
            [(session.pk, third.pk), (session.pk, None)],
        )

    def test_continuation_with_retry_failed_resubmits_error_files(self, _):
        session = _make_session(2, status=BulkImportSession.Status.PROCESSING)
        session.files.update(status=Status.ERROR, error_category=ErrorCategory.TIMEOUT)
        parser = FakeParser()

        result = _run(session, parser=parser, continuation=True, retry_failed=True)

        self.assertEqual((result.processed, result.succeeded), (2, 2))
        self.assertEqual(sorted(parser.calls), ["cv1.pdf", "cv2.pdf"])
        self.assertEqual(
            list(session.files.values_list("status", "retry_count")),
            [(Status.IMPORTED, 1), (Status.IMPORTED, 1)],
        )

    def test_continuation_with_file_ids_resubmits_only_those(self, _):
        session = _make_session(2, status=BulkImportSession.Status.PROCESSING)
        session.files.update(status=Status.ERROR)
        first = session.files.get(file_name="cv1.pdf")

        result = _run(session, continuation=True, file_ids=[first.pk])

        self.assertEqual(result.processed, 1)
        first.refresh_from_db()
        self.assertEqual(first.status, Status.IMPORTED)
        self.assertEqual(session.files.get(file_name="cv2.pdf").status, Status.ERROR)

    def test_weak_duplicate_match_is_logged_and_imported_as_new(self, _):
        existing = CVSubmission.objects.create(
            name="Somebody Else", email="other@example.com", phone="7700 900123",
        )
        session = _make_session(1)

        with self.assertLogs("imports.processor", level="INFO") as logs:
            _run(session)

        file = session.files.get()
        self.assertEqual(file.status, Status.IMPORTED)
        self.assertFalse(file.was_duplicate)
        self.assertNotEqual(file.cv_submission_id, existing.pk)
        self.assertTrue(any(
            f"may duplicate candidate={existing.pk} [phone_exact" in line for line in logs.output
        ))

    def test_unknown_session_raises(self, _):
        with self.assertRaises(BulkImportSession.DoesNotExist):
            process_import_session(999999, parser=FakeParser())


# ─────────────────────────────────────────────────────────────────────────────
# Views
# ─────────────────────────────────────────────────────────────────────────────

class TriggerViewTests(TestCase):
    def _post(self, payload, **headers):
        return self.client.post(
            reverse("imports:process"),
            data=json.dumps(payload) if not isinstance(payload, str) else payload,
            content_type="application/json",
            **headers,
        )

    @override_settings(DEBUG=False, BULK_IMPORT_TRIGGER_SECRET="")
    def test_fails_hard_in_production_when_secret_missing(self):
        response = self._post({"session_id": 1})
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["error"], "server_misconfigured")

    @override_settings(BULK_IMPORT_TRIGGER_SECRET="s3cret")
    def test_rejects_invalid_token(self):
        response = self._post({"session_id": 1}, HTTP_X_IMPORT_TOKEN="wrong")
        self.assertEqual(response.status_code, 401)

    @override_settings(BULK_IMPORT_TRIGGER_SECRET="s3cret")
    def test_missing_session_id_is_400(self):
        response = self._post({"continuation": True}, HTTP_AUTHORIZATION="Bearer s3cret")
        self.assertEqual(response.status_code, 400)

    @override_settings(BULK_IMPORT_TRIGGER_SECRET="s3cret")
    def test_invalid_json_is_400(self):
        response = self._post("{not json", HTTP_X_IMPORT_TOKEN="s3cret")
        self.assertEqual(response.status_code, 400)

    @override_settings(BULK_IMPORT_TRIGGER_SECRET="s3cret")
    def test_unknown_session_is_404(self):
        response = self._post({"session_id": 999999}, HTTP_X_IMPORT_TOKEN="s3cret")
        self.assertEqual(response.status_code, 404)

    @override_settings(BULK_IMPORT_TRIGGER_SECRET="s3cret")
    @patch("imports.views.process_import_session")
    def test_returns_batch_result(self, mock_process):
        mock_process.return_value = BatchResult(
            processed=5, succeeded=4, failed=1, should_continue=True,
            continuation_scheduled=True, error_breakdown={"TIMEOUT": 1},
        )

        response = self._post(
            {"session_id": "12", "continuation": True, "file_ids": [3]},
            HTTP_X_IMPORT_TOKEN="s3cret",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {
            "processed": 5, "succeeded": 4, "failed": 1, "should_continue": True,
            "continuation_scheduled": True, "error_breakdown": {"TIMEOUT": 1},
        })
        mock_process.assert_called_once_with(12, continuation=True, retry_failed=False, file_ids=[3])

    @override_settings(BULK_IMPORT_TRIGGER_SECRET="s3cret")
    @patch("imports.views.process_import_session")
    def test_non_integer_file_ids_are_400(self, mock_process):
        session = _make_session(1)
        for file_ids in (["abc"], [None], [1.5], [True], [{"id": 1}]):
            with self.subTest(file_ids=file_ids):
                response = self._post(
                    {"session_id": session.pk, "file_ids": file_ids}, HTTP_X_IMPORT_TOKEN="s3cret",
                )
                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.json()["error"], "file_ids must be a list of integers")
        mock_process.assert_not_called()

    @override_settings(BULK_IMPORT_TRIGGER_SECRET="s3cret")
    @patch("imports.views.process_import_session")
    def test_numeric_string_file_ids_are_coerced(self, mock_process):
        mock_process.return_value = BatchResult()

        response = self._post({"session_id": 4, "file_ids": ["7", 8]}, HTTP_X_IMPORT_TOKEN="s3cret")

        self.assertEqual(response.status_code, 200)
        mock_process.assert_called_once_with(4, continuation=False, retry_failed=False, file_ids=[7, 8])

    @override_settings(BULK_IMPORT_TRIGGER_SECRET="s3cret")
    @patch("imports.views.process_import_session")
    def test_flags_must_be_json_booleans(self, mock_process):
        for payload in (
            {"session_id": 1, "continuation": "false"},
            {"session_id": 1, "retry_failed": 1},
            {"session_id": 1, "retry_failed": None},
        ):
            with self.subTest(payload=payload):
                response = self._post(payload, HTTP_X_IMPORT_TOKEN="s3cret")
                self.assertEqual(response.status_code, 400)
        mock_process.assert_not_called()

    def test_get_not_allowed(self):
        response = self.client.get(reverse("imports:process"))
        self.assertEqual(response.status_code, 405)


class SessionViewTests(TestCase):
    def setUp(self):
        self.media_root = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.media_root, ignore_errors=True)
        self.user = get_user_model().objects.create_user(username="recruiter", password="pw")

    def test_requires_login(self):
        response = self.client.post(reverse("imports:session_create"))
        self.assertEqual(response.status_code, 302)

    def test_upload_creates_pending_session(self):
        self.client.force_login(self.user)
        uploads = [
            SimpleUploadedFile("jane.pdf", b"%PDF-1.4 " + b"x" * 200, content_type="application/pdf"),
            SimpleUploadedFile("john.docx", b"PK\x03\x04" + b"y" * 200),
        ]

        with override_settings(MEDIA_ROOT=self.media_root):
            response = self.client.post(reverse("imports:session_create"), {"files": uploads})

        self.assertEqual(response.status_code, 201)
        session = BulkImportSession.objects.get(pk=response.json()["session_id"])
        self.assertEqual(session.status, BulkImportSession.Status.PENDING)
        self.assertEqual(session.created_by, self.user)
        self.assertEqual(session.total_files, 2)
        self.assertEqual(
            sorted(session.files.values_list("file_name", flat=True)),
            ["jane.pdf", "john.docx"],
        )
        self.assertTrue(all(f.file_path.startswith("cv-uploads/") for f in session.files.all()))

    def test_upload_without_files_is_400(self):
        self.client.force_login(self.user)
        response = self.client.post(reverse("imports:session_create"))
        self.assertEqual(response.status_code, 400)

    def test_status_view(self):
        self.client.force_login(self.user)
        session = _make_session(2, status=BulkImportSession.Status.PROCESSING)
        store.update_session_progress(session.pk)

        response = self.client.get(reverse("imports:session_status", args=[session.pk]))

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertEqual(data["status"], "processing")
        self.assertEqual(data["pending_count"], 2)
        self.assertEqual(len(data["files"]), 2)
        self.assertEqual(data["files"][0]["status"], "pending")


# ─────────────────────────────────────────────────────────────────────────────
# Management command
# ─────────────────────────────────────────────────────────────────────────────

class ProcessBulkImportCommandTests(TestCase):
    @patch("imports.processor.CVParser", return_value=FakeParser())
    @patch("imports.processor.AdaptiveRateLimiter", side_effect=_quiet_limiter)
    @patch("imports.processor.load_batch_config", return_value=BatchConfig(batch_size=2, max_execution_time_ms=60000))
    @patch("imports.processor.schedule_continuation")
    def test_until_done_runs_invocations_inline(self, mock_schedule, *_):
        session = _make_session(5)
        out = StringIO()

        call_command("process_bulk_import", "--session-id", str(session.pk), "--until-done", stdout=out)

        mock_schedule.assert_not_called()
        session.refresh_from_db()
        self.assertEqual(session.status, BulkImportSession.Status.COMPLETED)
        self.assertEqual(session.imported_count, 5)
        self.assertIn("Invocation 3", out.getvalue())

    def test_unknown_session_is_a_command_error(self):
        with self.assertRaises(CommandError):
            call_command("process_bulk_import", "--session-id", "999999", stdout=StringIO())
