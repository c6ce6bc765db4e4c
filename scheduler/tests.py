from datetime import timedelta
from unittest.mock import patch

from django.test import TestCase, override_settings
from django.utils import timezone

from imports.models import BulkImportSession
from scheduler import jobs


def _make_session(status=BulkImportSession.Status.PROCESSING, **timestamps) -> BulkImportSession:
    session = BulkImportSession.objects.create(status=status, total_files=3, pending_count=3)
    if timestamps:
        # update() bypasses auto_now so updated_at can be backdated too.
        BulkImportSession.objects.filter(pk=session.pk).update(**timestamps)
    return session


@override_settings(BULK_IMPORT_STALE_MINUTES=5)
class ResumeStalledImportsTests(TestCase):
    @patch("scheduler.jobs.schedule_continuation", return_value=True)
    def test_stale_heartbeat_is_retriggered(self, mock_schedule):
        session = _make_session(last_heartbeat=timezone.now() - timedelta(minutes=10))

        jobs.resume_stalled_imports.__wrapped__()

        mock_schedule.assert_called_once_with(session.pk)

    @patch("scheduler.jobs.schedule_continuation", return_value=True)
    def test_recent_heartbeat_is_left_alone(self, mock_schedule):
        _make_session(last_heartbeat=timezone.now() - timedelta(minutes=1))

        jobs.resume_stalled_imports.__wrapped__()

        mock_schedule.assert_not_called()

    @patch("scheduler.jobs.schedule_continuation", return_value=True)
    def test_started_at_used_when_no_heartbeat(self, mock_schedule):
        stale = _make_session(started_at=timezone.now() - timedelta(minutes=30))
        _make_session(started_at=timezone.now())

        jobs.resume_stalled_imports.__wrapped__()

        mock_schedule.assert_called_once_with(stale.pk)

    @patch("scheduler.jobs.schedule_continuation", return_value=True)
    def test_non_processing_sessions_ignored(self, mock_schedule):
        old = timezone.now() - timedelta(hours=2)
        _make_session(status=BulkImportSession.Status.COMPLETED, last_heartbeat=old)
        _make_session(status=BulkImportSession.Status.PENDING, updated_at=old)

        jobs.resume_stalled_imports.__wrapped__()

        mock_schedule.assert_not_called()

    @patch("scheduler.jobs.schedule_continuation", return_value=False)
    def test_failed_retrigger_is_logged_and_others_still_tried(self, mock_schedule):
        old = timezone.now() - timedelta(minutes=20)
        first = _make_session(last_heartbeat=old)
        second = _make_session(last_heartbeat=old)

        with self.assertLogs("scheduler.jobs", level="WARNING") as logs:
            jobs.resume_stalled_imports.__wrapped__()

        self.assertEqual(
            sorted(call.args[0] for call in mock_schedule.call_args_list),
            sorted([first.pk, second.pk]),
        )
        self.assertTrue(any("could not re-trigger" in line for line in logs.output))
