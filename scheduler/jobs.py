"""
scheduler/jobs.py

Background job definitions for the bulk CV importer.
Registered and started by: scheduler/management/commands/run_scheduler.py

  resume_stalled_imports   every 5 min

Each function is decorated with @close_old_connections from django-apscheduler so
that Django DB connections opened in APScheduler's worker threads are always
returned to the pool (or closed) after each run.
"""

import logging
from datetime import timedelta

from django.conf import settings
from django.db.models import Q
from django.utils import timezone
from django_apscheduler.util import close_old_connections

from imports.batch import schedule_continuation
from imports.models import BulkImportSession

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Job 1: resume_stalled_imports  (every 5 min)
# ─────────────────────────────────────────────────────────────────────────────

@close_old_connections
def resume_stalled_imports() -> None:
    """
    Re-trigger processing sessions whose invocation chain has broken.

    A session is stalled when it is still PROCESSING but its last heartbeat
    (or started_at, for sessions that never wrote one) is older than
    BULK_IMPORT_STALE_MINUTES. This happens when a continuation request was
    lost or an invocation was killed before it could schedule the next one.

    A continuation invocation never resubmits failed files, so re-triggering
    a session that is in fact still running only costs a guarded no-op pass.
    """
    threshold = timezone.now() - timedelta(minutes=settings.BULK_IMPORT_STALE_MINUTES)

    stalled = list(
        BulkImportSession.objects
        .filter(status=BulkImportSession.Status.PROCESSING)
        .filter(
            Q(last_heartbeat__lt=threshold)
            | Q(last_heartbeat__isnull=True, started_at__lt=threshold)
            | Q(last_heartbeat__isnull=True, started_at__isnull=True, updated_at__lt=threshold)
        )
        .values_list("pk", flat=True)
    )

    if not stalled:
        return

    resumed = 0
    for session_id in stalled:
        if schedule_continuation(session_id):
            resumed += 1
        else:
            logger.warning(
                "resume_stalled_imports: could not re-trigger session=%s", session_id,
            )

    logger.info(
        "resume_stalled_imports: re-triggered %s of %s stalled session(s)",
        resumed,
        len(stalled),
    )
