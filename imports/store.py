"""
imports/store.py

Persistence for bulk import sessions and their files.

File transitions are single conditional UPDATEs:

    UPDATE bulk_import_files SET ... WHERE id = ? AND status IN (allowed)

so each mark_* call is idempotent and returns whether it moved the row. A
late duplicate invocation that finds the file already past that step simply
gets False back.

Session counts are never incremented. update_session_progress() recomputes the
partition from file rows every time it runs:

    parsed_count    ← parsed
    imported_count  ← imported
    failed_count    ← error
    pending_count   ← pending + parsing + importing
"""

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path

from django.conf import settings
from django.core.files.storage import default_storage
from django.db import DatabaseError, transaction
from django.db.models import Avg, Count, F
from django.utils import timezone

from candidates.services import lookup_candidate_by_email
from imports.errors import ErrorCategory
from imports.models import BulkImportFile, BulkImportSession

logger = logging.getLogger(__name__)

Status = BulkImportFile.Status

# Statuses that still have work left in a normal (non-retry) pull.
ACTIVE_STATUSES = (Status.PENDING, Status.PARSING, Status.PARSED, Status.IMPORTING)

# Statuses pulled when failed files are being retried.
RETRY_STATUSES = (Status.ERROR, Status.PENDING)

# Statuses counted as pending on the session.
PENDING_PARTITION = (Status.PENDING, Status.PARSING, Status.IMPORTING)


@dataclass(frozen=True)
class SessionCounts:
    total_files: int = 0
    parsed_count: int = 0
    imported_count: int = 0
    failed_count: int = 0
    pending_count: int = 0


@dataclass(frozen=True)
class DuplicateCheck:
    is_duplicate: bool
    existing_id: int | None = None


# ── Session creation ───────────────────────────────────────────────────────────

def create_session(files, created_by=None) -> BulkImportSession:
    """
    Store uploaded files under BULK_IMPORT_UPLOAD_DIR and create a pending
    session with one pending BulkImportFile per upload.
    """
    upload_dir = settings.BULK_IMPORT_UPLOAD_DIR
    stored = []
    for upload in files:
        name = Path(upload.name).name
        path = default_storage.save(f"{upload_dir}/{uuid.uuid4().hex}-{name}", upload)
        stored.append((name, path, upload.size))

    with transaction.atomic():
        session = BulkImportSession.objects.create(
            created_by=created_by,
            total_files=len(stored),
            pending_count=len(stored),
        )
        BulkImportFile.objects.bulk_create([
            BulkImportFile(
                session=session,
                file_name=name,
                file_path=path,
                file_url=_storage_url(path),
                file_size_bytes=size,
            )
            for name, path, size in stored
        ])

    logger.info("Import session=%s created with %s file(s)", session.pk, len(stored))
    return session


def _storage_url(path: str) -> str:
    try:
        return default_storage.url(path)
    except NotImplementedError:
        return ""


# ── Reads ──────────────────────────────────────────────────────────────────────

def get_files_to_process(session_id, retry_failed: bool = False, file_ids=None, limit: int | None = None):
    """
    Files the next batch should work on, never-retried files first.

    retry_failed widens the pull to errored files; file_ids narrows it to the
    given ids (on top of the status filter).
    """
    statuses = RETRY_STATUSES if retry_failed else ACTIVE_STATUSES
    qs = BulkImportFile.objects.filter(session_id=session_id, status__in=statuses)
    if file_ids:
        qs = qs.filter(pk__in=file_ids)
    qs = qs.order_by("retry_count", "created_at", "id")
    if limit is not None:
        qs = qs[:limit]
    return list(qs)


def has_remaining_files(session_id) -> bool:
    return BulkImportFile.objects.filter(session_id=session_id, status__in=ACTIVE_STATUSES).exists()


def check_for_duplicate(email: str) -> DuplicateCheck:
    existing = lookup_candidate_by_email(email)
    if existing is None:
        return DuplicateCheck(is_duplicate=False)
    return DuplicateCheck(is_duplicate=True, existing_id=existing.pk)


# ── File transitions ───────────────────────────────────────────────────────────

def _transition(file_id, allowed, **fields) -> bool:
    moved = BulkImportFile.objects.filter(pk=file_id, status__in=allowed).update(**fields)
    if not moved:
        logger.debug("File=%s not in %s — transition skipped", file_id, list(allowed))
    return bool(moved)


def resubmit_files(session_id, file_ids=None) -> int:
    """Put errored files back to pending, bumping retry_count. Returns the count."""
    qs = BulkImportFile.objects.filter(session_id=session_id, status=Status.ERROR)
    if file_ids:
        qs = qs.filter(pk__in=file_ids)
    resubmitted = qs.update(
        status=Status.PENDING,
        retry_count=F("retry_count") + 1,
        error_message="",
        error_category="",
        processed_at=None,
    )
    if resubmitted:
        logger.info("Import session=%s: %s failed file(s) resubmitted", session_id, resubmitted)
    return resubmitted


def mark_file_processing_started(file_id) -> bool:
    # parsing is allowed so a file abandoned mid-parse by a dead invocation
    # can be picked up again.
    return _transition(
        file_id, (Status.PENDING, Status.PARSING),
        status=Status.PARSING,
        processing_started_at=timezone.now(),
    )


def mark_file_parsed(file_id, parsed_data: dict, parse_time_ms: int | None = None) -> bool:
    return _transition(
        file_id, (Status.PARSING,),
        status=Status.PARSED,
        parsed_data=parsed_data,
        parse_time_ms=parse_time_ms,
    )


def mark_file_importing(file_id) -> bool:
    return _transition(
        file_id, (Status.PARSED, Status.IMPORTING),
        status=Status.IMPORTING,
    )


def mark_file_imported(file_id, cv_submission_id, was_duplicate: bool = False) -> bool:
    return _transition(
        file_id, (Status.IMPORTING,),
        status=Status.IMPORTED,
        cv_submission_id=cv_submission_id,
        was_duplicate=was_duplicate,
        error_message="",
        error_category="",
        processed_at=timezone.now(),
    )


def mark_file_failed(file_id, error_message: str, error_category: str, retry_count: int) -> bool:
    return _transition(
        file_id, ACTIVE_STATUSES,
        status=Status.ERROR,
        error_message=(error_message or "")[:2000],
        error_category=error_category or ErrorCategory.UNKNOWN,
        retry_count=retry_count,
        processed_at=timezone.now(),
    )


# ── Session aggregates ─────────────────────────────────────────────────────────

def recompute_session_counts(session_id) -> SessionCounts:
    by_status = dict(
        BulkImportFile.objects
        .filter(session_id=session_id)
        .order_by()
        .values("status")
        .annotate(n=Count("id"))
        .values_list("status", "n")
    )
    return SessionCounts(
        total_files=sum(by_status.values()),
        parsed_count=by_status.get(Status.PARSED, 0),
        imported_count=by_status.get(Status.IMPORTED, 0),
        failed_count=by_status.get(Status.ERROR, 0),
        pending_count=sum(by_status.get(s, 0) for s in PENDING_PARTITION),
    )


def compute_error_breakdown(session_id) -> dict:
    """{category: count} over the session's files currently in error."""
    rows = (
        BulkImportFile.objects
        .filter(session_id=session_id, status=Status.ERROR)
        .order_by()
        .values("error_category")
        .annotate(n=Count("id"))
    )
    breakdown = {}
    for row in rows:
        category = row["error_category"] or ErrorCategory.UNKNOWN
        breakdown[category] = breakdown.get(category, 0) + row["n"]
    return breakdown


def compute_avg_parse_time_ms(session_id) -> int | None:
    avg = (
        BulkImportFile.objects
        .filter(session_id=session_id, parse_time_ms__isnull=False)
        .aggregate(avg=Avg("parse_time_ms"))["avg"]
    )
    return round(avg) if avg is not None else None


def update_session_progress(session_id, error_breakdown=None, avg_parse_time_ms=None) -> SessionCounts | None:
    """
    Recompute counts from file rows and write them with the derived status.

    The session becomes completed exactly when no file is pending; completed_at
    is written the first time that happens and never cleared afterwards.
    Returns the counts, or None if the write failed (the session row is left
    as it was).
    """
    try:
        with transaction.atomic():
            counts = recompute_session_counts(session_id)
            now = timezone.now()
            done = counts.pending_count == 0

            fields = {
                "total_files": counts.total_files,
                "parsed_count": counts.parsed_count,
                "imported_count": counts.imported_count,
                "failed_count": counts.failed_count,
                "pending_count": counts.pending_count,
                "status": BulkImportSession.Status.COMPLETED if done else BulkImportSession.Status.PROCESSING,
                "last_heartbeat": now,
            }
            if done:
                fields["processing_file"] = None
            if error_breakdown is not None:
                fields["error_breakdown"] = error_breakdown
            if avg_parse_time_ms is not None:
                fields["avg_parse_time_ms"] = avg_parse_time_ms

            BulkImportSession.objects.filter(pk=session_id).update(**fields)
            if done:
                BulkImportSession.objects.filter(
                    pk=session_id, completed_at__isnull=True,
                ).update(completed_at=now)
    except DatabaseError:
        logger.error("Failed to update progress for import session=%s", session_id, exc_info=True)
        return None

    logger.info(
        "Import session=%s progress: imported=%s failed=%s pending=%s parsed=%s total=%s",
        session_id, counts.imported_count, counts.failed_count,
        counts.pending_count, counts.parsed_count, counts.total_files,
    )
    return counts
