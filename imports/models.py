from django.conf import settings
from django.db import models

from imports.errors import ErrorCategory


class BulkImportSession(models.Model):
    """
    One bulk CV upload.

    The four count fields are a cache of a partition of the session's files by
    status. They are always recomputed from BulkImportFile rows
    (imports.store.update_session_progress) and never incremented in place, so
    two invocations racing over the same session cannot make them drift.
    """

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PROCESSING = "processing", "Processing"
        COMPLETED = "completed", "Completed"

    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True,
    )

    total_files = models.PositiveIntegerField(default=0)
    parsed_count = models.PositiveIntegerField(default=0)
    imported_count = models.PositiveIntegerField(default=0)
    failed_count = models.PositiveIntegerField(default=0)
    pending_count = models.PositiveIntegerField(default=0)

    # Diagnostics: {category: count} over files currently in error.
    error_breakdown = models.JSONField(default=dict, blank=True)
    avg_parse_time_ms = models.PositiveIntegerField(null=True, blank=True)

    # Watchdog fields: scheduler.jobs.resume_stalled_imports looks for
    # processing sessions whose heartbeat stopped advancing.
    last_heartbeat = models.DateTimeField(null=True, blank=True)
    processing_file = models.ForeignKey(
        "imports.BulkImportFile",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )

    started_at = models.DateTimeField(null=True, blank=True)
    # Written once, when pending_count first reaches zero. Never cleared.
    completed_at = models.DateTimeField(null=True, blank=True)

    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="bulk_import_sessions",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "bulk_import_sessions"
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"Import #{self.pk} ({self.status}, {self.imported_count}/{self.total_files})"


class BulkImportFile(models.Model):
    """
    One uploaded CV inside a session.

    Lifecycle per attempt: pending → parsing → parsed → importing → imported.
    Any step may end in error; an errored file can be resubmitted, which puts
    it back to pending with retry_count incremented.
    """

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PARSING = "parsing", "Parsing"
        PARSED = "parsed", "Parsed"
        IMPORTING = "importing", "Importing"
        IMPORTED = "imported", "Imported"
        ERROR = "error", "Error"

    session = models.ForeignKey(
        BulkImportSession,
        on_delete=models.CASCADE,
        related_name="files",
    )

    file_name = models.CharField(max_length=255)
    # Path inside default_storage; file_url is the fallback for remote objects.
    file_path = models.CharField(max_length=500, blank=True, default="")
    file_url = models.CharField(max_length=1000, blank=True, default="")
    file_size_bytes = models.PositiveIntegerField(null=True, blank=True)

    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.PENDING,
        db_index=True,
    )
    retry_count = models.PositiveSmallIntegerField(default=0)

    parsed_data = models.JSONField(null=True, blank=True)
    parse_time_ms = models.PositiveIntegerField(null=True, blank=True)
    cv_submission = models.ForeignKey(
        "candidates.CVSubmission",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="import_files",
    )
    # True when the file resolved to an existing candidate instead of a new row.
    was_duplicate = models.BooleanField(default=False)

    error_message = models.TextField(blank=True, default="")
    error_category = models.CharField(
        max_length=20,
        choices=ErrorCategory.choices,
        blank=True,
        default="",
    )

    processing_started_at = models.DateTimeField(null=True, blank=True)
    processed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "bulk_import_files"
        ordering = ["retry_count", "created_at", "id"]

    def __str__(self) -> str:
        return f"{self.file_name} [{self.status}]"
