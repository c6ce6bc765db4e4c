"""
imports/views.py

Bulk CV import endpoints.

  POST /imports/process/              — run one processing invocation (trigger)
  POST /imports/sessions/             — upload CVs and create a session
  GET  /imports/sessions/<pk>/        — session status for the polling admin UI

The trigger is CSRF-exempt: continuations call it server-to-server with the
shared BULK_IMPORT_TRIGGER_SECRET, sent as X-Import-Token or
Authorization: Bearer.
"""

import hmac
import json
import logging

from django.conf import settings
from django.contrib.auth.mixins import LoginRequiredMixin
from django.http import JsonResponse
from django.shortcuts import get_object_or_404
from django.views import View
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from imports.models import BulkImportSession
from imports.processor import process_import_session
from imports.store import create_session
from talentdesk.constants import MAX_CV_FILE_SIZE_BYTES

logger = logging.getLogger(__name__)


# ── Shared response helpers ────────────────────────────────────────────────────

def _reject(reason: str, status: int = 401) -> JsonResponse:
    logger.warning("Import request rejected: %s", reason)
    return JsonResponse({"error": reason}, status=status)


def _validate_trigger_token(request, secret: str) -> bool:
    token = request.META.get("HTTP_X_IMPORT_TOKEN", "")
    if token:
        return hmac.compare_digest(token, secret)

    auth_header = request.META.get("HTTP_AUTHORIZATION", "")
    if auth_header.lower().startswith("bearer "):
        return hmac.compare_digest(auth_header[7:].strip(), secret)

    return False


def _to_id(value) -> int:
    """int() for ids, rejecting bools and floats."""
    if isinstance(value, (bool, float)):
        raise TypeError(value)
    return int(value)


# ─────────────────────────────────────────────────────────────────────────────
# Trigger
# ─────────────────────────────────────────────────────────────────────────────

@csrf_exempt
@require_POST
def process_import(request):
    """
    POST /imports/process/

    Body:
      {"session_id": 12, "continuation": false, "retry_failed": false, "file_ids": [3, 4]}

    Returns the BatchResult of the invocation:
      {"processed", "succeeded", "failed", "should_continue",
       "continuation_scheduled", "error_breakdown"}
    """
    # ── 1. Token validation ────────────────────────────────────────────────────
    secret = settings.BULK_IMPORT_TRIGGER_SECRET
    if secret:
        if not _validate_trigger_token(request, secret):
            return _reject("Invalid or missing import token")
    elif not settings.DEBUG:
        logger.error("BULK_IMPORT_TRIGGER_SECRET is not set — refusing to process imports.")
        return JsonResponse({"error": "server_misconfigured"}, status=500)
    else:
        logger.warning("BULK_IMPORT_TRIGGER_SECRET is not set — skipping token validation.")

    # ── 2. Parse body ──────────────────────────────────────────────────────────
    try:
        payload = json.loads(request.body)
    except json.JSONDecodeError:
        return _reject("Invalid JSON body", status=400)
    if not isinstance(payload, dict):
        return _reject("Invalid JSON body", status=400)

    session_id = payload.get("session_id")
    if session_id in (None, ""):
        return _reject("session_id is required", status=400)
    try:
        session_id = int(session_id)
    except (TypeError, ValueError):
        return _reject("session_id must be an integer", status=400)

    file_ids = payload.get("file_ids") or None
    if file_ids is not None:
        if not isinstance(file_ids, list):
            return _reject("file_ids must be a list of integers", status=400)
        try:
            file_ids = [_to_id(value) for value in file_ids]
        except (TypeError, ValueError):
            return _reject("file_ids must be a list of integers", status=400)

    flags = {}
    for name in ("continuation", "retry_failed"):
        value = payload.get(name, False)
        if not isinstance(value, bool):
            return _reject(f"{name} must be a boolean", status=400)
        flags[name] = value

    # ── 3. Run one invocation ──────────────────────────────────────────────────
    try:
        result = process_import_session(session_id, file_ids=file_ids, **flags)
    except BulkImportSession.DoesNotExist:
        return _reject("session_not_found", status=404)

    return JsonResponse(result.as_dict())


# ─────────────────────────────────────────────────────────────────────────────
# Admin-facing session views
# ─────────────────────────────────────────────────────────────────────────────

class SessionCreateView(LoginRequiredMixin, View):
    """
    POST /imports/sessions/  (multipart, field "files")

    Stores the uploads and creates a pending session. Processing starts when
    the admin UI (or the management command) calls the trigger.
    """

    def post(self, request):
        uploads = request.FILES.getlist("files")
        if not uploads:
            return JsonResponse({"error": "No files uploaded"}, status=400)

        oversized = [f.name for f in uploads if f.size > MAX_CV_FILE_SIZE_BYTES]
        if oversized:
            return JsonResponse(
                {"error": "Files exceed the size limit", "files": oversized},
                status=400,
            )

        session = create_session(uploads, created_by=request.user)
        logger.info(
            "Import session=%s created by user=%s (%s files)",
            session.pk, request.user.pk, session.total_files,
        )
        return JsonResponse(
            {"session_id": session.pk, "total_files": session.total_files},
            status=201,
        )


class SessionStatusView(LoginRequiredMixin, View):
    """GET /imports/sessions/<pk>/"""

    def get(self, request, pk):
        session = get_object_or_404(BulkImportSession, pk=pk)
        files = session.files.order_by("created_at", "id").values(
            "id", "file_name", "status", "retry_count",
            "error_category", "error_message", "cv_submission_id", "was_duplicate",
        )
        return JsonResponse({
            "id": session.pk,
            "status": session.status,
            "total_files": session.total_files,
            "parsed_count": session.parsed_count,
            "imported_count": session.imported_count,
            "failed_count": session.failed_count,
            "pending_count": session.pending_count,
            "error_breakdown": session.error_breakdown,
            "avg_parse_time_ms": session.avg_parse_time_ms,
            "processing_file_id": session.processing_file_id,
            "started_at": session.started_at,
            "completed_at": session.completed_at,
            "last_heartbeat": session.last_heartbeat,
            "files": list(files),
        })
