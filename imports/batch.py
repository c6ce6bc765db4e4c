"""
imports/batch.py

Per-invocation work bounds and the hand-off to the next invocation.

One invocation processes at most batch_size files and starts no new file once
max_execution_time_ms has passed; whichever limit is hit first ends the loop.
If files remain, schedule_continuation() asks the trigger endpoint for a fresh
invocation and this one returns.

Continuation is fire-and-forget. When it cannot be scheduled the session is
left in `processing` with accurate per-file state; the stale-heartbeat
watchdog (scheduler.jobs.resume_stalled_imports) picks it up later.
"""

import logging
import time
from dataclasses import dataclass, field, replace

import requests
from django.conf import settings
from django.db import DatabaseError
from django.utils import timezone

from config.models import SystemSetting
from imports.models import BulkImportSession
from talentdesk.constants import (
    CONTINUATION_CONNECT_TIMEOUT_SECONDS,
    CONTINUATION_READ_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


@dataclass(frozen=True)
class BatchConfig:
    batch_size: int = 5
    max_execution_time_ms: int = 20000
    heartbeat_interval: int = 2


@dataclass
class BatchContext:
    session_id: int
    config: BatchConfig
    start_time: float
    processed_count: int = 0
    clock: object = field(default=_monotonic_ms, repr=False, compare=False)

    def elapsed_ms(self) -> float:
        return self.clock() - self.start_time


# ── Context ────────────────────────────────────────────────────────────────────

def create_batch_context(
    session_id,
    config: BatchConfig | None = None,
    clock=_monotonic_ms,
    **overrides,
) -> BatchContext:
    """Start the clock for one invocation. Keyword overrides merge over config."""
    merged = replace(config or BatchConfig(), **overrides)
    return BatchContext(
        session_id=session_id,
        config=merged,
        start_time=clock(),
        clock=clock,
    )


def should_continue_processing(ctx: BatchContext) -> bool:
    return ctx.elapsed_ms() < ctx.config.max_execution_time_ms


def has_reached_batch_limit(ctx: BatchContext) -> bool:
    return ctx.processed_count >= ctx.config.batch_size


def should_send_heartbeat(ctx: BatchContext) -> bool:
    return ctx.processed_count > 0 and ctx.processed_count % ctx.config.heartbeat_interval == 0


def load_batch_config() -> BatchConfig:
    """Settings defaults, overridden per key by SystemSetting rows."""
    knobs = SystemSetting.get_positive_ints({
        "bulk_import_batch_size": settings.BULK_IMPORT_BATCH_SIZE,
        "bulk_import_max_execution_ms": settings.BULK_IMPORT_MAX_EXECUTION_MS,
        "bulk_import_heartbeat_interval": settings.BULK_IMPORT_HEARTBEAT_INTERVAL,
    })
    return BatchConfig(
        batch_size=knobs["bulk_import_batch_size"],
        max_execution_time_ms=knobs["bulk_import_max_execution_ms"],
        heartbeat_interval=knobs["bulk_import_heartbeat_interval"],
    )


# ── Side effects ───────────────────────────────────────────────────────────────

def update_heartbeat(session_id, processing_file_id=None) -> None:
    """Touch last_heartbeat. A failed write is logged and otherwise ignored."""
    try:
        BulkImportSession.objects.filter(pk=session_id).update(
            last_heartbeat=timezone.now(),
            processing_file_id=processing_file_id,
        )
    except DatabaseError:
        logger.warning("Heartbeat write failed for import session=%s", session_id, exc_info=True)


def schedule_continuation(session_id) -> bool:
    """
    POST {"session_id": ..., "continuation": true} to the trigger endpoint.

    The receiving invocation runs for up to max_execution_time_ms before it
    answers, so a read timeout after the request was delivered counts as
    scheduled.

    Returns True when the continuation was handed off, False otherwise.
    Never raises and never retries.
    """
    url = settings.BULK_IMPORT_TRIGGER_URL
    if not url:
        logger.error(
            "Cannot schedule continuation for import session=%s: BULK_IMPORT_TRIGGER_URL is not set",
            session_id,
        )
        return False

    headers = {"Content-Type": "application/json"}
    secret = settings.BULK_IMPORT_TRIGGER_SECRET
    if secret:
        headers["X-Import-Token"] = secret

    try:
        response = requests.post(
            url,
            json={"session_id": session_id, "continuation": True},
            headers=headers,
            timeout=(CONTINUATION_CONNECT_TIMEOUT_SECONDS, CONTINUATION_READ_TIMEOUT_SECONDS),
        )
    except requests.ReadTimeout:
        logger.info("Continuation dispatched for import session=%s (still running)", session_id)
        return True
    except requests.RequestException as exc:
        logger.error("Failed to schedule continuation for import session=%s: %s", session_id, exc)
        return False

    if not response.ok:
        logger.error(
            "Continuation for import session=%s rejected: HTTP %s %s",
            session_id, response.status_code, response.text[:200],
        )
        return False

    logger.info("Continuation scheduled for import session=%s", session_id)
    return True
