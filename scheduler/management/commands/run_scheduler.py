"""
scheduler/management/commands/run_scheduler.py

Django management command that starts the APScheduler background scheduler
with the bulk-import watchdog job.

Usage:
    python manage.py run_scheduler

The command blocks until interrupted (Ctrl+C / SIGTERM).  In production,
run it as a long-lived process alongside the web server, e.g.:

    # Procfile (Heroku-style) or systemd unit
    web:       gunicorn talentdesk.wsgi --bind 0.0.0.0:8010
    scheduler: python manage.py run_scheduler

Jobs are persisted in the database via DjangoJobStore, so execution history
is visible in Django admin and a restart picks up existing job definitions.
"""

import time
import logging

from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from django.conf import settings
from django.core.management.base import BaseCommand
from django_apscheduler.jobstores import DjangoJobStore

from scheduler.jobs import resume_stalled_imports

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = (
        "Start the APScheduler background scheduler. "
        "Re-triggers stalled bulk import sessions. "
        "Blocks until interrupted."
    )

    def handle(self, *args, **options):
        tz = ZoneInfo(settings.APSCHEDULER_TIMEZONE)

        scheduler = BackgroundScheduler(timezone=tz)
        scheduler.add_jobstore(DjangoJobStore(), "default")

        # ── Job registrations ──────────────────────────────────────────────────
        # replace_existing=True: update the definition on each restart
        # max_instances=1      : prevent concurrent runs of the same job
        # coalesce=True        : if multiple runs were missed, execute once
        # misfire_grace_time   : seconds after which a missed run is discarded

        scheduler.add_job(
            resume_stalled_imports,
            trigger=IntervalTrigger(minutes=5, timezone=tz),
            id="resume_stalled_imports",
            name="Resume Stalled Bulk Imports",
            jobstore="default",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
        )

        # ── Start ──────────────────────────────────────────────────────────────
        self.stdout.write(self.style.SUCCESS(
            f"Starting scheduler (timezone={settings.APSCHEDULER_TIMEZONE})"
        ))

        scheduler.start()

        for job in scheduler.get_jobs():
            self.stdout.write(
                f"  • {job.id:<30} next run: {job.next_run_time}"
            )

        self.stdout.write(self.style.SUCCESS(
            "Scheduler running. Press Ctrl+C to stop."
        ))

        try:
            while True:
                time.sleep(5)
        except (KeyboardInterrupt, SystemExit):
            self.stdout.write(self.style.WARNING("Shutting down scheduler…"))
            scheduler.shutdown(wait=True)
            self.stdout.write(self.style.SUCCESS("Scheduler stopped."))
