"""
Management command: process_bulk_import

Runs bulk import invocations inline, without going through the HTTP trigger.

Usage:
    python manage.py process_bulk_import --session-id 12
    python manage.py process_bulk_import --session-id 12 --retry-failed
    python manage.py process_bulk_import --session-id 12 --file-id 40 --file-id 41
    python manage.py process_bulk_import --session-id 12 --until-done

Without --until-done a single invocation runs and, if files remain, schedules
its continuation through BULK_IMPORT_TRIGGER_URL exactly as the trigger does.
With --until-done invocations are repeated in this process until the session
has nothing left to do.
"""

from django.core.management.base import BaseCommand, CommandError

from imports.models import BulkImportSession
from imports.processor import process_import_session


class Command(BaseCommand):
    help = "Process a bulk CV import session inline (one invocation, or until done)."

    def add_arguments(self, parser):
        parser.add_argument(
            "--session-id",
            type=int,
            required=True,
            metavar="ID",
            help="Primary key of the BulkImportSession to process.",
        )
        parser.add_argument(
            "--retry-failed",
            action="store_true",
            help="Resubmit files in error before processing.",
        )
        parser.add_argument(
            "--file-id",
            type=int,
            action="append",
            dest="file_ids",
            metavar="ID",
            help="Restrict processing (and retry) to this file. Repeatable.",
        )
        parser.add_argument(
            "--until-done",
            action="store_true",
            help="Keep running invocations in-process until no files remain.",
        )

    def handle(self, *args, **options):
        session_id = options["session_id"]
        until_done = options["until_done"]

        self.stdout.write(f"Processing import session #{session_id} …")

        continuation = False
        invocation = 0
        while True:
            invocation += 1
            try:
                result = process_import_session(
                    session_id,
                    continuation=continuation,
                    retry_failed=options["retry_failed"] and not continuation,
                    file_ids=options["file_ids"] if not continuation else None,
                    schedule_next=not until_done,
                )
            except BulkImportSession.DoesNotExist:
                raise CommandError(f"Import session #{session_id} does not exist.")

            self.stdout.write(
                f"  Invocation {invocation}: processed={result.processed} "
                f"succeeded={result.succeeded} failed={result.failed}"
            )
            for category, count in sorted(result.error_breakdown.items()):
                self.stdout.write(self.style.WARNING(f"    {category:<18}: {count}"))

            if not (until_done and result.should_continue):
                break
            if result.processed == 0:
                self.stdout.write(self.style.WARNING(
                    "  No file could be processed in this invocation; stopping."
                ))
                break
            continuation = True

        session = BulkImportSession.objects.get(pk=session_id)
        self.stdout.write("")
        self.stdout.write(self.style.SUCCESS(f"Session #{session_id}: {session.status}"))
        self.stdout.write(f"  Imported : {session.imported_count}/{session.total_files}")
        self.stdout.write(f"  Failed   : {session.failed_count}")
        self.stdout.write(f"  Pending  : {session.pending_count}")
        if result.continuation_scheduled:
            self.stdout.write("  Continuation scheduled via the trigger endpoint.")
