"""
imports/migrations/0001_initial.py

Initial migration: BulkImportSession and BulkImportFile tables.
"""

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models

ERROR_CATEGORY_CHOICES = [
    ("RATE_LIMIT", "Rate limited"),
    ("PAYMENT_REQUIRED", "Payment required"),
    ("FILE_ERROR", "File error"),
    ("PARSE_ERROR", "Parse error"),
    ("TIMEOUT", "Timeout"),
    ("NETWORK_ERROR", "Network error"),
    ("DB_ERROR", "Database error"),
    ("AI_ERROR", "AI service error"),
    ("UNKNOWN", "Unknown"),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("candidates", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="BulkImportSession",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("completed", "Completed"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("total_files", models.PositiveIntegerField(default=0)),
                ("parsed_count", models.PositiveIntegerField(default=0)),
                ("imported_count", models.PositiveIntegerField(default=0)),
                ("failed_count", models.PositiveIntegerField(default=0)),
                ("pending_count", models.PositiveIntegerField(default=0)),
                ("error_breakdown", models.JSONField(blank=True, default=dict)),
                ("avg_parse_time_ms", models.PositiveIntegerField(blank=True, null=True)),
                ("last_heartbeat", models.DateTimeField(blank=True, null=True)),
                ("started_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "created_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="bulk_import_sessions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "db_table": "bulk_import_sessions",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="BulkImportFile",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("file_name", models.CharField(max_length=255)),
                ("file_path", models.CharField(blank=True, default="", max_length=500)),
                ("file_url", models.CharField(blank=True, default="", max_length=1000)),
                ("file_size_bytes", models.PositiveIntegerField(blank=True, null=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("parsing", "Parsing"),
                            ("parsed", "Parsed"),
                            ("importing", "Importing"),
                            ("imported", "Imported"),
                            ("error", "Error"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("retry_count", models.PositiveSmallIntegerField(default=0)),
                ("parsed_data", models.JSONField(blank=True, null=True)),
                ("parse_time_ms", models.PositiveIntegerField(blank=True, null=True)),
                ("was_duplicate", models.BooleanField(default=False)),
                ("error_message", models.TextField(blank=True, default="")),
                (
                    "error_category",
                    models.CharField(blank=True, choices=ERROR_CATEGORY_CHOICES, default="", max_length=20),
                ),
                ("processing_started_at", models.DateTimeField(blank=True, null=True)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "cv_submission",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="import_files",
                        to="candidates.cvsubmission",
                    ),
                ),
                (
                    "session",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="files",
                        to="imports.bulkimportsession",
                    ),
                ),
            ],
            options={
                "db_table": "bulk_import_files",
                "ordering": ["retry_count", "created_at", "id"],
            },
        ),
        migrations.AddField(
            model_name="bulkimportsession",
            name="processing_file",
            field=models.ForeignKey(
                blank=True,
                null=True,
                on_delete=django.db.models.deletion.SET_NULL,
                related_name="+",
                to="imports.bulkimportfile",
            ),
        ),
    ]
