"""
candidates/migrations/0001_initial.py

Initial migration: CVSubmission (cv_submissions) table.
"""

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="CVSubmission",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=300)),
                ("email", models.CharField(db_index=True, max_length=254)),
                ("phone", models.CharField(blank=True, default="", max_length=50)),
                ("location", models.CharField(blank=True, default="", max_length=255)),
                ("job_title", models.CharField(blank=True, default="", max_length=255)),
                ("sector", models.CharField(blank=True, default="", max_length=100)),
                ("seniority_level", models.CharField(blank=True, default="", max_length=50)),
                ("years_experience", models.PositiveSmallIntegerField(blank=True, null=True)),
                ("education_level", models.CharField(blank=True, default="", max_length=100)),
                ("skills", models.TextField(blank=True, default="")),
                ("experience_summary", models.TextField(blank=True, default="")),
                ("ai_profile", models.JSONField(blank=True, null=True)),
                ("cv_score", models.PositiveSmallIntegerField(blank=True, help_text="0–100", null=True)),
                ("cv_score_breakdown", models.JSONField(blank=True, null=True)),
                ("scored_at", models.DateTimeField(blank=True, null=True)),
                ("cv_file_url", models.CharField(blank=True, default="", max_length=1000)),
                (
                    "source",
                    models.CharField(
                        choices=[
                            ("website", "Website Form"),
                            ("admin_manual", "Admin Manual Entry"),
                            ("admin_bulk_background", "Admin Bulk Import"),
                        ],
                        default="website",
                        max_length=30,
                    ),
                ),
                ("admin_notes", models.TextField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "added_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="added_cv_submissions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "CV Submission",
                "verbose_name_plural": "CV Submissions",
                "db_table": "cv_submissions",
                "ordering": ["-created_at"],
            },
        ),
    ]
