from django.conf import settings
from django.db import models


class CVSubmission(models.Model):
    """
    A candidate record in the agency's CV database.

    Rows arrive from the public CV form, manual admin entry, and the bulk CV
    importer. Bulk-imported rows carry the full AI extraction (ai_profile and
    cv_score_breakdown) produced by cvs.parser.
    """

    class Source(models.TextChoices):
        WEBSITE = "website", "Website Form"
        ADMIN_MANUAL = "admin_manual", "Admin Manual Entry"
        ADMIN_BULK = "admin_bulk_background", "Admin Bulk Import"

    # Contact
    name = models.CharField(max_length=300)
    # Stored lower-cased by the importer; lookups still use iexact.
    email = models.CharField(max_length=254, db_index=True)
    phone = models.CharField(max_length=50, blank=True, default="")
    location = models.CharField(max_length=255, blank=True, default="")

    # Professional profile
    job_title = models.CharField(max_length=255, blank=True, default="")
    sector = models.CharField(max_length=100, blank=True, default="")
    seniority_level = models.CharField(max_length=50, blank=True, default="")
    years_experience = models.PositiveSmallIntegerField(null=True, blank=True)
    education_level = models.CharField(max_length=100, blank=True, default="")
    skills = models.TextField(blank=True, default="")
    experience_summary = models.TextField(blank=True, default="")

    # AI-generated matching profile and quality score
    ai_profile = models.JSONField(null=True, blank=True)
    cv_score = models.PositiveSmallIntegerField(null=True, blank=True, help_text="0–100")
    cv_score_breakdown = models.JSONField(null=True, blank=True)
    scored_at = models.DateTimeField(null=True, blank=True)

    cv_file_url = models.CharField(max_length=1000, blank=True, default="")
    source = models.CharField(
        max_length=30,
        choices=Source.choices,
        default=Source.WEBSITE,
    )
    added_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="added_cv_submissions",
    )
    admin_notes = models.TextField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "cv_submissions"
        ordering = ["-created_at"]
        verbose_name = "CV Submission"
        verbose_name_plural = "CV Submissions"

    def __str__(self) -> str:
        return f"{self.name} <{self.email}>"
