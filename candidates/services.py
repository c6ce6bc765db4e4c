"""
candidates/services.py

Public services:
  lookup_candidate_by_email(email)               → CVSubmission | None
  lookup_candidate_by_phone(phone)               → CVSubmission | None
  find_duplicate_candidate(email, name, phone)   → DuplicateMatch
  suggest_merge_action(match)                    → MergeSuggestion
  create_submission_from_parsed(...)             → CVSubmission

Duplicate detection cascade (most to least reliable):

Priority  Method                                    Confidence
────────  ────────────────────────────────────────  ──────────
  1       Email  → exact CVSubmission.email (iexact)   100
  2       Phone  → digits-only, suffix match ≥ 7       95
  3       Name   → SequenceMatcher on normalised name  ratio × 100 (≥ 90)
"""

import logging
from dataclasses import dataclass
from difflib import SequenceMatcher

from django.utils import timezone

from candidates.models import CVSubmission
from talentdesk.constants import (
    DUPLICATE_NAME_THRESHOLD,
    MIN_PHONE_DIGITS,
    PLACEHOLDER_EMAIL,
)
from talentdesk.text_utils import digits_only, normalize_name, to_safe_int

logger = logging.getLogger(__name__)

# Only the most recent submissions are scanned for fuzzy name matches.
NAME_SCAN_LIMIT = 500


# ── Result types ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class DuplicateMatch:
    match_type: str  # "none" | "email_exact" | "phone_exact" | "name_similar"
    candidate: CVSubmission | None = None
    confidence: int = 0

    @property
    def is_duplicate(self) -> bool:
        return self.candidate is not None


@dataclass(frozen=True)
class MergeSuggestion:
    action: str  # "skip" | "update" | "create_new"
    reason: str
    existing_id: int | None = None


NO_MATCH = DuplicateMatch(match_type="none")


# ── Lookups ────────────────────────────────────────────────────────────────────

def lookup_candidate_by_email(email: str) -> CVSubmission | None:
    """
    Return the CVSubmission whose email matches (case-insensitive).
    The placeholder address written for CVs without an email never matches.
    """
    bare = (email or "").strip()
    if not bare or "@" not in bare or bare.lower() == PLACEHOLDER_EMAIL:
        return None
    return (
        CVSubmission.objects
        .filter(email__iexact=bare)
        .order_by("created_at")
        .first()
    )


def lookup_candidate_by_phone(phone: str) -> CVSubmission | None:
    """
    Return a CVSubmission whose phone matches after digit normalisation,
    so +44 7700 900123 matches 07700900123.
    """
    digits = digits_only(phone)
    if len(digits) < MIN_PHONE_DIGITS:
        return None
    for candidate in CVSubmission.objects.exclude(phone="").only("id", "phone"):
        if _phones_match(digits, candidate.phone):
            return candidate
    return None


def _phones_match(query_digits: str, stored_phone: str) -> bool:
    """
    Compare two phone numbers by their digit-only representations.
    Handles country-code prefix differences by checking if either is a suffix
    of the other (minimum MIN_PHONE_DIGITS significant digits required).
    """
    stored_digits = digits_only(stored_phone)
    if not stored_digits or len(query_digits) < MIN_PHONE_DIGITS:
        return False
    if query_digits == stored_digits:
        return True
    short, long_ = (
        (query_digits, stored_digits)
        if len(query_digits) <= len(stored_digits)
        else (stored_digits, query_digits)
    )
    return long_.endswith(short) and len(short) >= MIN_PHONE_DIGITS


def _name_similarity(a: str, b: str) -> int:
    """Percentage similarity (0–100) of two normalised names."""
    if not a or not b:
        return 0
    return round(SequenceMatcher(None, a, b).ratio() * 100)


# ── Duplicate detection ────────────────────────────────────────────────────────

def find_duplicate_candidate(email: str, name: str = "", phone: str = "") -> DuplicateMatch:
    """
    Run the duplicate cascade for one incoming CV.

    Returns NO_MATCH when nothing plausible exists. Lookup failures are not
    caught here: the importer treats a failed duplicate check as a failed
    import step rather than silently creating a second record.
    """
    candidate = lookup_candidate_by_email(email)
    if candidate:
        return DuplicateMatch("email_exact", candidate, 100)

    candidate = lookup_candidate_by_phone(phone)
    if candidate:
        return DuplicateMatch("phone_exact", candidate, 95)

    wanted = normalize_name(name)
    if wanted and wanted != "unknown":
        threshold = round(DUPLICATE_NAME_THRESHOLD * 100)
        recent = CVSubmission.objects.only("id", "name").order_by("-created_at")[:NAME_SCAN_LIMIT]
        best, best_score = None, 0
        for submission in recent:
            score = _name_similarity(wanted, normalize_name(submission.name))
            if score > best_score:
                best, best_score = submission, score
        if best is not None and best_score >= threshold:
            return DuplicateMatch("name_similar", best, best_score)

    return NO_MATCH


def suggest_merge_action(match: DuplicateMatch) -> MergeSuggestion:
    """
    Recommend what the importer (or a recruiter) should do with a match.

    Exact email / phone matches and near-certain name matches update the
    existing record; weaker name matches are skipped for manual review.
    """
    if not match.is_duplicate:
        return MergeSuggestion("create_new", "No duplicate found")

    existing = match.candidate
    if match.match_type == "email_exact":
        return MergeSuggestion(
            "update", f"Update existing record for {existing.email}", existing.pk,
        )
    if match.match_type == "phone_exact":
        return MergeSuggestion(
            "update",
            f"Update existing record with matching phone for {existing.name}",
            existing.pk,
        )
    if match.confidence >= 95:
        return MergeSuggestion(
            "update",
            f"High confidence name match ({match.confidence}%) - update {existing.name}",
            existing.pk,
        )
    return MergeSuggestion(
        "skip",
        f"Possible duplicate: {existing.name} ({match.confidence}% match)",
        existing.pk,
    )


# ── Record creation ────────────────────────────────────────────────────────────

def create_submission_from_parsed(parsed: dict, cv_file_url: str = "", added_by=None) -> CVSubmission:
    """Insert a CVSubmission from cleaned extraction output (cvs.parser)."""
    years = parsed.get("years_experience")
    submission = CVSubmission.objects.create(
        name=parsed.get("name") or "Unknown",
        email=(parsed.get("email") or PLACEHOLDER_EMAIL).lower(),
        phone=parsed.get("phone") or "",
        location=parsed.get("location") or "",
        job_title=parsed.get("job_title") or "",
        sector=parsed.get("sector") or "",
        seniority_level=parsed.get("seniority_level") or "",
        years_experience=max(0, to_safe_int(years)) if years is not None else None,
        education_level=parsed.get("education_level") or "",
        skills=parsed.get("skills") or "",
        experience_summary=parsed.get("experience_summary") or "",
        ai_profile=parsed.get("ai_profile"),
        cv_score=parsed.get("cv_score"),
        cv_score_breakdown=parsed.get("cv_score_breakdown"),
        scored_at=timezone.now() if parsed.get("cv_score") is not None else None,
        cv_file_url=cv_file_url or "",
        source=CVSubmission.Source.ADMIN_BULK,
        added_by=added_by,
    )
    logger.debug("CVSubmission created: %s (%s)", submission.pk, submission.email)
    return submission
