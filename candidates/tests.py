"""
candidates/tests.py

Covers:
  - lookup_candidate_by_email      : case-insensitive, placeholder never matches
  - lookup_candidate_by_phone      : digit normalisation, suffix match
  - find_duplicate_candidate       : email → phone → fuzzy name cascade
  - suggest_merge_action           : update / skip / create_new
  - create_submission_from_parsed  : bulk-import record creation
"""

from django.test import TestCase

from candidates.models import CVSubmission
from candidates.services import (
    NO_MATCH,
    DuplicateMatch,
    create_submission_from_parsed,
    find_duplicate_candidate,
    lookup_candidate_by_email,
    lookup_candidate_by_phone,
    suggest_merge_action,
)


# ── Helpers ────────────────────────────────────────────────────────────────────

def _make_submission(**kwargs) -> CVSubmission:
    defaults = dict(
        name="Ana Pop",
        email="ana@example.com",
        phone="+40 700 000 001",
    )
    defaults.update(kwargs)
    return CVSubmission.objects.create(**defaults)


# ── Lookups ────────────────────────────────────────────────────────────────────

class LookupTests(TestCase):
    def test_email_lookup_is_case_insensitive(self):
        submission = _make_submission()
        self.assertEqual(lookup_candidate_by_email("  ANA@Example.com "), submission)

    def test_email_lookup_ignores_placeholder_and_garbage(self):
        _make_submission(email="not-provided@unknown.com")
        self.assertIsNone(lookup_candidate_by_email("not-provided@unknown.com"))
        self.assertIsNone(lookup_candidate_by_email("no-at-sign"))
        self.assertIsNone(lookup_candidate_by_email(""))

    def test_phone_lookup_handles_country_code(self):
        submission = _make_submission(phone="0700 000 001")
        self.assertEqual(lookup_candidate_by_phone("+40700000001"), submission)

    def test_phone_lookup_requires_enough_digits(self):
        _make_submission(phone="123456")
        self.assertIsNone(lookup_candidate_by_phone("123456"))

    def test_phone_lookup_ignores_placeholder_text(self):
        _make_submission(phone="Not provided")
        self.assertIsNone(lookup_candidate_by_phone("+40 700 000 009"))


# ── Duplicate cascade ──────────────────────────────────────────────────────────

class FindDuplicateCandidateTests(TestCase):
    def test_email_match_wins(self):
        submission = _make_submission()
        match = find_duplicate_candidate("ana@example.com", name="Someone Else", phone="999")
        self.assertEqual(match, DuplicateMatch("email_exact", submission, 100))

    def test_phone_match_when_email_differs(self):
        submission = _make_submission()
        match = find_duplicate_candidate("ana.pop@other.com", phone="+40 700 000 001")
        self.assertEqual(match.match_type, "phone_exact")
        self.assertEqual(match.candidate, submission)
        self.assertEqual(match.confidence, 95)

    def test_similar_name_match(self):
        submission = _make_submission(name="Jonathan Smith", email="j@example.com", phone="")
        match = find_duplicate_candidate("other@example.com", name="Jonathon Smith")
        self.assertEqual(match.match_type, "name_similar")
        self.assertEqual(match.candidate, submission)
        self.assertGreaterEqual(match.confidence, 90)

    def test_dissimilar_name_is_not_a_match(self):
        _make_submission(name="Jonathan Smith", phone="")
        self.assertEqual(find_duplicate_candidate("x@example.com", name="Maria Ionescu"), NO_MATCH)

    def test_unknown_name_is_never_fuzzy_matched(self):
        _make_submission(name="Unknown", phone="")
        self.assertFalse(find_duplicate_candidate("x@example.com", name="Unknown").is_duplicate)


class SuggestMergeActionTests(TestCase):
    def test_actions(self):
        submission = _make_submission()
        self.assertEqual(suggest_merge_action(NO_MATCH).action, "create_new")
        self.assertEqual(
            suggest_merge_action(DuplicateMatch("email_exact", submission, 100)).action, "update",
        )
        self.assertEqual(
            suggest_merge_action(DuplicateMatch("phone_exact", submission, 95)).existing_id, submission.pk,
        )
        self.assertEqual(
            suggest_merge_action(DuplicateMatch("name_similar", submission, 97)).action, "update",
        )
        self.assertEqual(
            suggest_merge_action(DuplicateMatch("name_similar", submission, 91)).action, "skip",
        )


# ── Record creation ────────────────────────────────────────────────────────────

class CreateSubmissionTests(TestCase):
    def test_creates_bulk_import_record(self):
        submission = create_submission_from_parsed(
            {
                "name": "Jane Doe",
                "email": "Jane@Example.COM",
                "phone": "+44 7700 900123",
                "years_experience": "7",
                "cv_score": 81,
                "cv_score_breakdown": {"summary": "Strong"},
                "ai_profile": {"hard_skills": ["IFRS"]},
            },
            cv_file_url="/media/cv-uploads/jane.pdf",
        )

        submission.refresh_from_db()
        self.assertEqual(submission.email, "jane@example.com")
        self.assertEqual(submission.source, CVSubmission.Source.ADMIN_BULK)
        self.assertEqual(submission.years_experience, 7)
        self.assertEqual(submission.cv_score, 81)
        self.assertIsNotNone(submission.scored_at)
        self.assertEqual(submission.ai_profile, {"hard_skills": ["IFRS"]})
        self.assertEqual(submission.cv_file_url, "/media/cv-uploads/jane.pdf")

    def test_missing_fields_fall_back(self):
        submission = create_submission_from_parsed({})
        self.assertEqual(submission.name, "Unknown")
        self.assertEqual(submission.email, "not-provided@unknown.com")
        self.assertIsNone(submission.years_experience)
        self.assertIsNone(submission.scored_at)
