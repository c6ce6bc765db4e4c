"""
cvs/validation.py

Cleaning of model output before it is stored.

  clean_email(value)                 → str | None   (typo-fixed, lower-cased)
  clean_phone(value)                 → str | None   (whitespace-normalised)
  extract_contact_fallback(text)     → {"email", "phone"}  regex pass over raw text
  clean_extracted_data(data, text)   → dict with every field present
"""

import re

from talentdesk.constants import MIN_PHONE_DIGITS, PLACEHOLDER_EMAIL
from talentdesk.text_utils import digits_only, to_safe_int

_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_EMAIL_SEARCH_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_PHONE_SEARCH_RE = re.compile(r"(?:\+|00)?\d[\d\s().-]{6,18}\d")

COMMON_EMAIL_TYPOS = {
    "gmail.con": "gmail.com",
    "gmail.co": "gmail.com",
    "gmai.com": "gmail.com",
    "gmial.com": "gmail.com",
    "hotmail.con": "hotmail.com",
    "hotmail.co": "hotmail.com",
    "yahoo.con": "yahoo.com",
    "yahoo.co": "yahoo.com",
    "outlook.con": "outlook.com",
    "outlook.co": "outlook.com",
}

# Values the model writes when it found nothing.
_EMPTY_MARKERS = {"", "n/a", "na", "none", "null", "not provided", "not specified", "unknown"}

DEFAULT_SCORE = 50

DEFAULT_SCORE_BREAKDOWN = {
    "completeness": {"score": 10, "max": 20, "notes": "Not evaluated"},
    "skills_relevance": {"score": 10, "max": 20, "notes": "Not evaluated"},
    "experience_depth": {"score": 12, "max": 25, "notes": "Not evaluated"},
    "achievements": {"score": 8, "max": 15, "notes": "Not evaluated"},
    "education": {"score": 5, "max": 10, "notes": "Not evaluated"},
    "presentation": {"score": 5, "max": 10, "notes": "Not evaluated"},
    "summary": "CV has not been fully evaluated.",
}

_PROFILE_LIST_FIELDS = (
    "key_achievements", "hard_skills", "soft_skills",
    "certifications", "industries", "ideal_roles",
)


def _text(value) -> str:
    if value is None:
        return ""
    text = str(value).strip()
    return "" if text.lower() in _EMPTY_MARKERS else text


def clean_email(value) -> str | None:
    """Lower-case, fix common domain typos and validate. None when invalid."""
    cleaned = _text(value).lower()
    if not cleaned:
        return None
    for typo, fix in COMMON_EMAIL_TYPOS.items():
        if cleaned.endswith("@" + typo) or cleaned.endswith("." + typo):
            cleaned = cleaned[: -len(typo)] + fix
            break
    if not _EMAIL_RE.match(cleaned) or ".." in cleaned or ".@" in cleaned:
        return None
    return cleaned


def clean_phone(value) -> str | None:
    cleaned = re.sub(r"\s+", " ", _text(value))
    if len(digits_only(cleaned)) < MIN_PHONE_DIGITS:
        return None
    return cleaned


def extract_contact_fallback(text: str) -> dict:
    """
    Pull the first plausible email and phone straight out of the CV text.
    Used to backfill contact details the model left out.
    """
    text = text or ""
    email = None
    for match in _EMAIL_SEARCH_RE.finditer(text):
        email = clean_email(match.group(0))
        if email:
            break

    phone = None
    for match in _PHONE_SEARCH_RE.finditer(text):
        candidate = clean_phone(match.group(0))
        # Skip date ranges such as 2015-2019.
        if candidate and not re.fullmatch(r"\d{4}\s*[-–]\s*\d{4}", candidate):
            phone = candidate
            break

    return {"email": email, "phone": phone}


def _clean_profile(data: dict, seniority: str, education_level: str, years: int) -> dict:
    raw = data.get("ai_profile")
    raw = raw if isinstance(raw, dict) else {}
    education = raw.get("education")
    education = education if isinstance(education, dict) else {}

    profile = {
        "summary_for_matching": _text(raw.get("summary_for_matching")),
        "experience_years": max(0, to_safe_int(raw.get("experience_years"), years)),
        "seniority": _text(raw.get("seniority")) or seniority,
        "education": {
            "level": _text(education.get("level")) or education_level,
            "field": _text(education.get("field")),
            "institution": _text(education.get("institution")),
        },
        "career_progression": _text(raw.get("career_progression")),
    }
    for field in _PROFILE_LIST_FIELDS:
        value = raw.get(field)
        profile[field] = [str(v).strip() for v in value if str(v).strip()] if isinstance(value, list) else []
    return profile


def _clean_score_breakdown(data: dict) -> dict:
    raw = data.get("cv_score_breakdown")
    raw = raw if isinstance(raw, dict) else {}
    breakdown = {}
    for key, default in DEFAULT_SCORE_BREAKDOWN.items():
        value = raw.get(key)
        if key == "summary":
            breakdown[key] = _text(value) or default
        else:
            breakdown[key] = value if isinstance(value, dict) and "score" in value else dict(default)
    return breakdown


def _clean_score(value) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_SCORE
    return round(min(100, max(0, value)))


def clean_extracted_data(data: dict, text: str = "") -> dict:
    """
    Normalise the extract_cv_data tool input into the stored shape.

    Every field is present afterwards. Missing contact details are backfilled
    from a regex pass over the CV text, then from placeholders.
    """
    data = data if isinstance(data, dict) else {}

    email = clean_email(data.get("email"))
    phone = clean_phone(data.get("phone"))
    if not email or not phone:
        fallback = extract_contact_fallback(text)
        email = email or fallback["email"]
        phone = phone or fallback["phone"]

    seniority = _text(data.get("seniority_level")) or "Mid-Level"
    education_level = _text(data.get("education_level")) or "Other"
    years = max(0, to_safe_int(data.get("years_experience"), 0))

    return {
        "name": _text(data.get("name")) or "Unknown",
        "email": email or PLACEHOLDER_EMAIL,
        "phone": phone or "Not provided",
        "location": _text(data.get("location")) or "Not specified",
        "job_title": _text(data.get("job_title")) or "Not specified",
        "sector": _text(data.get("sector")) or "Other",
        "seniority_level": seniority,
        "years_experience": years,
        "skills": _text(data.get("skills")),
        "experience_summary": _text(data.get("experience_summary")),
        "education_level": education_level,
        "ai_profile": _clean_profile(data, seniority, education_level, years),
        "cv_score": _clean_score(data.get("cv_score")),
        "cv_score_breakdown": _clean_score_breakdown(data),
    }
