"""
cvs/prompts.py

Prompt text and the extract_cv_data tool schema used by cvs.parser.CVParser.
Field names here are the keys stored in BulkImportFile.parsed_data and
copied onto CVSubmission.
"""

EXTRACTION_TOOL_NAME = "extract_cv_data"

SECTORS = [
    "Finance", "Technology", "Healthcare", "Legal", "Engineering",
    "Marketing", "Human Resources", "Sales", "Operations", "Other",
]

SENIORITY_LEVELS = [
    "Entry Level", "Junior", "Mid-Level", "Senior", "Lead",
    "Manager", "Director", "VP", "C-Level", "Executive",
]

EDUCATION_LEVELS = [
    "High School", "Associate Degree", "Bachelor's Degree", "Master's Degree",
    "PhD", "Professional Certification", "Other",
]

SYSTEM_PROMPT = """You are an expert CV/resume parser and analyst for a professional recruitment agency.

Extract structured information from the CV with high accuracy:

1. All available contact information (name, email, phone, location)
2. The candidate's primary job title and career sector
3. Seniority and total years of professional experience
4. Skills, split into hard (technical) and soft skills
5. A summary of work experience highlighting key achievements
6. Education level and relevant certifications
7. A profile for job matching
8. A 0-100 quality score with a detailed breakdown

Rules:
- If information is not clearly stated, make reasonable inferences from context
- Copy phone numbers exactly as written
- Calculate years of experience from work history if not stated
- Score honestly: an average CV scores around 50-60, excellent CVs 80+
- Always answer by calling the extract_cv_data tool"""

SCORING_CRITERIA = """CV quality score (0-100 total):

1. COMPLETENESS (max 20): contact info, work history, education, skills present?
2. SKILLS RELEVANCE (max 20): skills specific, with proficiency and context?
3. EXPERIENCE DEPTH (max 25): achievements described, not just duties?
4. ACHIEVEMENTS (max 15): quantified results and accomplishments?
5. EDUCATION (max 10): education clearly presented with relevant detail?
6. PRESENTATION (max 10): well organised and professionally written?"""


def build_user_prompt(cv_text: str) -> str:
    return (
        "Analyse this CV and extract all structured information.\n\n"
        f"{SCORING_CRITERIA}\n\n"
        "Instructions:\n"
        "- Extract information exactly as it appears when possible\n"
        "- Justify each score in the breakdown notes\n"
        "- Include a 2-3 sentence summary in cv_score_breakdown\n"
        "- Do not invent information\n\n"
        f"--- CV TEXT START ---\n{cv_text}\n--- CV TEXT END ---"
    )


def _score_part(max_score: int) -> dict:
    return {
        "type": "object",
        "properties": {
            "score": {"type": "number", "description": f"Score out of {max_score}"},
            "max": {"type": "number", "description": f"Maximum score ({max_score})"},
            "notes": {"type": "string", "description": "Brief explanation"},
        },
        "required": ["score", "max", "notes"],
    }


def _string_list(description: str) -> dict:
    return {"type": "array", "items": {"type": "string"}, "description": description}


EXTRACTION_TOOL = {
    "name": EXTRACTION_TOOL_NAME,
    "description": "Record structured data extracted from a CV/resume document.",
    "input_schema": {
        "type": "object",
        "properties": {
            "name": {"type": "string", "description": "Full name of the candidate"},
            "email": {"type": "string", "description": "Email address"},
            "phone": {"type": "string", "description": "Phone number as written in the CV"},
            "location": {"type": "string", "description": "City, region or country"},
            "job_title": {"type": "string", "description": "Current or most recent job title"},
            "sector": {"type": "string", "enum": SECTORS, "description": "Primary industry sector"},
            "seniority_level": {"type": "string", "enum": SENIORITY_LEVELS},
            "years_experience": {"type": "number", "description": "Total years of professional experience"},
            "skills": {"type": "string", "description": "Comma-separated list of key skills"},
            "experience_summary": {
                "type": "string",
                "description": "2-3 sentence summary of work experience and key achievements",
            },
            "education_level": {"type": "string", "enum": EDUCATION_LEVELS},
            "ai_profile": {
                "type": "object",
                "properties": {
                    "summary_for_matching": {"type": "string", "description": "3-4 sentence summary for job matching"},
                    "key_achievements": _string_list("Top 3-5 career achievements"),
                    "hard_skills": _string_list("Technical and specialised skills"),
                    "soft_skills": _string_list("Interpersonal and transferable skills"),
                    "certifications": _string_list("Professional certifications and licences"),
                    "industries": _string_list("Industries the candidate has worked in"),
                    "experience_years": {"type": "number"},
                    "seniority": {"type": "string"},
                    "education": {
                        "type": "object",
                        "properties": {
                            "level": {"type": "string"},
                            "field": {"type": "string"},
                            "institution": {"type": "string"},
                        },
                    },
                    "ideal_roles": _string_list("Job titles this candidate would suit"),
                    "career_progression": {"type": "string"},
                },
            },
            "cv_score": {"type": "number", "description": "Overall CV quality score 0-100"},
            "cv_score_breakdown": {
                "type": "object",
                "properties": {
                    "completeness": _score_part(20),
                    "skills_relevance": _score_part(20),
                    "experience_depth": _score_part(25),
                    "achievements": _score_part(15),
                    "education": _score_part(10),
                    "presentation": _score_part(10),
                    "summary": {"type": "string"},
                },
            },
        },
        "required": [
            "name", "email", "phone", "location", "job_title", "sector",
            "seniority_level", "years_experience", "skills", "experience_summary",
            "education_level", "ai_profile", "cv_score", "cv_score_breakdown",
        ],
    },
}
