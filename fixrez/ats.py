from __future__ import annotations

import re
from typing import Any

from .utils import dedupe_preserve_order, safe_text

MAX_JOB_KEYWORDS = 50

STOP_WORDS = {
    "about", "above", "across", "after", "again", "also", "among", "and", "any", "are", "been", "before",
    "being", "both", "but", "can", "could", "does", "doing", "during", "each", "either", "etc", "every",
    "from", "have", "having", "here", "into", "just", "like", "made", "make", "many", "more", "most",
    "much", "must", "only", "other", "over", "same", "should", "some", "such", "than", "that", "their",
    "them", "then", "there", "these", "they", "this", "those", "through", "under", "until", "upon", "very",
    "want", "well", "were", "what", "when", "where", "which", "while", "will", "with", "within", "would",
    "year", "years", "your", "you'll", "you're", "we're", "we'll", "ability", "able", "plus", "including",
    "work", "working", "role", "team", "join", "looking", "candidate", "candidates", "responsibilities",
    "requirements", "preferred", "required", "strong", "good", "great", "excellent",
}


def tokenize_words(text: str) -> list[str]:
    return re.findall(r"[a-z0-9][a-z0-9+#.'\-]*[a-z0-9+#]|[a-z0-9]", safe_text(text).lower())


def extract_job_keywords(job_title: str, job_description: str) -> list[str]:
    words = tokenize_words(f"{job_title} {job_description}")
    candidates = [word for word in words if len(word) > 3 and word not in STOP_WORDS]
    return dedupe_preserve_order(candidates)[:MAX_JOB_KEYWORDS]


def match_level(score: int) -> str:
    if score > 70:
        return "Strong Match"
    if score > 40:
        return "Moderate Match"
    return "Weak Match"


def build_next_steps(score: int, missing: list[str]) -> list[str]:
    steps: list[str] = []
    if missing:
        steps.append(f"Work these job keywords into your experience bullets: {', '.join(missing[:8])}.")
    if score < 50:
        steps.append("Mirror the job title and core tools from the posting in your summary.")
    if score <= 70:
        steps.append("Quantify achievements that use the required skills.")
    if not steps:
        steps.append("Keyword coverage is strong. Tighten wording and keep the resume to one page.")
    return steps


def score_resume_against_job(resume_text: str, job_description: str, job_title: str = "") -> dict[str, Any]:
    keywords = extract_job_keywords(job_title, job_description)
    resume_tokens = set(tokenize_words(resume_text))

    found = [keyword for keyword in keywords if keyword in resume_tokens]
    missing = [keyword for keyword in keywords if keyword not in resume_tokens]
    score = round(len(found) / len(keywords) * 100) if keywords else 0
    score = max(0, min(100, score))

    return {
        "score": score,
        "match_level": match_level(score),
        "keywords_found": found,
        "keywords_missing": missing,
        "keyword_match_percentage": score,
        "total_keywords": len(keywords),
        "feedback": f"{len(found)}/{len(keywords)} job keywords found in resume",
        "concerns": ["Low keyword match"] if score < 50 else [],
        "next_steps": build_next_steps(score, missing),
    }
