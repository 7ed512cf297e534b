from __future__ import annotations

import json
import logging
import re
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

from fastapi import HTTPException
from openai import OpenAI

from . import config
from .utils import safe_text

logger = logging.getLogger("fixrez.backend.optimizer")

OPTIMIZATION_TYPES = ("seo", "engagement", "clarity")

SEO_REPLACEMENTS = {"good": "excellent", "nice": "outstanding", "great": "exceptional"}
ENGAGEMENT_CALL_TO_ACTION = "Ready to transform your content? Discover the power of AI optimization today!"
CLARITY_REPLACEMENTS = [
    (r"\bin order to\b", "to"),
    (r"\bdue to the fact that\b", "because"),
    (r"\bat this point in time\b", "now"),
]


def optimize_for_seo(text: str) -> str:
    optimized = re.sub(
        r"\b(good|nice|great)\b",
        lambda match: SEO_REPLACEMENTS.get(match.group(0).lower(), match.group(0)),
        text,
        flags=re.IGNORECASE,
    )
    if "##" not in optimized:
        optimized = (
            f"## Overview\n\n{optimized}\n\n## Key Benefits\n\n"
            "* Improved search visibility\n* Better user engagement\n* Enhanced readability"
        )
    return optimized


def optimize_for_engagement(text: str) -> str:
    optimized = text.replace(".", "!")
    lowered = optimized.lower()
    if "discover" not in lowered and "learn" not in lowered:
        optimized += f"\n\n{ENGAGEMENT_CALL_TO_ACTION}"
    optimized = re.sub(r"\bimportant\b", "absolutely crucial", optimized, flags=re.IGNORECASE)
    optimized = re.sub(r"\bhelp\b", "revolutionize", optimized, flags=re.IGNORECASE)
    return optimized


def optimize_for_clarity(text: str) -> str:
    optimized = text
    for pattern, replacement in CLARITY_REPLACEMENTS:
        optimized = re.sub(pattern, replacement, optimized, flags=re.IGNORECASE)
    if "###" not in optimized:
        optimized = (
            f"### Main Points\n\n{optimized}\n\n### Summary\n\n"
            "This content has been optimized for maximum clarity and understanding."
        )
    return optimized


TEXT_OPTIMIZERS = {
    "seo": optimize_for_seo,
    "engagement": optimize_for_engagement,
    "clarity": optimize_for_clarity,
}


def optimize_text(text: str, optimization_type: str) -> str:
    optimizer = TEXT_OPTIMIZERS.get(optimization_type)
    if optimizer is None:
        raise HTTPException(status_code=400, detail="Invalid optimization type")
    return optimizer(text)


SYSTEM_PROMPT = """You are a resume optimization expert. Read the resume and job description, then return a JSON-optimized resume that includes relevant keywords from the job description.

Rules:
1. Return ONLY valid JSON
2. Keep it to one page
3. Use keywords from the job description
4. Be concise and professional
5. Use Canadian spelling

JSON format:
{
  "header": {"name": "Name", "contact": "City, Province • email • phone"},
  "summary": "2-3 sentence summary with job keywords",
  "experience": [{"company": "Name", "location": "City, Province", "dates": "MMM YYYY - MMM YYYY", "title": "Title", "bullets": ["achievement with keywords"]}],
  "education": [{"school": "Name", "location": "City, Province", "dates": "Year - Year", "degree": "Degree"}],
  "additional": {"technical_skills": "skills", "languages": "languages", "certifications": "certs"}
}"""

RESUME_PROMPT_LIMIT = 3000
JOB_DESCRIPTION_PROMPT_LIMIT = 2000


def compose_prompt(resume_text: str, job_description: str) -> str:
    return (
        f"Resume:\n{resume_text[:RESUME_PROMPT_LIMIT]}\n\n"
        f"Job Description:\n{job_description[:JOB_DESCRIPTION_PROMPT_LIMIT]}"
    )


def extract_llm_text(message_content: Any) -> str:
    if isinstance(message_content, str):
        return safe_text(message_content)

    if isinstance(message_content, list):
        parts: list[str] = []
        for item in message_content:
            if isinstance(item, str):
                parts.append(item)
                continue
            if isinstance(item, dict):
                text = item.get("text") or item.get("content")
            else:
                text = getattr(item, "text", None)
            if isinstance(text, str):
                parts.append(text)
        return safe_text("\n".join(parts))

    return safe_text(message_content)


def extract_first_json(content: str) -> str | None:
    """Return the first balanced {...} block, skipping braces inside strings."""
    start = content.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(content)):
        char = content[index]
        if escaped:
            escaped = False
            continue
        if in_string:
            if char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return content[start : index + 1]
    return None


def extract_json_candidate(content: str | None) -> str | None:
    if not content:
        return None
    trimmed = content.strip()
    if trimmed.startswith("{") and trimmed.endswith("}"):
        return trimmed

    candidate = extract_first_json(content)
    if candidate:
        return candidate

    fenced = re.search(r"```(?:json)?(.*?)```", content, flags=re.DOTALL | re.IGNORECASE)
    if fenced:
        return extract_first_json(fenced.group(1))
    return None


def sanitize_json_candidate(candidate: str) -> str:
    cleaned = re.sub("[‘’]", "'", candidate)
    cleaned = re.sub("[“”]", '"', cleaned)
    cleaned = re.sub(r",\s*([}\]])", r"\1", cleaned)
    return cleaned.strip()


def parse_resume_json(content: str | None) -> dict[str, Any]:
    candidate = extract_json_candidate(content)
    if not candidate:
        raise ValueError("No JSON found in model response")
    try:
        parsed = json.loads(candidate)
    except ValueError:
        cleaned = sanitize_json_candidate(candidate)
        try:
            parsed = json.loads(cleaned)
        except ValueError:
            logger.warning("Model JSON could not be parsed. Candidate preview: %s", cleaned[:500])
            raise
    if not isinstance(parsed, dict):
        raise ValueError("Model response JSON is not an object")
    return parsed


def build_mock_resume(resume_text: str, job_description: str) -> dict[str, Any]:
    return {
        "header": {"name": "Dev User", "contact": "Toronto, ON • dev@localhost • 555-000-0000"},
        "summary": f"Professional with experience in {job_description[:40]}...",
        "experience": [
            {
                "company": "Acme Corp",
                "location": "Toronto, ON",
                "dates": "Jan 2020 - Present",
                "title": "Software Engineer",
                "bullets": [
                    "Built scalable React apps using TypeScript",
                    "Developed Node.js APIs and integrated cloud services",
                ],
            }
        ],
        "education": [
            {
                "school": "University of Toronto",
                "location": "Toronto, ON",
                "dates": "2015 - 2019",
                "degree": "B.Sc. in Computer Science",
            }
        ],
        "additional": {
            "technical_skills": "TypeScript, React, Node.js, AWS, Docker",
            "languages": "English",
            "certifications": "None",
        },
    }


def list_field(container: dict[str, Any], key: str) -> list[Any]:
    value = container.get(key)
    return value if isinstance(value, list) else []


def resume_json_to_text(data: dict[str, Any]) -> str:
    """Flatten optimizer JSON into the plain-text resume layout used for export and scoring."""
    if not isinstance(data, dict):
        return ""
    lines: list[str] = []
    header = data.get("header") if isinstance(data.get("header"), dict) else {}
    if safe_text(header.get("name")):
        lines.append(safe_text(header.get("name")))
    if safe_text(header.get("contact")):
        lines.append(safe_text(header.get("contact")))

    summary = safe_text(data.get("summary"))
    if summary:
        lines += ["", "SUMMARY", summary]

    experience = [item for item in list_field(data, "experience") if isinstance(item, dict)]
    if experience:
        lines += ["", "EXPERIENCE"]
        for item in experience:
            title_line = " | ".join(
                part for part in (safe_text(item.get("title")), safe_text(item.get("company"))) if part
            )
            meta_line = " | ".join(
                part for part in (safe_text(item.get("location")), safe_text(item.get("dates"))) if part
            )
            if title_line:
                lines.append(title_line)
            if meta_line:
                lines.append(meta_line)
            for bullet in list_field(item, "bullets"):
                if safe_text(bullet):
                    lines.append(f"- {safe_text(bullet)}")

    education = [item for item in list_field(data, "education") if isinstance(item, dict)]
    if education:
        lines += ["", "EDUCATION"]
        for item in education:
            parts = [safe_text(item.get(key)) for key in ("degree", "school", "location", "dates")]
            lines.append(" | ".join(part for part in parts if part))

    additional = data.get("additional") if isinstance(data.get("additional"), dict) else {}
    extras = [(key, safe_text(value)) for key, value in additional.items() if safe_text(value)]
    if extras:
        lines += ["", "ADDITIONAL"]
        for key, value in extras:
            lines.append(f"{key.replace('_', ' ').title()}: {value}")

    return "\n".join(lines).strip()


class ProviderThrottle:
    """Process-wide spacing, cooldown and concurrency gate for LLM provider calls."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._slots = threading.BoundedSemaphore(config.AI_MAX_CONCURRENT)
            self.active = 0
            self.last_ok: float | None = None
            self.last_429: float | None = None
            self.last_call: float | None = None
            self.cooldown_until: float | None = None

    def begin_call(self) -> None:
        now = time.time()
        with self._lock:
            if self.cooldown_until and now < self.cooldown_until:
                wait_seconds = int(self.cooldown_until - now) + 1
                raise HTTPException(
                    status_code=429,
                    detail={
                        "message": "Rate limited",
                        "details": f"Provider cooldown active. Wait ~{wait_seconds}s and retry.",
                        "cooldown_until": iso_timestamp(self.cooldown_until),
                    },
                )
            spacing = config.AI_MIN_SPACING_SECONDS
            if self.last_call and spacing > 0 and now - self.last_call < spacing:
                wait_seconds = int(spacing - (now - self.last_call)) + 1
                raise HTTPException(
                    status_code=429,
                    detail={
                        "message": "Too frequent",
                        "details": f"Please wait ~{wait_seconds}s before next request.",
                    },
                )
            self.last_call = now

    @contextmanager
    def slot(self) -> Iterator[None]:
        self._slots.acquire()
        with self._lock:
            self.active += 1
        try:
            yield
        finally:
            with self._lock:
                self.active -= 1
            self._slots.release()

    def mark_ok(self) -> None:
        with self._lock:
            self.last_ok = time.time()

    def mark_rate_limited(self) -> None:
        with self._lock:
            self.last_429 = time.time()
            self.cooldown_until = self.last_429 + config.AI_PROVIDER_COOLDOWN_SECONDS

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "model": config.LLM_MODEL,
                "active": self.active,
                "max_concurrent": config.AI_MAX_CONCURRENT,
                "last_ok": iso_timestamp(self.last_ok),
                "last_429": iso_timestamp(self.last_429),
                "last_call": iso_timestamp(self.last_call),
                "cooldown_until": iso_timestamp(self.cooldown_until),
            }


def iso_timestamp(value: float | None) -> str | None:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()


throttle = ProviderThrottle()


def build_client() -> OpenAI | None:
    if not config.LLM_API_KEY:
        return None
    return OpenAI(
        api_key=config.LLM_API_KEY,
        base_url=config.LLM_BASE_URL or None,
        default_headers={"HTTP-Referer": config.LLM_REFERER, "X-Title": config.LLM_TITLE},
    )


client = build_client()


class LLMProviderError(Exception):
    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


def is_transient_openai_error(exc: Exception) -> bool:
    return type(exc).__name__ in {"APIConnectionError", "APITimeoutError", "InternalServerError"}


def provider_status_code(exc: Exception) -> int:
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 400:
        return status
    return 502


def model_sequence() -> list[str]:
    models: list[str] = []
    for model in [config.LLM_MODEL, *config.LLM_FALLBACK_MODELS]:
        if model and model not in models:
            models.append(model)
    return models


def request_completion(model: str, user_prompt: str) -> str:
    if client is None:
        raise LLMProviderError("LLM client is not configured", status_code=503)

    with throttle.slot():
        for attempt in range(3):
            try:
                response = client.chat.completions.create(
                    model=model,
                    messages=[
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": user_prompt},
                    ],
                    temperature=config.LLM_TEMPERATURE,
                    max_tokens=config.LLM_MAX_TOKENS,
                )
            except Exception as exc:
                logger.exception("LLM request failed for model '%s' (attempt %s).", model, attempt + 1)
                if attempt < 2 and is_transient_openai_error(exc):
                    time.sleep(0.35 * (attempt + 1))
                    continue
                raise LLMProviderError(f"{type(exc).__name__} on model {model}", provider_status_code(exc)) from exc
            return extract_llm_text(response.choices[0].message.content if response.choices else "")
    raise LLMProviderError(f"No response from model {model}")


def optimize_resume(resume_text: str, job_description: str, prompt: str | None = None) -> dict[str, Any]:
    """Run the LLM resume rewrite; returns {"data", "model"} or raises 429/502/503."""
    if config.DEV_AI_MOCK:
        logger.info("DEV_AI_MOCK is enabled; returning mock resume.")
        return {
            "data": build_mock_resume(resume_text, job_description),
            "model": "mock",
            "warning": "Using mock due to DEV flags.",
        }
    if client is None:
        raise HTTPException(status_code=503, detail="Resume optimization is not configured on this server.")

    throttle.begin_call()
    short_prompt = compose_prompt(resume_text, job_description)
    user_prompt = safe_text(prompt) or short_prompt

    attempted_models: list[str] = []
    last_status = 502
    last_error = "Optimization failed"
    for model in model_sequence():
        attempted_models.append(model)
        try:
            content = request_completion(model, user_prompt)
            if not content:
                logger.warning("Model '%s' returned empty content; retrying with truncated prompt.", model)
                content = request_completion(model, short_prompt)
            data = parse_resume_json(content)
        except LLMProviderError as exc:
            last_status = exc.status_code
            last_error = str(exc)
            if exc.status_code == 429:
                throttle.mark_rate_limited()
            continue
        except ValueError as exc:
            logger.warning("Model '%s' returned unusable JSON: %s", model, exc)
            last_status = 502
            last_error = str(exc)
            continue
        throttle.mark_ok()
        return {"data": data, "model": model}

    last_model = attempted_models[-1] if attempted_models else None
    if last_status == 429:
        raise HTTPException(
            status_code=429,
            detail={
                "message": "Rate limited",
                "details": "We are hitting provider limits. Please wait 2-5 minutes and try again.",
                "attempted_models": attempted_models,
                "last_model": last_model,
                "cooldown_until": throttle.snapshot()["cooldown_until"],
            },
        )
    raise HTTPException(
        status_code=502,
        detail={
            "message": "Optimization failed",
            "details": last_error,
            "attempted_models": attempted_models,
            "last_model": last_model,
        },
    )
