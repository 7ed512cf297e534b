from __future__ import annotations

import base64
import re
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Request

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def safe_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def now_utc_iso() -> str:
    return now_utc().isoformat()


def parse_iso_datetime(value: str | None) -> datetime:
    try:
        parsed = datetime.fromisoformat(safe_text(value))
    except ValueError:
        return now_utc() - timedelta(days=3650)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def b64url_encode(value: bytes) -> str:
    return base64.urlsafe_b64encode(value).decode("utf-8").rstrip("=")


def b64url_decode(value: str) -> bytes:
    padding = "=" * ((4 - (len(value) % 4)) % 4)
    return base64.urlsafe_b64decode(value + padding)


def normalize_email(value: str | None) -> str:
    return safe_text(value).lower()


def is_valid_email(value: str | None) -> bool:
    return bool(EMAIL_PATTERN.match(safe_text(value)))


def display_name_from_email(email: str) -> str:
    local = normalize_email(email).split("@", 1)[0]
    cleaned = re.sub(r"\s+", " ", re.sub(r"[^a-z0-9]+", " ", local)).strip()
    if not cleaned:
        return "User"
    return " ".join(part.capitalize() for part in cleaned.split(" ")[:3])


def dedupe_preserve_order(values: list[str]) -> list[str]:
    seen: set[str] = set()
    output: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        output.append(value)
    return output


def client_ip(request: Request) -> str:
    forwarded = safe_text(request.headers.get("x-forwarded-for"))
    if forwarded:
        return forwarded.split(",", 1)[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def user_agent(request: Request) -> str:
    return safe_text(request.headers.get("user-agent")) or "unknown"
