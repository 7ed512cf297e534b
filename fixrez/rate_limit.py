from __future__ import annotations

import threading
import time
from collections import deque

from fastapi import HTTPException, Request

from . import config
from .db import log_analytics_event
from .utils import client_ip


class SlidingWindowLimiter:
    """In-memory per-IP request counter over the last RATE_WINDOW_SECONDS."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._hits: dict[str, deque[float]] = {}

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()

    def _sweep(self, now: float, window: float) -> None:
        """Prune expired timestamps and forget keys with none left. Caller holds the lock."""
        for key in list(self._hits):
            hits = self._hits[key]
            while hits and now - hits[0] >= window:
                hits.popleft()
            if not hits:
                del self._hits[key]

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def hit(self, key: str) -> int | None:
        """Record a request; return seconds to wait when the key is over its limit."""
        now = time.monotonic()
        window = config.RATE_WINDOW_SECONDS
        with self._lock:
            self._sweep(now, window)
            hits = self._hits.setdefault(key, deque())
            if len(hits) >= config.RATE_MAX:
                return int(window - (now - hits[0])) + 1
            hits.append(now)
            return None


limiter = SlidingWindowLimiter()


def enforce_ip_allowlist(request: Request) -> None:
    if not config.ALLOWED_IPS:
        return
    if client_ip(request) not in config.ALLOWED_IPS:
        raise HTTPException(status_code=403, detail="Access from this address is not allowed")


def enforce_rate_limit(request: Request, scope: str) -> None:
    enforce_ip_allowlist(request)
    ip_address = client_ip(request)
    retry_after = limiter.hit(f"{scope}:{ip_address}")
    if retry_after is None:
        return
    log_analytics_event("rate_limit", "blocked", meta={"scope": scope, "ip": ip_address})
    raise HTTPException(
        status_code=429,
        detail={"message": "Too many requests. Please slow down.", "retry_after_seconds": retry_after},
    )
