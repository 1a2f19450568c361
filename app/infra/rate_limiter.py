# app/infra/rate_limiter.py
"""
Sliding-window rate limiting for the public link routes.

Bid links, choose links and tracking links are bearer secrets in a URL;
limiting requests per client slows down anyone guessing them.
"""
from __future__ import annotations

import time
from collections import deque
from threading import Lock
from typing import Optional

from fastapi import HTTPException, Request, status

from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter

logger = get_logger(__name__)


class InMemoryRateLimiter:
    """
    Per-key sliding window held in process memory.

    Each replica keeps its own windows, so with N replicas the effective
    limit is N x max_requests.
    """

    def __init__(self, max_requests: int, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._hits: dict[str, deque[float]] = {}
        self._lock = Lock()

    def is_allowed(self, key: str, now: Optional[float] = None) -> tuple[bool, Optional[int]]:
        """Count one hit for ``key`` if the window has room; returns (allowed, retry_after_seconds)."""
        now = time.time() if now is None else now
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= now - self.window_seconds:
                hits.popleft()

            if len(hits) >= self.max_requests:
                # the oldest hit leaving the window frees the next slot
                return False, int(hits[0] + self.window_seconds - now) + 1

            hits.append(now)
            return True, None

    def cleanup(self, max_age_seconds: int = 3600) -> int:
        """Forget keys with no hit in ``max_age_seconds``; returns how many were dropped."""
        cutoff = time.time() - max_age_seconds
        with self._lock:
            idle = [key for key, hits in self._hits.items() if not hits or hits[-1] < cutoff]
            for key in idle:
                del self._hits[key]
        if idle:
            logger.info("Rate limiter dropped %d idle keys", len(idle))
        return len(idle)


def client_ip(request: Request) -> str:
    """First X-Forwarded-For hop when behind the proxy, else the socket peer."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class RateLimitDependency:
    """FastAPI dependency: one window per (client IP, route name)."""

    def __init__(self, limiter: InMemoryRateLimiter, scope: str):
        self.limiter = limiter
        self.scope = scope

    async def __call__(self, request: Request) -> None:
        ip = client_ip(request)
        allowed, retry_after = self.limiter.is_allowed(f"{self.scope}:{ip}")
        if allowed:
            return

        masked = ip[:4] + "***" if len(ip) > 4 else "***"
        logger.warning(
            "Rate limit exceeded on %s for %s", self.scope, masked,
            extra={"key_masked": masked, "retry_after": retry_after},
        )
        inc_counter("rate_limited_total", scope=self.scope)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests",
            headers={"Retry-After": str(retry_after)} if retry_after else None,
        )
