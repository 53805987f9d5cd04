"""
Rate Limiting

In-memory sliding-window limiter for the public endpoints (invitation
lookup, booking creation, customer login).

Each app instance owns one RateLimiter (``app.state.rate_limiter``), so
independent app instances never share counters.

Usage:
    @router.post("/bookings", dependencies=[Depends(public_rate_limit)])
    async def create_booking(...):
        ...
"""

import logging
import time
from collections import defaultdict
from typing import Callable, Dict, Tuple

from fastapi import Request

from .core.errors import RateLimitedError

logger = logging.getLogger(__name__)


# ────────────────────────────────────────────────────────────────
# In-Memory Rate Limiter
# ────────────────────────────────────────────────────────────────

class RateLimiter:
    """
    Sliding-window limiter keyed by (client IP, endpoint).

    For deployments with several processes, counters are per process.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        # Structure: {(ip, endpoint): [timestamp, ...]}
        self.requests: Dict[Tuple[str, str], list[float]] = defaultdict(list)
        self.cleanup_interval = 300
        self.last_cleanup = clock()

    @staticmethod
    def client_ip(request: Request) -> str:
        """X-Forwarded-For first (reverse proxies), then the socket peer."""
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        if request.client:
            return request.client.host
        return "unknown"

    def _cleanup(self, now: float) -> None:
        if now - self.last_cleanup < self.cleanup_interval:
            return
        cutoff = now - self.window_seconds
        for key in list(self.requests.keys()):
            self.requests[key] = [ts for ts in self.requests[key] if ts > cutoff]
            if not self.requests[key]:
                del self.requests[key]
        self.last_cleanup = now
        logger.debug(f"Rate limiter cleanup: {len(self.requests)} keys tracked")

    def check(self, ip: str, endpoint: str) -> Tuple[bool, int]:
        """
        Record a hit if allowed.

        Returns:
            (is_allowed, retry_after_seconds)
        """
        now = self.clock()
        self._cleanup(now)

        key = (ip, endpoint)
        window_start = now - self.window_seconds
        recent = [ts for ts in self.requests[key] if ts > window_start]
        self.requests[key] = recent

        if len(recent) >= self.max_requests:
            retry_after = max(1, int(min(recent) + self.window_seconds - now) + 1)
            return False, retry_after

        recent.append(now)
        return True, 0

    def reset(self) -> None:
        self.requests.clear()


# ────────────────────────────────────────────────────────────────
# FastAPI Dependency
# ────────────────────────────────────────────────────────────────

async def public_rate_limit(request: Request) -> None:
    limiter: RateLimiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        return
    # Route template, so /invitation-links/abc and /invitation-links/xyz share a bucket
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    ip = limiter.client_ip(request)

    allowed, retry_after = limiter.check(ip, f"{request.method} {endpoint}")
    if not allowed:
        logger.warning(
            f"[RATE_LIMIT] Blocked request from {ip} to {endpoint}: "
            f"limit {limiter.max_requests} per {limiter.window_seconds}s"
        )
        raise RateLimitedError(
            f"Too many requests. Limit: {limiter.max_requests} per {limiter.window_seconds}s",
            retry_after=retry_after,
            details={"limit": limiter.max_requests, "windowSeconds": limiter.window_seconds},
        )
