from __future__ import annotations

import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, MutableMapping, Optional

from taskgate.logging import get_logger
from taskgate.service.errors import RateLimitExceededError
from taskgate.service.fingerprint import ClientFingerprint
from taskgate.storage.cache import Cache, client_rate_key

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60

# Per-user ceilings keyed by "<METHOD>:<route template>"
ENDPOINT_RATE_LIMITS: Dict[str, int] = {
    "GET:/v1/me": 100,
    "GET:/v1/users": 100,
    "GET:/v1/users/{user_id}": 100,
    "PATCH:/v1/admin/users/{user_id}/role": 10,
    "DELETE:/v1/sessions/current": 5,
}


def endpoint_limit(
    method: str,
    route_path: str,
    *,
    default: int,
    table: Mapping[str, int] = ENDPOINT_RATE_LIMITS,
) -> int:
    return table.get(f"{method.upper()}:{route_path}", default)


@dataclass
class RateLimitInfo:
    """State of one fixed-window counter after a hit."""

    limit: int
    count: int
    reset_at: float
    retry_after: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    @property
    def allowed(self) -> bool:
        return self.count <= self.limit

    @property
    def reset_iso(self) -> str:
        return datetime.fromtimestamp(self.reset_at, tz=timezone.utc).isoformat()

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": self.reset_iso,
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers

    def apply_headers(self, headers: MutableMapping[str, str]) -> None:
        """Copy rate limit headers onto a response header mapping."""
        for name, value in self.headers().items():
            headers[name] = value


class FixedWindowRateLimiter:
    """Counts hits per key in discrete windows.

    The window opens on the first increment, which also sets the key's TTL;
    later hits in the same window leave the TTL alone, so a new window only
    starts when the key expires.
    """

    def __init__(self, cache: Cache, *, clock: Callable[[], float] = time.time) -> None:
        self.cache = cache
        self.clock = clock

    async def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitInfo:
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = DEFAULT_WINDOW_SECONDS
        count = await self.cache.increment(key, 1, window_seconds)
        ttl = await self.cache.ttl(key)
        if ttl < 0:
            # Expired between the two calls, or never armed
            ttl = window_seconds
        return RateLimitInfo(
            limit=limit,
            count=count,
            reset_at=self.clock() + ttl,
            retry_after=max(1, ttl),
        )


class RequestRateGuard:
    """Per-client request ceiling applied before authentication."""

    def __init__(
        self,
        limiter: FixedWindowRateLimiter,
        *,
        max_requests: int,
        window_ms: int,
    ) -> None:
        self.limiter = limiter
        self.max_requests = max_requests
        self.window_ms = window_ms

    @property
    def window_seconds(self) -> int:
        return max(1, math.ceil(self.window_ms / 1000))

    async def check(
        self,
        fingerprint: ClientFingerprint,
        *,
        user_id: Optional[str] = None,
        max_requests: Optional[int] = None,
        window_ms: Optional[int] = None,
    ) -> RateLimitInfo:
        """Count one request for ``fingerprint``.

        Raises:
            RateLimitExceededError: carrying the rate limit headers once the
                ceiling for the current window is passed.
        """
        limit = max_requests if max_requests is not None else self.max_requests
        window = (
            max(1, math.ceil(window_ms / 1000))
            if window_ms is not None
            else self.window_seconds
        )
        key = client_rate_key(fingerprint.rate_subject(user_id))
        info = await self.limiter.hit(key, limit, window)
        if not info.allowed:
            logger.warning(
                "request_rate_limited",
                ip=fingerprint.ip,
                limit=limit,
                count=info.count,
                retry_after=info.retry_after,
            )
            raise RateLimitExceededError(
                limit=limit,
                retry_after=info.retry_after,
                reset_at=info.reset_iso,
                headers=info.headers(),
            )
        return info
