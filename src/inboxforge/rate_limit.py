"""Summary: Fixed-window request rate limiting backed by the shared database.

Importance: Protects webhook and AI-suggestion endpoints across every running instance.
Alternatives: Count requests in process memory or in Redis.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from inboxforge.models import format_timestamp, utc_now
from inboxforge.storage.sqlite_store import SqliteStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    retry_after: int


@dataclass(frozen=True)
class RateLimiter:
    """Summary: Counts hits per caller key in fixed windows.

    Importance: Windows are aligned to multiples of the window length so every instance
    agrees on the current bucket.
    Alternatives: Sliding-window logs per caller.
    """

    store: SqliteStore
    max_requests: int = 100
    window_seconds: int = 60
    now: Callable[[], datetime] = utc_now

    def hit(self, key: str) -> RateLimitDecision:
        now = self.now().timestamp()
        window_start = int(now // self.window_seconds) * self.window_seconds
        count = self.store.hit_rate_limit(
            key, format_timestamp(datetime.fromtimestamp(window_start, tz=timezone.utc))
        )
        retry_after = max(1, int(window_start + self.window_seconds - now))
        allowed = count <= self.max_requests
        if not allowed:
            logger.warning("Rate limit exceeded for %s (%s/%s).", key, count, self.max_requests)
        return RateLimitDecision(
            allowed=allowed, count=count, limit=self.max_requests, retry_after=retry_after
        )


def client_key(headers: dict[str, str], fallback: str | None) -> str:
    """Resolve the caller IP from proxy headers, then the socket peer."""

    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return fallback or "unknown"
