"""
Fixed-window rate limiting for the decode endpoint.

Each (identity, window) pair is one atomic counter in the kv backend:
``ratelimit:{identity}:{window_start}`` with a TTL of one window. The
counter is incremented first and compared after, so concurrent requests
can never both take the last slot. If the backend is unavailable the
request is allowed (fail open).
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import models
from decoder_config import RateLimitPolicy, rate_limit_policies

logger = logging.getLogger(__name__)


@dataclass
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    reset: int  # epoch seconds when the window ends
    retry_after: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        body = {"success": self.success, "limit": self.limit,
                "remaining": self.remaining, "reset": self.reset}
        if self.retry_after is not None:
            body["retryAfter"] = self.retry_after
        return body


def get_client_identifier(headers: Optional[Mapping[str, str]] = None,
                          remote_addr: Optional[str] = None) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket address."""
    headers = headers or {}
    forwarded = headers.get("X-Forwarded-For") or ""
    first_hop = forwarded.split(",")[0].strip()
    return first_hop or (headers.get("X-Real-IP") or "").strip() or remote_addr or "unknown"


def check_rate_limit(identifier: str, policy: RateLimitPolicy,
                     now: Optional[float] = None) -> RateLimitResult:
    current = int(now if now is not None else time.time())
    window = policy.window_seconds
    window_start = current - (current % window)
    reset = window_start + window
    key = f"ratelimit:{identifier}:{window_start}"

    try:
        count = models.kv_incr(key, expires_at=reset)
    except Exception:
        logger.warning("Rate limit check failed for %s, allowing request", identifier, exc_info=True)
        return RateLimitResult(True, policy.limit, max(0, policy.limit - 1), current + window)

    if count > policy.limit:
        retry_after = max(1, min(window, reset - current))
        return RateLimitResult(False, policy.limit, 0, reset, retry_after=retry_after)
    return RateLimitResult(True, policy.limit, policy.limit - count, reset)


def check_decode_rate_limit(user_id: Optional[str] = None,
                            headers: Optional[Mapping[str, str]] = None,
                            remote_addr: Optional[str] = None,
                            now: Optional[float] = None) -> RateLimitResult:
    """Authenticated users are limited by user id, anonymous callers by IP."""
    policies = rate_limit_policies()
    if user_id:
        return check_rate_limit(f"user:{user_id}", policies["authenticated"], now)
    return check_rate_limit(get_client_identifier(headers, remote_addr), policies["anonymous"], now)
