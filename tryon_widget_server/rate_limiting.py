"""
Fixed-window rate limiting for the widget API.

Two tiers are enforced on every widget request:
- Per-merchant: protects shared capacity from one storefront (100/minute)
- Per-IP: stops a single shopper or bot from hammering a session (20/minute)

Counters live in a ``limits`` storage backend (``memory://`` by default, any
``limits`` storage URI such as ``redis://`` works for multi-process deploys).
Increments are atomic in the backend, so concurrent requests can never both
take the last slot.
"""
import time
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from fastapi import Request
from limits import RateLimitItemPerSecond
from limits.storage import storage_from_string
from limits.strategies import FixedWindowRateLimiter
from slowapi.util import get_remote_address

from tryon_widget_server.errors import RateLimitExceededError
from tryon_widget_server.logging_config import log_rate_limit_exceeded


@dataclass
class RateLimitResult:
    """Outcome of one rate limit check"""
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch seconds

    @property
    def retry_after(self) -> int:
        return max(1, int(self.reset_at - time.time()) + 1)

    def headers(self) -> Dict[str, str]:
        """Standard rate limit response headers"""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


def get_client_ip(request: Request, trusted_proxies: Sequence[str] = ()) -> str:
    """
    Client address for IP rate limiting.

    The first ``X-Forwarded-For`` hop is used only when the socket peer is a
    trusted proxy; otherwise clients could rotate the header to dodge the
    per-IP limit.
    """
    peer = get_remote_address(request)
    if peer not in trusted_proxies and "*" not in trusted_proxies:
        return peer
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return peer


class RateLimiter:
    """One fixed-window limit applied per subject id"""

    def __init__(
        self,
        name: str,
        limit: int,
        window_seconds: int,
        storage,
        enabled: bool = True,
    ):
        self.name = name
        self.limit = limit
        self.window_seconds = window_seconds
        self.enabled = enabled
        self._item = RateLimitItemPerSecond(limit, window_seconds)
        self._strategy = FixedWindowRateLimiter(storage)

    def check_and_increment(self, subject_id: str) -> RateLimitResult:
        """
        Count one request for ``subject_id`` and report whether it is allowed.

        The counter is incremented even for rejected requests; the window
        still resets on schedule.
        """
        if not self.enabled:
            return RateLimitResult(
                allowed=True,
                limit=self.limit,
                remaining=self.limit,
                reset_at=time.time() + self.window_seconds,
            )

        allowed = self._strategy.hit(self._item, self.name, str(subject_id))
        stats = self._strategy.get_window_stats(self._item, self.name, str(subject_id))
        return RateLimitResult(
            allowed=allowed,
            limit=self.limit,
            remaining=max(0, stats.remaining),
            reset_at=stats.reset_time,
        )

    def enforce(self, subject_id: str, **log_context) -> RateLimitResult:
        """Like ``check_and_increment`` but raises RATE_LIMIT_EXCEEDED when denied"""
        result = self.check_and_increment(subject_id)
        if not result.allowed:
            log_rate_limit_exceeded(
                subject_type=self.name,
                subject_id=str(subject_id),
                limit_value=self.limit,
                reset_at=result.reset_at,
                **log_context,
            )
            raise RateLimitExceededError(
                message=f"Rate limit of {self.limit} requests per {self.window_seconds}s exceeded",
                headers=result.headers(),
            )
        return result


class WidgetRateLimits:
    """The merchant and IP limiters sharing one storage backend"""

    def __init__(
        self,
        merchant_limit: int = 100,
        ip_limit: int = 20,
        window_seconds: int = 60,
        storage_uri: str = "memory://",
        enabled: bool = True,
    ):
        self.storage = storage_from_string(storage_uri)
        self.merchant = RateLimiter("merchant", merchant_limit, window_seconds, self.storage, enabled)
        self.ip = RateLimiter("ip", ip_limit, window_seconds, self.storage, enabled)

    @classmethod
    def from_settings(cls, settings) -> "WidgetRateLimits":
        return cls(
            merchant_limit=settings.merchant_rate_limit_per_window,
            ip_limit=settings.ip_rate_limit_per_window,
            window_seconds=settings.rate_limit_window_seconds,
            storage_uri=settings.rate_limit_storage_uri,
            enabled=settings.rate_limit_enabled,
        )

    def reset(self) -> None:
        """Clear every counter (tests and maintenance)"""
        self.storage.reset()


def most_restrictive(*results: Optional[RateLimitResult]) -> Optional[RateLimitResult]:
    """Pick the result with the fewest remaining requests for response headers"""
    candidates = [r for r in results if r is not None]
    if not candidates:
        return None
    return min(candidates, key=lambda r: (r.remaining, r.limit))
