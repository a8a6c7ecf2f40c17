"""Sliding-window rate limiter for ad platform APIs.

WHAT:
    Tracks request timestamps inside a rolling window and blocks (sleeps)
    when the budget is used up. Also accepts usage hints reported by the
    platform (Meta usage headers) so the local budget tightens before the
    API starts throttling.

WHY:
    Meta enforces roughly 200 calls/hour per ad account and reports usage
    percentages in `X-Business-Use-Case-Usage` / `X-App-Usage`. Honoring both
    avoids error code 17/4 throttling during long backfills.

REFERENCES:
    - adpulse/services/meta_ads_client.py (one limiter per access token)
    - https://developers.facebook.com/docs/graph-api/overview/rate-limiting
"""

from __future__ import annotations

import json
import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after: Optional[int] = None


@dataclass
class PlatformRateLimitInfo:
    """Budget reported by the platform itself."""

    limit: int
    remaining: int
    reset_at: float  # epoch seconds


class SlidingWindowRateLimiter:
    """Rolling-window limiter with injectable clock and sleeper.

    Usage:
        limiter = SlidingWindowRateLimiter(max_requests=200, window_seconds=3600)
        limiter.acquire()  # blocks, then counts the request

    One limiter is shared by every client built for the same token, so all
    state changes happen under `_lock`. Sleeping happens outside it.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float = 3600,
        platform: str = "meta",
        clock: Callable[[], float] = time.time,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.platform = platform
        self._clock = clock
        self._sleep = sleeper
        self._requests: Deque[float] = deque()
        self._platform_info: Optional[PlatformRateLimitInfo] = None
        self._lock = threading.Lock()

    def _clean_old_requests(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._requests and self._requests[0] <= cutoff:
            self._requests.popleft()

    def check(self) -> RateLimitDecision:
        """Return whether a request may be sent now."""
        with self._lock:
            return self._decide()

    def _decide(self) -> RateLimitDecision:
        now = self._clock()
        self._clean_old_requests(now)

        info = self._platform_info
        if info and info.reset_at > now and info.remaining <= 0:
            retry_after = math.ceil(info.reset_at - now)
            logger.warning(
                "[RATE_LIMIT] %s platform budget exhausted, retry in %ss",
                self.platform,
                retry_after,
            )
            return RateLimitDecision(allowed=False, retry_after=retry_after)

        if len(self._requests) >= self.max_requests:
            retry_after = math.ceil(self._requests[0] + self.window_seconds - now)
            logger.warning(
                "[RATE_LIMIT] %s local limit reached (%s/%s), retry in %ss",
                self.platform,
                len(self._requests),
                self.max_requests,
                retry_after,
            )
            return RateLimitDecision(allowed=False, retry_after=max(retry_after, 1))

        return RateLimitDecision(allowed=True)

    def record(self) -> None:
        with self._lock:
            self._record()

    def _record(self) -> None:
        self._requests.append(self._clock())
        if self._platform_info and self._platform_info.remaining > 0:
            self._platform_info.remaining -= 1

    def wait(self) -> None:
        """Sleep until a request is allowed (does not count one)."""
        self._block_until_allowed(record=False)

    def acquire(self) -> None:
        """Sleep until a request is allowed, then count it in the same step.

        Two threads sharing the limiter can never both take the last slot.
        """
        self._block_until_allowed(record=True)

    def _block_until_allowed(self, record: bool) -> None:
        while True:
            with self._lock:
                decision = self._decide()
                if decision.allowed:
                    if record:
                        self._record()
                    return
            logger.info(
                "[RATE_LIMIT] Waiting %ss for %s rate limit reset",
                decision.retry_after,
                self.platform,
            )
            self._sleep(decision.retry_after or 1)

    def update_rate_limit_info(self, limit: int, remaining: int, reset_at: float) -> None:
        with self._lock:
            self._platform_info = PlatformRateLimitInfo(limit=limit, remaining=remaining, reset_at=reset_at)
        logger.debug(
            "[RATE_LIMIT] %s info updated: limit=%s remaining=%s reset_at=%s",
            self.platform,
            limit,
            remaining,
            reset_at,
        )

    def update_from_usage(self, usage_pct: float, regain_seconds: float = 0) -> None:
        """Shrink the remaining budget from a platform usage percentage (0-100)."""
        now = self._clock()
        usage_pct = max(0.0, min(float(usage_pct), 100.0))
        remaining = int(self.max_requests * (100.0 - usage_pct) / 100.0)
        reset_at = now + (regain_seconds if regain_seconds > 0 else self.window_seconds)
        self.update_rate_limit_info(self.max_requests, remaining, reset_at)

    def update_from_headers(self, headers: Dict[str, Any]) -> None:
        """Apply Meta usage headers (`X-Business-Use-Case-Usage`, `X-App-Usage`)."""
        normalized = {str(k).lower(): v for k, v in (headers or {}).items()}
        usage_pct, regain_minutes = _parse_meta_usage(
            normalized.get("x-business-use-case-usage"),
            normalized.get("x-app-usage"),
        )
        if usage_pct is None:
            return
        self.update_from_usage(usage_pct, regain_seconds=regain_minutes * 60)

    def remaining(self) -> int:
        with self._lock:
            now = self._clock()
            self._clean_old_requests(now)
            local_remaining = max(0, self.max_requests - len(self._requests))
            info = self._platform_info
            if info and info.reset_at > now:
                return min(local_remaining, max(0, info.remaining))
            return local_remaining

    def next_reset(self) -> Optional[datetime]:
        with self._lock:
            if not self._requests:
                return None
            oldest = self._requests[0]
        return datetime.fromtimestamp(oldest + self.window_seconds, tz=timezone.utc)


def _load_json(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return None


def _parse_meta_usage(business_usage: Any, app_usage: Any) -> tuple:
    """Return (highest usage percentage, minutes to regain access)."""
    percentages = []
    regain_minutes = 0.0

    business = _load_json(business_usage)
    if isinstance(business, dict):
        for entries in business.values():
            for entry in entries or []:
                percentages.extend(
                    float(entry.get(key) or 0)
                    for key in ("call_count", "total_cputime", "total_time")
                )
                regain_minutes = max(regain_minutes, float(entry.get("estimated_time_to_regain_access") or 0))

    app = _load_json(app_usage)
    if isinstance(app, dict):
        percentages.extend(
            float(app.get(key) or 0) for key in ("call_count", "total_cputime", "total_time")
        )

    if not percentages:
        return None, 0.0
    return max(percentages), regain_minutes
