"""Google Ads client service abstraction.

WHAT:
    Encapsulates Google Ads API usage behind a small, testable service layer.
    Provides GAQL search, daily metrics at campaign / ad group / ad level,
    account metadata, retries and rate limiting. Mirrors the Meta client's
    structure while honoring Google Ads specifics (GAQL, cost in micros).

WHY:
    - Separation of concerns: keep provider SDK logic out of services.
    - Testability: the SDK client is injected; tests pass a fake.

REFERENCES:
    adpulse/services/google_sync_service.py (consumer)
    https://developers.google.com/google-ads/api/docs/query/overview
"""

from __future__ import annotations

import logging
import random
import re
import time
from datetime import date
from functools import wraps
from typing import Any, Callable, Dict, List, Optional

from google.ads.googleads.client import GoogleAdsClient as _SdkClient
from google.ads.googleads.errors import GoogleAdsException

logger = logging.getLogger(__name__)

# GAQL resource and selected identity columns per level
LEVEL_RESOURCES = {
    "campaign": "campaign",
    "ad_group": "ad_group",
    "ad": "ad_group_ad",
}
LEVEL_SELECT = {
    "campaign": "campaign.id, campaign.name",
    "ad_group": "ad_group.id, ad_group.name, campaign.id, campaign.name",
    "ad": "ad_group_ad.ad.id, ad_group_ad.ad.name, ad_group.id, ad_group.name, campaign.id, campaign.name",
}

# Quota hints above this many seconds are surfaced instead of slept through
MAX_INLINE_QUOTA_WAIT = 120


class QuotaExhaustedError(Exception):
    """Raised when Google Ads API quota is exhausted.

    WHAT:
        Custom exception for quota exhaustion (429 errors) that includes
        the retry delay hint from Google.

    WHY:
        Callers mark the connection as rate-limited and skip it until the
        cooldown expires instead of retrying in a loop.
    """

    def __init__(self, message: str, retry_seconds: int = 600):
        super().__init__(message)
        self.retry_seconds = retry_seconds


def _extract_retry_seconds(error_str: str) -> Optional[int]:
    """Extract retry delay from Google Ads API error message.

    Parses error messages like "Retry in 723 seconds".

    Returns:
        Number of seconds to wait, or None if not found.
    """
    match = re.search(r'[Rr]etry in (\d+) seconds', error_str)
    if match:
        return int(match.group(1))
    return None


def normalize_customer_id(customer_id: Optional[str]) -> Optional[str]:
    """Digits only ("123-456-7890" -> "1234567890"); None if not 10 digits."""
    if not customer_id:
        return None
    digits = "".join(ch for ch in str(customer_id) if ch.isdigit())
    return digits if len(digits) == 10 else None


class GoogleAdsRateLimiter:
    """Simple token bucket rate limiter.

    WHAT:
        Guard outgoing requests to honor QPS/quota. Defaults are conservative.
    WHY:
        Avoid RESOURCE_EXHAUSTED errors and smooth out bursts.
    """

    def __init__(
        self,
        capacity: int = 15,
        refill_per_sec: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        self.capacity = capacity
        self.tokens = float(capacity)
        self.refill_per_sec = refill_per_sec
        self._clock = clock
        self._sleep = sleeper
        self.last = clock()

    def acquire(self) -> None:
        now = self._clock()
        elapsed = now - self.last
        self.last = now
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_per_sec)
        if self.tokens < 1:
            # Sleep until we have at least 1 token
            missing = 1 - self.tokens
            self._sleep(max(0.0, missing / self.refill_per_sec))
            self.tokens = 0
        self.tokens = max(0.0, self.tokens - 1)


def _is_quota_error(error_str: str) -> bool:
    return (
        'RESOURCE_EXHAUSTED' in error_str
        or '429' in error_str
        or 'Too many requests' in error_str
        or 'quota' in error_str.lower()
    )


def _is_transient(error: Exception) -> bool:
    if isinstance(error, GoogleAdsException):
        code = error.error.code() if error.error is not None else None
        name = getattr(code, "name", str(code))
        return name in ("UNAVAILABLE", "INTERNAL")
    error_str = str(error)
    return any(k in error_str for k in ('UNAVAILABLE', 'RST_STREAM', 'deadline exceeded'))


def _with_retries(func):
    """Retry decorator with exponential backoff and jitter.

    WHAT:
        Retries on transient errors (UNAVAILABLE, INTERNAL, RST_STREAM).
        Quota exhaustion with a short hint (<= 2 min) is waited out once per
        attempt; longer hints raise QuotaExhaustedError immediately.
    """

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        max_attempts = 3
        base = 1.0
        for attempt in range(1, max_attempts + 1):
            try:
                return func(self, *args, **kwargs)
            except Exception as e:  # noqa: BLE001
                error_str = str(e)

                if _is_quota_error(error_str):
                    retry_seconds = _extract_retry_seconds(error_str)
                    if retry_seconds and retry_seconds > MAX_INLINE_QUOTA_WAIT:
                        logger.warning(
                            "[GOOGLE_ADS] Quota exhausted, Google suggests retry in %ds",
                            retry_seconds,
                        )
                        raise QuotaExhaustedError(
                            f"Google Ads quota exhausted. Retry in {retry_seconds} seconds.",
                            retry_seconds=retry_seconds,
                        ) from e
                    if retry_seconds and attempt < max_attempts:
                        logger.info(
                            "[GOOGLE_ADS] Quota warning (attempt %d/%d), waiting %ds",
                            attempt, max_attempts, retry_seconds,
                        )
                        self._sleep(retry_seconds)
                        continue
                    raise QuotaExhaustedError(
                        f"Google Ads quota exhausted: {error_str[:200]}",
                        retry_seconds=600,
                    ) from e

                if not _is_transient(e) or attempt == max_attempts:
                    raise

                sleep_s = min(base * (2 ** (attempt - 1)) * (1 + random.random()), 30.0)
                logger.info(
                    "[GOOGLE_ADS] Transient error (attempt %d/%d), retrying in %.1fs: %s",
                    attempt, max_attempts, sleep_s, error_str[:100],
                )
                self._sleep(sleep_s)
        raise RuntimeError("unreachable")  # pragma: no cover

    return wrapper


class GAdsClient:
    """Testable wrapper around Google Ads Python SDK.

    Usage:
        client = GAdsClient.from_tokens(settings, refresh_token, login_customer_id)
        rows = client.fetch_daily_metrics("1234567890", start, end, level="campaign")
    """

    def __init__(
        self,
        client: Any,
        rate_limiter: Optional[GoogleAdsRateLimiter] = None,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._ga_service = None
        self._rate = rate_limiter or GoogleAdsRateLimiter()
        self._sleep = sleeper

    @classmethod
    def from_tokens(
        cls,
        settings: Any,
        refresh_token: str,
        login_customer_id: Optional[str] = None,
    ) -> "GAdsClient":
        """Build the SDK client from app settings plus a connection's refresh token.

        Raises:
            ValueError: Google Ads credentials are not configured
        """
        missing = [
            name
            for name in ("GOOGLE_DEVELOPER_TOKEN", "GOOGLE_CLIENT_ID", "GOOGLE_CLIENT_SECRET")
            if not getattr(settings, name, None)
        ]
        if missing:
            raise ValueError(f"Missing required Google Ads settings: {', '.join(missing)}")
        if not refresh_token:
            raise ValueError("Google Ads refresh token is required")

        config = {
            "developer_token": settings.GOOGLE_DEVELOPER_TOKEN,
            "client_id": settings.GOOGLE_CLIENT_ID,
            "client_secret": settings.GOOGLE_CLIENT_SECRET,
            "refresh_token": refresh_token,
            # google-ads >= 21 requires explicit use_proto_plus
            "use_proto_plus": True,
        }
        login_cid = normalize_customer_id(login_customer_id or settings.GOOGLE_LOGIN_CUSTOMER_ID)
        if login_cid:
            config["login_customer_id"] = login_cid

        return cls(client=_SdkClient.load_from_dict(config))

    # --- Low-level GAQL -------------------------------------------------
    def _service(self):
        if self._ga_service is None:
            self._ga_service = self._client.get_service("GoogleAdsService")
        return self._ga_service

    @_with_retries
    def search(self, customer_id: str, query: str) -> List[Any]:
        """GAQL search with rate limit + retries (pages are consumed here)."""
        self._rate.acquire()
        return list(self._service().search(customer_id=customer_id, query=query))

    # --- Account metadata ----------------------------------------------
    def get_customer_metadata(self, customer_id: str) -> Dict[str, Optional[str]]:
        """Fetch customer timezone and currency code."""
        q = "SELECT customer.time_zone, customer.currency_code FROM customer LIMIT 1"
        rows = self.search(customer_id, q)
        if not rows:
            return {"time_zone": None, "currency_code": None}
        cust = rows[0].customer
        return {
            "time_zone": getattr(cust, "time_zone", None),
            "currency_code": getattr(cust, "currency_code", None),
        }

    # --- Metrics ---------------------------------------------------------
    def fetch_daily_metrics(
        self,
        customer_id: str,
        start: date,
        end: date,
        level: str = "campaign",
    ) -> List[Dict[str, Any]]:
        """Fetch daily metrics for a given level (campaign/ad_group/ad).

        Args:
            customer_id: Google Ads customer ID (10 digits, dashes allowed)
            start: Start date (inclusive)
            end: End date (inclusive)
            level: campaign, ad_group or ad

        Returns:
            One plain dict per entity per day with spend in account currency
            units (cost_micros / 1e6) and the entity's parent ids / names.
        """
        if level not in LEVEL_RESOURCES:
            raise ValueError(f"Unsupported Google Ads level: {level}")

        customer = normalize_customer_id(customer_id) or str(customer_id)
        q = (
            f"SELECT {LEVEL_SELECT[level]}, "
            "metrics.impressions, metrics.clicks, metrics.cost_micros, "
            "metrics.conversions_by_conversion_date, metrics.conversions_value_by_conversion_date, segments.date "
            f"FROM {LEVEL_RESOURCES[level]} "
            f"WHERE segments.date BETWEEN '{start.isoformat()}' AND '{end.isoformat()}'"
        )
        rows = self.search(customer, q)

        out: List[Dict[str, Any]] = []
        for r in rows:
            m = r.metrics
            campaign = getattr(r, "campaign", None)
            ad_group = getattr(r, "ad_group", None)
            row: Dict[str, Any] = {
                "date": str(r.segments.date),
                "impressions": int(m.impressions or 0),
                "clicks": int(m.clicks or 0),
                "spend": (m.cost_micros or 0) / 1_000_000.0,
                "conversions": float(getattr(m, "conversions_by_conversion_date", 0.0) or 0.0),
                "conversion_value": float(getattr(m, "conversions_value_by_conversion_date", 0.0) or 0.0),
                "campaign_id": _str_or_none(getattr(campaign, "id", None)),
                "campaign_name": getattr(campaign, "name", None),
            }
            if level == "campaign":
                row["entity_id"] = row["campaign_id"]
                row["entity_name"] = row["campaign_name"]
            elif level == "ad_group":
                row["entity_id"] = _str_or_none(getattr(ad_group, "id", None))
                row["entity_name"] = getattr(ad_group, "name", None)
            else:
                ad = getattr(r.ad_group_ad, "ad", None)
                row["entity_id"] = _str_or_none(getattr(ad, "id", None))
                row["entity_name"] = getattr(ad, "name", None)
            if level != "campaign":
                row["ad_group_id"] = _str_or_none(getattr(ad_group, "id", None))
                row["ad_group_name"] = getattr(ad_group, "name", None)
            out.append(row)

        logger.info("[GOOGLE_ADS] Fetched %s %s rows for %s", len(out), level, customer)
        return out


def _str_or_none(value: Optional[object]) -> Optional[str]:
    return str(value) if value not in (None, "", 0) else None

