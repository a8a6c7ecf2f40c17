"""Meta Ads API Client Service.

WHAT:
    Wrapper for Facebook Business SDK providing rate-limited access to the
    Meta Marketing API, plus the Graph API token endpoints (long-lived token
    exchange, debug_token, ad account listing) over httpx.

WHY:
    - Centralized Meta API interaction (single source of truth)
    - Rate limiting enforcement (200 calls/hour per access token)
    - Pagination handling (account insights are paged, 500 rows per page)
    - Retries on Meta throttling codes (4, 17, 32, 613) with exponential backoff
    - Graceful error handling (400/401/403 responses, Graph code 190)

WHERE USED:
    - adpulse/services/meta_sync_service.py (insights sync)
    - adpulse/services/token_service.py (token refresh / validation)

RATE LIMITS:
    - 200 API calls per hour per ad account
    - Usage headers (X-Business-Use-Case-Usage) tighten the local budget

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/insights
    - https://developers.facebook.com/docs/graph-api/overview/rate-limiting
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Any, Callable, Dict, List, Optional

import httpx
from facebook_business.adobjects.adaccount import AdAccount
from facebook_business.adobjects.adset import AdSet
from facebook_business.adobjects.ad import Ad
from facebook_business.adobjects.adsinsights import AdsInsights
from facebook_business.adobjects.campaign import Campaign
from facebook_business.api import FacebookAdsApi
from facebook_business.exceptions import FacebookRequestError

from adpulse.services.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.facebook.com"

# Meta's default lifetime for long-lived user tokens (~60 days)
DEFAULT_LONG_LIVED_EXPIRES_IN = 5183944

# Graph error codes
TOKEN_INVALID_CODES = {190}
PERMISSION_CODES = {10} | set(range(200, 300))
THROTTLE_CODES = {4, 17, 32, 613, 80000, 80004}

REQUIRED_PERMISSIONS = ("ads_read", "ads_management")

MAX_INSIGHTS_ATTEMPTS = 3
INSIGHTS_PAGE_SIZE = 500

INSIGHT_FIELDS = [
    AdsInsights.Field.campaign_id,
    AdsInsights.Field.campaign_name,
    AdsInsights.Field.adset_id,
    AdsInsights.Field.adset_name,
    AdsInsights.Field.ad_id,
    AdsInsights.Field.ad_name,
    AdsInsights.Field.date_start,
    AdsInsights.Field.date_stop,
    AdsInsights.Field.spend,
    AdsInsights.Field.impressions,
    AdsInsights.Field.reach,
    AdsInsights.Field.clicks,
    AdsInsights.Field.ctr,
    AdsInsights.Field.cpc,
    AdsInsights.Field.cpm,
    AdsInsights.Field.cpp,
    AdsInsights.Field.frequency,
    AdsInsights.Field.unique_clicks,
    AdsInsights.Field.inline_link_clicks,
    AdsInsights.Field.cost_per_inline_link_click,
    AdsInsights.Field.outbound_clicks,
    AdsInsights.Field.actions,
    AdsInsights.Field.action_values,
    AdsInsights.Field.account_currency,
]


class MetaAdsClientError(Exception):
    """Base exception for Meta Ads Client errors."""

    def __init__(self, message: str, code: Optional[int] = None, http_status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.http_status = http_status


class MetaAdsAuthenticationError(MetaAdsClientError):
    """Raised when authentication fails (401 / code 190)."""
    pass


class MetaAdsPermissionError(MetaAdsClientError):
    """Raised when permissions are insufficient (403)."""
    pass


class MetaAdsValidationError(MetaAdsClientError):
    """Raised when request is malformed (400)."""
    pass


class MetaAdsRateLimitError(MetaAdsClientError):
    """Raised when Meta keeps throttling after all retries."""
    pass


@dataclass
class TokenDebugInfo:
    """Parsed `debug_token` response."""

    is_valid: bool
    app_id: Optional[str] = None
    user_id: Optional[str] = None
    scopes: List[str] = field(default_factory=list)
    expires_at: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class LongLivedToken:
    access_token: str
    token_type: Optional[str]
    expires_in: int
    expires_at: datetime


def normalize_account_id(account_id: str) -> str:
    """Meta ad account ids must carry the `act_` prefix."""
    account_id = str(account_id).strip()
    return account_id if account_id.startswith("act_") else f"act_{account_id}"


def _to_plain(obj: Any) -> Dict[str, Any]:
    """SDK objects to plain JSON-safe dicts (nested actions included)."""
    export = getattr(obj, "export_all_data", None)
    return export() if callable(export) else dict(obj)


def has_required_permissions(scopes: List[str]) -> bool:
    granted = set(scopes or [])
    return all(permission in granted for permission in REQUIRED_PERMISSIONS)


def rate_limited(func):
    """Decorator: wait on the client's limiter before each API call.

    WHAT:
        Blocks until the sliding window allows a call and counts it atomically.
    WHY:
        All endpoints of one access token share the same budget.
    """

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        self.rate_limiter.acquire()
        return func(self, *args, **kwargs)

    return wrapper


def raise_for_meta_error(
    http_status: Optional[int],
    code: Optional[int],
    message: str,
    context: str,
) -> None:
    """Translate Meta error details into specific exception types.

    Raises:
        MetaAdsAuthenticationError: 401 or code 190 (expired/invalid token)
        MetaAdsPermissionError: 403 or permission codes
        MetaAdsRateLimitError: 429 or throttling codes
        MetaAdsValidationError: other 400 errors
        MetaAdsClientError: anything else (500, 503, ...)
    """
    logger.error(
        "[META_CLIENT] API error while %s: HTTP %s, Code %s, Message: %s",
        context,
        http_status,
        code,
        message,
    )

    if code in TOKEN_INVALID_CODES or http_status == 401:
        raise MetaAdsAuthenticationError(
            f"Authentication failed while {context}. Token may be expired or invalid.",
            code=code,
            http_status=http_status,
        )
    if code in THROTTLE_CODES or http_status == 429:
        raise MetaAdsRateLimitError(
            f"Rate limit exceeded while {context}: {message}",
            code=code,
            http_status=http_status,
        )
    if code in PERMISSION_CODES or http_status == 403:
        raise MetaAdsPermissionError(
            f"Permission denied while {context}. Check token permissions.",
            code=code,
            http_status=http_status,
        )
    if http_status == 400:
        raise MetaAdsValidationError(
            f"Invalid request while {context}: {message}",
            code=code,
            http_status=http_status,
        )
    raise MetaAdsClientError(
        f"API error while {context}: HTTP {http_status}, {message}",
        code=code,
        http_status=http_status,
    )


class MetaAdsClient:
    """Client for interacting with Meta Marketing API.

    Usage:
        ```python
        client = MetaAdsClient(access_token="TOKEN", rate_limiter=limiter)
        rows = client.get_account_insights("act_123", "campaign", "2024-01-01", "2024-01-07")
        ```
    """

    def __init__(
        self,
        access_token: str,
        app_id: Optional[str] = None,
        app_secret: Optional[str] = None,
        api_version: str = "v19.0",
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        http_client: Optional[httpx.Client] = None,
        sleeper: Callable[[float], None] = time.sleep,
    ):
        """Initialize Meta Ads client.

        Args:
            access_token: Meta access token (system user or OAuth)
            app_id: Meta app ID (required for token exchange / debug_token)
            app_secret: Meta app secret
            api_version: Graph API version, e.g. "v19.0"
            rate_limiter: Shared limiter for this token (default: 200 calls/hour)
            http_client: httpx client for Graph token endpoints
            sleeper: Sleep function used between retries (patched in tests)
        """
        self.access_token = access_token
        self.app_id = app_id
        self.app_secret = app_secret
        self.api_version = api_version
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(max_requests=200, window_seconds=3600)
        self._http = http_client
        self._sleep = sleeper

        self._api = FacebookAdsApi.init(
            app_id=app_id,
            app_secret=app_secret,
            access_token=access_token,
            api_version=api_version,
        )

        logger.info("[META_CLIENT] Initialized with access token (api=%s)", api_version)

    # --- Entities -----------------------------------------------------------

    @rate_limited
    def get_campaigns(self, account_id: str) -> List[Dict[str, Any]]:
        """Fetch all campaigns for an ad account (pagination handled by SDK cursor)."""
        account_id = normalize_account_id(account_id)
        try:
            logger.info("[META_CLIENT] Fetching campaigns for account: %s", account_id)
            cursor = AdAccount(account_id, api=self._api).get_campaigns(
                fields=[
                    Campaign.Field.id,
                    Campaign.Field.name,
                    Campaign.Field.status,
                    Campaign.Field.objective,
                ],
                params={"limit": 100},
            )
            result = [_to_plain(campaign) for campaign in cursor]
            logger.info("[META_CLIENT] Fetched %s campaigns", len(result))
            return result
        except FacebookRequestError as e:
            return self._handle_api_error(e, f"fetching campaigns for {account_id}")

    @rate_limited
    def get_adsets(self, account_id: str) -> List[Dict[str, Any]]:
        """Fetch all ad sets of an ad account in one paged request."""
        account_id = normalize_account_id(account_id)
        try:
            logger.info("[META_CLIENT] Fetching adsets for account: %s", account_id)
            cursor = AdAccount(account_id, api=self._api).get_ad_sets(
                fields=[AdSet.Field.id, AdSet.Field.name, AdSet.Field.status, AdSet.Field.campaign_id],
                params={"limit": 100},
            )
            result = [_to_plain(adset) for adset in cursor]
            logger.info("[META_CLIENT] Fetched %s adsets", len(result))
            return result
        except FacebookRequestError as e:
            return self._handle_api_error(e, f"fetching adsets for {account_id}")

    @rate_limited
    def get_ads(self, account_id: str) -> List[Dict[str, Any]]:
        """Fetch all ads of an ad account in one paged request."""
        account_id = normalize_account_id(account_id)
        try:
            logger.info("[META_CLIENT] Fetching ads for account: %s", account_id)
            cursor = AdAccount(account_id, api=self._api).get_ads(
                fields=[Ad.Field.id, Ad.Field.name, Ad.Field.status, Ad.Field.adset_id],
                params={"limit": 100},
            )
            result = [_to_plain(ad) for ad in cursor]
            logger.info("[META_CLIENT] Fetched %s ads", len(result))
            return result
        except FacebookRequestError as e:
            return self._handle_api_error(e, f"fetching ads for {account_id}")

    def get_entity_names(self, account_id: str, level: str) -> Dict[str, str]:
        """Map entity id -> name for one level ("campaign", "adset" or "ad")."""
        listings = {
            "campaign": self.get_campaigns,
            "adset": self.get_adsets,
            "ad": self.get_ads,
        }
        if level not in listings:
            raise ValueError(f"Unsupported level: {level}")
        return {
            str(item["id"]): item.get("name")
            for item in listings[level](account_id)
            if item.get("id") and item.get("name")
        }

    # --- Insights -----------------------------------------------------------

    def get_account_insights(
        self,
        ad_account_id: str,
        level: str,
        start_date: str,
        end_date: str,
    ) -> List[Dict[str, Any]]:
        """Fetch daily insights for ALL entities of one level in an account.

        WHAT:
            One account-level request broken down by `level`
            (campaign / adset / ad) with `time_increment=1`, following every
            page of the cursor.
        WHY:
            One call per account instead of one per entity keeps syncs inside
            the hourly budget.

        CRITICAL NOTES:
            - Throttling (codes 4/17/32/613, HTTP 429) is retried up to 3 times
              with 2**attempt seconds backoff.
            - Other errors are raised immediately.

        Args:
            ad_account_id: Meta ad account ID ("act_123" or "123")
            level: campaign, adset or ad
            start_date: YYYY-MM-DD (inclusive)
            end_date: YYYY-MM-DD (inclusive)

        Returns:
            List of raw insight dicts, one per entity per day.

        Raises:
            MetaAdsRateLimitError: Still throttled after all attempts
            MetaAdsClientError: Other API errors
        """
        account_id = normalize_account_id(ad_account_id)
        context = f"fetching {level} insights for {account_id}"

        for attempt in range(1, MAX_INSIGHTS_ATTEMPTS + 1):
            try:
                return self._fetch_account_insights(account_id, level, start_date, end_date)
            except FacebookRequestError as e:
                try:
                    self._handle_api_error(e, context)
                except MetaAdsRateLimitError:
                    if attempt == MAX_INSIGHTS_ATTEMPTS:
                        raise
                    backoff = 2 ** attempt
                    logger.warning(
                        "[META_CLIENT] Throttled (attempt %s/%s), retrying in %ss",
                        attempt,
                        MAX_INSIGHTS_ATTEMPTS,
                        backoff,
                    )
                    self._sleep(backoff)

        raise MetaAdsRateLimitError(f"Rate limit exceeded while {context}")  # pragma: no cover

    @rate_limited
    def _fetch_account_insights(
        self,
        account_id: str,
        level: str,
        start_date: str,
        end_date: str,
    ) -> List[Dict[str, Any]]:
        logger.info(
            "[META_CLIENT] Fetching ACCOUNT-LEVEL insights: %s, level=%s, %s to %s",
            account_id,
            level,
            start_date,
            end_date,
        )

        params = {
            "level": level,
            "time_increment": 1,
            "time_range": {"since": start_date, "until": end_date},
            "limit": INSIGHTS_PAGE_SIZE,
        }
        cursor = AdAccount(account_id, api=self._api).get_insights(fields=list(INSIGHT_FIELDS), params=params)

        # Iterating the cursor requests further pages transparently
        result = [_to_plain(insight) for insight in cursor]

        headers = getattr(cursor, "headers", None)
        if callable(headers):
            self.rate_limiter.update_from_headers(headers() or {})

        logger.info("[META_CLIENT] Fetched %s insights (account-level, level=%s)", len(result), level)
        return result

    # --- Graph token endpoints ------------------------------------------------

    def _graph_url(self, path: str) -> str:
        return f"{GRAPH_BASE_URL}/{self.api_version}/{path.lstrip('/')}"

    def _graph_get(self, path: str, params: Dict[str, Any], context: str) -> Dict[str, Any]:
        client = self._http or httpx.Client(timeout=30.0)
        try:
            response = client.get(self._graph_url(path), params=params)
        except httpx.HTTPError as exc:
            logger.error("[META_CLIENT] Network error while %s: %s", context, exc)
            raise MetaAdsClientError(f"Network error while {context}: {exc}") from exc
        finally:
            if self._http is None:
                client.close()

        self.rate_limiter.update_from_headers(dict(response.headers))

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code >= 400 or "error" in payload:
            error = payload.get("error") or {}
            raise_for_meta_error(
                response.status_code,
                error.get("code"),
                error.get("message") or response.text,
                context,
            )
        return payload

    @rate_limited
    def exchange_long_lived_token(self, short_lived_token: Optional[str] = None) -> LongLivedToken:
        """Exchange a token for a long-lived one (`fb_exchange_token`).

        Also used to refresh: exchanging a still-valid long-lived token
        returns a new token with a fresh ~60 day expiry.
        """
        if not self.app_id or not self.app_secret:
            raise MetaAdsValidationError("META_APP_ID and META_APP_SECRET are required for token exchange")

        payload = self._graph_get(
            "oauth/access_token",
            {
                "grant_type": "fb_exchange_token",
                "client_id": self.app_id,
                "client_secret": self.app_secret,
                "fb_exchange_token": short_lived_token or self.access_token,
            },
            "exchanging access token",
        )
        if not payload.get("access_token"):
            raise MetaAdsClientError("Token exchange response did not include an access_token")

        expires_in = int(payload.get("expires_in") or DEFAULT_LONG_LIVED_EXPIRES_IN)
        logger.info("[META_CLIENT] Long-lived token obtained (expires_in=%ss)", expires_in)
        return LongLivedToken(
            access_token=payload["access_token"],
            token_type=payload.get("token_type"),
            expires_in=expires_in,
            expires_at=datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(seconds=expires_in),
        )

    @rate_limited
    def debug_token(self, input_token: Optional[str] = None) -> TokenDebugInfo:
        """Inspect a token: validity, scopes and expiry.

        Authentication errors are reported as `is_valid=False` instead of
        raised, so callers can show a reconnect prompt.
        """
        app_token = f"{self.app_id}|{self.app_secret}" if self.app_id and self.app_secret else self.access_token
        try:
            payload = self._graph_get(
                "debug_token",
                {"input_token": input_token or self.access_token, "access_token": app_token},
                "validating access token",
            )
        except MetaAdsAuthenticationError as exc:
            return TokenDebugInfo(is_valid=False, error=str(exc))

        data = payload.get("data") or {}
        expires_raw = data.get("expires_at") or 0
        expires_at = (
            datetime.fromtimestamp(int(expires_raw), tz=timezone.utc).replace(tzinfo=None)
            if expires_raw
            else None
        )
        error = (data.get("error") or {}).get("message")
        return TokenDebugInfo(
            is_valid=bool(data.get("is_valid")),
            app_id=data.get("app_id"),
            user_id=data.get("user_id"),
            scopes=list(data.get("scopes") or []),
            expires_at=expires_at,
            error=error,
        )

    @rate_limited
    def get_ad_accounts(self) -> List[Dict[str, Any]]:
        """List ad accounts reachable with the token (`me/adaccounts`), all pages."""
        params: Dict[str, Any] = {
            "access_token": self.access_token,
            "fields": "id,account_id,name,currency,timezone_name,account_status",
            "limit": 100,
        }
        accounts: List[Dict[str, Any]] = []
        after: Optional[str] = None

        while True:
            page_params = dict(params)
            if after:
                page_params["after"] = after
            payload = self._graph_get("me/adaccounts", page_params, "listing ad accounts")
            accounts.extend(payload.get("data") or [])

            paging = payload.get("paging") or {}
            after = (paging.get("cursors") or {}).get("after")
            if not paging.get("next") or not after:
                break

        logger.info("[META_CLIENT] Found %s ad accounts", len(accounts))
        return accounts

    def _handle_api_error(self, error: FacebookRequestError, context: str) -> None:
        """Translate FacebookRequestError into specific exception types."""
        raise_for_meta_error(
            error.http_status(),
            error.api_error_code(),
            error.api_error_message(),
            context,
        )
