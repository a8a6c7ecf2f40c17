"""Meta sync service functions.

WHAT:
    Runs one Meta metrics sync for a connection: resolve the window for the
    requested mode, fetch account-level insights per level, store raw audit
    rows, extract normalized metrics, upsert `insights_daily`, and keep
    `sync_jobs` / `sync_states` up to date.

WHY:
    - Enables both HTTP endpoints and the scheduler to share the same logic.
    - Keeps routers thin (request parsing) while services handle business logic.

REFERENCES:
    - adpulse/routers/meta_sync.py (HTTP trigger)
    - adpulse/services/sync_scheduler.py (scheduled runs)
    - adpulse/services/sync_jobs.py (shared bookkeeping)
"""

from __future__ import annotations

import hashlib
import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from adpulse.deps import Settings
from adpulse.metrics.extractor import (
    LEAD_ACTION_TYPES,
    extract_action_value,
    extract_metrics_from_insight,
    validate_extracted_metrics,
)
from adpulse.models import Connection, ConnectionStatus, LevelEnum, ProviderEnum, SyncJob
from adpulse.schemas import DateRange, SyncRequest, SyncResponse, SyncStats
from adpulse.security import TokenCipher
from adpulse.services.cache import TTLCache
from adpulse.services.meta_ads_client import (
    MetaAdsAuthenticationError,
    MetaAdsClient,
    MetaAdsClientError,
    MetaAdsPermissionError,
    MetaAdsRateLimitError,
    MetaAdsValidationError,
)
from adpulse.services.rate_limiter import SlidingWindowRateLimiter
from adpulse.services.sync_jobs import (
    EntityRef,
    SyncCounters,
    complete_sync_job,
    count_upsert,
    fail_sync_job,
    get_connection_or_404,
    parse_date,
    record_raw_insight,
    resolve_sync_window,
    start_sync_job,
    upsert_insight_daily,
)
from adpulse.telemetry import capture_exception

logger = logging.getLogger(__name__)

MetaClientFactory = Callable[[str], MetaAdsClient]

# Insight columns holding the id / name of the row's entity per level
ENTITY_ID_FIELDS = {
    LevelEnum.campaign: ("campaign_id", "campaign_name"),
    LevelEnum.adset: ("adset_id", "adset_name"),
    LevelEnum.ad: ("ad_id", "ad_name"),
}


def build_meta_client_factory(settings: Settings) -> MetaClientFactory:
    """Return a factory creating Meta clients that share one limiter per token.

    WHAT:
        Meta's hourly budget is per access token, so every client built for
        the same token reuses the same SlidingWindowRateLimiter.
    """
    limiters: Dict[str, SlidingWindowRateLimiter] = {}

    def factory(access_token: str) -> MetaAdsClient:
        key = hashlib.sha256(access_token.encode("utf-8")).hexdigest()
        limiter = limiters.get(key)
        if limiter is None:
            limiter = SlidingWindowRateLimiter(
                max_requests=settings.META_CALLS_PER_HOUR,
                window_seconds=3600,
                platform="meta",
            )
            limiters[key] = limiter
        return MetaAdsClient(
            access_token=access_token,
            app_id=settings.META_APP_ID,
            app_secret=settings.META_APP_SECRET,
            api_version=settings.META_API_VERSION,
            rate_limiter=limiter,
        )

    return factory


def get_access_token(connection: Connection, cipher: TokenCipher) -> str:
    """Retrieve the decrypted Meta access token stored for a connection."""
    if not connection.token or not connection.token.access_token_enc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Connection has no stored Meta token. Reconnect the account.",
        )

    try:
        return cipher.decrypt_secret(
            connection.token.access_token_enc,
            context=f"meta-connection:{connection.id}",
        )
    except ValueError as exc:
        logger.exception(
            "[META_SYNC] Stored token for connection %s could not be decrypted",
            connection.id,
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stored Meta token is invalid or corrupted.",
        ) from exc


def _lookup_missing_names(
    client: MetaAdsClient,
    account_id: str,
    level: LevelEnum,
    rows: List[Dict[str, Any]],
) -> Dict[str, str]:
    """Entity names for rows that came back with an id but no name.

    Returns an empty map when every row is named or Meta refuses the listing.
    """
    id_field, name_field = ENTITY_ID_FIELDS[level]
    if not any(row.get(id_field) and not row.get(name_field) for row in rows):
        return {}

    try:
        names = client.get_entity_names(account_id, level.value)
    except (MetaAdsPermissionError, MetaAdsValidationError) as e:
        logger.warning("[META_SYNC] Could not list %s names for %s: %s", level.value, account_id, e)
        return {}

    logger.info("[META_SYNC] Resolved %s %s names from entity listing", len(names), level.value)
    return names


def _entity_ref(
    level: LevelEnum,
    row: Dict[str, Any],
    names: Optional[Dict[str, str]] = None,
) -> Optional[EntityRef]:
    id_field, name_field = ENTITY_ID_FIELDS[level]
    entity_id = row.get(id_field)
    if not entity_id:
        return None
    entity_id = str(entity_id)
    return EntityRef(
        level=level,
        entity_id=entity_id,
        entity_name=row.get(name_field) or (names or {}).get(entity_id),
        campaign_id=row.get("campaign_id"),
        campaign_name=row.get("campaign_name"),
        adset_id=row.get("adset_id") if level != LevelEnum.campaign else None,
        adset_name=row.get("adset_name") if level != LevelEnum.campaign else None,
    )


def _ingest_insight(
    db: Session,
    job: SyncJob,
    connection: Connection,
    level: LevelEnum,
    row: Dict[str, Any],
    counters: SyncCounters,
    names: Optional[Dict[str, str]] = None,
) -> None:
    """Audit, extract, validate and upsert one insight row."""
    entity = _entity_ref(level, row, names)
    record_raw_insight(db, job, connection, level, entity.entity_id if entity else None, row)

    metrics_date = parse_date(row.get("date_start") or row.get("date"))
    if entity is None or metrics_date is None:
        counters.warnings_count += 1
        logger.warning(
            "[META_SYNC] Skipping %s row without entity id or date: %s",
            level.value,
            {k: row.get(k) for k in ("campaign_id", "adset_id", "ad_id", "date_start")},
        )
        return

    metrics = extract_metrics_from_insight(row)
    warnings = validate_extracted_metrics(metrics)
    if warnings:
        counters.warnings_count += len(warnings)
        logger.warning(
            "[META_SYNC] %s %s on %s: %s",
            level.value,
            entity.entity_id,
            metrics_date,
            "; ".join(warnings),
        )

    leads = extract_action_value(metrics.actions_raw, LEAD_ACTION_TYPES)
    outcome = upsert_insight_daily(
        db,
        connection,
        entity,
        metrics_date,
        metrics,
        leads=leads,
        currency=row.get("account_currency"),
    )
    count_upsert(counters, outcome)


def run_meta_sync(
    db: Session,
    workspace_id: UUID,
    connection_id: UUID,
    request: SyncRequest,
    *,
    settings: Settings,
    cipher: TokenCipher,
    client_factory: Optional[MetaClientFactory] = None,
    cache: Optional[TTLCache] = None,
    today: Optional[date] = None,
) -> SyncResponse:
    """Sync Meta insights for one connection (shared service function).

    WHAT:
        daily = yesterday, intraday = today, backfill = today - days_back .. today
        (dates in the account timezone). Each requested level is fetched with
        one account-level insights request.

    Raises:
        HTTPException: 404/400 for connection problems, 401 when the token is
        rejected (connection marked token_expired), 403 on missing
        permissions, 429 when Meta keeps throttling, 502 for other Meta API
        errors, 500 for anything unexpected.
    """
    connection = get_connection_or_404(db, workspace_id, connection_id, ProviderEnum.meta)

    if connection.requires_reconnect:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Meta token expired. Reconnect the account.",
        )

    access_token = get_access_token(connection, cipher)
    levels: List[str] = [level.value for level in request.levels] if request.levels else settings.sync_levels
    date_from, date_to = resolve_sync_window(
        request.mode,
        tz=connection.timezone,
        today=today,
        days_back=request.days_back,
        default_days_back=settings.SYNC_DEFAULT_DAYS_BACK,
    )

    logger.info(
        "[META_SYNC] Starting %s sync: workspace=%s, connection=%s, %s to %s",
        request.mode.value,
        workspace_id,
        connection_id,
        date_from,
        date_to,
    )

    client = (client_factory or build_meta_client_factory(settings))(access_token)
    job = start_sync_job(db, connection, request.mode, date_from, date_to, levels)
    counters = SyncCounters()
    committed = SyncCounters()

    try:
        for level_name in levels:
            level = LevelEnum(level_name)
            rows = client.get_account_insights(
                connection.external_account_id,
                level.value,
                date_from.isoformat(),
                date_to.isoformat(),
            )
            counters.rows_by_level[level.value] = len(rows)
            counters.fetched_rows += len(rows)

            names = _lookup_missing_names(client, connection.external_account_id, level, rows)
            for row in rows:
                _ingest_insight(db, job, connection, level, row, counters, names)
            db.commit()
            committed = counters.snapshot()

            logger.info("[META_SYNC] Level %s: %s rows processed", level.value, len(rows))

    except MetaAdsAuthenticationError as e:
        fail_sync_job(
            db, job, connection, str(e), committed,
            connection_status=ConnectionStatus.token_expired,
            requires_reconnect=True,
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Meta authentication failed. Reconnect the account.",
        ) from e
    except MetaAdsPermissionError as e:
        fail_sync_job(db, job, connection, str(e), committed)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Meta permission denied. Token needs ads_read and ads_management.",
        ) from e
    except MetaAdsRateLimitError as e:
        fail_sync_job(db, job, connection, str(e), committed)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Meta API rate limit reached. Try again later.",
        ) from e
    except MetaAdsClientError as e:
        fail_sync_job(db, job, connection, str(e), committed)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Meta API error: {e}",
        ) from e
    except Exception as e:
        logger.exception("[META_SYNC] Unexpected error during sync: %s", e)
        capture_exception(e, extra={"connection_id": str(connection_id), "job_id": str(job.id)})
        fail_sync_job(db, job, connection, f"Unexpected error: {e}", committed)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Unexpected error: {e}",
        ) from e

    complete_sync_job(db, job, connection, counters)
    if cache is not None:
        # Coverage changed; drop memoized gap reports
        cache.clear()

    return SyncResponse(
        success=True,
        job_id=job.id,
        job_type=request.mode,
        synced=SyncStats(
            fetched_rows=counters.fetched_rows,
            upserted_rows=counters.upserted_rows,
            unchanged_rows=counters.unchanged_rows,
            warnings_count=counters.warnings_count,
            rows_by_level=counters.rows_by_level,
            date_range=DateRange(start=date_from, end=date_to),
            duration_seconds=job.duration_seconds or 0.0,
        ),
        errors=[],
    )


def list_ad_accounts(
    db: Session,
    workspace_id: UUID,
    connection_id: UUID,
    *,
    settings: Settings,
    cipher: TokenCipher,
    client_factory: Optional[MetaClientFactory] = None,
) -> List[Dict[str, Any]]:
    """Ad accounts the connection's stored token can read.

    Raises:
        HTTPException: 401 when Meta rejects the token, 502 for other Meta errors.
    """
    connection = get_connection_or_404(db, workspace_id, connection_id, ProviderEnum.meta)
    client = (client_factory or build_meta_client_factory(settings))(get_access_token(connection, cipher))

    try:
        return client.get_ad_accounts()
    except MetaAdsAuthenticationError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Meta authentication failed. Reconnect the account.",
        ) from e
    except MetaAdsClientError as e:
        logger.error("[META_SYNC] Listing ad accounts failed for %s: %s", connection_id, e)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Meta API error: {e}",
        ) from e
