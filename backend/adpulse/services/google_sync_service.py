"""Google Ads synchronization service.

WHAT:
    Syncs daily metrics (GAQL) at campaign / ad group / ad level from Google
    Ads into `insights_daily`, sharing the job / state bookkeeping with Meta.

WHY:
    - Mirrors the Meta sync so both providers feed the same read APIs.
    - GAQL returns counts only; rates are derived here from those counts.

REFERENCES:
    - adpulse/services/google_ads_client.py (GAdsClient)
    - adpulse/services/sync_jobs.py (shared bookkeeping)
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from adpulse.deps import Settings
from adpulse.metrics.aggregation import derive_rates
from adpulse.metrics.extractor import ExtractedMetrics, validate_extracted_metrics
from adpulse.models import Connection, LevelEnum, ProviderEnum, SyncJob
from adpulse.schemas import DateRange, SyncRequest, SyncResponse, SyncStats
from adpulse.security import TokenCipher
from adpulse.services.cache import TTLCache
from adpulse.services.google_ads_client import GAdsClient, QuotaExhaustedError
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

GoogleClientFactory = Callable[[Connection, str], GAdsClient]

# Stored level -> GAQL level
GOOGLE_LEVELS = {
    LevelEnum.campaign: "campaign",
    LevelEnum.adset: "ad_group",
    LevelEnum.ad: "ad",
}


# --- Helpers -------------------------------------------------------------

def build_google_client_factory(settings: Settings) -> GoogleClientFactory:
    def factory(connection: Connection, refresh_token: str) -> GAdsClient:
        return GAdsClient.from_tokens(settings, refresh_token, connection.login_customer_id)

    return factory


def _get_refresh_token(connection: Connection, cipher: TokenCipher) -> str:
    if not connection.token or not connection.token.refresh_token_enc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Connection has no stored Google refresh token. Reconnect the account.",
        )
    try:
        return cipher.decrypt_secret(
            connection.token.refresh_token_enc,
            context=f"google-connection:{connection.id}",
        )
    except ValueError as exc:
        logger.exception("[GOOGLE_SYNC] Stored token for connection %s could not be decrypted", connection.id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stored Google Ads token is invalid or corrupted.",
        ) from exc


def _update_connection_metadata(db: Session, connection: Connection, meta: Dict[str, Optional[str]]) -> None:
    """Persist timezone/currency on Connection if available."""
    tz = meta.get("time_zone")
    cur = meta.get("currency_code")
    changed = False
    if tz and tz != connection.timezone:
        connection.timezone = tz
        changed = True
    if cur and cur != connection.currency_code:
        connection.currency_code = cur
        changed = True
    if changed:
        db.flush()


def metrics_from_google_row(row: Dict[str, Any]) -> ExtractedMetrics:
    """Normalize a GAQL metrics row (spend already in currency units)."""
    totals = derive_rates({
        "impressions": float(row.get("impressions") or 0),
        "clicks": float(row.get("clicks") or 0),
        "spend": float(row.get("spend") or 0),
        "reach": 0.0,
        "conversions": float(row.get("conversions") or 0),
        "conversion_value": float(row.get("conversion_value") or 0),
    })
    return ExtractedMetrics(
        impressions=int(totals["impressions"]),
        clicks=int(totals["clicks"]),
        spend=totals["spend"],
        ctr=totals["ctr"],
        cpc=totals["cpc"],
        cpm=totals["cpm"],
        conversions=totals["conversions"],
        conversion_value=totals["conversion_value"],
        roas=totals["roas"],
        cost_per_result=totals["cost_per_result"],
    )


def _entity_ref(level: LevelEnum, row: Dict[str, Any]) -> Optional[EntityRef]:
    if not row.get("entity_id"):
        return None
    return EntityRef(
        level=level,
        entity_id=str(row["entity_id"]),
        entity_name=row.get("entity_name"),
        campaign_id=row.get("campaign_id"),
        campaign_name=row.get("campaign_name"),
        adset_id=row.get("ad_group_id"),
        adset_name=row.get("ad_group_name"),
    )


def _ingest_row(
    db: Session,
    job: SyncJob,
    connection: Connection,
    level: LevelEnum,
    row: Dict[str, Any],
    counters: SyncCounters,
) -> None:
    entity = _entity_ref(level, row)
    record_raw_insight(db, job, connection, level, entity.entity_id if entity else None, row)

    metrics_date = parse_date(row.get("date"))
    if entity is None or metrics_date is None:
        counters.warnings_count += 1
        logger.warning("[GOOGLE_SYNC] Skipping %s row without entity id or date", level.value)
        return

    metrics = metrics_from_google_row(row)
    warnings = validate_extracted_metrics(metrics)
    # Google rows carry no actions list; that warning does not apply
    warnings = [w for w in warnings if "actions_raw" not in w]
    if warnings:
        counters.warnings_count += len(warnings)
        logger.warning("[GOOGLE_SYNC] %s %s on %s: %s", level.value, entity.entity_id, metrics_date, "; ".join(warnings))

    outcome = upsert_insight_daily(db, connection, entity, metrics_date, metrics)
    count_upsert(counters, outcome)


# --- Service Functions ----------------------------------------------------

def run_google_sync(
    db: Session,
    workspace_id: UUID,
    connection_id: UUID,
    request: SyncRequest,
    *,
    settings: Settings,
    cipher: TokenCipher,
    client_factory: Optional[GoogleClientFactory] = None,
    cache: Optional[TTLCache] = None,
    today: Optional[date] = None,
) -> SyncResponse:
    """Sync Google Ads daily metrics for one connection.

    Raises:
        HTTPException: 404/400 for connection problems, 429 on exhausted
        quota, 500 for configuration or unexpected errors.
    """
    connection = get_connection_or_404(db, workspace_id, connection_id, ProviderEnum.google)
    refresh_token = _get_refresh_token(connection, cipher)

    try:
        client = (client_factory or build_google_client_factory(settings))(connection, refresh_token)
    except ValueError as e:
        logger.error("[GOOGLE_SYNC] Client configuration error: %s", e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e),
        ) from e

    levels: List[str] = [level.value for level in request.levels] if request.levels else settings.sync_levels
    customer_id = connection.external_account_id

    if not connection.timezone:
        try:
            _update_connection_metadata(db, connection, client.get_customer_metadata(customer_id))
        except QuotaExhaustedError as e:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=f"Google Ads quota exhausted. Retry in {e.retry_seconds} seconds.",
            ) from e

    date_from, date_to = resolve_sync_window(
        request.mode,
        tz=connection.timezone,
        today=today,
        days_back=request.days_back,
        default_days_back=settings.SYNC_DEFAULT_DAYS_BACK,
    )

    logger.info(
        "[GOOGLE_SYNC] Starting %s sync: workspace=%s, connection=%s, %s to %s",
        request.mode.value,
        workspace_id,
        connection_id,
        date_from,
        date_to,
    )

    job = start_sync_job(db, connection, request.mode, date_from, date_to, levels)
    counters = SyncCounters()
    committed = SyncCounters()

    try:
        for level_name in levels:
            level = LevelEnum(level_name)
            rows = client.fetch_daily_metrics(customer_id, date_from, date_to, level=GOOGLE_LEVELS[level])
            counters.rows_by_level[level.value] = len(rows)
            counters.fetched_rows += len(rows)

            for row in rows:
                _ingest_row(db, job, connection, level, row, counters)
            db.commit()
            committed = counters.snapshot()

    except QuotaExhaustedError as e:
        fail_sync_job(db, job, connection, str(e), committed)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Google Ads quota exhausted. Retry in {e.retry_seconds} seconds.",
        ) from e
    except Exception as e:
        logger.exception("[GOOGLE_SYNC] Metrics sync failed for %s to %s: %s", date_from, date_to, e)
        capture_exception(e, extra={"connection_id": str(connection_id), "job_id": str(job.id)})
        fail_sync_job(db, job, connection, f"Google Ads sync failed: {e}", committed)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Google Ads sync failed: {e}",
        ) from e

    complete_sync_job(db, job, connection, counters)
    if cache is not None:
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
