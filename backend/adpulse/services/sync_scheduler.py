"""Sync scheduler service.

WHAT:
    Job functions that run syncs for every eligible connection:
    - daily: yesterday's data (run once a day, e.g. 03:00 UTC)
    - intraday: today's data (run every 15 minutes)
    - backfill: the configured number of days back
    - gaps: detect missing days and backfill just far enough to cover them

WHY:
    - One failing connection never aborts the batch; failures are logged and
      sent to Sentry.
    - Meta tokens close to expiry are refreshed before syncing.

USAGE (cron):
    */15 * * * *  python -m adpulse.services.sync_scheduler --mode intraday
    0 3 * * *     python -m adpulse.services.sync_scheduler --mode daily
    0 4 * * *     python -m adpulse.services.sync_scheduler --mode gaps

REFERENCES:
    - adpulse/services/meta_sync_service.py
    - adpulse/services/google_sync_service.py
    - adpulse/services/gap_detector.py
"""

from __future__ import annotations

import argparse
import logging
from datetime import date, timedelta
from typing import Dict, List, Optional, Tuple
from uuid import UUID

from fastapi import HTTPException
from sqlalchemy.orm import Session, sessionmaker

from adpulse.deps import Settings
from adpulse.models import Connection, ConnectionStatus, ProviderEnum, SyncJobTypeEnum
from adpulse.schemas import SyncRequest
from adpulse.security import TokenCipher
from adpulse.services.cache import TTLCache
from adpulse.services.gap_detector import calculate_backfill_days, detect_gaps
from adpulse.services.google_sync_service import (
    GoogleClientFactory,
    build_google_client_factory,
    run_google_sync,
)
from adpulse.services.meta_sync_service import (
    MetaClientFactory,
    build_meta_client_factory,
    get_access_token,
    run_meta_sync,
)
from adpulse.services.sync_jobs import account_today
from adpulse.services.sync_status_service import get_dates_with_data
from adpulse.services.token_service import TokenRefreshError, check_and_auto_refresh
from adpulse.telemetry import capture_exception, capture_message

logger = logging.getLogger(__name__)

RESULT_COMPLETED = "completed"
RESULT_SKIPPED = "skipped"

# Connections in these states are left alone until the user reconnects
SKIPPED_STATUSES = (ConnectionStatus.disconnected, ConnectionStatus.token_expired)

GAP_WINDOW_DAYS = 30
MAX_BACKFILL_DAYS = 365


class _Runner:
    """Shared collaborators for one scheduler invocation."""

    def __init__(
        self,
        settings: Settings,
        cipher: Optional[TokenCipher] = None,
        meta_client_factory: Optional[MetaClientFactory] = None,
        google_client_factory: Optional[GoogleClientFactory] = None,
        cache: Optional[TTLCache] = None,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.cipher = cipher or TokenCipher(settings.TOKEN_ENCRYPTION_KEY)
        self.meta_client_factory = meta_client_factory or build_meta_client_factory(settings)
        self.google_client_factory = google_client_factory or build_google_client_factory(settings)

    def refresh_meta_token(self, db: Session, connection: Connection) -> None:
        if not self.settings.META_APP_ID or not self.settings.META_APP_SECRET:
            return
        client = self.meta_client_factory(get_access_token(connection, self.cipher))
        try:
            check_and_auto_refresh(
                db,
                connection,
                self.cipher,
                client.exchange_long_lived_token,
                warning_days=self.settings.TOKEN_EXPIRY_WARNING_DAYS,
            )
        except TokenRefreshError as e:
            if e.permanent:
                capture_message(
                    "Meta connection requires reconnect",
                    level="warning",
                    extra={"connection_id": str(connection.id)},
                )
            logger.warning("[SCHEDULER] Token refresh failed for %s: %s", connection.id, e)

    def sync(self, db: Session, connection: Connection, request: SyncRequest, today: Optional[date]):
        if connection.provider == ProviderEnum.meta:
            self.refresh_meta_token(db, connection)
            if connection.requires_reconnect:
                return None
            return run_meta_sync(
                db,
                connection.workspace_id,
                connection.id,
                request,
                settings=self.settings,
                cipher=self.cipher,
                client_factory=self.meta_client_factory,
                cache=self.cache,
                today=today,
            )
        return run_google_sync(
            db,
            connection.workspace_id,
            connection.id,
            request,
            settings=self.settings,
            cipher=self.cipher,
            client_factory=self.google_client_factory,
            cache=self.cache,
            today=today,
        )


def _eligible_connection_ids(session_factory: sessionmaker) -> List[Tuple[UUID, str]]:
    db = session_factory()
    try:
        rows = (
            db.query(Connection.id, Connection.external_account_id)
            .filter(
                Connection.status.notin_(SKIPPED_STATUSES),
                Connection.requires_reconnect.is_(False),
            )
            .all()
        )
        return [(row[0], row[1]) for row in rows]
    finally:
        db.close()


def _run_one(
    runner: _Runner,
    db: Session,
    connection_id: UUID,
    request: SyncRequest,
    today: Optional[date],
    job: str,
) -> str:
    connection = db.query(Connection).filter(Connection.id == connection_id).first()
    if connection is None:
        return RESULT_SKIPPED
    try:
        response = runner.sync(db, connection, request, today)
    except HTTPException as e:
        logger.error("[SCHEDULER] %s sync failed for %s: %s", job, connection_id, e.detail)
        capture_exception(e, extra={"operation": job, "connection_id": str(connection_id)})
        return f"failed: {e.detail}"
    except Exception as e:
        logger.exception("[SCHEDULER] %s sync crashed for %s", job, connection_id)
        capture_exception(e, extra={"operation": job, "connection_id": str(connection_id)})
        return f"failed: {e}"

    if response is None:
        return RESULT_SKIPPED
    return RESULT_COMPLETED


# =============================================================================
# JOB FUNCTIONS
# =============================================================================

def run_scheduled_sync(
    session_factory: sessionmaker,
    settings: Settings,
    mode: SyncJobTypeEnum = SyncJobTypeEnum.daily,
    *,
    cipher: Optional[TokenCipher] = None,
    meta_client_factory: Optional[MetaClientFactory] = None,
    google_client_factory: Optional[GoogleClientFactory] = None,
    cache: Optional[TTLCache] = None,
    today: Optional[date] = None,
) -> Dict[str, str]:
    """Run one sync mode for all eligible connections.

    Returns:
        Mapping of connection id to "completed", "skipped" or "failed: <reason>".
    """
    mode = SyncJobTypeEnum(mode)
    runner = _Runner(settings, cipher, meta_client_factory, google_client_factory, cache)
    results: Dict[str, str] = {}

    connection_ids = _eligible_connection_ids(session_factory)
    logger.info("[SCHEDULER] Starting %s sync for %d connections", mode.value, len(connection_ids))

    for connection_id, _ in connection_ids:
        db = session_factory()
        try:
            results[str(connection_id)] = _run_one(
                runner, db, connection_id, SyncRequest(mode=mode), today, f"{mode.value}_sync"
            )
        finally:
            db.close()

    failed = sum(1 for value in results.values() if value.startswith("failed"))
    logger.info(
        "[SCHEDULER] %s sync complete: %d connections, %d failed",
        mode.value, len(results), failed,
    )
    return results


def run_gap_backfill(
    session_factory: sessionmaker,
    settings: Settings,
    *,
    window_days: int = GAP_WINDOW_DAYS,
    cipher: Optional[TokenCipher] = None,
    meta_client_factory: Optional[MetaClientFactory] = None,
    google_client_factory: Optional[GoogleClientFactory] = None,
    cache: Optional[TTLCache] = None,
    today: Optional[date] = None,
) -> Dict[str, str]:
    """Backfill connections whose last `window_days` contain gaps.

    WHAT:
        For each connection, detects missing days and, when any exist, runs
        a backfill with days_back = calculate_backfill_days(gaps).
    """
    runner = _Runner(settings, cipher, meta_client_factory, google_client_factory, cache)
    results: Dict[str, str] = {}

    for connection_id, account_id in _eligible_connection_ids(session_factory):
        db = session_factory()
        try:
            connection = db.query(Connection).filter(Connection.id == connection_id).first()
            if connection is None:
                continue
            day = today or account_today(connection.timezone)
            date_from = day - timedelta(days=window_days - 1)

            result = detect_gaps(
                lambda: get_dates_with_data(db, connection.workspace_id, connection.id, date_from, day),
                date_from,
                day,
                account_id=account_id,
                today=day,
            )
            if not result.gaps:
                results[str(connection_id)] = RESULT_SKIPPED
                continue

            days_back = min(calculate_backfill_days(result.gaps, today=day), MAX_BACKFILL_DAYS)
            logger.info(
                "[SCHEDULER] %s has %d gaps (%d days missing); backfilling %d days",
                account_id, len(result.gaps), result.days_missing, days_back,
            )
            request = SyncRequest(mode=SyncJobTypeEnum.backfill, days_back=days_back)
            results[str(connection_id)] = _run_one(runner, db, connection_id, request, today, "gap_backfill")
        finally:
            db.close()

    return results


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entrypoint for cron."""
    from adpulse.database import build_engine, build_session_factory, init_db
    from adpulse.deps import get_settings
    from adpulse.services.cache import RedisTTLCache
    from adpulse.telemetry import init_sentry
    from adpulse.utils.env import load_env_file

    parser = argparse.ArgumentParser(description="Run adpulse sync jobs")
    parser.add_argument(
        "--mode",
        choices=["daily", "intraday", "backfill", "gaps"],
        default="daily",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    load_env_file()

    settings = get_settings()
    init_sentry(settings)
    engine = build_engine(settings.DATABASE_URL)
    init_db(engine)
    session_factory = build_session_factory(engine)
    # The API process only shares Redis with this one
    cache = RedisTTLCache.from_url(settings.REDIS_URL, settings.CACHE_TTL_SECONDS) if settings.REDIS_URL else None

    if args.mode == "gaps":
        results = run_gap_backfill(session_factory, settings, cache=cache)
    else:
        results = run_scheduled_sync(session_factory, settings, SyncJobTypeEnum(args.mode), cache=cache)

    for connection_id, outcome in results.items():
        logger.info("[SCHEDULER] %s: %s", connection_id, outcome)


if __name__ == "__main__":
    main()
