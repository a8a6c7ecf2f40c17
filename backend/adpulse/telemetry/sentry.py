"""
Sentry Error Tracking
=====================

Centralized error tracking for the API process and the sync scheduler.

Related files:
- adpulse/main.py: Initializes Sentry in create_app()
- adpulse/services/sync_scheduler.py: Captures per-connection sync failures
- adpulse/services/meta_sync_service.py: Captures unexpected sync errors

Setup:
1. Create project with "FastAPI" platform on sentry.io
2. Copy DSN to SENTRY_DSN (settings / .env)

Settings used:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled when unset)
- ENVIRONMENT: Environment name (production, staging, development)
- RELEASE_VERSION: Release tag set by CI/CD
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)


def init_sentry(settings: Any) -> bool:
    """
    Initialize Sentry SDK for FastAPI.

    Should be called once during application startup.

    Returns:
        True if Sentry was initialized, False when no DSN is configured.
    """
    dsn = getattr(settings, "SENTRY_DSN", None)
    if not dsn:
        return False

    environment = getattr(settings, "ENVIRONMENT", "development")

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            RedisIntegration(),
            LoggingIntegration(
                level=logging.INFO,        # Capture INFO+ as breadcrumbs
                event_level=logging.ERROR,  # Send ERROR+ as events
            ),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,
        release=getattr(settings, "RELEASE_VERSION", None),
    )

    logger.info("[SENTRY] Initialized for %s environment", environment)
    return True


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """
    Manually capture an exception to Sentry.

    Use this for exceptions that are caught and handled but should still
    be tracked, e.g. one connection failing inside a scheduled batch.

    Example:
        try:
            run_meta_sync(...)
        except Exception as e:
            capture_exception(e, extra={"connection_id": str(connection.id)})
    """
    with sentry_sdk.new_scope() as scope:
        if extra:
            for key, value in extra.items():
                scope.set_extra(key, value)
        sentry_sdk.capture_exception(exception)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """Capture a non-exception event (e.g. a connection that needs reconnecting)."""
    with sentry_sdk.new_scope() as scope:
        if extra:
            for key, value in extra.items():
                scope.set_extra(key, value)
        sentry_sdk.capture_message(message, level=level)
