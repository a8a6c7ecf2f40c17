"""FastAPI application entrypoint.

Builds settings, database, cipher, cache and client factories once, stores
them on `app.state`, configures CORS, includes routers, and exposes a
healthcheck endpoint.

Run with the factory so configuration is read at startup, not import:
    uvicorn adpulse.main:create_app --factory
"""

import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from . import schemas
from .database import build_engine, build_session_factory, init_db
from .deps import Settings, get_settings
from .routers import google_sync as google_sync_router
from .routers import meta_sync as meta_sync_router
from .routers import metrics as metrics_router
from .routers import sync_status as sync_status_router
from .routers import tokens as tokens_router
from .security import TokenCipher
from .services.cache import InMemoryTTLCache, RedisTTLCache, TTLCache
from .services.google_sync_service import build_google_client_factory
from .services.meta_sync_service import build_meta_client_factory
from .telemetry import init_sentry

logger = logging.getLogger(__name__)


def _build_cache(settings: Settings) -> TTLCache:
    if settings.REDIS_URL:
        cache = RedisTTLCache.from_url(settings.REDIS_URL, settings.CACHE_TTL_SECONDS)
        if cache.health_check():
            logger.info("[STARTUP] Redis cache is healthy")
        else:
            logger.warning("[STARTUP] Redis cache health check failed - gap reports will be recomputed until it recovers")
        return cache
    logger.info("[STARTUP] REDIS_URL not set, using in-memory cache")
    return InMemoryTTLCache(settings.CACHE_TTL_SECONDS)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    logging.basicConfig(level=logging.INFO)
    settings = settings or get_settings()
    init_sentry(settings)

    app = FastAPI(
        title="adpulse API",
        description="""
        adpulse keeps Meta and Google Ads performance data in sync.

        This API provides endpoints for:
        - Triggering daily, intraday and backfill syncs per connection
        - Sync status, history and data-gap reports
        - Token status, refresh and exchange for Meta connections
        - Entity and daily metrics read from the synced data

        ## Data Model

        - **Workspaces**: Top-level containers for companies/organizations
        - **Connections**: Links to advertising platform accounts
        - **Insights**: One row per entity per day (campaign, ad set, ad)
        - **Sync jobs**: Audit trail of every sync run
        """,
        version="1.0.0",
        license_info={
            "name": "Proprietary",
        },
    )

    # Trust X-Forwarded-Proto headers from load balancers
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    engine = build_engine(settings.DATABASE_URL)
    init_db(engine)

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.cipher = TokenCipher(settings.TOKEN_ENCRYPTION_KEY)
    app.state.cache = _build_cache(settings)
    app.state.meta_client_factory = build_meta_client_factory(settings)
    app.state.google_client_factory = build_google_client_factory(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(meta_sync_router.router)
    app.include_router(google_sync_router.router)
    app.include_router(sync_status_router.router)
    app.include_router(metrics_router.router)
    app.include_router(tokens_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
        description="""
        Simple health check endpoint to verify the API is running.

        This endpoint:
        - Does not require authentication
        - Returns basic service status
        - Can be used for load balancer health checks
        """
    )
    def health():
        return schemas.HealthResponse(status="ok")

    logger.info(
        "[STARTUP] adpulse API ready (environment=%s, sync levels=%s)",
        settings.ENVIRONMENT,
        ",".join(settings.sync_levels),
    )
    return app
