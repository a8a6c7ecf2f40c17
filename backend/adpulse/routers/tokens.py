"""Token lifecycle endpoints (status, refresh, long-lived exchange).

WHAT:
    - GET  .../token/status    expiry classification for the stored token
    - POST .../token/refresh   re-exchange the stored Meta token
    - POST .../token/exchange  swap a short-lived Meta token and store it

REFERENCES:
    - adpulse/services/token_service.py
    - adpulse/services/meta_ads_client.py (Graph token endpoints)
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from adpulse.deps import Settings, get_app_settings, get_cipher, get_db, get_meta_client_factory
from adpulse.models import Connection, ProviderEnum
from adpulse.schemas import TokenExchangeRequest, TokenRefreshResponse, TokenStatusOut
from adpulse.security import TokenCipher
from adpulse.services.meta_ads_client import MetaAdsClientError
from adpulse.services.meta_sync_service import get_access_token
from adpulse.services.sync_jobs import get_connection_or_404
from adpulse.services.token_service import (
    TokenPermissionError,
    TokenRefreshError,
    exchange_and_store_token,
    get_token_status,
    refresh_connection_token,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/workspaces/{workspace_id}/connections/{connection_id}/token",
    tags=["Tokens"],
)


def _status_out(connection: Connection, settings: Settings) -> TokenStatusOut:
    return TokenStatusOut(**get_token_status(
        connection.token,
        warning_days=settings.TOKEN_EXPIRY_WARNING_DAYS,
        requires_reconnect=bool(connection.requires_reconnect),
    ))


def _require_meta_app(settings: Settings) -> None:
    if not settings.META_APP_ID or not settings.META_APP_SECRET:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="META_APP_ID and META_APP_SECRET are not configured",
        )


@router.get("/status", response_model=TokenStatusOut)
def token_status(
    workspace_id: UUID,
    connection_id: UUID,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
) -> TokenStatusOut:
    connection = get_connection_or_404(db, workspace_id, connection_id)
    return _status_out(connection, settings)


@router.post("/refresh", response_model=TokenRefreshResponse)
def refresh_token(
    workspace_id: UUID,
    connection_id: UUID,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    cipher: TokenCipher = Depends(get_cipher),
    client_factory=Depends(get_meta_client_factory),
) -> TokenRefreshResponse:
    """Exchange the stored Meta token for a fresh long-lived token."""
    connection = get_connection_or_404(db, workspace_id, connection_id, ProviderEnum.meta)
    _require_meta_app(settings)

    client = client_factory(get_access_token(connection, cipher))
    try:
        refresh_connection_token(db, connection, cipher, client.exchange_long_lived_token)
    except TokenRefreshError as e:
        if e.permanent:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Meta token can no longer be refreshed. Reconnect the account.",
            ) from e
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Token refresh failed: {e}",
        ) from e

    return TokenRefreshResponse(
        refreshed=True,
        status=_status_out(connection, settings),
        message="Token refreshed",
    )


@router.post("/exchange", response_model=TokenStatusOut)
def exchange_token(
    workspace_id: UUID,
    connection_id: UUID,
    body: TokenExchangeRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    cipher: TokenCipher = Depends(get_cipher),
    client_factory=Depends(get_meta_client_factory),
) -> TokenStatusOut:
    """Store a long-lived token obtained from a short-lived OAuth token."""
    connection = get_connection_or_404(db, workspace_id, connection_id, ProviderEnum.meta)
    _require_meta_app(settings)

    client = client_factory(body.access_token)
    try:
        exchange_and_store_token(db, connection, cipher, client, body.access_token)
    except TokenPermissionError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e)) from e
    except TokenRefreshError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e)) from e
    except MetaAdsClientError as e:
        logger.error("[TOKENS] Token exchange failed for %s: %s", connection_id, e)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Token exchange failed: {e}",
        ) from e

    return _status_out(connection, settings)
