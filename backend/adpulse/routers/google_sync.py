"""Google Ads synchronization endpoints.

WHAT:
    Thin HTTP wrapper for the Google sync service.

REFERENCES:
    - adpulse/services/google_sync_service.py
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from adpulse.deps import (
    Settings,
    get_app_settings,
    get_cache,
    get_cipher,
    get_db,
    get_google_client_factory,
)
from adpulse.schemas import SyncRequest, SyncResponse
from adpulse.security import TokenCipher
from adpulse.services.cache import TTLCache
from adpulse.services.google_sync_service import run_google_sync

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/workspaces/{workspace_id}/connections/{connection_id}",
    tags=["Google Sync"],
)


@router.post("/google/sync", response_model=SyncResponse)
def sync_google(
    workspace_id: UUID,
    connection_id: UUID,
    request: SyncRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    cipher: TokenCipher = Depends(get_cipher),
    cache: TTLCache = Depends(get_cache),
    client_factory=Depends(get_google_client_factory),
) -> SyncResponse:
    """Sync Google Ads daily metrics (delegates to service layer)."""
    logger.info(
        "[GOOGLE_SYNC] HTTP %s sync requested: workspace=%s connection=%s",
        request.mode.value,
        workspace_id,
        connection_id,
    )
    return run_google_sync(
        db,
        workspace_id,
        connection_id,
        request,
        settings=settings,
        cipher=cipher,
        client_factory=client_factory,
        cache=cache,
    )
