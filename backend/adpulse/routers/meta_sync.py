"""Meta Ads synchronization endpoints.

WHAT:
    Thin HTTP wrapper for the Meta sync service, plus the ad-account listing
    used to pick which account a connection syncs.

WHY:
    - Routers handle request parsing and dependency wiring only.
    - Business logic is reused by both HTTP calls and the scheduler.

REFERENCES:
    - adpulse/services/meta_sync_service.py
"""

from __future__ import annotations

import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from adpulse.deps import (
    Settings,
    get_app_settings,
    get_cache,
    get_cipher,
    get_db,
    get_meta_client_factory,
)
from adpulse.schemas import AdAccountOut, SyncRequest, SyncResponse
from adpulse.security import TokenCipher
from adpulse.services.cache import TTLCache
from adpulse.services.meta_sync_service import list_ad_accounts, run_meta_sync

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/workspaces/{workspace_id}/connections/{connection_id}",
    tags=["Meta Sync"],
)


@router.post("/meta/sync", response_model=SyncResponse)
def sync_meta(
    workspace_id: UUID,
    connection_id: UUID,
    request: SyncRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    cipher: TokenCipher = Depends(get_cipher),
    cache: TTLCache = Depends(get_cache),
    client_factory=Depends(get_meta_client_factory),
) -> SyncResponse:
    """Sync Meta insights (delegates to service layer)."""
    logger.info(
        "[META_SYNC] HTTP %s sync requested: workspace=%s connection=%s",
        request.mode.value,
        workspace_id,
        connection_id,
    )
    return run_meta_sync(
        db,
        workspace_id,
        connection_id,
        request,
        settings=settings,
        cipher=cipher,
        client_factory=client_factory,
        cache=cache,
    )


@router.get("/meta/ad-accounts", response_model=List[AdAccountOut])
def meta_ad_accounts(
    workspace_id: UUID,
    connection_id: UUID,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    cipher: TokenCipher = Depends(get_cipher),
    client_factory=Depends(get_meta_client_factory),
) -> List[AdAccountOut]:
    """List ad accounts reachable with the connection's token."""
    accounts = list_ad_accounts(
        db,
        workspace_id,
        connection_id,
        settings=settings,
        cipher=cipher,
        client_factory=client_factory,
    )
    return [AdAccountOut(**account) for account in accounts]
