"""Manual Azure DevOps sync trigger and watermark listing."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException

from plansync.core.errors import StoreError
from plansync.services import Services
from plansync.sync.bulk import sync_all_data
from plansync.web.dependencies import get_services
from plansync.web.models import SyncHistoryEntry, SyncRequest, SyncResponse

router = APIRouter(prefix="/api/sync", tags=["Sync"])
logger = structlog.get_logger()


@router.post("", response_model=SyncResponse)
async def trigger_sync(body: SyncRequest, services: Services = Depends(get_services)):
    """Sync one organization/project into the cache and summarise the counts."""
    logger.info(
        "manual_sync_requested",
        organization=body.organization,
        project=body.project,
        force_full_sync=body.force_full_sync,
    )
    summary = await sync_all_data(
        services.config.ado,
        services.store,
        organization=body.organization,
        project=body.project,
        pat=body.pat,
        force_full_sync=body.force_full_sync,
        timeout=body.timeout_seconds,
    )
    return SyncResponse(**summary.to_dict())


@router.get("/history", response_model=list[SyncHistoryEntry])
async def sync_history(services: Services = Depends(get_services)):
    try:
        records = await services.history.list_records()
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return [SyncHistoryEntry(**r.model_dump()) for r in records]
