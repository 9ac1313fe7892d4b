"""Pydantic request/response models for the PlanSync API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

# ============================================================================
# Sync Models
# ============================================================================


class SyncRequest(BaseModel):
    """Manual bulk sync trigger."""

    organization: str = Field(..., min_length=1)
    project: str = Field(..., min_length=1)
    pat: str = Field(..., min_length=1)
    force_full_sync: bool = False
    timeout_seconds: float | None = Field(None, gt=0)


class SyncResponse(BaseModel):
    success: bool
    message: str


class SyncHistoryEntry(BaseModel):
    entity_type: str
    last_sync_time: datetime
    items_synced: int
    status: str
    error_message: str | None = None


# ============================================================================
# Webhook Models
# ============================================================================


class WebhookResponse(BaseModel):
    success: bool
    message: str
    logId: int | None = None
    status: str
