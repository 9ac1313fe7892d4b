"""Health check API routes."""

from fastapi import APIRouter, Depends, status
from sqlalchemy import text

from plansync.cache.store import CacheStore
from plansync.core.errors import StoreError
from plansync.web.dependencies import get_store

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("", status_code=status.HTTP_200_OK)
async def health_check(store: CacheStore = Depends(get_store)):
    """Check application health.

    Verifies database connectivity.
    """
    try:
        async with store.session() as session:
            await session.execute(text("SELECT 1"))
    except StoreError as e:
        return {"status": "error", "database": "disconnected", "detail": str(e)}
    return {"status": "ok", "database": "connected"}
