"""Per-entity-type sync watermarks for incremental Azure DevOps queries.

One row per entity type, overwritten on every attempt. Only a successful
attempt yields a cutoff for the next run.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select

from plansync.cache.store import CacheStore, upsert_statement, utcnow
from plansync.db.models import SyncHistoryModel
from plansync.models import SyncHistoryRecord

logger = logging.getLogger(__name__)

STATUS_SUCCESS = "success"
STATUS_ERROR = "error"


class SyncHistoryTracker:
    def __init__(self, store: CacheStore):
        self.store = store

    async def get_record(self, entity_type: str) -> SyncHistoryRecord | None:
        async with self.store.session() as session:
            result = await session.execute(
                select(SyncHistoryModel).where(SyncHistoryModel.entity_type == entity_type)
            )
            row = result.scalar_one_or_none()
        if row is None:
            return None
        last_sync_time = row.last_sync_time
        if last_sync_time.tzinfo is None:
            last_sync_time = last_sync_time.replace(tzinfo=utcnow().tzinfo)
        return SyncHistoryRecord(
            entity_type=row.entity_type,
            last_sync_time=last_sync_time,
            items_synced=row.items_synced,
            status=row.status,
            error_message=row.error_message,
        )

    async def get_last_sync_time(
        self, entity_type: str, force_full_sync: bool = False
    ) -> datetime | None:
        """Cutoff for the next incremental query, or None for a full sync."""
        if force_full_sync:
            return None
        record = await self.get_record(entity_type)
        if record is None or record.status != STATUS_SUCCESS:
            return None
        return record.last_sync_time

    async def record_sync(
        self,
        entity_type: str,
        items_synced: int,
        status: str = STATUS_SUCCESS,
        error_message: str | None = None,
        sync_time: datetime | None = None,
    ) -> None:
        row = {
            "entity_type": entity_type,
            "last_sync_time": sync_time or utcnow(),
            "items_synced": items_synced,
            "status": status,
            "error_message": error_message,
        }
        async with self.store.session() as session:
            await session.execute(
                upsert_statement(session, SyncHistoryModel, [row], ["entity_type"])
            )
        logger.info(
            "Recorded %s sync for %s (%s item(s))", status, entity_type, items_synced
        )

    async def list_records(self) -> list[SyncHistoryRecord]:
        async with self.store.session() as session:
            result = await session.execute(
                select(SyncHistoryModel.entity_type).order_by(SyncHistoryModel.entity_type)
            )
            entity_types = list(result.scalars().all())
        records = [await self.get_record(e) for e in entity_types]
        return [r for r in records if r is not None]
