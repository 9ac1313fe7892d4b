"""Bulk Azure DevOps -> cache sync.

Order: work item types, area paths and teams (concurrently), then epics,
features and stories using per-type incremental cutoffs. A remote failure
falls back to cached data where there is some; the run only fails when an
entity type has neither.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from plansync.cache.store import CacheStore, utcnow
from plansync.cache.work_items import CachedWorkTracking
from plansync.config import AdoConfig
from plansync.core.errors import RemoteAPIError, StoreError
from plansync.hierarchy.builder import EPIC, FEATURE, USER_STORY, build_hierarchy
from plansync.integration.ado_client import AdoClient
from plansync.models import FetchResult, FetchSource, WorkItem
from plansync.sync.history import STATUS_ERROR, STATUS_SUCCESS, SyncHistoryTracker

logger = logging.getLogger(__name__)

# history entity type per work item type
HIERARCHY_ENTITIES = {EPIC: "epics", FEATURE: "features", USER_STORY: "stories"}


@dataclass
class SyncSummary:
    success: bool
    message: str
    counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "message": self.message}


class BulkSyncService:
    def __init__(self, work_tracking: CachedWorkTracking, tracker: SyncHistoryTracker):
        self.work_tracking = work_tracking
        self.tracker = tracker

    async def sync_all(
        self, force_full_sync: bool = False, timeout: float | None = None
    ) -> SyncSummary:
        """Run a full or incremental sync and summarise it.

        On timeout the run is cancelled, but cache writes already issued are
        awaited before returning.
        """
        try:
            counts = await asyncio.wait_for(self._run(force_full_sync), timeout)
        except asyncio.TimeoutError:
            logger.error("Azure DevOps sync timed out after %ss", timeout)
            await self.work_tracking.wait_for_pending_writes()
            return SyncSummary(
                False, f"Error syncing Azure DevOps data: timed out after {timeout}s"
            )
        except (RemoteAPIError, StoreError) as exc:
            logger.error("Azure DevOps sync failed: %s", exc)
            return SyncSummary(False, f"Error syncing Azure DevOps data: {exc}")

        message = (
            f"Successfully synced {counts['epics']} epics, {counts['features']} features, "
            f"{counts['stories']} stories, {counts['area_paths']} area paths, "
            f"{counts['teams']} teams, and {counts['work_item_types']} work item types."
        )
        logger.info(message)
        return SyncSummary(True, message, counts)

    async def _save_record(
        self,
        entity_type: str,
        items_synced: int,
        status: str,
        error: str | None,
        started,
    ) -> None:
        # A lost watermark only widens the next incremental query
        try:
            await self.tracker.record_sync(
                entity_type, items_synced, status, error, sync_time=started
            )
        except StoreError as exc:
            logger.error("Failed to record %s sync: %s", entity_type, exc)

    async def _record(self, entity_type: str, result: FetchResult, started) -> None:
        if result.degraded:
            await self._save_record(entity_type, 0, STATUS_ERROR, str(result.error), started)
        else:
            await self._save_record(
                entity_type, len(result.value), STATUS_SUCCESS, None, started
            )

    async def _cutoff(self, entity_type: str, force_full_sync: bool):
        try:
            return await self.tracker.get_last_sync_time(entity_type, force_full_sync)
        except StoreError as exc:
            logger.error("Failed to read %s watermark, running a full sync: %s", entity_type, exc)
            return None

    async def _link_mappings(self, items: list[WorkItem]) -> None:
        """Point mappings at the work items that link back to a ProductBoard feature.

        The lowest work item id wins when several items link the same feature.
        """
        links: dict[str, tuple[int, str]] = {}
        for item in sorted(items, key=lambda i: i.id):
            if item.ps_id and item.ps_id not in links:
                links[item.ps_id] = (item.id, self.work_tracking.client.work_item_url(item.id))
        if not links:
            return
        try:
            linked = await self.work_tracking.store.link_mappings(links)
        except StoreError as exc:
            logger.error("Failed to link %s mapping(s): %s", len(links), exc)
            return
        logger.info("Linked %s ProductBoard mapping(s) to work items", linked)

    async def _sync_reference(
        self, entity_type: str, fetch: Callable[..., Awaitable[FetchResult]]
    ) -> int:
        started = utcnow()
        try:
            result = await fetch(force_refresh=True)
        except RemoteAPIError as exc:
            await self._save_record(entity_type, 0, STATUS_ERROR, str(exc), started)
            raise
        await self._record(entity_type, result, started)
        return len(result.value)

    async def _run(self, force_full_sync: bool) -> dict[str, int]:
        counts: dict[str, int] = {}

        outcomes = await asyncio.gather(
            self._sync_reference("work_item_types", self.work_tracking.get_item_types),
            self._sync_reference("area_paths", self.work_tracking.get_area_paths),
            self._sync_reference("teams", self.work_tracking.get_teams),
            return_exceptions=True,
        )
        for name, outcome in zip(("work_item_types", "area_paths", "teams"), outcomes):
            if isinstance(outcome, BaseException):
                raise outcome
            counts[name] = outcome

        merged = {}
        for work_item_type, entity_type in HIERARCHY_ENTITIES.items():
            cutoff = await self._cutoff(entity_type, force_full_sync)
            started = utcnow()
            logger.info(
                "Syncing %s (%s)",
                entity_type,
                f"changed since {cutoff.isoformat()}" if cutoff else "full",
            )
            try:
                result = await self.work_tracking.get_items_by_type(
                    work_item_type, force_refresh=True, changed_since=cutoff
                )
            except RemoteAPIError as exc:
                await self._save_record(entity_type, 0, STATUS_ERROR, str(exc), started)
                raise
            await self._record(entity_type, result, started)

            if cutoff is not None and result.source == FetchSource.REMOTE:
                merged[work_item_type] = await self.work_tracking.overlay_cached(
                    work_item_type, result.value
                )
            else:
                merged[work_item_type] = result.value

        await self._link_mappings([item for items in merged.values() for item in items])

        hierarchy = build_hierarchy(merged[EPIC], merged[FEATURE], merged[USER_STORY])
        counts["epics"], counts["features"], counts["stories"] = hierarchy.counts
        return counts


async def sync_all_data(
    ado_config: AdoConfig,
    store: CacheStore,
    organization: str,
    project: str,
    pat: str,
    force_full_sync: bool = False,
    timeout: float | None = None,
) -> SyncSummary:
    """Manual trigger: sync one organization/project with explicit credentials."""
    config = dataclasses.replace(
        ado_config, organization=organization, project=project, pat=pat
    )
    async with AdoClient(config) as client:
        service = BulkSyncService(
            CachedWorkTracking(client, store), SyncHistoryTracker(store)
        )
        return await service.sync_all(force_full_sync=force_full_sync, timeout=timeout)
