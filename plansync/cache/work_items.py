"""Read-through access to Azure DevOps data backed by the local cache.

Reads return a ``FetchResult`` naming the path taken:

- ``CACHE`` when the cache alone satisfied the request (``error`` is None),
- ``REMOTE`` after a successful remote call (the result is then cached),
- ``CACHE`` with ``error`` set when the remote call failed and the cache
  had something to offer instead.

If the remote call fails and the cache is empty the remote error is raised.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TypeVar

from plansync.cache.store import CacheStore
from plansync.core.errors import RemoteAPIError, StoreError
from plansync.hierarchy.builder import EPIC, FEATURE, USER_STORY, Hierarchy, build_hierarchy, parent_of
from plansync.integration.ado_client import AdoClient
from plansync.mapping.extract import (
    extract_area_path,
    extract_team,
    extract_work_item,
    extract_work_item_type,
)
from plansync.models import AreaPath, FetchResult, FetchSource, Team, WorkItem, WorkItemType

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CachedWorkTracking:
    """Azure DevOps reads with cache completeness, fallback and parent backfill."""

    def __init__(self, client: AdoClient, store: CacheStore):
        self.client = client
        self.store = store
        self._pending: set[asyncio.Future] = set()

    # ------------------------------------------------------------------
    # Cache writes
    # ------------------------------------------------------------------

    async def cache_work_items(self, items: list[WorkItem]) -> None:
        """Persist fetched items in two phases.

        Phase 1 upserts rows and their relations with no parent linkage.
        Phase 2 fetches referenced parents that are not cached yet, then sets
        ``parent_id`` only where the parent row now exists.

        Store failures are logged and swallowed; the caller still has the
        fetched items. The write is shielded so a cancelled caller does not
        interrupt it half way; ``wait_for_pending_writes`` lets the caller's
        owner wait for it to land.
        """
        if items:
            await asyncio.shield(self._track(self._cache_work_items(items)))

    def _track(self, write: Awaitable[None]) -> asyncio.Future:
        task = asyncio.ensure_future(write)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def wait_for_pending_writes(self) -> None:
        """Wait for cache writes that outlived a cancelled caller."""
        if self._pending:
            logger.info("Waiting for %s pending cache write(s)", len(self._pending))
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _cache_work_items(self, items: list[WorkItem]) -> None:
        try:
            await self.store.upsert_work_items(items)
            await self.store.replace_relations(
                [item.id for item in items],
                [rel for item in items for rel in item.relations],
            )
        except StoreError as exc:
            logger.error("Failed to cache %s work item(s): %s", len(items), exc)
            return

        wanted: dict[int, int | None] = {}
        for item in items:
            parent_id = parent_of(item)
            wanted[item.id] = parent_id if parent_id is not None else item.parent_id

        parent_ids = {p for p in wanted.values() if p is not None}
        try:
            existing = await self.store.existing_work_item_ids(parent_ids)
            missing = sorted(parent_ids - existing)
            if missing:
                logger.info("Backfilling %s missing parent work item(s)", len(missing))
                try:
                    raw_parents = await self.client.fetch_items_by_ids(missing)
                except RemoteAPIError as exc:
                    logger.warning("Parent backfill fetch failed: %s", exc)
                else:
                    parents = [extract_work_item(raw) for raw in raw_parents]
                    await self.store.upsert_work_items(parents)
                    await self.store.replace_relations(
                        [p.id for p in parents],
                        [rel for p in parents for rel in p.relations],
                    )
                existing = await self.store.existing_work_item_ids(parent_ids)

            links = {
                child: parent if parent in existing else None
                for child, parent in wanted.items()
            }
            dangling = [c for c, p in wanted.items() if p is not None and p not in existing]
            if dangling:
                logger.warning(
                    "Parent link left empty for %s item(s) whose parent is unavailable",
                    len(dangling),
                )
            await self.store.set_parent_ids(links)
        except StoreError as exc:
            logger.error("Failed to link parents for %s work item(s): %s", len(items), exc)

    async def _safe_write(self, label: str, write: Awaitable[int]) -> None:
        try:
            await asyncio.shield(self._track(write))
        except StoreError as exc:
            logger.error("Failed to cache %s: %s", label, exc)

    async def _cached_or_empty(self, read: Callable[[], Awaitable[list[T]]]) -> list[T]:
        try:
            return await read()
        except StoreError as exc:
            logger.error("Cache read failed: %s", exc)
            return []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def fetch_work_items(
        self, ids: list[int], force_refresh: bool = False
    ) -> FetchResult[list[WorkItem]]:
        """Fetch items by id; the cache answers only when it holds every id."""
        if not ids:
            return FetchResult([], FetchSource.NONE)

        wanted = set(ids)
        if not force_refresh:
            cached = await self._cached_or_empty(lambda: self.store.get_work_items(ids))
            if {item.id for item in cached} == wanted:
                logger.debug("Serving %s work item(s) from cache", len(cached))
                return FetchResult(cached, FetchSource.CACHE)

        try:
            raw = await self.client.fetch_items_by_ids(ids)
        except RemoteAPIError as exc:
            cached = await self._cached_or_empty(lambda: self.store.get_work_items(ids))
            if not cached:
                raise
            logger.warning(
                "Azure DevOps fetch failed (%s); serving %s cached item(s)", exc, len(cached)
            )
            return FetchResult(cached, FetchSource.CACHE, error=exc)

        items = [extract_work_item(r) for r in raw]
        await self.cache_work_items(items)
        return FetchResult(items, FetchSource.REMOTE)

    async def get_items_by_type(
        self,
        work_item_type: str,
        force_refresh: bool = False,
        changed_since: datetime | None = None,
    ) -> FetchResult[list[WorkItem]]:
        """All items of one type.

        With ``changed_since`` the remote query is incremental and only the
        changed items are returned.
        """
        if not force_refresh and changed_since is None:
            cached = await self._cached_or_empty(
                lambda: self.store.get_work_items_by_type(work_item_type)
            )
            if cached:
                return FetchResult(cached, FetchSource.CACHE)

        try:
            raw = await self.client.query_by_type(work_item_type, changed_since)
        except RemoteAPIError as exc:
            cached = await self._cached_or_empty(
                lambda: self.store.get_work_items_by_type(work_item_type)
            )
            if not cached:
                raise
            logger.warning(
                "Azure DevOps %s query failed (%s); serving %s cached item(s)",
                work_item_type, exc, len(cached),
            )
            return FetchResult(cached, FetchSource.CACHE, error=exc)

        items = [extract_work_item(r) for r in raw]
        await self.cache_work_items(items)
        return FetchResult(items, FetchSource.REMOTE)

    async def _reference(
        self,
        label: str,
        force_refresh: bool,
        read_cache: Callable[[], Awaitable[list[T]]],
        fetch_remote: Callable[[], Awaitable[list[T]]],
        write_cache: Callable[[list[T]], Awaitable[int]],
    ) -> FetchResult[list[T]]:
        if not force_refresh:
            cached = await self._cached_or_empty(read_cache)
            if cached:
                return FetchResult(cached, FetchSource.CACHE)

        try:
            values = await fetch_remote()
        except RemoteAPIError as exc:
            cached = await self._cached_or_empty(read_cache)
            if not cached:
                raise
            logger.warning("Azure DevOps %s fetch failed (%s); using cache", label, exc)
            return FetchResult(cached, FetchSource.CACHE, error=exc)

        await self._safe_write(label, write_cache(values))
        return FetchResult(values, FetchSource.REMOTE)

    async def get_area_paths(self, force_refresh: bool = False) -> FetchResult[list[AreaPath]]:
        async def fetch() -> list[AreaPath]:
            return [extract_area_path(n) for n in await self.client.list_area_paths()]

        return await self._reference(
            "area paths", force_refresh, self.store.get_area_paths, fetch,
            self.store.upsert_area_paths,
        )

    async def get_teams(self, force_refresh: bool = False) -> FetchResult[list[Team]]:
        async def fetch() -> list[Team]:
            return [extract_team(t) for t in await self.client.list_teams()]

        return await self._reference(
            "teams", force_refresh, self.store.get_teams, fetch, self.store.upsert_teams
        )

    async def get_item_types(
        self, force_refresh: bool = False
    ) -> FetchResult[list[WorkItemType]]:
        async def fetch() -> list[WorkItemType]:
            return [extract_work_item_type(t) for t in await self.client.list_item_types()]

        return await self._reference(
            "work item types", force_refresh, self.store.get_item_types, fetch,
            self.store.upsert_item_types,
        )

    async def get_hierarchy(
        self,
        force_refresh: bool = False,
        changed_since: datetime | None = None,
    ) -> FetchResult[Hierarchy]:
        """Epic/feature/story tree.

        Incremental fetches are overlaid on the cached items so the tree is
        complete even when only a few items changed.
        """
        results = {}
        for work_item_type in (EPIC, FEATURE, USER_STORY):
            results[work_item_type] = await self.get_items_by_type(
                work_item_type, force_refresh=force_refresh, changed_since=changed_since
            )

        sources = {r.source for r in results.values()}
        source = FetchSource.REMOTE if FetchSource.REMOTE in sources else FetchSource.CACHE
        error = next((r.error for r in results.values() if r.error), None)

        merged: dict[str, list[WorkItem]] = {}
        for work_item_type, result in results.items():
            if changed_since is None or result.source != FetchSource.REMOTE:
                merged[work_item_type] = result.value
            else:
                merged[work_item_type] = await self.overlay_cached(
                    work_item_type, result.value
                )

        hierarchy = build_hierarchy(merged[EPIC], merged[FEATURE], merged[USER_STORY])
        return FetchResult(hierarchy, source, error=error)

    async def overlay_cached(
        self, work_item_type: str, changed: list[WorkItem]
    ) -> list[WorkItem]:
        """Cached items of a type with freshly fetched ``changed`` items on top."""
        cached = await self._cached_or_empty(
            lambda: self.store.get_work_items_by_type(work_item_type)
        )
        by_id = {item.id: item for item in cached}
        by_id.update({item.id: item for item in changed})
        return list(by_id.values())
