"""Read-through cache behaviour of CachedWorkTracking."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from plansync.cache.work_items import CachedWorkTracking
from plansync.core.errors import RemoteAPIError
from plansync.integration.ado_client import AdoClient
from plansync.models import FetchSource

pytestmark = pytest.mark.integration


@pytest.fixture
def ado(ado_config):
    client = MagicMock(spec=AdoClient)
    client.config = ado_config
    client.fetch_items_by_ids = AsyncMock(return_value=[])
    client.query_by_type = AsyncMock(return_value=[])
    client.list_area_paths = AsyncMock(return_value=[])
    client.list_teams = AsyncMock(return_value=[])
    client.list_item_types = AsyncMock(return_value=[])
    return client


def serve(raw_items):
    """fetch_items_by_ids side effect answering from a dict of raw items."""

    async def _fetch(ids, fields=None):
        return [raw_items[i] for i in ids if i in raw_items]

    return _fetch


class TestFetchWorkItems:
    @pytest.mark.asyncio
    async def test_cache_must_hold_every_id(self, ado, store, make_raw_work_item):
        raw = {i: make_raw_work_item(i) for i in (1, 2, 3)}
        ado.fetch_items_by_ids.side_effect = serve(raw)
        tracking = CachedWorkTracking(ado, store)

        first = await tracking.fetch_work_items([1, 2])
        again = await tracking.fetch_work_items([1, 2])
        wider = await tracking.fetch_work_items([1, 2, 3])

        assert first.source == FetchSource.REMOTE
        assert again.source == FetchSource.CACHE
        assert sorted(i.id for i in again.value) == [1, 2]
        assert wider.source == FetchSource.REMOTE
        assert ado.fetch_items_by_ids.await_count == 2
        assert ado.fetch_items_by_ids.await_args_list[1].args[0] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_force_refresh_skips_cache(self, ado, store, make_raw_work_item):
        ado.fetch_items_by_ids.side_effect = serve({1: make_raw_work_item(1)})
        tracking = CachedWorkTracking(ado, store)

        await tracking.fetch_work_items([1])
        result = await tracking.fetch_work_items([1], force_refresh=True)

        assert result.source == FetchSource.REMOTE
        assert ado.fetch_items_by_ids.await_count == 2

    @pytest.mark.asyncio
    async def test_remote_failure_falls_back_to_partial_cache(
        self, ado, store, make_raw_work_item
    ):
        ado.fetch_items_by_ids.side_effect = serve({1: make_raw_work_item(1)})
        tracking = CachedWorkTracking(ado, store)
        await tracking.fetch_work_items([1])

        ado.fetch_items_by_ids.side_effect = RemoteAPIError(503, "down")
        result = await tracking.fetch_work_items([1, 2])

        assert result.source == FetchSource.CACHE
        assert result.degraded
        assert [i.id for i in result.value] == [1]

    @pytest.mark.asyncio
    async def test_remote_failure_with_empty_cache_raises(self, ado, store):
        ado.fetch_items_by_ids.side_effect = RemoteAPIError(503, "down")
        tracking = CachedWorkTracking(ado, store)

        with pytest.raises(RemoteAPIError):
            await tracking.fetch_work_items([1])

    @pytest.mark.asyncio
    async def test_empty_request(self, ado, store):
        result = await CachedWorkTracking(ado, store).fetch_work_items([])

        assert result.source == FetchSource.NONE
        assert result.value == []
        ado.fetch_items_by_ids.assert_not_awaited()


class TestParentLinking:
    @pytest.mark.asyncio
    async def test_missing_parent_is_backfilled(self, ado, store, make_raw_work_item):
        raw = {
            2: make_raw_work_item(2, "Feature", parent_id=1),
            3: make_raw_work_item(3, parent_id=2),
        }
        ado.fetch_items_by_ids.side_effect = serve(raw)
        tracking = CachedWorkTracking(ado, store)

        await tracking.fetch_work_items([3])

        assert ado.fetch_items_by_ids.await_args_list[1].args[0] == [2]
        story, = await store.get_work_items([3])
        feature, = await store.get_work_items([2])
        assert story.parent_id == 2
        assert feature.type == "Feature"

    @pytest.mark.asyncio
    async def test_unavailable_parent_stays_null(self, ado, store, make_raw_work_item):
        ado.fetch_items_by_ids.side_effect = serve({3: make_raw_work_item(3, parent_id=99)})
        tracking = CachedWorkTracking(ado, store)

        result = await tracking.fetch_work_items([3])

        assert result.source == FetchSource.REMOTE
        story, = await store.get_work_items([3])
        assert story.parent_id is None
        assert story.relations[0].target_id == 99

    @pytest.mark.asyncio
    async def test_parent_fetched_in_same_batch(self, ado, store, make_raw_work_item):
        raw = {1: make_raw_work_item(1, "Epic"), 2: make_raw_work_item(2, "Feature", parent_id=1)}
        ado.fetch_items_by_ids.side_effect = serve(raw)

        await CachedWorkTracking(ado, store).fetch_work_items([2, 1])

        assert ado.fetch_items_by_ids.await_count == 1
        feature, = await store.get_work_items([2])
        assert feature.parent_id == 1


class TestItemsByType:
    @pytest.mark.asyncio
    async def test_cached_type_is_served_without_remote_call(
        self, ado, store, make_raw_work_item
    ):
        ado.query_by_type.return_value = [make_raw_work_item(1, "Epic")]
        tracking = CachedWorkTracking(ado, store)

        await tracking.get_items_by_type("Epic", force_refresh=True)
        cached = await tracking.get_items_by_type("Epic")

        assert cached.source == FetchSource.CACHE
        assert ado.query_by_type.await_count == 1

    @pytest.mark.asyncio
    async def test_changed_since_always_goes_remote(self, ado, store, make_raw_work_item):
        ado.query_by_type.return_value = [make_raw_work_item(1, "Epic")]
        tracking = CachedWorkTracking(ado, store)
        await tracking.get_items_by_type("Epic", force_refresh=True)

        since = (await store.get_work_items([1]))[0].last_synced_at
        ado.query_by_type.return_value = []
        result = await tracking.get_items_by_type("Epic", changed_since=since)

        assert result.source == FetchSource.REMOTE
        assert result.value == []
        ado.query_by_type.assert_awaited_with("Epic", since)

    @pytest.mark.asyncio
    async def test_hierarchy_overlays_incremental_changes(
        self, ado, store, make_raw_work_item
    ):
        by_type = {
            "Epic": [make_raw_work_item(1, "Epic")],
            "Feature": [make_raw_work_item(2, "Feature", parent_id=1)],
            "User Story": [make_raw_work_item(3, parent_id=2), make_raw_work_item(4, parent_id=2)],
        }
        async def query(work_item_type, since=None):
            return by_type[work_item_type]

        ado.query_by_type.side_effect = query
        tracking = CachedWorkTracking(ado, store)
        await tracking.get_hierarchy(force_refresh=True)

        by_type = {
            "Epic": [],
            "Feature": [],
            "User Story": [make_raw_work_item(4, parent_id=2, title="Renamed")],
        }
        since = (await store.get_work_items([1]))[0].last_synced_at
        result = await tracking.get_hierarchy(changed_since=since)

        hierarchy = result.value
        assert hierarchy.counts == (1, 1, 2)
        assert hierarchy.features_by_id[2].story_ids == [3, 4]
        assert [s.title for s in hierarchy.stories] == ["User Story 3", "Renamed"]


class TestReferenceData:
    @pytest.mark.asyncio
    async def test_area_paths_read_through(self, ado, store):
        ado.list_area_paths.return_value = [
            {"id": 1, "name": "Platform", "path": "Platform", "hasChildren": True},
            {"id": 2, "name": "Core", "path": "Platform\\Core"},
        ]
        tracking = CachedWorkTracking(ado, store)

        remote = await tracking.get_area_paths()
        cached = await tracking.get_area_paths()

        assert remote.source == FetchSource.REMOTE
        assert cached.source == FetchSource.CACHE
        assert [a.path for a in cached.value] == ["Platform", "Platform\\Core"]
        assert ado.list_area_paths.await_count == 1

    @pytest.mark.asyncio
    async def test_teams_fall_back_to_cache(self, ado, store):
        ado.list_teams.return_value = [{"id": "t1", "name": "Core"}]
        tracking = CachedWorkTracking(ado, store)
        await tracking.get_teams()

        ado.list_teams.side_effect = RemoteAPIError(500, "boom")
        result = await tracking.get_teams(force_refresh=True)

        assert result.degraded
        assert [t.name for t in result.value] == ["Core"]

    @pytest.mark.asyncio
    async def test_item_types_error_without_cache(self, ado, store):
        ado.list_item_types.side_effect = RemoteAPIError(401, "denied")

        with pytest.raises(RemoteAPIError):
            await CachedWorkTracking(ado, store).get_item_types()
