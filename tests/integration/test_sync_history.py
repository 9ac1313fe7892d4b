"""Sync watermark tracking."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from plansync.sync.history import STATUS_ERROR, SyncHistoryTracker

pytestmark = pytest.mark.integration

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
T1 = datetime(2024, 5, 2, 12, 0, tzinfo=timezone.utc)


class TestSyncHistoryTracker:
    @pytest.mark.asyncio
    async def test_no_history_means_full_sync(self, store):
        assert await SyncHistoryTracker(store).get_last_sync_time("epics") is None

    @pytest.mark.asyncio
    async def test_success_yields_cutoff(self, store):
        tracker = SyncHistoryTracker(store)
        await tracker.record_sync("epics", 12, sync_time=T0)

        assert await tracker.get_last_sync_time("epics") == T0
        assert await tracker.get_last_sync_time("epics", force_full_sync=True) is None

    @pytest.mark.asyncio
    async def test_error_overwrites_and_clears_cutoff(self, store):
        tracker = SyncHistoryTracker(store)
        await tracker.record_sync("teams", 3, sync_time=T0)
        await tracker.record_sync("teams", 0, STATUS_ERROR, "Azure DevOps API 500", sync_time=T1)

        record = await tracker.get_record("teams")

        assert record.status == STATUS_ERROR
        assert record.items_synced == 0
        assert record.error_message == "Azure DevOps API 500"
        assert record.last_sync_time == T1
        assert await tracker.get_last_sync_time("teams") is None

    @pytest.mark.asyncio
    async def test_one_row_per_entity(self, store):
        tracker = SyncHistoryTracker(store)
        await tracker.record_sync("stories", 1, sync_time=T0)
        await tracker.record_sync("stories", 2, sync_time=T1)
        await tracker.record_sync("epics", 5, sync_time=T1)

        records = await tracker.list_records()

        assert [r.entity_type for r in records] == ["epics", "stories"]
        assert records[1].items_synced == 2
