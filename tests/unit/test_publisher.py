"""Tests for pushing stories and work items to ProductBoard."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from plansync.core.errors import RemoteAPIError
from plansync.integration.productboard_client import ProductBoardClient
from plansync.models import Story, WorkItem
from plansync.sync.publisher import StoryPublisher


@pytest.fixture
def productboard():
    client = MagicMock(spec=ProductBoardClient)
    client.create_feature = AsyncMock(return_value={"id": "NEW-1"})
    client.update_feature = AsyncMock(return_value={"id": "F1"})
    return client


class TestStoryPublisher:
    @pytest.mark.asyncio
    async def test_new_story_is_created(self, productboard):
        publisher = StoryPublisher(productboard)

        ps_id = await publisher.push_story(Story(id="s1", title="Checkout v2"))

        assert ps_id == "NEW-1"
        payload = productboard.create_feature.await_args.args[0]
        assert payload["name"] == "Checkout v2"
        productboard.update_feature.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_linked_story_is_updated(self, productboard):
        publisher = StoryPublisher(productboard)

        ps_id = await publisher.push_story(Story(id="s1", title="Checkout v2", ps_id="F1"))

        assert ps_id == "F1"
        productboard.update_feature.assert_awaited_once()
        assert productboard.update_feature.await_args.args[0] == "F1"
        productboard.create_feature.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_create_without_id_is_an_error(self, productboard):
        productboard.create_feature.return_value = {}
        publisher = StoryPublisher(productboard)

        with pytest.raises(RemoteAPIError):
            await publisher.push_story(Story(id="s1", title="x"))

    @pytest.mark.asyncio
    async def test_work_item_push(self, productboard):
        publisher = StoryPublisher(productboard)
        item = WorkItem(id=12, title="Search revamp", type="Feature", state="Active")

        assert await publisher.push_work_item(item) == "NEW-1"
        payload = productboard.create_feature.await_args.args[0]
        assert payload["name"] == "Search revamp"
