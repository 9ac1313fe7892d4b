"""Create or update ProductBoard features from local stories and cached work items."""

from __future__ import annotations

import logging
from typing import Any

from plansync.core.errors import RemoteAPIError
from plansync.integration.productboard_client import ProductBoardClient
from plansync.mapping.project import story_to_feature, work_item_to_feature
from plansync.models import Story, WorkItem

logger = logging.getLogger(__name__)


class StoryPublisher:
    def __init__(self, productboard: ProductBoardClient):
        self.productboard = productboard

    async def _upsert(self, ps_id: str | None, payload: dict[str, Any]) -> str:
        if ps_id:
            await self.productboard.update_feature(ps_id, payload)
            return ps_id

        created = await self.productboard.create_feature(payload)
        new_id = created.get("id")
        if not new_id:
            raise RemoteAPIError(None, "ProductBoard create response carried no feature id")
        return str(new_id)

    async def push_story(self, story: Story) -> str:
        """Push a story; returns the ProductBoard feature id."""
        ps_id = await self._upsert(story.ps_id, story_to_feature(story))
        logger.info("Pushed story %s to ProductBoard feature %s", story.id, ps_id)
        return ps_id

    async def push_work_item(self, item: WorkItem) -> str:
        ps_id = await self._upsert(item.ps_id, work_item_to_feature(item))
        logger.info("Pushed work item %s to ProductBoard feature %s", item.id, ps_id)
        return ps_id
