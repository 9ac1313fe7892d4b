"""Wire adapters, cache and controllers together from one AppConfig."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from plansync.cache.store import CacheStore
from plansync.cache.work_items import CachedWorkTracking
from plansync.config import AppConfig
from plansync.db.connection import create_engine_from_config, create_session_factory
from plansync.integration.ado_client import AdoClient
from plansync.integration.productboard_client import ProductBoardClient
from plansync.sync.bulk import BulkSyncService
from plansync.sync.history import SyncHistoryTracker
from plansync.sync.publisher import StoryPublisher
from plansync.sync.webhook import WebhookSyncController


@dataclass
class Services:
    config: AppConfig
    engine: AsyncEngine
    store: CacheStore
    ado: AdoClient
    productboard: ProductBoardClient
    work_tracking: CachedWorkTracking
    history: SyncHistoryTracker
    bulk: BulkSyncService
    webhook: WebhookSyncController
    publisher: StoryPublisher

    async def close(self) -> None:
        await self.ado.close()
        await self.productboard.close()
        await self.engine.dispose()


def build_services(config: AppConfig) -> Services:
    engine = create_engine_from_config(config.db)
    store = CacheStore(create_session_factory(engine))
    ado = AdoClient(config.ado)
    productboard = ProductBoardClient(config.productboard)
    work_tracking = CachedWorkTracking(ado, store)
    history = SyncHistoryTracker(store)
    return Services(
        config=config,
        engine=engine,
        store=store,
        ado=ado,
        productboard=productboard,
        work_tracking=work_tracking,
        history=history,
        bulk=BulkSyncService(work_tracking, history),
        webhook=WebhookSyncController(config.webhook, config.ado, productboard, ado, store),
        publisher=StoryPublisher(productboard),
    )
