"""Pytest configuration and fixtures for PlanSync tests."""

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio

from plansync.cache.store import CacheStore
from plansync.config import AdoConfig, ProductBoardConfig, WebhookConfig, reset_config
from plansync.db.connection import create_session_factory
from plansync.db.models import Base
from sqlalchemy.ext.asyncio import create_async_engine

ADO_ITEM_URL = "https://dev.azure.com/acme/_apis/wit/workItems"


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    reset_config()
    yield
    reset_config()


@pytest.fixture
def ado_config() -> AdoConfig:
    return AdoConfig(organization="acme", project="Platform", pat="secret-pat")


@pytest.fixture
def pb_config() -> ProductBoardConfig:
    return ProductBoardConfig(api_token="pb-token")


@pytest.fixture
def webhook_config() -> WebhookConfig:
    return WebhookConfig(shared_secret="hook-secret", sync_enabled=True)


@pytest_asyncio.fixture
async def store(tmp_path):
    """Cache store over a fresh SQLite file."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'cache.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield CacheStore(create_session_factory(engine))
    await engine.dispose()


@pytest.fixture
def make_raw_work_item():
    """Factory for ``workitems?$expand=all`` entries."""

    def _make(
        item_id: int,
        work_item_type: str = "User Story",
        parent_id: int | None = None,
        title: str | None = None,
        state: str = "New",
        extra_fields: dict[str, Any] | None = None,
        relations: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        rels = list(relations or [])
        if parent_id is not None:
            rels.insert(
                0,
                {
                    "rel": "System.LinkTypes.Hierarchy-Reverse",
                    "url": f"{ADO_ITEM_URL}/{parent_id}",
                    "attributes": {"isLocked": False, "name": "Parent"},
                },
            )
        fields = {
            "System.Id": item_id,
            "System.WorkItemType": work_item_type,
            "System.Title": title if title is not None else f"{work_item_type} {item_id}",
            "System.State": state,
        }
        fields.update(extra_fields or {})
        return {
            "id": item_id,
            "rev": 1,
            "url": f"{ADO_ITEM_URL}/{item_id}",
            "fields": fields,
            "relations": rels,
        }

    return _make
