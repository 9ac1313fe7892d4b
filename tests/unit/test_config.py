"""Unit tests for PlanSync configuration management."""

from __future__ import annotations

import pytest

from plansync.config import AdoConfig, AppConfig, ProductBoardConfig, get_config

OPTIONAL_VARS = [
    "ADO_ORG", "ADO_PROJECT", "ADO_PAT", "ADO_SYNC_ENABLED", "ADO_DETAIL_BATCH_SIZE",
    "ADO_QUERY_BATCH_SIZE", "ADO_DEFAULT_AREA_PATH", "PB_API_TOKEN",
    "PB_WEBHOOK_SECRET", "PB_READY_STATUS",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in OPTIONAL_VARS:
        monkeypatch.delenv(name, raising=False)


class TestAppConfig:
    """Test AppConfig creation and validation."""

    def test_from_env_requires_database_url(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)

        with pytest.raises(KeyError) as exc_info:
            AppConfig.from_env()

        assert "DATABASE_URL" in str(exc_info.value)

    def test_defaults(self, clean_env):
        config = AppConfig.from_env()

        assert config.db.url == "sqlite+aiosqlite:///:memory:"
        assert config.ado.detail_batch_size == 200
        assert config.ado.query_batch_size == 50
        assert config.ado.work_item_type == "User Story"
        assert config.webhook.ready_status == "With Engineering"
        assert config.webhook.sync_enabled is False
        assert not config.ado.is_configured
        assert not config.productboard.is_configured

    def test_partner_settings_from_env(self, clean_env, monkeypatch):
        monkeypatch.setenv("ADO_ORG", "acme")
        monkeypatch.setenv("ADO_PROJECT", "Platform")
        monkeypatch.setenv("ADO_PAT", "pat")
        monkeypatch.setenv("ADO_SYNC_ENABLED", "true")
        monkeypatch.setenv("ADO_DETAIL_BATCH_SIZE", "100")
        monkeypatch.setenv("PB_API_TOKEN", "token")
        monkeypatch.setenv("PB_WEBHOOK_SECRET", "s3cret")

        config = AppConfig.from_env()

        assert config.ado.is_configured
        assert config.ado.detail_batch_size == 100
        assert config.productboard.api_token == "token"
        assert config.webhook.shared_secret == "s3cret"
        assert config.webhook.sync_enabled is True

    def test_get_config_is_singleton(self):
        assert get_config() is get_config()


class TestAdoConfig:
    def test_area_path_defaults_to_project(self):
        assert AdoConfig(project="Platform").area_path == "Platform"

    def test_explicit_area_path_wins(self):
        config = AdoConfig(project="Platform", default_area_path="Platform\\Payments")
        assert config.area_path == "Platform\\Payments"


class TestProductBoardConfig:
    def test_configured_only_with_token(self):
        assert not ProductBoardConfig().is_configured
        assert ProductBoardConfig(api_token="t").is_configured
