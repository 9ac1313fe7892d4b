"""Tests for plansync.web.routes.webhooks - ProductBoard webhook receiver."""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, MagicMock

from plansync.core.errors import AuthError
from plansync.models import SyncLogStatus
from plansync.sync.webhook import WebhookOutcome
from plansync.web.dependencies import get_webhook_controller
from plansync.web.routes import webhooks


@pytest.fixture
def controller():
    controller = MagicMock()
    controller.handle = AsyncMock(
        return_value=WebhookOutcome(SyncLogStatus.ADO_CREATED, log_id=7, details="Created")
    )
    return controller


@pytest.fixture
def client(controller):
    """Test client with the webhook router and a mocked controller."""
    app = FastAPI()
    app.include_router(webhooks.router)
    app.dependency_overrides[get_webhook_controller] = lambda: controller
    return TestClient(app)


class TestPreflightAndHandshake:
    """OPTIONS and GET /webhooks/productboard."""

    def test_options_returns_cors_headers(self, client):
        response = client.options("/webhooks/productboard")

        assert response.status_code == 204
        assert response.headers["access-control-allow-origin"] == "*"
        assert "POST" in response.headers["access-control-allow-methods"]

    def test_validation_token_is_echoed(self, client):
        response = client.get("/webhooks/productboard?validationToken=abc123")

        assert response.status_code == 200
        assert response.text == "abc123"
        assert response.headers["content-type"].startswith("text/plain")

    def test_liveness_message(self, client):
        response = client.get("/webhooks/productboard")

        assert response.status_code == 200
        assert response.text == webhooks.LIVENESS_MESSAGE


class TestWebhookPost:
    """POST /webhooks/productboard."""

    def test_processed_event(self, client, controller):
        response = client.post(
            "/webhooks/productboard",
            content=b'{"data": {"eventType": "feature.updated", "id": "F1"}}',
            headers={"Authorization": "hook-secret"},
        )

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "message": "Webhook received",
            "logId": 7,
            "status": "ado_created",
        }
        body, authorization = controller.handle.await_args.args
        assert body == b'{"data": {"eventType": "feature.updated", "id": "F1"}}'
        assert authorization == "hook-secret"

    def test_bad_secret_is_401(self, client, controller):
        controller.handle.side_effect = AuthError("Unauthorized: Invalid signature")

        response = client.post("/webhooks/productboard", content=b"{}")

        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized: Invalid signature"}

    def test_malformed_json_is_400(self, client, controller):
        controller.handle.return_value = WebhookOutcome(
            SyncLogStatus.IGNORED, log_id=3, details="Malformed JSON payload", malformed=True
        )

        response = client.post(
            "/webhooks/productboard", content=b"{nope", headers={"Authorization": "hook-secret"}
        )

        assert response.status_code == 400
        assert response.json()["logId"] == 3

    def test_ignored_event_is_still_200(self, client, controller):
        controller.handle.return_value = WebhookOutcome(SyncLogStatus.IGNORED, log_id=4)

        response = client.post(
            "/webhooks/productboard", content=b"{}", headers={"Authorization": "hook-secret"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    def test_unexpected_error_is_500(self, client, controller):
        controller.handle.side_effect = RuntimeError("kaboom")

        response = client.post(
            "/webhooks/productboard", content=b"{}", headers={"Authorization": "hook-secret"}
        )

        assert response.status_code == 500
        assert "kaboom" in response.json()["detail"]
