"""ProductBoard REST client (planning system adapter)."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from plansync.config import ProductBoardConfig
from plansync.core.errors import RemoteAPIError

logger = logging.getLogger(__name__)

INTEGRATION_TYPE = "azure-devops"


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _links_work_item(integration: dict[str, Any], wts_id: int, wts_url: str) -> bool:
    if integration.get("type") != INTEGRATION_TYPE:
        return False
    external_id = integration.get("externalId")
    return (
        integration.get("url") == wts_url
        or (external_id is not None and str(external_id) == str(wts_id))
        or f"#{wts_id}" in (integration.get("name") or "")
    )


class ProductBoardClient:
    """Async client for the ProductBoard public API (v1)."""

    def __init__(
        self,
        config: ProductBoardConfig,
        http_client: httpx.AsyncClient | None = None,
        batch_size: int = 10,
    ):
        self.config = config
        self.batch_size = batch_size
        self.client = http_client or httpx.AsyncClient(timeout=config.timeout)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.api_token or ''}",
            "X-Version": self.config.api_version,
            "Accept": "application/json",
        }

    def _url(self, path_or_url: str) -> str:
        if path_or_url.startswith("http"):
            return path_or_url
        return f"{self.config.base_url.rstrip('/')}/{path_or_url.lstrip('/')}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        url = self._url(path)
        try:
            response = await self.client.request(
                method, url, params=params, json=json, headers=self._headers()
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise RemoteAPIError(
                exc.response.status_code, exc.response.text, url
            ) from exc
        except httpx.RequestError as exc:
            raise RemoteAPIError(None, str(exc), url) from exc

        if not response.content:
            return {}
        return response.json()

    async def test_connection(self) -> bool:
        try:
            await self._request("GET", "/features", params={"pageLimit": 1})
        except RemoteAPIError as exc:
            logger.warning("ProductBoard connection test failed: %s", exc)
            return False
        return True

    async def get_feature(self, feature_id: str) -> dict[str, Any]:
        """Fetch the full feature detail document (``{"data": {...}}``)."""
        return await self._request("GET", f"/features/{feature_id}")

    async def fetch_items_by_ids(self, ids: list[str]) -> list[dict[str, Any]]:
        """Fetch several features; requests run concurrently per batch."""
        results: list[dict[str, Any]] = []
        for start in range(0, len(ids), self.batch_size):
            batch = ids[start : start + self.batch_size]
            responses = await asyncio.gather(*(self.get_feature(i) for i in batch))
            results.extend(r.get("data", r) for r in responses)
        return results

    async def list_features_changed_since(
        self, since: datetime | None = None
    ) -> list[dict[str, Any]]:
        """List features, following ``links.next`` pagination.

        The list endpoint has no server-side change filter, so ``since`` is
        applied to each feature's ``updatedAt``.
        """
        if since is not None and since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)

        features: list[dict[str, Any]] = []
        next_url: str | None = "/features"
        params: dict[str, Any] | None = {"pageLimit": self.config.page_limit}

        while next_url:
            page = await self._request("GET", next_url, params=params)
            params = None  # next links already carry the cursor
            for feature in page.get("data", []):
                updated = _parse_timestamp(feature.get("updatedAt"))
                if since is None or updated is None or updated >= since:
                    features.append(feature)
            next_url = (page.get("links") or {}).get("next")

        logger.info("Listed %s ProductBoard feature(s)", len(features))
        return features

    async def create_feature(self, payload: dict[str, Any]) -> dict[str, Any]:
        data = await self._request("POST", "/features", json={"data": payload})
        return data.get("data", data)

    async def update_feature(self, feature_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        data = await self._request("PATCH", f"/features/{feature_id}", json={"data": payload})
        return data.get("data", data)

    async def upsert_integration(
        self,
        feature_id: str,
        wts_id: int,
        wts_url: str,
        work_item_type: str = "User Story",
    ) -> dict[str, Any]:
        """Link a feature to its Azure DevOps work item.

        An existing ``azure-devops`` integration for the same work item (by
        url, external id or ``#id`` in its name) is replaced; otherwise a new
        one is added.
        """
        path = f"/features/{feature_id}/integrations"
        current = await self._request("GET", path)
        existing = next(
            (
                i for i in current.get("data") or []
                if _links_work_item(i, wts_id, wts_url) and i.get("id")
            ),
            None,
        )

        body = {
            "type": INTEGRATION_TYPE,
            "name": f"ADO {work_item_type} #{wts_id}",
            "url": wts_url,
            "externalId": str(wts_id),
        }
        if existing is not None:
            data = await self._request("PUT", f"{path}/{existing['id']}", json=body)
        else:
            data = await self._request("POST", path, json=body)
        logger.info(
            "%s ProductBoard integration for feature %s -> work item %s",
            "Updated" if existing is not None else "Created", feature_id, wts_id,
        )
        return data.get("data", data)

    def feature_url(self, feature_id: str) -> str:
        return f"{self.config.feature_url_base.rstrip('/')}/{feature_id}"

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
