"""Azure DevOps REST client (work-tracking system adapter).

Returns raw JSON payloads; ``plansync.mapping.extract`` turns them into
canonical models. Non-2xx responses raise ``RemoteAPIError`` and nothing is
retried here; fallback is the cache layer's job.
"""

from __future__ import annotations

import base64
import logging
import re
from datetime import datetime, timezone
from typing import Any

import httpx

from plansync.config import AdoConfig
from plansync.core.errors import RemoteAPIError

logger = logging.getLogger(__name__)

JSON_PATCH = "application/json-patch+json"

_WHERE_RE = re.compile(r"\bWHERE\b", re.IGNORECASE)
_ORDER_BY_RE = re.compile(r"\bORDER\s+BY\b", re.IGNORECASE)


def format_wiql_date(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def apply_changed_since(query: str, since: datetime | None) -> str:
    """Add a ``[System.ChangedDate] >= since`` predicate to a WIQL query.

    Existing WHERE conditions are parenthesised so an ``OR`` in them cannot
    escape the cutoff. The predicate always lands before any ORDER BY.
    """
    if since is None:
        return query

    predicate = f"[System.ChangedDate] >= '{format_wiql_date(since)}'"

    order_match = _ORDER_BY_RE.search(query)
    if order_match:
        body, tail = query[: order_match.start()].rstrip(), " " + query[order_match.start():]
    else:
        body, tail = query.rstrip(), ""

    where_match = _WHERE_RE.search(body)
    if where_match:
        head = body[: where_match.start()].rstrip()
        conditions = body[where_match.end():].strip()
        return f"{head} WHERE {predicate} AND ({conditions}){tail}"

    return f"{body} WHERE {predicate}{tail}"


def wiql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _chunks(items: list[Any], size: int) -> list[list[Any]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class AdoClient:
    """Async client for the Azure DevOps work item tracking API."""

    def __init__(self, config: AdoConfig, http_client: httpx.AsyncClient | None = None):
        self.config = config
        self.client = http_client or httpx.AsyncClient(timeout=config.timeout)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _auth_headers(self) -> dict[str, str]:
        token = base64.b64encode(f":{self.config.pat or ''}".encode()).decode()
        return {"Authorization": f"Basic {token}", "Accept": "application/json"}

    @property
    def org_url(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/{self.config.organization}"

    @property
    def project_url(self) -> str:
        return f"{self.org_url}/{self.config.project}"

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        content_type: str | None = None,
    ) -> Any:
        headers = self._auth_headers()
        if content_type:
            headers["Content-Type"] = content_type

        query = {"api-version": self.config.api_version}
        if params:
            query.update(params)

        try:
            response = await self.client.request(
                method, url, params=query, json=json, headers=headers
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

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def test_connection(self) -> bool:
        """Return True when the credentials can list projects."""
        try:
            await self._request("GET", f"{self.org_url}/_apis/projects")
        except RemoteAPIError as exc:
            logger.warning("Azure DevOps connection test failed: %s", exc)
            return False
        return True

    async def fetch_items_by_ids(
        self, ids: list[int], fields: list[str] | None = None
    ) -> list[dict[str, Any]]:
        """Fetch work item details in batches.

        Full detail (``$expand=all``) uses ``detail_batch_size``; a
        field-restricted fetch uses the smaller ``query_batch_size``.
        """
        if not ids:
            return []

        if fields:
            size = self.config.query_batch_size
            extra = {"fields": ",".join(fields)}
        else:
            size = self.config.detail_batch_size
            extra = {"$expand": "all"}

        results: list[dict[str, Any]] = []
        for batch in _chunks(list(ids), size):
            params = {"ids": ",".join(str(i) for i in batch), **extra}
            data = await self._request(
                "GET", f"{self.project_url}/_apis/wit/workitems", params=params
            )
            results.extend(data.get("value", []))

        logger.info("Fetched %s work items in %s batch(es)", len(results), -(-len(ids) // size))
        return results

    async def query_ids(self, wiql: str, changed_since: datetime | None = None) -> list[int]:
        """Run a WIQL query and return matching work item ids."""
        query = apply_changed_since(wiql, changed_since)
        params = {"timePrecision": "true"} if changed_since else None
        data = await self._request(
            "POST",
            f"{self.project_url}/_apis/wit/wiql",
            params=params,
            json={"query": query},
        )
        return [item["id"] for item in data.get("workItems", [])]

    async def query_by_type(
        self, work_item_type: str, changed_since: datetime | None = None
    ) -> list[dict[str, Any]]:
        """Fetch full details for every work item of one type."""
        wiql = (
            "SELECT [System.Id], [System.Title], [System.WorkItemType], "
            "[System.State], [System.AreaPath] FROM WorkItems "
            "WHERE [System.TeamProject] = @project "
            f"AND [System.WorkItemType] = {wiql_literal(work_item_type)}"
        )
        ids = await self.query_ids(wiql, changed_since)
        logger.info("WIQL returned %s %s id(s)", len(ids), work_item_type)
        return await self.fetch_items_by_ids(ids)

    async def find_ids_by_tag(self, tag: str) -> list[int]:
        wiql = (
            "SELECT [System.Id] FROM WorkItems "
            "WHERE [System.TeamProject] = @project "
            f"AND [System.Tags] CONTAINS {wiql_literal(tag)}"
        )
        return await self.query_ids(wiql)

    async def list_item_types(self) -> list[dict[str, Any]]:
        data = await self._request("GET", f"{self.project_url}/_apis/wit/workitemtypes")
        return data.get("value", [])

    async def list_area_paths(self) -> list[dict[str, Any]]:
        """Return the area classification tree flattened to a list of nodes.

        Each node gets a ``path`` key built from its ancestors' names.
        """
        root = await self._request(
            "GET",
            f"{self.project_url}/_apis/wit/classificationnodes/areas",
            params={"$depth": "10"},
        )
        if not root:
            return []

        nodes: list[dict[str, Any]] = []

        def walk(node: dict[str, Any], parent_path: str | None) -> None:
            path = f"{parent_path}\\{node['name']}" if parent_path else node["name"]
            nodes.append({**{k: v for k, v in node.items() if k != "children"}, "path": path})
            for child in node.get("children") or []:
                walk(child, path)

        walk(root, None)
        return nodes

    async def list_teams(self) -> list[dict[str, Any]]:
        data = await self._request(
            "GET", f"{self.org_url}/_apis/projects/{self.config.project}/teams"
        )
        return data.get("value", [])

    async def list_team_area_paths(self, team: str) -> list[dict[str, Any]]:
        data = await self._request(
            "GET",
            f"{self.project_url}/{team}/_apis/work/teamsettings/teamfieldvalues",
        )
        return data.get("values", [])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_work_item(
        self, work_item_type: str, operations: list[dict[str, Any]]
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"{self.project_url}/_apis/wit/workitems/${work_item_type}",
            params={"api-version": self.config.write_api_version},
            json=operations,
            content_type=JSON_PATCH,
        )

    async def update_work_item(
        self, work_item_id: int, operations: list[dict[str, Any]]
    ) -> dict[str, Any]:
        return await self._request(
            "PATCH",
            f"{self.org_url}/_apis/wit/workitems/{work_item_id}",
            params={"api-version": self.config.write_api_version},
            json=operations,
            content_type=JSON_PATCH,
        )

    def work_item_url(self, work_item_id: int) -> str:
        """Browser URL for a work item."""
        return f"{self.project_url}/_workitems/edit/{work_item_id}"

    async def close(self):
        """Close HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
