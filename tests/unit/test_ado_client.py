"""Tests for the Azure DevOps adapter against a mocked transport."""

from __future__ import annotations

import base64
import json
from datetime import datetime, timezone

import httpx
import pytest

from plansync.core.errors import RemoteAPIError
from plansync.integration.ado_client import AdoClient, apply_changed_since

SINCE = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_client(ado_config, handler) -> AdoClient:
    return AdoClient(ado_config, httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestApplyChangedSince:
    def test_no_cutoff_is_identity(self):
        query = "SELECT [System.Id] FROM WorkItems"
        assert apply_changed_since(query, None) == query

    def test_without_where(self):
        query = "SELECT [System.Id] FROM WorkItems"
        assert apply_changed_since(query, SINCE) == (
            "SELECT [System.Id] FROM WorkItems "
            "WHERE [System.ChangedDate] >= '2024-05-01T12:00:00Z'"
        )

    def test_without_where_before_order_by(self):
        query = "SELECT [System.Id] FROM WorkItems ORDER BY [System.Id]"
        assert apply_changed_since(query, SINCE) == (
            "SELECT [System.Id] FROM WorkItems "
            "WHERE [System.ChangedDate] >= '2024-05-01T12:00:00Z' ORDER BY [System.Id]"
        )

    def test_existing_where_is_wrapped(self):
        query = (
            "SELECT [System.Id] FROM WorkItems "
            "WHERE [System.State] = 'New' OR [System.State] = 'Active' "
            "ORDER BY [System.ChangedDate] DESC"
        )
        assert apply_changed_since(query, SINCE) == (
            "SELECT [System.Id] FROM WorkItems "
            "WHERE [System.ChangedDate] >= '2024-05-01T12:00:00Z' "
            "AND ([System.State] = 'New' OR [System.State] = 'Active') "
            "ORDER BY [System.ChangedDate] DESC"
        )

    def test_lowercase_keywords(self):
        query = "select [System.Id] from WorkItems where [System.State] = 'New'"
        result = apply_changed_since(query, SINCE)
        assert result.count("WHERE") == 1
        assert result.endswith("AND ([System.State] = 'New')")


class TestAdoClient:
    @pytest.mark.asyncio
    async def test_basic_auth_header(self, ado_config):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            seen["url"] = str(request.url)
            return httpx.Response(200, json={"value": []})

        async with make_client(ado_config, handler) as client:
            assert await client.test_connection() is True

        expected = base64.b64encode(b":secret-pat").decode()
        assert seen["auth"] == f"Basic {expected}"
        assert seen["url"].startswith("https://dev.azure.com/acme/_apis/projects")
        assert "api-version=7.0" in seen["url"]

    @pytest.mark.asyncio
    async def test_connection_failure_returns_false(self, ado_config):
        async with make_client(ado_config, lambda r: httpx.Response(401, text="nope")) as client:
            assert await client.test_connection() is False

    @pytest.mark.asyncio
    async def test_detail_fetch_chunks_by_200(self, ado_config):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            ids = [int(i) for i in request.url.params["ids"].split(",")]
            calls.append(ids)
            assert request.url.params["$expand"] == "all"
            return httpx.Response(200, json={"value": [{"id": i} for i in ids]})

        ids = list(range(1000, 1450))
        async with make_client(ado_config, handler) as client:
            items = await client.fetch_items_by_ids(ids)

        assert [len(c) for c in calls] == [200, 200, 50]
        assert [item["id"] for item in items] == ids

    @pytest.mark.asyncio
    async def test_field_fetch_uses_query_batch_size(self, ado_config):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.params["fields"])
            assert "$expand" not in request.url.params
            return httpx.Response(200, json={"value": []})

        async with make_client(ado_config, handler) as client:
            await client.fetch_items_by_ids(list(range(120)), fields=["System.Id", "System.Tags"])

        assert len(calls) == 3
        assert calls[0] == "System.Id,System.Tags"

    @pytest.mark.asyncio
    async def test_empty_id_list_makes_no_call(self, ado_config):
        def handler(request):
            raise AssertionError("unexpected request")

        async with make_client(ado_config, handler) as client:
            assert await client.fetch_items_by_ids([]) == []

    @pytest.mark.asyncio
    async def test_query_by_type_with_cutoff(self, ado_config):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/wiql"):
                seen["query"] = json.loads(request.content)["query"]
                seen["precision"] = request.url.params.get("timePrecision")
                return httpx.Response(200, json={"workItems": [{"id": 5}, {"id": 6}]})
            return httpx.Response(
                200, json={"value": [{"id": 5, "fields": {}}, {"id": 6, "fields": {}}]}
            )

        async with make_client(ado_config, handler) as client:
            items = await client.query_by_type("User Story", SINCE)

        assert [i["id"] for i in items] == [5, 6]
        assert "[System.WorkItemType] = 'User Story'" in seen["query"]
        assert "[System.ChangedDate] >= '2024-05-01T12:00:00Z' AND (" in seen["query"]
        assert seen["precision"] == "true"

    @pytest.mark.asyncio
    async def test_non_2xx_raises_remote_api_error(self, ado_config):
        handler = lambda r: httpx.Response(503, text="Service Unavailable")

        async with make_client(ado_config, handler) as client:
            with pytest.raises(RemoteAPIError) as exc_info:
                await client.list_teams()

        assert exc_info.value.status == 503
        assert exc_info.value.body == "Service Unavailable"

    @pytest.mark.asyncio
    async def test_transport_error_is_wrapped(self, ado_config):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(ado_config, handler) as client:
            with pytest.raises(RemoteAPIError) as exc_info:
                await client.list_item_types()

        assert exc_info.value.status is None

    @pytest.mark.asyncio
    async def test_area_paths_are_flattened(self, ado_config):
        tree = {
            "id": 1,
            "name": "Platform",
            "structureType": "area",
            "hasChildren": True,
            "children": [
                {
                    "id": 2,
                    "name": "Payments",
                    "hasChildren": True,
                    "children": [{"id": 3, "name": "Checkout", "hasChildren": False}],
                },
                {"id": 4, "name": "Search", "hasChildren": False},
            ],
        }

        def handler(request):
            assert request.url.params["$depth"] == "10"
            return httpx.Response(200, json=tree)

        async with make_client(ado_config, handler) as client:
            nodes = await client.list_area_paths()

        assert [n["path"] for n in nodes] == [
            "Platform",
            "Platform\\Payments",
            "Platform\\Payments\\Checkout",
            "Platform\\Search",
        ]
        assert all("children" not in n for n in nodes)

    @pytest.mark.asyncio
    async def test_team_endpoints(self, ado_config):
        def handler(request):
            if request.url.path.endswith("/teamfieldvalues"):
                assert "/Platform/Core/_apis/work/teamsettings" in request.url.path
                return httpx.Response(200, json={"values": [{"value": "Platform\\Core"}]})
            assert request.url.path == "/acme/_apis/projects/Platform/teams"
            return httpx.Response(200, json={"value": [{"id": "t1", "name": "Core"}]})

        async with make_client(ado_config, handler) as client:
            assert (await client.list_teams())[0]["name"] == "Core"
            assert await client.list_team_area_paths("Core") == [{"value": "Platform\\Core"}]

    @pytest.mark.asyncio
    async def test_create_and_update_use_json_patch(self, ado_config):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"id": 77})

        ops = [{"op": "add", "path": "/fields/System.Title", "value": "x"}]
        async with make_client(ado_config, handler) as client:
            await client.create_work_item("User Story", ops)
            await client.update_work_item(77, ops)

        create, patch = requests
        assert create.method == "POST"
        assert create.url.path == "/acme/Platform/_apis/wit/workitems/$User Story"
        assert create.headers["Content-Type"] == "application/json-patch+json"
        assert create.url.params["api-version"] == "7.1-preview.3"
        assert json.loads(create.content) == ops
        assert patch.method == "PATCH"
        assert patch.url.path == "/acme/_apis/wit/workitems/77"
