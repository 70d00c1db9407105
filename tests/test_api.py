"""Tests for the memory REST client."""

import json

import httpx
import pytest
import pytest_asyncio
import respx
from httpx import Response

from maas_cli.errors import AuthenticationInvalid, AuthenticationRequired, NetworkError, ServerError, ToolCallError

MEMORY_BASE = "http://api.test/api/v1"


@pytest_asyncio.fixture
async def api(ctx):
    await ctx.auth.set_token("opaque-session-token")
    client = ctx.api_client()
    yield client
    await client.close()


class TestMemoryAPIClient:
    @pytest.mark.asyncio
    @respx.mock
    async def test_create_memory_sends_golden_headers(self, api):
        route = respx.post(f"{MEMORY_BASE}/memory").mock(return_value=Response(201, json={"id": "m1"}))

        result = await api.create_memory("Title", "Body", tags=["a"])

        assert result == {"id": "m1"}
        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer opaque-session-token"
        assert request.headers["X-Auth-Method"] == "jwt"
        assert request.headers["X-Project-Scope"] == "lanonasis-maas"
        assert request.headers["X-Request-ID"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_request_ids_are_unique(self, api):
        route = respx.get(f"{MEMORY_BASE}/memory").mock(return_value=Response(200, json={"data": []}))

        await api.list_memories()
        await api.list_memories(page=2, memory_type=None)

        ids = {call.request.headers["X-Request-ID"] for call in route.calls}
        assert len(ids) == 2
        assert route.calls.last.request.url.params["page"] == "2"
        assert "memory_type" not in route.calls.last.request.url.params

    @pytest.mark.asyncio
    @respx.mock
    async def test_search_and_crud_paths(self, api):
        respx.post(f"{MEMORY_BASE}/memory/search").mock(return_value=Response(200, json={"results": []}))
        respx.get(f"{MEMORY_BASE}/memory/m1").mock(return_value=Response(200, json={"id": "m1"}))
        update = respx.put(f"{MEMORY_BASE}/memory/m1").mock(return_value=Response(200, json={"id": "m1"}))
        respx.delete(f"{MEMORY_BASE}/memory/m1").mock(return_value=Response(204))

        assert await api.search_memories("auth flow") == {"results": []}
        assert (await api.get_memory("m1"))["id"] == "m1"
        await api.update_memory("m1", title="New")
        assert json.loads(update.calls.last.request.content) == {"title": "New"}
        assert await api.delete_memory("m1") is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_error_mapping(self, api):
        route = respx.get(f"{MEMORY_BASE}/memory/x")

        route.mock(return_value=Response(401, json={"error": "expired"}))
        with pytest.raises(AuthenticationInvalid):
            await api.get_memory("x")

        route.mock(return_value=Response(502, text="bad gateway"))
        with pytest.raises(ServerError) as exc_info:
            await api.get_memory("x")
        assert exc_info.value.status_code == 502

        route.mock(return_value=Response(404, json={"error": {"message": "Memory not found"}}))
        with pytest.raises(ToolCallError, match="Memory not found") as exc_info:
            await api.get_memory("x")
        assert exc_info.value.code == 404

        route.mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(NetworkError):
            await api.get_memory("x")

    @pytest.mark.asyncio
    @respx.mock
    async def test_health_is_unauthenticated(self, api):
        route = respx.get(f"{MEMORY_BASE}/health").mock(return_value=Response(200, json={"status": "ok"}))

        assert await api.health() == {"status": "ok"}
        assert "Authorization" not in route.calls.last.request.headers

    @pytest.mark.asyncio
    async def test_no_credential_raises(self, ctx):
        async with ctx.api_client() as client:
            with pytest.raises(AuthenticationRequired):
                await client.list_memories()
