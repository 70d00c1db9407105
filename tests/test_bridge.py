"""Tests for tool dispatch over the connected transport."""

import json

import pytest
import pytest_asyncio
import respx
from httpx import Response

from maas_cli.errors import NotConnected, ToolCallError, UnknownTool, ValidationError
from maas_cli.mcp.retry import ConnectionMode
from maas_cli.mcp.tools import REMOTE_TOOLS, remote_tool_list
from maas_cli.mcp.transports import Transport

MCP_BASE = "http://mcp.test"
MEMORY_BASE = "http://api.test/api/v1"


class RecordingTransport(Transport):
    """Native-protocol transport that echoes calls or fails on demand."""

    mode = ConnectionMode.WEBSOCKET

    def __init__(self, *args):
        super().__init__(*args)
        self.calls = []

    async def open(self):
        pass

    async def close(self):
        pass

    async def health_check(self):
        pass

    async def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        if name == "fails":
            raise ToolCallError("Invalid params", code=-32602)
        return {"content": [{"type": "text", "text": name}]}

    async def list_tools(self):
        return [{"name": "anything_goes", "description": "Native tool"}]


@pytest_asyncio.fixture
async def remote_bridge(ctx):
    await ctx.auth.set_token("session-token")
    with respx.mock(assert_all_called=False) as router:
        router.get(f"{MCP_BASE}/health").mock(return_value=Response(200))
        router.get(f"{MCP_BASE}/sse").mock(return_value=Response(200, text=""))
        connector = ctx.connector()
        assert await connector.connect(mode="remote") is True
        api = ctx.api_client()
        yield ctx.bridge(connector, api), router
        await connector.disconnect()
        await api.close()


@pytest_asyncio.fixture
async def native_bridge(ctx):
    await ctx.auth.set_token("session-token")
    created = []

    def factory(mode, target, credential, settings, project_scope, sse_url=None):
        transport = RecordingTransport(target, credential, settings, project_scope)
        created.append(transport)
        return transport

    connector = ctx.connector(transport_factory=factory)
    assert await connector.connect(mode="websocket") is True
    yield ctx.bridge(connector), created[0]
    await connector.disconnect()


class TestRemoteDispatch:
    @pytest.mark.asyncio
    async def test_unknown_tool_fails_before_network(self, remote_bridge):
        bridge, router = remote_bridge
        before = router.calls.call_count

        with pytest.raises(UnknownTool) as exc_info:
            await bridge.call_tool("memory_frobnicate", {})

        assert router.calls.call_count == before
        assert "memory_search_memories" in exc_info.value.describe()

    @pytest.mark.asyncio
    async def test_id_placeholder_substitution(self, remote_bridge):
        bridge, router = remote_bridge
        route = router.get(f"{MEMORY_BASE}/memory/m-42").mock(return_value=Response(200, json={"id": "m-42"}))

        result = await bridge.call_tool("memory_get_memory", {"memory_id": "m-42"})

        assert result.ok
        assert result.data == {"id": "m-42"}
        assert route.calls.last.request.url.params.get("memory_id") is None

    @pytest.mark.asyncio
    async def test_update_strips_id_from_body(self, remote_bridge):
        bridge, router = remote_bridge
        route = router.put(f"{MEMORY_BASE}/memory/m1").mock(return_value=Response(200, json={"id": "m1"}))

        await bridge.call_tool("memory_update_memory", {"id": "m1", "title": "Renamed"})

        assert json.loads(route.calls.last.request.content) == {"title": "Renamed"}

    @pytest.mark.asyncio
    async def test_missing_id_rejected(self, remote_bridge):
        bridge, _ = remote_bridge
        with pytest.raises(ValidationError):
            await bridge.call_tool("memory_delete_memory", {})

    @pytest.mark.asyncio
    async def test_list_uses_query_params_and_search_uses_body(self, remote_bridge):
        bridge, router = remote_bridge
        listing = router.get(f"{MEMORY_BASE}/memory").mock(return_value=Response(200, json={"data": []}))
        search = router.post(f"{MEMORY_BASE}/memory/search").mock(return_value=Response(200, json={"results": []}))

        await bridge.call_tool("memory_list_memories", {"limit": 5})
        await bridge.call_tool("memory_search_memories", {"query": "jwt"})

        assert listing.calls.last.request.url.params["limit"] == "5"
        assert json.loads(search.calls.last.request.content) == {"query": "jwt"}
        assert search.calls.last.request.headers["X-Auth-Method"] == "jwt"

    @pytest.mark.asyncio
    async def test_client_errors_become_tool_results(self, remote_bridge):
        bridge, router = remote_bridge
        router.get(f"{MEMORY_BASE}/memory/gone").mock(return_value=Response(404, json={"error": "Memory not found"}))

        result = await bridge.call_tool("memory_get_memory", {"id": "gone"})

        assert not result.ok
        assert result.code == 404
        assert result.error == "Memory not found"

    @pytest.mark.asyncio
    async def test_static_tool_list(self, remote_bridge):
        bridge, _ = remote_bridge
        tools = await bridge.list_tools()
        assert tools == remote_tool_list()
        assert {t["name"] for t in tools} == set(REMOTE_TOOLS)


class TestNativeDispatch:
    @pytest.mark.asyncio
    async def test_passes_through_unchanged(self, native_bridge):
        bridge, transport = native_bridge

        result = await bridge.call_tool("anything_goes", {"a": 1})

        assert result.data == {"content": [{"type": "text", "text": "anything_goes"}]}
        assert transport.calls == [("anything_goes", {"a": 1})]
        assert await bridge.list_tools() == [{"name": "anything_goes", "description": "Native tool"}]

    @pytest.mark.asyncio
    async def test_protocol_errors_are_returned(self, native_bridge):
        bridge, _ = native_bridge
        result = await bridge.call_tool("fails")
        assert result.error == "Invalid params"
        assert result.code == -32602


class TestNotConnected:
    @pytest.mark.asyncio
    async def test_calls_require_connection(self, ctx):
        bridge = ctx.bridge(ctx.connector())
        with pytest.raises(NotConnected):
            await bridge.call_tool("memory_search_memories", {"query": "x"})
        with pytest.raises(NotConnected):
            await bridge.list_tools()
