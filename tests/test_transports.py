"""Tests for the local, remote and websocket transports."""

import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from types import SimpleNamespace
from unittest.mock import patch

import pytest
import pytest_asyncio
import respx
from aiohttp import web
from aiohttp.test_utils import TestServer
from httpx import Response
from mcp import types

from maas_cli.credentials import JWTCredential
from maas_cli.errors import AuthenticationInvalid, NetworkError, ServerError, ToolCallError, ValidationError
from maas_cli.mcp.transports import LocalTransport, RemoteTransport, WebSocketTransport

SCOPE = "lanonasis-maas"
CREDENTIAL = JWTCredential(token="session-token")


# ═══════════════════════════════════════════════════════════════════════════════
# WEBSOCKET
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass
class StubServerState:
    url: str = ""
    reject_with: int | None = None
    connections: int = 0
    headers: list[dict] = field(default_factory=list)
    sockets: list[web.WebSocketResponse] = field(default_factory=list)
    methods: list[str] = field(default_factory=list)


def _reply(frame: dict) -> dict:
    method = frame.get("method")
    if method == "initialize":
        return {"id": frame["id"], "result": {"protocolVersion": "2024-11-05", "serverInfo": {"name": "stub"}}}
    if method == "ping":
        return {"id": frame["id"], "result": {}}
    if method == "tools/list":
        return {"id": frame["id"], "result": {"tools": [{"name": "memory_search_memories", "description": "Search"}]}}
    if method == "tools/call" and frame["params"]["name"] == "memory_search_memories":
        return {"id": frame["id"], "result": {"content": [{"type": "text", "text": "[]"}]}}
    return {"id": frame["id"], "error": {"code": -32601, "message": "Method not found"}}


@pytest_asyncio.fixture
async def ws_server():
    state = StubServerState()

    async def handler(request):
        if state.reject_with:
            return web.Response(status=state.reject_with)
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        state.connections += 1
        state.headers.append(dict(request.headers))
        state.sockets.append(ws)
        async for msg in ws:
            frame = json.loads(msg.data)
            state.methods.append(frame.get("method"))
            await ws.send_str(json.dumps({"jsonrpc": "2.0", **_reply(frame)}))
        return ws

    app = web.Application()
    app.router.add_get("/ws", handler)
    server = TestServer(app)
    await server.start_server()
    state.url = str(server.make_url("/ws")).replace("http://", "ws://")
    yield state
    await server.close()


class TestWebSocketTransport:
    @pytest.mark.asyncio
    async def test_handshake_and_rpc(self, ws_server, settings):
        transport = WebSocketTransport(ws_server.url, CREDENTIAL, settings, SCOPE)
        await transport.open()
        try:
            assert ws_server.methods[0] == "initialize"
            headers = ws_server.headers[0]
            assert headers["Authorization"] == "Bearer session-token"
            assert headers["X-Auth-Method"] == "jwt"
            assert headers["X-Project-Scope"] == SCOPE
            assert headers["X-Request-ID"]

            await transport.health_check()
            assert await transport.list_tools() == [{"name": "memory_search_memories", "description": "Search"}]
            result = await transport.call_tool("memory_search_memories", {"query": "x"})
            assert result["content"][0]["text"] == "[]"
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_error_response_raises_tool_call_error(self, ws_server, settings):
        transport = WebSocketTransport(ws_server.url, CREDENTIAL, settings, SCOPE)
        await transport.open()
        try:
            with pytest.raises(ToolCallError) as exc_info:
                await transport.call_tool("nope", {})
            assert exc_info.value.code == -32601
        finally:
            await transport.close()

    @pytest.mark.asyncio
    async def test_rejected_handshake(self, ws_server, settings):
        ws_server.reject_with = 401
        transport = WebSocketTransport(ws_server.url, CREDENTIAL, settings, SCOPE)
        with pytest.raises(AuthenticationInvalid):
            await transport.open()

    @pytest.mark.asyncio
    async def test_server_close_emits_closed_event(self, ws_server, settings):
        transport = WebSocketTransport(ws_server.url, CREDENTIAL, settings, SCOPE)
        await transport.open()

        await ws_server.sockets[0].close()
        event = await asyncio.wait_for(transport.events.get(), timeout=2)

        assert event["type"] == "closed"
        with pytest.raises(NetworkError):
            await transport.request("ping")
        await transport.close()

    @pytest.mark.asyncio
    async def test_explicit_close_emits_nothing(self, ws_server, settings):
        transport = WebSocketTransport(ws_server.url, CREDENTIAL, settings, SCOPE)
        await transport.open()
        await transport.close()
        await transport.close()
        assert transport.events.empty()

    @pytest.mark.asyncio
    async def test_connector_end_to_end_with_reconnect(self, ws_server, ctx):
        await ctx.auth.set_token("session-token")
        connector = ctx.connector()

        assert await connector.connect(mode="websocket", url=ws_server.url) is True
        status = connector.get_connection_status()
        assert status["connected"] is True
        assert status["mode"] == "websocket"

        await ws_server.sockets[0].close()
        for _ in range(40):
            await asyncio.sleep(0.05)
            if ws_server.connections == 2 and connector.is_connected:
                break

        assert ws_server.connections == 2
        assert connector.reconnect_attempts == 1
        assert connector.is_connected
        await connector.disconnect()

    @pytest.mark.asyncio
    async def test_malformed_frames_do_not_break_reader(self, settings):
        transport = WebSocketTransport("ws://unused", CREDENTIAL, settings, SCOPE)
        pending = asyncio.get_running_loop().create_future()
        transport._pending[1] = pending

        transport._handle_message(json.dumps({"jsonrpc": "2.0", "id": [1], "result": {}}))
        transport._handle_message(json.dumps({"jsonrpc": "2.0", "id": {"n": 1}, "result": {}}))
        transport._handle_message(json.dumps({"jsonrpc": "2.0", "id": True, "result": {}}))
        assert not pending.done()
        assert transport.events.qsize() == 3

        transport._handle_message(json.dumps({"jsonrpc": "2.0", "id": 1, "error": None}))
        with pytest.raises(ToolCallError, match="Unknown error"):
            await pending

        other = asyncio.get_running_loop().create_future()
        transport._pending[2] = other
        transport._handle_message(json.dumps({"jsonrpc": "2.0", "id": 2, "error": "denied"}))
        with pytest.raises(ToolCallError, match="denied"):
            await other

        # Reader started after teardown simply exits
        await transport._read_loop()

    def test_event_queue_drops_oldest(self, settings):
        transport = WebSocketTransport("ws://unused", CREDENTIAL, settings, SCOPE)
        for i in range(transport.events.maxsize + 5):
            transport._emit({"type": "n", "i": i})
        assert transport.events.qsize() == transport.events.maxsize
        assert transport.events.get_nowait()["i"] == 5


# ═══════════════════════════════════════════════════════════════════════════════
# REMOTE
# ═══════════════════════════════════════════════════════════════════════════════

MCP_BASE = "http://mcp.test"


class TestRemoteTransport:
    @pytest.mark.asyncio
    async def test_health_probe_then_sse_events(self, settings):
        with respx.mock(assert_all_called=False) as router:
            health = router.get(f"{MCP_BASE}/health").mock(return_value=Response(200, json={"status": "ok"}))
            sse = router.get(f"{MCP_BASE}/sse").mock(
                return_value=Response(
                    200,
                    text='event: message\ndata: {"type": "memory.created", "id": "m1"}\n\n: keepalive\n\n',
                    headers={"Content-Type": "text/event-stream"},
                )
            )
            transport = RemoteTransport(MCP_BASE, CREDENTIAL, settings, SCOPE)

            await transport.open()
            try:
                event = await asyncio.wait_for(transport.events.get(), timeout=2)
                assert event == {"type": "memory.created", "id": "m1"}
                assert health.called
                assert sse.calls.last.request.url.params["token"] == "session-token"
            finally:
                await transport.close()

    @pytest.mark.asyncio
    @respx.mock
    async def test_health_probe_errors(self, settings):
        route = respx.get(f"{MCP_BASE}/health")
        transport = RemoteTransport(MCP_BASE, CREDENTIAL, settings, SCOPE)

        route.mock(return_value=Response(401))
        with pytest.raises(AuthenticationInvalid):
            await transport.open()

        route.mock(return_value=Response(503))
        with pytest.raises(ServerError):
            await transport.health_check()

    @pytest.mark.asyncio
    async def test_no_rpc_channel(self, settings):
        transport = RemoteTransport(MCP_BASE, CREDENTIAL, settings, SCOPE)
        with pytest.raises(ToolCallError):
            await transport.call_tool("memory_search_memories", {})


# ═══════════════════════════════════════════════════════════════════════════════
# LOCAL
# ═══════════════════════════════════════════════════════════════════════════════


class FakeSession:
    def __init__(self, read_stream, write_stream, client_info=None):
        self.client_info = client_info
        self.initialized = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def initialize(self):
        self.initialized = True

    async def list_tools(self):
        return SimpleNamespace(tools=[SimpleNamespace(name="memory_list_memories", description=None)])

    async def call_tool(self, name, arguments):
        if name == "broken":
            return types.CallToolResult(content=[types.TextContent(type="text", text="boom")], isError=True)
        return types.CallToolResult(content=[types.TextContent(type="text", text=json.dumps(arguments))])


class TestLocalTransport:
    @pytest.mark.asyncio
    async def test_missing_or_relative_path_rejected(self, settings, tmp_path):
        with pytest.raises(ValidationError, match="not found"):
            await LocalTransport(str(tmp_path / "missing.js"), CREDENTIAL, settings, SCOPE).open()
        with pytest.raises(ValidationError, match="absolute"):
            await LocalTransport("server.js", CREDENTIAL, settings, SCOPE).open()

    @pytest.mark.asyncio
    async def test_session_lifecycle(self, settings, tmp_path):
        server = tmp_path / "server.py"
        server.write_text("# stub\n")
        launched = []

        @asynccontextmanager
        async def fake_stdio_client(params):
            launched.append(params)
            yield ("read", "write")

        with patch("maas_cli.mcp.transports.stdio_client", fake_stdio_client), patch(
            "maas_cli.mcp.transports.ClientSession", FakeSession
        ):
            transport = LocalTransport(str(server), CREDENTIAL, settings, SCOPE)
            await transport.open()
            try:
                assert launched[0].args == [str(server)]
                assert launched[0].env["LANONASIS_PROJECT_SCOPE"] == SCOPE

                await transport.health_check()
                assert await transport.list_tools() == [
                    {"name": "memory_list_memories", "description": "No description available"}
                ]
                result = await transport.call_tool("memory_list_memories", {"limit": 5})
                assert json.loads(result["content"][0]["text"]) == {"limit": 5}

                with pytest.raises(ToolCallError, match="boom"):
                    await transport.call_tool("broken", {})
            finally:
                await transport.close()

        assert transport.events.empty()
        with pytest.raises(NetworkError):
            await transport.list_tools()
