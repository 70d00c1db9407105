"""The three MCP transports.

- LocalTransport: protocol server as a child process over stdio (mcp SDK)
- RemoteTransport: REST per call plus a one-way SSE notification stream
- WebSocketTransport: persistent authenticated WebSocket (aiohttp)

Each transport pushes asynchronous notifications and a final
`{"type": "closed"}` event onto its bounded `events` queue; the connector
consumes that queue instead of wiring callbacks into the sockets.
"""

import asyncio
import itertools
import json
import sys
from abc import ABC, abstractmethod
from contextlib import suppress
from pathlib import Path
from typing import Any

import aiohttp
import httpx
from mcp import ClientSession, StdioServerParameters, types
from mcp.client.stdio import stdio_client

from maas_cli import __version__
from maas_cli.config import Settings
from maas_cli.credentials import Credential, golden_headers
from maas_cli.errors import (
    AuthenticationInvalid,
    MaasError,
    NetworkError,
    ToolCallError,
    ValidationError,
    classify_exception,
    error_for_status,
)
from maas_cli.log_config import get_logger
from maas_cli.mcp.retry import ConnectionMode

log = get_logger("mcp.transports")

CLIENT_NAME = "maas-cli"
PROTOCOL_VERSION = "2024-11-05"
EVENT_QUEUE_SIZE = 100
SSE_RETRY_DELAY = 3.0  # seconds
CLOSED_EVENT = {"type": "closed"}


class Transport(ABC):
    """One live connection to the protocol server."""

    mode: ConnectionMode

    def __init__(self, target: str, credential: Credential, settings: Settings, project_scope: str):
        self.target = target
        self.credential = credential
        self.settings = settings
        self.project_scope = project_scope
        self.events: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)
        self._closing = False

    def _emit(self, event: dict[str, Any]) -> None:
        """Queue an event, dropping the oldest one when full."""
        if self.events.full():
            with suppress(asyncio.QueueEmpty):
                self.events.get_nowait()
        self.events.put_nowait(event)

    @abstractmethod
    async def open(self) -> None:
        """Establish the connection; raise a MaasError on failure."""

    @abstractmethod
    async def close(self) -> None:
        """Tear down all handles. Must be idempotent."""

    @abstractmethod
    async def health_check(self) -> None:
        """Raise if the connection is not healthy."""

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        raise ToolCallError(f"{self.mode.value} transport has no RPC channel")

    async def list_tools(self) -> list[dict[str, Any]]:
        raise ToolCallError(f"{self.mode.value} transport has no RPC channel")


# ═══════════════════════════════════════════════════════════════════════════════
# LOCAL (stdio subprocess)
# ═══════════════════════════════════════════════════════════════════════════════


def _server_command(server_path: str) -> tuple[str, list[str]]:
    """Interpreter and argv for a configured server path."""
    suffix = Path(server_path).suffix
    if suffix in (".js", ".mjs", ".cjs"):
        return "node", [server_path]
    if suffix == ".py":
        return sys.executable, [server_path]
    return server_path, []


class LocalTransport(Transport):
    """Protocol server spawned as a child process, spoken to over stdio.

    The stdio client and session contexts are owned by one background task
    so they are entered and exited in the same task.
    """

    mode = ConnectionMode.LOCAL

    def __init__(self, target: str, credential: Credential, settings: Settings, project_scope: str):
        super().__init__(target, credential, settings, project_scope)
        self._session: ClientSession | None = None
        self._runner: asyncio.Task | None = None
        self._ready = asyncio.Event()
        self._stop = asyncio.Event()
        self._error: BaseException | None = None

    async def open(self) -> None:
        path = Path(self.target)
        if not path.is_absolute():
            raise ValidationError(
                f"Local MCP server path must be absolute: {self.target}",
                ["Set it with: maas config set mcpServerPath /absolute/path/to/server"],
            )
        if not path.exists():
            raise ValidationError(
                f"Local MCP server not found at {self.target}",
                ["For remote connection, use: maas mcp connect --mode remote"],
            )

        self._runner = asyncio.create_task(self._run(), name="mcp-local-session")
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=self.settings.handshake_timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise NetworkError("Local MCP server did not finish initialization", kind="timeout") from None
        if self._session is None:
            error = self._error or NetworkError("Local MCP server exited during startup")
            raise classify_exception(error)

    async def _run(self) -> None:
        command, args = _server_command(self.target)
        env = {"LANONASIS_PROJECT_SCOPE": self.project_scope}
        params = StdioServerParameters(command=command, args=args, env=env)
        try:
            async with stdio_client(params) as (read_stream, write_stream):
                async with ClientSession(
                    read_stream,
                    write_stream,
                    client_info=types.Implementation(name=CLIENT_NAME, version=__version__),
                ) as session:
                    await session.initialize()
                    self._session = session
                    self._ready.set()
                    log.debug(f"Local MCP session initialized ({self.target})")
                    await self._stop.wait()
        except Exception as e:
            self._error = e
            log.debug(f"Local MCP session ended with {type(e).__name__}: {e}")
        finally:
            self._session = None
            self._ready.set()
            if not self._closing:
                self._emit(dict(CLOSED_EVENT))

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise NetworkError("Local MCP server is not running")
        return self._session

    async def close(self) -> None:
        self._closing = True
        self._stop.set()
        if self._runner is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._runner), timeout=5.0)
            except asyncio.TimeoutError:
                self._runner.cancel()
                with suppress(asyncio.CancelledError):
                    await self._runner
            self._runner = None

    async def health_check(self) -> None:
        await self.list_tools()

    async def list_tools(self) -> list[dict[str, Any]]:
        session = self._require_session()
        try:
            result = await asyncio.wait_for(session.list_tools(), timeout=self.settings.health_probe_timeout)
        except MaasError:
            raise
        except Exception as e:
            raise classify_exception(e) from e
        return [
            {"name": tool.name, "description": tool.description or "No description available"}
            for tool in result.tools
        ]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        session = self._require_session()
        try:
            result = await asyncio.wait_for(
                session.call_tool(name, arguments), timeout=self.settings.request_timeout
            )
        except MaasError:
            raise
        except Exception as e:
            raise classify_exception(e) from e
        payload = result.model_dump(mode="json", by_alias=True, exclude_none=True)
        # Wire name of the error flag; attribute names differ between mcp releases
        if payload.get("isError"):
            text = " ".join(c.get("text", "") for c in payload.get("content", []) if isinstance(c, dict))
            raise ToolCallError(text or f"Tool {name} failed", code=-32000)
        return payload


# ═══════════════════════════════════════════════════════════════════════════════
# REMOTE (REST + SSE)
# ═══════════════════════════════════════════════════════════════════════════════


class RemoteTransport(Transport):
    """No persistent socket: a health probe plus an SSE notification stream."""

    mode = ConnectionMode.REMOTE

    def __init__(
        self,
        target: str,
        credential: Credential,
        settings: Settings,
        project_scope: str,
        sse_url: str | None = None,
    ):
        super().__init__(target, credential, settings, project_scope)
        self.sse_url = sse_url or f"{target.rstrip('/')}/sse"
        self._sse_task: asyncio.Task | None = None

    @property
    def health_url(self) -> str:
        return f"{self.target.rstrip('/')}/health"

    async def _probe(self) -> None:
        headers = golden_headers(self.credential, self.project_scope)
        try:
            async with httpx.AsyncClient(timeout=self.settings.health_probe_timeout) as client:
                response = await client.get(self.health_url, headers=headers)
        except httpx.HTTPError as e:
            raise classify_exception(e) from e
        if response.status_code >= 400:
            raise error_for_status(response.status_code, response.text[:200])

    async def open(self) -> None:
        await self._probe()
        self._sse_task = asyncio.create_task(self._sse_loop(), name="mcp-remote-sse")

    async def _sse_loop(self) -> None:
        params = {"token": self.credential.secret}
        timeout = httpx.Timeout(self.settings.request_timeout, read=None)
        while not self._closing:
            try:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    async with client.stream("GET", self.sse_url, params=params) as response:
                        if response.status_code in (401, 403):
                            log.error(f"SSE stream rejected credential ({response.status_code})")
                            self._emit({"type": "auth_error", "status": response.status_code})
                            return
                        response.raise_for_status()
                        await self._consume_sse(response)
            except (httpx.HTTPError, ValueError) as e:
                log.warning(f"SSE connection error (will retry): {type(e).__name__}: {e}")
            await asyncio.sleep(SSE_RETRY_DELAY)

    async def _consume_sse(self, response: httpx.Response) -> None:
        data_lines: list[str] = []
        async for line in response.aiter_lines():
            if line.startswith("data:"):
                data_lines.append(line[5:].lstrip())
            elif line == "" and data_lines:
                self._dispatch_sse("\n".join(data_lines))
                data_lines = []
        if data_lines:
            self._dispatch_sse("\n".join(data_lines))

    def _dispatch_sse(self, data: str) -> None:
        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            log.debug(f"Ignoring non-JSON SSE payload: {data[:80]}")
            return
        if isinstance(event, dict):
            log.debug(f"Real-time update: {event.get('type')}")
            self._emit(event)

    async def close(self) -> None:
        self._closing = True
        if self._sse_task is not None:
            self._sse_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._sse_task
            self._sse_task = None

    async def health_check(self) -> None:
        await self._probe()


# ═══════════════════════════════════════════════════════════════════════════════
# WEBSOCKET
# ═══════════════════════════════════════════════════════════════════════════════


class WebSocketTransport(Transport):
    """Persistent WebSocket; responses are matched to requests by id."""

    mode = ConnectionMode.WEBSOCKET

    def __init__(self, target: str, credential: Credential, settings: Settings, project_scope: str):
        super().__init__(target, credential, settings, project_scope)
        self._http: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task | None = None
        self._pending: dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)

    async def open(self) -> None:
        headers = golden_headers(self.credential, self.project_scope)
        self._http = aiohttp.ClientSession()
        try:
            self._ws = await asyncio.wait_for(
                self._http.ws_connect(self.target, headers=headers),
                timeout=self.settings.handshake_timeout,
            )
            self._reader = asyncio.create_task(self._read_loop(), name="mcp-websocket-reader")
            await self.request(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {"tools": {}},
                    "clientInfo": {"name": CLIENT_NAME, "version": __version__},
                },
                timeout=self.settings.handshake_timeout,
            )
        except Exception as e:
            self._closing = True
            await self._teardown()
            self._closing = False
            error = classify_exception(e)
            if isinstance(error, ToolCallError):
                if error.code in (401, 403):
                    raise AuthenticationInvalid(f"WebSocket handshake rejected: {error.message}") from e
                raise NetworkError(f"WebSocket initialize failed: {error.message}") from e
            log.error(f"WebSocket error: {error.message}")
            if error is e:
                raise
            raise error from e
        log.info(f"Connected to MCP WebSocket server at {self.target}")

    async def _read_loop(self) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    log.warning(f"WebSocket error: {ws.exception()}")
                    break
        finally:
            code = ws.close_code
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(NetworkError("WebSocket connection closed"))
            self._pending.clear()
            if not self._closing:
                log.warning(f"WebSocket connection closed ({code})")
                self._emit({**CLOSED_EVENT, "code": code})

    def _handle_message(self, data: str) -> None:
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            log.warning(f"Failed to parse WebSocket message: {data[:80]}")
            return
        if not isinstance(message, dict):
            return

        message_id = message.get("id")
        future = None
        # Our request ids are plain ints; anything else cannot be a reply
        if "method" not in message and isinstance(message_id, int) and not isinstance(message_id, bool):
            future = self._pending.pop(message_id, None)
        if future is None:
            # Server-initiated request, notification or unmatched frame
            self._emit(message)
            return
        if future.done():
            # Caller gave up (timeout/cancel); discard the late response
            return
        if "error" in message:
            error = message["error"]
            if not isinstance(error, dict):
                error = {"message": str(error) if error else "Unknown error"}
            code = error.get("code", -1)
            future.set_exception(
                ToolCallError(str(error.get("message", "Unknown error")), code=code if isinstance(code, int) else -1)
            )
        else:
            future.set_result(message.get("result"))

    async def request(self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None) -> Any:
        """Send a request frame and wait for the matching response."""
        if self._ws is None or self._ws.closed:
            raise NetworkError("WebSocket not connected")
        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        frame: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            frame["params"] = params
        try:
            await self._ws.send_str(json.dumps(frame))
            return await asyncio.wait_for(future, timeout=timeout or self.settings.request_timeout)
        finally:
            self._pending.pop(request_id, None)

    async def _teardown(self) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._reader is not None:
            self._reader.cancel()
            with suppress(asyncio.CancelledError):
                await self._reader
            self._reader = None
        if self._http is not None:
            await self._http.close()
            self._http = None
        self._ws = None

    async def close(self) -> None:
        self._closing = True
        await self._teardown()

    async def health_check(self) -> None:
        try:
            await self.request("ping", timeout=self.settings.health_probe_timeout)
        except MaasError:
            raise
        except Exception as e:
            raise classify_exception(e) from e

    async def list_tools(self) -> list[dict[str, Any]]:
        try:
            result = await self.request("tools/list", {})
        except MaasError:
            raise
        except Exception as e:
            raise classify_exception(e) from e
        tools = (result or {}).get("tools", [])
        return [
            {"name": tool.get("name"), "description": tool.get("description") or "No description available"}
            for tool in tools
        ]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        try:
            return await self.request("tools/call", {"name": name, "arguments": arguments})
        except MaasError:
            raise
        except Exception as e:
            raise classify_exception(e) from e


TRANSPORTS: dict[ConnectionMode, type[Transport]] = {
    ConnectionMode.LOCAL: LocalTransport,
    ConnectionMode.REMOTE: RemoteTransport,
    ConnectionMode.WEBSOCKET: WebSocketTransport,
}
