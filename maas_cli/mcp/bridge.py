"""Tool invocation on top of a connected TransportConnector.

Local and websocket modes speak the protocol natively. Remote mode has no
tool RPC, so calls are translated to REST through REMOTE_TOOLS.
"""

from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

from maas_cli.api import MemoryAPIClient
from maas_cli.errors import NotConnected, ToolCallError, UnknownTool, ValidationError
from maas_cli.log_config import get_logger
from maas_cli.mcp.connector import TransportConnector
from maas_cli.mcp.retry import ConnectionMode
from maas_cli.mcp.tools import ID_ARG_NAMES, ID_PLACEHOLDER, REMOTE_TOOLS, remote_tool_list

log = get_logger("mcp.bridge")


@dataclass
class ToolResult:
    """Outcome of one tool call; `error`/`code` are set on failure."""

    data: Any = None
    error: str | None = None
    code: int | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ToolBridge:
    def __init__(self, connector: TransportConnector, api: MemoryAPIClient):
        self.connector = connector
        self.api = api

    def _require_connection(self) -> None:
        if not self.connector.is_connected:
            raise NotConnected()

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> ToolResult:
        """Invoke a tool.

        Raises:
            NotConnected: No live connection
            UnknownTool: Remote mode and `name` has no REST mapping
            ValidationError: An {id} path needs an id argument that is missing
        """
        self._require_connection()
        args = dict(arguments or {})
        if self.connector.mode == ConnectionMode.REMOTE:
            return await self._call_remote(name, args)

        try:
            data = await self.connector.transport.call_tool(name, args)
        except ToolCallError as e:
            return ToolResult(error=e.message, code=e.code)
        return ToolResult(data=data)

    async def _call_remote(self, name: str, args: dict[str, Any]) -> ToolResult:
        mapping = REMOTE_TOOLS.get(name)
        if mapping is None:
            raise UnknownTool(name, list(REMOTE_TOOLS))

        path = mapping.path_template
        if mapping.needs_id:
            memory_id = next((args[k] for k in ID_ARG_NAMES if args.get(k) not in (None, "")), None)
            if memory_id is None:
                raise ValidationError(f"Tool {name} requires an 'id' argument")
            path = path.replace(ID_PLACEHOLDER, quote(str(memory_id), safe=""))

        payload = mapping.arg_transform(args)
        if mapping.http_method == "GET":
            json_data, params = None, payload or None
        else:
            json_data, params = payload, None

        log.debug(f"{name} -> {mapping.http_method} {path}")
        try:
            data = await self.api.request(mapping.http_method, path, json_data=json_data, params=params)
        except ToolCallError as e:
            return ToolResult(error=e.message, code=e.code)
        return ToolResult(data=data)

    async def list_tools(self) -> list[dict[str, Any]]:
        self._require_connection()
        if self.connector.mode == ConnectionMode.REMOTE:
            return remote_tool_list()
        return await self.connector.transport.list_tools()
