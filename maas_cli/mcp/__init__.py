"""MCP connectivity for the MaaS CLI.

Three interchangeable transports behind one connector:
- local: protocol server spawned over stdio
- remote: REST per tool call plus an SSE notification stream
- websocket: persistent authenticated WebSocket (default)
"""

from maas_cli.mcp.bridge import ToolBridge, ToolResult
from maas_cli.mcp.connector import TransportConnector
from maas_cli.mcp.retry import ConnectionMode, ConnectionState, calculate_backoff

__all__ = [
    "ConnectionMode",
    "ConnectionState",
    "ToolBridge",
    "ToolResult",
    "TransportConnector",
    "calculate_backoff",
]
