"""Static MCP-tool to REST mapping used in remote mode.

Plain REST has no tool discovery RPC, so remote mode declares its tools
here. Paths are relative to the discovered memory base (…/api/v1).
"""

from dataclasses import dataclass, field
from typing import Any, Callable

ID_PLACEHOLDER = "{id}"
ID_ARG_NAMES = ("id", "memory_id")


def _passthrough(args: dict[str, Any]) -> dict[str, Any] | None:
    return dict(args)


def _no_body(args: dict[str, Any]) -> dict[str, Any] | None:
    return None


def _without_id(args: dict[str, Any]) -> dict[str, Any] | None:
    return {k: v for k, v in args.items() if k not in ID_ARG_NAMES}


@dataclass(frozen=True)
class RemoteToolMapping:
    """How one protocol tool maps onto a REST call."""

    http_method: str
    path_template: str
    description: str
    arg_transform: Callable[[dict[str, Any]], dict[str, Any] | None] = field(default=_passthrough)

    @property
    def needs_id(self) -> bool:
        return ID_PLACEHOLDER in self.path_template


REMOTE_TOOLS: dict[str, RemoteToolMapping] = {
    "memory_create_memory": RemoteToolMapping("POST", "/memory", "Create a new memory entry"),
    "memory_search_memories": RemoteToolMapping(
        "POST", "/memory/search", "Search memories using semantic search"
    ),
    "memory_get_memory": RemoteToolMapping("GET", "/memory/{id}", "Get a specific memory by ID", _no_body),
    "memory_update_memory": RemoteToolMapping(
        "PUT", "/memory/{id}", "Update an existing memory", _without_id
    ),
    "memory_delete_memory": RemoteToolMapping("DELETE", "/memory/{id}", "Delete a memory", _no_body),
    "memory_list_memories": RemoteToolMapping("GET", "/memory", "List all memories with pagination"),
}


def remote_tool_list() -> list[dict[str, str]]:
    return [{"name": name, "description": mapping.description} for name, mapping in REMOTE_TOOLS.items()]
