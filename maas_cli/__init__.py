"""MaaS CLI - client runtime for the LanOnasis memory service.

Provides:
- Encrypted, lock-protected per-user config
- Service discovery with cached and default fallbacks
- Vendor key, JWT and OAuth authentication
- MCP access over stdio, REST+SSE or WebSocket
"""

__version__ = "2.0.0"

from maas_cli.config import Settings
from maas_cli.context import ClientContext
from maas_cli.errors import MaasError

__all__ = [
    "ClientContext",
    "MaasError",
    "Settings",
]
