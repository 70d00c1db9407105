"""Explicitly wired runtime components.

Every command builds one ClientContext and passes it down; nothing in the
package keeps process-wide mutable state.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable

from maas_cli.api import MemoryAPIClient
from maas_cli.auth import AuthManager
from maas_cli.config import Settings
from maas_cli.config_store import ConfigStore
from maas_cli.crypto import CredentialStore
from maas_cli.discovery import ServiceDiscovery
from maas_cli.log_config import get_logger
from maas_cli.mcp.bridge import ToolBridge
from maas_cli.mcp.connector import TransportConnector

log = get_logger("context")


@dataclass
class ClientContext:
    """Container for settings, persisted state and the services built on them.

    Attributes:
        settings: Process settings
        store: Lock-protected config document
        credentials: Vendor key encryption
        discovery: Endpoint resolution
        auth: Credential resolution, validation and refresh
        events: Structured warning events (e.g. discovery_fallback)
    """

    settings: Settings
    store: ConfigStore
    credentials: CredentialStore
    discovery: ServiceDiscovery
    auth: AuthManager
    events: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    async def create(
        cls,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
        credentials: CredentialStore | None = None,
    ) -> "ClientContext":
        """Build and initialize every component against one config directory."""
        settings = settings or Settings()
        store = ConfigStore(settings.config_path, settings.lock_path, settings.lock_timeout)
        await store.init()

        events: list[dict[str, Any]] = []
        credentials = credentials or CredentialStore()
        discovery = ServiceDiscovery(settings, store, events=events, clock=clock)
        auth = AuthManager(settings, store, credentials, discovery, clock=clock)
        await auth.migrate_legacy_vendor_key()

        log.debug(f"Context ready (config={settings.config_path})")
        return cls(
            settings=settings,
            store=store,
            credentials=credentials,
            discovery=discovery,
            auth=auth,
            events=events,
        )

    def api_client(self, base_url: str | None = None) -> MemoryAPIClient:
        return MemoryAPIClient(self.auth, base_url=base_url)

    def connector(self, **kwargs: Any) -> TransportConnector:
        return TransportConnector(self.auth, **kwargs)

    def bridge(self, connector: TransportConnector, api: MemoryAPIClient | None = None) -> ToolBridge:
        return ToolBridge(connector, api or self.api_client())
