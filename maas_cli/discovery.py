"""Service discovery for backend base URLs.

Resolution order:
1. Manual endpoint overrides stored in the config (no network)
2. The first discovery document (/.well-known/onasis.json) that answers
3. A previous discovery result younger than 24 hours
4. Environment-variable fallbacks, else hard-coded production defaults

Step 4 always emits a `discovery_fallback` warning event naming its source.
"""

import time
from datetime import datetime, timezone
from typing import Any, Callable

import httpx

from maas_cli.config import DEFAULT_PROJECT_SCOPE, Settings
from maas_cli.config_store import ConfigDocument, ConfigStore, DiscoveredEndpoints
from maas_cli.log_config import get_logger, log_timing

log = get_logger("discovery")

CACHE_TTL_SECONDS = 24 * 60 * 60
FALLBACK_RETRY_SECONDS = 60

DEFAULT_ENDPOINTS = {
    "auth_base": "https://api.lanonasis.com",
    "memory_base": "https://api.lanonasis.com/api/v1",
    "mcp_base": "https://mcp.lanonasis.com",
    "mcp_ws_base": "wss://mcp.lanonasis.com/ws",
    "mcp_sse_base": "https://mcp.lanonasis.com/sse",
    "project_scope": DEFAULT_PROJECT_SCOPE,
}


class DiscoveryFailure(Exception):
    """A single discovery URL failed; carries the diagnostic category."""

    def __init__(self, url: str, category: str, detail: str):
        super().__init__(f"{url}: {category}: {detail}")
        self.url = url
        self.category = category
        self.detail = detail


def categorize_error(exc: BaseException | None = None, status_code: int | None = None) -> str:
    """Diagnostic category for a failed discovery attempt.

    One of network_error, timeout, server_error, invalid_response, unknown.
    """
    if status_code is not None:
        if status_code >= 500:
            return "server_error"
        return "invalid_response"
    if isinstance(exc, httpx.TimeoutException):
        return "timeout"
    if isinstance(exc, httpx.TransportError):
        return "network_error"
    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return "invalid_response"
    return "unknown"


def _pick(doc: dict[str, Any], *paths: str) -> str | None:
    """First non-empty string found at any dotted path."""
    for path in paths:
        node: Any = doc
        for part in path.split("."):
            if not isinstance(node, dict):
                node = None
                break
            node = node.get(part)
        if isinstance(node, str) and node:
            return node.rstrip("/")
    return None


def parse_discovery_document(doc: Any) -> DiscoveredEndpoints:
    """Map a discovery document into DiscoveredEndpoints.

    Accepts the flat `*_base` keys as well as the nested `auth`/`endpoints`
    layout. `auth_base` is mandatory; other fields fall back to defaults.

    Raises:
        ValueError: The document is not an object or lacks an auth base
    """
    if not isinstance(doc, dict):
        raise ValueError("discovery document is not an object")

    auth_base = _pick(doc, "auth_base", "auth.base", "auth.login")
    if not auth_base:
        raise ValueError("discovery document has no auth_base")

    memory_base = _pick(doc, "memory_base", "endpoints.http", "endpoints.memory") or f"{auth_base}/api/v1"
    mcp_base = _pick(doc, "mcp_base", "endpoints.mcp") or DEFAULT_ENDPOINTS["mcp_base"]
    mcp_ws_base = _pick(doc, "mcp_ws_base", "endpoints.websocket") or DEFAULT_ENDPOINTS["mcp_ws_base"]
    mcp_sse_base = _pick(doc, "mcp_sse_base", "endpoints.sse") or f"{mcp_base}/sse"

    return DiscoveredEndpoints(
        auth_base=auth_base,
        memory_base=memory_base,
        mcp_base=mcp_base,
        mcp_ws_base=mcp_ws_base,
        mcp_sse_base=mcp_sse_base,
        project_scope=_pick(doc, "project_scope") or DEFAULT_PROJECT_SCOPE,
    )


class ServiceDiscovery:
    """Resolves and caches backend endpoints.

    Args:
        settings: Process settings (URLs, timeouts, env overrides)
        store: Config store used to persist results
        events: List that receives structured warning events
        clock: Time source in seconds (injectable for tests)
    """

    def __init__(
        self,
        settings: Settings,
        store: ConfigStore,
        events: list[dict[str, Any]] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.store = store
        self.events = events if events is not None else []
        self.clock = clock
        self._fallback_at: float | None = None

    async def endpoints(self) -> DiscoveredEndpoints:
        """Endpoints for the next request.

        Manual overrides and discovery results younger than 24 hours are
        used as stored. Anything else, including endpoints written by a
        fallback, triggers a new discovery. After a failed discovery the
        fallback is reused for FALLBACK_RETRY_SECONDS before trying again.
        """
        doc = self.store.doc
        if doc.discovered_services is not None:
            if doc.manual_endpoint_overrides or self.settings.skip_discovery:
                return doc.discovered_services
            if self._fresh_cache() is not None:
                return doc.discovered_services
            if self._fallback_at is not None and self.clock() - self._fallback_at < FALLBACK_RETRY_SECONDS:
                return doc.discovered_services
        return await self.discover()

    async def discover(self, verbose: bool = False) -> DiscoveredEndpoints:
        """Resolve the live endpoint set and persist it."""
        verbose = verbose or self.settings.verbose
        doc = self.store.doc

        if doc.manual_endpoint_overrides and doc.discovered_services is not None:
            log.debug("Manual endpoint overrides set, skipping discovery")
            return doc.discovered_services

        failures: list[DiscoveryFailure] = []
        if self.settings.skip_discovery:
            log.debug("SKIP_SERVICE_DISCOVERY set, not fetching discovery document")
        else:
            endpoints = await self._fetch_first(failures, verbose)
            if endpoints is not None:
                discovered_at = datetime.fromtimestamp(self.clock(), timezone.utc).isoformat()
                self._fallback_at = None
                await self._store_endpoints(endpoints, last_service_discovery=discovered_at)
                return endpoints

        cached = self._fresh_cache()
        if cached is not None:
            log.debug("Discovery unavailable, reusing cached endpoints")
            return cached

        endpoints, source = self._fallback()
        self._emit_fallback(source, failures)
        self._fallback_at = self.clock()
        # No discovery timestamp: the next lookup past the retry window tries again
        await self._store_endpoints(endpoints, last_service_discovery=None)
        return endpoints

    async def _store_endpoints(self, endpoints: DiscoveredEndpoints, last_service_discovery: str | None) -> None:
        def apply(doc: ConfigDocument) -> None:
            if doc.manual_endpoint_overrides and doc.discovered_services is not None:
                return
            doc.discovered_services = endpoints
            doc.last_service_discovery = last_service_discovery

        await self.store.update(apply)

    async def _fetch_first(self, failures: list[DiscoveryFailure], verbose: bool) -> DiscoveredEndpoints | None:
        async with httpx.AsyncClient(timeout=self.settings.discovery_timeout) as client:
            for url in self.settings.discovery_urls:
                try:
                    with log_timing(f"GET {url}", log):
                        response = await client.get(url, headers={"Accept": "application/json"})
                    if response.status_code != 200:
                        raise DiscoveryFailure(
                            url, categorize_error(status_code=response.status_code), f"HTTP {response.status_code}"
                        )
                    try:
                        endpoints = parse_discovery_document(response.json())
                    except ValueError as e:
                        raise DiscoveryFailure(url, "invalid_response", str(e)) from None
                except DiscoveryFailure as failure:
                    failures.append(failure)
                except httpx.HTTPError as e:
                    failures.append(DiscoveryFailure(url, categorize_error(e), str(e) or type(e).__name__))
                else:
                    if verbose:
                        log.info(f"Discovered services from {url}")
                    return endpoints

                if verbose:
                    last = failures[-1]
                    log.info(f"Discovery via {url} failed ({last.category}): {last.detail}")
        return None

    def _fresh_cache(self) -> DiscoveredEndpoints | None:
        doc = self.store.doc
        if doc.discovered_services is None or not doc.last_service_discovery:
            return None
        try:
            discovered_at = datetime.fromisoformat(doc.last_service_discovery).timestamp()
        except ValueError:
            return None
        if self.clock() - discovered_at < CACHE_TTL_SECONDS:
            return doc.discovered_services
        return None

    def _fallback(self) -> tuple[DiscoveredEndpoints, str]:
        overrides = dict(self.settings.endpoint_overrides)
        if self.settings.api_url and "memory_base" not in overrides:
            overrides["memory_base"] = self.settings.api_url.rstrip("/")
        if overrides:
            return DiscoveredEndpoints(**{**DEFAULT_ENDPOINTS, **overrides}), "environment"
        return DiscoveredEndpoints(**DEFAULT_ENDPOINTS), "default"

    def _emit_fallback(self, source: str, failures: list[DiscoveryFailure]) -> None:
        categories = sorted({f.category for f in failures}) or ["skipped"]
        event = {
            "event": "discovery_fallback",
            "source": source,
            "categories": categories,
            "timestamp": self.clock(),
        }
        self.events.append(event)
        log.bind(event="discovery_fallback", source=source).warning(
            f"Service discovery failed ({', '.join(categories)}), using {source} endpoints"
        )

    async def set_manual_endpoints(self, **endpoints: str) -> DiscoveredEndpoints:
        """Pin endpoints by hand; discovery stops overwriting them."""
        current = self.store.doc.discovered_services
        base = current.model_dump() if current else dict(DEFAULT_ENDPOINTS)
        base.update({k: v.rstrip("/") for k, v in endpoints.items() if v})
        pinned = DiscoveredEndpoints(**base)

        def apply(doc: ConfigDocument) -> None:
            doc.discovered_services = pinned
            doc.manual_endpoint_overrides = True

        await self.store.update(apply)
        return pinned

    async def clear_manual_endpoints(self) -> None:
        def apply(doc: ConfigDocument) -> None:
            doc.manual_endpoint_overrides = False
            doc.last_service_discovery = None

        await self.store.update(apply)
