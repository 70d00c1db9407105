"""REST client for the memory API.

Makes HTTP requests to the memory service, attaching the golden-contract
headers (credential, X-Auth-Method, X-Project-Scope, X-Request-ID) and
mapping failures into the error taxonomy.
"""

from typing import Any

import httpx

from maas_cli.auth import AuthManager
from maas_cli.errors import AuthenticationRequired, classify_exception, error_for_status
from maas_cli.log_config import get_logger

log = get_logger("api")


class MemoryAPIClient:
    """HTTP client for the memory REST API.

    Handles:
    - Async HTTP requests against the discovered memory base
    - Credential refresh before each authenticated request
    - Per-request golden-contract headers
    - Error mapping (401/403, 5xx, network)
    """

    def __init__(
        self,
        auth: AuthManager,
        base_url: str | None = None,
        timeout: float | None = None,
    ):
        """Initialize the client.

        Args:
            auth: AuthManager supplying credentials and endpoints
            base_url: Memory API base (defaults to the discovered memory_base)
            timeout: Request timeout in seconds
        """
        self.auth = auth
        self._base_url = base_url
        self.timeout = timeout if timeout is not None else auth.settings.request_timeout
        self._client: httpx.AsyncClient | None = None

    async def base_url(self) -> str:
        if self._base_url is None:
            endpoints = await self.auth.discovery.endpoints()
            self._base_url = endpoints.memory_base
        return self._base_url.rstrip("/")

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=await self.base_url(),
                headers={"Content-Type": "application/json", "Accept": "application/json"},
                timeout=httpx.Timeout(self.timeout),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "MemoryAPIClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def request(
        self,
        method: str,
        path: str,
        json_data: Any | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Make an authenticated request.

        Args:
            method: HTTP method (GET, POST, etc.)
            path: Path relative to the memory base (e.g. "/memory/search")
            json_data: Request body
            params: Query parameters

        Returns:
            Decoded JSON body, or None for empty responses

        Raises:
            AuthenticationRequired: No credential available
            AuthenticationInvalid: 401/403 from the server
            ServerError: 5xx
            NetworkError: Transport failure
            ToolCallError: Other 4xx
        """
        await self.auth.refresh_if_needed()
        credential = await self.auth.resolve_credential()
        if credential is None:
            raise AuthenticationRequired()
        headers = await self.auth.auth_headers(credential)

        client = await self._get_client()
        try:
            response = await client.request(
                method=method,
                url=path,
                json=json_data,
                params=params,
                headers=headers,
            )
        except httpx.RequestError as e:
            log.error(f"Request to {path} failed: {e}")
            raise classify_exception(e) from e

        if response.status_code >= 400:
            try:
                error_data = response.json()
                detail = error_data.get("error") or error_data.get("detail") or response.text
                if isinstance(detail, dict):
                    detail = detail.get("message", str(detail))
            except (ValueError, AttributeError):
                detail = response.text
            log.debug(f"{method} {path} -> {response.status_code} ({headers.get('X-Request-ID')})")
            raise error_for_status(response.status_code, str(detail))

        if not response.content:
            return None
        return response.json()

    # ═══════════════════════════════════════════════════════════════════════════════
    # MEMORY API
    # ═══════════════════════════════════════════════════════════════════════════════

    async def create_memory(self, title: str, content: str, memory_type: str = "context", tags: list[str] | None = None) -> dict:
        data: dict[str, Any] = {"title": title, "content": content, "memory_type": memory_type}
        if tags:
            data["tags"] = tags
        return await self.request("POST", "/memory", json_data=data)

    async def list_memories(self, page: int = 1, limit: int = 20, **filters: Any) -> dict:
        params = {"page": page, "limit": limit, **{k: v for k, v in filters.items() if v is not None}}
        return await self.request("GET", "/memory", params=params)

    async def get_memory(self, memory_id: str) -> dict:
        return await self.request("GET", f"/memory/{memory_id}")

    async def update_memory(self, memory_id: str, **fields: Any) -> dict:
        return await self.request("PUT", f"/memory/{memory_id}", json_data=fields)

    async def delete_memory(self, memory_id: str) -> None:
        await self.request("DELETE", f"/memory/{memory_id}")

    async def search_memories(self, query: str, limit: int = 10, threshold: float | None = None) -> dict:
        data: dict[str, Any] = {"query": query, "limit": limit}
        if threshold is not None:
            data["threshold"] = threshold
        return await self.request("POST", "/memory/search", json_data=data)

    async def health(self) -> dict:
        """Unauthenticated health probe of the memory service."""
        client = await self._get_client()
        try:
            response = await client.get("/health")
        except httpx.RequestError as e:
            raise classify_exception(e) from e
        if response.status_code >= 400:
            raise error_for_status(response.status_code, response.text[:200])
        return response.json()
