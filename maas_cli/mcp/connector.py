"""Connection state machine for the MCP transports.

States: disconnected -> connecting -> connected, with
connected -> health_check_failed -> reconnecting -> connected | disconnected.

One connector owns at most one transport plus three background tasks:
the health monitor, the event dispatcher and a pending reconnect. All of
them are cancelled by disconnect().
"""

import asyncio
import random
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from maas_cli.auth import AuthManager
from maas_cli.config import Settings
from maas_cli.config_store import ConfigDocument
from maas_cli.credentials import Credential
from maas_cli.errors import (
    AuthenticationInvalid,
    AuthenticationRequired,
    MaasError,
    ValidationError,
    classify_exception,
    troubleshooting,
)
from maas_cli.log_config import get_logger
from maas_cli.mcp.retry import DEFAULT_MODE, ConnectionMode, ConnectionState, calculate_backoff
from maas_cli.mcp.transports import TRANSPORTS, RemoteTransport, Transport

log = get_logger("mcp.connector")

NOTIFICATION_HISTORY = 50

TransportFactory = Callable[..., Transport]


def default_transport_factory(
    mode: ConnectionMode,
    target: str,
    credential: Credential,
    settings: Settings,
    project_scope: str,
    sse_url: str | None = None,
) -> Transport:
    if mode == ConnectionMode.REMOTE:
        return RemoteTransport(target, credential, settings, project_scope, sse_url=sse_url)
    return TRANSPORTS[mode](target, credential, settings, project_scope)


class TransportConnector:
    """Connects, monitors and reconnects one MCP transport.

    Args:
        auth: AuthManager supplying credentials, endpoints and persisted preferences
        transport_factory: Builds a transport for (mode, target, ...); injectable for tests
        clock: Time source in seconds
        rng: Jitter source for backoff
        sleep: Awaitable sleep used between connect attempts
    """

    def __init__(
        self,
        auth: AuthManager,
        transport_factory: TransportFactory = default_transport_factory,
        clock: Callable[[], float] = time.time,
        rng: Callable[[], float] = random.random,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.auth = auth
        self.settings = auth.settings
        self.store = auth.store
        self._factory = transport_factory
        self._clock = clock
        self._rng = rng
        self._sleep = sleep

        self.state = ConnectionState.DISCONNECTED
        self.mode: ConnectionMode | None = None
        self.url: str | None = None
        self.transport: Transport | None = None
        self.retry_count = 0
        self.failure_count = 0
        self.reconnect_attempts = 0
        self.started_at: float | None = None
        self.last_health_check_at: float | None = None
        self.notifications: deque[dict[str, Any]] = deque(maxlen=NOTIFICATION_HISTORY)

        self._explicitly_disconnected = False
        self._health_task: asyncio.Task | None = None
        self._dispatch_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED and self.transport is not None

    # ═══════════════════════════════════════════════════════════════════════════════
    # MODE / TARGET RESOLUTION
    # ═══════════════════════════════════════════════════════════════════════════════

    def _select_mode(self, mode: str | None, use_websocket: bool, use_remote: bool) -> ConnectionMode:
        """explicit option > explicit flag > persisted preference > websocket."""
        if mode:
            try:
                return ConnectionMode(mode)
            except ValueError:
                raise ValidationError(
                    f"Unknown connection mode: {mode}",
                    [f"Use one of: {', '.join(m.value for m in ConnectionMode)}"],
                ) from None
        if use_websocket:
            return ConnectionMode.WEBSOCKET
        if use_remote:
            return ConnectionMode.REMOTE
        if self.store.doc.mcp_connection_mode:
            return ConnectionMode(self.store.doc.mcp_connection_mode)
        return DEFAULT_MODE

    async def _resolve_target(
        self, mode: ConnectionMode, url: str | None, server_path: str | None
    ) -> tuple[str, str | None]:
        """(target, sse_url) for the chosen mode."""
        doc = self.store.doc
        if mode == ConnectionMode.LOCAL:
            path = server_path or doc.mcp_server_path or self.settings.mcp_server_path
            if not path:
                raise ValidationError(
                    "No local MCP server path configured",
                    [
                        "Set it with: maas config set mcpServerPath /absolute/path/to/server",
                        "Or pass --server-path, or set MAAS_MCP_SERVER_PATH",
                        "For remote connection, use: maas mcp connect --mode remote",
                    ],
                )
            return path, None

        endpoints = await self.auth.discovery.endpoints()
        if mode == ConnectionMode.WEBSOCKET:
            return url or doc.mcp_websocket_url or endpoints.mcp_ws_base, None
        if url:
            return url, None
        return doc.mcp_server_url or endpoints.mcp_base, endpoints.mcp_sse_base

    async def _persist_preference(self, mode: ConnectionMode, target: str) -> None:
        def apply(doc: ConfigDocument) -> None:
            doc.mcp_connection_mode = mode.value
            if mode == ConnectionMode.LOCAL:
                doc.mcp_server_path = target
            elif mode == ConnectionMode.WEBSOCKET:
                doc.mcp_websocket_url = target
            else:
                doc.mcp_server_url = target

        await self.store.update(apply)

    # ═══════════════════════════════════════════════════════════════════════════════
    # CONNECT
    # ═══════════════════════════════════════════════════════════════════════════════

    async def _require_credential(self) -> Credential:
        """Fail fast, before any connection attempt, on missing or rejected credentials."""
        await self.auth.refresh_if_needed()
        credential = await self.auth.resolve_credential()
        if credential is None:
            raise AuthenticationRequired()

        if self.auth.should_delay_auth():
            delay = self.auth.auth_delay_ms() / 1000
            log.warning(f"{self.auth.failure_count()} recent authentication failures, waiting {delay:.0f}s")
            await self._sleep(delay)

        if not await self.auth.is_authenticated():
            raise AuthenticationInvalid("Stored credential is invalid or expired")
        return credential

    async def connect(
        self,
        mode: str | None = None,
        url: str | None = None,
        server_path: str | None = None,
        use_websocket: bool = False,
        use_remote: bool = False,
    ) -> bool:
        """Connect with bounded retries.

        Returns:
            True when connected; False once network retries are exhausted

        Raises:
            AuthenticationRequired: No credential available
            AuthenticationInvalid: Credential rejected
            ValidationError: Bad mode or missing local server path
        """
        self._explicitly_disconnected = False
        return await self._connect(mode, url, server_path, use_websocket, use_remote)

    async def _connect(
        self,
        mode: str | None,
        url: str | None,
        server_path: str | None,
        use_websocket: bool = False,
        use_remote: bool = False,
    ) -> bool:
        """Connect loop shared by connect() and reconnects.

        Gives up quietly with False as soon as disconnect() has been called.
        """
        credential = await self._require_credential()
        chosen = self._select_mode(mode, use_websocket, use_remote)
        target, sse_url = await self._resolve_target(chosen, url, server_path)
        project_scope = await self.auth.project_scope()

        await self._teardown()
        if self._explicitly_disconnected:
            return False
        self.mode = chosen
        self.url = target

        attempts = self.settings.max_retries + 1
        last_error: MaasError | None = None
        for attempt in range(attempts):
            self.retry_count = attempt
            self.state = ConnectionState.CONNECTING if attempt == 0 else ConnectionState.RECONNECTING
            log.info(f"Connecting to {chosen.value} MCP server at {target} (attempt {attempt + 1}/{attempts})")

            transport = self._factory(chosen, target, credential, self.settings, project_scope, sse_url=sse_url)
            try:
                await transport.open()
            except asyncio.CancelledError:
                await transport.close()
                self.state = ConnectionState.DISCONNECTED
                raise
            except (AuthenticationRequired, AuthenticationInvalid, ValidationError) as e:
                self.state = ConnectionState.DISCONNECTED
                if isinstance(e, AuthenticationInvalid):
                    await self.auth.record_auth_failure()
                await transport.close()
                raise
            except Exception as e:
                await transport.close()
                last_error = classify_exception(e)
                self.failure_count += 1
                if not last_error.retryable:
                    log.error(f"{type(last_error).__name__}: {last_error.message}")
                    break
                if attempt + 1 < attempts:
                    delay = calculate_backoff(
                        attempt, self.settings.backoff_base, self.settings.backoff_cap, self._rng
                    )
                    log.warning(
                        f"Retry {attempt + 1}/{self.settings.max_retries} in {delay:.1f}s "
                        f"after {type(last_error).__name__}: {last_error.message}"
                    )
                    await self._sleep(delay)
                if self._explicitly_disconnected:
                    break
                continue

            try:
                await self._persist_preference(chosen, target)
            except BaseException:
                await transport.close()
                self.state = ConnectionState.DISCONNECTED
                raise
            if self._explicitly_disconnected:
                await transport.close()
                self.state = ConnectionState.DISCONNECTED
                log.debug("Disconnected while connecting, dropping new transport")
                return False
            self._on_connected(transport)
            return True

        self.state = ConnectionState.DISCONNECTED
        if self._explicitly_disconnected:
            return False
        log.error(f"Failed to connect after {self.retry_count + 1} attempts")
        if last_error is not None:
            for line in troubleshooting(last_error, chosen.value, target):
                log.error(f"  {line}")
        return False

    def _on_connected(self, transport: Transport) -> None:
        # No awaits from here on: disconnect() cannot interleave
        self.transport = transport
        self.state = ConnectionState.CONNECTED
        self.retry_count = 0
        self.started_at = self._clock()
        self.last_health_check_at = self._clock()
        self._health_task = asyncio.create_task(self._health_loop(), name="mcp-health-monitor")
        self._dispatch_task = asyncio.create_task(self._dispatch_events(transport), name="mcp-event-dispatch")
        log.info(f"Connected to MCP server ({self.mode.value}) at {self.url}")

    # ═══════════════════════════════════════════════════════════════════════════════
    # HEALTH / RECONNECT
    # ═══════════════════════════════════════════════════════════════════════════════

    async def health_check(self) -> bool:
        """One liveness probe appropriate to the current transport."""
        if self.transport is None:
            return False
        try:
            await self.transport.health_check()
        except Exception as e:
            self.failure_count += 1
            self.state = ConnectionState.HEALTH_CHECK_FAILED
            log.warning(f"Health check failed: {classify_exception(e).message}")
            return False
        self.last_health_check_at = self._clock()
        return True

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.health_interval)
            if not await self.health_check():
                # Reconnect runs in its own task so disconnect() can cancel it
                self._schedule_reconnect(0)
                return

    async def handle_health_check_failure(self) -> bool:
        """Drop the connection and try one full reconnect with the last mode/target."""
        mode, target = self.mode, self.url
        await self._teardown()
        self.state = ConnectionState.DISCONNECTED
        if self._explicitly_disconnected or mode is None:
            return False

        log.info("Attempting to reconnect to MCP server...")
        try:
            if mode == ConnectionMode.LOCAL:
                ok = await self._connect(mode.value, None, target)
            else:
                ok = await self._connect(mode.value, target, None)
        except MaasError as e:
            log.error(f"Reconnect failed: {e.describe()}")
            return False
        if ok:
            log.info("Reconnected to MCP server")
        return ok

    async def _dispatch_events(self, transport: Transport) -> None:
        while True:
            event = await transport.events.get()
            self.notifications.append(event)
            kind = event.get("type")
            if kind == "closed":
                if transport is not self.transport or self._explicitly_disconnected:
                    return
                self.state = ConnectionState.DISCONNECTED
                if self.mode == ConnectionMode.WEBSOCKET:
                    self._schedule_reconnect()
                else:
                    log.warning(f"{self.mode.value} MCP connection closed")
                return
            if kind == "auth_error":
                log.error("Notification stream rejected the credential; run: maas auth login")
            else:
                log.debug(f"MCP notification: {kind or event.get('method')}")

    def _schedule_reconnect(self, delay: float | None = None) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        if delay is None:
            delay = self.settings.reconnect_delay
        log.info(f"Scheduling reconnect in {delay:.0f}s")
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay), name="mcp-reconnect")

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._explicitly_disconnected:
            return
        self.reconnect_attempts += 1
        await self.handle_health_check_failure()

    # ═══════════════════════════════════════════════════════════════════════════════
    # TEARDOWN / STATUS
    # ═══════════════════════════════════════════════════════════════════════════════

    async def _cancel(self, task: asyncio.Task | None) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _teardown(self) -> None:
        current = asyncio.current_task()
        for name in ("_health_task", "_dispatch_task", "_reconnect_task"):
            task = getattr(self, name)
            # The running reconnect keeps its handle so disconnect() can still cancel it
            if task is current:
                continue
            await self._cancel(task)
            setattr(self, name, None)
        if self.transport is not None:
            transport, self.transport = self.transport, None
            await transport.close()

    async def disconnect(self) -> None:
        """Close everything; safe to call repeatedly."""
        was_connected = self.transport is not None
        self._explicitly_disconnected = True
        await self._teardown()
        self.state = ConnectionState.DISCONNECTED
        self.started_at = None
        if was_connected:
            log.info("Disconnected from MCP server")

    def get_connection_status(self) -> dict[str, Any]:
        connected = self.is_connected
        uptime = int((self._clock() - self.started_at) * 1000) if connected and self.started_at else 0
        last_check = (
            datetime.fromtimestamp(self.last_health_check_at, timezone.utc).isoformat()
            if self.last_health_check_at
            else None
        )
        return {
            "connected": connected,
            "mode": self.mode.value if self.mode else None,
            "server": self.url,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "retry_count": self.retry_count,
            "connection_uptime_ms": uptime,
            "last_health_check": last_check,
        }
