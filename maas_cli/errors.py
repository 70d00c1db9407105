"""Error taxonomy for the MaaS CLI runtime.

Every error that reaches the user carries its class name, a one-line
cause and, where one exists, concrete remediation steps.
"""

import asyncio
import ssl

import aiohttp
import httpx


class MaasError(Exception):
    """Base error for the client runtime."""

    category = "unknown"
    retryable = False

    def __init__(self, message: str, remediation: list[str] | None = None):
        super().__init__(message)
        self.message = message
        self.remediation = remediation or []

    def describe(self) -> str:
        """Render `ErrorClass: cause` followed by remediation lines."""
        lines = [f"{type(self).__name__}: {self.message}"]
        lines.extend(f"  → {step}" for step in self.remediation)
        return "\n".join(lines)


class AuthenticationRequired(MaasError):
    """No credential is available."""

    category = "authentication"

    def __init__(self, message: str = "No credentials found", remediation: list[str] | None = None):
        super().__init__(
            message,
            remediation
            or [
                "Run: maas auth login",
                "Or store a vendor key: maas auth vendor-key pk_xxx.sk_xxx",
                "Or set LANONASIS_API_KEY in the environment",
            ],
        )


class AuthenticationInvalid(MaasError):
    """A credential was rejected by the server or is expired."""

    category = "authentication"

    def __init__(self, message: str = "Credential was rejected", remediation: list[str] | None = None):
        super().__init__(
            message,
            remediation
            or [
                "Re-authenticate: maas auth login",
                "If using a vendor key, re-enter it: maas auth vendor-key <key>",
            ],
        )


class NetworkError(MaasError):
    """Timeout, DNS failure, refused connection or TLS failure."""

    category = "network"
    retryable = True

    def __init__(self, message: str, kind: str = "network", remediation: list[str] | None = None):
        super().__init__(message, remediation)
        self.kind = kind


class ServerError(MaasError):
    """5xx from the backend; transient."""

    category = "server"
    retryable = True

    def __init__(self, status_code: int, detail: str = ""):
        super().__init__(f"Server error {status_code}: {detail}".rstrip(": "))
        self.status_code = status_code
        self.detail = detail


class ValidationError(MaasError):
    """Malformed input or stored state; never retried."""

    category = "validation"


class LockTimeout(MaasError):
    """Could not acquire the config lock in time."""

    category = "lock"

    def __init__(self, lock_path: str, timeout: float):
        super().__init__(
            f"Could not acquire config lock {lock_path} within {timeout:.1f}s",
            ["Another maas process may be writing the config; retry shortly"],
        )
        self.lock_path = lock_path
        self.timeout = timeout


class DecryptionError(MaasError):
    """Stored secret could not be decrypted on this machine."""

    category = "decryption"

    def __init__(self, message: str = "Decryption failed - credential may be corrupted or wrong passphrase"):
        super().__init__(
            message,
            [
                "Stored vendor keys only decrypt on the machine that saved them",
                "Re-enter the key: maas auth vendor-key <key>",
            ],
        )


class NotConnected(MaasError):
    """Tool call attempted without a live connection."""

    category = "connection"

    def __init__(self, message: str = "Not connected to MCP server"):
        super().__init__(message, ["Connect first: maas mcp connect"])


class UnknownTool(MaasError):
    """Tool name has no REST mapping in remote mode."""

    category = "validation"

    def __init__(self, name: str, known: list[str]):
        super().__init__(f"Unknown tool: {name}", [f"Available tools: {', '.join(sorted(known))}"])
        self.name = name


class ToolCallError(MaasError):
    """Protocol or REST error response for a tool call."""

    category = "tool"

    def __init__(self, message: str, code: int = -1):
        super().__init__(message)
        self.code = code


def error_for_status(status_code: int, detail: str = "") -> MaasError:
    """Map an HTTP status into the taxonomy."""
    if status_code in (401, 403):
        return AuthenticationInvalid(f"Server rejected credential ({status_code}) {detail}".strip())
    if status_code >= 500:
        return ServerError(status_code, detail)
    return ToolCallError(detail or f"HTTP {status_code}", code=status_code)


def classify_exception(exc: BaseException) -> MaasError:
    """Convert a library exception into a MaasError."""
    if isinstance(exc, MaasError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        return error_for_status(exc.response.status_code, exc.response.text[:200])
    if isinstance(exc, aiohttp.WSServerHandshakeError):
        if exc.status in (401, 403):
            return AuthenticationInvalid(f"WebSocket handshake rejected ({exc.status})")
        if exc.status >= 500:
            return ServerError(exc.status, exc.message)
        return NetworkError(f"WebSocket handshake failed ({exc.status}): {exc.message}")
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return NetworkError(f"Connection timeout: {exc}".rstrip(": "), kind="timeout")
    if isinstance(exc, (ssl.SSLError, aiohttp.ClientSSLError)):
        return NetworkError(f"SSL/TLS error: {exc}", kind="tls")
    if isinstance(exc, (httpx.ConnectError, aiohttp.ClientConnectorError, ConnectionRefusedError)):
        text = str(exc)
        if "certificate" in text.lower() or "ssl" in text.lower():
            return NetworkError(f"SSL/TLS error: {text}", kind="tls")
        if "name or service not known" in text.lower() or "nodename" in text.lower():
            return NetworkError(f"DNS lookup failed: {text}", kind="dns")
        return NetworkError(f"Connection refused: {text}", kind="refused")
    if isinstance(exc, (httpx.TransportError, aiohttp.ClientError, ConnectionError, OSError)):
        return NetworkError(f"{type(exc).__name__}: {exc}")
    return MaasError(f"{type(exc).__name__}: {exc}")


def is_retryable(exc: BaseException) -> bool:
    """True only for network and server errors."""
    return classify_exception(exc).retryable


def troubleshooting(exc: MaasError, mode: str, server: str | None = None) -> list[str]:
    """Transport-specific guidance for a failed connection."""
    if isinstance(exc, AuthenticationRequired):
        return ["No credentials found", "Run: maas auth login"]
    if isinstance(exc, AuthenticationInvalid):
        return ["Authentication failed", "Run: maas auth login (or re-enter your vendor key)"]
    if mode == "local":
        return [
            "Local MCP server not found or failed to start",
            "Check: maas config set mcpServerPath /absolute/path/to/server",
            "For remote connection, use: maas mcp connect --mode remote",
        ]
    health = f"{server.rstrip('/')}/health" if server and server.startswith("http") else "https://mcp.lanonasis.com/health"
    kind = getattr(exc, "kind", "")
    if kind == "timeout":
        return ["Connection timeout", "Check network connectivity and firewall settings"]
    if kind == "tls":
        return ["SSL/TLS certificate issue", "Check system time and installed CA certificates"]
    if kind == "dns":
        return ["DNS lookup failed", "Check network connectivity and the configured server URL"]
    if kind == "refused":
        return ["Connection refused", f"Check {health} or try another mode (--mode remote)"]
    if isinstance(exc, ServerError):
        return ["Server is having problems", f"Check {health} and retry later"]
    return [f"Check {health}", "Run with CLI_VERBOSE=true for details"]
