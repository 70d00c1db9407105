"""Process settings for the MaaS CLI runtime.

Simple dataclass-based configuration with sensible defaults.
Override via environment variables, mostly with the MAAS_ prefix; a few
names (LANONASIS_API_KEY, MEMORY_API_URL, CLI_VERBOSE,
SKIP_SERVICE_DISCOVERY) are shared with the other Onasis clients.

These are *process* settings. The persisted per-user document (tokens,
discovered endpoints, preferences) lives in config_store.py.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from maas_cli.log_config import get_logger

log = get_logger("config")

# Load .env from the working directory if present
load_dotenv()

# Discovery documents per environment tier, in attempt order
DISCOVERY_URLS: dict[str, list[str]] = {
    "production": [
        "https://api.lanonasis.com/.well-known/onasis.json",
        "https://mcp.lanonasis.com/.well-known/onasis.json",
    ],
    "staging": [
        "https://staging-api.lanonasis.com/.well-known/onasis.json",
        "https://api.lanonasis.com/.well-known/onasis.json",
    ],
    "development": [
        "http://localhost:3000/.well-known/onasis.json",
        "https://api.lanonasis.com/.well-known/onasis.json",
    ],
}

DEFAULT_PROJECT_SCOPE = "lanonasis-maas"


def _get_env(key: str, default: str) -> str:
    """Get environment variable with MAAS_ prefix."""
    return os.getenv(f"MAAS_{key}", default)


def _get_env_bool(key: str, default: bool) -> bool:
    """Get boolean environment variable (unprefixed)."""
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in ("true", "1", "yes")


def _get_env_float(key: str, default: float) -> float:
    val = os.getenv(f"MAAS_{key}")
    if val is None:
        return default
    try:
        return float(val)
    except ValueError:
        log.warning(f"Ignoring non-numeric MAAS_{key}={val!r}")
        return default


@dataclass
class Settings:
    """Runtime settings.

    Attributes:
        config_dir: Directory holding config.json and its lock (default: ~/.maas)
        environment: Environment tier selecting discovery hosts
        api_key: API key from the environment, lowest-precedence credential
        api_url: Explicit API base URL override
        endpoint_overrides: Per-endpoint fallback bases from the environment
        verbose: Verbose discovery/connection output
        skip_discovery: Never fetch the discovery document
        mcp_server_path: Executable for the local stdio transport
    """

    config_dir: Path = field(
        default_factory=lambda: Path(_get_env("CONFIG_DIR", str(Path.home() / ".maas"))).expanduser()
    )
    environment: str = field(default_factory=lambda: _get_env("ENV", "production").lower())
    api_key: str | None = field(default_factory=lambda: os.getenv("LANONASIS_API_KEY") or None)
    api_url: str | None = field(default_factory=lambda: os.getenv("MEMORY_API_URL") or None)
    endpoint_overrides: dict[str, str] = field(
        default_factory=lambda: {
            name: value
            for name, value in {
                "auth_base": _get_env("AUTH_BASE", ""),
                "memory_base": _get_env("MEMORY_BASE", ""),
                "mcp_base": _get_env("MCP_BASE", ""),
                "mcp_ws_base": _get_env("MCP_WS_BASE", ""),
                "mcp_sse_base": _get_env("MCP_SSE_BASE", ""),
            }.items()
            if value
        }
    )
    verbose: bool = field(default_factory=lambda: _get_env_bool("CLI_VERBOSE", False))
    skip_discovery: bool = field(default_factory=lambda: _get_env_bool("SKIP_SERVICE_DISCOVERY", False))
    mcp_server_path: str | None = field(default_factory=lambda: _get_env("MCP_SERVER_PATH", "") or None)

    # Timeouts and intervals (seconds)
    lock_timeout: float = field(default_factory=lambda: _get_env_float("LOCK_TIMEOUT", 5.0))
    discovery_timeout: float = 10.0
    request_timeout: float = field(default_factory=lambda: _get_env_float("REQUEST_TIMEOUT", 10.0))
    auth_check_timeout: float = 5.0
    health_probe_timeout: float = 5.0
    health_interval: float = field(default_factory=lambda: _get_env_float("HEALTH_INTERVAL", 30.0))
    reconnect_delay: float = 5.0
    handshake_timeout: float = 10.0

    # Connect retry policy
    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_cap: float = 10.0

    def __post_init__(self):
        if isinstance(self.config_dir, str):
            self.config_dir = Path(self.config_dir).expanduser()
        if self.environment not in DISCOVERY_URLS:
            log.warning(f"Unknown MAAS_ENV={self.environment!r}, using production")
            self.environment = "production"

        log.debug(f"config_dir={self.config_dir}")
        log.debug(f"environment={self.environment}, skip_discovery={self.skip_discovery}")
        log.debug(f"endpoint_overrides={sorted(self.endpoint_overrides)}")

    @property
    def config_path(self) -> Path:
        return self.config_dir / "config.json"

    @property
    def lock_path(self) -> Path:
        return self.config_dir / "config.lock"

    @property
    def discovery_urls(self) -> list[str]:
        """Discovery documents to try, in order."""
        urls = list(DISCOVERY_URLS[self.environment])
        if self.api_url:
            base = self.api_url.rstrip("/")
            if base.endswith("/api/v1"):
                base = base[: -len("/api/v1")]
            urls.insert(0, f"{base}/.well-known/onasis.json")
        return urls
