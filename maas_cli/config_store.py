"""Versioned, crash-safe JSON config document.

The document lives at <config dir>/config.json. Every write is a full
replace under an advisory lock:

1. Create <config dir>/config.lock exclusively and write our PID into it.
   If it exists, read the PID; a dead owner means a stale lock, which is
   removed before retrying. Give up with LockTimeout after `lock_timeout`.
2. update() re-reads config.json and applies its change to that copy, so
   fields another process wrote in the meantime survive.
3. Write the document to a uniquely named temp file in the same directory.
4. os.replace() the temp file over config.json.
5. Remove the lock (always, even when the write failed).

Readers therefore only ever see a complete document.
"""

import asyncio
import json
import os
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from maas_cli.errors import LockTimeout, ValidationError
from maas_cli.log_config import get_logger

log = get_logger("config_store")

CURRENT_VERSION = "2.0"
LOCK_POLL_INTERVAL = 0.05  # seconds


class DiscoveredEndpoints(BaseModel):
    """Backend base URLs resolved by service discovery."""

    model_config = ConfigDict(extra="ignore")

    auth_base: str
    memory_base: str
    mcp_base: str
    mcp_ws_base: str
    mcp_sse_base: str
    project_scope: str


class ConfigDocument(BaseModel):
    """Persisted per-user state. JSON keys are camelCase."""

    model_config = ConfigDict(populate_by_name=True, extra="allow", validate_assignment=True)

    version: str | None = None
    last_updated: str | None = Field(default=None, alias="lastUpdated")
    api_url: str | None = Field(default=None, alias="apiUrl")

    # Authentication
    auth_method: Literal["jwt", "vendor_key", "oauth"] | None = Field(default=None, alias="authMethod")
    token: str | None = None
    token_expiry: int | None = Field(default=None, alias="tokenExpiry")
    refresh_token: str | None = Field(default=None, alias="refreshToken")
    vendor_key: dict[str, Any] | str | None = Field(default=None, alias="vendorKey")
    user: dict[str, Any] | None = None
    last_validated: str | None = Field(default=None, alias="lastValidated")
    auth_failure_count: int = Field(default=0, alias="authFailureCount", ge=0)
    last_auth_failure: str | None = Field(default=None, alias="lastAuthFailure")
    device_id: str | None = Field(default=None, alias="deviceId")

    # Service discovery
    discovered_services: DiscoveredEndpoints | None = Field(default=None, alias="discoveredServices")
    last_service_discovery: str | None = Field(default=None, alias="lastServiceDiscovery")
    manual_endpoint_overrides: bool = Field(default=False, alias="manualEndpointOverrides")

    # MCP preferences
    mcp_connection_mode: Literal["local", "remote", "websocket"] | None = Field(
        default=None, alias="mcpConnectionMode"
    )
    mcp_server_path: str | None = Field(default=None, alias="mcpServerPath")
    mcp_server_url: str | None = Field(default=None, alias="mcpServerUrl")
    mcp_websocket_url: str | None = Field(default=None, alias="mcpWebSocketUrl")

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _version_tuple(version: str | None) -> tuple[int, ...]:
    if not version:
        return ()
    try:
        return tuple(int(part) for part in version.split("."))
    except ValueError:
        return ()


def _process_alive(pid: int) -> bool:
    """Signal-0 probe; EPERM still means the process exists."""
    try:
        os.kill(pid, 0)
        return True
    except PermissionError:
        return True
    except OSError:
        return False


class ConfigStore:
    """Single-writer store for the ConfigDocument.

    Args:
        config_path: Path to config.json
        lock_path: Sibling lock file
        lock_timeout: Seconds to wait for the lock before LockTimeout
    """

    def __init__(self, config_path: Path, lock_path: Path | None = None, lock_timeout: float = 5.0):
        self.config_path = Path(config_path)
        self.lock_path = Path(lock_path) if lock_path else self.config_path.with_suffix(".lock")
        self.lock_timeout = lock_timeout
        self.doc = ConfigDocument(version=CURRENT_VERSION)
        # PID on the first line for liveness probes, owner token on the second
        self._lock_content = f"{os.getpid()}\n{uuid.uuid4().hex}"

    @property
    def config_dir(self) -> Path:
        return self.config_path.parent

    # -- load / migrate -----------------------------------------------------

    async def init(self) -> None:
        """Create the config directory and load the document."""
        await asyncio.to_thread(self.config_dir.mkdir, parents=True, exist_ok=True)
        await self.load()

    async def load(self) -> ConfigDocument:
        """Read the document; a missing or unparseable file yields a fresh one.

        Raises:
            ValidationError: The file is valid JSON but violates the schema
        """
        raw = await asyncio.to_thread(self._read_raw)
        if raw is None:
            self.doc = ConfigDocument(version=CURRENT_VERSION)
            return self.doc

        self.doc = self._parse(raw)
        await self.migrate()
        return self.doc

    def _parse(self, raw: dict[str, Any]) -> ConfigDocument:
        try:
            return ConfigDocument.model_validate(raw)
        except PydanticValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(p) for p in first.get("loc", ()))
            raise ValidationError(
                f"Malformed config document {self.config_path}: {field}: {first.get('msg')}",
                [f"Fix or delete {self.config_path} and log in again"],
            ) from None

    def _read_raw(self) -> dict[str, Any] | None:
        try:
            text = self.config_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            log.warning(f"Config at {self.config_path} is corrupt ({e}), starting fresh")
            return None
        if not isinstance(data, dict):
            log.warning(f"Config at {self.config_path} is not an object, starting fresh")
            return None
        return data

    async def migrate(self) -> bool:
        """Stamp the current version on older documents and persist.

        Hook for future schema changes; today it only re-stamps.
        """
        if _version_tuple(self.doc.version) >= _version_tuple(CURRENT_VERSION):
            return False
        log.info(f"Migrating config from version {self.doc.version or 'unversioned'} to {CURRENT_VERSION}")

        def stamp(doc: ConfigDocument) -> None:
            doc.version = CURRENT_VERSION

        await self.update(stamp)
        return True

    # -- save ---------------------------------------------------------------

    @staticmethod
    def _serialize(doc: ConfigDocument) -> str:
        doc.version = doc.version or CURRENT_VERSION
        doc.last_updated = datetime.now(timezone.utc).isoformat()
        return json.dumps(doc.to_json(), indent=2)

    async def save(self) -> None:
        """Atomically replace the on-disk document with the in-memory one.

        Whatever is on disk is overwritten; field changes go through update().
        """
        payload = self._serialize(self.doc)
        await self._acquire_lock()
        try:
            await asyncio.to_thread(self._write_atomic, payload)
        finally:
            await asyncio.to_thread(self._release_lock)

    async def update(self, mutator: Callable[[ConfigDocument], ConfigDocument | None]) -> ConfigDocument:
        """Read, modify and write the document as one step under the lock.

        `mutator` edits the freshly read document in place or returns a
        replacement; the result becomes the in-memory document. With no
        file on disk yet, it starts from a copy of the in-memory document.

        Raises:
            LockTimeout: Lock not acquired within `lock_timeout`
            ValidationError: The file on disk or the change violates the schema
        """
        await self._acquire_lock()
        try:
            raw = await asyncio.to_thread(self._read_raw)
            doc = self._parse(raw) if raw is not None else self.doc.model_copy(deep=True)
            doc = mutator(doc) or doc
            payload = self._serialize(doc)
            await asyncio.to_thread(self._write_atomic, payload)
        finally:
            await asyncio.to_thread(self._release_lock)
        self.doc = doc
        return doc

    def _write_atomic(self, payload: str) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = self.config_dir / f".{self.config_path.name}.{os.getpid()}.{uuid.uuid4().hex}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.config_path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

    # -- advisory lock ------------------------------------------------------

    async def _acquire_lock(self) -> None:
        deadline = time.monotonic() + self.lock_timeout
        await asyncio.to_thread(self.config_dir.mkdir, parents=True, exist_ok=True)
        while True:
            if await asyncio.to_thread(self._try_create_lock):
                return
            await asyncio.to_thread(self._reclaim_if_stale)
            if time.monotonic() >= deadline:
                raise LockTimeout(str(self.lock_path), self.lock_timeout)
            await asyncio.sleep(LOCK_POLL_INTERVAL)

    def _try_create_lock(self) -> bool:
        try:
            # O_CREAT | O_EXCL is atomic: fails if file already exists
            fd = os.open(str(self.lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as f:
            f.write(self._lock_content)
        return True

    def _reclaim_if_stale(self) -> None:
        try:
            content = self.lock_path.read_text().strip()
            mtime = self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return

        try:
            pid = int(content.splitlines()[0])
        except (ValueError, IndexError):
            # Owner may be between create and write; only reclaim when old
            if time.time() - mtime > self.lock_timeout:
                log.debug(f"Removing unreadable lock {self.lock_path}")
                self.lock_path.unlink(missing_ok=True)
            return

        if not _process_alive(pid):
            log.debug(f"Lock owner {pid} no longer exists, cleaning stale lock")
            self.lock_path.unlink(missing_ok=True)

    def _release_lock(self) -> None:
        try:
            if self.lock_path.read_text() == self._lock_content:
                self.lock_path.unlink()
        except FileNotFoundError:
            pass

    # -- generic access -----------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Read a value by its JSON (camelCase) key."""
        value = self.doc.to_json().get(key)
        return default if value is None else value

    def set(self, key: str, value: Any) -> None:
        """Set a value by its JSON key; the whole document is re-validated."""
        self.doc = _with_value(self.doc, key, value)

    async def set_and_save(self, key: str, value: Any) -> None:
        # Validate before taking the lock
        _with_value(self.doc, key, value)
        await self.update(lambda doc: _with_value(doc, key, value))

    async def clear(self) -> None:
        """Reset to an empty document, keeping the device id."""
        await self.update(lambda doc: ConfigDocument(version=CURRENT_VERSION, deviceId=doc.device_id))

    async def exists(self) -> bool:
        return await asyncio.to_thread(self.config_path.exists)

    async def device_id(self) -> str:
        """Stable per-config-directory device identifier."""
        if not self.doc.device_id:
            candidate = str(uuid.uuid4())

            def assign(doc: ConfigDocument) -> None:
                # Another process may have assigned one already
                doc.device_id = doc.device_id or candidate

            await self.update(assign)
        return self.doc.device_id


def _with_value(doc: ConfigDocument, key: str, value: Any) -> ConfigDocument:
    data = doc.to_json()
    if value is None:
        data.pop(key, None)
    else:
        data[key] = value
    try:
        return ConfigDocument.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid value for {key}: {e.errors()[0].get('msg')}") from None
