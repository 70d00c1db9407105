"""Authentication manager.

Unifies bearer JWTs, vendor API keys and OAuth access/refresh pairs behind
`resolve_credential()` and `is_authenticated()`.

Validation policy:
- A successful server validation is trusted for 24 hours.
- When the server cannot be reached, a credential validated within the
  last 7 days stays usable (offline grace period).
- An explicit 401/403 always wins over local validity.
- Three or more consecutive failures throttle further attempts with an
  exponential delay (2s, 4s, 8s, capped at 16s).
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Callable

import httpx

from maas_cli.config import Settings
from maas_cli.config_store import ConfigDocument, ConfigStore
from maas_cli.credentials import (
    CLI_TOKEN_PREFIX,
    Credential,
    JWTCredential,
    OAuthCredential,
    VendorKeyCredential,
    decode_jwt_payload,
    golden_headers,
    token_expiry_ms,
    token_issued_at_ms,
)
from maas_cli.crypto import CredentialStore, hash_secret, is_encrypted_vendor_key, needs_encryption_migration
from maas_cli.discovery import ServiceDiscovery
from maas_cli.errors import AuthenticationInvalid, NetworkError, ValidationError, classify_exception, error_for_status
from maas_cli.log_config import get_logger, mask_secret

log = get_logger("auth")

VALIDATION_CACHE_SECONDS = 24 * 60 * 60
OFFLINE_GRACE_SECONDS = 7 * 24 * 60 * 60
REFRESH_WINDOW_SECONDS = 5 * 60
FAILURE_DELAY_THRESHOLD = 3
FAILURE_DELAY_BASE_MS = 2000
FAILURE_DELAY_CAP_MS = 16000
MIN_VENDOR_KEY_LENGTH = 8
OAUTH_CLIENT_ID = "lanonasis-cli"

# Outcomes of a server-side credential check
VALID = "valid"
REJECTED = "rejected"
UNREACHABLE = "unreachable"


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


def _parse_iso(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value).timestamp()
    except ValueError:
        return None


def validate_vendor_key_format(vendor_key: str) -> None:
    """Reject obviously malformed keys before any network call."""
    if not vendor_key or not isinstance(vendor_key, str):
        raise ValidationError("Vendor key must be a non-empty string")
    if any(ch.isspace() for ch in vendor_key):
        raise ValidationError("Vendor key must not contain whitespace")
    if len(vendor_key) < MIN_VENDOR_KEY_LENGTH:
        raise ValidationError(
            f"Vendor key is too short (minimum {MIN_VENDOR_KEY_LENGTH} characters)",
            ["Vendor keys look like pk_xxx.sk_xxx"],
        )


class AuthManager:
    """Resolves, validates and refreshes the current credential.

    Args:
        settings: Process settings
        store: Config store holding tokens and counters
        credentials: Encrypts/decrypts the vendor key
        discovery: Supplies the auth base URL
        clock: Time source in seconds (injectable for tests)
    """

    def __init__(
        self,
        settings: Settings,
        store: ConfigStore,
        credentials: CredentialStore,
        discovery: ServiceDiscovery,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.store = store
        self.credentials = credentials
        self.discovery = discovery
        self.clock = clock
        self._vendor_key_cache: tuple[str, str] | None = None  # (keyHash, plaintext)

    @property
    def doc(self):
        return self.store.doc

    async def _auth_base(self) -> str:
        endpoints = await self.discovery.endpoints()
        return endpoints.auth_base.rstrip("/")

    async def project_scope(self) -> str:
        endpoints = await self.discovery.endpoints()
        return endpoints.project_scope

    # -- credential resolution ----------------------------------------------

    async def _decrypt_vendor_key(self) -> VendorKeyCredential | None:
        stored = self.doc.vendor_key
        if stored is None:
            return None
        if isinstance(stored, str):
            # Legacy plaintext entry, re-stored encrypted by migrate_legacy_vendor_key()
            return VendorKeyCredential(key=stored, sha256_hash=hash_secret(stored))
        if not is_encrypted_vendor_key(stored):
            raise ValidationError("Stored vendor key has an invalid structure", ["Re-enter it: maas auth vendor-key <key>"])

        key_hash = stored["keyHash"]
        if self._vendor_key_cache and self._vendor_key_cache[0] == key_hash:
            plaintext = self._vendor_key_cache[1]
        else:
            plaintext = await asyncio.to_thread(self.credentials.retrieve_vendor_key, stored)
            self._vendor_key_cache = (key_hash, plaintext)
        return VendorKeyCredential(key=plaintext, sha256_hash=key_hash, encrypted_blob=stored["encryptedKey"])

    def _token_credential(self) -> Credential | None:
        token = self.doc.token
        if not token:
            return None
        if self.doc.auth_method == "oauth" or self.doc.refresh_token:
            return OAuthCredential(
                access_token=token,
                refresh_token=self.doc.refresh_token,
                expires_at_ms=self.doc.token_expiry,
            )
        expiry = token_expiry_ms(token, self.doc.token_expiry)
        return JWTCredential(token=token, exp=expiry / 1000 if expiry is not None else None)

    async def resolve_credential(self) -> Credential | None:
        """Current credential by precedence.

        vendor key (authMethod=vendor_key) > token (oauth/jwt) > any stored
        credential > LANONASIS_API_KEY > None.

        Raises:
            DecryptionError: A stored vendor key cannot be decrypted here
        """
        method = self.doc.auth_method
        if method == "vendor_key":
            credential = await self._decrypt_vendor_key()
            if credential is not None:
                return credential
        if method in ("oauth", "jwt"):
            credential = self._token_credential()
            if credential is not None:
                return credential

        credential = self._token_credential() or await self._decrypt_vendor_key()
        if credential is not None:
            return credential

        if self.settings.api_key:
            key = self.settings.api_key
            return VendorKeyCredential(key=key, sha256_hash=hash_secret(key), source="environment")
        return None

    async def auth_headers(self, credential: Credential | None = None) -> dict[str, str]:
        """Golden-contract headers for the current credential (empty if none)."""
        credential = credential or await self.resolve_credential()
        if credential is None:
            return {}
        return golden_headers(credential, await self.project_scope())

    # -- validation ---------------------------------------------------------

    async def _check_with_server(self, credential: Credential) -> str:
        """Ask the auth server about a credential: VALID, REJECTED or UNREACHABLE."""
        auth_base = await self._auth_base()
        if isinstance(credential, VendorKeyCredential):
            url = f"{auth_base}/api/v1/health"
        else:
            url = f"{auth_base}/v1/auth/verify"
        headers = golden_headers(credential, await self.project_scope())

        try:
            async with httpx.AsyncClient(timeout=self.settings.auth_check_timeout) as client:
                response = await client.get(url, headers=headers)
        except httpx.HTTPError as e:
            log.debug(f"Auth check against {url} unreachable: {type(e).__name__}")
            return UNREACHABLE

        if response.status_code in (401, 403):
            log.warning(f"Server rejected {credential.auth_method} credential ({response.status_code})")
            return REJECTED
        if response.status_code >= 400:
            # Only 401/403 say anything about the credential itself
            log.debug(f"Auth check got {response.status_code}, treating as unreachable")
            return UNREACHABLE
        return VALID

    def _recently_validated(self, window: float) -> bool:
        last = _parse_iso(self.doc.last_validated)
        return last is not None and self.clock() - last < window

    async def is_authenticated(self) -> bool:
        """Whether the current credential is usable.

        Raises:
            DecryptionError: Stored vendor key is unreadable on this machine
        """
        credential = await self.resolve_credential()
        if credential is None:
            return False
        if isinstance(credential, VendorKeyCredential):
            return await self._vendor_key_authenticated(credential)
        return await self._token_authenticated(credential)

    async def _vendor_key_authenticated(self, credential: VendorKeyCredential) -> bool:
        if self._recently_validated(VALIDATION_CACHE_SECONDS):
            return True

        outcome = await self._check_with_server(credential)
        if outcome == VALID:
            await self._record_success()
            return True
        if outcome == UNREACHABLE and self._recently_validated(OFFLINE_GRACE_SECONDS):
            log.info("Auth server unreachable, vendor key within offline grace period")
            return True
        await self.record_auth_failure()
        return False

    async def _token_authenticated(self, credential: Credential) -> bool:
        token = credential.secret
        now_ms = self.clock() * 1000

        if isinstance(credential, OAuthCredential):
            expiry = credential.expires_at_ms or token_expiry_ms(token)
        else:
            expiry = token_expiry_ms(token, self.doc.token_expiry)
        if token.startswith(CLI_TOKEN_PREFIX) and expiry is None:
            log.debug("cli_ token without parseable timestamp, assuming locally valid")

        if expiry is not None and expiry <= now_ms:
            # Locally expired; one server verification handles clock skew
            log.debug(f"Token {mask_secret(token)} locally expired, verifying with server")
            if await self._check_with_server(credential) == VALID:
                await self._record_success()
                return True
            await self.record_auth_failure()
            return False

        if self._recently_validated(VALIDATION_CACHE_SECONDS):
            return True

        outcome = await self._check_with_server(credential)
        if outcome == VALID:
            await self._record_success()
            return True
        if outcome == UNREACHABLE and self._within_grace(token):
            log.info("Auth server unreachable, token within offline grace period")
            return True
        await self.record_auth_failure()
        return False

    def _within_grace(self, token: str) -> bool:
        anchor = _parse_iso(self.doc.last_validated)
        if anchor is None:
            issued = token_issued_at_ms(token)
            anchor = issued / 1000 if issued is not None else None
        return anchor is not None and self.clock() - anchor < OFFLINE_GRACE_SECONDS

    async def validate_stored_credentials(self) -> bool:
        """Explicit server check; network errors propagate.

        Raises:
            NetworkError: The auth server could not be reached
        """
        credential = await self.resolve_credential()
        if credential is None:
            return False
        outcome = await self._check_with_server(credential)
        if outcome == UNREACHABLE:
            raise NetworkError("Could not reach the auth server to validate credentials")
        if outcome == VALID:
            await self._record_success()
            return True
        await self.record_auth_failure()
        return False

    # -- failure accounting -------------------------------------------------

    async def _record_success(self, **fields: Any) -> None:
        """Persist `fields` (document attribute names) plus a fresh validation stamp."""
        validated_at = _iso(self.clock())

        def apply(doc: ConfigDocument) -> None:
            for name, value in fields.items():
                setattr(doc, name, value)
            doc.last_validated = validated_at
            doc.auth_failure_count = 0
            doc.last_auth_failure = None

        await self.store.update(apply)

    async def record_auth_failure(self, **fields: Any) -> None:
        failed_at = _iso(self.clock())

        def apply(doc: ConfigDocument) -> None:
            for name, value in fields.items():
                setattr(doc, name, value)
            doc.auth_failure_count += 1
            doc.last_auth_failure = failed_at

        await self.store.update(apply)
        log.debug(f"Authentication failure #{self.doc.auth_failure_count}")

    async def reset_auth_failures(self) -> None:
        await self._persist(auth_failure_count=0, last_auth_failure=None)

    async def _persist(self, **fields: Any) -> None:
        def apply(doc: ConfigDocument) -> None:
            for name, value in fields.items():
                setattr(doc, name, value)

        await self.store.update(apply)

    def failure_count(self) -> int:
        return self.doc.auth_failure_count

    def should_delay_auth(self) -> bool:
        return self.doc.auth_failure_count >= FAILURE_DELAY_THRESHOLD

    def auth_delay_ms(self) -> int:
        """2s at the third failure, doubling, capped at 16s; 0 below threshold."""
        count = self.doc.auth_failure_count
        if count < FAILURE_DELAY_THRESHOLD:
            return 0
        exponent = min(count - FAILURE_DELAY_THRESHOLD, 4)
        return min(FAILURE_DELAY_BASE_MS * (2**exponent), FAILURE_DELAY_CAP_MS)

    # -- refresh ------------------------------------------------------------

    async def refresh_if_needed(self) -> bool:
        """Refresh OAuth/JWT tokens within 5 minutes of expiry.

        Returns:
            True if a new token was stored
        """
        credential = self._token_credential()
        if credential is None or self.doc.auth_method == "vendor_key":
            return False
        token = credential.secret
        if token.startswith(CLI_TOKEN_PREFIX):
            return False

        if isinstance(credential, OAuthCredential):
            expiry = credential.expires_at_ms or token_expiry_ms(token)
        else:
            expiry = token_expiry_ms(token, self.doc.token_expiry)
        if expiry is None or expiry - self.clock() * 1000 > REFRESH_WINDOW_SECONDS * 1000:
            return False

        if isinstance(credential, OAuthCredential):
            if not credential.refresh_token:
                log.debug("OAuth token near expiry but no refresh token stored")
                return False
            return await self._refresh_oauth(credential.refresh_token)
        return await self._refresh_jwt(credential)

    async def _refresh_oauth(self, refresh_token: str) -> bool:
        url = f"{await self._auth_base()}/oauth/token"
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token, "client_id": OAUTH_CLIENT_ID}
        try:
            async with httpx.AsyncClient(timeout=self.settings.request_timeout) as client:
                response = await client.post(url, data=data)
        except httpx.HTTPError as e:
            log.warning(f"OAuth refresh failed: {classify_exception(e).message}")
            return False

        if response.status_code in (400, 401):
            # Refresh token revoked or expired; nothing left to recover
            log.warning("Refresh token rejected, clearing stored session")
            await self.record_auth_failure(token=None, refresh_token=None, token_expiry=None)
            return False
        if response.status_code >= 300:
            log.warning(f"OAuth refresh returned {response.status_code}")
            return False

        body = response.json()
        fields: dict[str, Any] = {
            "token": body["access_token"],
            "refresh_token": body.get("refresh_token") or refresh_token,
            "auth_method": "oauth",
        }
        if body.get("expires_in"):
            fields["token_expiry"] = int((self.clock() + float(body["expires_in"])) * 1000)
        await self._record_success(**fields)
        log.info("OAuth token refreshed")
        return True

    async def _refresh_jwt(self, credential: Credential) -> bool:
        url = f"{await self._auth_base()}/v1/auth/refresh"
        headers = golden_headers(credential, await self.project_scope())
        try:
            async with httpx.AsyncClient(timeout=self.settings.request_timeout) as client:
                response = await client.post(url, headers=headers)
        except httpx.HTTPError as e:
            log.warning(f"Token refresh failed: {classify_exception(e).message}")
            return False

        if response.status_code >= 300:
            log.warning(f"Token refresh returned {response.status_code}")
            if response.status_code in (401, 403):
                await self.record_auth_failure()
            return False

        body = response.json()
        new_token = body.get("token") or body.get("access_token")
        if not new_token:
            log.warning("Token refresh response had no token")
            return False
        await self._record_success(token=new_token, token_expiry=token_expiry_ms(new_token))
        log.info("Session token refreshed")
        return True

    # -- login / logout -----------------------------------------------------

    async def set_token(self, token: str, validated: bool = True) -> None:
        """Store a bearer session token (authMethod=jwt)."""
        if not token:
            raise ValidationError("Token must be a non-empty string")
        fields: dict[str, Any] = {
            "token": token,
            "refresh_token": None,
            "token_expiry": token_expiry_ms(token),
            "auth_method": "jwt",
        }
        claims = decode_jwt_payload(token)
        if claims:
            fields["user"] = {
                "email": str(claims.get("email", "")),
                "organization_id": str(claims.get("organizationId", "")),
                "role": str(claims.get("role", "")),
                "plan": str(claims.get("plan", "")),
            }
        if validated:
            await self._record_success(**fields)
        else:
            await self._persist(**fields)

    async def set_oauth_tokens(self, access_token: str, refresh_token: str | None, expires_in: float | None) -> None:
        """Store an OAuth access/refresh pair (authMethod=oauth)."""
        if not access_token:
            raise ValidationError("Access token must be a non-empty string")
        await self._record_success(
            token=access_token,
            refresh_token=refresh_token,
            token_expiry=int((self.clock() + expires_in) * 1000) if expires_in else None,
            auth_method="oauth",
        )

    async def set_vendor_key(self, vendor_key: str) -> None:
        """Validate a vendor key with the server and store it encrypted.

        Raises:
            ValidationError: Malformed key
            AuthenticationInvalid: Server rejected the key
            NetworkError: Server unreachable or answered with a non-auth error
        """
        validate_vendor_key_format(vendor_key)
        credential = VendorKeyCredential(key=vendor_key, sha256_hash=hash_secret(vendor_key), source="config")
        outcome = await self._check_with_server(credential)
        if outcome == REJECTED:
            await self.record_auth_failure()
            raise AuthenticationInvalid("Vendor key is invalid")
        if outcome == UNREACHABLE:
            raise NetworkError("Could not validate the vendor key with the auth server")

        secure_key = await asyncio.to_thread(self.credentials.secure_store_vendor_key, vendor_key)
        self._vendor_key_cache = (secure_key["keyHash"], vendor_key)
        await self._record_success(vendor_key=secure_key, auth_method="vendor_key")
        log.info(f"Vendor key {mask_secret(vendor_key)} stored")

    async def migrate_legacy_vendor_key(self) -> bool:
        """Re-store a plaintext vendor key in encrypted form."""
        stored = self.doc.vendor_key
        if not isinstance(stored, str) or not needs_encryption_migration(stored):
            return False
        secure_key = await asyncio.to_thread(self.credentials.secure_store_vendor_key, stored)

        def apply(doc: ConfigDocument) -> None:
            # Skip if another process replaced the key meanwhile
            if doc.vendor_key == stored:
                doc.vendor_key = secure_key

        await self.store.update(apply)
        log.info("Migrated plaintext vendor key to encrypted storage")
        return True

    async def login(self, email: str, password: str) -> dict[str, Any]:
        """Password login against the auth gateway; stores the returned token."""
        url = f"{await self._auth_base()}/v1/auth/login"
        try:
            async with httpx.AsyncClient(timeout=self.settings.request_timeout) as client:
                response = await client.post(
                    url,
                    json={"email": email, "password": password},
                    headers={"X-Project-Scope": await self.project_scope()},
                )
        except httpx.HTTPError as e:
            raise classify_exception(e) from e

        if response.status_code >= 400:
            error = error_for_status(response.status_code, response.text[:200])
            if isinstance(error, AuthenticationInvalid):
                await self.record_auth_failure()
                raise AuthenticationInvalid("Invalid email or password") from None
            raise error

        body = response.json()
        token = body.get("token") or body.get("access_token")
        if not token:
            raise ValidationError("Login response did not contain a token")
        if body.get("refresh_token"):
            await self.set_oauth_tokens(token, body["refresh_token"], body.get("expires_in"))
        else:
            await self.set_token(token)
        if isinstance(body.get("user"), dict):
            await self._persist(user=body["user"])
        return body

    async def logout(self) -> None:
        """Forget every stored credential and validation marker."""
        self._vendor_key_cache = None
        await self._persist(
            token=None,
            refresh_token=None,
            token_expiry=None,
            vendor_key=None,
            auth_method=None,
            user=None,
            last_validated=None,
            auth_failure_count=0,
            last_auth_failure=None,
        )
        log.info("Logged out")
