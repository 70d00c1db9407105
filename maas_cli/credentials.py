"""Credential variants and the golden-contract request headers."""

import base64
import json
import uuid
from dataclasses import dataclass
from typing import Any, Literal, Union

AuthMethod = Literal["jwt", "vendor_key", "oauth"]

CLI_TOKEN_PREFIX = "cli_"
CLI_TOKEN_LIFETIME_MS = 30 * 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class JWTCredential:
    """Bearer session token. `exp` is seconds since epoch when known."""

    token: str
    exp: float | None = None

    auth_method = "jwt"

    @property
    def secret(self) -> str:
        return self.token

    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}", "X-Auth-Method": self.auth_method}


@dataclass(frozen=True)
class VendorKeyCredential:
    """Long-lived vendor key.

    `key` is the decrypted value, needed verbatim for X-API-Key.
    `encrypted_blob` is None when the key came from the environment.
    """

    key: str
    sha256_hash: str
    encrypted_blob: dict[str, Any] | None = None
    source: Literal["config", "environment"] = "config"

    auth_method = "vendor_key"

    @property
    def secret(self) -> str:
        return self.key

    def headers(self) -> dict[str, str]:
        return {"X-API-Key": self.key, "X-Auth-Method": self.auth_method}

    def __repr__(self) -> str:
        return f"VendorKeyCredential(hash={self.sha256_hash[:8]}…, source={self.source})"


@dataclass(frozen=True)
class OAuthCredential:
    """OAuth access/refresh pair; expires_at_ms from the token response."""

    access_token: str
    refresh_token: str | None = None
    expires_at_ms: int | None = None

    auth_method = "oauth"

    @property
    def secret(self) -> str:
        return self.access_token

    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}", "X-Auth-Method": self.auth_method}


Credential = Union[JWTCredential, VendorKeyCredential, OAuthCredential]


def golden_headers(credential: Credential, project_scope: str) -> dict[str, str]:
    """Headers every authenticated request must carry."""
    headers = credential.headers()
    headers["X-Project-Scope"] = project_scope
    headers["X-Request-ID"] = str(uuid.uuid4())
    return headers


# -- token inspection ----------------------------------------------------------


def decode_jwt_payload(token: str) -> dict[str, Any] | None:
    """Decode the (unverified) payload of a JWT-shaped token.

    Returns None when the token does not look like a JWT.
    """
    parts = token.split(".")
    if len(parts) != 3:
        return None
    payload = parts[1]
    payload += "=" * (-len(payload) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(payload.encode("ascii")))
    except (ValueError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


def cli_token_issued_at_ms(token: str) -> int | None:
    """Issue timestamp (ms) embedded as the last `_` segment of a cli_ token."""
    if not token.startswith(CLI_TOKEN_PREFIX):
        return None
    parts = token.split("_")
    if len(parts) < 3:
        return None
    try:
        return int(parts[-1])
    except ValueError:
        return None


def token_expiry_ms(token: str, stored_expiry_ms: int | None = None) -> int | None:
    """Best-known local expiry of a bearer token in ms, or None if unknown.

    cli_ tokens live 30 days from issue, JWTs use their `exp` claim and
    opaque OAuth tokens rely on the stored expiry.
    """
    issued = cli_token_issued_at_ms(token)
    if issued is not None:
        return issued + CLI_TOKEN_LIFETIME_MS
    if token.startswith(CLI_TOKEN_PREFIX):
        return None
    claims = decode_jwt_payload(token)
    if claims and isinstance(claims.get("exp"), (int, float)):
        return int(claims["exp"] * 1000)
    return stored_expiry_ms


def token_issued_at_ms(token: str) -> int | None:
    issued = cli_token_issued_at_ms(token)
    if issued is not None:
        return issued
    claims = decode_jwt_payload(token)
    if claims and isinstance(claims.get("iat"), (int, float)):
        return int(claims["iat"] * 1000)
    return None
