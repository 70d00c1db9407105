"""Credential hashing and at-rest encryption.

Security model:
- API keys are hashed with SHA-256 (one-way, the server compares hashes)
- Vendor keys are encrypted with AES-256-GCM (reversible, needed for headers)
- The encryption key is derived from a machine fingerprint plus an
  optional user passphrase and is never persisted. A config file copied
  to another machine cannot decrypt its vendor keys.
"""

import base64
import hashlib
import os
import platform
import re
import secrets
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from maas_cli.errors import DecryptionError, ValidationError
from maas_cli.log_config import get_logger

log = get_logger("crypto")

KEY_LENGTH = 32
IV_LENGTH = 16
AUTH_TAG_LENGTH = 16
SALT_LENGTH = 32
PBKDF2_ITERATIONS = 100_000
ENCRYPTION_VERSION = "1.0"

# Known, non-secret constant used when no passphrase is given
DEFAULT_SALT_COMPONENT = "lanonasis-cli-default-salt"

_SHA256_RE = re.compile(r"^[a-f0-9]{64}$", re.IGNORECASE)


def machine_fingerprint() -> str:
    """Stable per-machine identifier: sha256 of hostname, platform and home."""
    raw = f"{socket.gethostname()}-{platform.system().lower()}-{Path.home()}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def is_sha256_hash(value: Any) -> bool:
    return isinstance(value, str) and bool(_SHA256_RE.match(value))


def hash_secret(secret: str) -> str:
    """SHA-256 hex digest; an existing 64-hex digest is returned unchanged."""
    if not secret or not isinstance(secret, str):
        raise ValidationError("Secret must be a non-empty string")
    if is_sha256_hash(secret):
        return secret
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"), validate=True)


class CredentialStore:
    """Encrypts and decrypts secrets bound to this machine.

    Args:
        fingerprint: Callable returning the machine fingerprint. Injected in
            tests to simulate moving the config to another machine.
    """

    def __init__(self, fingerprint: Callable[[], str] = machine_fingerprint):
        self._fingerprint = fingerprint

    def _derive_key(self, salt: bytes, passphrase: str | None) -> bytes:
        base_secret = self._fingerprint() + (passphrase or DEFAULT_SALT_COMPONENT)
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        return kdf.derive(base_secret.encode("utf-8"))

    def hash(self, secret: str) -> str:
        return hash_secret(secret)

    def encrypt(self, secret: str, passphrase: str | None = None) -> dict[str, str]:
        """Encrypt with a fresh salt and IV.

        Returns:
            {encrypted, iv, authTag, salt, version}, all binary fields base64
        """
        if not secret or not isinstance(secret, str):
            raise ValidationError("Data must be a non-empty string")

        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        key = self._derive_key(salt, passphrase)

        # AESGCM appends the tag to the ciphertext
        sealed = AESGCM(key).encrypt(iv, secret.encode("utf-8"), None)
        ciphertext, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]

        return {
            "encrypted": _b64(ciphertext),
            "iv": _b64(iv),
            "authTag": _b64(tag),
            "salt": _b64(salt),
            "version": ENCRYPTION_VERSION,
        }

    def decrypt(self, blob: dict[str, str], passphrase: str | None = None) -> str:
        """Decrypt a blob produced by encrypt().

        Raises:
            DecryptionError: Tag mismatch, malformed blob, wrong machine or
                wrong passphrase. These cases are deliberately not told apart.
        """
        if not isinstance(blob, dict):
            raise DecryptionError("Encrypted data must be an object")
        try:
            salt = _unb64(blob["salt"])
            iv = _unb64(blob["iv"])
            tag = _unb64(blob["authTag"])
            ciphertext = _unb64(blob["encrypted"])
            key = self._derive_key(salt, passphrase)
            plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
            return plaintext.decode("utf-8")
        except (InvalidTag, KeyError, ValueError, TypeError) as e:
            log.debug(f"Decryption failed: {type(e).__name__}")
            raise DecryptionError() from None

    # -- vendor key envelope -------------------------------------------------

    def secure_store_vendor_key(self, vendor_key: str, passphrase: str | None = None) -> dict[str, Any]:
        """Build the persisted vendor key structure."""
        if not vendor_key or not isinstance(vendor_key, str):
            raise ValidationError("Vendor key must be a non-empty string")
        return {
            "keyHash": hash_secret(vendor_key),
            "encryptedKey": self.encrypt(vendor_key, passphrase),
            "createdAt": datetime.now(timezone.utc).isoformat(),
            "encrypted": True,
        }

    def retrieve_vendor_key(self, secure_key: dict[str, Any], passphrase: str | None = None) -> str:
        if not is_encrypted_vendor_key(secure_key):
            raise ValidationError("Invalid secure key structure")
        return self.decrypt(secure_key["encryptedKey"], passphrase)


def validate_vendor_key_hash(vendor_key: str, stored_hash: str) -> bool:
    """True if the key hashes to stored_hash."""
    if not vendor_key or not stored_hash:
        return False
    try:
        return secrets.compare_digest(hash_secret(vendor_key).encode(), stored_hash.lower().encode())
    except ValidationError:
        return False


def is_encrypted_vendor_key(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and value.get("encrypted") is True
        and is_sha256_hash(value.get("keyHash"))
        and isinstance(value.get("encryptedKey"), dict)
        and isinstance(value["encryptedKey"].get("encrypted"), str)
    )


def needs_encryption_migration(vendor_key: Any) -> bool:
    """A plaintext (legacy) vendor key must be re-stored encrypted."""
    if vendor_key is None:
        return False
    return not is_encrypted_vendor_key(vendor_key)
