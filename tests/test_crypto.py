"""Tests for credential hashing and at-rest encryption."""

import hashlib
import secrets
from unittest.mock import patch

import pytest

from maas_cli.crypto import (
    CredentialStore,
    hash_secret,
    is_encrypted_vendor_key,
    is_sha256_hash,
    needs_encryption_migration,
    validate_vendor_key_hash,
)
from maas_cli.errors import DecryptionError, ValidationError


class TestHashSecret:
    def test_raw_secret_hashes_to_lowercase_hex(self):
        digest = hash_secret("pk_test.sk_secret")
        assert digest == hashlib.sha256(b"pk_test.sk_secret").hexdigest()
        assert len(digest) == 64
        assert digest == digest.lower()

    def test_is_deterministic(self):
        assert hash_secret("abc12345") == hash_secret("abc12345")

    def test_existing_digest_is_returned_unchanged(self):
        digest = hash_secret("some-secret")
        assert hash_secret(digest) == digest
        assert hash_secret(hash_secret(digest)) == digest

    def test_empty_secret_rejected(self):
        with pytest.raises(ValidationError):
            hash_secret("")

    def test_is_sha256_hash(self):
        assert is_sha256_hash("a" * 64)
        assert not is_sha256_hash("a" * 63)
        assert not is_sha256_hash("g" * 64)
        assert not is_sha256_hash(None)


class TestEncryption:
    def test_round_trip(self, credential_store):
        blob = credential_store.encrypt("pk_live.sk_abcdef")
        assert set(blob) == {"encrypted", "iv", "authTag", "salt", "version"}
        assert credential_store.decrypt(blob) == "pk_live.sk_abcdef"

    def test_round_trip_with_passphrase(self, credential_store):
        blob = credential_store.encrypt("secret-value", passphrase="hunter2")
        assert credential_store.decrypt(blob, passphrase="hunter2") == "secret-value"

    def test_wrong_passphrase_raises(self, credential_store):
        blob = credential_store.encrypt("secret-value", passphrase="right")
        with pytest.raises(DecryptionError):
            credential_store.decrypt(blob, passphrase="wrong")

    def test_other_machine_cannot_decrypt(self, credential_store):
        blob = credential_store.encrypt("secret-value")
        elsewhere = CredentialStore(fingerprint=lambda: "another-machine")
        with pytest.raises(DecryptionError):
            elsewhere.decrypt(blob)

    def test_tampered_ciphertext_raises(self, credential_store):
        blob = credential_store.encrypt("secret-value")
        blob["authTag"] = "AAAAAAAAAAAAAAAAAAAAAA=="
        with pytest.raises(DecryptionError):
            credential_store.decrypt(blob)

    def test_malformed_blob_raises(self, credential_store):
        with pytest.raises(DecryptionError):
            credential_store.decrypt({"encrypted": "x"})
        with pytest.raises(DecryptionError):
            credential_store.decrypt("not-a-dict")

    def test_fresh_salt_and_iv_per_call(self, credential_store):
        a = credential_store.encrypt("same")
        b = credential_store.encrypt("same")
        assert a["salt"] != b["salt"]
        assert a["iv"] != b["iv"]


class TestVendorKeyEnvelope:
    def test_secure_store_and_retrieve(self, credential_store):
        stored = credential_store.secure_store_vendor_key("pk_abc.sk_def")
        assert stored["encrypted"] is True
        assert stored["keyHash"] == hash_secret("pk_abc.sk_def")
        assert "pk_abc" not in str(stored["encryptedKey"])
        assert is_encrypted_vendor_key(stored)
        assert credential_store.retrieve_vendor_key(stored) == "pk_abc.sk_def"

    def test_retrieve_rejects_plain_structure(self, credential_store):
        with pytest.raises(ValidationError):
            credential_store.retrieve_vendor_key({"keyHash": "x"})

    def test_validate_vendor_key_hash(self):
        stored_hash = hash_secret("pk_abc.sk_def")
        assert validate_vendor_key_hash("pk_abc.sk_def", stored_hash)
        assert validate_vendor_key_hash("pk_abc.sk_def", stored_hash.upper())
        assert not validate_vendor_key_hash("pk_other.sk_def", stored_hash)
        assert not validate_vendor_key_hash("", stored_hash)

    def test_validate_vendor_key_hash_compares_in_constant_time(self):
        stored_hash = hash_secret("pk_abc.sk_def")
        with patch("maas_cli.crypto.secrets.compare_digest", wraps=secrets.compare_digest) as compare:
            assert validate_vendor_key_hash("pk_abc.sk_def", stored_hash)
        compare.assert_called_once_with(stored_hash.encode(), stored_hash.encode())

    def test_validate_vendor_key_hash_tolerates_non_ascii_hash(self):
        assert not validate_vendor_key_hash("pk_abc.sk_def", "é" * 64)

    def test_needs_encryption_migration(self, credential_store):
        assert needs_encryption_migration("pk_plain.sk_text")
        assert not needs_encryption_migration(None)
        assert not needs_encryption_migration(credential_store.secure_store_vendor_key("pk_abc.sk_def"))
