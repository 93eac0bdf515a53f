"""Per-user key derivation and payload encryption.

This module provides:
- Per-user salt generation, persisted unencrypted next to the cache
- Stable key derivation from the user id and salt (Argon2id)
- OS keyring integration for caching derived keys
- encrypt/decrypt of cache payloads, where decryption failure is a cache miss
"""

from __future__ import annotations

import base64
import contextlib
import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

import keyring

from vouchersync.core.crypto import (
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    decrypt_payload,
    derive_key,
    encrypt_payload,
    generate_salt,
)
from vouchersync.core.errors import DecryptionError, VoucherSyncError

logger = logging.getLogger(__name__)

SALT_FILE_NAME = "salts.json"
KEYRING_SERVICE = "vouchersync"


class KeyStoreError(VoucherSyncError):
    """Exception raised for keystore-related errors."""


class CryptoKeyStore:
    """Derives per-user keys and encrypts payloads before they are stored.

    The key depends only on the user id and a random salt generated the
    first time the user is seen, so it survives restarts and token
    refreshes. A different user (or a lost salt) yields a different key,
    which makes previously cached entries undecryptable: they then read as
    cache misses instead of leaking across users.
    """

    def __init__(
        self,
        data_dir: Path,
        use_keyring: bool = True,
        time_cost: int = ARGON2_TIME_COST,
        memory_cost: int = ARGON2_MEMORY_COST,
        parallelism: int = ARGON2_PARALLELISM,
    ) -> None:
        """Initialize the keystore.

        Args:
            data_dir: Directory where the salt file lives.
            use_keyring: Cache derived keys in the OS keyring.
            time_cost: Argon2 iterations.
            memory_cost: Argon2 memory in KiB.
            parallelism: Argon2 lanes.
        """
        self._data_dir = Path(data_dir)
        self._salt_file = self._data_dir / SALT_FILE_NAME
        self._use_keyring = use_keyring
        self._kdf_params = {
            "time_cost": time_cost,
            "memory_cost": memory_cost,
            "parallelism": parallelism,
        }
        self._keys: dict[str, bytes] = {}
        self._lock = threading.Lock()

    @property
    def salt_file(self) -> Path:
        """Path of the unencrypted salt file."""
        return self._salt_file

    def get_salt(self, user_id: str) -> bytes:
        """Get the user's salt, generating and persisting it on first use.

        Args:
            user_id: The user identifier.

        Returns:
            16-byte salt.

        Raises:
            KeyStoreError: If the salt file exists but cannot be parsed.
        """
        with self._lock:
            salts = self._load_salts()
            if user_id in salts:
                return salts[user_id]

            salt = generate_salt()
            salts[user_id] = salt
            self._save_salts(salts)
            logger.info("Generated new cache salt for user %s", user_id)
            return salt

    def derive_key(self, user_id: str) -> bytes:
        """Derive the stable 256-bit key for a user.

        Args:
            user_id: The user identifier.

        Returns:
            32-byte key.
        """
        cached = self._keys.get(user_id)
        if cached is not None:
            return cached

        salt = self.get_salt(user_id)
        account = f"{user_id}:{salt.hex()[:16]}"

        key: bytes | None = None
        if self._use_keyring:
            with contextlib.suppress(Exception):
                stored = keyring.get_password(KEYRING_SERVICE, account)
                if stored:
                    key = base64.b64decode(stored)

        if key is None or len(key) != 32:
            key = derive_key(user_id, salt, **self._kdf_params)
            if self._use_keyring:
                # Cache in keyring (silently ignore if unavailable)
                with contextlib.suppress(Exception):
                    keyring.set_password(
                        KEYRING_SERVICE,
                        account,
                        base64.b64encode(key).decode(),
                    )

        self._keys[user_id] = key
        return key

    def forget(self, user_id: str) -> None:
        """Drop the in-memory key for a user (e.g. on sign-out)."""
        self._keys.pop(user_id, None)

    def encrypt(self, key: bytes, payload: Any) -> bytes:
        """Encrypt a JSON-serializable payload.

        Args:
            key: Key from derive_key().
            payload: Object to encrypt.

        Returns:
            Ciphertext blob with the nonce prepended.
        """
        return encrypt_payload(payload, key)

    def decrypt(self, key: bytes, blob: bytes) -> Any | None:
        """Decrypt a blob produced by encrypt().

        Args:
            key: Key from derive_key().
            blob: Ciphertext blob.

        Returns:
            The payload, or None if the blob cannot be decrypted. Callers
            treat None as a cache miss and evict the entry.
        """
        try:
            return decrypt_payload(blob, key)
        except DecryptionError as e:
            logger.warning("Cache entry could not be decrypted: %s", e)
            return None

    def _load_salts(self) -> dict[str, bytes]:
        """Read the salt file."""
        if not self._salt_file.exists():
            return {}
        try:
            data = json.loads(self._salt_file.read_text())
            return {user: base64.b64decode(value) for user, value in data.items()}
        except (ValueError, TypeError, AttributeError) as e:
            raise KeyStoreError(f"Corrupted salt file {self._salt_file}: {e}") from e

    def _save_salts(self, salts: dict[str, bytes]) -> None:
        """Write the salt file atomically."""
        self._data_dir.mkdir(parents=True, exist_ok=True)
        data = {user: base64.b64encode(salt).decode() for user, salt in salts.items()}
        tmp = self._salt_file.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2))
        os.replace(tmp, self._salt_file)
