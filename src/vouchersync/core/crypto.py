"""Cryptographic functions for vouchersync.

This module provides:
- Key derivation using Argon2id
- Authenticated encryption using AES-256-GCM
- Payload encoding (JSON + gzip) wrapped around the cipher
"""

import gzip
import json
import os
import zlib
from typing import Any

from argon2.low_level import Type, hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from vouchersync.core.errors import DecryptionError

# Argon2id parameters (OWASP recommendations for password hashing)
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST = 65536  # 64 MiB
ARGON2_PARALLELISM = 4
ARGON2_HASH_LEN = 32  # 256 bits

# AES-GCM constants
NONCE_SIZE = 12  # 96 bits (recommended for AES-GCM)
TAG_SIZE = 16
SALT_SIZE = 16  # 128 bits


def generate_salt() -> bytes:
    """Generate a cryptographically secure random salt.

    Returns:
        16 bytes of random data for use as salt in key derivation.
    """
    return os.urandom(SALT_SIZE)


def derive_key(
    secret: str,
    salt: bytes,
    time_cost: int = ARGON2_TIME_COST,
    memory_cost: int = ARGON2_MEMORY_COST,
    parallelism: int = ARGON2_PARALLELISM,
) -> bytes:
    """Derive a 256-bit encryption key from a secret using Argon2id.

    Args:
        secret: The identity the key is bound to (the user id).
        salt: A 16-byte random salt (use generate_salt()).
        time_cost: Argon2 iterations.
        memory_cost: Argon2 memory in KiB.
        parallelism: Argon2 lanes.

    Returns:
        32 bytes (256 bits) derived key suitable for AES-256.
    """
    return hash_secret_raw(
        secret=secret.encode("utf-8"),
        salt=salt,
        time_cost=time_cost,
        memory_cost=memory_cost,
        parallelism=parallelism,
        hash_len=ARGON2_HASH_LEN,
        type=Type.ID,
    )


def encrypt_bytes(data: bytes, key: bytes) -> bytes:
    """Encrypt data using AES-256-GCM with a random nonce.

    Args:
        data: Plaintext data to encrypt.
        key: 32-byte encryption key.

    Returns:
        Encrypted data in format: nonce (12 bytes) || ciphertext || auth_tag (16 bytes)
    """
    nonce = os.urandom(NONCE_SIZE)
    aesgcm = AESGCM(key)
    ciphertext = aesgcm.encrypt(nonce, data, None)
    return nonce + ciphertext


def decrypt_bytes(encrypted: bytes, key: bytes) -> bytes:
    """Decrypt data encrypted with encrypt_bytes.

    Args:
        encrypted: Data in format: nonce (12 bytes) || ciphertext || auth_tag (16 bytes)
        key: 32-byte encryption key.

    Returns:
        Decrypted plaintext data.

    Raises:
        cryptography.exceptions.InvalidTag: If authentication fails (wrong key or tampered data).
    """
    nonce = encrypted[:NONCE_SIZE]
    ciphertext = encrypted[NONCE_SIZE:]
    aesgcm = AESGCM(key)
    return aesgcm.decrypt(nonce, ciphertext, None)


def encode_payload(obj: Any) -> bytes:
    """Serialize an object to compact JSON and gzip it."""
    raw = json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return gzip.compress(raw)


def decode_payload(data: bytes) -> Any:
    """Reverse encode_payload."""
    return json.loads(gzip.decompress(data).decode("utf-8"))


def encrypt_payload(obj: Any, key: bytes) -> bytes:
    """Compress and encrypt a JSON-serializable object.

    Args:
        obj: Object to store.
        key: 32-byte encryption key.

    Returns:
        Ciphertext blob (nonce prepended).
    """
    return encrypt_bytes(encode_payload(obj), key)


def decrypt_payload(blob: bytes, key: bytes) -> Any:
    """Decrypt and decode a blob produced by encrypt_payload.

    Args:
        blob: Ciphertext blob.
        key: 32-byte encryption key.

    Returns:
        The decoded object.

    Raises:
        DecryptionError: If the blob is truncated, tampered with, encrypted
            under another key, or does not decode to JSON.
    """
    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise DecryptionError(f"Blob too short ({len(blob)} bytes)")
    try:
        plaintext = decrypt_bytes(blob, key)
    except InvalidTag as e:
        raise DecryptionError("Authentication failed (wrong key or tampered data)") from e
    except ValueError as e:
        raise DecryptionError(f"Invalid key: {e}") from e

    try:
        return decode_payload(plaintext)
    except (OSError, EOFError, zlib.error, ValueError) as e:
        raise DecryptionError(f"Corrupted payload: {e}") from e
