"""Encrypted local cache storage.

Architecture:
    HybridStore → StorageBackend (FileAreaBackend | EmbeddedStoreBackend) → CryptoKeyStore

Components:
- **StorageBackend**: shared TTL, quota and eviction policy over primitive reads/writes
- **FileAreaBackend**: one ciphertext file per entry plus a JSON metadata index
- **EmbeddedStoreBackend**: SQLite rows, used when the file area is unavailable
- **HybridStore**: selects a backend at startup and forwards to it
"""

from vouchersync.client.storage.base import (
    RECORD,
    STATE,
    EntryMetadata,
    RangeHit,
    StorageBackend,
)
from vouchersync.client.storage.embedded import EmbeddedStoreBackend
from vouchersync.client.storage.file_area import FileAreaBackend, sanitize_key
from vouchersync.client.storage.hybrid import (
    CacheStats,
    HybridStore,
    StorageQuota,
    create_backend,
    probe_file_area,
    record_key,
    state_key,
)

__all__ = [
    # Base
    "RECORD",
    "STATE",
    "EntryMetadata",
    "RangeHit",
    "StorageBackend",
    # Backends
    "EmbeddedStoreBackend",
    "FileAreaBackend",
    "sanitize_key",
    # Hybrid
    "CacheStats",
    "HybridStore",
    "StorageQuota",
    "create_backend",
    "probe_file_area",
    "record_key",
    "state_key",
]
