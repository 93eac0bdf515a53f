"""Hybrid store: picks a storage backend once and forwards to it.

This module provides:
- probe_file_area: capability check for the private file area
- create_backend: backend factory driven by CacheConfig
- HybridStore: uniform facade used by the sync engine and the CLI
- record_key / state_key: the cache key scheme
"""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from vouchersync.client.keystore import CryptoKeyStore
from vouchersync.client.storage.base import (
    RECORD,
    EntryMetadata,
    RangeHit,
    StorageBackend,
)
from vouchersync.client.storage.embedded import EmbeddedStoreBackend
from vouchersync.client.storage.file_area import FileAreaBackend
from vouchersync.core.config import DEFAULT_BASE_KEY, CacheConfig
from vouchersync.core.ranges import DateRange
from vouchersync.core.types import CompanyInfo

logger = logging.getLogger(__name__)

FILE_AREA_DIR = "files"
DATABASE_FILE = "cache.db"
PROBE_FILE = ".probe"


def record_key(
    company: CompanyInfo,
    base_key: str,
    date_range: DateRange | None = None,
) -> str:
    """Cache key of a company's record set.

    Format: ``{locationId}_{companyId}_{baseKey}[_{startDate}_{endDate}]``.
    """
    key = f"{company.location_id}_{company.company_id}_{base_key}"
    if date_range is not None:
        key = f"{key}_{date_range.key_suffix()}"
    return key


def state_key(user_id: str, company_id: str) -> str:
    """Cache key of a user's sync progress for one company."""
    return f"{user_id}_{company_id}"


def probe_file_area(path: Path) -> bool:
    """Check that a private file area can be used at path.

    The directory must be creatable and writable, and support atomic
    rename-over, which the file backend relies on.
    """
    probe = path / PROBE_FILE
    tmp = path / f"{PROBE_FILE}.tmp"
    try:
        path.mkdir(parents=True, exist_ok=True, mode=0o700)
        tmp.write_bytes(b"probe")
        os.replace(tmp, probe)
        ok = probe.read_bytes() == b"probe"
        probe.unlink()
        return ok
    except OSError as e:
        logger.info(f"Private file area unavailable at {path}: {e}")
        with contextlib.suppress(OSError):
            tmp.unlink()
        return False


def create_backend(
    config: CacheConfig,
    keystore: CryptoKeyStore,
    key: bytes,
) -> StorageBackend:
    """Create the backend selected by the configuration.

    Args:
        config: Cache configuration ("auto" probes the platform).
        keystore: Performs encryption and decryption.
        key: The owning user's derived key.

    Returns:
        A FileAreaBackend when the private file area is usable (or forced),
        an EmbeddedStoreBackend otherwise.
    """
    file_root = config.cache_dir / FILE_AREA_DIR
    db_path = config.cache_dir / DATABASE_FILE

    if config.backend == "file":
        return FileAreaBackend(file_root, keystore, key, config.quota_bytes)
    if config.backend == "sqlite":
        return EmbeddedStoreBackend(db_path, keystore, key, config.quota_bytes)

    if probe_file_area(file_root):
        logger.info("Using private file area backend at %s", file_root)
        return FileAreaBackend(file_root, keystore, key, config.quota_bytes)

    logger.info("Falling back to embedded store backend at %s", db_path)
    return EmbeddedStoreBackend(db_path, keystore, key, config.quota_bytes)


@dataclass
class CacheStats:
    """Summary of the cache contents."""

    backend_type: str
    location: str
    record_sets: int
    states: int
    usage_bytes: int
    cache_expiry_days: int | None


@dataclass
class StorageQuota:
    """Storage usage against the available budget."""

    usage: int
    quota: int
    available: int

    @property
    def percent_used(self) -> float:
        """Usage as a percentage of the quota."""
        if self.quota <= 0:
            return 100.0
        return self.usage / self.quota * 100


class HybridStore:
    """Uniform access to whichever backend was selected at startup.

    Expiry is applied with the configured ``cache_expiry_days`` (None means
    entries never expire).
    """

    def __init__(self, backend: StorageBackend, config: CacheConfig) -> None:
        """Wrap an already created backend.

        Args:
            backend: The selected storage backend.
            config: Cache configuration.
        """
        self._backend = backend
        self._config = config
        self._cache_expiry_days = config.cache_expiry_days

    @classmethod
    def open(
        cls,
        config: CacheConfig,
        keystore: CryptoKeyStore,
        user_id: str,
    ) -> HybridStore:
        """Derive the user's key, select a backend and open the store.

        Args:
            config: Cache configuration.
            keystore: Key store holding the per-user salts.
            user_id: Owner of the cache.

        Returns:
            An open HybridStore.
        """
        key = keystore.derive_key(user_id)
        return cls(create_backend(config, keystore, key), config)

    def close(self) -> None:
        """Close the underlying backend."""
        self._backend.close()

    def __enter__(self) -> HybridStore:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    @property
    def backend(self) -> StorageBackend:
        """The selected backend."""
        return self._backend

    @property
    def backend_type(self) -> str:
        """"file" or "sqlite"."""
        return self._backend.backend_type

    @property
    def cache_expiry_days(self) -> int | None:
        """Record sets older than this many days are treated as missing."""
        return self._cache_expiry_days

    @cache_expiry_days.setter
    def cache_expiry_days(self, days: int | None) -> None:
        if days is not None and days < 0:
            raise ValueError("cache_expiry_days must be positive or None")
        self._cache_expiry_days = days
        logger.info("Cache expiry set to %s days", "never" if days is None else days)

    # === Forwarded operations ===

    def put_record_set(
        self,
        owner_key: str,
        data: Any,
        date_range: DateRange | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Encrypt and store a record set."""
        self._backend.put_record_set(
            owner_key,
            data,
            ttl_days=self._cache_expiry_days,
            date_range=date_range,
            metadata=metadata,
        )

    def get_record_set(self, owner_key: str) -> Any | None:
        """Read a record set, or None when absent, expired or undecryptable."""
        return self._backend.get_record_set(owner_key, ttl_days=self._cache_expiry_days)

    def get_metadata(self, owner_key: str) -> EntryMetadata | None:
        """Unencrypted metadata of a record set."""
        return self._backend.get_metadata(owner_key)

    def find_overlapping_ranges(self, base_key: str, requested: DateRange) -> list[RangeHit]:
        """Cached record sets under base_key overlapping a range."""
        return self._backend.find_overlapping_ranges(
            base_key, requested, ttl_days=self._cache_expiry_days
        )

    def put_state(self, owner_key: str, state: Any) -> None:
        """Store a state object."""
        self._backend.put_state(owner_key, state)

    def get_state(self, owner_key: str) -> Any | None:
        """Read a state object."""
        return self._backend.get_state(owner_key)

    def delete(self, owner_key: str) -> bool:
        """Delete a single cache key."""
        return self._backend.delete(owner_key)

    def clear_owner(self, owner_prefix: str) -> int:
        """Delete every entry under a key prefix."""
        return self._backend.clear_owner(owner_prefix)

    def clear_company(
        self, company: CompanyInfo, user_id: str, base_key: str = DEFAULT_BASE_KEY
    ) -> int:
        """Delete a company's record sets and the user's sync progress for it.

        Record sets are matched on their exact base key, so companies whose
        ids share a prefix (``1`` and ``1_2``) are kept apart.

        Args:
            company: Company to clear.
            user_id: Owner of the sync progress to drop.
            base_key: Base cache key the company's record sets use.

        Returns:
            Number of entries removed.
        """
        owner_base = record_key(company, base_key)
        removed = 0
        for meta in self._backend.list_entries():
            if meta.kind != RECORD or meta.base_key != owner_base:
                continue
            if self._backend.delete(meta.key):
                removed += 1
        if self._backend.delete(state_key(user_id, company.company_id)):
            removed += 1
        return removed

    def list_entries(self) -> list[EntryMetadata]:
        """Metadata of every stored entry."""
        return self._backend.list_entries()

    def cleanup_expired(self) -> int:
        """Remove expired record sets now."""
        return self._backend.cleanup_expired(self._cache_expiry_days)

    # === Reporting ===

    def get_cache_stats(self) -> CacheStats:
        """Summarize what the cache holds."""
        entries = self._backend.list_entries()
        record_sets = sum(1 for meta in entries if meta.kind == RECORD)
        return CacheStats(
            backend_type=self._backend.backend_type,
            location=self._backend.location,
            record_sets=record_sets,
            states=len(entries) - record_sets,
            usage_bytes=sum(meta.size for meta in entries),
            cache_expiry_days=self._cache_expiry_days,
        )

    def get_storage_quota(self) -> StorageQuota:
        """Storage usage against the configured quota or the free disk space."""
        usage = self._backend.usage_bytes()
        if self._config.quota_bytes is not None:
            quota = self._config.quota_bytes
        else:
            quota = usage + shutil.disk_usage(self._config.cache_dir).free
        return StorageQuota(usage=usage, quota=quota, available=max(quota - usage, 0))

    def is_storage_low(self, threshold_percent: float | None = None) -> bool:
        """Check whether usage crossed the threshold (80% by default)."""
        if threshold_percent is None:
            threshold_percent = self._config.storage_low_threshold
        return self.get_storage_quota().percent_used >= threshold_percent
