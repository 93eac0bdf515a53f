"""Storage backend abstraction for the encrypted cache.

Every backend stores opaque ciphertext plus a little unencrypted metadata
(timestamps, date range, base key) and must behave identically:

- TTL expiry: expired record sets are evicted on read and swept after writes
- Quota: on a full store, expired entries are removed and the write retried
  once before StorageQuotaExceeded is raised
- Atomic writes: a crash never leaves a silently accepted partial entry;
  anything that fails to decrypt is evicted and read as a miss

The policy lives here; subclasses only implement the primitive operations.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from vouchersync.client.keystore import CryptoKeyStore
from vouchersync.core.errors import StorageQuotaExceeded
from vouchersync.core.ranges import DateRange, overlaps, strip_range_suffix

logger = logging.getLogger(__name__)

RECORD = "record"
STATE = "state"
ENTRY_KINDS = (RECORD, STATE)

SECONDS_PER_DAY = 86400


@dataclass
class EntryMetadata:
    """Unencrypted metadata kept alongside each stored blob.

    Attributes:
        key: Owner key the entry is stored under.
        kind: "record" for record sets, "state" for sync state.
        created_at: Unix timestamp of the write.
        size: Size of the ciphertext in bytes.
        base_key: Key without its date-range suffix.
        date_range: Range covered by the entry, if any.
        extra: Caller-supplied metadata (e.g. lastRevision).
    """

    key: str
    kind: str
    created_at: float
    size: int
    base_key: str | None = None
    date_range: DateRange | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def is_expired(self, ttl_days: float | None, now: float | None = None) -> bool:
        """Check whether the entry is older than ttl_days."""
        if ttl_days is None:
            return False
        now = time.time() if now is None else now
        return now - self.created_at > ttl_days * SECONDS_PER_DAY

    def to_dict(self) -> dict[str, Any]:
        """Serialize for an on-disk index."""
        return {
            "key": self.key,
            "kind": self.kind,
            "createdAt": self.created_at,
            "size": self.size,
            "baseKey": self.base_key,
            "dateRange": self.date_range.to_dict() if self.date_range else None,
            "extra": self.extra,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EntryMetadata:
        """Create from a serialized index entry."""
        return cls(
            key=data["key"],
            kind=data["kind"],
            created_at=float(data["createdAt"]),
            size=int(data["size"]),
            base_key=data.get("baseKey"),
            date_range=(
                DateRange.from_dict(data["dateRange"]) if data.get("dateRange") else None
            ),
            extra=dict(data.get("extra") or {}),
        )


@dataclass
class RangeHit:
    """A cached record set overlapping a requested date range."""

    range: DateRange
    data: Any
    key: str


class StorageBackend(ABC):
    """Abstract base class for encrypted cache backends."""

    backend_type: str = ""

    def __init__(
        self,
        keystore: CryptoKeyStore,
        key: bytes,
        quota_bytes: int | None = None,
    ) -> None:
        """Initialize shared backend state.

        Args:
            keystore: Performs encryption and decryption.
            key: The owning user's derived key.
            quota_bytes: Optional cap on total stored ciphertext.
        """
        self._keystore = keystore
        self._key = key
        self._quota_bytes = quota_bytes
        self._lock = threading.RLock()

    # === Primitive operations (implemented by subclasses) ===

    @abstractmethod
    def _write_entry(self, meta: EntryMetadata, blob: bytes) -> None:
        """Atomically store a blob, replacing any entry with the same kind and key.

        Raises:
            StorageQuotaExceeded: If the underlying store is full.
            StorageError: For any other write failure.
        """

    @abstractmethod
    def _read_entry(self, kind: str, key: str) -> tuple[EntryMetadata, bytes] | None:
        """Read metadata and blob, or None if absent."""

    @abstractmethod
    def _read_metadata(self, kind: str, key: str) -> EntryMetadata | None:
        """Read metadata only, or None if absent."""

    @abstractmethod
    def _delete_entry(self, kind: str, key: str) -> bool:
        """Delete an entry. Returns True if it existed."""

    @abstractmethod
    def _list_metadata(self, kind: str | None = None) -> list[EntryMetadata]:
        """List metadata of all entries, optionally of one kind."""

    @abstractmethod
    def usage_bytes(self) -> int:
        """Total ciphertext bytes currently stored."""

    @property
    @abstractmethod
    def location(self) -> str:
        """Human-readable location of the store."""

    def close(self) -> None:
        """Release resources held by the backend."""

    def _range_candidates(self, base_key: str, requested: DateRange) -> list[EntryMetadata]:
        """Record entries under base_key whose range overlaps the request."""
        return [
            meta
            for meta in self._list_metadata(RECORD)
            if meta.base_key == base_key
            and meta.date_range is not None
            and overlaps(meta.date_range, requested)
        ]

    # === Record sets ===

    def put_record_set(
        self,
        owner_key: str,
        data: Any,
        ttl_days: float | None = None,
        date_range: DateRange | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Encrypt and store a record set.

        Args:
            owner_key: Cache key of the record set.
            data: JSON-serializable records.
            ttl_days: Expiry used for the post-write sweep and quota cleanup.
            date_range: Range covered by this record set.
            metadata: Extra unencrypted metadata.

        Raises:
            StorageQuotaExceeded: If the store is full after cleanup.
        """
        blob = self._keystore.encrypt(self._key, data)
        meta = EntryMetadata(
            key=owner_key,
            kind=RECORD,
            created_at=time.time(),
            size=len(blob),
            base_key=strip_range_suffix(owner_key),
            date_range=date_range,
            extra=dict(metadata or {}),
        )
        with self._lock:
            self._store(meta, blob, ttl_days)
        logger.debug(f"Stored record set {owner_key} ({len(blob)} bytes)")

        if ttl_days is not None:
            try:
                self.cleanup_expired(ttl_days)
            except Exception:
                logger.exception("Background cleanup after write failed")

    def get_record_set(self, owner_key: str, ttl_days: float | None = None) -> Any | None:
        """Read and decrypt a record set.

        Args:
            owner_key: Cache key of the record set.
            ttl_days: Entries older than this are evicted and reported missing.

        Returns:
            The records, or None when absent, expired or undecryptable.
        """
        with self._lock:
            return self._read_decrypted(RECORD, owner_key, ttl_days)

    def get_metadata(self, owner_key: str) -> EntryMetadata | None:
        """Get the unencrypted metadata of a record set without decrypting it."""
        with self._lock:
            return self._read_metadata(RECORD, owner_key)

    def find_overlapping_ranges(
        self,
        base_key: str,
        requested: DateRange,
        ttl_days: float | None = None,
    ) -> list[RangeHit]:
        """Find cached record sets under base_key overlapping a date range.

        Args:
            base_key: Key without date-range suffix.
            requested: Range of interest.
            ttl_days: Expired hits are evicted and omitted.

        Returns:
            Hits sorted by range start.
        """
        hits: list[RangeHit] = []
        with self._lock:
            for meta in self._range_candidates(base_key, requested):
                data = self._read_decrypted(RECORD, meta.key, ttl_days)
                if data is None or meta.date_range is None:
                    continue
                hits.append(RangeHit(range=meta.date_range, data=data, key=meta.key))
        hits.sort(key=lambda hit: hit.range)
        return hits

    # === State ===

    def put_state(self, owner_key: str, state: Any) -> None:
        """Encrypt and store a small state object (never expires)."""
        blob = self._keystore.encrypt(self._key, state)
        meta = EntryMetadata(
            key=owner_key,
            kind=STATE,
            created_at=time.time(),
            size=len(blob),
        )
        with self._lock:
            self._store(meta, blob, None)

    def get_state(self, owner_key: str) -> Any | None:
        """Read a state object, or None when absent or undecryptable."""
        with self._lock:
            return self._read_decrypted(STATE, owner_key, None)

    # === Maintenance ===

    def delete(self, owner_key: str) -> bool:
        """Delete the record set and state stored under a key."""
        with self._lock:
            removed = [self._delete_entry(kind, owner_key) for kind in ENTRY_KINDS]
        return any(removed)

    def clear_owner(self, owner_prefix: str) -> int:
        """Delete every entry whose key starts with a prefix.

        Args:
            owner_prefix: Key prefix, e.g. ``"{locationId}_{companyId}_"``.

        Returns:
            Number of entries removed.
        """
        removed = 0
        with self._lock:
            for meta in self._list_metadata():
                if meta.key.startswith(owner_prefix) and self._delete_entry(
                    meta.kind, meta.key
                ):
                    removed += 1
        logger.info(f"Cleared {removed} cache entries with prefix {owner_prefix!r}")
        return removed

    def list_entries(self) -> list[EntryMetadata]:
        """List metadata of every stored entry, sorted by key."""
        with self._lock:
            entries = self._list_metadata()
        return sorted(entries, key=lambda meta: (meta.key, meta.kind))

    def cleanup_expired(self, ttl_days: float | None) -> int:
        """Remove record sets older than ttl_days.

        Returns:
            Number of entries removed.
        """
        if ttl_days is None:
            return 0
        now = time.time()
        removed = 0
        with self._lock:
            for meta in self._list_metadata(RECORD):
                if meta.is_expired(ttl_days, now) and self._delete_entry(RECORD, meta.key):
                    removed += 1
        if removed:
            logger.info("Removed %d expired cache entries", removed)
        return removed

    # === Internals ===

    def _read_decrypted(self, kind: str, key: str, ttl_days: float | None) -> Any | None:
        """Read an entry, evicting it if expired or undecryptable."""
        entry = self._read_entry(kind, key)
        if entry is None:
            return None
        meta, blob = entry

        if meta.is_expired(ttl_days):
            logger.info("Cache entry %s expired, evicting", key)
            self._delete_entry(kind, key)
            return None

        data = self._keystore.decrypt(self._key, blob)
        if data is None:
            logger.warning("Evicting undecryptable cache entry %s", key)
            self._delete_entry(kind, key)
            return None
        return data

    def _check_quota(self, meta: EntryMetadata) -> None:
        """Raise StorageQuotaExceeded if the write would exceed the quota."""
        if self._quota_bytes is None:
            return
        current = self._read_metadata(meta.kind, meta.key)
        replaced = current.size if current else 0
        if self.usage_bytes() - replaced + meta.size > self._quota_bytes:
            raise StorageQuotaExceeded(meta.size)

    def _store(self, meta: EntryMetadata, blob: bytes, ttl_days: float | None) -> None:
        """Write with one cleanup-and-retry when the store is full."""
        try:
            self._check_quota(meta)
            self._write_entry(meta, blob)
            return
        except StorageQuotaExceeded:
            removed = self.cleanup_expired(ttl_days)
            logger.warning(
                f"Storage full writing {meta.key}; removed {removed} expired "
                "entries, retrying once"
            )

        try:
            self._check_quota(meta)
            self._write_entry(meta, blob)
        except StorageQuotaExceeded as e:
            logger.error(f"Storage still full writing {meta.key} ({len(blob)} bytes)")
            raise StorageQuotaExceeded(len(blob)) from e
