"""Private file-area storage backend.

Each cache entry is one ciphertext file in a private (0700) directory tree;
a small JSON index keeps the unencrypted metadata so range queries never
have to open the files.

Layout:
    <root>/index.json
    <root>/records/<safe key>-<hash>.enc
    <root>/state/<safe key>-<hash>.enc
"""

from __future__ import annotations

import contextlib
import errno
import hashlib
import json
import logging
import os
import re
from pathlib import Path

from vouchersync.client.keystore import CryptoKeyStore
from vouchersync.client.storage.base import (
    ENTRY_KINDS,
    RECORD,
    STATE,
    EntryMetadata,
    StorageBackend,
)
from vouchersync.core.errors import StorageError, StorageQuotaExceeded

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"
INDEX_VERSION = 1
ENTRY_SUFFIX = ".enc"

_KIND_DIRS = {RECORD: "records", STATE: "state"}
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")
_FULL_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


def sanitize_key(key: str) -> str:
    """Turn a cache key into a unique, filesystem-safe file stem.

    Unsafe characters are replaced with underscores, and a short hash of the
    original key keeps distinct keys from colliding after replacement.
    """
    safe = _UNSAFE_CHARS.sub("_", key)[:120]
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:10]
    return f"{safe}-{digest}"


def _atomic_write(path: Path, data: bytes) -> None:
    """Write to a temporary file and rename it over the target."""
    tmp = path.with_name(path.name + ".tmp")
    try:
        with open(tmp, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except OSError:
        with contextlib.suppress(OSError):
            tmp.unlink()
        raise


class FileAreaBackend(StorageBackend):
    """Stores entries as individual files under a private directory."""

    backend_type = "file"

    def __init__(
        self,
        root: Path,
        keystore: CryptoKeyStore,
        key: bytes,
        quota_bytes: int | None = None,
    ) -> None:
        """Initialize the file area.

        Args:
            root: Private directory for the cache files.
            keystore: Performs encryption and decryption.
            key: The owning user's derived key.
            quota_bytes: Optional cap on total stored ciphertext.
        """
        super().__init__(keystore, key, quota_bytes)
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True, mode=0o700)
        with contextlib.suppress(OSError):
            os.chmod(self._root, 0o700)
        for dirname in _KIND_DIRS.values():
            (self._root / dirname).mkdir(exist_ok=True, mode=0o700)

        self._index_path = self._root / INDEX_FILE
        self._index: dict[str, dict[str, EntryMetadata]] = {kind: {} for kind in ENTRY_KINDS}
        self._load_index()

    @property
    def location(self) -> str:
        """Root directory of the file area."""
        return str(self._root)

    @property
    def root(self) -> Path:
        """Root directory of the file area."""
        return self._root

    def entry_path(self, kind: str, key: str) -> Path:
        """Path of the file holding an entry."""
        return self._root / _KIND_DIRS[kind] / f"{sanitize_key(key)}{ENTRY_SUFFIX}"

    # === Index ===

    def _load_index(self) -> None:
        """Load the metadata index, dropping entries whose file is gone."""
        if self._index_path.exists():
            try:
                data = json.loads(self._index_path.read_text())
                for kind in ENTRY_KINDS:
                    for item in data.get(kind, []):
                        meta = EntryMetadata.from_dict(item)
                        self._index[kind][meta.key] = meta
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Cache index at {self._index_path} unreadable, rebuilding: {e}")
                self._index = {kind: {} for kind in ENTRY_KINDS}

        known: set[Path] = set()
        for kind in ENTRY_KINDS:
            for key in list(self._index[kind]):
                path = self.entry_path(kind, key)
                if path.exists():
                    known.add(path)
                else:
                    logger.debug("Dropping index entry %s: file missing", key)
                    del self._index[kind][key]

        # Files the index does not know about cannot be attributed to a key.
        for dirname in _KIND_DIRS.values():
            for path in (self._root / dirname).iterdir():
                if path not in known:
                    logger.debug("Removing orphaned cache file %s", path.name)
                    with contextlib.suppress(OSError):
                        path.unlink()

        self._save_index()

    def _save_index(self) -> None:
        """Persist the metadata index atomically."""
        data: dict[str, object] = {"version": INDEX_VERSION}
        for kind in ENTRY_KINDS:
            data[kind] = [meta.to_dict() for meta in self._index[kind].values()]
        try:
            _atomic_write(self._index_path, json.dumps(data).encode("utf-8"))
        except OSError as e:
            if e.errno in _FULL_ERRNOS:
                raise StorageQuotaExceeded(0, f"No space left to update cache index: {e}") from e
            raise StorageError(f"Failed to write cache index: {e}") from e

    # === Primitives ===

    def _write_entry(self, meta: EntryMetadata, blob: bytes) -> None:
        path = self.entry_path(meta.kind, meta.key)
        try:
            _atomic_write(path, blob)
        except OSError as e:
            if e.errno in _FULL_ERRNOS:
                raise StorageQuotaExceeded(len(blob)) from e
            raise StorageError(f"Failed to write cache entry {meta.key}: {e}") from e

        self._index[meta.kind][meta.key] = meta
        self._save_index()

    def _read_entry(self, kind: str, key: str) -> tuple[EntryMetadata, bytes] | None:
        meta = self._index[kind].get(key)
        if meta is None:
            return None
        try:
            blob = self.entry_path(kind, key).read_bytes()
        except FileNotFoundError:
            logger.warning("Cache file for %s vanished, dropping index entry", key)
            del self._index[kind][key]
            self._save_index()
            return None
        except OSError as e:
            raise StorageError(f"Failed to read cache entry {key}: {e}") from e
        return meta, blob

    def _read_metadata(self, kind: str, key: str) -> EntryMetadata | None:
        return self._index[kind].get(key)

    def _delete_entry(self, kind: str, key: str) -> bool:
        meta = self._index[kind].pop(key, None)
        path = self.entry_path(kind, key)
        existed = meta is not None or path.exists()
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to delete cache entry {key}: {e}") from e
        if meta is not None:
            self._save_index()
        return existed

    def _list_metadata(self, kind: str | None = None) -> list[EntryMetadata]:
        kinds = ENTRY_KINDS if kind is None else (kind,)
        return [meta for k in kinds for meta in self._index[k].values()]

    def usage_bytes(self) -> int:
        with self._lock:
            return sum(meta.size for meta in self._list_metadata())
