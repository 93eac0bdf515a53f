"""Embedded store backend (SQLite).

Fallback when a private file area is unavailable. Entries live as rows in a
single table, indexed by key, timestamp and date range; every write is one
statement and therefore atomic.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import date
from pathlib import Path

from vouchersync.client.keystore import CryptoKeyStore
from vouchersync.client.storage.base import (
    RECORD,
    EntryMetadata,
    StorageBackend,
)
from vouchersync.core.errors import StorageError, StorageQuotaExceeded
from vouchersync.core.ranges import DateRange

logger = logging.getLogger(__name__)


def _is_full_error(error: sqlite3.Error) -> bool:
    """SQLite reports a full disk or page limit as an OperationalError."""
    return isinstance(error, sqlite3.OperationalError) and "full" in str(error).lower()


class EmbeddedStoreBackend(StorageBackend):
    """Stores entries as rows of an SQLite database."""

    backend_type = "sqlite"

    def __init__(
        self,
        db_path: Path,
        keystore: CryptoKeyStore,
        key: bytes,
        quota_bytes: int | None = None,
    ) -> None:
        """Open (and create if needed) the database.

        Args:
            db_path: Path to the SQLite database file.
            keystore: Performs encryption and decryption.
            key: The owning user's derived key.
            quota_bytes: Optional cap on total stored ciphertext.
        """
        super().__init__(keystore, key, quota_bytes)
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row

        # Enable WAL mode for better concurrency
        self._conn.execute("PRAGMA journal_mode=WAL")

        self._create_tables()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS entries (
                kind TEXT NOT NULL,
                key TEXT NOT NULL,
                payload BLOB NOT NULL,
                created_at REAL NOT NULL,
                size INTEGER NOT NULL,
                base_key TEXT,
                start_date TEXT,
                end_date TEXT,
                extra TEXT NOT NULL DEFAULT '{}',
                PRIMARY KEY (kind, key)
            );

            CREATE INDEX IF NOT EXISTS idx_entries_created
                ON entries(created_at);

            CREATE INDEX IF NOT EXISTS idx_entries_range
                ON entries(base_key, start_date, end_date);
        """)

    @property
    def location(self) -> str:
        """Path of the database file."""
        return str(self._db_path)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    @staticmethod
    def _row_to_metadata(row: sqlite3.Row) -> EntryMetadata:
        date_range = None
        if row["start_date"] and row["end_date"]:
            date_range = DateRange(
                date.fromisoformat(row["start_date"]),
                date.fromisoformat(row["end_date"]),
            )
        return EntryMetadata(
            key=row["key"],
            kind=row["kind"],
            created_at=row["created_at"],
            size=row["size"],
            base_key=row["base_key"],
            date_range=date_range,
            extra=json.loads(row["extra"] or "{}"),
        )

    # === Primitives ===

    def _write_entry(self, meta: EntryMetadata, blob: bytes) -> None:
        start = meta.date_range.start.isoformat() if meta.date_range else None
        end = meta.date_range.end.isoformat() if meta.date_range else None
        try:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO entries
                    (kind, key, payload, created_at, size, base_key, start_date, end_date, extra)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    meta.kind,
                    meta.key,
                    blob,
                    meta.created_at,
                    meta.size,
                    meta.base_key,
                    start,
                    end,
                    json.dumps(meta.extra),
                ),
            )
        except sqlite3.Error as e:
            if _is_full_error(e):
                raise StorageQuotaExceeded(len(blob)) from e
            raise StorageError(f"Failed to write cache entry {meta.key}: {e}") from e

    def _read_entry(self, kind: str, key: str) -> tuple[EntryMetadata, bytes] | None:
        cursor = self._conn.execute(
            "SELECT * FROM entries WHERE kind = ? AND key = ?",
            (kind, key),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_metadata(row), bytes(row["payload"])

    def _read_metadata(self, kind: str, key: str) -> EntryMetadata | None:
        cursor = self._conn.execute(
            """
            SELECT kind, key, created_at, size, base_key, start_date, end_date, extra
            FROM entries WHERE kind = ? AND key = ?
            """,
            (kind, key),
        )
        row = cursor.fetchone()
        return self._row_to_metadata(row) if row else None

    def _delete_entry(self, kind: str, key: str) -> bool:
        cursor = self._conn.execute(
            "DELETE FROM entries WHERE kind = ? AND key = ?",
            (kind, key),
        )
        return cursor.rowcount > 0

    def _list_metadata(self, kind: str | None = None) -> list[EntryMetadata]:
        query = (
            "SELECT kind, key, created_at, size, base_key, start_date, end_date, extra "
            "FROM entries"
        )
        if kind is None:
            cursor = self._conn.execute(query)
        else:
            cursor = self._conn.execute(query + " WHERE kind = ?", (kind,))
        return [self._row_to_metadata(row) for row in cursor.fetchall()]

    def _range_candidates(self, base_key: str, requested: DateRange) -> list[EntryMetadata]:
        cursor = self._conn.execute(
            """
            SELECT kind, key, created_at, size, base_key, start_date, end_date, extra
            FROM entries
            WHERE kind = ? AND base_key = ?
              AND start_date IS NOT NULL
              AND start_date <= ? AND end_date >= ?
            ORDER BY start_date
            """,
            (RECORD, base_key, requested.end.isoformat(), requested.start.isoformat()),
        )
        return [self._row_to_metadata(row) for row in cursor.fetchall()]

    def usage_bytes(self) -> int:
        with self._lock:
            cursor = self._conn.execute("SELECT COALESCE(SUM(size), 0) FROM entries")
            return int(cursor.fetchone()[0])
