"""Exception hierarchy for vouchersync.

Every error raised by the engine derives from VoucherSyncError so callers
can catch the whole family at the seams (CLI, orchestrator worker loop).
"""

from __future__ import annotations

# HTTP statuses worth another attempt; everything else aborts the request.
RETRYABLE_STATUS_CODES = frozenset({408, 502, 504})


class VoucherSyncError(Exception):
    """Base exception for vouchersync errors."""


# =============================================================================
# Remote errors
# =============================================================================


class NetworkError(VoucherSyncError):
    """Timeout, connection failure or server-side (5xx/408) failure."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        timeout: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.timeout = timeout

    @property
    def retryable(self) -> bool:
        """Whether the request may be retried with backoff."""
        if self.timeout or self.status_code is None:
            return True
        return self.status_code in RETRYABLE_STATUS_CODES


class RemoteError(VoucherSyncError):
    """The remote endpoint rejected the request or returned garbage."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteSlicingRequired(VoucherSyncError):
    """The remote asked for the request to be split into date chunks.

    This is a signal, not a failure: the engine switches to chunked fetching.
    """


# =============================================================================
# Local errors
# =============================================================================


class DecryptionError(VoucherSyncError):
    """A payload could not be decrypted or decoded."""


class StorageError(VoucherSyncError):
    """A storage backend failed to read or write an entry."""


class StorageQuotaExceeded(StorageError):
    """Storage is full even after expired entries were removed."""

    def __init__(self, size_bytes: int, message: str | None = None) -> None:
        if message is None:
            message = (
                f"Storage quota exceeded while writing ~{size_bytes / 1024:.1f} KiB. "
                "Clear cached companies or raise the quota."
            )
        super().__init__(message)
        self.size_bytes = size_bytes


# =============================================================================
# Sync errors
# =============================================================================


class MergeInvariantViolation(VoucherSyncError):
    """A merge would leave fewer distinct records than the cache started with."""

    def __init__(self, before: int, after: int) -> None:
        super().__init__(
            f"Merge would reduce distinct records from {before} to {after}; "
            "cache left untouched"
        )
        self.before = before
        self.after = after


class ChunkFetchError(VoucherSyncError):
    """Some chunks could not be fetched even after the retry pass."""

    def __init__(self, failed_chunks: list[int], total_chunks: int) -> None:
        super().__init__(
            f"{len(failed_chunks)} of {total_chunks} chunks failed after retry"
        )
        self.failed_chunks = list(failed_chunks)
        self.total_chunks = total_chunks


class SyncCancelled(VoucherSyncError):
    """The active sync was cancelled; persisted progress stays resumable."""


class SyncInProgress(VoucherSyncError):
    """An operation conflicts with a sync currently running for the owner."""
