"""Types shared by the sync engine and the orchestrator."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from vouchersync.core.types import SyncMode, SyncStatus


# =============================================================================
# Progress
# =============================================================================


@dataclass
class SyncProgress:
    """Persisted progress of one user's sync of one company.

    Stored after every chunk so an interrupted sync resumes where it stopped.

    Attributes:
        user_id: User owning the cache.
        company_id: Company being synced.
        status: Lifecycle state.
        chunks_completed: Chunks attempted so far in the current plan.
        total_chunks: Chunks in the current plan (0 for a single request).
        last_synced_revision: Watermark after the last completed sync.
        last_updated_at: Unix timestamp of the last update.
        error: Reason of the last failure.
        failed_chunks: Indexes of chunks that exhausted their retries.
        last_synced_date: End date of the last chunk attempted.
        mode: Fresh or incremental.
        since_revision: Watermark the current plan fetches from.
        range_start: First day of the current chunk plan (ISO).
        range_end: Last day of the current chunk plan (ISO).
        fresh_start: The current plan discards the existing cache.
    """

    user_id: str
    company_id: str
    status: SyncStatus = SyncStatus.IDLE
    chunks_completed: int = 0
    total_chunks: int = 0
    last_synced_revision: int | None = None
    last_updated_at: float = field(default_factory=time.time)
    error: str | None = None
    failed_chunks: list[int] = field(default_factory=list)
    last_synced_date: str | None = None
    mode: SyncMode | None = None
    since_revision: int | None = None
    range_start: str | None = None
    range_end: str | None = None
    fresh_start: bool = False

    @property
    def percent(self) -> float:
        """Get progress percentage."""
        if self.total_chunks == 0:
            return 100.0 if self.status == SyncStatus.COMPLETED else 0.0
        return (self.chunks_completed / self.total_chunks) * 100

    @property
    def has_chunk_plan(self) -> bool:
        """Whether a chunked fetch was planned and can be resumed."""
        return self.total_chunks > 0 and self.range_start is not None and self.range_end is not None

    def touch(self) -> None:
        """Update the modification timestamp."""
        self.last_updated_at = time.time()

    def to_dict(self) -> dict[str, Any]:
        """Serialize with camelCase names."""
        return {
            "userId": self.user_id,
            "companyId": self.company_id,
            "status": self.status.value,
            "chunksCompleted": self.chunks_completed,
            "totalChunks": self.total_chunks,
            "lastSyncedRevision": self.last_synced_revision,
            "lastUpdatedAt": self.last_updated_at,
            "error": self.error,
            "failedChunks": list(self.failed_chunks),
            "lastSyncedDate": self.last_synced_date,
            "mode": self.mode.value if self.mode else None,
            "sinceRevision": self.since_revision,
            "rangeStart": self.range_start,
            "rangeEnd": self.range_end,
            "freshStart": self.fresh_start,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncProgress:
        """Create from a stored dictionary."""
        mode = data.get("mode")
        return cls(
            user_id=data["userId"],
            company_id=data["companyId"],
            status=SyncStatus(data.get("status", SyncStatus.IDLE.value)),
            chunks_completed=int(data.get("chunksCompleted", 0)),
            total_chunks=int(data.get("totalChunks", 0)),
            last_synced_revision=data.get("lastSyncedRevision"),
            last_updated_at=float(data.get("lastUpdatedAt", 0.0)),
            error=data.get("error"),
            failed_chunks=[int(i) for i in data.get("failedChunks", [])],
            last_synced_date=data.get("lastSyncedDate"),
            mode=SyncMode(mode) if mode else None,
            since_revision=data.get("sinceRevision"),
            range_start=data.get("rangeStart"),
            range_end=data.get("rangeEnd"),
            fresh_start=bool(data.get("freshStart", False)),
        )


@dataclass(frozen=True)
class ProgressEvent:
    """Progress update published to subscribers.

    Attributes:
        current: Chunks done.
        total: Chunks planned (0 when unknown).
        message: Human-readable status line.
        owner_id: ``{locationId}_{companyId}`` of the sync.
    """

    current: int
    total: int
    message: str
    owner_id: str

    @property
    def percent(self) -> float:
        """Get progress percentage."""
        if self.total == 0:
            return 0.0
        return (self.current / self.total) * 100


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class SyncResult:
    """Outcome of a successful sync."""

    record_count: int
    last_revision: int | None
    mode: SyncMode


# Type aliases for callbacks
ProgressCallback = Callable[[ProgressEvent], None]
Unsubscribe = Callable[[], None]
