"""Delta sync of company records into the encrypted cache.

Architecture:
    SyncOrchestrator → DeltaSyncEngine → RemoteClient → merge → HybridStore

Components:
- **SyncOrchestrator**: Deduplicating queue, one background worker, progress pub/sub
- **DeltaSyncEngine**: Mode detection, chunked resumable fetch, merge and persist
- **ProgressChannel**: Fan-out of progress events with replay of the latest one
- **merge**: Revision-aware merge and deduplication of records
- **chunking**: Date windows for chunked fetches
- **retry**: Exponential backoff for transient network failures
"""

from vouchersync.client.sync.chunking import DEFAULT_CHUNK_DAYS, split_date_range, sync_span
from vouchersync.client.sync.engine import DeltaSyncEngine
from vouchersync.client.sync.merge import (
    MergeStats,
    Record,
    dedupe_by_record_id,
    distinct_record_ids,
    max_revision,
    merge_records,
    record_id,
    revision_id,
)
from vouchersync.client.sync.orchestrator import SyncOrchestrator
from vouchersync.client.sync.progress import ProgressChannel
from vouchersync.client.sync.retry import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_BACKOFF,
    backoff_delay,
    is_retryable,
    retry_with_backoff,
)
from vouchersync.client.sync.types import (
    ProgressCallback,
    ProgressEvent,
    SyncProgress,
    SyncResult,
    Unsubscribe,
)

__all__ = [
    # Orchestration
    "DeltaSyncEngine",
    "ProgressChannel",
    "SyncOrchestrator",
    # Chunking
    "DEFAULT_CHUNK_DAYS",
    "split_date_range",
    "sync_span",
    # Merge
    "MergeStats",
    "Record",
    "dedupe_by_record_id",
    "distinct_record_ids",
    "max_revision",
    "merge_records",
    "record_id",
    "revision_id",
    # Retry
    "DEFAULT_BACKOFF_MULTIPLIER",
    "DEFAULT_INITIAL_BACKOFF",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_MAX_BACKOFF",
    "backoff_delay",
    "is_retryable",
    "retry_with_backoff",
    # Types
    "ProgressCallback",
    "ProgressEvent",
    "SyncProgress",
    "SyncResult",
    "Unsubscribe",
]
