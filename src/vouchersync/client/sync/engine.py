"""Delta sync engine: one company's sync from mode detection to persist.

State machine per run:
    Init → ModeDetection → (FreshChunked | IncrementalFetch) → Merge → Persist → Done | Failed

- **ModeDetection**: cached records with a revision make the sync
  incremental from their highest revision (the watermark), otherwise fresh.
- **IncrementalFetch**: a single server-sliced request for revisions above
  the watermark; a slicing signal, timeout or server error falls back to
  chunked fetching.
- **Chunked fetch**: the span from the earliest record date to today is
  fetched in fixed windows, strictly in ascending order. Each window is
  staged in the cache under its ranged key and progress is persisted after
  it, so an interrupted sync resumes at the next window. Windows that
  exhaust their retries are retried once more after the main pass.
- **Merge**: staged windows are merged into the cached set (highest revision
  wins) and validated; the cache is only overwritten after validation.
- **Persist**: the merged set is written, read back and compared.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime
from typing import Any

from vouchersync.client.api import FetchRequest, RemoteClient
from vouchersync.client.storage.hybrid import HybridStore, record_key, state_key
from vouchersync.client.sync.chunking import split_date_range, sync_span
from vouchersync.client.sync.merge import (
    Record,
    dedupe_by_record_id,
    distinct_record_ids,
    earliest_record_date,
    max_revision,
    merge_records,
)
from vouchersync.client.sync.retry import retry_with_backoff
from vouchersync.client.sync.types import (
    ProgressCallback,
    ProgressEvent,
    SyncProgress,
    SyncResult,
)
from vouchersync.core.config import SessionContext, SyncConfig
from vouchersync.core.errors import (
    ChunkFetchError,
    MergeInvariantViolation,
    NetworkError,
    RemoteError,
    RemoteSlicingRequired,
    SyncCancelled,
    VoucherSyncError,
)
from vouchersync.core.ranges import DateRange, gaps, overlaps
from vouchersync.core.ranges import merge as merge_ranges
from vouchersync.core.types import CompanyInfo, SyncMode, SyncStatus

logger = logging.getLogger(__name__)


@dataclass
class _SyncRun:
    """Per-invocation state threaded through the engine."""

    company: CompanyInfo
    record_key: str
    state_key: str
    progress: SyncProgress
    cancel_event: threading.Event
    on_progress: ProgressCallback | None = None


class DeltaSyncEngine:
    """Synchronizes one company at a time into the encrypted cache.

    The engine is not reentrant: the orchestrator runs syncs one after
    another.
    """

    def __init__(
        self,
        store: HybridStore,
        client: RemoteClient,
        session: SessionContext,
        config: SyncConfig | None = None,
        sleep: Callable[[float], None] | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Encrypted cache.
            client: Remote fetch client (also supplies the retry policy).
            session: Current user and auth token.
            config: Chunk size and base cache key.
            sleep: Replaces the cancellable backoff wait (tests).
            today: Returns the last day to sync.
        """
        self._store = store
        self._client = client
        self._session = session
        self._config = config or SyncConfig()
        self._sleep = sleep
        self._today = today

    # === Keys and lookups ===

    @property
    def base_key(self) -> str:
        """Base cache key of the record sets this engine writes."""
        return self._config.base_key

    def record_key(self, company: CompanyInfo) -> str:
        """Cache key of the company's complete record set."""
        return record_key(company, self._config.base_key)

    def state_key(self, company: CompanyInfo) -> str:
        """Cache key of the current user's progress for the company."""
        return state_key(self._session.user_id, company.company_id)

    def get_progress(self, company: CompanyInfo) -> SyncProgress | None:
        """Load persisted progress, or None if never synced."""
        data = self._store.get_state(self.state_key(company))
        if data is None:
            return None
        try:
            return SyncProgress.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Ignoring unreadable sync progress for {company.name}: {e}")
            return None

    def get_cached_records(self, company: CompanyInfo) -> list[Record] | None:
        """Cached record set of the company, or None if absent."""
        data = self._store.get_record_set(self.record_key(company))
        return data if isinstance(data, list) else None

    # === Sync ===

    def run(
        self,
        company: CompanyInfo,
        start_fresh: bool = False,
        on_progress: ProgressCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> SyncResult:
        """Synchronize a company.

        Args:
            company: Sync target.
            start_fresh: Ignore the cached set and any interrupted plan.
            on_progress: Receives progress events.
            cancel_event: When set, no further chunk is fetched.

        Returns:
            Record count and watermark of the persisted set.

        Raises:
            SyncCancelled: The sync was cancelled; progress stays resumable.
            ChunkFetchError: Some chunks failed twice; fetched data was kept.
            MergeInvariantViolation: The merge would lose records.
            VoucherSyncError: Any other fatal error.
        """
        stored = self.get_progress(company)
        run = _SyncRun(
            company=company,
            record_key=self.record_key(company),
            state_key=self.state_key(company),
            progress=stored or SyncProgress(self._session.user_id, company.company_id),
            cancel_event=cancel_event or threading.Event(),
            on_progress=on_progress,
        )

        try:
            if not start_fresh and stored is not None and self._is_resumable(stored):
                return self._resume(run)
            return self._start(run, start_fresh)
        except SyncCancelled:
            logger.info(
                f"Sync of {company.name} cancelled after "
                f"{run.progress.chunks_completed}/{run.progress.total_chunks} chunks"
            )
            raise
        except Exception as e:
            self._mark_failed(run, e)
            raise

    def _start(self, run: _SyncRun, start_fresh: bool) -> SyncResult:
        """Detect the mode and begin a new sync plan."""
        company = run.company
        span = sync_span(company, self._today())

        base = [] if start_fresh else self._load_existing(run)
        # A partial set may miss records below its highest revision
        watermark = max_revision(base) if base and self._is_complete(run) else None
        mode = SyncMode.INCREMENTAL if watermark is not None else SyncMode.FRESH
        logger.info(
            f"Starting {mode.value} sync of {company.name} "
            f"({len(base)} cached records, watermark={watermark})"
        )

        progress = run.progress
        progress.status = SyncStatus.IN_PROGRESS
        progress.mode = mode
        progress.since_revision = watermark
        progress.fresh_start = start_fresh
        progress.chunks_completed = 0
        progress.total_chunks = 0
        progress.failed_chunks = []
        progress.range_start = None
        progress.range_end = None
        progress.error = None
        self._save_progress(run)

        if mode is SyncMode.INCREMENTAL:
            incoming = self._fetch_incremental(run, span, watermark)
            if incoming is not None:
                return self._finish(run, base, incoming, mode)

        chunks = split_date_range(span, self._config.chunk_days)
        self._discard_staged(run)
        progress.range_start = span.start.isoformat()
        progress.range_end = span.end.isoformat()
        progress.total_chunks = len(chunks)
        self._save_progress(run)
        logger.info(f"Fetching {company.name} in {len(chunks)} chunks ({span})")
        self._emit(run, 0, len(chunks), f"Syncing {company.name}: 0 / {len(chunks)} chunks")

        return self._fetch_chunked(run, chunks, 0, base, mode, watermark)

    def _is_complete(self, run: _SyncRun) -> bool:
        """Whether the cached set was written by a sync that fetched every chunk."""
        meta = self._store.get_metadata(run.record_key)
        return meta is None or meta.extra.get("complete", True) is not False

    def _is_resumable(self, progress: SyncProgress) -> bool:
        """An interrupted plan, or a failed one with chunks left to retry."""
        if not progress.has_chunk_plan:
            return False
        if progress.status == SyncStatus.IN_PROGRESS:
            return True
        return progress.status == SyncStatus.FAILED and bool(progress.failed_chunks)

    def _resume(self, run: _SyncRun) -> SyncResult:
        """Continue a persisted chunk plan."""
        progress = run.progress
        span = DateRange.parse(progress.range_start or "", progress.range_end or "")
        chunks = split_date_range(span, self._config.chunk_days)
        if len(chunks) != progress.total_chunks:
            logger.warning(
                f"Chunk plan for {run.company.name} changed "
                f"({progress.total_chunks} -> {len(chunks)} chunks)"
            )
            progress.total_chunks = len(chunks)

        mode = progress.mode or SyncMode.FRESH
        base = [] if progress.fresh_start else self._load_existing(run)
        start_index = min(progress.chunks_completed, len(chunks))

        progress.status = SyncStatus.IN_PROGRESS
        progress.error = None
        self._save_progress(run)

        if start_index < len(chunks):
            message = f"Resuming from chunk {start_index + 1} of {len(chunks)}"
        else:
            message = f"Retrying {len(progress.failed_chunks)} failed chunks of {run.company.name}"
        logger.info(f"{run.company.name}: {message}")
        self._emit(run, start_index, len(chunks), message)

        return self._fetch_chunked(run, chunks, start_index, base, mode, progress.since_revision)

    # === Fetching ===

    def _fetch_incremental(
        self, run: _SyncRun, span: DateRange, watermark: int | None
    ) -> list[Record] | None:
        """Single request for changes; None means fall back to chunks."""
        company = run.company
        self._emit(run, 0, 0, f"Checking {company.name} for changes since revision {watermark}...")
        request = FetchRequest(
            company_id=company.company_id,
            location_id=company.location_id,
            from_date=span.start,
            to_date=span.end,
            server_slice=True,
            since_revision=watermark,
        )
        try:
            response = self._client.fetch(request)
        except RemoteSlicingRequired:
            logger.info(f"Remote requested slicing for {company.name}; switching to chunks")
            return None
        except NetworkError as e:
            logger.warning(f"Incremental fetch for {company.name} failed ({e}); switching to chunks")
            return None

        logger.info(f"Incremental fetch for {company.name} returned {len(response.records)} records")
        return response.records

    def _fetch_chunked(
        self,
        run: _SyncRun,
        chunks: list[DateRange],
        start_index: int,
        base: list[Record],
        mode: SyncMode,
        since_revision: int | None,
    ) -> SyncResult:
        """Fetch chunks from start_index on, retry failures once, then merge."""
        company = run.company
        progress = run.progress
        total = len(chunks)
        span = DateRange(chunks[0].start, chunks[-1].end)
        failed = set(progress.failed_chunks)

        # Chunks before start_index are skipped only if their data is still staged.
        missing = [span]
        if start_index > 0:
            staged = self._store.find_overlapping_ranges(run.record_key, span)
            missing = gaps(span, merge_ranges(hit.range for hit in staged))

        for index, chunk in enumerate(chunks):
            if index < start_index and not any(overlaps(chunk, gap) for gap in missing):
                continue
            self._check_cancelled(run)

            if self._fetch_chunk(run, chunk, index, total, since_revision):
                failed.discard(index)
            else:
                failed.add(index)

            progress.chunks_completed = max(progress.chunks_completed, index + 1)
            progress.failed_chunks = sorted(failed)
            progress.last_synced_date = chunk.end.isoformat()
            self._save_progress(run)
            self._emit(
                run,
                progress.chunks_completed,
                total,
                f"Syncing {company.name}: {progress.chunks_completed} / {total} chunks",
            )

        if failed:
            logger.info(f"Retrying {len(failed)} failed chunks for {company.name}")
            self._emit(run, progress.chunks_completed, total, f"Retrying {len(failed)} failed chunks")
            for index in sorted(failed):
                self._check_cancelled(run)
                if self._fetch_chunk(run, chunks[index], index, total, since_revision):
                    failed.discard(index)
                progress.failed_chunks = sorted(failed)
                self._save_progress(run)

        incoming: list[Record] = []
        for hit in self._store.find_overlapping_ranges(run.record_key, span):
            if isinstance(hit.data, list):
                incoming.extend(hit.data)

        if failed:
            self._finish(run, base, incoming, mode, complete=False)
            raise ChunkFetchError(sorted(failed), total)

        result = self._finish(run, base, incoming, mode)
        self._discard_staged(run)
        return result

    def _fetch_chunk(
        self,
        run: _SyncRun,
        chunk: DateRange,
        index: int,
        total: int,
        since_revision: int | None,
    ) -> bool:
        """Fetch one chunk with retries and stage it. Returns False on failure."""
        company = run.company
        request = FetchRequest(
            company_id=company.company_id,
            location_id=company.location_id,
            from_date=chunk.start,
            to_date=chunk.end,
            server_slice=False,
            since_revision=since_revision,
        )
        policy = self._client.config
        try:
            response = retry_with_backoff(
                lambda: self._client.fetch(request),
                max_attempts=policy.max_attempts,
                initial_backoff=policy.initial_backoff,
                max_backoff=policy.max_backoff,
                sleep=lambda delay: self._backoff_sleep(run, delay),
            )
        except (NetworkError, RemoteError) as e:
            logger.warning(f"Chunk {index + 1}/{total} ({chunk}) of {company.name} failed: {e}")
            return False

        self._store.put_record_set(
            record_key(company, self._config.base_key, chunk),
            response.records,
            date_range=chunk,
        )
        logger.debug(
            "Chunk %d/%d (%s) of %s: %d records",
            index + 1,
            total,
            chunk,
            company.name,
            len(response.records),
        )
        return True

    # === Merge and persist ===

    def _finish(
        self,
        run: _SyncRun,
        base: list[Record],
        incoming: list[Record],
        mode: SyncMode,
        complete: bool = True,
    ) -> SyncResult:
        """Merge, validate and persist; mark completed unless complete is False."""
        company = run.company
        merged, stats = merge_records(base, incoming)
        merged = self._validate(run, base, incoming, merged)

        last_revision = max_revision(merged)
        earliest = earliest_record_date(merged)
        metadata: dict[str, Any] = {
            "lastRevision": last_revision,
            "recordCount": len(merged),
            "earliestDate": earliest.isoformat() if earliest else company.earliest_record_date,
            "syncedAt": datetime.now(UTC).isoformat(),
            "complete": complete,
        }
        self._store.put_record_set(run.record_key, merged, metadata=metadata)

        progress = run.progress
        progress.last_synced_revision = last_revision
        if complete:
            progress.status = SyncStatus.COMPLETED
            progress.error = None
        self._save_progress(run)
        self._verify(run, len(merged), last_revision)

        logger.info(
            f"Persisted {len(merged)} records for {company.name} "
            f"({stats.added} new, {stats.replaced} updated, revision {last_revision})"
        )
        if complete:
            self._emit(
                run,
                progress.total_chunks,
                progress.total_chunks,
                f"Sync complete: {len(merged)} records",
            )
        return SyncResult(record_count=len(merged), last_revision=last_revision, mode=mode)

    def _validate(
        self,
        run: _SyncRun,
        base: list[Record],
        incoming: list[Record],
        merged: list[Record],
    ) -> list[Record]:
        """Ensure the merge kept every record id the cache started with.

        On violation the cached set is re-read, unioned with everything
        fetched and deduplicated again. If that still loses ids the sync
        aborts rather than overwrite the cache.
        """
        if not base:
            return merged

        before = len(distinct_record_ids(base))
        after = len(distinct_record_ids(merged))
        if after >= before:
            return merged

        logger.warning(
            f"Merge for {run.company.name} would drop records "
            f"({before} -> {after} distinct ids); running recovery"
        )
        cached = self._load_existing(run) or base
        recovered = dedupe_by_record_id([*cached, *incoming])
        recovered_count = len(distinct_record_ids(recovered))
        if recovered_count >= before:
            logger.warning(
                f"Recovery restored {recovered_count} distinct records for {run.company.name}"
            )
            return recovered

        logger.error(
            f"Recovery for {run.company.name} still loses records "
            f"({before} -> {recovered_count}); aborting"
        )
        raise MergeInvariantViolation(before, recovered_count)

    def _verify(self, run: _SyncRun, expected_count: int, expected_revision: int | None) -> None:
        """Read the persisted set back and log any mismatch."""
        try:
            stored = self._store.get_record_set(run.record_key)
        except VoucherSyncError as e:
            logger.warning(f"Could not verify {run.record_key}: {e}")
            return

        if not isinstance(stored, list):
            logger.warning(f"Verification of {run.record_key}: record set unreadable after write")
            return

        count = len(stored)
        revision = max_revision(stored)
        if count != expected_count or revision != expected_revision:
            logger.warning(
                f"Verification mismatch for {run.record_key}: expected {expected_count} "
                f"records at revision {expected_revision}, found {count} at {revision}"
            )
        else:
            logger.debug("Verified %s: %d records, revision %s", run.record_key, count, revision)

    # === Helpers ===

    def _load_existing(self, run: _SyncRun) -> list[Record]:
        data = self._store.get_record_set(run.record_key)
        if data is None:
            return []
        if not isinstance(data, list):
            logger.warning(f"Ignoring malformed cached record set {run.record_key}")
            return []
        return data

    def _discard_staged(self, run: _SyncRun) -> None:
        """Remove chunk entries staged under the company's ranged keys."""
        self._store.clear_owner(f"{run.record_key}_")

    def _save_progress(self, run: _SyncRun) -> None:
        run.progress.touch()
        self._store.put_state(run.state_key, run.progress.to_dict())

    def _mark_failed(self, run: _SyncRun, error: Exception) -> None:
        progress = run.progress
        progress.status = SyncStatus.FAILED
        progress.error = str(error)
        logger.error(f"Sync of {run.company.name} failed: {error}")
        try:
            self._save_progress(run)
        except VoucherSyncError:
            logger.exception("Could not persist failed sync state")
        self._emit(run, progress.chunks_completed, progress.total_chunks, f"Sync failed: {error}")

    def _emit(self, run: _SyncRun, current: int, total: int, message: str) -> None:
        if run.on_progress is not None:
            run.on_progress(ProgressEvent(current, total, message, run.company.owner_id))

    def _check_cancelled(self, run: _SyncRun) -> None:
        if run.cancel_event.is_set():
            raise SyncCancelled(f"Sync of {run.company.name} cancelled")

    def _backoff_sleep(self, run: _SyncRun, delay: float) -> None:
        """Wait between attempts; a cancel request cuts the wait short."""
        if self._sleep is not None:
            self._sleep(delay)
        else:
            run.cancel_event.wait(delay)
        self._check_cancelled(run)
