"""Sync orchestrator: queues company syncs and runs them one at a time.

This module provides:
- SyncOrchestrator: deduplicating sync queue drained by a single worker thread

Requests are keyed by owner (``{locationId}_{companyId}``). A request for an
owner that is already queued or running returns the Future of the existing
request instead of queueing a second sync.

Usage:
    orchestrator = SyncOrchestrator(engine, store, session, companies)
    unsubscribe = orchestrator.subscribe(print)
    orchestrator.start()

    future = orchestrator.request_sync(company)
    result = future.result()

    orchestrator.stop()
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Iterable
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any

from vouchersync.client.storage.hybrid import HybridStore
from vouchersync.client.sync.engine import DeltaSyncEngine
from vouchersync.client.sync.progress import ProgressChannel
from vouchersync.client.sync.types import (
    ProgressCallback,
    ProgressEvent,
    SyncResult,
    Unsubscribe,
)
from vouchersync.core.config import SessionContext
from vouchersync.core.errors import SyncInProgress
from vouchersync.core.types import CompanyInfo, SyncStatus

logger = logging.getLogger(__name__)


@dataclass
class _SyncRequest:
    company: CompanyInfo
    start_fresh: bool = False
    future: Future[SyncResult] = field(default_factory=Future)

    @property
    def owner_id(self) -> str:
        return self.company.owner_id


class SyncOrchestrator:
    """Runs company syncs sequentially on a background thread."""

    def __init__(
        self,
        engine: DeltaSyncEngine,
        store: HybridStore,
        session: SessionContext,
        companies: Iterable[CompanyInfo] | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            engine: Runs the individual syncs.
            store: Cache the engine writes to.
            session: Current user.
            companies: Known companies, scanned for interrupted syncs on start.
        """
        self._engine = engine
        self._store = store
        self._session = session
        self._companies: dict[str, CompanyInfo] = {c.owner_id: c for c in companies or []}

        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._queue: deque[_SyncRequest] = deque()
        # Queued and active requests by owner
        self._pending: dict[str, _SyncRequest] = {}
        self._active: _SyncRequest | None = None
        self._cancel_event = threading.Event()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

        self._channel = ProgressChannel()

    # === Lifecycle ===

    def start(self) -> None:
        """Start the worker thread and re-queue interrupted syncs."""
        with self._lock:
            if self._thread is not None:
                logger.warning("Sync orchestrator already running")
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run,
                name="SyncOrchestrator",
                daemon=True,
            )
            self._thread.start()
            logger.info("Sync orchestrator started")

        self.resume_interrupted()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the worker, cancelling the active sync and queued requests.

        Args:
            timeout: Maximum time to wait for the worker to finish.
        """
        with self._lock:
            thread = self._thread
            self._stop_event.set()
            self._cancel_event.set()
            queued = list(self._queue)
            self._queue.clear()
            for request in queued:
                self._pending.pop(request.owner_id, None)
            self._changed.notify_all()

        for request in queued:
            request.future.cancel()

        if thread is not None and thread.is_alive():
            thread.join(timeout=timeout)

        with self._lock:
            self._thread = None
            logger.info("Sync orchestrator stopped")

    def resume_interrupted(self) -> list[Future[SyncResult]]:
        """Re-queue known companies whose last sync was interrupted."""
        futures = []
        for company in self.companies:
            progress = self._engine.get_progress(company)
            if progress is not None and progress.status == SyncStatus.IN_PROGRESS:
                logger.info(f"Resuming interrupted sync of {company.name}")
                futures.append(self.request_sync(company))
        return futures

    @property
    def companies(self) -> list[CompanyInfo]:
        """Companies currently known to the orchestrator."""
        with self._lock:
            return list(self._companies.values())

    # === Requests ===

    def request_sync(self, company: CompanyInfo, start_fresh: bool = False) -> Future[SyncResult]:
        """Queue a sync of a company.

        Args:
            company: Company to sync.
            start_fresh: Discard the cached set and fetch everything.

        Returns:
            Future resolving to the SyncResult. If the company is already
            queued or syncing, the Future of that request.
        """
        with self._lock:
            self._companies.setdefault(company.owner_id, company)
            existing = self._pending.get(company.owner_id)
            if existing is not None:
                logger.debug("Sync of %s already pending", company.name)
                return existing.future

            request = _SyncRequest(company, start_fresh)
            self._pending[request.owner_id] = request
            self._queue.append(request)
            self._changed.notify_all()
            logger.info(f"Queued sync of {company.name} ({len(self._queue)} in queue)")
            return request.future

    def cancel(self, company: CompanyInfo | None = None) -> bool:
        """Cancel a sync.

        Without a company the active sync is cancelled. With one, the
        company's sync is cancelled whether it is running or queued.

        Returns:
            True if something was cancelled.
        """
        with self._lock:
            active = self._active
            if active is not None and (company is None or company.owner_id == active.owner_id):
                logger.info(f"Cancelling sync of {active.company.name}")
                self._cancel_event.set()
                return True
            if company is None:
                return False
            request = self._remove_queued(company.owner_id)

        if request is None:
            return False
        request.future.cancel()
        return True

    def is_syncing(self, company: CompanyInfo | None = None) -> bool:
        """Whether a sync is running (for the company, if given)."""
        with self._lock:
            if self._active is None:
                return False
            return company is None or self._active.owner_id == company.owner_id

    def is_queued(self, company: CompanyInfo) -> bool:
        """Whether the company waits in the queue."""
        with self._lock:
            return any(r.owner_id == company.owner_id for r in self._queue)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until the queue is drained.

        Returns:
            False if the timeout expired first.
        """
        with self._changed:
            return self._changed.wait_for(
                lambda: not self._queue and self._active is None,
                timeout=timeout,
            )

    # === Progress ===

    def subscribe(self, callback: ProgressCallback) -> Unsubscribe:
        """Receive progress events; the latest one is replayed immediately."""
        return self._channel.subscribe(callback)

    def unsubscribe(self, callback: ProgressCallback) -> None:
        """Stop receiving progress events."""
        self._channel.unsubscribe(callback)

    @property
    def current_progress(self) -> ProgressEvent | None:
        """Latest event of the running sync."""
        return self._channel.latest

    def get_company_progress(self, company: CompanyInfo) -> ProgressEvent | None:
        """Progress of a company, live or from its persisted state."""
        if self.is_syncing(company):
            return self._channel.latest

        progress = self._engine.get_progress(company)
        if progress is None or progress.status != SyncStatus.IN_PROGRESS:
            return None
        if progress.total_chunks > 0:
            message = (
                f"Syncing {company.name}: "
                f"{progress.chunks_completed} / {progress.total_chunks} chunks"
            )
        else:
            message = f"Syncing {company.name}..."
        return ProgressEvent(
            progress.chunks_completed, progress.total_chunks, message, company.owner_id
        )

    def check_interrupted_sync(self, company: CompanyInfo) -> tuple[int, int] | None:
        """(chunks completed, total chunks) of an interrupted sync, if any."""
        if self.is_syncing(company):
            return None
        progress = self._engine.get_progress(company)
        if progress is None or progress.status != SyncStatus.IN_PROGRESS:
            return None
        return progress.chunks_completed, progress.total_chunks

    # === Automatic syncs ===

    def start_auto_sync(self, companies: Iterable[CompanyInfo]) -> list[Future[SyncResult]]:
        """Queue every eligible company that is not fully synced yet."""
        futures = []
        for company in companies:
            with self._lock:
                self._companies[company.owner_id] = company
            if not company.is_eligible_for_auto_sync():
                continue
            progress = self._engine.get_progress(company)
            if progress is not None and progress.status == SyncStatus.COMPLETED:
                continue
            futures.append(self.request_sync(company))
        logger.info(f"Auto sync queued {len(futures)} companies")
        return futures

    def handle_directory_update(self, companies: Iterable[CompanyInfo]) -> list[Future[SyncResult]]:
        """Queue eligible companies that appeared or were never synced.

        Companies already completed, interrupted (resumed on start), queued
        or syncing are left alone.
        """
        futures = []
        for company in companies:
            with self._lock:
                self._companies[company.owner_id] = company
                pending = company.owner_id in self._pending
            if pending or not company.is_eligible_for_auto_sync():
                continue
            progress = self._engine.get_progress(company)
            if progress is not None and progress.status in (
                SyncStatus.COMPLETED,
                SyncStatus.IN_PROGRESS,
            ):
                continue
            futures.append(self.request_sync(company))
        if futures:
            logger.info(f"Directory update queued {len(futures)} new companies")
        return futures

    # === Cache access ===

    def get_cached_record_set(self, company: CompanyInfo) -> list[dict[str, Any]] | None:
        """Cached records of a company."""
        return self._engine.get_cached_records(company)

    def clear_cache(self, company: CompanyInfo) -> int:
        """Drop a company's cache and sync progress.

        A queued sync of the company is cancelled.

        Returns:
            Number of entries removed.

        Raises:
            SyncInProgress: If the company is syncing right now.
        """
        with self._lock:
            if self._active is not None and self._active.owner_id == company.owner_id:
                raise SyncInProgress(f"Cannot clear {company.name} while it is syncing")
            request = self._remove_queued(company.owner_id)
            removed = self._store.clear_company(
                company, self._session.user_id, self._engine.base_key
            )

        if request is not None:
            request.future.cancel()
        logger.info(f"Cleared {removed} cache entries of {company.name}")
        return removed

    # === Worker ===

    def _remove_queued(self, owner_id: str) -> _SyncRequest | None:
        for request in self._queue:
            if request.owner_id == owner_id:
                self._queue.remove(request)
                self._pending.pop(owner_id, None)
                self._changed.notify_all()
                return request
        return None

    def _next_request(self) -> _SyncRequest | None:
        with self._changed:
            while not self._queue and not self._stop_event.is_set():
                self._changed.wait(timeout=0.5)
            if self._stop_event.is_set():
                return None
            request = self._queue.popleft()
            self._active = request
            self._cancel_event.clear()
            return request

    def _run(self) -> None:
        """Main processing loop."""
        logger.debug("Sync worker started")
        while not self._stop_event.is_set():
            request = self._next_request()
            if request is None:
                break
            self._process(request)
        logger.debug("Sync worker stopped")

    def _process(self, request: _SyncRequest) -> None:
        company = request.company
        result: SyncResult | None = None
        error: BaseException | None = None

        if request.future.set_running_or_notify_cancel():
            self._channel.publish(
                ProgressEvent(0, 0, f"Starting sync of {company.name}...", company.owner_id)
            )
            try:
                result = self._engine.run(
                    company,
                    start_fresh=request.start_fresh,
                    on_progress=self._channel.publish,
                    cancel_event=self._cancel_event,
                )
            except Exception as e:
                logger.exception(f"Sync of {company.name} failed")
                error = e
        else:
            logger.debug("Skipping cancelled request for %s", company.name)

        with self._changed:
            self._pending.pop(request.owner_id, None)
            self._active = None
            self._channel.clear()
            self._changed.notify_all()

        if error is not None:
            request.future.set_exception(error)
        elif result is not None:
            request.future.set_result(result)
