"""Tests for the delta sync engine."""

from __future__ import annotations

import threading
from datetime import date
from unittest.mock import patch

import pytest
from conftest import ALWAYS, EARLIEST, TODAY, FakeRemote, sample_vouchers, voucher

from vouchersync.client.storage.hybrid import HybridStore
from vouchersync.client.sync.engine import DeltaSyncEngine
from vouchersync.client.sync.merge import MergeStats, record_id
from vouchersync.client.sync.types import ProgressEvent
from vouchersync.core.config import SessionContext
from vouchersync.core.errors import ChunkFetchError, MergeInvariantViolation, SyncCancelled
from vouchersync.core.ranges import DateRange
from vouchersync.core.types import CompanyInfo, SyncMode, SyncStatus

SPAN = DateRange(EARLIEST, TODAY)


def staged(store: HybridStore, engine: DeltaSyncEngine, company: CompanyInfo) -> list[str]:
    """Keys of chunk entries still staged for the company."""
    return [hit.key for hit in store.find_overlapping_ranges(engine.record_key(company), SPAN)]


class TestFreshSync:
    """Tests for the first sync of a company."""

    def test_fetches_all_chunks_in_order(
        self, engine: DeltaSyncEngine, remote: FakeRemote, company: CompanyInfo
    ) -> None:
        result = engine.run(company)

        assert result.mode is SyncMode.FRESH
        assert result.record_count == 10
        assert result.last_revision == 10
        starts = [r.from_date for r in remote.chunk_requests]
        assert len(starts) == 10
        assert starts == sorted(starts)
        assert starts[0] == EARLIEST
        assert remote.chunk_requests[-1].to_date == TODAY
        assert all(r.since_revision is None for r in remote.requests)

    def test_persists_records_and_progress(
        self, engine: DeltaSyncEngine, store: HybridStore, company: CompanyInfo
    ) -> None:
        engine.run(company)

        records = engine.get_cached_records(company)
        assert records is not None
        assert sorted(record_id(r) for r in records) == sorted(f"V{i}" for i in range(1, 11))

        progress = engine.get_progress(company)
        assert progress is not None
        assert progress.status == SyncStatus.COMPLETED
        assert progress.chunks_completed == progress.total_chunks == 10
        assert progress.last_synced_revision == 10
        assert progress.failed_chunks == []

        meta = store.get_metadata(engine.record_key(company))
        assert meta is not None
        assert meta.extra["recordCount"] == 10
        assert meta.extra["lastRevision"] == 10
        assert meta.extra["earliestDate"] == "2024-01-01"
        assert meta.extra["complete"] is True

    def test_staged_chunks_removed(
        self, engine: DeltaSyncEngine, store: HybridStore, company: CompanyInfo
    ) -> None:
        engine.run(company)
        assert staged(store, engine, company) == []

    def test_progress_events(self, engine: DeltaSyncEngine, company: CompanyInfo) -> None:
        events: list[ProgressEvent] = []
        engine.run(company, on_progress=events.append)

        messages = [e.message for e in events]
        assert messages[0] == "Syncing Acme Ltd: 0 / 10 chunks"
        assert "Syncing Acme Ltd: 5 / 10 chunks" in messages
        assert messages[-1] == "Sync complete: 10 records"
        assert all(e.owner_id == "loc-1_cmp-1" for e in events)
        counts = [e.current for e in events]
        assert counts == sorted(counts)

    def test_company_without_earliest_date(
        self, engine: DeltaSyncEngine, remote: FakeRemote
    ) -> None:
        """Only today is fetched when the directory has no start date."""
        company = CompanyInfo(company_id="cmp-9", location_id="loc-1")
        engine.run(company)
        assert [(r.from_date, r.to_date) for r in remote.requests] == [(TODAY, TODAY)]

    def test_unreadable_progress_ignored(
        self, engine: DeltaSyncEngine, store: HybridStore, company: CompanyInfo
    ) -> None:
        store.put_state(engine.state_key(company), {"bogus": True})
        assert engine.get_progress(company) is None


class TestIncrementalSync:
    """Tests for syncs with a populated cache."""

    def test_single_server_sliced_request(
        self, engine: DeltaSyncEngine, remote: FakeRemote, company: CompanyInfo
    ) -> None:
        """Only revisions above the watermark are requested."""
        engine.run(company)
        remote.requests.clear()
        remote.records.append(voucher("V11", 11, TODAY))
        remote.records[0] = voucher("V1", 12, EARLIEST, amount=999.0)

        result = engine.run(company)

        assert result.mode is SyncMode.INCREMENTAL
        assert result.record_count == 11
        assert result.last_revision == 12
        assert len(remote.requests) == 1
        request = remote.requests[0]
        assert request.server_slice is True
        assert request.since_revision == 10
        assert (request.from_date, request.to_date) == (EARLIEST, TODAY)

        records = {record_id(r): r for r in engine.get_cached_records(company) or []}
        assert records["V1"]["amount"] == 999.0

    def test_no_changes_is_idempotent(
        self, engine: DeltaSyncEngine, remote: FakeRemote, company: CompanyInfo
    ) -> None:
        engine.run(company)
        before = engine.get_cached_records(company)

        result = engine.run(company)

        assert result.record_count == 10
        assert engine.get_cached_records(company) == before

    def test_slicing_falls_back_to_chunks(
        self, engine: DeltaSyncEngine, remote: FakeRemote, company: CompanyInfo
    ) -> None:
        engine.run(company)
        remote.requests.clear()
        remote.slicing_required = True
        remote.records.append(voucher("V11", 11, TODAY))

        result = engine.run(company)

        assert result.mode is SyncMode.INCREMENTAL
        assert result.record_count == 11
        assert remote.requests[0].server_slice is True
        assert len(remote.chunk_requests) == 10
        assert all(r.since_revision == 10 for r in remote.chunk_requests)

    def test_network_error_falls_back_to_chunks(
        self, engine: DeltaSyncEngine, remote: FakeRemote, company: CompanyInfo
    ) -> None:
        engine.run(company)
        remote.requests.clear()
        remote.failures[EARLIEST] = 1

        result = engine.run(company)

        assert result.record_count == 10
        assert len(remote.requests) == 11
        assert len(remote.chunk_requests) == 10

    def test_start_fresh_ignores_cache(
        self, engine: DeltaSyncEngine, remote: FakeRemote, company: CompanyInfo
    ) -> None:
        """A fresh start replaces the cached set with what the remote has now."""
        engine.run(company)
        remote.requests.clear()
        remote.records = sample_vouchers(5)

        result = engine.run(company, start_fresh=True)

        assert result.mode is SyncMode.FRESH
        assert result.record_count == 5
        assert len(remote.chunk_requests) == 10
        assert all(r.since_revision is None for r in remote.requests)


class TestCancelAndResume:
    """Tests for cancellation and resumption."""

    def test_cancel_then_resume(
        self, engine: DeltaSyncEngine, remote: FakeRemote, company: CompanyInfo
    ) -> None:
        cancel = threading.Event()

        def cancel_after_three(event: ProgressEvent) -> None:
            if event.current == 3:
                cancel.set()

        with pytest.raises(SyncCancelled):
            engine.run(company, on_progress=cancel_after_three, cancel_event=cancel)

        progress = engine.get_progress(company)
        assert progress is not None
        assert progress.status == SyncStatus.IN_PROGRESS
        assert progress.chunks_completed == 3
        assert len(remote.chunk_requests) == 3

        events: list[ProgressEvent] = []
        result = engine.run(company, on_progress=events.append)

        assert events[0].message == "Resuming from chunk 4 of 10"
        assert result.record_count == 10
        assert len(remote.chunk_requests) == 10
        starts = [r.from_date for r in remote.chunk_requests]
        assert len(set(starts)) == 10

        # Same history synced in one go under another company id
        uninterrupted = CompanyInfo(
            company_id="cmp-2",
            location_id=company.location_id,
            display_name="Acme Copy",
            earliest_record_date=company.earliest_record_date,
        )
        engine.run(uninterrupted)

        resumed = engine.get_cached_records(company)
        full = engine.get_cached_records(uninterrupted)
        assert resumed is not None and full is not None
        assert sorted(resumed, key=record_id) == sorted(full, key=record_id)

    def test_resume_refetches_lost_chunks(
        self, engine: DeltaSyncEngine, store: HybridStore, remote: FakeRemote, company: CompanyInfo
    ) -> None:
        """Chunks whose staged data vanished are fetched again on resume."""
        cancel = threading.Event()
        remote.on_fetch = lambda r: cancel.set() if r.from_date == date(2024, 1, 5) else None

        with pytest.raises(SyncCancelled):
            engine.run(company, cancel_event=cancel)
        store.clear_owner(f"{engine.record_key(company)}_")
        remote.requests.clear()

        result = engine.run(company)

        assert result.record_count == 10
        assert len(remote.chunk_requests) == 10

    def test_start_fresh_discards_interrupted_plan(
        self, engine: DeltaSyncEngine, remote: FakeRemote, company: CompanyInfo
    ) -> None:
        cancel = threading.Event()
        remote.on_fetch = lambda r: cancel.set()
        with pytest.raises(SyncCancelled):
            engine.run(company, cancel_event=cancel)
        remote.on_fetch = None
        remote.requests.clear()

        events: list[ProgressEvent] = []
        engine.run(company, start_fresh=True, on_progress=events.append)

        assert not any(e.message.startswith("Resuming") for e in events)
        assert len(remote.chunk_requests) == 10


class TestChunkFailures:
    """Tests for chunk retries and partial failure."""

    def test_failed_chunk_retried_after_main_pass(
        self, engine: DeltaSyncEngine, remote: FakeRemote, company: CompanyInfo
    ) -> None:
        """A chunk exhausting its attempts gets one more round at the end."""
        remote.failures[date(2024, 1, 5)] = remote.config.max_attempts

        result = engine.run(company)

        assert result.record_count == 10
        starts = [r.from_date for r in remote.chunk_requests]
        assert starts.count(date(2024, 1, 5)) == remote.config.max_attempts + 1
        assert starts[-1] == date(2024, 1, 5)
        progress = engine.get_progress(company)
        assert progress is not None
        assert progress.failed_chunks == []
        assert progress.status == SyncStatus.COMPLETED

    def test_persistent_failure_keeps_partial_data(
        self, engine: DeltaSyncEngine, store: HybridStore, remote: FakeRemote, company: CompanyInfo
    ) -> None:
        remote.failures[date(2024, 1, 5)] = ALWAYS

        with pytest.raises(ChunkFetchError) as exc_info:
            engine.run(company)

        assert exc_info.value.failed_chunks == [2]
        progress = engine.get_progress(company)
        assert progress is not None
        assert progress.status == SyncStatus.FAILED
        assert progress.failed_chunks == [2]
        assert progress.error
        records = engine.get_cached_records(company)
        assert records is not None
        assert len(records) == 9
        meta = store.get_metadata(engine.record_key(company))
        assert meta is not None
        assert meta.extra["complete"] is False

    def test_incomplete_set_gets_full_sync(
        self, engine: DeltaSyncEngine, store: HybridStore, remote: FakeRemote, company: CompanyInfo
    ) -> None:
        """The watermark of a partially fetched set is not trusted."""
        remote.failures[date(2024, 1, 5)] = ALWAYS
        with pytest.raises(ChunkFetchError):
            engine.run(company)
        store.delete(engine.state_key(company))
        remote.failures.clear()
        remote.requests.clear()

        result = engine.run(company)

        assert result.mode is SyncMode.FRESH
        assert result.record_count == 10
        assert len(remote.chunk_requests) == 10
        assert all(r.since_revision is None for r in remote.requests)
        meta = store.get_metadata(engine.record_key(company))
        assert meta is not None
        assert meta.extra["complete"] is True

    def test_progress_saved_after_each_failed_retry(
        self, engine: DeltaSyncEngine, store: HybridStore, remote: FakeRemote, company: CompanyInfo
    ) -> None:
        """Each retry-pass chunk writes progress even when it fails again."""
        remote.failures[date(2024, 1, 1)] = ALWAYS
        remote.failures[date(2024, 1, 5)] = ALWAYS
        fetch_log: list[tuple[date, int]] = []

        with patch.object(store, "put_state", wraps=store.put_state) as put_state:
            remote.on_fetch = lambda r: fetch_log.append((r.from_date, put_state.call_count))
            with pytest.raises(ChunkFetchError) as exc_info:
                engine.run(company)

        assert exc_info.value.failed_chunks == [0, 2]
        attempts = remote.config.max_attempts
        retry_pass = fetch_log[-2 * attempts :]
        assert [day for day, _ in retry_pass] == [date(2024, 1, 1)] * attempts + [date(2024, 1, 5)] * attempts
        last_first_retry = retry_pass[attempts - 1][1]
        first_second_retry = retry_pass[attempts][1]
        assert first_second_retry == last_first_retry + 1

    def test_resume_fetches_only_failed_chunk(
        self, engine: DeltaSyncEngine, store: HybridStore, remote: FakeRemote, company: CompanyInfo
    ) -> None:
        remote.failures[date(2024, 1, 5)] = ALWAYS
        with pytest.raises(ChunkFetchError):
            engine.run(company)
        remote.failures.clear()
        remote.requests.clear()

        result = engine.run(company)

        assert result.record_count == 10
        assert [r.from_date for r in remote.requests] == [date(2024, 1, 5)]
        progress = engine.get_progress(company)
        assert progress is not None
        assert progress.status == SyncStatus.COMPLETED
        assert staged(store, engine, company) == []

    def test_cancel_during_backoff(
        self, store: HybridStore, remote: FakeRemote, session: SessionContext, company: CompanyInfo
    ) -> None:
        """A cancel request interrupts the wait between attempts."""
        cancel = threading.Event()
        engine = DeltaSyncEngine(
            store,
            remote,  # type: ignore[arg-type]
            session,
            sleep=lambda _: cancel.set(),
            today=lambda: TODAY,
        )
        remote.failures[EARLIEST] = ALWAYS

        with pytest.raises(SyncCancelled):
            engine.run(company, cancel_event=cancel)
        assert len(remote.requests) == 1


class TestMergeValidation:
    """Tests for the no-data-loss check."""

    def test_recovery_restores_dropped_records(
        self, engine: DeltaSyncEngine, remote: FakeRemote, company: CompanyInfo
    ) -> None:
        engine.run(company)
        remote.records.append(voucher("V11", 11, TODAY))

        with patch(
            "vouchersync.client.sync.engine.merge_records",
            return_value=([], MergeStats()),
        ):
            result = engine.run(company)

        assert result.record_count == 11

    def test_unrecoverable_merge_aborts(
        self, engine: DeltaSyncEngine, remote: FakeRemote, company: CompanyInfo
    ) -> None:
        """The cache is left untouched when recovery cannot restore records."""
        engine.run(company)
        before = engine.get_cached_records(company)
        remote.records.append(voucher("V11", 11, TODAY))

        with (
            patch(
                "vouchersync.client.sync.engine.merge_records",
                return_value=([], MergeStats()),
            ),
            patch("vouchersync.client.sync.engine.dedupe_by_record_id", return_value=[]),
            pytest.raises(MergeInvariantViolation),
        ):
            engine.run(company)

        assert engine.get_cached_records(company) == before
        progress = engine.get_progress(company)
        assert progress is not None
        assert progress.status == SyncStatus.FAILED
