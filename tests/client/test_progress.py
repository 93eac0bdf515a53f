"""Tests for the progress channel and persisted progress."""

from vouchersync.client.sync.progress import ProgressChannel
from vouchersync.client.sync.types import ProgressEvent, SyncProgress
from vouchersync.core.types import SyncMode, SyncStatus


def event(current: int, total: int = 10) -> ProgressEvent:
    return ProgressEvent(current, total, f"{current} / {total}", "loc-1_cmp-1")


class TestProgressChannel:
    """Tests for ProgressChannel."""

    def test_publish_reaches_all_subscribers(self) -> None:
        channel = ProgressChannel()
        first: list[ProgressEvent] = []
        second: list[ProgressEvent] = []
        channel.subscribe(first.append)
        channel.subscribe(second.append)

        channel.publish(event(1))

        assert first == second == [event(1)]

    def test_late_subscriber_gets_latest(self) -> None:
        """Subscribing mid-sync replays the most recent event."""
        channel = ProgressChannel()
        channel.publish(event(1))
        channel.publish(event(2))

        received: list[ProgressEvent] = []
        channel.subscribe(received.append)

        assert received == [event(2)]

    def test_clear_stops_replay(self) -> None:
        channel = ProgressChannel()
        channel.publish(event(1))
        channel.clear()

        received: list[ProgressEvent] = []
        channel.subscribe(received.append)

        assert received == []
        assert channel.latest is None

    def test_unsubscribe(self) -> None:
        channel = ProgressChannel()
        received: list[ProgressEvent] = []
        unsubscribe = channel.subscribe(received.append)

        unsubscribe()
        channel.publish(event(1))

        assert received == []
        assert channel.subscriber_count == 0

    def test_unsubscribe_unknown_is_noop(self) -> None:
        ProgressChannel().unsubscribe(lambda e: None)

    def test_failing_subscriber_does_not_block_others(self) -> None:
        channel = ProgressChannel()
        received: list[ProgressEvent] = []

        def broken(_: ProgressEvent) -> None:
            raise RuntimeError("boom")

        channel.subscribe(broken)
        channel.subscribe(received.append)
        channel.publish(event(3))

        assert received == [event(3)]

    def test_event_percent(self) -> None:
        assert event(3).percent == 30.0
        assert ProgressEvent(0, 0, "starting", "x").percent == 0.0


class TestSyncProgress:
    """Tests for the persisted progress record."""

    def test_dict_roundtrip(self) -> None:
        progress = SyncProgress(
            user_id="user-1",
            company_id="cmp-1",
            status=SyncStatus.FAILED,
            chunks_completed=4,
            total_chunks=10,
            last_synced_revision=42,
            error="boom",
            failed_chunks=[2],
            last_synced_date="2024-01-08",
            mode=SyncMode.FRESH,
            range_start="2024-01-01",
            range_end="2024-01-20",
        )
        assert SyncProgress.from_dict(progress.to_dict()) == progress

    def test_camel_case_names(self) -> None:
        data = SyncProgress(user_id="u", company_id="c").to_dict()
        assert data["chunksCompleted"] == 0
        assert data["lastSyncedRevision"] is None
        assert data["status"] == "idle"

    def test_percent(self) -> None:
        progress = SyncProgress("u", "c", chunks_completed=5, total_chunks=20)
        assert progress.percent == 25.0
        assert SyncProgress("u", "c", status=SyncStatus.COMPLETED).percent == 100.0

    def test_chunk_plan(self) -> None:
        assert not SyncProgress("u", "c").has_chunk_plan
        planned = SyncProgress("u", "c", total_chunks=2, range_start="2024-01-01", range_end="2024-01-04")
        assert planned.has_chunk_plan
