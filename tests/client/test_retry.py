"""Tests for retry with exponential backoff."""

from unittest.mock import MagicMock

import pytest

from vouchersync.client.sync.retry import backoff_delay, is_retryable, retry_with_backoff
from vouchersync.core.errors import NetworkError, RemoteError


class TestBackoffDelay:
    """Tests for backoff_delay."""

    def test_doubles_then_caps(self) -> None:
        """1s, 2s, 4s, then capped at 5s."""
        delays = [backoff_delay(attempt) for attempt in range(1, 6)]
        assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_custom_parameters(self) -> None:
        assert backoff_delay(3, initial_backoff=0.5, max_backoff=60.0, backoff_multiplier=3.0) == 4.5


class TestIsRetryable:
    """Tests for the retry policy."""

    @pytest.mark.parametrize("status", [408, 502, 504])
    def test_retryable_statuses(self, status: int) -> None:
        assert is_retryable(NetworkError("down", status)) is True

    @pytest.mark.parametrize("status", [500, 503])
    def test_other_server_errors_not_retried(self, status: int) -> None:
        assert is_retryable(NetworkError("down", status)) is False

    def test_timeout_and_connection_failures(self) -> None:
        assert is_retryable(NetworkError("slow", timeout=True)) is True
        assert is_retryable(NetworkError("refused")) is True

    def test_remote_errors_not_retried(self) -> None:
        assert is_retryable(RemoteError("bad request", 400)) is False
        assert is_retryable(ValueError("boom")) is False


class TestRetryWithBackoff:
    """Tests for retry_with_backoff."""

    def test_success_first_try(self) -> None:
        sleep = MagicMock()
        assert retry_with_backoff(lambda: "ok", sleep=sleep) == "ok"
        sleep.assert_not_called()

    def test_retries_then_succeeds(self) -> None:
        """Transient failures are retried with growing delays."""
        func = MagicMock(side_effect=[NetworkError("x", 502), NetworkError("x", 502), "ok"])
        sleep = MagicMock()

        assert retry_with_backoff(func, sleep=sleep) == "ok"
        assert func.call_count == 3
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]

    def test_gives_up_after_max_attempts(self) -> None:
        func = MagicMock(side_effect=NetworkError("x", timeout=True))
        sleep = MagicMock()

        with pytest.raises(NetworkError):
            retry_with_backoff(func, max_attempts=4, sleep=sleep)
        assert func.call_count == 4
        assert sleep.call_count == 3

    def test_non_retryable_raises_immediately(self) -> None:
        func = MagicMock(side_effect=RemoteError("forbidden", 403))
        sleep = MagicMock()

        with pytest.raises(RemoteError):
            retry_with_backoff(func, sleep=sleep)
        func.assert_called_once()
        sleep.assert_not_called()

    def test_sleep_can_abort(self) -> None:
        """An exception raised while waiting stops the loop."""
        func = MagicMock(side_effect=NetworkError("x", 502))
        sleep = MagicMock(side_effect=KeyboardInterrupt)

        with pytest.raises(KeyboardInterrupt):
            retry_with_backoff(func, sleep=sleep)
        func.assert_called_once()

    def test_custom_should_retry(self) -> None:
        func = MagicMock(side_effect=[ValueError("flaky"), 7])
        result = retry_with_backoff(
            func, should_retry=lambda e: isinstance(e, ValueError), sleep=lambda _: None
        )
        assert result == 7
