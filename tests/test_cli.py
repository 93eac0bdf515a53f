"""Tests for CLI commands - init, reset, sync, status, cache."""

import json
from datetime import date
from pathlib import Path

import pytest
from click.testing import CliRunner, Result

from vouchersync.client.cli import cli
from vouchersync.client.cli.config import CONFIG_DIR_ENV

ENDPOINT = "http://test/api/vouchers"


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    """Temporary config directory."""
    return tmp_path / ".vouchersync"


@pytest.fixture
def runner(config_dir: Path) -> CliRunner:
    """CLI runner pointed at the temporary config directory."""
    return CliRunner(env={CONFIG_DIR_ENV: str(config_dir)})


def init(runner: CliRunner, *extra: str, user: str = "user-1") -> Result:
    """Run init with the test endpoint and no OS keyring."""
    return runner.invoke(
        cli,
        ["init", "--endpoint", ENDPOINT, "--user", user, "--token", "token-abc", "--no-keyring", *extra],
    )


def today_voucher() -> dict[str, object]:
    return {"recordId": "V1", "revisionId": 5, "date": date.today().isoformat(), "party": "Acme"}


def sync_today(runner: CliRunner) -> Result:
    """Sync a company whose history starts today (a single chunk)."""
    return runner.invoke(
        cli,
        ["sync", "cmp-1", "loc-1", "--since-date", date.today().strftime("%Y%m%d"), "--name", "Acme Ltd"],
    )


class TestInitCommand:
    """Tests for 'vouchersync init' command."""

    def test_init_writes_config(self, runner: CliRunner, config_dir: Path) -> None:
        result = init(runner)

        assert result.exit_code == 0, result.output
        assert "vouchersync initialized successfully!" in result.output
        config = json.loads((config_dir / "config.json").read_text())
        assert config["endpoint_url"] == ENDPOINT
        assert config["user_id"] == "user-1"
        assert config["use_keyring"] is False
        assert (config_dir / "cache" / "salts.json").exists()

    def test_init_with_sqlite_backend(self, runner: CliRunner, config_dir: Path) -> None:
        result = init(runner, "--backend", "sqlite")

        assert result.exit_code == 0, result.output
        assert "sqlite backend" in result.output
        assert (config_dir / "cache" / "cache.db").exists()

    def test_init_rejects_negative_expiry(self, runner: CliRunner) -> None:
        result = init(runner, "--expiry-days", "-1")
        assert result.exit_code != 0

    def test_reinit_reports_user_switch(self, runner: CliRunner) -> None:
        init(runner)
        result = init(runner, user="user-2")

        assert result.exit_code == 0, result.output
        assert "Switched user from user-1 to user-2." in result.output


class TestResetCommand:
    """Tests for 'vouchersync reset' command."""

    def test_reset_removes_everything(self, runner: CliRunner, config_dir: Path) -> None:
        init(runner)
        result = runner.invoke(cli, ["reset", "--force"])

        assert result.exit_code == 0
        assert "has been reset" in result.output
        assert not config_dir.exists()

    def test_reset_asks_for_confirmation(self, runner: CliRunner, config_dir: Path) -> None:
        init(runner)
        result = runner.invoke(cli, ["reset"], input="n\n")

        assert "Aborted." in result.output
        assert config_dir.exists()

    def test_reset_when_not_initialized(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["reset", "--force"])
        assert "Nothing to reset" in result.output


class TestSyncCommand:
    """Tests for 'vouchersync sync' and 'vouchersync status'."""

    def test_sync_requires_init(self, runner: CliRunner) -> None:
        result = sync_today(runner)
        assert result.exit_code == 1
        assert "not initialized" in result.output

    def test_sync_and_status(self, runner: CliRunner, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url=ENDPOINT, json={"records": [today_voucher()]})
        init(runner)

        result = sync_today(runner)

        assert result.exit_code == 0, result.output
        assert "Sync complete: 1 records (fresh, revision 5)" in result.output
        payload = json.loads(httpx_mock.get_request().content)
        assert payload["companyId"] == "cmp-1"
        assert payload["serverSlice"] == "No"

        status = runner.invoke(cli, ["status", "cmp-1", "loc-1"])
        assert status.exit_code == 0
        assert "Status: completed" in status.output
        assert "Chunks: 1 / 1" in status.output
        assert "Last revision: 5" in status.output
        assert "Cached records: 1" in status.output

    def test_sync_shows_progress(self, runner: CliRunner, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url=ENDPOINT, json={"records": []})
        init(runner)

        result = sync_today(runner)

        assert "Syncing Acme Ltd: 1 / 1 chunks" in result.output

    def test_sync_failure_exits_nonzero(self, runner: CliRunner, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        """A rejected chunk fails the sync once its retry pass fails too."""
        httpx_mock.add_response(url=ENDPOINT, status_code=401, json={"detail": "expired"})
        httpx_mock.add_response(url=ENDPOINT, status_code=401, json={"detail": "expired"})
        init(runner)

        result = sync_today(runner)

        assert result.exit_code == 1
        assert "Sync failed" in result.output

        status = runner.invoke(cli, ["status", "cmp-1", "loc-1"])
        assert "Status: failed" in status.output
        assert "Failed chunks: 1" in status.output
        assert "Cached records: 0 (incomplete)" in status.output

    def test_status_never_synced(self, runner: CliRunner) -> None:
        init(runner)
        result = runner.invoke(cli, ["status", "cmp-1", "loc-1"])
        assert result.exit_code == 0
        assert "loc-1_cmp-1: never synced" in result.output


class TestCacheCommands:
    """Tests for 'vouchersync cache' commands."""

    def test_empty_cache(self, runner: CliRunner) -> None:
        init(runner)
        result = runner.invoke(cli, ["cache", "list"])
        assert result.exit_code == 0
        assert "Cache is empty." in result.output

    def test_list_and_clear(self, runner: CliRunner, httpx_mock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url=ENDPOINT, json={"records": [today_voucher()]})
        init(runner)
        sync_today(runner)

        listing = runner.invoke(cli, ["cache", "list"])
        assert "loc-1_cmp-1_complete_sales" in listing.output
        assert "user-1_cmp-1" in listing.output

        cleared = runner.invoke(cli, ["cache", "clear", "cmp-1", "loc-1", "--force"])
        assert cleared.exit_code == 0
        assert "Removed 2 entries." in cleared.output
        assert "Cache is empty." in runner.invoke(cli, ["cache", "list"]).output

    def test_stats(self, runner: CliRunner) -> None:
        init(runner, "--backend", "file")
        result = runner.invoke(cli, ["cache", "stats"])

        assert result.exit_code == 0
        assert "Backend: file" in result.output
        assert "Record sets: 0" in result.output
        assert "Expiry: never" in result.output

    def test_delete_missing_key(self, runner: CliRunner) -> None:
        init(runner)
        result = runner.invoke(cli, ["cache", "delete", "nope"])
        assert result.exit_code == 1
        assert "No cache entry nope" in result.output

    def test_cleanup(self, runner: CliRunner) -> None:
        init(runner)
        assert "expiry is disabled" in runner.invoke(cli, ["cache", "cleanup"]).output

        init(runner, "--expiry-days", "30")
        result = runner.invoke(cli, ["cache", "cleanup"])
        assert "Removed 0 expired entries." in result.output

    def test_cache_requires_init(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["cache", "stats"])
        assert result.exit_code == 1
