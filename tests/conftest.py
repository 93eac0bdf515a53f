"""Shared fixtures for vouchersync tests."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import date, timedelta
from pathlib import Path
from typing import Any

import pytest

from vouchersync.client.api import FetchRequest, FetchResponse
from vouchersync.client.keystore import CryptoKeyStore
from vouchersync.client.storage.hybrid import HybridStore
from vouchersync.client.sync.engine import DeltaSyncEngine
from vouchersync.client.sync.merge import revision_id
from vouchersync.core.config import CacheConfig, RemoteConfig, SessionContext
from vouchersync.core.dates import parse_date
from vouchersync.core.errors import NetworkError, RemoteSlicingRequired
from vouchersync.core.types import CompanyInfo

TODAY = date(2024, 1, 20)
EARLIEST = date(2024, 1, 1)

# Fail every attempt
ALWAYS = -1


def voucher(
    record_id: str | None,
    revision: int | None,
    day: date,
    party: str = "Acme Traders",
    amount: float = 100.0,
) -> dict[str, Any]:
    """Build a voucher record."""
    record: dict[str, Any] = {"date": day.isoformat(), "party": party, "amount": amount}
    if record_id is not None:
        record["recordId"] = record_id
    if revision is not None:
        record["revisionId"] = revision
    return record


def sample_vouchers(count: int = 10) -> list[dict[str, Any]]:
    """One voucher every other day from EARLIEST, revisions 1..count."""
    return [
        voucher(f"V{i + 1}", i + 1, EARLIEST + timedelta(days=2 * i), amount=100.0 + i)
        for i in range(count)
    ]


class FakeRemote:
    """In-memory stand-in for RemoteClient.

    Serves records by date range and revision, and can be told to fail
    chunks (keyed by their start date) or to require slicing.
    """

    def __init__(self, records: list[dict[str, Any]] | None = None, max_attempts: int = 3) -> None:
        self.config = RemoteConfig(
            endpoint_url="http://remote.test/vouchers",
            max_attempts=max_attempts,
            initial_backoff=0.0,
            max_backoff=0.0,
        )
        self.records = list(records or [])
        self.requests: list[FetchRequest] = []
        self.failures: dict[date, int] = {}
        self.slicing_required = False
        self.on_fetch: Callable[[FetchRequest], None] | None = None

    def fetch(self, request: FetchRequest) -> FetchResponse:
        self.requests.append(request)
        if self.on_fetch is not None:
            self.on_fetch(request)

        remaining = self.failures.get(request.from_date, 0)
        if remaining:
            if remaining > 0:
                self.failures[request.from_date] = remaining - 1
            raise NetworkError("HTTP 502: bad gateway", 502)

        if request.server_slice and self.slicing_required:
            raise RemoteSlicingRequired("too large")

        selected = []
        for record in self.records:
            day = parse_date(record["date"])
            if day is None or not request.from_date <= day <= request.to_date:
                continue
            revision = revision_id(record)
            if request.since_revision is not None and (
                revision is None or revision <= request.since_revision
            ):
                continue
            selected.append(dict(record))
        return FetchResponse(records=selected)

    @property
    def chunk_requests(self) -> list[FetchRequest]:
        return [r for r in self.requests if not r.server_slice]


@pytest.fixture
def session() -> SessionContext:
    """Signed-in test user."""
    return SessionContext(user_id="user-1", auth_token="token-abc")


@pytest.fixture
def company() -> CompanyInfo:
    """Company with twenty days of history (ten two-day chunks)."""
    return CompanyInfo(
        company_id="cmp-1",
        location_id="loc-1",
        display_name="Acme Ltd",
        earliest_record_date="20240101",
        status="Connected",
        access_type="Full Access",
    )


@pytest.fixture
def keystore(tmp_path: Path) -> CryptoKeyStore:
    """Keystore with cheap Argon2 parameters and no OS keyring."""
    return CryptoKeyStore(
        tmp_path / "cache",
        use_keyring=False,
        time_cost=1,
        memory_cost=8,
        parallelism=1,
    )


@pytest.fixture(params=["file", "sqlite"])
def store(
    request: pytest.FixtureRequest,
    tmp_path: Path,
    keystore: CryptoKeyStore,
    session: SessionContext,
) -> Iterator[HybridStore]:
    """Hybrid store over each backend."""
    config = CacheConfig(cache_dir=tmp_path / "cache", backend=request.param)
    with HybridStore.open(config, keystore, session.user_id) as hybrid:
        yield hybrid


@pytest.fixture
def remote() -> FakeRemote:
    """Remote serving the sample vouchers."""
    return FakeRemote(sample_vouchers())


@pytest.fixture
def engine(store: HybridStore, remote: FakeRemote, session: SessionContext) -> DeltaSyncEngine:
    """Engine syncing up to TODAY without real backoff waits."""
    return DeltaSyncEngine(
        store,
        remote,  # type: ignore[arg-type]
        session,
        sleep=lambda _: None,
        today=lambda: TODAY,
    )
