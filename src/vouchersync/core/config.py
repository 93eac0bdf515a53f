"""Shared configuration classes for vouchersync.

This module defines the configuration passed explicitly into the storage
layer, the remote client and the sync engine.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

BACKEND_CHOICES = ("auto", "file", "sqlite")
DEFAULT_BASE_KEY = "complete_sales"


@dataclass
class RemoteConfig:
    """Configuration for the remote voucher endpoint.

    Attributes:
        endpoint_url: URL the fetch requests are POSTed to.
        timeout: Per-request timeout in seconds.
        constrained_timeout: Timeout used on resource-constrained clients.
        constrained: Whether this client is resource-constrained.
        max_attempts: Attempts per chunk before it is marked failed.
        initial_backoff: Delay before the second attempt, in seconds.
        max_backoff: Upper bound on the delay between attempts.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    endpoint_url: str
    timeout: float = 300.0
    constrained_timeout: float = 450.0
    constrained: bool = False
    max_attempts: int = 10
    initial_backoff: float = 1.0
    max_backoff: float = 5.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize endpoint URL."""
        self.endpoint_url = self.endpoint_url.rstrip("/")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @property
    def effective_timeout(self) -> float:
        """Timeout applied to each request."""
        return self.constrained_timeout if self.constrained else self.timeout


@dataclass
class CacheConfig:
    """Configuration for the local encrypted cache.

    Attributes:
        cache_dir: Directory holding the cache (and the salt file).
        backend: "file", "sqlite", or "auto" to probe the platform.
        cache_expiry_days: Record sets older than this are dropped; None keeps them forever.
        quota_bytes: Optional cap on stored ciphertext.
        storage_low_threshold: Percent used at which storage is reported low.
    """

    cache_dir: Path
    backend: str = "auto"
    cache_expiry_days: int | None = None
    quota_bytes: int | None = None
    storage_low_threshold: float = 80.0

    def __post_init__(self) -> None:
        """Normalize and validate."""
        self.cache_dir = Path(self.cache_dir).expanduser()
        if self.backend not in BACKEND_CHOICES:
            raise ValueError(
                f"Unknown backend {self.backend!r}, expected one of {BACKEND_CHOICES}"
            )
        if self.cache_expiry_days is not None and self.cache_expiry_days < 0:
            raise ValueError("cache_expiry_days must be positive or None")


@dataclass
class SyncConfig:
    """Tuning for the delta sync engine."""

    chunk_days: int = 2
    base_key: str = DEFAULT_BASE_KEY

    def __post_init__(self) -> None:
        if self.chunk_days < 1:
            raise ValueError("chunk_days must be at least 1")


@dataclass(frozen=True)
class SessionContext:
    """Identity of the signed-in user.

    Attributes:
        user_id: Scopes cache ownership and key derivation.
        auth_token: Sent with every fetch request.
    """

    user_id: str
    auth_token: str
