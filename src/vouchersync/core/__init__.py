"""Core module - Shared crypto, date ranges, configuration and types."""

from vouchersync.core.config import (
    CacheConfig,
    RemoteConfig,
    SessionContext,
    SyncConfig,
)
from vouchersync.core.crypto import (
    decrypt_payload,
    derive_key,
    encrypt_payload,
    generate_salt,
)
from vouchersync.core.dates import parse_date, to_api_date
from vouchersync.core.errors import (
    ChunkFetchError,
    DecryptionError,
    MergeInvariantViolation,
    NetworkError,
    RemoteError,
    RemoteSlicingRequired,
    StorageError,
    StorageQuotaExceeded,
    SyncCancelled,
    SyncInProgress,
    VoucherSyncError,
)
from vouchersync.core.ranges import DateRange, gaps, merge, overlaps
from vouchersync.core.types import CompanyInfo, SyncMode, SyncStatus

__all__ = [
    # Config
    "CacheConfig",
    "RemoteConfig",
    "SessionContext",
    "SyncConfig",
    # Crypto
    "decrypt_payload",
    "derive_key",
    "encrypt_payload",
    "generate_salt",
    # Dates
    "parse_date",
    "to_api_date",
    # Errors
    "ChunkFetchError",
    "DecryptionError",
    "MergeInvariantViolation",
    "NetworkError",
    "RemoteError",
    "RemoteSlicingRequired",
    "StorageError",
    "StorageQuotaExceeded",
    "SyncCancelled",
    "SyncInProgress",
    "VoucherSyncError",
    # Ranges
    "DateRange",
    "gaps",
    "merge",
    "overlaps",
    # Types
    "CompanyInfo",
    "SyncMode",
    "SyncStatus",
]
