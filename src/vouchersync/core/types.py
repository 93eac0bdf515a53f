"""Shared types for vouchersync.

This module defines the enums and the sync target description used by both
the storage layer and the sync engine.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

ELIGIBLE_STATUS = "Connected"
ELIGIBLE_ACCESS_TYPES = frozenset({"Internal", "Full Access"})


class SyncStatus(str, Enum):
    """Lifecycle state of a company's sync progress."""

    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncMode(str, Enum):
    """How the records are fetched."""

    FRESH = "fresh"  # Full span, chunked
    INCREMENTAL = "incremental"  # Only revisions above the watermark


@dataclass(frozen=True)
class CompanyInfo:
    """A sync target, as supplied by the connection directory.

    Attributes:
        company_id: Remote company identifier.
        location_id: Remote location (server) identifier.
        display_name: Human-readable company name.
        earliest_record_date: First day with records ("books from").
        status: Connection status reported by the directory.
        access_type: Access level reported by the directory.
    """

    company_id: str
    location_id: str
    display_name: str = ""
    earliest_record_date: str | None = None
    status: str | None = None
    access_type: str | None = None

    @property
    def owner_id(self) -> str:
        """Queue and cache scope for this company."""
        return f"{self.location_id}_{self.company_id}"

    @property
    def name(self) -> str:
        """Name used in progress messages."""
        return self.display_name or self.company_id

    def is_eligible_for_auto_sync(self) -> bool:
        """Only connected companies with internal or full access auto-sync."""
        return (
            self.status == ELIGIBLE_STATUS
            and self.access_type in ELIGIBLE_ACCESS_TYPES
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CompanyInfo:
        """Create from a connection directory entry.

        Accepts both the camelCase names and the directory's legacy names
        (``guid``, ``tallyloc_id``, ``company``, ``booksfrom``).
        """
        company_id = data.get("companyId") or data.get("guid")
        location_id = data.get("locationId") or data.get("tallyloc_id")
        if company_id is None or location_id is None:
            raise ValueError("Company entry needs companyId and locationId")
        return cls(
            company_id=str(company_id),
            location_id=str(location_id),
            display_name=data.get("displayName") or data.get("company") or "",
            earliest_record_date=data.get("earliestRecordDate") or data.get("booksfrom"),
            status=data.get("status"),
            access_type=data.get("accessType") or data.get("access_type"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize with camelCase names."""
        return {
            "companyId": self.company_id,
            "locationId": self.location_id,
            "displayName": self.display_name,
            "earliestRecordDate": self.earliest_record_date,
            "status": self.status,
            "accessType": self.access_type,
        }
