"""Revision-aware merge and deduplication of voucher records.

This module provides:
- record_id / revision_id / fallback_key: identity of a record
- merge_records: reconcile incoming records with the cached set
- dedupe_by_record_id: keep only the highest revision per record id
- distinct_record_ids / max_revision: figures used for validation and watermarks

Rules:
- Records sharing a record id compete on revision; an incoming record only
  replaces the retained one when its revision is strictly greater, so ties
  keep the existing record.
- A record without a revision loses against any record that has one.
- Records without a record id are opaque: they are kept by set union on
  their (date, party, amount) fallback key and never compared on revision.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from typing import Any

from vouchersync.core.dates import parse_date

logger = logging.getLogger(__name__)

Record = dict[str, Any]
FallbackKey = tuple[str, str, str]

RECORD_ID_FIELDS = ("recordId", "masterid", "mstid", "MASTERID", "MSTID")
REVISION_FIELDS = ("revisionId", "alterid", "ALTERID")
DATE_FIELDS = ("date", "DATE", "cp_date", "CP_DATE")
PARTY_FIELDS = ("party", "partyledgername", "PARTYLEDGERNAME")
AMOUNT_FIELDS = ("amount", "amt", "AMT")

_NO_REVISION = -1


def _first(record: Record, fields: tuple[str, ...]) -> Any:
    for name in fields:
        value = record.get(name)
        if value is not None and value != "":
            return value
    return None


def record_id(record: Record) -> str | None:
    """Stable identifier of a record, or None if it has none."""
    value = _first(record, RECORD_ID_FIELDS)
    return None if value is None else str(value)


def revision_id(record: Record) -> int | None:
    """Revision of a record as an int, or None if missing or unparsable."""
    value = _first(record, REVISION_FIELDS)
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def fallback_key(record: Record) -> FallbackKey:
    """Composite identity of a record without a record id."""
    values = (_first(record, fields) for fields in (DATE_FIELDS, PARTY_FIELDS, AMOUNT_FIELDS))
    day, party, amount = ("" if value is None else str(value) for value in values)
    return day, party, amount


def _rank(record: Record) -> int:
    revision = revision_id(record)
    return _NO_REVISION if revision is None else revision


@dataclass
class MergeStats:
    """What a merge did."""

    existing: int = 0
    incoming: int = 0
    added: int = 0
    replaced: int = 0
    stale: int = 0
    opaque_added: int = 0
    result: int = 0


def merge_records(
    existing: Iterable[Record],
    incoming: Iterable[Record],
) -> tuple[list[Record], MergeStats]:
    """Merge incoming records into the existing set.

    Args:
        existing: Records already cached.
        incoming: Records just fetched.

    Returns:
        Tuple of (merged records, stats). Existing records keep their order;
        new ones are appended in arrival order.
    """
    stats = MergeStats()
    by_id: dict[str, Record] = {}
    opaque: dict[FallbackKey, Record] = {}

    def absorb(record: Record, is_incoming: bool) -> None:
        rid = record_id(record)
        if rid is None:
            key = fallback_key(record)
            if key not in opaque:
                opaque[key] = record
                if is_incoming:
                    stats.opaque_added += 1
            return

        current = by_id.get(rid)
        if current is None:
            by_id[rid] = record
            if is_incoming:
                stats.added += 1
        elif _rank(record) > _rank(current):
            by_id[rid] = record
            if is_incoming:
                stats.replaced += 1
        elif is_incoming:
            stats.stale += 1

    for record in existing:
        stats.existing += 1
        absorb(record, is_incoming=False)
    for record in incoming:
        stats.incoming += 1
        absorb(record, is_incoming=True)

    merged = dedupe_by_record_id([*by_id.values(), *opaque.values()])
    stats.result = len(merged)
    logger.debug(
        "Merged %d incoming into %d existing: %d added, %d replaced, %d stale, %d opaque",
        stats.incoming,
        stats.existing,
        stats.added,
        stats.replaced,
        stats.stale,
        stats.opaque_added,
    )
    return merged, stats


def dedupe_by_record_id(records: Iterable[Record]) -> list[Record]:
    """Keep only the highest-revision record per record id.

    Records without a record id pass through untouched. On equal revisions
    the first occurrence wins.
    """
    result: list[Record] = []
    positions: dict[str, int] = {}
    for record in records:
        rid = record_id(record)
        if rid is None:
            result.append(record)
            continue
        index = positions.get(rid)
        if index is None:
            positions[rid] = len(result)
            result.append(record)
        elif _rank(record) > _rank(result[index]):
            result[index] = record
    return result


def distinct_record_ids(records: Iterable[Record]) -> set[str]:
    """Set of record ids present."""
    return {rid for rid in (record_id(record) for record in records) if rid is not None}


def max_revision(records: Iterable[Record]) -> int | None:
    """Highest revision across records (the sync watermark)."""
    revisions = [rev for rev in (revision_id(record) for record in records) if rev is not None]
    return max(revisions) if revisions else None


def earliest_record_date(records: Iterable[Record]) -> date | None:
    """Earliest parsable record date."""
    dates = [
        parsed
        for parsed in (parse_date(str(_first(record, DATE_FIELDS) or "")) for record in records)
        if parsed is not None
    ]
    return min(dates) if dates else None
