"""Date range algebra for cache coverage.

This module provides:
- DateRange: inclusive calendar-date range
- overlaps / contains: membership tests
- gaps: sub-ranges of a request not covered by cached ranges
- merge: coalesce overlapping or adjacent ranges
- split_into_gaps: clip cached ranges to a request and list what is missing
- parse_range_from_key: recover the range suffix of a cache key

Nothing here touches storage or the network; the sync engine uses these
functions to decide what still has to be fetched.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any

from vouchersync.core.dates import parse_date

ONE_DAY = timedelta(days=1)

_KEY_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@dataclass(frozen=True, order=True)
class DateRange:
    """Inclusive range of calendar dates.

    Attributes:
        start: First day of the range.
        end: Last day of the range (never before start).
    """

    start: date
    end: date

    def __post_init__(self) -> None:
        """Reject negative-length ranges."""
        if self.end < self.start:
            raise ValueError(f"Range end {self.end} is before start {self.start}")

    @classmethod
    def parse(cls, start: str | date, end: str | date) -> DateRange:
        """Build a range from strings in any format parse_date understands."""
        start_date = parse_date(start)
        end_date = parse_date(end)
        if start_date is None or end_date is None:
            raise ValueError(f"Invalid date range: {start!r} to {end!r}")
        return cls(start_date, end_date)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DateRange:
        """Create from a ``{"startDate", "endDate"}`` dictionary."""
        return cls.parse(data["startDate"], data["endDate"])

    def to_dict(self) -> dict[str, str]:
        """Serialize to a ``{"startDate", "endDate"}`` dictionary."""
        return {"startDate": self.start.isoformat(), "endDate": self.end.isoformat()}

    @property
    def days(self) -> int:
        """Number of days covered, both ends included."""
        return (self.end - self.start).days + 1

    def key_suffix(self) -> str:
        """Suffix appended to cache keys for ranged entries."""
        return f"{self.start.isoformat()}_{self.end.isoformat()}"

    def __str__(self) -> str:
        return f"{self.start.isoformat()}..{self.end.isoformat()}"


def overlaps(a: DateRange, b: DateRange) -> bool:
    """Check whether two ranges share at least one day."""
    return a.start <= b.end and b.start <= a.end


def contains(rng: DateRange, day: date) -> bool:
    """Check whether a day falls inside a range."""
    return rng.start <= day <= rng.end


def gaps(requested: DateRange, cached: Iterable[DateRange]) -> list[DateRange]:
    """Compute the parts of a requested range not covered by cached ranges.

    Cached ranges are walked in start order; the segments before the first,
    between, and after the last cached range are emitted, clipped to the
    requested range.

    Args:
        requested: The range the caller wants.
        cached: Ranges already available (any order, may overlap).

    Returns:
        Uncovered sub-ranges of ``requested`` in ascending order.
    """
    result: list[DateRange] = []
    cursor = requested.start

    for rng in sorted(cached):
        if rng.start > requested.end:
            break
        if cursor < rng.start:
            result.append(DateRange(cursor, rng.start - ONE_DAY))
        if rng.end >= cursor:
            cursor = rng.end + ONE_DAY
        if cursor > requested.end:
            return result

    if cursor <= requested.end:
        result.append(DateRange(cursor, requested.end))
    return result


def merge(ranges: Iterable[DateRange]) -> list[DateRange]:
    """Coalesce overlapping or adjacent ranges.

    Two ranges are adjacent when one ends the day before the other starts.

    Args:
        ranges: Ranges in any order.

    Returns:
        Disjoint, non-adjacent ranges in ascending order.
    """
    merged: list[DateRange] = []
    for rng in sorted(ranges):
        if merged and rng.start <= merged[-1].end + ONE_DAY:
            last = merged[-1]
            merged[-1] = DateRange(last.start, max(last.end, rng.end))
        else:
            merged.append(rng)
    return merged


def split_into_gaps(
    requested: DateRange, cached: Iterable[DateRange]
) -> tuple[list[DateRange], list[DateRange]]:
    """Split a request into the cached parts and the missing gaps.

    Args:
        requested: The range the caller wants.
        cached: Ranges already available.

    Returns:
        Tuple of (cached ranges clipped to the request, missing gaps).
    """
    overlapping = [rng for rng in cached if overlaps(requested, rng)]
    if not overlapping:
        return [], [requested]

    clipped = [
        DateRange(max(rng.start, requested.start), min(rng.end, requested.end))
        for rng in sorted(overlapping)
    ]
    return clipped, gaps(requested, overlapping)


def parse_range_from_key(cache_key: str) -> DateRange | None:
    """Recover the ``_{start}_{end}`` suffix of a ranged cache key.

    Args:
        cache_key: Key such as ``"loc_cmp_sales_2024-01-01_2024-01-02"``.

    Returns:
        The range, or None when the key carries no valid range suffix.
    """
    parts = cache_key.rsplit("_", 2)
    if len(parts) != 3:
        return None
    start, end = parts[1], parts[2]
    if not (_KEY_DATE_RE.match(start) and _KEY_DATE_RE.match(end)):
        return None
    try:
        return DateRange(date.fromisoformat(start), date.fromisoformat(end))
    except ValueError:
        return None


def strip_range_suffix(cache_key: str) -> str:
    """Return the base key of a possibly ranged cache key."""
    if parse_range_from_key(cache_key) is None:
        return cache_key
    return cache_key.rsplit("_", 2)[0]
