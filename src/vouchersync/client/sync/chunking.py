"""Date chunking for resumable fetches."""

from __future__ import annotations

from datetime import date, timedelta

from vouchersync.core.dates import parse_date
from vouchersync.core.ranges import DateRange
from vouchersync.core.types import CompanyInfo

DEFAULT_CHUNK_DAYS = 2


def split_date_range(span: DateRange, chunk_days: int = DEFAULT_CHUNK_DAYS) -> list[DateRange]:
    """Split a span into consecutive windows of chunk_days, ascending.

    The last window is clipped to the end of the span.

    Args:
        span: Full range to cover.
        chunk_days: Days per window.

    Returns:
        Windows covering the span without overlap.
    """
    if chunk_days < 1:
        raise ValueError("chunk_days must be at least 1")

    step = timedelta(days=chunk_days)
    chunks: list[DateRange] = []
    cursor = span.start
    while cursor <= span.end:
        end = min(cursor + step - timedelta(days=1), span.end)
        chunks.append(DateRange(cursor, end))
        cursor += step
    return chunks


def sync_span(company: CompanyInfo, today: date) -> DateRange:
    """Range from the company's earliest record date to today.

    A missing, unparsable or future earliest date collapses to today only.
    """
    start = parse_date(company.earliest_record_date) or today
    return DateRange(min(start, today), today)
