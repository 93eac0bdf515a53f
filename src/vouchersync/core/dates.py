"""Date parsing and formatting helpers.

The connection directory hands out dates in several shapes ("20240401",
"2024-04-01", "1-Apr-24"); the remote endpoint wants YYYYMMDD.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime

logger = logging.getLogger(__name__)

MONTH_NAMES = (
    "jan", "feb", "mar", "apr", "may", "jun",
    "jul", "aug", "sep", "oct", "nov", "dec",
)

_COMPACT_RE = re.compile(r"^\d{8}$")
_ISO_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_date(value: str | date | None) -> date | None:
    """Parse a date in any of the supported formats.

    Supported: ``YYYYMMDD``, ``YYYY-MM-DD`` and ``D-Mon-YY`` (or ``D-Mon-YYYY``).
    Two-digit years below 50 are 20xx, the rest 19xx.

    Args:
        value: String or date to parse.

    Returns:
        The parsed date, or None if the value is empty or unparsable.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = value.strip()
    if not text:
        return None

    try:
        if _COMPACT_RE.match(text):
            return datetime.strptime(text, "%Y%m%d").date()
        if _ISO_RE.match(text):
            return date.fromisoformat(text)

        parts = text.split("-")
        if len(parts) != 3:
            return None
        day = int(parts[0])
        month_name = parts[1].lower()
        year = int(parts[2])
        if month_name not in MONTH_NAMES:
            return None
        if year < 50:
            year += 2000
        elif year < 100:
            year += 1900
        return date(year, MONTH_NAMES.index(month_name) + 1, day)
    except ValueError as e:
        logger.warning("Could not parse date %r: %s", value, e)
        return None


def to_api_date(value: date) -> str:
    """Format a date as YYYYMMDD for the remote endpoint."""
    return value.strftime("%Y%m%d")
