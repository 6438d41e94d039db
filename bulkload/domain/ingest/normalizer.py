"""
Field normalization for rows headed into the target table.

Date-like values arrive in whatever shape the spreadsheet or export tool
produced; they are rewritten to the storage engine's canonical
``YYYY-MM-DD HH:MM:SS`` form. Values that match no known pattern are passed
through unchanged so that the database, not the importer, has the final say.
"""

import logging
import math
import re
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Optional, Set

logger = logging.getLogger(__name__)

CANONICAL_FORMAT = "%Y-%m-%d %H:%M:%S"

MONTH_MAP = {
    "jan": 1, "january": 1,
    "feb": 2, "february": 2,
    "mar": 3, "march": 3,
    "apr": 4, "april": 4,
    "may": 5,
    "jun": 6, "june": 6,
    "jul": 7, "july": 7,
    "aug": 8, "august": 8,
    "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10,
    "nov": 11, "november": 11,
    "dec": 12, "december": 12,
}

DATE_NAME_KEYWORDS = (
    "date", "time", "created", "updated", "modified", "timestamp",
    "tanggal", "tgl", "waktu",
)
DATE_TYPE_KEYWORDS = ("date", "time")

# Spreadsheet serial dates count days from 1899-12-30; 25569 is 1970-01-01.
SERIAL_EPOCH = datetime(1899, 12, 30)
SERIAL_MIN = 30000  # 1982-02-18
SERIAL_MAX = 60000  # 2064-04-08

TWO_DIGIT_YEAR_PIVOT = 50

_CANONICAL_RE = re.compile(r"^\d{4}-\d{2}-\d{2}( \d{2}:\d{2}:\d{2})?$")
_DAY_FIRST_RE = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{4})$")
_YEAR_FIRST_RE = re.compile(r"^(\d{4})[/-](\d{1,2})[/-](\d{1,2})(?:\s+(\d{2}):(\d{2}):(\d{2}))?$")
_DAY_MONTH_NAME_RE = re.compile(r"^(\d{1,2})[/\- ]([A-Za-z]{3,9})[/\- ](\d{2}|\d{4})$")
_MONTH_NAME_FIRST_RE = re.compile(r"^([A-Za-z]{3,9})\.?\s+(\d{1,2}),?\s+(\d{4})$")
_NUMERIC_RE = re.compile(r"^\d+(\.\d+)?$")

UNMATCHED_SAMPLE_LIMIT = 5
_unmatched_count = 0


def _record_unmatched(value: Any) -> None:
    """Log the first few unrecognized date values, then stay quiet."""
    global _unmatched_count
    _unmatched_count += 1
    if _unmatched_count <= UNMATCHED_SAMPLE_LIMIT:
        logger.warning("Unrecognized date value %r left as-is", value)
    elif _unmatched_count == UNMATCHED_SAMPLE_LIMIT + 1:
        logger.info("Suppressing further unrecognized date value warnings")


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if isinstance(value, str) and value.strip() == "":
        return True
    # pandas NaT
    if value.__class__.__name__ == "NaTType":
        return True
    return False


def is_date_like_column(column_name: str, declared_type: Optional[str] = None) -> bool:
    """Return True when the declared type or the column name suggests a date/time."""
    if declared_type:
        lowered_type = str(declared_type).lower()
        if any(keyword in lowered_type for keyword in DATE_TYPE_KEYWORDS):
            return True
    if not column_name:
        return False
    lowered = column_name.lower()
    return any(keyword in lowered for keyword in DATE_NAME_KEYWORDS)


def date_like_columns(columns: Iterable[Any]) -> Set[str]:
    """Collect the names of date-like columns from ``ColumnDescriptor``-shaped objects."""
    return {col.name for col in columns if is_date_like_column(col.name, col.type)}


def _expand_year(year_text: str) -> int:
    year = int(year_text)
    if len(year_text) == 2:
        return 1900 + year if year > TWO_DIGIT_YEAR_PIVOT else 2000 + year
    return year


def _build(year: int, month: int, day: int, hour: int = 0, minute: int = 0, second: int = 0) -> Optional[str]:
    try:
        return datetime(year, month, day, hour, minute, second).strftime(CANONICAL_FORMAT)
    except ValueError:
        return None


def _from_serial(serial: float) -> Optional[str]:
    if not SERIAL_MIN < serial < SERIAL_MAX:
        return None
    moment = SERIAL_EPOCH + timedelta(days=serial)
    # Serial fractions carry sub-second noise; round to the nearest second.
    moment = (moment + timedelta(microseconds=500_000)).replace(microsecond=0)
    return moment.strftime(CANONICAL_FORMAT)


def format_date_value(value: Any) -> Any:
    """
    Convert a single date-like value to ``YYYY-MM-DD HH:MM:SS``.

    Patterns are tried in priority order:
    - already canonical ``YYYY-MM-DD[ HH:MM:SS]``
    - day-first ``DD/MM/YYYY`` / ``DD-MM-YYYY``
    - year-first ``YYYY/MM/DD`` with optional time
    - US ``MM/DD/YYYY`` when the day-first reading is not a real date
    - month names: ``04-Dec-24``, ``Dec 4, 2024``
    - spreadsheet serial numbers

    Unmatched values are returned unchanged.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, datetime):
        return value.replace(tzinfo=None, microsecond=0).strftime(CANONICAL_FORMAT)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day).strftime(CANONICAL_FORMAT)
    if isinstance(value, (int, float)):
        converted = _from_serial(float(value))
        if converted is None:
            _record_unmatched(value)
            return value
        return converted

    text = str(value).strip()

    if _CANONICAL_RE.match(text):
        return text if len(text) > 10 else f"{text} 00:00:00"

    match = _DAY_FIRST_RE.match(text)
    if match:
        first, second, year = int(match.group(1)), int(match.group(2)), int(match.group(3))
        converted = _build(year, second, first)
        if converted is None:
            converted = _build(year, first, second)
        if converted is not None:
            return converted

    match = _YEAR_FIRST_RE.match(text)
    if match:
        year, month, day = (int(part) for part in match.group(1, 2, 3))
        if match.group(4):
            converted = _build(year, month, day, *(int(part) for part in match.group(4, 5, 6)))
        else:
            converted = _build(year, month, day)
        if converted is not None:
            return converted

    match = _DAY_MONTH_NAME_RE.match(text)
    if match:
        month = MONTH_MAP.get(match.group(2).lower())
        if month:
            converted = _build(_expand_year(match.group(3)), month, int(match.group(1)))
            if converted is not None:
                return converted

    match = _MONTH_NAME_FIRST_RE.match(text)
    if match:
        month = MONTH_MAP.get(match.group(1).lower())
        if month:
            converted = _build(int(match.group(3)), month, int(match.group(2)))
            if converted is not None:
                return converted

    if _NUMERIC_RE.match(text):
        converted = _from_serial(float(text))
        if converted is not None:
            return converted

    _record_unmatched(value)
    return value


def normalize(value: Any, column_is_date_like: bool) -> Any:
    """Normalize one raw cell. Empty values become ``None`` for every column."""
    if is_empty(value):
        return None
    if not column_is_date_like:
        return value
    return format_date_value(value)


def normalize_row(row: dict, date_columns: Set[str]) -> dict:
    return {key: normalize(value, key in date_columns) for key, value in row.items()}
