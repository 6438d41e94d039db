"""
Duplicate detection against rows already stored in the target table.

A batch is checked with one disjunctive ``IN`` lookup; stored and incoming
rows are compared through composite keys built from the identity fields.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from difflib import get_close_matches
from typing import Any, Callable, Collection, Dict, List, Mapping, Sequence, Set

from bulkload.domain.ingest.errors import ConflictPolicyError
from bulkload.domain.ingest.normalizer import normalize

logger = logging.getLogger(__name__)

MODE_SKIP = "skip"
MODE_UPDATE = "update"
MODE_ERROR = "error"
DUPLICATE_MODES = (MODE_SKIP, MODE_UPDATE, MODE_ERROR)

KEY_SEPARATOR = "||"
NULL_KEY_PART = "<null>"

Row = Dict[str, Any]
ExistingLookup = Callable[[Mapping[str, List[Any]]], List[Row]]


@dataclass
class Resolution:
    rows_to_write: List[Row]
    skipped_count: int = 0
    existing_count: int = 0


def validate_identity_fields(table_name: str, identity_fields: Sequence[str], existing_columns: Sequence[str]) -> None:
    """
    Ensure the configured identity fields exist on the target table.
    Raise a clear error before building lookup queries to avoid runtime SQL errors.
    """
    if not identity_fields:
        return

    existing_set = set(existing_columns)
    missing = [col for col in identity_fields if col not in existing_set]
    if not missing:
        return

    suggestions = []
    for col in missing:
        close = get_close_matches(col, list(existing_columns), n=1, cutoff=0.7)
        if close:
            suggestions.append(f"{col}→{close[0]}")

    existing_preview = ", ".join(sorted(existing_columns)[:10])
    suggestion_text = f" Suggestions: {', '.join(suggestions)}." if suggestions else ""
    raise ValueError(
        f"Duplicate check fields {missing} not found on table '{table_name}'. "
        f"Existing columns (sample): {existing_preview}.{suggestion_text}"
    )


def key_part(value: Any, date_like: bool = False) -> str:
    """Render one identity value so file values and stored values compare equal."""
    value = normalize(value, date_like)
    if value is None:
        return NULL_KEY_PART
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, Decimal) and value == value.to_integral_value():
        return str(int(value))
    return str(value)


def composite_key(row: Mapping[str, Any], identity_fields: Sequence[str], date_columns: Collection[str] = ()) -> str:
    return KEY_SEPARATOR.join(
        key_part(row.get(name), name in date_columns) for name in identity_fields
    )


def collect_lookup_values(rows: Sequence[Mapping[str, Any]], identity_fields: Sequence[str]) -> Dict[str, List[Any]]:
    """Distinct non-null values per identity field, in first-seen order."""
    values: Dict[str, List[Any]] = {}
    for name in identity_fields:
        distinct = dict.fromkeys(
            row.get(name) for row in rows if row.get(name) is not None
        )
        values[name] = list(distinct)
    return values


def fetch_existing_keys(
    rows: Sequence[Mapping[str, Any]],
    identity_fields: Sequence[str],
    lookup: ExistingLookup,
    date_columns: Collection[str] = (),
) -> Set[str]:
    """Query the store once and return the composite keys that already exist."""
    values = collect_lookup_values(rows, identity_fields)
    if not any(values.values()):
        return set()
    stored_rows = lookup(values)
    return {composite_key(stored, identity_fields, date_columns) for stored in stored_rows}


def count_conflicts(
    rows: Sequence[Mapping[str, Any]],
    identity_fields: Sequence[str],
    lookup: ExistingLookup,
    date_columns: Collection[str] = (),
) -> int:
    """Number of rows in ``rows`` whose identity key already exists downstream."""
    if not identity_fields or not rows:
        return 0
    existing = fetch_existing_keys(rows, identity_fields, lookup, date_columns)
    if not existing:
        return 0
    return sum(1 for row in rows if composite_key(row, identity_fields, date_columns) in existing)


def resolve(
    rows: List[Row],
    identity_fields: Sequence[str],
    lookup: ExistingLookup,
    mode: str,
    date_columns: Collection[str] = (),
    table_name: str = "",
) -> Resolution:
    """
    Apply the duplicate policy to one batch.

    - ``skip``: rows whose key exists are dropped and counted as skipped
    - ``update``: every row is kept; the writer upserts
    - ``error``: any existing key raises :class:`ConflictPolicyError`

    With no identity fields the batch passes through untouched.
    """
    if mode not in DUPLICATE_MODES:
        raise ValueError(f"Unknown duplicate mode '{mode}'")
    if not identity_fields or not rows:
        return Resolution(rows_to_write=list(rows))

    existing = fetch_existing_keys(rows, identity_fields, lookup, date_columns)
    if not existing:
        return Resolution(rows_to_write=list(rows))

    fresh: List[Row] = []
    duplicates = 0
    for row in rows:
        if composite_key(row, identity_fields, date_columns) in existing:
            duplicates += 1
        else:
            fresh.append(row)

    if mode == MODE_ERROR and duplicates:
        raise ConflictPolicyError(table_name, duplicates)

    if mode == MODE_SKIP:
        logger.debug("Skipping %d rows already present in '%s'", duplicates, table_name)
        return Resolution(
            rows_to_write=fresh,
            skipped_count=duplicates,
            existing_count=duplicates,
        )

    return Resolution(rows_to_write=list(rows), existing_count=duplicates)
