"""
Bounded multi-row writes into the target table.
"""
import logging
from dataclasses import dataclass
from typing import Any, List, Mapping, Sequence

from sqlalchemy.exc import SQLAlchemyError

from bulkload.db.store import CONFLICT_IGNORE, CONFLICT_UPSERT, RelationalStore
from bulkload.domain.ingest.errors import BatchWriteError
from bulkload.domain.ingest.resolver import MODE_UPDATE

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5000


@dataclass
class WriteResult:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0

    def __iadd__(self, other: "WriteResult") -> "WriteResult":
        self.inserted += other.inserted
        self.updated += other.updated
        self.skipped += other.skipped
        return self

    @property
    def total(self) -> int:
        return self.inserted + self.updated + self.skipped


def split_upsert_counts(affected_rows: int, attempted_rows: int) -> WriteResult:
    """
    Recover ``inserted``/``updated`` from a conflict-aware write's affected count.

    The upsert primitive reports ``affected = inserted + 2 * updated``, and every
    attempted row is either inserted or updated, so::

        updated  = affected - attempted
        inserted = attempted - updated

    Invariants of the result: ``inserted + updated + skipped == attempted`` and,
    whenever ``attempted <= affected <= 2 * attempted``,
    ``inserted + 2 * updated == affected``.

    An affected count below ``attempted`` means some rows changed nothing at
    all (matched but identical, or dropped by the server); those rows are
    reported as skipped. Counts above ``2 * attempted`` are clamped.
    """
    if attempted_rows < 0 or affected_rows < 0:
        raise ValueError("row counts must be non-negative")
    if affected_rows < attempted_rows:
        return WriteResult(inserted=affected_rows, updated=0, skipped=attempted_rows - affected_rows)
    updated = min(affected_rows - attempted_rows, attempted_rows)
    return WriteResult(inserted=attempted_rows - updated, updated=updated, skipped=0)


def writable_columns(file_columns: Sequence[str], table_columns: Sequence[str]) -> List[str]:
    """File headers that exist on the table, in file order."""
    known = set(table_columns)
    return [name for name in file_columns if name in known]


class BatchWriter:
    """Turns resolved rows into bounded insert statements against one table."""

    def __init__(self, store: RelationalStore, table_name: str, batch_size: int = DEFAULT_BATCH_SIZE):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.store = store
        self.table_name = table_name
        self.batch_size = batch_size

    def write(
        self,
        rows: Sequence[Mapping[str, Any]],
        columns: Sequence[str],
        mode: str,
        identity_fields: Sequence[str] = (),
        batch_number: int = 1,
    ) -> WriteResult:
        """
        Write ``rows`` in slices of ``batch_size``.

        Raises:
            BatchWriteError: If a slice fails at the storage layer. Slices
                written before the failure stay committed.
        """
        result = WriteResult()
        if not rows or not columns:
            if rows:
                logger.warning("No writable columns for '%s'; %d rows skipped", self.table_name, len(rows))
            result.skipped = len(rows)
            return result

        upsert = mode == MODE_UPDATE and bool(identity_fields)
        if upsert and not [name for name in columns if name not in set(identity_fields)]:
            logger.info("Only identity columns present for '%s'; falling back to insert-ignore", self.table_name)
            upsert = False

        for start in range(0, len(rows), self.batch_size):
            chunk = rows[start:start + self.batch_size]
            try:
                if upsert:
                    affected = self.store.execute_batch_insert(
                        self.table_name, columns, chunk, CONFLICT_UPSERT, identity_fields
                    )
                    outcome = split_upsert_counts(affected, len(chunk))
                else:
                    inserted = self.store.execute_batch_insert(
                        self.table_name, columns, chunk, CONFLICT_IGNORE
                    )
                    outcome = WriteResult(inserted=inserted, skipped=len(chunk) - inserted)
                    if outcome.skipped:
                        logger.warning(
                            "Batch %d: storage ignored %d of %d rows for '%s'; "
                            "the duplicate check fields may not match the table's unique keys",
                            batch_number, outcome.skipped, len(chunk), self.table_name,
                        )
            except SQLAlchemyError as exc:
                message = str(getattr(exc, "orig", None) or exc)
                logger.error("Batch %d insert error on '%s': %s", batch_number, self.table_name, message)
                raise BatchWriteError(batch_number, len(chunk), message) from exc
            result += outcome

        return result
