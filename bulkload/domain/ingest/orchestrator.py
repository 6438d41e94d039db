"""
Drives one uploaded file through decode, normalize, resolve and write.

``start`` is called on the request path and only touches the registry;
``run`` does the heavy lifting and is meant for a background thread.
"""
import logging
import os
import time
from typing import Callable, Iterable, List, Optional, Sequence

from sqlalchemy.exc import NoSuchTableError

from bulkload.core.config import settings
from bulkload.db.store import ColumnDescriptor, RelationalStore, get_store
from bulkload.domain.ingest.decode_pool import DecodePool, get_decode_pool
from bulkload.domain.ingest.decoder import Row, detect_format
from bulkload.domain.ingest.errors import BatchWriteError, ConflictPolicyError, IngestionError
from bulkload.domain.ingest.normalizer import date_like_columns, normalize_row
from bulkload.domain.ingest.resolver import (
    DUPLICATE_MODES,
    MODE_ERROR,
    MODE_SKIP,
    Resolution,
    count_conflicts,
    resolve,
    validate_identity_fields,
)
from bulkload.domain.ingest.writer import BatchWriter, WriteResult, writable_columns
from bulkload.domain.uploads.registry import DuplicatePolicy, IngestionRegistry, IngestionTask
from bulkload.utils.locks import TableLockManager, table_lock_key

logger = logging.getLogger(__name__)

StoreFactory = Callable[[Optional[str], Optional[str]], RelationalStore]


def build_policy(
    mode: Optional[str] = None,
    identity_fields: Optional[Sequence[str]] = None,
    batch_size: Optional[int] = None,
) -> DuplicatePolicy:
    """
    Build a duplicate policy from request values, applying defaults and limits.

    Raises:
        ValueError: If the mode is unknown or the batch size is not positive
    """
    mode = (mode or MODE_SKIP).strip().lower()
    if mode not in DUPLICATE_MODES:
        raise ValueError(f"Invalid duplicate_mode '{mode}'. Expected one of: {', '.join(DUPLICATE_MODES)}")
    if batch_size is None:
        batch_size = settings.default_batch_size
    if batch_size < 1:
        raise ValueError("batch_size must be a positive integer")
    if batch_size > settings.max_batch_size:
        logger.info("Requested batch size %d capped at %d", batch_size, settings.max_batch_size)
        batch_size = settings.max_batch_size
    fields = [str(name).strip() for name in identity_fields or [] if str(name).strip()]
    return DuplicatePolicy(mode=mode, identity_fields=fields, batch_size=batch_size)


def resolve_identity_fields(
    table_name: str,
    requested: Sequence[str],
    descriptors: Sequence[ColumnDescriptor],
    file_columns: Sequence[str],
) -> List[str]:
    """
    Pick the fields that identify a row.

    Explicit fields are validated against the table. Without explicit fields
    the table's primary key is used, provided the file carries all of it;
    otherwise no duplicate resolution takes place.
    """
    table_columns = [descriptor.name for descriptor in descriptors]
    if requested:
        validate_identity_fields(table_name, requested, table_columns)
        return list(requested)

    primary = [descriptor.name for descriptor in descriptors if descriptor.is_primary]
    if primary and all(name in file_columns for name in primary):
        logger.info("Using primary key %s of '%s' for duplicate detection", primary, table_name)
        return primary
    if primary:
        logger.info(
            "Primary key %s of '%s' is not in the file; duplicate detection disabled",
            primary, table_name,
        )
    return []


def _slices(rows: List[Row], size: int) -> Iterable[List[Row]]:
    for start in range(0, len(rows), size):
        yield rows[start:start + size]


class IngestionOrchestrator:
    def __init__(
        self,
        registry: IngestionRegistry,
        store_factory: Optional[StoreFactory] = None,
        decode_pool: Optional[DecodePool] = None,
    ):
        self.registry = registry
        self.store_factory = store_factory or get_store
        self.decode_pool = decode_pool

    def _pool(self) -> DecodePool:
        return self.decode_pool or get_decode_pool()

    def start(
        self,
        file_id: str,
        database: str,
        table: str,
        policy: DuplicatePolicy,
        connection_id: Optional[str] = None,
    ) -> IngestionTask:
        """
        Register a task for ``file_id`` and move the file to ``processing``.

        Raises:
            ValueError: If database or table is missing
            FileNotRegisteredError, ProcessingConflictError, InvalidFileStateError:
                From the registry
        """
        if not database:
            raise ValueError("Missing required parameter: database")
        if not table:
            raise ValueError("Missing required parameter: table")
        return self.registry.begin_processing(
            file_id, database=database, table=table, policy=policy, connection_id=connection_id
        )

    def run(self, task_id: str) -> Optional[IngestionTask]:
        """
        Execute a started task to completion.

        Never raises for ingestion failures: those are recorded on the task and
        the file. Registry write failures still propagate.
        """
        task = self.registry.get_task(task_id)
        if task is None:
            logger.warning("Task %s vanished before it could run", task_id)
            return None
        record = self.registry.get_file(task.file_id)
        if record is None:
            return self.registry.fail_task(task_id, f"File '{task.file_id}' is no longer registered.")

        started = time.monotonic()
        try:
            self._ingest(task, record.storage_path, record.original_name)
        except IngestionError as exc:
            logger.error("Task %s failed: %s", task_id, exc.message)
            return self.registry.fail_task(task_id, exc.message)
        except Exception as exc:
            logger.exception("Task %s failed unexpectedly", task_id)
            return self.registry.fail_task(task_id, str(exc) or exc.__class__.__name__)

        finished = self.registry.complete_task(task_id)
        try:
            os.remove(record.storage_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not delete ingested file %s: %s", record.storage_path, exc)

        logger.info(
            "Task %s completed in %.2fs: %d processed, %d inserted, %d updated, %d skipped, %d batch error(s)",
            task_id, time.monotonic() - started, finished.processed_rows, finished.inserted_rows,
            finished.updated_rows, finished.skipped_rows, len(finished.errors),
        )
        return finished

    def _ingest(self, task: IngestionTask, storage_path: str, original_name: str) -> None:
        policy = task.policy
        store = self.store_factory(task.connection_id, task.database)

        try:
            descriptors = store.describe_columns(task.table)
        except NoSuchTableError as exc:
            raise IngestionError(f"Table '{task.table}' does not exist in database '{task.database}'.") from exc
        table_columns = [descriptor.name for descriptor in descriptors]
        date_columns = date_like_columns(descriptors)

        try:
            format_hint = detect_format(original_name)
        except ValueError:
            format_hint = None
        stream = self._pool().decode(storage_path, format_hint)
        self.registry.update_task(task.id, total_rows=stream.total_rows)

        columns = writable_columns(stream.columns, table_columns)
        unknown = [name for name in stream.columns if name not in set(table_columns)]
        if unknown:
            logger.warning("Ignoring %d column(s) not present on '%s': %s", len(unknown), task.table, unknown)

        try:
            identity_fields = resolve_identity_fields(task.table, policy.identity_fields, descriptors, stream.columns)
        except ValueError as exc:
            raise IngestionError(str(exc)) from exc

        writer = BatchWriter(store, task.table, policy.batch_size)
        lock_key = table_lock_key(task.table, task.database, task.connection_id)

        def lookup(values):
            return store.fetch_existing(task.table, identity_fields, values)

        logger.info(
            "Task %s: %d rows into %s.%s (mode=%s, identity=%s, batch=%d)",
            task.id, stream.total_rows, task.database, task.table, policy.mode, identity_fields, policy.batch_size,
        )

        if policy.mode == MODE_ERROR and identity_fields:
            rows = [normalize_row(row, date_columns) for row in stream]
            # Hold the table for the whole file so the preflight result stays true
            with TableLockManager.acquire(lock_key):
                conflicts = sum(
                    count_conflicts(chunk, identity_fields, lookup, date_columns)
                    for chunk in _slices(rows, policy.batch_size)
                )
                if conflicts:
                    raise ConflictPolicyError(task.table, conflicts)
                for number, chunk in enumerate(_slices(rows, policy.batch_size), start=1):
                    self._write_chunk(task, writer, chunk, Resolution(rows_to_write=chunk), columns, identity_fields, number)
            return

        for number, raw_chunk in enumerate(stream.chunks(policy.batch_size), start=1):
            chunk = [normalize_row(row, date_columns) for row in raw_chunk]
            with TableLockManager.acquire(lock_key):
                resolution = resolve(chunk, identity_fields, lookup, policy.mode, date_columns, task.table)
                self._write_chunk(task, writer, chunk, resolution, columns, identity_fields, number)
            # Let request threads in between chunks
            time.sleep(0)

    def _write_chunk(
        self,
        task: IngestionTask,
        writer: BatchWriter,
        chunk: List[Row],
        resolution: Resolution,
        columns: List[str],
        identity_fields: List[str],
        batch_number: int,
    ) -> None:
        errors = None
        try:
            result = writer.write(resolution.rows_to_write, columns, task.policy.mode, identity_fields, batch_number)
            result.skipped += resolution.skipped_count
        except BatchWriteError as exc:
            result = WriteResult(skipped=len(chunk))
            errors = [exc.to_entry()]

        self.registry.record_progress(
            task.id,
            processed=len(chunk),
            inserted=result.inserted,
            updated=result.updated,
            skipped=result.skipped,
            errors=errors,
        )
        logger.debug(
            "Task %s batch %d: %d inserted, %d updated, %d skipped (%d already stored)",
            task.id, batch_number, result.inserted, result.updated, result.skipped, resolution.existing_count,
        )
