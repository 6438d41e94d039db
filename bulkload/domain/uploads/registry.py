"""
Durable registry of uploaded files and ingestion tasks.

Both maps live in memory behind one re-entrant lock and are mirrored to two
JSON documents (``pending_files.json`` and ``tasks.json``). Every mutation
builds the next state, writes it to disk atomically, and only then swaps the
in-memory maps, so a failed write leaves the registry exactly as it was.
"""
from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Literal, Optional, Set

from pydantic import BaseModel, Field, ValidationError

from bulkload.core.config import settings
from bulkload.domain.ingest.errors import (
    FileNotRegisteredError,
    InvalidFileStateError,
    ProcessingConflictError,
    RegistryIOError,
)

logger = logging.getLogger(__name__)

FILES_DOCUMENT = "pending_files.json"
TASKS_DOCUMENT = "tasks.json"

INTERRUPTED_MESSAGE = "Processing was interrupted by a service restart."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dump(records: Dict[str, BaseModel]) -> Dict[str, Any]:
    return {key: record.model_dump(mode="json") for key, record in records.items()}


class FileStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class TaskStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class DuplicatePolicy(BaseModel):
    """How rows that already exist downstream are treated."""
    mode: Literal["skip", "update", "error"] = "skip"
    identity_fields: List[str] = Field(default_factory=list)  # Empty = table primary key
    batch_size: int = Field(default=5000, ge=1)


class TaskErrorEntry(BaseModel):
    batch: Optional[int] = None
    error: str
    rows: int = 0


class UploadedFile(BaseModel):
    id: str
    original_name: str
    storage_path: str
    size_bytes: int = 0
    content_type: Optional[str] = None
    uploaded_by: Optional[str] = None
    uploaded_at: datetime = Field(default_factory=_utcnow)
    status: FileStatus = FileStatus.PENDING
    task_id: Optional[str] = None
    last_error: Optional[str] = None


class IngestionTask(BaseModel):
    id: str
    file_id: str
    connection_id: Optional[str] = None
    database: str
    table: str
    policy: DuplicatePolicy = Field(default_factory=DuplicatePolicy)
    status: TaskStatus = TaskStatus.PROCESSING
    total_rows: int = 0
    processed_rows: int = 0
    inserted_rows: int = 0
    updated_rows: int = 0
    skipped_rows: int = 0
    errors: List[TaskErrorEntry] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskStatus.COMPLETED, TaskStatus.ERROR)


@dataclass
class LoadReport:
    files_loaded: int = 0
    tasks_loaded: int = 0
    evicted_files: List[str] = field(default_factory=list)
    evicted_tasks: List[str] = field(default_factory=list)
    recovered_files: List[str] = field(default_factory=list)
    failed_tasks: List[str] = field(default_factory=list)


class IngestionRegistry:
    def __init__(
        self,
        registry_dir: str,
        pending_file_max_age_hours: Optional[int] = None,
        task_max_age_hours: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.registry_dir = registry_dir
        self.files_path = os.path.join(registry_dir, FILES_DOCUMENT)
        self.tasks_path = os.path.join(registry_dir, TASKS_DOCUMENT)
        self.pending_file_max_age = timedelta(
            hours=pending_file_max_age_hours
            if pending_file_max_age_hours is not None
            else settings.pending_file_max_age_hours
        )
        self.task_max_age = timedelta(
            hours=task_max_age_hours if task_max_age_hours is not None else settings.task_max_age_hours
        )
        self._clock = clock or _utcnow
        self._lock = threading.RLock()
        self._files: Dict[str, UploadedFile] = {}
        self._tasks: Dict[str, IngestionTask] = {}

    # ------------------------------------------------------------------
    # Disk I/O
    # ------------------------------------------------------------------

    def _read_document(self, path: str) -> Dict[str, Any]:
        if not os.path.exists(path):
            return {}
        try:
            with open(path, "r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, ValueError) as exc:
            logger.error("Could not read registry document %s: %s", path, exc)
            corrupt_path = f"{path}.corrupt"
            try:
                os.replace(path, corrupt_path)
                logger.error("Moved unreadable registry document aside to %s", corrupt_path)
            except OSError:
                logger.exception("Failed to move %s aside", path)
            return {}
        if not isinstance(payload, dict):
            logger.error("Registry document %s is not a JSON object; ignoring it", path)
            return {}
        return payload

    def _write_document(self, path: str, payload: Dict[str, Any]) -> None:
        tmp_path = f"{path}.tmp"
        try:
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as exc:
            try:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
            except OSError:
                pass
            raise RegistryIOError(path, str(exc)) from exc

    def _commit(
        self,
        files: Optional[Dict[str, UploadedFile]] = None,
        tasks: Optional[Dict[str, IngestionTask]] = None,
    ) -> None:
        """
        Write the next state, then swap it in. Must be called with the lock held.

        The files document is written first. If the tasks document then fails,
        the files document is rewritten from the current in-memory state so
        disk never holds a file transition without its task.
        """
        if files is not None:
            self._write_document(self.files_path, _dump(files))
        if tasks is not None:
            try:
                self._write_document(self.tasks_path, _dump(tasks))
            except RegistryIOError:
                if files is not None:
                    self._restore_files_document()
                raise
        if files is not None:
            self._files = files
        if tasks is not None:
            self._tasks = tasks

    def _restore_files_document(self) -> None:
        try:
            self._write_document(self.files_path, _dump(self._files))
        except RegistryIOError as exc:
            # Startup recovery resets the orphaned ``processing`` file
            logger.error("Could not roll back %s after a failed commit: %s", self.files_path, exc.message)

    def persist(self) -> None:
        """Write the current in-memory state to disk."""
        with self._lock:
            self._commit(dict(self._files), dict(self._tasks))

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def load(self, recover: bool = True) -> LoadReport:
        """
        Load both documents, evict stale entries and recover interrupted work.

        Files left in ``processing`` by a previous run go back to ``pending``
        with their task cleared; the abandoned task is marked ``error``.
        With ``recover=False`` the documents are read as-is (for read-only
        tools running next to a live server).
        """
        report = LoadReport()

        with self._lock:
            files: Dict[str, UploadedFile] = {}
            for file_id, raw in self._read_document(self.files_path).items():
                try:
                    files[file_id] = UploadedFile.model_validate(raw)
                except ValidationError as exc:
                    logger.warning("Dropping malformed file record %s: %s", file_id, exc)

            tasks: Dict[str, IngestionTask] = {}
            for task_id, raw in self._read_document(self.tasks_path).items():
                try:
                    tasks[task_id] = IngestionTask.model_validate(raw)
                except ValidationError as exc:
                    logger.warning("Dropping malformed task record %s: %s", task_id, exc)

            if recover:
                self._recover(files, tasks, report)

            self._files = files
            self._tasks = tasks
            report.files_loaded = len(files)
            report.tasks_loaded = len(tasks)

            if report.evicted_files or report.evicted_tasks or report.recovered_files or report.failed_tasks:
                self.persist()

        if report.recovered_files:
            logger.warning(
                "Reset %d interrupted file(s) to pending: %s",
                len(report.recovered_files), ", ".join(report.recovered_files),
            )
        if report.evicted_files or report.evicted_tasks:
            logger.info(
                "Evicted %d stale file record(s) and %d stale task(s)",
                len(report.evicted_files), len(report.evicted_tasks),
            )
        logger.info("Registry loaded: %d file(s), %d task(s)", report.files_loaded, report.tasks_loaded)
        return report

    def _recover(
        self,
        files: Dict[str, UploadedFile],
        tasks: Dict[str, IngestionTask],
        report: LoadReport,
    ) -> None:
        now = self._clock()

        for file_id, record in list(files.items()):
            if now - record.uploaded_at > self.pending_file_max_age:
                report.evicted_files.append(file_id)
                del files[file_id]

        for task_id, task in list(tasks.items()):
            if now - task.started_at > self.task_max_age:
                report.evicted_tasks.append(task_id)
                del tasks[task_id]

        for file_id, record in list(files.items()):
            if record.status == FileStatus.PROCESSING:
                files[file_id] = record.model_copy(update={"status": FileStatus.PENDING, "task_id": None})
                report.recovered_files.append(file_id)

        # No task survives a restart in ``processing``
        for task_id, task in list(tasks.items()):
            if not task.is_terminal:
                tasks[task_id] = task.model_copy(
                    update={
                        "status": TaskStatus.ERROR,
                        "completed_at": now,
                        "errors": task.errors + [TaskErrorEntry(error=INTERRUPTED_MESSAGE)],
                    }
                )
                report.failed_tasks.append(task_id)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def add_file(self, record: UploadedFile) -> UploadedFile:
        with self._lock:
            files = dict(self._files)
            files[record.id] = record
            self._commit(files=files)
        logger.info("Registered upload %s (%s, %d bytes)", record.id, record.original_name, record.size_bytes)
        return record

    def get_file(self, file_id: str) -> Optional[UploadedFile]:
        with self._lock:
            return self._files.get(file_id)

    def list_files(self, uploaded_by: Optional[str] = None, include_completed: bool = False) -> List[UploadedFile]:
        """Files visible to ``uploaded_by`` (all files when ``None``), newest first."""
        with self._lock:
            records = list(self._files.values())
        if uploaded_by is not None:
            records = [record for record in records if record.uploaded_by == uploaded_by]
        if not include_completed:
            records = [record for record in records if record.status != FileStatus.COMPLETED]
        return sorted(records, key=lambda record: record.uploaded_at, reverse=True)

    def remove_file(self, file_id: str) -> UploadedFile:
        """
        Drop a file record and return it; the caller deletes the bytes.

        Raises:
            FileNotRegisteredError: If the file is unknown
            InvalidFileStateError: If the file is being processed
        """
        with self._lock:
            record = self._files.get(file_id)
            if record is None:
                raise FileNotRegisteredError(file_id)
            if record.status == FileStatus.PROCESSING:
                raise InvalidFileStateError(file_id, record.status.value, "delete")
            files = dict(self._files)
            del files[file_id]
            self._commit(files=files)
        return record

    def referenced_paths(self) -> Set[str]:
        with self._lock:
            return {os.path.abspath(record.storage_path) for record in self._files.values()}

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def _next_task_id(self, tasks: Dict[str, IngestionTask]) -> str:
        candidate = int(self._clock().timestamp() * 1000)
        while str(candidate) in tasks:
            candidate += 1
        return str(candidate)

    def begin_processing(
        self,
        file_id: str,
        database: str,
        table: str,
        policy: DuplicatePolicy,
        connection_id: Optional[str] = None,
    ) -> IngestionTask:
        """
        Create a task and move its file to ``processing`` in one commit.

        Raises:
            FileNotRegisteredError: If the file is unknown
            ProcessingConflictError: If the file already has a running task
            InvalidFileStateError: If the file was already ingested
        """
        with self._lock:
            record = self._files.get(file_id)
            if record is None:
                raise FileNotRegisteredError(file_id)
            if record.status == FileStatus.PROCESSING:
                raise ProcessingConflictError(file_id, record.task_id)
            if record.status == FileStatus.COMPLETED:
                raise InvalidFileStateError(file_id, record.status.value, "process")

            tasks = dict(self._tasks)
            task = IngestionTask(
                id=self._next_task_id(tasks),
                file_id=file_id,
                connection_id=connection_id,
                database=database,
                table=table,
                policy=policy,
                started_at=self._clock(),
            )
            tasks[task.id] = task
            files = dict(self._files)
            files[file_id] = record.model_copy(
                update={"status": FileStatus.PROCESSING, "task_id": task.id, "last_error": None}
            )
            self._commit(files=files, tasks=tasks)

        logger.info("Task %s started for file %s -> %s.%s", task.id, file_id, database, table)
        return task

    def get_task(self, task_id: str) -> Optional[IngestionTask]:
        with self._lock:
            return self._tasks.get(task_id)

    def _replace_task(self, task_id: str, **changes: Any) -> IngestionTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise KeyError(task_id)
        tasks = dict(self._tasks)
        tasks[task_id] = task.model_copy(update=changes)
        self._commit(tasks=tasks)
        return tasks[task_id]

    def update_task(self, task_id: str, **changes: Any) -> IngestionTask:
        """Overwrite fields on a task (e.g. ``total_rows`` once decoding finished)."""
        with self._lock:
            return self._replace_task(task_id, **changes)

    def record_progress(
        self,
        task_id: str,
        processed: int,
        inserted: int = 0,
        updated: int = 0,
        skipped: int = 0,
        errors: Optional[List[Dict[str, Any]]] = None,
    ) -> IngestionTask:
        """Add one chunk's counters to a task and persist it."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise KeyError(task_id)
            new_errors = task.errors + [TaskErrorEntry.model_validate(entry) for entry in errors or []]
            return self._replace_task(
                task_id,
                processed_rows=task.processed_rows + processed,
                inserted_rows=task.inserted_rows + inserted,
                updated_rows=task.updated_rows + updated,
                skipped_rows=task.skipped_rows + skipped,
                errors=new_errors,
            )

    def complete_task(self, task_id: str) -> IngestionTask:
        """Mark a task completed and drop its file record; the task stays queryable."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise KeyError(task_id)
            tasks = dict(self._tasks)
            tasks[task_id] = task.model_copy(
                update={"status": TaskStatus.COMPLETED, "completed_at": self._clock()}
            )
            files = dict(self._files)
            files.pop(task.file_id, None)
            self._commit(files=files, tasks=tasks)
        return tasks[task_id]

    def fail_task(self, task_id: str, message: str) -> IngestionTask:
        """Mark a task and its file ``error``; the file stays registered for a retry."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise KeyError(task_id)
            tasks = dict(self._tasks)
            tasks[task_id] = task.model_copy(
                update={
                    "status": TaskStatus.ERROR,
                    "completed_at": self._clock(),
                    "errors": task.errors + [TaskErrorEntry(error=message)],
                }
            )
            files = dict(self._files)
            record = files.get(task.file_id)
            if record is not None:
                files[task.file_id] = record.model_copy(
                    update={"status": FileStatus.ERROR, "last_error": message}
                )
            self._commit(files=files, tasks=tasks)
        return tasks[task_id]

    def expire_tasks(self, retention_seconds: int) -> List[str]:
        """Drop terminal tasks that finished more than ``retention_seconds`` ago."""
        cutoff = self._clock() - timedelta(seconds=retention_seconds)
        with self._lock:
            expired = [
                task_id
                for task_id, task in self._tasks.items()
                if task.is_terminal and task.completed_at is not None and task.completed_at < cutoff
            ]
            if not expired:
                return []
            tasks = {task_id: task for task_id, task in self._tasks.items() if task_id not in expired}
            self._commit(tasks=tasks)
        logger.debug("Expired %d finished task(s)", len(expired))
        return expired


_registry: Optional[IngestionRegistry] = None
_registry_lock = threading.Lock()


def get_registry() -> IngestionRegistry:
    """Get or create the process-wide registry (not loaded; call ``load()`` at startup)."""
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = IngestionRegistry(settings.registry_dir)
        return _registry


def reset_registry() -> None:
    global _registry
    with _registry_lock:
        _registry = None
