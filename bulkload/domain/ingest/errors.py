"""
Exception taxonomy for the ingestion pipeline.

Fatal errors abort a task and leave the source file on disk for inspection;
``BatchWriteError`` is recorded on the task and processing moves on.
"""
from typing import Any, Dict, Optional


class IngestionError(Exception):
    """Base class for all ingestion failures."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class DecodeError(IngestionError):
    """Raised when a source file cannot be opened or parsed."""

    PHASE_OPEN = "open"
    PHASE_PARSE = "parse"

    def __init__(self, path: str, phase: str, message: str):
        self.path = path
        self.phase = phase
        super().__init__(f"Failed to {phase} '{path}': {message}")
        self.detail = message

    def __reduce__(self):
        # Must survive the trip back from a decode worker process
        return (self.__class__, (self.path, self.phase, self.detail))


class ConflictPolicyError(IngestionError):
    """Raised under the ``error`` duplicate mode when rows already exist downstream."""

    def __init__(self, table_name: str, conflicting_rows: int, message: Optional[str] = None):
        self.table_name = table_name
        self.conflicting_rows = conflicting_rows
        super().__init__(
            message
            or f"Duplicate rows detected. Found {conflicting_rows} existing records in "
            f"'{table_name}' that match your data."
        )


class BatchWriteError(IngestionError):
    """A single batch failed to write. Recorded on the task; ingestion continues."""

    def __init__(self, batch: int, rows: int, message: str):
        self.batch = batch
        self.rows = rows
        super().__init__(message)

    def to_entry(self) -> Dict[str, Any]:
        return {"batch": self.batch, "rows": self.rows, "error": self.message}


class RegistryIOError(IngestionError):
    """The registry could not be written; the in-memory state was left untouched."""

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"Could not persist registry to '{path}': {message}")


class ProcessingConflictError(IngestionError):
    """A second caller tried to start processing a file that is already being processed."""

    def __init__(self, file_id: str, task_id: Optional[str] = None):
        self.file_id = file_id
        self.task_id = task_id
        super().__init__("Processing already in progress for this file.")


class FileNotRegisteredError(IngestionError):
    """The referenced upload is unknown to the registry."""

    def __init__(self, file_id: str):
        self.file_id = file_id
        super().__init__(f"File '{file_id}' not found.")


class InvalidFileStateError(IngestionError):
    """The upload exists but its status does not allow the requested action."""

    def __init__(self, file_id: str, status: str, action: str):
        self.file_id = file_id
        self.status = status
        super().__init__(f"Cannot {action} file '{file_id}' while it is {status}.")
