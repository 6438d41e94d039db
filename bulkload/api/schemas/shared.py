import json
from datetime import datetime
from typing import Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from bulkload.domain.uploads.registry import IngestionTask, TaskErrorEntry, UploadedFile


def parse_check_fields(raw: Union[str, List[str], None]) -> List[str]:
    """
    Accept duplicate check fields as a list, a JSON list string, or a
    comma-separated string.
    """
    if raw is None:
        return []
    if isinstance(raw, list):
        return [str(name).strip() for name in raw if str(name).strip()]
    text = raw.strip()
    if not text:
        return []
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except ValueError as exc:
            raise ValueError(f"duplicate_check_fields is not valid JSON: {exc}") from exc
        if not isinstance(parsed, list):
            raise ValueError("duplicate_check_fields must be a JSON list")
        return [str(name).strip() for name in parsed if str(name).strip()]
    return [name.strip() for name in text.split(",") if name.strip()]


class UploadedFileInfo(BaseModel):
    """Public view of a registered upload (the storage path stays server-side)."""
    id: str
    original_name: str
    size_bytes: int
    content_type: Optional[str] = None
    uploaded_by: Optional[str] = None
    uploaded_at: datetime
    status: str
    task_id: Optional[str] = None
    last_error: Optional[str] = None

    @classmethod
    def from_record(cls, record: UploadedFile) -> "UploadedFileInfo":
        return cls(**record.model_dump(exclude={"storage_path"}, mode="json"))


class UploadFileResponse(BaseModel):
    success: bool
    message: str
    file: UploadedFileInfo


class UploadedFilesListResponse(BaseModel):
    success: bool
    files: List[UploadedFileInfo]
    total_count: int


class DeleteFileResponse(BaseModel):
    success: bool
    message: str


class ProcessFileRequest(BaseModel):
    database: Optional[str] = None
    table: Optional[str] = None
    connection_id: Optional[str] = None
    duplicate_mode: Literal["skip", "update", "error"] = "skip"
    duplicate_check_fields: List[str] = Field(default_factory=list)
    batch_size: Optional[int] = Field(default=None, ge=1)

    @field_validator("duplicate_check_fields", mode="before")
    @classmethod
    def _coerce_fields(cls, value: Any) -> List[str]:
        return parse_check_fields(value)

    @field_validator("duplicate_mode", mode="before")
    @classmethod
    def _lower_mode(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class ProcessFileResponse(BaseModel):
    success: bool
    message: str
    task_id: str
    file_id: str


class TaskProgressResponse(BaseModel):
    """Snapshot of an ingestion task, safe to poll."""
    task_id: str
    file_id: str
    status: str
    database: str
    table: str
    duplicate_mode: str
    total_rows: int
    processed_rows: int
    inserted_rows: int
    updated_rows: int
    skipped_rows: int
    percent: float
    errors: List[TaskErrorEntry] = Field(default_factory=list)
    started_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_task(cls, task: IngestionTask) -> "TaskProgressResponse":
        if task.total_rows:
            percent = round(100.0 * task.processed_rows / task.total_rows, 1)
        else:
            percent = 100.0 if task.is_terminal else 0.0
        return cls(
            task_id=task.id,
            file_id=task.file_id,
            status=task.status.value,
            database=task.database,
            table=task.table,
            duplicate_mode=task.policy.mode,
            total_rows=task.total_rows,
            processed_rows=task.processed_rows,
            inserted_rows=task.inserted_rows,
            updated_rows=task.updated_rows,
            skipped_rows=task.skipped_rows,
            percent=percent,
            errors=task.errors,
            started_at=task.started_at,
            completed_at=task.completed_at,
        )
