"""
Upload and ingestion endpoints.

Phase 1 stores the file and registers it as ``pending``; phase 2 starts a
background ingestion task against a target table. The one-shot route does
both in a single request.
"""
import logging
import os
import uuid
from typing import BinaryIO, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile
from starlette.concurrency import run_in_threadpool

from bulkload.api.dependencies import (
    Caller,
    ensure_database_access,
    ensure_file_access,
    get_caller,
    get_orchestrator,
    registry_dependency,
)
from bulkload.api.schemas.shared import (
    DeleteFileResponse,
    ProcessFileRequest,
    ProcessFileResponse,
    TaskProgressResponse,
    UploadedFileInfo,
    UploadedFilesListResponse,
    UploadFileResponse,
    parse_check_fields,
)
from bulkload.core.config import settings
from bulkload.domain.ingest.decoder import detect_format
from bulkload.domain.ingest.errors import (
    FileNotRegisteredError,
    IngestionError,
    InvalidFileStateError,
    ProcessingConflictError,
    RegistryIOError,
)
from bulkload.domain.ingest.orchestrator import IngestionOrchestrator, build_policy
from bulkload.domain.uploads.reclamation import TEMP_ARTIFACT_SUFFIX
from bulkload.domain.uploads.registry import (
    DuplicatePolicy,
    IngestionRegistry,
    IngestionTask,
    UploadedFile,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/upload", tags=["uploads"])

COPY_CHUNK_BYTES = 1024 * 1024


class UploadTooLargeError(Exception):
    pass


def _max_upload_bytes() -> int:
    return settings.upload_max_file_size_mb * 1024 * 1024


def _copy_to_disk(source: BinaryIO, destination: str, limit: int) -> int:
    """Stream ``source`` into ``destination`` via a ``.part`` file; return the size."""
    temp_path = f"{destination}{TEMP_ARTIFACT_SUFFIX}"
    written = 0
    try:
        with open(temp_path, "wb") as handle:
            while True:
                block = source.read(COPY_CHUNK_BYTES)
                if not block:
                    break
                written += len(block)
                if written > limit:
                    raise UploadTooLargeError()
                handle.write(block)
        os.replace(temp_path, destination)
    except BaseException:
        if os.path.exists(temp_path):
            os.remove(temp_path)
        raise
    return written


def _error_to_http(exc: IngestionError) -> HTTPException:
    if isinstance(exc, FileNotRegisteredError):
        return HTTPException(status_code=404, detail=exc.message)
    if isinstance(exc, (ProcessingConflictError, InvalidFileStateError)):
        return HTTPException(status_code=409, detail=exc.message)
    if isinstance(exc, RegistryIOError):
        return HTTPException(status_code=500, detail=exc.message)
    return HTTPException(status_code=400, detail=exc.message)


async def register_upload(
    file: Optional[UploadFile],
    caller: Caller,
    registry: IngestionRegistry,
) -> UploadedFile:
    """Validate, store and register one uploaded file."""
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="No file uploaded.")
    try:
        detect_format(file.filename)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    os.makedirs(settings.upload_dir, exist_ok=True)
    file_id = uuid.uuid4().hex
    extension = os.path.splitext(file.filename)[1].lower()
    storage_path = os.path.join(settings.upload_dir, f"{file_id}{extension}")

    try:
        size = await run_in_threadpool(_copy_to_disk, file.file, storage_path, _max_upload_bytes())
    except UploadTooLargeError:
        raise HTTPException(
            status_code=413,
            detail=(
                f"{file.filename} is too large. "
                f"Maximum allowed upload size is {settings.upload_max_file_size_mb}MB."
            ),
        )
    finally:
        await file.close()

    record = UploadedFile(
        id=file_id,
        original_name=file.filename,
        storage_path=storage_path,
        size_bytes=size,
        content_type=file.content_type,
        uploaded_by=caller.user_id,
    )
    try:
        return registry.add_file(record)
    except RegistryIOError as exc:
        os.remove(storage_path)
        raise _error_to_http(exc)


def _start_task(
    orchestrator: IngestionOrchestrator,
    background_tasks: BackgroundTasks,
    file_id: str,
    database: str,
    table: str,
    policy: DuplicatePolicy,
    connection_id: Optional[str],
) -> IngestionTask:
    try:
        task = orchestrator.start(file_id, database, table, policy, connection_id=connection_id)
    except IngestionError as exc:
        raise _error_to_http(exc)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    background_tasks.add_task(orchestrator.run, task.id)
    return task


def _policy_or_400(mode: Optional[str], fields, batch_size: Optional[int]) -> DuplicatePolicy:
    try:
        return build_policy(mode, fields, batch_size)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@router.post("/files", response_model=UploadFileResponse)
async def upload_file_endpoint(
    file: Optional[UploadFile] = File(None),
    caller: Caller = Depends(get_caller),
    registry: IngestionRegistry = Depends(registry_dependency),
):
    """
    Store a file and register it as pending.

    Returns:
    - The registered file; pass its ``id`` to ``/upload/files/{file_id}/process``
    """
    record = await register_upload(file, caller, registry)
    return UploadFileResponse(
        success=True,
        message="File uploaded successfully",
        file=UploadedFileInfo.from_record(record),
    )


@router.post("/files/{file_id}/process", response_model=ProcessFileResponse)
async def process_file_endpoint(
    file_id: str,
    request: ProcessFileRequest,
    background_tasks: BackgroundTasks,
    caller: Caller = Depends(get_caller),
    registry: IngestionRegistry = Depends(registry_dependency),
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
):
    """Start ingesting a pending (or previously failed) file into a table."""
    if not request.database:
        raise HTTPException(status_code=400, detail="Missing required parameter: database")
    if not request.table:
        raise HTTPException(status_code=400, detail="Missing required parameter: table")
    ensure_database_access(caller, request.database)

    record = registry.get_file(file_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"File '{file_id}' not found.")
    ensure_file_access(caller, record.uploaded_by)

    policy = _policy_or_400(request.duplicate_mode, request.duplicate_check_fields, request.batch_size)
    task = _start_task(
        orchestrator, background_tasks, file_id, request.database, request.table, policy, request.connection_id
    )
    return ProcessFileResponse(
        success=True,
        message="Processing started",
        task_id=task.id,
        file_id=file_id,
    )


@router.get("/progress/{task_id}", response_model=TaskProgressResponse)
async def get_progress_endpoint(
    task_id: str,
    registry: IngestionRegistry = Depends(registry_dependency),
):
    """Poll the progress of an ingestion task."""
    task = registry.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found.")
    return TaskProgressResponse.from_task(task)


@router.get("/files", response_model=UploadedFilesListResponse)
async def list_files_endpoint(
    caller: Caller = Depends(get_caller),
    registry: IngestionRegistry = Depends(registry_dependency),
):
    """List files that have not been ingested yet."""
    uploaded_by = None if caller.is_admin else caller.user_id
    records = registry.list_files(uploaded_by=uploaded_by)
    return UploadedFilesListResponse(
        success=True,
        files=[UploadedFileInfo.from_record(record) for record in records],
        total_count=len(records),
    )


@router.delete("/files/{file_id}", response_model=DeleteFileResponse)
async def delete_file_endpoint(
    file_id: str,
    caller: Caller = Depends(get_caller),
    registry: IngestionRegistry = Depends(registry_dependency),
):
    """Remove a registered file and its stored bytes."""
    record = registry.get_file(file_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"File '{file_id}' not found.")
    ensure_file_access(caller, record.uploaded_by)

    try:
        removed = registry.remove_file(file_id)
    except IngestionError as exc:
        raise _error_to_http(exc)

    try:
        os.remove(removed.storage_path)
    except FileNotFoundError:
        logger.info("Stored bytes for %s were already gone", file_id)
    except OSError as exc:
        logger.warning("Could not delete %s: %s", removed.storage_path, exc)

    return DeleteFileResponse(success=True, message=f"File '{removed.original_name}' deleted successfully")


@router.post("/{database}/{table}", response_model=ProcessFileResponse)
async def upload_and_process_endpoint(
    database: str,
    table: str,
    background_tasks: BackgroundTasks,
    file: Optional[UploadFile] = File(None),
    connection_id: Optional[str] = Form(None),
    duplicate_mode: Optional[str] = Form("skip"),
    duplicate_check_fields: Optional[str] = Form(None),
    batch_size: Optional[int] = Form(None),
    caller: Caller = Depends(get_caller),
    registry: IngestionRegistry = Depends(registry_dependency),
    orchestrator: IngestionOrchestrator = Depends(get_orchestrator),
):
    """
    Upload a file and start ingesting it in one request.

    Form fields:
    - duplicate_mode: ``skip`` | ``update`` | ``error``
    - duplicate_check_fields: JSON list of column names (empty = primary key)
    - batch_size: rows per insert statement
    """
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="No file uploaded.")
    ensure_database_access(caller, database)

    try:
        fields = parse_check_fields(duplicate_check_fields)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    policy = _policy_or_400(duplicate_mode, fields, batch_size)

    record = await register_upload(file, caller, registry)
    task = _start_task(orchestrator, background_tasks, record.id, database, table, policy, connection_id or None)
    return ProcessFileResponse(
        success=True,
        message="File uploaded successfully. Processing started.",
        task_id=task.id,
        file_id=record.id,
    )
