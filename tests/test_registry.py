"""
Tests for the durable file/task registry: commits, recovery and eviction.
"""
import json
import os
from datetime import timedelta

import pytest

from bulkload.domain.ingest.errors import (
    FileNotRegisteredError,
    InvalidFileStateError,
    ProcessingConflictError,
    RegistryIOError,
)
from bulkload.domain.uploads.registry import (
    FILES_DOCUMENT,
    INTERRUPTED_MESSAGE,
    DuplicatePolicy,
    FileStatus,
    IngestionRegistry,
    TaskStatus,
    UploadedFile,
)


def _file(registry, file_id, uploaded_by=None, minutes_ago=0):
    return UploadedFile(
        id=file_id,
        original_name=f"{file_id}.csv",
        storage_path=f"/data/{file_id}.csv",
        size_bytes=10,
        uploaded_by=uploaded_by,
        uploaded_at=registry._clock() - timedelta(minutes=minutes_ago),
    )


def _start(registry, file_id):
    return registry.begin_processing(file_id, "shop", "customers", DuplicatePolicy(mode="skip"))


def _reopen(registry, clock):
    return IngestionRegistry(registry.registry_dir, clock=clock)


def test_add_and_list_files(registry):
    registry.add_file(_file(registry, "old", uploaded_by="u1", minutes_ago=10))
    registry.add_file(_file(registry, "new", uploaded_by="u1"))
    registry.add_file(_file(registry, "theirs", uploaded_by="u2"))

    assert [record.id for record in registry.list_files(uploaded_by="u1")] == ["new", "old"]
    assert {record.id for record in registry.list_files()} == {"old", "new", "theirs"}
    assert registry.get_file("missing") is None


def test_state_survives_reopen(registry, clock):
    registry.add_file(_file(registry, "f1"))
    task = _start(registry, "f1")

    reopened = _reopen(registry, clock)
    reopened.load(recover=False)

    assert reopened.get_file("f1").status == FileStatus.PROCESSING
    assert reopened.get_task(task.id).table == "customers"


def test_begin_processing_moves_file_and_creates_task(registry, clock):
    registry.add_file(_file(registry, "f1"))

    task = _start(registry, "f1")

    assert task.id == str(int(clock.now.timestamp() * 1000))
    assert task.status == TaskStatus.PROCESSING
    record = registry.get_file("f1")
    assert record.status == FileStatus.PROCESSING
    assert record.task_id == task.id


def test_second_start_is_rejected(registry):
    registry.add_file(_file(registry, "f1"))
    first = _start(registry, "f1")

    with pytest.raises(ProcessingConflictError) as exc_info:
        _start(registry, "f1")

    assert exc_info.value.task_id == first.id
    assert exc_info.value.message == "Processing already in progress for this file."


def test_unknown_file_cannot_start(registry):
    with pytest.raises(FileNotRegisteredError):
        _start(registry, "ghost")


def test_failed_file_can_be_retried_with_a_new_task_id(registry):
    registry.add_file(_file(registry, "f1"))
    first = _start(registry, "f1")
    registry.fail_task(first.id, "boom")

    second = _start(registry, "f1")

    assert int(second.id) == int(first.id) + 1
    assert registry.get_file("f1").last_error is None


def test_record_progress_accumulates(registry):
    registry.add_file(_file(registry, "f1"))
    task = _start(registry, "f1")

    registry.record_progress(task.id, processed=5, inserted=3, skipped=2)
    registry.record_progress(
        task.id, processed=5, updated=1, skipped=4,
        errors=[{"batch": 2, "rows": 4, "error": "constraint failed"}],
    )

    snapshot = registry.get_task(task.id)
    assert (snapshot.processed_rows, snapshot.inserted_rows, snapshot.updated_rows, snapshot.skipped_rows) == (10, 3, 1, 6)
    assert snapshot.errors[0].batch == 2


def test_complete_task_drops_file_but_keeps_task(registry):
    registry.add_file(_file(registry, "f1"))
    task = _start(registry, "f1")

    finished = registry.complete_task(task.id)

    assert finished.status == TaskStatus.COMPLETED
    assert finished.completed_at is not None
    assert registry.get_file("f1") is None
    assert registry.get_task(task.id) is not None


def test_fail_task_marks_file_error(registry):
    registry.add_file(_file(registry, "f1"))
    task = _start(registry, "f1")

    failed = registry.fail_task(task.id, "Failed to parse")

    assert failed.status == TaskStatus.ERROR
    assert failed.errors[-1].error == "Failed to parse"
    record = registry.get_file("f1")
    assert record.status == FileStatus.ERROR
    assert record.last_error == "Failed to parse"


def test_remove_file_rules(registry):
    registry.add_file(_file(registry, "idle"))
    registry.add_file(_file(registry, "busy"))
    _start(registry, "busy")

    assert registry.remove_file("idle").id == "idle"
    with pytest.raises(InvalidFileStateError):
        registry.remove_file("busy")
    with pytest.raises(FileNotRegisteredError):
        registry.remove_file("idle")


def test_interrupted_processing_is_reset_on_load(registry, clock):
    registry.add_file(_file(registry, "f1"))
    task = _start(registry, "f1")

    reopened = _reopen(registry, clock)
    report = reopened.load()

    assert report.recovered_files == ["f1"]
    record = reopened.get_file("f1")
    assert record.status == FileStatus.PENDING
    assert record.task_id is None
    abandoned = reopened.get_task(task.id)
    assert abandoned.status == TaskStatus.ERROR
    assert abandoned.errors[-1].error == INTERRUPTED_MESSAGE

    # Recovery was persisted
    again = _reopen(registry, clock)
    again.load(recover=False)
    assert again.get_file("f1").status == FileStatus.PENDING


def test_stale_entries_are_evicted_on_load(registry, clock):
    registry.add_file(_file(registry, "stale", minutes_ago=60 * 24 * 30))
    registry.add_file(_file(registry, "fresh"))
    registry.add_file(_file(registry, "done"))
    old_task = _start(registry, "done")
    registry.complete_task(old_task.id)

    clock.now = clock.now + timedelta(hours=25)
    reopened = _reopen(registry, clock)
    report = reopened.load()

    assert report.evicted_files == ["stale"]
    assert report.evicted_tasks == [old_task.id]
    assert reopened.get_file("fresh") is not None
    assert reopened.get_task(old_task.id) is None


def test_expire_tasks_after_retention(registry, clock):
    registry.add_file(_file(registry, "f1"))
    registry.add_file(_file(registry, "f2"))
    finished = _start(registry, "f1")
    registry.complete_task(finished.id)
    running = _start(registry, "f2")

    assert registry.expire_tasks(300) == []
    clock.now = clock.now + timedelta(seconds=301)

    assert registry.expire_tasks(300) == [finished.id]
    assert registry.get_task(finished.id) is None
    assert registry.get_task(running.id) is not None


def test_write_failure_leaves_state_untouched(registry, monkeypatch):
    registry.add_file(_file(registry, "f1"))

    def fail_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", fail_replace)

    with pytest.raises(RegistryIOError):
        registry.add_file(_file(registry, "f2"))
    with pytest.raises(RegistryIOError):
        _start(registry, "f1")

    assert registry.get_file("f2") is None
    assert registry.get_file("f1").status == FileStatus.PENDING
    assert not os.path.exists(registry.files_path + ".tmp")


def test_failed_task_write_rolls_back_files_document(registry, monkeypatch):
    registry.add_file(_file(registry, "f1"))
    real_replace = os.replace

    def fail_tasks_document(src, dst):
        if dst == registry.tasks_path:
            raise OSError("disk full")
        return real_replace(src, dst)

    monkeypatch.setattr(os, "replace", fail_tasks_document)

    with pytest.raises(RegistryIOError):
        _start(registry, "f1")

    with open(registry.files_path, encoding="utf-8") as handle:
        on_disk = json.load(handle)
    assert on_disk["f1"]["status"] == "pending"
    assert on_disk["f1"]["task_id"] is None
    assert registry.get_file("f1").status == FileStatus.PENDING
    assert not os.path.exists(registry.tasks_path)


def test_documents_are_plain_json(registry):
    registry.add_file(_file(registry, "f1"))

    with open(os.path.join(registry.registry_dir, FILES_DOCUMENT), encoding="utf-8") as handle:
        payload = json.load(handle)

    assert payload["f1"]["status"] == "pending"
    assert payload["f1"]["original_name"] == "f1.csv"


def test_unreadable_document_is_moved_aside(registry, clock):
    os.makedirs(registry.registry_dir, exist_ok=True)
    with open(registry.files_path, "w", encoding="utf-8") as handle:
        handle.write("{not json")

    report = _reopen(registry, clock).load()

    assert report.files_loaded == 0
    assert os.path.exists(registry.files_path + ".corrupt")
