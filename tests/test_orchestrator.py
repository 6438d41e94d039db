"""
End-to-end ingestion scenarios against a SQLite target table.
"""
import os

import pytest
from sqlalchemy import text

from bulkload.domain.ingest.orchestrator import build_policy
from bulkload.domain.uploads.registry import FileStatus, TaskStatus
from tests.utils.tables import seed_rows, table_rows

HEADER = ["email", "name", "signup_date"]


def _run(orchestrator, record, mode="skip", fields=None, batch_size=None, table="customers"):
    policy = build_policy(mode, fields or [], batch_size)
    task = orchestrator.start(record.id, "main", table, policy)
    return orchestrator.run(task.id)


def test_update_scenario_counts_inserted_and_updated(
    engine, customers_table, orchestrator, registry, write_csv, register_file
):
    seed_rows(engine, customers_table, [{"email": "a@example.com", "name": "Ann"}])
    record = register_file(write_csv("update.csv", [
        HEADER,
        ["a@example.com", "Ann Updated", "15/01/2024"],
        ["b@example.com", "Bob", "Jan 15, 2024"],
        ["c@example.com", "Cy", ""],
    ]))

    task = _run(orchestrator, record, mode="update", fields=["email"])

    assert task.status == TaskStatus.COMPLETED
    assert (task.total_rows, task.processed_rows) == (3, 3)
    assert (task.inserted_rows, task.updated_rows, task.skipped_rows) == (2, 1, 0)

    rows = table_rows(engine, customers_table)
    assert [row["name"] for row in rows] == ["Ann Updated", "Bob", "Cy"]
    assert rows[0]["signup_date"] == "2024-01-15 00:00:00"
    assert rows[1]["signup_date"] == "2024-01-15 00:00:00"
    assert rows[2]["signup_date"] is None

    # Completed uploads leave nothing behind but the task
    assert registry.get_file(record.id) is None
    assert not os.path.exists(record.storage_path)


def test_skip_mode_is_idempotent(engine, customers_table, orchestrator, write_csv, register_file):
    path = write_csv("customers.csv", [
        HEADER,
        ["a@example.com", "Ann", "2024-01-01"],
        ["b@example.com", "Bob", "2024-01-02"],
        ["c@example.com", "Cy", "2024-01-03"],
    ])

    first = _run(orchestrator, register_file(path), fields=["email"])
    second = _run(orchestrator, register_file(path), fields=["email"])

    assert (first.inserted_rows, first.skipped_rows) == (3, 0)
    assert (second.inserted_rows, second.updated_rows, second.skipped_rows) == (0, 0, 3)
    assert len(table_rows(engine, customers_table)) == 3


def test_error_mode_writes_nothing_when_a_late_chunk_conflicts(
    engine, customers_table, orchestrator, registry, write_csv, register_file
):
    seed_rows(engine, customers_table, [{"email": "e@example.com", "name": "Existing"}])
    record = register_file(write_csv("conflict.csv", [HEADER] + [
        [f"{letter}@example.com", letter.upper(), ""] for letter in "abcde"
    ]))

    task = _run(orchestrator, record, mode="error", fields=["email"], batch_size=2)

    assert task.status == TaskStatus.ERROR
    assert "Duplicate rows detected" in task.errors[-1].error
    assert task.processed_rows == 0
    assert [row["email"] for row in table_rows(engine, customers_table)] == ["e@example.com"]

    record_after = registry.get_file(record.id)
    assert record_after.status == FileStatus.ERROR
    assert os.path.exists(record.storage_path)


def test_error_mode_without_conflicts_writes_everything(engine, customers_table, orchestrator, write_csv, register_file):
    record = register_file(write_csv("clean.csv", [HEADER] + [
        [f"{letter}@example.com", letter.upper(), ""] for letter in "abc"
    ]))

    task = _run(orchestrator, record, mode="error", fields=["email"], batch_size=2)

    assert task.status == TaskStatus.COMPLETED
    assert task.inserted_rows == 3
    assert len(table_rows(engine, customers_table)) == 3


def test_malformed_workbook_fails_task_and_keeps_file(customers_table, orchestrator, registry, tmp_path, register_file):
    broken = tmp_path / "broken.xlsx"
    broken.write_bytes(b"PK\x03\x04 definitely not a workbook")
    record = register_file(str(broken))

    task = _run(orchestrator, record)

    assert task.status == TaskStatus.ERROR
    assert "Failed to open" in task.errors[-1].error
    record_after = registry.get_file(record.id)
    assert record_after.status == FileStatus.ERROR
    assert record_after.last_error == task.errors[-1].error
    assert os.path.exists(record.storage_path)


def test_failed_batch_is_recorded_and_counted_as_skipped(
    engine, customers_table, orchestrator, write_csv, register_file
):
    record = register_file(write_csv("partial.csv", [
        HEADER,
        ["a@example.com", "Ann", ""],
        ["b@example.com", "Bob", ""],
        ["c@example.com", "Cy", ""],
        ["d@example.com", "", ""],  # name is NOT NULL
        ["e@example.com", "Eve", ""],
    ]))

    task = _run(orchestrator, record, fields=["email"], batch_size=2)

    assert task.status == TaskStatus.COMPLETED
    assert task.processed_rows == 5
    assert (task.inserted_rows, task.skipped_rows) == (3, 2)
    assert task.inserted_rows + task.updated_rows + task.skipped_rows == task.processed_rows
    assert len(task.errors) == 1
    assert task.errors[0].batch == 2
    assert task.errors[0].rows == 2
    assert [row["email"] for row in table_rows(engine, customers_table)] == [
        "a@example.com", "b@example.com", "e@example.com",
    ]


def test_counters_reconcile_across_chunks(engine, customers_table, orchestrator, write_csv, register_file):
    seed_rows(engine, customers_table, [
        {"email": "b@example.com", "name": "Bob"},
        {"email": "f@example.com", "name": "Fay"},
    ])
    record = register_file(write_csv("many.csv", [HEADER] + [
        [f"{letter}@example.com", letter.upper(), ""] for letter in "abcdefg"
    ]))

    task = _run(orchestrator, record, fields=["email"], batch_size=3)

    assert task.total_rows == task.processed_rows == 7
    assert task.inserted_rows + task.updated_rows + task.skipped_rows == 7
    assert (task.inserted_rows, task.skipped_rows) == (5, 2)


def test_unknown_headers_are_dropped(engine, customers_table, orchestrator, write_csv, register_file):
    record = register_file(write_csv("extra.csv", [
        ["email", "name", "nickname"],
        ["a@example.com", "Ann", "annie"],
    ]))

    task = _run(orchestrator, record)

    assert task.status == TaskStatus.COMPLETED
    assert table_rows(engine, customers_table)[0]["name"] == "Ann"


def test_missing_table_is_fatal(orchestrator, write_csv, register_file):
    record = register_file(write_csv("x.csv", [["email"], ["a@example.com"]]))

    task = _run(orchestrator, record, table="nowhere")

    assert task.status == TaskStatus.ERROR
    assert "does not exist" in task.errors[-1].error


def test_unknown_identity_field_is_fatal_with_suggestion(customers_table, orchestrator, write_csv, register_file):
    record = register_file(write_csv("x.csv", [["email", "name"], ["a@example.com", "Ann"]]))

    task = _run(orchestrator, record, fields=["emial"])

    assert task.status == TaskStatus.ERROR
    assert "emial→email" in task.errors[-1].error


def test_primary_key_is_the_default_identity(engine, orchestrator, write_csv, register_file):
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE products (sku TEXT PRIMARY KEY, title TEXT)"))
    seed_rows(engine, "products", [{"sku": "A-1", "title": "Old"}])
    record = register_file(write_csv("products.csv", [
        ["sku", "title"],
        ["A-1", "New"],
        ["B-2", "Second"],
    ]))

    task = _run(orchestrator, record, mode="update", table="products")

    assert (task.inserted_rows, task.updated_rows) == (1, 1)
    titles = [row["title"] for row in table_rows(engine, "products", order_by="sku")]
    assert titles == ["New", "Second"]


def test_excel_upload_is_ingested(engine, customers_table, orchestrator, tmp_path, register_file):
    import pandas as pd

    path = tmp_path / "people.xlsx"
    pd.DataFrame({
        "email": ["a@example.com", "b@example.com"],
        "name": ["Ann", "Bob"],
        "signup_date": [pd.Timestamp("2024-01-15 08:30:00"), 45306],
    }).to_excel(path, index=False)
    record = register_file(str(path))

    task = _run(orchestrator, record, fields=["email"])

    assert task.status == TaskStatus.COMPLETED
    dates = [row["signup_date"] for row in table_rows(engine, customers_table)]
    assert dates == ["2024-01-15 08:30:00", "2024-01-15 00:00:00"]


def test_build_policy_defaults_and_caps(app_settings, monkeypatch):
    monkeypatch.setattr(app_settings, "max_batch_size", 100)

    assert build_policy(None, None, None).batch_size == 100
    assert build_policy("UPDATE", [" email ", ""], 500).model_dump() == {
        "mode": "update",
        "identity_fields": ["email"],
        "batch_size": 100,
    }
    with pytest.raises(ValueError):
        build_policy("merge")
    with pytest.raises(ValueError):
        build_policy("skip", batch_size=0)


def test_start_requires_database_and_table(orchestrator, write_csv, register_file):
    record = register_file(write_csv("x.csv", [["email"], ["a@example.com"]]))

    with pytest.raises(ValueError, match="Missing required parameter: database"):
        orchestrator.start(record.id, "", "customers", build_policy())
    with pytest.raises(ValueError, match="Missing required parameter: table"):
        orchestrator.start(record.id, "main", "", build_policy())


def test_run_for_unknown_task_returns_none(orchestrator):
    assert orchestrator.run("12345") is None
