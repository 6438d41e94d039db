"""
Pytest configuration and fixtures for the ingestion tests.

Target tables live in a throwaway SQLite database per test; the registry and
upload directory live under ``tmp_path``.
"""
import csv
import os
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine, text

from bulkload.core.config import settings
from bulkload.db.store import RelationalStore
from bulkload.domain.ingest.decode_pool import DecodePool
from bulkload.domain.ingest.orchestrator import IngestionOrchestrator
from bulkload.domain.uploads.registry import IngestionRegistry, UploadedFile


class FakeClock:
    """Settable clock for registry timestamps and task ids."""

    def __init__(self, now=None):
        self.now = now or datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def app_settings(tmp_path, monkeypatch):
    upload_dir = tmp_path / "uploads"
    upload_dir.mkdir()
    monkeypatch.setattr(settings, "upload_dir", str(upload_dir))
    monkeypatch.setattr(settings, "registry_dir", str(upload_dir / ".registry"))
    monkeypatch.setattr(settings, "default_batch_size", 5000)
    return settings


@pytest.fixture
def engine(tmp_path):
    db_engine = create_engine(f"sqlite:///{tmp_path / 'target.db'}")
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def store(engine):
    return RelationalStore(engine)


@pytest.fixture
def customers_table(engine):
    with engine.begin() as conn:
        conn.execute(text(
            """
            CREATE TABLE customers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                signup_date DATETIME
            )
            """
        ))
    return "customers"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(app_settings, clock):
    return IngestionRegistry(app_settings.registry_dir, clock=clock)


@pytest.fixture
def orchestrator(registry, store):
    return IngestionOrchestrator(
        registry,
        store_factory=lambda connection_id, database: store,
        decode_pool=DecodePool(threshold_bytes=1024 * 1024 * 1024),
    )


@pytest.fixture
def write_csv(tmp_path):
    """Write ``rows`` (first row = header) to a CSV file and return its path."""

    def _write(name, rows, delimiter=","):
        path = tmp_path / name
        with open(path, "w", newline="", encoding="utf-8") as handle:
            csv.writer(handle, delimiter=delimiter).writerows(rows)
        return str(path)

    return _write


@pytest.fixture
def register_file(registry, app_settings):
    """Move a file into the upload directory and register it as pending."""
    counter = {"n": 0}

    def _register(source_path, uploaded_by=None):
        counter["n"] += 1
        file_id = f"file{counter['n']}"
        extension = os.path.splitext(source_path)[1]
        storage_path = os.path.join(app_settings.upload_dir, f"{file_id}{extension}")
        with open(source_path, "rb") as src, open(storage_path, "wb") as dst:
            dst.write(src.read())
        return registry.add_file(
            UploadedFile(
                id=file_id,
                original_name=os.path.basename(source_path),
                storage_path=storage_path,
                size_bytes=os.path.getsize(storage_path),
                uploaded_by=uploaded_by,
                uploaded_at=registry._clock(),
            )
        )

    return _register
