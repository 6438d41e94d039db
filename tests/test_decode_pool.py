"""
Tests for routing decodes inline or to a worker process.
"""
import pytest

from bulkload.domain.ingest.decode_pool import DecodePool
from bulkload.domain.ingest.errors import DecodeError


def test_small_files_decode_inline_and_stream(tmp_path):
    path = tmp_path / "small.csv"
    path.write_text("a\n1\n2\n", encoding="utf-8")
    pool = DecodePool(threshold_bytes=1024)

    assert not pool.should_isolate(str(path))
    stream = pool.decode(str(path))

    assert stream.total_rows == 2
    assert pool._executor is None


def test_large_files_decode_in_a_worker_process(tmp_path):
    path = tmp_path / "large.csv"
    path.write_text("a,b\n" + "".join(f"{n},x\n" for n in range(200)), encoding="utf-8")
    pool = DecodePool(threshold_bytes=10, max_workers=1)
    try:
        assert pool.should_isolate(str(path))
        stream = pool.decode(str(path))
        rows = list(stream)
    finally:
        pool.shutdown()

    assert stream.columns == ["a", "b"]
    assert len(rows) == 200
    assert rows[-1] == {"a": "199", "b": "x"}


def test_worker_errors_come_back_as_decode_errors(tmp_path):
    path = tmp_path / "broken.xlsx"
    path.write_bytes(b"x" * 64)
    pool = DecodePool(threshold_bytes=10, max_workers=1)
    try:
        with pytest.raises(DecodeError) as exc_info:
            pool.decode(str(path))
    finally:
        pool.shutdown()

    assert exc_info.value.phase == DecodeError.PHASE_OPEN


def test_missing_file_is_not_isolated(tmp_path):
    assert not DecodePool(threshold_bytes=0).should_isolate(str(tmp_path / "nope.csv"))
