"""
Routes file decoding either inline or to an isolated worker process.

Spreadsheet parsing is CPU-bound and holds the GIL for the whole sheet, so
large files are decoded in a ``ProcessPoolExecutor`` and the rows come back by
value. Small files decode inline and stream.
"""
import logging
import os
import threading
from concurrent.futures import ProcessPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from typing import Optional

from bulkload.core.config import settings
from bulkload.domain.ingest import decoder
from bulkload.domain.ingest.decoder import RowStream
from bulkload.domain.ingest.errors import DecodeError

logger = logging.getLogger(__name__)


class DecodePool:
    def __init__(self, threshold_bytes: int, max_workers: int = 2):
        self.threshold_bytes = threshold_bytes
        self.max_workers = max_workers
        self._executor: Optional[ProcessPoolExecutor] = None
        self._lock = threading.Lock()

    def _get_executor(self) -> ProcessPoolExecutor:
        with self._lock:
            if self._executor is None:
                self._executor = ProcessPoolExecutor(max_workers=self.max_workers)
            return self._executor

    def should_isolate(self, source_path: str) -> bool:
        try:
            return os.path.getsize(source_path) > self.threshold_bytes
        except OSError:
            # Missing file: let the inline decoder raise the proper DecodeError
            return False

    def decode(self, source_path: str, format_hint: Optional[str] = None) -> RowStream:
        """
        Decode ``source_path`` and return its rows.

        Raises:
            DecodeError: On open/parse failures, or if the worker process dies
        """
        if not self.should_isolate(source_path):
            return decoder.decode(source_path, format_hint)

        logger.info("Decoding %s in an isolated worker process", os.path.basename(source_path))
        future = self._get_executor().submit(decoder.decode_to_rows, source_path, format_hint)
        try:
            columns, rows = future.result()
        except BrokenProcessPool as exc:
            with self._lock:
                self._executor = None
            raise DecodeError(source_path, DecodeError.PHASE_PARSE, f"Decode worker crashed: {exc}") from exc
        return RowStream.from_rows(columns, rows)

    def shutdown(self) -> None:
        with self._lock:
            if self._executor is not None:
                self._executor.shutdown(wait=False, cancel_futures=True)
                self._executor = None


_pool: Optional[DecodePool] = None
_pool_lock = threading.Lock()


def get_decode_pool() -> DecodePool:
    """Get or create the process-wide decode pool."""
    global _pool
    with _pool_lock:
        if _pool is None:
            _pool = DecodePool(
                threshold_bytes=settings.isolated_decode_threshold_mb * 1024 * 1024,
                max_workers=settings.decode_max_workers,
            )
        return _pool


def shutdown_decode_pool() -> None:
    global _pool
    with _pool_lock:
        if _pool is not None:
            _pool.shutdown()
            _pool = None
