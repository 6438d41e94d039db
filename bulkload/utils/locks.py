import logging
import threading
from contextlib import contextmanager
from typing import Dict, Optional

logger = logging.getLogger(__name__)


def table_lock_key(table_name: str, database: Optional[str] = None, connection_id: Optional[str] = None) -> str:
    """Identify one physical table across connections and databases."""
    return f"{connection_id or 'default'}:{database or ''}.{table_name}"


class TableLockManager:
    """
    Per-table locks that serialize the lookup-then-write step of each chunk.

    Two tasks targeting the same table would otherwise both see a key as new
    and both try to insert it.
    """
    _locks: Dict[str, threading.Lock] = {}
    _global_lock = threading.Lock()

    @classmethod
    def get_lock(cls, key: str) -> threading.Lock:
        """Get or create the lock for a table key."""
        with cls._global_lock:
            if key not in cls._locks:
                cls._locks[key] = threading.Lock()
            return cls._locks[key]

    @classmethod
    @contextmanager
    def acquire(cls, key: str):
        """Context manager to acquire and release a table lock."""
        logger.debug("Waiting for table lock '%s'", key)
        lock = cls.get_lock(key)
        lock.acquire()
        logger.debug("Acquired table lock '%s'", key)
        try:
            yield
        finally:
            lock.release()
            logger.debug("Released table lock '%s'", key)
