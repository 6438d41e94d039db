import logging
import threading
from typing import Dict, Optional, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import URL, make_url

from bulkload.core.config import settings

logger = logging.getLogger(__name__)

_engines: Dict[Tuple[Optional[str], Optional[str]], Engine] = {}
_engines_lock = threading.Lock()


class UnknownConnectionError(LookupError):
    """Raised when a connection id has no configured URL."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        super().__init__(f"Unknown database connection '{connection_id}'")


def _masked(url: URL) -> str:
    return url.render_as_string(hide_password=True)


def _report_connection_failure(url: URL, exc: Exception) -> None:
    """Log high-signal diagnostics when a target database cannot be reached."""
    logger.warning("Could not connect to database %s: %s", _masked(url), exc)
    logger.warning(
        "  Dialect: %s (driver: %s) Host: %s Port: %s Database: %s",
        url.get_backend_name(),
        url.get_driver_name() or "default",
        url.host or "localhost",
        url.port or "(default)",
        url.database,
    )


def resolve_database_url(connection_id: Optional[str] = None, database: Optional[str] = None) -> URL:
    """
    Return the SQLAlchemy URL for a connection id and target database.

    ``connection_id=None`` means the default server from ``DATABASE_URL``.
    SQLite URLs point at a single file, so the database name is ignored there.
    """
    if connection_id is None or str(connection_id) == "":
        raw_url = settings.database_url
    else:
        raw_url = settings.connections.get(str(connection_id))
        if not raw_url:
            raise UnknownConnectionError(str(connection_id))

    url = make_url(raw_url)
    if database and url.get_backend_name() != "sqlite":
        url = url.set(database=database)
    return url


def get_engine(connection_id: Optional[str] = None, database: Optional[str] = None) -> Engine:
    """Get (or lazily create) the pooled engine for a connection/database pair."""
    key = (str(connection_id) if connection_id is not None else None, database)
    engine = _engines.get(key)
    if engine is not None:
        return engine

    with _engines_lock:
        engine = _engines.get(key)
        if engine is not None:
            return engine

        url = resolve_database_url(connection_id, database)
        engine = create_engine(url, pool_pre_ping=True)
        try:
            # Test connection eagerly so failures surface in the logs immediately.
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            _report_connection_failure(url, e)
        _engines[key] = engine
        return engine


def dispose_engines() -> None:
    with _engines_lock:
        for engine in _engines.values():
            engine.dispose()
        _engines.clear()
