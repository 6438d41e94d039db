"""
Shared dependencies, state, and utility functions for the API.

Holds the lazily created orchestrator plus the caller/access helpers the
routers depend on. Authentication happens upstream; the caller arrives in
``X-User-Id`` / ``X-User-Role`` headers.
"""
import threading
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException

from bulkload.core.config import settings
from bulkload.domain.ingest.orchestrator import IngestionOrchestrator
from bulkload.domain.uploads.registry import IngestionRegistry, get_registry

ADMIN_ROLE = "admin"

_orchestrator: Optional[IngestionOrchestrator] = None
_orchestrator_lock = threading.Lock()


@dataclass(frozen=True)
class Caller:
    user_id: Optional[str] = None
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return (self.role or "").lower() == ADMIN_ROLE


def get_caller(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Caller:
    return Caller(user_id=x_user_id or None, role=x_user_role or None)


def registry_dependency() -> IngestionRegistry:
    return get_registry()


def get_orchestrator(registry: IngestionRegistry = Depends(registry_dependency)) -> IngestionOrchestrator:
    """Get or create the orchestrator bound to the process-wide registry."""
    global _orchestrator
    with _orchestrator_lock:
        if _orchestrator is None or _orchestrator.registry is not registry:
            _orchestrator = IngestionOrchestrator(registry)
        return _orchestrator


def can_access_database(caller: Caller, database: str) -> bool:
    """System databases are reserved for admins; everything else is open."""
    if caller.is_admin:
        return True
    restricted = {name.lower() for name in settings.restricted_databases}
    return (database or "").lower() not in restricted


def ensure_database_access(caller: Caller, database: str) -> None:
    """Raise 403 when the caller may not write into ``database``."""
    if not can_access_database(caller, database):
        raise HTTPException(status_code=403, detail="Access denied.")


def ensure_file_access(caller: Caller, uploaded_by: Optional[str]) -> None:
    """Non-admin callers only see their own uploads."""
    if caller.is_admin or uploaded_by is None or caller.user_id is None:
        return
    if uploaded_by != caller.user_id:
        raise HTTPException(status_code=403, detail="Access denied.")
