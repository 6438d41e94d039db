"""
Housekeeping for the upload directory and the task map.
"""
import asyncio
import logging
import os
import time
from typing import List, Optional

from bulkload.core.config import settings
from bulkload.domain.uploads.registry import IngestionRegistry

logger = logging.getLogger(__name__)

TEMP_ARTIFACT_SUFFIX = ".part"


def _remove(path: str) -> bool:
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False
    except OSError as exc:
        logger.warning("Could not delete %s: %s", path, exc)
        return False


def reclaim_orphans(registry: IngestionRegistry, upload_dir: str) -> List[str]:
    """
    Delete stored uploads that no registry record points to.

    Temporary ``.part`` artifacts are left to :func:`sweep_temp_artifacts`
    since an upload may still be streaming into them.
    """
    if not os.path.isdir(upload_dir):
        return []

    referenced = registry.referenced_paths()
    registry_dir = os.path.abspath(registry.registry_dir)
    removed = []
    for entry in os.scandir(upload_dir):
        if not entry.is_file() or entry.name.endswith(TEMP_ARTIFACT_SUFFIX):
            continue
        path = os.path.abspath(entry.path)
        if os.path.dirname(path) == registry_dir or path in referenced:
            continue
        if _remove(path):
            removed.append(path)

    if removed:
        logger.info("Reclaimed %d orphaned upload(s) from %s", len(removed), upload_dir)
    return removed


def sweep_temp_artifacts(upload_dir: str, max_age_hours: float, now: Optional[float] = None) -> List[str]:
    """Delete ``*.part`` files older than ``max_age_hours``."""
    if not os.path.isdir(upload_dir):
        return []
    cutoff = (now if now is not None else time.time()) - max_age_hours * 3600
    removed = []
    for entry in os.scandir(upload_dir):
        if not entry.is_file() or not entry.name.endswith(TEMP_ARTIFACT_SUFFIX):
            continue
        if entry.stat().st_mtime < cutoff and _remove(entry.path):
            removed.append(entry.path)
    if removed:
        logger.info("Deleted %d stale temporary upload(s)", len(removed))
    return removed


def run_sweep(registry: IngestionRegistry) -> None:
    """One pass of the recurring maintenance job."""
    registry.expire_tasks(settings.task_retention_seconds)
    sweep_temp_artifacts(settings.upload_dir, settings.temp_artifact_max_age_hours)


async def sweep_forever(registry: IngestionRegistry, interval_seconds: Optional[int] = None) -> None:
    """Run :func:`run_sweep` every ``interval_seconds`` until cancelled."""
    interval = interval_seconds or settings.sweep_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(run_sweep, registry)
        except Exception:
            logger.exception("Maintenance sweep failed")
