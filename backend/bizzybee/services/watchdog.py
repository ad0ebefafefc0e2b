"""
Pipeline janitor: clears expired leases and restarts relay chains that died
between hops (worker crash, lost broker message). Safe to run concurrently
with live hops because every hop takes the workspace lock first.
"""
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..import_job_db import TERMINAL_STATUSES
from ..models import ImportJob, ImportProgress, WorkerLock, utcnow
from ..relay import CLASSIFY_RELAY_TASK, IMPORT_RELAY_TASK, default_dispatcher
from ..worker_lock import clear_expired_locks
from .bulk_classifier import FUNCTION_NAME as CLASSIFY_FUNCTION

logger = logging.getLogger(__name__)


def _has_live_lock(db: Session, workspace_id: str, function_name: str) -> bool:
    return (
        db.query(WorkerLock)
        .filter(WorkerLock.workspace_id == workspace_id, WorkerLock.function_name == function_name)
        .first()
        is not None
    )


def run_watchdog(db: Session, dispatcher=None, stale_after_s: Optional[int] = None) -> dict:
    dispatcher = dispatcher or default_dispatcher
    stale_after_s = stale_after_s if stale_after_s is not None else settings.import_stale_after_s
    cutoff = utcnow() - timedelta(seconds=stale_after_s)

    cleared = clear_expired_locks(db)
    if cleared:
        logger.warning(f"Watchdog cleared {cleared} expired lock(s)")

    stale_jobs = (
        db.query(ImportJob)
        .filter(ImportJob.status.notin_(TERMINAL_STATUSES))
        .all()
    )
    restarted_imports = []
    for job in stale_jobs:
        last_seen = job.last_batch_at or job.started_at or job.created_at
        if last_seen is not None and last_seen >= cutoff:
            continue
        dispatcher.dispatch(IMPORT_RELAY_TASK, {"workspace_id": job.workspace_id, "job_id": job.id}, 0)
        restarted_imports.append(job.id)
        logger.warning(f"Watchdog restarted stale import job {job.id} (last activity {last_seen})")

    stale_classify = (
        db.query(ImportProgress)
        .filter(ImportProgress.current_phase == "classifying", ImportProgress.updated_at < cutoff)
        .all()
    )
    restarted_classify = []
    for row in stale_classify:
        if _has_live_lock(db, row.workspace_id, CLASSIFY_FUNCTION):
            continue
        dispatcher.dispatch(CLASSIFY_RELAY_TASK, {"workspace_id": row.workspace_id}, 0)
        restarted_classify.append(row.workspace_id)
        logger.warning(f"Watchdog restarted classifier for workspace {row.workspace_id}")

    return {
        "cleared_locks": cleared,
        "restarted_imports": restarted_imports,
        "restarted_classify": restarted_classify,
    }
