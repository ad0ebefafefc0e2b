"""Lease-based lock in the DB: at most one running relay hop per (workspace, function)."""
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .models import WorkerLock, utcnow

logger = logging.getLogger(__name__)


def acquire_lock(
    db: Session,
    workspace_id: str,
    function_name: str,
    holder: str,
    ttl_s: Optional[int] = None,
) -> bool:
    """
    Insert-if-absent on (workspace_id, function_name). A conflicting row can be
    taken over only after its lease expired; the conditional UPDATE lets exactly
    one contender win the takeover.
    """
    ttl = ttl_s if ttl_s is not None else settings.import_lock_ttl_s
    now = utcnow()
    expires = now + timedelta(seconds=ttl)
    db.add(WorkerLock(
        workspace_id=workspace_id,
        function_name=function_name,
        locked_by=holder,
        locked_at=now,
        expires_at=expires,
    ))
    try:
        db.commit()
        return True
    except IntegrityError:
        db.rollback()

    result = db.execute(
        update(WorkerLock)
        .where(
            WorkerLock.workspace_id == workspace_id,
            WorkerLock.function_name == function_name,
            WorkerLock.expires_at < now,
        )
        .values(locked_by=holder, locked_at=now, expires_at=expires)
    )
    db.commit()
    if result.rowcount == 1:
        logger.warning(f"Took over expired {function_name} lock for workspace {workspace_id}")
        return True
    logger.info(f"{function_name} already running for workspace {workspace_id}; skipping")
    return False


def renew_lock(
    db: Session,
    workspace_id: str,
    function_name: str,
    holder: str,
    ttl_s: Optional[int] = None,
) -> bool:
    """Extend our own lease. False means the lease was lost (expired and taken over)."""
    ttl = ttl_s if ttl_s is not None else settings.import_lock_ttl_s
    result = db.execute(
        update(WorkerLock)
        .where(
            WorkerLock.workspace_id == workspace_id,
            WorkerLock.function_name == function_name,
            WorkerLock.locked_by == holder,
        )
        .values(expires_at=utcnow() + timedelta(seconds=ttl))
    )
    db.commit()
    return result.rowcount == 1


def release_lock(db: Session, workspace_id: str, function_name: str, holder: str) -> None:
    db.execute(
        delete(WorkerLock).where(
            WorkerLock.workspace_id == workspace_id,
            WorkerLock.function_name == function_name,
            WorkerLock.locked_by == holder,
        )
    )
    db.commit()


def clear_expired_locks(db: Session) -> int:
    result = db.execute(delete(WorkerLock).where(WorkerLock.expires_at < utcnow()))
    db.commit()
    return result.rowcount or 0
