"""Import job checkpoints (ImportJob) and per-workspace progress (ImportProgress) in DB."""
import logging
import uuid
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import ImportJob, ImportProgress, StagingMessage, utcnow

logger = logging.getLogger(__name__)

TOTAL_TARGETS = {
    "last_100": 100,
    "last_1000": 1000,
}
DEFAULT_TOTAL_TARGET = 30000

TERMINAL_STATUSES = ("completed", "error", "cancelled")


def total_target_for_mode(import_mode: Optional[str]) -> int:
    return TOTAL_TARGETS.get(import_mode or "", DEFAULT_TOTAL_TARGET)


def get_import_job(db: Session, job_id: str) -> Optional[ImportJob]:
    return db.get(ImportJob, job_id)


def get_active_import_job(db: Session, workspace_id: str) -> Optional[ImportJob]:
    """Most recent non-terminal job for the workspace, if any."""
    return (
        db.query(ImportJob)
        .filter(ImportJob.workspace_id == workspace_id, ImportJob.status.notin_(TERMINAL_STATUSES))
        .order_by(ImportJob.created_at.desc())
        .first()
    )


def create_import_job(
    db: Session,
    workspace_id: str,
    config_id: Optional[int],
    import_mode: str = "full",
) -> ImportJob:
    now = utcnow()
    job = ImportJob(
        id=str(uuid.uuid4()),
        workspace_id=workspace_id,
        config_id=config_id,
        status="queued",
        import_mode=import_mode,
        current_folder="SENT",
        sent_imported=0,
        inbox_imported=0,
        sent_exhausted=False,
        inbox_exhausted=False,
        total_target=total_target_for_mode(import_mode),
        retry_count=0,
        started_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(job)
    db.commit()
    logger.info(f"Created import job {job.id} for workspace {workspace_id} (mode={import_mode}, target={job.total_target})")
    return job


def recount_imported(db: Session, workspace_id: str) -> tuple[int, int]:
    """Authoritative (sent, inbox) counts from the staging table, never from in-memory tallies."""
    rows = db.execute(
        select(StagingMessage.direction, func.count())
        .where(StagingMessage.workspace_id == workspace_id)
        .group_by(StagingMessage.direction)
    ).all()
    counts = {direction: int(n) for direction, n in rows}
    return counts.get("outbound", 0), counts.get("inbound", 0)


def save_checkpoint(db: Session, job_id: str, **fields) -> bool:
    """
    Persist cursor/count fields for a running job. Returns False when the job
    reached a terminal state meanwhile (e.g. cancelled from the API).
    """
    now = utcnow()
    fields.setdefault("last_batch_at", now)
    fields["updated_at"] = now
    result = db.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.status.notin_(TERMINAL_STATUSES))
        .values(**fields)
    )
    db.commit()
    return result.rowcount == 1


def set_job_error(db: Session, job_id: str, message: str) -> bool:
    now = utcnow()
    result = db.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.status.notin_(TERMINAL_STATUSES))
        .values(status="error", error_message=message, updated_at=now)
    )
    db.commit()
    if result.rowcount == 1:
        logger.error(f"Import job {job_id} failed: {message}")
    return result.rowcount == 1


def set_job_completed(db: Session, job_id: str) -> bool:
    now = utcnow()
    result = db.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.status.notin_(TERMINAL_STATUSES))
        .values(status="completed", completed_at=now, updated_at=now, error_message=None)
    )
    db.commit()
    return result.rowcount == 1


def cancel_import_job(db: Session, job_id: str) -> bool:
    """Cancellation is observed by the next relay hop before it does any work."""
    result = db.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.status.notin_(TERMINAL_STATUSES))
        .values(status="cancelled", updated_at=utcnow())
    )
    db.commit()
    return result.rowcount == 1


def job_state(job: Optional[ImportJob]) -> dict:
    """Dict shape used by GET /pipeline/import/{id} and the SSE stream."""
    if job is None:
        return {"status": "not_found"}
    return {
        "job_id": job.id,
        "workspace_id": job.workspace_id,
        "status": job.status,
        "import_mode": job.import_mode,
        "current_folder": job.current_folder,
        "sent_imported": job.sent_imported or 0,
        "inbox_imported": job.inbox_imported or 0,
        "total_target": job.total_target,
        "retry_count": job.retry_count or 0,
        "error_message": job.error_message,
        "last_batch_at": job.last_batch_at.isoformat() if job.last_batch_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }


def get_import_progress(db: Session, workspace_id: str) -> Optional[ImportProgress]:
    return db.query(ImportProgress).filter(ImportProgress.workspace_id == workspace_id).first()


def update_import_progress(db: Session, workspace_id: str, **fields) -> ImportProgress:
    """Upsert the workspace progress row; a concurrent insert is re-fetched and updated."""
    row = get_import_progress(db, workspace_id)
    if row is None:
        row = ImportProgress(workspace_id=workspace_id, **fields)
        db.add(row)
        try:
            db.commit()
            return row
        except IntegrityError:
            db.rollback()
            row = get_import_progress(db, workspace_id)
    for key, value in fields.items():
        setattr(row, key, value)
    row.updated_at = utcnow()
    db.commit()
    return row


def progress_state(row: Optional[ImportProgress]) -> dict:
    if row is None:
        return {"current_phase": "idle"}
    return {
        "workspace_id": row.workspace_id,
        "current_phase": row.current_phase,
        "emails_received": row.emails_received or 0,
        "emails_sent": row.emails_sent or 0,
        "emails_classified": row.emails_classified or 0,
        "emails_needing_review": row.emails_needing_review or 0,
        "last_error": row.last_error,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }
