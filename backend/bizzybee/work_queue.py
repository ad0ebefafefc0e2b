"""
Durable work queue on the database (pgmq-style visibility timeouts).

Delivery is at-least-once: a message leased by `read` reappears after its
visibility window unless it is deleted or archived. Consumers compare
`read_ct` with their max attempts and dead-letter exhausted jobs.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .database import dialect_name
from .models import PipelineJobAudit, QueueMessage, QueueMessageArchive, utcnow

logger = logging.getLogger(__name__)

IMPORT_QUEUE = "import_jobs"
CLASSIFY_QUEUE = "classify_jobs"
DRAFT_QUEUE = "draft_jobs"
DEADLETTER_QUEUE = "deadletter_jobs"


@dataclass
class QueueRecord:
    msg_id: int
    read_ct: int
    payload: dict


def send(db: Session, queue: str, payload: dict, delay_s: int = 0) -> int:
    """Enqueue a payload; it becomes visible after delay_s seconds."""
    now = utcnow()
    row = QueueMessage(
        queue_name=queue,
        payload=payload,
        read_ct=0,
        enqueued_at=now,
        visible_at=now + timedelta(seconds=max(0, int(delay_s))),
    )
    db.add(row)
    db.commit()
    return row.msg_id


def read(
    db: Session,
    queue: str,
    vt_s: int,
    n: int,
    exclude_ids: Optional[Iterable[int]] = None,
) -> list[QueueRecord]:
    """
    Lease up to n visible messages (oldest first) for vt_s seconds.

    `exclude_ids` skips messages the caller already handled in this pass, so
    they are not re-leased (and their read_ct not bumped) a second time.
    """
    now = utcnow()
    stmt = select(QueueMessage).where(QueueMessage.queue_name == queue, QueueMessage.visible_at <= now)
    if exclude_ids:
        stmt = stmt.where(QueueMessage.msg_id.notin_(list(exclude_ids)))
    stmt = stmt.order_by(QueueMessage.msg_id).limit(max(1, n))
    if dialect_name(db) == "postgresql":
        stmt = stmt.with_for_update(skip_locked=True)
    rows = db.execute(stmt).scalars().all()
    records = []
    for row in rows:
        row.read_ct = (row.read_ct or 0) + 1
        row.visible_at = now + timedelta(seconds=vt_s)
        records.append(QueueRecord(msg_id=row.msg_id, read_ct=row.read_ct, payload=dict(row.payload or {})))
    db.commit()
    return records


def delete(db: Session, queue: str, msg_id: int) -> bool:
    row = db.get(QueueMessage, msg_id)
    if row is None or row.queue_name != queue:
        return False
    db.delete(row)
    db.commit()
    return True


def archive(db: Session, queue: str, msg_id: int) -> bool:
    row = db.get(QueueMessage, msg_id)
    if row is None or row.queue_name != queue:
        return False
    db.add(QueueMessageArchive(
        msg_id=row.msg_id,
        queue_name=row.queue_name,
        payload=row.payload,
        read_ct=row.read_ct,
        enqueued_at=row.enqueued_at,
    ))
    db.delete(row)
    db.commit()
    return True


def set_visibility(db: Session, queue: str, msg_id: int, delay_s: float) -> bool:
    """Hide a leased message for delay_s more seconds without resetting its read count."""
    row = db.get(QueueMessage, msg_id)
    if row is None or row.queue_name != queue:
        return False
    row.visible_at = utcnow() + timedelta(seconds=max(0, int(delay_s)))
    db.commit()
    return True


def queue_depth(db: Session, queue: str) -> int:
    return int(db.scalar(select(func.count()).select_from(QueueMessage).where(QueueMessage.queue_name == queue)) or 0)


def audit_job(
    db: Session,
    queue: str,
    outcome: str,
    msg_id: Optional[int] = None,
    payload: Optional[dict] = None,
    attempts: int = 0,
    error: Optional[str] = None,
) -> None:
    payload = payload or {}
    db.add(PipelineJobAudit(
        queue_name=queue,
        msg_id=msg_id,
        job_type=payload.get("job_type"),
        workspace_id=payload.get("workspace_id"),
        outcome=outcome,
        attempts=attempts,
        error=error[:2000] if error else None,
    ))
    db.commit()


def deadletter(db: Session, queue: str, record: QueueRecord, error: str) -> int:
    """Copy the payload to the dead-letter queue, archive the original, audit."""
    payload = dict(record.payload)
    payload.update({
        "deadlettered_from": queue,
        "deadlettered_msg_id": record.msg_id,
        "deadlettered_attempts": record.read_ct,
        "deadlettered_error": error[:2000],
        "deadlettered_at": utcnow().isoformat(),
    })
    dl_id = send(db, DEADLETTER_QUEUE, payload)
    archive(db, queue, record.msg_id)
    audit_job(db, queue, "deadlettered", msg_id=record.msg_id, payload=record.payload,
              attempts=record.read_ct, error=error)
    logger.error(f"Dead-lettered {queue} msg {record.msg_id} after {record.read_ct} attempts: {error}")
    return dl_id
