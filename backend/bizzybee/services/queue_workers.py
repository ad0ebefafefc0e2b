"""
Work-queue consumers: lease a batch, dispatch on job_type, then ack, delay,
retry or dead-letter.

- success -> delete + "processed" audit row
- RateLimitError -> message hidden for max(retry_after, backoff) seconds
- non-retryable (auth, bad request, missing rows) -> dead-letter now
- anything else -> left to reappear after its visibility timeout;
  dead-lettered once read_ct reaches max attempts
- payload that fails validation -> archived + "discarded" audit row
"""
import logging
import random
from typing import Callable, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from .. import work_queue
from ..aurinko_service import AurinkoClient, MailboxApiError, MailboxAuthError, RateLimitError, message_to_staging_row
from ..config import settings
from ..import_job_db import update_import_progress
from ..models import Conversation, EmailProviderConfig, Message
from ..relay import CLASSIFY_RELAY_TASK, Deadline, default_dispatcher
from ..schemas import ClassifyJob, DraftJob, ImportFetchJob, pipeline_job_adapter
from ..sender_rules import load_sender_rules
from ..triage_pipeline import triage_email
from .batch_importer import upsert_staging_rows
from .drafting import generate_draft

logger = logging.getLogger(__name__)


class DiscardJob(Exception):
    """The job refers to something that no longer exists; drop it without retrying."""
    pass


NON_RETRYABLE = (MailboxAuthError, MailboxApiError)


def calculate_requeue_delay_s(
    attempt: int,
    retry_after_s: Optional[float] = None,
    base_s: float = 5.0,
    max_s: float = 300.0,
) -> int:
    """base * 2^(attempt-1) + 0..3s jitter, capped; never shorter than the provider's Retry-After."""
    backoff = min(max_s, base_s * (2 ** max(0, attempt - 1)) + random.randint(0, 3))
    return int(max(retry_after_s or 0, backoff))


def _new_stats() -> dict:
    return {"processed": 0, "requeued": 0, "deadlettered": 0, "discarded": 0, "failed": 0}


def _process_record(
    db: Session,
    queue: str,
    record: work_queue.QueueRecord,
    handlers: dict,
    max_attempts: int,
    stats: dict,
) -> None:
    try:
        job = pipeline_job_adapter.validate_python(record.payload)
    except ValidationError as e:
        work_queue.archive(db, queue, record.msg_id)
        work_queue.audit_job(db, queue, "discarded", record.msg_id, record.payload, record.read_ct, str(e))
        logger.warning(f"Discarded invalid {queue} payload msg {record.msg_id}")
        stats["discarded"] += 1
        return

    handler = handlers.get(job.job_type)
    if handler is None:
        work_queue.archive(db, queue, record.msg_id)
        work_queue.audit_job(db, queue, "discarded", record.msg_id, record.payload, record.read_ct,
                             f"No handler for {job.job_type} on {queue}")
        stats["discarded"] += 1
        return

    if record.read_ct > max_attempts:
        work_queue.deadletter(db, queue, record, "max attempts exceeded before processing")
        stats["deadlettered"] += 1
        return

    try:
        handler(db, job)
    except DiscardJob as e:
        db.rollback()
        work_queue.archive(db, queue, record.msg_id)
        work_queue.audit_job(db, queue, "discarded", record.msg_id, record.payload, record.read_ct, str(e))
        stats["discarded"] += 1
    except RateLimitError as e:
        db.rollback()
        delay = calculate_requeue_delay_s(record.read_ct, e.retry_after_s)
        if record.read_ct >= max_attempts:
            work_queue.deadletter(db, queue, record, str(e))
            stats["deadlettered"] += 1
            return
        work_queue.set_visibility(db, queue, record.msg_id, delay)
        work_queue.audit_job(db, queue, "requeued", record.msg_id, record.payload, record.read_ct, str(e))
        logger.warning(f"{queue} msg {record.msg_id} rate limited; retry in {delay}s")
        stats["requeued"] += 1
    except NON_RETRYABLE as e:
        db.rollback()
        work_queue.deadletter(db, queue, record, str(e))
        stats["deadlettered"] += 1
    except Exception as e:
        db.rollback()
        if record.read_ct >= max_attempts:
            work_queue.deadletter(db, queue, record, str(e))
            stats["deadlettered"] += 1
            return
        work_queue.audit_job(db, queue, "failed", record.msg_id, record.payload, record.read_ct, str(e))
        logger.exception(f"{queue} msg {record.msg_id} failed (attempt {record.read_ct}/{max_attempts})")
        stats["failed"] += 1
    else:
        work_queue.delete(db, queue, record.msg_id)
        work_queue.audit_job(db, queue, "processed", record.msg_id, record.payload, record.read_ct)
        stats["processed"] += 1


def drain_queue(
    db: Session,
    queue: str,
    handlers: dict,
    vt_s: int,
    batch: Optional[int] = None,
    max_attempts: Optional[int] = None,
    deadline: Optional[Deadline] = None,
) -> dict:
    """Consume leased batches until the queue is empty or the budget runs out."""
    batch = batch or settings.queue_read_batch
    max_attempts = max_attempts or settings.queue_max_attempts
    deadline = deadline or Deadline(settings.relay_time_budget_s)
    stats = _new_stats()
    seen = set()
    while deadline.has_time(settings.relay_safety_margin_s):
        records = work_queue.read(db, queue, vt_s, batch, exclude_ids=seen)
        if not records:
            break
        for record in records:
            seen.add(record.msg_id)
            _process_record(db, queue, record, handlers, max_attempts, stats)
    if any(stats.values()):
        logger.info(f"Drained {queue}: {stats}")
    return stats


# =============================================================================
# Handlers
# =============================================================================

def _default_client_factory(config: EmailProviderConfig) -> AurinkoClient:
    return AurinkoClient(config.access_token)


def make_import_fetch_handler(client_factory: Optional[Callable] = None, dispatcher=None) -> Callable:
    """IMPORT_FETCH: one page per job; chains the next page, then SENT -> INBOX, then the classifier."""
    client_factory = client_factory or _default_client_factory
    dispatcher = dispatcher or default_dispatcher

    def handle_import_fetch(db: Session, job: ImportFetchJob) -> None:
        config = db.get(EmailProviderConfig, job.config_id)
        if config is None or config.workspace_id != job.workspace_id:
            raise DiscardJob(f"Provider config {job.config_id} not found for workspace {job.workspace_id}")
        remaining = job.cap - job.fetched_so_far
        if remaining > 0:
            client = client_factory(config)
            try:
                page = client.list_messages(job.folder, min(settings.import_batch_size, remaining), job.page_token)
            finally:
                client.close()
            rows = [
                row for row in (
                    message_to_staging_row(m, job.workspace_id, config.id, None, job.folder) for m in page.records
                ) if row
            ]
            upsert_staging_rows(db, rows)
            fetched = job.fetched_so_far + len(page.records)
            next_token = page.next_page_token
            if next_token and next_token != job.page_token and fetched < job.cap:
                work_queue.send(db, work_queue.IMPORT_QUEUE, job.model_copy(
                    update={"page_token": next_token, "fetched_so_far": fetched}
                ).model_dump())
                return

        if job.folder == "SENT":
            work_queue.send(db, work_queue.IMPORT_QUEUE, ImportFetchJob(
                workspace_id=job.workspace_id, config_id=job.config_id, folder="INBOX", cap=job.cap
            ).model_dump())
            return
        update_import_progress(db, job.workspace_id, current_phase="classifying")
        dispatcher.dispatch(CLASSIFY_RELAY_TASK, {"workspace_id": job.workspace_id}, 0)

    return handle_import_fetch


def _sender_rule_dicts(db: Session, workspace_id: str) -> list[dict]:
    return [
        {
            "pattern": r.sender_pattern,
            "category": r.default_classification,
            "requires_reply": bool(r.default_requires_reply),
        }
        for r in load_sender_rules(db, workspace_id)
    ]


def handle_classify(db: Session, job: ClassifyJob) -> None:
    """CLASSIFY: triage the conversation's latest inbound email; queue a draft when a reply is needed."""
    conversation = db.get(Conversation, job.conversation_id)
    if conversation is None:
        raise DiscardJob(f"Conversation {job.conversation_id} not found")
    message = (
        db.query(Message)
        .filter(Message.conversation_id == conversation.id, Message.direction == "inbound")
        .order_by(Message.id.desc())
        .first()
    )
    if message is None:
        raise DiscardJob(f"Conversation {conversation.id} has no inbound message")

    result = triage_email(
        from_email=message.from_email or "",
        subject=conversation.title or "",
        body=message.body or "",
        direction="inbound",
        sender_rules=_sender_rule_dicts(db, conversation.workspace_id),
    )
    conversation.category = result.get("category")
    conversation.requires_reply = bool(result.get("requires_reply"))
    conversation.confidence = result.get("confidence")
    conversation.needs_review = bool(result.get("needs_review"))
    conversation.triage_source = result.get("triage_source")
    db.commit()

    if conversation.requires_reply:
        work_queue.send(db, work_queue.DRAFT_QUEUE, DraftJob(
            workspace_id=conversation.workspace_id, conversation_id=conversation.id
        ).model_dump())


def make_draft_handler(llm: Optional[Callable[..., str]] = None) -> Callable:
    def handle_draft(db: Session, job: DraftJob) -> None:
        conversation = db.get(Conversation, job.conversation_id)
        if conversation is None:
            raise DiscardJob(f"Conversation {job.conversation_id} not found")
        generate_draft(db, conversation.id, llm=llm)

    return handle_draft


def drain_import_jobs(db: Session, client_factory: Optional[Callable] = None, dispatcher=None, **kwargs) -> dict:
    handlers = {"IMPORT_FETCH": make_import_fetch_handler(client_factory, dispatcher)}
    return drain_queue(db, work_queue.IMPORT_QUEUE, handlers, settings.queue_import_vt_s, **kwargs)


def drain_classify_jobs(db: Session, **kwargs) -> dict:
    return drain_queue(db, work_queue.CLASSIFY_QUEUE, {"CLASSIFY": handle_classify}, settings.queue_classify_vt_s, **kwargs)


def drain_draft_jobs(db: Session, llm: Optional[Callable[..., str]] = None, **kwargs) -> dict:
    handlers = {"DRAFT": make_draft_handler(llm)}
    return drain_queue(db, work_queue.DRAFT_QUEUE, handlers, settings.queue_draft_vt_s, **kwargs)
