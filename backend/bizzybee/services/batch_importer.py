"""
Batch importer: relay-race mailbox import into the staging table.

Each invocation fetches pages until its time budget runs out, checkpoints the
cursor after every page, then hands off to a fresh hop. SENT is imported first
(voice learning needs the owner's outbound mail), INBOX second; each folder is
capped at half of the job's total target. Counts are always re-derived from the
staging table, so a hop that crashed after its upsert loses nothing.
"""
import logging
import time
import uuid
from typing import Callable, Optional

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from ..aurinko_service import (
    AurinkoClient,
    MailboxApiError,
    MailboxAuthError,
    RateLimitError,
    TransientUpstreamError,
    calculate_backoff_s,
    message_to_staging_row,
)
from ..config import settings
from ..database import dialect_name
from ..import_job_db import (
    TERMINAL_STATUSES,
    create_import_job,
    get_active_import_job,
    get_import_job,
    recount_imported,
    save_checkpoint,
    set_job_completed,
    set_job_error,
    update_import_progress,
)
from ..models import EmailProviderConfig, ImportJob, StagingMessage
from ..relay import CLASSIFY_RELAY_TASK, IMPORT_RELAY_TASK, Deadline, default_dispatcher
from ..worker_lock import acquire_lock, release_lock, renew_lock

logger = logging.getLogger(__name__)

FUNCTION_NAME = "email-import"
FOLDERS = ("SENT", "INBOX")


class RetryLater(Exception):
    """The upstream wants us to wait longer than this hop's remaining budget allows."""

    def __init__(self, delay_s: float, reason: str = ""):
        super().__init__(reason or f"retry in {delay_s:.1f}s")
        self.delay_s = delay_s


def get_provider_config(db: Session, workspace_id: str) -> Optional[EmailProviderConfig]:
    return (
        db.query(EmailProviderConfig)
        .filter(EmailProviderConfig.workspace_id == workspace_id)
        .order_by(EmailProviderConfig.id.desc())
        .first()
    )


def upsert_staging_rows(db: Session, rows: list[dict]) -> int:
    """Insert rows, ignoring (workspace_id, external_id) duplicates. Returns rows actually inserted."""
    if not rows:
        return 0
    insert_fn = pg_insert if dialect_name(db) == "postgresql" else sqlite_insert
    stmt = insert_fn(StagingMessage).values(rows).on_conflict_do_nothing(
        index_elements=["workspace_id", "external_id"]
    )
    result = db.execute(stmt)
    db.commit()
    return max(0, result.rowcount or 0)


def _folder_key(folder: str) -> str:
    return folder.lower()


def _folder_done(job: ImportJob, folder: str, counts: dict) -> bool:
    """A folder is done at its share of the target, or once its pages ran out (after at least one fetch)."""
    share = max(1, (job.total_target or 0) // 2)
    exhausted = bool(getattr(job, f"{_folder_key(folder)}_exhausted"))
    return exhausted or counts[folder] >= share


def pick_folder(job: ImportJob, counts: dict) -> Optional[str]:
    """Stay on the current folder until it is done, then the other one; None when both are done."""
    current = job.current_folder if job.current_folder in FOLDERS else "SENT"
    other = "INBOX" if current == "SENT" else "SENT"
    for folder in (current, other):
        if not _folder_done(job, folder, counts):
            return folder
    return None


def is_import_complete(job: ImportJob, counts: dict) -> bool:
    if counts["SENT"] + counts["INBOX"] >= (job.total_target or 0):
        return True
    return _folder_done(job, "SENT", counts) and _folder_done(job, "INBOX", counts)


def _fetch_page(
    client: AurinkoClient,
    folder: str,
    limit: int,
    page_token: Optional[str],
    deadline: Deadline,
    sleep: Callable[[float], None],
):
    """List one page, backing off in-process only while the remaining budget can absorb the wait."""
    max_retries = max(1, settings.import_max_retries)
    last_error: Exception = None
    delay = 0.0
    for attempt in range(max_retries):
        try:
            return client.list_messages(folder, limit, page_token)
        except RateLimitError as e:
            last_error, delay = e, e.retry_after_s
        except TransientUpstreamError as e:
            last_error, delay = e, calculate_backoff_s(attempt)
        if attempt == max_retries - 1:
            break
        if not deadline.has_time(delay + settings.relay_safety_margin_s):
            raise RetryLater(delay, str(last_error))
        logger.warning(f"{folder} page fetch failed ({last_error}); retry {attempt + 1}/{max_retries} in {delay:.1f}s")
        sleep(delay)
    raise RetryLater(max(delay, calculate_backoff_s(max_retries)), f"retries exhausted: {last_error}")


def _fail(db: Session, job: ImportJob, message: str) -> dict:
    set_job_error(db, job.id, message)
    update_import_progress(db, job.workspace_id, current_phase="error", last_error=message)
    return {"status": "error", "job_id": job.id, "error": message}


def run_import_batch(
    db: Session,
    workspace_id: str,
    job_id: Optional[str] = None,
    import_mode: Optional[str] = None,
    last_progress: Optional[int] = None,
    stalled_relays: int = 0,
    client: Optional[AurinkoClient] = None,
    dispatcher=None,
    deadline: Optional[Deadline] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict:
    """
    Run one importer hop. Returns a result dict with `status` one of
    skipped | cancelled | continuing | completed | error.
    The next hop (importer or classifier) is dispatched after the lock is released.
    """
    dispatcher = dispatcher or default_dispatcher
    deadline = deadline or Deadline(settings.relay_time_budget_s)

    job = None
    if job_id:
        job = get_import_job(db, job_id)
        if job is None:
            logger.warning(f"Import job {job_id} not found; dropping relay")
            return {"status": "error", "job_id": job_id, "error": "Import job not found"}
        if job.status in TERMINAL_STATUSES:
            logger.info(f"Import job {job_id} is {job.status}; nothing to do")
            return {"status": job.status, "job_id": job_id}

    holder = uuid.uuid4().hex
    if not acquire_lock(db, workspace_id, FUNCTION_NAME, holder):
        return {"status": "skipped", "reason": "already_running", "job_id": job_id}

    owns_client = False
    next_hop = None
    try:
        config = get_provider_config(db, workspace_id)
        if config is None or not config.access_token:
            message = "No connected email account for this workspace"
            if job is not None:
                return _fail(db, job, message)
            update_import_progress(db, workspace_id, current_phase="error", last_error=message)
            return {"status": "error", "job_id": None, "error": message}

        if job is None:
            job = get_active_import_job(db, workspace_id) or create_import_job(
                db, workspace_id, config.id, import_mode or config.import_mode or "last_1000"
            )
        if client is None:
            client = AurinkoClient(config.access_token)
            owns_client = True

        result, next_hop = _run_hop(
            db, job, config, client, holder, last_progress, stalled_relays, deadline, sleep
        )
    finally:
        release_lock(db, workspace_id, FUNCTION_NAME, holder)
        if owns_client:
            client.close()

    if next_hop is not None:
        task_name, kwargs, countdown = next_hop
        dispatcher.dispatch(task_name, kwargs, countdown)
    return result


def _run_hop(
    db: Session,
    job: ImportJob,
    config: EmailProviderConfig,
    client: AurinkoClient,
    holder: str,
    last_progress: Optional[int],
    stalled_relays: int,
    deadline: Deadline,
    sleep: Callable[[float], None],
):
    workspace_id = job.workspace_id
    share = max(1, (job.total_target or 0) // 2)
    sent, inbox = recount_imported(db, workspace_id)
    counts = {"SENT": sent, "INBOX": inbox}
    retry_later: Optional[RetryLater] = None
    pages = 0

    while deadline.has_time(settings.relay_safety_margin_s):
        folder = pick_folder(job, counts)
        if folder is None:
            break
        key = _folder_key(folder)
        page_token = getattr(job, f"{key}_page_token")
        limit = min(settings.import_batch_size, share - counts[folder])

        try:
            page = _fetch_page(client, folder, limit, page_token, deadline, sleep)
        except MailboxAuthError as e:
            return _fail(db, job, str(e)), None
        except MailboxApiError as e:
            return _fail(db, job, f"Mailbox API error ({e.status_code}): {e}"), None
        except RetryLater as e:
            retry_later = e
            break

        rows = [
            row for row in (
                message_to_staging_row(m, workspace_id, config.id, job.id, folder) for m in page.records
            ) if row
        ]
        inserted = upsert_staging_rows(db, rows)
        sent, inbox = recount_imported(db, workspace_id)
        counts = {"SENT": sent, "INBOX": inbox}

        next_token = page.next_page_token
        if next_token and next_token == page_token:
            logger.warning(f"Pagination stalled on {folder} (repeated page token); treating folder as exhausted")
        exhausted = not next_token or next_token == page_token
        saved = save_checkpoint(
            db,
            job.id,
            current_folder=folder,
            status=f"scanning_{key}",
            sent_imported=sent,
            inbox_imported=inbox,
            **{f"{key}_page_token": None if exhausted else next_token, f"{key}_exhausted": exhausted},
        )
        if not saved:
            db.refresh(job)
            logger.info(f"Import job {job.id} became {job.status} mid-hop; stopping")
            return {"status": job.status, "job_id": job.id}, None
        renew_lock(db, workspace_id, FUNCTION_NAME, holder)
        update_import_progress(db, workspace_id, current_phase="importing", emails_received=inbox, emails_sent=sent)
        pages += 1
        logger.info(
            f"Job {job.id}: {folder} page {pages} -> {len(rows)} fetched, {inserted} new "
            f"(sent={sent}, inbox={inbox}, target={job.total_target})"
        )

    summary = {
        "job_id": job.id,
        "sent_imported": counts["SENT"],
        "inbox_imported": counts["INBOX"],
        "pages": pages,
    }

    if is_import_complete(job, counts):
        set_job_completed(db, job.id)
        update_import_progress(
            db, workspace_id,
            current_phase="classifying",
            emails_received=counts["INBOX"],
            emails_sent=counts["SENT"],
            last_error=None,
        )
        logger.info(f"Import job {job.id} complete; handing off to classifier")
        return {"status": "completed", **summary}, (CLASSIFY_RELAY_TASK, {"workspace_id": workspace_id}, 0)

    total = counts["SENT"] + counts["INBOX"]
    if last_progress is not None and total <= last_progress:
        stalled_relays += 1
    else:
        stalled_relays = 0
    if stalled_relays >= settings.import_max_stalled_relays:
        message = f"Import stalled: no progress after {stalled_relays} relays"
        if retry_later is not None:
            message = f"{message} ({retry_later})"
        return _fail(db, job, message), None

    countdown = 0.0
    if retry_later is not None:
        countdown = retry_later.delay_s
        save_checkpoint(db, job.id, retry_count=(job.retry_count or 0) + 1)
        logger.warning(f"Job {job.id}: upstream busy ({retry_later}); next hop in {countdown:.0f}s")

    kwargs = {
        "workspace_id": workspace_id,
        "job_id": job.id,
        "last_progress": total,
        "stalled_relays": stalled_relays,
    }
    return {
        "status": "continuing",
        "stalled_relays": stalled_relays,
        "sleep_ms": int(countdown * 1000),
        **summary,
    }, (IMPORT_RELAY_TASK, kwargs, countdown)
