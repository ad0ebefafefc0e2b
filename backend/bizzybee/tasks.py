"""Celery tasks: relay hops, queue consumers and the watchdog. DB session per task; state in DB."""
import logging
from typing import Optional

from celery import shared_task

from .database import SessionLocal
from .import_job_db import set_job_error, update_import_progress
from .services.batch_importer import run_import_batch
from .services.bulk_classifier import run_classify_batch
from .services.faq_consolidator import run_consolidation_step
from .services.queue_workers import drain_classify_jobs, drain_draft_jobs, drain_import_jobs
from .services.voice_learning import learn_voice_profile
from .services.watchdog import run_watchdog

logger = logging.getLogger(__name__)


@shared_task(bind=True, name="bizzybee.tasks.import_relay")
def import_relay(
    self,
    workspace_id: str,
    job_id: Optional[str] = None,
    import_mode: Optional[str] = None,
    last_progress: Optional[int] = None,
    stalled_relays: int = 0,
):
    """
    One importer hop. Fetches pages until the time budget runs out, checkpoints,
    then dispatches the next hop (or the classifier once the import is complete).
    """
    db = SessionLocal()
    try:
        return run_import_batch(
            db,
            workspace_id,
            job_id=job_id,
            import_mode=import_mode,
            last_progress=last_progress,
            stalled_relays=stalled_relays,
        )
    except Exception as e:
        db.rollback()
        try:
            if job_id:
                set_job_error(db, job_id, str(e)[:500])
            update_import_progress(db, workspace_id, current_phase="error", last_error=str(e)[:500])
        except Exception:
            logger.exception(f"Could not record import failure for workspace {workspace_id}")
        raise
    finally:
        db.close()


@shared_task(bind=True, name="bizzybee.tasks.classify_relay")
def classify_relay(self, workspace_id: str, relay_depth: int = 0):
    db = SessionLocal()
    try:
        return run_classify_batch(db, workspace_id, relay_depth=relay_depth)
    except Exception as e:
        db.rollback()
        try:
            update_import_progress(db, workspace_id, current_phase="error", last_error=str(e)[:500])
        except Exception:
            logger.exception(f"Could not record classifier failure for workspace {workspace_id}")
        raise
    finally:
        db.close()


@shared_task(bind=True, name="bizzybee.tasks.consolidate_relay")
def consolidate_relay(
    self,
    workspace_id: str,
    run_id: Optional[str] = None,
    phase: str = "filter",
    chunk_index: int = 0,
    relay_depth: int = 0,
):
    """Error state is recorded on the workflow progress row by the consolidator itself."""
    db = SessionLocal()
    try:
        return run_consolidation_step(
            db, workspace_id, run_id=run_id, phase=phase, chunk_index=chunk_index, relay_depth=relay_depth
        )
    finally:
        db.close()


@shared_task(bind=True, name="bizzybee.tasks.learn_voice")
def learn_voice(self, workspace_id: str):
    db = SessionLocal()
    try:
        return learn_voice_profile(db, workspace_id)
    except Exception as e:
        db.rollback()
        try:
            update_import_progress(db, workspace_id, current_phase="error", last_error=str(e)[:500])
        except Exception:
            logger.exception(f"Could not record voice learning failure for workspace {workspace_id}")
        raise
    finally:
        db.close()


@shared_task(bind=True, name="bizzybee.tasks.drain_import_queue")
def drain_import_queue(self):
    db = SessionLocal()
    try:
        return drain_import_jobs(db)
    finally:
        db.close()


@shared_task(bind=True, name="bizzybee.tasks.drain_classify_queue")
def drain_classify_queue(self):
    db = SessionLocal()
    try:
        return drain_classify_jobs(db)
    finally:
        db.close()


@shared_task(bind=True, name="bizzybee.tasks.drain_draft_queue")
def drain_draft_queue(self):
    db = SessionLocal()
    try:
        return drain_draft_jobs(db)
    finally:
        db.close()


@shared_task(bind=True, name="bizzybee.tasks.pipeline_watchdog")
def pipeline_watchdog(self):
    db = SessionLocal()
    try:
        return run_watchdog(db)
    finally:
        db.close()
