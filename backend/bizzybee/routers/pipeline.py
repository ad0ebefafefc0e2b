"""Pipeline API: start/cancel/inspect imports, SSE progress, classifier and FAQ triggers."""
import asyncio
import json
import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse

from .. import work_queue
from ..auth import require_worker_token, require_worker_token_for_sse
from ..database import SessionLocal, get_db, get_sync_db
from ..import_job_db import (
    TERMINAL_STATUSES,
    cancel_import_job,
    create_import_job,
    get_active_import_job,
    get_import_job,
    job_state,
    update_import_progress,
)
from ..models import ImportJob, ImportProgress
from ..relay import CLASSIFY_RELAY_TASK, CONSOLIDATE_RELAY_TASK, IMPORT_RELAY_TASK, default_dispatcher
from ..schemas import (
    ImportFetchJob,
    ImportJobResponse,
    ImportProgressResponse,
    StartImportRequest,
    StartImportResponse,
    TriggerResponse,
    WorkspaceRequest,
)
from ..services.batch_importer import get_provider_config
from ..services.faq_consolidator import set_workflow_progress

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/pipeline",
    tags=["pipeline"],
    dependencies=[Depends(require_worker_token)],
)
# SSE authenticates via ?token= as well, so it lives on its own router.
events_router = APIRouter(prefix="/api/pipeline", tags=["pipeline"])


def get_dispatcher():
    return default_dispatcher


@router.post("/import", response_model=StartImportResponse)
def start_import(
    body: StartImportRequest,
    db: Session = Depends(get_sync_db),
    dispatcher=Depends(get_dispatcher),
):
    """Start (or resume) the relay import for a workspace. Poll GET /import/{job_id} or stream /events/{job_id}."""
    config = get_provider_config(db, body.workspace_id)
    if config is None or not config.access_token:
        raise HTTPException(status_code=400, detail="No connected email account for this workspace")

    job = get_active_import_job(db, body.workspace_id)
    if job is not None:
        message = "Import already in progress; resuming."
    else:
        job = create_import_job(db, body.workspace_id, config.id, body.import_mode)
        message = "Import started."
    update_import_progress(db, body.workspace_id, current_phase="importing", last_error=None)
    dispatcher.dispatch(IMPORT_RELAY_TASK, {"workspace_id": body.workspace_id, "job_id": job.id}, 0)
    return StartImportResponse(message=message, job_id=job.id, status=job.status, total_target=job.total_target)


@router.post("/import-queue", response_model=TriggerResponse)
def start_queued_import(body: StartImportRequest, db: Session = Depends(get_sync_db)):
    """Import through the work queue instead of relays: one IMPORT_FETCH job per page."""
    config = get_provider_config(db, body.workspace_id)
    if config is None or not config.access_token:
        raise HTTPException(status_code=400, detail="No connected email account for this workspace")
    job = ImportFetchJob(workspace_id=body.workspace_id, config_id=config.id, folder="SENT")
    msg_id = work_queue.send(db, work_queue.IMPORT_QUEUE, job.model_dump())
    update_import_progress(db, body.workspace_id, current_phase="importing", last_error=None)
    return TriggerResponse(message=f"Queued import job {msg_id}.", status="queued")


@router.post("/import/{job_id}/cancel")
def cancel_import(job_id: str, db: Session = Depends(get_sync_db)):
    job = get_import_job(db, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Import job not found")
    if not cancel_import_job(db, job_id):
        return {"message": f"Import job is already {job.status}.", "status": job.status}
    logger.info(f"Import job {job_id} cancelled via API")
    return {"message": "Import cancelled.", "status": "cancelled"}


@router.get("/import/{job_id}", response_model=ImportJobResponse)
async def get_import(job_id: str, db: AsyncSession = Depends(get_db)):
    job = await db.scalar(select(ImportJob).where(ImportJob.id == job_id))
    if job is None:
        raise HTTPException(status_code=404, detail="Import job not found")
    return job


@router.get("/progress/{workspace_id}", response_model=ImportProgressResponse)
async def get_progress(workspace_id: str, db: AsyncSession = Depends(get_db)):
    row = await db.scalar(select(ImportProgress).where(ImportProgress.workspace_id == workspace_id))
    if row is None:
        return ImportProgressResponse(workspace_id=workspace_id, current_phase="idle")
    return row


@router.post("/classify", response_model=TriggerResponse)
def trigger_classify(body: WorkspaceRequest, db: Session = Depends(get_sync_db), dispatcher=Depends(get_dispatcher)):
    """Kick the bulk classifier relay (e.g. after a manual re-import)."""
    update_import_progress(db, body.workspace_id, current_phase="classifying", last_error=None)
    dispatcher.dispatch(CLASSIFY_RELAY_TASK, {"workspace_id": body.workspace_id}, 0)
    return TriggerResponse(message="Classification started.", status="classifying")


@router.post("/consolidate-faqs", response_model=TriggerResponse)
def trigger_consolidation(
    body: WorkspaceRequest,
    db: Session = Depends(get_sync_db),
    dispatcher=Depends(get_dispatcher),
):
    run_id = str(uuid.uuid4())
    set_workflow_progress(db, body.workspace_id, "queued", run_id=run_id, error=None)
    dispatcher.dispatch(
        CONSOLIDATE_RELAY_TASK,
        {"workspace_id": body.workspace_id, "run_id": run_id, "phase": "filter", "chunk_index": 0},
        0,
    )
    return TriggerResponse(message="FAQ consolidation started.", status="queued", run_id=run_id)


async def _sse_generator(job_id: str, poll_s: float = 0.5):
    """Yield SSE events with import job state until it reaches a terminal status."""
    while True:
        session = SessionLocal()
        try:
            state = job_state(get_import_job(session, job_id))
        finally:
            session.close()
        yield {"data": json.dumps(state)}
        if state.get("status") in TERMINAL_STATUSES or state.get("status") == "not_found":
            break
        await asyncio.sleep(poll_s)


@events_router.get("/events/{job_id}", dependencies=[Depends(require_worker_token_for_sse)])
async def import_events(job_id: str):
    """SSE stream of import progress. Pass ?token= when using EventSource."""
    return EventSourceResponse(_sse_generator(job_id))
