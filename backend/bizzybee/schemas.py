"""Pydantic schemas for API requests/responses and work-queue job payloads."""
from datetime import datetime
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator
from typing_extensions import Annotated

from .config import settings


# =============================================================================
# Work-queue job payloads (tagged by job_type)
# =============================================================================

class ImportFetchJob(BaseModel):
    """Fetch one page of a folder into staging, then enqueue the next page."""
    job_type: Literal["IMPORT_FETCH"] = "IMPORT_FETCH"
    workspace_id: str
    config_id: int
    folder: Literal["SENT", "INBOX"] = "SENT"
    page_token: Optional[str] = None
    cap: int = Field(default_factory=lambda: settings.queue_import_cap)
    fetched_so_far: int = 0

    @field_validator("cap")
    @classmethod
    def _clamp_cap(cls, v: int) -> int:
        return max(1, min(10000, int(v)))


class ClassifyJob(BaseModel):
    """Triage one conversation created by the webhook."""
    job_type: Literal["CLASSIFY"] = "CLASSIFY"
    workspace_id: str
    conversation_id: int


class DraftJob(BaseModel):
    """Generate a draft reply for one conversation."""
    job_type: Literal["DRAFT"] = "DRAFT"
    workspace_id: str
    conversation_id: int


PipelineJob = Annotated[Union[ImportFetchJob, ClassifyJob, DraftJob], Field(discriminator="job_type")]
pipeline_job_adapter = TypeAdapter(PipelineJob)


# =============================================================================
# API
# =============================================================================

class StartImportRequest(BaseModel):
    workspace_id: str
    import_mode: Literal["last_100", "last_1000", "full"] = "last_1000"


class StartImportResponse(BaseModel):
    message: str
    job_id: str
    status: str
    total_target: int


class ImportJobResponse(BaseModel):
    id: str
    workspace_id: str
    status: str
    import_mode: Optional[str] = None
    current_folder: Optional[str] = None
    sent_imported: int = 0
    inbox_imported: int = 0
    total_target: int
    retry_count: int = 0
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    last_batch_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ImportProgressResponse(BaseModel):
    workspace_id: str
    current_phase: str
    emails_received: int = 0
    emails_sent: int = 0
    emails_classified: int = 0
    emails_needing_review: int = 0
    last_error: Optional[str] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WorkspaceRequest(BaseModel):
    workspace_id: str


class TriggerResponse(BaseModel):
    message: str
    status: str
    run_id: Optional[str] = None
