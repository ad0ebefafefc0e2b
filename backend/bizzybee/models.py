"""SQLAlchemy models."""
from datetime import datetime, timezone
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Text,
    Float,
    Boolean,
    ForeignKey,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import JSON

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (all DateTime columns store UTC without tzinfo)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class EmailProviderConfig(Base):
    """A connected mailbox (one per workspace in practice)."""
    __tablename__ = "email_provider_configs"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(32), default="aurinko")
    account_id = Column(String(128), unique=True, index=True, nullable=True)  # Aurinko accountId
    email_address = Column(String, nullable=False)
    aliases = Column(JSON, nullable=True)  # list of extra owner addresses
    access_token = Column(Text, nullable=True)
    import_mode = Column(String(32), default="last_1000")
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ImportJob(Base):
    """Checkpoint for a multi-hop mailbox import."""
    __tablename__ = "email_import_jobs"

    id = Column(String(36), primary_key=True)
    workspace_id = Column(String(64), nullable=False, index=True)
    config_id = Column(Integer, ForeignKey("email_provider_configs.id", ondelete="SET NULL"), nullable=True)
    # queued, scanning_sent, scanning_inbox, completed, error, cancelled
    status = Column(String(32), default="queued", index=True)
    import_mode = Column(String(32), default="full")
    current_folder = Column(String(16), default="SENT")  # SENT | INBOX
    sent_page_token = Column(Text, nullable=True)
    inbox_page_token = Column(Text, nullable=True)
    sent_imported = Column(Integer, default=0)
    inbox_imported = Column(Integer, default=0)
    sent_exhausted = Column(Boolean, default=False)
    inbox_exhausted = Column(Boolean, default=False)
    total_target = Column(Integer, default=30000)
    retry_count = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime, default=utcnow)
    last_batch_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class StagingMessage(Base):
    """Raw imported email awaiting (or holding) its bulk classification."""
    __tablename__ = "email_import_queue"
    __table_args__ = (
        UniqueConstraint("workspace_id", "external_id", name="uq_email_import_queue_workspace_external"),
    )

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String(64), nullable=False, index=True)
    config_id = Column(Integer, nullable=True)
    job_id = Column(String(36), nullable=True, index=True)
    external_id = Column(String(255), nullable=False)
    thread_id = Column(String(255), nullable=True, index=True)
    direction = Column(String(16), default="inbound")  # inbound | outbound
    from_email = Column(String, nullable=True)
    from_name = Column(String, nullable=True)
    to_emails = Column(JSON, nullable=True)
    subject = Column(Text, nullable=True)
    body = Column(Text, nullable=True)
    body_html = Column(Text, nullable=True)
    has_body = Column(Boolean, default=False)
    received_at = Column(DateTime, nullable=True)
    status = Column(String(32), default="scanned")  # scanned, classified
    # Bulk classification results
    category = Column(String(32), nullable=True, index=True)
    requires_reply = Column(Boolean, nullable=True)
    confidence = Column(Float, nullable=True)
    needs_review = Column(Boolean, default=False)
    entities = Column(JSON, nullable=True)
    classified_by = Column(String(32), nullable=True)  # sender_rule | llm | fallback
    classified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class ImportProgress(Base):
    """Per-workspace onboarding progress shown by the UI."""
    __tablename__ = "email_import_progress"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String(64), unique=True, nullable=False)
    # importing, classifying, learning, completed, error
    current_phase = Column(String(32), default="importing")
    emails_received = Column(Integer, default=0)
    emails_sent = Column(Integer, default=0)
    emails_classified = Column(Integer, default=0)
    emails_needing_review = Column(Integer, default=0)
    last_error = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class WorkerLock(Base):
    """Lease-based lock: one running relay per (workspace, function)."""
    __tablename__ = "pipeline_locks"
    __table_args__ = (
        UniqueConstraint("workspace_id", "function_name", name="uq_pipeline_locks_workspace_function"),
    )

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String(64), nullable=False)
    function_name = Column(String(64), nullable=False)
    locked_by = Column(String(64), nullable=False)
    locked_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)


class QueueMessage(Base):
    """Durable work queue row (visibility-timeout semantics)."""
    __tablename__ = "queue_messages"

    msg_id = Column(Integer, primary_key=True, autoincrement=True)
    queue_name = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False)
    read_ct = Column(Integer, default=0, nullable=False)
    enqueued_at = Column(DateTime, default=utcnow)
    visible_at = Column(DateTime, default=utcnow, nullable=False)


class QueueMessageArchive(Base):
    __tablename__ = "queue_message_archive"

    msg_id = Column(Integer, primary_key=True)
    queue_name = Column(String(64), nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    read_ct = Column(Integer, default=0)
    enqueued_at = Column(DateTime, nullable=True)
    archived_at = Column(DateTime, default=utcnow)


class PipelineJobAudit(Base):
    """One row per terminal outcome of a queued job."""
    __tablename__ = "pipeline_job_audit"

    id = Column(Integer, primary_key=True, index=True)
    queue_name = Column(String(64), nullable=False, index=True)
    msg_id = Column(Integer, nullable=True)
    job_type = Column(String(32), nullable=True)
    workspace_id = Column(String(64), nullable=True, index=True)
    outcome = Column(String(32), nullable=False)  # processed, requeued, deadlettered, discarded, failed
    attempts = Column(Integer, default=0)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class SenderRule(Base):
    """Deterministic classification for known senders."""
    __tablename__ = "sender_rules"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String(64), nullable=False, index=True)
    sender_pattern = Column(String, nullable=False)  # a@b.com | @b.com | *@b.com
    default_classification = Column(String(32), nullable=False)
    default_requires_reply = Column(Boolean, default=False)
    skip_llm = Column(Boolean, default=True)
    is_active = Column(Boolean, default=True)
    hit_count = Column(Integer, default=0)
    created_at = Column(DateTime, default=utcnow)


class Customer(Base):
    __tablename__ = "customers"
    __table_args__ = (
        UniqueConstraint("workspace_id", "email", name="uq_customers_workspace_email"),
    )

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String(64), nullable=False, index=True)
    email = Column(String, nullable=False)
    name = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("workspace_id", "external_conversation_id", name="uq_conversations_workspace_external"),
    )

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String(64), nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)
    external_conversation_id = Column(String(255), nullable=False)
    channel = Column(String(16), default="email")
    title = Column(Text, nullable=True)
    status = Column(String(16), default="new")  # new, open, resolved
    is_read = Column(Boolean, default=False)
    # Triage results
    category = Column(String(32), nullable=True)
    requires_reply = Column(Boolean, nullable=True)
    confidence = Column(Float, nullable=True)
    needs_review = Column(Boolean, default=False)
    triage_source = Column(String(32), nullable=True)  # sender_rule | llm
    ai_draft_response = Column(Text, nullable=True)
    draft_generated_at = Column(DateTime, nullable=True)
    last_message_at = Column(DateTime, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    messages = relationship("Message", back_populates="conversation", order_by="Message.id")


class Message(Base):
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("conversation_id", "external_id", name="uq_messages_conversation_external"),
    )

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    external_id = Column(String(255), nullable=False)
    direction = Column(String(16), default="inbound")
    actor_type = Column(String(16), default="customer")  # customer | human_agent | ai_agent
    from_email = Column(String, nullable=True)
    from_name = Column(String, nullable=True)
    body = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    conversation = relationship("Conversation", back_populates="messages")


class BusinessContext(Base):
    """Business details used by FAQ adaptation and drafting."""
    __tablename__ = "business_contexts"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String(64), unique=True, nullable=False)
    company_name = Column(String, nullable=True)
    business_type = Column(String, nullable=True)
    services = Column(JSON, nullable=True)  # list of strings
    service_area = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    email = Column(String, nullable=True)
    website = Column(String, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class FaqEntry(Base):
    __tablename__ = "faq_database"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String(64), nullable=False, index=True)
    question = Column(Text, nullable=False)
    answer = Column(Text, nullable=False)
    category = Column(String(64), default="General")
    priority = Column(Integer, default=5)
    is_active = Column(Boolean, default=True)
    is_own_content = Column(Boolean, default=False)
    # website_extraction, competitor_research, competitor_adapted, manual
    generation_source = Column(String(32), nullable=True, index=True)
    original_faq_id = Column(Integer, nullable=True)
    source_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class ConsolidationState(Base):
    """Per-run, per-phase accumulator for the FAQ consolidation relay."""
    __tablename__ = "consolidation_state"
    __table_args__ = (
        UniqueConstraint("run_id", "phase", name="uq_consolidation_state_run_phase"),
    )

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(String(36), nullable=False, index=True)
    workspace_id = Column(String(64), nullable=False)
    phase = Column(String(16), nullable=False)  # filter | dedup | adapt
    data = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class WorkflowProgress(Base):
    __tablename__ = "workflow_progress"
    __table_args__ = (
        UniqueConstraint("workspace_id", "workflow_type", name="uq_workflow_progress_workspace_type"),
    )

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String(64), nullable=False)
    workflow_type = Column(String(32), nullable=False)  # consolidation
    status = Column(String(32), default="pending")
    details = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class VoiceProfile(Base):
    """Writing style learned from the owner's sent mail."""
    __tablename__ = "voice_profiles"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(String(64), unique=True, nullable=False)
    tone = Column(String, nullable=True)
    greeting = Column(String, nullable=True)
    sign_off = Column(String, nullable=True)
    average_length = Column(Integer, nullable=True)
    common_phrases = Column(JSON, nullable=True)
    sample_size = Column(Integer, default=0)
    raw_profile = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


Index("ix_queue_messages_queue_visible", QueueMessage.queue_name, QueueMessage.visible_at)
Index("ix_email_import_queue_workspace_category", StagingMessage.workspace_id, StagingMessage.category)
Index("ix_email_import_queue_workspace_direction", StagingMessage.workspace_id, StagingMessage.direction)
