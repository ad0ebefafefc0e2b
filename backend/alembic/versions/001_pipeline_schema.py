"""Pipeline schema: provider configs, import jobs/staging/progress, locks, work queue, conversations, FAQs.

Revision ID: 001_pipeline_schema
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_pipeline_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name: str, nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.DateTime(), nullable=nullable)


def upgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    tables = set(inspector.get_table_names())

    if "email_provider_configs" not in tables:
        op.create_table(
            "email_provider_configs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("workspace_id", sa.String(64), nullable=False),
            sa.Column("provider", sa.String(32), nullable=True),
            sa.Column("account_id", sa.String(128), nullable=True),
            sa.Column("email_address", sa.String(), nullable=False),
            sa.Column("aliases", sa.JSON(), nullable=True),
            sa.Column("access_token", sa.Text(), nullable=True),
            sa.Column("import_mode", sa.String(32), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
        )
        op.create_index("ix_email_provider_configs_workspace_id", "email_provider_configs", ["workspace_id"])
        op.create_index("ix_email_provider_configs_account_id", "email_provider_configs", ["account_id"], unique=True)

    if "email_import_jobs" not in tables:
        op.create_table(
            "email_import_jobs",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("workspace_id", sa.String(64), nullable=False),
            sa.Column("config_id", sa.Integer(),
                      sa.ForeignKey("email_provider_configs.id", ondelete="SET NULL"), nullable=True),
            sa.Column("status", sa.String(32), nullable=True),
            sa.Column("import_mode", sa.String(32), nullable=True),
            sa.Column("current_folder", sa.String(16), nullable=True),
            sa.Column("sent_page_token", sa.Text(), nullable=True),
            sa.Column("inbox_page_token", sa.Text(), nullable=True),
            sa.Column("sent_imported", sa.Integer(), nullable=True),
            sa.Column("inbox_imported", sa.Integer(), nullable=True),
            sa.Column("sent_exhausted", sa.Boolean(), nullable=True),
            sa.Column("inbox_exhausted", sa.Boolean(), nullable=True),
            sa.Column("total_target", sa.Integer(), nullable=True),
            sa.Column("retry_count", sa.Integer(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            _ts("started_at"),
            _ts("last_batch_at"),
            _ts("completed_at"),
            _ts("created_at"),
            _ts("updated_at"),
        )
        op.create_index("ix_email_import_jobs_workspace_id", "email_import_jobs", ["workspace_id"])
        op.create_index("ix_email_import_jobs_status", "email_import_jobs", ["status"])

    if "email_import_queue" not in tables:
        op.create_table(
            "email_import_queue",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("workspace_id", sa.String(64), nullable=False),
            sa.Column("config_id", sa.Integer(), nullable=True),
            sa.Column("job_id", sa.String(36), nullable=True),
            sa.Column("external_id", sa.String(255), nullable=False),
            sa.Column("thread_id", sa.String(255), nullable=True),
            sa.Column("direction", sa.String(16), nullable=True),
            sa.Column("from_email", sa.String(), nullable=True),
            sa.Column("from_name", sa.String(), nullable=True),
            sa.Column("to_emails", sa.JSON(), nullable=True),
            sa.Column("subject", sa.Text(), nullable=True),
            sa.Column("body", sa.Text(), nullable=True),
            sa.Column("body_html", sa.Text(), nullable=True),
            sa.Column("has_body", sa.Boolean(), nullable=True),
            _ts("received_at"),
            sa.Column("status", sa.String(32), nullable=True),
            sa.Column("category", sa.String(32), nullable=True),
            sa.Column("requires_reply", sa.Boolean(), nullable=True),
            sa.Column("confidence", sa.Float(), nullable=True),
            sa.Column("needs_review", sa.Boolean(), nullable=True),
            sa.Column("entities", sa.JSON(), nullable=True),
            sa.Column("classified_by", sa.String(32), nullable=True),
            _ts("classified_at"),
            _ts("created_at"),
            sa.UniqueConstraint("workspace_id", "external_id", name="uq_email_import_queue_workspace_external"),
        )
        op.create_index("ix_email_import_queue_workspace_id", "email_import_queue", ["workspace_id"])
        op.create_index("ix_email_import_queue_job_id", "email_import_queue", ["job_id"])
        op.create_index("ix_email_import_queue_thread_id", "email_import_queue", ["thread_id"])
        op.create_index("ix_email_import_queue_category", "email_import_queue", ["category"])
        op.create_index("ix_email_import_queue_workspace_category", "email_import_queue", ["workspace_id", "category"])
        op.create_index(
            "ix_email_import_queue_workspace_direction", "email_import_queue", ["workspace_id", "direction"]
        )

    if "email_import_progress" not in tables:
        op.create_table(
            "email_import_progress",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("workspace_id", sa.String(64), nullable=False, unique=True),
            sa.Column("current_phase", sa.String(32), nullable=True),
            sa.Column("emails_received", sa.Integer(), nullable=True),
            sa.Column("emails_sent", sa.Integer(), nullable=True),
            sa.Column("emails_classified", sa.Integer(), nullable=True),
            sa.Column("emails_needing_review", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            _ts("updated_at"),
        )

    if "pipeline_locks" not in tables:
        op.create_table(
            "pipeline_locks",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("workspace_id", sa.String(64), nullable=False),
            sa.Column("function_name", sa.String(64), nullable=False),
            sa.Column("locked_by", sa.String(64), nullable=False),
            _ts("locked_at"),
            _ts("expires_at", nullable=False),
            sa.UniqueConstraint("workspace_id", "function_name", name="uq_pipeline_locks_workspace_function"),
        )
        op.create_index("ix_pipeline_locks_expires_at", "pipeline_locks", ["expires_at"])

    if "queue_messages" not in tables:
        op.create_table(
            "queue_messages",
            sa.Column("msg_id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("queue_name", sa.String(64), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=False),
            sa.Column("read_ct", sa.Integer(), nullable=False, server_default="0"),
            _ts("enqueued_at"),
            _ts("visible_at", nullable=False),
        )
        op.create_index("ix_queue_messages_queue_visible", "queue_messages", ["queue_name", "visible_at"])

    if "queue_message_archive" not in tables:
        op.create_table(
            "queue_message_archive",
            sa.Column("msg_id", sa.Integer(), primary_key=True),
            sa.Column("queue_name", sa.String(64), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=False),
            sa.Column("read_ct", sa.Integer(), nullable=True),
            _ts("enqueued_at"),
            _ts("archived_at"),
        )
        op.create_index("ix_queue_message_archive_queue_name", "queue_message_archive", ["queue_name"])

    if "pipeline_job_audit" not in tables:
        op.create_table(
            "pipeline_job_audit",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("queue_name", sa.String(64), nullable=False),
            sa.Column("msg_id", sa.Integer(), nullable=True),
            sa.Column("job_type", sa.String(32), nullable=True),
            sa.Column("workspace_id", sa.String(64), nullable=True),
            sa.Column("outcome", sa.String(32), nullable=False),
            sa.Column("attempts", sa.Integer(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            _ts("created_at"),
        )
        op.create_index("ix_pipeline_job_audit_queue_name", "pipeline_job_audit", ["queue_name"])
        op.create_index("ix_pipeline_job_audit_workspace_id", "pipeline_job_audit", ["workspace_id"])

    if "sender_rules" not in tables:
        op.create_table(
            "sender_rules",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("workspace_id", sa.String(64), nullable=False),
            sa.Column("sender_pattern", sa.String(), nullable=False),
            sa.Column("default_classification", sa.String(32), nullable=False),
            sa.Column("default_requires_reply", sa.Boolean(), nullable=True),
            sa.Column("skip_llm", sa.Boolean(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            sa.Column("hit_count", sa.Integer(), nullable=True),
            _ts("created_at"),
        )
        op.create_index("ix_sender_rules_workspace_id", "sender_rules", ["workspace_id"])

    if "customers" not in tables:
        op.create_table(
            "customers",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("workspace_id", sa.String(64), nullable=False),
            sa.Column("email", sa.String(), nullable=False),
            sa.Column("name", sa.String(), nullable=True),
            _ts("created_at"),
            sa.UniqueConstraint("workspace_id", "email", name="uq_customers_workspace_email"),
        )
        op.create_index("ix_customers_workspace_id", "customers", ["workspace_id"])

    if "conversations" not in tables:
        op.create_table(
            "conversations",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("workspace_id", sa.String(64), nullable=False),
            sa.Column("customer_id", sa.Integer(), sa.ForeignKey("customers.id", ondelete="SET NULL"), nullable=True),
            sa.Column("external_conversation_id", sa.String(255), nullable=False),
            sa.Column("channel", sa.String(16), nullable=True),
            sa.Column("title", sa.Text(), nullable=True),
            sa.Column("status", sa.String(16), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            sa.Column("category", sa.String(32), nullable=True),
            sa.Column("requires_reply", sa.Boolean(), nullable=True),
            sa.Column("confidence", sa.Float(), nullable=True),
            sa.Column("needs_review", sa.Boolean(), nullable=True),
            sa.Column("triage_source", sa.String(32), nullable=True),
            sa.Column("ai_draft_response", sa.Text(), nullable=True),
            _ts("draft_generated_at"),
            _ts("last_message_at"),
            _ts("resolved_at"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.UniqueConstraint(
                "workspace_id", "external_conversation_id", name="uq_conversations_workspace_external"
            ),
        )
        op.create_index("ix_conversations_workspace_id", "conversations", ["workspace_id"])

    if "messages" not in tables:
        op.create_table(
            "messages",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("conversation_id", sa.Integer(),
                      sa.ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False),
            sa.Column("external_id", sa.String(255), nullable=False),
            sa.Column("direction", sa.String(16), nullable=True),
            sa.Column("actor_type", sa.String(16), nullable=True),
            sa.Column("from_email", sa.String(), nullable=True),
            sa.Column("from_name", sa.String(), nullable=True),
            sa.Column("body", sa.Text(), nullable=True),
            _ts("created_at"),
            sa.UniqueConstraint("conversation_id", "external_id", name="uq_messages_conversation_external"),
        )
        op.create_index("ix_messages_conversation_id", "messages", ["conversation_id"])

    if "business_contexts" not in tables:
        op.create_table(
            "business_contexts",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("workspace_id", sa.String(64), nullable=False, unique=True),
            sa.Column("company_name", sa.String(), nullable=True),
            sa.Column("business_type", sa.String(), nullable=True),
            sa.Column("services", sa.JSON(), nullable=True),
            sa.Column("service_area", sa.String(), nullable=True),
            sa.Column("phone", sa.String(), nullable=True),
            sa.Column("email", sa.String(), nullable=True),
            sa.Column("website", sa.String(), nullable=True),
            _ts("updated_at"),
        )

    if "faq_database" not in tables:
        op.create_table(
            "faq_database",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("workspace_id", sa.String(64), nullable=False),
            sa.Column("question", sa.Text(), nullable=False),
            sa.Column("answer", sa.Text(), nullable=False),
            sa.Column("category", sa.String(64), nullable=True),
            sa.Column("priority", sa.Integer(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            sa.Column("is_own_content", sa.Boolean(), nullable=True),
            sa.Column("generation_source", sa.String(32), nullable=True),
            sa.Column("original_faq_id", sa.Integer(), nullable=True),
            sa.Column("source_url", sa.String(), nullable=True),
            _ts("created_at"),
        )
        op.create_index("ix_faq_database_workspace_id", "faq_database", ["workspace_id"])
        op.create_index("ix_faq_database_generation_source", "faq_database", ["generation_source"])

    if "consolidation_state" not in tables:
        op.create_table(
            "consolidation_state",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("run_id", sa.String(36), nullable=False),
            sa.Column("workspace_id", sa.String(64), nullable=False),
            sa.Column("phase", sa.String(16), nullable=False),
            sa.Column("data", sa.JSON(), nullable=True),
            _ts("updated_at"),
            sa.UniqueConstraint("run_id", "phase", name="uq_consolidation_state_run_phase"),
        )
        op.create_index("ix_consolidation_state_run_id", "consolidation_state", ["run_id"])

    if "workflow_progress" not in tables:
        op.create_table(
            "workflow_progress",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("workspace_id", sa.String(64), nullable=False),
            sa.Column("workflow_type", sa.String(32), nullable=False),
            sa.Column("status", sa.String(32), nullable=True),
            sa.Column("details", sa.JSON(), nullable=True),
            _ts("updated_at"),
            sa.UniqueConstraint("workspace_id", "workflow_type", name="uq_workflow_progress_workspace_type"),
        )

    if "voice_profiles" not in tables:
        op.create_table(
            "voice_profiles",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("workspace_id", sa.String(64), nullable=False, unique=True),
            sa.Column("tone", sa.String(), nullable=True),
            sa.Column("greeting", sa.String(), nullable=True),
            sa.Column("sign_off", sa.String(), nullable=True),
            sa.Column("average_length", sa.Integer(), nullable=True),
            sa.Column("common_phrases", sa.JSON(), nullable=True),
            sa.Column("sample_size", sa.Integer(), nullable=True),
            sa.Column("raw_profile", sa.JSON(), nullable=True),
            _ts("updated_at"),
        )


def downgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    tables = set(inspector.get_table_names())
    # children before parents
    for name in (
        "voice_profiles",
        "workflow_progress",
        "consolidation_state",
        "faq_database",
        "business_contexts",
        "messages",
        "conversations",
        "customers",
        "sender_rules",
        "pipeline_job_audit",
        "queue_message_archive",
        "queue_messages",
        "pipeline_locks",
        "email_import_progress",
        "email_import_queue",
        "email_import_jobs",
        "email_provider_configs",
    ):
        if name in tables:
            op.drop_table(name)
