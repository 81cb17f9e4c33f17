"""Initial PostgreSQL schema

Revision ID: 001
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision = "001"
down_revision = None
branch_labels = None
depends_on = None

PROCESSING_STATES = (
    "initialized",
    "waiting_caption",
    "has_caption",
    "processing_caption",
    "ready_for_sync",
    "pending",
    "completed",
    "error",
)


def upgrade() -> None:
    """Create messages, audit log, and pipeline task tables."""

    states = ", ".join(f"'{state}'" for state in PROCESSING_STATES)

    # 1. messages
    op.create_table(
        "messages",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("telegram_message_id", sa.BigInteger(), nullable=False),
        sa.Column("chat_id", sa.BigInteger(), nullable=False),
        sa.Column("chat_type", sa.String(length=32), nullable=True),
        sa.Column("chat_title", sa.Text(), nullable=True),
        sa.Column("media_group_id", sa.String(length=64), nullable=True),
        sa.Column("caption", sa.Text(), nullable=True),
        sa.Column("media_type", sa.String(length=16), nullable=True),
        sa.Column("file_id", sa.Text(), nullable=True),
        sa.Column("file_unique_id", sa.String(length=128), nullable=True),
        sa.Column("mime_type", sa.String(length=128), nullable=True),
        sa.Column("file_size", sa.BigInteger(), nullable=True),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=True),
        sa.Column("storage_path", sa.Text(), nullable=True),
        sa.Column("public_url", sa.Text(), nullable=True),
        sa.Column("content_disposition", sa.String(length=16), nullable=True),
        sa.Column(
            "is_duplicate", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("duplicate_reference_id", sa.String(length=36), nullable=True),
        sa.Column(
            "needs_redownload", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "is_original_caption",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column(
            "group_caption_synced",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column(
            "analyzed_content", postgresql.JSONB(astext_type=sa.Text()), nullable=True
        ),
        sa.Column(
            "processing_state",
            sa.String(length=32),
            nullable=False,
            server_default=sa.text("'initialized'"),
        ),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "processing_completed_at", sa.DateTime(timezone=True), nullable=True
        ),
        sa.Column("is_edited", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("edit_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("correlation_id", sa.String(length=64), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "chat_id", "telegram_message_id", name="messages_chat_message_key"
        ),
        sa.CheckConstraint(
            f"processing_state IN ({states})", name="messages_processing_state_check"
        ),
        sa.CheckConstraint("retry_count >= 0", name="messages_retry_count_check"),
    )
    op.create_index("idx_messages_media_group", "messages", ["media_group_id"])
    op.create_index("idx_messages_file_unique_id", "messages", ["file_unique_id"])
    op.create_index(
        "idx_messages_state",
        "messages",
        ["processing_state", "processing_started_at"],
    )

    # 2. audit_logs (append-only)
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("message_id", sa.String(length=36), nullable=True),
        sa.Column("media_group_id", sa.String(length=64), nullable=True),
        sa.Column("correlation_id", sa.String(length=64), nullable=True),
        sa.Column("previous_state", sa.String(length=32), nullable=True),
        sa.Column("new_state", sa.String(length=32), nullable=True),
        sa.Column(
            "metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_audit_logs_message", "audit_logs", ["message_id", "created_at"]
    )
    op.create_index(
        "idx_audit_logs_group", "audit_logs", ["media_group_id", "created_at"]
    )

    # 3. pipeline_tasks (outbox)
    op.execute(sa.text("CREATE EXTENSION IF NOT EXISTS pgcrypto"))
    op.create_table(
        "pipeline_tasks",
        sa.Column(
            "task_id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("task_type", sa.String(length=100), nullable=False),
        sa.Column(
            "payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="50"),
        sa.Column(
            "run_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "status",
            sa.String(length=20),
            nullable=False,
            server_default=sa.text("'queued'"),
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.CheckConstraint("priority >= 0", name="pipeline_tasks_priority_check"),
        sa.CheckConstraint("attempts >= 0", name="pipeline_tasks_attempts_check"),
        sa.CheckConstraint(
            "max_attempts > 0", name="pipeline_tasks_max_attempts_check"
        ),
        sa.CheckConstraint(
            "status IN ('queued', 'in_progress', 'done', 'failed')",
            name="pipeline_tasks_status_check",
        ),
    )
    op.create_index(
        "pipeline_tasks_idempotency_key_idx",
        "pipeline_tasks",
        ["idempotency_key"],
        unique=True,
    )
    op.create_index(
        "pipeline_tasks_status_run_at_idx",
        "pipeline_tasks",
        ["status", "task_type", "run_at"],
    )


def downgrade() -> None:
    """Drop all tables."""

    op.drop_index("pipeline_tasks_status_run_at_idx", table_name="pipeline_tasks")
    op.drop_index("pipeline_tasks_idempotency_key_idx", table_name="pipeline_tasks")
    op.drop_table("pipeline_tasks")

    op.drop_index("idx_audit_logs_group", table_name="audit_logs")
    op.drop_index("idx_audit_logs_message", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_index("idx_messages_state", table_name="messages")
    op.drop_index("idx_messages_file_unique_id", table_name="messages")
    op.drop_index("idx_messages_media_group", table_name="messages")
    op.drop_table("messages")
