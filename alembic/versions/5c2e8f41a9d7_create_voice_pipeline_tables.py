"""create voice pipeline tables

Revision ID: 5c2e8f41a9d7
Revises:
Create Date: 2026-10-17

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "5c2e8f41a9d7"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
    ]


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    op.create_table(
        "channel_numbers",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("user_id", sa.Integer(), nullable=False, index=True),
        sa.Column("phone_number", sa.String(32), nullable=False, unique=True, index=True),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("timezone", sa.String(64), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "voice_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("user_id", sa.Integer(), nullable=False, index=True),
        sa.Column(
            "channel_number_id",
            sa.Integer(),
            sa.ForeignKey("channel_numbers.id"),
            nullable=False,
            index=True,
        ),
        sa.Column("inbound_message_id", sa.String(128), nullable=False, unique=True),
        sa.Column("media_id", sa.String(128), nullable=False, unique=True, index=True),
        sa.Column("sender_address", sa.String(32), nullable=False),
        sa.Column("mime_type", sa.String(64), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="received", index=True),
        sa.Column("audio_file_path", sa.Text(), nullable=True),
        sa.Column("audio_size_bytes", sa.Integer(), nullable=True),
        sa.Column("transcribed_text", sa.Text(), nullable=True),
        sa.Column("transcription_language", sa.String(16), nullable=True),
        sa.Column("stt_provider", sa.String(64), nullable=True),
        sa.Column("intent_snapshot", sa.JSON(), nullable=True),
        sa.Column("intent_provider", sa.String(64), nullable=True),
        sa.Column("intent_job_id", sa.String(36), nullable=True, index=True),
        sa.Column("clarification_status", sa.String(32), nullable=True),
        sa.Column("calendar_event_id", sa.String(255), nullable=True),
        sa.Column("calendar_event_link", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_stage", sa.String(32), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_test_job", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("paused_at_stage", sa.String(32), nullable=True),
        sa.Column("test_configuration", sa.JSON(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "pending_intents",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column(
            "job_id",
            sa.Integer(),
            sa.ForeignKey("voice_jobs.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("user_id", sa.Integer(), nullable=False, index=True),
        sa.Column("channel_number_id", sa.Integer(), nullable=False, index=True),
        sa.Column("intent_snapshot", sa.JSON(), nullable=False),
        sa.Column("clarification_plan", sa.JSON(), nullable=False),
        sa.Column(
            "status",
            sa.String(32),
            nullable=False,
            server_default="awaiting_clarification",
            index=True,
        ),
        sa.Column("round", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False, index=True),
        *_timestamps(),
    )

    op.create_table(
        "interactive_prompts",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column(
            "pending_intent_id",
            sa.Integer(),
            sa.ForeignKey("pending_intents.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("outbound_message_id", sa.String(128), nullable=True),
        sa.Column("field_key", sa.String(255), nullable=False, index=True),
        sa.Column("options", sa.JSON(), nullable=False),
        sa.Column("selected_value", sa.Text(), nullable=True),
        sa.Column("response_received", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False, index=True),
        _created_at(),
    )

    op.create_table(
        "flow_sessions",
        sa.Column("flow_token", sa.String(64), primary_key=True),
        sa.Column(
            "pending_intent_id",
            sa.Integer(),
            sa.ForeignKey("pending_intents.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("fields_requested", sa.JSON(), nullable=False),
        sa.Column("response_data", sa.JSON(), nullable=True),
        sa.Column("response_received", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False, index=True),
        _created_at(),
    )

    op.create_table(
        "voice_job_timings",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column(
            "job_id",
            sa.Integer(),
            sa.ForeignKey("voice_jobs.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("stage", sa.String(64), nullable=False, index=True),
        sa.Column("stage_group", sa.String(64), nullable=True),
        sa.Column("sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        _created_at(),
    )
    # Timeline reads order by the static stage sequence
    op.create_index(
        "ix_voice_job_timings_job_sequence", "voice_job_timings", ["job_id", "sequence"]
    )

    op.create_table(
        "intent_pipeline_payloads",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column(
            "job_id",
            sa.Integer(),
            sa.ForeignKey("voice_jobs.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
        sa.Column("sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payload_type", sa.String(16), nullable=False, index=True),
        sa.Column("provider", sa.String(64), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        _created_at(),
    )


def downgrade() -> None:
    op.drop_table("intent_pipeline_payloads")
    op.drop_index("ix_voice_job_timings_job_sequence", table_name="voice_job_timings")
    op.drop_table("voice_job_timings")
    op.drop_table("flow_sessions")
    op.drop_table("interactive_prompts")
    op.drop_table("pending_intents")
    op.drop_table("voice_jobs")
    op.drop_table("channel_numbers")
