"""Voice job model tracking one inbound voice note through the pipeline."""

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from voicecal.database import Base
from voicecal.models.enums import VoiceJobStatus
from voicecal.models.job_state import JobState, derive_job_state
from voicecal.models.mixins import TimestampMixin


class VoiceJob(Base, TimestampMixin):
    """One voice note received over the channel. Never hard-deleted."""

    __tablename__ = "voice_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    channel_number_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("channel_numbers.id"), nullable=False, index=True
    )
    inbound_message_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    media_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True, index=True)
    sender_address: Mapped[str] = mapped_column(String(32), nullable=False)
    mime_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=VoiceJobStatus.RECEIVED.value,
        index=True,
    )

    # Audio handoff between download and transcribe
    audio_file_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    audio_size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Transcription
    transcribed_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    transcription_language: Mapped[str | None] = mapped_column(String(16), nullable=True)
    stt_provider: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Intent
    intent_snapshot: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    intent_provider: Mapped[str | None] = mapped_column(String(64), nullable=True)
    intent_job_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    clarification_status: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # Calendar outcome
    calendar_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    calendar_event_link: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Failure bookkeeping
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_stage: Mapped[str | None] = mapped_column(String(32), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Pause-for-testing
    is_test_job: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    paused_at_stage: Mapped[str | None] = mapped_column(String(32), nullable=True)
    test_configuration: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    pending_intent = relationship(
        "PendingIntent",
        back_populates="voice_job",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    timings = relationship(
        "VoiceJobTiming", cascade="all, delete-orphan", passive_deletes=True
    )
    intent_payloads = relationship(
        "IntentPipelinePayload", cascade="all, delete-orphan", passive_deletes=True
    )

    @property
    def pause_after_stage(self) -> str | None:
        """Stage short name the test configuration asks to pause after."""
        if not self.is_test_job or not self.test_configuration:
            return None
        return self.test_configuration.get("pauseAfterStage")

    @property
    def state(self) -> JobState:
        pending = self.pending_intent
        return derive_job_state(self.status, self.paused_at_stage, pending.id if pending else None)

    def __repr__(self) -> str:
        return f"<VoiceJob(id={self.id}, user_id={self.user_id}, status={self.status})>"
