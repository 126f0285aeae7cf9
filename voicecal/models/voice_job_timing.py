"""Append-only audit models for stage timings and intent extraction payloads."""

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String

from voicecal.database import Base
from voicecal.models.mixins import CreatedAtMixin


class VoiceJobTiming(Base, CreatedAtMixin):
    """Start/end/duration of one stage execution against a voice job."""

    __tablename__ = "voice_job_timings"
    __table_args__ = (Index("ix_voice_job_timings_job_sequence", "job_id", "sequence"),)

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(
        Integer, ForeignKey("voice_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    stage = Column(String(64), nullable=False, index=True)
    stage_group = Column(String(64), nullable=True)
    sequence = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)


class IntentPipelinePayload(Base, CreatedAtMixin):
    """Prompt, response or context exchanged with the intent extraction model."""

    __tablename__ = "intent_pipeline_payloads"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(
        Integer, ForeignKey("voice_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sequence = Column(Integer, nullable=False, default=0)
    payload_type = Column(String(16), nullable=False, index=True)
    provider = Column(String(64), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    payload = Column(JSON, nullable=False)
