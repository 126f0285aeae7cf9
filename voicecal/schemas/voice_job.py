"""Voice job operator schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class VoiceJobResponse(BaseModel):
    """Voice job response."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    status: str
    transcribed_text: str | None
    intent_snapshot: dict | None
    intent_job_id: str | None
    clarification_status: str | None
    calendar_event_id: str | None
    error_message: str | None
    error_stage: str | None
    retry_count: int
    paused_at_stage: str | None
    test_configuration: dict | None
    created_at: datetime


class TimingEntryResponse(BaseModel):
    """One stage timing record."""

    model_config = ConfigDict(from_attributes=True)

    stage: str
    stage_group: str | None
    sequence: int
    started_at: datetime
    completed_at: datetime | None
    duration_ms: int | None
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")


class TimelineResponse(BaseModel):
    """Stage timings for a job in canonical order."""

    job_id: int
    status: str
    entries: list[TimingEntryResponse]


class PauseRequest(BaseModel):
    """Ask a job to stop after a stage, or hold it right away when no stage is given."""

    stage: str | None = Field(default=None, max_length=32)


class ResumeResponse(BaseModel):
    """Result of resuming a paused job."""

    job_id: int
    enqueued_stage: str | None
    enqueued: bool
