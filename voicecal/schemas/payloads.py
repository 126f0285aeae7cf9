"""Payload models handed between pipeline stages."""

from pydantic import BaseModel, Field


class StagePayload(BaseModel):
    """Every stage payload carries the voice job id."""

    job_id: int


class DownloadAudioPayload(StagePayload):
    media_id: str
    mime_type: str | None = None


class TranscribeAudioPayload(StagePayload):
    audio_path: str
    mime_type: str | None = None


class AnalyzeIntentPayload(StagePayload):
    transcribed_text: str


class ProcessIntentPayload(StagePayload):
    intent_snapshot: dict
    clarification_round: int = 0


class CalendarActionPayload(StagePayload):
    """Input for create-event, update-event and delete-event."""

    intent_snapshot: dict


class SendNotificationPayload(StagePayload):
    success: bool
    action: str | None = None
    event_id: str | None = None
    event_link: str | None = None
    message: str | None = None
    error_category: str | None = None
    events: list[dict] = Field(default_factory=list)
