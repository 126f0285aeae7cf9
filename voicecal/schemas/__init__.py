"""Pydantic schemas for requests, responses and stage payloads."""

from voicecal.schemas.intent import (
    CalendarAction,
    ClarificationItem,
    ClarificationOption,
    IntentSnapshot,
    ResolutionResult,
)
from voicecal.schemas.payloads import (
    AnalyzeIntentPayload,
    CalendarActionPayload,
    DownloadAudioPayload,
    ProcessIntentPayload,
    SendNotificationPayload,
    StagePayload,
    TranscribeAudioPayload,
)
from voicecal.schemas.voice_job import (
    PauseRequest,
    ResumeResponse,
    TimelineResponse,
    TimingEntryResponse,
    VoiceJobResponse,
)
from voicecal.schemas.whatsapp import ParsedMessage, WebhookPayload

__all__ = [
    "CalendarAction",
    "ClarificationItem",
    "ClarificationOption",
    "IntentSnapshot",
    "ResolutionResult",
    "StagePayload",
    "DownloadAudioPayload",
    "TranscribeAudioPayload",
    "AnalyzeIntentPayload",
    "ProcessIntentPayload",
    "CalendarActionPayload",
    "SendNotificationPayload",
    "VoiceJobResponse",
    "TimingEntryResponse",
    "TimelineResponse",
    "PauseRequest",
    "ResumeResponse",
    "ParsedMessage",
    "WebhookPayload",
]
