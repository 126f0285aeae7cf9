"""Enums for model fields."""

from enum import StrEnum


class VoiceJobStatus(StrEnum):
    """Lifecycle of a voice job.

    Forward statuses are ordered; ``paused_after_*`` and ``awaiting_clarification`` are
    side-states that resume into the next forward stage.
    """

    RECEIVED = "received"
    DOWNLOADING = "downloading"
    TRANSCRIBING = "transcribing"
    ANALYZING = "analyzing"
    PROCESSING = "processing"
    AWAITING_CLARIFICATION = "awaiting_clarification"
    CREATING_EVENT = "creating_event"
    UPDATING_EVENT = "updating_event"
    DELETING_EVENT = "deleting_event"
    PAUSED_AFTER_DOWNLOAD = "paused_after_download"
    PAUSED_AFTER_TRANSCRIBE = "paused_after_transcribe"
    PAUSED_AFTER_ANALYZE = "paused_after_analyze"
    PAUSED_AFTER_PROCESS = "paused_after_process"
    PAUSED_AFTER_CREATE = "paused_after_create"
    PAUSED_AFTER_UPDATE = "paused_after_update"
    PAUSED_AFTER_DELETE = "paused_after_delete"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if the job has reached a final status."""
        return self in (VoiceJobStatus.COMPLETED, VoiceJobStatus.FAILED)

    @property
    def is_paused(self) -> bool:
        """Check if this is a pause-for-testing side-state."""
        return self.value.startswith("paused_after_")

    @property
    def rank(self) -> int:
        """Position along the forward stage sequence."""
        return STATUS_RANK[self]


STATUS_RANK: dict[VoiceJobStatus, int] = {
    VoiceJobStatus.RECEIVED: 0,
    VoiceJobStatus.DOWNLOADING: 10,
    VoiceJobStatus.PAUSED_AFTER_DOWNLOAD: 15,
    VoiceJobStatus.TRANSCRIBING: 20,
    VoiceJobStatus.PAUSED_AFTER_TRANSCRIBE: 25,
    VoiceJobStatus.ANALYZING: 30,
    VoiceJobStatus.PAUSED_AFTER_ANALYZE: 35,
    VoiceJobStatus.PROCESSING: 40,
    VoiceJobStatus.AWAITING_CLARIFICATION: 40,
    VoiceJobStatus.PAUSED_AFTER_PROCESS: 45,
    VoiceJobStatus.CREATING_EVENT: 50,
    VoiceJobStatus.UPDATING_EVENT: 50,
    VoiceJobStatus.DELETING_EVENT: 50,
    VoiceJobStatus.PAUSED_AFTER_CREATE: 55,
    VoiceJobStatus.PAUSED_AFTER_UPDATE: 55,
    VoiceJobStatus.PAUSED_AFTER_DELETE: 55,
    VoiceJobStatus.COMPLETED: 100,
    VoiceJobStatus.FAILED: 100,
}


class PendingIntentStatus(StrEnum):
    """Clarification state machine states."""

    AWAITING_CLARIFICATION = "awaiting_clarification"
    RESOLVED = "resolved"
    EXPIRED = "expired"


class PromptChannel(StrEnum):
    """How a clarification question is rendered on the channel."""

    TEXT = "text"
    BUTTONS = "buttons"
    LIST = "list"
    FLOW = "flow"


class AnswerSource(StrEnum):
    """Where a clarification answer came from."""

    TEXT = "text"
    INTERACTIVE = "interactive"
    FLOW = "flow"


class PayloadType(StrEnum):
    """Kinds of intent extraction exchanges kept for audit."""

    PROMPT = "prompt"
    RESPONSE = "response"
    CONTEXT = "context"
