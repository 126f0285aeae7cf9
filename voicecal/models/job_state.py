"""Explicit job state derived from a voice job's persisted columns."""

from dataclasses import dataclass

from voicecal.models.enums import VoiceJobStatus


@dataclass(frozen=True)
class Active:
    status: VoiceJobStatus


@dataclass(frozen=True)
class PausedForTest:
    stage: str


@dataclass(frozen=True)
class AwaitingClarification:
    pending_intent_id: int | None


@dataclass(frozen=True)
class Terminal:
    outcome: VoiceJobStatus


JobState = Active | PausedForTest | AwaitingClarification | Terminal


def derive_job_state(
    status: str, paused_at_stage: str | None, pending_intent_id: int | None
) -> JobState:
    current = VoiceJobStatus(status)
    if current.is_terminal:
        return Terminal(current)
    if current == VoiceJobStatus.AWAITING_CLARIFICATION:
        return AwaitingClarification(pending_intent_id)
    if current.is_paused:
        return PausedForTest(paused_at_stage or current.value.removeprefix("paused_after_"))
    if paused_at_stage:
        return PausedForTest(paused_at_stage)
    return Active(current)
