"""SQLAlchemy models."""

from voicecal.models.channel_number import ChannelNumber
from voicecal.models.pending_intent import FlowSession, InteractivePrompt, PendingIntent
from voicecal.models.voice_job import VoiceJob
from voicecal.models.voice_job_timing import IntentPipelinePayload, VoiceJobTiming

__all__ = [
    "ChannelNumber",
    "VoiceJob",
    "PendingIntent",
    "InteractivePrompt",
    "FlowSession",
    "VoiceJobTiming",
    "IntentPipelinePayload",
]
