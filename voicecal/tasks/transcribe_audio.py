"""Celery task for transcribing downloaded audio."""

import logging
from pathlib import Path

from voicecal.celery_app import app as celery_app
from voicecal.models.enums import VoiceJobStatus
from voicecal.schemas.payloads import AnalyzeIntentPayload, TranscribeAudioPayload
from voicecal.services.context import PipelineContext
from voicecal.services.errors import StageDataError
from voicecal.services.queue import STAGE_OPTIONS, Stage
from voicecal.services.timing import StageOutcome, with_stage_timing
from voicecal.services.transcription import TranscriptionResult
from voicecal.services.voice_jobs import (
    get_voice_job,
    pause_after_if_requested,
    set_status,
    update_voice_job,
)
from voicecal.tasks.stage_runner import StageResult, run_stage

logger = logging.getLogger(__name__)


def _transcription_metadata(outcome: StageOutcome) -> dict:
    if not outcome.ok:
        return {"error": str(outcome.error)}
    result: TranscriptionResult = outcome.result
    return {
        "provider": result.provider,
        "language": result.language,
        "textLength": len(result.text),
    }


def handle_transcribe_audio(payload: TranscribeAudioPayload, ctx: PipelineContext) -> StageResult:
    db = ctx.db
    set_status(db, payload.job_id, VoiceJobStatus.TRANSCRIBING)

    def transcribe() -> TranscriptionResult:
        if not Path(payload.audio_path).exists():
            raise StageDataError(f"Invalid stage data: audio file {payload.audio_path} is missing")
        audio = ctx.storage.read(payload.audio_path)
        result = ctx.transcriber.transcribe(audio, payload.mime_type)
        update_voice_job(
            db,
            payload.job_id,
            transcribed_text=result.text,
            transcription_language=result.language,
            stt_provider=result.provider,
        )
        return result

    result = with_stage_timing(
        db, payload.job_id, "transcription", transcribe, metadata=_transcription_metadata
    )
    logger.info(f"Transcription completed for job {payload.job_id}: {len(result.text)} chars")

    job = get_voice_job(db, payload.job_id)
    if pause_after_if_requested(db, job, Stage.TRANSCRIBE_AUDIO):
        return StageResult("paused")

    # Test jobs keep their audio for inspection
    if not job.is_test_job:
        ctx.storage.cleanup(payload.audio_path)

    ctx.queue.enqueue(
        Stage.ANALYZE_INTENT,
        AnalyzeIntentPayload(job_id=payload.job_id, transcribed_text=result.text),
    )
    return StageResult("completed", next_stage=Stage.ANALYZE_INTENT.value)


def cleanup_audio(payload: TranscribeAudioPayload, ctx: PipelineContext) -> None:
    ctx.storage.cleanup(payload.audio_path)


@celery_app.task(
    bind=True,
    name=STAGE_OPTIONS[Stage.TRANSCRIBE_AUDIO].task_name,
    max_retries=STAGE_OPTIONS[Stage.TRANSCRIBE_AUDIO].effective_attempts - 1,
)
def transcribe_audio(self, payload: dict) -> dict:
    """Transcribe the audio for a voice job."""
    return run_stage(
        self, Stage.TRANSCRIBE_AUDIO, payload, handle_transcribe_audio, on_give_up=cleanup_audio
    )
