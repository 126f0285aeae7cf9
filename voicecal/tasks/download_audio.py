"""Celery task for downloading voice note audio."""

import logging

from voicecal.celery_app import app as celery_app
from voicecal.models.enums import VoiceJobStatus
from voicecal.schemas.payloads import DownloadAudioPayload, TranscribeAudioPayload
from voicecal.services.context import PipelineContext
from voicecal.services.queue import STAGE_OPTIONS, Stage
from voicecal.services.timing import StageOutcome, with_stage_timing
from voicecal.services.voice_jobs import (
    get_voice_job,
    pause_after_if_requested,
    set_status,
    update_voice_job,
)
from voicecal.tasks.stage_runner import StageResult, run_stage

logger = logging.getLogger(__name__)


def _download_metadata(outcome: StageOutcome) -> dict:
    if not outcome.ok:
        return {"error": str(outcome.error)}
    path, size, mime_type = outcome.result
    return {"sizeBytes": size, "mimeType": mime_type, "path": path}


def handle_download_audio(payload: DownloadAudioPayload, ctx: PipelineContext) -> StageResult:
    """Fetch the media from the channel and hand it to transcription via temp storage."""
    db = ctx.db
    set_status(db, payload.job_id, VoiceJobStatus.DOWNLOADING)
    logger.info(f"Downloading audio for job {payload.job_id} (media {payload.media_id})")

    def download() -> tuple[str, int, str | None]:
        data, media_mime = ctx.whatsapp.download_media(payload.media_id)
        mime_type = payload.mime_type or media_mime
        path = ctx.storage.save_temp(payload.job_id, data, mime_type)
        update_voice_job(
            db,
            payload.job_id,
            audio_file_path=path,
            audio_size_bytes=len(data),
            mime_type=mime_type,
        )
        return path, len(data), mime_type

    path, size, mime_type = with_stage_timing(
        db, payload.job_id, "audio_download", download, metadata=_download_metadata
    )

    job = get_voice_job(db, payload.job_id)
    if pause_after_if_requested(db, job, Stage.DOWNLOAD_AUDIO):
        return StageResult("paused", detail={"audio_path": path})

    ctx.queue.enqueue(
        Stage.TRANSCRIBE_AUDIO,
        TranscribeAudioPayload(job_id=payload.job_id, audio_path=path, mime_type=mime_type),
    )
    return StageResult(
        "completed", next_stage=Stage.TRANSCRIBE_AUDIO.value, detail={"size_bytes": size}
    )


@celery_app.task(
    bind=True,
    name=STAGE_OPTIONS[Stage.DOWNLOAD_AUDIO].task_name,
    max_retries=STAGE_OPTIONS[Stage.DOWNLOAD_AUDIO].effective_attempts - 1,
)
def download_audio(self, payload: dict) -> dict:
    """Download the audio for a voice job."""
    return run_stage(self, Stage.DOWNLOAD_AUDIO, payload, handle_download_audio)
