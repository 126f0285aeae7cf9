"""Voice job persistence: atomic updates, stage bookkeeping and pause-for-testing."""

import logging
from datetime import UTC, datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from voicecal.models import ChannelNumber, VoiceJob
from voicecal.models.enums import PendingIntentStatus, VoiceJobStatus
from voicecal.models.job_state import AwaitingClarification, PausedForTest, Terminal
from voicecal.schemas.intent import CalendarAction, IntentSnapshot
from voicecal.schemas.payloads import (
    AnalyzeIntentPayload,
    CalendarActionPayload,
    ProcessIntentPayload,
    SendNotificationPayload,
    StagePayload,
    TranscribeAudioPayload,
)
from voicecal.schemas.whatsapp import ParsedMessage
from voicecal.services.queue import QueueManager, Stage

logger = logging.getLogger(__name__)

# Status a stage moves the job into when it starts work
STAGE_ENTRY_STATUS: dict[Stage, VoiceJobStatus] = {
    Stage.DOWNLOAD_AUDIO: VoiceJobStatus.DOWNLOADING,
    Stage.TRANSCRIBE_AUDIO: VoiceJobStatus.TRANSCRIBING,
    Stage.ANALYZE_INTENT: VoiceJobStatus.ANALYZING,
    Stage.PROCESS_INTENT: VoiceJobStatus.PROCESSING,
    Stage.CREATE_EVENT: VoiceJobStatus.CREATING_EVENT,
    Stage.UPDATE_EVENT: VoiceJobStatus.UPDATING_EVENT,
    Stage.DELETE_EVENT: VoiceJobStatus.DELETING_EVENT,
}

ACTION_STAGES: dict[CalendarAction, Stage] = {
    CalendarAction.CREATE: Stage.CREATE_EVENT,
    CalendarAction.UPDATE: Stage.UPDATE_EVENT,
    CalendarAction.DELETE: Stage.DELETE_EVENT,
}

PAUSABLE_STAGES = {stage.short_name: stage for stage in STAGE_ENTRY_STATUS}

# Manual hold placed by an operator; every stage re-delays until resumed
OPERATOR_HOLD = "operator"


def get_voice_job(db: Session, job_id: int) -> VoiceJob | None:
    return db.query(VoiceJob).filter(VoiceJob.id == job_id).first()


def update_voice_job(db: Session, job_id: int, **values) -> None:
    """Apply a single atomic UPDATE keyed by job id and commit."""
    db.query(VoiceJob).filter(VoiceJob.id == job_id).update(values, synchronize_session="fetch")
    db.commit()


def set_status(db: Session, job_id: int, status: VoiceJobStatus) -> None:
    update_voice_job(db, job_id, status=status.value)


def record_error(
    db: Session, job_id: int, error_message: str, error_stage: str, retry_count: int
) -> None:
    update_voice_job(
        db,
        job_id,
        error_message=error_message,
        error_stage=error_stage,
        retry_count=retry_count,
    )


def mark_failed(db: Session, job_id: int, error_message: str, error_stage: str) -> None:
    update_voice_job(
        db,
        job_id,
        status=VoiceJobStatus.FAILED.value,
        error_message=error_message,
        error_stage=error_stage,
        completed_at=datetime.now(UTC),
    )


def mark_completed(db: Session, job_id: int) -> None:
    update_voice_job(
        db,
        job_id,
        status=VoiceJobStatus.COMPLETED.value,
        completed_at=datetime.now(UTC),
    )


def should_skip_stage(job: VoiceJob, stage: Stage) -> bool:
    """True when a redelivered stage would repeat work the job has moved past."""
    state = job.state
    if stage == Stage.SEND_NOTIFICATION:
        return False
    if isinstance(state, Terminal):
        return True
    if stage == Stage.PROCESS_INTENT and isinstance(state, AwaitingClarification):
        # Only a resolved round resumes processing
        return job.clarification_status != PendingIntentStatus.RESOLVED
    return VoiceJobStatus(job.status).rank > STAGE_ENTRY_STATUS[stage].rank


def is_held(job: VoiceJob) -> bool:
    """A pause flag is set, so stage entry must re-delay."""
    return isinstance(job.state, PausedForTest) and job.paused_at_stage is not None


def pause_after_if_requested(db: Session, job: VoiceJob, stage: Stage) -> bool:
    """Park the job after ``stage`` when its test configuration asks for it."""
    if job.pause_after_stage != stage.short_name:
        return False
    logger.info(f"Pausing job {job.id} after {stage.short_name} stage for testing")
    update_voice_job(
        db,
        job.id,
        status=f"paused_after_{stage.short_name}",
        paused_at_stage=stage.short_name,
    )
    return True


def find_verified_channel_number(db: Session, address: str) -> ChannelNumber | None:
    normalized = address if address.startswith("+") else f"+{address}"
    return (
        db.query(ChannelNumber)
        .filter(
            ChannelNumber.phone_number.in_([address, normalized]),
            ChannelNumber.is_verified.is_(True),
        )
        .first()
    )


def create_voice_job(
    db: Session, channel_number: ChannelNumber, message: ParsedMessage
) -> tuple[VoiceJob, bool]:
    """Create the job for an inbound audio message, once per media id.

    Returns the job and whether it was created by this call.
    """
    existing = db.query(VoiceJob).filter(VoiceJob.media_id == message.media_id).first()
    if existing:
        return existing, False

    job = VoiceJob(
        user_id=channel_number.user_id,
        channel_number_id=channel_number.id,
        inbound_message_id=message.message_id,
        media_id=message.media_id,
        sender_address=message.sender,
        mime_type=message.mime_type,
        status=VoiceJobStatus.RECEIVED.value,
    )
    db.add(job)
    try:
        db.commit()
    except IntegrityError:
        # Concurrent delivery of the same message won the insert
        db.rollback()
        existing = (
            db.query(VoiceJob)
            .filter(
                (VoiceJob.media_id == message.media_id)
                | (VoiceJob.inbound_message_id == message.message_id)
            )
            .first()
        )
        if existing is None:
            raise
        return existing, False

    db.refresh(job)
    return job, True


def request_pause(db: Session, job: VoiceJob, after_stage: str | None) -> None:
    """Pause a job after a named stage, or hold it immediately when no stage is given."""
    if after_stage is None:
        update_voice_job(db, job.id, paused_at_stage=OPERATOR_HOLD)
        return
    if after_stage not in PAUSABLE_STAGES:
        raise ValueError(f"Unknown stage '{after_stage}'")
    config = dict(job.test_configuration or {})
    config["pauseAfterStage"] = after_stage
    update_voice_job(db, job.id, is_test_job=True, test_configuration=config)


def next_stage_payload(job: VoiceJob) -> tuple[Stage, StagePayload] | None:
    """Rebuild the payload for the stage after the one the job is paused at."""
    status = VoiceJobStatus(job.status)
    if status == VoiceJobStatus.PAUSED_AFTER_DOWNLOAD:
        if not job.audio_file_path:
            return None
        return Stage.TRANSCRIBE_AUDIO, TranscribeAudioPayload(
            job_id=job.id, audio_path=job.audio_file_path, mime_type=job.mime_type
        )
    if status == VoiceJobStatus.PAUSED_AFTER_TRANSCRIBE:
        if not job.transcribed_text:
            return None
        return Stage.ANALYZE_INTENT, AnalyzeIntentPayload(
            job_id=job.id, transcribed_text=job.transcribed_text
        )
    if status == VoiceJobStatus.PAUSED_AFTER_ANALYZE:
        if not job.intent_snapshot:
            return None
        return Stage.PROCESS_INTENT, ProcessIntentPayload(
            job_id=job.id, intent_snapshot=job.intent_snapshot
        )
    if status == VoiceJobStatus.PAUSED_AFTER_PROCESS:
        if not job.intent_snapshot:
            return None
        snapshot = IntentSnapshot.model_validate(job.intent_snapshot)
        stage = ACTION_STAGES.get(snapshot.action)
        if stage is None:
            return None
        return stage, CalendarActionPayload(job_id=job.id, intent_snapshot=job.intent_snapshot)
    if status in (
        VoiceJobStatus.PAUSED_AFTER_CREATE,
        VoiceJobStatus.PAUSED_AFTER_UPDATE,
        VoiceJobStatus.PAUSED_AFTER_DELETE,
    ):
        snapshot = IntentSnapshot.model_validate(job.intent_snapshot or {})
        return Stage.SEND_NOTIFICATION, SendNotificationPayload(
            job_id=job.id,
            success=True,
            action=snapshot.action.value if snapshot.action else None,
            event_id=job.calendar_event_id,
            event_link=job.calendar_event_link,
        )
    return None


def resume_job(db: Session, queue: QueueManager, job: VoiceJob) -> tuple[Stage | None, bool]:
    """Clear a pause and enqueue whatever comes next from persisted job data."""
    status = VoiceJobStatus(job.status)
    next_step = next_stage_payload(job) if status.is_paused else None

    config = dict(job.test_configuration or {})
    config.pop("pauseAfterStage", None)
    values = {"paused_at_stage": None, "test_configuration": config or None}
    if next_step is not None:
        # Move off the paused side-state so the next stage's entry check passes
        values["status"] = STAGE_ENTRY_STATUS.get(next_step[0], status).value
    update_voice_job(db, job.id, **values)

    if next_step is None:
        logger.info(f"Released hold on job {job.id}; nothing to enqueue")
        return None, False

    stage, payload = next_step
    enqueued = queue.enqueue(stage, payload)
    logger.info(f"Resumed job {job.id} into {stage} (enqueued={enqueued})")
    return stage, enqueued


def job_timezone(db: Session, job: VoiceJob, default: str) -> str:
    """The sender's timezone, falling back to the configured default."""
    channel_number = (
        db.query(ChannelNumber).filter(ChannelNumber.id == job.channel_number_id).first()
    )
    if channel_number and channel_number.timezone:
        return channel_number.timezone
    return default
