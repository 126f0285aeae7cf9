"""Celery task for telling the user how their voice note turned out."""

import logging

from voicecal.celery_app import app as celery_app
from voicecal.schemas.intent import IntentSnapshot
from voicecal.schemas.payloads import SendNotificationPayload
from voicecal.services.context import PipelineContext
from voicecal.services.queue import STAGE_OPTIONS, Stage
from voicecal.services.timing import StageOutcome, with_stage_timing
from voicecal.services.voice_jobs import get_voice_job, mark_completed
from voicecal.tasks.stage_runner import StageResult, run_stage

logger = logging.getLogger(__name__)


def handle_send_notification(
    payload: SendNotificationPayload, ctx: PipelineContext
) -> StageResult:
    db = ctx.db
    job = get_voice_job(db, payload.job_id)
    intent = IntentSnapshot.model_validate(job.intent_snapshot) if job.intent_snapshot else None

    def metadata(outcome: StageOutcome) -> dict:
        data = {"success": payload.success, "action": payload.action}
        if payload.error_category:
            data["errorCategory"] = payload.error_category
        if not outcome.ok:
            data["error"] = str(outcome.error)
        return data

    message_id = with_stage_timing(
        db,
        job.id,
        "notification_send",
        lambda: ctx.notifications.send_outcome(job.sender_address, payload, intent),
        metadata=metadata,
    )

    if payload.success:
        mark_completed(db, job.id)
        logger.info(f"Job {job.id} completed")
    return StageResult("sent", detail={"message_id": message_id, "success": payload.success})


@celery_app.task(
    bind=True,
    name=STAGE_OPTIONS[Stage.SEND_NOTIFICATION].task_name,
    max_retries=STAGE_OPTIONS[Stage.SEND_NOTIFICATION].effective_attempts - 1,
)
def send_notification(self, payload: dict) -> dict:
    """Send the outcome message for a voice job."""
    return run_stage(self, Stage.SEND_NOTIFICATION, payload, handle_send_notification)
