"""Celery task for resolving an intent or starting a clarification round."""

import logging

from voicecal.celery_app import app as celery_app
from voicecal.models.enums import VoiceJobStatus
from voicecal.schemas.intent import (
    CalendarAction,
    ConflictResolution,
    IntentSnapshot,
    ResolutionResult,
)
from voicecal.schemas.payloads import (
    CalendarActionPayload,
    ProcessIntentPayload,
    SendNotificationPayload,
)
from voicecal.services.context import PipelineContext
from voicecal.services.errors import StageDataError
from voicecal.services.queue import STAGE_OPTIONS, Stage
from voicecal.services.resolution import ResolutionContext
from voicecal.services.timing import StageOutcome, with_stage_timing
from voicecal.services.voice_jobs import (
    ACTION_STAGES,
    get_voice_job,
    job_timezone,
    pause_after_if_requested,
    set_status,
    update_voice_job,
)
from voicecal.tasks.stage_runner import StageResult, run_stage

logger = logging.getLogger(__name__)

CONFLICT_CANCELLED_MESSAGE = (
    "Got it, I won't schedule that event. Let me know if you need anything else."
)


def _resolution_metadata(outcome: StageOutcome) -> dict:
    if not outcome.ok:
        return {"error": str(outcome.error)}
    result: ResolutionResult = outcome.result
    return {
        "action": result.snapshot.action.value if result.snapshot.action else None,
        "complete": result.is_complete,
        "pendingClarifications": len(result.clarifications),
        "resolvedAttendees": len(result.resolved_attendees),
    }


def handle_process_intent(payload: ProcessIntentPayload, ctx: PipelineContext) -> StageResult:
    db = ctx.db
    set_status(db, payload.job_id, VoiceJobStatus.PROCESSING)
    job = get_voice_job(db, payload.job_id)

    snapshot = IntentSnapshot.model_validate(payload.intent_snapshot)
    if snapshot.action is None:
        raise StageDataError("Invalid intent: no calendar action to process")
    if snapshot.conflict_resolution == ConflictResolution.CANCEL:
        return _cancel_for_conflict(job.id, snapshot, ctx)

    context = ResolutionContext(
        user_id=job.user_id,
        timezone=job_timezone(db, job, ctx.settings.default_timezone),
    )
    result = with_stage_timing(
        db,
        job.id,
        "intent_resolution",
        lambda: ctx.resolution_pipeline.resolve(snapshot, context),
        metadata=_resolution_metadata,
    )

    if not result.is_complete:
        pending = ctx.clarification.begin(job, result)
        return StageResult(
            "awaiting_clarification",
            detail={
                "pending_intent_id": pending.id,
                "round": pending.round,
                "questions": len(result.clarifications),
            },
        )

    resolved = result.snapshot.to_storage()
    update_voice_job(db, job.id, intent_snapshot=resolved)
    logger.info(
        f"Job {job.id} intent resolved (round {payload.clarification_round}): "
        f"{result.snapshot.action}"
    )

    if result.snapshot.action == CalendarAction.QUERY:
        return _answer_query(job.id, job.user_id, result.snapshot, ctx)

    db.refresh(job)
    if pause_after_if_requested(db, job, Stage.PROCESS_INTENT):
        return StageResult("paused")

    next_stage = ACTION_STAGES[result.snapshot.action]
    ctx.queue.enqueue(next_stage, CalendarActionPayload(job_id=job.id, intent_snapshot=resolved))
    return StageResult("completed", next_stage=next_stage.value)


def _cancel_for_conflict(
    job_id: int, snapshot: IntentSnapshot, ctx: PipelineContext
) -> StageResult:
    """The user chose not to schedule over an existing event."""
    update_voice_job(ctx.db, job_id, intent_snapshot=snapshot.to_storage())
    ctx.queue.enqueue(
        Stage.SEND_NOTIFICATION,
        SendNotificationPayload(job_id=job_id, success=True, message=CONFLICT_CANCELLED_MESSAGE),
    )
    logger.info(f"Job {job_id} cancelled after a calendar conflict")
    return StageResult("cancelled", next_stage=Stage.SEND_NOTIFICATION.value)


def _answer_query(
    job_id: int, user_id: int, snapshot: IntentSnapshot, ctx: PipelineContext
) -> StageResult:
    """Look up matching events and send them straight to the user."""
    events = ctx.calendar.search_events(
        user_id,
        title=snapshot.title or snapshot.target_event_title,
        date=snapshot.start_date or snapshot.target_event_date,
    )
    ctx.queue.enqueue(
        Stage.SEND_NOTIFICATION,
        SendNotificationPayload(
            job_id=job_id,
            success=True,
            action=CalendarAction.QUERY.value,
            events=[event.to_summary() for event in events],
        ),
    )
    return StageResult(
        "completed", next_stage=Stage.SEND_NOTIFICATION.value, detail={"events": len(events)}
    )


@celery_app.task(
    bind=True,
    name=STAGE_OPTIONS[Stage.PROCESS_INTENT].task_name,
    max_retries=STAGE_OPTIONS[Stage.PROCESS_INTENT].effective_attempts - 1,
)
def process_intent(self, payload: dict) -> dict:
    """Resolve the intent for a voice job."""
    return run_stage(self, Stage.PROCESS_INTENT, payload, handle_process_intent)
