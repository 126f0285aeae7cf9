"""Shared stage execution: payload validation, pause checks, retry vs terminal failure."""

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass, field

from celery import Task
from pydantic import BaseModel

from voicecal.config import get_settings
from voicecal.database import SessionLocal
from voicecal.schemas.payloads import SendNotificationPayload
from voicecal.services.context import PipelineContext, init_resources, pipeline_context
from voicecal.services.errors import ClassifiedError, classify_error, log_classified_error
from voicecal.services.queue import STAGE_OPTIONS, Stage
from voicecal.services.voice_jobs import (
    get_voice_job,
    is_held,
    mark_failed,
    record_error,
    should_skip_stage,
)

logger = logging.getLogger(__name__)


@dataclass
class StageResult:
    status: str
    next_stage: str | None = None
    detail: dict = field(default_factory=dict)

    def as_dict(self) -> dict:
        return asdict(self)


Handler = Callable[[BaseModel, PipelineContext], StageResult]
GiveUpHook = Callable[[BaseModel, PipelineContext], None]


def run_stage(
    task: Task,
    stage: Stage,
    raw_payload: dict,
    handler: Handler,
    on_give_up: GiveUpHook | None = None,
) -> dict:
    """Entry point used by every stage task."""
    payload = STAGE_OPTIONS[stage].payload_model.model_validate(raw_payload)
    resources = init_resources(get_settings(), task.app)
    with pipeline_context(SessionLocal, resources) as ctx:
        return execute_stage(task, stage, payload, handler, ctx, on_give_up).as_dict()


def execute_stage(
    task: Task,
    stage: Stage,
    payload: BaseModel,
    handler: Handler,
    ctx: PipelineContext,
    on_give_up: GiveUpHook | None = None,
) -> StageResult:
    job = get_voice_job(ctx.db, payload.job_id)
    if not job:
        logger.error(f"Voice job {payload.job_id} not found for {stage}")
        return StageResult("failed", detail={"error": "Voice job not found"})

    if stage != Stage.SEND_NOTIFICATION and is_held(job):
        logger.info(f"Job {job.id} is paused at {job.paused_at_stage}, re-queuing {stage}")
        task.apply_async(
            kwargs={"payload": payload.model_dump(mode="json")},
            countdown=ctx.settings.pause_recheck_seconds,
            queue=stage.queue,
        )
        return StageResult("held", detail={"paused_at_stage": job.paused_at_stage})

    if should_skip_stage(job, stage):
        logger.info(f"Skipping {stage} for job {job.id}: already at {job.status}")
        return StageResult("skipped", detail={"status": job.status})

    try:
        return handler(payload, ctx)
    except Exception as e:
        return _handle_failure(task, stage, payload, ctx, e, on_give_up)


def _handle_failure(
    task: Task,
    stage: Stage,
    payload: BaseModel,
    ctx: PipelineContext,
    error: Exception,
    on_give_up: GiveUpHook | None,
) -> StageResult:
    ctx.db.rollback()
    options = STAGE_OPTIONS[stage]
    retries = task.request.retries or 0
    classified = classify_error(error)
    log_classified_error(classified, job_id=payload.job_id, stage=stage.value, attempt=retries + 1)

    try:
        record_error(ctx.db, payload.job_id, classified.internal_message, stage.value, retries + 1)
    except Exception as e:
        ctx.db.rollback()
        logger.warning(f"Failed to record error for job {payload.job_id}: {e}")

    if classified.is_retryable and retries < options.effective_attempts - 1:
        raise task.retry(exc=error, countdown=options.countdown(retries)) from error

    if on_give_up:
        try:
            on_give_up(payload, ctx)
        except Exception as e:
            logger.warning(f"Cleanup after {stage} failure for job {payload.job_id} failed: {e}")

    if stage == Stage.SEND_NOTIFICATION:
        logger.error(f"Giving up on notification for job {payload.job_id}: {error}")
        return StageResult("failed", detail={"category": classified.category.value})

    fail_and_notify(ctx, payload.job_id, stage, classified)
    return StageResult(
        "failed",
        next_stage=Stage.SEND_NOTIFICATION.value,
        detail={"category": classified.category.value, "error": classified.internal_message},
    )


def fail_and_notify(
    ctx: PipelineContext, job_id: int, stage: Stage, classified: ClassifiedError
) -> None:
    """Terminal failure: mark the job failed and tell the user exactly once."""
    mark_failed(ctx.db, job_id, classified.internal_message, stage.value)
    ctx.queue.enqueue(
        Stage.SEND_NOTIFICATION,
        SendNotificationPayload(
            job_id=job_id,
            success=False,
            message=classified.user_message,
            error_category=classified.category.value,
        ),
    )
