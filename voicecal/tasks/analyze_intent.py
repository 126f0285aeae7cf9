"""Celery task for extracting a calendar intent from a transcription."""

import logging
import uuid
from collections.abc import Callable

from voicecal.celery_app import app as celery_app
from voicecal.models.enums import PayloadType, VoiceJobStatus
from voicecal.schemas.intent import IntentSnapshot
from voicecal.schemas.payloads import AnalyzeIntentPayload, ProcessIntentPayload
from voicecal.services.context import PipelineContext
from voicecal.services.intent_extraction import IntentExtraction, record_intent_payload
from voicecal.services.queue import STAGE_OPTIONS, Stage
from voicecal.services.timing import StageOutcome, with_stage_timing
from voicecal.services.voice_jobs import (
    get_voice_job,
    job_timezone,
    pause_after_if_requested,
    set_status,
    update_voice_job,
)
from voicecal.tasks.stage_runner import StageResult, run_stage

logger = logging.getLogger(__name__)


def _analysis_metadata(outcome: StageOutcome) -> dict:
    if not outcome.ok:
        return {"error": str(outcome.error)}
    snapshot: IntentSnapshot = outcome.result
    return {
        "action": snapshot.action.value if snapshot.action else None,
        "confidence": snapshot.confidence,
        "missingFields": len(snapshot.missing_fields),
    }


def _request_metadata(outcome: StageOutcome) -> dict:
    if not outcome.ok:
        return {"error": str(outcome.error)}
    extraction: IntentExtraction = outcome.result
    return {"responseKeys": sorted(extraction.raw_response)}


def _context_metadata(outcome: StageOutcome) -> dict:
    if not outcome.ok:
        return {"error": str(outcome.error)}
    context: dict = outcome.result
    return {
        "contactCount": len(context.get("contacts", [])),
        "recentEventCount": len(context.get("recentEvents", [])),
    }


def _fetch_or_empty(job_id: int, label: str, fetch: Callable[[], list]) -> list:
    try:
        return fetch()
    except Exception as e:
        logger.warning(f"Could not load {label} for job {job_id}, continuing without: {e}")
        return []


def handle_analyze_intent(payload: AnalyzeIntentPayload, ctx: PipelineContext) -> StageResult:
    db = ctx.db
    set_status(db, payload.job_id, VoiceJobStatus.ANALYZING)
    job = get_voice_job(db, payload.job_id)

    intent_job_id = job.intent_job_id or str(uuid.uuid4())
    if not job.intent_job_id:
        update_voice_job(db, job.id, intent_job_id=intent_job_id)
    timezone = job_timezone(db, job, ctx.settings.default_timezone)
    extractor = ctx.intent_extractor
    audit = {"intentJobId": intent_job_id}

    def gather_context() -> dict:
        contacts = _fetch_or_empty(
            job.id, "contacts", lambda: ctx.calendar.get_contacts(job.user_id)
        )
        events = _fetch_or_empty(
            job.id, "recent events", lambda: ctx.calendar.get_recent_events(job.user_id)
        )
        return extractor.build_context(timezone, contacts=contacts, recent_events=events)

    def analyze() -> IntentSnapshot:
        context = with_stage_timing(
            db, job.id, "intent_build_context", gather_context, metadata=_context_metadata
        )
        record_intent_payload(
            db, job.id, PayloadType.CONTEXT, context, extractor.provider, audit
        )
        prompt = extractor.build_prompt(payload.transcribed_text, context)
        record_intent_payload(
            db, job.id, PayloadType.PROMPT, {"prompt": prompt}, extractor.provider, audit
        )

        try:
            extraction = with_stage_timing(
                db,
                job.id,
                "intent_request",
                lambda: extractor.extract(payload.transcribed_text, context),
                metadata=_request_metadata,
            )
        except Exception as e:
            record_intent_payload(
                db,
                job.id,
                PayloadType.RESPONSE,
                {"error": str(e)},
                extractor.provider,
                {**audit, "failed": True},
            )
            raise

        record_intent_payload(
            db, job.id, PayloadType.RESPONSE, extraction.raw_response, extractor.provider, audit
        )
        update_voice_job(
            db,
            job.id,
            intent_snapshot=extraction.snapshot.to_storage(),
            intent_provider=extractor.provider,
        )
        return extraction.snapshot

    snapshot = with_stage_timing(
        db, job.id, "intent_analysis", analyze, metadata=_analysis_metadata
    )
    logger.info(f"Job {job.id} intent: {snapshot.action} (confidence {snapshot.confidence})")

    db.refresh(job)
    if pause_after_if_requested(db, job, Stage.ANALYZE_INTENT):
        return StageResult("paused")

    ctx.queue.enqueue(
        Stage.PROCESS_INTENT,
        ProcessIntentPayload(job_id=job.id, intent_snapshot=snapshot.to_storage()),
    )
    return StageResult(
        "completed",
        next_stage=Stage.PROCESS_INTENT.value,
        detail={"action": snapshot.action.value if snapshot.action else None},
    )


@celery_app.task(
    bind=True,
    name=STAGE_OPTIONS[Stage.ANALYZE_INTENT].task_name,
    max_retries=STAGE_OPTIONS[Stage.ANALYZE_INTENT].effective_attempts - 1,
)
def analyze_intent(self, payload: dict) -> dict:
    """Extract the calendar intent for a voice job."""
    return run_stage(self, Stage.ANALYZE_INTENT, payload, handle_analyze_intent)
