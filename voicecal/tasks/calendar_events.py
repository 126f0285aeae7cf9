"""Celery tasks for creating, updating and deleting calendar events."""

import logging
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from voicecal.celery_app import app as celery_app
from voicecal.models.enums import VoiceJobStatus
from voicecal.schemas.intent import CalendarAction, IntentSnapshot
from voicecal.schemas.payloads import CalendarActionPayload, SendNotificationPayload
from voicecal.services.calendar import CalendarEvent
from voicecal.services.context import PipelineContext
from voicecal.services.errors import CalendarError, StageDataError
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

DEFAULT_DURATION_MINUTES = 60


def build_event_body(intent: IntentSnapshot, timezone: str) -> dict:
    """Translate an intent into the calendar gateway's event shape."""
    if not intent.start_date:
        raise StageDataError("Invalid intent: event has no start date")
    start_day = date.fromisoformat(intent.start_date)
    body = {
        "title": intent.title or "Untitled Event",
        "description": intent.description,
        "location": intent.location,
        "attendees": list(intent.attendees),
        "timezone": timezone,
        "isAllDay": intent.is_all_day,
    }

    if intent.is_all_day or not intent.start_time:
        end_day = date.fromisoformat(intent.end_date) if intent.end_date else start_day
        body["start"] = start_day.isoformat()
        body["end"] = (end_day + timedelta(days=1)).isoformat()
        body["isAllDay"] = True
        return body

    tz = ZoneInfo(timezone)
    start = datetime.combine(start_day, time.fromisoformat(intent.start_time), tzinfo=tz)
    if intent.end_time:
        end_day = date.fromisoformat(intent.end_date) if intent.end_date else start_day
        end = datetime.combine(end_day, time.fromisoformat(intent.end_time), tzinfo=tz)
    else:
        end = start + timedelta(minutes=intent.duration_minutes or DEFAULT_DURATION_MINUTES)
    body["start"] = start.isoformat()
    body["end"] = end.isoformat()
    return body


def build_event_changes(intent: IntentSnapshot, timezone: str) -> dict:
    """Only the fields the user actually asked to change."""
    changes = {}
    if intent.title and intent.title != intent.target_event_title:
        changes["title"] = intent.title
    if intent.start_date:
        body = build_event_body(intent, timezone)
        for key in ("start", "end", "isAllDay", "timezone"):
            changes[key] = body[key]
    if intent.location:
        changes["location"] = intent.location
    if intent.description:
        changes["description"] = intent.description
    if intent.attendees:
        changes["attendees"] = list(intent.attendees)
    return changes


def find_target_event(
    ctx: PipelineContext, user_id: int, intent: IntentSnapshot
) -> CalendarEvent:
    """The existing event an update or delete refers to."""
    title = intent.target_event_title or intent.title
    matches = ctx.calendar.search_events(
        user_id,
        title=title,
        date=intent.target_event_date,
        time=intent.target_event_time,
    )
    if not matches:
        described = f'"{title}"' if title else "that description"
        when = f" on {intent.target_event_date}" if intent.target_event_date else ""
        raise CalendarError(f"Event not found: no event matching {described}{when}")
    if len(matches) > 1:
        now = datetime.now(UTC)
        upcoming = [m for m in matches if _aware(m.start) >= now]
        matches = sorted(upcoming or matches, key=lambda m: _aware(m.start))
        logger.info(f"{len(matches)} events match {title!r}; using {matches[0].id}")
    return matches[0]


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def _event_metadata(outcome: StageOutcome) -> dict:
    if not outcome.ok:
        return {"error": str(outcome.error)}
    event: CalendarEvent = outcome.result
    return {"eventId": event.id, "hasLink": bool(event.link)}


def _finish(
    ctx: PipelineContext, job_id: int, stage: Stage, action: CalendarAction
) -> StageResult:
    job = get_voice_job(ctx.db, job_id)
    if pause_after_if_requested(ctx.db, job, stage):
        return StageResult("paused")
    ctx.queue.enqueue(
        Stage.SEND_NOTIFICATION,
        SendNotificationPayload(
            job_id=job_id,
            success=True,
            action=action.value,
            event_id=job.calendar_event_id,
            event_link=job.calendar_event_link,
        ),
    )
    return StageResult(
        "completed",
        next_stage=Stage.SEND_NOTIFICATION.value,
        detail={"event_id": job.calendar_event_id},
    )


def handle_create_event(payload: CalendarActionPayload, ctx: PipelineContext) -> StageResult:
    db = ctx.db
    set_status(db, payload.job_id, VoiceJobStatus.CREATING_EVENT)
    job = get_voice_job(db, payload.job_id)

    if job.calendar_event_id:
        # Redelivered after the event was already created
        logger.info(f"Job {job.id} already created event {job.calendar_event_id}")
        return _finish(ctx, job.id, Stage.CREATE_EVENT, CalendarAction.CREATE)

    intent = IntentSnapshot.model_validate(payload.intent_snapshot)
    timezone = job_timezone(db, job, ctx.settings.default_timezone)

    def create() -> CalendarEvent:
        event = ctx.calendar.create_event(job.user_id, build_event_body(intent, timezone))
        update_voice_job(
            db, job.id, calendar_event_id=event.id, calendar_event_link=event.link
        )
        return event

    with_stage_timing(db, job.id, "event_create", create, metadata=_event_metadata)
    return _finish(ctx, job.id, Stage.CREATE_EVENT, CalendarAction.CREATE)


def handle_update_event(payload: CalendarActionPayload, ctx: PipelineContext) -> StageResult:
    db = ctx.db
    set_status(db, payload.job_id, VoiceJobStatus.UPDATING_EVENT)
    job = get_voice_job(db, payload.job_id)
    intent = IntentSnapshot.model_validate(payload.intent_snapshot)
    timezone = job_timezone(db, job, ctx.settings.default_timezone)

    def update() -> CalendarEvent:
        target = find_target_event(ctx, job.user_id, intent)
        changes = build_event_changes(intent, timezone)
        if not changes:
            raise StageDataError("Invalid intent: no changes requested for the event")
        event = ctx.calendar.update_event(job.user_id, target.id, changes)
        update_voice_job(
            db, job.id, calendar_event_id=event.id, calendar_event_link=event.link
        )
        return event

    with_stage_timing(db, job.id, "event_update", update, metadata=_event_metadata)
    return _finish(ctx, job.id, Stage.UPDATE_EVENT, CalendarAction.UPDATE)


def handle_delete_event(payload: CalendarActionPayload, ctx: PipelineContext) -> StageResult:
    db = ctx.db
    set_status(db, payload.job_id, VoiceJobStatus.DELETING_EVENT)
    job = get_voice_job(db, payload.job_id)
    intent = IntentSnapshot.model_validate(payload.intent_snapshot)

    def delete() -> CalendarEvent:
        target = find_target_event(ctx, job.user_id, intent)
        ctx.calendar.delete_event(job.user_id, target.id)
        update_voice_job(db, job.id, calendar_event_id=target.id, calendar_event_link=None)
        return target

    with_stage_timing(db, job.id, "event_delete", delete, metadata=_event_metadata)
    return _finish(ctx, job.id, Stage.DELETE_EVENT, CalendarAction.DELETE)


@celery_app.task(
    bind=True,
    name=STAGE_OPTIONS[Stage.CREATE_EVENT].task_name,
    max_retries=STAGE_OPTIONS[Stage.CREATE_EVENT].effective_attempts - 1,
)
def create_event(self, payload: dict) -> dict:
    """Create the calendar event for a voice job."""
    return run_stage(self, Stage.CREATE_EVENT, payload, handle_create_event)


@celery_app.task(
    bind=True,
    name=STAGE_OPTIONS[Stage.UPDATE_EVENT].task_name,
    max_retries=STAGE_OPTIONS[Stage.UPDATE_EVENT].effective_attempts - 1,
)
def update_event(self, payload: dict) -> dict:
    """Update an existing calendar event for a voice job."""
    return run_stage(self, Stage.UPDATE_EVENT, payload, handle_update_event)


@celery_app.task(
    bind=True,
    name=STAGE_OPTIONS[Stage.DELETE_EVENT].task_name,
    max_retries=STAGE_OPTIONS[Stage.DELETE_EVENT].effective_attempts - 1,
)
def delete_event(self, payload: dict) -> dict:
    """Delete an existing calendar event for a voice job."""
    return run_stage(self, Stage.DELETE_EVENT, payload, handle_delete_event)
