"""Tests for the individual pipeline stage handlers."""

from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from voicecal.models import IntentPipelinePayload, PendingIntent, VoiceJobTiming
from voicecal.models.enums import VoiceJobStatus
from voicecal.schemas.intent import CalendarAction, IntentSnapshot
from voicecal.schemas.payloads import (
    AnalyzeIntentPayload,
    CalendarActionPayload,
    DownloadAudioPayload,
    ProcessIntentPayload,
    SendNotificationPayload,
    TranscribeAudioPayload,
)
from voicecal.services.calendar import CalendarEvent, Contact
from voicecal.services.errors import CalendarError, StageDataError
from voicecal.services.intent_extraction import IntentExtraction, IntentExtractionService
from voicecal.services.queue import Stage
from voicecal.services.transcription import TranscriptionResult
from voicecal.tasks.analyze_intent import handle_analyze_intent
from voicecal.tasks.calendar_events import (
    build_event_body,
    handle_create_event,
    handle_delete_event,
    handle_update_event,
)
from voicecal.tasks.download_audio import handle_download_audio
from voicecal.tasks.process_intent import CONFLICT_CANCELLED_MESSAGE, handle_process_intent
from voicecal.tasks.send_notification import handle_send_notification
from voicecal.tasks.transcribe_audio import handle_transcribe_audio

CREATE_SNAPSHOT = IntentSnapshot(
    action=CalendarAction.CREATE,
    title="Dentist",
    start_date="2026-03-10",
    start_time="09:00",
).to_storage()


def stages_recorded(db, job_id: int) -> list[str]:
    rows = db.query(VoiceJobTiming).filter(VoiceJobTiming.job_id == job_id).all()
    return [row.stage for row in rows]


def test_download_saves_audio_and_enqueues_transcription(db, ctx, make_job, resources, queue):
    job = make_job()
    resources.whatsapp.download_media.return_value = (b"OggS-bytes", "audio/ogg")

    result = handle_download_audio(DownloadAudioPayload(job_id=job.id, media_id="m1"), ctx)

    assert result.next_stage == Stage.TRANSCRIBE_AUDIO
    db.refresh(job)
    assert job.status == VoiceJobStatus.DOWNLOADING
    assert job.audio_size_bytes == len(b"OggS-bytes")
    assert Path(job.audio_file_path).read_bytes() == b"OggS-bytes"
    assert job.audio_file_path.endswith(".ogg")
    assert queue.last().payload.audio_path == job.audio_file_path
    assert stages_recorded(db, job.id) == ["audio_download"]


def test_download_pauses_when_test_config_asks(db, ctx, make_job, resources, queue):
    """Test that a pause-after-download job parks instead of enqueueing."""
    job = make_job(is_test_job=True, test_configuration={"pauseAfterStage": "download"})
    resources.whatsapp.download_media.return_value = (b"data", "audio/ogg")

    result = handle_download_audio(DownloadAudioPayload(job_id=job.id, media_id="m1"), ctx)

    assert result.status == "paused"
    db.refresh(job)
    assert job.status == VoiceJobStatus.PAUSED_AFTER_DOWNLOAD
    assert job.paused_at_stage == "download"
    assert queue.enqueued == []


def test_transcribe_stores_text_and_removes_audio(db, ctx, make_job, resources, queue):
    job = make_job(status=VoiceJobStatus.DOWNLOADING.value)
    path = ctx.storage.save_temp(job.id, b"audio", "audio/ogg")
    resources.transcriber.transcribe.return_value = TranscriptionResult(
        text="Dentist tomorrow at nine", language="en", provider="openai-compatible"
    )

    handle_transcribe_audio(
        TranscribeAudioPayload(job_id=job.id, audio_path=path, mime_type="audio/ogg"), ctx
    )

    db.refresh(job)
    assert job.transcribed_text == "Dentist tomorrow at nine"
    assert job.stt_provider == "openai-compatible"
    assert not Path(path).exists()
    assert queue.last().stage == Stage.ANALYZE_INTENT
    assert queue.last().payload.transcribed_text == "Dentist tomorrow at nine"


def test_transcribe_keeps_audio_for_test_jobs(db, ctx, make_job, resources):
    job = make_job(is_test_job=True, test_configuration={})
    path = ctx.storage.save_temp(job.id, b"audio", "audio/ogg")
    resources.transcriber.transcribe.return_value = TranscriptionResult(
        text="hi", language="en", provider="openai-compatible"
    )

    handle_transcribe_audio(TranscribeAudioPayload(job_id=job.id, audio_path=path), ctx)

    assert Path(path).exists()


def test_transcribe_missing_audio_is_stage_data_error(db, ctx, make_job, tmp_path):
    job = make_job()

    with pytest.raises(StageDataError):
        handle_transcribe_audio(
            TranscribeAudioPayload(job_id=job.id, audio_path=str(tmp_path / "gone.ogg")), ctx
        )

    assert stages_recorded(db, job.id) == ["transcription"]


def test_analyze_persists_snapshot_and_audit_trail(db, ctx, make_job, resources, queue):
    """Test that analysis records context, prompt and response payloads plus timings."""
    job = make_job(status=VoiceJobStatus.TRANSCRIBING.value)
    extractor = resources.intent_extractor
    extractor.provider = "ollama:test"
    extractor.build_context.return_value = {"today": "2026-03-10", "timezone": "UTC"}
    extractor.build_prompt.return_value = "prompt text"
    snapshot = IntentSnapshot.model_validate(CREATE_SNAPSHOT)
    extractor.extract.return_value = IntentExtraction(
        snapshot=snapshot, prompt="prompt text", raw_response={"action": "CREATE"}
    )

    handle_analyze_intent(AnalyzeIntentPayload(job_id=job.id, transcribed_text="..."), ctx)

    db.refresh(job)
    assert job.intent_snapshot == CREATE_SNAPSHOT
    assert job.intent_provider == "ollama:test"
    assert job.intent_job_id
    payloads = (
        db.query(IntentPipelinePayload)
        .filter(IntentPipelinePayload.job_id == job.id)
        .order_by(IntentPipelinePayload.sequence)
        .all()
    )
    assert [p.payload_type for p in payloads] == ["context", "prompt", "response"]
    assert [p.sequence for p in payloads] == [1, 2, 3]
    assert sorted(stages_recorded(db, job.id)) == [
        "intent_analysis",
        "intent_build_context",
        "intent_request",
    ]
    assert queue.last().stage == Stage.PROCESS_INTENT


def test_analyze_failure_records_error_response(db, ctx, make_job, resources, queue):
    job = make_job(status=VoiceJobStatus.TRANSCRIBING.value)
    extractor = resources.intent_extractor
    extractor.provider = "ollama:test"
    extractor.build_context.return_value = {"today": "2026-03-10"}
    extractor.build_prompt.return_value = "prompt text"
    extractor.extract.side_effect = Exception("Invalid intent response: no calendar action")

    with pytest.raises(Exception, match="Invalid intent response"):
        handle_analyze_intent(AnalyzeIntentPayload(job_id=job.id, transcribed_text="..."), ctx)

    response = (
        db.query(IntentPipelinePayload)
        .filter(
            IntentPipelinePayload.job_id == job.id,
            IntentPipelinePayload.payload_type == "response",
        )
        .one()
    )
    assert response.payload == {"error": "Invalid intent response: no calendar action"}
    assert queue.enqueued == []


def test_process_routes_complete_create(db, ctx, make_job, queue):
    job = make_job(status=VoiceJobStatus.ANALYZING.value)

    result = handle_process_intent(
        ProcessIntentPayload(job_id=job.id, intent_snapshot=CREATE_SNAPSHOT), ctx
    )

    assert result.next_stage == Stage.CREATE_EVENT
    assert queue.last().stage == Stage.CREATE_EVENT
    assert queue.last().payload.intent_snapshot == CREATE_SNAPSHOT
    assert "intent_resolution" in stages_recorded(db, job.id)


def test_process_incomplete_intent_starts_clarification(db, ctx, make_job, resources, queue):
    """Test that a missing title parks the job and asks the user."""
    job = make_job(status=VoiceJobStatus.ANALYZING.value)
    snapshot = {**CREATE_SNAPSHOT, "title": None}

    result = handle_process_intent(
        ProcessIntentPayload(job_id=job.id, intent_snapshot=snapshot), ctx
    )

    assert result.status == "awaiting_clarification"
    db.refresh(job)
    assert job.status == VoiceJobStatus.AWAITING_CLARIFICATION
    pending = db.query(PendingIntent).filter(PendingIntent.job_id == job.id).one()
    assert pending.clarification_plan["items"][0]["field"] == "title"
    resources.whatsapp.send_text.assert_called_once()
    assert queue.enqueued == []


def test_process_without_action_is_invalid(ctx, make_job):
    job = make_job(status=VoiceJobStatus.ANALYZING.value)

    with pytest.raises(StageDataError):
        handle_process_intent(ProcessIntentPayload(job_id=job.id, intent_snapshot={}), ctx)


def test_process_query_answers_directly(ctx, make_job, resources, queue):
    job = make_job(status=VoiceJobStatus.ANALYZING.value)
    resources.calendar.search_events.return_value = [
        CalendarEvent(id="e1", title="Standup", start=datetime(2026, 3, 10, 9, tzinfo=UTC)),
    ]
    snapshot = IntentSnapshot(action=CalendarAction.QUERY, start_date="2026-03-10").to_storage()

    handle_process_intent(ProcessIntentPayload(job_id=job.id, intent_snapshot=snapshot), ctx)

    notice = queue.last()
    assert notice.stage == Stage.SEND_NOTIFICATION
    assert notice.payload.action == "QUERY"
    assert notice.payload.events[0]["title"] == "Standup"


def test_process_pause_after(db, ctx, make_job, queue):
    job = make_job(
        status=VoiceJobStatus.ANALYZING.value,
        is_test_job=True,
        test_configuration={"pauseAfterStage": "process"},
    )

    result = handle_process_intent(
        ProcessIntentPayload(job_id=job.id, intent_snapshot=CREATE_SNAPSHOT), ctx
    )

    assert result.status == "paused"
    db.refresh(job)
    assert job.status == VoiceJobStatus.PAUSED_AFTER_PROCESS
    assert queue.enqueued == []


def test_build_event_body_timed_event():
    body = build_event_body(IntentSnapshot.model_validate(CREATE_SNAPSHOT), "Africa/Johannesburg")

    assert body["start"] == "2026-03-10T09:00:00+02:00"
    assert body["end"] == "2026-03-10T10:00:00+02:00"
    assert body["isAllDay"] is False
    assert body["timezone"] == "Africa/Johannesburg"


def test_build_event_body_all_day_event():
    intent = IntentSnapshot(
        action=CalendarAction.CREATE, title="Holiday", start_date="2026-03-10", is_all_day=True
    )

    body = build_event_body(intent, "UTC")

    assert body["start"] == "2026-03-10"
    assert body["end"] == "2026-03-11"
    assert body["isAllDay"] is True


def test_build_event_body_uses_duration():
    intent = IntentSnapshot.model_validate({**CREATE_SNAPSHOT, "durationMinutes": 30})

    assert build_event_body(intent, "UTC")["end"] == "2026-03-10T09:30:00+00:00"


def test_create_event_persists_id_and_notifies(db, ctx, make_job, resources, queue):
    job = make_job(status=VoiceJobStatus.PROCESSING.value)
    resources.calendar.create_event.return_value = CalendarEvent(
        id="evt-1",
        title="Dentist",
        start=datetime(2026, 3, 10, 9, tzinfo=UTC),
        link="https://calendar.example.com/evt-1",
    )

    handle_create_event(CalendarActionPayload(job_id=job.id, intent_snapshot=CREATE_SNAPSHOT), ctx)

    db.refresh(job)
    assert job.calendar_event_id == "evt-1"
    assert job.calendar_event_link == "https://calendar.example.com/evt-1"
    notice = queue.last().payload
    assert notice.success is True
    assert notice.action == "CREATE"
    assert notice.event_link == "https://calendar.example.com/evt-1"
    assert "event_create" in stages_recorded(db, job.id)


def test_create_event_is_not_repeated_on_redelivery(ctx, make_job, resources, queue):
    """Test that a job which already has an event does not create a second one."""
    job = make_job(status=VoiceJobStatus.CREATING_EVENT.value, calendar_event_id="evt-1")

    handle_create_event(CalendarActionPayload(job_id=job.id, intent_snapshot=CREATE_SNAPSHOT), ctx)

    resources.calendar.create_event.assert_not_called()
    assert queue.last().payload.event_id == "evt-1"


def test_update_event_picks_earliest_upcoming_match(db, ctx, make_job, resources, queue):
    job = make_job(status=VoiceJobStatus.PROCESSING.value)
    now = datetime.now(UTC)
    resources.calendar.search_events.return_value = [
        CalendarEvent(id="past", title="Gym", start=now - timedelta(days=1)),
        CalendarEvent(id="later", title="Gym", start=now + timedelta(days=3)),
        CalendarEvent(id="soon", title="Gym", start=now + timedelta(days=1)),
    ]
    resources.calendar.update_event.return_value = CalendarEvent(
        id="soon", title="Gym", start=now + timedelta(days=1), link="https://cal/soon"
    )
    snapshot = IntentSnapshot(
        action=CalendarAction.UPDATE, target_event_title="Gym", location="New gym"
    ).to_storage()

    handle_update_event(CalendarActionPayload(job_id=job.id, intent_snapshot=snapshot), ctx)

    resources.calendar.update_event.assert_called_once_with(
        job.user_id, "soon", {"location": "New gym"}
    )
    assert queue.last().payload.action == "UPDATE"


def test_delete_event_not_found_raises(db, ctx, make_job, resources, queue):
    job = make_job(status=VoiceJobStatus.PROCESSING.value)
    snapshot = IntentSnapshot(action=CalendarAction.DELETE, target_event_title="Gym").to_storage()

    with pytest.raises(CalendarError, match='Event not found: no event matching "Gym"'):
        handle_delete_event(CalendarActionPayload(job_id=job.id, intent_snapshot=snapshot), ctx)

    resources.calendar.delete_event.assert_not_called()
    assert queue.enqueued == []


def test_delete_event_deletes_target(db, ctx, make_job, resources, queue):
    job = make_job(status=VoiceJobStatus.PROCESSING.value)
    resources.calendar.search_events.return_value = [
        CalendarEvent(id="e9", title="Gym", start=datetime.now(UTC) + timedelta(days=1)),
    ]
    snapshot = IntentSnapshot(action=CalendarAction.DELETE, target_event_title="Gym").to_storage()

    handle_delete_event(CalendarActionPayload(job_id=job.id, intent_snapshot=snapshot), ctx)

    resources.calendar.delete_event.assert_called_once_with(job.user_id, "e9")
    db.refresh(job)
    assert job.calendar_event_id == "e9"
    assert queue.last().payload.action == "DELETE"


def test_send_notification_success_completes_job(db, ctx, make_job, resources):
    job = make_job(status=VoiceJobStatus.CREATING_EVENT.value, intent_snapshot=CREATE_SNAPSHOT)

    handle_send_notification(
        SendNotificationPayload(
            job_id=job.id, success=True, action="CREATE", event_link="https://cal/e1"
        ),
        ctx,
    )

    message = resources.whatsapp.send_text.call_args.args[1]
    assert message.startswith("✅ Event created!")
    assert "📅 Dentist" in message
    assert "🔗 View event: https://cal/e1" in message
    db.refresh(job)
    assert job.status == VoiceJobStatus.COMPLETED
    assert "notification_send" in stages_recorded(db, job.id)


def test_send_notification_failure_keeps_job_failed(db, ctx, make_job, resources):
    job = make_job(status=VoiceJobStatus.FAILED.value)

    handle_send_notification(
        SendNotificationPayload(job_id=job.id, success=False, message="Try again please"),
        ctx,
    )

    resources.whatsapp.send_text.assert_called_once_with(job.sender_address, "Try again please")
    db.refresh(job)
    assert job.status == VoiceJobStatus.FAILED


def test_analyze_context_includes_contacts_and_recent_events(db, ctx, make_job, resources):
    job = make_job(status=VoiceJobStatus.TRANSCRIBING.value)
    contacts = [Contact(name="John Smith", email="john@example.com")]
    events = [CalendarEvent(id="e1", title="Standup", start=datetime(2026, 3, 10, 9, tzinfo=UTC))]
    resources.calendar.get_contacts.return_value = contacts
    resources.calendar.get_recent_events.return_value = events
    extractor = resources.intent_extractor
    extractor.provider = "ollama:test"
    extractor.build_context.return_value = {
        "today": "2026-03-10",
        "contacts": [{"name": "John Smith", "email": "john@example.com"}],
        "recentEvents": [{"id": "e1"}],
    }
    extractor.build_prompt.return_value = "prompt text"
    extractor.extract.return_value = IntentExtraction(
        snapshot=IntentSnapshot.model_validate(CREATE_SNAPSHOT),
        prompt="prompt text",
        raw_response={"action": "CREATE"},
    )

    handle_analyze_intent(AnalyzeIntentPayload(job_id=job.id, transcribed_text="..."), ctx)

    extractor.build_context.assert_called_once_with(
        "UTC", contacts=contacts, recent_events=events
    )
    timing = (
        db.query(VoiceJobTiming)
        .filter(VoiceJobTiming.job_id == job.id, VoiceJobTiming.stage == "intent_build_context")
        .one()
    )
    assert timing.metadata_json == {"contactCount": 1, "recentEventCount": 1}


def test_analyze_continues_when_recent_events_cannot_load(ctx, make_job, resources, queue):
    job = make_job(status=VoiceJobStatus.TRANSCRIBING.value)
    resources.calendar.get_recent_events.side_effect = CalendarError("Calendar down")
    extractor = resources.intent_extractor
    extractor.provider = "ollama:test"
    extractor.build_context.return_value = {"today": "2026-03-10"}
    extractor.build_prompt.return_value = "prompt text"
    extractor.extract.return_value = IntentExtraction(
        snapshot=IntentSnapshot.model_validate(CREATE_SNAPSHOT),
        prompt="prompt text",
        raw_response={"action": "CREATE"},
    )

    handle_analyze_intent(AnalyzeIntentPayload(job_id=job.id, transcribed_text="..."), ctx)

    assert extractor.build_context.call_args.kwargs["recent_events"] == []
    assert queue.last().stage == Stage.PROCESS_INTENT


def test_build_context_lists_contacts_and_events():
    service = IntentExtractionService(llm_service=MagicMock())
    now = datetime(2026, 3, 10, 8, 30, tzinfo=UTC)

    context = service.build_context(
        "UTC",
        contacts=[Contact(name="John Smith", email="john@example.com")],
        recent_events=[
            CalendarEvent(
                id="e1",
                title="Standup",
                start=datetime(2026, 3, 10, 9, tzinfo=UTC),
                end=datetime(2026, 3, 10, 9, 15, tzinfo=UTC),
            )
        ],
        now=now,
    )

    assert context["weekday"] == "Tuesday"
    assert context["contacts"] == [{"name": "John Smith", "email": "john@example.com"}]
    assert context["recentEvents"] == [
        {
            "id": "e1",
            "title": "Standup",
            "start": "2026-03-10T09:00:00+00:00",
            "end": "2026-03-10T09:15:00+00:00",
        }
    ]
    prompt = service.build_prompt("move standup", context)
    assert "- John Smith <john@example.com>" in prompt
    assert "- [e1] Standup: 2026-03-10T09:00:00+00:00" in prompt


def test_process_conflict_cancel_notifies_without_scheduling(db, ctx, make_job, resources, queue):
    """Test that choosing cancel on a conflict ends the job with a friendly note."""
    job = make_job(status=VoiceJobStatus.ANALYZING.value)
    snapshot = {
        **CREATE_SNAPSHOT,
        "conflict": {"summary": "Standup", "existingEventId": "e1"},
        "conflictResolution": "cancel",
    }

    result = handle_process_intent(
        ProcessIntentPayload(job_id=job.id, intent_snapshot=snapshot), ctx
    )

    assert result.status == "cancelled"
    assert queue.stages() == [Stage.SEND_NOTIFICATION]
    notice = queue.last().payload
    assert notice.success is True
    assert notice.message == CONFLICT_CANCELLED_MESSAGE

    handle_send_notification(notice, ctx)

    resources.whatsapp.send_text.assert_called_once_with(
        job.sender_address, CONFLICT_CANCELLED_MESSAGE
    )
    resources.calendar.create_event.assert_not_called()
    db.refresh(job)
    assert job.status == VoiceJobStatus.COMPLETED


def test_process_conflict_asks_before_scheduling(db, ctx, make_job, resources, queue):
    job = make_job(status=VoiceJobStatus.ANALYZING.value)
    snapshot = {**CREATE_SNAPSHOT, "conflict": {"summary": "Standup", "existingEventId": "e1"}}

    result = handle_process_intent(
        ProcessIntentPayload(job_id=job.id, intent_snapshot=snapshot), ctx
    )

    assert result.status == "awaiting_clarification"
    pending = db.query(PendingIntent).filter(PendingIntent.job_id == job.id).one()
    assert [item["field"] for item in pending.clarification_plan["items"]] == ["conflict"]
    assert queue.enqueued == []
