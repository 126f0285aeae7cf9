"""Tests for stage timing instrumentation."""

from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest

from voicecal.models import VoiceJobTiming
from voicecal.services.timing import (
    STAGE_SEQUENCE,
    get_timeline,
    record_stage_timing,
    with_stage_timing,
)


def test_with_stage_timing_records_success(db, make_job):
    """Test that a successful operation records duration and metadata."""
    job = make_job()

    result = with_stage_timing(
        db,
        job.id,
        "transcription",
        lambda: "hello",
        metadata=lambda outcome: {"textLength": len(outcome.result)},
    )

    assert result == "hello"
    row = db.query(VoiceJobTiming).filter(VoiceJobTiming.job_id == job.id).one()
    assert row.stage == "transcription"
    assert row.sequence == STAGE_SEQUENCE["transcription"]
    assert row.duration_ms is not None and row.duration_ms >= 0
    assert row.metadata_json == {"textLength": 5}


def test_with_stage_timing_records_failure_and_reraises(db, make_job):
    """Test that a failing operation still leaves a timing row with the error."""
    job = make_job()

    def boom():
        raise RuntimeError("provider down")

    with pytest.raises(RuntimeError):
        with_stage_timing(
            db,
            job.id,
            "intent_request",
            boom,
            metadata=lambda outcome: {"error": str(outcome.error)} if not outcome.ok else {},
        )

    row = db.query(VoiceJobTiming).filter(VoiceJobTiming.job_id == job.id).one()
    assert row.metadata_json == {"error": "provider down"}
    assert row.completed_at is not None


def test_broken_metadata_builder_does_not_fail_stage(db, make_job):
    job = make_job()

    def broken(outcome):
        raise KeyError("missing")

    assert with_stage_timing(db, job.id, "audio_download", lambda: 3, metadata=broken) == 3
    row = db.query(VoiceJobTiming).filter(VoiceJobTiming.job_id == job.id).one()
    assert row.metadata_json is None


def test_record_stage_timing_swallows_database_errors(db, make_job):
    """Test that a failed timing write is logged and never raised."""
    job = make_job()

    with patch.object(db, "commit", side_effect=Exception("db gone")):
        record_stage_timing(db, job.id, "transcription", started_at=datetime.now(UTC))


def test_unknown_stage_gets_sequence_zero(db, make_job):
    job = make_job()

    record_stage_timing(db, job.id, "something_new", started_at=datetime.now(UTC))

    row = db.query(VoiceJobTiming).filter(VoiceJobTiming.job_id == job.id).one()
    assert row.sequence == 0


def test_timeline_orders_by_stage_sequence_not_insertion(db, make_job):
    """Test that a retried earlier stage still sorts before later stages."""
    job = make_job()
    start = datetime.now(UTC)

    record_stage_timing(db, job.id, "notification_send", started_at=start)
    record_stage_timing(db, job.id, "intent_request", started_at=start + timedelta(seconds=1))
    record_stage_timing(db, job.id, "webhook_received", started_at=start + timedelta(seconds=2))
    record_stage_timing(db, job.id, "transcription", started_at=start + timedelta(seconds=4))
    record_stage_timing(db, job.id, "transcription", started_at=start + timedelta(seconds=3))

    timeline = get_timeline(db, job.id)

    assert [row.stage for row in timeline] == [
        "webhook_received",
        "transcription",
        "transcription",
        "intent_request",
        "notification_send",
    ]
    assert timeline[1].started_at < timeline[2].started_at
