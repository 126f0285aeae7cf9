"""Stage timing instrumentation for voice jobs."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, TypeVar

from sqlalchemy.orm import Session

from voicecal.models.voice_job_timing import VoiceJobTiming

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Canonical ordering of stages in a job timeline, independent of execution order.
STAGE_SEQUENCE: dict[str, int] = {
    "webhook_received": 5,
    "audio_download": 10,
    "transcription": 20,
    "intent_analysis": 25,
    "intent_build_context": 30,
    "intent_request": 40,
    "intent_resolution": 45,
    "clarification_dispatch": 50,
    "clarification_response": 55,
    "event_create": 60,
    "event_update": 70,
    "event_delete": 80,
    "notification_send": 90,
}


@dataclass(frozen=True)
class StageOutcome:
    """Either the result of a timed operation or the error it raised."""

    result: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


MetadataBuilder = Callable[[StageOutcome], dict | None]


def default_metadata(outcome: StageOutcome) -> dict | None:
    if outcome.ok:
        return None
    return {"error": str(outcome.error) or type(outcome.error).__name__}


def record_stage_timing(
    db: Session,
    job_id: int,
    stage: str,
    started_at: datetime,
    completed_at: datetime | None = None,
    duration_ms: int | None = None,
    stage_group: str | None = None,
    sequence: int | None = None,
    metadata: dict | None = None,
) -> None:
    """Append a timing row. Never raises."""
    try:
        db.add(
            VoiceJobTiming(
                job_id=job_id,
                stage=stage,
                stage_group=stage_group,
                sequence=sequence if sequence is not None else STAGE_SEQUENCE.get(stage, 0),
                started_at=started_at,
                completed_at=completed_at,
                duration_ms=duration_ms,
                metadata_json=metadata,
            )
        )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning(f"Failed to record stage timing for job {job_id} ({stage}): {e}")


def with_stage_timing(
    db: Session,
    job_id: int,
    stage: str,
    operation: Callable[[], T],
    metadata: MetadataBuilder = default_metadata,
    stage_group: str | None = None,
) -> T:
    """Run ``operation`` and record how long it took.

    ``metadata`` receives a StageOutcome on both paths. The operation's exception is
    re-raised after the timing row is written.
    """
    started_at = datetime.now(UTC)
    try:
        result = operation()
    except Exception as e:
        completed_at = datetime.now(UTC)
        # Drop whatever the failed operation left in the session before writing the row
        db.rollback()
        record_stage_timing(
            db,
            job_id,
            stage,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=_elapsed_ms(started_at, completed_at),
            stage_group=stage_group,
            metadata=_safe_metadata(metadata, StageOutcome(error=e), job_id, stage),
        )
        raise

    completed_at = datetime.now(UTC)
    record_stage_timing(
        db,
        job_id,
        stage,
        started_at=started_at,
        completed_at=completed_at,
        duration_ms=_elapsed_ms(started_at, completed_at),
        stage_group=stage_group,
        metadata=_safe_metadata(metadata, StageOutcome(result=result), job_id, stage),
    )
    return result


def get_timeline(db: Session, job_id: int) -> list[VoiceJobTiming]:
    """Timing rows for a job in canonical stage order."""
    return (
        db.query(VoiceJobTiming)
        .filter(VoiceJobTiming.job_id == job_id)
        .order_by(VoiceJobTiming.sequence, VoiceJobTiming.started_at, VoiceJobTiming.id)
        .all()
    )


def _elapsed_ms(started_at: datetime, completed_at: datetime) -> int:
    return int((completed_at - started_at).total_seconds() * 1000)


def _safe_metadata(
    builder: MetadataBuilder, outcome: StageOutcome, job_id: int, stage: str
) -> dict | None:
    try:
        return builder(outcome)
    except Exception as e:
        logger.warning(f"Failed to build timing metadata for job {job_id} ({stage}): {e}")
        return None
