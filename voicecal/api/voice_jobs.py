"""Operator endpoints for inspecting, pausing and resuming voice jobs."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from voicecal.api.dependencies import get_pipeline_resources
from voicecal.database import get_db
from voicecal.models.job_state import PausedForTest, Terminal
from voicecal.models.voice_job import VoiceJob
from voicecal.schemas.voice_job import (
    PauseRequest,
    ResumeResponse,
    TimelineResponse,
    TimingEntryResponse,
    VoiceJobResponse,
)
from voicecal.services.context import PipelineResources
from voicecal.services.timing import get_timeline
from voicecal.services.voice_jobs import get_voice_job, request_pause, resume_job

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/voice-jobs", tags=["voice-jobs"])


def get_job_or_404(db: Session, job_id: int) -> VoiceJob:
    job = get_voice_job(db, job_id)
    if not job:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Voice job not found",
        )
    return job


@router.get("/{job_id}", response_model=VoiceJobResponse)
def get_job(job_id: int, db: Annotated[Session, Depends(get_db)]):
    """Get a voice job by ID."""
    return get_job_or_404(db, job_id)


@router.get("/{job_id}/timeline", response_model=TimelineResponse)
def get_job_timeline(job_id: int, db: Annotated[Session, Depends(get_db)]):
    """Get stage timings for a job in pipeline order, regardless of when they ran."""
    job = get_job_or_404(db, job_id)
    entries = [TimingEntryResponse.model_validate(row) for row in get_timeline(db, job.id)]
    return TimelineResponse(job_id=job.id, status=job.status, entries=entries)


@router.post("/{job_id}/pause", response_model=VoiceJobResponse)
def pause_job(
    job_id: int,
    pause: PauseRequest,
    db: Annotated[Session, Depends(get_db)],
):
    """Pause a job after a stage, or hold it before its next stage when no stage is given."""
    job = get_job_or_404(db, job_id)
    if isinstance(job.state, Terminal):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Voice job is already {job.status}",
        )
    try:
        request_pause(db, job, pause.stage)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    logger.info(f"Pause requested for job {job.id} (after={pause.stage or 'now'})")
    db.refresh(job)
    return job


@router.post("/{job_id}/resume", response_model=ResumeResponse)
def resume(
    job_id: int,
    db: Annotated[Session, Depends(get_db)],
    resources: Annotated[PipelineResources, Depends(get_pipeline_resources)],
):
    """Clear a pause and enqueue the next stage from the job's stored data."""
    job = get_job_or_404(db, job_id)
    if not isinstance(job.state, PausedForTest):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Voice job is not paused",
        )
    stage, enqueued = resume_job(db, resources.queue, job)
    return ResumeResponse(
        job_id=job.id,
        enqueued_stage=stage.value if stage else None,
        enqueued=enqueued,
    )
