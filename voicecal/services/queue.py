"""Stage queue: routing, retry policy and enqueue deduplication on top of Celery."""

import logging
from dataclasses import dataclass
from enum import StrEnum

from celery import Celery
from pydantic import BaseModel
from redis import Redis

from voicecal.config import get_settings
from voicecal.schemas.payloads import (
    AnalyzeIntentPayload,
    CalendarActionPayload,
    DownloadAudioPayload,
    ProcessIntentPayload,
    SendNotificationPayload,
    TranscribeAudioPayload,
)

logger = logging.getLogger(__name__)

DEDUP_PREFIX = "voicecal:dedup:"


class Stage(StrEnum):
    DOWNLOAD_AUDIO = "download-audio"
    TRANSCRIBE_AUDIO = "transcribe-audio"
    ANALYZE_INTENT = "analyze-intent"
    PROCESS_INTENT = "process-intent"
    CREATE_EVENT = "create-event"
    UPDATE_EVENT = "update-event"
    DELETE_EVENT = "delete-event"
    SEND_NOTIFICATION = "send-notification"

    @property
    def short_name(self) -> str:
        """Name used by pause-for-testing (``download``, ``transcribe``, ...)."""
        return self.value.split("-", 1)[0]

    @property
    def queue(self) -> str:
        return f"voice-{self.value}"


@dataclass(frozen=True)
class StageOptions:
    task_name: str
    payload_model: type[BaseModel]
    backoff_seconds: float | None = None  # None: queue_backoff_seconds
    attempts: int | None = None  # None: queue_max_attempts

    @property
    def effective_backoff(self) -> float:
        if self.backoff_seconds is not None:
            return self.backoff_seconds
        return get_settings().queue_backoff_seconds

    @property
    def effective_attempts(self) -> int:
        if self.attempts is not None:
            return self.attempts
        return get_settings().queue_max_attempts

    def countdown(self, retries: int) -> float:
        """Exponential backoff before retry number ``retries + 1``."""
        return self.effective_backoff * (2**retries)


STAGE_OPTIONS: dict[Stage, StageOptions] = {
    Stage.DOWNLOAD_AUDIO: StageOptions("voicecal.download_audio", DownloadAudioPayload),
    Stage.TRANSCRIBE_AUDIO: StageOptions(
        "voicecal.transcribe_audio", TranscribeAudioPayload, backoff_seconds=5
    ),
    Stage.ANALYZE_INTENT: StageOptions(
        "voicecal.analyze_intent", AnalyzeIntentPayload, backoff_seconds=3
    ),
    Stage.PROCESS_INTENT: StageOptions(
        "voicecal.process_intent", ProcessIntentPayload, backoff_seconds=3
    ),
    Stage.CREATE_EVENT: StageOptions(
        "voicecal.create_event", CalendarActionPayload, backoff_seconds=5
    ),
    Stage.UPDATE_EVENT: StageOptions(
        "voicecal.update_event", CalendarActionPayload, backoff_seconds=5
    ),
    Stage.DELETE_EVENT: StageOptions(
        "voicecal.delete_event", CalendarActionPayload, backoff_seconds=5
    ),
    Stage.SEND_NOTIFICATION: StageOptions(
        "voicecal.send_notification", SendNotificationPayload, attempts=2
    ),
}


def default_dedup_key(stage: Stage, job_id: int) -> str:
    return f"{stage.value}-{job_id}"


def clarification_dedup_key(job_id: int, round_number: int) -> str:
    return f"{Stage.PROCESS_INTENT.value}-{job_id}-round-{round_number}"


class QueueManager:
    """Enqueue stage jobs with at-least-once delivery and per-key deduplication."""

    def __init__(self, celery_app: Celery, redis_client: Redis, dedup_ttl_seconds: int) -> None:
        self.celery_app = celery_app
        self.redis = redis_client
        self.dedup_ttl_seconds = dedup_ttl_seconds

    def enqueue(
        self,
        stage: Stage,
        payload: BaseModel | dict,
        dedup_key: str | None = None,
        countdown: float | None = None,
    ) -> bool:
        """Validate the payload and send the stage task.

        Returns False when the dedup key was already claimed and nothing was sent.
        """
        options = STAGE_OPTIONS[stage]
        if isinstance(payload, options.payload_model):
            validated = payload
        else:
            data = payload.model_dump() if isinstance(payload, BaseModel) else payload
            validated = options.payload_model.model_validate(data)

        key = dedup_key or default_dedup_key(stage, validated.job_id)
        claimed = self.redis.set(f"{DEDUP_PREFIX}{key}", "1", nx=True, ex=self.dedup_ttl_seconds)
        if not claimed:
            logger.info(f"Skipping duplicate {stage} for job {validated.job_id} (key {key})")
            return False

        try:
            self.celery_app.send_task(
                options.task_name,
                kwargs={"payload": validated.model_dump(mode="json")},
                queue=stage.queue,
                task_id=key,
                countdown=countdown,
            )
        except Exception:
            # Release the claim so a redelivery can enqueue again
            self.redis.delete(f"{DEDUP_PREFIX}{key}")
            raise

        logger.info(f"Enqueued {stage} for job {validated.job_id} (key {key})")
        return True

    def close(self) -> None:
        self.redis.close()
