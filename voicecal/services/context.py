"""Composition root: long-lived collaborators and the per-task pipeline context."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

import redis
from celery import Celery
from sqlalchemy.orm import Session

from voicecal.config import Settings
from voicecal.services.audio_storage import AudioStorage
from voicecal.services.calendar import CalendarService
from voicecal.services.clarification import ClarificationEngine
from voicecal.services.contact_resolver import ContactResolver
from voicecal.services.intent_extraction import IntentExtractionService
from voicecal.services.notification_service import NotificationService
from voicecal.services.queue import QueueManager
from voicecal.services.resolution import ResolutionPipeline
from voicecal.services.transcription import TranscriptionService
from voicecal.services.whatsapp import WhatsAppService

logger = logging.getLogger(__name__)


@dataclass
class PipelineResources:
    """Clients created once per process and closed at shutdown."""

    settings: Settings
    queue: QueueManager
    whatsapp: WhatsAppService
    transcriber: TranscriptionService
    intent_extractor: IntentExtractionService
    calendar: CalendarService
    storage: AudioStorage

    @classmethod
    def build(cls, settings: Settings, celery_app: Celery) -> "PipelineResources":
        redis_client = redis.from_url(settings.redis_url)
        return cls(
            settings=settings,
            queue=QueueManager(celery_app, redis_client, settings.queue_dedup_ttl_seconds),
            whatsapp=WhatsAppService(settings),
            transcriber=TranscriptionService(settings),
            intent_extractor=IntentExtractionService(),
            calendar=CalendarService(settings),
            storage=AudioStorage(settings.audio_temp_dir),
        )

    def close(self) -> None:
        for name, closer in (
            ("queue", self.queue.close),
            ("whatsapp", self.whatsapp.close),
            ("transcriber", self.transcriber.close),
            ("calendar", self.calendar.close),
        ):
            try:
                closer()
            except Exception as e:
                logger.warning(f"Error closing {name} client: {e}")


@dataclass
class PipelineContext:
    """What a stage handler needs: a database session plus the collaborators."""

    db: Session
    settings: Settings
    queue: QueueManager
    whatsapp: WhatsAppService
    transcriber: TranscriptionService
    intent_extractor: IntentExtractionService
    calendar: CalendarService
    storage: AudioStorage

    @classmethod
    def from_resources(cls, db: Session, resources: PipelineResources) -> "PipelineContext":
        return cls(
            db=db,
            settings=resources.settings,
            queue=resources.queue,
            whatsapp=resources.whatsapp,
            transcriber=resources.transcriber,
            intent_extractor=resources.intent_extractor,
            calendar=resources.calendar,
            storage=resources.storage,
        )

    @property
    def notifications(self) -> NotificationService:
        return NotificationService(self.whatsapp)

    @property
    def resolution_pipeline(self) -> ResolutionPipeline:
        return ResolutionPipeline(ContactResolver(self.calendar))

    @property
    def clarification(self) -> ClarificationEngine:
        return ClarificationEngine(
            self.db, self.whatsapp, self.queue, self.notifications, self.settings
        )


_resources: PipelineResources | None = None


def init_resources(settings: Settings, celery_app: Celery) -> PipelineResources:
    global _resources
    if _resources is None:
        _resources = PipelineResources.build(settings, celery_app)
        logger.info("Pipeline resources initialized")
    return _resources


def get_resources() -> PipelineResources:
    if _resources is None:
        raise RuntimeError("Pipeline resources are not initialized for this process")
    return _resources


def set_resources(resources: PipelineResources | None) -> None:
    """Install resources built elsewhere (tests, embedded runs)."""
    global _resources
    _resources = resources


def shutdown_resources() -> None:
    global _resources
    if _resources is not None:
        _resources.close()
        _resources = None
        logger.info("Pipeline resources closed")


@contextmanager
def pipeline_context(
    session_factory, resources: PipelineResources | None = None
) -> Iterator[PipelineContext]:
    """Open a session for one unit of work and bind it to the process's collaborators."""
    db = session_factory()
    try:
        yield PipelineContext.from_resources(db, resources or get_resources())
    finally:
        db.close()
