"""Celery application configuration."""

from celery import Celery
from celery.signals import worker_process_init, worker_process_shutdown
from kombu import Queue

from voicecal.config import get_settings
from voicecal.services.queue import STAGE_OPTIONS, Stage

settings = get_settings()

app = Celery(
    "voicecal",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "voicecal.tasks.download_audio",
        "voicecal.tasks.transcribe_audio",
        "voicecal.tasks.analyze_intent",
        "voicecal.tasks.process_intent",
        "voicecal.tasks.calendar_events",
        "voicecal.tasks.send_notification",
        "voicecal.tasks.clarification_sweep",
    ],
)

# Celery configuration
app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes max per task
    task_soft_time_limit=240,  # 4 minutes soft limit
    # At-least-once: ack after the handler finishes, requeue if the worker dies
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    result_expires=settings.result_expires_seconds,
    task_queues=[Queue(stage.queue) for stage in Stage] + [Queue("voice-maintenance")],
    task_routes={
        **{options.task_name: {"queue": stage.queue} for stage, options in STAGE_OPTIONS.items()},
        "voicecal.expire_clarifications": {"queue": "voice-maintenance"},
    },
    beat_schedule={
        "expire-clarifications": {
            "task": "voicecal.expire_clarifications",
            "schedule": float(settings.clarification_sweep_seconds),
        },
    },
)


@worker_process_init.connect
def init_worker_resources(**kwargs) -> None:
    from voicecal.services.context import init_resources

    init_resources(settings, app)


@worker_process_shutdown.connect
def close_worker_resources(**kwargs) -> None:
    from voicecal.services.context import shutdown_resources

    shutdown_resources()
