"""Periodic task that reminds and expires stale clarification rounds."""

import logging
from datetime import timedelta

from voicecal.celery_app import app as celery_app
from voicecal.config import get_settings
from voicecal.database import SessionLocal
from voicecal.services.context import init_resources, pipeline_context

logger = logging.getLogger(__name__)


@celery_app.task(name="voicecal.expire_clarifications")
def expire_clarifications() -> dict:
    """Run by beat: nudge rounds about to expire, then expire the overdue ones."""
    settings = get_settings()
    resources = init_resources(settings, celery_app)
    with pipeline_context(SessionLocal, resources) as ctx:
        engine = ctx.clarification
        window = timedelta(minutes=settings.clarification_reminder_minutes)
        reminded = engine.remind_expiring(window)
        expired = engine.expire_stale()

    if reminded or expired:
        logger.info(f"Clarification sweep: {reminded} reminded, {expired} expired")
    return {"reminded": reminded, "expired": expired}
