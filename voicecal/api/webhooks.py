"""Webhook endpoints for the WhatsApp Cloud API."""

import logging
from datetime import UTC, datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import PlainTextResponse

from voicecal.api.dependencies import get_pipeline_context
from voicecal.config import get_settings
from voicecal.models.enums import VoiceJobStatus
from voicecal.schemas.payloads import DownloadAudioPayload
from voicecal.schemas.whatsapp import ParsedMessage
from voicecal.services.context import PipelineContext
from voicecal.services.queue import Stage
from voicecal.services.timing import record_stage_timing
from voicecal.services.voice_jobs import create_voice_job, find_verified_channel_number
from voicecal.services.whatsapp import WhatsAppService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.get("/whatsapp", response_class=PlainTextResponse)
async def verify_webhook(
    request: Request,
    mode: str | None = Query(None, alias="hub.mode"),
    verify_token: str | None = Query(None, alias="hub.verify_token"),
    challenge: str | None = Query(None, alias="hub.challenge"),
) -> str:
    """Answer the subscription handshake Meta sends when the webhook is registered."""
    settings = get_settings()
    if mode == "subscribe" and verify_token == settings.whatsapp_verify_token and challenge:
        logger.info("WhatsApp webhook verified")
        return challenge
    logger.warning(f"Rejected webhook verification from {request.client}")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")


@router.post("/whatsapp")
async def receive_whatsapp(
    request: Request,
    response: Response,
    ctx: Annotated[PipelineContext, Depends(get_pipeline_context)],
) -> dict:
    """Handle an inbound delivery.

    Acknowledges unless a voice note could not be queued, in which case a 503 makes the
    channel redeliver it. Other failures are logged per message.
    """
    try:
        payload = await request.json()
        messages = WhatsAppService.parse_inbound(payload)
    except Exception as e:
        logger.error(f"Unreadable webhook payload: {e}", exc_info=True)
        return {"status": "ok"}

    redeliver = False
    for message in messages:
        try:
            handle_message(message, ctx)
        except Exception as e:
            ctx.db.rollback()
            logger.error(f"Error handling message {message.message_id}: {e}", exc_info=True)
            if message.kind == "audio":
                redeliver = True

    if redeliver:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "retry"}
    return {"status": "ok"}


def handle_message(message: ParsedMessage, ctx: PipelineContext) -> None:
    """Route one inbound message: voice notes start a job, replies feed clarifications."""
    if message.kind == "audio":
        start_voice_job(message, ctx)
    elif message.kind in ("selection", "flow", "text"):
        if not ctx.clarification.handle_inbound(message):
            logger.info(f"No clarification awaiting {message.kind} from {message.sender}")
    else:
        logger.info(f"Ignoring unsupported message {message.message_id} from {message.sender}")


def start_voice_job(message: ParsedMessage, ctx: PipelineContext) -> None:
    received_at = datetime.now(UTC)
    channel_number = find_verified_channel_number(ctx.db, message.sender)
    if channel_number is None:
        logger.warning(f"Voice note from unverified sender {message.sender}")
        return

    job, created = create_voice_job(ctx.db, channel_number, message)
    if not created and job.status != VoiceJobStatus.RECEIVED:
        logger.info(f"Duplicate delivery of media {message.media_id} for job {job.id}")
        return

    if created:
        completed_at = datetime.now(UTC)
        record_stage_timing(
            ctx.db,
            job.id,
            "webhook_received",
            started_at=received_at,
            completed_at=completed_at,
            duration_ms=int((completed_at - received_at).total_seconds() * 1000),
            metadata={"messageId": message.message_id, "mimeType": message.mime_type},
        )
    else:
        # Download never started; the dedup key drops this if it is already queued
        logger.info(f"Redelivery of media {message.media_id} for job {job.id}, re-enqueuing")

    ctx.queue.enqueue(
        Stage.DOWNLOAD_AUDIO,
        DownloadAudioPayload(job_id=job.id, media_id=message.media_id, mime_type=message.mime_type),
    )
    logger.info(f"Queued download for voice job {job.id} (user {channel_number.user_id})")
