"""Intent extraction with an audit trail of every model exchange."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from zoneinfo import ZoneInfo

from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.orm import Session

from voicecal.models.enums import PayloadType
from voicecal.models.voice_job_timing import IntentPipelinePayload
from voicecal.schemas.intent import IntentSnapshot
from voicecal.services.calendar import CalendarEvent, Contact
from voicecal.services.errors import IntentExtractionError
from voicecal.services.llm import LLMService
from voicecal.services.llm_prompts import CALENDAR_INTENT_SYSTEM_PROMPT, get_calendar_intent_prompt

logger = logging.getLogger(__name__)

MAX_CONTEXT_CONTACTS = 20
MAX_CONTEXT_EVENTS = 25


@dataclass
class IntentExtraction:
    snapshot: IntentSnapshot
    prompt: str
    raw_response: dict


class IntentExtractionService:
    """Extract a structured calendar intent from transcribed text."""

    def __init__(self, llm_service: LLMService | None = None) -> None:
        self.llm_service = llm_service or LLMService()

    @property
    def provider(self) -> str:
        return f"ollama:{self.llm_service.model}"

    def build_context(
        self,
        timezone: str,
        contacts: list[Contact] | None = None,
        recent_events: list[CalendarEvent] | None = None,
        now: datetime | None = None,
    ) -> dict:
        current = (now or datetime.now(ZoneInfo(timezone))).astimezone(ZoneInfo(timezone))
        return {
            "today": current.date().isoformat(),
            "weekday": current.strftime("%A"),
            "now": current.strftime("%H:%M"),
            "timezone": timezone,
            "contacts": [
                {"name": c.name, "email": c.email} for c in (contacts or [])[:MAX_CONTEXT_CONTACTS]
            ],
            "recentEvents": [
                {
                    "id": e.id,
                    "title": e.title,
                    "start": e.start.isoformat(),
                    "end": e.end.isoformat() if e.end else None,
                }
                for e in (recent_events or [])[:MAX_CONTEXT_EVENTS]
            ],
        }

    def build_prompt(self, transcribed_text: str, context: dict) -> str:
        return get_calendar_intent_prompt(transcribed_text, context)

    def extract(self, transcribed_text: str, context: dict) -> IntentExtraction:
        prompt = self.build_prompt(transcribed_text, context)
        raw = asyncio.run(
            self.llm_service.generate_json(
                prompt=prompt,
                system_prompt=CALENDAR_INTENT_SYSTEM_PROMPT,
                temperature=0.1,
            )
        )
        if not isinstance(raw, dict):
            raise IntentExtractionError("Invalid intent response: expected a JSON object")
        try:
            snapshot = IntentSnapshot.model_validate(raw)
        except ValidationError as e:
            raise IntentExtractionError(f"Invalid intent response: {e.error_count()} errors") from e
        if snapshot.action is None:
            raise IntentExtractionError("Invalid intent response: no calendar action detected")
        return IntentExtraction(snapshot=snapshot, prompt=prompt, raw_response=raw)


def record_intent_payload(
    db: Session,
    job_id: int,
    payload_type: PayloadType,
    payload: dict,
    provider: str | None = None,
    metadata: dict | None = None,
) -> None:
    """Append an audit row for an extraction exchange. Never raises."""
    try:
        sequence = (
            db.query(func.coalesce(func.max(IntentPipelinePayload.sequence), 0))
            .filter(IntentPipelinePayload.job_id == job_id)
            .scalar()
        )
        db.add(
            IntentPipelinePayload(
                job_id=job_id,
                sequence=sequence + 1,
                payload_type=payload_type.value,
                provider=provider,
                metadata_json=metadata,
                payload=payload,
            )
        )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.warning(f"Failed to record intent {payload_type} payload for job {job_id}: {e}")
