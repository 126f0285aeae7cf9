"""Outcome messages sent back to the user over the channel."""

import logging
from datetime import datetime

from voicecal.schemas.intent import CalendarAction, IntentSnapshot
from voicecal.schemas.payloads import SendNotificationPayload
from voicecal.services.whatsapp import WhatsAppService

logger = logging.getLogger(__name__)

DEFAULT_ERROR_MESSAGE = (
    "Sorry, I couldn't process your voice note. Please try again or send a text message instead."
)

HEADLINES = {
    CalendarAction.CREATE: "✅ Event created!",
    CalendarAction.UPDATE: "✅ Event updated!",
    CalendarAction.DELETE: "🗑️ Event deleted!",
}


class NotificationService:
    """Formats and sends pipeline outcome messages."""

    def __init__(self, whatsapp: WhatsAppService) -> None:
        self.whatsapp = whatsapp

    def send_outcome(
        self, address: str, payload: SendNotificationPayload, intent: IntentSnapshot | None
    ) -> str | None:
        message = self.format_outcome(payload, intent)
        message_id = self.whatsapp.send_text(address, message)
        kind = "Success" if payload.success else "Error"
        logger.info(f"{kind} notification sent for job {payload.job_id}")
        return message_id

    def format_outcome(
        self, payload: SendNotificationPayload, intent: IntentSnapshot | None
    ) -> str:
        if not payload.success:
            return payload.message or DEFAULT_ERROR_MESSAGE
        if payload.message:
            return payload.message
        intent = intent or IntentSnapshot()
        if payload.action == CalendarAction.QUERY:
            return format_query_message(payload.events, intent)
        action = CalendarAction(payload.action) if payload.action else CalendarAction.CREATE
        return format_event_message(action, intent, payload.event_link)

    def send_clarification_reminder(self, address: str, pending_fields: list[str]) -> None:
        logger.info(f"Skipped clarification reminder (disabled) for {address}: {pending_fields}")

    def send_clarification_timeout(self, address: str, pending_fields: list[str]) -> None:
        logger.info(
            f"Skipped clarification timeout notice (disabled) for {address}: {pending_fields}"
        )


def format_event_message(
    action: CalendarAction, intent: IntentSnapshot, link: str | None = None
) -> str:
    lines = [HEADLINES.get(action, "✅ Done!"), ""]
    title = intent.title or intent.target_event_title or "Untitled Event"
    lines.append(f"📅 {title}")

    date = intent.start_date or intent.target_event_date
    time = intent.start_time or intent.target_event_time
    if date:
        when = format_date(date)
        if intent.is_all_day:
            when += " (All day)"
        elif time:
            when += f" at {time}"
        lines.append(f"🕐 {when}")

    if intent.attendees:
        lines.append(f"👥 Attendees: {', '.join(intent.attendees)}")
    if intent.location:
        lines.append(f"📍 {intent.location}")
    if link and action != CalendarAction.DELETE:
        lines.extend(["", f"🔗 View event: {link}"])
    return "\n".join(lines)


def format_query_message(events: list[dict], intent: IntentSnapshot) -> str:
    day = format_date(intent.start_date) if intent.start_date else "that period"
    if not events:
        return f"📅 You have nothing scheduled for {day}."
    lines = [f"📅 Your events for {day}:", ""]
    for event in events:
        start = datetime.fromisoformat(event["start"])
        when = "All day" if event.get("isAllDay") else start.strftime("%H:%M")
        lines.append(f"• {when} {event['title']}")
    return "\n".join(lines)


def format_date(value: str) -> str:
    try:
        return datetime.fromisoformat(value).strftime("%a %d %b %Y")
    except ValueError:
        return value
