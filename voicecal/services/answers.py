"""Merge clarification answers back into an intent snapshot."""

import logging
import re
from datetime import date, datetime
from zoneinfo import ZoneInfo

from dateutil import parser as date_parser
from dateutil.relativedelta import FR, MO, SA, SU, TH, TU, WE, relativedelta

from voicecal.schemas.intent import ATTENDEE_PREFIX, ConflictResolution, IntentSnapshot
from voicecal.services.contact_resolver import is_email

logger = logging.getLogger(__name__)

WEEKDAYS = {
    "monday": MO,
    "tuesday": TU,
    "wednesday": WE,
    "thursday": TH,
    "friday": FR,
    "saturday": SA,
    "sunday": SU,
}
YES = {"yes", "y", "yeah", "yep", "true", "all day", "all-day"}
SKIP = {"skip", "none", "no one", "nobody", "remove"}
LABELLED_ADDRESS = re.compile(r"\(([^()\s]+@[^()\s]+)\)\s*$")
DURATION = re.compile(
    r"(?P<amount>\d+(?:\.\d+)?)\s*(?P<unit>hours?|hrs?|h|minutes?|mins?|m)?\b", re.IGNORECASE
)
ISO_TIME = re.compile(r"([01]\d|2[0-3]):[0-5]\d(:[0-5]\d)?")
CONFLICT_CHOICES = {
    "keep": ConflictResolution.KEEP,
    "keep both": ConflictResolution.KEEP,
    "move": ConflictResolution.MOVE,
    "move new event": ConflictResolution.MOVE,
    "cancel": ConflictResolution.CANCEL,
}


def parse_date_answer(value: str, now: datetime) -> str | None:
    """Parse a spoken date ("tomorrow", "next friday", "3 March") into YYYY-MM-DD."""
    text = value.strip().lower()
    today = now.date()
    if text == "today":
        return today.isoformat()
    if text == "tomorrow":
        return (today + relativedelta(days=1)).isoformat()

    words = text.split()
    if words and words[-1] in WEEKDAYS and len(words) <= 2:
        # The coming occurrence, never today
        return (today + relativedelta(days=1, weekday=WEEKDAYS[words[-1]](+1))).isoformat()

    try:
        parsed = date_parser.parse(value, default=now.replace(tzinfo=None), fuzzy=True)
    except (ValueError, OverflowError):
        return None
    return parsed.date().isoformat()


def parse_time_answer(value: str, now: datetime) -> str | None:
    """Parse "3pm", "15:30" or a bare hour into HH:MM."""
    text = value.strip().lower()
    if not re.search(r"\d", text):
        return None
    if re.fullmatch(r"\d{1,2}", text) and int(text) < 24:
        return f"{int(text):02d}:00"
    midnight = now.replace(tzinfo=None, hour=0, minute=0, second=0, microsecond=0)
    try:
        parsed = date_parser.parse(text, default=midnight, fuzzy=True)
    except (ValueError, OverflowError):
        return None
    return parsed.strftime("%H:%M")


def parse_duration_answer(value: str) -> int | None:
    match = DURATION.search(value)
    if not match:
        return None
    amount = float(match.group("amount"))
    unit = (match.group("unit") or "min").lower()
    minutes = amount * 60 if unit.startswith("h") else amount
    return int(round(minutes))


def address_from_answer(value: str) -> str:
    """Pull the address out of a ``"Name (address)"`` option label."""
    match = LABELLED_ADDRESS.search(value.strip())
    return match.group(1) if match else value.strip()


def merge_answers(
    snapshot: IntentSnapshot,
    responses: dict[str, dict],
    timezone: str,
    now: datetime | None = None,
) -> IntentSnapshot:
    """Apply recorded answers to a copy of ``snapshot``.

    Unparseable date and time answers leave the field empty so the next resolution round
    asks again.
    """
    current = (now or datetime.now(ZoneInfo(timezone))).astimezone(ZoneInfo(timezone))
    intent = snapshot.model_copy(deep=True)

    for field_key, response in responses.items():
        value = str(response.get("value") or "").strip()
        if not value:
            continue

        if field_key.startswith(ATTENDEE_PREFIX):
            _merge_attendee(intent, field_key.removeprefix(ATTENDEE_PREFIX), value)
        elif field_key == "title":
            intent.title = value
        elif field_key == "target_event_title":
            intent.target_event_title = value
        elif field_key == "start_date":
            intent.start_date = parse_date_answer(value, current)
        elif field_key == "start_time":
            if value.lower() in YES:
                intent.is_all_day = True
            else:
                intent.start_time = parse_time_answer(value, current)
        elif field_key == "duration":
            intent.duration_minutes = parse_duration_answer(value)
        elif field_key == "location":
            intent.location = value
        elif field_key == "all_day":
            intent.is_all_day = value.lower() in YES
        elif field_key == "conflict":
            _merge_conflict_choice(intent, value)
        else:
            logger.warning(f"Ignoring answer for unknown clarification field '{field_key}'")

    return intent


def _merge_conflict_choice(intent: IntentSnapshot, value: str) -> None:
    choice = CONFLICT_CHOICES.get(value.lower())
    if choice is None:
        logger.info(f"Unrecognised conflict choice '{value}'; asking again")
        return
    intent.conflict_resolution = choice
    if choice == ConflictResolution.MOVE:
        # The new time comes from a follow-up question
        intent.start_time = None
        intent.end_time = None


def normalize_schedule(intent: IntentSnapshot, now: datetime) -> IntentSnapshot:
    """Coerce extracted dates to YYYY-MM-DD and times to HH:MM.

    Values that cannot be read are cleared so the completeness rules ask for them.
    """
    for name in ("start_date", "end_date", "target_event_date"):
        value = getattr(intent, name)
        if value and not _is_iso_date(value):
            parsed = parse_date_answer(value, now)
            if parsed is None:
                logger.warning(f"Clearing unreadable {name} '{value}'")
            setattr(intent, name, parsed)
    for name in ("start_time", "end_time", "target_event_time"):
        value = getattr(intent, name)
        if value and not ISO_TIME.fullmatch(value):
            parsed = parse_time_answer(value, now)
            if parsed is None:
                logger.warning(f"Clearing unreadable {name} '{value}'")
            setattr(intent, name, parsed)
    return intent


def _is_iso_date(value: str) -> bool:
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return len(value) == 10


def _merge_attendee(intent: IntentSnapshot, raw: str, value: str) -> None:
    if value.lower() in SKIP:
        intent.attendees = [a for a in intent.attendees if a != raw]
        return
    address = address_from_answer(value)
    replacement = address if is_email(address) else value
    if raw in intent.attendees:
        intent.attendees = [replacement if a == raw else a for a in intent.attendees]
    elif replacement not in intent.attendees:
        intent.attendees.append(replacement)
