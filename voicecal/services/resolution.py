"""Resolution pipeline: run field resolvers and completeness rules over an intent."""

import logging
from dataclasses import dataclass
from datetime import datetime
from zoneinfo import ZoneInfo

from voicecal.schemas.intent import (
    CalendarAction,
    ClarificationItem,
    ClarificationOption,
    ConflictResolution,
    IntentSnapshot,
    ResolutionResult,
    attendee_field,
)
from voicecal.services.answers import normalize_schedule
from voicecal.services.contact_resolver import ContactResolver, format_candidate

logger = logging.getLogger(__name__)

CONFLICT_OPTIONS = [
    ClarificationOption(label="Keep both", value=ConflictResolution.KEEP.value),
    ClarificationOption(label="Move new event", value=ConflictResolution.MOVE.value),
    ClarificationOption(label="Cancel", value=ConflictResolution.CANCEL.value),
]


@dataclass
class ResolutionContext:
    user_id: int
    timezone: str
    now: datetime | None = None

    def current_time(self) -> datetime:
        tz = ZoneInfo(self.timezone)
        return (self.now or datetime.now(tz)).astimezone(tz)


class ResolutionPipeline:
    """Resolves attendees first, then the fields each action requires and any conflict.

    All outstanding questions are collected in one pass so a channel that can batch may ask
    them together.
    """

    def __init__(self, contact_resolver: ContactResolver | None = None) -> None:
        self.contact_resolver = contact_resolver

    def resolve(self, snapshot: IntentSnapshot, context: ResolutionContext) -> ResolutionResult:
        intent = normalize_schedule(snapshot.model_copy(deep=True), context.current_time())
        clarifications: list[ClarificationItem] = []
        resolved_attendees: dict[str, str] = {}

        if intent.attendees and self.contact_resolver:
            contacts = self.contact_resolver.resolve(context.user_id, intent.attendees)
            resolved_attendees = dict(contacts.resolved)

            for ambiguous in contacts.ambiguous:
                clarifications.append(
                    ClarificationItem(
                        field=attendee_field(ambiguous.raw),
                        reason="ambiguous_contact",
                        question=ambiguous.question,
                        options=[
                            ClarificationOption(label=format_candidate(c), value=c.email)
                            for c in ambiguous.candidates
                        ],
                    )
                )
            for raw in contacts.not_found:
                clarifications.append(
                    ClarificationItem(
                        field=attendee_field(raw),
                        reason="contact_not_found",
                        question=(
                            f"We couldn't find \"{raw}\" in your contacts. "
                            "What's their email address?"
                        ),
                    )
                )

            intent.attendees = [resolved_attendees.get(raw, raw) for raw in intent.attendees]

        questions = self._completeness_questions(intent)
        for item in self._conflict_questions(intent):
            # A conflict follow-up replaces the generic question for the same field
            questions = [q for q in questions if q.field != item.field]
            questions.append(item)
        clarifications.extend(questions)

        result = ResolutionResult(
            snapshot=intent,
            resolved_attendees=resolved_attendees,
            clarifications=clarifications,
        )
        logger.info(
            f"Resolution for user {context.user_id}: action={intent.action} "
            f"complete={result.is_complete} pending={len(clarifications)}"
        )
        return result

    def _completeness_questions(self, intent: IntentSnapshot) -> list[ClarificationItem]:
        questions = []
        if intent.action == CalendarAction.CREATE:
            if not intent.title:
                questions.append(
                    ClarificationItem(
                        field="title",
                        reason="missing_title",
                        question="What should we call this event?",
                    )
                )
            if not intent.start_date:
                questions.append(
                    ClarificationItem(
                        field="start_date",
                        reason="missing_start_date",
                        question="When would you like to schedule this?",
                    )
                )
            if not intent.start_time and not intent.is_all_day:
                questions.append(
                    ClarificationItem(
                        field="start_time",
                        reason="missing_start_time",
                        question=(
                            f"What time on {intent.start_date or 'that day'} "
                            "would you like to set the meeting for?"
                        ),
                    )
                )
        elif intent.action in (CalendarAction.UPDATE, CalendarAction.DELETE):
            if not (intent.target_event_title or intent.title):
                verb = "change" if intent.action == CalendarAction.UPDATE else "cancel"
                questions.append(
                    ClarificationItem(
                        field="target_event_title",
                        reason="missing_target_event",
                        question=f"Which event would you like to {verb}?",
                    )
                )
        return questions

    def _conflict_questions(self, intent: IntentSnapshot) -> list[ClarificationItem]:
        if intent.conflict is None or intent.action not in (
            CalendarAction.CREATE,
            CalendarAction.UPDATE,
        ):
            return []
        if intent.conflict_resolution is None:
            return [
                ClarificationItem(
                    field="conflict",
                    reason="calendar_conflict",
                    question=(
                        f'Heads up: you already have "{intent.conflict.summary}" at that time. '
                        "What should I do?"
                    ),
                    options=CONFLICT_OPTIONS,
                )
            ]
        if intent.conflict_resolution == ConflictResolution.MOVE and not intent.start_time:
            return [
                ClarificationItem(
                    field="start_time",
                    reason="conflict_move_time",
                    question="Sure, what time would you like to move this meeting to?",
                )
            ]
        return []
