"""Clarification engine: the pending-intent state machine.

A pending intent moves ``awaiting_clarification -> resolved | expired``. Questions go out one
at a time as text, reply buttons or a list (or several at once as a structured form when one
is configured). Answers are matched back by option id, flow token, or, for free text, by the
sender's active pending intent. When the last outstanding question is answered the answers
are merged into the snapshot and ``process-intent`` is enqueued once for that round.
"""

import logging
import re
import secrets
from datetime import UTC, datetime, timedelta

from sqlalchemy.orm import Session

from voicecal.config import Settings
from voicecal.models import FlowSession, InteractivePrompt, PendingIntent, VoiceJob
from voicecal.models.enums import (
    AnswerSource,
    PendingIntentStatus,
    PromptChannel,
    VoiceJobStatus,
)
from voicecal.schemas.intent import ClarificationItem, IntentSnapshot, ResolutionResult
from voicecal.schemas.payloads import ProcessIntentPayload
from voicecal.schemas.whatsapp import ParsedMessage
from voicecal.services.answers import merge_answers
from voicecal.services.notification_service import NotificationService
from voicecal.services.queue import QueueManager, Stage, clarification_dedup_key
from voicecal.services.timing import StageOutcome, with_stage_timing
from voicecal.services.whatsapp import MAX_BUTTONS, MAX_LIST_OPTIONS, WhatsAppService

logger = logging.getLogger(__name__)

OPTION_ID = re.compile(r"^clr:(?P<prompt_id>\d+):(?P<index>\d+)$")


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything is stored in UTC."""
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def option_id(prompt_id: int, index: int) -> str:
    return f"clr:{prompt_id}:{index}"


def choose_channel(item: ClarificationItem) -> PromptChannel:
    if not item.options:
        return PromptChannel.TEXT
    if len(item.options) <= MAX_BUTTONS:
        return PromptChannel.BUTTONS
    if len(item.options) <= MAX_LIST_OPTIONS:
        return PromptChannel.LIST
    return PromptChannel.TEXT


def format_text_prompt(question: str, labels: list[str]) -> str:
    """Plain-text rendering, enumerating options when there are any."""
    if not labels:
        return question
    listing = "\n".join(f"{i}. {label}" for i, label in enumerate(labels, start=1))
    return f"📝 {question}\n\n👉 Choose one of the options below:\n{listing}"


def outstanding_items(plan: dict) -> list[dict]:
    return [item for item in plan.get("items", []) if not item.get("resolved")]


class ClarificationEngine:
    """Owns PendingIntent, InteractivePrompt and FlowSession rows."""

    def __init__(
        self,
        db: Session,
        whatsapp: WhatsAppService,
        queue: QueueManager,
        notifications: NotificationService,
        settings: Settings,
    ) -> None:
        self.db = db
        self.whatsapp = whatsapp
        self.queue = queue
        self.notifications = notifications
        self.settings = settings

    @property
    def expiry(self) -> timedelta:
        return timedelta(minutes=self.settings.clarification_expiry_minutes)

    # Starting a round

    def begin(self, job: VoiceJob, result: ResolutionResult) -> PendingIntent:
        """Park the job on a pending intent and send the first question."""
        now = datetime.now(UTC)
        pending = self.db.query(PendingIntent).filter(PendingIntent.job_id == job.id).first()
        if pending is None:
            round_number = 1
            pending = PendingIntent(
                job_id=job.id,
                user_id=job.user_id,
                channel_number_id=job.channel_number_id,
            )
            self.db.add(pending)
        elif pending.status == PendingIntentStatus.AWAITING_CLARIFICATION:
            # Redelivered process-intent: the round in progress keeps its answers
            self._park_job(job.id, pending.intent_snapshot)
            self.db.commit()
            logger.info(f"Job {job.id} already awaiting clarification round {pending.round}")
            return pending
        else:
            round_number = pending.round + 1

        snapshot = result.snapshot.to_storage()
        pending.intent_snapshot = snapshot
        pending.clarification_plan = {
            "round": round_number,
            "items": [item.model_dump() for item in result.clarifications],
            "responses": {},
        }
        pending.status = PendingIntentStatus.AWAITING_CLARIFICATION.value
        pending.round = round_number
        pending.expires_at = now + self.expiry
        self.db.flush()
        self._park_job(job.id, snapshot)
        self.db.commit()
        self.db.refresh(pending)

        logger.info(
            f"Job {job.id} awaiting clarification (round {round_number}, "
            f"{len(result.clarifications)} questions)"
        )
        self.dispatch_next(pending, job.sender_address)
        return pending

    def _park_job(self, job_id: int, snapshot: dict) -> None:
        self.db.query(VoiceJob).filter(VoiceJob.id == job_id).update(
            {
                "status": VoiceJobStatus.AWAITING_CLARIFICATION.value,
                "clarification_status": PendingIntentStatus.AWAITING_CLARIFICATION.value,
                "intent_snapshot": snapshot,
            },
            synchronize_session="fetch",
        )

    # Sending questions

    def dispatch_next(self, pending: PendingIntent, address: str) -> PromptChannel | None:
        """Send the next outstanding question (or a form covering several)."""
        remaining = outstanding_items(pending.clarification_plan)
        if not remaining:
            return None

        def send() -> PromptChannel:
            free_text = [item for item in remaining if not item.get("options")]
            if self.settings.flows_enabled and len(free_text) > 1:
                self._send_flow(pending, address, free_text)
                return PromptChannel.FLOW
            first = ClarificationItem.model_validate(remaining[0])
            return self._send_prompt(pending, address, first)

        def metadata(outcome: StageOutcome) -> dict:
            data = {
                "round": pending.round,
                "field": remaining[0]["field"],
                "outstanding": len(remaining),
            }
            if outcome.ok:
                data["channel"] = outcome.result.value
            else:
                data["error"] = str(outcome.error)
            return data

        return with_stage_timing(
            self.db, pending.job_id, "clarification_dispatch", send, metadata=metadata
        )

    def _send_prompt(
        self, pending: PendingIntent, address: str, item: ClarificationItem
    ) -> PromptChannel:
        channel = choose_channel(item)
        prompt = InteractivePrompt(
            pending_intent_id=pending.id,
            field_key=item.field,
            options=[],
            expires_at=pending.expires_at,
        )
        self.db.add(prompt)
        self.db.flush()
        prompt.options = [
            {"id": option_id(prompt.id, index), "label": option.label, "value": option.value}
            for index, option in enumerate(item.options)
        ]
        labelled = [(option["id"], option["label"]) for option in prompt.options]

        if channel == PromptChannel.BUTTONS:
            message_id = self.whatsapp.send_buttons(address, item.question, labelled)
        elif channel == PromptChannel.LIST:
            message_id = self.whatsapp.send_list(address, item.question, labelled)
        elif item.options:
            message_id = self.whatsapp.send_text(
                address, format_text_prompt(item.question, [label for _, label in labelled])
            )
        else:
            message_id = self.whatsapp.send_text(address, item.question)

        prompt.outbound_message_id = message_id
        self.db.commit()
        logger.info(f"Sent {channel} clarification for {item.field} on pending intent {pending.id}")
        return channel

    def _send_flow(self, pending: PendingIntent, address: str, items: list[dict]) -> None:
        fields = [
            {
                "field": item["field"],
                "question": item["question"],
                "options": item.get("options", []),
            }
            for item in items
        ]
        session = FlowSession(
            flow_token=secrets.token_urlsafe(24),
            pending_intent_id=pending.id,
            fields_requested=fields,
            expires_at=pending.expires_at,
        )
        self.db.add(session)
        self.db.flush()
        form_fields = [
            {"name": f"field_{index}", "label": field["question"]}
            for index, field in enumerate(fields)
        ]
        self.whatsapp.send_flow(
            address,
            "We need a few more details to finish this event.",
            session.flow_token,
            form_fields,
        )
        self.db.commit()
        logger.info(f"Sent {len(fields)}-field clarification form for pending intent {pending.id}")

    # Receiving answers

    def handle_inbound(self, message: ParsedMessage, now: datetime | None = None) -> bool:
        """Try to treat an inbound message as a clarification answer.

        Returns False when nothing active matched; the caller handles it as an ordinary
        message.
        """
        now = now or datetime.now(UTC)
        if message.kind == "selection" and message.selection_id:
            return self._handle_selection(message, now)
        if message.kind == "flow" and message.flow_token:
            return self._handle_flow(message, now)
        if message.kind == "text" and message.text:
            return self._handle_text(message, now)
        return False

    def _handle_selection(self, message: ParsedMessage, now: datetime) -> bool:
        match = OPTION_ID.match(message.selection_id)
        if not match:
            return False
        prompt = (
            self.db.query(InteractivePrompt)
            .filter(InteractivePrompt.id == int(match.group("prompt_id")))
            .first()
        )
        if prompt is None or prompt.response_received:
            return False
        index = int(match.group("index"))
        if index >= len(prompt.options):
            return False
        option = prompt.options[index]
        return self._answer_prompt(
            prompt, option["value"], option["label"], AnswerSource.INTERACTIVE, now
        )

    def _handle_text(self, message: ParsedMessage, now: datetime) -> bool:
        pending = self._active_pending_for_sender(message.sender, now)
        if pending is None:
            return False
        prompt = (
            self.db.query(InteractivePrompt)
            .filter(
                InteractivePrompt.pending_intent_id == pending.id,
                InteractivePrompt.response_received.is_(False),
            )
            .order_by(InteractivePrompt.id.desc())
            .first()
        )
        if prompt is None:
            return False

        text = message.text.strip()
        value, label = text, None
        if prompt.options:
            chosen = _pick_option(prompt.options, text)
            if chosen is not None:
                value, label = chosen["value"], chosen["label"]
        return self._answer_prompt(prompt, value, label, AnswerSource.TEXT, now)

    def _handle_flow(self, message: ParsedMessage, now: datetime) -> bool:
        session = (
            self.db.query(FlowSession).filter(FlowSession.flow_token == message.flow_token).first()
        )
        if session is None or session.response_received:
            return False
        if as_utc(session.expires_at) <= now:
            logger.info(f"Ignoring answer for expired flow session {session.flow_token}")
            return False
        pending = self._load_active_pending(session.pending_intent_id, now)
        if pending is None:
            return False

        claimed = (
            self.db.query(FlowSession)
            .filter(
                FlowSession.flow_token == session.flow_token,
                FlowSession.response_received.is_(False),
            )
            .update(
                {"response_received": True, "response_data": message.flow_response},
                synchronize_session="fetch",
            )
        )
        if not claimed:
            self.db.rollback()
            return False

        answers = {}
        for index, field in enumerate(session.fields_requested):
            value = (message.flow_response or {}).get(f"field_{index}")
            if value not in (None, ""):
                answers[field["field"]] = (str(value), None)
        return self._record_answers(pending, answers, AnswerSource.FLOW, now)

    def _answer_prompt(
        self,
        prompt: InteractivePrompt,
        value: str,
        label: str | None,
        source: AnswerSource,
        now: datetime,
    ) -> bool:
        if as_utc(prompt.expires_at) <= now:
            logger.info(f"Ignoring late answer for expired prompt {prompt.id}")
            return False
        pending = self._load_active_pending(prompt.pending_intent_id, now)
        if pending is None:
            return False

        claimed = (
            self.db.query(InteractivePrompt)
            .filter(
                InteractivePrompt.id == prompt.id,
                InteractivePrompt.response_received.is_(False),
            )
            .update(
                {"response_received": True, "selected_value": value},
                synchronize_session="fetch",
            )
        )
        if not claimed:
            self.db.rollback()
            return False
        return self._record_answers(pending, {prompt.field_key: (value, label)}, source, now)

    def _record_answers(
        self,
        pending: PendingIntent,
        answers: dict[str, tuple[str, str | None]],
        source: AnswerSource,
        now: datetime,
    ) -> bool:
        plan = dict(pending.clarification_plan)
        items = [dict(item) for item in plan.get("items", [])]
        responses = dict(plan.get("responses", {}))
        for item in items:
            if item["field"] in answers and not item.get("resolved"):
                value, label = answers[item["field"]]
                item["resolved"] = True
                item["answer"] = value
                responses[item["field"]] = {
                    "value": value,
                    "label": label,
                    "source": source.value,
                    "respondedAt": now.isoformat(),
                }
        plan["items"] = items
        plan["responses"] = responses
        remaining = outstanding_items(plan)

        def apply() -> bool:
            if remaining:
                self.db.query(PendingIntent).filter(
                    PendingIntent.id == pending.id,
                    PendingIntent.status == PendingIntentStatus.AWAITING_CLARIFICATION.value,
                ).update({"clarification_plan": plan}, synchronize_session="fetch")
                self.db.commit()
                return False
            return self._resolve(pending, plan, now)

        resolved = with_stage_timing(
            self.db,
            pending.job_id,
            "clarification_response",
            apply,
            metadata=lambda outcome: {
                "fields": sorted(answers),
                "source": source.value,
                "remaining": len(remaining),
                **({"error": str(outcome.error)} if not outcome.ok else {}),
            },
        )
        if not resolved and remaining:
            self.db.refresh(pending)
            job = self.db.query(VoiceJob).filter(VoiceJob.id == pending.job_id).first()
            self.dispatch_next(pending, job.sender_address)
        return True

    def _resolve(self, pending: PendingIntent, plan: dict, now: datetime) -> bool:
        snapshot = merge_answers(
            IntentSnapshot.model_validate(pending.intent_snapshot),
            plan["responses"],
            self.settings.default_timezone,
        )
        merged = snapshot.to_storage()
        transitioned = (
            self.db.query(PendingIntent)
            .filter(
                PendingIntent.id == pending.id,
                PendingIntent.status == PendingIntentStatus.AWAITING_CLARIFICATION.value,
            )
            .update(
                {
                    "clarification_plan": plan,
                    "intent_snapshot": merged,
                    "status": PendingIntentStatus.RESOLVED.value,
                },
                synchronize_session="fetch",
            )
        )
        if not transitioned:
            self.db.rollback()
            return False
        self.db.query(VoiceJob).filter(VoiceJob.id == pending.job_id).update(
            {
                "clarification_status": PendingIntentStatus.RESOLVED.value,
                "intent_snapshot": merged,
            },
            synchronize_session="fetch",
        )
        self.db.commit()

        self.queue.enqueue(
            Stage.PROCESS_INTENT,
            ProcessIntentPayload(
                job_id=pending.job_id,
                intent_snapshot=merged,
                clarification_round=pending.round,
            ),
            dedup_key=clarification_dedup_key(pending.job_id, pending.round),
        )
        logger.info(f"Pending intent {pending.id} resolved; resuming job {pending.job_id}")
        return True

    def _load_active_pending(self, pending_id: int, now: datetime) -> PendingIntent | None:
        pending = (
            self.db.query(PendingIntent)
            .filter(PendingIntent.id == pending_id)
            .with_for_update()
            .first()
        )
        if pending is None or pending.status != PendingIntentStatus.AWAITING_CLARIFICATION:
            return None
        if as_utc(pending.expires_at) <= now:
            logger.info(f"Ignoring answer for expired pending intent {pending.id}")
            return None
        return pending

    def _active_pending_for_sender(self, sender: str, now: datetime) -> PendingIntent | None:
        return (
            self.db.query(PendingIntent)
            .join(VoiceJob, VoiceJob.id == PendingIntent.job_id)
            .filter(
                VoiceJob.sender_address == sender,
                PendingIntent.status == PendingIntentStatus.AWAITING_CLARIFICATION.value,
                PendingIntent.expires_at > now,
            )
            .order_by(PendingIntent.created_at.desc(), PendingIntent.id.desc())
            .first()
        )

    # Expiry

    def expire_stale(self, now: datetime | None = None) -> int:
        """Expire pending intents past their deadline and fail their jobs."""
        now = now or datetime.now(UTC)
        stale = (
            self.db.query(PendingIntent)
            .filter(
                PendingIntent.status == PendingIntentStatus.AWAITING_CLARIFICATION.value,
                PendingIntent.expires_at <= now,
            )
            .all()
        )
        expired = 0
        for pending in stale:
            updated = (
                self.db.query(PendingIntent)
                .filter(
                    PendingIntent.id == pending.id,
                    PendingIntent.status == PendingIntentStatus.AWAITING_CLARIFICATION.value,
                )
                .update({"status": PendingIntentStatus.EXPIRED.value}, synchronize_session="fetch")
            )
            if not updated:
                continue
            self.db.query(VoiceJob).filter(
                VoiceJob.id == pending.job_id,
                VoiceJob.status == VoiceJobStatus.AWAITING_CLARIFICATION.value,
            ).update(
                {
                    "status": VoiceJobStatus.FAILED.value,
                    "clarification_status": PendingIntentStatus.EXPIRED.value,
                    "error_message": "Clarification expired without an answer",
                    "error_stage": "clarification",
                    "completed_at": now,
                },
                synchronize_session="fetch",
            )
            self.db.commit()
            expired += 1

            job = self.db.query(VoiceJob).filter(VoiceJob.id == pending.job_id).first()
            fields = [item["field"] for item in outstanding_items(pending.clarification_plan)]
            self.notifications.send_clarification_timeout(job.sender_address, fields)
            logger.info(f"Expired pending intent {pending.id} for job {pending.job_id}")
        return expired

    def remind_expiring(self, within: timedelta, now: datetime | None = None) -> int:
        """Pending intents close to expiry get one reminder (currently a logged no-op)."""
        now = now or datetime.now(UTC)
        expiring = (
            self.db.query(PendingIntent)
            .filter(
                PendingIntent.status == PendingIntentStatus.AWAITING_CLARIFICATION.value,
                PendingIntent.expires_at > now,
                PendingIntent.expires_at <= now + within,
            )
            .all()
        )
        reminded = 0
        for pending in expiring:
            plan = dict(pending.clarification_plan or {})
            if plan.get("reminderSentAt"):
                continue
            plan["reminderSentAt"] = now.isoformat()
            self.db.query(PendingIntent).filter(PendingIntent.id == pending.id).update(
                {"clarification_plan": plan}, synchronize_session="fetch"
            )
            self.db.commit()

            job = self.db.query(VoiceJob).filter(VoiceJob.id == pending.job_id).first()
            fields = [item["field"] for item in outstanding_items(plan)]
            self.notifications.send_clarification_reminder(job.sender_address, fields)
            reminded += 1
        return reminded


def _pick_option(options: list[dict], text: str) -> dict | None:
    """Numeric replies pick an enumerated option; otherwise match a label or value."""
    if text.isdigit():
        index = int(text) - 1
        return options[index] if 0 <= index < len(options) else None
    lowered = text.lower()
    for option in options:
        if option["label"].lower() == lowered or option["value"].lower() == lowered:
            return option
    return None
