"""Tests for the intent resolution pipeline."""

from datetime import UTC, datetime
from unittest.mock import MagicMock

from voicecal.schemas.intent import CalendarAction, ConflictResolution, IntentSnapshot
from voicecal.services.calendar import Contact
from voicecal.services.contact_resolver import ContactResolver
from voicecal.services.resolution import ResolutionContext, ResolutionPipeline

CONTEXT = ResolutionContext(user_id=1, timezone="UTC")


def make_pipeline(contacts=None):
    directory = MagicMock()
    directory.get_contacts.return_value = contacts or []
    return ResolutionPipeline(ContactResolver(directory))


def test_complete_create_intent():
    """Test that a fully specified create needs no questions."""
    snapshot = IntentSnapshot(
        action=CalendarAction.CREATE,
        title="Dentist",
        start_date="2026-03-10",
        start_time="09:00",
    )

    result = make_pipeline().resolve(snapshot, CONTEXT)

    assert result.is_complete
    assert result.next_question is None


def test_create_missing_fields_asks_in_order():
    snapshot = IntentSnapshot(action=CalendarAction.CREATE)

    result = make_pipeline().resolve(snapshot, CONTEXT)

    assert [c.field for c in result.clarifications] == ["title", "start_date", "start_time"]
    assert result.next_question.question == "What should we call this event?"
    assert result.clarifications[2].question == (
        "What time on that day would you like to set the meeting for?"
    )


def test_all_day_event_does_not_ask_for_time():
    snapshot = IntentSnapshot(
        action=CalendarAction.CREATE, title="Holiday", start_date="2026-03-10", is_all_day=True
    )

    result = make_pipeline().resolve(snapshot, CONTEXT)

    assert result.is_complete


def test_ambiguous_attendee_becomes_multiple_choice():
    """Test that two matching contacts produce an option per candidate."""
    pipeline = make_pipeline(
        [
            Contact(name="John Smith", email="js@example.com"),
            Contact(name="John Doe", email="jd@example.com"),
        ]
    )
    snapshot = IntentSnapshot(
        action=CalendarAction.CREATE,
        title="Lunch",
        start_date="2026-03-10",
        start_time="12:00",
        attendees=["John"],
    )

    result = pipeline.resolve(snapshot, CONTEXT)

    assert len(result.clarifications) == 1
    item = result.clarifications[0]
    assert item.field == "attendee:John"
    assert item.reason == "ambiguous_contact"
    assert [o.value for o in item.options] == ["js@example.com", "jd@example.com"]
    assert item.options[0].label == "John Smith (js@example.com)"


def test_resolved_attendees_are_replaced_with_addresses():
    pipeline = make_pipeline([Contact(name="Sarah Connor", email="sarah@example.com")])
    snapshot = IntentSnapshot(
        action=CalendarAction.CREATE,
        title="Sync",
        start_date="2026-03-10",
        start_time="10:00",
        attendees=["Sarah"],
    )

    result = pipeline.resolve(snapshot, CONTEXT)

    assert result.is_complete
    assert result.snapshot.attendees == ["sarah@example.com"]
    assert result.resolved_attendees == {"Sarah": "sarah@example.com"}
    # Input is left untouched
    assert snapshot.attendees == ["Sarah"]


def test_unknown_attendee_asks_for_email():
    snapshot = IntentSnapshot(
        action=CalendarAction.CREATE,
        title="Sync",
        start_date="2026-03-10",
        start_time="10:00",
        attendees=["Zed"],
    )

    result = make_pipeline().resolve(snapshot, CONTEXT)

    item = result.next_question
    assert item.reason == "contact_not_found"
    assert item.options == []
    assert "Zed" in item.question


def test_delete_without_target_asks_which_event():
    snapshot = IntentSnapshot(action=CalendarAction.DELETE)

    result = make_pipeline().resolve(snapshot, CONTEXT)

    assert result.next_question.field == "target_event_title"
    assert result.next_question.question == "Which event would you like to cancel?"


def test_update_with_target_is_complete():
    snapshot = IntentSnapshot(
        action=CalendarAction.UPDATE, target_event_title="Standup", start_time="10:00"
    )

    result = make_pipeline().resolve(snapshot, CONTEXT)

    assert result.is_complete


def test_query_needs_nothing():
    result = make_pipeline().resolve(IntentSnapshot(action=CalendarAction.QUERY), CONTEXT)

    assert result.is_complete


def conflicting_create(**overrides) -> IntentSnapshot:
    values = {
        "action": CalendarAction.CREATE,
        "title": "Lunch",
        "start_date": "2026-03-10",
        "start_time": "12:00",
        "conflict": {"summary": "Team sync", "existingEventId": "e7"},
    }
    return IntentSnapshot(**{**values, **overrides})


def test_conflict_offers_three_choices():
    result = make_pipeline().resolve(conflicting_create(), CONTEXT)

    assert [c.field for c in result.clarifications] == ["conflict"]
    item = result.next_question
    assert item.reason == "calendar_conflict"
    assert '"Team sync"' in item.question
    assert [o.label for o in item.options] == ["Keep both", "Move new event", "Cancel"]
    assert [o.value for o in item.options] == ["keep", "move", "cancel"]


def test_keeping_both_events_completes_the_intent():
    result = make_pipeline().resolve(
        conflicting_create(conflict_resolution=ConflictResolution.KEEP), CONTEXT
    )

    assert result.is_complete


def test_moving_asks_for_the_new_time_once():
    """Test that the move follow-up replaces the generic missing-time question."""
    snapshot = conflicting_create(conflict_resolution=ConflictResolution.MOVE, start_time=None)

    result = make_pipeline().resolve(snapshot, CONTEXT)

    assert [c.field for c in result.clarifications] == ["start_time"]
    assert result.next_question.reason == "conflict_move_time"
    assert result.next_question.question == (
        "Sure, what time would you like to move this meeting to?"
    )


def test_moved_event_with_new_time_is_complete():
    snapshot = conflicting_create(conflict_resolution=ConflictResolution.MOVE, start_time="14:00")

    assert make_pipeline().resolve(snapshot, CONTEXT).is_complete


def test_conflict_is_ignored_for_delete():
    snapshot = IntentSnapshot(
        action=CalendarAction.DELETE,
        target_event_title="Gym",
        conflict={"summary": "Team sync"},
    )

    assert make_pipeline().resolve(snapshot, CONTEXT).is_complete


def test_spoken_time_from_extraction_is_normalised():
    snapshot = IntentSnapshot(
        action=CalendarAction.CREATE, title="Dentist", start_date="2026-03-10", start_time="3pm"
    )

    result = make_pipeline().resolve(snapshot, CONTEXT)

    assert result.is_complete
    assert result.snapshot.start_time == "15:00"
    assert snapshot.start_time == "3pm"


def test_unreadable_date_from_extraction_is_asked_again():
    snapshot = IntentSnapshot(
        action=CalendarAction.CREATE, title="Dentist", start_date="sometime", start_time="09:00"
    )

    result = make_pipeline().resolve(snapshot, CONTEXT)

    assert [c.field for c in result.clarifications] == ["start_date"]
    assert result.snapshot.start_date is None


def test_relative_date_is_resolved_against_context_clock():
    context = ResolutionContext(
        user_id=1, timezone="UTC", now=datetime(2026, 3, 10, 8, 30, tzinfo=UTC)
    )
    snapshot = IntentSnapshot(
        action=CalendarAction.CREATE, title="Dentist", start_date="tomorrow", start_time="09:00"
    )

    result = make_pipeline().resolve(snapshot, context)

    assert result.snapshot.start_date == "2026-03-11"
