"""Intent snapshot and clarification schemas."""

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CalendarAction(StrEnum):
    """Calendar operation requested by a voice note."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    QUERY = "QUERY"


class ConflictResolution(StrEnum):
    """What the user chose when a new event overlaps an existing one."""

    KEEP = "keep"
    MOVE = "move"
    CANCEL = "cancel"


ATTENDEE_PREFIX = "attendee:"


def attendee_field(raw: str) -> str:
    return f"{ATTENDEE_PREFIX}{raw}"


class EventConflict(BaseModel):
    """An existing event the requested one overlaps."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        coerce_numbers_to_str=True,
    )

    summary: str
    existing_event_id: str | None = None


class IntentSnapshot(BaseModel):
    """Structured representation of what the user asked for.

    Stored on the voice job and pending intent in camelCase, which is also the shape the
    extraction model is asked to return.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    action: CalendarAction | None = None
    title: str | None = None
    description: str | None = None
    start_date: str | None = None  # YYYY-MM-DD
    start_time: str | None = None  # HH:MM, 24h
    end_date: str | None = None
    end_time: str | None = None
    duration_minutes: int | None = None
    location: str | None = None
    attendees: list[str] = Field(default_factory=list)
    is_all_day: bool = False
    target_event_title: str | None = None
    target_event_date: str | None = None
    target_event_time: str | None = None
    confidence: float | None = None
    missing_fields: list[str] = Field(default_factory=list)
    conflict: EventConflict | None = None
    conflict_resolution: ConflictResolution | None = None

    @field_validator("action", mode="before")
    @classmethod
    def normalize_action(cls, v):
        if isinstance(v, str):
            v = v.strip().upper()
            return v or None
        return v

    @field_validator("attendees", "missing_fields", mode="before")
    @classmethod
    def none_to_list(cls, v):
        return [] if v is None else v

    @field_validator("is_all_day", mode="before")
    @classmethod
    def none_to_false(cls, v):
        return False if v is None else v

    @field_validator("conflict", mode="before")
    @classmethod
    def drop_malformed_conflict(cls, v):
        if isinstance(v, EventConflict) or (isinstance(v, dict) and v.get("summary")):
            return v
        return None

    def to_storage(self) -> dict:
        """Serialize for a JSON column."""
        return self.model_dump(mode="json", by_alias=True)


class ClarificationOption(BaseModel):
    """One selectable answer to a clarification question."""

    label: str
    value: str


class ClarificationItem(BaseModel):
    """An outstanding question needed to complete an intent."""

    field: str
    reason: str
    question: str
    options: list[ClarificationOption] = Field(default_factory=list)
    resolved: bool = False
    answer: str | None = None


class ResolutionResult(BaseModel):
    """Outcome of running the resolvers and completeness rules over a snapshot."""

    snapshot: IntentSnapshot
    resolved_attendees: dict[str, str] = Field(default_factory=dict)
    clarifications: list[ClarificationItem] = Field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.clarifications

    @property
    def next_question(self) -> ClarificationItem | None:
        return self.clarifications[0] if self.clarifications else None
