"""Calendar gateway client (create/update/delete/search events and contacts)."""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import httpx

from voicecal.config import Settings, get_settings
from voicecal.services.errors import CalendarError

logger = logging.getLogger(__name__)


@dataclass
class CalendarEvent:
    id: str
    title: str
    start: datetime
    end: datetime | None = None
    link: str | None = None
    location: str | None = None
    is_all_day: bool = False

    @classmethod
    def from_api(cls, data: dict) -> "CalendarEvent":
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "Untitled Event",
            start=datetime.fromisoformat(data["start"]),
            end=datetime.fromisoformat(data["end"]) if data.get("end") else None,
            link=data.get("htmlLink") or data.get("webLink") or data.get("link"),
            location=data.get("location"),
            is_all_day=bool(data.get("isAllDay", False)),
        )

    def to_summary(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "start": self.start.isoformat(),
            "end": self.end.isoformat() if self.end else None,
            "link": self.link,
            "location": self.location,
            "isAllDay": self.is_all_day,
        }


@dataclass
class Contact:
    name: str
    email: str


class CalendarService:
    """Talks to the calendar gateway that fronts the user's connected provider."""

    def __init__(
        self, settings: Settings | None = None, client: httpx.Client | None = None
    ) -> None:
        self.settings = settings or get_settings()
        headers = {}
        if self.settings.calendar_api_key:
            headers["Authorization"] = f"Bearer {self.settings.calendar_api_key}"
        self.client = client or httpx.Client(
            base_url=self.settings.calendar_api_url, headers=headers, timeout=30.0
        )

    def create_event(self, user_id: int, event: dict) -> CalendarEvent:
        response = self.client.post(f"/users/{user_id}/events", json=event)
        _raise_for_status(response, "create event")
        created = CalendarEvent.from_api(response.json())
        logger.info(f"Created calendar event {created.id} for user {user_id}")
        return created

    def update_event(self, user_id: int, event_id: str, changes: dict) -> CalendarEvent:
        response = self.client.patch(f"/users/{user_id}/events/{event_id}", json=changes)
        _raise_for_status(response, "update event")
        return CalendarEvent.from_api(response.json())

    def delete_event(self, user_id: int, event_id: str) -> None:
        response = self.client.delete(f"/users/{user_id}/events/{event_id}")
        _raise_for_status(response, "delete event")

    def search_events(
        self,
        user_id: int,
        title: str | None = None,
        date: str | None = None,
        time: str | None = None,
    ) -> list[CalendarEvent]:
        candidates = {"q": title, "date": date, "time": time}
        params = {key: value for key, value in candidates.items() if value}
        response = self.client.get(f"/users/{user_id}/events", params=params)
        _raise_for_status(response, "search events")
        return [CalendarEvent.from_api(item) for item in response.json().get("events", [])]

    def get_recent_events(self, user_id: int, days: int = 7) -> list[CalendarEvent]:
        """Events within ``days`` either side of now, for conflict detection."""
        now = datetime.now(UTC)
        params = {
            "from": (now - timedelta(days=days)).isoformat(),
            "to": (now + timedelta(days=days)).isoformat(),
        }
        response = self.client.get(f"/users/{user_id}/events", params=params)
        _raise_for_status(response, "list recent events")
        return [CalendarEvent.from_api(item) for item in response.json().get("events", [])]

    def get_contacts(self, user_id: int) -> list[Contact]:
        response = self.client.get(f"/users/{user_id}/contacts")
        _raise_for_status(response, "get contacts")
        return [
            Contact(name=item.get("name") or "", email=item["email"])
            for item in response.json().get("contacts", [])
            if item.get("email")
        ]

    def close(self) -> None:
        self.client.close()


def _raise_for_status(response: httpx.Response, action: str) -> None:
    if response.is_success:
        return
    detail = response.text[:200]
    try:
        body = response.json()
        if isinstance(body, dict):
            detail = body.get("detail") or body.get("error") or detail
    except ValueError:
        pass
    if response.status_code == 404:
        raise CalendarError(f"404 not found: {detail}")
    raise CalendarError(f"Calendar {action} failed: {response.status_code} {detail}")
