"""Resolve spoken attendee names to email addresses from the user's contacts."""

import logging
import re
from dataclasses import dataclass, field
from typing import Protocol

from voicecal.services.calendar import Contact

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class ContactDirectory(Protocol):
    def get_contacts(self, user_id: int) -> list[Contact]: ...


@dataclass
class AmbiguousContact:
    raw: str
    candidates: list[Contact]
    question: str


@dataclass
class ContactResolution:
    resolved: dict[str, str] = field(default_factory=dict)
    ambiguous: list[AmbiguousContact] = field(default_factory=list)
    not_found: list[str] = field(default_factory=list)

    @property
    def needs_clarification(self) -> bool:
        return bool(self.ambiguous or self.not_found)


def is_email(value: str) -> bool:
    return bool(EMAIL_PATTERN.match(value.strip()))


def format_candidate(contact: Contact) -> str:
    return f"{contact.name} ({contact.email})"


class ContactResolver:
    """Match raw attendee values against the calendar provider's contact list."""

    def __init__(self, directory: ContactDirectory) -> None:
        self.directory = directory

    def resolve(self, user_id: int, raw_values: list[str]) -> ContactResolution:
        result = ContactResolution()
        if not raw_values:
            return result

        lookups = [value for value in raw_values if not is_email(value)]
        contacts: list[Contact] = []
        if lookups:
            try:
                contacts = self.directory.get_contacts(user_id)
            except Exception as e:
                logger.error(f"Contact lookup failed for user {user_id}: {e}")
                result.not_found = list(raw_values)
                return result

        for value in raw_values:
            if is_email(value):
                result.resolved[value] = value.strip()
                continue

            matches = find_contact_matches(value, contacts)
            if not matches:
                result.not_found.append(value)
            elif len(matches) == 1:
                result.resolved[value] = matches[0].email
            else:
                result.ambiguous.append(
                    AmbiguousContact(
                        raw=value,
                        candidates=matches,
                        question=ambiguous_question(value, matches),
                    )
                )

        logger.info(
            f"Contact resolution for user {user_id}: {len(result.resolved)} resolved, "
            f"{len(result.ambiguous)} ambiguous, {len(result.not_found)} not found"
        )
        return result


def ambiguous_question(raw: str, matches: list[Contact]) -> str:
    listing = "\n".join(f"{i}. {format_candidate(m)}" for i, m in enumerate(matches, start=1))
    return f'We found {len(matches)} contacts for "{raw}". Which one?\n{listing}'


def find_contact_matches(raw: str, contacts: list[Contact]) -> list[Contact]:
    """Apply the match cascade; the first strategy with any hit wins.

    Candidates keep the directory's order so questions enumerate them stably.
    """
    wanted = " ".join(raw.lower().split())
    if not wanted:
        return []

    def split(contact: Contact) -> tuple[str, str, str]:
        full = " ".join(contact.name.lower().split())
        first, _, last = full.partition(" ")
        return full, first, last

    def first_plus_initial(contact: Contact) -> bool:
        if " " not in wanted:
            return False
        _, first, last = split(contact)
        want_first, _, want_last = wanted.partition(" ")
        return bool(last) and first == want_first and last.startswith(want_last)

    def partial(contact: Contact) -> bool:
        full, first, _ = split(contact)
        return wanted in full or (bool(first) and first in wanted)

    strategies = [
        lambda c: split(c)[0] == wanted,
        lambda c: split(c)[1] == wanted,
        lambda c: bool(split(c)[2]) and split(c)[2] == wanted,
        first_plus_initial,
        partial,
    ]
    for matches_strategy in strategies:
        matches = [contact for contact in contacts if matches_strategy(contact)]
        if matches:
            return matches
    return []
