"""Error taxonomy and classification for pipeline stages."""

import logging
from dataclasses import dataclass
from enum import StrEnum

logger = logging.getLogger(__name__)


class VoiceCalendarError(Exception):
    """Base class for errors raised by voicecal collaborators."""


class ChannelError(VoiceCalendarError):
    """Messaging channel request failed."""


class TranscriptionError(VoiceCalendarError):
    """Speech-to-text request failed or returned nothing usable."""


class IntentExtractionError(VoiceCalendarError):
    """The extraction model failed or returned an unusable snapshot."""


class CalendarError(VoiceCalendarError):
    """Calendar gateway request failed."""


class StageDataError(VoiceCalendarError):
    """A stage found the job missing data an earlier stage should have persisted."""


class ErrorCategory(StrEnum):
    NETWORK = "NETWORK"
    RATE_LIMIT = "RATE_LIMIT"
    AUTHENTICATION = "AUTHENTICATION"
    NOT_FOUND = "NOT_FOUND"
    INVALID_INPUT = "INVALID_INPUT"
    PROCESSING = "PROCESSING"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class ClassifiedError:
    category: ErrorCategory
    is_retryable: bool
    internal_message: str
    user_message: str
    original: BaseException


# Evaluated in order; first category with a matching keyword wins.
_RULES: list[tuple[ErrorCategory, tuple[str, ...], bool, str | None]] = [
    (
        ErrorCategory.NETWORK,
        (
            "etimedout",
            "econnreset",
            "enotfound",
            "econnrefused",
            "network",
            "connection refused",
            "connection reset",
            "connecterror",
            "connectionerror",
            "connecttimeout",
            "readtimeout",
            "timed out",
        ),
        True,
        "We're having trouble connecting. We'll try again shortly.",
    ),
    (
        ErrorCategory.RATE_LIMIT,
        ("rate limit", "too many requests", "429"),
        True,
        "We're processing a lot of requests. We'll try again in a moment.",
    ),
    (
        ErrorCategory.AUTHENTICATION,
        ("unauthorized", "401", "403", "authentication", "invalid token"),
        False,
        "There's an issue with your account permissions. Please contact support.",
    ),
    (
        ErrorCategory.NOT_FOUND,
        ("not found", "404"),
        False,
        None,  # the literal error text is shown
    ),
    (
        ErrorCategory.INVALID_INPUT,
        ("invalid", "validation", "400"),
        False,
        "We couldn't understand your voice note. Please try again.",
    ),
    (
        ErrorCategory.PROCESSING,
        ("processing", "timeout", "service unavailable", "503"),
        True,
        "We're having trouble processing your request. We'll try again.",
    ),
]

UNKNOWN_USER_MESSAGE = "Something went wrong. We'll try again shortly."


def _error_text(error: BaseException | str) -> str:
    if isinstance(error, BaseException):
        message = str(error)
        return message or type(error).__name__
    return str(error)


def classify_error(error: BaseException | str) -> ClassifiedError:
    """Map an error to a category and retry decision.

    Matching is a case-insensitive substring search over the error message (plus the
    exception class name, so message-less errors like ``httpx.ConnectTimeout()`` still
    classify). Has no side effects.
    """
    original = error if isinstance(error, BaseException) else Exception(error)
    message = _error_text(error)
    haystack = message.lower()
    if isinstance(error, BaseException):
        haystack = f"{type(error).__name__.lower()} {haystack}"

    for category, keywords, retryable, user_message in _RULES:
        if any(keyword in haystack for keyword in keywords):
            return ClassifiedError(
                category=category,
                is_retryable=retryable,
                internal_message=message,
                user_message=user_message if user_message is not None else message,
                original=original,
            )

    return ClassifiedError(
        category=ErrorCategory.UNKNOWN,
        is_retryable=True,
        internal_message=message,
        user_message=UNKNOWN_USER_MESSAGE,
        original=original,
    )


def log_classified_error(classified: ClassifiedError, **context) -> None:
    """Log a classified error at a severity chosen by its category."""
    details = " ".join(f"{key}={value}" for key, value in context.items())
    if classified.category in (ErrorCategory.AUTHENTICATION, ErrorCategory.INVALID_INPUT):
        logger.error(f"{classified.category}: {classified.internal_message} [{details}]")
    elif classified.is_retryable:
        logger.warning(
            f"{classified.category}: {classified.internal_message} (will retry) [{details}]"
        )
    else:
        logger.error(f"{classified.category}: {classified.internal_message} [{details}]")
