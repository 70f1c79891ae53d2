"""
Booking error taxonomy and classification

Errors raised by collaborators are tagged by exception type where the type is
known (SQLAlchemy, httpx, builtin timeouts). Anything opaque falls back to a
keyword heuristic over the message, which is best effort: keyword sets overlap
and the first matching category wins.
"""

from enum import Enum
from typing import Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError


class ErrorCategory(str, Enum):
    VALIDATION = "VALIDATION"
    AUTH = "AUTH"
    PAYMENT = "PAYMENT"
    CALENDLY = "CALENDLY"
    DATABASE = "DATABASE"
    NETWORK = "NETWORK"
    SERVER = "SERVER"
    TIMEOUT = "TIMEOUT"
    UNKNOWN = "UNKNOWN"


RETRYABLE_CATEGORIES = frozenset(
    {
        ErrorCategory.PAYMENT,
        ErrorCategory.CALENDLY,
        ErrorCategory.DATABASE,
        ErrorCategory.NETWORK,
        ErrorCategory.TIMEOUT,
        ErrorCategory.SERVER,
    }
)


class BookingNotFoundError(Exception):
    """Raised when a booking has no recorded state"""

    def __init__(self, booking_id: str):
        super().__init__(f"Booking not found: {booking_id}")
        self.booking_id = booking_id


class InvalidTransitionError(Exception):
    """Raised (or attached to a failed result) for an event not allowed from a state"""

    def __init__(self, state, event):
        state_name = getattr(state, "value", state)
        event_name = getattr(event, "value", event)
        super().__init__(f"Invalid transition: {event_name} from state {state_name}")
        self.state = state
        self.event = event


class InvalidStateDataError(Exception):
    """
    Attached to a failed result when an event's data does not validate

    The message names the offending fields and what was wrong with them but
    never the submitted values, since those may be payment identifiers.
    """

    def __init__(self, problems: list[dict]):
        self.problems = problems
        details = "; ".join(
            f"{'.'.join(str(part) for part in p.get('loc', ())) or 'data'}: {p.get('msg', 'invalid value')}"
            for p in problems
        )
        super().__init__(f"Invalid booking data: {details}")

    @classmethod
    def from_validation_error(cls, error) -> "InvalidStateDataError":
        return cls(error.errors(include_input=False, include_url=False, include_context=False))


class StaleBookingStateError(Exception):
    """Raised when a compare-and-swap update loses to a concurrent writer"""

    def __init__(self, booking_id: str, expected_version: int):
        super().__init__(
            f"Concurrent update detected for booking {booking_id} (expected version {expected_version})"
        )
        self.booking_id = booking_id
        self.expected_version = expected_version


class CategorizedError(Exception):
    """Error carrying a category and a retryability flag"""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        is_retryable: bool = False,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.is_retryable = is_retryable
        self.original_error = original_error


# Checked in order; the first match wins
_KEYWORD_CATEGORIES: list[tuple[ErrorCategory, tuple[str, ...]]] = [
    (ErrorCategory.VALIDATION, ("validation", "invalid", "required")),
    (ErrorCategory.AUTH, ("unauthorized", "unauthenticated", "permission", "forbidden")),
    (ErrorCategory.PAYMENT, ("payment", "stripe", "card", "charge")),
    (ErrorCategory.CALENDLY, ("calendly", "scheduling")),
    (ErrorCategory.DATABASE, ("database", "db", "sql", "query")),
    (ErrorCategory.NETWORK, ("network", "connection", "offline", "unreachable")),
    (ErrorCategory.TIMEOUT, ("timeout", "timed out")),
    (ErrorCategory.SERVER, ("internal server error", "service unavailable", "bad gateway")),
]


def _category_from_type(error: BaseException) -> Optional[ErrorCategory]:
    if isinstance(error, (BookingNotFoundError, InvalidTransitionError)):
        return ErrorCategory.VALIDATION
    if isinstance(error, (StaleBookingStateError, SQLAlchemyError)):
        return ErrorCategory.DATABASE
    if isinstance(error, (httpx.TimeoutException, TimeoutError)):
        return ErrorCategory.TIMEOUT
    if isinstance(error, (httpx.NetworkError, ConnectionError)):
        return ErrorCategory.NETWORK
    if isinstance(error, httpx.HTTPStatusError):
        if error.response.status_code >= 500:
            return ErrorCategory.SERVER
        if error.response.status_code in (401, 403):
            return ErrorCategory.AUTH
    return None


def _category_from_message(message: str) -> ErrorCategory:
    lowered = message.lower()
    for category, keywords in _KEYWORD_CATEGORIES:
        if any(keyword in lowered for keyword in keywords):
            return category
    return ErrorCategory.UNKNOWN


def classify_error(error: object) -> CategorizedError:
    """Assign a category and retryability to any raised error"""
    if isinstance(error, CategorizedError):
        return error

    message = str(error)
    original = error if isinstance(error, BaseException) else None

    category = _category_from_type(error) if original is not None else None
    if category is None:
        category = _category_from_message(message)

    return CategorizedError(
        message,
        category=category,
        is_retryable=category in RETRYABLE_CATEGORIES,
        original_error=original,
    )
