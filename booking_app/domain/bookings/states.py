"""
Booking state machine types

States, events, the state-to-status mapping and the data shapes threaded
through every transition.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class BookingState(str, Enum):
    # Initial states
    IDLE = "IDLE"
    SESSION_TYPE_SELECTED = "SESSION_TYPE_SELECTED"

    # Calendly states
    CALENDLY_SCHEDULING_INITIATED = "CALENDLY_SCHEDULING_INITIATED"
    CALENDLY_EVENT_SCHEDULED = "CALENDLY_EVENT_SCHEDULED"

    # Payment states
    PAYMENT_REQUIRED = "PAYMENT_REQUIRED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_PROCESSING = "PAYMENT_PROCESSING"
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"

    # Confirmation states
    BOOKING_CONFIRMED = "BOOKING_CONFIRMED"
    BOOKING_COMPLETED = "BOOKING_COMPLETED"

    # Cancellation states
    CANCELLATION_REQUESTED = "CANCELLATION_REQUESTED"
    CANCELLATION_PROCESSING = "CANCELLATION_PROCESSING"
    CANCELLATION_COMPLETED = "CANCELLATION_COMPLETED"

    # Refund states
    REFUND_REQUIRED = "REFUND_REQUIRED"
    REFUND_PROCESSING = "REFUND_PROCESSING"
    REFUND_COMPLETED = "REFUND_COMPLETED"

    ERROR = "ERROR"


class BookingEvent(str, Enum):
    # User-initiated
    SELECT_SESSION_TYPE = "SELECT_SESSION_TYPE"
    INITIATE_CALENDLY_SCHEDULING = "INITIATE_CALENDLY_SCHEDULING"
    SCHEDULE_EVENT = "SCHEDULE_EVENT"
    INITIATE_PAYMENT = "INITIATE_PAYMENT"
    REQUEST_CANCELLATION = "REQUEST_CANCELLATION"

    # System-triggered
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CALENDLY_WEBHOOK_RECEIVED = "CALENDLY_WEBHOOK_RECEIVED"
    STRIPE_WEBHOOK_RECEIVED = "STRIPE_WEBHOOK_RECEIVED"
    MARK_COMPLETED = "MARK_COMPLETED"
    PROCESS_REFUND = "PROCESS_REFUND"
    REFUND_PROCESSED = "REFUND_PROCESSED"

    # Error handling
    ERROR_OCCURRED = "ERROR_OCCURRED"
    RECOVER = "RECOVER"


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class PaymentStatus(str, Enum):
    UNPAID = "UNPAID"
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    CANCELLED = "CANCELLED"


TERMINAL_STATES = frozenset(
    {
        BookingState.BOOKING_COMPLETED,
        BookingState.CANCELLATION_COMPLETED,
        BookingState.REFUND_COMPLETED,
    }
)

_PENDING_UNPAID = (BookingStatus.PENDING, PaymentStatus.UNPAID)
_CANCELLED_PAID = (BookingStatus.CANCELLED, PaymentStatus.PAID)

# Booking/payment status derived from each state
STATE_STATUS_MAP: dict[BookingState, tuple[BookingStatus, PaymentStatus]] = {
    BookingState.IDLE: _PENDING_UNPAID,
    BookingState.SESSION_TYPE_SELECTED: _PENDING_UNPAID,
    BookingState.CALENDLY_SCHEDULING_INITIATED: _PENDING_UNPAID,
    BookingState.CALENDLY_EVENT_SCHEDULED: _PENDING_UNPAID,
    BookingState.PAYMENT_REQUIRED: _PENDING_UNPAID,
    BookingState.PAYMENT_PENDING: _PENDING_UNPAID,
    BookingState.PAYMENT_PROCESSING: _PENDING_UNPAID,
    BookingState.PAYMENT_SUCCEEDED: (BookingStatus.CONFIRMED, PaymentStatus.PAID),
    BookingState.PAYMENT_FAILED: (BookingStatus.PENDING, PaymentStatus.FAILED),
    BookingState.BOOKING_CONFIRMED: (BookingStatus.CONFIRMED, PaymentStatus.PAID),
    BookingState.BOOKING_COMPLETED: (BookingStatus.COMPLETED, PaymentStatus.PAID),
    BookingState.CANCELLATION_REQUESTED: _CANCELLED_PAID,
    BookingState.CANCELLATION_PROCESSING: _CANCELLED_PAID,
    BookingState.CANCELLATION_COMPLETED: (BookingStatus.CANCELLED, PaymentStatus.REFUNDED),
    BookingState.REFUND_REQUIRED: _CANCELLED_PAID,
    BookingState.REFUND_PROCESSING: _CANCELLED_PAID,
    BookingState.REFUND_COMPLETED: (BookingStatus.CANCELLED, PaymentStatus.REFUNDED),
    BookingState.ERROR: _PENDING_UNPAID,
}

# Fields only ever written from STATE_STATUS_MAP, never from a patch
DERIVED_FIELDS = ("booking_status", "payment_status")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StateError(BaseModel):
    """Structured error attached to state data"""

    model_config = ConfigDict(extra="ignore")

    message: Optional[str] = None
    code: Optional[str] = None
    timestamp: Optional[datetime] = None
    source: Optional[str] = None
    is_retryable: Optional[bool] = None
    recovery_token: Optional[str] = None


class BookingStateData(BaseModel):
    """Mutable payload carried through every transition"""

    model_config = ConfigDict(extra="ignore")

    # Core booking data
    booking_id: Optional[str] = None
    builder_id: Optional[str] = None
    client_id: Optional[str] = None
    session_type_id: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    # Status tracking
    booking_status: Optional[BookingStatus] = None
    payment_status: Optional[PaymentStatus] = None

    # Calendly
    calendly_event_id: Optional[str] = None
    calendly_event_uri: Optional[str] = None
    calendly_invitee_uri: Optional[str] = None

    # Stripe
    stripe_session_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    stripe_refund_id: Optional[str] = None

    # Cancellation and refund
    cancel_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    refund_amount: Optional[float] = None

    # Bookkeeping
    last_event_type: Optional[BookingEvent] = None
    timestamp: Optional[datetime] = None
    recovery_token: Optional[str] = None
    error: Optional[StateError] = None

    def merged(self, patch: Optional[dict[str, Any]] = None, **overrides: Any) -> "BookingStateData":
        """Return a validated copy with ``patch`` and ``overrides`` applied on top"""
        data = self.model_dump()
        data.update(patch or {})
        data.update(overrides)
        return BookingStateData.model_validate(data)

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


@dataclass
class BookingContext:
    """Where a single booking is in its lifecycle"""

    booking_id: str
    state: BookingState
    state_data: BookingStateData
    version: int = 0


@dataclass
class TransitionPayload:
    event: BookingEvent
    data: dict[str, Any] = field(default_factory=dict)
    # Only honoured for RECOVER: force the state the booking recovers into
    target_state: Optional[BookingState] = None


@dataclass
class TransitionResult:
    success: bool
    previous_state: BookingState
    current_state: BookingState
    state_data: BookingStateData
    timestamp: datetime
    event: Optional[BookingEvent] = None
    error: Optional[Exception] = None
    # Duplicate or stale webhook accepted as a no-op
    ignored: bool = False
    recovery_url: Optional[str] = None
