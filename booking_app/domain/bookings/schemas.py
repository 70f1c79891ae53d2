"""Booking domain schemas - Pydantic models for request validation and responses"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from .states import BookingEvent, BookingState, BookingStateData


class BookingCreate(BaseModel):
    """Schema for starting a new booking"""

    builder_id: Optional[str] = None
    client_id: Optional[str] = None
    session_type_id: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class TransitionRequest(BaseModel):
    event: BookingEvent
    data: dict[str, Any] = Field(default_factory=dict)


class RecoverRequest(BaseModel):
    token: str
    target_state: Optional[BookingState] = None


class BookingResponse(BaseModel):
    """Current state of a booking; payment identifiers are masked"""

    booking_id: str
    state: BookingState
    version: int
    state_data: dict[str, Any]


class TransitionResponse(BaseModel):
    success: bool
    ignored: bool = False
    previous_state: BookingState
    current_state: BookingState
    event: Optional[str] = None
    timestamp: datetime
    error: Optional[str] = None
    recovery_url: Optional[str] = None
    state_data: dict[str, Any]


class TransitionLogResponse(BaseModel):
    from_state: str
    to_state: str
    event_type: Optional[str] = None
    timestamp: datetime
    success: bool
    error: Optional[str] = None

    class Config:
        from_attributes = True


class AllowedTransitionsResponse(BaseModel):
    booking_id: str
    state: BookingState
    allowed_events: list[BookingEvent]


class RecoverResponse(BaseModel):
    success: bool
    booking_id: Optional[str] = None
    state: Optional[BookingState] = None


def public_state_data(state_data: BookingStateData, sanitize) -> dict[str, Any]:
    """State data safe to return to a caller: everything except secrets, with identifiers masked"""
    data = state_data.model_dump(mode="json", exclude_none=True, exclude={"recovery_token"})
    if "error" in data:
        data["error"].pop("recovery_token", None)
    data.update({k: v for k, v in sanitize(state_data).items() if k.startswith("stripe_")})
    return data
