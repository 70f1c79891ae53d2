"""Booking router - FastAPI endpoints for the booking lifecycle"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ...database import get_db
from .errors import BookingNotFoundError
from .schemas import (
    AllowedTransitionsResponse,
    BookingCreate,
    BookingResponse,
    RecoverRequest,
    RecoverResponse,
    TransitionLogResponse,
    TransitionRequest,
    TransitionResponse,
    public_state_data,
)
from .service import BookingStateService
from .states import BookingContext, BookingState, TransitionResult

logger = logging.getLogger(__name__)

# Handlers are plain functions so FastAPI runs the blocking service calls in its threadpool
router = APIRouter(prefix="/bookings", tags=["Bookings"])


def get_booking_service(db: Session = Depends(get_db)) -> BookingStateService:
    """Dependency injection for BookingStateService"""
    return BookingStateService(db)


def _booking_response(service: BookingStateService, context: BookingContext) -> BookingResponse:
    return BookingResponse(
        booking_id=context.booking_id,
        state=context.state,
        version=context.version,
        state_data=public_state_data(context.state_data, service.security.sanitize_for_logging),
    )


def transition_response(service: BookingStateService, result: TransitionResult) -> TransitionResponse:
    return TransitionResponse(
        success=result.success,
        ignored=result.ignored,
        previous_state=result.previous_state,
        current_state=result.current_state,
        event=getattr(result.event, "value", result.event),
        timestamp=result.timestamp,
        error=str(result.error) if result.error is not None else None,
        recovery_url=result.recovery_url,
        state_data=public_state_data(result.state_data, service.security.sanitize_for_logging),
    )


@router.post("", response_model=BookingResponse, status_code=201)
def create_booking(
    data: BookingCreate,
    service: BookingStateService = Depends(get_booking_service),
):
    """Start a new booking in IDLE"""
    context = service.create_booking(data.model_dump(exclude_none=True))
    return _booking_response(service, context)


@router.get("/state/{state}", response_model=list[BookingResponse])
def list_bookings_in_state(
    state: BookingState,
    limit: int = Query(10, ge=1, le=100),
    service: BookingStateService = Depends(get_booking_service),
):
    """Most recently transitioned bookings in a state"""
    return [_booking_response(service, c) for c in service.get_bookings_in_state(state, limit)]


@router.post("/recover", response_model=RecoverResponse)
def recover_booking(
    data: RecoverRequest,
    service: BookingStateService = Depends(get_booking_service),
):
    """Redeem a recovery token for a booking stuck in ERROR"""
    outcome = service.recover_booking(data.token, data.target_state)
    if not outcome.success:
        raise HTTPException(status_code=400, detail="Invalid or expired recovery token")

    state = outcome.transition_result.current_state if outcome.transition_result else None
    if state is None and outcome.booking_id:
        context = service.get_booking(outcome.booking_id)
        state = context.state if context else None
    return RecoverResponse(success=True, booking_id=outcome.booking_id, state=state)


@router.get("/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    service: BookingStateService = Depends(get_booking_service),
):
    context = service.get_booking(booking_id)
    if context is None:
        raise HTTPException(status_code=404, detail="Booking not found")
    return _booking_response(service, context)


@router.post("/{booking_id}/transitions", response_model=TransitionResponse)
def transition_booking(
    booking_id: str,
    data: TransitionRequest,
    service: BookingStateService = Depends(get_booking_service),
):
    """Apply an event to a booking; a rejected event comes back with success=false"""
    try:
        result = service.transition_booking(booking_id, data.event, data.data)
    except BookingNotFoundError as e:
        raise HTTPException(status_code=404, detail="Booking not found") from e

    return transition_response(service, result)


@router.get("/{booking_id}/transitions/allowed", response_model=AllowedTransitionsResponse)
def get_allowed_transitions(
    booking_id: str,
    service: BookingStateService = Depends(get_booking_service),
):
    context = service.get_booking(booking_id)
    if context is None:
        raise HTTPException(status_code=404, detail="Booking not found")
    return AllowedTransitionsResponse(
        booking_id=booking_id,
        state=context.state,
        allowed_events=service.get_booking_allowed_transitions(booking_id),
    )


@router.get("/{booking_id}/history", response_model=list[TransitionLogResponse])
def get_transition_history(
    booking_id: str,
    service: BookingStateService = Depends(get_booking_service),
):
    """Every recorded transition attempt, oldest first"""
    return service.get_booking_transition_history(booking_id)
