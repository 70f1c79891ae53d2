"""
Booking state machine

The transition graph is a flat table keyed by state, then event. Hooks are
pure data transformations on ``BookingStateData``: they log, derive statuses
from ``STATE_STATUS_MAP`` and stamp bookkeeping fields, but never touch
storage.
"""

import logging
from typing import Callable, Optional

from pydantic import ValidationError

from .errors import InvalidStateDataError, InvalidTransitionError
from .states import (
    DERIVED_FIELDS,
    STATE_STATUS_MAP,
    TERMINAL_STATES,
    BookingContext,
    BookingEvent,
    BookingState,
    BookingStateData,
    TransitionPayload,
    TransitionResult,
    utc_now,
)

logger = logging.getLogger(__name__)

S = BookingState
E = BookingEvent

TRANSITIONS: dict[BookingState, dict[BookingEvent, BookingState]] = {
    S.IDLE: {
        E.SELECT_SESSION_TYPE: S.SESSION_TYPE_SELECTED,
    },
    S.SESSION_TYPE_SELECTED: {
        E.INITIATE_CALENDLY_SCHEDULING: S.CALENDLY_SCHEDULING_INITIATED,
    },
    S.CALENDLY_SCHEDULING_INITIATED: {
        E.SCHEDULE_EVENT: S.CALENDLY_EVENT_SCHEDULED,
        E.CALENDLY_WEBHOOK_RECEIVED: S.CALENDLY_EVENT_SCHEDULED,
    },
    S.CALENDLY_EVENT_SCHEDULED: {
        E.INITIATE_PAYMENT: S.PAYMENT_REQUIRED,
    },
    S.PAYMENT_REQUIRED: {
        E.INITIATE_PAYMENT: S.PAYMENT_PENDING,
    },
    S.PAYMENT_PENDING: {
        E.STRIPE_WEBHOOK_RECEIVED: S.PAYMENT_PROCESSING,
        E.PAYMENT_SUCCEEDED: S.PAYMENT_SUCCEEDED,
        E.PAYMENT_FAILED: S.PAYMENT_FAILED,
    },
    S.PAYMENT_PROCESSING: {
        E.PAYMENT_SUCCEEDED: S.PAYMENT_SUCCEEDED,
        E.PAYMENT_FAILED: S.PAYMENT_FAILED,
    },
    S.PAYMENT_SUCCEEDED: {
        E.STRIPE_WEBHOOK_RECEIVED: S.BOOKING_CONFIRMED,
    },
    S.PAYMENT_FAILED: {
        E.INITIATE_PAYMENT: S.PAYMENT_PENDING,
    },
    S.BOOKING_CONFIRMED: {
        E.MARK_COMPLETED: S.BOOKING_COMPLETED,
        E.REQUEST_CANCELLATION: S.CANCELLATION_REQUESTED,
    },
    S.BOOKING_COMPLETED: {},
    S.CANCELLATION_REQUESTED: {
        E.PROCESS_REFUND: S.REFUND_REQUIRED,
        E.CALENDLY_WEBHOOK_RECEIVED: S.CANCELLATION_PROCESSING,
    },
    S.CANCELLATION_PROCESSING: {
        E.PROCESS_REFUND: S.REFUND_REQUIRED,
    },
    S.CANCELLATION_COMPLETED: {},
    S.REFUND_REQUIRED: {
        E.PROCESS_REFUND: S.REFUND_PROCESSING,
    },
    S.REFUND_PROCESSING: {
        E.REFUND_PROCESSED: S.REFUND_COMPLETED,
    },
    S.REFUND_COMPLETED: {},
    S.ERROR: {
        E.RECOVER: S.IDLE,
    },
}

# Every live state can fail into ERROR
for _state, _events in TRANSITIONS.items():
    if _state not in TERMINAL_STATES and _state is not S.ERROR:
        _events[E.ERROR_OCCURRED] = S.ERROR

# States whose entry overwrites booking/payment status from STATE_STATUS_MAP
STATUS_MAPPED_STATES = frozenset(
    {
        S.CALENDLY_EVENT_SCHEDULED,
        S.PAYMENT_SUCCEEDED,
        S.PAYMENT_FAILED,
        S.BOOKING_CONFIRMED,
        S.BOOKING_COMPLETED,
        S.CANCELLATION_REQUESTED,
        S.CANCELLATION_COMPLETED,
        S.REFUND_COMPLETED,
    }
)

TokenIssuer = Callable[[str, str], str]


class BookingStateMachine:
    """Applies the transition table and runs entry/exit hooks"""

    initial_state = S.IDLE

    def __init__(self, token_issuer: Optional[TokenIssuer] = None):
        # Mints the recovery token stamped on entry into ERROR
        self.token_issuer = token_issuer

    # ------------------------------------------------------------------
    # Table queries
    # ------------------------------------------------------------------

    def get_initial_state(self) -> BookingState:
        return self.initial_state

    def get_initial_state_data(self) -> BookingStateData:
        return BookingStateData(timestamp=utc_now())

    def get_allowed_transitions(self, state: BookingState) -> list[BookingEvent]:
        return list(TRANSITIONS.get(state, {}).keys())

    def is_valid_transition(self, state: BookingState, event: BookingEvent) -> bool:
        return event in TRANSITIONS.get(state, {})

    def get_next_state(self, state: BookingState, event: BookingEvent) -> Optional[BookingState]:
        return TRANSITIONS.get(state, {}).get(event)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_transition(self, context: BookingContext, payload: TransitionPayload) -> TransitionResult:
        """
        Apply ``payload`` to ``context``

        An event that is not defined for the current state yields a failed
        result carrying the original state; it never raises.
        """
        current_state = context.state
        try:
            event = BookingEvent(payload.event)
        except ValueError:
            return self._failed(context, payload, InvalidTransitionError(current_state, payload.event))

        logger.debug(f"Executing {event.value} for booking {context.booking_id} in {current_state.value}")

        next_state = self.get_next_state(current_state, event)
        if next_state is None:
            return self._failed(context, payload, InvalidTransitionError(current_state, event))

        if payload.target_state is not None:
            if event is not E.RECOVER:
                logger.warning(f"⚠️ Ignoring target state for non-recovery event {event.value}")
            elif BookingState(payload.target_state) is S.ERROR:
                return self._failed(context, payload, InvalidTransitionError(current_state, event))
            else:
                next_state = BookingState(payload.target_state)

        patch = {k: v for k, v in (payload.data or {}).items() if k not in DERIVED_FIELDS}
        try:
            state_data = context.state_data.merged(
                patch, booking_id=context.booking_id, last_event_type=event, timestamp=utc_now()
            )
        except ValidationError as e:
            return self._failed(context, payload, InvalidStateDataError.from_validation_error(e))

        state_data = self._on_exit(current_state, state_data)
        state_data = self._on_entry(next_state, state_data, current_state)

        return TransitionResult(
            success=True,
            previous_state=current_state,
            current_state=next_state,
            state_data=state_data,
            timestamp=utc_now(),
            event=event,
        )

    def _failed(self, context: BookingContext, payload: TransitionPayload, error: Exception) -> TransitionResult:
        logger.warning(f"⚠️ Transition rejected for booking {context.booking_id}: {error}")
        state_data = context.state_data.merged(
            error={
                "message": str(error),
                "code": "INVALID_TRANSITION" if isinstance(error, InvalidTransitionError) else "VALIDATION",
                "timestamp": utc_now(),
                "source": "state-machine",
            }
        )
        return TransitionResult(
            success=False,
            previous_state=context.state,
            current_state=context.state,
            state_data=state_data,
            timestamp=utc_now(),
            event=payload.event,
            error=error,
        )

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def _on_exit(self, state: BookingState, state_data: BookingStateData) -> BookingStateData:
        if state is S.ERROR:
            # Leaving ERROR spends the recovery token and clears the failure
            return state_data.model_copy(update={"error": None, "recovery_token": None})
        return state_data

    def _on_entry(
        self, state: BookingState, state_data: BookingStateData, previous_state: BookingState
    ) -> BookingStateData:
        booking_id = state_data.booking_id

        if state is S.ERROR:
            return self._enter_error(state_data, previous_state)

        logger.info(f"➡️ Booking {booking_id} entered {state.value} (from {previous_state.value})")

        updates = {}
        if state in STATUS_MAPPED_STATES:
            booking_status, payment_status = STATE_STATUS_MAP[state]
            updates["booking_status"] = booking_status
            updates["payment_status"] = payment_status

        if state is S.CANCELLATION_REQUESTED:
            updates["cancelled_at"] = state_data.cancelled_at or utc_now()
            logger.info(
                f"🚫 Cancellation requested for booking {booking_id} "
                f"by {state_data.cancelled_by or 'unknown'}: {state_data.cancel_reason or 'no reason given'}"
            )
        elif state is S.REFUND_COMPLETED:
            logger.info(f"💸 Refund completed for booking {booking_id}: amount={state_data.refund_amount}")

        if not updates:
            return state_data
        return state_data.model_copy(update=updates)

    def _enter_error(self, state_data: BookingStateData, previous_state: BookingState) -> BookingStateData:
        error = state_data.error
        logger.error(
            f"❌ Booking {state_data.booking_id} entered ERROR from {previous_state.value}: "
            f"{error.message if error else 'unknown error'}"
        )

        retryable = error is None or error.is_retryable is not False
        if not (retryable and self.token_issuer and state_data.booking_id):
            return state_data

        token = self.token_issuer(state_data.booking_id, previous_state.value)
        updates = {"recovery_token": token}
        if error is not None:
            updates["error"] = error.model_copy(update={"recovery_token": token})
        return state_data.model_copy(update=updates)


_default_machine = BookingStateMachine()


def get_initial_state() -> BookingState:
    return _default_machine.get_initial_state()


def get_initial_state_data() -> BookingStateData:
    return _default_machine.get_initial_state_data()


def get_allowed_transitions(state: BookingState) -> list[BookingEvent]:
    return _default_machine.get_allowed_transitions(state)


def is_valid_transition(state: BookingState, event: BookingEvent) -> bool:
    return _default_machine.is_valid_transition(state, event)


def get_next_state(state: BookingState, event: BookingEvent) -> Optional[BookingState]:
    return _default_machine.get_next_state(state, event)


def execute_transition(context: BookingContext, payload: TransitionPayload) -> TransitionResult:
    return _default_machine.execute_transition(context, payload)
