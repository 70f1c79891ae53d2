"""
Error handling and recovery for the booking state machine

Failures are classified, recorded on the booking as an ERROR transition, and,
when the failure is retryable, paired with a signed recovery link that puts the
booking back into the flow.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar
from urllib.parse import quote

from .errors import classify_error
from .repository import BookingStateRepository
from .security import BookingSecurity
from .state_machine import BookingStateMachine
from .states import (
    BookingContext,
    BookingEvent,
    BookingState,
    BookingStateData,
    TransitionPayload,
    TransitionResult,
    utc_now,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RECOVERY_PATH = "/booking/recovery"


@dataclass
class BookingErrorOutcome:
    transition_result: TransitionResult
    recovery_token: Optional[str] = None
    recovery_url: Optional[str] = None


@dataclass
class RecoveryOutcome:
    success: bool
    booking_id: Optional[str] = None
    transition_result: Optional[TransitionResult] = None


def retry_booking_operation(
    operation: Callable[[], T],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    backoff_factor: float = 2.0,
    booking_id: Optional[str] = None,
    operation_name: str = "booking operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run ``operation`` with exponential backoff

    Non-retryable errors and errors after ``max_retries`` retries are
    re-raised unchanged.
    """
    attempt = 0
    delay = initial_delay

    while True:
        attempt += 1
        try:
            return operation()
        except Exception as e:
            categorized = classify_error(e)

            if not categorized.is_retryable or attempt > max_retries:
                logger.error(
                    f"❌ Failed {operation_name} after {attempt} attempt(s) "
                    f"for booking {booking_id}: [{categorized.category.value}] {categorized.message}"
                )
                raise

            wait = min(delay, max_delay)
            logger.warning(
                f"🔄 Retrying {operation_name} (attempt {attempt}/{max_retries}) for booking {booking_id}: "
                f"[{categorized.category.value}] {categorized.message} - next retry in {wait:.2f}s"
            )
            sleep(wait)
            delay = min(delay * backoff_factor, max_delay)


def _error_result(booking_id: str, message: str, source: str, error: Exception, code: Optional[str] = None):
    return TransitionResult(
        success=False,
        previous_state=BookingState.ERROR,
        current_state=BookingState.ERROR,
        state_data=BookingStateData(
            booking_id=booking_id,
            error={"message": message, "code": code, "timestamp": utc_now(), "source": source},
        ),
        timestamp=utc_now(),
        error=error,
    )


class BookingRecoveryService:
    """Turns failures into recorded ERROR transitions and redeems recovery tokens"""

    def __init__(
        self,
        repo: BookingStateRepository,
        machine: BookingStateMachine,
        security: BookingSecurity,
        app_url: str,
    ):
        self.repo = repo
        self.machine = machine
        self.security = security
        self.app_url = app_url.rstrip("/")

    def build_recovery_url(self, token: str) -> str:
        return f"{self.app_url}{RECOVERY_PATH}?token={quote(token, safe='')}"

    def create_recovery_link(self, booking_id: str, state: BookingState) -> str:
        token = self.security.generate_state_token(booking_id, state.value)
        return self.build_recovery_url(token)

    def handle_booking_error(
        self,
        booking_id: str,
        error: Exception,
        context: Optional[BookingContext] = None,
    ) -> BookingErrorOutcome:
        """
        Record ``error`` on the booking as an ERROR transition

        Never raises: a failure while handling the error yields a fallback
        result that still names the booking.
        """
        try:
            categorized = classify_error(error)
            logger.error(
                f"❌ Handling booking error for {booking_id}: [{categorized.category.value}] "
                f"{categorized.message} (retryable={categorized.is_retryable})"
            )

            if context is None:
                context = self.repo.get_booking_state(booking_id)
                if context is None:
                    logger.error(f"❌ Unable to handle error, booking not found: {booking_id}")
                    return BookingErrorOutcome(
                        transition_result=_error_result(
                            booking_id,
                            categorized.message,
                            "error-handling",
                            categorized,
                            code=categorized.category.value,
                        )
                    )

            payload = TransitionPayload(
                event=BookingEvent.ERROR_OCCURRED,
                data={
                    "error": {
                        "message": categorized.message,
                        "code": categorized.category.value,
                        "timestamp": utc_now(),
                        "source": "error-handling",
                        "is_retryable": categorized.is_retryable,
                    }
                },
            )
            transition_result = self.machine.execute_transition(context, payload)
            transition_result.error = categorized

            recovery_token = None
            if transition_result.success:
                self.repo.update_booking_state(booking_id, transition_result)
                recovery_token = transition_result.state_data.recovery_token
            elif context.state is BookingState.ERROR:
                logger.warning(f"⚠️ Booking {booking_id} is already in ERROR")
                recovery_token = context.state_data.recovery_token
            else:
                logger.warning(f"⚠️ Booking {booking_id} cannot enter ERROR from {context.state.value}")

            recovery_url = None
            if categorized.is_retryable and recovery_token:
                recovery_url = self.build_recovery_url(recovery_token)
            else:
                recovery_token = None

            transition_result.recovery_url = recovery_url
            return BookingErrorOutcome(
                transition_result=transition_result,
                recovery_token=recovery_token,
                recovery_url=recovery_url,
            )

        except Exception as handling_error:
            logger.error(
                f"❌ Error in error handling system for booking {booking_id}: {handling_error} "
                f"(original error: {error})"
            )
            return BookingErrorOutcome(
                transition_result=_error_result(
                    booking_id,
                    "An unexpected error occurred while processing the booking",
                    "error-handling-system",
                    error,
                )
            )

    def recover_booking_with_token(
        self, token: str, target_state: Optional[BookingState] = None
    ) -> RecoveryOutcome:
        """Move a booking out of ERROR using a signed recovery token"""
        try:
            verification = self.security.verify_state_token(token)
            if not verification["is_valid"]:
                logger.warning("🚫 Invalid or expired recovery token")
                return RecoveryOutcome(success=False)

            booking_id = verification["booking_id"]
            context = self.repo.get_booking_state(booking_id)
            if context is None:
                logger.error(f"❌ Booking not found for recovery: {booking_id}")
                return RecoveryOutcome(success=False, booking_id=booking_id)

            if context.state is not BookingState.ERROR:
                logger.info(
                    f"ℹ️ Booking {booking_id} is in {context.state.value}, not ERROR - no recovery needed"
                )
                return RecoveryOutcome(success=True, booking_id=booking_id)

            recovery_state = target_state or self._state_from_token(verification["state"]) or BookingState.IDLE
            payload = TransitionPayload(
                event=BookingEvent.RECOVER,
                data={"error": None},
                target_state=recovery_state,
            )
            transition_result = self.machine.execute_transition(context, payload)
            if not transition_result.success:
                return RecoveryOutcome(success=False, booking_id=booking_id, transition_result=transition_result)

            self.repo.update_booking_state(booking_id, transition_result, expected_version=context.version)
            logger.info(f"✅ Recovered booking {booking_id} into {recovery_state.value}")
            return RecoveryOutcome(success=True, booking_id=booking_id, transition_result=transition_result)

        except Exception as e:
            logger.error(f"❌ Error recovering booking with token: {e}")
            return RecoveryOutcome(success=False)

    @staticmethod
    def _state_from_token(state_name: Optional[str]) -> Optional[BookingState]:
        try:
            state = BookingState(state_name)
        except ValueError:
            return None
        return None if state is BookingState.ERROR else state
