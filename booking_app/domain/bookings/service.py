"""Booking state service - Public entry point for the booking lifecycle"""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from ...config import APP_URL, SecuritySettings, get_retry_options
from ...models import StateTransitionLog
from .errors import BookingNotFoundError
from .recovery import BookingRecoveryService, RecoveryOutcome, retry_booking_operation
from .repository import BookingStateRepository
from .security import BookingSecurity
from .state_machine import BookingStateMachine
from .states import (
    DERIVED_FIELDS,
    BookingContext,
    BookingEvent,
    BookingState,
    TransitionPayload,
    TransitionResult,
    utc_now,
)

logger = logging.getLogger(__name__)

CALENDLY_PROVIDER = "calendly"
STRIPE_PROVIDER = "stripe"

_PAYMENT_OPEN_STATES = frozenset({BookingState.PAYMENT_PENDING, BookingState.PAYMENT_PROCESSING})


@dataclass(frozen=True)
class WebhookStep:
    """One internal event a webhook may fire, and the states it may fire from"""

    event: BookingEvent
    from_states: frozenset


_PAYMENT_SUCCEEDED_STEPS = (
    WebhookStep(BookingEvent.PAYMENT_SUCCEEDED, _PAYMENT_OPEN_STATES),
    WebhookStep(BookingEvent.STRIPE_WEBHOOK_RECEIVED, frozenset({BookingState.PAYMENT_SUCCEEDED})),
)
_PAYMENT_FAILED_STEPS = (WebhookStep(BookingEvent.PAYMENT_FAILED, _PAYMENT_OPEN_STATES),)

STRIPE_WEBHOOK_STEPS: dict[str, tuple[WebhookStep, ...]] = {
    "checkout.session.completed": _PAYMENT_SUCCEEDED_STEPS,
    "payment_intent.succeeded": _PAYMENT_SUCCEEDED_STEPS,
    "payment_intent.processing": (
        WebhookStep(BookingEvent.STRIPE_WEBHOOK_RECEIVED, frozenset({BookingState.PAYMENT_PENDING})),
    ),
    "checkout.session.expired": _PAYMENT_FAILED_STEPS,
    "payment_intent.payment_failed": _PAYMENT_FAILED_STEPS,
    "charge.refunded": (
        WebhookStep(BookingEvent.REFUND_PROCESSED, frozenset({BookingState.REFUND_PROCESSING})),
    ),
}

CALENDLY_WEBHOOK_STEPS: dict[str, tuple[WebhookStep, ...]] = {
    "invitee.created": (
        WebhookStep(
            BookingEvent.CALENDLY_WEBHOOK_RECEIVED,
            frozenset({BookingState.CALENDLY_SCHEDULING_INITIATED}),
        ),
    ),
    "invitee.canceled": (
        WebhookStep(BookingEvent.REQUEST_CANCELLATION, frozenset({BookingState.BOOKING_CONFIRMED})),
        WebhookStep(
            BookingEvent.CALENDLY_WEBHOOK_RECEIVED,
            frozenset({BookingState.CANCELLATION_REQUESTED}),
        ),
    ),
}


class BookingStateService:
    """Service layer wiring the state machine, storage and error recovery together"""

    def __init__(
        self,
        db: Session,
        security: Optional[BookingSecurity] = None,
        app_url: str = APP_URL,
        retry_options: Optional[dict] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.security = security or BookingSecurity(SecuritySettings.from_env())
        self.repo = BookingStateRepository(db, self.security)
        self.machine = BookingStateMachine(token_issuer=self.security.generate_state_token)
        self.recovery = BookingRecoveryService(self.repo, self.machine, self.security, app_url)
        self.retry_options = retry_options if retry_options is not None else get_retry_options()
        self.sleep = sleep

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_booking(self, initial_data: Optional[dict[str, Any]] = None) -> BookingContext:
        """Start a booking in the initial state"""
        initial_data = {k: v for k, v in (initial_data or {}).items() if k not in DERIVED_FIELDS}
        booking_id = initial_data.get("booking_id") or str(uuid.uuid4())
        state_data = self.machine.get_initial_state_data().merged(initial_data, booking_id=booking_id)

        logger.info(f"📥 Creating new booking {booking_id}")
        return self.repo.initialize_booking_state(booking_id, self.machine.get_initial_state(), state_data)

    def transition_booking(
        self,
        booking_id: str,
        event: BookingEvent,
        data: Optional[dict[str, Any]] = None,
    ) -> TransitionResult:
        """
        Load, transition and persist a booking

        Raises BookingNotFoundError for an unknown booking. An event that is not
        valid from the current state comes back as a failed result and is
        recorded in the history only. Any other failure is recorded on the
        booking as an ERROR transition.
        """
        if self.repo.get_booking_state(booking_id) is None:
            raise BookingNotFoundError(booking_id)

        payload = TransitionPayload(event=event, data=dict(data or {}))
        loaded: dict[str, BookingContext] = {}
        event_name = getattr(event, "value", event)

        logger.info(f"🔁 Transitioning booking {booking_id} with {event_name}")

        def attempt() -> TransitionResult:
            context = self.repo.get_booking_state(booking_id)
            if context is None:
                raise BookingNotFoundError(booking_id)
            loaded["context"] = context

            result = self.machine.execute_transition(context, payload)
            if not result.success:
                logger.warning(f"⚠️ Transition failed for booking {booking_id}: {result.error}")
                self.repo.append_transition_log(booking_id, result)
                return result

            # Compare-and-swap: a concurrent writer makes this raise and retry
            self.repo.update_booking_state(booking_id, result, expected_version=context.version)
            return result

        try:
            return retry_booking_operation(
                attempt,
                booking_id=booking_id,
                operation_name=f"transition {event_name}",
                sleep=self.sleep,
                **self.retry_options,
            )
        except Exception as e:
            outcome = self.recovery.handle_booking_error(booking_id, e, loaded.get("context"))
            return outcome.transition_result

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def handle_calendly_webhook(self, event: dict[str, Any]) -> Optional[TransitionResult]:
        """Apply a Calendly ``invitee.*`` webhook; returns None when it names no known booking"""
        event_type = event.get("event")
        payload = event.get("payload") or {}
        logger.info(f"📥 Handling Calendly webhook: {event_type}")

        steps = CALENDLY_WEBHOOK_STEPS.get(event_type)
        if not steps:
            logger.warning(f"⚠️ Unknown Calendly event type: {event_type}")
            return None

        data = self._calendly_data(event_type, payload)
        booking_id = (payload.get("tracking") or {}).get("utm_content")
        if not booking_id and data.get("calendly_event_uri"):
            booking_id = self.repo.find_booking_id_by_calendly_event_uri(data["calendly_event_uri"])
        if not booking_id:
            logger.warning(f"⚠️ No booking ID found in Calendly webhook {event_type}")
            return None

        invitee_uri = data.get("calendly_invitee_uri")
        delivery_id = f"{event_type}:{invitee_uri}" if invitee_uri else None
        return self._apply_webhook(CALENDLY_PROVIDER, event_type, delivery_id, booking_id, steps, data)

    def handle_stripe_webhook(self, event: dict[str, Any]) -> Optional[TransitionResult]:
        """Apply a Stripe payment/refund webhook; returns None when it names no known booking"""
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        logger.info(f"📥 Handling Stripe webhook: {event_type}")

        steps = STRIPE_WEBHOOK_STEPS.get(event_type)
        if not steps:
            logger.warning(f"⚠️ Unknown Stripe event type: {event_type}")
            return None

        metadata = obj.get("metadata") or {}
        booking_id = metadata.get("booking_id") or metadata.get("bookingId") or obj.get("client_reference_id")
        if not booking_id:
            logger.warning(f"⚠️ No booking ID found in Stripe webhook {event_type}")
            return None

        data = self._stripe_data(event_type, obj)
        return self._apply_webhook(STRIPE_PROVIDER, event_type, event.get("id"), booking_id, steps, data)

    def _apply_webhook(
        self,
        provider: str,
        event_type: str,
        delivery_id: Optional[str],
        booking_id: str,
        steps: tuple[WebhookStep, ...],
        data: dict[str, Any],
    ) -> Optional[TransitionResult]:
        context = self.repo.get_booking_state(booking_id)
        if context is None:
            logger.warning(f"⚠️ Booking not found for {provider} webhook {event_type}: {booking_id}")
            return None

        if delivery_id and self.repo.has_processed_webhook(provider, delivery_id):
            logger.info(f"ℹ️ Duplicate {provider} webhook {delivery_id} for booking {booking_id} - ignoring")
            return self._ignored(context)

        state = context.state
        result = None
        for step in steps:
            if state not in step.from_states or not self.machine.is_valid_transition(state, step.event):
                continue
            result = self.transition_booking(booking_id, step.event, data)
            if not result.success:
                return result
            state = result.current_state

        if result is None:
            # Stale or out-of-order delivery: the booking is already past this point
            logger.warning(
                f"⚠️ Ignoring {provider} webhook {event_type} for booking {booking_id} in {context.state.value}"
            )
            return self._ignored(context)

        if delivery_id:
            self.repo.mark_webhook_processed(provider, delivery_id, event_type, booking_id)
        return result

    @staticmethod
    def _ignored(context: BookingContext) -> TransitionResult:
        return TransitionResult(
            success=True,
            previous_state=context.state,
            current_state=context.state,
            state_data=context.state_data,
            timestamp=utc_now(),
            ignored=True,
        )

    @staticmethod
    def _calendly_data(event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        raw_event = payload.get("scheduled_event") or payload.get("event") or {}
        scheduled = raw_event if isinstance(raw_event, dict) else {}
        event_uri = scheduled.get("uri") or (raw_event if isinstance(raw_event, str) else None)
        invitee = payload.get("invitee") or {}

        data = {
            "calendly_event_uri": event_uri,
            "calendly_event_id": scheduled.get("uuid") or (event_uri.rstrip("/").split("/")[-1] if event_uri else None),
            "calendly_invitee_uri": payload.get("uri") or invitee.get("uri"),
        }
        if event_type == "invitee.created":
            data["start_time"] = scheduled.get("start_time") or payload.get("start_time")
            data["end_time"] = scheduled.get("end_time") or payload.get("end_time")
        elif event_type == "invitee.canceled":
            cancellation = payload.get("cancellation") or {}
            data["cancel_reason"] = cancellation.get("reason")
            data["cancelled_by"] = cancellation.get("canceled_by")
            data["cancelled_at"] = cancellation.get("created_at") or cancellation.get("canceled_at")

        return {k: v for k, v in data.items() if v is not None}

    @staticmethod
    def _stripe_data(event_type: str, obj: dict[str, Any]) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if event_type.startswith("checkout.session."):
            data["stripe_session_id"] = obj.get("id")
            data["stripe_payment_intent_id"] = obj.get("payment_intent")
        elif event_type.startswith("payment_intent."):
            data["stripe_payment_intent_id"] = obj.get("id")
        elif event_type == "charge.refunded":
            refunds = (obj.get("refunds") or {}).get("data") or []
            data["stripe_refund_id"] = refunds[0].get("id") if refunds else None
            data["stripe_payment_intent_id"] = obj.get("payment_intent")
            if obj.get("amount_refunded") is not None:
                data["refund_amount"] = obj["amount_refunded"] / 100

        if event_type == "payment_intent.payment_failed":
            last_error = obj.get("last_payment_error") or {}
            data["error"] = {
                "code": last_error.get("code"),
                "message": last_error.get("message") or "Payment failed",
                "timestamp": utc_now(),
                "source": "stripe",
            }
        elif event_type == "checkout.session.expired":
            data["error"] = {
                "code": "checkout_session_expired",
                "message": "Checkout session expired before payment",
                "timestamp": utc_now(),
                "source": "stripe",
            }

        return {k: v for k, v in data.items() if v is not None}

    # ------------------------------------------------------------------
    # Queries and recovery
    # ------------------------------------------------------------------

    def get_booking(self, booking_id: str) -> Optional[BookingContext]:
        return self.repo.get_booking_state(booking_id)

    def get_booking_allowed_transitions(self, booking_id: str) -> list[BookingEvent]:
        context = self.repo.get_booking_state(booking_id)
        if context is None:
            return []
        return self.machine.get_allowed_transitions(context.state)

    def get_booking_transition_history(self, booking_id: str) -> list[StateTransitionLog]:
        return self.repo.get_transition_history(booking_id)

    def get_bookings_in_state(self, state: BookingState, limit: int = 10) -> list[BookingContext]:
        return self.repo.get_bookings_in_state(state, limit)

    def recover_booking(self, token: str, target_state: Optional[BookingState] = None) -> RecoveryOutcome:
        return self.recovery.recover_booking_with_token(token, target_state)

    def create_recovery_link(self, booking_id: str, state: BookingState) -> str:
        return self.recovery.create_recovery_link(booking_id, state)

    def delete_booking(self, booking_id: str) -> None:
        self.repo.delete_booking_state(booking_id)
