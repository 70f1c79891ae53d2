"""Booking state repository - Durable storage for booking contexts and their history"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models import Booking, ProcessedWebhookEvent, StateTransitionLog
from .errors import BookingNotFoundError, StaleBookingStateError
from .security import BookingSecurity
from .states import (
    STATE_STATUS_MAP,
    BookingContext,
    BookingState,
    BookingStateData,
    TransitionResult,
)

logger = logging.getLogger(__name__)

DEFAULT_BOOKING_DURATION = timedelta(hours=1)
ERROR_MESSAGE_LENGTH = StateTransitionLog.error.type.length


def _db_datetime(value: Optional[datetime]) -> Optional[datetime]:
    """Columns store naive UTC"""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BookingStateRepository:
    """Repository for booking state persistence

    Sensitive fields are encrypted before every write and decrypted after
    every read. State, state data and the history entry for a transition are
    committed together or not at all.
    """

    def __init__(self, db: Session, security: BookingSecurity):
        self.db = db
        self.security = security

    # ------------------------------------------------------------------
    # Booking state
    # ------------------------------------------------------------------

    def initialize_booking_state(
        self,
        booking_id: str,
        initial_state: BookingState,
        initial_state_data: BookingStateData,
    ) -> BookingContext:
        """Create the booking row, or reset an existing one to ``initial_state``"""
        logger.info(
            f"📝 Initializing booking state {booking_id} in {initial_state.value}: "
            f"{self.security.sanitize_for_logging(initial_state_data)}"
        )

        secure_state_data = self.security.encrypt_sensitive_data(initial_state_data)
        now = _utcnow()

        try:
            booking = self.db.query(Booking).filter(Booking.id == booking_id).first()
            if booking:
                booking.current_state = initial_state.value
                booking.state_data = secure_state_data.to_storage()
                booking.last_transition = now
                booking.state_version = (booking.state_version or 0) + 1
            else:
                booking_status, payment_status = STATE_STATUS_MAP[initial_state]
                start_time = _db_datetime(initial_state_data.start_time) or now
                end_time = _db_datetime(initial_state_data.end_time) or start_time + DEFAULT_BOOKING_DURATION
                booking = Booking(
                    id=booking_id,
                    builder_id=initial_state_data.builder_id or "",
                    client_id=initial_state_data.client_id,
                    session_type_id=initial_state_data.session_type_id,
                    start_time=start_time,
                    end_time=end_time,
                    status=booking_status.value,
                    payment_status=payment_status.value,
                    current_state=initial_state.value,
                    state_data=secure_state_data.to_storage(),
                    last_transition=now,
                    state_version=0,
                )
                self.db.add(booking)

            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Error initializing booking state {booking_id}: {e}")
            raise

        return BookingContext(
            booking_id=booking_id,
            state=initial_state,
            state_data=initial_state_data,
            version=booking.state_version,
        )

    def get_booking_state(self, booking_id: str) -> Optional[BookingContext]:
        """Load and decrypt the current context, or None when no state was ever set"""
        booking = self.db.query(Booking).filter(Booking.id == booking_id).first()

        if not booking or not booking.current_state:
            logger.warning(f"⚠️ Booking state not found: {booking_id}")
            return None

        return self._to_context(booking)

    def update_booking_state(
        self,
        booking_id: str,
        transition_result: TransitionResult,
        expected_version: Optional[int] = None,
    ) -> BookingContext:
        """
        Persist a transition result and append it to the history

        When ``expected_version`` is given the write is a compare-and-swap and
        raises StaleBookingStateError if another writer got there first.
        """
        current_state = transition_result.current_state
        state_data = transition_result.state_data

        logger.info(
            f"💾 Updating booking state {booking_id}: "
            f"{transition_result.previous_state.value} → {current_state.value} "
            f"(success={transition_result.success}) {self.security.sanitize_for_logging(state_data)}"
        )

        secure_state_data = self.security.encrypt_sensitive_data(state_data)
        values = self._denormalized_columns(secure_state_data)
        values.update(
            {
                Booking.current_state: current_state.value,
                Booking.state_data: secure_state_data.to_storage(),
                Booking.last_transition: _utcnow(),
                Booking.state_version: Booking.state_version + 1,
            }
        )

        try:
            query = self.db.query(Booking).filter(Booking.id == booking_id)
            if expected_version is not None:
                query = query.filter(Booking.state_version == expected_version)

            updated = query.update(values, synchronize_session=False)
            if updated == 0:
                exists = self.db.query(Booking.id).filter(Booking.id == booking_id).first()
                if exists and expected_version is not None:
                    raise StaleBookingStateError(booking_id, expected_version)
                raise BookingNotFoundError(booking_id)

            self.db.add(self._history_entry(booking_id, transition_result))
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Error updating booking state {booking_id}: {e}")
            raise

        version = self.db.query(Booking.state_version).filter(Booking.id == booking_id).scalar()
        return BookingContext(
            booking_id=booking_id,
            state=current_state,
            state_data=state_data,
            version=version,
        )

    def append_transition_log(self, booking_id: str, transition_result: TransitionResult) -> None:
        """Record a transition attempt in the history without touching the booking row"""
        try:
            self.db.add(self._history_entry(booking_id, transition_result))
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Error recording transition attempt for {booking_id}: {e}")
            raise

    def get_transition_history(self, booking_id: str) -> list[StateTransitionLog]:
        return (
            self.db.query(StateTransitionLog)
            .filter(StateTransitionLog.booking_id == booking_id)
            .order_by(StateTransitionLog.timestamp.asc(), StateTransitionLog.id.asc())
            .all()
        )

    def get_bookings_in_state(self, state: BookingState, limit: int = 10) -> list[BookingContext]:
        bookings = (
            self.db.query(Booking)
            .filter(Booking.current_state == state.value)
            .order_by(Booking.last_transition.desc())
            .limit(limit)
            .all()
        )
        return [self._to_context(booking) for booking in bookings]

    def delete_booking_state(self, booking_id: str) -> None:
        """Remove a booking and its history (testing and cleanup only)"""
        logger.info(f"🗑️ Deleting booking state {booking_id}")
        try:
            self.db.query(StateTransitionLog).filter(StateTransitionLog.booking_id == booking_id).delete(
                synchronize_session=False
            )
            self.db.query(ProcessedWebhookEvent).filter(ProcessedWebhookEvent.booking_id == booking_id).delete(
                synchronize_session=False
            )
            self.db.query(Booking).filter(Booking.id == booking_id).delete(synchronize_session=False)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Error deleting booking state {booking_id}: {e}")
            raise

    def find_booking_id_by_calendly_event_uri(self, event_uri: str) -> Optional[str]:
        row = self.db.query(Booking.id).filter(Booking.calendly_event_uri == event_uri).first()
        return row[0] if row else None

    # ------------------------------------------------------------------
    # Webhook ledger
    # ------------------------------------------------------------------

    def has_processed_webhook(self, provider: str, event_id: str) -> bool:
        return (
            self.db.query(ProcessedWebhookEvent.id)
            .filter(ProcessedWebhookEvent.provider == provider, ProcessedWebhookEvent.event_id == event_id)
            .first()
            is not None
        )

    def mark_webhook_processed(
        self,
        provider: str,
        event_id: str,
        event_type: Optional[str] = None,
        booking_id: Optional[str] = None,
    ) -> bool:
        """Record a delivery; returns False if a concurrent delivery recorded it first"""
        self.db.add(
            ProcessedWebhookEvent(
                provider=provider,
                event_id=event_id,
                event_type=event_type,
                booking_id=booking_id,
            )
        )
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"ℹ️ {provider} webhook {event_id} already recorded")
            return False
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _to_context(self, booking: Booking) -> BookingContext:
        state_data = BookingStateData.model_validate(booking.state_data or {})
        return BookingContext(
            booking_id=booking.id,
            state=BookingState(booking.current_state),
            state_data=self.security.decrypt_sensitive_data(state_data),
            version=booking.state_version or 0,
        )

    @staticmethod
    def _denormalized_columns(secure_state_data: BookingStateData) -> dict:
        """Queryable copies of state data fields; absent fields leave the column untouched"""
        candidates = {
            Booking.status: secure_state_data.booking_status.value if secure_state_data.booking_status else None,
            Booking.payment_status: (
                secure_state_data.payment_status.value if secure_state_data.payment_status else None
            ),
            Booking.session_type_id: secure_state_data.session_type_id,
            Booking.start_time: _db_datetime(secure_state_data.start_time),
            Booking.end_time: _db_datetime(secure_state_data.end_time),
            Booking.calendly_event_id: secure_state_data.calendly_event_id,
            Booking.calendly_event_uri: secure_state_data.calendly_event_uri,
            Booking.calendly_invitee_uri: secure_state_data.calendly_invitee_uri,
            Booking.stripe_session_id: secure_state_data.stripe_session_id,
            Booking.stripe_payment_intent_id: secure_state_data.stripe_payment_intent_id,
            Booking.stripe_refund_id: secure_state_data.stripe_refund_id,
            Booking.cancel_reason: secure_state_data.cancel_reason,
            Booking.cancelled_by: secure_state_data.cancelled_by,
            Booking.cancelled_at: _db_datetime(secure_state_data.cancelled_at),
            Booking.refund_amount: secure_state_data.refund_amount,
        }
        return {column: value for column, value in candidates.items() if value is not None}

    def _history_entry(self, booking_id: str, transition_result: TransitionResult) -> StateTransitionLog:
        error_message = None
        if transition_result.error is not None:
            error_message = str(transition_result.error)
        elif not transition_result.success and transition_result.state_data.error:
            error_message = transition_result.state_data.error.message
        if error_message is not None:
            error_message = error_message[:ERROR_MESSAGE_LENGTH]

        event = transition_result.event
        return StateTransitionLog(
            booking_id=booking_id,
            from_state=transition_result.previous_state.value,
            to_state=transition_result.current_state.value,
            event_type=getattr(event, "value", event),
            timestamp=_db_datetime(transition_result.timestamp),
            success=transition_result.success,
            error=error_message,
            log_metadata={"state_data": self.security.sanitize_for_logging(transition_result.state_data)},
        )
