import logging

import pytest

from booking_app.domain.bookings.errors import (
    BookingNotFoundError,
    InvalidStateDataError,
    StaleBookingStateError,
)
from booking_app.domain.bookings.states import (
    BookingEvent,
    BookingState,
    BookingStatus,
    PaymentStatus,
)

E = BookingEvent
S = BookingState

TO_CALENDLY = (E.SELECT_SESSION_TYPE, E.INITIATE_CALENDLY_SCHEDULING)
TO_PAYMENT_PENDING = (E.SELECT_SESSION_TYPE, E.INITIATE_CALENDLY_SCHEDULING, E.SCHEDULE_EVENT, E.INITIATE_PAYMENT, E.INITIATE_PAYMENT)

EVENT_URI = "https://api.calendly.com/scheduled_events/EV1"
INVITEE_URI = f"{EVENT_URI}/invitees/INV1"


def calendly_event(event_type, booking_id=None, **extra):
    payload = {
        "uri": INVITEE_URI,
        "scheduled_event": {
            "uri": EVENT_URI,
            "start_time": "2026-11-02T15:00:00Z",
            "end_time": "2026-11-02T16:00:00Z",
        },
    }
    if booking_id:
        payload["tracking"] = {"utm_content": booking_id}
    payload.update(extra)
    return {"event": event_type, "payload": payload}


def stripe_event(event_id, event_type, booking_id, **obj):
    obj.setdefault("metadata", {"booking_id": booking_id})
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def checkout_completed(booking_id, event_id="evt_checkout"):
    return stripe_event(
        event_id,
        "checkout.session.completed",
        booking_id,
        id="cs_test_a1b2c3d4e5",
        payment_intent="pi_3Nq8xYz1234567",
    )


@pytest.fixture
def confirmed(service, booking_in):
    booking_id = booking_in(*TO_PAYMENT_PENDING)
    assert service.handle_stripe_webhook(checkout_completed(booking_id)).current_state is S.BOOKING_CONFIRMED
    return booking_id


class TestCreateBooking:
    def test_starts_idle(self, service):
        context = service.create_booking({"builder_id": "builder-1", "client_id": "client-1"})
        assert context.state is S.IDLE
        assert context.version == 0
        assert service.get_booking(context.booking_id).state_data.client_id == "client-1"

    def test_generates_unique_ids(self, service):
        assert service.create_booking().booking_id != service.create_booking().booking_id

    def test_statuses_cannot_be_seeded(self, service):
        context = service.create_booking({"payment_status": "PAID"})
        assert service.get_booking(context.booking_id).state_data.payment_status is None


class TestTransitionBooking:
    def test_valid_transition(self, service, booking_in):
        booking_id = booking_in()
        result = service.transition_booking(booking_id, E.SELECT_SESSION_TYPE, {"session_type_id": "st-1"})
        assert result.success
        assert service.get_booking(booking_id).state is S.SESSION_TYPE_SELECTED

    def test_invalid_transition_is_recorded_not_applied(self, service, booking_in):
        booking_id = booking_in()

        result = service.transition_booking(booking_id, E.PAYMENT_SUCCEEDED)

        assert not result.success
        context = service.get_booking(booking_id)
        assert context.state is S.IDLE
        assert context.version == 0
        history = service.get_booking_transition_history(booking_id)
        assert [h.success for h in history] == [False]

    def test_malformed_payment_field_is_never_logged_or_stored(self, service, booking_in, caplog):
        booking_id = booking_in(E.SELECT_SESSION_TYPE)
        secret = "pi_SECRETSECRET123"

        with caplog.at_level(logging.DEBUG):
            result = service.transition_booking(
                booking_id, E.INITIATE_CALENDLY_SCHEDULING, {"stripe_payment_intent_id": [secret]}
            )

        assert not result.success
        assert isinstance(result.error, InvalidStateDataError)
        assert "stripe_payment_intent_id" in str(result.error)
        assert secret not in str(result.error)
        assert secret not in caplog.text
        history = service.get_booking_transition_history(booking_id)
        assert not history[-1].success
        assert "stripe_payment_intent_id" in history[-1].error
        assert all(secret not in (h.error or "") and secret not in str(h.log_metadata) for h in history)

    def test_unknown_booking(self, service):
        with pytest.raises(BookingNotFoundError):
            service.transition_booking("missing", E.SELECT_SESSION_TYPE)

    def test_lost_race_is_retried(self, service, booking_in, monkeypatch, sleeps):
        booking_id = booking_in()
        original = service.repo.update_booking_state
        calls = []

        def update(booking_id, result, expected_version=None):
            calls.append(expected_version)
            if len(calls) == 1:
                raise StaleBookingStateError(booking_id, expected_version)
            return original(booking_id, result, expected_version)

        monkeypatch.setattr(service.repo, "update_booking_state", update)

        result = service.transition_booking(booking_id, E.SELECT_SESSION_TYPE)

        assert result.success
        assert len(calls) == 2
        assert len(sleeps) == 1
        assert service.get_booking(booking_id).state is S.SESSION_TYPE_SELECTED

    def test_allowed_transitions(self, service, booking_in):
        booking_id = booking_in()
        assert service.get_booking_allowed_transitions(booking_id) == [E.SELECT_SESSION_TYPE, E.ERROR_OCCURRED]
        assert service.get_booking_allowed_transitions("missing") == []


class TestHappyPath:
    def test_schedule_pay_confirm_complete(self, service, booking_in):
        booking_id = booking_in(*TO_CALENDLY)

        scheduled = service.handle_calendly_webhook(calendly_event("invitee.created", booking_id))
        assert scheduled.current_state is S.CALENDLY_EVENT_SCHEDULED
        assert scheduled.state_data.calendly_event_uri == EVENT_URI
        assert scheduled.state_data.calendly_event_id == "EV1"
        assert scheduled.state_data.start_time.hour == 15

        service.transition_booking(booking_id, E.INITIATE_PAYMENT)
        service.transition_booking(booking_id, E.INITIATE_PAYMENT)
        assert service.get_booking(booking_id).state is S.PAYMENT_PENDING

        confirmed = service.handle_stripe_webhook(checkout_completed(booking_id))
        assert confirmed.current_state is S.BOOKING_CONFIRMED

        context = service.get_booking(booking_id)
        assert context.state_data.booking_status is BookingStatus.CONFIRMED
        assert context.state_data.payment_status is PaymentStatus.PAID
        assert context.state_data.stripe_session_id == "cs_test_a1b2c3d4e5"

        completed = service.transition_booking(booking_id, E.MARK_COMPLETED)
        assert completed.current_state is S.BOOKING_COMPLETED
        assert service.get_booking_allowed_transitions(booking_id) == []

        path = [h.to_state for h in service.get_booking_transition_history(booking_id)]
        assert path == [
            "SESSION_TYPE_SELECTED",
            "CALENDLY_SCHEDULING_INITIATED",
            "CALENDLY_EVENT_SCHEDULED",
            "PAYMENT_REQUIRED",
            "PAYMENT_PENDING",
            "PAYMENT_SUCCEEDED",
            "BOOKING_CONFIRMED",
            "BOOKING_COMPLETED",
        ]

    def test_processing_then_succeeded(self, service, booking_in):
        booking_id = booking_in(*TO_PAYMENT_PENDING)

        processing = service.handle_stripe_webhook(
            stripe_event("evt_1", "payment_intent.processing", booking_id, id="pi_3Nq8xYz1234567")
        )
        assert processing.current_state is S.PAYMENT_PROCESSING

        succeeded = service.handle_stripe_webhook(
            stripe_event("evt_2", "payment_intent.succeeded", booking_id, id="pi_3Nq8xYz1234567")
        )
        assert succeeded.current_state is S.BOOKING_CONFIRMED

    def test_client_reference_id_fallback(self, service, booking_in):
        booking_id = booking_in(*TO_PAYMENT_PENDING)
        event = stripe_event(
            "evt_1", "checkout.session.completed", booking_id, metadata={}, client_reference_id=booking_id, id="cs_1"
        )
        assert service.handle_stripe_webhook(event).current_state is S.BOOKING_CONFIRMED


class TestPaymentFailure:
    def test_failed_payment_can_be_retried(self, service, booking_in):
        booking_id = booking_in(*TO_PAYMENT_PENDING)

        failed = service.handle_stripe_webhook(
            stripe_event(
                "evt_fail",
                "payment_intent.payment_failed",
                booking_id,
                id="pi_3Nq8xYz1234567",
                last_payment_error={"code": "card_declined", "message": "Your card was declined."},
            )
        )
        assert failed.current_state is S.PAYMENT_FAILED
        context = service.get_booking(booking_id)
        assert context.state_data.payment_status is PaymentStatus.FAILED
        assert context.state_data.error.code == "card_declined"

        assert service.transition_booking(booking_id, E.INITIATE_PAYMENT).current_state is S.PAYMENT_PENDING
        confirmed = service.handle_stripe_webhook(
            stripe_event("evt_ok", "payment_intent.succeeded", booking_id, id="pi_3Nq8xYz1234567")
        )
        assert confirmed.current_state is S.BOOKING_CONFIRMED

    def test_expired_checkout_fails_payment(self, service, booking_in):
        booking_id = booking_in(*TO_PAYMENT_PENDING)
        result = service.handle_stripe_webhook(
            stripe_event("evt_exp", "checkout.session.expired", booking_id, id="cs_test_expired1")
        )
        assert result.current_state is S.PAYMENT_FAILED


class TestCancellationAndRefund:
    def test_calendly_cancellation_then_refund(self, service, confirmed):
        cancelled = service.handle_calendly_webhook(
            calendly_event(
                "invitee.canceled",
                confirmed,
                cancellation={"reason": "Feeling unwell", "canceled_by": "Client Name"},
            )
        )
        assert cancelled.current_state is S.CANCELLATION_PROCESSING

        context = service.get_booking(confirmed)
        assert context.state_data.cancel_reason == "Feeling unwell"
        assert context.state_data.cancelled_by == "Client Name"
        assert context.state_data.cancelled_at is not None
        assert context.state_data.booking_status is BookingStatus.CANCELLED

        service.transition_booking(confirmed, E.PROCESS_REFUND)
        service.transition_booking(confirmed, E.PROCESS_REFUND)
        assert service.get_booking(confirmed).state is S.REFUND_PROCESSING

        refunded = service.handle_stripe_webhook(
            stripe_event(
                "evt_refund",
                "charge.refunded",
                confirmed,
                payment_intent="pi_3Nq8xYz1234567",
                amount_refunded=5000,
                refunds={"data": [{"id": "re_3Nq8xYz7654321"}]},
            )
        )
        assert refunded.current_state is S.REFUND_COMPLETED

        context = service.get_booking(confirmed)
        assert context.state_data.refund_amount == 50.0
        assert context.state_data.stripe_refund_id == "re_3Nq8xYz7654321"
        assert context.state_data.payment_status is PaymentStatus.REFUNDED

    def test_in_app_cancellation(self, service, confirmed):
        result = service.transition_booking(
            confirmed, E.REQUEST_CANCELLATION, {"cancel_reason": "conflict", "cancelled_by": "client"}
        )
        assert result.current_state is S.CANCELLATION_REQUESTED
        assert service.transition_booking(confirmed, E.PROCESS_REFUND).current_state is S.REFUND_REQUIRED

    def test_cancellation_found_by_event_uri(self, service, booking_in):
        booking_id = booking_in(*TO_CALENDLY)
        service.handle_calendly_webhook(calendly_event("invitee.created", booking_id))
        for event in (E.INITIATE_PAYMENT, E.INITIATE_PAYMENT):
            service.transition_booking(booking_id, event)
        service.handle_stripe_webhook(checkout_completed(booking_id))

        # Cancellations made in Calendly carry no tracking parameters
        result = service.handle_calendly_webhook(calendly_event("invitee.canceled"))

        assert result.current_state is S.CANCELLATION_PROCESSING


class TestWebhookIdempotence:
    def test_duplicate_stripe_delivery_is_ignored(self, service, booking_in):
        booking_id = booking_in(*TO_PAYMENT_PENDING)
        service.handle_stripe_webhook(checkout_completed(booking_id))
        history_length = len(service.get_booking_transition_history(booking_id))

        duplicate = service.handle_stripe_webhook(checkout_completed(booking_id))

        assert duplicate.success
        assert duplicate.ignored
        assert duplicate.current_state is S.BOOKING_CONFIRMED
        assert len(service.get_booking_transition_history(booking_id)) == history_length

    def test_duplicate_calendly_delivery_is_ignored(self, service, booking_in):
        booking_id = booking_in(*TO_CALENDLY)
        service.handle_calendly_webhook(calendly_event("invitee.created", booking_id))
        version = service.get_booking(booking_id).version

        duplicate = service.handle_calendly_webhook(calendly_event("invitee.created", booking_id))

        assert duplicate.ignored
        assert service.get_booking(booking_id).version == version

    def test_stale_delivery_does_not_escalate(self, service, confirmed):
        late = service.handle_stripe_webhook(
            stripe_event("evt_late", "payment_intent.processing", confirmed, id="pi_3Nq8xYz1234567")
        )

        assert late.ignored
        context = service.get_booking(confirmed)
        assert context.state is S.BOOKING_CONFIRMED
        assert context.state_data.error is None

    def test_ignored_delivery_is_not_recorded(self, service, confirmed):
        service.handle_stripe_webhook(
            stripe_event("evt_late", "payment_intent.processing", confirmed, id="pi_3Nq8xYz1234567")
        )
        assert not service.repo.has_processed_webhook("stripe", "evt_late")

    def test_unknown_booking_or_event_type(self, service):
        assert service.handle_stripe_webhook(checkout_completed("missing")) is None
        assert service.handle_stripe_webhook({"id": "evt_x", "type": "customer.created", "data": {}}) is None
        assert service.handle_calendly_webhook(calendly_event("invitee.created")) is None


class TestDelete:
    def test_delete_booking(self, service, confirmed):
        service.delete_booking(confirmed)
        assert service.get_booking(confirmed) is None
        assert service.get_booking_transition_history(confirmed) == []
