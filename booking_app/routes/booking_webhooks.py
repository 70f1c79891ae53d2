"""
Booking Webhook Routes
Feeds Calendly and Stripe deliveries into the booking state machine
"""

import asyncio
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from ..config import CALENDLY_WEBHOOK_SECRET, STRIPE_WEBHOOK_SECRET
from ..domain.bookings.router import get_booking_service, transition_response
from ..domain.bookings.service import BookingStateService
from ..webhook_security import read_verified_body

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["booking-webhooks"])


def _webhook_response(service: BookingStateService, result) -> dict:
    if result is None:
        return {"status": "ignored"}
    return {
        "status": "ignored" if result.ignored else "ok",
        "result": transition_response(service, result).model_dump(mode="json"),
    }


def _parse_body(body: bytes) -> dict:
    try:
        payload = json.loads(body.decode())
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"🚫 Webhook body is not valid JSON: {e}")
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from e
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    return payload


async def _process(provider: str, handler, payload: dict):
    # Service calls are blocking (database, retry backoff); keep them off the event loop
    try:
        return await asyncio.to_thread(handler, payload)
    except Exception as e:
        logger.exception(f"❌ {provider} webhook processing error: {e}")
        raise HTTPException(status_code=500, detail="Webhook processing failed") from e


@router.post("/calendly/events")
async def handle_calendly_webhook(
    request: Request, service: BookingStateService = Depends(get_booking_service)
):
    """
    Handle Calendly webhook events
    Supported events: invitee.created, invitee.canceled
    """
    body = await read_verified_body(request, "calendly", CALENDLY_WEBHOOK_SECRET)
    payload = _parse_body(body)
    logger.debug(f"📥 Received Calendly webhook: {payload.get('event')}")

    result = await _process("Calendly", service.handle_calendly_webhook, payload)
    return _webhook_response(service, result)


@router.post("/stripe")
async def handle_stripe_webhook(
    request: Request, service: BookingStateService = Depends(get_booking_service)
):
    """
    Handle Stripe webhook events
    Supported events: checkout.session.completed, checkout.session.expired,
    payment_intent.processing, payment_intent.succeeded,
    payment_intent.payment_failed, charge.refunded
    """
    body = await read_verified_body(request, "stripe", STRIPE_WEBHOOK_SECRET)
    event = _parse_body(body)
    logger.debug(f"📥 Received Stripe webhook: {event.get('type')} ({event.get('id')})")

    result = await _process("Stripe", service.handle_stripe_webhook, event)
    return _webhook_response(service, result)
