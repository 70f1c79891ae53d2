"""
Webhook Security Module

Signature checks for the Calendly and Stripe booking webhooks. Signatures are
computed over the raw request bytes, before any decoding or JSON parsing.

Calendly:  Calendly-Webhook-Signature: sha256=<hex>
Stripe:    Stripe-Signature: t=<unix ts>,v1=<hex>[,v1=<hex>...]

Stripe lists one v1 signature per active endpoint secret while a secret is
being rolled; a delivery is genuine if any of them matches.
"""

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)

# Stripe's default tolerance for the signed timestamp
STRIPE_TIMESTAMP_TOLERANCE_SECONDS = 300

CALENDLY_SIGNATURE_HEADER = "Calendly-Webhook-Signature"
STRIPE_SIGNATURE_HEADER = "Stripe-Signature"


class WebhookSignatureError(Exception):
    """Raised when a webhook delivery cannot be authenticated"""

    def __init__(self, message: str, reason: str = "invalid_signature"):
        super().__init__(message)
        self.reason = reason


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def _matches(expected: str, candidate: str) -> bool:
    return bool(candidate) and hmac.compare_digest(expected.encode(), candidate.encode())


# ============================================================================
# Calendly
# ============================================================================


def verify_calendly_signature(secret: str, raw_body: bytes, signature_header: Optional[str]) -> None:
    """Accepts ``sha256=<hex>`` or a bare hex digest; raises WebhookSignatureError otherwise"""
    if not signature_header:
        raise WebhookSignatureError("Missing webhook signature", "missing_signature")

    signature = signature_header.strip()
    if signature.startswith("sha256="):
        signature = signature[len("sha256=") :]

    if not _matches(compute_hmac_sha256(secret, raw_body), signature):
        raise WebhookSignatureError("Invalid webhook signature")


def sign_calendly_payload(secret: str, payload: bytes) -> str:
    return f"sha256={compute_hmac_sha256(secret, payload)}"


# ============================================================================
# Stripe
# ============================================================================


@dataclass
class StripeSignatureHeader:
    timestamp: Optional[int] = None
    signatures: list[str] = field(default_factory=list)


def parse_stripe_signature_header(header: str) -> StripeSignatureHeader:
    """
    Split ``t=..,v1=..,v1=..`` into its timestamp and every v1 signature.

    Unknown schemes (``v0`` test signatures and future versions) are skipped.
    A malformed timestamp leaves ``timestamp`` unset.
    """
    parsed = StripeSignatureHeader()
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            try:
                parsed.timestamp = int(value)
            except ValueError:
                parsed.timestamp = None
        elif key == "v1" and value:
            parsed.signatures.append(value)
    return parsed


def stripe_signed_payload(timestamp: int, raw_body: bytes) -> bytes:
    return str(timestamp).encode() + b"." + raw_body


def verify_stripe_signature(
    secret: str,
    raw_body: bytes,
    signature_header: Optional[str],
    tolerance: int = STRIPE_TIMESTAMP_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> int:
    """
    Authenticate a Stripe delivery and return its signed timestamp.

    The timestamp must be within ``tolerance`` seconds of ``now`` in either
    direction.
    """
    if not signature_header:
        raise WebhookSignatureError("Missing webhook signature", "missing_signature")

    parsed = parse_stripe_signature_header(signature_header)
    if parsed.timestamp is None or not parsed.signatures:
        raise WebhookSignatureError("Invalid signature format", "malformed_signature")

    current = int(now if now is not None else time.time())
    if abs(current - parsed.timestamp) > tolerance:
        raise WebhookSignatureError(
            f"Webhook timestamp outside tolerance: {current - parsed.timestamp}s", "expired_signature"
        )

    expected = compute_hmac_sha256(secret, stripe_signed_payload(parsed.timestamp, raw_body))
    if not any(_matches(expected, candidate) for candidate in parsed.signatures):
        raise WebhookSignatureError("Invalid webhook signature")

    return parsed.timestamp


def sign_stripe_payload(secret: str, payload: bytes, timestamp: Optional[int] = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},v1={compute_hmac_sha256(secret, stripe_signed_payload(timestamp, payload))}"


# ============================================================================
# FastAPI glue
# ============================================================================

_VERIFIERS = {
    "calendly": (CALENDLY_SIGNATURE_HEADER, verify_calendly_signature),
    "stripe": (STRIPE_SIGNATURE_HEADER, verify_stripe_signature),
}


async def read_verified_body(request: Request, provider: str, secret: Optional[str]) -> bytes:
    """
    Return the raw body of a webhook request once its signature checks out.

    Raises HTTPException(401) on a bad signature. With no secret configured the
    check is skipped with a warning, which is only meant for local development.
    """
    raw_body = await request.body()
    header_name, verify = _VERIFIERS[provider]

    if not secret:
        logger.warning(f"⚠️ {provider} webhook secret not configured - signature verification skipped")
        return raw_body

    try:
        verify(secret, raw_body, request.headers.get(header_name))
    except WebhookSignatureError as e:
        logger.warning(f"🚫 {provider} webhook rejected ({e.reason}): {e}")
        raise HTTPException(status_code=401, detail=str(e)) from e

    logger.debug(f"✅ {provider} webhook signature verified")
    return raw_body
