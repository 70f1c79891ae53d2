"""
Booking state security

Field-level encryption of payment identifiers, log masking, and signed
recovery tokens.

Encrypted values use a version-tagged envelope, ``v1:<fernet token>``. Fernet
generates a random IV per value and authenticates the ciphertext, so the same
plaintext never encrypts to the same string and tampering is detected.

Recovery tokens are ``base64(booking_id:state:timestamp_ms:hmac_sha256_hex)``.
They are signed but not encrypted and act as bearer credentials: anyone
holding one can recover that booking until it expires.
"""

import base64
import hashlib
import hmac
import logging
import time
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

from ...config import SecuritySettings
from .states import BookingStateData

logger = logging.getLogger(__name__)

ENCRYPTION_VERSION = "v1"
ENCRYPTION_PREFIX = f"{ENCRYPTION_VERSION}:"

# Tolerated clock skew for recovery tokens issued by another host
TOKEN_CLOCK_SKEW_MS = 5 * 60 * 1000

SENSITIVE_FIELDS = (
    "stripe_session_id",
    "stripe_payment_intent_id",
    "stripe_refund_id",
)

# Non-sensitive fields copied verbatim into log payloads
LOGGABLE_FIELDS = (
    "booking_id",
    "builder_id",
    "client_id",
    "session_type_id",
    "start_time",
    "end_time",
    "booking_status",
    "payment_status",
    "last_event_type",
    "timestamp",
)


def _build_fernet(key: str) -> Fernet:
    """Use a urlsafe-base64 32-byte key directly, otherwise stretch the secret with SHA-256"""
    try:
        return Fernet(key.encode())
    except ValueError:
        digest = hashlib.sha256(key.encode("utf-8")).digest()
        return Fernet(base64.urlsafe_b64encode(digest))


def is_encrypted(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(ENCRYPTION_PREFIX) and len(value) > len(ENCRYPTION_PREFIX)


def mask_sensitive_value(value: Optional[str]) -> str:
    """Mask all but the first and last 4 characters"""
    if not value:
        return ""
    if is_encrypted(value):
        return f"[ENCRYPTED:{value[:10]}...]"
    if len(value) <= 8:
        return "[MASKED]"
    return f"{value[:4]}****{value[-4:]}"


class BookingSecurity:
    """Encryption, masking and token signing for booking state"""

    def __init__(self, settings: SecuritySettings):
        self.settings = settings
        self._fernet = _build_fernet(settings.encryption_key) if settings.encryption_key else None
        signing_key = settings.signing_key or settings.encryption_key or ""
        self._signing_key = signing_key.encode("utf-8")

    @property
    def encryption_enabled(self) -> bool:
        return self._fernet is not None

    # ------------------------------------------------------------------
    # Field encryption
    # ------------------------------------------------------------------

    def encrypt_value(self, plaintext: str) -> str:
        token = self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")
        return f"{ENCRYPTION_PREFIX}{token}"

    def decrypt_value(self, value: str) -> str:
        token = value[len(ENCRYPTION_PREFIX):]
        return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")

    def encrypt_sensitive_data(self, state_data: BookingStateData) -> BookingStateData:
        """Encrypt sensitive fields that are present and not already encrypted"""
        if not self.encryption_enabled:
            logger.warning("⚠️ Encryption key not set, skipping encryption")
            return state_data

        updates = {}
        for field_name in SENSITIVE_FIELDS:
            value = getattr(state_data, field_name)
            if value and not is_encrypted(value):
                updates[field_name] = self.encrypt_value(str(value))

        if not updates:
            return state_data
        return state_data.model_copy(update=updates)

    def decrypt_sensitive_data(self, state_data: BookingStateData) -> BookingStateData:
        """Decrypt version-tagged fields; plaintext and undecryptable values are left as-is"""
        if not self.encryption_enabled:
            logger.warning("⚠️ Encryption key not set, skipping decryption")
            return state_data

        updates = {}
        for field_name in SENSITIVE_FIELDS:
            value = getattr(state_data, field_name)
            if not is_encrypted(value):
                continue
            try:
                updates[field_name] = self.decrypt_value(value)
            except InvalidToken:
                logger.error(
                    f"❌ Error decrypting field {field_name} for booking {state_data.booking_id}"
                )

        if not updates:
            return state_data
        return state_data.model_copy(update=updates)

    def sanitize_for_logging(self, state_data: Optional[BookingStateData]) -> dict[str, Any]:
        """Reduced view of state data that is safe to log"""
        if state_data is None:
            return {}

        dumped = state_data.model_dump(mode="json", include=set(LOGGABLE_FIELDS), exclude_none=True)
        for field_name in SENSITIVE_FIELDS:
            value = getattr(state_data, field_name)
            if value:
                dumped[field_name] = mask_sensitive_value(value)
        return dumped

    # ------------------------------------------------------------------
    # Recovery tokens
    # ------------------------------------------------------------------

    def _sign(self, payload: str) -> str:
        return hmac.new(self._signing_key, payload.encode("utf-8"), hashlib.sha256).hexdigest()

    def generate_state_token(self, booking_id: str, state: str, issued_at_ms: Optional[int] = None) -> str:
        """Sign ``booking_id:state:timestamp`` and return it base64 encoded"""
        state_name = getattr(state, "value", state)
        timestamp = issued_at_ms if issued_at_ms is not None else int(time.time() * 1000)
        payload = f"{booking_id}:{state_name}:{timestamp}"
        signature = self._sign(payload)
        return base64.b64encode(f"{payload}:{signature}".encode("utf-8")).decode("ascii")

    def verify_state_token(self, token: str) -> dict[str, Any]:
        """
        Verify a recovery token

        Returns:
            dict with ``is_valid`` and, when valid, ``booking_id``, ``state`` and
            ``timestamp`` (milliseconds since the epoch)
        """
        try:
            decoded = base64.b64decode(token.encode("ascii"), validate=True).decode("utf-8")
        except (ValueError, UnicodeError):
            logger.warning("🚫 Recovery token is not valid base64")
            return {"is_valid": False}

        parts = decoded.rsplit(":", 3)
        if len(parts) != 4:
            logger.warning("🚫 Invalid recovery token format")
            return {"is_valid": False}

        booking_id, state, timestamp_str, signature = parts
        try:
            timestamp = int(timestamp_str)
        except ValueError:
            logger.warning("🚫 Invalid recovery token timestamp")
            return {"is_valid": False}

        expected_signature = self._sign(f"{booking_id}:{state}:{timestamp_str}")
        if not hmac.compare_digest(signature, expected_signature):
            logger.warning(f"🚫 Invalid recovery token signature for booking {booking_id}")
            return {"is_valid": False}

        age_ms = int(time.time() * 1000) - timestamp
        if age_ms > self.settings.token_ttl_seconds * 1000:
            logger.warning(f"⏰ Recovery token expired for booking {booking_id}")
            return {"is_valid": False}
        if age_ms < -TOKEN_CLOCK_SKEW_MS:
            logger.warning(f"🚫 Recovery token for booking {booking_id} is dated in the future")
            return {"is_valid": False}

        return {
            "is_valid": True,
            "booking_id": booking_id,
            "state": state,
            "timestamp": timestamp,
        }
