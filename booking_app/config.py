import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./bookings.db")

# Base URL used when building recovery links
APP_URL = os.getenv("APP_URL", "https://app.example.com")

# State machine secrets
# Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
STATE_MACHINE_ENCRYPTION_KEY = os.getenv("STATE_MACHINE_ENCRYPTION_KEY")
# Signs recovery tokens; falls back to the encryption key when not set
STATE_MACHINE_SIGNING_KEY = os.getenv("STATE_MACHINE_SIGNING_KEY") or STATE_MACHINE_ENCRYPTION_KEY
if not STATE_MACHINE_SIGNING_KEY:
    import warnings

    warnings.warn(
        "STATE_MACHINE_SIGNING_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION",
        RuntimeWarning,
        stacklevel=2,
    )
    STATE_MACHINE_SIGNING_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

# Recovery tokens are bearer credentials valid for this long
RECOVERY_TOKEN_TTL_SECONDS = 24 * 60 * 60

# Webhook signing secrets (verification is skipped with a warning when unset)
CALENDLY_WEBHOOK_SECRET = os.getenv("CALENDLY_WEBHOOK_SECRET")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

# Retry policy for booking transitions
BOOKING_RETRY_MAX_RETRIES = int(os.getenv("BOOKING_RETRY_MAX_RETRIES", "3"))
BOOKING_RETRY_INITIAL_DELAY = float(os.getenv("BOOKING_RETRY_INITIAL_DELAY", "1.0"))
BOOKING_RETRY_MAX_DELAY = float(os.getenv("BOOKING_RETRY_MAX_DELAY", "10.0"))


@dataclass(frozen=True)
class SecuritySettings:
    """Keys used by the booking security utility, injected at construction time"""

    encryption_key: Optional[str] = None
    signing_key: Optional[str] = None
    token_ttl_seconds: int = RECOVERY_TOKEN_TTL_SECONDS

    @classmethod
    def from_env(cls) -> "SecuritySettings":
        return cls(
            encryption_key=STATE_MACHINE_ENCRYPTION_KEY,
            signing_key=STATE_MACHINE_SIGNING_KEY,
        )


def get_retry_options() -> dict:
    return {
        "max_retries": BOOKING_RETRY_MAX_RETRIES,
        "initial_delay": BOOKING_RETRY_INITIAL_DELAY,
        "max_delay": BOOKING_RETRY_MAX_DELAY,
    }
