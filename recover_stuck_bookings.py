"""
List bookings stuck in ERROR and print a fresh recovery link for each
Usage: python recover_stuck_bookings.py [limit]
"""
import sys
import logging
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from booking_app import models  # noqa: F401
from booking_app.database import SessionLocal
from booking_app.domain.bookings.service import BookingStateService
from booking_app.domain.bookings.states import BookingState

logging.basicConfig(level=logging.INFO, format='%(message)s')
logger = logging.getLogger(__name__)


def recover_stuck_bookings(limit: int = 50) -> int:
    """Print a recovery link per ERROR booking; returns how many were found"""
    db = SessionLocal()
    try:
        service = BookingStateService(db)
        stuck = service.get_bookings_in_state(BookingState.ERROR, limit)
        logger.info(f"Found {len(stuck)} booking(s) in ERROR")

        for context in stuck:
            error = context.state_data.error
            if error is not None and error.is_retryable is False:
                logger.info(f"⏭️  {context.booking_id}: not retryable ({error.message})")
                continue
            # Recover into whatever state the booking was in before it failed
            recovery_state = BookingState.IDLE
            history = service.get_booking_transition_history(context.booking_id)
            for entry in reversed(history):
                if entry.success and entry.to_state == BookingState.ERROR.value:
                    recovery_state = BookingState(entry.from_state)
                    break
            link = service.create_recovery_link(context.booking_id, recovery_state)
            logger.info(f"🔗 {context.booking_id} ({recovery_state.value}): {link}")

        return len(stuck)
    finally:
        db.close()


if __name__ == "__main__":
    try:
        recover_stuck_bookings(int(sys.argv[1]) if len(sys.argv) > 1 else 50)
    except Exception as e:
        logger.error(f"❌ Recovery scan failed: {e}")
        sys.exit(1)
