from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(64), primary_key=True, index=True)
    builder_id = Column(String(64), nullable=False, default="")
    client_id = Column(String(64), nullable=True)  # absent for anonymous bookings
    session_type_id = Column(String(64), nullable=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(String(50), default="PENDING")  # PENDING, CONFIRMED, CANCELLED, COMPLETED
    payment_status = Column(String(50), default="UNPAID")

    # State machine
    current_state = Column(String(50), nullable=True, index=True)
    state_data = Column(JSON, nullable=True)  # Sensitive fields stored encrypted
    last_transition = Column(DateTime, nullable=True)
    state_version = Column(Integer, nullable=False, default=0)  # Compare-and-swap counter

    # Calendly integration fields
    calendly_event_id = Column(String(255), nullable=True)
    calendly_event_uri = Column(String(500), nullable=True, index=True)
    calendly_invitee_uri = Column(String(500), nullable=True)

    # Stripe integration fields (ciphertext)
    stripe_session_id = Column(Text, nullable=True)
    stripe_payment_intent_id = Column(Text, nullable=True)
    stripe_refund_id = Column(Text, nullable=True)

    # Cancellation and refund
    cancel_reason = Column(String(1000), nullable=True)
    cancelled_by = Column(String(255), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    refund_amount = Column(Float, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    transitions = relationship(
        "StateTransitionLog",
        back_populates="booking",
        order_by="StateTransitionLog.id",
    )


class StateTransitionLog(Base):
    """Append-only audit trail of transition attempts"""

    __tablename__ = "state_transition_logs"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(String(64), ForeignKey("bookings.id"), nullable=False, index=True)
    from_state = Column(String(50), nullable=False)
    to_state = Column(String(50), nullable=False)
    event_type = Column(String(50), nullable=True)
    timestamp = Column(DateTime, nullable=False)
    success = Column(Boolean, nullable=False, default=True)
    error = Column(String(1000), nullable=True)
    log_metadata = Column("metadata", JSON, nullable=True)  # Sanitized state data only

    booking = relationship("Booking", back_populates="transitions")


class ProcessedWebhookEvent(Base):
    """Ledger of provider webhook deliveries that have already been applied"""

    __tablename__ = "processed_webhook_events"
    __table_args__ = (UniqueConstraint("provider", "event_id", name="uq_webhook_provider_event"),)

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(50), nullable=False)  # calendly, stripe
    event_id = Column(String(500), nullable=False)
    event_type = Column(String(100), nullable=True)
    booking_id = Column(String(64), nullable=True, index=True)
    processed_at = Column(DateTime, server_default=func.now())
