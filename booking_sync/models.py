import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base

# Booking lifecycle
BOOKING_PENDING = "pending"
BOOKING_CONFIRMED = "confirmed"
BOOKING_COMPLETED = "completed"
BOOKING_CANCELED = "canceled"
BOOKING_NO_SHOW = "no_show"

TERMINAL_BOOKING_STATUSES = frozenset({BOOKING_COMPLETED, BOOKING_CANCELED, BOOKING_NO_SHOW})
LIVE_BOOKING_STATUSES = (BOOKING_PENDING, BOOKING_CONFIRMED)

# Payment lifecycle (the payment processor owns the money; we only track the outcome)
PAYMENT_NOT_REQUIRED = "not_required"
PAYMENT_AWAITING = "awaiting_payment"
PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"
PAYMENT_REFUND_PENDING = "refund_pending"
PAYMENT_REFUNDED = "refunded"

# Webhook processing outcomes
OUTCOME_APPLIED = "applied"
OUTCOME_NOOP = "noop"
OUTCOME_REJECTED = "rejected"
OUTCOME_FAILED = "failed"


def generate_id():
    return str(uuid.uuid4())


class SessionType(Base):
    __tablename__ = "session_types"

    id = Column(String(36), primary_key=True, default=generate_id)
    builder_id = Column(String(255), nullable=False, index=True)  # Owned by a builder profile
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    duration_minutes = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    is_active = Column(Boolean, default=True, nullable=False)
    requires_auth = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    mapping = relationship("EventMapping", back_populates="session_type", uselist=False)


class EventMapping(Base):
    """Link between a session type and the provider's event type (one per session type)"""

    __tablename__ = "event_mappings"

    id = Column(Integer, primary_key=True, index=True)
    session_type_id = Column(
        String(36), ForeignKey("session_types.id"), nullable=False, unique=True, index=True
    )
    provider_event_type_id = Column(String(255), nullable=False, index=True)
    provider_event_type_uri = Column(String(500), nullable=False, index=True)
    provider_event_type_slug = Column(String(255), nullable=True)  # Informational only
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    session_type = relationship("SessionType", back_populates="mapping")


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        # Two live bookings can never hold the same slot; canceled ones release it
        Index(
            "uq_bookings_live_slot",
            "session_type_id",
            "start_time",
            unique=True,
            postgresql_where=text("status IN ('pending', 'confirmed')"),
            sqlite_where=text("status IN ('pending', 'confirmed')"),
        ),
    )

    id = Column(String(36), primary_key=True, default=generate_id)
    session_type_id = Column(String(36), ForeignKey("session_types.id"), nullable=False, index=True)
    builder_id = Column(String(255), nullable=False, index=True)
    client_user_id = Column(String(255), nullable=True, index=True)  # Opaque identity, if signed in
    client_name = Column(String(255), nullable=False)
    client_email = Column(String(255), nullable=False, index=True)
    client_timezone = Column(String(64), nullable=False, default="UTC")
    notes = Column(Text, nullable=True)

    start_time = Column(DateTime, nullable=False)  # UTC
    end_time = Column(DateTime, nullable=False)  # UTC

    status = Column(String(20), nullable=False, default=BOOKING_PENDING, index=True)
    payment_status = Column(String(20), nullable=False, default=PAYMENT_NOT_REQUIRED)
    amount = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    payment_reference = Column(String(255), nullable=True, index=True)
    payment_checkout_url = Column(String(1000), nullable=True)

    # Provider correlation - null until the provider confirms the invitee
    provider_event_id = Column(String(255), nullable=True, index=True)
    provider_event_uri = Column(String(500), nullable=True, index=True)
    provider_invitee_uri = Column(String(500), nullable=True, index=True)

    # Two-phase confirmation markers
    provider_confirmed_at = Column(DateTime, nullable=True)
    payment_confirmed_at = Column(DateTime, nullable=True)

    rescheduled_at = Column(DateTime, nullable=True)  # Last move to a new slot by the client
    canceled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    canceled_by = Column(String(20), nullable=True)  # client, builder, system
    refund_policy = Column(String(20), nullable=True)  # full, partial, none
    refund_amount = Column(Numeric(10, 2), nullable=True)
    refund_reference = Column(String(255), nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    session_type = relationship("SessionType")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BOOKING_STATUSES


class WebhookEventRecord(Base):
    """Durable receipt of a provider notification; processed at most once"""

    __tablename__ = "webhook_event_records"
    __table_args__ = (
        UniqueConstraint("provider_event_id", "event_kind", name="uq_webhook_event_kind"),
    )

    id = Column(Integer, primary_key=True, index=True)
    provider_event_id = Column(String(500), nullable=False)
    event_kind = Column(String(100), nullable=False)
    source = Column(String(50), nullable=False, default="calendly")  # calendly, payments
    payload = Column(JSON, nullable=True)
    received_at = Column(DateTime, server_default=func.now(), nullable=False)
    processed_at = Column(DateTime, nullable=True, index=True)
    outcome = Column(String(20), nullable=True)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, default=0, nullable=False)
    booking_id = Column(String(36), nullable=True)


class WebhookSubscription(Base):
    __tablename__ = "webhook_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    provider_subscription_uri = Column(String(500), nullable=True, unique=True)
    callback_url = Column(String(1000), nullable=False)
    events = Column(JSON, default=list, nullable=False)
    scope = Column(String(20), nullable=False, default="organization")
    organization_uri = Column(String(500), nullable=True)

    # Signing secrets (Fernet encrypted)
    signing_secret = Column(Text, nullable=False)
    previous_signing_secret = Column(Text, nullable=True)  # Still accepted while rotating

    state = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, server_default=func.now())
    rotated_at = Column(DateTime, nullable=True)
