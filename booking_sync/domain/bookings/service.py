"""
Booking service - confirmation orchestration and the booking lifecycle

A confirmation attempt walks ``validating -> slot_revalidated -> payment_decision
-> awaiting_payment | provider_confirming``. The final flip to ``confirmed``
happens later, when webhooks report the provider (and, for paid sessions, the
payment processor) outcome.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...errors import (
    AuthenticationRequired,
    BookingNotFound,
    InvalidDateRange,
    InvalidTransition,
    PaymentInitiationFailed,
    SessionTypeInactive,
    SlotConflict,
    SlotNoLongerAvailable,
)
from ...models import (
    BOOKING_CANCELED,
    BOOKING_COMPLETED,
    BOOKING_CONFIRMED,
    BOOKING_NO_SHOW,
    BOOKING_PENDING,
    OUTCOME_APPLIED,
    OUTCOME_NOOP,
    PAYMENT_AWAITING,
    PAYMENT_FAILED,
    PAYMENT_NOT_REQUIRED,
    PAYMENT_PAID,
    PAYMENT_REFUND_PENDING,
    PAYMENT_REFUNDED,
    Booking,
)
from ...services.payment_service import PaymentCollaborator, PaymentHandle
from ...services.scheduling_provider import SchedulingProvider, TimeSlot
from ...utils.timeutils import as_utc, to_db, utcnow
from ..availability.service import AvailabilityService
from ..mappings.service import EventMappingService
from .repository import BookingRepository

logger = logging.getLogger(__name__)

# Cancellation refund windows (hours before the session starts)
FULL_REFUND_HOURS = 24
PARTIAL_REFUND_HOURS = 12
PARTIAL_REFUND_RATIO = Decimal("0.5")

REFUND_FULL = "full"
REFUND_PARTIAL = "partial"
REFUND_NONE = "none"


@dataclass
class ClientDetails:
    name: str
    email: str
    timezone: str = "UTC"


@dataclass
class BookingConfirmation:
    booking: Booking
    payment_required: bool
    payment_handle: Optional[PaymentHandle] = None
    scheduling_handle: Optional[str] = None


def calculate_refund(amount: Decimal, start_time: datetime, canceled_at: datetime) -> tuple[str, Decimal]:
    """
    Refund due when a paid booking is canceled.

    24h or more before the start: full refund. Between 12h and 24h: half.
    Less than 12h: nothing.
    """
    amount = Decimal(amount or 0)
    notice = as_utc(start_time) - as_utc(canceled_at)
    if notice >= timedelta(hours=FULL_REFUND_HOURS):
        return REFUND_FULL, amount
    if notice >= timedelta(hours=PARTIAL_REFUND_HOURS):
        return REFUND_PARTIAL, (amount * PARTIAL_REFUND_RATIO).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return REFUND_NONE, Decimal("0.00")


class BookingService:
    """Service layer for booking business logic"""

    def __init__(
        self,
        db: Session,
        provider: Optional[SchedulingProvider] = None,
        payments: Optional[PaymentCollaborator] = None,
        repo: Optional[BookingRepository] = None,
        mappings: Optional[EventMappingService] = None,
        availability: Optional[AvailabilityService] = None,
    ):
        self.db = db
        self.provider = provider
        self.payments = payments
        self.repo = repo or BookingRepository()
        self.mappings = mappings or EventMappingService(db, provider)
        self.availability = availability or AvailabilityService(db, provider, self.mappings)

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    async def confirm_booking(
        self,
        session_type_id: str,
        chosen_slot: TimeSlot,
        client: ClientDetails,
        notes: Optional[str] = None,
        client_user_id: Optional[str] = None,
    ) -> BookingConfirmation:
        slot_start = as_utc(chosen_slot.start_time)
        slot_end = as_utc(chosen_slot.end_time)
        attempt = f"{session_type_id}@{slot_start.isoformat()}"

        logger.info(f"📥 Booking attempt {attempt}: validating")
        session_type = self.mappings.get_session_type(session_type_id)
        if not session_type.is_active:
            raise SessionTypeInactive(session_type_id=session_type_id)
        if session_type.requires_auth and not client_user_id:
            raise AuthenticationRequired()
        if slot_end <= slot_start:
            raise InvalidDateRange("Time slot must end after it starts")
        if slot_end - slot_start != timedelta(minutes=session_type.duration_minutes):
            raise InvalidDateRange(
                f"Time slot must last {session_type.duration_minutes} minutes for this session"
            )
        mapping = self.mappings.resolve(session_type_id)

        # No lock is held while the provider is consulted
        slot = await self.availability.find_slot(session_type, mapping, slot_start, slot_end)
        if slot is None:
            logger.info(f"⚠️ Booking attempt {attempt}: slot no longer offered by provider")
            raise SlotNoLongerAvailable(startTime=slot_start.isoformat())
        logger.info(f"🔄 Booking attempt {attempt}: slot_revalidated")

        payment_required = Decimal(session_type.price or 0) > 0
        try:
            booking = self.repo.create_booking(
                self.db,
                session_type_id=session_type.id,
                builder_id=session_type.builder_id,
                client_user_id=client_user_id,
                client_name=client.name,
                client_email=client.email,
                client_timezone=client.timezone or "UTC",
                notes=notes,
                start_time=to_db(slot_start),
                end_time=to_db(slot_end),
                status=BOOKING_PENDING,
                payment_status=PAYMENT_AWAITING if payment_required else PAYMENT_NOT_REQUIRED,
                amount=session_type.price or 0,
                currency=session_type.currency,
            )
        except IntegrityError as e:
            self.db.rollback()
            logger.info(f"🚫 Booking attempt {attempt}: slot already taken")
            raise SlotConflict(startTime=slot_start.isoformat()) from e

        logger.info(
            f"🔄 Booking {booking.id}: payment_decision (payment_required={payment_required})"
        )

        scheduling_handle = None
        if slot.scheduling_handle and self.provider is not None:
            scheduling_handle = self.provider.generate_scheduling_link(
                slot.scheduling_handle,
                {"name": client.name, "email": client.email, "booking_id": booking.id},
            )

        payment_handle = None
        if payment_required:
            payment_handle = await self._initiate_payment(booking)
            logger.info(f"💳 Booking {booking.id}: awaiting_payment")
        else:
            logger.info(f"⏳ Booking {booking.id}: provider_confirming")

        return BookingConfirmation(
            booking=booking,
            payment_required=payment_required,
            payment_handle=payment_handle,
            scheduling_handle=scheduling_handle,
        )

    async def _initiate_payment(self, booking: Booking) -> PaymentHandle:
        try:
            handle = await self.payments.initiate_payment(booking, booking.amount, booking.currency)
        except PaymentInitiationFailed:
            self._cancel_after_failed_initiation(booking)
            raise
        except Exception as e:
            logger.error(f"❌ Payment initiation error for booking {booking.id}: {e}")
            self._cancel_after_failed_initiation(booking)
            raise PaymentInitiationFailed(booking_id=booking.id) from e

        booking.payment_reference = handle.reference
        booking.payment_checkout_url = handle.checkout_url
        self.repo.save(self.db, booking)
        return handle

    def _cancel_after_failed_initiation(self, booking: Booking) -> None:
        booking.status = BOOKING_CANCELED
        booking.payment_status = PAYMENT_FAILED
        booking.canceled_at = to_db(utcnow())
        booking.canceled_by = "system"
        booking.cancellation_reason = "Payment could not be started"
        self.repo.save(self.db, booking)
        logger.warning(f"⚠️ Booking {booking.id} canceled: payment initiation failed")

    # ------------------------------------------------------------------
    # Transitions. These mutate a locked booking and leave committing to
    # the caller, so webhook processing can commit the booking together
    # with its event record.
    # ------------------------------------------------------------------

    def _maybe_confirm(self, booking: Booking) -> None:
        """Two-phase join: provider confirmation plus payment (when required)"""
        if booking.status != BOOKING_PENDING or booking.provider_confirmed_at is None:
            return
        if booking.payment_status != PAYMENT_NOT_REQUIRED and booking.payment_confirmed_at is None:
            return
        booking.status = BOOKING_CONFIRMED
        logger.info(f"✅ Booking {booking.id} confirmed")

    def apply_provider_confirmed(
        self,
        booking: Booking,
        invitee_uri: Optional[str],
        event_uri: Optional[str],
        event_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        if booking.is_terminal:
            if invitee_uri and booking.provider_invitee_uri == invitee_uri:
                return OUTCOME_NOOP
            raise InvalidTransition(
                f"Booking is already {booking.status}", booking_id=booking.id, target="confirmed"
            )

        booking.provider_invitee_uri = booking.provider_invitee_uri or invitee_uri
        booking.provider_event_uri = booking.provider_event_uri or event_uri
        booking.provider_event_id = booking.provider_event_id or event_id

        if booking.provider_confirmed_at is not None:
            return OUTCOME_NOOP

        booking.provider_confirmed_at = to_db(now or utcnow())
        logger.info(f"📅 Booking {booking.id}: provider confirmed invitee")
        self._maybe_confirm(booking)
        return OUTCOME_APPLIED

    def apply_payment_confirmed(
        self, booking: Booking, payment_reference: Optional[str] = None, now: Optional[datetime] = None
    ) -> str:
        if booking.payment_confirmed_at is not None:
            return OUTCOME_NOOP
        if booking.is_terminal and booking.status != BOOKING_CANCELED:
            raise InvalidTransition(
                f"Booking is already {booking.status}", booking_id=booking.id, target="paid"
            )

        booking.payment_confirmed_at = to_db(now or utcnow())
        if payment_reference:
            booking.payment_reference = payment_reference

        if booking.status == BOOKING_CANCELED:
            # Money arrived for a booking that no longer exists
            booking.payment_status = PAYMENT_REFUND_PENDING
            booking.refund_policy = REFUND_FULL
            booking.refund_amount = booking.amount
            logger.warning(f"⚠️ Payment received for canceled booking {booking.id}; full refund queued")
            return OUTCOME_APPLIED

        booking.payment_status = PAYMENT_PAID
        logger.info(f"💰 Booking {booking.id}: payment confirmed")
        self._maybe_confirm(booking)
        return OUTCOME_APPLIED

    def apply_payment_failed(self, booking: Booking, now: Optional[datetime] = None) -> str:
        if booking.is_terminal or booking.payment_status in (PAYMENT_PAID, PAYMENT_FAILED):
            return OUTCOME_NOOP
        booking.payment_status = PAYMENT_FAILED
        booking.status = BOOKING_CANCELED
        booking.canceled_at = to_db(now or utcnow())
        booking.canceled_by = "system"
        booking.cancellation_reason = "Payment failed"
        logger.warning(f"⚠️ Booking {booking.id} canceled: payment failed")
        return OUTCOME_APPLIED

    def apply_canceled(
        self,
        booking: Booking,
        reason: Optional[str] = None,
        canceled_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        if booking.status == BOOKING_CANCELED:
            return OUTCOME_NOOP
        if booking.is_terminal:
            raise InvalidTransition(
                f"Booking is already {booking.status}", booking_id=booking.id, target="canceled"
            )

        now = now or utcnow()
        booking.status = BOOKING_CANCELED
        booking.canceled_at = to_db(now)
        booking.cancellation_reason = reason
        booking.canceled_by = canceled_by or "client"

        if booking.payment_status == PAYMENT_PAID:
            policy, refund_amount = calculate_refund(booking.amount, booking.start_time, now)
            booking.refund_policy = policy
            booking.refund_amount = refund_amount
            if refund_amount > 0:
                booking.payment_status = PAYMENT_REFUND_PENDING
            logger.info(f"💸 Booking {booking.id} refund policy: {policy} ({refund_amount} {booking.currency})")

        logger.info(f"🚫 Booking {booking.id} canceled by {booking.canceled_by}")
        return OUTCOME_APPLIED

    def apply_rescheduled(
        self,
        booking: Booking,
        invitee_uri: str,
        event_uri: Optional[str],
        start_time: datetime,
        end_time: Optional[datetime] = None,
        event_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """
        Move a booking to the slot the client rescheduled to on the provider.

        Status, payment and refund state carry over unchanged; only the slot and
        the provider correlation ids follow the new invitee.
        """
        if booking.is_terminal:
            raise InvalidTransition(
                f"Booking is already {booking.status}", booking_id=booking.id, target="rescheduled"
            )
        if booking.provider_invitee_uri == invitee_uri:
            return OUTCOME_NOOP

        new_start = to_db(start_time)
        new_end = to_db(end_time) if end_time else new_start + (booking.end_time - booking.start_time)
        logger.info(f"📆 Booking {booking.id} rescheduled: {booking.start_time} -> {new_start}")

        booking.start_time = new_start
        booking.end_time = new_end
        booking.provider_invitee_uri = invitee_uri
        booking.provider_event_uri = event_uri
        booking.provider_event_id = event_id
        booking.rescheduled_at = to_db(now or utcnow())

        if booking.provider_confirmed_at is None:
            booking.provider_confirmed_at = booking.rescheduled_at
            self._maybe_confirm(booking)
        return OUTCOME_APPLIED

    def apply_no_show(self, booking: Booking) -> str:
        if booking.status == BOOKING_NO_SHOW:
            return OUTCOME_NOOP
        if booking.status != BOOKING_CONFIRMED:
            raise InvalidTransition(
                f"Booking is {booking.status}", booking_id=booking.id, target="no_show"
            )
        booking.status = BOOKING_NO_SHOW
        logger.info(f"👻 Booking {booking.id} marked no-show")
        return OUTCOME_APPLIED

    # ------------------------------------------------------------------
    # Standalone operations
    # ------------------------------------------------------------------

    def record_payment_confirmed(self, booking_id: str, payment_reference: Optional[str] = None) -> Booking:
        booking = self._get_locked(booking_id)
        self.apply_payment_confirmed(booking, payment_reference)
        return self.repo.save(self.db, booking)

    def record_payment_failed(self, booking_id: str) -> Booking:
        booking = self._get_locked(booking_id)
        self.apply_payment_failed(booking)
        return self.repo.save(self.db, booking)

    def _get_locked(self, booking_id: str) -> Booking:
        booking = self.repo.get_booking(self.db, booking_id, for_update=True)
        if not booking:
            raise BookingNotFound(booking_id=booking_id)
        return booking

    def get_booking(self, booking_id: str) -> Booking:
        booking = self.repo.get_booking(self.db, booking_id)
        if not booking:
            raise BookingNotFound(booking_id=booking_id)
        return booking

    def list_bookings(
        self, builder_id: Optional[str] = None, client_user_id: Optional[str] = None
    ) -> list[Booking]:
        if builder_id:
            return self.repo.list_for_builder(self.db, builder_id)
        if client_user_id:
            return self.repo.list_for_client(self.db, client_user_id)
        return []

    def complete_elapsed_bookings(self, now: Optional[datetime] = None) -> int:
        """Confirmed bookings whose session has ended become completed"""
        now = to_db(now or utcnow())
        bookings = self.repo.get_elapsed_confirmed(self.db, now)
        for booking in bookings:
            booking.status = BOOKING_COMPLETED
        self.db.commit()
        if bookings:
            logger.info(f"✅ Marked {len(bookings)} booking(s) completed")
        return len(bookings)

    async def issue_pending_refunds(self, limit: int = 50) -> int:
        """Ask the payment processor for queued refunds. No row lock is held during the call."""
        issued = 0
        for booking in self.repo.get_refund_pending(self.db, limit):
            booking_id = booking.id
            try:
                refund_id = await self.payments.request_refund(
                    booking.payment_reference,
                    booking.refund_amount,
                    reason=f"Booking {booking_id} canceled ({booking.refund_policy} refund)",
                )
            except Exception as e:
                logger.error(f"❌ Refund for booking {booking_id} failed, will retry: {e}")
                continue

            locked = self._get_locked(booking_id)
            if locked.payment_status == PAYMENT_REFUND_PENDING:
                locked.payment_status = PAYMENT_REFUNDED
                locked.refund_reference = refund_id
            self.repo.save(self.db, locked)
            issued += 1
            logger.info(f"💸 Refund {refund_id} issued for booking {booking_id}")
        return issued
