"""Tests for booking confirmation, the two-phase join and the booking lifecycle."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from booking_sync.domain.bookings.service import (
    REFUND_FULL,
    REFUND_NONE,
    REFUND_PARTIAL,
    BookingService,
    ClientDetails,
    calculate_refund,
)
from booking_sync.errors import (
    AuthenticationRequired,
    InvalidDateRange,
    InvalidTransition,
    PaymentInitiationFailed,
    SlotConflict,
    SlotNoLongerAvailable,
)
from booking_sync.models import (
    BOOKING_CANCELED,
    BOOKING_COMPLETED,
    BOOKING_CONFIRMED,
    BOOKING_NO_SHOW,
    BOOKING_PENDING,
    PAYMENT_AWAITING,
    PAYMENT_FAILED,
    PAYMENT_NOT_REQUIRED,
    PAYMENT_PAID,
    PAYMENT_REFUND_PENDING,
    PAYMENT_REFUNDED,
    Booking,
)
from booking_sync.utils.timeutils import utcnow

from conftest import FakePaymentCollaborator, make_slot

CLIENT = ClientDetails(name="Ada Lovelace", email="ada@example.com", timezone="Europe/London")


def make_service(db, provider, payments=None) -> BookingService:
    return BookingService(db, provider, payments or FakePaymentCollaborator())


# ── Confirmation ───────────────────────────────────────────────────


class TestConfirmBooking:
    async def test_paid_session_awaits_payment(self, db, make_session_type, provider, payments, slot_start):
        session_type = make_session_type(price="150.00")
        result = await make_service(db, provider, payments).confirm_booking(
            session_type.id, make_slot(slot_start), CLIENT
        )

        assert result.payment_required is True
        assert result.payment_handle.checkout_url.startswith("https://checkout.example.com/")
        assert result.booking.status == BOOKING_PENDING
        assert result.booking.payment_status == PAYMENT_AWAITING
        assert result.booking.payment_reference == result.payment_handle.reference
        assert payments.payments == [(result.booking.id, Decimal("150.00"), "USD")]
        assert result.scheduling_handle.endswith(f"utm_content={result.booking.id}")

    async def test_free_session_skips_payment(self, db, make_session_type, provider, payments, slot_start):
        session_type = make_session_type(price="0")
        result = await make_service(db, provider, payments).confirm_booking(
            session_type.id, make_slot(slot_start), CLIENT
        )

        assert result.payment_required is False
        assert result.payment_handle is None
        assert result.booking.payment_status == PAYMENT_NOT_REQUIRED
        assert payments.payments == []

    async def test_slot_gone_since_query(self, db, make_session_type, provider, slot_start):
        session_type = make_session_type()
        provider.slots = provider.slots[1:]

        with pytest.raises(SlotNoLongerAvailable) as exc_info:
            await make_service(db, provider).confirm_booking(session_type.id, make_slot(slot_start), CLIENT)
        assert exc_info.value.retryable is True
        assert db.query(Booking).count() == 0

    async def test_requires_authentication(self, db, make_session_type, provider, slot_start):
        session_type = make_session_type(requires_auth=True)
        with pytest.raises(AuthenticationRequired):
            await make_service(db, provider).confirm_booking(session_type.id, make_slot(slot_start), CLIENT)

        result = await make_service(db, provider).confirm_booking(
            session_type.id, make_slot(slot_start), CLIENT, client_user_id="client-7"
        )
        assert result.booking.client_user_id == "client-7"

    async def test_slot_must_match_session_duration(self, db, make_session_type, provider, slot_start):
        session_type = make_session_type(duration_minutes=60)
        with pytest.raises(InvalidDateRange):
            await make_service(db, provider).confirm_booking(
                session_type.id, make_slot(slot_start, minutes=30), CLIENT
            )

    async def test_payment_initiation_failure_cancels_booking(
        self, db, make_session_type, provider, slot_start
    ):
        session_type = make_session_type(price="150.00")
        with pytest.raises(PaymentInitiationFailed):
            await make_service(db, provider, FakePaymentCollaborator(fail=True)).confirm_booking(
                session_type.id, make_slot(slot_start), CLIENT
            )

        booking = db.query(Booking).one()
        assert booking.status == BOOKING_CANCELED
        assert booking.payment_status == PAYMENT_FAILED
        assert db.query(Booking).filter(Booking.status == BOOKING_PENDING).count() == 0

        # The canceled attempt releases the slot
        result = await make_service(db, provider).confirm_booking(
            session_type.id, make_slot(slot_start), CLIENT
        )
        assert result.booking.status == BOOKING_PENDING


class TestMutualExclusion:
    async def test_second_confirmation_for_same_slot_conflicts(
        self, db, make_session_type, provider, slot_start
    ):
        session_type = make_session_type(price="0")
        service = make_service(db, provider)

        await service.confirm_booking(session_type.id, make_slot(slot_start), CLIENT)
        with pytest.raises(SlotConflict) as exc_info:
            await service.confirm_booking(
                session_type.id,
                make_slot(slot_start),
                ClientDetails(name="Grace Hopper", email="grace@example.com"),
            )
        assert exc_info.value.retryable is True

    async def test_concurrent_confirmations(self, db, make_session_type, provider, slot_start):
        session_type = make_session_type(price="0")
        service = make_service(db, provider)

        results = await asyncio.gather(
            service.confirm_booking(session_type.id, make_slot(slot_start), CLIENT),
            service.confirm_booking(
                session_type.id,
                make_slot(slot_start),
                ClientDetails(name="Grace Hopper", email="grace@example.com"),
            ),
            return_exceptions=True,
        )

        conflicts = [r for r in results if isinstance(r, SlotConflict)]
        successes = [r for r in results if not isinstance(r, Exception)]
        assert len(conflicts) == 1
        assert len(successes) == 1
        live = db.query(Booking).filter(Booking.status.in_([BOOKING_PENDING, BOOKING_CONFIRMED])).count()
        assert live == 1


# ── Two-phase join ─────────────────────────────────────────────────


class TestTwoPhaseJoin:
    async def _paid_booking(self, db, make_session_type, provider, slot_start) -> tuple[BookingService, Booking]:
        session_type = make_session_type(price="150.00")
        service = make_service(db, provider)
        result = await service.confirm_booking(session_type.id, make_slot(slot_start), CLIENT)
        return service, result.booking

    async def test_payment_alone_does_not_confirm(self, db, make_session_type, provider, slot_start):
        service, booking = await self._paid_booking(db, make_session_type, provider, slot_start)
        booking = service.record_payment_confirmed(booking.id, "pay_1")
        assert booking.status == BOOKING_PENDING
        assert booking.payment_status == PAYMENT_PAID
        assert booking.payment_reference == "pay_1"

    async def test_provider_alone_does_not_confirm(self, db, make_session_type, provider, slot_start):
        service, booking = await self._paid_booking(db, make_session_type, provider, slot_start)
        service.apply_provider_confirmed(booking, "invitee-uri", "event-uri")
        assert booking.status == BOOKING_PENDING

    @pytest.mark.parametrize("payment_first", [True, False])
    async def test_both_confirm_in_either_order(
        self, db, make_session_type, provider, slot_start, payment_first
    ):
        service, booking = await self._paid_booking(db, make_session_type, provider, slot_start)
        if payment_first:
            service.apply_payment_confirmed(booking, "pay_1")
            assert booking.status == BOOKING_PENDING
            service.apply_provider_confirmed(booking, "invitee-uri", "event-uri")
        else:
            service.apply_provider_confirmed(booking, "invitee-uri", "event-uri")
            assert booking.status == BOOKING_PENDING
            service.apply_payment_confirmed(booking, "pay_1")
        assert booking.status == BOOKING_CONFIRMED

    async def test_free_booking_confirms_on_provider_alone(self, db, make_session_type, provider, slot_start):
        session_type = make_session_type(price="0")
        service = make_service(db, provider)
        booking = (await service.confirm_booking(session_type.id, make_slot(slot_start), CLIENT)).booking
        service.apply_provider_confirmed(booking, "invitee-uri", "event-uri")
        assert booking.status == BOOKING_CONFIRMED

    async def test_payment_failure_cancels_pending(self, db, make_session_type, provider, slot_start):
        service, booking = await self._paid_booking(db, make_session_type, provider, slot_start)
        booking = service.record_payment_failed(booking.id)
        assert booking.status == BOOKING_CANCELED
        assert booking.payment_status == PAYMENT_FAILED

    async def test_payment_for_canceled_booking_is_refunded(
        self, db, make_session_type, provider, slot_start
    ):
        service, booking = await self._paid_booking(db, make_session_type, provider, slot_start)
        service.apply_canceled(booking, reason="changed mind")
        service.apply_payment_confirmed(booking, "pay_1")
        assert booking.status == BOOKING_CANCELED
        assert booking.payment_status == PAYMENT_REFUND_PENDING
        assert booking.refund_amount == booking.amount


# ── Terminal states ────────────────────────────────────────────────


class TestTerminalStates:
    async def _confirmed_free_booking(self, db, make_session_type, provider, slot_start):
        session_type = make_session_type(price="0")
        service = make_service(db, provider)
        booking = (await service.confirm_booking(session_type.id, make_slot(slot_start), CLIENT)).booking
        service.apply_provider_confirmed(booking, "invitee-uri", "event-uri")
        return service, booking

    async def test_cancel_twice_is_noop(self, db, make_session_type, provider, slot_start):
        service, booking = await self._confirmed_free_booking(db, make_session_type, provider, slot_start)
        assert service.apply_canceled(booking) == "applied"
        canceled_at = booking.canceled_at
        assert service.apply_canceled(booking) == "noop"
        assert booking.canceled_at == canceled_at

    async def test_canceled_booking_cannot_be_reconfirmed(self, db, make_session_type, provider, slot_start):
        service, booking = await self._confirmed_free_booking(db, make_session_type, provider, slot_start)
        service.apply_canceled(booking)
        with pytest.raises(InvalidTransition):
            service.apply_provider_confirmed(booking, "other-invitee", "event-uri")
        with pytest.raises(InvalidTransition):
            service.apply_no_show(booking)
        assert booking.status == BOOKING_CANCELED

    async def test_no_show_from_confirmed(self, db, make_session_type, provider, slot_start):
        service, booking = await self._confirmed_free_booking(db, make_session_type, provider, slot_start)
        assert service.apply_no_show(booking) == "applied"
        assert booking.status == BOOKING_NO_SHOW
        with pytest.raises(InvalidTransition):
            service.apply_canceled(booking)

    async def test_complete_elapsed_bookings(self, db, make_session_type, provider, slot_start):
        service, booking = await self._confirmed_free_booking(db, make_session_type, provider, slot_start)
        db.commit()

        assert service.complete_elapsed_bookings(now=utcnow()) == 0
        assert service.complete_elapsed_bookings(now=slot_start + timedelta(hours=2)) == 1
        db.refresh(booking)
        assert booking.status == BOOKING_COMPLETED


# ── Refunds ────────────────────────────────────────────────────────


class TestRefunds:
    @pytest.mark.parametrize(
        "hours_before,policy,amount",
        [
            (48, REFUND_FULL, Decimal("150.00")),
            (24, REFUND_FULL, Decimal("150.00")),
            (18, REFUND_PARTIAL, Decimal("75.00")),
            (12, REFUND_PARTIAL, Decimal("75.00")),
            (2, REFUND_NONE, Decimal("0.00")),
        ],
    )
    def test_refund_policy(self, hours_before, policy, amount):
        start = utcnow() + timedelta(days=5)
        assert calculate_refund(Decimal("150.00"), start, start - timedelta(hours=hours_before)) == (
            policy,
            amount,
        )

    async def test_cancellation_queues_and_issues_refund(
        self, db, make_session_type, provider, payments, slot_start
    ):
        session_type = make_session_type(price="150.00")
        service = make_service(db, provider, payments)
        booking = (await service.confirm_booking(session_type.id, make_slot(slot_start), CLIENT)).booking
        service.apply_payment_confirmed(booking, "pay_1")
        service.apply_provider_confirmed(booking, "invitee-uri", "event-uri")
        service.apply_canceled(booking, reason="sick")
        db.commit()

        assert booking.refund_policy == REFUND_FULL
        assert booking.payment_status == PAYMENT_REFUND_PENDING

        assert await service.issue_pending_refunds() == 1
        db.refresh(booking)
        assert booking.payment_status == PAYMENT_REFUNDED
        assert booking.refund_reference == "ref_1"
        assert payments.refunds[0][:2] == ("pay_1", Decimal("150.00"))
