"""Booking router - FastAPI endpoints for booking confirmation and lookup"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...auth import get_current_user_id, get_optional_user_id
from ...database import get_db
from ...errors import BookingNotFound
from ...models import Booking
from ...rate_limiter import create_rate_limiter
from ...services.calendly_service import get_calendly_service
from ...services.payment_service import PaymentCollaborator, get_payment_collaborator
from ...services.scheduling_provider import SchedulingProvider, TimeSlot
from ...utils.timeutils import as_utc
from .schemas import (
    BookingResponse,
    ConfirmBookingRequest,
    ConfirmBookingResponse,
    PaymentHandleResponse,
)
from .service import BookingService, ClientDetails

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scheduling/bookings", tags=["Scheduling"])

rate_limit_confirm = create_rate_limiter(
    limit=10,
    window_seconds=60,
    key_prefix="booking_confirm",
    use_ip=True,
    fail_open=True,
)


def get_booking_service(
    db: Session = Depends(get_db),
    provider: SchedulingProvider = Depends(get_calendly_service),
    payments: PaymentCollaborator = Depends(get_payment_collaborator),
) -> BookingService:
    """Dependency injection for BookingService"""
    return BookingService(db, provider, payments)


def to_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        id=booking.id,
        sessionTypeId=booking.session_type_id,
        builderId=booking.builder_id,
        clientName=booking.client_name,
        clientEmail=booking.client_email,
        clientTimezone=booking.client_timezone,
        startTime=as_utc(booking.start_time),
        endTime=as_utc(booking.end_time),
        status=booking.status,
        paymentStatus=booking.payment_status,
        amount=booking.amount,
        currency=booking.currency,
        providerEventUri=booking.provider_event_uri,
        providerInviteeUri=booking.provider_invitee_uri,
        canceledAt=as_utc(booking.canceled_at),
        cancellationReason=booking.cancellation_reason,
        refundPolicy=booking.refund_policy,
        refundAmount=booking.refund_amount,
    )


@router.post("/confirm", response_model=ConfirmBookingResponse)
async def confirm_booking(
    data: ConfirmBookingRequest,
    user_id: Optional[str] = Depends(get_optional_user_id),
    service: BookingService = Depends(get_booking_service),
    _: None = Depends(rate_limit_confirm),
):
    """Reserve a slot and start payment when the session is paid"""
    result = await service.confirm_booking(
        data.sessionTypeId,
        TimeSlot(
            start_time=data.timeSlot.startTime,
            end_time=data.timeSlot.endTime,
            scheduling_handle=data.timeSlot.schedulingHandle,
        ),
        ClientDetails(
            name=data.clientDetails.name,
            email=data.clientDetails.email,
            timezone=data.clientDetails.timezone,
        ),
        notes=data.notes,
        client_user_id=user_id,
    )

    payment_handle = None
    if result.payment_handle:
        payment_handle = PaymentHandleResponse(
            reference=result.payment_handle.reference,
            checkoutUrl=result.payment_handle.checkout_url,
        )

    return ConfirmBookingResponse(
        bookingId=result.booking.id,
        status=result.booking.status,
        paymentRequired=result.payment_required,
        paymentHandle=payment_handle,
        schedulingHandle=result.scheduling_handle,
    )


@router.get("", response_model=list[BookingResponse])
async def list_bookings(
    user_id: str = Depends(get_current_user_id),
    service: BookingService = Depends(get_booking_service),
):
    """Bookings for the current user, as builder and as client"""
    bookings = {b.id: b for b in service.list_bookings(builder_id=user_id)}
    for booking in service.list_bookings(client_user_id=user_id):
        bookings.setdefault(booking.id, booking)
    return [to_response(b) for b in sorted(bookings.values(), key=lambda b: b.start_time, reverse=True)]


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    user_id: str = Depends(get_current_user_id),
    service: BookingService = Depends(get_booking_service),
):
    booking = service.get_booking(booking_id)
    if user_id not in (booking.builder_id, booking.client_user_id):
        raise BookingNotFound(booking_id=booking_id)
    return to_response(booking)
