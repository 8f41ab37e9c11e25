"""Booking domain schemas - Pydantic models for validation"""

import re
from datetime import datetime
from decimal import Decimal
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class TimeSlotRequest(BaseModel):
    startTime: datetime
    endTime: datetime
    schedulingHandle: Optional[str] = None


class ClientDetailsRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: str = Field(..., max_length=255)
    timezone: str = "UTC"

    @field_validator("email")
    @classmethod
    def validate_email(cls, v):
        v = v.strip()
        if not EMAIL_PATTERN.match(v):
            raise ValueError("Invalid email address")
        return v.lower()

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v):
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v


class ConfirmBookingRequest(BaseModel):
    """Schema for confirming a booking on a previously offered slot"""

    sessionTypeId: str
    timeSlot: TimeSlotRequest
    clientDetails: ClientDetailsRequest
    notes: Optional[str] = Field(None, max_length=2000)


class PaymentHandleResponse(BaseModel):
    reference: str
    checkoutUrl: str


class ConfirmBookingResponse(BaseModel):
    bookingId: str
    status: str
    paymentRequired: bool
    paymentHandle: Optional[PaymentHandleResponse] = None
    schedulingHandle: Optional[str] = None


class BookingResponse(BaseModel):
    """Schema for booking response"""

    id: str
    sessionTypeId: str
    builderId: str
    clientName: str
    clientEmail: str
    clientTimezone: str
    startTime: datetime
    endTime: datetime
    status: str
    paymentStatus: str
    amount: Decimal
    currency: str
    providerEventUri: Optional[str] = None
    providerInviteeUri: Optional[str] = None
    canceledAt: Optional[datetime] = None
    cancellationReason: Optional[str] = None
    refundPolicy: Optional[str] = None
    refundAmount: Optional[Decimal] = None
