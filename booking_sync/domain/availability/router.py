"""Availability router - public slot lookup for a session type"""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...database import get_db
from ...rate_limiter import create_rate_limiter
from ...services.calendly_service import get_calendly_service
from ...services.scheduling_provider import SchedulingProvider
from .schemas import AvailabilityResponse, TimeSlotResponse
from .service import AvailabilityService

router = APIRouter(prefix="/scheduling", tags=["Scheduling"])

# Each query fans out to the provider API, so public callers are limited per IP
rate_limit_availability = create_rate_limiter(
    limit=60,
    window_seconds=60,
    key_prefix="availability",
    use_ip=True,
    fail_open=True,
)


def get_availability_service(
    db: Session = Depends(get_db),
    provider: SchedulingProvider = Depends(get_calendly_service),
) -> AvailabilityService:
    """Dependency injection for AvailabilityService"""
    return AvailabilityService(db, provider)


@router.get("/availability", response_model=AvailabilityResponse)
async def get_availability(
    session_type_id: str = Query(..., alias="sessionTypeId"),
    start_date: datetime = Query(..., alias="startDate"),
    end_date: datetime = Query(..., alias="endDate"),
    service: AvailabilityService = Depends(get_availability_service),
    _: None = Depends(rate_limit_availability),
):
    """Live availability for a session type. Never cached."""
    slots = await service.get_availability(session_type_id, start_date, end_date)
    return AvailabilityResponse(
        timeSlots=[
            TimeSlotResponse(
                startTime=slot.start_time,
                endTime=slot.end_time,
                schedulingHandle=slot.scheduling_handle,
            )
            for slot in slots
        ]
    )
