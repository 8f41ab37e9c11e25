"""Availability schemas"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class TimeSlotResponse(BaseModel):
    startTime: datetime
    endTime: datetime
    schedulingHandle: Optional[str] = None


class AvailabilityResponse(BaseModel):
    timeSlots: list[TimeSlotResponse]
