"""Availability service - live, uncached slot queries against the scheduling provider"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...errors import InvalidDateRange, SessionTypeInactive
from ...models import EventMapping, SessionType
from ...services.scheduling_provider import SchedulingProvider, TimeSlot
from ...utils.timeutils import as_utc
from ..mappings.service import EventMappingService

logger = logging.getLogger(__name__)


class AvailabilityService:
    def __init__(
        self,
        db: Session,
        provider: SchedulingProvider,
        mappings: Optional[EventMappingService] = None,
    ):
        self.db = db
        self.provider = provider
        self.mappings = mappings or EventMappingService(db, provider)

    async def get_availability(
        self, session_type_id: str, start_time: datetime, end_time: datetime
    ) -> list[TimeSlot]:
        """
        Bookable slots for a session type within [start_time, end_time].

        The result is a point-in-time snapshot; callers must re-validate a slot
        before booking it.
        """
        session_type = self.mappings.get_session_type(session_type_id)
        mapping = self.mappings.resolve(session_type_id)
        if not session_type.is_active:
            raise SessionTypeInactive(session_type_id=session_type_id)

        window_start = as_utc(start_time)
        window_end = as_utc(end_time)

        slots = await self.provider.get_available_times(
            mapping.provider_event_type_uri,
            window_start,
            window_end,
            duration_minutes=session_type.duration_minutes,
        )
        result = normalize_slots(slots, window_start, window_end)
        logger.info(f"📅 {len(result)} slot(s) available for session type {session_type_id}")
        return result

    async def find_slot(
        self, session_type: SessionType, mapping: EventMapping, start_time: datetime, end_time: datetime
    ) -> Optional[TimeSlot]:
        """Narrow re-check of one exact slot; None when it is gone"""
        start = as_utc(start_time)
        end = as_utc(end_time)
        try:
            slots = await self.provider.get_available_times(
                mapping.provider_event_type_uri,
                start,
                end,
                duration_minutes=session_type.duration_minutes,
            )
        except InvalidDateRange:
            # The slot's window has already started or passed
            return None

        for slot in normalize_slots(slots, start, end):
            if slot.start_time == start:
                return slot
        return None

    async def is_slot_available(
        self, session_type: SessionType, mapping: EventMapping, start_time: datetime, end_time: datetime
    ) -> bool:
        return await self.find_slot(session_type, mapping, start_time, end_time) is not None


def normalize_slots(slots: list[TimeSlot], window_start: datetime, window_end: datetime) -> list[TimeSlot]:
    """UTC instants, inside the window, with capacity left, one per start time, in time order"""
    seen = set()
    result = []
    for slot in sorted(slots, key=lambda s: as_utc(s.start_time)):
        start = as_utc(slot.start_time)
        end = as_utc(slot.end_time)
        if slot.remaining_capacity <= 0:
            continue
        if start < window_start or end > window_end:
            continue
        if start in seen:
            continue
        seen.add(start)
        result.append(
            TimeSlot(
                start_time=start,
                end_time=end,
                scheduling_handle=slot.scheduling_handle,
                remaining_capacity=slot.remaining_capacity,
            )
        )
    return result
