"""Event mapping router - builder-facing endpoints for linking session types"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...auth import get_current_user_id
from ...database import get_db
from ...models import EventMapping
from ...services.calendly_service import get_calendly_service
from ...services.scheduling_provider import SchedulingProvider
from .schemas import EventTypeCandidate, MappingResponse, MappingUpdate
from .service import EventMappingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scheduling/mappings", tags=["Scheduling"])


def get_mapping_service(
    db: Session = Depends(get_db),
    provider: SchedulingProvider = Depends(get_calendly_service),
) -> EventMappingService:
    """Dependency injection for EventMappingService"""
    return EventMappingService(db, provider)


def to_response(mapping: EventMapping) -> MappingResponse:
    return MappingResponse(
        sessionTypeId=mapping.session_type_id,
        providerEventTypeId=mapping.provider_event_type_id,
        providerEventTypeUri=mapping.provider_event_type_uri,
        providerEventTypeSlug=mapping.provider_event_type_slug,
        isActive=mapping.is_active,
    )


@router.get("/candidates", response_model=list[EventTypeCandidate])
async def list_candidates(
    _user_id: str = Depends(get_current_user_id),
    service: EventMappingService = Depends(get_mapping_service),
):
    """Provider event types available for linking"""
    event_types = await service.list_candidates()
    return [
        EventTypeCandidate(
            id=et.id,
            uri=et.uri,
            slug=et.slug,
            name=et.name,
            durationMinutes=et.duration_minutes,
            active=et.active,
            schedulingUrl=et.scheduling_url,
        )
        for et in event_types
    ]


@router.get("/{session_type_id}", response_model=MappingResponse)
async def get_mapping(
    session_type_id: str,
    user_id: str = Depends(get_current_user_id),
    service: EventMappingService = Depends(get_mapping_service),
):
    service.get_session_type(session_type_id, builder_id=user_id)
    return to_response(service.resolve(session_type_id))


@router.put("/{session_type_id}", response_model=MappingResponse)
async def put_mapping(
    session_type_id: str,
    data: MappingUpdate,
    user_id: str = Depends(get_current_user_id),
    service: EventMappingService = Depends(get_mapping_service),
):
    """Link (or re-link) a session type to a provider event type"""
    mapping = await service.discover(session_type_id, data.providerEventTypeId, builder_id=user_id)
    return to_response(mapping)
