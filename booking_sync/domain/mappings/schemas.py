"""Event mapping schemas - Pydantic models for validation"""

from typing import Optional

from pydantic import BaseModel, Field


class MappingUpdate(BaseModel):
    """Link a session type to a provider event type, by provider-assigned id"""

    providerEventTypeId: str = Field(..., min_length=1)


class MappingResponse(BaseModel):
    sessionTypeId: str
    providerEventTypeId: str
    providerEventTypeUri: str
    providerEventTypeSlug: Optional[str] = None
    isActive: bool


class EventTypeCandidate(BaseModel):
    id: str
    uri: str
    slug: Optional[str] = None
    name: str
    durationMinutes: int
    active: bool
    schedulingUrl: Optional[str] = None
