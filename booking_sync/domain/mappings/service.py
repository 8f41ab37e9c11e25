"""Event mapping service - links session types to provider event types by provider id"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ...errors import MappingNotFound, SessionTypeInactive, SessionTypeNotFound
from ...models import EventMapping, SessionType
from ...services.scheduling_provider import ProviderEventType, SchedulingProvider
from .repository import EventMappingRepository

logger = logging.getLogger(__name__)


class EventMappingService:
    """Service layer for event mapping business logic"""

    def __init__(
        self,
        db: Session,
        provider: Optional[SchedulingProvider] = None,
        repo: Optional[EventMappingRepository] = None,
    ):
        self.db = db
        self.provider = provider
        self.repo = repo or EventMappingRepository()

    def get_session_type(self, session_type_id: str, builder_id: Optional[str] = None) -> SessionType:
        """Get a session type, optionally restricted to its owning builder"""
        session_type = self.repo.get_session_type(self.db, session_type_id)
        if not session_type or (builder_id is not None and session_type.builder_id != builder_id):
            raise SessionTypeNotFound(session_type_id=session_type_id)
        return session_type

    def resolve(self, session_type_id: str) -> EventMapping:
        mapping = self.repo.get_active_mapping(self.db, session_type_id)
        if not mapping:
            logger.warning(f"⚠️ No provider event type linked to session type {session_type_id}")
            raise MappingNotFound(session_type_id=session_type_id)
        return mapping

    def upsert(
        self,
        session_type_id: str,
        provider_event_type_id: str,
        provider_event_type_uri: str,
        slug: Optional[str] = None,
    ) -> EventMapping:
        """Idempotent write; the only way a mapping changes"""
        self.get_session_type(session_type_id)

        previous = self.repo.get_mapping(self.db, session_type_id)
        if previous and previous.provider_event_type_id != provider_event_type_id:
            logger.info(
                f"🔄 Re-mapping session type {session_type_id}: "
                f"{previous.provider_event_type_id} -> {provider_event_type_id}"
            )

        mapping = self.repo.upsert_mapping(
            self.db, session_type_id, provider_event_type_id, provider_event_type_uri, slug
        )
        logger.info(f"✅ Session type {session_type_id} mapped to event type {provider_event_type_id}")
        return mapping

    async def list_candidates(self) -> list[ProviderEventType]:
        """Provider event types a builder can link a session type to"""
        return [event_type async for event_type in self.provider.list_event_types()]

    async def discover(
        self, session_type_id: str, provider_event_type_id: str, builder_id: Optional[str] = None
    ) -> EventMapping:
        """
        Link a session type to the provider event type with the given id.

        The id must be one the provider actually lists for our account; names
        and slugs are never used for matching.
        """
        self.get_session_type(session_type_id, builder_id)

        match = None
        async for event_type in self.provider.list_event_types():
            if provider_event_type_id in (event_type.id, event_type.uri):
                match = event_type
                break

        if match is None:
            logger.warning(f"⚠️ Provider event type {provider_event_type_id} not found for account")
            raise MappingNotFound(
                "Provider event type not found", provider_event_type_id=provider_event_type_id
            )
        if not match.active:
            raise SessionTypeInactive(
                "Provider event type is not active", provider_event_type_id=match.id
            )

        return self.upsert(session_type_id, match.id, match.uri, match.slug)

    def resolve_session_type_for_event_type(self, event_type_uri: str) -> list[str]:
        """Session type ids booked through a provider event type (webhook fallback matching)"""
        return [m.session_type_id for m in self.repo.get_active_mappings_for_event_type(self.db, event_type_uri)]
