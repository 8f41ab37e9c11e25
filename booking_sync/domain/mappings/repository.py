"""Event mapping repository - Database operations for session types and their provider mappings"""

from typing import Optional

from sqlalchemy.orm import Session

from ...models import EventMapping, SessionType


class EventMappingRepository:
    """Repository for event mapping database operations"""

    @staticmethod
    def get_session_type(db: Session, session_type_id: str) -> Optional[SessionType]:
        return db.query(SessionType).filter(SessionType.id == session_type_id).first()

    @staticmethod
    def get_mapping(db: Session, session_type_id: str) -> Optional[EventMapping]:
        """Get the mapping for a session type (active or not)"""
        return db.query(EventMapping).filter(EventMapping.session_type_id == session_type_id).first()

    @staticmethod
    def get_active_mapping(db: Session, session_type_id: str) -> Optional[EventMapping]:
        return (
            db.query(EventMapping)
            .filter(
                EventMapping.session_type_id == session_type_id,
                EventMapping.is_active.is_(True),
            )
            .first()
        )

    @staticmethod
    def get_active_mappings_for_event_type(db: Session, event_type_uri: str) -> list[EventMapping]:
        """Reverse lookup: which session types book through this provider event type"""
        return (
            db.query(EventMapping)
            .filter(
                EventMapping.provider_event_type_uri == event_type_uri,
                EventMapping.is_active.is_(True),
            )
            .all()
        )

    @staticmethod
    def upsert_mapping(
        db: Session,
        session_type_id: str,
        provider_event_type_id: str,
        provider_event_type_uri: str,
        provider_event_type_slug: Optional[str] = None,
    ) -> EventMapping:
        """Create or replace the single mapping row of a session type"""
        mapping = db.query(EventMapping).filter(EventMapping.session_type_id == session_type_id).first()
        if mapping is None:
            mapping = EventMapping(session_type_id=session_type_id)
            db.add(mapping)

        mapping.provider_event_type_id = provider_event_type_id
        mapping.provider_event_type_uri = provider_event_type_uri
        mapping.provider_event_type_slug = provider_event_type_slug
        mapping.is_active = True

        db.commit()
        db.refresh(mapping)
        return mapping
