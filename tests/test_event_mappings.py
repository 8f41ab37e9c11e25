"""Tests for the event mapping store and provider discovery."""

import pytest

from booking_sync.domain.mappings.service import EventMappingService
from booking_sync.errors import MappingNotFound, SessionTypeInactive, SessionTypeNotFound
from booking_sync.models import EventMapping

from conftest import EVENT_TYPE_URI


class TestResolveAndUpsert:
    def test_resolve_unmapped_session_type(self, db, make_session_type):
        session_type = make_session_type(mapped=False)
        with pytest.raises(MappingNotFound) as exc_info:
            EventMappingService(db).resolve(session_type.id)
        assert exc_info.value.retryable is False

    def test_upsert_replaces_prior_mapping(self, db, make_session_type):
        session_type = make_session_type()
        service = EventMappingService(db)

        service.upsert(session_type.id, "ET-OTHER", "https://api.calendly.com/event_types/ET-OTHER", "other")
        service.upsert(session_type.id, "ET-OTHER", "https://api.calendly.com/event_types/ET-OTHER", "other")

        rows = db.query(EventMapping).filter(EventMapping.session_type_id == session_type.id).all()
        assert len(rows) == 1
        assert service.resolve(session_type.id).provider_event_type_id == "ET-OTHER"

    def test_upsert_unknown_session_type(self, db):
        with pytest.raises(SessionTypeNotFound):
            EventMappingService(db).upsert("missing", "ET-1", "uri")

    def test_reverse_lookup(self, db, make_session_type):
        session_type = make_session_type()
        service = EventMappingService(db)
        assert service.resolve_session_type_for_event_type(EVENT_TYPE_URI) == [session_type.id]
        assert service.resolve_session_type_for_event_type("https://api.calendly.com/event_types/none") == []


class TestDiscovery:
    async def test_discover_by_provider_id(self, db, make_session_type, provider):
        session_type = make_session_type(mapped=False)
        mapping = await EventMappingService(db, provider).discover(session_type.id, "ET-CONSULT")
        assert mapping.provider_event_type_uri == EVENT_TYPE_URI
        assert mapping.provider_event_type_slug == "60-minute-consultation"

    async def test_discover_never_matches_by_title(self, db, make_session_type, provider):
        session_type = make_session_type(mapped=False, title="60-minute consultation")
        with pytest.raises(MappingNotFound):
            await EventMappingService(db, provider).discover(session_type.id, "60-minute-consultation")

    async def test_discover_refuses_inactive_event_type(self, db, make_session_type, provider):
        session_type = make_session_type(mapped=False)
        with pytest.raises(SessionTypeInactive):
            await EventMappingService(db, provider).discover(session_type.id, "ET-RETIRED")

    async def test_discover_checks_builder_ownership(self, db, make_session_type, provider):
        session_type = make_session_type(mapped=False, builder_id="builder-1")
        with pytest.raises(SessionTypeNotFound):
            await EventMappingService(db, provider).discover(
                session_type.id, "ET-CONSULT", builder_id="someone-else"
            )

    async def test_list_candidates(self, db, provider):
        candidates = await EventMappingService(db, provider).list_candidates()
        assert [c.id for c in candidates] == ["ET-CONSULT", "ET-RETIRED"]
