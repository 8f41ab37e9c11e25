"""API tests: routing, auth and the error envelope."""

import json
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from booking_sync import rate_limiter
from booking_sync.database import get_db
from booking_sync.main import app
from booking_sync.models import Booking, WebhookEventRecord, WebhookSubscription
from booking_sync.services.calendly_service import get_calendly_service
from booking_sync.services.payment_service import get_payment_collaborator

from conftest import bearer, signed_calendly_request


@pytest.fixture
def client(db, provider, payments):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_calendly_service] = lambda: provider
    app.dependency_overrides[get_payment_collaborator] = lambda: payments
    yield TestClient(app)
    app.dependency_overrides.clear()


def window(slot_start, days=7):
    return {
        "startDate": slot_start.isoformat(),
        "endDate": (slot_start + timedelta(days=days)).isoformat(),
    }


def confirm_body(session_type_id, start, minutes=60):
    return {
        "sessionTypeId": session_type_id,
        "timeSlot": {
            "startTime": start.isoformat(),
            "endTime": (start + timedelta(minutes=minutes)).isoformat(),
        },
        "clientDetails": {"name": "Ada Lovelace", "email": "Ada@Example.com", "timezone": "Europe/London"},
    }


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}


# ── Availability ───────────────────────────────────────────────────


class TestAvailabilityRoute:
    def test_lists_slots(self, client, make_session_type, slot_start):
        session_type = make_session_type()
        response = client.get(
            "/scheduling/availability", params={"sessionTypeId": session_type.id, **window(slot_start)}
        )
        assert response.status_code == 200
        slots = response.json()["timeSlots"]
        assert len(slots) == 3
        assert slots[0]["schedulingHandle"]

    def test_unmapped_session_type_envelope(self, client, make_session_type, slot_start):
        session_type = make_session_type(mapped=False)
        response = client.get(
            "/scheduling/availability", params={"sessionTypeId": session_type.id, **window(slot_start)}
        )
        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "mapping_not_found"
        assert error["retryable"] is False

    def test_unknown_session_type(self, client, slot_start):
        response = client.get("/scheduling/availability", params={"sessionTypeId": "nope", **window(slot_start)})
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "session_type_not_found"


# ── Bookings ───────────────────────────────────────────────────────


class TestBookingRoutes:
    def test_confirm_paid_booking(self, client, db, make_session_type, slot_start, payments):
        session_type = make_session_type(price="150.00")
        response = client.post("/scheduling/bookings/confirm", json=confirm_body(session_type.id, slot_start))

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "pending"
        assert body["paymentRequired"] is True
        assert body["paymentHandle"]["reference"] == "cks_1"
        assert body["schedulingHandle"].endswith(f"utm_content={body['bookingId']}")

        booking = db.get(Booking, body["bookingId"])
        assert booking.client_email == "ada@example.com"
        assert booking.client_timezone == "Europe/London"

    def test_slot_taken_is_retryable(self, client, make_session_type, slot_start):
        session_type = make_session_type(price="0")
        client.post("/scheduling/bookings/confirm", json=confirm_body(session_type.id, slot_start))
        response = client.post("/scheduling/bookings/confirm", json=confirm_body(session_type.id, slot_start))

        assert response.status_code == 409
        assert response.json()["error"]["retryable"] is True

    def test_auth_required_session(self, client, make_session_type, slot_start):
        session_type = make_session_type(requires_auth=True)
        response = client.post("/scheduling/bookings/confirm", json=confirm_body(session_type.id, slot_start))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "authentication_required"
        assert response.headers["WWW-Authenticate"] == "Bearer"

        response = client.post(
            "/scheduling/bookings/confirm",
            json=confirm_body(session_type.id, slot_start),
            headers=bearer("client-7"),
        )
        assert response.status_code == 200

    def test_invalid_timezone_rejected(self, client, make_session_type, slot_start):
        session_type = make_session_type()
        body = confirm_body(session_type.id, slot_start)
        body["clientDetails"]["timezone"] = "Mars/Olympus_Mons"
        assert client.post("/scheduling/bookings/confirm", json=body).status_code == 422

    def test_booking_visible_to_builder_only(self, client, make_session_type, slot_start):
        session_type = make_session_type(price="0")
        booking_id = client.post(
            "/scheduling/bookings/confirm", json=confirm_body(session_type.id, slot_start)
        ).json()["bookingId"]

        response = client.get(f"/scheduling/bookings/{booking_id}", headers=bearer("builder-1"))
        assert response.status_code == 200
        assert response.json()["status"] == "pending"

        response = client.get(f"/scheduling/bookings/{booking_id}", headers=bearer("stranger"))
        assert response.status_code == 404

        listed = client.get("/scheduling/bookings", headers=bearer("builder-1")).json()
        assert [b["id"] for b in listed] == [booking_id]


# ── Mappings ───────────────────────────────────────────────────────


class TestMappingRoutes:
    def test_link_session_type(self, client, make_session_type):
        session_type = make_session_type(mapped=False)
        response = client.put(
            f"/scheduling/mappings/{session_type.id}",
            json={"providerEventTypeId": "ET-CONSULT"},
            headers=bearer("builder-1"),
        )
        assert response.status_code == 200
        assert response.json()["providerEventTypeSlug"] == "60-minute-consultation"

        response = client.get(f"/scheduling/mappings/{session_type.id}", headers=bearer("builder-1"))
        assert response.json()["providerEventTypeId"] == "ET-CONSULT"

    def test_other_builder_cannot_link(self, client, make_session_type):
        session_type = make_session_type(mapped=False)
        response = client.put(
            f"/scheduling/mappings/{session_type.id}",
            json={"providerEventTypeId": "ET-CONSULT"},
            headers=bearer("builder-2"),
        )
        assert response.status_code == 404

    def test_requires_token(self, client, make_session_type):
        session_type = make_session_type()
        response = client.get(f"/scheduling/mappings/{session_type.id}")
        assert response.status_code == 401

    def test_garbage_token(self, client, make_session_type):
        session_type = make_session_type()
        response = client.get(
            f"/scheduling/mappings/{session_type.id}", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401


# ── Webhooks ───────────────────────────────────────────────────────


class TestWebhookRoutes:
    body = {"event": "routing_form_submission.created", "payload": {"uri": "https://api.calendly.com/rfs/1"}}

    def test_recorded_delivery_answers_200(self, client):
        raw, signature = signed_calendly_request(self.body)
        response = client.post(
            "/webhooks/calendly", content=raw, headers={"Calendly-Webhook-Signature": signature}
        )
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "outcome": "noop", "duplicate": False}

        again = client.post("/webhooks/calendly", content=raw, headers={"Calendly-Webhook-Signature": signature})
        assert again.json()["duplicate"] is True

    def test_bad_signature_answers_401(self, client):
        raw, signature = signed_calendly_request(self.body, secret="not-the-key")
        response = client.post(
            "/webhooks/calendly", content=raw, headers={"Calendly-Webhook-Signature": signature}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "signature_invalid"
        assert "WWW-Authenticate" not in response.headers

    def test_missing_signature_answers_401(self, client):
        response = client.post("/webhooks/calendly", content=json.dumps(self.body))
        assert response.status_code == 401

    def test_malformed_payload_answers_400(self, client):
        raw, signature = signed_calendly_request({"event": "invitee.created"})
        response = client.post(
            "/webhooks/calendly", content=raw, headers={"Calendly-Webhook-Signature": signature}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_webhook_payload"


# ── Rate limiting ──────────────────────────────────────────────────


class FakeRedis:
    """Counts INCRs per limiter key, ignoring the window suffix so a minute boundary can't reset a test"""

    def __init__(self):
        self.counts = {}

    def pipeline(self):
        return FakePipeline(self)


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.key = None

    def incr(self, key):
        self.key = key.rsplit(":", 1)[0]

    def expire(self, key, seconds):
        pass

    def execute(self):
        self.redis.counts[self.key] = self.redis.counts.get(self.key, 0) + 1
        return [self.redis.counts[self.key], True]


@pytest.fixture
def limiter(monkeypatch):
    redis = FakeRedis()
    monkeypatch.setattr(rate_limiter, "RATE_LIMIT_ENABLED", True)
    monkeypatch.setattr(rate_limiter, "get_redis_client", lambda: redis)
    return redis


class TestRateLimiting:
    def test_burst_of_signed_deliveries_is_never_throttled(self, client, db, limiter):
        for i in range(150):
            raw, signature = signed_calendly_request(
                {"event": "routing_form_submission.created", "payload": {"uri": f"https://api.calendly.com/rfs/{i}"}}
            )
            response = client.post(
                "/webhooks/calendly", content=raw, headers={"Calendly-Webhook-Signature": signature}
            )
            assert response.status_code == 200
        assert db.query(WebhookEventRecord).count() == 150
        assert limiter.counts == {}

    def test_public_availability_is_limited_per_ip(self, client, limiter, make_session_type, slot_start):
        session_type = make_session_type()
        params = {"sessionTypeId": session_type.id, **window(slot_start)}
        for _ in range(60):
            assert client.get("/scheduling/availability", params=params).status_code == 200

        response = client.get("/scheduling/availability", params=params)
        assert response.status_code == 429
        assert "Retry-After" in response.headers


# ── Admin ──────────────────────────────────────────────────────────


class TestAdminRoutes:
    def test_rotate_requires_admin(self, client):
        response = client.post("/scheduling/admin/webhook-subscription/rotate", headers=bearer("builder-1"))
        assert response.status_code == 401

    def test_provision_then_rotate(self, client, db, provider):
        response = client.post("/scheduling/admin/webhook-subscription", json={}, headers=bearer("admin-1"))
        assert response.status_code == 200
        assert response.json()["callbackUrl"] == "https://api.example.com/webhooks/calendly"
        assert response.json()["rotationInProgress"] is False

        response = client.post("/scheduling/admin/webhook-subscription/rotate", headers=bearer("admin-1"))
        assert response.status_code == 200
        assert response.json()["rotationInProgress"] is True
        assert len(provider.created_subscriptions) == 2
        assert db.query(WebhookSubscription).count() == 1
