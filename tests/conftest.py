"""Test fixtures."""

import base64
import json
import os
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

import pytest

# Set test environment before importing the app
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["DB_LOG_SLOW_QUERIES"] = "false"
os.environ["CALENDLY_API_TOKEN"] = "test-calendly-token"
os.environ["CALENDLY_WEBHOOK_SIGNING_KEY"] = "test-calendly-signing-key"
os.environ["DODO_PAYMENTS_WEBHOOK_SECRET"] = "whsec_" + base64.b64encode(b"test-dodo-signing-key").decode()
os.environ["IDENTITY_JWT_SECRET"] = "test-identity-secret"
os.environ["ADMIN_USER_IDS"] = "admin-1"
os.environ["WEBHOOK_CALLBACK_URL"] = "https://api.example.com/webhooks/calendly"

from jose import jwt as jose_jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from booking_sync.database import Base
from booking_sync.errors import InvalidDateRange, PaymentInitiationFailed
from booking_sync.models import EventMapping, SessionType
from booking_sync.services.payment_service import PaymentCollaborator, PaymentHandle
from booking_sync.services.scheduling_provider import (
    ProviderAccount,
    ProviderEventType,
    SchedulingProvider,
    TimeSlot,
)
from booking_sync.utils.timeutils import as_utc, utcnow
from booking_sync.webhook_security import create_calendly_signature

CALENDLY_SIGNING_KEY = os.environ["CALENDLY_WEBHOOK_SIGNING_KEY"]
DODO_WEBHOOK_SECRET = os.environ["DODO_PAYMENTS_WEBHOOK_SECRET"]

EVENT_TYPE_URI = "https://api.calendly.com/event_types/ET-CONSULT"
ORGANIZATION_URI = "https://api.calendly.com/organizations/ORG-1"
USER_URI = "https://api.calendly.com/users/USER-1"


class FakeSchedulingProvider(SchedulingProvider):
    """In-memory provider: serves whatever slots the test put on its calendar"""

    def __init__(self, slots: Optional[list[TimeSlot]] = None, event_types=None):
        self.slots = list(slots or [])
        self.event_types = list(event_types or [])
        self.availability_calls = []
        self.created_subscriptions = []
        self.deleted_subscriptions = []

    async def get_current_account(self):
        return ProviderAccount(
            uri=USER_URI,
            name="Builder",
            email="builder@example.com",
            scheduling_url="https://calendly.com/builder",
            organization_uri=ORGANIZATION_URI,
        )

    def list_event_types(self, user_uri=None, organization_uri=None):
        event_types = self.event_types

        class Pager:
            def __aiter__(self):
                return self._iterate()

            async def _iterate(self):
                for event_type in event_types:
                    yield event_type

        return Pager()

    async def get_event_type(self, event_type_uri):
        for event_type in self.event_types:
            if event_type.uri == event_type_uri:
                return event_type
        raise KeyError(event_type_uri)

    async def get_available_times(self, event_type_uri, start_time, end_time, duration_minutes=None):
        start, end = as_utc(start_time), as_utc(end_time)
        self.availability_calls.append((event_type_uri, start, end))
        if end <= start:
            raise InvalidDateRange("End time must be after start time")
        return [s for s in self.slots if start <= s.start_time < end]

    async def create_webhook_subscription(
        self, url, events, organization_uri, scope="organization", signing_key=None, user_uri=None
    ):
        uri = f"https://api.calendly.com/webhook_subscriptions/WH-{len(self.created_subscriptions) + 1}"
        self.created_subscriptions.append(
            {"uri": uri, "url": url, "events": events, "signing_key": signing_key, "scope": scope}
        )
        return {"uri": uri, "callback_url": url, "events": events}

    async def delete_webhook_subscription(self, subscription_uri):
        self.deleted_subscriptions.append(subscription_uri)

    def generate_scheduling_link(self, scheduling_url, prefill_data=None):
        if prefill_data and prefill_data.get("booking_id"):
            return f"{scheduling_url}?utm_content={prefill_data['booking_id']}"
        return scheduling_url


class FakePaymentCollaborator(PaymentCollaborator):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.payments = []
        self.refunds = []

    async def initiate_payment(self, booking, amount, currency):
        if self.fail:
            raise PaymentInitiationFailed(booking_id=booking.id)
        self.payments.append((booking.id, Decimal(amount), currency))
        reference = f"cks_{len(self.payments)}"
        return PaymentHandle(reference=reference, checkout_url=f"https://checkout.example.com/{reference}")

    async def request_refund(self, payment_reference, amount, reason):
        self.refunds.append((payment_reference, Decimal(amount), reason))
        return f"ref_{len(self.refunds)}"


def make_slot(start: datetime, minutes: int = 60, capacity: int = 1) -> TimeSlot:
    start = as_utc(start)
    return TimeSlot(
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
        scheduling_handle=f"https://calendly.com/builder/consultation/{start.strftime('%Y-%m-%dT%H:%M')}",
        remaining_capacity=capacity,
    )


def signed_calendly_request(body: dict, secret: str = CALENDLY_SIGNING_KEY, timestamp: Optional[int] = None):
    raw = json.dumps(body).encode("utf-8")
    return raw, create_calendly_signature(secret, raw, timestamp=timestamp)


def invitee_payload(
    event: str,
    invitee_id: str,
    booking_id: Optional[str] = None,
    event_id: str = "EV-1",
    start_time: Optional[datetime] = None,
    canceler_type: str = "invitee",
    rescheduled: bool = False,
    old_invitee: Optional[str] = None,
    new_invitee: Optional[str] = None,
) -> dict:
    """Calendly invitee webhook body"""
    event_uri = f"https://api.calendly.com/scheduled_events/{event_id}"
    start = start_time or utcnow()
    payload = {
        "uri": f"{event_uri}/invitees/{invitee_id}",
        "email": "client@example.com",
        "name": "Client",
        "event": event_uri,
        "status": "canceled" if event == "invitee.canceled" else "active",
        "tracking": {"utm_content": booking_id},
        "scheduled_event": {
            "uri": event_uri,
            "event_type": EVENT_TYPE_URI,
            "start_time": start.strftime("%Y-%m-%dT%H:%M:%S.000000Z"),
            "end_time": (start + timedelta(hours=1)).strftime("%Y-%m-%dT%H:%M:%S.000000Z"),
        },
    }
    if event == "invitee.canceled":
        payload["cancellation"] = {"reason": "Schedule conflict", "canceler_type": canceler_type}
    if rescheduled:
        payload["rescheduled"] = True
        payload["new_invitee"] = new_invitee
    if old_invitee:
        payload["old_invitee"] = old_invitee
    return {"event": event, "created_at": utcnow().isoformat(), "payload": payload}


def bearer(sub: str) -> dict:
    token = jose_jwt.encode({"sub": sub}, os.environ["IDENTITY_JWT_SECRET"], algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()


@pytest.fixture
def slot_start():
    """A round hour two days out"""
    return (utcnow() + timedelta(days=2)).replace(minute=0, second=0, microsecond=0)


@pytest.fixture
def provider(slot_start):
    slots = [make_slot(slot_start + timedelta(hours=i)) for i in range(3)]
    event_types = [
        ProviderEventType(
            id="ET-CONSULT",
            uri=EVENT_TYPE_URI,
            slug="60-minute-consultation",
            name="60-minute consultation",
            duration_minutes=60,
            active=True,
            scheduling_url="https://calendly.com/builder/consultation",
        ),
        ProviderEventType(
            id="ET-RETIRED",
            uri="https://api.calendly.com/event_types/ET-RETIRED",
            slug="old-session",
            name="Old session",
            duration_minutes=30,
            active=False,
        ),
    ]
    return FakeSchedulingProvider(slots=slots, event_types=event_types)


@pytest.fixture
def payments():
    return FakePaymentCollaborator()


@pytest.fixture
def make_session_type(db):
    def _make(
        price="150.00",
        duration_minutes=60,
        requires_auth=False,
        is_active=True,
        mapped=True,
        builder_id="builder-1",
        title="60-minute consultation",
    ) -> SessionType:
        session_type = SessionType(
            builder_id=builder_id,
            title=title,
            duration_minutes=duration_minutes,
            price=Decimal(price),
            currency="USD",
            is_active=is_active,
            requires_auth=requires_auth,
        )
        db.add(session_type)
        db.commit()
        if mapped:
            db.add(
                EventMapping(
                    session_type_id=session_type.id,
                    provider_event_type_id="ET-CONSULT",
                    provider_event_type_uri=EVENT_TYPE_URI,
                    provider_event_type_slug="60-minute-consultation",
                )
            )
            db.commit()
        db.refresh(session_type)
        return session_type

    return _make
