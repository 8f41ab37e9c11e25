"""
Webhook service - verified ingestion and reconciliation of provider and payment notifications

Every delivery is verified against the raw bytes, then durably recorded before
any business logic runs. Processing happens in a second transaction that locks
the receipt and the booking, applies the transition and stamps ``processed_at``
together with the booking change, so a redelivery can never apply twice.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import (
    DODO_PAYMENTS_WEBHOOK_SECRET,
    WEBHOOK_MAX_ATTEMPTS,
    WEBHOOK_TOLERANCE_SECONDS,
)
from ...errors import BookingNotFound, InvalidTransition, InvalidWebhookPayload, SignatureInvalid
from ...models import (
    OUTCOME_FAILED,
    OUTCOME_NOOP,
    OUTCOME_REJECTED,
    Booking,
    WebhookEventRecord,
)
from ...security_utils import log_security_event
from ...utils.timeutils import parse_iso, to_db, utcnow
from ...webhook_security import verify_calendly_signature, verify_standard_webhook
from ..bookings.repository import BookingRepository
from ..bookings.service import BookingService
from ..mappings.service import EventMappingService
from .repository import WebhookEventRepository
from .signing_secrets import SigningSecretManager

logger = logging.getLogger(__name__)

SOURCE_CALENDLY = "calendly"
SOURCE_PAYMENTS = "payments"

INVITEE_CREATED = "invitee.created"
INVITEE_CANCELED = "invitee.canceled"
INVITEE_NO_SHOW = "invitee_no_show.created"

PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_FAILED_EVENTS = {"payment.failed", "payment.cancelled"}


@dataclass
class WebhookResult:
    record_id: int
    outcome: Optional[str]
    duplicate: bool = False


def _resource_id(uri: Optional[str]) -> Optional[str]:
    return uri.rstrip("/").split("/")[-1] if uri else None


def _parse_json(raw_payload: bytes) -> dict[str, Any]:
    try:
        body = json.loads(raw_payload.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise InvalidWebhookPayload("Webhook body is not valid JSON") from e
    if not isinstance(body, dict):
        raise InvalidWebhookPayload("Webhook body must be a JSON object")
    return body


class WebhookService:
    def __init__(
        self,
        db: Session,
        bookings: Optional[BookingService] = None,
        signing_secrets: Optional[SigningSecretManager] = None,
        repo: Optional[WebhookEventRepository] = None,
        booking_repo: Optional[BookingRepository] = None,
        mappings: Optional[EventMappingService] = None,
        payment_webhook_secret: Optional[str] = None,
    ):
        self.db = db
        self.bookings = bookings or BookingService(db)
        self.signing_secrets = signing_secrets or SigningSecretManager(db)
        self.repo = repo or WebhookEventRepository()
        self.booking_repo = booking_repo or BookingRepository()
        self.mappings = mappings or EventMappingService(db)
        self.payment_webhook_secret = payment_webhook_secret or DODO_PAYMENTS_WEBHOOK_SECRET

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def handle_webhook(
        self,
        raw_payload: bytes,
        signature_header: Optional[str],
        client_ip: Optional[str] = None,
        now: Optional[float] = None,
    ) -> WebhookResult:
        """Verify, record and process one scheduling provider delivery"""
        try:
            verify_calendly_signature(
                raw_payload,
                signature_header,
                self.signing_secrets.current_secrets(),
                tolerance_seconds=WEBHOOK_TOLERANCE_SECONDS,
                now=now,
            )
        except SignatureInvalid as e:
            log_security_event(
                "webhook_signature_invalid",
                ip_address=client_ip,
                details={"source": SOURCE_CALENDLY, "reason": e.message},
            )
            raise

        body = _parse_json(raw_payload)
        event_kind = body.get("event")
        payload = body.get("payload")
        if not isinstance(event_kind, str) or not isinstance(payload, dict):
            raise InvalidWebhookPayload("Webhook is missing 'event' or 'payload'")
        provider_event_id = payload.get("uri")
        if not isinstance(provider_event_id, str) or not provider_event_id:
            raise InvalidWebhookPayload("Webhook payload has no resource uri")

        logger.info(f"📥 Received Calendly webhook: {event_kind} ({provider_event_id})")
        return self._ingest(SOURCE_CALENDLY, provider_event_id, event_kind, body)

    def handle_payment_webhook(
        self,
        raw_payload: bytes,
        webhook_id: Optional[str],
        webhook_timestamp: Optional[str],
        signature_header: Optional[str],
        client_ip: Optional[str] = None,
        now: Optional[float] = None,
    ) -> WebhookResult:
        """Verify, record and process one payment processor delivery (Standard Webhooks)"""
        try:
            if not self.payment_webhook_secret:
                raise SignatureInvalid("No payment webhook secret configured")
            verify_standard_webhook(
                raw_payload,
                webhook_id,
                webhook_timestamp,
                signature_header,
                self.payment_webhook_secret,
                tolerance_seconds=WEBHOOK_TOLERANCE_SECONDS,
                now=now,
            )
        except SignatureInvalid as e:
            log_security_event(
                "webhook_signature_invalid",
                ip_address=client_ip,
                details={"source": SOURCE_PAYMENTS, "reason": e.message},
            )
            raise

        body = _parse_json(raw_payload)
        event_kind = body.get("type")
        if not isinstance(event_kind, str) or not isinstance(body.get("data"), dict):
            raise InvalidWebhookPayload("Payment webhook is missing 'type' or 'data'")

        logger.info(f"📥 Received payment webhook: {event_kind} ({webhook_id})")
        return self._ingest(SOURCE_PAYMENTS, webhook_id, event_kind, body)

    def _ingest(self, source: str, provider_event_id: str, event_kind: str, body: dict) -> WebhookResult:
        record = self.repo.get_record(self.db, provider_event_id, event_kind)
        if record is None:
            try:
                record = self.repo.create_record(
                    self.db,
                    provider_event_id=provider_event_id,
                    event_kind=event_kind,
                    source=source,
                    payload=body,
                )
            except IntegrityError:
                # A concurrent delivery of the same event recorded it first
                self.db.rollback()
                record = self.repo.get_record(self.db, provider_event_id, event_kind)

        if record.processed_at is not None:
            logger.info(f"🔁 Duplicate webhook {event_kind} ({provider_event_id}) - already processed")
            return WebhookResult(record_id=record.id, outcome=record.outcome, duplicate=True)

        return self.process_record(record.id)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process_record(self, record_id: int) -> WebhookResult:
        """
        Apply one recorded event. The receipt and its booking are locked, and the
        booking change commits together with ``processed_at``.
        """
        record = self.repo.get_record_for_update(self.db, record_id)
        if record.processed_at is not None:
            self.db.rollback()
            return WebhookResult(record_id=record_id, outcome=record.outcome, duplicate=True)

        try:
            if record.source == SOURCE_PAYMENTS:
                outcome, booking = self._apply_payment_event(record)
            else:
                outcome, booking = self._apply_provider_event(record)

            record.attempts += 1
            record.booking_id = booking.id if booking is not None else None
            # A slot clash on a rescheduled booking surfaces here as IntegrityError
            self._finish(record, outcome)
        except InvalidTransition as e:
            logger.warning(f"🚫 Rejected {record.event_kind} ({record.provider_event_id}): {e.message}")
            record.attempts += 1
            record.booking_id = e.details.get("booking_id")
            self._finish(record, OUTCOME_REJECTED, error=e.message)
            return WebhookResult(record_id=record_id, outcome=OUTCOME_REJECTED)
        except BookingNotFound as e:
            logger.warning(
                f"⚠️ No booking for {record.event_kind} ({record.provider_event_id}) yet; "
                f"left for reconciliation"
            )
            record.attempts += 1
            record.outcome = OUTCOME_FAILED
            record.error = e.message
            self.db.commit()
            return WebhookResult(record_id=record_id, outcome=OUTCOME_FAILED)
        except Exception as e:
            logger.exception(f"❌ Webhook processing error for record {record_id}: {e}")
            self.db.rollback()
            self._mark_failed(record_id, str(e))
            return WebhookResult(record_id=record_id, outcome=OUTCOME_FAILED)

        logger.info(f"✅ Webhook {record.event_kind} ({record.provider_event_id}) -> {outcome}")
        return WebhookResult(record_id=record_id, outcome=outcome)

    def _finish(self, record: WebhookEventRecord, outcome: str, error: Optional[str] = None) -> None:
        record.outcome = outcome
        record.error = error
        record.processed_at = to_db(utcnow())
        self.db.commit()

    def _mark_failed(self, record_id: int, error: str) -> None:
        record = self.repo.get_record_for_update(self.db, record_id)
        record.attempts += 1
        record.outcome = OUTCOME_FAILED
        record.error = error[:2000]
        self.db.commit()

    def _apply_provider_event(self, record: WebhookEventRecord) -> tuple[str, Optional[Booking]]:
        payload = (record.payload or {}).get("payload") or {}

        if record.event_kind not in (INVITEE_CREATED, INVITEE_CANCELED, INVITEE_NO_SHOW):
            logger.debug(f"Unhandled event type: {record.event_kind}")
            return OUTCOME_NOOP, None

        if record.event_kind == INVITEE_CANCELED and payload.get("rescheduled"):
            # First half of a reschedule; the invitee.created carrying old_invitee moves the booking
            booking = self._locate_booking(payload)
            logger.info(
                f"📆 Reschedule notice for booking {booking.id if booking else 'unknown'} "
                f"-> {payload.get('new_invitee')}"
            )
            return OUTCOME_NOOP, booking

        if record.event_kind == INVITEE_CREATED and payload.get("old_invitee"):
            booking = self.booking_repo.find_by_invitee_uri(self.db, payload["old_invitee"], for_update=True)
            if booking is not None:
                return self._apply_reschedule(booking, payload), booking

        booking = self._locate_booking(payload, no_show=record.event_kind == INVITEE_NO_SHOW)
        if booking is None:
            raise BookingNotFound("No booking matches this provider event")

        if record.event_kind == INVITEE_CREATED:
            event_uri = self._scheduled_event_uri(payload)
            outcome = self.bookings.apply_provider_confirmed(
                booking,
                invitee_uri=payload.get("uri"),
                event_uri=event_uri,
                event_id=_resource_id(event_uri),
            )
        elif record.event_kind == INVITEE_CANCELED:
            cancellation = payload.get("cancellation") or {}
            canceled_by = "builder" if cancellation.get("canceler_type") == "host" else "client"
            outcome = self.bookings.apply_canceled(
                booking, reason=cancellation.get("reason"), canceled_by=canceled_by
            )
        else:
            outcome = self.bookings.apply_no_show(booking)

        return outcome, booking

    def _apply_reschedule(self, booking: Booking, payload: dict) -> str:
        scheduled_event = self._scheduled_event(payload)
        start_time = scheduled_event.get("start_time")
        if not start_time:
            raise InvalidWebhookPayload("Rescheduled invitee has no scheduled_event.start_time")
        end_time = scheduled_event.get("end_time")
        event_uri = self._scheduled_event_uri(payload)
        return self.bookings.apply_rescheduled(
            booking,
            invitee_uri=payload.get("uri"),
            event_uri=event_uri,
            start_time=parse_iso(start_time),
            end_time=parse_iso(end_time) if end_time else None,
            event_id=_resource_id(event_uri),
        )

    def _apply_payment_event(self, record: WebhookEventRecord) -> tuple[str, Optional[Booking]]:
        data = (record.payload or {}).get("data") or {}

        if record.event_kind != PAYMENT_SUCCEEDED and record.event_kind not in PAYMENT_FAILED_EVENTS:
            logger.debug(f"Unhandled payment event type: {record.event_kind}")
            return OUTCOME_NOOP, None

        booking_id = (data.get("metadata") or {}).get("booking_id")
        if not booking_id:
            # Not one of ours (e.g. another product on the same account)
            logger.debug(f"Payment event {record.provider_event_id} carries no booking_id")
            return OUTCOME_NOOP, None

        booking = self.booking_repo.get_booking(self.db, booking_id, for_update=True)
        if booking is None:
            raise BookingNotFound(booking_id=booking_id)

        if record.event_kind == PAYMENT_SUCCEEDED:
            outcome = self.bookings.apply_payment_confirmed(booking, data.get("payment_id"))
        else:
            outcome = self.bookings.apply_payment_failed(booking)
        return outcome, booking

    @staticmethod
    def _scheduled_event(payload: dict) -> dict:
        scheduled_event = payload.get("scheduled_event")
        return scheduled_event if isinstance(scheduled_event, dict) else {}

    def _scheduled_event_uri(self, payload: dict) -> Optional[str]:
        event = payload.get("event")
        if isinstance(event, str):
            return event
        return self._scheduled_event(payload).get("uri")

    def _locate_booking(self, payload: dict, no_show: bool = False) -> Optional[Booking]:
        """
        Find the booking an event refers to, in order: invitee uri, scheduled
        event uri, booking id echoed through tracking, then the mapped event
        type plus start time.
        """
        if no_show:
            invitee_uri = payload.get("invitee")
            if not invitee_uri:
                return None
            return self.booking_repo.find_by_invitee_uri(self.db, invitee_uri, for_update=True)

        invitee_uri = payload.get("uri")
        if invitee_uri:
            booking = self.booking_repo.find_by_invitee_uri(self.db, invitee_uri, for_update=True)
            if booking:
                return booking

        event_uri = self._scheduled_event_uri(payload)
        if event_uri:
            booking = self.booking_repo.find_by_event_uri(self.db, event_uri, for_update=True)
            if booking:
                return booking

        booking_id = (payload.get("tracking") or {}).get("utm_content")
        if booking_id:
            booking = self.booking_repo.get_booking(self.db, booking_id, for_update=True)
            if booking:
                return booking

        scheduled_event = self._scheduled_event(payload)
        event_type_uri = scheduled_event.get("event_type")
        start_time = scheduled_event.get("start_time")
        if event_type_uri and start_time:
            try:
                start = to_db(parse_iso(start_time))
            except ValueError:
                logger.warning(f"⚠️ Unparseable start_time in webhook payload: {start_time}")
                return None
            session_type_ids = self.mappings.resolve_session_type_for_event_type(event_type_uri)
            return self.booking_repo.find_by_slot(self.db, session_type_ids, start, for_update=True)

        return None

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile_pending(self, limit: int = 100, max_attempts: int = WEBHOOK_MAX_ATTEMPTS) -> int:
        """Retry recorded events that could not be applied yet; returns how many got processed"""
        records = self.repo.get_unprocessed(self.db, max_attempts, limit)
        record_ids = [r.id for r in records]
        self.db.rollback()

        processed = 0
        for record_id in record_ids:
            result = self.process_record(record_id)
            if result.outcome != OUTCOME_FAILED:
                processed += 1

        if record_ids:
            logger.info(f"🔄 Reconciled {processed}/{len(record_ids)} pending webhook event(s)")
        return processed
