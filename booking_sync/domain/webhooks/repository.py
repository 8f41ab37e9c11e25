"""Webhook repository - event receipts and webhook subscriptions"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models import WebhookEventRecord, WebhookSubscription

SUBSCRIPTION_ACTIVE = "active"
SUBSCRIPTION_REPLACED = "replaced"


class WebhookEventRepository:
    """Repository for webhook receipt database operations"""

    @staticmethod
    def get_record(db: Session, provider_event_id: str, event_kind: str) -> Optional[WebhookEventRecord]:
        return (
            db.query(WebhookEventRecord)
            .filter(
                WebhookEventRecord.provider_event_id == provider_event_id,
                WebhookEventRecord.event_kind == event_kind,
            )
            .first()
        )

    @staticmethod
    def get_record_for_update(db: Session, record_id: int) -> Optional[WebhookEventRecord]:
        return (
            db.query(WebhookEventRecord)
            .filter(WebhookEventRecord.id == record_id)
            .with_for_update()
            .first()
        )

    @staticmethod
    def create_record(db: Session, **record_data) -> WebhookEventRecord:
        """Durable receipt; the (provider_event_id, event_kind) constraint rejects a second copy"""
        record = WebhookEventRecord(**record_data)
        db.add(record)
        db.commit()
        db.refresh(record)
        return record

    @staticmethod
    def get_unprocessed(db: Session, max_attempts: int, limit: int = 100) -> list[WebhookEventRecord]:
        return (
            db.query(WebhookEventRecord)
            .filter(
                WebhookEventRecord.processed_at.is_(None),
                WebhookEventRecord.attempts < max_attempts,
            )
            .order_by(WebhookEventRecord.received_at)
            .limit(limit)
            .all()
        )


class WebhookSubscriptionRepository:
    """Repository for webhook subscription database operations"""

    @staticmethod
    def get_active(db: Session) -> Optional[WebhookSubscription]:
        return (
            db.query(WebhookSubscription)
            .filter(WebhookSubscription.state == SUBSCRIPTION_ACTIVE)
            .order_by(WebhookSubscription.created_at.desc(), WebhookSubscription.id.desc())
            .first()
        )

    @staticmethod
    def create(db: Session, **subscription_data) -> WebhookSubscription:
        """Store a new active subscription, retiring any previous one"""
        db.query(WebhookSubscription).filter(WebhookSubscription.state == SUBSCRIPTION_ACTIVE).update(
            {WebhookSubscription.state: SUBSCRIPTION_REPLACED}, synchronize_session=False
        )
        subscription = WebhookSubscription(state=SUBSCRIPTION_ACTIVE, **subscription_data)
        db.add(subscription)
        db.commit()
        db.refresh(subscription)
        return subscription

    @staticmethod
    def save(db: Session, subscription: WebhookSubscription) -> WebhookSubscription:
        db.commit()
        db.refresh(subscription)
        return subscription

    @staticmethod
    def get_rotated_before(db: Session, cutoff: datetime) -> list[WebhookSubscription]:
        return (
            db.query(WebhookSubscription)
            .filter(
                WebhookSubscription.previous_signing_secret.isnot(None),
                WebhookSubscription.rotated_at <= cutoff,
            )
            .all()
        )
