"""Booking repository - Database operations for bookings"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models import (
    BOOKING_CONFIRMED,
    LIVE_BOOKING_STATUSES,
    PAYMENT_REFUND_PENDING,
    Booking,
)


class BookingRepository:
    """Repository for booking database operations"""

    @staticmethod
    def get_booking(db: Session, booking_id: str, for_update: bool = False) -> Optional[Booking]:
        query = db.query(Booking).filter(Booking.id == booking_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    @staticmethod
    def create_booking(db: Session, **booking_data) -> Booking:
        """Insert a booking; the live-slot unique index raises IntegrityError on a double booking"""
        booking = Booking(**booking_data)
        db.add(booking)
        db.commit()
        db.refresh(booking)
        return booking

    @staticmethod
    def save(db: Session, booking: Booking) -> Booking:
        db.commit()
        db.refresh(booking)
        return booking

    @staticmethod
    def list_for_builder(db: Session, builder_id: str) -> list[Booking]:
        return (
            db.query(Booking)
            .filter(Booking.builder_id == builder_id)
            .order_by(Booking.start_time.desc())
            .all()
        )

    @staticmethod
    def list_for_client(db: Session, client_user_id: str) -> list[Booking]:
        return (
            db.query(Booking)
            .filter(Booking.client_user_id == client_user_id)
            .order_by(Booking.start_time.desc())
            .all()
        )

    @staticmethod
    def find_by_invitee_uri(db: Session, invitee_uri: str, for_update: bool = False) -> Optional[Booking]:
        query = db.query(Booking).filter(Booking.provider_invitee_uri == invitee_uri)
        if for_update:
            query = query.with_for_update()
        return query.first()

    @staticmethod
    def find_by_event_uri(db: Session, event_uri: str, for_update: bool = False) -> Optional[Booking]:
        query = db.query(Booking).filter(Booking.provider_event_uri == event_uri)
        if for_update:
            query = query.with_for_update()
        return query.order_by(Booking.created_at.desc()).first()

    @staticmethod
    def find_by_slot(
        db: Session, session_type_ids: list[str], start_time: datetime, for_update: bool = False
    ) -> Optional[Booking]:
        """Booking holding a slot; live bookings win over released ones"""
        if not session_type_ids:
            return None
        query = db.query(Booking).filter(
            Booking.session_type_id.in_(session_type_ids),
            Booking.start_time == start_time,
        )
        if for_update:
            query = query.with_for_update()
        bookings = query.order_by(Booking.created_at.desc()).all()
        live = [b for b in bookings if b.status in LIVE_BOOKING_STATUSES]
        return (live or bookings or [None])[0]

    @staticmethod
    def get_elapsed_confirmed(db: Session, now: datetime, limit: int = 500) -> list[Booking]:
        return (
            db.query(Booking)
            .filter(Booking.status == BOOKING_CONFIRMED, Booking.end_time <= now)
            .order_by(Booking.end_time)
            .limit(limit)
            .with_for_update(skip_locked=True)
            .all()
        )

    @staticmethod
    def get_refund_pending(db: Session, limit: int = 50) -> list[Booking]:
        return (
            db.query(Booking)
            .filter(Booking.payment_status == PAYMENT_REFUND_PENDING)
            .order_by(Booking.canceled_at)
            .limit(limit)
            .all()
        )
