"""UTC helpers shared by the provider client, services and repositories"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return an aware UTC datetime. Naive values are assumed to already be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db(value: Optional[datetime]) -> Optional[datetime]:
    """Columns hold naive UTC timestamps"""
    if value is None:
        return None
    return as_utc(value).replace(tzinfo=None)


def parse_iso(value: str) -> datetime:
    """Parse an ISO 8601 timestamp as sent by the provider ("...Z" or with offset)"""
    return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def format_iso(value: datetime) -> str:
    """Provider-facing format: UTC with a trailing Z"""
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
