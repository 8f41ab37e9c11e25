"""
Scheduling provider contract

The booking layer talks to exactly one external scheduling provider, but only
through this interface, so Calendly can be swapped for another provider (or a
fake in tests) without touching the services.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional


@dataclass(frozen=True)
class ProviderAccount:
    uri: str
    name: Optional[str]
    email: Optional[str]
    scheduling_url: Optional[str]
    organization_uri: Optional[str]
    timezone: Optional[str] = None


@dataclass(frozen=True)
class ProviderEventType:
    id: str
    uri: str
    slug: Optional[str]
    name: str
    duration_minutes: int
    active: bool
    scheduling_url: Optional[str] = None


@dataclass(frozen=True)
class TimeSlot:
    """A bookable window as reported by the provider. Never cached: it can go stale at any moment."""

    start_time: datetime
    end_time: datetime
    scheduling_handle: Optional[str]
    remaining_capacity: int = 1


class SchedulingProvider(ABC):
    """Abstract scheduling provider"""

    @abstractmethod
    async def get_current_account(self) -> ProviderAccount:
        """Identity of the account our credentials belong to"""

    @abstractmethod
    def list_event_types(
        self, user_uri: Optional[str] = None, organization_uri: Optional[str] = None
    ) -> AsyncIterable[ProviderEventType]:
        """Lazy, restartable sequence of event types (pagination handled internally)"""

    @abstractmethod
    async def get_event_type(self, event_type_uri: str) -> ProviderEventType:
        """Single event type by URI"""

    @abstractmethod
    async def get_available_times(
        self,
        event_type_uri: str,
        start_time: datetime,
        end_time: datetime,
        duration_minutes: Optional[int] = None,
    ) -> list[TimeSlot]:
        """Available slots in [start_time, end_time], sorted by start time, no duplicate starts"""

    @abstractmethod
    async def create_webhook_subscription(
        self,
        url: str,
        events: list[str],
        organization_uri: str,
        scope: str = "organization",
        signing_key: Optional[str] = None,
        user_uri: Optional[str] = None,
    ) -> dict[str, Any]:
        """Register a webhook callback"""

    @abstractmethod
    async def delete_webhook_subscription(self, subscription_uri: str) -> None:
        """Remove a webhook callback"""

    def generate_scheduling_link(self, scheduling_url: str, prefill_data: Optional[dict] = None) -> str:
        """Link the invitee follows to finish booking; providers may prefill it"""
        return scheduling_url
