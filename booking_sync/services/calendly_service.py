import asyncio
import logging
import random
from collections.abc import AsyncIterator
from datetime import datetime, timedelta
from typing import Any, Optional

import httpx

from ..config import (
    CALENDLY_API_BASE_URL,
    CALENDLY_API_TOKEN,
    PROVIDER_BACKOFF_BASE_SECONDS,
    PROVIDER_MAX_QUERY_DAYS,
    PROVIDER_MAX_RETRIES,
    PROVIDER_TIMEOUT_SECONDS,
)
from ..errors import (
    InvalidDateRange,
    ProviderAuthError,
    ProviderRequestRejected,
    ProviderUnavailable,
)
from ..utils.timeutils import as_utc, format_iso, parse_iso, utcnow
from .scheduling_provider import (
    ProviderAccount,
    ProviderEventType,
    SchedulingProvider,
    TimeSlot,
)

logger = logging.getLogger(__name__)

# Calendly only answers availability questions for windows of at most 7 days
PROVIDER_WINDOW = timedelta(days=7)
# Calendly rejects start times in the past; leave room for request latency
START_TIME_BUFFER = timedelta(minutes=1)
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def resource_id(uri: str) -> str:
    """Calendly resources are addressed by URI; the id is the last path segment"""
    return uri.rstrip("/").split("/")[-1]


def event_type_from_resource(resource: dict[str, Any]) -> ProviderEventType:
    uri = resource["uri"]
    return ProviderEventType(
        id=resource_id(uri),
        uri=uri,
        slug=resource.get("slug"),
        name=resource.get("name") or "",
        duration_minutes=int(resource.get("duration") or 0),
        active=bool(resource.get("active", True)),
        scheduling_url=resource.get("scheduling_url"),
    )


def split_window(start: datetime, end: datetime, size: timedelta = PROVIDER_WINDOW):
    """Cut [start, end] into consecutive windows no longer than ``size``"""
    chunks = []
    cursor = start
    while cursor < end:
        chunk_end = min(cursor + size, end)
        chunks.append((cursor, chunk_end))
        cursor = chunk_end
    return chunks


class EventTypePager:
    """
    Lazy, restartable sequence of event types.

    Every ``async for`` starts again from the first page and follows
    ``pagination.next_page_token`` until the provider stops returning one.
    """

    def __init__(self, service: "CalendlyService", params: dict[str, Any]):
        self._service = service
        self._params = params

    def __aiter__(self) -> AsyncIterator[ProviderEventType]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ProviderEventType]:
        params = dict(self._params)
        if "user" not in params and "organization" not in params:
            account = await self._service.get_current_account()
            params["user"] = account.uri

        while True:
            data = await self._service._request("GET", "/event_types", params=params)
            for resource in data.get("collection", []):
                yield event_type_from_resource(resource)

            next_page_token = (data.get("pagination") or {}).get("next_page_token")
            if not next_page_token:
                break
            params["page_token"] = next_page_token

    async def to_list(self) -> list[ProviderEventType]:
        return [event_type async for event_type in self]


class CalendlyService(SchedulingProvider):
    """Service for interacting with Calendly API"""

    def __init__(
        self,
        access_token: Optional[str] = None,
        base_url: str = CALENDLY_API_BASE_URL,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
        max_retries: int = PROVIDER_MAX_RETRIES,
        backoff_base: float = PROVIDER_BACKOFF_BASE_SECONDS,
        max_query_days: int = PROVIDER_MAX_QUERY_DAYS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=asyncio.sleep,
    ):
        self.access_token = access_token or CALENDLY_API_TOKEN
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.max_query_days = max_query_days
        self._transport = transport
        self._sleep = sleep

        if not self.access_token:
            logger.warning("CALENDLY_API_TOKEN not set; provider calls will fail until configured")

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    def _backoff_delay(self, attempt: int, response: Optional[httpx.Response]) -> float:
        if response is not None and response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            if retry_after is not None:
                try:
                    return max(0.0, float(retry_after))
                except ValueError:
                    pass
        return self.backoff_base * (2**attempt) + random.uniform(0, self.backoff_base)

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Make an authenticated request to the Calendly API.

        Only GETs are retried (429, 5xx, network errors), with exponential
        backoff and jitter. Everything fails closed to ProviderUnavailable.
        """
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        attempts = self.max_retries + 1 if method == "GET" else 1
        last_error: Optional[Exception] = None

        for attempt in range(attempts):
            response = None
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    response = await client.request(
                        method, url, params=params, json=json, headers=self._headers()
                    )
            except httpx.TimeoutException as e:
                logger.warning(f"⏱️ Calendly {method} {path} timed out (attempt {attempt + 1}/{attempts})")
                last_error = e
            except httpx.TransportError as e:
                logger.warning(
                    f"⚠️ Calendly {method} {path} network error: {e} (attempt {attempt + 1}/{attempts})"
                )
                last_error = e
            else:
                if response.status_code in (401, 403):
                    logger.critical(
                        f"🔐 Calendly rejected credentials ({response.status_code}) for {method} {path} - rotate CALENDLY_API_TOKEN"
                    )
                    raise ProviderAuthError(
                        "Scheduling provider rejected our credentials", status=response.status_code
                    )

                if response.status_code in RETRYABLE_STATUS_CODES:
                    logger.warning(
                        f"⚠️ Calendly {method} {path} returned {response.status_code} (attempt {attempt + 1}/{attempts})"
                    )
                    last_error = httpx.HTTPStatusError(
                        f"Calendly returned {response.status_code}",
                        request=response.request,
                        response=response,
                    )
                elif response.status_code >= 400:
                    message = _error_message(response)
                    logger.error(f"❌ Calendly {method} {path} failed: {response.status_code} {message}")
                    raise ProviderRequestRejected(message, status=response.status_code)
                else:
                    if not response.content:
                        return {}
                    return response.json()

            if attempt < attempts - 1:
                delay = self._backoff_delay(attempt, response)
                logger.info(f"🔄 Retrying Calendly {method} {path} in {delay:.2f}s")
                await self._sleep(delay)

        logger.error(f"❌ Calendly {method} {path} unavailable after {attempts} attempt(s): {last_error}")
        raise ProviderUnavailable("Scheduling provider is temporarily unavailable") from last_error

    async def get_current_account(self) -> ProviderAccount:
        """Get current user information"""
        data = await self._request("GET", "/users/me")
        resource = data.get("resource") or {}
        return ProviderAccount(
            uri=resource["uri"],
            name=resource.get("name"),
            email=resource.get("email"),
            scheduling_url=resource.get("scheduling_url"),
            organization_uri=resource.get("current_organization"),
            timezone=resource.get("timezone"),
        )

    def list_event_types(
        self,
        user_uri: Optional[str] = None,
        organization_uri: Optional[str] = None,
        page_size: int = 100,
    ) -> EventTypePager:
        """List event types; scoped to the current user when no scope is given"""
        params: dict[str, Any] = {"count": page_size}
        if organization_uri:
            params["organization"] = organization_uri
        elif user_uri:
            params["user"] = user_uri
        return EventTypePager(self, params)

    async def get_event_type(self, event_type_uri: str) -> ProviderEventType:
        data = await self._request("GET", f"/event_types/{resource_id(event_type_uri)}")
        return event_type_from_resource(data["resource"])

    async def get_available_times(
        self,
        event_type_uri: str,
        start_time: datetime,
        end_time: datetime,
        duration_minutes: Optional[int] = None,
    ) -> list[TimeSlot]:
        """
        Get available times for an event type.

        Windows longer than the provider's 7-day limit are split and fetched
        concurrently; results are merged in time order with duplicate
        boundary slots removed.
        """
        start = as_utc(start_time)
        end = as_utc(end_time)
        now = utcnow()

        if end <= start:
            raise InvalidDateRange("End time must be after start time")
        if end <= now:
            raise InvalidDateRange("Requested window is entirely in the past")
        if end - start > timedelta(days=self.max_query_days):
            raise InvalidDateRange(f"Date range cannot exceed {self.max_query_days} days")

        earliest = now + START_TIME_BUFFER
        if start < earliest:
            start = earliest
        if start >= end:
            return []

        if duration_minutes is None:
            duration_minutes = (await self.get_event_type(event_type_uri)).duration_minutes

        chunks = split_window(start, end)
        tasks = [
            asyncio.ensure_future(
                self._fetch_available_chunk(event_type_uri, chunk_start, chunk_end, duration_minutes)
            )
            for chunk_start, chunk_end in chunks
        ]
        try:
            results = await asyncio.gather(*tasks)
        except BaseException:
            # One window failed (or we were cancelled): stop the sibling requests too
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        merged: dict[datetime, TimeSlot] = {}
        for chunk in results:
            for slot in chunk:
                merged.setdefault(slot.start_time, slot)

        slots = sorted(merged.values(), key=lambda s: s.start_time)
        logger.debug(f"📅 {len(slots)} slot(s) for {event_type_uri} across {len(chunks)} provider call(s)")
        return slots

    async def _fetch_available_chunk(
        self, event_type_uri: str, start: datetime, end: datetime, duration_minutes: int
    ) -> list[TimeSlot]:
        try:
            data = await self._request(
                "GET",
                "/event_type_available_times",
                params={
                    "event_type": event_type_uri,
                    "start_time": format_iso(start),
                    "end_time": format_iso(end),
                },
            )
        except ProviderRequestRejected as e:
            if e.details.get("status") == 400:
                raise InvalidDateRange(e.message) from e
            raise

        slots = []
        for item in data.get("collection", []):
            if item.get("status", "available") != "available":
                continue
            slot_start = parse_iso(item["start_time"])
            slots.append(
                TimeSlot(
                    start_time=slot_start,
                    end_time=slot_start + timedelta(minutes=duration_minutes),
                    scheduling_handle=item.get("scheduling_url"),
                    remaining_capacity=int(item.get("invitees_remaining", 1)),
                )
            )
        return slots

    async def create_webhook_subscription(
        self,
        url: str,
        events: list[str],
        organization_uri: str,
        scope: str = "organization",
        signing_key: Optional[str] = None,
        user_uri: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Create a webhook subscription

        Args:
            url: Our webhook endpoint URL
            events: Events to subscribe to (e.g., ['invitee.created', 'invitee.canceled'])
            organization_uri: Organization URI from user info
            scope: 'organization' or 'user'
            signing_key: Shared secret the provider signs deliveries with
            user_uri: Required when scope is 'user'
        """
        body: dict[str, Any] = {
            "url": url,
            "events": events,
            "organization": organization_uri,
            "scope": scope,
        }
        if signing_key:
            body["signing_key"] = signing_key
        if user_uri:
            body["user"] = user_uri

        data = await self._request("POST", "/webhook_subscriptions", json=body)
        return data.get("resource") or {}

    async def list_webhook_subscriptions(
        self, organization_uri: str, scope: str = "organization"
    ) -> list[dict[str, Any]]:
        """List all webhook subscriptions for an organization"""
        data = await self._request(
            "GET",
            "/webhook_subscriptions",
            params={"organization": organization_uri, "scope": scope},
        )
        return data.get("collection", [])

    async def delete_webhook_subscription(self, subscription_uri: str) -> None:
        """Delete a webhook subscription"""
        await self._request("DELETE", f"/webhook_subscriptions/{resource_id(subscription_uri)}")

    def generate_scheduling_link(self, scheduling_url: str, prefill_data: Optional[dict] = None) -> str:
        """
        Scheduling link with prefilled invitee data

        Args:
            scheduling_url: Provider scheduling URL (slot handle)
            prefill_data: Optional dict with 'name', 'email', 'booking_id'
        """
        if not prefill_data:
            return scheduling_url

        params = {}
        if prefill_data.get("name"):
            params["name"] = prefill_data["name"]
        if prefill_data.get("email"):
            params["email"] = prefill_data["email"]
        if prefill_data.get("booking_id"):
            # Echoed back as tracking.utm_content on the invitee webhook
            params["utm_content"] = prefill_data["booking_id"]

        if not params:
            return scheduling_url
        return str(httpx.URL(scheduling_url).copy_merge_params(params))


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return body.get("message") or body.get("title") or f"HTTP {response.status_code}"
    return f"HTTP {response.status_code}"


_calendly_service: Optional[CalendlyService] = None


def get_calendly_service() -> CalendlyService:
    """Process-wide client configured from the environment"""
    global _calendly_service
    if _calendly_service is None:
        _calendly_service = CalendlyService()
    return _calendly_service
