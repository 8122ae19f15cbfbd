"""
=====================================================
Dynamic AI Calling Platform - Cal.com Scheduling Service
=====================================================
External scheduling provider, reached over the Cal.com REST API with httpx.
"""

import httpx
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any
from zoneinfo import ZoneInfo
from loguru import logger

from .calendar_base import (
    CalendarServiceBase,
    CalendarProviderError,
    CalendarNotConfigured,
    AvailabilityQuery,
    AvailabilitySlot,
    BookingResult,
    CustomerInfo,
    SOURCE_EXTERNAL,
)


# Booking responses that mean "the slot can't be had", not "the service is down"
BUSINESS_NEGATIVE_STATUSES = {400, 409, 422}


class CalComService(CalendarServiceBase):
    """
    Cal.com integration

    Provides:
    - Availability via GET /slots
    - Booking via POST /bookings
    """

    source = SOURCE_EXTERNAL

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.cal.com/v1",
        default_event_type_id: Optional[str] = None,
        timezone: str = "UTC",
        timeout: float = 8.0,
        enabled: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Cal.com service

        Args:
            api_key: Cal.com API key
            base_url: API base URL
            default_event_type_id: Event type used when the agent has none
            timezone: Timezone slots are spoken in
            timeout: HTTP timeout in seconds
            enabled: Integration switch
            transport: Optional httpx transport (tests)
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.default_event_type_id = default_event_type_id
        self.timezone = timezone
        self.timeout = timeout
        self.enabled = enabled
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def is_available(self, event_type_id: Optional[str] = None) -> bool:
        """Check if the service is configured and enabled for this event type"""
        return bool(self.enabled and self.api_key and (event_type_id or self.default_event_type_id))

    async def _get_client(self) -> httpx.AsyncClient:
        """Get HTTP client"""
        if self._http_client is None or self._http_client.is_closed:
            kwargs: Dict[str, Any] = {"base_url": self.base_url, "timeout": self.timeout}
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._http_client = httpx.AsyncClient(**kwargs)
        return self._http_client

    async def _request(self, method: str, endpoint: str,
                       params: Dict = None, json_data: Dict = None) -> httpx.Response:
        """
        Make an authenticated request

        Raises:
            CalendarProviderError: On timeout, transport error, auth failure or 5xx
        """
        client = await self._get_client()
        query = {"apiKey": self.api_key, **(params or {})}

        try:
            response = await client.request(method, endpoint, params=query, json=json_data)
        except httpx.TimeoutException as e:
            logger.error(f"Cal.com: {method} {endpoint} timed out")
            raise CalendarProviderError(f"Cal.com timeout: {e}") from e
        except httpx.TransportError as e:
            logger.error(f"Cal.com: {method} {endpoint} transport error: {e}")
            raise CalendarProviderError(f"Cal.com unreachable: {e}") from e

        if response.status_code in (401, 403):
            logger.error(f"Cal.com: Authentication failed ({response.status_code})")
            raise CalendarProviderError("Cal.com authentication failed")
        if response.status_code >= 500:
            logger.error(f"Cal.com: Server error {response.status_code}")
            raise CalendarProviderError(f"Cal.com server error {response.status_code}")

        return response

    def _localize(self, value: str) -> datetime:
        """Parse an ISO timestamp into naive local time"""
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(ZoneInfo(self.timezone)).replace(tzinfo=None)
        return parsed

    async def get_available_slots(self, query: AvailabilityQuery) -> List[AvailabilitySlot]:
        event_type_id = query.event_type_id or self.default_event_type_id
        if not await self.is_available(event_type_id):
            raise CalendarNotConfigured("Cal.com API key not configured or integration not enabled")

        start = datetime(query.day.year, query.day.month, query.day.day)
        end = start + timedelta(days=1)

        logger.info(f"Cal.com: Fetching slots for event type {event_type_id} on {query.day.isoformat()}")

        response = await self._request("GET", "/slots", params={
            "eventTypeId": event_type_id,
            "startTime": start.isoformat(),
            "endTime": end.isoformat(),
            "timeZone": self.timezone,
            "duration": query.duration_minutes,
        })

        if response.status_code != 200:
            raise CalendarProviderError(f"Cal.com slots request failed ({response.status_code})")

        try:
            data = response.json()
        except ValueError as e:
            raise CalendarProviderError("Cal.com returned invalid JSON") from e

        slots = []
        for day_slots in (data.get("slots") or {}).values():
            for item in day_slots:
                start_time = self._localize(item["time"])
                slots.append(AvailabilitySlot(
                    start_time=start_time,
                    end_time=start_time + timedelta(minutes=query.duration_minutes),
                    source=SOURCE_EXTERNAL,
                ))

        slots.sort(key=lambda s: s.start_time)
        logger.info(f"Cal.com: {len(slots)} slots fetched for {query.day.isoformat()}")
        return slots

    async def create_booking(self, agent_id: str, slot: AvailabilitySlot,
                             customer: CustomerInfo,
                             event_type_id: Optional[str] = None) -> BookingResult:
        event_type_id = event_type_id or self.default_event_type_id
        if not await self.is_available(event_type_id):
            raise CalendarNotConfigured("Cal.com API key not configured or integration not enabled")

        end_time = slot.end_time or slot.start_time + timedelta(minutes=30)
        tz = ZoneInfo(self.timezone)
        payload = {
            "eventTypeId": int(event_type_id) if str(event_type_id).isdigit() else event_type_id,
            "start": slot.start_time.replace(tzinfo=tz).isoformat(),
            "end": end_time.replace(tzinfo=tz).isoformat(),
            "timeZone": self.timezone,
            "language": "en",
            "metadata": {"agentId": agent_id},
            "responses": {
                "name": customer.name,
                "email": customer.email or "customer@example.com",
                "phone": customer.phone,
                "notes": customer.notes or "Booked via AI assistant",
            },
        }

        logger.info(f"Cal.com: Creating booking for event type {event_type_id} at {slot.start_time.isoformat()}")

        response = await self._request("POST", "/bookings", json_data=payload)

        if response.status_code in BUSINESS_NEGATIVE_STATUSES:
            try:
                message = response.json().get("message", "Time slot not available")
            except ValueError:
                message = "Time slot not available"
            logger.info(f"Cal.com: Booking rejected ({response.status_code}): {message}")
            return BookingResult(
                success=False,
                source=SOURCE_EXTERNAL,
                start_time=slot.start_time,
                error_message=message,
            )

        if response.status_code not in (200, 201):
            raise CalendarProviderError(f"Cal.com booking failed ({response.status_code})")

        booking = response.json()
        booking_id = str(booking.get("id") or booking.get("uid") or "")
        logger.info(f"Cal.com: Booking created {booking_id}")

        return BookingResult(
            success=True,
            booking_id=booking_id,
            source=SOURCE_EXTERNAL,
            start_time=slot.start_time,
        )

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
