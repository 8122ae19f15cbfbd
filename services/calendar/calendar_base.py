"""
=====================================================
Dynamic AI Calling Platform - Calendar Service Interface
=====================================================
"""

from abc import ABC, abstractmethod
from typing import Optional, List
from dataclasses import dataclass, field
from datetime import date, datetime


SOURCE_EXTERNAL = "external"
SOURCE_INTERNAL = "internal"


class CalendarProviderError(Exception):
    """Transient provider failure (timeout, auth, connectivity, 5xx)"""


class CalendarNotConfigured(CalendarProviderError):
    """Provider has no credentials or no event type for this agent"""


@dataclass
class AvailabilitySlot:
    """Available time slot"""
    start_time: datetime
    end_time: Optional[datetime] = None
    source: str = SOURCE_INTERNAL
    slot_id: Optional[str] = None

    @property
    def formatted(self) -> str:
        """Spoken form, e.g. 'Friday, October 23 at 2:00 PM'"""
        hour = self.start_time.strftime("%I").lstrip("0") or "12"
        return f"{self.start_time.strftime('%A, %B')} {self.start_time.day} at {hour}:{self.start_time.strftime('%M %p')}"

    def to_dict(self) -> dict:
        return {
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "source": self.source,
            "slot_id": self.slot_id,
            "formatted": self.formatted,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AvailabilitySlot":
        end = data.get("end_time")
        return cls(
            start_time=datetime.fromisoformat(data["start_time"]),
            end_time=datetime.fromisoformat(end) if end else None,
            source=data.get("source", SOURCE_INTERNAL),
            slot_id=data.get("slot_id"),
        )


@dataclass
class CustomerInfo:
    """Who the appointment is for"""
    name: str = "Customer"
    phone: Optional[str] = None
    email: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class BookingResult:
    """Booking result"""
    success: bool
    booking_id: Optional[str] = None
    source: Optional[str] = None
    start_time: Optional[datetime] = None
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "booking_id": self.booking_id,
            "source": self.source,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "error": self.error_message,
        }


@dataclass
class AvailabilityQuery:
    """What the caller asked about"""
    agent_id: str
    day: date
    time: Optional[str] = None  # "HH:MM" 24h, optional
    duration_minutes: int = 30
    event_type_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    def requested_start(self) -> Optional[datetime]:
        if not self.time:
            return None
        hour, minute = (int(part) for part in self.time.split(":")[:2])
        return datetime(self.day.year, self.day.month, self.day.day, hour, minute)


class CalendarServiceBase(ABC):
    """
    Abstract base for calendar/booking providers

    Business negatives (no slots, slot taken) are returned as values;
    CalendarProviderError signals a transient failure worth falling back on.
    """

    source: str = SOURCE_INTERNAL

    @abstractmethod
    async def is_available(self, event_type_id: Optional[str] = None) -> bool:
        """Check if the provider is configured for this event type"""
        pass

    @abstractmethod
    async def get_available_slots(self, query: AvailabilityQuery) -> List[AvailabilitySlot]:
        """
        Get available time slots on the queried day

        Args:
            query: Day, optional time, duration and event type

        Returns:
            Slots on that day (empty when genuinely booked out)

        Raises:
            CalendarProviderError: On transient failure
        """
        pass

    @abstractmethod
    async def create_booking(self, agent_id: str, slot: AvailabilitySlot,
                             customer: CustomerInfo,
                             event_type_id: Optional[str] = None) -> BookingResult:
        """
        Create a new booking

        Args:
            agent_id: Agent the calendar belongs to
            slot: Slot to book
            customer: Customer details
            event_type_id: External event type, if any

        Returns:
            BookingResult with success status

        Raises:
            CalendarProviderError: On transient failure
        """
        pass
