"""
=====================================================
Dynamic AI Calling Platform - Internal Calendar
=====================================================
Fallback slot store: slots are generated from working hours and
bookings are kept in process memory per agent.
"""

import asyncio
import uuid
from datetime import datetime, time, timedelta
from typing import Callable, Dict, List, Optional
from loguru import logger

from .calendar_base import (
    CalendarServiceBase,
    AvailabilityQuery,
    AvailabilitySlot,
    BookingResult,
    CustomerInfo,
    SOURCE_INTERNAL,
)


def _parse_clock(value: str) -> time:
    hour, minute = (int(part) for part in value.split(":")[:2])
    return time(hour, minute)


class InternalCalendarService(CalendarServiceBase):
    """
    Working-hours slot generator with an in-memory booking ledger

    - Slots: [day_start, day_end) in `slot_minutes` steps on working weekdays
    - Past slots are never offered
    - Booking is atomic per store; an already-taken start is a business negative
    """

    source = SOURCE_INTERNAL

    def __init__(
        self,
        day_start: str = "09:00",
        day_end: str = "17:00",
        slot_minutes: int = 30,
        workdays: Optional[List[int]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.day_start = _parse_clock(day_start)
        self.day_end = _parse_clock(day_end)
        self.slot_minutes = slot_minutes
        self.workdays = workdays if workdays is not None else [0, 1, 2, 3, 4]
        self._clock = clock
        # agent_id -> start_time -> booking record
        self._bookings: Dict[str, Dict[datetime, dict]] = {}
        self._lock = asyncio.Lock()

    async def is_available(self, event_type_id: Optional[str] = None) -> bool:
        return True

    def _day_slots(self, agent_id: str, query: AvailabilityQuery) -> List[AvailabilitySlot]:
        if query.day.weekday() not in self.workdays:
            return []

        booked = self._bookings.get(agent_id, {})
        now = self._clock()
        step = timedelta(minutes=self.slot_minutes)
        duration = timedelta(minutes=query.duration_minutes or self.slot_minutes)

        current = datetime.combine(query.day, self.day_start)
        close = datetime.combine(query.day, self.day_end)

        slots = []
        while current + duration <= close:
            if current > now and current not in booked:
                slots.append(AvailabilitySlot(
                    start_time=current,
                    end_time=current + duration,
                    source=SOURCE_INTERNAL,
                    slot_id=f"{agent_id}:{current.isoformat()}",
                ))
            current += step
        return slots

    async def get_available_slots(self, query: AvailabilityQuery) -> List[AvailabilitySlot]:
        slots = self._day_slots(query.agent_id, query)
        logger.info(f"Internal calendar: {len(slots)} slots for agent {query.agent_id} on {query.day.isoformat()}")
        return slots

    async def create_booking(self, agent_id: str, slot: AvailabilitySlot,
                             customer: CustomerInfo,
                             event_type_id: Optional[str] = None) -> BookingResult:
        async with self._lock:
            query = AvailabilityQuery(
                agent_id=agent_id,
                day=slot.start_time.date(),
                duration_minutes=self.slot_minutes,
            )
            free_starts = {s.start_time for s in self._day_slots(agent_id, query)}

            if slot.start_time not in free_starts:
                logger.info(f"Internal calendar: Slot {slot.start_time.isoformat()} not available for agent {agent_id}")
                return BookingResult(
                    success=False,
                    source=SOURCE_INTERNAL,
                    start_time=slot.start_time,
                    error_message="Time slot not available",
                )

            booking_id = str(uuid.uuid4())
            self._bookings.setdefault(agent_id, {})[slot.start_time] = {
                "booking_id": booking_id,
                "customer_name": customer.name,
                "customer_phone": customer.phone,
                "customer_email": customer.email,
                "created_at": self._clock().isoformat(),
            }

        logger.info(f"Internal calendar: Booked {slot.start_time.isoformat()} for agent {agent_id} ({booking_id})")
        return BookingResult(
            success=True,
            booking_id=booking_id,
            source=SOURCE_INTERNAL,
            start_time=slot.start_time,
        )

    def get_bookings(self, agent_id: str) -> List[dict]:
        """Bookings held for an agent, ordered by start time"""
        return [
            {"start_time": start.isoformat(), **record}
            for start, record in sorted(self._bookings.get(agent_id, {}).items())
        ]
