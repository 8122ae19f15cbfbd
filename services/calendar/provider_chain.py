"""
=====================================================
Dynamic AI Calling Platform - Calendar Provider Chain
=====================================================
External scheduling service first, internal slot store second.

The chain is an ordered list of provider attempts folded left to right:
a transient failure (CalendarProviderError, timeout) moves on to the next
provider, a value (even an empty slot list or a rejected booking) stops
the fold.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Dict, List, Optional, Tuple
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
    SOURCE_INTERNAL,
)


@dataclass
class AvailabilityResult:
    """Slots plus where they came from"""
    slots: List[AvailabilitySlot] = field(default_factory=list)
    source: str = SOURCE_INTERNAL
    cached: bool = False

    @property
    def available(self) -> bool:
        return bool(self.slots)


CacheKey = Tuple[str, str, date]


class AvailabilityCache:
    """
    Time-boxed cache of successful external availability checks

    Keys are independent; entries are never invalidated on booking,
    only by age.
    """

    def __init__(self, ttl_seconds: float = 900, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[CacheKey, Tuple[float, List[AvailabilitySlot]]] = {}

    def get(self, key: CacheKey) -> Optional[List[AvailabilitySlot]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, slots = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            self._entries.pop(key, None)
            return None
        return list(slots)

    def put(self, key: CacheKey, slots: List[AvailabilitySlot]) -> None:
        self._entries[key] = (self._clock(), list(slots))

    def cleanup_expired(self) -> int:
        now = self._clock()
        expired = [k for k, (stored_at, _) in self._entries.items() if now - stored_at >= self.ttl_seconds]
        for key in expired:
            self._entries.pop(key, None)
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class CalendarProviderChain:
    """
    Provider fallback for calendar functions

    - check_availability: external (retried `external_attempts` times on
      transient failure, result cached) -> internal
    - book_appointment: external once -> internal on transient failure only;
      a rejected booking is returned as-is
    """

    def __init__(
        self,
        external: Optional[CalendarServiceBase],
        internal: CalendarServiceBase,
        cache: Optional[AvailabilityCache] = None,
        timeout_seconds: float = 3.0,
        external_attempts: int = 2,
    ):
        self.external = external
        self.internal = internal
        self.cache = cache or AvailabilityCache()
        self.timeout_seconds = timeout_seconds
        self.external_attempts = max(1, external_attempts)

    @property
    def worst_case_seconds(self) -> float:
        """Longest a chain call can run: every external attempt, then the internal store"""
        return self.timeout_seconds * (self.external_attempts + 1)

    def _providers(self, provider_hint: Optional[str]) -> List[CalendarServiceBase]:
        if provider_hint == SOURCE_INTERNAL or self.external is None:
            return [self.internal]
        return [self.external, self.internal]

    async def _query_external(self, query: AvailabilityQuery) -> List[AvailabilitySlot]:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.external_attempts + 1):
            try:
                return await asyncio.wait_for(
                    self.external.get_available_slots(query), timeout=self.timeout_seconds
                )
            except CalendarNotConfigured:
                raise
            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(f"Calendar chain: External availability timed out (attempt {attempt})")
            except CalendarProviderError as e:
                last_error = e
                logger.warning(f"Calendar chain: External availability failed (attempt {attempt}): {e}")
        raise CalendarProviderError(f"External provider failed after {self.external_attempts} attempts: {last_error}")

    async def check_availability(self, query: AvailabilityQuery,
                                 provider_hint: Optional[str] = None) -> AvailabilityResult:
        """
        Find slots on the queried day

        Args:
            query: Day/time/duration and event type
            provider_hint: 'internal' to skip the external provider

        Returns:
            AvailabilityResult tagged with the source that answered

        Raises:
            CalendarProviderError: If every provider failed
        """
        last_error: Optional[Exception] = None

        for provider in self._providers(provider_hint):
            if provider is self.external:
                if not await provider.is_available(query.event_type_id):
                    logger.info("Calendar chain: External provider not configured, using internal")
                    continue

                key = (query.agent_id, str(query.event_type_id or ""), query.day)
                cached = self.cache.get(key)
                if cached is not None:
                    logger.info(f"Calendar chain: Cache hit for agent {query.agent_id} on {query.day.isoformat()}")
                    return AvailabilityResult(slots=cached, source=SOURCE_EXTERNAL, cached=True)

                try:
                    slots = await self._query_external(query)
                except CalendarProviderError as e:
                    last_error = e
                    logger.warning(f"Calendar chain: Falling back to internal calendar: {e}")
                    continue

                self.cache.put(key, slots)
                return AvailabilityResult(slots=slots, source=SOURCE_EXTERNAL)

            try:
                slots = await asyncio.wait_for(provider.get_available_slots(query), timeout=self.timeout_seconds)
            except (asyncio.TimeoutError, CalendarProviderError) as e:
                last_error = e
                logger.error(f"Calendar chain: Internal calendar failed: {e}")
                continue
            return AvailabilityResult(slots=slots, source=provider.source)

        raise CalendarProviderError(f"All calendar providers failed: {last_error}")

    async def book_appointment(self, agent_id: str, slot: AvailabilitySlot,
                               customer: CustomerInfo,
                               event_type_id: Optional[str] = None,
                               provider_hint: Optional[str] = None) -> BookingResult:
        """
        Book a slot

        A slot offered by the internal calendar is booked there directly.
        Business negatives stop the chain: the fallback provider is only
        consulted after a transient external failure.

        Raises:
            CalendarProviderError: If every provider failed transiently
        """
        hint = SOURCE_INTERNAL if slot.source == SOURCE_INTERNAL else provider_hint
        last_error: Optional[Exception] = None

        for provider in self._providers(hint):
            if provider is self.external and not await provider.is_available(event_type_id):
                continue
            try:
                return await asyncio.wait_for(
                    provider.create_booking(agent_id, slot, customer, event_type_id),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError as e:
                last_error = e
                logger.warning(f"Calendar chain: {provider.source} booking timed out")
            except CalendarProviderError as e:
                last_error = e
                logger.warning(f"Calendar chain: {provider.source} booking failed: {e}")

        raise CalendarProviderError(f"All calendar providers failed to book: {last_error}")
