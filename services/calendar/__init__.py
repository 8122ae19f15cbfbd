"""
=====================================================
Dynamic AI Calling Platform - Calendar Services
=====================================================
"""

from config.settings import Settings
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
from .calcom_service import CalComService
from .internal_calendar import InternalCalendarService
from .provider_chain import CalendarProviderChain, AvailabilityCache, AvailabilityResult

__all__ = [
    'CalendarServiceBase',
    'CalendarProviderError',
    'CalendarNotConfigured',
    'AvailabilityQuery',
    'AvailabilitySlot',
    'BookingResult',
    'CustomerInfo',
    'SOURCE_EXTERNAL',
    'SOURCE_INTERNAL',
    'CalComService',
    'InternalCalendarService',
    'CalendarProviderChain',
    'AvailabilityCache',
    'AvailabilityResult',
    'create_internal_calendar',
    'create_calendar_chain',
]


def create_internal_calendar(settings: Settings) -> InternalCalendarService:
    """Internal slot store configured with the platform working hours"""
    return InternalCalendarService(
        day_start=settings.internal_calendar_day_start,
        day_end=settings.internal_calendar_day_end,
        slot_minutes=settings.internal_calendar_slot_minutes,
        workdays=settings.workdays,
    )


def create_calendar_chain(settings: Settings,
                          internal: InternalCalendarService = None) -> CalendarProviderChain:
    """
    Factory function to create the calendar provider chain from settings

    Args:
        settings: Application settings
        internal: Shared internal slot store (one is created if omitted)

    Returns:
        Chain of Cal.com -> internal calendar
    """
    external = CalComService(
        api_key=settings.calcom_api_key,
        base_url=settings.calcom_base_url,
        timeout=settings.calendar_timeout_seconds,
        enabled=settings.calcom_enabled,
    )
    return CalendarProviderChain(
        external=external,
        internal=internal or create_internal_calendar(settings),
        cache=AvailabilityCache(ttl_seconds=settings.availability_cache_ttl_seconds),
        timeout_seconds=settings.calendar_timeout_seconds,
        external_attempts=settings.calendar_external_attempts,
    )
