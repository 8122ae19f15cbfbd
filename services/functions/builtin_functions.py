"""
=====================================================
Dynamic AI Calling Platform - Built-in Functions
=====================================================
Functions every agent can call: calendar lookup and booking, SMS,
clock helpers and end_call.
"""

import re
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from loguru import logger

from services.calendar import (
    CalendarProviderChain,
    CalendarProviderError,
    AvailabilityQuery,
    AvailabilitySlot,
    CustomerInfo,
    SOURCE_EXTERNAL,
)
from services.sms.telnyx_sms_service import TelnyxSMSService, SMSTransientError
from .function_base import (
    FunctionDescriptor,
    FunctionContext,
    FunctionResult,
    TransientFunctionError,
)


MAX_OFFERED_SLOTS = 5

# Headroom over the chain budget so the executor never cancels a fallback in flight
CHAIN_SLACK_SECONDS = 1.0

_TIME_RE = re.compile(r'^\s*(\d{1,2})(?::(\d{2}))?\s*(am|pm)?\s*$', re.IGNORECASE)


def parse_day(value: Optional[str], today: Optional[date] = None) -> Optional[date]:
    """Accept YYYY-MM-DD, 'today' or 'tomorrow'"""
    if not value:
        return None
    today = today or date.today()
    text = value.strip().lower()
    if text == "today":
        return today
    if text == "tomorrow":
        return today + timedelta(days=1)
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def parse_clock(value: Optional[str]) -> Optional[str]:
    """Normalize '2pm', '14:00', '2:30 PM' to 'HH:MM'"""
    if not value:
        return None
    match = _TIME_RE.match(value)
    if not match:
        return None
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    meridiem = (match.group(3) or "").lower()
    if meridiem == "pm" and hour < 12:
        hour += 12
    elif meridiem == "am" and hour == 12:
        hour = 0
    if hour > 23 or minute > 59:
        return None
    return f"{hour:02d}:{minute:02d}"


def _split_date_time(args: Dict[str, Any]):
    """Support either date+time or a combined 'YYYY-MM-DD HH:MM' value"""
    day_value = args.get("date")
    time_value = args.get("time")
    combined = args.get("date_time") or args.get("start_time")
    if combined and not day_value:
        parts = str(combined).replace("T", " ").split()
        day_value = parts[0]
        if len(parts) > 1 and not time_value:
            time_value = parts[1][:5]
    return day_value, time_value


def _zone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Functions: Unknown timezone '{name}', using UTC")
        return ZoneInfo("UTC")


class CheckAvailabilityFunction(FunctionDescriptor):
    """Look up open slots for a day, optionally testing a specific time"""

    name = "check_availability"
    description = (
        "Check which appointment slots are free on a given date. Call this FIRST when the "
        "caller wants to book, before book_appointment."
    )
    parameters = {
        "type": "object",
        "properties": {
            "date": {
                "type": "string",
                "description": "Requested date in YYYY-MM-DD format. Calculate it from today's date."
            },
            "time": {
                "type": "string",
                "description": "Requested time in HH:MM 24-hour format, if the caller named one"
            },
            "duration_minutes": {
                "type": "integer",
                "description": "Appointment length in minutes (default 30)"
            }
        },
        "required": ["date"]
    }

    def __init__(self, chain: CalendarProviderChain, name: Optional[str] = None,
                 event_type_id: Optional[str] = None):
        self.chain = chain
        self.timeout_seconds = chain.worst_case_seconds + CHAIN_SLACK_SECONDS
        # The chain already retries the external provider
        self.max_retries = 1
        if name:
            self.name = name
        self.event_type_id = event_type_id

    async def invoke(self, args: Dict[str, Any], context: FunctionContext) -> FunctionResult:
        day_value, time_value = _split_date_time(args)
        day = parse_day(day_value)
        if day is None:
            return FunctionResult(success=False, error="A valid date (YYYY-MM-DD) is required")

        clock = parse_clock(time_value) if time_value else None
        query = AvailabilityQuery(
            agent_id=context.agent_id or "default",
            day=day,
            time=clock,
            duration_minutes=int(args.get("duration_minutes") or 30),
            event_type_id=self.event_type_id or context.calendar_event_type_id,
        )

        try:
            result = await self.chain.check_availability(query, provider_hint=context.calendar_provider_override)
        except CalendarProviderError as e:
            raise TransientFunctionError(str(e)) from e

        slots: List[AvailabilitySlot] = list(result.slots)
        requested = query.requested_start()
        requested_available = None
        if requested is not None:
            match = next((s for s in slots if s.start_time == requested), None)
            requested_available = match is not None
            if match is not None:
                slots.remove(match)
                slots.insert(0, match)
            else:
                # Offer the closest alternatives first
                slots.sort(key=lambda s: abs((s.start_time - requested).total_seconds()))

        offered = slots[:MAX_OFFERED_SLOTS]
        logger.info(
            f"Functions: check_availability {day.isoformat()} {clock or ''} -> "
            f"{len(result.slots)} slots from {result.source}{' (cached)' if result.cached else ''}"
        )
        return FunctionResult(success=True, data={
            "date": day.isoformat(),
            "time": clock,
            "available": bool(offered),
            "requested_time_available": requested_available,
            "source": result.source,
            "cached": result.cached,
            "slots": [s.to_dict() for s in offered],
        })


class BookAppointmentFunction(FunctionDescriptor):
    """Book a slot, preferring one previously offered by check_availability"""

    name = "book_appointment"
    description = (
        "Book the appointment AFTER the caller has explicitly confirmed a time offered by "
        "check_availability."
    )
    parameters = {
        "type": "object",
        "properties": {
            "date": {"type": "string", "description": "Appointment date in YYYY-MM-DD format"},
            "time": {"type": "string", "description": "Appointment time in HH:MM 24-hour format"},
            "customer_name": {"type": "string", "description": "Name the booking is for"},
            "customer_email": {"type": "string", "description": "Customer email, if given"},
            "notes": {"type": "string", "description": "Anything the caller wants noted"}
        },
        "required": []
    }

    def __init__(self, chain: CalendarProviderChain, name: Optional[str] = None,
                 event_type_id: Optional[str] = None):
        self.chain = chain
        self.timeout_seconds = chain.worst_case_seconds + CHAIN_SLACK_SECONDS
        # The chain already retries the external provider
        self.max_retries = 1
        if name:
            self.name = name
        self.event_type_id = event_type_id

    def _select_slot(self, args: Dict[str, Any], context: FunctionContext) -> Optional[AvailabilitySlot]:
        day_value, time_value = _split_date_time(args)
        day = parse_day(day_value)
        clock = parse_clock(time_value) if time_value else None
        pending = list(context.pending_slots or [])

        if day is None and clock is None:
            return pending[0] if pending else None

        for slot in pending:
            if day is not None and slot.start_time.date() != day:
                continue
            if clock is not None and slot.start_time.strftime("%H:%M") != clock:
                continue
            return slot

        if day is None or clock is None:
            return pending[0] if pending else None

        hour, minute = (int(part) for part in clock.split(":"))
        start = datetime(day.year, day.month, day.day, hour, minute)
        return AvailabilitySlot(start_time=start, source=SOURCE_EXTERNAL)

    async def invoke(self, args: Dict[str, Any], context: FunctionContext) -> FunctionResult:
        slot = self._select_slot(args, context)
        if slot is None:
            return FunctionResult(
                success=False,
                error="No time selected. Check availability first and confirm a time with the caller.",
            )

        customer = CustomerInfo(
            name=args.get("customer_name") or context.customer_name or "Customer",
            phone=context.customer_phone,
            email=args.get("customer_email") or context.customer_email,
            notes=args.get("notes"),
        )

        try:
            booking = await self.chain.book_appointment(
                context.agent_id or "default",
                slot,
                customer,
                event_type_id=self.event_type_id or context.calendar_event_type_id,
                provider_hint=context.calendar_provider_override,
            )
        except CalendarProviderError as e:
            raise TransientFunctionError(str(e)) from e

        data = booking.to_dict()
        data["formatted"] = slot.formatted
        data["customer_name"] = customer.name
        if not booking.success:
            logger.info(f"Functions: Booking rejected for {slot.start_time.isoformat()}: {booking.error_message}")
            return FunctionResult(success=False, error=booking.error_message or "Booking failed", data=data)

        logger.info(f"Functions: Booked {slot.start_time.isoformat()} via {booking.source} ({booking.booking_id})")
        return FunctionResult(success=True, data=data)


class SendSMSFunction(FunctionDescriptor):
    """Text the caller (or a given number)"""

    name = "send_sms"
    description = "Send a text message to the caller, e.g. a booking confirmation."
    parameters = {
        "type": "object",
        "properties": {
            "message": {"type": "string", "description": "Text to send"},
            "to": {"type": "string", "description": "Destination number in E.164 format; defaults to the caller"}
        },
        "required": ["message"]
    }

    def __init__(self, sms: TelnyxSMSService):
        self.sms = sms

    async def invoke(self, args: Dict[str, Any], context: FunctionContext) -> FunctionResult:
        to_number = args.get("to") or context.customer_phone or ""
        try:
            result = await self.sms.send(to_number, args.get("message") or "")
        except SMSTransientError as e:
            raise TransientFunctionError(str(e)) from e

        if not result.success:
            return FunctionResult(success=False, error=result.error)
        return FunctionResult(success=True, data={"message_id": result.message_id, "to": to_number})


class GetCurrentTimeFunction(FunctionDescriptor):

    name = "get_current_time"
    description = "Get the current date and time."
    parameters = {
        "type": "object",
        "properties": {
            "timezone": {"type": "string", "description": "IANA timezone, e.g. America/Toronto"}
        },
        "required": []
    }

    def __init__(self, clock=None):
        self._clock = clock

    async def invoke(self, args: Dict[str, Any], context: FunctionContext) -> FunctionResult:
        zone = _zone(args.get("timezone") or context.timezone)
        now = self._clock(zone) if self._clock else datetime.now(zone)
        return FunctionResult(success=True, data={
            "time": now.isoformat(),
            "formatted": now.strftime("%A, %B %d, %Y at %I:%M %p"),
            "timezone": str(zone),
        })


DATE_FORMATS = {
    "short": "%m/%d/%Y",
    "long": "%A, %B %d, %Y",
    "time": "%I:%M %p",
}


class FormatDateFunction(FunctionDescriptor):

    name = "format_date"
    description = "Format a date or date-time for reading aloud."
    parameters = {
        "type": "object",
        "properties": {
            "date": {"type": "string", "description": "ISO date or date-time"},
            "format": {"type": "string", "enum": ["short", "long", "time", "default"]}
        },
        "required": ["date"]
    }

    async def invoke(self, args: Dict[str, Any], context: FunctionContext) -> FunctionResult:
        raw = args.get("date")
        try:
            value = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        except (TypeError, ValueError):
            return FunctionResult(success=False, error=f"Unrecognized date: {raw}")

        fmt = args.get("format") or "default"
        pattern = DATE_FORMATS.get(fmt, "%B %d, %Y at %I:%M %p")
        return FunctionResult(success=True, data={"formatted": value.strftime(pattern), "format": fmt})


class EndCallFunction(FunctionDescriptor):
    """Signals the orchestrator to say goodbye and hang up"""

    name = "end_call"
    description = (
        "End the phone call. Call this AFTER you've said goodbye, when the caller is done. "
        "Do NOT end the call just because the caller said 'thank you' mid-conversation."
    )
    parameters = {
        "type": "object",
        "properties": {
            "reason": {"type": "string", "description": "Brief reason for ending"}
        },
        "required": []
    }

    async def invoke(self, args: Dict[str, Any], context: FunctionContext) -> FunctionResult:
        logger.info(f"Functions: end_call for {context.call_id} ({args.get('reason', 'no reason')})")
        return FunctionResult(success=True, data={"end_call": True, "reason": args.get("reason")})


def create_builtin_functions(chain: CalendarProviderChain,
                             sms: TelnyxSMSService) -> List[FunctionDescriptor]:
    """All built-ins, in registration order"""
    return [
        CheckAvailabilityFunction(chain),
        BookAppointmentFunction(chain),
        SendSMSFunction(sms),
        GetCurrentTimeFunction(),
        FormatDateFunction(),
        EndCallFunction(),
    ]
