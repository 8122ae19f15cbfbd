"""
=====================================================
Dynamic AI Calling Platform - User-Defined Functions
=====================================================
Functions configured per deployment (stored in the custom_functions
table), each carrying its own credentials.

Types:
- calcom: check/book against a Cal.com account of its own
- internal: check/book against the internal slot store
- utility: echoes its arguments, optionally through a response template
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from loguru import logger

from services.calendar import (
    CalComService,
    CalendarProviderChain,
    CalendarServiceBase,
    AvailabilityCache,
)
from .function_base import FunctionDescriptor, FunctionContext, FunctionResult
from .builtin_functions import CheckAvailabilityFunction, BookAppointmentFunction


FUNCTION_TYPES = ("calcom", "internal", "utility")


class InvalidFunctionConfig(ValueError):
    """Unknown function type or missing credentials"""


@dataclass
class DynamicFunctionConfig:
    """One row of the custom_functions table"""
    name: str
    function_type: str
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    api_key: Optional[str] = None
    event_type_id: Optional[str] = None
    timezone: str = "UTC"
    response_template: Optional[str] = None
    timeout_seconds: Optional[float] = None
    max_retries: Optional[int] = None
    id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DynamicFunctionConfig":
        """Build from a DB row or API payload (camelCase keys accepted)"""
        return cls(
            id=str(row["id"]) if row.get("id") is not None else None,
            name=row["name"],
            function_type=row.get("function_type") or row.get("functionType") or "utility",
            description=row.get("description") or "",
            parameters=row.get("parameters") or {"type": "object", "properties": {}},
            api_key=row.get("api_key") or row.get("apiKey"),
            event_type_id=row.get("event_type_id") or row.get("eventTypeId"),
            timezone=row.get("timezone") or "UTC",
            response_template=row.get("response_template"),
            timeout_seconds=row.get("timeout_seconds"),
            max_retries=row.get("max_retries"),
        )


def _is_booking_name(name: str) -> bool:
    lowered = name.lower()
    if "check" in lowered or "availability" in lowered:
        return False
    return "book" in lowered or "appointment" in lowered


class DynamicCalendarFunction(FunctionDescriptor):
    """calcom / internal function: check or book, chosen by its name"""

    def __init__(self, config: DynamicFunctionConfig, chain: CalendarProviderChain):
        self.config = config
        self.name = config.name
        self.chain = chain

        if _is_booking_name(config.name):
            self._delegate = BookAppointmentFunction(chain, name=config.name, event_type_id=config.event_type_id)
        else:
            self._delegate = CheckAvailabilityFunction(chain, name=config.name, event_type_id=config.event_type_id)

        self.timeout_seconds = config.timeout_seconds or self._delegate.timeout_seconds
        self.max_retries = config.max_retries or self._delegate.max_retries

        self.description = config.description or self._delegate.description
        self.parameters = config.parameters if config.parameters.get("properties") else self._delegate.parameters

    async def invoke(self, args: Dict[str, Any], context: FunctionContext) -> FunctionResult:
        result = await self._delegate.invoke(args, context)
        result.data.setdefault("timezone", self.config.timezone)
        return result


class UtilityFunction(FunctionDescriptor):

    def __init__(self, config: DynamicFunctionConfig):
        self.config = config
        self.name = config.name
        self.description = config.description
        self.parameters = config.parameters
        self.timeout_seconds = config.timeout_seconds
        self.max_retries = config.max_retries

    async def invoke(self, args: Dict[str, Any], context: FunctionContext) -> FunctionResult:
        data: Dict[str, Any] = {"arguments": dict(args)}
        if self.config.response_template:
            message = self.config.response_template
            for key, value in args.items():
                message = message.replace("{{" + key + "}}", str(value))
            data["message"] = message
        return FunctionResult(success=True, data=data)


def build_dynamic_function(config: DynamicFunctionConfig,
                           internal: CalendarServiceBase,
                           calendar_timeout: float = 3.0,
                           cache_ttl_seconds: float = 900) -> FunctionDescriptor:
    """
    Turn a stored function definition into a callable

    Args:
        config: Stored definition
        internal: Shared internal slot store (fallback for calcom functions)
        calendar_timeout: Per-call calendar timeout
        cache_ttl_seconds: Availability cache TTL for the function's own chain

    Raises:
        InvalidFunctionConfig: Unknown type
    """
    if config.function_type == "calcom":
        external = CalComService(
            api_key=config.api_key or "",
            default_event_type_id=config.event_type_id,
            timezone=config.timezone,
            timeout=calendar_timeout,
        )
        chain = CalendarProviderChain(
            external=external,
            internal=internal,
            cache=AvailabilityCache(ttl_seconds=cache_ttl_seconds),
            timeout_seconds=calendar_timeout,
        )
        logger.info(f"Functions: Built calcom function '{config.name}' (event type {config.event_type_id})")
        return DynamicCalendarFunction(config, chain)

    if config.function_type == "internal":
        chain = CalendarProviderChain(external=None, internal=internal, timeout_seconds=calendar_timeout)
        logger.info(f"Functions: Built internal function '{config.name}'")
        return DynamicCalendarFunction(config, chain)

    if config.function_type == "utility":
        logger.info(f"Functions: Built utility function '{config.name}'")
        return UtilityFunction(config)

    raise InvalidFunctionConfig(f"Unknown function type: {config.function_type}")
