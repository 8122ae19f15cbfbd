"""Function registry, retrying executor, built-in and user-defined functions."""

import asyncio
from datetime import date, datetime

import pytest

from config.settings import Settings
from services.calendar import (
    AvailabilityCache,
    AvailabilitySlot,
    CalendarProviderChain,
    SOURCE_INTERNAL,
    create_calendar_chain,
)
from services.functions import (
    DynamicFunctionConfig,
    FunctionContext,
    FunctionDescriptor,
    FunctionExecutor,
    FunctionNotFound,
    FunctionRegistry,
    FunctionResult,
    InvalidFunctionConfig,
    TransientFunctionError,
    build_dynamic_function,
    create_function_executor,
)
from services.functions.builtin_functions import (
    BookAppointmentFunction,
    CheckAvailabilityFunction,
    EndCallFunction,
    FormatDateFunction,
    GetCurrentTimeFunction,
    SendSMSFunction,
    parse_clock,
    parse_day,
)
from services.functions.function_store import register_dynamic_functions
from services.sms.telnyx_sms_service import SMSResult, SMSTransientError
from tests.conftest import FakeExternalCalendar, FakeSMS, NOW, TOMORROW, make_internal_calendar


def context(**overrides) -> FunctionContext:
    values = dict(call_id="CA123", agent_id="agent-1", customer_name="Jane", customer_phone="+15551234567")
    values.update(overrides)
    return FunctionContext(**values)


class FlakyFunction(FunctionDescriptor):
    """Raises TransientFunctionError `failures` times, then succeeds"""

    name = "flaky"

    def __init__(self, failures: int, max_retries=None):
        self.failures = failures
        self.calls = 0
        self.max_retries = max_retries

    async def invoke(self, args, context):
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientFunctionError(f"upstream 503 #{self.calls}")
        return FunctionResult(success=True, data={"calls": self.calls})


class SlowFunction(FunctionDescriptor):

    name = "slow"
    timeout_seconds = 0.01
    max_retries = 2

    async def invoke(self, args, context):
        await asyncio.sleep(1)
        return FunctionResult(success=True)


class RejectingFunction(FunctionDescriptor):

    name = "reject"

    def __init__(self):
        self.calls = 0

    async def invoke(self, args, context):
        self.calls += 1
        return FunctionResult(success=False, error="Slot taken")


class BuggyFunction(FunctionDescriptor):

    name = "buggy"

    def __init__(self):
        self.calls = 0

    async def invoke(self, args, context):
        self.calls += 1
        raise ValueError("bad input")


class RecordingSleep:

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def executor_for(*functions, max_retries: int = 3):
    sleep = RecordingSleep()
    executor = FunctionExecutor(
        FunctionRegistry(functions), timeout_seconds=2.0, max_retries=max_retries,
        backoff_seconds=1.0, sleep=sleep,
    )
    return executor, sleep


def internal_chain():
    return CalendarProviderChain(external=None, internal=make_internal_calendar(), cache=AvailabilityCache())


def scaled_defaults(factor: float = 0.01) -> Settings:
    """Default timings shrunk so a full fallback runs in milliseconds"""
    defaults = Settings(_env_file=None)
    return Settings(
        _env_file=None,
        calendar_timeout_seconds=defaults.calendar_timeout_seconds * factor,
        function_timeout_seconds=defaults.function_timeout_seconds * factor,
        function_backoff_seconds=defaults.function_backoff_seconds * factor,
    )


class TestExecutor:

    async def test_transient_failures_retried_with_linear_backoff(self):
        flaky = FlakyFunction(failures=2)
        executor, sleep = executor_for(flaky)

        result = await executor.execute("flaky", {}, context())

        assert result.success is True
        assert result.attempts == 3
        assert sleep.delays == [1.0, 2.0]

    async def test_retries_exhausted(self):
        executor, sleep = executor_for(FlakyFunction(failures=10))

        result = await executor.execute("flaky", {}, context())

        assert result.success is False
        assert result.attempts == 3
        assert result.error.startswith("flaky failed after 3 attempts")
        assert sleep.delays == [1.0, 2.0]

    async def test_timeouts_counted_as_transient(self):
        executor, sleep = executor_for(SlowFunction())

        result = await executor.execute("slow", {}, context())

        assert result.success is False
        assert result.error == "slow timed out after 2 attempts"
        assert sleep.delays == [1.0]

    async def test_business_negative_not_retried(self):
        rejecting = RejectingFunction()
        executor, sleep = executor_for(rejecting)

        result = await executor.execute("reject", {}, context())

        assert result.success is False
        assert result.error == "Slot taken"
        assert result.attempts == 1
        assert rejecting.calls == 1
        assert sleep.delays == []

    async def test_unknown_function(self):
        executor, _ = executor_for()

        result = await executor.execute("transfer_call", {}, context())

        assert result.success is False
        assert result.attempts == 0
        assert "not found" in result.error

    async def test_unexpected_error_not_retried(self):
        buggy = BuggyFunction()
        executor, sleep = executor_for(buggy)

        result = await executor.execute("buggy", None, context())

        assert result.success is False
        assert buggy.calls == 1
        assert "bad input" in result.error
        assert sleep.delays == []

    async def test_function_retry_override(self):
        flaky = FlakyFunction(failures=4, max_retries=5)
        executor, sleep = executor_for(flaky, max_retries=3)

        result = await executor.execute("flaky", {}, context())

        assert result.success is True
        assert result.attempts == 5
        assert sleep.delays == [1.0, 2.0, 3.0, 4.0]


class TestRegistry:

    def test_dynamic_shadows_builtin(self):
        builtin = RejectingFunction()
        dynamic = RejectingFunction()
        registry = FunctionRegistry([builtin])
        registry.register_dynamic(dynamic)

        assert registry.resolve("reject") is dynamic
        assert registry.names() == ["reject"]

        assert registry.unregister_dynamic("reject") is True
        assert registry.resolve("reject") is builtin
        assert registry.unregister_dynamic("reject") is False

    def test_schemas_filtered_by_allowed(self):
        registry = FunctionRegistry([EndCallFunction(), FormatDateFunction()])

        names = [s["name"] for s in registry.schemas(["end_call"])]
        assert names == ["end_call"]
        assert len(registry.schemas()) == 2
        assert registry.schemas([]) == []

    def test_missing_name_raises(self):
        with pytest.raises(FunctionNotFound):
            FunctionRegistry().resolve("nope")


class TestParsing:

    def test_parse_clock(self):
        assert parse_clock("14:00") == "14:00"
        assert parse_clock("2pm") == "14:00"
        assert parse_clock("2:30 PM") == "14:30"
        assert parse_clock("12am") == "00:00"
        assert parse_clock("9") == "09:00"
        assert parse_clock("25:00") is None
        assert parse_clock("noonish") is None

    def test_parse_day(self):
        today = date(2031, 3, 3)
        assert parse_day("2031-03-04") == date(2031, 3, 4)
        assert parse_day("today", today) == today
        assert parse_day("Tomorrow", today) == date(2031, 3, 4)
        assert parse_day("next week", today) is None
        assert parse_day(None) is None


class TestCalendarFunctions:

    async def test_requested_time_available_offered_first(self):
        function = CheckAvailabilityFunction(internal_chain())

        result = await function.invoke({"date": TOMORROW, "time": "10:00"}, context())

        assert result.success is True
        assert result.data["requested_time_available"] is True
        assert result.data["source"] == SOURCE_INTERNAL
        assert result.data["slots"][0]["start_time"] == "2031-03-04T10:00:00"
        assert len(result.data["slots"]) == 5

    async def test_taken_time_offers_closest_alternatives(self):
        chain = internal_chain()
        booking = BookAppointmentFunction(chain)
        booked = await booking.invoke({"date": TOMORROW, "time": "10:00"}, context())
        assert booked.success is True

        result = await CheckAvailabilityFunction(chain).invoke({"date": TOMORROW, "time": "10am"}, context())

        starts = [s["start_time"] for s in result.data["slots"]]
        assert result.data["requested_time_available"] is False
        assert starts[:2] == ["2031-03-04T09:30:00", "2031-03-04T10:30:00"]

    async def test_combined_date_time_argument(self):
        result = await CheckAvailabilityFunction(internal_chain()).invoke(
            {"date_time": "2031-03-04T15:00"}, context()
        )
        assert result.data["time"] == "15:00"
        assert result.data["requested_time_available"] is True

    async def test_missing_date_is_a_business_negative(self):
        result = await CheckAvailabilityFunction(internal_chain()).invoke({"time": "10:00"}, context())
        assert result.success is False
        assert "date" in result.error

    async def test_book_without_selection(self):
        result = await BookAppointmentFunction(internal_chain()).invoke({}, context())

        assert result.success is False
        assert result.error.startswith("No time selected")

    async def test_book_uses_offered_slot(self):
        slot = AvailabilitySlot(start_time=datetime(2031, 3, 4, 11, 0), source=SOURCE_INTERNAL)
        chain = internal_chain()

        result = await BookAppointmentFunction(chain).invoke(
            {"time": "11:00", "customer_name": "Jane Doe"}, context(pending_slots=[slot])
        )

        assert result.success is True
        assert result.data["formatted"] == "Tuesday, March 4 at 11:00 AM"
        assert chain.internal.get_bookings("agent-1")[0]["customer_name"] == "Jane Doe"

    async def test_double_booking_rejected(self):
        chain = internal_chain()
        function = BookAppointmentFunction(chain)
        await function.invoke({"date": TOMORROW, "time": "14:00"}, context())

        second = await function.invoke({"date": TOMORROW, "time": "14:00"}, context())

        assert second.success is False
        assert second.error == "Time slot not available"


class TestCalendarBudget:
    """Calendar fallback reached through an executor wired from the default settings."""

    def test_function_budget_covers_every_provider_call(self):
        settings = Settings(_env_file=None)
        chain = create_calendar_chain(settings, internal=make_internal_calendar())
        check = CheckAvailabilityFunction(chain)

        assert check.timeout_seconds > settings.calendar_timeout_seconds * (settings.calendar_external_attempts + 1)
        assert check.timeout_seconds < settings.turn_timeout_seconds
        assert BookAppointmentFunction(chain).timeout_seconds == check.timeout_seconds
        assert check.max_retries == 1

    async def test_hanging_external_falls_back_to_internal(self):
        settings = scaled_defaults()
        chain = create_calendar_chain(settings, internal=make_internal_calendar())
        hanging = FakeExternalCalendar(delay=5)
        chain.external = hanging
        executor = create_function_executor(settings, chain, FakeSMS())

        result = await executor.execute("check_availability", {"date": TOMORROW, "time": "10:00"}, context())

        assert result.success is True
        assert result.attempts == 1
        assert result.data["source"] == SOURCE_INTERNAL
        assert result.data["requested_time_available"] is True
        assert hanging.slot_calls == settings.calendar_external_attempts

    def test_stored_calendar_function_inherits_chain_budget(self):
        function = build_dynamic_function(
            DynamicFunctionConfig(name="check_calcom", function_type="calcom", api_key="key", event_type_id="99"),
            make_internal_calendar(),
            calendar_timeout=3.0,
        )
        pinned = build_dynamic_function(
            DynamicFunctionConfig(name="book_visit", function_type="internal", timeout_seconds=20.0),
            make_internal_calendar(),
        )

        assert function.timeout_seconds == 3.0 * 3 + 1.0
        assert function.max_retries == 1
        assert pinned.timeout_seconds == 20.0


class TestUtilityFunctions:

    async def test_send_sms_to_caller(self):
        sms = FakeSMS()
        result = await SendSMSFunction(sms).invoke({"message": "See you Tuesday"}, context())

        assert result.success is True
        assert result.data["message_id"] == "msg-1"
        assert sms.sent == [("+15551234567", "See you Tuesday")]

    async def test_send_sms_rejection(self):
        sms = FakeSMS(result=SMSResult(success=False, error="Invalid destination number"))
        result = await SendSMSFunction(sms).invoke({"message": "hi", "to": "anonymous"}, context())

        assert result.success is False
        assert result.error == "Invalid destination number"

    async def test_send_sms_transport_failure_is_transient(self):
        with pytest.raises(TransientFunctionError):
            await SendSMSFunction(FakeSMS(error=SMSTransientError("timeout"))).invoke(
                {"message": "hi"}, context()
            )

    async def test_get_current_time(self):
        function = GetCurrentTimeFunction(clock=lambda zone: NOW.replace(tzinfo=zone))

        result = await function.invoke({"timezone": "UTC"}, context())

        assert result.data["formatted"] == "Monday, March 03, 2031 at 08:00 AM"
        assert result.data["timezone"] == "UTC"

    async def test_unknown_timezone_uses_utc(self):
        function = GetCurrentTimeFunction(clock=lambda zone: NOW.replace(tzinfo=zone))
        result = await function.invoke({"timezone": "Mars/Olympus_Mons"}, context())
        assert result.data["timezone"] == "UTC"

    async def test_format_date(self):
        function = FormatDateFunction()

        long_form = await function.invoke({"date": "2031-03-04", "format": "long"}, context())
        short_form = await function.invoke({"date": "2031-03-04T14:30:00", "format": "short"}, context())
        bad = await function.invoke({"date": "soon"}, context())

        assert long_form.data["formatted"] == "Tuesday, March 04, 2031"
        assert short_form.data["formatted"] == "03/04/2031"
        assert bad.success is False

    async def test_end_call(self):
        result = await EndCallFunction().invoke({"reason": "caller said goodbye"}, context())
        assert result.data == {"end_call": True, "reason": "caller said goodbye"}


class TestDynamicFunctions:

    def test_config_from_camel_case_row(self):
        config = DynamicFunctionConfig.from_row({
            "id": 7, "name": "book_consult", "functionType": "calcom",
            "apiKey": "cal_live_x", "eventTypeId": "99",
        })

        assert config.id == "7"
        assert config.function_type == "calcom"
        assert config.api_key == "cal_live_x"
        assert config.event_type_id == "99"
        assert config.parameters == {"type": "object", "properties": {}}

    async def test_utility_template(self):
        config = DynamicFunctionConfig(
            name="order_status", function_type="utility",
            response_template="Order {{order_id}} ships {{when}}",
        )
        function = build_dynamic_function(config, make_internal_calendar())

        result = await function.invoke({"order_id": "A12", "when": "tomorrow"}, context())

        assert result.data["message"] == "Order A12 ships tomorrow"
        assert result.data["arguments"] == {"order_id": "A12", "when": "tomorrow"}

    async def test_internal_function_dispatches_by_name(self):
        internal = make_internal_calendar()
        check = build_dynamic_function(DynamicFunctionConfig(name="check_slots", function_type="internal"), internal)
        book = build_dynamic_function(DynamicFunctionConfig(name="book_visit", function_type="internal"), internal)

        checked = await check.invoke({"date": TOMORROW}, context())
        booked = await book.invoke({"date": TOMORROW, "time": "09:00"}, context())

        assert checked.data["available"] is True
        assert "date" in check.schema()["parameters"]["properties"]
        assert booked.success is True
        assert booked.data["timezone"] == "UTC"
        assert len(internal.get_bookings("agent-1")) == 1

    async def test_calcom_function_without_key_uses_internal(self):
        function = build_dynamic_function(
            DynamicFunctionConfig(name="check_calcom", function_type="calcom", event_type_id="99"),
            make_internal_calendar(),
        )

        result = await function.invoke({"date": TOMORROW}, context())

        assert result.success is True
        assert result.data["source"] == SOURCE_INTERNAL

    def test_unknown_type_rejected(self):
        with pytest.raises(InvalidFunctionConfig):
            build_dynamic_function(DynamicFunctionConfig(name="x", function_type="zapier"), make_internal_calendar())

    def test_register_skips_invalid_rows(self):
        registry = FunctionRegistry([EndCallFunction()])
        configs = [
            DynamicFunctionConfig(name="order_status", function_type="utility"),
            DynamicFunctionConfig(name="broken", function_type="zapier"),
            DynamicFunctionConfig(name="end_call", function_type="utility", description="Custom hangup"),
        ]

        registered = register_dynamic_functions(registry, configs, internal=make_internal_calendar())

        assert registered == 2
        assert not registry.has("broken")
        assert registry.resolve("end_call").description == "Custom hangup"
