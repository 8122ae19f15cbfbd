"""Shared fixtures and in-process fakes for the calling platform."""

import asyncio
from datetime import datetime
from typing import List, Optional

import pytest

from config.settings import Settings
from services.agents import AgentConfig, InMemoryAgentRepository
from services.calendar import (
    AvailabilityCache,
    BookingResult,
    CalendarProviderChain,
    CalendarProviderError,
    CalendarServiceBase,
    InternalCalendarService,
    SOURCE_EXTERNAL,
)
from services.conversation import ConversationOrchestrator, InMemoryConversationLog, SessionStore
from services.functions import FunctionExecutor, FunctionRegistry
from services.functions.builtin_functions import create_builtin_functions
from services.llm import LLMGateway, LLMProviderError, LLMServiceBase, LLMRole, TextReply
from services.sms.telnyx_sms_service import SMSResult, SMSTransientError
from services.tts import TTSProviderError, TTSResponse, TTSServiceBase


# Monday 08:00; the internal calendar offers 09:00-17:00 from here on
NOW = datetime(2031, 3, 3, 8, 0)
TOMORROW = "2031-03-04"


class ScriptedLLM(LLMServiceBase):
    """Replies from a script; an Exception entry is raised instead of returned"""

    def __init__(self, script=None, name: str = "openai", api_key: str = "test-key", delay: float = 0):
        super().__init__(name, api_key)
        self.script = list(script or [])
        self.requests = []
        self.delay = delay

    async def chat(self, request):
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.script:
            return TextReply(content="Okay.", provider=self.name)
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FailingLLM(LLMServiceBase):

    def __init__(self, name: str = "openai"):
        super().__init__(name, "test-key")
        self.calls = 0

    async def chat(self, request):
        self.calls += 1
        raise LLMProviderError("provider down")


class EchoLLM(LLMServiceBase):
    """Echoes the last caller utterance, tracking how many calls overlap"""

    def __init__(self, delay: float = 0.05):
        super().__init__("openai", "test-key")
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0

    async def chat(self, request):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        users = [m.content for m in request.messages if m.role == LLMRole.USER]
        return TextReply(content=f"You said {users[-1]}" if users else "Hello there, how can I help?")


class FakeExternalCalendar(CalendarServiceBase):
    """Scriptable stand-in for the external scheduling provider"""

    source = SOURCE_EXTERNAL

    def __init__(self, slots=None, configured: bool = True, error: Optional[Exception] = None,
                 delay: float = 0, booking: Optional[BookingResult] = None,
                 booking_error: Optional[Exception] = None):
        self.slots = list(slots or [])
        self.configured = configured
        self.error = error
        self.delay = delay
        self.booking = booking
        self.booking_error = booking_error
        self.slot_calls = 0
        self.booking_calls = 0

    async def is_available(self, event_type_id=None) -> bool:
        return self.configured

    async def get_available_slots(self, query):
        self.slot_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.slots)

    async def create_booking(self, agent_id, slot, customer, event_type_id=None):
        self.booking_calls += 1
        if self.booking_error is not None:
            raise self.booking_error
        return self.booking or BookingResult(
            success=True, booking_id="ext-1", source=SOURCE_EXTERNAL, start_time=slot.start_time
        )


class BrokenCalendar(CalendarServiceBase):

    async def is_available(self, event_type_id=None) -> bool:
        return True

    async def get_available_slots(self, query):
        raise CalendarProviderError("store offline")

    async def create_booking(self, agent_id, slot, customer, event_type_id=None):
        raise CalendarProviderError("store offline")


class FakeSMS:

    def __init__(self, error: Optional[Exception] = None, result: Optional[SMSResult] = None):
        self.error = error
        self.result = result or SMSResult(success=True, message_id="msg-1")
        self.sent: List[tuple] = []

    async def send(self, to_number: str, body: str) -> SMSResult:
        self.sent.append((to_number, body))
        if self.error is not None:
            raise self.error
        return self.result


class FakeTTS(TTSServiceBase):
    """Synthesizes 'audio:<text>'; texts longer than slow_over (and the stream at chunk stall_at) stall for `delay`"""

    def __init__(self, api_key: str = "test-key", slow_over: Optional[int] = None,
                 delay: float = 1.0, fail: bool = False, chunks=None, stall_at: Optional[int] = None):
        super().__init__(api_key, "voice-default")
        self.slow_over = slow_over
        self.delay = delay
        self.fail = fail
        self.chunks = list(chunks or [b"ab", b"cd"])
        self.stall_at = stall_at
        self.requests = []

    async def synthesize(self, request):
        self.requests.append(request)
        if self.slow_over is not None and len(request.text) > self.slow_over:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise TTSProviderError("provider down")
        return TTSResponse(
            audio_data=f"audio:{request.text}".encode(),
            format="mp3",
            text=request.text,
            voice_id=request.voice_id,
        )

    async def synthesize_stream(self, request):
        self.requests.append(request)
        for index, chunk in enumerate(self.chunks):
            if index == self.stall_at:
                await asyncio.sleep(self.delay)
            yield chunk

    async def get_available_voices(self):
        return []


def make_settings(**overrides) -> Settings:
    values = dict(
        session_end_grace_seconds=0.01,
        function_backoff_seconds=0.0,
        llm_timeout_seconds=2.0,
        function_timeout_seconds=2.0,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_internal_calendar() -> InternalCalendarService:
    return InternalCalendarService(clock=lambda: NOW)


def make_orchestrator(provider: Optional[LLMServiceBase] = None,
                      chain: Optional[CalendarProviderChain] = None,
                      sms: Optional[FakeSMS] = None,
                      settings: Optional[Settings] = None,
                      agents: Optional[List[AgentConfig]] = None) -> ConversationOrchestrator:
    settings = settings or make_settings()
    chain = chain or CalendarProviderChain(
        external=None, internal=make_internal_calendar(), cache=AvailabilityCache()
    )
    registry = FunctionRegistry(create_builtin_functions(chain, sms or FakeSMS()))
    executor = FunctionExecutor(registry, timeout_seconds=2.0, max_retries=3, backoff_seconds=0)
    providers = [provider] if provider is not None else []
    return ConversationOrchestrator(
        store=SessionStore(inactivity_ceiling_seconds=3600, sweep_interval_seconds=60),
        gateway=LLMGateway(providers, history_window=settings.llm_history_window),
        executor=executor,
        agents=InMemoryAgentRepository(agents if agents is not None else [make_agent()]),
        conversation_log=InMemoryConversationLog(),
        settings=settings,
        calendar_chain=chain,
        clock=lambda: NOW,
    )


def make_agent(**overrides) -> AgentConfig:
    values = dict(
        agent_id="agent-1",
        name="Sarah",
        prompt="You are {{agent_name}}, the receptionist at Bright Dental. The caller is {{customer_name}}.",
        description="Dental clinic receptionist",
    )
    values.update(overrides)
    return AgentConfig(**values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def internal_calendar():
    return make_internal_calendar()


@pytest.fixture
def fake_sms():
    return FakeSMS()
