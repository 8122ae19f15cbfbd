"""Conversation orchestrator: full calls, ordering, degraded paths and cleanup."""

import asyncio
from datetime import date, datetime
from unittest.mock import AsyncMock

import pytest

from services.calendar import AvailabilityCache, CalendarProviderChain
from services.conversation import (
    ConversationState,
    FALLBACK_GREETING,
    FALLBACK_REPLY,
    InMemoryConversationLog,
    LOW_CONFIDENCE_PROMPT,
    RETRY_PROMPT,
    SessionNotFound,
)
from services.conversation.responses import CLOSING_LINE
from services.functions import DynamicFunctionConfig, FunctionDescriptor, FunctionResult, build_dynamic_function
from services.llm import FALLBACK_LLM_REPLY, FunctionCallReply, LLMRole, TextReply
from tests.conftest import (
    EchoLLM,
    FailingLLM,
    ScriptedLLM,
    TOMORROW,
    make_agent,
    make_internal_calendar,
    make_orchestrator,
    make_settings,
)


GREETING = "Hi Jane, this is Sarah at Bright Dental. How can I help you today?"


class SlowLookup(FunctionDescriptor):
    """Outlives any turn deadline"""

    name = "lookup_order"
    description = "Look up an order by number"
    timeout_seconds = 5.0

    async def invoke(self, args, context):
        await asyncio.sleep(5)
        return FunctionResult(success=True)


class TestBookingCall:
    """Greeting, availability check and booking on one call."""

    async def test_check_then_book_ends_call(self):
        provider = ScriptedLLM([
            TextReply(content=GREETING),
            FunctionCallReply(name="check_availability", arguments={"date": TOMORROW, "time": "10:00"}),
            FunctionCallReply(name="book_appointment", arguments={}),
        ])
        orchestrator = make_orchestrator(provider)

        greeting = await orchestrator.initialize_conversation("CA1", "agent-1", "+15551234567", "Jane")
        assert greeting == GREETING

        first = await orchestrator.process_user_input("CA1", "Can I come in tomorrow at 10am?")
        assert first.end_call is False
        assert "Tuesday, March 4 at 10:00 AM is available" in first.reply_text
        assert "book it" in first.reply_text

        session = orchestrator.store.get("CA1")
        assert session.state == ConversationState.REPLIED_CONTINUE
        assert session.pending_slots[0].start_time == datetime(2031, 3, 4, 10, 0)

        second = await orchestrator.process_user_input("CA1", "Yes please, book it")
        assert second.end_call is True
        assert "appointment confirmed" in second.reply_text.lower()
        assert session.state == ConversationState.ENDED

        bookings = orchestrator.calendar_chain.internal.get_bookings("agent-1")
        assert len(bookings) == 1
        assert bookings[0]["start_time"] == "2031-03-04T10:00:00"
        assert bookings[0]["customer_name"] == "Jane"
        assert session.pending_slots == []

    async def test_message_log_is_append_only(self):
        provider = ScriptedLLM([
            TextReply(content=GREETING),
            FunctionCallReply(name="check_availability", arguments={"date": TOMORROW, "time": "10:00"}),
            FunctionCallReply(name="book_appointment", arguments={}),
        ])
        orchestrator = make_orchestrator(provider)
        await orchestrator.initialize_conversation("CA1", "agent-1", "+15551234567", "Jane")
        await orchestrator.process_user_input("CA1", "Tomorrow at ten?")
        await orchestrator.process_user_input("CA1", "Yes")

        roles = [m["role"] for m in orchestrator.get_conversation_history("CA1")]
        assert roles == [
            "system", "assistant",
            "user", "function", "assistant",
            "user", "function", "assistant",
        ]

        await orchestrator.conversation_log.flush()
        logged = orchestrator.conversation_log.for_call("CA1")
        assert [entry["role"] for entry in logged] == roles

    async def test_system_prompt_rendered_and_functions_offered(self):
        provider = ScriptedLLM([TextReply(content=GREETING), TextReply(content="Sure, what day works?")])
        orchestrator = make_orchestrator(provider)
        await orchestrator.initialize_conversation("CA1", "agent-1", "+15551234567", "Jane")
        await orchestrator.process_user_input("CA1", "I'd like an appointment")

        system_prompt = orchestrator.get_conversation_history("CA1")[0]["content"]
        assert system_prompt.startswith("You are Sarah, the receptionist at Bright Dental. The caller is Jane.")
        assert "CONTEXT INFORMATION" in system_prompt
        assert "{{" not in system_prompt

        offered = {fn["name"] for fn in provider.requests[1].functions}
        assert {"check_availability", "book_appointment", "send_sms", "end_call"} <= offered

    async def test_enabled_functions_limit_schemas(self):
        provider = ScriptedLLM([TextReply(content=GREETING), TextReply(content="Sure.")])
        agent = make_agent(enabled_functions=["check_availability"])
        orchestrator = make_orchestrator(provider, agents=[agent])
        await orchestrator.initialize_conversation("CA1", "agent-1")
        await orchestrator.process_user_input("CA1", "Hello")

        assert [fn["name"] for fn in provider.requests[1].functions] == ["check_availability"]

    async def test_end_call_function_hangs_up(self):
        provider = ScriptedLLM([
            TextReply(content=GREETING),
            FunctionCallReply(name="end_call", arguments={"reason": "done"}, content="Goodbye Jane!"),
        ])
        orchestrator = make_orchestrator(provider)
        await orchestrator.initialize_conversation("CA1", "agent-1")

        result = await orchestrator.process_user_input("CA1", "That's all, thanks")
        assert result.end_call is True
        assert result.reply_text == "Goodbye Jane!"

    async def test_speech_after_end_gets_closing_line(self):
        provider = ScriptedLLM([TextReply(content=GREETING), TextReply(content="Goodbye!")])
        orchestrator = make_orchestrator(provider)
        await orchestrator.initialize_conversation("CA1", "agent-1")
        ended = await orchestrator.process_user_input("CA1", "Bye")
        assert ended.end_call is True

        late = await orchestrator.process_user_input("CA1", "Wait, one more thing")
        assert late.reply_text == CLOSING_LINE
        assert late.end_call is True

    async def test_quiet_speech_after_end_gets_closing_line(self):
        provider = ScriptedLLM([TextReply(content=GREETING), TextReply(content="Goodbye!")])
        orchestrator = make_orchestrator(provider)
        await orchestrator.initialize_conversation("CA1", "agent-1")
        await orchestrator.process_user_input("CA1", "Bye")

        mumbled = await orchestrator.handle_speech("CA1", "uh", confidence=0.02)
        silent = await orchestrator.handle_speech("CA1", "")

        assert mumbled.reply_text == CLOSING_LINE
        assert mumbled.end_call is True
        assert silent.reply_text == CLOSING_LINE
        assert silent.end_call is True

    async def test_placeholders_never_spoken(self):
        provider = ScriptedLLM([
            TextReply(content="Hello {{customer_name}}, how can I help?"),
            TextReply(content="Sure {{unknown}}, let me check."),
        ])
        orchestrator = make_orchestrator(provider)
        greeting = await orchestrator.initialize_conversation("CA1", "agent-1")
        reply = await orchestrator.process_user_input("CA1", "Can you check something?")

        assert "{{" not in greeting
        assert "{{" not in reply.reply_text


class TestGreeting:

    async def test_duplicate_call_start_returns_existing_greeting(self):
        provider = ScriptedLLM([TextReply(content=GREETING), TextReply(content="A different greeting")])
        orchestrator = make_orchestrator(provider)

        first = await orchestrator.initialize_conversation("CA1", "agent-1")
        second = await orchestrator.initialize_conversation("CA1", "agent-1")

        assert first == second == GREETING
        assert len(provider.requests) == 1
        assert orchestrator.get_active_conversations_count() == 1

    async def test_unknown_agent_uses_default_assistant(self):
        orchestrator = make_orchestrator(ScriptedLLM([TextReply(content="Hello, I'm your assistant.")]))
        greeting = await orchestrator.initialize_conversation("CA1", "no-such-agent")

        assert greeting == "Hello, I'm your assistant."
        assert orchestrator.store.get("CA1").agent_name == "Assistant"

    async def test_no_provider_gives_fallback_greeting(self):
        orchestrator = make_orchestrator(provider=None)
        greeting = await orchestrator.initialize_conversation("CA1", "agent-1")

        assert greeting == FALLBACK_GREETING
        assert orchestrator.store.get("CA1").state == ConversationState.AWAITING_SPEECH


class TestDegradedPaths:

    async def test_llm_always_failing(self):
        provider = FailingLLM()
        orchestrator = make_orchestrator(provider)

        greeting = await orchestrator.initialize_conversation("CA1", "agent-1")
        assert greeting == FALLBACK_GREETING

        result = await orchestrator.process_user_input("CA1", "Hello?")
        assert result.reply_text == FALLBACK_LLM_REPLY
        assert result.end_call is False
        # One retry per generation
        assert provider.calls == 4

        again = await orchestrator.process_user_input("CA1", "Are you there?")
        assert again.end_call is False

    async def test_unexpected_turn_error_keeps_session_usable(self):
        orchestrator = make_orchestrator(ScriptedLLM([TextReply(content=GREETING)]))
        await orchestrator.initialize_conversation("CA1", "agent-1")

        orchestrator.gateway.generate = AsyncMock(side_effect=RuntimeError("boom"))
        result = await orchestrator.process_user_input("CA1", "Hello")
        assert result.reply_text == FALLBACK_REPLY
        assert result.end_call is False

        session = orchestrator.store.get("CA1")
        assert session.state == ConversationState.REPLIED_CONTINUE
        assert not session.lock.locked()

        orchestrator.gateway.generate = AsyncMock(return_value=TextReply(content="Back again."))
        recovered = await orchestrator.process_user_input("CA1", "Hello?")
        assert recovered.reply_text == "Back again."

    async def test_turn_deadline_speaks_fallback(self):
        provider = ScriptedLLM([
            TextReply(content=GREETING),
            FunctionCallReply(name="lookup_order", arguments={"order_id": "A12"}),
            TextReply(content="Anything else I can help with?"),
        ])
        orchestrator = make_orchestrator(provider, settings=make_settings(turn_timeout_seconds=0.05))
        orchestrator.executor.registry.register_dynamic(SlowLookup())
        await orchestrator.initialize_conversation("CA1", "agent-1")

        result = await orchestrator.process_user_input("CA1", "Where is order A12?")
        assert result.reply_text == FALLBACK_REPLY
        assert result.end_call is False

        session = orchestrator.store.get("CA1")
        assert session.state == ConversationState.REPLIED_CONTINUE
        assert not session.lock.locked()

        recovered = await orchestrator.process_user_input("CA1", "Never mind")
        assert recovered.reply_text == "Anything else I can help with?"

    async def test_unknown_function_is_spoken_not_raised(self):
        provider = ScriptedLLM([TextReply(content=GREETING), FunctionCallReply(name="order_pizza")])
        orchestrator = make_orchestrator(provider)
        await orchestrator.initialize_conversation("CA1", "agent-1")

        result = await orchestrator.process_user_input("CA1", "Order me a pizza")
        assert result.end_call is False
        assert "can't help with that" in result.reply_text

    async def test_low_confidence_asks_to_repeat(self):
        orchestrator = make_orchestrator(ScriptedLLM([TextReply(content=GREETING)]))
        await orchestrator.initialize_conversation("CA1", "agent-1")
        before = len(orchestrator.get_conversation_history("CA1"))

        result = await orchestrator.handle_speech("CA1", "mumble", confidence=0.05)
        assert result.reply_text == LOW_CONFIDENCE_PROMPT
        assert result.end_call is False
        assert len(orchestrator.get_conversation_history("CA1")) == before

    async def test_empty_speech_asks_to_repeat(self):
        orchestrator = make_orchestrator(ScriptedLLM([TextReply(content=GREETING)]))
        await orchestrator.initialize_conversation("CA1", "agent-1")

        result = await orchestrator.handle_speech("CA1", "   ")
        assert result.reply_text == LOW_CONFIDENCE_PROMPT

    async def test_speech_for_unknown_call(self):
        orchestrator = make_orchestrator(ScriptedLLM())
        with pytest.raises(SessionNotFound):
            await orchestrator.process_user_input("CA404", "Hello")

        result = await orchestrator.handle_speech("CA404", "Hello")
        assert result.reply_text == RETRY_PROMPT
        assert result.end_call is False


class TestConcurrency:

    async def test_turns_of_one_call_are_serialized(self):
        provider = EchoLLM(delay=0.05)
        orchestrator = make_orchestrator(provider)
        await orchestrator.initialize_conversation("CA1", "agent-1")
        provider.max_in_flight = 0

        await asyncio.gather(
            orchestrator.process_user_input("CA1", "first"),
            orchestrator.process_user_input("CA1", "second"),
        )

        assert provider.max_in_flight == 1
        turns = [(m["role"], m["content"]) for m in orchestrator.get_conversation_history("CA1")[2:]]
        assert turns == [
            ("user", "first"),
            ("assistant", "You said first"),
            ("user", "second"),
            ("assistant", "You said second"),
        ]

    async def test_different_calls_run_in_parallel(self):
        provider = EchoLLM(delay=0.05)
        orchestrator = make_orchestrator(provider)
        await orchestrator.initialize_conversation("CA1", "agent-1")
        await orchestrator.initialize_conversation("CA2", "agent-1")
        provider.max_in_flight = 0

        first, second = await asyncio.gather(
            orchestrator.process_user_input("CA1", "from one"),
            orchestrator.process_user_input("CA2", "from two"),
        )

        assert provider.max_in_flight == 2
        assert first.reply_text == "You said from one"
        assert second.reply_text == "You said from two"

        history_one = [m["content"] for m in orchestrator.get_conversation_history("CA1")]
        assert "from two" not in history_one


class TestCleanup:

    async def test_cleanup_is_idempotent(self):
        orchestrator = make_orchestrator(ScriptedLLM([TextReply(content=GREETING)]))
        await orchestrator.initialize_conversation("CA1", "agent-1", customer_name="Jane")

        summary = await orchestrator.cleanup_conversation("CA1")
        assert summary["call_id"] == "CA1"
        assert summary["agent_name"] == "Sarah"
        assert summary["message_count"] == 2

        assert await orchestrator.cleanup_conversation("CA1") is None
        assert await orchestrator.cleanup_conversation("never-existed") is None
        assert orchestrator.get_active_conversations_count() == 0

    async def test_terminal_status_cleans_up_after_grace(self):
        orchestrator = make_orchestrator(ScriptedLLM([TextReply(content=GREETING)]),
                                         settings=make_settings(session_end_grace_seconds=0.02))
        await orchestrator.initialize_conversation("CA1", "agent-1")

        await orchestrator.handle_call_status("CA1", "completed", 42)
        assert "CA1" in orchestrator.store

        await asyncio.sleep(0.1)
        assert "CA1" not in orchestrator.store

    async def test_non_terminal_status_keeps_session(self):
        orchestrator = make_orchestrator(ScriptedLLM([TextReply(content=GREETING)]))
        await orchestrator.initialize_conversation("CA1", "agent-1")

        await orchestrator.handle_call_status("CA1", "in-progress")
        await asyncio.sleep(0.05)
        assert "CA1" in orchestrator.store

    async def test_stop_drops_sessions_and_pending_cleanups(self):
        orchestrator = make_orchestrator(ScriptedLLM([TextReply(content=GREETING)]),
                                         settings=make_settings(session_end_grace_seconds=30))
        orchestrator.start()
        await orchestrator.initialize_conversation("CA1", "agent-1")
        await orchestrator.handle_call_status("CA1", "busy")

        await orchestrator.stop()
        assert orchestrator.get_active_conversations_count() == 0
        assert not orchestrator.store.reaper_running


    async def test_reaper_pass_evicts_expired_availability(self):
        now = [0.0]
        cache = AvailabilityCache(ttl_seconds=10, clock=lambda: now[0])
        chain = CalendarProviderChain(external=None, internal=make_internal_calendar(), cache=cache)
        orchestrator = make_orchestrator(ScriptedLLM(), chain=chain)
        stored = build_dynamic_function(
            DynamicFunctionConfig(name="check_calcom", function_type="calcom", event_type_id="99"),
            make_internal_calendar(),
            cache_ttl_seconds=0,
        )
        orchestrator.executor.registry.register_dynamic(stored)

        cache.put(("agent-1", "", date(2031, 3, 4)), [])
        stored.chain.cache.put(("agent-1", "99", date(2031, 3, 4)), [])
        now[0] = 11

        assert orchestrator.store.tick() == 2
        assert len(cache) == 0
        assert len(stored.chain.cache) == 0

    async def test_in_memory_log_keeps_newest_entries(self):
        log = InMemoryConversationLog(max_entries=3)
        for i in range(5):
            log.record("CA1", "user", f"message {i}")
        await log.flush()

        assert [m["content"] for m in log.for_call("CA1")] == ["message 2", "message 3", "message 4"]

class TestIntrospection:

    async def test_summaries(self):
        orchestrator = make_orchestrator(ScriptedLLM([TextReply(content=GREETING), TextReply(content=GREETING)]))
        await orchestrator.initialize_conversation("CA1", "agent-1", "+15551234567", "Jane")
        await orchestrator.initialize_conversation("CA2", "agent-1")

        summary = orchestrator.get_conversation_summary("CA1")
        assert summary["customer_name"] == "Jane"
        assert summary["state"] == "awaiting_speech"
        assert orchestrator.get_conversation_summary("missing") is None
        assert {s["call_id"] for s in orchestrator.get_all_active_conversations()} == {"CA1", "CA2"}
        assert orchestrator.get_conversation_history("missing") == []

    async def test_voice_follows_agent(self):
        orchestrator = make_orchestrator(ScriptedLLM(), agents=[make_agent(voice_id="Rachel")])
        await orchestrator.initialize_conversation("CA1", "agent-1")

        assert orchestrator.get_voice_id("CA1") == "Rachel"
        assert orchestrator.get_voice_id("missing") is None

    async def test_function_message_recorded(self):
        provider = ScriptedLLM([
            TextReply(content=GREETING),
            FunctionCallReply(name="check_availability", arguments={"date": TOMORROW}),
        ])
        orchestrator = make_orchestrator(provider)
        await orchestrator.initialize_conversation("CA1", "agent-1")
        result = await orchestrator.process_user_input("CA1", "What do you have tomorrow?")

        session = orchestrator.store.get("CA1")
        function_message = session.messages[3]
        assert function_message.role == LLMRole.FUNCTION
        assert function_message.function_name == "check_availability"
        assert session.metadata["calendar_source"] == "internal"
        assert "openings at 9:00 AM, 9:30 AM and 10:00 AM" in result.reply_text
