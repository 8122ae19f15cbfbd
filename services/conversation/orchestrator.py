"""
=====================================================
Dynamic AI Calling Platform - Conversation Orchestrator
=====================================================

The orchestrator is the brain of the calling platform. Per call it:
- Creates a session and greets the caller
- Appends each caller utterance and asks the LLM Gateway for the next turn
- Runs requested functions (calendar, SMS, ...) through the Function Executor
- Turns results into a spoken reply plus a continue / end signal

ARCHITECTURE NOTES:
- Gateway, executor and repositories are shared; sessions are per call
- One turn per session at a time (session lock); other calls never wait
- Every path returns something to say, even under total backend failure
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional
from loguru import logger

from config.settings import Settings, get_settings
from services.agents import AgentConfig, AgentNotFound, AgentRepositoryBase
from services.calendar import AvailabilitySlot, CalendarProviderChain
from services.functions import FunctionContext, FunctionExecutor, FunctionResult
from services.llm import (
    FunctionCallReply,
    GenerateOptions,
    LLMGateway,
    LLMRole,
    Message,
    TextReply,
)
from .conversation_log import ConversationLogBase, InMemoryConversationLog
from .prompts import (
    GREETING_INSTRUCTION,
    TURN_INSTRUCTION,
    build_system_prompt,
)
from .responses import (
    CLOSING_LINE,
    FALLBACK_GREETING,
    FALLBACK_REPLY,
    LAST_RESORT_REPLY,
    LOW_CONFIDENCE_PROMPT,
    RETRY_PROMPT,
    is_conversation_complete,
    render_function_result,
    strip_placeholders,
)
from .session_store import (
    ConversationState,
    DuplicateSession,
    Session,
    SessionNotFound,
    SessionStore,
)


TERMINAL_CALL_STATUSES = {"completed", "failed", "busy", "no-answer", "canceled"}


def mask_phone(phone: Optional[str]) -> str:
    if not phone:
        return "unknown"
    return f"...{phone[-4:]}"


@dataclass
class TurnResult:
    """What the telephony layer needs: text to speak, then listen or hang up"""
    reply_text: str
    end_call: bool = False

    def to_dict(self) -> dict:
        return {"reply_text": self.reply_text, "end_call": self.end_call}


class ConversationOrchestrator:
    """
    Main orchestrator for AI phone conversations

    Lifecycle:
    1. initialize_conversation / handle_call_start: session + greeting
    2. process_user_input / handle_speech: one turn per utterance
    3. cleanup_conversation / handle_call_status: session removed
    4. start() / stop(): background reaper of idle sessions
    """

    def __init__(
        self,
        store: SessionStore,
        gateway: LLMGateway,
        executor: FunctionExecutor,
        agents: AgentRepositoryBase,
        conversation_log: Optional[ConversationLogBase] = None,
        settings: Optional[Settings] = None,
        calendar_chain: Optional[CalendarProviderChain] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.gateway = gateway
        self.executor = executor
        self.agents = agents
        self.conversation_log = conversation_log or InMemoryConversationLog()
        self.settings = settings or get_settings()
        self.calendar_chain = calendar_chain
        self._clock = clock
        self._cleanup_tasks: Dict[str, asyncio.Task] = {}
        self.store.add_sweep_hook(self.sweep_caches)

    # =====================================================
    # LIFECYCLE
    # =====================================================

    def start(self) -> None:
        """Start the idle-session reaper"""
        self.store.start_reaper()
        logger.info("Orchestrator: Started")

    async def stop(self) -> None:
        """Stop the reaper, drop pending cleanups and every live session"""
        for task in list(self._cleanup_tasks.values()):
            task.cancel()
        if self._cleanup_tasks:
            await asyncio.gather(*self._cleanup_tasks.values(), return_exceptions=True)
        self._cleanup_tasks.clear()

        await self.store.stop_reaper()
        await self.conversation_log.flush()
        count = len(self.store)
        self.store.clear()
        logger.info(f"Orchestrator: Stopped ({count} sessions dropped)")

    def sweep_caches(self) -> int:
        """Reaper hook: evict expired availability answers from every calendar chain in use"""
        registry = self.executor.registry
        chains = [self.calendar_chain] if self.calendar_chain is not None else []
        chains.extend(getattr(registry.resolve(name), "chain", None) for name in registry.names())

        caches = []
        for chain in chains:
            if chain is not None and not any(chain.cache is cache for cache in caches):
                caches.append(chain.cache)
        return sum(cache.cleanup_expired() for cache in caches)

    # =====================================================
    # HELPERS
    # =====================================================

    def _append(self, session: Session, message: Message) -> None:
        session.append(message)
        self.conversation_log.record(session.call_id, message.role.value, message.content)

    def _options(self, agent: Optional[AgentConfig], functions: Optional[List[dict]] = None) -> GenerateOptions:
        return GenerateOptions(
            provider=agent.llm_provider if agent else None,
            model=agent.model if agent else None,
            temperature=agent.temperature if agent else self.settings.llm_temperature,
            max_tokens=self.settings.llm_max_tokens,
            timeout_seconds=self.settings.llm_timeout_seconds,
            functions=functions or None,
        )

    def _function_context(self, session: Session) -> FunctionContext:
        agent = session.agent
        return FunctionContext(
            call_id=session.call_id,
            agent_id=session.agent_id,
            agent_name=session.agent_name,
            customer_name=session.customer_name,
            customer_phone=session.customer_phone,
            calendar_event_type_id=agent.calendar_event_type_id if agent else None,
            calendar_provider_override=session.calendar_provider_override,
            pending_slots=list(session.pending_slots),
        )

    async def _load_agent(self, agent_id: str) -> AgentConfig:
        try:
            return await self.agents.get_agent(agent_id)
        except AgentNotFound:
            logger.warning(f"Orchestrator: Agent {agent_id} not found, using default assistant")
            return AgentConfig(agent_id=agent_id, name="Assistant")

    # =====================================================
    # CONVERSATION
    # =====================================================

    async def initialize_conversation(self, call_id: str, agent_id: str,
                                      customer_phone: Optional[str] = None,
                                      customer_name: Optional[str] = None) -> str:
        """
        Create the session and produce the greeting

        A duplicate call-start for a live session returns the greeting
        already given. Never raises: any failure yields FALLBACK_GREETING.

        Args:
            call_id: Call identifier
            agent_id: Agent driving the call
            customer_phone: Caller number, if known
            customer_name: Caller name, if known

        Returns:
            Greeting text
        """
        logger.info(f"Orchestrator: Initializing {call_id} (agent {agent_id}, caller {mask_phone(customer_phone)})")

        try:
            agent = await self._load_agent(agent_id)

            try:
                session = self.store.create(
                    call_id,
                    agent_id,
                    agent=agent,
                    customer_name=customer_name,
                    customer_phone=customer_phone,
                    calendar_provider_override=agent.calendar_provider,
                )
            except DuplicateSession:
                existing = self.store.get(call_id)
                logger.info(f"Orchestrator: Duplicate call start for {call_id}")
                return existing.greeting or FALLBACK_GREETING

            async with session.lock:
                session.state = ConversationState.GREETING
                system_prompt = build_system_prompt(agent, customer_name, customer_phone, self._clock())
                self._append(session, Message(role=LLMRole.SYSTEM, content=system_prompt))

                reply = await self.gateway.generate(
                    [Message(role=LLMRole.SYSTEM, content=f"{system_prompt}\n\n{GREETING_INSTRUCTION}")],
                    self._options(agent),
                )

                greeting = ""
                if isinstance(reply, TextReply) and not reply.fallback:
                    greeting = strip_placeholders(reply.content)
                elif isinstance(reply, FunctionCallReply):
                    greeting = strip_placeholders(reply.content or "")
                greeting = greeting or FALLBACK_GREETING

                self._append(session, Message(role=LLMRole.ASSISTANT, content=greeting))
                session.state = ConversationState.AWAITING_SPEECH
                session.touch(self.store.now())

            logger.info(f"Orchestrator: Greeting for {call_id}: '{greeting[:80]}'")
            return greeting

        except Exception as e:
            logger.exception(f"Orchestrator: Failed to initialize {call_id}: {e}")
            return FALLBACK_GREETING

    async def process_user_input(self, call_id: str, utterance: str,
                                 customer_phone: Optional[str] = None,
                                 confidence: Optional[float] = None) -> TurnResult:
        """
        Run one conversation turn

        Args:
            call_id: Call identifier
            utterance: Transcribed caller speech
            customer_phone: Caller number (filled in if the session lacks it)
            confidence: Recognizer confidence, if reported

        Returns:
            TurnResult with the reply and whether to hang up

        Raises:
            SessionNotFound: No live session for call_id
        """
        session = self.store.get(call_id)
        text = (utterance or "").strip()

        async with session.lock:
            if session.state == ConversationState.ENDED or call_id not in self.store:
                logger.info(f"Orchestrator: Speech after end on {call_id}")
                return TurnResult(reply_text=CLOSING_LINE, end_call=True)

            if not text or (confidence is not None and confidence < self.settings.speech_confidence_floor):
                logger.info(f"Orchestrator: Low-confidence input on {call_id} (confidence={confidence}), asking to repeat")
                session.touch(self.store.now())
                return TurnResult(reply_text=LOW_CONFIDENCE_PROMPT)

            session.state = ConversationState.PROCESSING
            session.turn_count += 1
            session.touch(self.store.now())
            if customer_phone and not session.customer_phone:
                session.customer_phone = customer_phone

            self._append(session, Message(role=LLMRole.USER, content=text))
            logger.info(f"Orchestrator: [{call_id}] Caller: '{text[:80]}'")

            try:
                reply_text, end_call = await asyncio.wait_for(
                    self._run_turn(session), timeout=self.settings.turn_timeout_seconds
                )
            except asyncio.TimeoutError:
                logger.error(
                    f"Orchestrator: Turn on {call_id} exceeded {self.settings.turn_timeout_seconds}s, speaking fallback"
                )
                reply_text, end_call = FALLBACK_REPLY, False
            except Exception as e:
                logger.exception(f"Orchestrator: Turn failed for {call_id}: {e}")
                reply_text, end_call = FALLBACK_REPLY, False

            self._append(session, Message(role=LLMRole.ASSISTANT, content=reply_text))
            session.state = ConversationState.ENDED if end_call else ConversationState.REPLIED_CONTINUE
            session.touch(self.store.now())

        logger.info(f"Orchestrator: [{call_id}] AI: '{reply_text[:80]}' (end_call={end_call})")
        return TurnResult(reply_text=reply_text, end_call=end_call)

    async def _run_turn(self, session: Session):
        functions = self.executor.registry.schemas(
            session.agent.enabled_functions if session.agent else None
        )
        reply = await self.gateway.generate(
            session.messages + [Message(role=LLMRole.SYSTEM, content=TURN_INSTRUCTION)],
            self._options(session.agent, functions),
        )

        if isinstance(reply, TextReply):
            text = strip_placeholders(reply.content) or FALLBACK_REPLY
            if reply.fallback:
                return text, False
            return text, is_conversation_complete(text, reply.conversation_complete)

        session.state = ConversationState.FUNCTION_PENDING
        result = await self._run_function(session, reply)

        text = render_function_result(reply.name, result, reply.content)
        structured_end = reply.conversation_complete or bool(result.data.get("end_call"))
        return text, is_conversation_complete(text, structured_end)

    async def _run_function(self, session: Session, call: FunctionCallReply) -> FunctionResult:
        logger.info(f"Orchestrator: [{session.call_id}] Function call {call.name}({call.arguments})")

        result = await self.executor.execute(call.name, call.arguments, self._function_context(session))

        if result.success and "slots" in result.data:
            session.pending_slots = [AvailabilitySlot.from_dict(s) for s in result.data["slots"]]
            session.metadata["calendar_source"] = result.data.get("source")
        elif result.success and result.data.get("booking_id"):
            session.pending_slots = []
            session.metadata["booking"] = result.data

        self._append(session, Message(
            role=LLMRole.FUNCTION,
            content=json.dumps(result.to_dict(), default=str),
            function_name=call.name,
        ))
        return result

    # =====================================================
    # CLEANUP
    # =====================================================

    async def cleanup_conversation(self, call_id: str, grace_seconds: float = 0) -> Optional[dict]:
        """
        Remove a session; safe on unknown or already-removed ids

        Args:
            call_id: Call identifier
            grace_seconds: Delay removal (late webhooks still find the session)

        Returns:
            Summary of the removed session (None if nothing was removed now)
        """
        if grace_seconds > 0:
            if call_id in self.store and call_id not in self._cleanup_tasks:
                task = asyncio.create_task(self._delayed_cleanup(call_id, grace_seconds))
                self._cleanup_tasks[call_id] = task
            return None

        session = self.store.remove(call_id)
        if session is None:
            return None
        summary = session.summary(self.store.now())
        logger.info(
            f"Orchestrator: Cleaned up {call_id} ({summary['message_count']} messages, {summary['duration']}s)"
        )
        return summary

    async def _delayed_cleanup(self, call_id: str, grace_seconds: float) -> None:
        try:
            await asyncio.sleep(grace_seconds)
            await self.cleanup_conversation(call_id)
        finally:
            self._cleanup_tasks.pop(call_id, None)

    # =====================================================
    # WEBHOOK EVENTS
    # =====================================================

    async def handle_call_start(self, call_id: str, caller_id: Optional[str], agent_id: str,
                                customer_name: Optional[str] = None) -> TurnResult:
        greeting = await self.initialize_conversation(call_id, agent_id, caller_id, customer_name)
        return TurnResult(reply_text=greeting)

    async def handle_speech(self, call_id: str, text: str, confidence: Optional[float] = None,
                            customer_phone: Optional[str] = None) -> TurnResult:
        """Speech webhook: always returns something to say"""
        try:
            return await self.process_user_input(call_id, text, customer_phone, confidence)
        except SessionNotFound:
            logger.warning(f"Orchestrator: Speech for unknown call {call_id}")
            return TurnResult(reply_text=RETRY_PROMPT)
        except Exception as e:
            logger.exception(f"Orchestrator: Speech handling failed for {call_id}: {e}")
            return TurnResult(reply_text=LAST_RESORT_REPLY, end_call=True)

    async def handle_partial_speech(self, call_id: str, partial_text: str) -> None:
        """Informational only: keeps the session alive, no reply"""
        if self.store.touch(call_id):
            logger.debug(f"Orchestrator: [{call_id}] Partial: '{(partial_text or '')[:60]}'")

    async def handle_call_status(self, call_id: str, status: str,
                                 duration_seconds: Optional[int] = None) -> None:
        """Terminal statuses schedule cleanup after the grace period"""
        status = (status or "").lower()
        logger.info(f"Orchestrator: Call {call_id} status={status} duration={duration_seconds}")

        if status in TERMINAL_CALL_STATUSES:
            await self.cleanup_conversation(call_id, grace_seconds=self.settings.session_end_grace_seconds)
        else:
            self.store.touch(call_id)

    # =====================================================
    # INTROSPECTION
    # =====================================================

    def get_conversation_history(self, call_id: str) -> List[dict]:
        session = self.store.find(call_id)
        if session is None:
            return []
        return [m.to_dict() for m in session.messages]

    def get_conversation_summary(self, call_id: str) -> Optional[dict]:
        session = self.store.find(call_id)
        return session.summary(self.store.now()) if session else None

    def get_voice_id(self, call_id: str) -> Optional[str]:
        """Voice of the agent on this call (None = speech default)"""
        session = self.store.find(call_id)
        if session is None or session.agent is None:
            return None
        return session.agent.voice_id

    def get_active_conversations_count(self) -> int:
        return len(self.store)

    def get_all_active_conversations(self) -> List[dict]:
        now = self.store.now()
        return [s.summary(now) for s in self.store.active_sessions()]
