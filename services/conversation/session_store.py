"""
=====================================================
Dynamic AI Calling Platform - Session Store
=====================================================
In-memory registry of active calls, keyed by call id.

Each Session carries its own lock: a turn holds it from the moment the
caller's utterance is appended until the reply is appended, so turns of
one call never interleave while different calls never wait on each other.
A background reaper removes sessions idle past the inactivity ceiling.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
from loguru import logger

from services.agents import AgentConfig
from services.calendar import AvailabilitySlot
from services.llm import Message, LLMRole


class SessionNotFound(Exception):
    """No live session for this call id"""


class DuplicateSession(Exception):
    """A live session already uses this call id"""


class ConversationState(Enum):
    """States of a conversation"""
    NEW = "new"
    GREETING = "greeting"
    AWAITING_SPEECH = "awaiting_speech"
    PROCESSING = "processing"
    FUNCTION_PENDING = "function_pending"
    REPLIED_CONTINUE = "replied_continue"
    ENDED = "ended"


@dataclass
class Session:
    """State of one in-progress phone call"""
    call_id: str
    agent_id: str
    agent: Optional[AgentConfig] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    messages: List[Message] = field(default_factory=list)
    start_time: datetime = field(default_factory=datetime.now)
    started_at: float = field(default_factory=time.monotonic)
    last_activity: float = field(default_factory=time.monotonic)
    state: ConversationState = ConversationState.NEW
    turn_count: int = 0
    calendar_provider_override: Optional[str] = None
    pending_slots: List[AvailabilitySlot] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def append(self, message: Message) -> None:
        """Messages only ever grow; nothing is edited or reordered"""
        self.messages.append(message)

    def touch(self, now: float) -> None:
        self.last_activity = now

    @property
    def greeting(self) -> Optional[str]:
        for message in self.messages:
            if message.role == LLMRole.ASSISTANT:
                return message.content
        return None

    @property
    def agent_name(self) -> Optional[str]:
        return self.agent.name if self.agent else None

    def summary(self, now: float) -> dict:
        return {
            "call_id": self.call_id,
            "agent_id": self.agent_id,
            "agent_name": self.agent_name,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "state": self.state.value,
            "message_count": len(self.messages),
            "turn_count": self.turn_count,
            "start_time": self.start_time.isoformat(),
            "duration": int(now - self.started_at),
        }


class SessionStore:
    """
    Owned, explicitly torn-down registry of Sessions

    Not a module-level singleton: the orchestrator receives one at
    construction, tests build their own.
    """

    def __init__(
        self,
        inactivity_ceiling_seconds: float = 24 * 60 * 60,
        sweep_interval_seconds: float = 60 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.inactivity_ceiling_seconds = inactivity_ceiling_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._sessions: Dict[str, Session] = {}
        self._reaper_task: Optional[asyncio.Task] = None
        self._sweep_hooks: List[Callable[[], int]] = []

    def now(self) -> float:
        return self._clock()

    def create(self, call_id: str, agent_id: str, **kwargs) -> Session:
        """
        Register a new session

        Raises:
            DuplicateSession: call_id already live
        """
        if call_id in self._sessions:
            raise DuplicateSession(f"Session '{call_id}' already exists")
        now = self._clock()
        session = Session(call_id=call_id, agent_id=agent_id, started_at=now, last_activity=now, **kwargs)
        self._sessions[call_id] = session
        logger.info(f"Sessions: Created {call_id} (agent {agent_id}, {len(self._sessions)} active)")
        return session

    def get(self, call_id: str) -> Session:
        """
        Raises:
            SessionNotFound: No live session
        """
        session = self._sessions.get(call_id)
        if session is None:
            raise SessionNotFound(f"Session '{call_id}' not found")
        return session

    def find(self, call_id: str) -> Optional[Session]:
        return self._sessions.get(call_id)

    def touch(self, call_id: str) -> bool:
        session = self._sessions.get(call_id)
        if session is None:
            return False
        session.touch(self._clock())
        return True

    def remove(self, call_id: str) -> Optional[Session]:
        """Remove a session; unknown ids are ignored"""
        session = self._sessions.pop(call_id, None)
        if session is not None:
            session.state = ConversationState.ENDED
            logger.info(f"Sessions: Removed {call_id} ({len(self._sessions)} active)")
        return session

    def sweep(self) -> List[str]:
        """
        Remove sessions idle past the inactivity ceiling

        A session whose turn is in flight is left alone.

        Returns:
            Removed call ids
        """
        now = self._clock()
        idle = [
            call_id for call_id, session in self._sessions.items()
            if now - session.last_activity > self.inactivity_ceiling_seconds and not session.lock.locked()
        ]
        for call_id in idle:
            self.remove(call_id)
        if idle:
            logger.info(f"Sessions: Reaped {len(idle)} idle sessions")
        return idle

    def add_sweep_hook(self, hook: Callable[[], int]) -> None:
        """Run `hook` on every reaper pass (cache eviction); it returns the number of entries dropped"""
        self._sweep_hooks.append(hook)

    def tick(self) -> int:
        """
        One reaper pass: idle sessions, then every registered sweep hook

        Returns:
            Entries evicted by the hooks
        """
        self.sweep()
        evicted = 0
        for hook in self._sweep_hooks:
            evicted += hook() or 0
        if evicted:
            logger.info(f"Sessions: Sweep hooks evicted {evicted} expired cache entries")
        return evicted

    async def _reap_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.tick()
            except Exception as e:
                logger.exception(f"Sessions: Reaper pass failed: {e}")

    def start_reaper(self) -> None:
        if self._reaper_task is None or self._reaper_task.done():
            self._reaper_task = asyncio.create_task(self._reap_loop())
            logger.info(f"Sessions: Reaper started (every {self.sweep_interval_seconds}s)")

    async def stop_reaper(self) -> None:
        task, self._reaper_task = self._reaper_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Sessions: Reaper stopped")

    @property
    def reaper_running(self) -> bool:
        return self._reaper_task is not None and not self._reaper_task.done()

    def active_sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def clear(self) -> None:
        self._sessions.clear()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, call_id: str) -> bool:
        return call_id in self._sessions
