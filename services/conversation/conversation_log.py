"""
=====================================================
Dynamic AI Calling Platform - Conversation Log
=====================================================
Audit trail of every message on a call. Writes are fire-and-forget:
the turn never waits on them and a failed write only logs.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from typing import Deque, Dict, List, Set, Tuple
from loguru import logger

from services.database import get_db_pool


class ConversationLogBase(ABC):

    def __init__(self):
        self._pending: Set[asyncio.Task] = set()

    @abstractmethod
    async def append_message(self, call_id: str, role: str, content: str) -> None:
        pass

    async def _write(self, call_id: str, role: str, content: str) -> None:
        try:
            await self.append_message(call_id, role, content)
        except Exception as e:
            logger.warning(f"Conversation log: Failed to store {role} message for {call_id}: {e}")

    def record(self, call_id: str, role: str, content: str) -> None:
        """Schedule a write without waiting for it"""
        task = asyncio.create_task(self._write(call_id, role, content))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def flush(self) -> None:
        """Wait for scheduled writes (shutdown, tests)"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class InMemoryConversationLog(ConversationLogBase):
    """Process-local log for deployments without a database; keeps the newest `max_entries` messages"""

    def __init__(self, max_entries: int = 10000):
        super().__init__()
        self.max_entries = max_entries
        self.entries: Deque[Tuple[str, str, str]] = deque(maxlen=max_entries)

    async def append_message(self, call_id: str, role: str, content: str) -> None:
        self.entries.append((call_id, role, content))

    def for_call(self, call_id: str) -> List[Dict[str, str]]:
        return [{"role": role, "content": content} for cid, role, content in self.entries if cid == call_id]


class PostgresConversationLog(ConversationLogBase):

    async def append_message(self, call_id: str, role: str, content: str) -> None:
        pool = await get_db_pool()
        await pool.execute(
            "INSERT INTO conversations (call_id, role, content) VALUES ($1, $2, $3)",
            call_id, role, content,
        )
