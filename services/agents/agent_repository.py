"""
=====================================================
Dynamic AI Calling Platform - Agent Repository
=====================================================
Agent lookup: the prompt, model and voice that drive a call.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional
from loguru import logger

from services.database import get_db_pool


class AgentNotFound(Exception):
    """No agent with this id"""


@dataclass
class AgentConfig:
    """A user-authored calling agent"""
    agent_id: str
    name: str
    prompt: str = ""
    description: Optional[str] = None
    model: Optional[str] = None
    llm_provider: Optional[str] = None
    temperature: float = 0.7
    voice_id: Optional[str] = None
    calendar_event_type_id: Optional[str] = None
    calendar_provider: Optional[str] = None
    enabled_functions: Optional[List[str]] = None

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "name": self.name,
            "description": self.description,
            "model": self.model,
            "llm_provider": self.llm_provider,
            "temperature": self.temperature,
            "voice_id": self.voice_id,
            "calendar_event_type_id": self.calendar_event_type_id,
            "calendar_provider": self.calendar_provider,
            "enabled_functions": self.enabled_functions,
        }


class AgentRepositoryBase(ABC):

    @abstractmethod
    async def get_agent(self, agent_id: str) -> AgentConfig:
        """
        Look up an agent

        Raises:
            AgentNotFound: Unknown id
        """
        pass


class InMemoryAgentRepository(AgentRepositoryBase):
    """Agents held in process (tests, single-agent deployments without a DB)"""

    def __init__(self, agents: Optional[List[AgentConfig]] = None):
        self._agents: Dict[str, AgentConfig] = {a.agent_id: a for a in agents or []}

    def add(self, agent: AgentConfig) -> None:
        self._agents[agent.agent_id] = agent

    async def get_agent(self, agent_id: str) -> AgentConfig:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFound(f"Agent '{agent_id}' not found")
        return agent


class PostgresAgentRepository(AgentRepositoryBase):
    """Agents table in PostgreSQL"""

    @staticmethod
    def _row_to_agent(row) -> AgentConfig:
        enabled = row["enabled_functions"]
        if isinstance(enabled, str):
            enabled = json.loads(enabled)
        return AgentConfig(
            agent_id=row["agent_id"],
            name=row["name"],
            prompt=row["ai_prompt"] or "",
            description=row["description"],
            model=row["model"],
            llm_provider=row["llm_provider"],
            temperature=row["temperature"] if row["temperature"] is not None else 0.7,
            voice_id=row["voice"],
            calendar_event_type_id=row["calendar_event_type_id"],
            calendar_provider=row["calendar_provider"],
            enabled_functions=enabled,
        )

    async def get_agent(self, agent_id: str) -> AgentConfig:
        pool = await get_db_pool()
        row = await pool.fetchrow(
            "SELECT agent_id, name, description, ai_prompt, voice, model, llm_provider, "
            "temperature, calendar_event_type_id, calendar_provider, enabled_functions "
            "FROM agents WHERE agent_id = $1",
            agent_id,
        )
        if row is None:
            logger.warning(f"Agents: '{agent_id}' not found")
            raise AgentNotFound(f"Agent '{agent_id}' not found")
        return self._row_to_agent(row)
