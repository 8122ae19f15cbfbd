"""
=====================================================
Dynamic AI Calling Platform - Agents
=====================================================
"""

from .agent_repository import (
    AgentConfig,
    AgentNotFound,
    AgentRepositoryBase,
    InMemoryAgentRepository,
    PostgresAgentRepository,
)

__all__ = [
    'AgentConfig',
    'AgentNotFound',
    'AgentRepositoryBase',
    'InMemoryAgentRepository',
    'PostgresAgentRepository',
]
