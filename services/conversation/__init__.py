"""
=====================================================
Dynamic AI Calling Platform - Conversation Core
=====================================================
"""

from config.settings import Settings
from services.agents import AgentConfig, InMemoryAgentRepository, PostgresAgentRepository
from services.calendar import create_calendar_chain, create_internal_calendar
from services.database import database_configured
from services.functions import create_function_executor
from services.llm import create_llm_gateway
from services.sms.telnyx_sms_service import TelnyxSMSService
from .session_store import (
    ConversationState,
    DuplicateSession,
    Session,
    SessionNotFound,
    SessionStore,
)
from .conversation_log import ConversationLogBase, InMemoryConversationLog, PostgresConversationLog
from .orchestrator import ConversationOrchestrator, TurnResult
from .responses import (
    FALLBACK_GREETING,
    FALLBACK_REPLY,
    RETRY_PROMPT,
    LOW_CONFIDENCE_PROMPT,
    LAST_RESORT_REPLY,
)

__all__ = [
    'ConversationState',
    'DuplicateSession',
    'Session',
    'SessionNotFound',
    'SessionStore',
    'ConversationLogBase',
    'InMemoryConversationLog',
    'PostgresConversationLog',
    'ConversationOrchestrator',
    'TurnResult',
    'FALLBACK_GREETING',
    'FALLBACK_REPLY',
    'RETRY_PROMPT',
    'LOW_CONFIDENCE_PROMPT',
    'LAST_RESORT_REPLY',
    'create_orchestrator',
]


def create_orchestrator(settings: Settings) -> ConversationOrchestrator:
    """
    Factory function to wire the orchestrator and its collaborators

    Postgres-backed agents and conversation log when DATABASE_URL is set,
    in-memory ones (seeded with the default agent) otherwise.

    Args:
        settings: Application settings

    Returns:
        Orchestrator (call start() to launch the reaper)
    """
    internal = create_internal_calendar(settings)
    chain = create_calendar_chain(settings, internal=internal)
    executor = create_function_executor(settings, chain, TelnyxSMSService(timeout=settings.function_timeout_seconds))

    if database_configured():
        agents = PostgresAgentRepository()
        conversation_log = PostgresConversationLog()
    else:
        agents = InMemoryAgentRepository([AgentConfig(
            agent_id=settings.default_agent_id,
            name=settings.default_agent_name,
            prompt=settings.default_agent_prompt,
        )])
        conversation_log = InMemoryConversationLog(max_entries=settings.conversation_log_max_entries)

    store = SessionStore(
        inactivity_ceiling_seconds=settings.session_inactivity_ceiling_seconds,
        sweep_interval_seconds=settings.session_sweep_interval_seconds,
    )

    return ConversationOrchestrator(
        store=store,
        gateway=create_llm_gateway(settings),
        executor=executor,
        agents=agents,
        conversation_log=conversation_log,
        settings=settings,
        calendar_chain=chain,
    )
