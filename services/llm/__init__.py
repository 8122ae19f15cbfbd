"""
=====================================================
Dynamic AI Calling Platform - LLM Services
=====================================================
"""

from config.settings import Settings
from .llm_base import (
    LLMServiceBase,
    LLMRequest,
    LLMRole,
    Message,
    TextReply,
    FunctionCallReply,
    LLMProviderError,
    NoProviderConfigured,
)
from .openai_service import OpenAILLM, create_llm_providers
from .gateway import LLMGateway, GenerateOptions, FALLBACK_LLM_REPLY

__all__ = [
    'LLMServiceBase',
    'LLMRequest',
    'LLMRole',
    'Message',
    'TextReply',
    'FunctionCallReply',
    'LLMProviderError',
    'NoProviderConfigured',
    'OpenAILLM',
    'create_llm_providers',
    'LLMGateway',
    'GenerateOptions',
    'FALLBACK_LLM_REPLY',
    'create_llm_gateway',
]


def create_llm_gateway(settings: Settings) -> LLMGateway:
    """
    Factory function to create the gateway from settings

    Args:
        settings: Application settings

    Returns:
        LLMGateway over every configured provider
    """
    return LLMGateway(
        providers=create_llm_providers(settings),
        default_provider=settings.llm_default_provider,
        history_window=settings.llm_history_window,
    )
