"""
=====================================================
Dynamic AI Calling Platform - LLM Service Base Interface
=====================================================
Abstract base class for LLM (Large Language Model) providers
"""

import json
from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any, Union
from dataclasses import dataclass, field
from enum import Enum


class LLMRole(Enum):
    """Roles in conversation"""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    FUNCTION = "function"


@dataclass
class Message:
    """Conversation message"""
    role: LLMRole
    content: str
    function_name: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary for API calls"""
        data = {
            "role": self.role.value,
            "content": self.content
        }
        if self.function_name:
            data["name"] = self.function_name
        return data


class LLMProviderError(Exception):
    """Provider call failed (timeout, connection error, bad response)"""


class NoProviderConfigured(Exception):
    """No usable LLM provider is configured"""


@dataclass
class LLMRequest:
    """Request for LLM completion"""
    messages: List[Message]
    model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 200
    functions: List[Dict] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TextReply:
    """Plain text turn from the model"""
    content: str
    conversation_complete: bool = False
    fallback: bool = False
    provider: Optional[str] = None
    tokens_used: int = 0


@dataclass
class FunctionCallReply:
    """Structured function invocation requested by the model"""
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    content: str = ""
    call_id: Optional[str] = None
    provider: Optional[str] = None
    tokens_used: int = 0

    @property
    def conversation_complete(self) -> bool:
        """end_call is the explicit call-termination signal"""
        return self.name == "end_call" or bool(self.arguments.get("conversation_complete"))


LLMReply = Union[TextReply, FunctionCallReply]


def parse_arguments(raw: Any) -> Dict[str, Any]:
    """
    Parse function-call arguments from a provider response

    Providers send arguments as a JSON string; malformed JSON yields an
    empty dict so the function sees "missing arguments" rather than crashing.
    """
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


class LLMServiceBase(ABC):
    """
    Abstract base class for LLM services

    All LLM providers (OpenAI, Azure OpenAI, OpenRouter, ...) must implement
    this interface so the gateway can swap them freely.
    """

    def __init__(self, name: str, api_key: str, model: str = "gpt-4o-mini"):
        """
        Initialize LLM service

        Args:
            name: Provider name used for routing (e.g. 'openai')
            api_key: Provider API key
            model: Default model identifier
        """
        self.name = name
        self.api_key = api_key
        self.model = model

    @property
    def is_configured(self) -> bool:
        """Whether the provider has credentials to be used"""
        return bool(self.api_key)

    @abstractmethod
    async def chat(self, request: LLMRequest) -> LLMReply:
        """
        Chat completion with optional function calling

        Args:
            request: LLM request

        Returns:
            TextReply or FunctionCallReply

        Raises:
            LLMProviderError: On any provider failure
        """
        pass

    async def close(self) -> None:
        """Release provider resources"""
        pass
