"""
=====================================================
Dynamic AI Calling Platform - LLM Gateway
=====================================================
Routes chat requests to one of several interchangeable providers.

A live phone call must always get something to say, so the gateway never
propagates a provider failure: after one retry against the default provider
it answers with a neutral fallback line.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional
from loguru import logger

from .llm_base import (
    LLMServiceBase,
    LLMRequest,
    LLMReply,
    LLMProviderError,
    LLMRole,
    Message,
    NoProviderConfigured,
    TextReply,
)
from .openai_service import PROVIDER_DISPLAY_NAMES


FALLBACK_LLM_REPLY = "I'm sorry, I'm having trouble processing that right now. Could you please try again?"


@dataclass
class GenerateOptions:
    """Per-request generation options"""
    provider: Optional[str] = None
    model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 200
    timeout_seconds: float = 10.0
    functions: Optional[List[Dict]] = None


class LLMGateway:
    """
    Provider-agnostic entry point to the language model

    - Sends the system prompt plus only the last `history_window` turns
    - Wraps each provider call in a timeout
    - On failure retries once against the default provider
    - Returns a fallback TextReply rather than raising
    """

    def __init__(
        self,
        providers: Iterable[LLMServiceBase],
        default_provider: str = "openai",
        history_window: int = 10,
        fallback_reply: str = FALLBACK_LLM_REPLY,
    ):
        self._providers: Dict[str, LLMServiceBase] = {
            p.name: p for p in providers if p.is_configured
        }
        self.default_provider = default_provider
        self.history_window = history_window
        self.fallback_reply = fallback_reply

        if self._providers and default_provider not in self._providers:
            # Any configured provider can act as the default
            first = next(iter(self._providers))
            logger.warning(
                f"LLM Gateway: Default provider '{default_provider}' not configured, using '{first}'"
            )
            self.default_provider = first

    @property
    def is_usable(self) -> bool:
        return bool(self._providers)

    def validate(self) -> None:
        """
        Fail fast at startup when no provider is usable

        Raises:
            NoProviderConfigured: If no provider has credentials
        """
        if not self._providers:
            raise NoProviderConfigured(
                "No LLM provider configured. Set OPENAI_API_KEY, AZURE_OPENAI_API_KEY "
                "or OPENROUTER_API_KEY."
            )

    def available_providers(self) -> List[dict]:
        """Configured providers with display names and default models"""
        return [
            {
                "name": name,
                "display_name": PROVIDER_DISPLAY_NAMES.get(name, name),
                "default_model": provider.model,
            }
            for name, provider in self._providers.items()
        ]

    def provider_status(self) -> Dict[str, dict]:
        """Configured/not-configured status for every known provider"""
        return {
            name: {
                "configured": name in self._providers,
                "display_name": display,
                "default": name == self.default_provider,
            }
            for name, display in PROVIDER_DISPLAY_NAMES.items()
        }

    def build_window(self, messages: List[Message]) -> List[Message]:
        """System messages plus the last `history_window` conversation turns"""
        system = [m for m in messages if m.role == LLMRole.SYSTEM]
        turns = [m for m in messages if m.role != LLMRole.SYSTEM]
        if self.history_window > 0:
            turns = turns[-self.history_window:]
        return system + turns

    async def generate(self, messages: List[Message], options: Optional[GenerateOptions] = None) -> LLMReply:
        """
        Generate the next turn

        Args:
            messages: System prompt + conversation messages (full history is fine,
                      only the bounded window is sent)
            options: Generation options

        Returns:
            TextReply or FunctionCallReply; a fallback TextReply on total failure
        """
        options = options or GenerateOptions()

        if not self._providers:
            logger.warning("LLM Gateway: No provider available, returning fallback response")
            return TextReply(content=self.fallback_reply, fallback=True)

        requested = options.provider or self.default_provider
        attempts = [requested]
        if requested != self.default_provider:
            attempts.append(self.default_provider)
        else:
            # Same provider gets one more try
            attempts.append(requested)

        request = LLMRequest(
            messages=self.build_window(messages),
            model=options.model,
            temperature=options.temperature,
            max_tokens=options.max_tokens,
            functions=options.functions or [],
        )

        for attempt, name in enumerate(attempts, start=1):
            provider = self._providers.get(name)
            if provider is None:
                logger.warning(f"LLM Gateway: Provider '{name}' not available")
                continue

            # The model name belongs to the requested provider only
            if name != requested:
                request.model = None

            try:
                reply = await asyncio.wait_for(provider.chat(request), timeout=options.timeout_seconds)
                return reply
            except asyncio.TimeoutError:
                logger.error(f"LLM Gateway: {name} timed out after {options.timeout_seconds}s (attempt {attempt})")
            except LLMProviderError as e:
                logger.error(f"LLM Gateway: {name} failed (attempt {attempt}): {e}")
            except Exception as e:
                logger.exception(f"LLM Gateway: Unexpected {name} error (attempt {attempt}): {e}")

            if attempt < len(attempts):
                logger.info(f"LLM Gateway: Falling back to default provider '{self.default_provider}'")

        logger.warning("LLM Gateway: All providers failed, returning fallback response")
        return TextReply(content=self.fallback_reply, fallback=True)

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()
