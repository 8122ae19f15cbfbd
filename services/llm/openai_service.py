"""
=====================================================
Dynamic AI Calling Platform - OpenAI-compatible LLM Providers
=====================================================
OpenAI, Azure OpenAI and OpenRouter share one chat/completions shape,
so one client class serves all three with different endpoints.
"""

from typing import Dict, List, Optional
from loguru import logger
from openai import AsyncOpenAI, OpenAIError

from config.settings import Settings
from .llm_base import (
    LLMServiceBase,
    LLMRequest,
    LLMReply,
    LLMProviderError,
    TextReply,
    FunctionCallReply,
    parse_arguments,
)


class OpenAILLM(LLMServiceBase):
    """
    OpenAI-compatible chat completion provider

    Features:
    - Function calling (tools API, tool_choice=auto)
    - Custom base URL / headers for Azure and OpenRouter
    - Client created lazily and reused across calls
    """

    def __init__(
        self,
        name: str,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        default_headers: Optional[Dict[str, str]] = None,
        default_query: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize OpenAI-compatible provider

        Args:
            name: Provider name ('openai', 'azure', 'openrouter')
            api_key: Provider API key
            model: Default model
            base_url: Optional custom base URL
            default_headers: Extra headers sent with every request
            default_query: Extra query parameters sent with every request
        """
        super().__init__(name, api_key, model)
        self._base_url = base_url
        self._default_headers = default_headers or {}
        self._default_query = default_query or {}
        self._client: Optional[AsyncOpenAI] = None

    def _get_client(self) -> AsyncOpenAI:
        """Get or create the async client"""
        if self._client is None:
            kwargs = {"api_key": self.api_key, "max_retries": 0}
            if self._base_url:
                kwargs["base_url"] = self._base_url
            if self._default_headers:
                kwargs["default_headers"] = self._default_headers
            if self._default_query:
                kwargs["default_query"] = self._default_query
            self._client = AsyncOpenAI(**kwargs)
        return self._client

    async def chat(self, request: LLMRequest) -> LLMReply:
        client = self._get_client()
        model = request.model or self.model
        messages = [msg.to_dict() for msg in request.messages]

        kwargs = {
            "model": model,
            "messages": messages,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        if request.functions:
            kwargs["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": fn["name"],
                        "description": fn.get("description", ""),
                        "parameters": fn.get("parameters", {"type": "object", "properties": {}}),
                    }
                }
                for fn in request.functions
            ]
            kwargs["tool_choice"] = "auto"

        logger.info(
            f"{self.name}: Calling {model} with {len(messages)} messages "
            f"and {len(request.functions)} functions"
        )

        try:
            response = await client.chat.completions.create(**kwargs)
        except OpenAIError as e:
            logger.error(f"{self.name}: Chat error: {e}")
            raise LLMProviderError(str(e)) from e

        if not response.choices:
            raise LLMProviderError("Provider returned no choices")

        choice = response.choices[0]
        content = (choice.message.content or "").strip()
        usage = getattr(response, "usage", None)
        tokens_used = usage.total_tokens if usage else 0

        tool_calls = choice.message.tool_calls or []
        if tool_calls:
            tc = tool_calls[0]
            logger.info(f"{self.name}: Function call detected: {tc.function.name}")
            return FunctionCallReply(
                name=tc.function.name,
                arguments=parse_arguments(tc.function.arguments),
                content=content,
                call_id=tc.id,
                provider=self.name,
                tokens_used=tokens_used,
            )

        if not content:
            raise LLMProviderError("Empty response from LLM")

        return TextReply(content=content, provider=self.name, tokens_used=tokens_used)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


PROVIDER_DISPLAY_NAMES = {
    "openai": "OpenAI",
    "azure": "Azure OpenAI",
    "openrouter": "OpenRouter",
}


def create_llm_providers(settings: Settings) -> List[OpenAILLM]:
    """
    Build every OpenAI-compatible provider the settings describe

    Unconfigured providers are skipped with a warning; the gateway decides
    whether the remaining set is usable.

    Args:
        settings: Application settings

    Returns:
        Configured providers, in registration order
    """
    providers: List[OpenAILLM] = []

    if settings.openai_api_key:
        providers.append(OpenAILLM(
            name="openai",
            api_key=settings.openai_api_key,
            model=settings.openai_model,
        ))
    else:
        logger.warning("OpenAI API key not configured")

    if settings.azure_openai_api_key and settings.azure_openai_endpoint:
        endpoint = settings.azure_openai_endpoint.rstrip("/")
        providers.append(OpenAILLM(
            name="azure",
            api_key=settings.azure_openai_api_key,
            model=settings.azure_openai_deployment,
            base_url=f"{endpoint}/openai/deployments/{settings.azure_openai_deployment}",
            default_headers={"api-key": settings.azure_openai_api_key},
            default_query={"api-version": settings.azure_openai_api_version},
        ))
    else:
        logger.warning("Azure OpenAI not configured")

    if settings.openrouter_api_key:
        providers.append(OpenAILLM(
            name="openrouter",
            api_key=settings.openrouter_api_key,
            model=settings.openrouter_model,
            base_url="https://openrouter.ai/api/v1",
            default_headers={"X-Title": settings.openrouter_app_name},
        ))
    else:
        logger.warning("OpenRouter API key not configured")

    return providers
