"""
=====================================================
Dynamic AI Calling Platform - TTS Service Base Interface
=====================================================
Abstract base class for Text-to-Speech providers
"""

from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional, Dict, Any, List
from dataclasses import dataclass, field


class TTSProviderError(Exception):
    """Synthesis failed (HTTP error, bad voice, provider down)"""


class TTSTimeout(TTSProviderError):
    """Provider did not answer within the timeout"""


@dataclass
class TTSRequest:
    """Request for TTS synthesis"""
    text: str
    voice_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TTSResponse:
    """Response from TTS synthesis"""
    audio_data: bytes
    format: str  # mp3, ulaw, ...
    text: str
    voice_id: str
    cached: bool = False
    truncated: bool = False


class TTSServiceBase(ABC):
    """
    Abstract base class for Text-to-Speech services

    All TTS providers must implement this interface for swapability.
    """

    def __init__(self, api_key: str, default_voice_id: str):
        """
        Initialize TTS service

        Args:
            api_key: Provider API key
            default_voice_id: Default voice to use
        """
        self.api_key = api_key
        self.default_voice_id = default_voice_id

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def resolve_voice(self, voice_id: Optional[str]) -> str:
        return voice_id or self.default_voice_id

    @abstractmethod
    async def synthesize(self, request: TTSRequest) -> TTSResponse:
        """
        Synthesize speech from text (blocking)

        Args:
            request: TTS request with text and voice

        Returns:
            TTS response with audio data

        Raises:
            TTSTimeout: Provider too slow
            TTSProviderError: Any other provider failure
        """
        pass

    @abstractmethod
    def synthesize_stream(self, request: TTSRequest) -> AsyncIterator[bytes]:
        """
        Synthesize speech with streaming output

        Args:
            request: TTS request with text and voice

        Yields:
            Raw audio bytes as they are generated
        """
        pass

    @abstractmethod
    async def get_available_voices(self) -> List[dict]:
        """List voices the account can use"""
        pass

    async def close(self) -> None:
        """Release HTTP resources"""
        pass
