"""
=====================================================
Dynamic AI Calling Platform - ElevenLabs TTS Service
=====================================================
Text-to-Speech using ElevenLabs

Synthesis goes over the REST endpoints with httpx (the streaming
endpoint lets the first bytes reach the caller before the whole reply
is rendered); the SDK client is used for account queries.
"""

from typing import AsyncIterator, Optional, List
import httpx
from elevenlabs.client import AsyncElevenLabs
from loguru import logger

from .tts_base import TTSServiceBase, TTSRequest, TTSResponse, TTSProviderError, TTSTimeout


class ElevenLabsTTS(TTSServiceBase):
    """
    ElevenLabs TTS Service

    Features:
    - Blocking synthesis for cacheable replies
    - HTTP streaming synthesis for the pull URL
    - Voice settings (stability, similarity boost)
    """

    API_BASE = "https://api.elevenlabs.io/v1"

    # Voices callers can pick by name in agent config
    POPULAR_VOICES = {
        "Rachel": "21m00Tcm4TlvDq8ikWAM",
        "Drew": "29vD33N1CtxCmqQRPOHJ",
        "Clyde": "2EiwWnXFnvU5JabPnv8n",
        "Adam": "ADq4zsqJPsd4acy0B6B1",
        "Josh": "TxGEqnHWrfWFTfGW9XjX",
    }

    def __init__(
        self,
        api_key: str,
        default_voice_id: str = "21m00Tcm4TlvDq8ikWAM",
        model: str = "eleven_turbo_v2",
        stability: float = 0.25,
        similarity_boost: float = 0.75,
        output_format: str = "mp3_44100_128",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize ElevenLabs TTS service

        Args:
            api_key: ElevenLabs API key
            default_voice_id: Default voice id (or a POPULAR_VOICES name)
            model: Model to use (eleven_turbo_v2 for lowest latency)
            stability: Voice stability (0-1, lower = more expressive)
            similarity_boost: Voice similarity (0-1)
            output_format: Audio output format (mp3 so Twilio <Play> can fetch it)
            transport: Optional httpx transport (tests)
        """
        super().__init__(api_key, default_voice_id)

        self.model = model
        self.stability = stability
        self.similarity_boost = similarity_boost
        self.output_format = output_format
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None
        self._sdk_client: Optional[AsyncElevenLabs] = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client"""
        if self._http_client is None or self._http_client.is_closed:
            kwargs = {"base_url": self.API_BASE, "timeout": 30.0}
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._http_client = httpx.AsyncClient(**kwargs)
        return self._http_client

    def resolve_voice(self, voice_id: Optional[str]) -> str:
        """Convert voice name to voice_id"""
        voice = voice_id or self.default_voice_id
        return self.POPULAR_VOICES.get(voice, voice)

    def _body(self, text: str) -> dict:
        return {
            "text": text,
            "model_id": self.model,
            "voice_settings": {
                "stability": self.stability,
                "similarity_boost": self.similarity_boost,
            },
        }

    def _headers(self) -> dict:
        return {"xi-api-key": self.api_key, "Content-Type": "application/json"}

    @property
    def audio_format(self) -> str:
        return "ulaw" if "ulaw" in self.output_format else "mp3"

    async def synthesize(self, request: TTSRequest) -> TTSResponse:
        """
        Synthesize speech from text (blocking)

        Args:
            request: TTS request

        Returns:
            TTS response with audio data
        """
        if not self.is_configured:
            raise TTSProviderError("ElevenLabs API key not configured")

        voice_id = self.resolve_voice(request.voice_id)
        logger.info(f"ElevenLabs: Synthesizing '{request.text[:50]}...' with voice {voice_id}")

        client = await self._get_http_client()
        try:
            response = await client.post(
                f"/text-to-speech/{voice_id}",
                headers=self._headers(),
                params={"output_format": self.output_format},
                json=self._body(request.text),
            )
        except httpx.TimeoutException as e:
            raise TTSTimeout(f"ElevenLabs timed out: {e}") from e
        except httpx.TransportError as e:
            raise TTSProviderError(f"ElevenLabs unreachable: {e}") from e

        if response.status_code != 200:
            logger.error(f"ElevenLabs: HTTP error {response.status_code}: {response.text[:200]}")
            raise TTSProviderError(f"ElevenLabs returned {response.status_code}")

        return TTSResponse(
            audio_data=response.content,
            format=self.audio_format,
            text=request.text,
            voice_id=voice_id,
        )

    async def synthesize_stream(self, request: TTSRequest) -> AsyncIterator[bytes]:
        """
        Stream TTS audio using async HTTP, yielding raw chunks as they're generated

        Args:
            request: TTS request with text and voice

        Yields:
            Raw audio bytes as they arrive from ElevenLabs
        """
        if not self.is_configured:
            raise TTSProviderError("ElevenLabs API key not configured")

        voice_id = self.resolve_voice(request.voice_id)
        params = {
            "output_format": self.output_format,
            "optimize_streaming_latency": "3",
        }

        logger.info(f"ElevenLabs: Streaming '{request.text[:50]}...' voice={voice_id} model={self.model}")

        client = await self._get_http_client()
        try:
            async with client.stream(
                "POST", f"/text-to-speech/{voice_id}/stream",
                headers=self._headers(),
                params=params,
                json=self._body(request.text),
            ) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    logger.error(f"ElevenLabs: HTTP streaming error {response.status_code}: {body[:200]!r}")
                    raise TTSProviderError(f"ElevenLabs returned {response.status_code}")

                chunk_count = 0
                async for chunk in response.aiter_bytes(1024):
                    chunk_count += 1
                    if chunk_count == 1:
                        logger.info(f"ElevenLabs: First audio chunk received ({len(chunk)} bytes)")
                    yield chunk

            logger.info(f"ElevenLabs: Stream complete ({chunk_count} chunks)")

        except httpx.TimeoutException as e:
            raise TTSTimeout(f"ElevenLabs stream timed out: {e}") from e
        except httpx.TransportError as e:
            raise TTSProviderError(f"ElevenLabs stream failed: {e}") from e

    async def get_available_voices(self) -> List[dict]:
        """
        Get list of available voices

        Returns:
            List of voice metadata (popular voices if the account query fails)
        """
        if self._sdk_client is None:
            self._sdk_client = AsyncElevenLabs(api_key=self.api_key)

        try:
            response = await self._sdk_client.voices.get_all()
        except Exception as e:
            logger.error(f"ElevenLabs: Error fetching voices: {e}")
            return [{"voice_id": vid, "name": name} for name, vid in self.POPULAR_VOICES.items()]

        return [
            {
                "voice_id": voice.voice_id,
                "name": voice.name,
                "category": getattr(voice, "category", None),
                "labels": getattr(voice, "labels", None) or {},
            }
            for voice in getattr(response, "voices", [])
        ]

    async def close(self) -> None:
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
        self._http_client = None


def create_elevenlabs_tts(settings) -> ElevenLabsTTS:
    """
    Factory function to create ElevenLabs TTS service from settings

    Args:
        settings: Application settings

    Returns:
        Configured ElevenLabsTTS instance (unconfigured if the key is missing)
    """
    if not settings.elevenlabs_api_key:
        logger.warning("ElevenLabs: API key not set, speech delivery will fall back to <Say>")

    return ElevenLabsTTS(
        api_key=settings.elevenlabs_api_key,
        default_voice_id=settings.elevenlabs_voice_id,
        model=settings.elevenlabs_model,
        stability=settings.elevenlabs_stability,
        similarity_boost=settings.elevenlabs_similarity_boost,
        output_format=settings.elevenlabs_output_format,
    )
