"""
=====================================================
Dynamic AI Calling Platform - Speech Delivery
=====================================================
Turns reply text into audio for the telephony layer.

The phone call fetches audio from a pull URL
(/api/webhooks/tts-stream?text=...&voice_id=...); this module serves
that URL from the cache or from the TTS provider.
"""

import asyncio
from typing import AsyncIterator, Iterable, Optional
from urllib.parse import urlencode
from loguru import logger

from .tts_base import TTSServiceBase, TTSRequest, TTSResponse, TTSTimeout
from .speech_cache import SpeechCache


TTS_STREAM_PATH = "/api/webhooks/tts-stream"

COMMON_PHRASES = [
    "How can I help you today?",
    "I didn't catch that clearly. Could you please repeat what you said?",
    "I'm sorry, I'm having trouble processing that right now. Could you please try again?",
    "Thank you for calling. Goodbye!",
]


class SpeechDelivery:
    """
    Cached, timeout-bounded synthesis

    On a timeout for text longer than `truncate_chars`, retries once with
    the text cut to `truncate_chars` characters plus "...".
    """

    def __init__(
        self,
        tts: TTSServiceBase,
        cache: Optional[SpeechCache] = None,
        timeout_seconds: float = 4.0,
        truncate_chars: int = 200,
        public_base_url: str = "",
    ):
        self.tts = tts
        self.cache = cache or SpeechCache()
        self.timeout_seconds = timeout_seconds
        self.truncate_chars = truncate_chars
        self.public_base_url = public_base_url.rstrip("/")

    @property
    def is_configured(self) -> bool:
        return self.tts.is_configured

    def audio_url(self, text: str, voice_id: Optional[str] = None) -> str:
        """Pull URL the telephony layer plays (<Play>)"""
        params = {"text": text}
        if voice_id:
            params["voice_id"] = voice_id
        return f"{self.public_base_url}{TTS_STREAM_PATH}?{urlencode(params)}"

    def _truncate(self, text: str) -> str:
        return text[:self.truncate_chars] + "..."

    async def _synthesize_once(self, text: str, voice_id: str) -> TTSResponse:
        try:
            return await asyncio.wait_for(
                self.tts.synthesize(TTSRequest(text=text, voice_id=voice_id)),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise TTSTimeout(f"TTS timed out after {self.timeout_seconds}s") from e

    async def synthesize(self, text: str, voice_id: Optional[str] = None) -> TTSResponse:
        """
        Render text to audio, serving from the cache when possible

        Args:
            text: Reply text
            voice_id: Voice (provider default if omitted)

        Returns:
            TTSResponse (cached=True on a cache hit)

        Raises:
            TTSTimeout: Timed out (after the truncated retry, where one applies)
            TTSProviderError: Provider failure
        """
        voice = self.tts.resolve_voice(voice_id)
        cached = self.cache.get(text, voice)
        if cached is not None:
            logger.debug(f"Speech: Cache hit for '{text[:40]}'")
            return TTSResponse(audio_data=cached.audio, format=cached.format, text=text,
                               voice_id=voice, cached=True)

        try:
            response = await self._synthesize_once(text, voice)
        except TTSTimeout:
            if len(text) <= self.truncate_chars:
                logger.error(f"Speech: TTS timed out for short text ({len(text)} chars)")
                raise
            logger.warning(f"Speech: TTS timed out for {len(text)} chars, retrying truncated")
            response = await self._synthesize_once(self._truncate(text), voice)
            response.truncated = True
            return response

        self.cache.put(text, voice, response.audio_data, response.format)
        return response

    async def open_stream(self, text: str, voice_id: Optional[str] = None) -> AsyncIterator[bytes]:
        """
        Start a low-latency stream: waits for the first audio chunk only

        Every chunk, the first included, must arrive within timeout_seconds.
        A cache hit is served as a single chunk; a completed stream is cached.

        Returns:
            Iterator over the audio chunks

        Raises:
            TTSTimeout: No audio within timeout_seconds
            TTSProviderError: Provider failed before sending audio
        """
        voice = self.tts.resolve_voice(voice_id)
        cached = self.cache.get(text, voice)
        if cached is not None:
            return self._relay(text, voice, cached.audio, None)

        chunks = self.tts.synthesize_stream(TTSRequest(text=text, voice_id=voice)).__aiter__()
        try:
            first = await asyncio.wait_for(chunks.__anext__(), timeout=self.timeout_seconds)
        except StopAsyncIteration:
            return self._relay(text, voice, b"", None)
        except asyncio.TimeoutError as e:
            logger.error(f"Speech: No streamed audio within {self.timeout_seconds}s for '{text[:40]}'")
            raise TTSTimeout(f"TTS stream produced no audio within {self.timeout_seconds}s") from e
        return self._relay(text, voice, first, chunks)

    async def _relay(self, text: str, voice: str, first: bytes,
                     chunks: Optional[AsyncIterator[bytes]]) -> AsyncIterator[bytes]:
        if first:
            yield first
        if chunks is None:
            return

        buffer = bytearray(first)
        while True:
            try:
                chunk = await asyncio.wait_for(chunks.__anext__(), timeout=self.timeout_seconds)
            except StopAsyncIteration:
                break
            except asyncio.TimeoutError:
                # Headers are already sent; end the audio and keep the partial out of the cache
                logger.warning(f"Speech: Stream stalled after {len(buffer)} bytes for '{text[:40]}', ending early")
                return
            buffer.extend(chunk)
            yield chunk

        if buffer:
            self.cache.put(text, voice, bytes(buffer))

    async def stream(self, text: str, voice_id: Optional[str] = None) -> AsyncIterator[bytes]:
        """open_stream as a single async generator"""
        async for chunk in await self.open_stream(text, voice_id):
            yield chunk

    async def prewarm(self, phrases: Iterable[str] = COMMON_PHRASES,
                      voice_id: Optional[str] = None) -> int:
        """
        Render common phrases into the cache ahead of the first call

        Returns:
            Number of phrases cached
        """
        if not self.is_configured:
            return 0

        warmed = 0
        for phrase in phrases:
            try:
                response = await self.synthesize(phrase, voice_id)
            except Exception as e:
                logger.warning(f"Speech: Pre-warm failed for '{phrase[:40]}': {e}")
                continue
            if not response.truncated:
                warmed += 1
        logger.info(f"Speech: Pre-warmed {warmed} phrases")
        return warmed
