"""
=====================================================
Dynamic AI Calling Platform - TTS (Text-to-Speech) Services
=====================================================
"""

from config.settings import Settings
from .tts_base import TTSServiceBase, TTSRequest, TTSResponse, TTSProviderError, TTSTimeout
from .elevenlabs_service import ElevenLabsTTS, create_elevenlabs_tts
from .speech_cache import SpeechCache, CachedAudio
from .speech_delivery import SpeechDelivery, TTS_STREAM_PATH, COMMON_PHRASES

__all__ = [
    'TTSServiceBase',
    'TTSRequest',
    'TTSResponse',
    'TTSProviderError',
    'TTSTimeout',
    'ElevenLabsTTS',
    'create_elevenlabs_tts',
    'SpeechCache',
    'CachedAudio',
    'SpeechDelivery',
    'TTS_STREAM_PATH',
    'COMMON_PHRASES',
    'create_speech_delivery',
]


def create_speech_delivery(settings: Settings) -> SpeechDelivery:
    """
    Factory function to create speech delivery from settings

    Args:
        settings: Application settings

    Returns:
        SpeechDelivery over ElevenLabs with the configured cache policy
    """
    return SpeechDelivery(
        tts=create_elevenlabs_tts(settings),
        cache=SpeechCache(
            ttl_seconds=settings.tts_cache_ttl_seconds,
            max_entries=settings.tts_cache_max_entries,
        ),
        timeout_seconds=settings.tts_timeout_seconds,
        truncate_chars=settings.tts_truncate_chars,
        public_base_url=settings.public_base_url,
    )
