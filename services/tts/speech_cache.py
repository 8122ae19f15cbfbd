"""
=====================================================
Dynamic AI Calling Platform - Speech Cache
=====================================================
Rendered audio for frequent phrases ("How can I help you?", fallbacks).
"""

import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional, Tuple


@dataclass
class CachedAudio:
    """One rendered phrase"""
    audio: bytes
    created_at: float
    format: str = "mp3"


def normalize_text(text: str) -> str:
    return " ".join((text or "").lower().split())


class SpeechCache:
    """
    Audio cache keyed by normalized text + voice

    - Entries expire `ttl_seconds` after creation
    - At most `max_entries`; inserting past the cap evicts the oldest
    """

    def __init__(self, ttl_seconds: float = 1200, max_entries: int = 150,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._entries: "OrderedDict[Tuple[str, str], CachedAudio]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(text: str, voice_id: str) -> Tuple[str, str]:
        return normalize_text(text), voice_id or ""

    def get(self, text: str, voice_id: str) -> Optional[CachedAudio]:
        key = self.key(text, voice_id)
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if self._clock() - entry.created_at >= self.ttl_seconds:
            self._entries.pop(key, None)
            self.misses += 1
            return None
        self.hits += 1
        return entry

    def put(self, text: str, voice_id: str, audio: bytes, format: str = "mp3") -> CachedAudio:
        key = self.key(text, voice_id)
        self._entries.pop(key, None)
        entry = CachedAudio(audio=audio, created_at=self._clock(), format=format)
        self._entries[key] = entry
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return entry

    def cleanup_expired(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now - e.created_at >= self.ttl_seconds]
        for key in expired:
            self._entries.pop(key, None)
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> dict:
        return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, item: Tuple[str, str]) -> bool:
        return self.key(*item) in self._entries
