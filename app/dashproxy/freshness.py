from __future__ import annotations

from enum import Enum
from typing import Optional


class CacheState(str, Enum):
    """Cache-state header values the browser keys its own caching on."""

    FRESH = "fresh"
    STALE = "stale"
    WARMING = "warming"


def classify(generated_at_ms: Optional[int], ttl_ms: int, now: int) -> CacheState:
    if generated_at_ms is None:
        return CacheState.WARMING
    if now - generated_at_ms < ttl_ms:
        return CacheState.FRESH
    return CacheState.STALE
