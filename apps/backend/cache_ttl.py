from __future__ import annotations

from typing import Any

MAX_TTL = 30 * 24 * 60 * 60

CACHE_TTL = {
    "STATIC_DATA": 86400,
    "SUMMONER_INFO": 86400,
    "SUMMONER_DATA": 86400,
    "SUMMONER_COOLDOWN": 120,
    "MATCH_LIST": 120,
    "MATCH_DETAIL": 604800,
    "RANKING": 600,
    "META_STATS": 21600,
    "DECK_GUIDE": 21600,
    "TIER_LIST": 3600,
    "PLAYER_STATS": 600,
    "CACHE_STATUS": 60,
    "RATE_LIMIT": 60,
    "TRANSLATION": 86400,
    "AI_ANALYSIS": 86400,
    "QNA": 1800,
    "DEFAULT": 300,
}


def validate_ttl(ttl: Any) -> int:
    if isinstance(ttl, bool) or not isinstance(ttl, (int, float)) or ttl != ttl or ttl <= 0:
        return CACHE_TTL["DEFAULT"]
    return max(1, int(min(ttl, MAX_TTL)))
