from __future__ import annotations

import logging
from typing import Any

from tft_data import as_list, unit_cost

logger = logging.getLogger(__name__)

STYLE_MAP = {0: "inactive", 1: "bronze", 3: "silver", 4: "chromatic", 5: "gold", 6: "prismatic"}
STYLE_ORDER = {"prismatic": 6, "chromatic": 5, "gold": 4, "silver": 3, "bronze": 2, "inactive": 0}
QUEUE_LABELS = {1090: "Normal", 1100: "Ranked", 1130: "Hyper Roll", 1160: "Double Up", 6110: "Revival"}


def patch_from_game_version(version: Any) -> str | None:
    parts = str(version or "").split(".")
    if len(parts) < 2 or not parts[0].isdigit() or not parts[1].isdigit():
        # Riot also reports "Version 14.3.556.1234 (...)"
        tokens = [token for token in str(version or "").replace("<", " ").split() if token[:1].isdigit()]
        if not tokens:
            return None
        parts = tokens[0].split(".")
        if len(parts) < 2 or not parts[0].isdigit() or not parts[1].isdigit():
            return None
    return f"{parts[0]}.{parts[1]}"


def queue_label(queue_id: Any) -> str:
    try:
        parsed = int(queue_id)
    except (TypeError, ValueError):
        parsed = 0
    return QUEUE_LABELS.get(parsed, f"Queue {queue_id or '?'}")


def _is_unique_trait(meta: dict[str, Any]) -> bool:
    api_name = str(meta.get("apiName") or "").lower()
    effects = as_list(meta.get("effects"))
    return "uniquetrait" in api_name or (len(effects) == 1 and effects[0].get("minUnits") == 1)


def get_trait_style_info(trait_api_name: str, count: int, tft_data: dict[str, Any] | None) -> dict[str, Any] | None:
    if not tft_data or not tft_data.get("traitMap"):
        logger.warning("Trait map is missing; cannot style %s", trait_api_name)
        return None
    meta = tft_data["traitMap"].get(str(trait_api_name or "").lower())
    if not meta:
        return None

    style = "inactive"
    for effect in sorted(as_list(meta.get("effects")), key=lambda row: row.get("minUnits") or 0):
        if count < int(effect.get("minUnits") or 0):
            break
        style = STYLE_MAP.get(int(effect.get("style") or 0), "bronze")
    if _is_unique_trait(meta) and count >= 1:
        style = "chromatic"

    return {
        "name": meta.get("name"),
        "apiName": trait_api_name or meta.get("apiName"),
        "imageUrl": meta.get("icon") or "",
        "tierCurrent": count,
        "style": style,
        "styleOrder": STYLE_ORDER.get(style, 0),
    }


def summarize_traits(traits: list[dict[str, Any]] | None, tft_data: dict[str, Any] | None = None) -> list[dict[str, Any]]:
    trait_map = (tft_data or {}).get("traitMap") or {}
    out = []
    for row in as_list(traits):
        api_name = str(row.get("name") or "")
        meta = trait_map.get(api_name.lower()) or {}
        out.append(
            {
                "apiName": api_name,
                "name": meta.get("name") or api_name,
                "icon": meta.get("icon") or "",
                "numUnits": row.get("num_units"),
                "style": row.get("style"),
                "tierCurrent": row.get("tier_current"),
                "tierTotal": row.get("tier_total"),
            }
        )
    out.sort(key=lambda row: (-(int(row.get("style") or 0)), -(int(row.get("numUnits") or 0))))
    return out


def summarize_units(units: list[dict[str, Any]] | None, tft_data: dict[str, Any] | None = None) -> list[dict[str, Any]]:
    champion_map = (tft_data or {}).get("championMap") or {}
    item_map = (tft_data or {}).get("itemMap") or {}
    out = []
    for row in as_list(units):
        character_id = str(row.get("character_id") or "")
        meta = champion_map.get(character_id.lower()) or {}
        item_names = [str(name) for name in as_list(row.get("itemNames"))]
        out.append(
            {
                "characterId": character_id,
                "name": meta.get("name") or row.get("name") or character_id,
                "icon": meta.get("tileIcon") or "",
                "tier": row.get("tier"),
                "rarity": row.get("rarity"),
                "cost": unit_cost(tft_data or {}, character_id, row.get("rarity")),
                "itemNames": item_names,
                "items": [
                    {"apiName": name, "name": (item_map.get(name.lower()) or {}).get("name") or name, "icon": (item_map.get(name.lower()) or {}).get("icon") or ""}
                    for name in item_names
                ],
            }
        )
    return out


def summarize_participant(participant: dict[str, Any], tft_data: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "puuid": participant.get("puuid"),
        "riotIdGameName": participant.get("riotIdGameName"),
        "riotIdTagline": participant.get("riotIdTagline"),
        "placement": participant.get("placement"),
        "win": participant.get("win", (participant.get("placement") or 9) <= 4),
        "level": participant.get("level"),
        "lastRound": participant.get("last_round"),
        "goldLeft": participant.get("gold_left"),
        "playersEliminated": participant.get("players_eliminated"),
        "totalDamageToPlayers": participant.get("total_damage_to_players"),
        "timeEliminated": participant.get("time_eliminated"),
        "augments": participant.get("augments") or [],
        "traits": summarize_traits(participant.get("traits"), tft_data),
        "units": summarize_units(participant.get("units"), tft_data),
    }


def summarize_match(match: dict[str, Any], tft_data: dict[str, Any] | None = None) -> dict[str, Any]:
    info = match.get("info") or {}
    metadata = match.get("metadata") or {}
    participants = sorted(as_list(info.get("participants")), key=lambda row: row.get("placement") or 9)
    return {
        "matchId": metadata.get("match_id"),
        "gameDatetime": info.get("game_datetime"),
        "gameLength": info.get("game_length"),
        "gameVersion": info.get("game_version"),
        "patch": patch_from_game_version(info.get("game_version")),
        "queueId": info.get("queue_id"),
        "queueLabel": queue_label(info.get("queue_id")),
        "setNumber": info.get("tft_set_number"),
        "participants": [summarize_participant(row, tft_data) for row in participants],
    }
