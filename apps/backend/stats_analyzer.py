from __future__ import annotations

import logging
from typing import Any

from tft_data import as_list

logger = logging.getLogger(__name__)

MIN_GAMES = 10
MIN_LEVEL_GAMES = 5


def _pct(part: int, total: int) -> float:
    return round(part / total * 100, 2) if total else 0.0


def _new_bucket() -> dict[str, int]:
    return {"games": 0, "top4": 0, "wins": 0, "placementSum": 0}


def _add(bucket: dict[str, int], placement: int) -> None:
    bucket["games"] += 1
    bucket["placementSum"] += placement
    if placement <= 4:
        bucket["top4"] += 1
    if placement == 1:
        bucket["wins"] += 1


def _rates(bucket: dict[str, int]) -> dict[str, Any]:
    games = bucket["games"]
    return {
        "totalGames": games,
        "totalTop4": bucket["top4"],
        "totalWins": bucket["wins"],
        "winRate": _pct(bucket["wins"], games),
        "top4Rate": _pct(bucket["top4"], games),
        "averagePlacement": round(bucket["placementSum"] / games, 2) if games else 0.0,
    }


def _participants(matches: list[dict[str, Any]]):
    for match in matches:
        for participant in as_list((match.get("info") or {}).get("participants")):
            yield participant, int(participant.get("placement") or 8)


def analyze_item_stats(matches: list[dict[str, Any]], tft_data: dict[str, Any], min_games: int = MIN_GAMES) -> list[dict[str, Any]]:
    """Per-item placement stats; an item counts once per board however many units carry it."""
    buckets: dict[str, dict[str, int]] = {}
    for participant, placement in _participants(matches):
        used = {str(name) for unit in as_list(participant.get("units")) for name in as_list(unit.get("itemNames"))}
        for api_name in used:
            if api_name.lower() not in tft_data["itemMap"]:
                continue
            _add(buckets.setdefault(api_name, _new_bucket()), placement)

    out = []
    for api_name, bucket in buckets.items():
        if bucket["games"] < min_games:
            continue
        item = tft_data["itemMap"][api_name.lower()]
        out.append({"itemId": api_name, "itemName": item.get("name") or api_name, "itemIcon": item.get("icon") or "", "itemType": item.get("type") or "unknown", **_rates(bucket)})
    out.sort(key=lambda row: row["averagePlacement"])
    logger.info("Item stats computed for %s items", len(out))
    return out


def analyze_trait_stats(matches: list[dict[str, Any]], tft_data: dict[str, Any], min_games: int = MIN_GAMES) -> list[dict[str, Any]]:
    buckets: dict[str, dict[str, Any]] = {}
    for participant, placement in _participants(matches):
        for trait in as_list(participant.get("traits")):
            api_name = str(trait.get("name") or "")
            level = int(trait.get("tier_current") or trait.get("num_units") or 0)
            if not level or api_name.lower() not in tft_data["traitMap"]:
                continue
            entry = buckets.setdefault(api_name, {"total": _new_bucket(), "levels": {}})
            _add(entry["total"], placement)
            _add(entry["levels"].setdefault(level, _new_bucket()), placement)

    out = []
    for api_name, entry in buckets.items():
        if entry["total"]["games"] < min_games:
            continue
        trait = tft_data["traitMap"][api_name.lower()]
        levels = [{"level": level, **_rates(bucket)} for level, bucket in sorted(entry["levels"].items()) if bucket["games"] >= MIN_LEVEL_GAMES]
        out.append(
            {
                "traitId": api_name,
                "traitName": trait.get("name") or api_name,
                "traitIcon": trait.get("icon") or "",
                **_rates(entry["total"]),
                "activationLevels": levels,
            }
        )
    out.sort(key=lambda row: row["averagePlacement"])
    logger.info("Trait stats computed for %s traits", len(out))
    return out
