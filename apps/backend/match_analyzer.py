from __future__ import annotations

import logging
from typing import Any

from tft_data import as_list

logger = logging.getLogger(__name__)

SYNERGY_WEIGHTS = [0, 1, 3, 6, 10]


def _unit_key(unit: dict[str, Any]) -> str:
    return str(unit.get("apiName") or unit.get("name") or "").lower()


def player_unit_set(player_deck: dict[str, Any]) -> set[str]:
    return {_unit_key(unit) for unit in as_list(player_deck.get("units")) if _unit_key(unit)}


def meta_unit_set(meta_deck: dict[str, Any]) -> set[str]:
    return {_unit_key(unit) for unit in as_list(meta_deck.get("coreUnits")) if _unit_key(unit)}


def calculate_deck_similarity(player_deck: dict[str, Any], meta_deck: dict[str, Any]) -> int:
    player_units = player_unit_set(player_deck)
    meta_units = meta_unit_set(meta_deck)
    union = player_units | meta_units
    if not union:
        return 0
    return round(len(player_units & meta_units) / len(union) * 100)


def calculate_synergy_strength(deck: dict[str, Any]) -> int:
    total = 0
    for synergy in as_list(deck.get("synergies")):
        tier = int(synergy.get("tierCurrent") or 0)
        if tier <= 0:
            continue
        total += SYNERGY_WEIGHTS[tier] if tier < len(SYNERGY_WEIGHTS) else tier
    return total


def evaluate_player_deck_performance(player_deck: dict[str, Any]) -> dict[str, int]:
    placement = int(player_deck.get("placement") or 8)
    eliminated = int(player_deck.get("eliminated") or 0)
    placement_score = max(0, round((9 - placement) / 8 * 100))
    survival_score = min(100, round(eliminated / 30 * 100))
    return {
        "placementScore": placement_score,
        "survivalScore": survival_score,
        "overallPerformance": round((placement_score + survival_score) / 2),
    }


def _deck_win_rate(meta_deck: dict[str, Any]) -> float:
    games = int(meta_deck.get("totalGames") or 0)
    return int(meta_deck.get("winCount") or 0) / games * 100 if games else 0.0


def find_analysis_targets(player_deck: dict[str, Any], meta_decks: list[dict[str, Any]] | None) -> dict[str, Any]:
    """Rank meta decks against a board and pick a primary match plus an optional upgrade path.

    Composite score is 70% similarity, 20% win rate and 10% synergy strength.
    An alternative deck is only offered to bottom-four boards.
    """
    if not meta_decks:
        return {"primaryMatchDeck": None, "alternativeDeck": None, "similarities": [], "playerPerformance": evaluate_player_deck_performance(player_deck)}

    similarities = []
    for meta_deck in meta_decks:
        similarity = calculate_deck_similarity(player_deck, meta_deck)
        strength = calculate_synergy_strength(meta_deck)
        win_rate = _deck_win_rate(meta_deck)
        similarities.append(
            {
                "metaDeck": {**meta_deck, "winRate": win_rate},
                "similarity": similarity,
                "synergyStrength": strength,
                "compositeScore": round(similarity * 0.7 + win_rate * 0.2 + strength * 0.1),
            }
        )
    similarities.sort(key=lambda row: -row["compositeScore"])
    primary = similarities[0]

    alternative = None
    if int(player_deck.get("placement") or 8) > 4:
        floor = primary["metaDeck"]["winRate"] + 5
        candidates = [row for row in similarities if 30 <= row["similarity"] <= 70 and row["metaDeck"]["winRate"] > floor]
        if candidates:
            alternative = max(candidates, key=lambda row: row["metaDeck"]["winRate"])

    return {
        "primaryMatchDeck": primary,
        "alternativeDeck": alternative,
        "similarities": similarities[:5],
        "playerPerformance": evaluate_player_deck_performance(player_deck),
    }


def analyze_synergy_differences(player_deck: dict[str, Any], target_deck: dict[str, Any]) -> list[dict[str, Any]]:
    player = {str(row.get("apiName") or row.get("name") or "").lower(): int(row.get("tierCurrent") or 0) for row in as_list(player_deck.get("synergies"))}
    target = {str(row.get("apiName") or row.get("name") or "").lower(): int(row.get("tierCurrent") or 0) for row in as_list(target_deck.get("synergies"))}
    out = []
    for name in sorted(set(player) | set(target)):
        player_tier = player.get(name, 0)
        target_tier = target.get(name, 0)
        if player_tier != target_tier:
            out.append({"name": name, "playerTier": player_tier, "targetTier": target_tier, "difference": target_tier - player_tier})
    return out


def analyze_item_suggestions(target_deck: dict[str, Any]) -> list[dict[str, str]]:
    return [
        {"itemName": str(item.get("name") or item.get("apiName") or ""), "reason": "Core item of the meta deck", "priority": "high"}
        for item in as_list(target_deck.get("items"))[:3]
    ]


def analyze_deck_differences(player_deck: dict[str, Any], target_deck: dict[str, Any] | None) -> dict[str, Any]:
    if not target_deck or not player_deck.get("units") or not target_deck.get("coreUnits"):
        return {"missingUnits": [], "extraUnits": [], "synergyDifferences": [], "itemSuggestions": []}
    player_units = player_unit_set(player_deck)
    target_units = meta_unit_set(target_deck)
    return {
        "missingUnits": sorted(target_units - player_units),
        "extraUnits": sorted(player_units - target_units),
        "synergyDifferences": analyze_synergy_differences(player_deck, target_deck),
        "itemSuggestions": analyze_item_suggestions(target_deck),
    }
