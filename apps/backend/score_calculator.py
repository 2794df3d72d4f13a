from __future__ import annotations

import math
from typing import Any

from match_analyzer import analyze_deck_differences, meta_unit_set, player_unit_set
from responses import now_iso
from tft_data import as_list

IDEAL_COST_DISTRIBUTION = {1: 2.5, 2: 2.5, 3: 2, 4: 1.5, 5: 0.5}
OPTIMAL_UNIT_COUNT = 8


def _clamp(value: float, low: float = 0, high: float = 100) -> int:
    return int(min(high, max(low, round(value))))


def _items(unit: dict[str, Any]) -> list[Any]:
    return as_list(unit.get("items"))


def calculate_meta_fit_score(primary: dict[str, Any] | None) -> int:
    if not primary:
        return 0
    meta_deck = primary.get("metaDeck") or {}
    win_rate = meta_deck.get("winRate") or 50
    pick_rate = meta_deck.get("pickRate") or 1
    score = (primary.get("similarity") or 0) * 0.7
    score += min(20, (win_rate - 50) * 0.4)
    score += min(10, math.log(pick_rate + 1) * 2)
    return _clamp(score)


def average_star_level(units: list[dict[str, Any]]) -> float:
    if not units:
        return 1.0
    return sum(int(unit.get("tier") or 1) for unit in units) / len(units)


def calculate_unit_completion_score(player_deck: dict[str, Any], primary: dict[str, Any]) -> int:
    units = as_list(player_deck.get("units"))
    core_units = as_list((primary.get("metaDeck") or {}).get("coreUnits"))
    if not units or not core_units:
        return 0
    matches = len(meta_unit_set(primary["metaDeck"]) & player_unit_set(player_deck))
    star_bonus = min(10, (average_star_level(units) - 1) * 5)
    return round(matches / len(core_units) * 30 + star_bonus)


def calculate_synergy_completion_score(player_deck: dict[str, Any], primary: dict[str, Any]) -> int:
    def active(rows: list[Any]) -> dict[str, int]:
        return {
            str(row.get("apiName") or row.get("name") or "").lower(): int(row.get("tierCurrent") or 0)
            for row in rows
            if int(row.get("tierCurrent") or 0) > 0
        }

    player = active(as_list(player_deck.get("synergies")))
    meta = active(as_list((primary.get("metaDeck") or {}).get("synergies")))
    if not player or not meta:
        return 0
    score = 0.0
    max_score = 0.0
    for name, target_tier in meta.items():
        max_score += target_tier * 3
        score += player.get(name, 0) / target_tier * target_tier * 3
    return round(score / max_score * 35) if max_score else 0


def calculate_cost_distribution_score(units: list[dict[str, Any]]) -> int:
    if not units:
        return 0
    counts: dict[int, int] = {}
    for unit in units:
        cost = int(unit.get("cost") or 0)
        counts[cost] = counts.get(cost, 0) + 1
    return round(sum(max(0.0, 2 - abs(counts.get(cost, 0) - ideal)) for cost, ideal in IDEAL_COST_DISTRIBUTION.items()))


def calculate_synergy_diversity_score(player_deck: dict[str, Any]) -> int:
    active = len([row for row in as_list(player_deck.get("synergies")) if int(row.get("tierCurrent") or 0) > 0])
    if 3 <= active <= 5:
        return 5
    if 2 <= active <= 6:
        return 3
    return 1


def calculate_deck_balance_score(player_deck: dict[str, Any]) -> int:
    units = as_list(player_deck.get("units"))
    if not units:
        return 0
    unit_count_score = max(0, 10 - abs(len(units) - OPTIMAL_UNIT_COUNT))
    return round(unit_count_score + calculate_cost_distribution_score(units) + calculate_synergy_diversity_score(player_deck))


def calculate_deck_completion_score(player_deck: dict[str, Any], primary: dict[str, Any] | None) -> int:
    if not primary:
        return 0
    score = min(40, calculate_unit_completion_score(player_deck, primary))
    score += min(35, calculate_synergy_completion_score(player_deck, primary))
    score += min(25, calculate_deck_balance_score(player_deck))
    return _clamp(score)


def calculate_item_equipment_score(player_deck: dict[str, Any]) -> int:
    units = as_list(player_deck.get("units"))
    if not units:
        return 0
    equipped = len([unit for unit in units if _items(unit)])
    return round(equipped / len(units) * 20)


def calculate_meta_item_match_score(player_deck: dict[str, Any], meta_deck: dict[str, Any]) -> int:
    player_items = {
        str(unit.get("apiName") or unit.get("name") or "").lower(): [str(item).lower() for item in _items(unit)]
        for unit in as_list(player_deck.get("units"))
    }
    matched = 0
    total = 0
    for core_unit in as_list(meta_deck.get("coreUnits")):
        owned = player_items.get(str(core_unit.get("apiName") or core_unit.get("name") or "").lower())
        if owned is None:
            continue
        for recommended in as_list(core_unit.get("recommendedItems")):
            total += 1
            name = str(recommended.get("apiName") or recommended.get("name") or "").lower()
            if name and any(name in item or item in name for item in owned):
                matched += 1
    return round(matched / total * 15) if total else 0


def calculate_item_synergy_score(player_deck: dict[str, Any]) -> int:
    units = as_list(player_deck.get("units"))
    if not units:
        return 0
    score = 0
    for unit in units:
        count = len(_items(unit))
        if not count:
            continue
        score += min(count, 3)
        if int(unit.get("cost") or 0) >= 4 and count >= 2:
            score += 2
        if count == 3:
            score += 1
    return min(15, round(score / len(units) * 3))


def calculate_item_efficiency_score(player_deck: dict[str, Any], primary: dict[str, Any] | None) -> int:
    score = 50 + calculate_item_equipment_score(player_deck)
    if primary and primary.get("metaDeck"):
        score += calculate_meta_item_match_score(player_deck, primary["metaDeck"])
    score += calculate_item_synergy_score(player_deck)
    return _clamp(score)


def calculate_all_scores(player_deck: dict[str, Any], targets: dict[str, Any]) -> dict[str, Any]:
    primary = targets.get("primaryMatchDeck")
    alternative = targets.get("alternativeDeck")
    meta_fit = calculate_meta_fit_score(primary)
    completion = calculate_deck_completion_score(player_deck, primary)
    items = calculate_item_efficiency_score(player_deck, primary)

    growth_guide = None
    if alternative:
        growth_guide = {
            "recommendedDeck": alternative["metaDeck"],
            "similarity": alternative["similarity"],
            "winRateImprovement": (alternative["metaDeck"].get("winRate") or 0) - ((primary or {}).get("metaDeck") or {}).get("winRate", 0),
            "keyChanges": analyze_deck_differences(player_deck, alternative["metaDeck"]),
            "reason": "Higher win rate and a more stable line for this board",
        }

    return {
        "scores": {"metaFit": meta_fit, "deckCompletion": completion, "itemEfficiency": items, "total": round(meta_fit * 0.4 + completion * 0.4 + items * 0.2)},
        "analysis": {
            "primaryMatch": primary,
            "similarities": as_list(targets.get("similarities"))[:3],
            "differences": analyze_deck_differences(player_deck, primary["metaDeck"]) if primary else None,
            "growthGuide": growth_guide,
        },
        "metadata": {"calculatedAt": now_iso(), "playerPlacement": player_deck.get("placement"), "playerEliminated": player_deck.get("eliminated")},
    }
