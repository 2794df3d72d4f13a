from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from tft_data import as_list, unit_cost
from tft_helpers import STYLE_ORDER, get_trait_style_info

logger = logging.getLogger(__name__)

MIN_DECK_GAMES = 3
CORE_UNIT_LIMIT = 8
TIER_RANKS = (("S", 1, 4.15, 0.58), ("A", 2, 4.35, 0.53), ("B", 3, 4.55, 0.50), ("C", 4, 4.75, 0.45))


def calculate_tier_rank(average_placement: float, top4_rate: float) -> dict[str, Any]:
    for rank, order, max_avg, min_top4 in TIER_RANKS:
        if average_placement <= max_avg and top4_rate >= min_top4:
            return {"rank": rank, "order": order}
    return {"rank": "D", "order": 5}


def select_carry(units: list[dict[str, Any]]) -> dict[str, Any] | None:
    """Pick the unit the board is built around.

    A 3-star with two or more items wins, then a 4/5-cost at 2 stars or more
    with two or more items, then whoever holds the most items.
    """
    if not units:
        return None
    for unit in units:
        if unit.get("tier") == 3 and len(unit["itemNames"]) >= 2:
            return unit
    for unit in units:
        if unit["cost"] in (4, 5) and (unit.get("tier") or 0) >= 2 and len(unit["itemNames"]) >= 2:
            return unit
    return max(units, key=lambda unit: len(unit["itemNames"]))


def _enrich_units(participant: dict[str, Any], tft_data: dict[str, Any]) -> list[dict[str, Any]]:
    return [
        {
            "characterId": str(unit.get("character_id") or ""),
            "tier": int(unit.get("tier") or 1),
            "cost": unit_cost(tft_data, unit.get("character_id"), unit.get("rarity")),
            "itemNames": [str(name) for name in as_list(unit.get("itemNames"))],
        }
        for unit in as_list(participant.get("units"))
        if unit.get("character_id")
    ]


def _active_traits(participant: dict[str, Any], tft_data: dict[str, Any]) -> list[dict[str, Any]]:
    out = []
    for trait in as_list(participant.get("traits")):
        api_name = str(trait.get("name") or "")
        if api_name.lower() not in tft_data["traitMap"]:
            continue
        if not trait.get("tier_current") and not trait.get("style"):
            continue
        count = int(trait.get("num_units") or 0)
        info = get_trait_style_info(api_name, count, tft_data) or {}
        style_order = info.get("styleOrder") or 0
        if not style_order and int(trait.get("style") or 0) > 0:
            style_order = STYLE_ORDER.get("bronze", 2)
        out.append({"apiName": tft_data["traitMap"][api_name.lower()]["apiName"], "tierCurrent": int(trait.get("tier_current") or 0), "styleOrder": style_order, "style": info.get("style")})
    return out


def _item_summary(api_name: str, tft_data: dict[str, Any]) -> dict[str, Any]:
    item = tft_data["itemMap"].get(api_name.lower()) or {}
    return {"apiName": api_name, "name": item.get("name") or api_name, "imageUrl": item.get("icon") or None}


def analyze_decks(matches: list[dict[str, Any]], tft_data: dict[str, Any], min_games: int = MIN_DECK_GAMES) -> list[dict[str, Any]]:
    aggregates: dict[str, dict[str, Any]] = {}
    total_boards = 0

    for match in matches:
        for participant in as_list((match.get("info") or {}).get("participants")):
            units = _enrich_units(participant, tft_data)
            if not units or not participant.get("traits"):
                continue
            total_boards += 1
            carry = select_carry(units)
            carry_info = tft_data["championMap"].get(carry["characterId"].lower()) if carry else None
            if not carry_info:
                continue
            traits = _active_traits(participant, tft_data)
            if not traits:
                continue
            main_trait = max(traits, key=lambda row: row["styleOrder"])
            deck_key = f"{main_trait['apiName']} {carry_info['apiName']}"

            agg = aggregates.setdefault(
                deck_key,
                {"mainTrait": main_trait["apiName"], "carry": carry_info["apiName"], "placements": [], "units": {}, "traits": {}, "items": Counter()},
            )
            agg["placements"].append(int(participant.get("placement") or 8))
            for unit in units:
                entry = agg["units"].setdefault(unit["characterId"], {"count": 0, "items": Counter(), "cost": unit["cost"], "tiers": Counter()})
                entry["count"] += 1
                entry["tiers"][unit["tier"]] += 1
                entry["items"].update(unit["itemNames"])
                agg["items"].update(unit["itemNames"])
            for trait in traits:
                agg["traits"].setdefault(trait["apiName"], Counter())[trait["tierCurrent"]] += 1

    logger.info("Deck analysis grouped %s boards into %s decks", total_boards, len(aggregates))
    decks = [_build_deck(key, agg, tft_data, total_boards) for key, agg in aggregates.items() if len(agg["placements"]) >= min_games]
    decks.sort(key=lambda deck: (deck["tierOrder"], deck["averagePlacement"]))
    return decks


def _build_deck(deck_key: str, agg: dict[str, Any], tft_data: dict[str, Any], total_boards: int) -> dict[str, Any]:
    placements = agg["placements"]
    total_games = len(placements)
    top4_count = len([p for p in placements if p <= 4])
    win_count = len([p for p in placements if p == 1])
    average = sum(placements) / total_games
    tier = calculate_tier_rank(average, top4_count / total_games)

    core_units = []
    for api_name, entry in sorted(agg["units"].items(), key=lambda row: -row[1]["count"])[:CORE_UNIT_LIMIT]:
        champion = tft_data["championMap"].get(api_name.lower()) or {}
        core_units.append(
            {
                "apiName": champion.get("apiName") or api_name,
                "name": champion.get("name") or api_name,
                "imageUrl": champion.get("tileIcon") or None,
                "cost": entry["cost"],
                "tier": entry["tiers"].most_common(1)[0][0],
                "traits": champion.get("traits") or [],
                "count": entry["count"],
                "recommendedItems": [_item_summary(name, tft_data) for name, _count in entry["items"].most_common(3)],
            }
        )

    synergies = []
    for api_name, tiers in sorted(agg["traits"].items(), key=lambda row: -sum(row[1].values())):
        trait = tft_data["traitMap"].get(api_name.lower()) or {}
        synergies.append(
            {
                "apiName": api_name,
                "name": trait.get("name") or api_name,
                "tierCurrent": tiers.most_common(1)[0][0],
                "count": sum(tiers.values()),
                "imageUrl": trait.get("icon") or None,
            }
        )

    main_trait = tft_data["traitMap"].get(agg["mainTrait"].lower()) or {}
    carry = tft_data["championMap"].get(agg["carry"].lower()) or {}
    return {
        "deckKey": deck_key,
        "mainTraitApiName": agg["mainTrait"],
        "mainTraitName": main_trait.get("name") or agg["mainTrait"],
        "carryChampionApiName": agg["carry"],
        "carryChampionName": carry.get("name") or agg["carry"],
        "coreUnits": core_units,
        "synergies": synergies[:8],
        "items": [{**_item_summary(name, tft_data), "count": count} for name, count in agg["items"].most_common(5)],
        "totalGames": total_games,
        "top4Count": top4_count,
        "winCount": win_count,
        "averagePlacement": round(average, 2),
        "top4Rate": round(top4_count / total_games * 100, 2),
        "winRate": round(win_count / total_games * 100, 2),
        "pickRate": round(total_games / total_boards * 100, 2) if total_boards else 0,
        "tierRank": tier["rank"],
        "tierOrder": tier["order"],
    }
