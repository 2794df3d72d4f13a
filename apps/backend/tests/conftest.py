from __future__ import annotations

from typing import Any

import pytest

from alert_service import alert_service
from cache_analyzer import cache_analyzer
from cache_manager import cache_manager
from error_monitor import error_monitor
from meta_store import meta_store
from metrics import metrics_collector
from slow_query_detector import slow_query_detector
from tft_data import build_tft_data, clear_tft_data_cache

RAW_CDRAGON: dict[str, Any] = {
    "sets": {
        "13": {
            "champions": [{"apiName": "TFT13_Old", "name": "Old", "cost": 1, "traits": ["TFT13_Past"], "icon": "ASSETS/Old.tex"}],
            "traits": [{"apiName": "TFT13_Past", "name": "Past", "effects": [{"minUnits": 2, "style": 1}]}],
        },
        "14": {
            "champions": [
                {"apiName": "TFT14_Jinx", "name": "Jinx", "cost": 4, "traits": ["TFT14_Rebel"], "icon": "ASSETS/Characters/Jinx.tex", "tileIcon": "ASSETS/Characters/Jinx_tile.tex"},
                {"apiName": "TFT14_Vi", "name": "Vi", "cost": 2, "traits": ["TFT14_Rebel", "TFT14_Bruiser"], "icon": "ASSETS/Characters/Vi.tex"},
                {"apiName": "TFT14_Ekko", "name": "Ekko", "cost": 3, "traits": ["TFT14_Rebel"], "icon": "ASSETS/Characters/Ekko.tex"},
                {"apiName": "TFT14_Garen", "name": "Garen", "cost": 1, "traits": ["TFT14_Bruiser"], "icon": "ASSETS/Characters/Garen.tex"},
                {"apiName": "TFT14_Tutorial_Dummy", "name": "Dummy", "cost": 1, "traits": ["TFT14_Bruiser"], "icon": "ASSETS/Dummy.tex"},
            ],
            "traits": [
                {
                    "apiName": "TFT14_Rebel",
                    "name": "Rebel",
                    "icon": "ASSETS/Traits/Rebel.tex",
                    "effects": [{"minUnits": 5, "maxUnits": 25, "style": 5}, {"minUnits": 3, "maxUnits": 4, "style": 1}],
                },
                {"apiName": "TFT14_Bruiser", "name": "Bruiser", "icon": "ASSETS/Traits/Bruiser.tex", "effects": [{"minUnits": 2, "style": 1}, {"minUnits": 4, "style": 3}]},
                {"apiName": "TFT14_UniqueTrait_Solo", "name": "Solo", "icon": "ASSETS/Traits/Solo.tex", "effects": [{"minUnits": 1, "style": 4}]},
            ],
        },
    },
    "items": [
        {"apiName": "TFT_Item_BFSword", "name": "B.F. Sword", "icon": "ASSETS/Maps/TFT/Icons/Items/Components/BFSword.tex"},
        {"apiName": "TFT_Item_InfinityEdge", "name": "Infinity Edge", "icon": "ASSETS/Maps/TFT/Icons/Items/Hexcore/IE.tex", "composition": ["TFT_Item_BFSword", "TFT_Item_SparringGloves"]},
        {"apiName": "TFT_Item_GuinsoosRageblade", "name": "Guinsoo's Rageblade", "icon": "ASSETS/Maps/TFT/Icons/Items/Hexcore/Guinsoo.tex", "composition": ["TFT_Item_RecurveBow", "TFT_Item_NeedlesslyLargeRod"]},
        {"apiName": "TFT14_Item_RebelEmblemItem", "name": "Rebel Emblem", "icon": "ASSETS/Maps/TFT/Icons/Items/Emblems/Rebel.tex", "associatedTraits": ["TFT14_Rebel"]},
        {"apiName": "TFT14_Augment_ClutteredMind", "name": "Cluttered Mind", "icon": "ASSETS/Maps/TFT/Assets/Augments/Cluttered.tex"},
        {"apiName": "TFT_Item_Debug_Thing", "name": "Debug", "icon": "ASSETS/Debug.tex"},
        {"apiName": "TFT_Item_NoIcon", "name": "No icon"},
    ],
}


def make_unit(character_id: str, tier: int = 1, items: list[str] | None = None, rarity: int = 0) -> dict[str, Any]:
    return {"character_id": character_id, "tier": tier, "rarity": rarity, "itemNames": list(items or [])}


def make_trait(name: str, num_units: int, style: int, tier_current: int) -> dict[str, Any]:
    return {"name": name, "num_units": num_units, "style": style, "tier_current": tier_current, "tier_total": 3}


def rebel_board(puuid: str, placement: int) -> dict[str, Any]:
    return {
        "puuid": puuid,
        "placement": placement,
        "level": 8,
        "last_round": 30 if placement <= 4 else 22,
        "gold_left": 3,
        "total_damage_to_players": 120,
        "augments": ["TFT14_Augment_ClutteredMind"],
        "riotIdGameName": f"player-{puuid}",
        "riotIdTagline": "KR1",
        "units": [
            make_unit("TFT14_Jinx", 2, ["TFT_Item_InfinityEdge", "TFT_Item_GuinsoosRageblade"], rarity=4),
            make_unit("TFT14_Vi", 2, ["TFT14_Item_RebelEmblemItem"], rarity=1),
            make_unit("TFT14_Ekko", 1, [], rarity=2),
        ],
        "traits": [make_trait("TFT14_Rebel", 5, 5, 2), make_trait("TFT14_Bruiser", 2, 1, 1), make_trait("TFT14_UniqueTrait_Solo", 0, 0, 0)],
    }


def bruiser_board(puuid: str, placement: int) -> dict[str, Any]:
    return {
        "puuid": puuid,
        "placement": placement,
        "level": 7,
        "last_round": 20,
        "gold_left": 0,
        "total_damage_to_players": 40,
        "augments": [],
        "units": [make_unit("TFT14_Garen", 3, ["TFT_Item_BFSword"]), make_unit("TFT14_Vi", 1, [])],
        "traits": [make_trait("TFT14_Bruiser", 2, 1, 1)],
    }


def make_match(match_id: str, participants: list[dict[str, Any]], set_number: int = 14, queue_id: int = 1100) -> dict[str, Any]:
    return {
        "metadata": {"match_id": match_id, "participants": [row["puuid"] for row in participants]},
        "info": {
            "game_datetime": 1_700_000_000_000,
            "game_length": 1900.5,
            "game_version": "Version 14.3.556.1234 (Feb 01 2025/12:00:00) [PUBLIC] <Releases/14.3>",
            "queue_id": queue_id,
            "tft_set_number": set_number,
            "participants": participants,
        },
    }


def sample_matches(count: int = 4) -> list[dict[str, Any]]:
    """Each match holds one rebel board (placements 1..count) and one bruiser board (always 8th)."""
    return [make_match(f"KR_{index}", [rebel_board(f"rebel-{index}", index), bruiser_board(f"bruiser-{index}", 8)]) for index in range(1, count + 1)]


@pytest.fixture
def tft_data() -> dict[str, Any]:
    return build_tft_data(RAW_CDRAGON)


@pytest.fixture(autouse=True)
def isolated_state(tmp_path):
    cache_manager.l1.clear()
    cache_manager.l1_stats = {"hits": 0, "misses": 0}
    cache_manager.l2 = None
    cache_manager.l2_connected = False
    clear_tft_data_cache()
    meta_store.configure(tmp_path)
    slow_query_detector.log_path = tmp_path / "logs" / "slow-queries.log"
    slow_query_detector.reset()
    metrics_collector.reset(log=False)
    cache_analyzer.reset_stats()
    error_monitor.error_store.clear()
    error_monitor.recent_errors.clear()
    error_monitor.rate_counter.clear()
    alert_service.history.clear()
    alert_service.cooldowns.clear()
    alert_service.occurrences.clear()
    alert_service.delivery_tasks.clear()
    alert_service.escalation_tasks.clear()
    yield
    clear_tft_data_cache()
