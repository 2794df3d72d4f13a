from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from cache_manager import CacheManager, cache_manager
from cache_ttl import CACHE_TTL

logger = logging.getLogger(__name__)

CDRAGON_URL = "https://raw.communitydragon.org/latest/cdragon/tft/en_us.json"
ASSET_BASE_URL = "https://raw.communitydragon.org/latest/game/"
IN_PROCESS_TTL = 6 * 60 * 60

STYLE_NUMBER_TO_VARIANT = {0: "inactive", 1: "bronze", 3: "silver", 4: "chromatic", 5: "gold", 6: "prismatic"}
RARITY_COST = {0: 1, 1: 2, 2: 3, 3: 4, 4: 4, 5: 5, 6: 5}
ITEM_GROUPS = ("basic", "completed", "ornn", "radiant", "emblem", "support", "unknown")

tft_data_cache: dict[str, Any] = {"loadedAt": 0, "data": None}


def as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def asset_url(path: Any) -> str:
    raw = str(path or "").strip()
    if not raw:
        return ""
    if raw.startswith(("http://", "https://")):
        return raw.replace("/cdragon/tft/assets/", "/game/assets/")
    icon = raw.lower().replace(".tex", ".png").replace(".dds", ".png")
    return ASSET_BASE_URL + icon.lstrip("/")


def _set_candidates(raw: dict[str, Any]) -> dict[str, dict[str, Any]]:
    out: dict[str, dict[str, Any]] = {}
    sets = raw.get("sets")
    if isinstance(sets, dict):
        for key, value in sets.items():
            if str(key).isdigit() and isinstance(value, dict):
                out[str(key)] = value
    if not out:
        for entry in as_list(raw.get("setData")):
            number = str(entry.get("number") or "").strip()
            if number.isdigit() and number not in out:
                out[number] = entry
    return out


def _champion(row: dict[str, Any]) -> dict[str, Any]:
    ability = row.get("ability") or (as_list(row.get("abilities")) or [None])[0] or {}
    return {
        "apiName": row.get("apiName"),
        "name": row.get("name") or row.get("apiName"),
        "cost": int(row.get("cost") or 0),
        "traits": [str(trait) for trait in as_list(row.get("traits"))],
        "icon": asset_url(row.get("icon")),
        "tileIcon": asset_url(row.get("tileIcon") or row.get("icon")),
        "ability": {"name": ability.get("name"), "desc": ability.get("desc"), "icon": asset_url(ability.get("icon"))} if ability else None,
        "stats": row.get("stats") or {},
    }


def _trait(row: dict[str, Any]) -> dict[str, Any]:
    effects = sorted(
        (
            {
                "minUnits": int(effect.get("minUnits") or 0),
                "maxUnits": int(effect.get("maxUnits") or 0),
                "style": int(effect.get("style") or 0),
                "variables": effect.get("variables") or {},
            }
            for effect in as_list(row.get("effects"))
        ),
        key=lambda effect: effect["minUnits"],
    )
    top_style = max((effect["style"] for effect in effects), default=0)
    return {
        "apiName": row.get("apiName"),
        "name": row.get("name") or row.get("apiName"),
        "desc": row.get("desc") or "",
        "icon": asset_url(row.get("icon")),
        "effects": effects,
        "style": STYLE_NUMBER_TO_VARIANT.get(top_style, "none"),
    }


def _skip_item(row: dict[str, Any], set_number: str) -> bool:
    api_name = str(row.get("apiName") or "").lower()
    icon = str(row.get("icon") or "").lower()
    if not icon or not api_name:
        return True
    if any(token in icon for token in ("_placeholder", "_debug", "_test")):
        return True
    if any(token in api_name for token in ("_debug_", "_test_", "_placeholder_", "trainingdummy")):
        return True
    is_other_set = "_set" in api_name and f"_set{set_number}_" not in api_name
    return is_other_set and not as_list(row.get("composition")) and not row.get("unique") and not as_list(row.get("associatedTraits"))


def _item_group(row: dict[str, Any]) -> str:
    api_name = str(row.get("apiName") or "").lower()
    icon = str(row.get("icon") or "").lower()
    if "augments/" in icon or "augment" in api_name:
        return "augment"
    if "items/components/" in icon:
        return "basic"
    if "items/radiant/" in icon:
        return "radiant"
    if "items/artifacts/" in icon or "ornn" in api_name or "artifact" in api_name:
        return "ornn"
    if "items/emblems/" in icon or as_list(row.get("associatedTraits")):
        return "emblem"
    if "items/special/support/" in icon:
        return "support"
    if as_list(row.get("composition")):
        return "completed"
    if api_name.startswith("tft_item_") and "_component_" not in api_name:
        return "completed"
    return "unknown"


def build_tft_data(raw: dict[str, Any], set_override: str = "") -> dict[str, Any]:
    """Shape a communitydragon dump into the static data of one set.

    The current set is ``set_override`` when present in the dump, otherwise
    the highest numbered set.
    """
    candidates = _set_candidates(raw)
    if not candidates:
        raise ValueError("No TFT sets found in static data.")
    override = str(set_override or "").lower().replace("set", "").strip()
    set_number = override if override in candidates else max(candidates, key=int)
    set_entry = candidates[set_number]

    champions = [
        _champion(row)
        for row in as_list(set_entry.get("champions"))
        if int(row.get("cost") or 0) > 0 and as_list(row.get("traits")) and "tutorial" not in str(row.get("apiName") or "").lower()
    ]
    traits = [_trait(row) for row in as_list(set_entry.get("traits")) if row.get("apiName")]

    items: dict[str, list[dict[str, Any]]] = {group: [] for group in ITEM_GROUPS}
    augments: list[dict[str, Any]] = []
    for row in as_list(raw.get("items")):
        if _skip_item(row, set_number):
            continue
        item = {
            "apiName": row.get("apiName"),
            "name": row.get("name") or row.get("apiName"),
            "desc": row.get("desc") or "",
            "icon": asset_url(row.get("icon")),
            "composition": as_list(row.get("composition")),
            "associatedTraits": as_list(row.get("associatedTraits")),
            "unique": bool(row.get("unique")),
        }
        group = _item_group(row)
        if group == "augment":
            augments.append(item)
        else:
            item["type"] = group
            items[group].append(item)

    item_map = {str(item["apiName"]).lower(): item for group in ITEM_GROUPS for item in items[group]}
    return {
        "currentSet": f"Set{set_number}",
        "setNumber": set_number,
        "champions": champions,
        "traits": traits,
        "items": items,
        "augments": augments,
        "championMap": {str(row["apiName"]).lower(): row for row in champions},
        "traitMap": {str(row["apiName"]).lower(): row for row in traits},
        "itemMap": item_map,
    }


def empty_tft_data() -> dict[str, Any]:
    return {
        "currentSet": "",
        "setNumber": "",
        "champions": [],
        "traits": [],
        "items": {group: [] for group in ITEM_GROUPS},
        "augments": [],
        "championMap": {},
        "traitMap": {},
        "itemMap": {},
        "fallback": True,
    }


async def get_tft_data(
    http_client: httpx.AsyncClient,
    set_override: str = "",
    cache: CacheManager | None = None,
    force: bool = False,
) -> dict[str, Any]:
    cache = cache or cache_manager
    data = tft_data_cache.get("data")
    if not force and data and time.time() - tft_data_cache.get("loadedAt", 0) < IN_PROCESS_TTL:
        return data

    cache_key = f"static_data:tft:{set_override or 'latest'}"
    if not force:
        shared = await cache.get(cache_key)
        if shared:
            tft_data_cache["loadedAt"] = time.time()
            tft_data_cache["data"] = shared
            return shared

    try:
        response = await http_client.get(CDRAGON_URL, headers={"User-Agent": "tftmeta-backend/1.0"})
        response.raise_for_status()
        built = build_tft_data(response.json(), set_override)
    except (httpx.HTTPError, ValueError) as error:
        logger.error("Failed to load TFT static data: %s", error)
        if data:
            logger.warning("Serving stale TFT static data for %s", data.get("currentSet"))
            return data
        return empty_tft_data()

    logger.info(
        "Loaded TFT static data %s: %s champions, %s traits, %s items, %s augments",
        built["currentSet"],
        len(built["champions"]),
        len(built["traits"]),
        len(built["itemMap"]),
        len(built["augments"]),
    )
    tft_data_cache["loadedAt"] = time.time()
    tft_data_cache["data"] = built
    await cache.set(cache_key, built, CACHE_TTL["STATIC_DATA"])
    return built


def clear_tft_data_cache() -> None:
    tft_data_cache["loadedAt"] = 0
    tft_data_cache["data"] = None


def unit_cost(tft_data: dict[str, Any], character_id: Any, rarity: Any = None) -> int:
    champion = (tft_data.get("championMap") or {}).get(str(character_id or "").lower())
    if champion and champion.get("cost"):
        return int(champion["cost"])
    try:
        return RARITY_COST.get(int(rarity), 0)
    except (TypeError, ValueError):
        return 0
