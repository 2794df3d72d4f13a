from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from cache_manager import CacheManager, cache_manager
from deck_analyzer import analyze_decks
from http_errors import ExternalApiError, RiotApiError
from meta_store import MetaStore, meta_store
from metrics import metrics_collector
from riot_api import RiotApiClient, normalize_region
from stats_analyzer import analyze_item_stats, analyze_trait_stats
from tft_data import as_list
from tft_helpers import patch_from_game_version

logger = logging.getLogger(__name__)

LADDER_TIERS = ("challenger", "grandmaster", "master")
TIER_LIST_CACHE_KEYS = ("tierlist:all", "tierlist:S", "tierlist:A", "tierlist:B", "tierlist:C", "tierlist:D", "tierlist:items", "tierlist:traits")


def ladder_entries(league: dict[str, Any] | None, tier: str) -> list[dict[str, Any]]:
    rows = []
    for entry in as_list((league or {}).get("entries")):
        if not entry.get("puuid"):
            continue
        wins = int(entry.get("wins") or 0)
        losses = int(entry.get("losses") or 0)
        games = wins + losses
        rows.append(
            {
                "puuid": entry["puuid"],
                "summonerId": entry.get("summonerId"),
                "tier": str((league or {}).get("tier") or tier).upper(),
                "rank": entry.get("rank") or "I",
                "leaguePoints": int(entry.get("leaguePoints") or 0),
                "wins": wins,
                "losses": losses,
                "games": games,
                "top4Rate": round(wins / games * 100, 2) if games else 0.0,
            }
        )
    rows.sort(key=lambda row: -row["leaguePoints"])
    return rows


async def fetch_ladder(riot: RiotApiClient, region: str, tiers: tuple[str, ...] = LADDER_TIERS) -> list[dict[str, Any]]:
    """Merged, LP-sorted ladder for the requested apex tiers; a tier that fails upstream is skipped."""
    loaders = {"challenger": riot.get_challenger_league, "grandmaster": riot.get_grandmaster_league, "master": riot.get_master_league}
    results = await asyncio.gather(*(loaders[tier](region) for tier in tiers), return_exceptions=True)
    rows: list[dict[str, Any]] = []
    for tier, result in zip(tiers, results):
        if isinstance(result, BaseException):
            logger.warning("Could not load %s ladder for %s: %s", tier, region, result)
            continue
        rows.extend(ladder_entries(result, tier))
    rows.sort(key=lambda row: -row["leaguePoints"])
    return rows


async def sample_top_players(riot: RiotApiClient, region: str, limit: int) -> list[dict[str, Any]]:
    """Highest ladder players, walking down from challenger until `limit` are found."""
    players: list[dict[str, Any]] = []
    for tier in LADDER_TIERS:
        rows = await fetch_ladder(riot, region, (tier,))
        players.extend(rows[: limit - len(players)])
        if len(players) >= limit:
            break
    return players


def trim_participant(participant: dict[str, Any]) -> dict[str, Any]:
    return {
        "puuid": participant.get("puuid"),
        "placement": participant.get("placement"),
        "level": participant.get("level"),
        "last_round": participant.get("last_round"),
        "augments": as_list(participant.get("augments")),
        "traits": [
            {"name": trait.get("name"), "num_units": trait.get("num_units"), "style": trait.get("style"), "tier_current": trait.get("tier_current")}
            for trait in as_list(participant.get("traits"))
        ],
        "units": [
            {"character_id": unit.get("character_id"), "tier": unit.get("tier"), "rarity": unit.get("rarity"), "itemNames": as_list(unit.get("itemNames"))}
            for unit in as_list(participant.get("units"))
        ],
    }


def build_match_doc(match: dict[str, Any]) -> dict[str, Any]:
    info = match.get("info") or {}
    return {
        "matchId": (match.get("metadata") or {}).get("match_id"),
        "gameDatetime": info.get("game_datetime"),
        "setNumber": info.get("tft_set_number"),
        "patch": patch_from_game_version(info.get("game_version")),
        "queueId": info.get("queue_id"),
        "info": {"participants": [trim_participant(row) for row in as_list(info.get("participants"))]},
    }


def is_current_set(match: dict[str, Any], set_number: str) -> bool:
    if not set_number:
        return True
    return str((match.get("info") or {}).get("tft_set_number") or "") == str(set_number)


async def collect_top_matches(
    riot: RiotApiClient,
    region: str,
    set_number: str = "",
    sample_players: int = 10,
    matches_per_player: int = 10,
    store: MetaStore | None = None,
) -> dict[str, Any]:
    store = store or meta_store
    region = normalize_region(region)
    players = await sample_top_players(riot, region, sample_players)
    if players:
        await store.upsert_many("ranker", "puuid", [{**player, "region": region, "updatedAt": int(time.time() * 1000)} for player in players])

    match_ids: list[str] = []
    for player in players:
        try:
            ids = await riot.get_match_ids_by_puuid(player["puuid"], region, matches_per_player)
        except (RiotApiError, ExternalApiError) as error:
            logger.warning("Match ids for ranker %s... failed: %s", player["puuid"][:8], error)
            continue
        match_ids.extend(match_id for match_id in ids if match_id not in match_ids)

    docs = []
    skipped = 0
    for match_id in match_ids:
        if await store.find_one("match", {"matchId": match_id}):
            skipped += 1
            continue
        try:
            match = await riot.get_match_detail(match_id, region)
        except (RiotApiError, ExternalApiError) as error:
            logger.warning("Match %s failed: %s", match_id, error)
            continue
        if not is_current_set(match, set_number):
            skipped += 1
            continue
        docs.append(build_match_doc(match))

    stored = await store.upsert_many("match", "matchId", docs)
    logger.info("Collected %s new matches from %s rankers in %s (%s skipped)", stored, len(players), region, skipped)
    return {"region": region, "rankers": len(players), "matchIds": len(match_ids), "stored": stored, "skipped": skipped}


async def rebuild_meta(tft_data: dict[str, Any], store: MetaStore | None = None, cache: CacheManager | None = None) -> dict[str, Any]:
    store = store or meta_store
    cache = cache or cache_manager
    matches = await store.find("match", sort="-gameDatetime")
    if tft_data.get("setNumber"):
        matches = [match for match in matches if str(match.get("setNumber") or "") in ("", str(tft_data["setNumber"]))]

    decks = analyze_decks(matches, tft_data)
    items = analyze_item_stats(matches, tft_data)
    traits = analyze_trait_stats(matches, tft_data)
    updated_at = int(time.time() * 1000)
    await store.replace_all("decktier", [{**deck, "updatedAt": updated_at} for deck in decks])
    await store.replace_all("itemstats", [{**row, "updatedAt": updated_at} for row in items])
    await store.replace_all("traitstats", [{**row, "updatedAt": updated_at} for row in traits])
    evicted = 0
    for key in TIER_LIST_CACHE_KEYS:
        evicted += int(await cache.delete(key))
    logger.info("Meta rebuilt from %s matches: %s decks, %s items, %s traits (%s cache keys dropped)", len(matches), len(decks), len(items), len(traits), evicted)
    return {"matches": len(matches), "decks": len(decks), "items": len(items), "traits": len(traits), "updatedAt": updated_at}


async def refresh_tierlist(
    riot: RiotApiClient,
    load_tft_data: Callable[[], Awaitable[dict[str, Any]]],
    region: str,
    sample_players: int = 10,
    matches_per_player: int = 10,
    store: MetaStore | None = None,
    cache: CacheManager | None = None,
) -> dict[str, Any]:
    started = time.perf_counter()
    tft_data = await load_tft_data()
    collected = await collect_top_matches(riot, region, tft_data.get("setNumber") or "", sample_players, matches_per_player, store)
    rebuilt = await rebuild_meta(tft_data, store, cache)
    metrics_collector.record_performance("tierlist_refresh", (time.perf_counter() - started) * 1000, {"region": normalize_region(region)})
    return {"collection": collected, "meta": rebuilt}


async def get_meta_decks(store: MetaStore | None = None, tier: str | None = None, limit: int | None = None) -> list[dict[str, Any]]:
    store = store or meta_store
    query = {"tierRank": tier.upper()} if tier else None
    return await store.find("decktier", query, sort="tierOrder", limit=limit)


async def run_periodic(name: str, interval_seconds: float, job: Callable[[], Awaitable[Any]]) -> None:
    """Run `job` forever at a fixed interval; failures are logged and the loop keeps going."""
    while True:
        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Background job %s failed", name)
        await asyncio.sleep(interval_seconds)
