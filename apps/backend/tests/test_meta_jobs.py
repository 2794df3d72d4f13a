from __future__ import annotations

import asyncio

from cache_manager import CacheManager
from conftest import make_match, rebel_board, sample_matches
from http_errors import RiotApiError
from meta_jobs import (
    build_match_doc,
    collect_top_matches,
    fetch_ladder,
    get_meta_decks,
    ladder_entries,
    rebuild_meta,
    refresh_tierlist,
    run_periodic,
    sample_top_players,
)
from meta_store import MetaStore
from metrics import metrics_collector

CHALLENGER = {
    "tier": "CHALLENGER",
    "entries": [
        {"puuid": "c1", "summonerId": "s1", "rank": "I", "leaguePoints": 1200, "wins": 30, "losses": 20},
        {"puuid": "c2", "summonerId": "s2", "rank": "I", "leaguePoints": 1500, "wins": 10, "losses": 0},
        {"summonerId": "legacy-without-puuid", "leaguePoints": 9999},
    ],
}
MASTER = {"tier": "MASTER", "entries": [{"puuid": "m1", "leaguePoints": 300, "wins": 0, "losses": 0}]}


class LadderRiot:
    def __init__(self, matches: dict[str, dict]) -> None:
        self.matches = matches
        self.detail_calls: list[str] = []

    async def get_challenger_league(self, region):
        return CHALLENGER

    async def get_grandmaster_league(self, region):
        raise RiotApiError(503, "league-grandmaster")

    async def get_master_league(self, region):
        return MASTER

    async def get_match_ids_by_puuid(self, puuid, region, count=10):
        if puuid == "m1":
            raise RiotApiError(500, "match-ids")
        return {"c2": ["KR_1", "KR_2"], "c1": ["KR_2", "KR_3"]}[puuid]

    async def get_match_detail(self, match_id, region):
        self.detail_calls.append(match_id)
        return self.matches[match_id]


def riot_with_matches() -> LadderRiot:
    return LadderRiot(
        {
            "KR_1": make_match("KR_1", [rebel_board("c2", 1)]),
            "KR_2": make_match("KR_2", [rebel_board("c2", 2), rebel_board("c1", 5)]),
            "KR_3": make_match("KR_3", [rebel_board("c1", 3)], set_number=13),
        }
    )


def test_ladder_entries_sorted_by_lp():
    rows = ladder_entries(CHALLENGER, "challenger")
    assert [row["puuid"] for row in rows] == ["c2", "c1"]
    assert rows[1]["games"] == 50
    assert rows[1]["top4Rate"] == 60.0
    assert rows[0]["tier"] == "CHALLENGER"
    assert ladder_entries(None, "master") == []


def test_fetch_ladder_skips_failing_tier():
    rows = asyncio.run(fetch_ladder(riot_with_matches(), "kr"))
    assert [row["puuid"] for row in rows] == ["c2", "c1", "m1"]
    assert rows[-1]["top4Rate"] == 0.0


def test_sample_top_players_walks_down_tiers():
    riot = riot_with_matches()
    assert [row["puuid"] for row in asyncio.run(sample_top_players(riot, "kr", 2))] == ["c2", "c1"]
    assert [row["puuid"] for row in asyncio.run(sample_top_players(riot, "kr", 5))] == ["c2", "c1", "m1"]


def test_build_match_doc_trims_participants():
    doc = build_match_doc(make_match("KR_7", [rebel_board("p", 1)]))
    assert doc["matchId"] == "KR_7"
    assert doc["patch"] == "14.3"
    assert doc["setNumber"] == 14
    participant = doc["info"]["participants"][0]
    assert "riotIdGameName" not in participant
    assert participant["units"][0]["itemNames"] == ["TFT_Item_InfinityEdge", "TFT_Item_GuinsoosRageblade"]


def test_collect_top_matches_stores_new_current_set_matches(tmp_path):
    store = MetaStore(tmp_path / "store.json")
    riot = riot_with_matches()

    async def scenario():
        await store.upsert("match", "matchId", {"matchId": "KR_1"})
        summary = await collect_top_matches(riot, "KR", "14", sample_players=3, matches_per_player=5, store=store)
        return summary, await store.find("match"), await store.find("ranker", sort="-leaguePoints")

    summary, matches, rankers = asyncio.run(scenario())
    assert summary == {"region": "kr", "rankers": 3, "matchIds": 3, "stored": 1, "skipped": 2}
    assert riot.detail_calls == ["KR_2", "KR_3"]
    assert [doc["matchId"] for doc in matches] == ["KR_1", "KR_2"]
    assert [row["puuid"] for row in rankers] == ["c2", "c1", "m1"]
    assert rankers[0]["region"] == "kr"


def test_rebuild_meta_replaces_collections_and_drops_tierlist_cache(tmp_path, tft_data):
    store = MetaStore(tmp_path / "store.json")
    cache = CacheManager()
    docs = [build_match_doc(match) for match in sample_matches(4)]
    docs.append(build_match_doc(make_match("OLD_1", [rebel_board("old", 1)], set_number=13)))

    async def scenario():
        await store.upsert_many("match", "matchId", docs)
        await cache.set("tierlist:all", ["stale"], 600)
        await cache.set("ranking:kr", ["kept"], 600)
        summary = await rebuild_meta(tft_data, store, cache)
        return summary, await get_meta_decks(store), await get_meta_decks(store, "s", limit=5)

    summary, decks, s_tier = asyncio.run(scenario())
    assert summary["matches"] == 4
    assert summary["decks"] == 2
    assert summary["items"] == 0
    assert [deck["deckKey"] for deck in decks] == ["TFT14_Rebel TFT14_Jinx", "TFT14_Bruiser TFT14_Garen"]
    assert all(deck["updatedAt"] == summary["updatedAt"] for deck in decks)
    assert [deck["tierRank"] for deck in s_tier] == ["S"]
    assert "tierlist:all" not in cache.l1
    assert "ranking:kr" in cache.l1


def test_refresh_tierlist_collects_then_rebuilds(tmp_path, tft_data):
    store = MetaStore(tmp_path / "store.json")

    async def load_tft_data():
        return tft_data

    result = asyncio.run(refresh_tierlist(riot_with_matches(), load_tft_data, "kr", 3, 5, store, CacheManager()))
    assert result["collection"]["stored"] == 2
    assert result["meta"]["matches"] == 2

    timing = metrics_collector.get_metrics()["performance"]["tierlist_refresh"]
    assert timing["count"] == 1
    assert timing["metadata"] == {"region": {"kr": 1}}


def test_run_periodic_survives_failures():
    calls = []

    async def job():
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("upstream down")
        if len(calls) == 3:
            raise asyncio.CancelledError()

    async def scenario():
        try:
            await run_periodic("test", 0, job)
        except asyncio.CancelledError:
            return len(calls)

    assert asyncio.run(scenario()) == 3
