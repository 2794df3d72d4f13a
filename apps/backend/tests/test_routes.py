from __future__ import annotations

import asyncio
import logging

import httpx
import pytest
from fastapi.testclient import TestClient

import main
from conftest import RAW_CDRAGON, rebel_board, sample_matches
from deck_analyzer import analyze_decks
from env_config import Settings
from error_monitor import error_monitor
from meta_store import meta_store
from metrics import metrics_collector

MATCH = sample_matches(1)[0]
MATCH["info"]["participants"].append(rebel_board("me", 6))

LADDER = {
    "tier": "CHALLENGER",
    "entries": [
        {"puuid": "c1", "leaguePoints": 900, "wins": 5, "losses": 5},
        {"puuid": "c2", "leaguePoints": 1200, "wins": 8, "losses": 2},
        {"puuid": "c3", "leaguePoints": 700, "wins": 1, "losses": 9},
    ],
}


def upstream(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if request.url.host == "raw.communitydragon.org":
        return httpx.Response(200, json=RAW_CDRAGON)
    if "/by-riot-id/" in path:
        return httpx.Response(200, json={"puuid": "me", "gameName": "Tester", "tagLine": "KR1"})
    if path.endswith("/ids"):
        return httpx.Response(200, json=["KR_1"])
    if "/tft/match/v1/matches/" in path:
        return httpx.Response(200, json=MATCH)
    if "/summoners/by-puuid/" in path:
        return httpx.Response(200, json={"puuid": "me", "summonerLevel": 120})
    if "/league/v1/by-puuid/" in path:
        return httpx.Response(200, json=[{"queueType": "RANKED_TFT", "tier": "DIAMOND", "rank": "II"}])
    if path.endswith("/challenger"):
        return httpx.Response(200, json=LADDER)
    if path.endswith("/grandmaster") or path.endswith("/master"):
        return httpx.Response(200, json={"entries": []})
    return httpx.Response(404)


def install_services(**settings) -> TestClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    main.services = main.AppServices(Settings(riot_api_key="k", **settings), http_client)
    return TestClient(main.app, raise_server_exceptions=False)


@pytest.fixture
def client():
    main.request_buckets.clear()
    yield install_services()
    main.services = None
    main.request_buckets.clear()


@pytest.fixture
def seeded(tft_data):
    asyncio.run(meta_store.replace_all("decktier", analyze_decks(sample_matches(4), tft_data)))


def test_health_reports_dependencies(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["status"] == "ok"
    assert body["data"]["dependencies"] == {"riotApiKey": True, "aiAnalysis": False, "redis": False, "store": True}


def test_unknown_route_uses_error_envelope(client):
    response = client.get("/api/nope")
    assert response.status_code == 404
    body = response.json()
    assert body["success"] is False
    assert body["statusCode"] == 404
    assert len(error_monitor.error_store) == 1
    entry = next(iter(error_monitor.error_store.values()))
    assert entry["context"]["endpoint"] == main.UNMATCHED_ROUTE
    assert entry["context"]["path"] == "/api/nope"
    assert f"endpoint:{main.UNMATCHED_ROUTE}" in entry["tags"]


def test_unmatched_paths_share_one_metrics_key(client):
    for n in range(50):
        assert client.get(f"/api/scan-{n}").status_code == 404

    key = f"GET:{main.UNMATCHED_ROUTE}"
    assert list(metrics_collector.requests) == [key]
    assert list(metrics_collector.responses) == [key]
    assert list(metrics_collector.errors) == [key]
    assert metrics_collector.requests[key]["count"] == 50
    assert len(error_monitor.error_store) == 1


def test_unhandled_errors_keep_cors_and_route_context():
    main.request_buckets.clear()
    client = install_services(allowed_origins=["https://tftmeta.gg"])

    async def offline():
        raise RuntimeError("cdragon offline")

    main.services.load_tft_data = offline
    try:
        response = client.get("/api/static-data/champions", headers={"Origin": "https://tftmeta.gg"})
        assert response.status_code == 500
        assert response.headers["Access-Control-Allow-Origin"] == "https://tftmeta.gg"
        assert response.json()["success"] is False
        assert client.get("/api/match/KR_1").status_code == 500
    finally:
        main.services = None
        main.request_buckets.clear()

    assert metrics_collector.request_count == 2
    assert metrics_collector.responses["GET:/api/static-data/{kind}"]["statusCodes"] == {500: 1}
    assert metrics_collector.errors["GET:/api/static-data/{kind}"]["errorTypes"] == {"RuntimeError": 1}

    entries = sorted(error_monitor.error_store.values(), key=lambda entry: entry["context"]["endpoint"])
    assert [entry["context"]["endpoint"] for entry in entries] == ["/api/match/{match_id}", "/api/static-data/{kind}"]
    assert entries[0]["fingerprint"] != entries[1]["fingerprint"]
    assert "endpoint:/api/static-data/{kind}" in entries[1]["tags"]


def test_static_data(client):
    body = client.get("/api/static-data/champions").json()
    assert body["data"]["currentSet"] == "Set14"
    assert [row["name"] for row in body["data"]["champions"]] == ["Jinx", "Vi", "Ekko", "Garen"]
    assert "items" not in body["data"]

    assert client.get("/api/static-data/all").json()["data"]["augments"][0]["apiName"] == "TFT14_Augment_ClutteredMind"
    assert client.get("/api/static-data/bogus").status_code == 404


def test_summoner_lookup_is_cached(client):
    first = client.get("/api/summoner", params={"gameName": "Tester", "tagLine": "KR1"}).json()
    assert first["cache"]["hit"] is False
    data = first["data"]
    assert data["account"]["puuid"] == "me"
    assert data["league"]["tier"] == "DIAMOND"
    assert data["platform"] == "kr"
    assert [row["matchId"] for row in data["matches"]] == ["KR_1"]

    second = client.get("/api/summoner", params={"gameName": "tester", "tagLine": "kr1"}).json()
    assert second["cache"]["hit"] is True
    assert second["cache"]["key"] == "summoner_data:kr:tester#kr1"


def test_summoner_refresh_has_cooldown(client):
    body = {"gameName": "Tester", "tagLine": "KR1"}
    assert client.post("/api/summoner/refresh", json=body).status_code == 200
    again = client.post("/api/summoner/refresh", json=body)
    assert again.status_code == 429
    assert "Retry-After" in again.headers


def test_summoner_validation(client):
    response = client.get("/api/summoner", params={"gameName": "Tester"})
    assert response.status_code == 400
    assert response.json()["details"][0]["field"] == "query.tagLine"
    assert client.get("/api/summoner", params={"gameName": "a", "tagLine": "b", "region": "mars"}).status_code == 400


def test_tierlist_from_store(client, seeded):
    first = client.get("/api/tierlist").json()
    assert [deck["tierRank"] for deck in first["data"]] == ["S", "D"]
    assert first["cache"] == {"hit": False, "ttl": main.CACHE_TTL["TIER_LIST"], "key": "tierlist:all"}
    assert client.get("/api/tierlist").json()["cache"]["hit"] is True

    s_tier = client.get("/api/tierlist", params={"tier": "s"}).json()
    assert len(s_tier["data"]) == 1
    assert client.get("/api/tierlist", params={"tier": "Z"}).status_code == 400


def test_ranking_is_paginated(client):
    body = client.get("/api/ranking/top", params={"limit": 2}).json()
    assert [row["puuid"] for row in body["data"]] == ["c2", "c1"]
    assert [row["position"] for row in body["data"]] == [1, 2]
    assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "totalPages": 2, "hasNext": True, "hasPrev": False}

    page_two = client.get("/api/ranking/top", params={"limit": 2, "page": 2}).json()
    assert [row["position"] for row in page_two["data"]] == [3]


def test_ai_analyze_without_key_falls_back(client, seeded):
    response = client.post("/api/ai/analyze", json={"matchId": "KR_1", "userPuuid": "me"})
    assert response.status_code == 200
    result = response.json()["data"]
    assert result["fallback"] is True
    assert result["analysis"]["scoreDetails"]["primaryMatch"]["similarity"] == 100

    missing = client.post("/api/ai/analyze", json={"matchId": "KR_1", "userPuuid": "ghost"})
    assert missing.status_code == 404
    assert client.post("/api/ai/analyze", json={"matchId": ""}).status_code == 400


def test_ai_qna_without_key_falls_back(client, seeded):
    result = client.post("/api/ai/qna", json={"question": "What is strong?"}).json()["data"]
    assert result["fallback"] is True
    assert "1. Rebel Jinx" in result["answer"]
    assert client.post("/api/ai/qna", json={"question": "!!!!"}).status_code == 400


def test_rate_limit_applies_to_api_routes():
    main.request_buckets.clear()
    client = install_services(rate_limit_max_requests=2)
    try:
        assert [client.get("/api/metrics/summary").status_code for _ in range(2)] == [200, 200]
        limited = client.get("/api/metrics/summary")
        assert limited.status_code == 429
        assert int(limited.headers["Retry-After"]) >= 1
        assert "testclient" not in limited.text
        assert client.get("/health").status_code == 200
    finally:
        main.services = None
        main.request_buckets.clear()


def test_cors_preflight():
    main.request_buckets.clear()
    client = install_services(allowed_origins=["https://tftmeta.gg"])
    try:
        allowed = client.options("/api/tierlist", headers={"Origin": "https://tftmeta.gg"})
        assert allowed.status_code == 204
        assert allowed.headers["Access-Control-Allow-Origin"] == "https://tftmeta.gg"
        assert client.options("/api/tierlist", headers={"Origin": "https://evil.example"}).status_code == 403
    finally:
        main.services = None


def test_monitoring_routes(client):
    client.get("/api/nope")
    summary = client.get("/api/metrics/summary").json()["data"]
    assert summary["totalRequests"] >= 1

    recent = client.get("/api/errors").json()["data"]
    assert len(recent) == 1
    fingerprint = recent[0]["fingerprint"]
    assert client.get(f"/api/errors/{fingerprint}").status_code == 200
    assert client.post(f"/api/errors/{fingerprint}/resolve").status_code == 200
    assert client.get("/api/errors", params={"severity": "bogus"}).status_code == 400

    assert client.get("/api/dashboard/health").json()["data"]["checks"]["database"] == "healthy"
    assert client.patch("/api/alerts/rules/critical_errors", json={"channels": ["pager"]}).status_code == 400
    assert client.delete("/api/cache/missing").status_code == 404
    assert client.get("/api/cache/report").headers["content-type"].startswith("text/plain")


def test_monitoring_cleanup_logs_cache_summary(caplog):
    caplog.set_level(logging.INFO, logger="cache_monitor")
    asyncio.run(main.cleanup_monitoring())
    assert "Cache summary keys=" in caplog.text
