from __future__ import annotations

import asyncio
import itertools
import logging
import time
from typing import Any, Awaitable, Callable
from urllib.parse import quote

import httpx

from cache_manager import CacheManager, cache_manager
from cache_ttl import CACHE_TTL
from http_errors import CircuitBreaker, ExternalApiError, HttpError, RiotApiError, with_retry
from metrics import metrics_collector

logger = logging.getLogger(__name__)

RANKED_QUEUE_ID = 1100
NO_RETRY_STATUSES = {401, 403, 404}
DEFAULT_RETRY_AFTER = 60
MAX_RETRY_AFTER = 120

REGIONS = {
    "kr": ("kr", "asia"),
    "jp": ("jp1", "asia"),
    "na": ("na1", "americas"),
    "br": ("br1", "americas"),
    "la1": ("la1", "americas"),
    "la2": ("la2", "americas"),
    "euw": ("euw1", "europe"),
    "eune": ("eun1", "europe"),
    "tr": ("tr1", "europe"),
    "ru": ("ru", "europe"),
    "oce": ("oc1", "sea"),
}


def normalize_region(region: str | None, default: str = "kr") -> str:
    value = str(region or default).strip().lower()
    return value if value in REGIONS else default


def platform_host(region: str) -> str:
    return REGIONS.get(normalize_region(region), REGIONS["kr"])[0]


def routing_region(region: str) -> str:
    return REGIONS.get(normalize_region(region), REGIONS["kr"])[1]


def riot_platform_url(region: str, pathname: str) -> str:
    return f"https://{platform_host(region)}.api.riotgames.com{pathname}"


def riot_routing_url(region: str, pathname: str) -> str:
    return f"https://{routing_region(region)}.api.riotgames.com{pathname}"


def _retry_after(response: httpx.Response) -> int | None:
    try:
        value = int(float(response.headers.get("Retry-After", "")))
    except ValueError:
        return None
    return value if value > 0 else None


def _should_retry(error: BaseException) -> bool:
    if isinstance(error, RiotApiError):
        return error.upstream_status not in NO_RETRY_STATUSES
    return isinstance(error, ExternalApiError)


def _rate_limit_delay(error: BaseException, _attempt: int) -> float | None:
    if isinstance(error, RiotApiError) and error.upstream_status == 429:
        logger.warning("Riot rate limit on %s", error.endpoint)
        return min(error.retry_after or DEFAULT_RETRY_AFTER, MAX_RETRY_AFTER)
    return None


def _is_breaker_failure(error: BaseException) -> bool:
    if isinstance(error, RiotApiError):
        return error.upstream_status is None or error.upstream_status >= 500
    return isinstance(error, (ExternalApiError, httpx.TransportError))


class RiotApiClient:
    """Riot REST client with retries, a concurrency cap, a circuit breaker and caching."""

    def __init__(
        self,
        api_key: str = "",
        http_client: httpx.AsyncClient | None = None,
        timeout_ms: int = 10000,
        cache: CacheManager | None = None,
        max_attempts: int = 3,
        max_concurrency: int = 5,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.api_key = api_key
        self.http_client = http_client
        self.timeout = timeout_ms / 1000.0
        self.cache = cache or cache_manager
        self.max_attempts = max(1, max_attempts)
        self.semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self.base_delay = base_delay
        self.sleep = sleep
        self.breaker = CircuitBreaker("riot")
        self._owns_client = http_client is None

    async def close(self) -> None:
        if self._owns_client and self.http_client is not None:
            await self.http_client.aclose()
            self.http_client = None

    def _client(self) -> httpx.AsyncClient:
        if self.http_client is None:
            self.http_client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout, connect=10.0))
        return self.http_client

    async def request(self, url: str, endpoint: str) -> Any:
        if not self.api_key:
            raise HttpError("RIOT_API_KEY is missing on the server.", 503, user_message="Riot API access is not configured.")
        async with self.semaphore:
            try:
                return await self.breaker.call(lambda: self._request_with_retry(url, endpoint), is_failure=_is_breaker_failure)
            finally:
                metrics_collector.set_circuit_state("riot", endpoint, self.breaker.state)

    async def _request_with_retry(self, url: str, endpoint: str) -> Any:
        attempts = itertools.count(1)
        return await with_retry(
            lambda: self._send(url, endpoint, next(attempts)),
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            should_retry=_should_retry,
            delay_for=_rate_limit_delay,
            sleep=self.sleep,
            label=f"Riot request {endpoint}",
        )

    async def _send(self, url: str, endpoint: str, attempt: int) -> Any:
        started = time.perf_counter()
        try:
            response = await self._client().get(
                url,
                headers={"X-Riot-Token": self.api_key, "User-Agent": "tftmeta-backend/1.0"},
                timeout=self.timeout * attempt,
            )
        except httpx.TimeoutException as error:
            metrics_collector.record_api_call("riot", endpoint, (time.perf_counter() - started) * 1000, False, error_type="Timeout", is_timeout=True)
            raise ExternalApiError(f"Riot API request timed out: {endpoint}", "riot", original_message=str(error)) from error
        except httpx.TransportError as error:
            metrics_collector.record_api_call("riot", endpoint, (time.perf_counter() - started) * 1000, False, error_type=type(error).__name__)
            raise ExternalApiError(f"Could not reach the Riot API: {endpoint}", "riot", original_message=str(error)) from error

        duration = (time.perf_counter() - started) * 1000
        ok = response.status_code < 400
        metrics_collector.record_api_call(
            "riot",
            endpoint,
            duration,
            ok,
            status_code=response.status_code,
            error_type=None if ok else f"HTTP_{response.status_code}",
            is_rate_limit=response.status_code == 429,
        )
        if not ok:
            raise RiotApiError(response.status_code, endpoint=endpoint, retry_after=_retry_after(response))
        return response.json()

    async def _cached(self, key: str, ttl: int, url: str, endpoint: str) -> Any:
        return await self.cache.remember(key, ttl, lambda: self.request(url, endpoint))

    async def get_account_by_riot_id(self, game_name: str, tag_line: str, region: str) -> dict[str, Any]:
        url = riot_routing_url(region, f"/riot/account/v1/accounts/by-riot-id/{quote(game_name)}/{quote(tag_line)}")
        key = f"account:{routing_region(region)}:{game_name.lower()}#{tag_line.lower()}"
        return await self._cached(key, CACHE_TTL["SUMMONER_INFO"], url, "account-by-riot-id")

    async def get_account_by_puuid(self, puuid: str, region: str) -> dict[str, Any]:
        url = riot_routing_url(region, f"/riot/account/v1/accounts/by-puuid/{puuid}")
        return await self._cached(f"account:{routing_region(region)}:{puuid}", CACHE_TTL["SUMMONER_INFO"], url, "account-by-puuid")

    async def get_match_ids_by_puuid(self, puuid: str, region: str, count: int = 10, queue: int | None = RANKED_QUEUE_ID) -> list[str]:
        query = f"start=0&count={max(1, min(100, int(count)))}"
        if queue:
            query += f"&queue={queue}"
        url = riot_routing_url(region, f"/tft/match/v1/matches/by-puuid/{puuid}/ids?{query}")
        try:
            ids = await self._cached(f"match_ids:{routing_region(region)}:{puuid}:{count}:{queue or 'all'}", CACHE_TTL["MATCH_LIST"], url, "match-ids")
        except RiotApiError as error:
            if error.upstream_status == 404:
                logger.info("No recent matches for %s...", puuid[:8])
                return []
            raise
        return [str(match_id) for match_id in ids or []]

    async def invalidate_player(self, puuid: str, region: str, count: int = 10) -> int:
        keys = (
            f"match_ids:{routing_region(region)}:{puuid}:{count}:{RANKED_QUEUE_ID}",
            f"summoner:{platform_host(region)}:{puuid}",
            f"league_entry:{platform_host(region)}:{puuid}",
        )
        dropped = 0
        for key in keys:
            dropped += int(await self.cache.delete(key))
        return dropped

    async def get_match_detail(self, match_id: str, region: str) -> dict[str, Any]:
        url = riot_routing_url(region, f"/tft/match/v1/matches/{match_id}")
        return await self._cached(f"match:{match_id}", CACHE_TTL["MATCH_DETAIL"], url, "match-detail")

    async def get_match_history(self, region: str, puuid: str, count: int = 10) -> list[dict[str, Any]]:
        match_ids = await self.get_match_ids_by_puuid(puuid, region, count)
        if not match_ids:
            return []
        results = await asyncio.gather(*(self.get_match_detail(match_id, region) for match_id in match_ids), return_exceptions=True)
        matches = []
        for match_id, result in zip(match_ids, results):
            if isinstance(result, Exception):
                logger.warning("Skipping match %s: %s", match_id, result)
                continue
            matches.append(result)
        return matches

    async def _league(self, tier: str, region: str) -> dict[str, Any]:
        url = riot_platform_url(region, f"/tft/league/v1/{tier}")
        return await self._cached(f"league:{platform_host(region)}:{tier}", CACHE_TTL["RANKING"], url, f"league-{tier}")

    async def get_challenger_league(self, region: str) -> dict[str, Any]:
        return await self._league("challenger", region)

    async def get_grandmaster_league(self, region: str) -> dict[str, Any]:
        return await self._league("grandmaster", region)

    async def get_master_league(self, region: str) -> dict[str, Any]:
        return await self._league("master", region)

    async def get_summoner_by_puuid(self, puuid: str, region: str) -> dict[str, Any]:
        url = riot_platform_url(region, f"/tft/summoner/v1/summoners/by-puuid/{puuid}")
        data = await self._cached(f"summoner:{platform_host(region)}:{puuid}", CACHE_TTL["SUMMONER_DATA"], url, "summoner-by-puuid")
        if not isinstance(data, dict):
            raise ExternalApiError("Invalid summoner payload from the Riot API.", "riot")
        return {
            **data,
            "id": data.get("id") or "",
            "puuid": data.get("puuid") or puuid,
            "profileIconId": data.get("profileIconId") or 0,
            "revisionDate": data.get("revisionDate") or int(time.time() * 1000),
            "summonerLevel": data.get("summonerLevel") or 1,
        }

    async def get_league_entry_by_puuid(self, puuid: str, region: str) -> dict[str, Any] | None:
        url = riot_platform_url(region, f"/tft/league/v1/by-puuid/{puuid}")
        try:
            entries = await self._cached(f"league_entry:{platform_host(region)}:{puuid}", CACHE_TTL["PLAYER_STATS"], url, "league-by-puuid")
        except RiotApiError as error:
            if error.upstream_status == 404:
                return None
            raise
        if not isinstance(entries, list):
            logger.warning("League entries for %s... were not a list", puuid[:8])
            return None
        return next((entry for entry in entries if entry.get("queueType") == "RANKED_TFT"), None)
