from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from ai_services import AIAnalysisService, QnAService, build_generator
from alert_service import alert_service
from cache_manager import cache_manager
from cache_monitor import cache_monitor
from cache_ttl import CACHE_TTL
from env_config import Settings, configure_logging, load_settings
from error_monitor import error_monitor
from http_errors import HttpError, NotFoundError, RateLimitError, ValidationError, normalize_error
from meta_jobs import fetch_ladder, get_meta_decks, refresh_tierlist, run_periodic
from meta_store import meta_store
from metrics import metrics_collector
from monitoring_routes import router as monitoring_router
from responses import cached, error_response, paginated, success_body
from riot_api import REGIONS, RiotApiClient, platform_host
from slow_query_detector import slow_query_detector
from tft_data import as_list, get_tft_data
from tft_helpers import summarize_match

logger = logging.getLogger(__name__)

STATIC_DATA_KINDS = ("champions", "items", "traits", "augments")
TIER_RANKS = ("S", "A", "B", "C", "D")
CLEANUP_INTERVAL_SECONDS = 60 * 60
UNMATCHED_ROUTE = "<unmatched>"

request_buckets: dict[str, dict[str, int]] = {}
started_at = time.time()


class AppServices:
    """Shared clients for one application lifetime."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient, generator: Any = None) -> None:
        self.settings = settings
        self.http_client = http_client
        self.riot = RiotApiClient(settings.riot_api_key, http_client, settings.riot_timeout_ms)
        self.analysis = AIAnalysisService(self.riot, self.load_tft_data, generator)
        self.qna = QnAService(self.load_tft_data, generator)
        self.background_tasks: list[asyncio.Task] = []

    async def load_tft_data(self) -> dict[str, Any]:
        return await get_tft_data(self.http_client, self.settings.tft_set)

    def region(self, value: str | None) -> str:
        region = (value or self.settings.default_region).strip().lower()
        if region not in REGIONS:
            raise ValidationError(f"Unsupported region {value}.", field="region", value=value)
        return region


services: AppServices | None = None


def get_services() -> AppServices:
    if services is None:
        raise HttpError("Application services are not initialised.", 503)
    return services


def current_settings() -> Settings:
    return services.settings if services is not None else Settings()


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def route_path(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or UNMATCHED_ROUTE


class CorsAndRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        settings = current_settings()
        origin = request.headers.get("origin", "")
        is_allowed = (not origin) or (not settings.allowed_origins) or (origin in settings.allowed_origins)

        if request.method == "OPTIONS":
            if not is_allowed:
                return error_response(HttpError(f"Origin {origin} not allowed.", 403, user_message="Origin not allowed."))
            response = Response(status_code=204)
            self._cors_headers(response, origin)
            return response

        if not is_allowed:
            return error_response(HttpError(f"Origin {origin} not allowed.", 403, user_message="Origin not allowed."))

        if request.url.path.startswith("/api"):
            now_ms = int(time.time() * 1000)
            ip = client_ip(request)
            bucket = request_buckets.get(ip)
            if bucket is None or now_ms - bucket["windowStart"] > settings.rate_limit_window_ms:
                request_buckets[ip] = {"windowStart": now_ms, "count": 1}
            elif bucket["count"] >= settings.rate_limit_max_requests:
                retry_after = max(1, (settings.rate_limit_window_ms - (now_ms - bucket["windowStart"])) // 1000)
                logger.warning("Rate limit exceeded for %s on %s", ip, request.url.path)
                response = error_response(RateLimitError(retry_after, "Too many requests."))
                self._cors_headers(response, origin)
                return response
            else:
                bucket["count"] += 1

        response = await call_next(request)
        self._cors_headers(response, origin)
        return response

    @staticmethod
    def _cors_headers(response, origin: str) -> None:
        if origin:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Allow-Methods"] = "GET,POST,PATCH,DELETE,OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as error:
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            response = await handle_error(request, normalize_error(error), error)
        path = route_path(request)
        size = response.headers.get("content-length")
        metrics_collector.record_request(request.method, path, request.headers.get("user-agent"), client_ip(request))
        metrics_collector.record_response(request.method, path, response.status_code, (time.perf_counter() - started) * 1000, int(size) if size else None)
        return response


async def cleanup_monitoring() -> None:
    metrics_collector.cleanup()
    error_monitor.cleanup()
    alert_service.cleanup()
    cache_manager.purge_expired()
    cache_monitor.log_stats()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    global services
    settings = load_settings()
    configure_logging(settings.log_level)
    meta_store.configure(settings.data_dir)
    slow_query_detector.configure(settings)
    await cache_manager.connect(settings.redis_url)

    http_client = httpx.AsyncClient(timeout=httpx.Timeout(25.0, connect=10.0))
    alert_service.configure(settings, http_client)
    error_monitor.subscribe(alert_service.notify)
    app_services = services = AppServices(settings, http_client, build_generator(settings))

    if settings.enable_tierlist_job:
        services.background_tasks.append(asyncio.create_task(run_periodic("tierlist", CACHE_TTL["META_STATS"], lambda: run_tierlist_refresh(app_services))))
    if settings.enable_metrics_cleanup:
        services.background_tasks.append(asyncio.create_task(run_periodic("monitoring-cleanup", CLEANUP_INTERVAL_SECONDS, cleanup_monitoring)))
    logger.info("tftmeta backend started (%s, region=%s, port=%s)", settings.environment, settings.default_region, settings.port)

    try:
        yield
    finally:
        for task in services.background_tasks:
            task.cancel()
        await asyncio.gather(*services.background_tasks, return_exceptions=True)
        await alert_service.close()
        await services.riot.close()
        await http_client.aclose()
        await cache_manager.disconnect()
        services = None
        logger.info("tftmeta backend stopped")


app = FastAPI(title="tftmeta backend", lifespan=lifespan)
app.add_middleware(MetricsMiddleware)
app.add_middleware(CorsAndRateLimitMiddleware)
app.include_router(monitoring_router)


async def handle_error(request: Request, error: HttpError, original: BaseException | None = None) -> JSONResponse:
    path = route_path(request)
    metrics_collector.record_error(request.method, path, original or error, error.status_code)
    await error_monitor.capture_and_notify(
        original or error,
        {"method": request.method, "endpoint": path, "path": request.url.path, "statusCode": error.status_code, "ip": client_ip(request)},
    )
    if error.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, error.message)
    return error_response(error)


@app.exception_handler(HttpError)
async def http_error_handler(request: Request, error: HttpError):
    return await handle_error(request, error)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, error: RequestValidationError):
    problems = [{"field": ".".join(str(part) for part in row.get("loc", ())), "message": row.get("msg")} for row in error.errors()]
    wrapped = ValidationError("Invalid request parameters.")
    wrapped.details = problems
    return await handle_error(request, wrapped, error)


@app.exception_handler(StarletteHTTPException)
async def starlette_http_handler(request: Request, error: StarletteHTTPException):
    if error.status_code == 404:
        wrapped: HttpError = NotFoundError(f"Route {request.url.path} not found.", resource="route")
    else:
        wrapped = HttpError(str(error.detail), error.status_code)
    return await handle_error(request, wrapped, error)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, error: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return await handle_error(request, normalize_error(error), error)


class SummonerRefreshBody(BaseModel):
    gameName: str = Field(min_length=1)
    tagLine: str = Field(min_length=1)
    region: str | None = None


class AnalyzeBody(BaseModel):
    matchId: str = Field(min_length=1)
    userPuuid: str = Field(min_length=1)
    region: str | None = None


class ChatMessage(BaseModel):
    role: str
    content: str


class QnABody(BaseModel):
    question: str = ""
    history: list[ChatMessage] = Field(default_factory=list)


async def run_tierlist_refresh(app_services: AppServices, region: str | None = None) -> dict[str, Any]:
    settings = app_services.settings
    return await refresh_tierlist(
        app_services.riot,
        app_services.load_tft_data,
        app_services.region(region),
        settings.tierlist_sample_players,
        settings.tierlist_matches_per_player,
    )


@app.get("/health")
async def health():
    settings = current_settings()
    try:
        store_ok = await meta_store.ping()
    except OSError as error:
        logger.warning("Store ping failed: %s", error)
        store_ok = False
    return success_body(
        {
            "status": "ok",
            "environment": settings.environment,
            "uptime": int(time.time() - started_at),
            "dependencies": {
                "riotApiKey": bool(settings.riot_api_key),
                "aiAnalysis": bool(settings.google_ai_key) and settings.enable_ai_analysis,
                "redis": cache_manager.l2_connected,
                "store": store_ok,
            },
        }
    )


@app.get("/api/static-data/{kind}")
async def static_data(kind: str):
    if kind not in (*STATIC_DATA_KINDS, "all"):
        raise NotFoundError(f"Unknown static data kind {kind}.", resource="static data")
    tft_data = await get_services().load_tft_data()
    base = {"currentSet": tft_data.get("currentSet"), "setNumber": tft_data.get("setNumber"), "fallback": bool(tft_data.get("fallback"))}
    if kind == "all":
        return success_body({**base, **{name: tft_data.get(name) for name in STATIC_DATA_KINDS}})
    return success_body({**base, kind: tft_data.get(kind)})


async def build_summoner_payload(app_services: AppServices, game_name: str, tag_line: str, region: str) -> dict[str, Any]:
    riot = app_services.riot
    account = await riot.get_account_by_riot_id(game_name, tag_line, region)
    puuid = str(account.get("puuid") or "")
    if not puuid:
        raise NotFoundError(f"Riot account {game_name}#{tag_line} not found.", resource="account")
    summoner, league, matches, tft_data = await asyncio.gather(
        riot.get_summoner_by_puuid(puuid, region),
        riot.get_league_entry_by_puuid(puuid, region),
        riot.get_match_history(region, puuid, 10),
        app_services.load_tft_data(),
    )
    return {
        "account": {"puuid": puuid, "gameName": account.get("gameName") or game_name, "tagLine": account.get("tagLine") or tag_line},
        "summoner": summoner,
        "league": league,
        "region": region,
        "platform": platform_host(region),
        "matches": [summarize_match(match, tft_data) for match in matches],
        "lastUpdated": int(time.time() * 1000),
    }


def summoner_cache_key(game_name: str, tag_line: str, region: str) -> str:
    return f"summoner_data:{region}:{game_name.strip().lower()}#{tag_line.strip().lower()}"


@app.get("/api/summoner")
async def summoner(gameName: str = Query(..., min_length=1), tagLine: str = Query(..., min_length=1), region: str | None = None):
    app_services = get_services()
    region = app_services.region(region)
    key = summoner_cache_key(gameName, tagLine, region)
    hit = await cache_manager.get(key)
    if hit is not None:
        return cached(hit, True, cache_manager.ttl_remaining(key), key)
    payload = await build_summoner_payload(app_services, gameName.strip(), tagLine.strip(), region)
    await cache_manager.set(key, payload, CACHE_TTL["SUMMONER_DATA"])
    return cached(payload, False, CACHE_TTL["SUMMONER_DATA"], key)


@app.post("/api/summoner/refresh")
async def summoner_refresh(body: SummonerRefreshBody):
    app_services = get_services()
    region = app_services.region(body.region)
    key = summoner_cache_key(body.gameName, body.tagLine, region)
    cooldown_key = f"summoner_cooldown:{key.split(':', 1)[1]}"
    if await cache_manager.get(cooldown_key) is not None:
        raise RateLimitError(cache_manager.ttl_remaining(cooldown_key) or CACHE_TTL["SUMMONER_COOLDOWN"], "Summoner refresh is on cooldown.")

    previous = await cache_manager.get(key)
    await cache_manager.delete(key)
    if isinstance(previous, dict):
        await app_services.riot.invalidate_player(previous["account"]["puuid"], region)
    payload = await build_summoner_payload(app_services, body.gameName.strip(), body.tagLine.strip(), region)
    await cache_manager.set(key, payload, CACHE_TTL["SUMMONER_DATA"])
    await cache_manager.set(cooldown_key, {"refreshedAt": payload["lastUpdated"]}, CACHE_TTL["SUMMONER_COOLDOWN"])
    logger.info("Refreshed summoner %s#%s (%s)", body.gameName, body.tagLine, region)
    return success_body(payload, "Summoner data refreshed.")


@app.get("/api/match/{match_id}")
async def match_detail(match_id: str, region: str | None = None):
    app_services = get_services()
    match = await app_services.riot.get_match_detail(match_id, app_services.region(region))
    return success_body(summarize_match(match, await app_services.load_tft_data()))


@app.get("/api/tierlist")
async def tierlist(tier: str | None = None):
    if tier and tier.upper() not in TIER_RANKS:
        raise ValidationError(f"Unknown tier {tier}.", field="tier", value=tier)
    key = f"tierlist:{tier.upper() if tier else 'all'}"
    hit = await cache_manager.get(key)
    if hit is not None:
        return cached(hit, True, cache_manager.ttl_remaining(key), key)
    decks = await get_meta_decks(tier=tier)
    await cache_manager.set(key, decks, CACHE_TTL["TIER_LIST"])
    return cached(decks, False, CACHE_TTL["TIER_LIST"], key)


@app.post("/api/tierlist/refresh")
async def tierlist_refresh(region: str | None = None):
    result = await run_tierlist_refresh(get_services(), region)
    return success_body(result, "Tier list rebuilt.")


async def stats_collection(key: str, collection: str):
    hit = await cache_manager.get(key)
    if hit is not None:
        return cached(hit, True, cache_manager.ttl_remaining(key), key)
    rows = await meta_store.find(collection, sort="averagePlacement")
    await cache_manager.set(key, rows, CACHE_TTL["META_STATS"])
    return cached(rows, False, CACHE_TTL["META_STATS"], key)


@app.get("/api/tierlist/items")
async def tierlist_items():
    return await stats_collection("tierlist:items", "itemstats")


@app.get("/api/tierlist/traits")
async def tierlist_traits():
    return await stats_collection("tierlist:traits", "traitstats")


@app.get("/api/ranking/top")
async def ranking_top(region: str | None = None, page: int = Query(1, ge=1), limit: int = Query(50, ge=1, le=200)):
    app_services = get_services()
    region = app_services.region(region)
    key = f"ranking:{platform_host(region)}"
    ladder = await cache_manager.remember(key, CACHE_TTL["RANKING"], lambda: fetch_ladder(app_services.riot, region))
    rows = [{**row, "position": index} for index, row in enumerate(as_list(ladder), start=1)]
    start = (page - 1) * limit
    return paginated(rows[start : start + limit], page, limit, len(rows))


@app.post("/api/ai/analyze")
async def ai_analyze(body: AnalyzeBody):
    app_services = get_services()
    result = await app_services.analysis.analyze_match(body.matchId, body.userPuuid, app_services.region(body.region))
    return success_body(result)


@app.post("/api/ai/qna")
async def ai_qna(body: QnABody):
    result = await get_services().qna.process_question(body.question, [row.model_dump() for row in body.history])
    return success_body(result)


if __name__ == "__main__":
    import uvicorn

    port = load_settings().port
    uvicorn.run("main:app", host="0.0.0.0", port=port, reload=False)
