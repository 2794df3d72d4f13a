from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlparse

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
VALID_ENVIRONMENTS = {"development", "production", "test"}
DEFAULT_FRONTEND_URL = "http://localhost:3000,http://localhost:5173"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _read(env: Mapping[str, str], key: str, default: str = "") -> str:
    return str(env.get(key, default) or default).strip()


def _read_int(env: Mapping[str, str], key: str, default: int, errors: list[str]) -> int:
    raw = _read(env, key, str(default))
    try:
        return int(raw)
    except ValueError:
        errors.append(f"{key} must be an integer (got {raw!r}).")
        return default


def _read_flag(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = _read(env, key, "1" if default else "0").lower()
    return raw in {"1", "true", "yes", "on"}


def _is_url(value: str, schemes: set[str]) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in schemes and bool(parsed.netloc)


@dataclass(frozen=True)
class Settings:
    environment: str = "development"
    port: int = 10000
    riot_api_key: str = ""
    mongodb_uri: str = ""
    google_ai_key: str = ""
    google_ai_model: str = "gemini-2.5-pro"
    redis_url: str = ""
    allowed_origins: list[str] = field(default_factory=list)
    default_region: str = "kr"
    riot_timeout_ms: int = 10000
    ai_timeout_ms: int = 30000
    rate_limit_window_ms: int = 60000
    rate_limit_max_requests: int = 90
    log_level: str = "INFO"
    data_dir: Path = Path(".cache")
    tft_set: str = ""
    slow_query_warning_ms: int = 1000
    slow_query_error_ms: int = 3000
    slow_query_critical_ms: int = 5000
    alert_slack_webhook_url: str = ""
    alert_discord_webhook_url: str = ""
    alert_webhook_url: str = ""
    alert_email_recipients: list[str] = field(default_factory=list)
    enable_ai_analysis: bool = True
    enable_tierlist_job: bool = False
    enable_metrics_cleanup: bool = False
    tierlist_sample_players: int = 10
    tierlist_matches_per_player: int = 10

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def validate_env(env: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Validate raw environment values and build a Settings object.

    Malformed values become ``errors``; missing optional integrations
    (Riot key, AI key, Redis) become ``warnings`` so the server can still
    boot with reduced features.
    """
    env = os.environ if env is None else env
    errors: list[str] = []
    warnings: list[str] = []

    environment = (_read(env, "APP_ENV") or _read(env, "NODE_ENV", "development")).lower()
    if environment not in VALID_ENVIRONMENTS:
        errors.append(f"NODE_ENV must be one of {sorted(VALID_ENVIRONMENTS)} (got {environment!r}).")
        environment = "development"

    port = _read_int(env, "PORT", 10000, errors)
    if not 0 < port < 65536:
        errors.append(f"PORT must be between 1 and 65535 (got {port}).")
        port = 10000

    mongodb_uri = _read(env, "MONGODB_URI")
    if mongodb_uri and not _is_url(mongodb_uri, {"mongodb", "mongodb+srv"}):
        errors.append("MONGODB_URI must be a valid mongodb:// or mongodb+srv:// URL.")

    redis_url = _read(env, "UPSTASH_REDIS_URL")
    if redis_url and not _is_url(redis_url, {"redis", "rediss"}):
        errors.append("UPSTASH_REDIS_URL must be a valid redis:// or rediss:// URL.")
        redis_url = ""

    origins = [token.strip().rstrip("/") for token in _read(env, "FRONTEND_URL", DEFAULT_FRONTEND_URL).split(",") if token.strip()]
    for origin in origins:
        if not _is_url(origin, {"http", "https"}):
            errors.append(f"FRONTEND_URL contains an invalid origin: {origin!r}.")

    webhook_urls = {}
    for key in ("ALERT_SLACK_WEBHOOK_URL", "ALERT_DISCORD_WEBHOOK_URL", "ALERT_WEBHOOK_URL"):
        value = _read(env, key)
        if value and not _is_url(value, {"http", "https"}):
            errors.append(f"{key} must be an http(s) URL.")
            value = ""
        webhook_urls[key] = value

    riot_api_key = _read(env, "RIOT_API_KEY")
    google_ai_key = _read(env, "GOOGLE_AI_MAIN_API_KEY")
    if not riot_api_key:
        warnings.append("RIOT_API_KEY is not set; Riot API endpoints will fail.")
    if not google_ai_key:
        warnings.append("GOOGLE_AI_MAIN_API_KEY is not set; AI endpoints fall back to deterministic analysis.")
    if not redis_url:
        warnings.append("UPSTASH_REDIS_URL is not set; using the in-memory cache only.")
    if not mongodb_uri:
        warnings.append("MONGODB_URI is not set; documents are kept in the local JSON store.")

    settings = Settings(
        environment=environment,
        port=port,
        riot_api_key=riot_api_key,
        mongodb_uri=mongodb_uri,
        google_ai_key=google_ai_key,
        google_ai_model=_read(env, "GOOGLE_AI_MODEL", "gemini-2.5-pro") or "gemini-2.5-pro",
        redis_url=redis_url,
        allowed_origins=origins,
        default_region=_read(env, "DEFAULT_REGION", "kr").lower() or "kr",
        riot_timeout_ms=max(1000, _read_int(env, "RIOT_TIMEOUT_MS", 10000, errors)),
        ai_timeout_ms=max(3000, _read_int(env, "AI_TIMEOUT_MS", 30000, errors)),
        rate_limit_window_ms=max(1000, _read_int(env, "RATE_LIMIT_WINDOW_MS", 60000, errors)),
        rate_limit_max_requests=max(1, _read_int(env, "RATE_LIMIT_MAX_REQUESTS", 90, errors)),
        log_level=_read(env, "LOG_LEVEL", "INFO").upper() or "INFO",
        data_dir=Path(_read(env, "DATA_DIR", ".cache") or ".cache"),
        tft_set=_read(env, "TFT_SET"),
        slow_query_warning_ms=max(0, _read_int(env, "SLOW_QUERY_WARNING_MS", 1000, errors)),
        slow_query_error_ms=max(0, _read_int(env, "SLOW_QUERY_ERROR_MS", 3000, errors)),
        slow_query_critical_ms=max(0, _read_int(env, "SLOW_QUERY_CRITICAL_MS", 5000, errors)),
        alert_slack_webhook_url=webhook_urls["ALERT_SLACK_WEBHOOK_URL"],
        alert_discord_webhook_url=webhook_urls["ALERT_DISCORD_WEBHOOK_URL"],
        alert_webhook_url=webhook_urls["ALERT_WEBHOOK_URL"],
        alert_email_recipients=[token.strip() for token in _read(env, "ALERT_EMAIL_RECIPIENTS").split(",") if token.strip()],
        enable_ai_analysis=_read_flag(env, "ENABLE_AI_ANALYSIS", True),
        enable_tierlist_job=_read_flag(env, "ENABLE_TIERLIST_JOB", False),
        enable_metrics_cleanup=_read_flag(env, "ENABLE_METRICS_CLEANUP", False),
        tierlist_sample_players=max(1, min(50, _read_int(env, "TIERLIST_SAMPLE_PLAYERS", 10, errors))),
        tierlist_matches_per_player=max(1, min(20, _read_int(env, "TIERLIST_MATCHES_PER_PLAYER", 10, errors))),
    )
    return {"valid": not errors, "errors": errors, "warnings": warnings, "config": settings}


def load_settings(env_file: Path | None = None) -> Settings:
    load_dotenv(env_file or BASE_DIR / ".env")
    result = validate_env()
    for warning in result["warnings"]:
        logger.warning(warning)
    if result["errors"]:
        for error in result["errors"]:
            logger.error("Invalid configuration: %s", error)
        if result["config"].is_production:
            raise RuntimeError("Invalid environment configuration: " + "; ".join(result["errors"]))
    return result["config"]
