from __future__ import annotations

import hashlib
import logging
import random
import re
import time
import traceback
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

SEVERITIES = ("low", "medium", "high", "critical")
CATEGORIES = ("database", "api", "authentication", "business_logic", "external_service", "performance", "security", "unknown")

MAX_RECENT_ERRORS = 1000
MAX_ERROR_STORE_SIZE = 5000
SAMPLING_THRESHOLD = 100
SAMPLING_RATE = 0.1
RETENTION_SECONDS = 7 * 24 * 60 * 60
CORRELATION_THRESHOLD = 0.7
CORRELATION_WINDOW = 200

Subscriber = Callable[[dict[str, Any]], Awaitable[Any]]


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


def _hour_bucket(ts: float) -> str:
    return _iso(ts)[:13]


def _error_message(error: BaseException) -> str:
    return str(getattr(error, "message", None) or error or type(error).__name__)


def _has_any(text: str, words: tuple[str, ...]) -> bool:
    return any(word in text for word in words)


def generate_fingerprint(error: BaseException, context: dict[str, Any]) -> str:
    signature = "|".join(
        [
            type(error).__name__,
            re.sub(r"\d+", "N", _error_message(error)),
            str(context.get("endpoint") or "unknown"),
            str(context.get("method") or "unknown"),
        ]
    )
    return hashlib.sha1(signature.encode("utf-8")).hexdigest()[:16]


def categorize_error(error: BaseException, context: dict[str, Any]) -> str:
    message = _error_message(error).lower()
    stack = "".join(traceback.format_tb(error.__traceback__)).lower() if error.__traceback__ else ""
    if _has_any(message, ("mongo", "database", "connection", "timeout", "storage")):
        return "database"
    if context.get("endpoint") and _has_any(message, ("validation", "bad request", "not found", "invalid")):
        return "api"
    if _has_any(message, ("unauthorized", "forbidden", "token", "auth")):
        return "authentication"
    if _has_any(message, ("riot", "api", "external", "fetch")):
        return "external_service"
    if _has_any(message, ("memory", "performance", "slow")):
        return "performance"
    if _has_any(message, ("security", "xss", "injection", "csrf")):
        return "security"
    if "analyzer" in stack or "services" in stack:
        return "business_logic"
    return "unknown"


def assess_severity(error: BaseException) -> str:
    message = _error_message(error).lower()
    if _has_any(message, ("crash", "fatal", "panic", "critical")):
        return "critical"
    if _has_any(message, ("database", "auth", "security", "corruption")):
        return "high"
    if _has_any(message, ("timeout", "network", "external", "performance")):
        return "medium"
    return "low"


def generate_tags(error: BaseException, context: dict[str, Any], category: str, severity: str) -> list[str]:
    tags = [category, severity]
    if context.get("endpoint"):
        tags.append(f"endpoint:{context['endpoint']}")
    if context.get("method"):
        tags.append(f"method:{context['method']}")
    if context.get("userId"):
        tags.append("user_related")
    message = _error_message(error).lower()
    for word in ("timeout", "network", "validation", "permission"):
        if word in message:
            tags.append(word)
    return tags


def serialize_error(entry: dict[str, Any]) -> dict[str, Any]:
    out = {key: value for key, value in entry.items() if key not in {"ts", "firstSeenTs"}}
    out["timestamp"] = _iso(entry["ts"])
    out["firstSeen"] = _iso(entry["firstSeenTs"])
    out["tags"] = list(entry["tags"])
    return out


class ErrorMonitor:
    """Groups captured exceptions by fingerprint and keeps a rolling window of recent ones."""

    def __init__(self) -> None:
        self.error_store: dict[str, dict[str, Any]] = {}
        self.recent_errors: list[dict[str, Any]] = []
        self.rate_counter: dict[str, int] = {}
        self.last_rate_reset = time.time()
        self.last_cleanup: float | None = None
        self.sampled_out = 0
        self.subscribers: list[Subscriber] = []

    def subscribe(self, fn: Subscriber) -> None:
        if fn not in self.subscribers:
            self.subscribers.append(fn)

    def _should_capture(self, fingerprint: str, severity: str) -> bool:
        if severity in {"critical", "high"}:
            return True
        now = time.time()
        if now - self.last_rate_reset > 60:
            self.rate_counter.clear()
            self.last_rate_reset = now
        current = self.rate_counter.get(fingerprint, 0)
        self.rate_counter[fingerprint] = current + 1
        if current > SAMPLING_THRESHOLD:
            return random.random() < SAMPLING_RATE
        return True

    def _capture(self, error: BaseException, context: dict[str, Any] | None) -> tuple[dict[str, Any], bool]:
        context = dict(context or {})
        now = time.time()
        fingerprint = generate_fingerprint(error, context)
        category = context.pop("category", None) or categorize_error(error, context)
        severity = context.pop("severity", None) or assess_severity(error)
        if category not in CATEGORIES:
            category = "unknown"
        if severity not in SEVERITIES:
            severity = "low"

        existing = self.error_store.get(fingerprint)
        if existing is not None and not self._should_capture(fingerprint, severity):
            existing["occurrenceCount"] += 1
            existing["ts"] = now
            self.sampled_out += 1
            return existing, False

        if existing is not None:
            existing["occurrenceCount"] += 1
            existing["ts"] = now
            existing["context"] = {**existing["context"], **context}
            entry = existing
        else:
            entry = {
                "id": f"error_{int(now * 1000)}_{random.randint(100000000, 999999999)}",
                "name": type(error).__name__,
                "message": _error_message(error),
                "stack": "".join(traceback.format_exception(type(error), error, error.__traceback__))[-4000:],
                "category": category,
                "severity": severity,
                "context": context,
                "ts": now,
                "firstSeenTs": now,
                "fingerprint": fingerprint,
                "occurrenceCount": 1,
                "resolved": False,
                "tags": generate_tags(error, context, category, severity),
            }
            self.error_store[fingerprint] = entry
            if len(self.error_store) > MAX_ERROR_STORE_SIZE:
                self._trim_store()

        self.recent_errors.insert(0, entry)
        del self.recent_errors[MAX_RECENT_ERRORS:]
        log = logger.error if severity in {"critical", "high"} else logger.warning
        log("%s:%s - %s (fingerprint=%s count=%s)", category, severity, entry["message"], fingerprint, entry["occurrenceCount"])
        return entry, True

    def capture_error(self, error: BaseException, context: dict[str, Any] | None = None) -> dict[str, Any]:
        entry, _processed = self._capture(error, context)
        return entry

    async def capture_and_notify(self, error: BaseException, context: dict[str, Any] | None = None) -> dict[str, Any]:
        entry, processed = self._capture(error, context)
        if processed:
            for subscriber in self.subscribers:
                try:
                    await subscriber(entry)
                except Exception:
                    logger.exception("Error subscriber failed for %s", entry["fingerprint"])
        return entry

    def _trim_store(self) -> None:
        overflow = len(self.error_store) - MAX_ERROR_STORE_SIZE + 1000
        oldest = sorted(self.error_store.values(), key=lambda e: e["ts"])[:overflow]
        for entry in oldest:
            self.error_store.pop(entry["fingerprint"], None)
        logger.info("Trimmed %s old errors from the store", len(oldest))

    def get_error_stats(self, start: datetime | None = None, end: datetime | None = None) -> dict[str, Any]:
        end_ts = end.timestamp() if end else time.time()
        start_ts = start.timestamp() if start else end_ts - 24 * 60 * 60
        window = [e for e in self.recent_errors if start_ts <= e["ts"] <= end_ts]
        by_category = {category: 0 for category in CATEGORIES}
        by_severity = {severity: 0 for severity in SEVERITIES}
        by_hour: dict[str, int] = {}
        for entry in window:
            by_category[entry["category"]] += 1
            by_severity[entry["severity"]] += 1
            bucket = _hour_bucket(entry["ts"])
            by_hour[bucket] = by_hour.get(bucket, 0) + 1
        top = sorted(self.error_store.values(), key=lambda e: -e["occurrenceCount"])[:10]
        return {
            "totalErrors": len(window),
            "errorsByCategory": by_category,
            "errorsBySeverity": by_severity,
            "errorsByHour": [{"hour": hour, "count": count} for hour, count in sorted(by_hour.items())],
            "topErrors": [
                {"fingerprint": e["fingerprint"], "message": e["message"], "count": e["occurrenceCount"], "lastOccurrence": _iso(e["ts"])} for e in top
            ],
        }

    def resolve_error(self, fingerprint: str, resolved_by: str = "system") -> bool:
        entry = self.error_store.get(fingerprint)
        if entry is None:
            return False
        entry["resolved"] = True
        entry["tags"].append(f"resolved_by:{resolved_by}")
        logger.info("Error %s resolved by %s", fingerprint, resolved_by)
        return True

    def is_resolved(self, fingerprint: str) -> bool:
        entry = self.error_store.get(fingerprint)
        return bool(entry and entry["resolved"])

    def get_recent_errors(self, limit: int = 50) -> list[dict[str, Any]]:
        return [serialize_error(e) for e in self.recent_errors[: max(0, int(limit))]]

    def get_error_details(self, fingerprint: str) -> dict[str, Any] | None:
        entry = self.error_store.get(fingerprint)
        return serialize_error(entry) if entry else None

    def filter_errors(
        self,
        category: str | None = None,
        severity: str | None = None,
        resolved: bool | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[dict[str, Any]]:
        rows = self.recent_errors
        if category:
            rows = [e for e in rows if e["category"] == category]
        if severity:
            rows = [e for e in rows if e["severity"] == severity]
        if resolved is not None:
            rows = [e for e in rows if e["resolved"] == resolved]
        if start or end:
            start_ts = start.timestamp() if start else 0
            end_ts = end.timestamp() if end else time.time()
            rows = [e for e in rows if start_ts <= e["ts"] <= end_ts]
        return [serialize_error(e) for e in rows]

    def _detect_spikes(self) -> list[dict[str, Any]]:
        hourly: dict[str, int] = {}
        for entry in self.recent_errors:
            bucket = _hour_bucket(entry["ts"])
            hourly[bucket] = hourly.get(bucket, 0) + 1
        if not hourly:
            return []
        threshold = sum(hourly.values()) / len(hourly) * 2
        return [{"time": f"{hour}:00:00+00:00", "count": count} for hour, count in sorted(hourly.items()) if count > threshold]

    def _analyze_trends(self) -> list[dict[str, str]]:
        now = time.time()
        day = 24 * 60 * 60
        trends = []
        for category in CATEGORIES:
            rows = [e for e in self.recent_errors if e["category"] == category]
            trend = "stable"
            if len(rows) >= 10:
                recent = len([e for e in rows if e["ts"] >= now - day])
                previous = len([e for e in rows if now - 2 * day <= e["ts"] < now - day])
                if recent > previous * 1.2:
                    trend = "increasing"
                elif recent < previous * 0.8:
                    trend = "decreasing"
            trends.append({"category": category, "trend": trend})
        return trends

    def _analyze_correlations(self) -> list[dict[str, Any]]:
        entries = sorted(self.error_store.values(), key=lambda e: -e["ts"])[:CORRELATION_WINDOW]
        out = []
        for i, first in enumerate(entries):
            for second in entries[i + 1 :]:
                correlation = max(0.0, 1 - abs(first["ts"] - second["ts"]) / 3600)
                if correlation > CORRELATION_THRESHOLD:
                    out.append({"error1": first["message"], "error2": second["message"], "correlation": round(correlation, 4)})
        out.sort(key=lambda row: -row["correlation"])
        return out

    def analyze_error_patterns(self) -> dict[str, Any]:
        return {"spikes": self._detect_spikes(), "trends": self._analyze_trends(), "correlations": self._analyze_correlations()}

    def cleanup(self) -> dict[str, int]:
        cutoff = time.time() - RETENTION_SECONDS
        before_recent = len(self.recent_errors)
        before_store = len(self.error_store)
        self.recent_errors = [e for e in self.recent_errors if e["ts"] > cutoff]
        self.error_store = {fp: e for fp, e in self.error_store.items() if e["ts"] >= cutoff}
        self.rate_counter.clear()
        self.last_rate_reset = time.time()
        self.last_cleanup = time.time()
        removed = {"recentErrorsRemoved": before_recent - len(self.recent_errors), "errorStoreRemoved": before_store - len(self.error_store)}
        logger.info("Error monitor cleanup %s", removed)
        return removed

    def get_health_status(self) -> dict[str, Any]:
        alerts: list[str] = []
        status = "healthy"
        memory_usage = len(self.error_store) * 1024 + len(self.recent_errors) * 512
        if len(self.error_store) > MAX_ERROR_STORE_SIZE * 0.9:
            alerts.append("Error store is nearly full.")
            status = "warning"
        if len(self.recent_errors) > MAX_RECENT_ERRORS * 0.9:
            alerts.append("Recent error list is nearly full.")
            status = "warning"
        if memory_usage > 50 * 1024 * 1024:
            alerts.append("Estimated memory usage is high.")
            status = "critical"
        hourly = len([e for e in self.recent_errors if e["ts"] > time.time() - 3600])
        if hourly > 1000:
            alerts.append("Hourly error rate is high.")
            status = "critical"
        return {
            "status": status,
            "metrics": {
                "errorStoreSize": len(self.error_store),
                "recentErrorsSize": len(self.recent_errors),
                "errorRateCounterSize": len(self.rate_counter),
                "sampledOut": self.sampled_out,
                "memoryUsage": memory_usage,
                "lastCleanup": _iso(self.last_cleanup) if self.last_cleanup else None,
            },
            "alerts": alerts,
        }


error_monitor = ErrorMonitor()
