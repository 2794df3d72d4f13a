from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

EVENTS = ("hit", "miss", "set", "delete", "error")
MAX_TRACKED_KEYS = 1000


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _empty_stats() -> dict[str, Any]:
    return {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "errors": 0, "totalRequests": 0, "hitRate": 0.0, "lastUpdated": _now_iso()}


class CacheMonitor:
    """Per-key cache counters. Hit rates are percentages."""

    def __init__(self) -> None:
        self.stats: dict[str, dict[str, Any]] = {}
        self.enabled = True

    def record_event(self, cache_key: str, event: str) -> None:
        if not self.enabled or event not in EVENTS:
            return
        stats = self.stats.get(cache_key)
        if stats is None:
            if len(self.stats) >= MAX_TRACKED_KEYS:
                oldest = min(self.stats, key=lambda key: self.stats[key]["lastUpdated"])
                self.stats.pop(oldest, None)
            stats = self.stats[cache_key] = _empty_stats()
        plural = "misses" if event == "miss" else f"{event}s"
        stats[plural] += 1
        stats["totalRequests"] = stats["hits"] + stats["misses"]
        stats["hitRate"] = stats["hits"] / stats["totalRequests"] * 100 if stats["totalRequests"] else 0.0
        stats["lastUpdated"] = _now_iso()

    def get_stats(self, cache_key: str | None = None) -> dict[str, Any]:
        if cache_key is not None:
            return dict(self.stats.get(cache_key) or _empty_stats())
        return {key: dict(value) for key, value in self.stats.items()}

    def get_summary(self) -> dict[str, Any]:
        total_hits = sum(s["hits"] for s in self.stats.values())
        total_misses = sum(s["misses"] for s in self.stats.values())
        total_requests = total_hits + total_misses
        top_keys = sorted(self.stats.items(), key=lambda row: -row[1]["totalRequests"])[:10]
        return {
            "totalKeys": len(self.stats),
            "overallHitRate": total_hits / total_requests * 100 if total_requests else 0.0,
            "totalHits": total_hits,
            "totalMisses": total_misses,
            "totalRequests": total_requests,
            "topKeys": [{"key": key, "requests": s["totalRequests"], "hitRate": s["hitRate"]} for key, s in top_keys],
        }

    def get_performance_report(self) -> dict[str, list[dict[str, Any]]]:
        low_hit_rate = []
        high_error_rate = []
        for key, stats in self.stats.items():
            if stats["hitRate"] < 50 and stats["totalRequests"] >= 10:
                low_hit_rate.append({"key": key, "hitRate": stats["hitRate"], "requests": stats["totalRequests"]})
            error_rate = stats["errors"] / stats["totalRequests"] * 100 if stats["totalRequests"] else 0.0
            if error_rate > 5:
                high_error_rate.append({"key": key, "errorRate": error_rate, "errors": stats["errors"]})
        return {"lowHitRate": low_hit_rate, "highErrorRate": high_error_rate}

    def reset_stats(self, cache_key: str | None = None) -> None:
        if cache_key is not None:
            self.stats.pop(cache_key, None)
        else:
            self.stats.clear()

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = bool(enabled)
        logger.info("Cache monitoring %s", "enabled" if self.enabled else "disabled")

    def log_stats(self) -> None:
        summary = self.get_summary()
        report = self.get_performance_report()
        logger.info(
            "Cache summary keys=%s hitRate=%.1f%% lowHitRate=%s highErrorRate=%s",
            summary["totalKeys"],
            summary["overallHitRate"],
            len(report["lowHitRate"]),
            len(report["highErrorRate"]),
        )


cache_monitor = CacheMonitor()


def get_stats_for_api() -> dict[str, Any]:
    return {"summary": cache_monitor.get_summary(), "performance": cache_monitor.get_performance_report(), "timestamp": _now_iso()}
