from __future__ import annotations

import logging
import time
from typing import Any, Protocol

logger = logging.getLogger(__name__)

ACTIVE_WINDOW_SECONDS = 5 * 60
IDLE_CUTOFF_SECONDS = 30 * 60
MIN_ACCESSES_TO_KEEP = 3


class SupportsSnapshot(Protocol):
    def snapshot(self) -> list[dict[str, Any]]: ...

    def evict_namespace(self, operation: str) -> int: ...

    def purge_expired(self) -> int: ...


class CacheAnalyzer:
    """Tracks which cache operations are used and how the L1 store is holding up."""

    def __init__(self) -> None:
        self.reset_stats()

    def reset_stats(self) -> None:
        self.total_queries = 0
        self.cache_hits = 0
        self.cache_misses = 0
        self.query_log: dict[str, dict[str, float]] = {}

    def record_query(self, operation: str, from_cache: bool) -> None:
        self.total_queries += 1
        if from_cache:
            self.cache_hits += 1
        else:
            self.cache_misses += 1
        row = self.query_log.setdefault(operation, {"count": 0, "lastAccessed": 0.0})
        row["count"] += 1
        row["lastAccessed"] = time.time()

    def _analyze_queries(self, entries: list[dict[str, Any]]) -> dict[str, Any]:
        total = self.total_queries
        top = sorted(self.query_log.items(), key=lambda row: -row[1]["count"])[:10]
        return {
            "size": sum(int(entry.get("size") or 0) for entry in entries),
            "hitRate": round(self.cache_hits / total * 100, 2) if total else 0,
            "missRate": round(self.cache_misses / total * 100, 2) if total else 0,
            "totalQueries": total,
            "cacheHits": self.cache_hits,
            "cacheMisses": self.cache_misses,
            "topQueries": [{"operationName": name, "count": int(row["count"]), "lastAccessed": row["lastAccessed"]} for name, row in top],
        }

    @staticmethod
    def _analyze_entries(entries: list[dict[str, Any]]) -> dict[str, Any]:
        now = time.time()
        active = [e for e in entries if not e.get("expired") and now - float(e.get("lastAccessed") or 0) <= ACTIVE_WINDOW_SECONDS]
        stale = [e for e in entries if e.get("expired")]
        newest = sorted(entries, key=lambda e: -float(e.get("lastAccessed") or 0))[:10]
        return {
            "size": sum(int(e.get("size") or 0) for e in entries),
            "activeQueries": len(active),
            "staleQueries": len(stale),
            "inactiveQueries": len(entries) - len(active),
            "topQueries": [
                {"queryKey": e.get("key"), "state": "stale" if e.get("expired") else "fresh", "lastUpdated": e.get("lastAccessed")}
                for e in newest
            ],
        }

    @staticmethod
    def generate_recommendations(queries: dict[str, Any], entries: dict[str, Any]) -> list[str]:
        out: list[str] = []
        if queries["totalQueries"] and queries["hitRate"] < 50:
            out.append("Cache hit rate is low. Consider longer TTLs or warming frequently requested keys.")
        if queries["size"] > 5 * 1024 * 1024:
            out.append("Cached query data is large. Trim unused fields or flush cold entries.")
        if entries["staleQueries"] > entries["activeQueries"] * 2:
            out.append("Many cached entries are stale. Review TTL settings or run an optimization pass.")
        if entries["inactiveQueries"] > 50:
            out.append("Many cached entries are inactive. Shorten TTLs or clean them up manually.")
        if entries["size"] > 10 * 1024 * 1024:
            out.append("The in-process cache is large. Move big payloads to the Redis tier.")
        if not out:
            out.append("Cache performance looks good. Keep the current settings.")
        return out

    def analyze_cache(self, entries: list[dict[str, Any]] | None = None) -> dict[str, Any]:
        entries = entries or []
        queries = self._analyze_queries(entries)
        entry_stats = self._analyze_entries(entries)
        return {"queries": queries, "entries": entry_stats, "recommendations": self.generate_recommendations(queries, entry_stats)}

    def generate_report(self, entries: list[dict[str, Any]] | None = None) -> str:
        stats = self.analyze_cache(entries)
        queries = stats["queries"]
        entry_stats = stats["entries"]
        top = ", ".join(row["operationName"] for row in queries["topQueries"][:3]) or "-"
        lines = [
            "=== Cache performance report ===",
            "",
            "Queries:",
            f"- hit rate: {queries['hitRate']}%",
            f"- total queries: {queries['totalQueries']}",
            f"- cache size: {queries['size'] / 1024:.2f} KB",
            f"- top operations: {top}",
            "",
            "Entries:",
            f"- active: {entry_stats['activeQueries']}",
            f"- stale: {entry_stats['staleQueries']}",
            f"- cache size: {entry_stats['size'] / 1024:.2f} KB",
            "",
            "Recommendations:",
            *[f"- {row}" for row in stats["recommendations"]],
            "",
            "=== End of report ===",
        ]
        return "\n".join(lines)

    def optimize(self, cache: SupportsSnapshot) -> dict[str, Any]:
        cutoff = time.time() - IDLE_CUTOFF_SECONDS
        cold = [name for name, row in self.query_log.items() if row["lastAccessed"] < cutoff and row["count"] < MIN_ACCESSES_TO_KEEP]
        evicted = 0
        for name in cold:
            evicted += cache.evict_namespace(name)
            self.query_log.pop(name, None)
            logger.info("Dropped cold cache operation %s", name)
        purged = cache.purge_expired()
        logger.info("Cache optimization finished (cold=%s evicted=%s purged=%s)", len(cold), evicted, purged)
        return {"coldOperations": cold, "evictedEntries": evicted, "purgedEntries": purged}


cache_analyzer = CacheAnalyzer()
