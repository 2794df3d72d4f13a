from __future__ import annotations

import json
import logging
import random
import time
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_THRESHOLDS = {"warning": 1000, "error": 3000, "critical": 5000}
DEFAULT_COLLECTIONS = ["match", "decktier", "itemstats", "traitstats", "ranker"]
MAX_LOG_BYTES = 10 * 1024 * 1024
MAX_RECENT = 100


def get_suggestion(entry: dict[str, Any]) -> str:
    collection = entry.get("collection")
    operation = entry.get("operation")
    if operation in {"find", "find_one"}:
        keys = ", ".join(str(key) for key in (entry.get("query") or {}))
        return f"Consider indexing [{keys}] on the {collection} collection."
    if operation == "aggregate":
        return f"Consider optimizing the aggregation pipeline on the {collection} collection."
    return f"The {operation} operation on the {collection} collection needs optimization."


class SlowQueryDetector:
    def __init__(
        self,
        log_path: Path | None = None,
        thresholds: dict[str, int] | None = None,
        collections: list[str] | None = None,
        enabled: bool = True,
    ) -> None:
        self.log_path = log_path or Path.cwd() / ".cache" / "logs" / "slow-queries.log"
        self.thresholds = dict(thresholds or DEFAULT_THRESHOLDS)
        self.collections = list(DEFAULT_COLLECTIONS if collections is None else collections)
        self.enabled = enabled
        self.recent: list[dict[str, Any]] = []
        self.reset()

    def configure(self, settings: Any) -> None:
        self.log_path = Path(settings.data_dir) / "logs" / "slow-queries.log"
        self.thresholds = {
            "warning": settings.slow_query_warning_ms,
            "error": settings.slow_query_error_ms,
            "critical": settings.slow_query_critical_ms,
        }

    def reset(self) -> None:
        self.query_count = 0
        self.slow_query_count = 0
        self.start_time = time.time()
        self.recent = []

    def severity_for(self, duration_ms: float) -> str:
        if duration_ms >= self.thresholds["critical"]:
            return "critical"
        if duration_ms >= self.thresholds["error"]:
            return "error"
        return "warning"

    async def monitor_query(self, collection: str, operation: str, query: dict[str, Any], executor: Callable[[], Awaitable[T]]) -> T:
        if not self.enabled or (self.collections and collection.lower() not in self.collections):
            return await executor()

        query_id = f"query_{int(time.time() * 1000)}_{random.randint(100000000, 999999999)}"
        self.query_count += 1
        started = time.perf_counter()
        try:
            result = await executor()
        except Exception as error:
            self._handle_slow_query(query_id, collection, operation, query, (time.perf_counter() - started) * 1000, error)
            raise
        duration_ms = (time.perf_counter() - started) * 1000
        if duration_ms > self.thresholds["warning"]:
            self._handle_slow_query(query_id, collection, operation, query, duration_ms, None)
        return result

    def _handle_slow_query(
        self,
        query_id: str,
        collection: str,
        operation: str,
        query: dict[str, Any],
        duration_ms: float,
        error: BaseException | None,
    ) -> None:
        self.slow_query_count += 1
        severity = "critical" if error is not None else self.severity_for(duration_ms)
        entry = {
            "id": query_id,
            "collection": collection,
            "operation": operation,
            "query": query,
            "duration": round(duration_ms, 2),
            "severity": severity,
            "failed": error is not None,
            "error": str(error) if error is not None else None,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "stackTrace": "".join(traceback.format_stack(limit=6)[:-2]),
        }
        entry["suggestion"] = get_suggestion(entry)
        self.recent.insert(0, entry)
        del self.recent[MAX_RECENT:]

        log = logger.error if severity == "critical" else logger.warning
        log("Slow query %s %s.%s took %.2fms (%s)", query_id, collection, operation, duration_ms, severity)
        self._append_to_log(entry)

    def _append_to_log(self, entry: dict[str, Any]) -> None:
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            if self.log_path.exists() and self.log_path.stat().st_size > MAX_LOG_BYTES:
                self._rotate()
            with self.log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry, default=str) + "\n")
        except OSError as error:
            logger.error("Failed to write slow query log: %s", error)

    def _rotate(self) -> None:
        backup = self.log_path.with_name(self.log_path.name + ".backup")
        if backup.exists():
            backup.unlink()
        self.log_path.rename(backup)

    def get_stats(self) -> dict[str, Any]:
        return {
            "totalQueries": self.query_count,
            "slowQueries": self.slow_query_count,
            "slowQueryRate": self.slow_query_count / self.query_count * 100 if self.query_count else 0,
            "uptime": int((time.time() - self.start_time) * 1000),
            "thresholds": dict(self.thresholds),
        }

    def get_recent(self, limit: int = 50) -> list[dict[str, Any]]:
        return self.recent[: max(0, int(limit))]

    def analyze_slow_queries(self, limit: int = 50) -> dict[str, Any]:
        summary: dict[str, Any] = {"total": 0, "byCollection": {}, "byOperation": {}, "bySeverity": {}, "averageDuration": 0}
        if not self.log_path.exists():
            return {"queries": [], "summary": summary}
        lines = [line for line in self.log_path.read_text(encoding="utf-8").splitlines() if line.strip()]
        queries = []
        total_duration = 0.0
        for line in lines[-max(1, int(limit)) :]:
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            queries.append(entry)
            summary["total"] += 1
            for field, bucket in (("collection", "byCollection"), ("operation", "byOperation"), ("severity", "bySeverity")):
                value = str(entry.get(field))
                summary[bucket][value] = summary[bucket].get(value, 0) + 1
            total_duration += float(entry.get("duration") or 0)
        summary["averageDuration"] = total_duration / summary["total"] if summary["total"] else 0
        queries.reverse()
        return {"queries": queries, "summary": summary}


slow_query_detector = SlowQueryDetector()
