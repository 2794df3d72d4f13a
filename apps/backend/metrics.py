from __future__ import annotations

import logging
import math
import time
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

WINDOW = 100
MAX_ERROR_MESSAGES = 50
TIMESTAMP_MAX_AGE_MS = 60 * 60 * 1000
SLA_TARGET = 0.999
SLOW_RESPONSE_THRESHOLD_MS = 5000
CIRCUIT_OPEN_AFTER = 5
MAX_TRACKED_VALUES = 200


def now_ms() -> int:
    return int(time.time() * 1000)


def iso_from_ms(value: float) -> str:
    return datetime.fromtimestamp(value / 1000.0, timezone.utc).isoformat()


def calculate_percentile(values: list[float], percentile: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    index = (percentile / 100.0) * (len(ordered) - 1)
    lower = math.floor(index)
    upper = math.ceil(index)
    if lower == upper:
        return float(ordered[lower])
    weight = index - lower
    return ordered[lower] * (1 - weight) + ordered[upper] * weight


def calculate_percentiles(values: list[float]) -> dict[str, float]:
    return {f"p{p}": calculate_percentile(values, p) for p in (50, 75, 90, 95, 99)}


def _tail(values: list[Any], limit: int = WINDOW) -> list[Any]:
    return values[-limit:] if len(values) > limit else values


def _bump(counter: dict[Any, int], key: Any) -> None:
    counter[key] = counter.get(key, 0) + 1


def _remember(values: set[str], value: str) -> None:
    if value in values or len(values) < MAX_TRACKED_VALUES:
        values.add(value)


def _round_pct(value: float) -> float:
    return round(value * 10000) / 100


class MetricsCollector:
    """In-process request, cache and upstream API telemetry.

    Every series keeps a rolling window of the last 100 samples; percentile
    fields are recomputed on each write so reads are cheap.
    """

    def __init__(self) -> None:
        self.reset(log=False)

    def reset(self, log: bool = True) -> None:
        self.requests: dict[str, dict[str, Any]] = {}
        self.responses: dict[str, dict[str, Any]] = {}
        self.errors: dict[str, dict[str, Any]] = {}
        self.performance: dict[str, dict[str, Any]] = {}
        self.cache: dict[str, dict[str, Any]] = {}
        self.api: dict[str, dict[str, Any]] = {}
        self.start_time = now_ms()
        self.request_count = 0
        self.error_count = 0
        if log:
            logger.info("Metrics reset completed")

    def record_request(self, method: str, path: str, user_agent: str | None = None, ip: str | None = None) -> None:
        self.request_count += 1
        metric = self.requests.setdefault(f"{method}:{path}", {"count": 0, "methods": set(), "userAgents": set(), "ips": set(), "timestamps": []})
        metric["count"] += 1
        metric["methods"].add(method)
        if user_agent:
            _remember(metric["userAgents"], user_agent)
        if ip:
            _remember(metric["ips"], ip)
        metric["timestamps"] = _tail(metric["timestamps"] + [now_ms()])

    def record_response(self, method: str, path: str, status_code: int, response_time: float, size: int | None = None) -> None:
        metric = self.responses.setdefault(
            f"{method}:{path}",
            {"count": 0, "statusCodes": {}, "responseTimes": [], "sizes": [], "avgResponseTime": 0.0, "minResponseTime": math.inf, "maxResponseTime": 0.0},
        )
        metric["count"] += 1
        _bump(metric["statusCodes"], int(status_code))
        metric["responseTimes"].append(float(response_time))
        metric["minResponseTime"] = min(metric["minResponseTime"], response_time)
        metric["maxResponseTime"] = max(metric["maxResponseTime"], response_time)
        metric["avgResponseTime"] = sum(metric["responseTimes"]) / len(metric["responseTimes"])
        for name, value in calculate_percentiles(metric["responseTimes"]).items():
            metric[f"{name}ResponseTime"] = value
        metric["responseTimes"] = _tail(metric["responseTimes"])
        if size is not None:
            metric["sizes"] = _tail(metric["sizes"] + [int(size)])

    def record_error(self, method: str, path: str, error: BaseException, status_code: int | None = None) -> None:
        self.error_count += 1
        metric = self.errors.setdefault(f"{method}:{path}", {"count": 0, "errorTypes": {}, "statusCodes": {}, "messages": [], "timestamps": []})
        metric["count"] += 1
        _bump(metric["errorTypes"], type(error).__name__ or "Unknown")
        if status_code:
            _bump(metric["statusCodes"], int(status_code))
        message = str(error)
        if len(metric["messages"]) < MAX_ERROR_MESSAGES and message not in metric["messages"]:
            metric["messages"].append(message)
        metric["timestamps"] = _tail(metric["timestamps"] + [now_ms()])

    def record_performance(self, operation: str, duration: float, metadata: dict[str, str] | None = None) -> None:
        metric = self.performance.setdefault(
            operation,
            {"count": 0, "durations": [], "avgDuration": 0.0, "minDuration": math.inf, "maxDuration": 0.0, "metadata": {}},
        )
        metric["count"] += 1
        metric["durations"].append(float(duration))
        metric["minDuration"] = min(metric["minDuration"], duration)
        metric["maxDuration"] = max(metric["maxDuration"], duration)
        metric["avgDuration"] = sum(metric["durations"]) / len(metric["durations"])
        for name, value in calculate_percentiles(metric["durations"]).items():
            metric[f"{name}Duration"] = value
        metric["durations"] = _tail(metric["durations"])
        for key, value in (metadata or {}).items():
            _bump(metric["metadata"].setdefault(key, {}), str(value))

    def record_cache(
        self,
        operation: str,
        hit: bool,
        key: str | None = None,
        ttl: float | None = None,
        key_size: int | None = None,
        evicted: bool = False,
    ) -> None:
        metric = self.cache.setdefault(
            operation,
            {
                "hits": 0,
                "misses": 0,
                "hitRate": 0.0,
                "keys": set(),
                "avgTTL": 0.0,
                "ttls": [],
                "evictions": 0,
                "memoryUsage": 0,
                "averageKeySize": 0.0,
                "totalOperations": 0,
                "lastAccess": now_ms(),
                "recentHitRates": [],
                "keyAccessPatterns": {},
            },
        )
        metric["totalOperations"] += 1
        metric["lastAccess"] = now_ms()
        if hit:
            metric["hits"] += 1
        else:
            metric["misses"] += 1
        metric["hitRate"] = metric["hits"] / (metric["hits"] + metric["misses"])
        if metric["totalOperations"] % 10 == 0:
            metric["recentHitRates"] = _tail(metric["recentHitRates"] + [metric["hitRate"]])
        if key:
            _remember(metric["keys"], key)
            if key in metric["keyAccessPatterns"] or len(metric["keyAccessPatterns"]) < MAX_TRACKED_VALUES:
                _bump(metric["keyAccessPatterns"], key)
        if ttl is not None:
            metric["ttls"].append(float(ttl))
            metric["avgTTL"] = sum(metric["ttls"]) / len(metric["ttls"])
            metric["ttls"] = _tail(metric["ttls"])
        if key_size is not None:
            metric["memoryUsage"] += int(key_size)
            metric["averageKeySize"] = metric["memoryUsage"] / max(1, len(metric["keys"]))
        if evicted:
            metric["evictions"] += 1

    def record_cache_eviction(self, operation: str) -> None:
        metric = self.cache.get(operation)
        if metric is not None:
            metric["evictions"] += 1

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        duration: float,
        success: bool,
        status_code: int | None = None,
        error_type: str | None = None,
        is_timeout: bool = False,
        is_rate_limit: bool = False,
    ) -> None:
        metric = self.api.setdefault(
            f"{service}:{endpoint}",
            {
                "calls": 0,
                "successes": 0,
                "failures": 0,
                "successRate": 0.0,
                "durations": [],
                "avgDuration": 0.0,
                "statusCodes": {},
                "timestamps": [],
                "firstCall": 0,
                "timeouts": 0,
                "rateLimits": 0,
                "circuitBreakerState": "closed",
                "consecutiveFailures": 0,
                "lastFailureTime": 0,
                "uptime": 0,
                "slaCompliance": 1.0,
                "errorPatterns": {},
                "responseTimeThreshold": SLOW_RESPONSE_THRESHOLD_MS,
                "slowResponses": 0,
            },
        )
        now = now_ms()
        metric["calls"] += 1
        if success:
            metric["successes"] += 1
            metric["consecutiveFailures"] = 0
            if metric["circuitBreakerState"] == "half-open":
                metric["circuitBreakerState"] = "closed"
        else:
            metric["failures"] += 1
            metric["consecutiveFailures"] += 1
            metric["lastFailureTime"] = now
            if metric["consecutiveFailures"] >= CIRCUIT_OPEN_AFTER:
                metric["circuitBreakerState"] = "open"
            if error_type:
                _bump(metric["errorPatterns"], error_type)
        if is_timeout:
            metric["timeouts"] += 1
        if is_rate_limit:
            metric["rateLimits"] += 1
        if duration > metric["responseTimeThreshold"]:
            metric["slowResponses"] += 1

        metric["successRate"] = metric["successes"] / metric["calls"]
        metric["durations"].append(float(duration))
        metric["avgDuration"] = sum(metric["durations"]) / len(metric["durations"])
        for name, value in calculate_percentiles(metric["durations"]).items():
            metric[f"{name}Duration"] = value
        metric["durations"] = _tail(metric["durations"])
        metric["slaCompliance"] = metric["successRate"]
        if not metric["firstCall"]:
            metric["firstCall"] = now
        metric["uptime"] = now - metric["firstCall"]
        if status_code:
            _bump(metric["statusCodes"], int(status_code))
        metric["timestamps"] = _tail(metric["timestamps"] + [now])

    def set_circuit_state(self, service: str, endpoint: str, state: str) -> None:
        metric = self.api.get(f"{service}:{endpoint}")
        if metric is not None:
            metric["circuitBreakerState"] = state

    def get_metrics(self) -> dict[str, Any]:
        uptime_seconds = (now_ms() - self.start_time) // 1000
        return {
            "overview": {
                "uptime": uptime_seconds,
                "totalRequests": self.request_count,
                "totalErrors": self.error_count,
                "errorRate": self.error_count / self.request_count if self.request_count else 0,
                "timestamp": iso_from_ms(now_ms()),
            },
            "requests": {
                key: {
                    "count": value["count"],
                    "methods": sorted(value["methods"]),
                    "userAgents": sorted(value["userAgents"]),
                    "ips": sorted(value["ips"]),
                    "recentTimestamps": value["timestamps"][-10:],
                }
                for key, value in self.requests.items()
            },
            "responses": {
                key: {
                    **{k: v for k, v in value.items() if k not in {"responseTimes", "sizes", "minResponseTime"}},
                    "minResponseTime": value["minResponseTime"] if value["count"] else 0,
                    "statusCodes": {str(code): count for code, count in value["statusCodes"].items()},
                    "responseTimes": list(value["responseTimes"]),
                    "recentResponseTimes": value["responseTimes"][-10:],
                    "recentSizes": value["sizes"][-10:],
                }
                for key, value in self.responses.items()
            },
            "errors": {
                key: {
                    "count": value["count"],
                    "errorTypes": dict(value["errorTypes"]),
                    "statusCodes": {str(code): count for code, count in value["statusCodes"].items()},
                    "messages": list(value["messages"]),
                    "recentTimestamps": value["timestamps"][-10:],
                }
                for key, value in self.errors.items()
            },
            "performance": {
                key: {
                    **{k: v for k, v in value.items() if k not in {"durations", "metadata", "minDuration"}},
                    "minDuration": value["minDuration"] if value["count"] else 0,
                    "recentDurations": value["durations"][-10:],
                    "metadata": {k: dict(v) for k, v in value["metadata"].items()},
                }
                for key, value in self.performance.items()
            },
            "cache": {
                key: {
                    "hits": value["hits"],
                    "misses": value["misses"],
                    "hitRate": value["hitRate"],
                    "avgTTL": value["avgTTL"],
                    "evictions": value["evictions"],
                    "memoryUsage": value["memoryUsage"],
                    "averageKeySize": value["averageKeySize"],
                    "totalOperations": value["totalOperations"],
                    "keys": sorted(value["keys"])[-20:],
                    "recentTTLs": value["ttls"][-10:],
                    "recentHitRates": value["recentHitRates"][-10:],
                    "topAccessedKeys": self._top_keys(value, 5),
                    "memoryEfficiency": round(value["memoryUsage"] / value["hits"]) if value["hits"] else 0,
                    "evictionRate": value["evictions"] / value["totalOperations"] if value["totalOperations"] else 0,
                    "lastAccessTime": iso_from_ms(value["lastAccess"]),
                }
                for key, value in self.cache.items()
            },
            "api": {
                key: {
                    **{k: v for k, v in value.items() if k not in {"durations", "timestamps", "statusCodes", "errorPatterns"}},
                    "statusCodes": {str(code): count for code, count in value["statusCodes"].items()},
                    "errorPatterns": dict(value["errorPatterns"]),
                    "recentDurations": value["durations"][-10:],
                    "recentTimestamps": value["timestamps"][-10:],
                }
                for key, value in self.api.items()
            },
        }

    def get_summary(self) -> dict[str, Any]:
        top_endpoints = sorted(self.requests.items(), key=lambda row: -row[1]["count"])[:5]
        all_times = [t for metric in self.responses.values() for t in metric["responseTimes"]]
        avg_response_time = sum(all_times) / len(all_times) if all_times else 0
        return {
            "uptime": (now_ms() - self.start_time) // 1000,
            "totalRequests": self.request_count,
            "totalErrors": self.error_count,
            "errorRate": self.error_count / self.request_count if self.request_count else 0,
            "avgResponseTime": round(avg_response_time),
            "topEndpoints": [{"endpoint": key, "count": value["count"]} for key, value in top_endpoints],
            "timestamp": iso_from_ms(now_ms()),
        }

    def cleanup(self) -> None:
        cutoff = now_ms() - TIMESTAMP_MAX_AGE_MS
        for bucket in (self.requests, self.errors, self.api):
            for metric in bucket.values():
                metric["timestamps"] = [ts for ts in metric["timestamps"] if ts > cutoff]
        logger.info(
            "Metrics cleanup completed (requests=%s responses=%s errors=%s)",
            len(self.requests),
            len(self.responses),
            len(self.errors),
        )

    @staticmethod
    def _top_keys(metric: dict[str, Any], limit: int) -> list[dict[str, Any]]:
        rows = sorted(metric["keyAccessPatterns"].items(), key=lambda row: -row[1])[:limit]
        return [{"key": key, "accessCount": count} for key, count in rows]

    def analyze_cache_efficiency(self) -> dict[str, Any]:
        analysis: dict[str, Any] = {}
        for operation, metric in self.cache.items():
            recent = metric["recentHitRates"]
            total_ops = metric["totalOperations"]
            eviction_rate = metric["evictions"] / total_ops if total_ops else 0
            eviction_score = max(0.0, 100 - eviction_rate * 100) if metric["evictions"] else 100.0
            performance_score = (metric["hitRate"] * 100 + eviction_score) / 2
            analysis[operation] = {
                "overall": {
                    "hitRate": metric["hitRate"],
                    "recentHitRate": recent[-1] if recent else metric["hitRate"],
                    "hitRateTrend": (recent[-1] - recent[0]) if len(recent) >= 2 else 0,
                    "totalOperations": total_ops,
                    "evictionRate": eviction_rate,
                    "performanceScore": round(performance_score),
                    "lastAccess": iso_from_ms(metric["lastAccess"]),
                },
                "memory": {
                    "totalUsage": metric["memoryUsage"],
                    "averageKeySize": metric["averageKeySize"],
                    "memoryEfficiency": round(metric["memoryUsage"] / metric["hits"]) if metric["hits"] else 0,
                    "totalKeys": len(metric["keys"]),
                },
                "patterns": {
                    "topAccessedKeys": self._top_keys(metric, 10),
                    "averageTTL": metric["avgTTL"],
                    "recentTTLs": metric["ttls"][-10:],
                },
                "recommendations": self._cache_recommendations(metric),
            }
        return analysis

    @staticmethod
    def _cache_recommendations(metric: dict[str, Any]) -> list[str]:
        out: list[str] = []
        if metric["hitRate"] < 0.7:
            out.append("Hit rate is low. Review the caching strategy for this operation.")
        if metric["totalOperations"] and metric["evictions"] / metric["totalOperations"] > 0.1:
            out.append("Eviction rate is high. Increase cache capacity or adjust TTLs.")
        if metric["averageKeySize"] > 1024 * 1024:
            out.append("Average entry size is large. Consider compressing cached values.")
        if metric["ttls"] and metric["avgTTL"] < 300:
            out.append("TTLs are short. Consider longer TTLs for this data.")
        recent = metric["recentHitRates"][-5:]
        if len(recent) >= 5 and all(i == 0 or recent[i] <= recent[i - 1] for i in range(len(recent))):
            out.append("Hit rate is trending down. Review the cache invalidation strategy.")
        return out

    def analyze_api_health(self) -> dict[str, Any]:
        analysis: dict[str, Any] = {}
        for key, metric in self.api.items():
            service, _, endpoint = key.partition(":")
            calls = metric["calls"] or 1
            availability = metric["successRate"]
            error_rate = metric["failures"] / calls
            timeout_rate = metric["timeouts"] / calls
            rate_limit_rate = metric["rateLimits"] / calls
            p95 = metric.get("p95Duration", 0.0)
            availability_score = availability * 100
            performance_score = max(0.0, 100 - (p95 / 1000) * 10)
            error_score = max(0.0, 100 - error_rate * 100)
            recent_calls = metric["timestamps"][-10:]
            analysis[key] = {
                "service": service,
                "endpoint": endpoint,
                "health": {
                    "status": "healthy" if availability >= SLA_TARGET else "degraded",
                    "availability": _round_pct(availability),
                    "overallScore": round((availability_score + performance_score + error_score) / 3),
                    "circuitBreakerState": metric["circuitBreakerState"],
                    "consecutiveFailures": metric["consecutiveFailures"],
                    "lastFailureTime": iso_from_ms(metric["lastFailureTime"]) if metric["lastFailureTime"] else None,
                },
                "performance": {
                    "avgLatency": round(metric["avgDuration"]),
                    "p50Latency": round(metric.get("p50Duration", 0.0)),
                    "p95Latency": round(p95),
                    "p99Latency": round(metric.get("p99Duration", 0.0)),
                    "slowResponses": metric["slowResponses"],
                    "slowResponseRate": round(metric["slowResponses"] / calls * 100) / 100,
                },
                "errors": {
                    "errorRate": _round_pct(error_rate),
                    "timeoutRate": _round_pct(timeout_rate),
                    "rateLimitRate": _round_pct(rate_limit_rate),
                    "topErrors": [{"type": t, "count": c} for t, c in sorted(metric["errorPatterns"].items(), key=lambda row: -row[1])[:5]],
                },
                "traffic": {
                    "totalCalls": metric["calls"],
                    "recentCalls": len(recent_calls),
                    "recentSuccesses": round(len(recent_calls) * metric["successRate"]) if recent_calls else 0,
                    "uptime": round(metric["uptime"] / 1000),
                    "slaCompliance": _round_pct(metric["slaCompliance"]),
                },
                "recommendations": self._api_recommendations(metric),
            }
        return analysis

    @staticmethod
    def _api_recommendations(metric: dict[str, Any]) -> list[str]:
        calls = metric["calls"] or 1
        out: list[str] = []
        if metric["successRate"] < 0.95:
            out.append("Success rate is low. Review error handling and retry logic.")
        if metric.get("p95Duration", 0.0) > SLOW_RESPONSE_THRESHOLD_MS:
            out.append("p95 latency is slow. Consider performance optimizations.")
        if metric["circuitBreakerState"] == "open":
            out.append("Circuit breaker is open. Check the upstream service status.")
        if metric["timeouts"] / calls > 0.05:
            out.append("Timeouts are frequent. Review timeout settings.")
        if metric["rateLimits"] / calls > 0.01:
            out.append("Rate limits are being hit. Reduce call frequency.")
        if metric["consecutiveFailures"] > 3:
            out.append("Consecutive failures detected. Immediate investigation required.")
        return out


metrics_collector = MetricsCollector()
