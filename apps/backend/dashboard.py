from __future__ import annotations

import logging
from typing import Any

from alert_service import alert_service
from meta_store import meta_store
from metrics import metrics_collector
from responses import now_iso

logger = logging.getLogger(__name__)


def calculate_system_status(error_rate: float, avg_response_time: float, active_alert_count: int) -> str:
    high_error_rate = error_rate > 0.05
    slow_response = avg_response_time > 1000
    if active_alert_count > 0 or (high_error_rate and slow_response):
        return "critical"
    if high_error_rate or slow_response:
        return "degraded"
    return "healthy"


def _mean_positive(rows: list[dict[str, Any]], field: str) -> float:
    values = [float(row.get(field) or 0) for row in rows]
    values = [value for value in values if value > 0]
    return sum(values) / len(values) if values else 0.0


def calculate_performance_metrics(metrics: dict[str, Any]) -> dict[str, Any]:
    rows = list(metrics["responses"].values())
    if not rows:
        return {"p50ResponseTime": 0, "p95ResponseTime": 0, "p99ResponseTime": 0, "slowRequests": 0, "performanceScore": 100}
    slow = sum(len([t for t in row.get("responseTimes") or [] if t > 1000]) for row in rows)
    p50 = _mean_positive(rows, "p50ResponseTime")
    p95 = _mean_positive(rows, "p95ResponseTime")
    p99 = _mean_positive(rows, "p99ResponseTime")
    score = max(0.0, min(100.0, 100 - (p95 / 1000) * 20 - (slow / max(1, len(rows))) * 10))
    return {"p50ResponseTime": round(p50), "p95ResponseTime": round(p95), "p99ResponseTime": round(p99), "slowRequests": slow, "performanceScore": round(score)}


def calculate_cache_metrics(analysis: dict[str, Any]) -> dict[str, Any]:
    rows = list(analysis.values())
    total_ops = sum(row["overall"]["totalOperations"] for row in rows)
    if not rows or not total_ops:
        return {"totalHitRate": 0, "memoryUsage": 0, "evictionRate": 0, "efficiency": 0}
    hit_rate = sum(row["overall"]["hitRate"] * 100 * row["overall"]["totalOperations"] / total_ops for row in rows)
    memory = sum(row["memory"]["totalUsage"] for row in rows)
    eviction = sum(row["overall"]["evictionRate"] for row in rows) / len(rows)
    efficiency = sum(row["overall"]["performanceScore"] for row in rows) / len(rows)
    return {
        "totalHitRate": round(hit_rate, 2),
        "memoryUsage": round(memory / 1024),
        "evictionRate": round(eviction * 100, 2),
        "efficiency": round(efficiency),
    }


def calculate_api_metrics(analysis: dict[str, Any]) -> dict[str, Any]:
    rows = list(analysis.values())
    total_calls = sum(row["traffic"]["totalCalls"] for row in rows)
    if not rows or not total_calls:
        return {"totalCalls": 0, "successRate": 0, "avgLatency": 0, "circuitBreakers": {}}
    success = sum(row["health"]["availability"] * row["traffic"]["totalCalls"] / total_calls for row in rows)
    latency = sum(row["performance"]["avgLatency"] for row in rows) / len(rows)
    return {
        "totalCalls": total_calls,
        "successRate": round(success, 2),
        "avgLatency": round(latency),
        "circuitBreakers": {f"{row['service']}:{row['endpoint']}": row["health"]["circuitBreakerState"] for row in rows},
    }


def get_dashboard_data() -> dict[str, Any]:
    metrics = metrics_collector.get_metrics()
    summary = metrics_collector.get_summary()
    history = alert_service.get_alert_history()
    active = alert_service.get_active_alerts()
    return {
        "timestamp": now_iso(),
        "uptime": summary["uptime"],
        "system": {
            "totalRequests": summary["totalRequests"],
            "totalErrors": summary["totalErrors"],
            "errorRate": round(summary["errorRate"] * 100, 2),
            "avgResponseTime": summary["avgResponseTime"],
            "status": calculate_system_status(summary["errorRate"], summary["avgResponseTime"], len(active)),
        },
        "performance": calculate_performance_metrics(metrics),
        "cache": calculate_cache_metrics(metrics_collector.analyze_cache_efficiency()),
        "api": calculate_api_metrics(metrics_collector.analyze_api_health()),
        "alerts": {
            "active": active,
            "recentCount": len(history),
            "criticalCount": len([a for a in active if a["severity"] == "critical"]),
            "history": {"total": len(history), "recent": history[:10]},
        },
    }


def get_system_summary() -> dict[str, Any]:
    data = get_dashboard_data()
    return {
        "timestamp": data["timestamp"],
        "status": data["system"]["status"],
        "uptime": data["uptime"],
        "alerts": {"active": len(data["alerts"]["active"]), "critical": data["alerts"]["criticalCount"]},
        "performance": {
            "errorRate": data["system"]["errorRate"],
            "avgResponseTime": data["system"]["avgResponseTime"],
            "p95ResponseTime": data["performance"]["p95ResponseTime"],
        },
        "resources": {"cacheHitRate": data["cache"]["totalHitRate"], "apiSuccessRate": data["api"]["successRate"]},
    }


async def get_health_check() -> dict[str, Any]:
    summary = get_system_summary()
    try:
        store_status = "healthy" if await meta_store.ping() else "degraded"
    except OSError as error:
        logger.warning("Store health check failed: %s", error)
        store_status = "critical"
    return {
        "status": summary["status"],
        "timestamp": summary["timestamp"],
        "checks": {
            "database": store_status,
            "cache": "healthy" if summary["resources"]["cacheHitRate"] > 70 else "degraded",
            "api": "healthy" if summary["resources"]["apiSuccessRate"] > 95 else "degraded",
            "alerts": "critical" if summary["alerts"]["critical"] > 0 else "healthy",
        },
        "metrics": {
            "uptime": summary["uptime"],
            "errorRate": summary["performance"]["errorRate"],
            "responseTime": summary["performance"]["avgResponseTime"],
        },
    }
