from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Query
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

import query_analyzer
from alert_service import CHANNELS, alert_service
from cache_analyzer import cache_analyzer
from cache_manager import cache_manager
from cache_monitor import get_stats_for_api
from dashboard import get_dashboard_data, get_health_check, get_system_summary
from error_monitor import CATEGORIES, SEVERITIES, error_monitor
from http_errors import NotFoundError, ValidationError
from metrics import metrics_collector
from responses import success_body
from slow_query_detector import slow_query_detector

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


class AlertRuleUpdate(BaseModel):
    enabled: bool | None = None
    cooldown: float | None = None
    channels: list[str] | None = None
    conditions: dict[str, Any] | None = None


def _parse_time(value: str | None, field: str) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as error:
        raise ValidationError(f"Invalid {field} timestamp.", field=field, value=value) from error


@router.get("/cache/stats")
async def cache_stats():
    return success_body({**cache_manager.get_stats(), "monitor": get_stats_for_api()})


@router.get("/cache/analysis")
async def cache_analysis():
    return success_body(cache_analyzer.analyze_cache(cache_manager.snapshot()))


@router.get("/cache/report", response_class=PlainTextResponse)
async def cache_report():
    return cache_analyzer.generate_report(cache_manager.snapshot())


@router.post("/cache/optimize")
async def cache_optimize():
    return success_body(cache_analyzer.optimize(cache_manager), "Cache optimized.")


@router.delete("/cache")
async def cache_flush():
    await cache_manager.flush()
    return success_body(None, "Cache flushed.")


@router.delete("/cache/{key}")
async def cache_delete(key: str):
    if not await cache_manager.delete(key):
        raise NotFoundError(f"Cache key {key} not found.", resource="cache key")
    return success_body({"key": key}, "Cache key deleted.")


@router.get("/metrics")
async def metrics():
    return success_body(metrics_collector.get_metrics())


@router.get("/metrics/summary")
async def metrics_summary():
    return success_body(metrics_collector.get_summary())


@router.get("/metrics/cache-efficiency")
async def metrics_cache_efficiency():
    return success_body(metrics_collector.analyze_cache_efficiency())


@router.get("/metrics/api-health")
async def metrics_api_health():
    return success_body(metrics_collector.analyze_api_health())


@router.post("/metrics/reset")
async def metrics_reset():
    metrics_collector.reset()
    return success_body(None, "Metrics reset.")


@router.get("/dashboard")
async def dashboard():
    return success_body(get_dashboard_data())


@router.get("/dashboard/summary")
async def dashboard_summary():
    return success_body(get_system_summary())


@router.get("/dashboard/health")
async def dashboard_health():
    return success_body(await get_health_check())


@router.get("/alerts")
async def alerts(limit: int = Query(100, ge=1, le=1000)):
    return success_body(alert_service.get_alert_history(limit))


@router.get("/alerts/active")
async def alerts_active(limit: int = Query(50, ge=1, le=1000)):
    return success_body(alert_service.get_active_alerts(limit))


@router.get("/alerts/stats")
async def alerts_stats(start: str | None = None, end: str | None = None):
    return success_body(alert_service.get_alert_stats(_parse_time(start, "start"), _parse_time(end, "end")))


@router.get("/alerts/rules")
async def alerts_rules():
    return success_body(alert_service.get_rules())


@router.post("/alerts/{alert_id}/resolve")
async def alerts_resolve(alert_id: str):
    if not alert_service.resolve_alert(alert_id):
        raise NotFoundError(f"Alert {alert_id} not found.", resource="alert")
    return success_body({"alertId": alert_id}, "Alert resolved.")


@router.patch("/alerts/rules/{rule_id}")
async def alerts_update_rule(rule_id: str, body: AlertRuleUpdate):
    updates = body.model_dump(exclude_none=True)
    unknown = [channel for channel in updates.get("channels") or [] if channel not in CHANNELS]
    if unknown:
        raise ValidationError(f"Unknown alert channels: {', '.join(unknown)}", field="channels", value=unknown)
    if not alert_service.update_rule(rule_id, updates):
        raise NotFoundError(f"Alert rule {rule_id} not found.", resource="alert rule")
    rule = next(rule for rule in alert_service.get_rules() if rule["id"] == rule_id)
    return success_body(rule, "Alert rule updated.")


@router.get("/errors")
async def errors(
    category: str | None = None,
    severity: str | None = None,
    resolved: bool | None = None,
    start: str | None = None,
    end: str | None = None,
    limit: int = Query(50, ge=1, le=1000),
):
    if category and category not in CATEGORIES:
        raise ValidationError(f"Unknown error category {category}.", field="category", value=category)
    if severity and severity not in SEVERITIES:
        raise ValidationError(f"Unknown severity {severity}.", field="severity", value=severity)
    if not any((category, severity, resolved is not None, start, end)):
        return success_body(error_monitor.get_recent_errors(limit))
    rows = error_monitor.filter_errors(category, severity, resolved, _parse_time(start, "start"), _parse_time(end, "end"))
    return success_body(rows[:limit])


@router.get("/errors/stats")
async def errors_stats(start: str | None = None, end: str | None = None):
    return success_body(error_monitor.get_error_stats(_parse_time(start, "start"), _parse_time(end, "end")))


@router.get("/errors/patterns")
async def errors_patterns():
    return success_body(error_monitor.analyze_error_patterns())


@router.get("/errors/health")
async def errors_health():
    return success_body(error_monitor.get_health_status())


@router.get("/errors/{fingerprint}")
async def error_details(fingerprint: str):
    details = error_monitor.get_error_details(fingerprint)
    if details is None:
        raise NotFoundError(f"Error {fingerprint} not found.", resource="error")
    return success_body(details)


@router.post("/errors/{fingerprint}/resolve")
async def errors_resolve(fingerprint: str, resolved_by: str = Query("api", alias="resolvedBy")):
    if not error_monitor.resolve_error(fingerprint, resolved_by):
        raise NotFoundError(f"Error {fingerprint} not found.", resource="error")
    return success_body({"fingerprint": fingerprint}, "Error resolved.")


@router.get("/queries/slow")
async def queries_slow(limit: int = Query(50, ge=1, le=500)):
    return success_body({"stats": slow_query_detector.get_stats(), "recent": slow_query_detector.get_recent(limit)})


@router.get("/queries/analysis")
async def queries_analysis(limit: int = Query(1000, ge=1, le=10000)):
    loaded = slow_query_detector.analyze_slow_queries(limit)
    queries = loaded["queries"] or slow_query_detector.get_recent(limit)
    return success_body({"summary": loaded["summary"], **query_analyzer.analyze(queries)})
