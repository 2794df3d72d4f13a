from __future__ import annotations

import asyncio
import copy
import logging
import random
import re
import time
from datetime import datetime, timezone
from typing import Any, Coroutine

import httpx

from error_monitor import error_monitor, serialize_error

logger = logging.getLogger(__name__)

CHANNELS = ("email", "slack", "webhook", "sms", "discord")
SEVERITY_EMOJI = {"low": "\U0001F7E1", "medium": "\U0001F7E0", "high": "\U0001F534", "critical": "\U0001F6A8"}
MAX_HISTORY = 1000
RETENTION_SECONDS = 7 * 24 * 60 * 60
ACTIVE_WINDOW_SECONDS = 60 * 60

DEFAULT_RULES: list[dict[str, Any]] = [
    {
        "id": "critical_errors",
        "name": "Critical error",
        "description": "Notify every channel as soon as a critical error occurs.",
        "enabled": True,
        "conditions": {"severity": ["critical"], "occurrenceThreshold": 1},
        "channels": ["slack", "email"],
        "cooldown": 5,
        "escalation": {"delay": 15, "channels": ["sms"]},
    },
    {
        "id": "high_severity_errors",
        "name": "High severity errors",
        "description": "High severity error seen 3 or more times within 5 minutes.",
        "enabled": True,
        "conditions": {"severity": ["high"], "occurrenceThreshold": 3, "timeWindow": 5},
        "channels": ["slack"],
        "cooldown": 10,
    },
    {
        "id": "database_errors",
        "name": "Storage errors",
        "description": "Storage related error seen twice within 10 minutes.",
        "enabled": True,
        "conditions": {"category": ["database"], "occurrenceThreshold": 2, "timeWindow": 10},
        "channels": ["slack", "email"],
        "cooldown": 15,
    },
    {
        "id": "api_error_spike",
        "name": "API error spike",
        "description": "API errors seen 20 or more times within 10 minutes.",
        "enabled": True,
        "conditions": {"category": ["api"], "occurrenceThreshold": 20, "timeWindow": 10},
        "channels": ["slack"],
        "cooldown": 30,
    },
    {
        "id": "security_errors",
        "name": "Security errors",
        "description": "Notify immediately on security related errors.",
        "enabled": True,
        "conditions": {"category": ["security"], "occurrenceThreshold": 1},
        "channels": ["slack", "email"],
        "cooldown": 5,
    },
]


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


def serialize_alert(alert: dict[str, Any]) -> dict[str, Any]:
    out = {key: value for key, value in alert.items() if key not in {"ts", "lastAttemptTs", "error"}}
    out["timestamp"] = _iso(alert["ts"])
    out["lastAttempt"] = _iso(alert["lastAttemptTs"]) if alert.get("lastAttemptTs") else None
    out["error"] = serialize_error(alert["error"])
    out["channels"] = list(alert["channels"])
    return out


class AlertService:
    def __init__(self) -> None:
        self.rules: dict[str, dict[str, Any]] = {}
        self.history: list[dict[str, Any]] = []
        self.cooldowns: dict[str, float] = {}
        self.occurrences: dict[str, list[float]] = {}
        self.channel_config: dict[str, Any] = {}
        self.http_client: httpx.AsyncClient | None = None
        self.delivery_tasks: set[asyncio.Task] = set()
        self.escalation_tasks: set[asyncio.Task] = set()
        for rule in DEFAULT_RULES:
            self.add_rule(copy.deepcopy(rule))

    def configure(self, settings: Any, http_client: httpx.AsyncClient | None = None) -> None:
        self.http_client = http_client
        self.channel_config = {
            "slack": settings.alert_slack_webhook_url or None,
            "discord": settings.alert_discord_webhook_url or None,
            "webhook": settings.alert_webhook_url or None,
            "email": list(settings.alert_email_recipients) or None,
            "sms": None,
        }

    def add_rule(self, rule: dict[str, Any]) -> None:
        rule.setdefault("enabled", True)
        rule.setdefault("conditions", {})
        rule.setdefault("channels", [])
        self.rules[rule["id"]] = rule
        logger.debug("Alert rule added: %s", rule["id"])

    def remove_rule(self, rule_id: str) -> bool:
        removed = self.rules.pop(rule_id, None) is not None
        if removed:
            logger.info("Alert rule removed: %s", rule_id)
        return removed

    def update_rule(self, rule_id: str, updates: dict[str, Any]) -> bool:
        rule = self.rules.get(rule_id)
        if rule is None:
            return False
        updates = {key: value for key, value in updates.items() if value is not None and key != "id"}
        if "conditions" in updates:
            updates["conditions"] = {**rule.get("conditions", {}), **updates["conditions"]}
        if "channels" in updates:
            updates["channels"] = [channel for channel in updates["channels"] if channel in CHANNELS]
        rule.update(updates)
        logger.info("Alert rule updated: %s %s", rule_id, sorted(updates))
        return True

    def get_rules(self) -> list[dict[str, Any]]:
        return [copy.deepcopy(rule) for rule in self.rules.values()]

    def _record_occurrence(self, fingerprint: str) -> None:
        now = time.time()
        cutoff = now - RETENTION_SECONDS
        rows = [ts for ts in self.occurrences.get(fingerprint, []) if ts > cutoff]
        rows.append(now)
        self.occurrences[fingerprint] = rows

    def _count_occurrences(self, fingerprint: str, window_minutes: float | None) -> int:
        rows = self.occurrences.get(fingerprint, [])
        if not window_minutes:
            return len(rows)
        cutoff = time.time() - float(window_minutes) * 60
        return len([ts for ts in rows if ts >= cutoff])

    def find_applicable_rules(self, error: dict[str, Any]) -> list[dict[str, Any]]:
        out = []
        for rule in self.rules.values():
            if not rule.get("enabled"):
                continue
            conditions = rule.get("conditions") or {}
            if conditions.get("severity") and error["severity"] not in conditions["severity"]:
                continue
            if conditions.get("category") and error["category"] not in conditions["category"]:
                continue
            if conditions.get("messagePattern") and not re.search(conditions["messagePattern"], error["message"], re.IGNORECASE):
                continue
            endpoint = (error.get("context") or {}).get("endpoint")
            if conditions.get("endpointPattern") and endpoint and not re.search(conditions["endpointPattern"], str(endpoint), re.IGNORECASE):
                continue
            threshold = conditions.get("occurrenceThreshold")
            if threshold and self._count_occurrences(error["fingerprint"], conditions.get("timeWindow")) < int(threshold):
                continue
            out.append(rule)
        return out

    def _in_cooldown(self, rule: dict[str, Any], fingerprint: str) -> bool:
        last = self.cooldowns.get(f"{rule['id']}:{fingerprint}")
        if last is None or not rule.get("cooldown"):
            return False
        return time.time() - last < float(rule["cooldown"]) * 60

    async def notify(self, error: dict[str, Any]) -> None:
        """Error monitor subscriber. Alerts are evaluated and delivered in the background."""
        self._spawn(self.delivery_tasks, self._process_in_background(error))

    async def _process_in_background(self, error: dict[str, Any]) -> None:
        try:
            await self.process_error(error)
        except Exception:
            logger.exception("Alert processing failed for %s", error.get("fingerprint"))

    async def process_error(self, error: dict[str, Any]) -> list[dict[str, Any]]:
        self._record_occurrence(error["fingerprint"])
        sent = []
        for rule in self.find_applicable_rules(error):
            if self._in_cooldown(rule, error["fingerprint"]):
                logger.debug("Alert %s for %s suppressed by cooldown", rule["id"], error["fingerprint"])
                continue
            alert = self.create_alert(rule, error)
            await self.send_alert(alert)
            sent.append(alert)
        return sent

    def create_alert(self, rule: dict[str, Any], error: dict[str, Any]) -> dict[str, Any]:
        now = time.time()
        return {
            "id": f"alert_{int(now * 1000)}_{random.randint(100000000, 999999999)}",
            "ruleId": rule["id"],
            "error": error,
            "severity": error["severity"] if error["severity"] in SEVERITY_EMOJI else "medium",
            "title": f"{SEVERITY_EMOJI.get(error['severity'], '')} [{error['category'].upper()}] {rule['name']}",
            "message": self.build_message(error),
            "ts": now,
            "channels": list(rule.get("channels") or []),
            "status": "pending",
            "attempts": 0,
            "lastAttemptTs": None,
            "escalated": False,
            "resolved": False,
            "deliveries": {},
        }

    @staticmethod
    def build_message(error: dict[str, Any]) -> str:
        context = error.get("context") or {}
        lines = [
            f"**Message:** {error['message']}",
            f"**Severity:** {error['severity']}",
            f"**Category:** {error['category']}",
            f"**Occurrences:** {error['occurrenceCount']}",
        ]
        if context.get("endpoint"):
            lines.append(f"**Endpoint:** {context.get('method') or 'GET'} {context['endpoint']}")
        if context.get("userId"):
            lines.append(f"**User ID:** {context['userId']}")
        if context.get("ip"):
            lines.append(f"**IP:** {context['ip']}")
        lines.append(f"**Fingerprint:** {error['fingerprint']}")
        lines.append(f"**Last seen:** {_iso(error['ts'])}")
        if error.get("tags"):
            lines.append(f"**Tags:** {', '.join(error['tags'])}")
        return "\n".join(lines)

    async def send_alert(self, alert: dict[str, Any]) -> None:
        alert["attempts"] += 1
        alert["lastAttemptTs"] = time.time()
        results = await asyncio.gather(*(self.send_to_channel(channel, alert) for channel in alert["channels"]), return_exceptions=True)
        for channel, result in zip(alert["channels"], results):
            if isinstance(result, Exception):
                logger.warning("Alert %s delivery to %s failed: %s", alert["id"], channel, result)
                alert["deliveries"][channel] = "failed"
            else:
                alert["deliveries"][channel] = result
        alert["status"] = "escalated" if alert["escalated"] else "sent"
        self.cooldowns[f"{alert['ruleId']}:{alert['error']['fingerprint']}"] = time.time()
        logger.info("Alert %s sent (rule=%s severity=%s channels=%s)", alert["id"], alert["ruleId"], alert["severity"], alert["channels"])

        rule = self.rules.get(alert["ruleId"])
        if rule and rule.get("escalation") and alert["severity"] == "critical" and not alert["escalated"]:
            self._schedule_escalation(alert, rule["escalation"])

        self.history.insert(0, alert)
        del self.history[MAX_HISTORY:]

    async def send_to_channel(self, channel: str, alert: dict[str, Any]) -> str:
        target = self.channel_config.get(channel)
        if not target:
            logger.warning("Alert channel %s is not configured", channel)
            return "skipped"
        text = f"{alert['title']}\n{alert['message']}"
        if channel in {"email", "sms"}:
            logger.info("Alert %s via %s to %s: %s", alert["id"], channel, target, alert["title"])
            return "logged"
        if self.http_client is None:
            logger.warning("Alert channel %s has no HTTP client", channel)
            return "skipped"
        if channel == "slack":
            payload: dict[str, Any] = {"text": text}
        elif channel == "discord":
            payload = {"content": text[:2000], "username": "tftmeta alerts"}
        else:
            payload = serialize_alert(alert)
        response = await self.http_client.post(str(target), json=payload, timeout=10.0)
        response.raise_for_status()
        return "sent"

    @staticmethod
    def _spawn(tasks: set[asyncio.Task], coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        tasks.add(task)
        task.add_done_callback(tasks.discard)
        return task

    def _schedule_escalation(self, alert: dict[str, Any], escalation: dict[str, Any]) -> None:
        self._spawn(self.escalation_tasks, self._escalate(alert, float(escalation.get("delay") or 0), list(escalation.get("channels") or [])))

    async def _escalate(self, alert: dict[str, Any], delay_minutes: float, channels: list[str]) -> None:
        await asyncio.sleep(delay_minutes * 60)
        if alert["resolved"] or error_monitor.is_resolved(alert["error"]["fingerprint"]):
            return
        escalated = {**alert, "id": f"escalated_{alert['id']}", "channels": channels, "escalated": True, "ts": time.time(), "attempts": 0, "deliveries": {}}
        await self.send_alert(escalated)
        logger.info("Alert %s escalated to %s", alert["id"], channels)

    async def drain(self) -> None:
        while self.delivery_tasks:
            await asyncio.gather(*list(self.delivery_tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        for task in list(self.escalation_tasks):
            task.cancel()
        if self.escalation_tasks:
            await asyncio.gather(*self.escalation_tasks, return_exceptions=True)
        self.escalation_tasks.clear()

    def get_alert_history(self, limit: int = 100) -> list[dict[str, Any]]:
        return [serialize_alert(alert) for alert in self.history[: max(0, int(limit))]]

    def get_alert_stats(self, start: datetime | None = None, end: datetime | None = None) -> dict[str, Any]:
        end_ts = end.timestamp() if end else time.time()
        start_ts = start.timestamp() if start else end_ts - 24 * 60 * 60
        window = [alert for alert in self.history if start_ts <= alert["ts"] <= end_ts]
        by_channel = {channel: 0 for channel in CHANNELS}
        by_severity: dict[str, int] = {}
        by_rule: dict[str, int] = {}
        for alert in window:
            for channel in alert["channels"]:
                by_channel[channel] = by_channel.get(channel, 0) + 1
            by_severity[alert["severity"]] = by_severity.get(alert["severity"], 0) + 1
            by_rule[alert["ruleId"]] = by_rule.get(alert["ruleId"], 0) + 1
        return {"totalAlerts": len(window), "alertsByChannel": by_channel, "alertsBySeverity": by_severity, "alertsByRule": by_rule}

    def active_alerts(self) -> list[dict[str, Any]]:
        cutoff = time.time() - ACTIVE_WINDOW_SECONDS
        return [
            alert
            for alert in self.history
            if not alert["resolved"] and alert["ts"] >= cutoff and not error_monitor.is_resolved(alert["error"]["fingerprint"])
        ]

    def get_active_alerts(self, limit: int = 50) -> list[dict[str, Any]]:
        return [serialize_alert(alert) for alert in self.active_alerts()[: max(0, int(limit))]]

    def resolve_alert(self, alert_id: str) -> bool:
        matched = [alert for alert in self.history if alert["id"] == alert_id]
        if not matched:
            return False
        for alert in matched:
            alert["resolved"] = True
        error_monitor.resolve_error(matched[0]["error"]["fingerprint"], "alert")
        logger.info("Alert %s resolved", alert_id)
        return True

    def cleanup(self) -> None:
        cutoff = time.time() - RETENTION_SECONDS
        self.history = [alert for alert in self.history if alert["ts"] > cutoff]
        self.cooldowns = {key: ts for key, ts in self.cooldowns.items() if ts >= cutoff}
        self.occurrences = {fp: [ts for ts in rows if ts > cutoff] for fp, rows in self.occurrences.items()}
        self.occurrences = {fp: rows for fp, rows in self.occurrences.items() if rows}


alert_service = AlertService()
