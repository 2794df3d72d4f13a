from __future__ import annotations

import json
import logging
import time
from typing import Any, Awaitable, Callable

import redis.asyncio as redis_asyncio

from cache_analyzer import cache_analyzer
from cache_monitor import cache_monitor
from cache_ttl import CACHE_TTL, validate_ttl
from metrics import metrics_collector

logger = logging.getLogger(__name__)

CHECK_PERIOD_SECONDS = 120
DEFAULT_MAX_KEYS = 5000


def namespace_of(key: str) -> str:
    if ":" in key:
        return key.split(":", 1)[0]
    parts = key.split("_")
    return "_".join(parts[:2]) if len(parts) > 2 else key


def _encode(value: Any) -> str:
    return json.dumps(value, default=str, separators=(",", ":"))


class CacheManager:
    """L1 in-process TTL store backed by an optional Redis L2.

    L2 is best effort: connection or command failures are logged and the
    call continues against L1 alone.
    """

    def __init__(self, max_keys: int = DEFAULT_MAX_KEYS) -> None:
        self.max_keys = max(1, int(max_keys))
        self.l1: dict[str, dict[str, Any]] = {}
        self.l1_stats = {"hits": 0, "misses": 0}
        self.l2: Any = None
        self.l2_connected = False
        self._last_purge = time.time()

    async def connect(self, redis_url: str = "") -> bool:
        if self.l2_connected:
            return True
        if not redis_url:
            logger.warning("UPSTASH_REDIS_URL not configured; L2 Redis cache disabled.")
            return False
        client = None
        try:
            client = redis_asyncio.from_url(redis_url, decode_responses=True, socket_connect_timeout=10)
            if not await client.ping():
                raise ConnectionError("PING failed")
        except Exception as error:
            logger.warning("Redis connection failed, continuing with L1 only: %s", error)
            if client is not None:
                await client.aclose()
            return False
        self.l2 = client
        self.l2_connected = True
        logger.info("L2 Redis cache connected.")
        return True

    async def disconnect(self) -> None:
        if self.l2 is not None:
            try:
                await self.l2.aclose()
            except Exception as error:
                logger.warning("Redis disconnect failed: %s", error)
        self.l2 = None
        self.l2_connected = False

    def _maybe_purge(self) -> None:
        now = time.time()
        if now - self._last_purge >= CHECK_PERIOD_SECONDS:
            self._last_purge = now
            self.purge_expired()

    def purge_expired(self) -> int:
        now = time.time()
        expired = [key for key, entry in self.l1.items() if entry["expiresAt"] <= now]
        for key in expired:
            self.l1.pop(key, None)
        return len(expired)

    def _l1_get(self, key: str) -> dict[str, Any] | None:
        entry = self.l1.get(key)
        if entry is None:
            return None
        if entry["expiresAt"] <= time.time():
            self.l1.pop(key, None)
            return None
        entry["lastAccessed"] = time.time()
        return entry

    def _l1_set(self, key: str, value: Any, ttl: int, size: int | None = None) -> None:
        if key not in self.l1 and len(self.l1) >= self.max_keys:
            self.purge_expired()
            if len(self.l1) >= self.max_keys:
                victim = min(self.l1, key=lambda k: self.l1[k]["expiresAt"])
                self.l1.pop(victim, None)
                metrics_collector.record_cache_eviction(namespace_of(victim))
                logger.debug("L1 cache full; evicted %s", victim)
        now = time.time()
        self.l1[key] = {
            "value": value,
            "expiresAt": now + ttl,
            "ttl": ttl,
            "createdAt": now,
            "lastAccessed": now,
            "size": size if size is not None else len(_encode(value)),
        }

    async def get(self, key: str) -> Any:
        self._maybe_purge()
        namespace = namespace_of(key)
        entry = self._l1_get(key)
        if entry is not None:
            self._record_read(key, namespace, True, entry)
            logger.debug("Cache HIT (L1) %s", key)
            return entry["value"]

        if self.l2 is not None and self.l2_connected:
            try:
                raw = await self.l2.get(key)
                if raw is not None:
                    value = json.loads(raw)
                    self._l1_set(key, value, CACHE_TTL["DEFAULT"], size=len(raw))
                    self._record_read(key, namespace, True, self.l1[key])
                    logger.debug("Cache HIT (L2) %s", key)
                    return value
            except Exception as error:
                cache_monitor.record_event(key, "error")
                logger.warning("L2 cache GET failed for %s: %s", key, error)

        self._record_read(key, namespace, False, None)
        logger.debug("Cache MISS %s", key)
        return None

    def _record_read(self, key: str, namespace: str, hit: bool, entry: dict[str, Any] | None) -> None:
        if hit:
            self.l1_stats["hits"] += 1
        else:
            self.l1_stats["misses"] += 1
        cache_monitor.record_event(key, "hit" if hit else "miss")
        cache_analyzer.record_query(namespace, hit)
        metrics_collector.record_cache(
            namespace,
            hit,
            key=key,
            ttl=entry["ttl"] if entry else None,
            key_size=entry["size"] if entry else None,
        )

    async def set(self, key: str, value: Any, ttl: Any = None) -> int:
        ttl = validate_ttl(ttl)
        encoded = _encode(value)
        self._l1_set(key, value, ttl, size=len(encoded))
        cache_monitor.record_event(key, "set")
        if self.l2 is not None and self.l2_connected:
            try:
                await self.l2.setex(key, ttl, encoded)
            except Exception as error:
                cache_monitor.record_event(key, "error")
                logger.warning("L2 cache SET failed for %s: %s", key, error)
        return ttl

    async def delete(self, key: str) -> bool:
        if self.l2 is not None and self.l2_connected:
            try:
                await self.l2.delete(key)
            except Exception as error:
                cache_monitor.record_event(key, "error")
                logger.warning("L2 cache DEL failed for %s: %s", key, error)
        existed = self.l1.pop(key, None) is not None
        cache_monitor.record_event(key, "delete")
        return existed

    async def flush(self) -> None:
        if self.l2 is not None and self.l2_connected:
            try:
                await self.l2.flushdb()
                logger.info("L2 Redis cache flushed.")
            except Exception as error:
                logger.warning("L2 cache FLUSH failed: %s", error)
        self.l1.clear()
        self.l1_stats = {"hits": 0, "misses": 0}
        logger.info("L1 memory cache flushed.")

    async def remember(self, key: str, ttl: Any, loader: Callable[[], Awaitable[Any]]) -> Any:
        value = await self.get(key)
        if value is not None:
            return value
        value = await loader()
        if value is not None:
            await self.set(key, value, ttl)
        return value

    def evict_namespace(self, namespace: str) -> int:
        keys = [key for key in self.l1 if namespace_of(key) == namespace]
        for key in keys:
            self.l1.pop(key, None)
        return len(keys)

    def ttl_remaining(self, key: str) -> int | None:
        entry = self.l1.get(key)
        if entry is None:
            return None
        return max(0, int(entry["expiresAt"] - time.time()))

    def snapshot(self) -> list[dict[str, Any]]:
        now = time.time()
        return [
            {
                "key": key,
                "namespace": namespace_of(key),
                "size": entry["size"],
                "ttl": entry["ttl"],
                "expiresAt": entry["expiresAt"],
                "lastAccessed": entry["lastAccessed"],
                "expired": entry["expiresAt"] <= now,
            }
            for key, entry in self.l1.items()
        ]

    def get_stats(self) -> dict[str, Any]:
        return {
            "l1CacheStats": {
                "hits": self.l1_stats["hits"],
                "misses": self.l1_stats["misses"],
                "keys": len(self.l1),
                "ksize": sum(len(key) for key in self.l1),
                "vsize": sum(int(entry["size"]) for entry in self.l1.values()),
                "maxKeys": self.max_keys,
            },
            "l2CacheConnected": self.l2_connected,
        }


cache_manager = CacheManager()
