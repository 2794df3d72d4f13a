from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any

from slow_query_detector import slow_query_detector

logger = logging.getLogger(__name__)

COLLECTIONS = ("decktier", "itemstats", "traitstats", "match", "ranker")
MAX_MATCH_DOCS = 2000


def _empty_store() -> dict[str, Any]:
    return {"version": 1, "updatedAt": 0, "collections": {name: [] for name in COLLECTIONS}}


def _matches(doc: dict[str, Any], query: dict[str, Any]) -> bool:
    return all(doc.get(key) == value for key, value in query.items())


class MetaStore:
    """JSON document store for the aggregated meta data.

    The whole store is one file under DATA_DIR; it is read lazily on first
    access and rewritten on every mutation.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or Path.cwd() / ".cache" / "tftmeta-store.json"
        self.store: dict[str, Any] | None = None

    def configure(self, data_dir: Path) -> None:
        self.path = Path(data_dir) / "tftmeta-store.json"
        self.store = None

    async def ensure_loaded(self) -> dict[str, Any]:
        if self.store is not None:
            return self.store
        try:
            loaded = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            loaded = _empty_store()
        except json.JSONDecodeError as error:
            logger.warning("Store file %s is corrupt, starting empty: %s", self.path, error)
            loaded = _empty_store()
        for name in COLLECTIONS:
            loaded.setdefault("collections", {}).setdefault(name, [])
        self.store = loaded
        return loaded

    async def save(self) -> None:
        store = await self.ensure_loaded()
        store["updatedAt"] = int(time.time() * 1000)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(store), encoding="utf-8")
        tmp.replace(self.path)

    async def find(self, collection: str, query: dict[str, Any] | None = None, sort: str | None = None, limit: int | None = None) -> list[dict[str, Any]]:
        query = query or {}

        async def run() -> list[dict[str, Any]]:
            store = await self.ensure_loaded()
            rows = [doc for doc in store["collections"].get(collection, []) if _matches(doc, query)]
            if sort:
                descending = sort.startswith("-")
                field = sort.lstrip("-")
                rows.sort(key=lambda doc: doc.get(field) if doc.get(field) is not None else 0, reverse=descending)
            return rows[:limit] if limit else rows

        return await slow_query_detector.monitor_query(collection, "find", query, run)

    async def find_one(self, collection: str, query: dict[str, Any]) -> dict[str, Any] | None:
        async def run() -> dict[str, Any] | None:
            store = await self.ensure_loaded()
            return next((doc for doc in store["collections"].get(collection, []) if _matches(doc, query)), None)

        return await slow_query_detector.monitor_query(collection, "find_one", query, run)

    async def replace_all(self, collection: str, docs: list[dict[str, Any]]) -> int:
        async def run() -> int:
            store = await self.ensure_loaded()
            store["collections"][collection] = list(docs)
            await self.save()
            return len(docs)

        return await slow_query_detector.monitor_query(collection, "replace_all", {}, run)

    async def upsert(self, collection: str, key_field: str, doc: dict[str, Any]) -> None:
        await self.upsert_many(collection, key_field, [doc])

    async def upsert_many(self, collection: str, key_field: str, docs: list[dict[str, Any]]) -> int:
        if not docs:
            return 0
        query = {key_field: docs[0].get(key_field)} if len(docs) == 1 else {"batch": len(docs)}

        async def run() -> int:
            store = await self.ensure_loaded()
            rows = store["collections"].setdefault(collection, [])
            positions = {existing.get(key_field): index for index, existing in enumerate(rows)}
            for doc in docs:
                index = positions.get(doc.get(key_field))
                if index is None:
                    positions[doc.get(key_field)] = len(rows)
                    rows.append(doc)
                else:
                    rows[index] = doc
            if collection == "match" and len(rows) > MAX_MATCH_DOCS:
                del rows[: len(rows) - MAX_MATCH_DOCS]
            await self.save()
            return len(docs)

        return await slow_query_detector.monitor_query(collection, "upsert", query, run)

    async def count(self, collection: str) -> int:
        store = await self.ensure_loaded()
        return len(store["collections"].get(collection, []))

    async def ping(self) -> bool:
        store = await self.ensure_loaded()
        return isinstance(store.get("collections"), dict)


meta_store = MetaStore()
