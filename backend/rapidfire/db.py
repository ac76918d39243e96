from __future__ import annotations

import asyncio
import copy
from functools import lru_cache
from typing import Any, Dict, Iterator, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pymongo import ReturnDocument


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ADMIN_KEY: str = "change-me"
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:3000"
    CORS_ORIGIN_REGEX: Optional[str] = None
    AZURE_STORAGE_CONNECTION_STRING: Optional[str] = None
    AZURE_STORAGE_CONTAINER: str = "rapid-fire-results"
    LOG_LEVEL: str = "INFO"

    # Rapid fire round timings (seconds)
    RAPID_FIRE_ROUND: int = 3
    QUESTION_SECONDS: int = 15
    TICK_SECONDS: float = 1.0
    LOCK_GRACE_SECONDS: float = 1.5
    RESULT_DISPLAY_SECONDS: float = 3.0
    COOLDOWN_SECONDS: float = 10.0
    SEND_TIMEOUT_SECONDS: float = 5.0


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


def _matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for key, expected in (query or {}).items():
        actual = doc.get(key)
        if isinstance(expected, dict):
            for op, operand in expected.items():
                if op == "$gt":
                    if actual is None or actual <= operand:
                        return False
                else:  # pragma: no cover - extend as new operators are required
                    raise ValueError(f"Unsupported query operator: {op}")
        elif actual != expected:
            return False
    return True


def _apply_update(doc: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    for op, payload in update.items():
        if op == "$set":
            for key, value in payload.items():
                doc[key] = copy.deepcopy(value)
        elif op == "$inc":
            for key, value in payload.items():
                doc[key] = doc.get(key, 0) + value
        else:  # pragma: no cover - only the above operators are used today
            raise ValueError(f"Unsupported update operator: {op}")
    return doc


class InMemoryCursor:
    """Lazy, async-iterable result set mirroring the bits of the Motor cursor we use."""

    def __init__(self, collection: "InMemoryCollection", query: Dict[str, Any]):
        self._collection = collection
        self._query = query or {}
        self._sort: Optional[tuple[str, int]] = None
        self._limit: Optional[int] = None
        self._results: Optional[Iterator[Dict[str, Any]]] = None

    def sort(self, key: str, direction: int = 1):
        self._sort = (key, direction)
        return self

    def limit(self, limit: int):
        self._limit = limit
        return self

    async def to_list(self) -> List[Dict[str, Any]]:
        return [doc async for doc in self]

    async def _load(self) -> Iterator[Dict[str, Any]]:
        if self._results is None:
            docs = await self._collection._snapshot(self._query)
            if self._sort is not None:
                key, direction = self._sort
                docs.sort(key=lambda d: d.get(key), reverse=direction < 0)
            if self._limit is not None:
                docs = docs[: self._limit]
            self._results = iter(docs)
        return self._results

    def __aiter__(self):
        return self

    async def __anext__(self):
        results = await self._load()
        try:
            return next(results)
        except StopIteration as exc:
            raise StopAsyncIteration from exc


class InMemoryCollection:
    """A process-local stand-in for a Mongo collection.

    Documents are deep-copied on the way in and out so callers can never
    mutate stored state by accident.
    """

    def __init__(self):
        self._docs: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()

    async def _snapshot(self, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        async with self._lock:
            return [copy.deepcopy(doc) for doc in self._docs if _matches(doc, query)]

    def find(self, query: Optional[Dict[str, Any]] = None) -> InMemoryCursor:
        return InMemoryCursor(self, query or {})

    async def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        matches = await self._snapshot(query)
        return matches[0] if matches else None

    async def count_documents(self, query: Dict[str, Any]) -> int:
        return len(await self._snapshot(query))

    async def insert_one(self, document: Dict[str, Any]):
        async with self._lock:
            self._docs.append(copy.deepcopy(document))

    async def insert_many(self, documents: List[Dict[str, Any]]):
        async with self._lock:
            self._docs.extend(copy.deepcopy(doc) for doc in documents)

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any], upsert: bool = False):
        await self.find_one_and_update(query, update, upsert=upsert)

    async def delete_many(self, query: Dict[str, Any]):
        async with self._lock:
            self._docs = [doc for doc in self._docs if not _matches(doc, query)]

    async def find_one_and_update(
        self,
        query: Dict[str, Any],
        update: Dict[str, Any],
        *,
        upsert: bool = False,
        return_document: bool = ReturnDocument.BEFORE,
    ) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if _matches(doc, query):
                    before = copy.deepcopy(doc)
                    self._docs[idx] = _apply_update(doc, update)
                    after = copy.deepcopy(self._docs[idx])
                    return after if return_document == ReturnDocument.AFTER else before

            if not upsert:
                return None

            created = _apply_update(copy.deepcopy(query), update)
            self._docs.append(created)
            return copy.deepcopy(created) if return_document == ReturnDocument.AFTER else None


class InMemoryDatabase:
    def __init__(self):
        self.users = InMemoryCollection()
        self.questions = InMemoryCollection()
        self.rapid_fire_results = InMemoryCollection()
        self.rapid_fire_standings = InMemoryCollection()
        self.round_event_counters = InMemoryCollection()
        self.round_events = InMemoryCollection()


db: Any = InMemoryDatabase()
