"""
Key-value store abstraction for engine state.

Registry entries, pipeline definitions, A/B tests, sticky assignments and
alerts all live behind ``KeyValueStore`` so the in-memory default can be
swapped for Redis without touching call sites.

Values handed to ``set`` are owned by the store afterwards: callers that
mutate a value they fetched must ``set`` it again for the change to persist.

Next to the map, every store keeps append-only logs (``append``/``get_log``)
for records that only ever grow, such as A/B execution results. Appending
costs the same however long the log is; under Redis each log is a list
(``RPUSH``/``LRANGE``).
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Generic, TypeVar

import redis.asyncio as aioredis
from pydantic import TypeAdapter

logger = logging.getLogger(__name__)

V = TypeVar("V")


class KeyValueStore(ABC, Generic[V]):
    """Async map from string keys to values of one type."""

    @abstractmethod
    async def get(self, key: str) -> V | None: ...

    @abstractmethod
    async def set(self, key: str, value: V) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abstractmethod
    async def keys(self) -> list[str]: ...

    @abstractmethod
    async def values(self) -> list[V]: ...

    @abstractmethod
    async def append(self, key: str, item: V) -> int:
        """Append *item* to the log under *key*; returns the new log length."""

    @abstractmethod
    async def get_log(self, key: str, limit: int | None = None) -> list[V]:
        """Items appended under *key*, oldest first; the last *limit* when given."""

    async def contains(self, key: str) -> bool:
        return await self.get(key) is not None

    async def items(self) -> list[tuple[str, V]]:
        result = []
        for key in await self.keys():
            value = await self.get(key)
            if value is not None:
                result.append((key, value))
        return result


class InMemoryStore(KeyValueStore[V]):
    """Dict-backed store guarded by an asyncio lock."""

    def __init__(self):
        self._data: dict[str, V] = {}
        self._logs: dict[str, list[V]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> V | None:
        return self._data.get(key)

    async def set(self, key: str, value: V) -> None:
        async with self._lock:
            self._data[key] = value

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._data.pop(key, None) is not None

    async def keys(self) -> list[str]:
        return list(self._data.keys())

    async def values(self) -> list[V]:
        return list(self._data.values())

    async def append(self, key: str, item: V) -> int:
        log = self._logs.setdefault(key, [])
        log.append(item)
        return len(log)

    async def get_log(self, key: str, limit: int | None = None) -> list[V]:
        log = self._logs.get(key, [])
        if limit is not None:
            return log[-limit:] if limit > 0 else []
        return list(log)


class RedisStore(KeyValueStore[V]):
    """
    Redis hash-backed store. Each store is one hash named ``{namespace}:{name}``;
    values are serialized to JSON through a pydantic TypeAdapter, so any
    pydantic model, dataclass or container of them round-trips.
    """

    def __init__(self, client: Any, namespace: str, name: str, value_type: Any):
        self.client = client
        self.hash_key = f"{namespace}:{name}"
        self._adapter = TypeAdapter(value_type)

    async def get(self, key: str) -> V | None:
        raw = await self.client.hget(self.hash_key, key)
        if raw is None:
            return None
        return self._adapter.validate_json(raw)

    async def set(self, key: str, value: V) -> None:
        await self.client.hset(self.hash_key, key, self._adapter.dump_json(value).decode())

    async def delete(self, key: str) -> bool:
        return bool(await self.client.hdel(self.hash_key, key))

    async def keys(self) -> list[str]:
        return sorted(await self.client.hkeys(self.hash_key))

    async def values(self) -> list[V]:
        raw = await self.client.hgetall(self.hash_key)
        return [self._adapter.validate_json(raw[k]) for k in sorted(raw)]

    def _log_key(self, key: str) -> str:
        return f"{self.hash_key}:log:{key}"

    async def append(self, key: str, item: V) -> int:
        return await self.client.rpush(self._log_key(key), self._adapter.dump_json(item).decode())

    async def get_log(self, key: str, limit: int | None = None) -> list[V]:
        if limit is not None and limit <= 0:
            return []
        start = -limit if limit is not None else 0
        raw = await self.client.lrange(self._log_key(key), start, -1)
        return [self._adapter.validate_json(r) for r in raw]


class StoreFactory:
    """Builds stores for the configured backend (``memory`` or ``redis``)."""

    def __init__(self, backend: str = "memory", redis_url: str = "", namespace: str = "orchestration",
                 client: Any | None = None):
        self.backend = backend
        self.namespace = namespace
        self._client = client
        if backend == "redis" and client is None:
            self._client = aioredis.from_url(redis_url, decode_responses=True)

    def create(self, name: str, value_type: Any) -> KeyValueStore:
        if self.backend == "redis":
            return RedisStore(self._client, self.namespace, name, value_type)
        return InMemoryStore()

    async def ping(self) -> bool:
        if self._client is None:
            return True
        return bool(await self._client.ping())

    async def close(self) -> None:
        if self._client is not None and hasattr(self._client, "aclose"):
            await self._client.aclose()
