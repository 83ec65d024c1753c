"""
In-process stand-in for the redis.asyncio client, covering the hash and
list commands RedisStore uses. Values are stored as the strings a
``decode_responses=True`` client would return.
"""


class FakeRedis:
    def __init__(self):
        self._hashes: dict[str, dict[str, str]] = {}
        self._lists: dict[str, list[str]] = {}
        self.closed = False

    async def ping(self) -> bool:
        return True

    async def hget(self, key: str, field: str) -> str | None:
        return self._hashes.get(key, {}).get(field)

    async def hset(self, key: str, field: str, value: str) -> int:
        h = self._hashes.setdefault(key, {})
        created = field not in h
        h[field] = value
        return 1 if created else 0

    async def hdel(self, key: str, *fields: str) -> int:
        h = self._hashes.get(key, {})
        removed = 0
        for f in fields:
            if h.pop(f, None) is not None:
                removed += 1
        return removed

    async def hkeys(self, key: str) -> list[str]:
        return list(self._hashes.get(key, {}).keys())

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self._hashes.get(key, {}))

    async def rpush(self, key: str, *values: str) -> int:
        items = self._lists.setdefault(key, [])
        items.extend(values)
        return len(items)

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        items = self._lists.get(key, [])
        n = len(items)
        if start < 0:
            start = max(n + start, 0)
        if stop < 0:
            stop = n + stop
        return items[start:stop + 1]

    async def aclose(self) -> None:
        self.closed = True
