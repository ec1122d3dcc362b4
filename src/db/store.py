"""Async key-value store used for positions, the trade ledger and transient trackers.

Two backends share one interface:

* ``RedisStore`` - production backend on ``redis.asyncio``. Batches run as a
  MULTI/EXEC pipeline so readers never observe half of a batch.
* ``MemoryStore`` - in-process backend with lazy TTL expiry. Batches are
  applied without yielding to the event loop, which gives the same
  all-or-nothing visibility inside a single process. Used for dry runs
  without Redis and in tests.
"""
import fnmatch
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import redis.asyncio as aioredis

from utils.logger import TradingLogger


class StoreBatch:
    """Collects write commands and applies them atomically on ``execute``"""

    def __init__(self, store: "KeyValueStore"):
        self._store = store
        self.commands: List[Tuple[str, tuple, dict]] = []

    def _add(self, name: str, *args, **kwargs) -> "StoreBatch":
        self.commands.append((name, args, kwargs))
        return self

    def set(self, key: str, value: Any, ex: Optional[int] = None) -> "StoreBatch":
        return self._add('set', key, value, ex=ex)

    def delete(self, *keys: str) -> "StoreBatch":
        return self._add('delete', *keys)

    def expire(self, key: str, seconds: int) -> "StoreBatch":
        return self._add('expire', key, seconds)

    def hset(self, key: str, mapping: Dict[str, Any]) -> "StoreBatch":
        return self._add('hset', key, mapping=mapping)

    def sadd(self, key: str, *members: str) -> "StoreBatch":
        return self._add('sadd', key, *members)

    def srem(self, key: str, *members: str) -> "StoreBatch":
        return self._add('srem', key, *members)

    def rpush(self, key: str, *values: str) -> "StoreBatch":
        return self._add('rpush', key, *values)

    async def execute(self) -> List[Any]:
        return await self._store._execute_batch(self.commands)


class KeyValueStore:
    """Interface shared by the store backends"""

    def pipeline(self) -> StoreBatch:
        return StoreBatch(self)

    async def _execute_batch(self, commands: List[Tuple[str, tuple, dict]]) -> List[Any]:
        raise NotImplementedError

    async def ping(self) -> bool:
        raise NotImplementedError

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: Any, ex: Optional[int] = None, nx: bool = False) -> bool:
        raise NotImplementedError

    async def getdel(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def delete(self, *keys: str) -> int:
        raise NotImplementedError

    async def exists(self, key: str) -> bool:
        raise NotImplementedError

    async def expire(self, key: str, seconds: int) -> bool:
        raise NotImplementedError

    async def hset(self, key: str, mapping: Dict[str, Any]) -> int:
        raise NotImplementedError

    async def hget(self, key: str, field: str) -> Optional[str]:
        raise NotImplementedError

    async def hgetall(self, key: str) -> Dict[str, str]:
        raise NotImplementedError

    async def sadd(self, key: str, *members: str) -> int:
        raise NotImplementedError

    async def srem(self, key: str, *members: str) -> int:
        raise NotImplementedError

    async def smembers(self, key: str) -> Set[str]:
        raise NotImplementedError

    async def sismember(self, key: str, member: str) -> bool:
        raise NotImplementedError

    async def scard(self, key: str) -> int:
        raise NotImplementedError

    async def rpush(self, key: str, *values: str) -> int:
        raise NotImplementedError

    async def lpop(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def lrange(self, key: str, start: int, end: int) -> List[str]:
        raise NotImplementedError

    async def llen(self, key: str) -> int:
        raise NotImplementedError

    async def scan_keys(self, pattern: str) -> List[str]:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class MemoryStore(KeyValueStore):
    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._data: Dict[str, Any] = {}
        self._expires: Dict[str, float] = {}

    # Internal helpers run without awaiting so a batch cannot interleave

    def _alive(self, key: str) -> bool:
        deadline = self._expires.get(key)
        if deadline is not None and self.clock() >= deadline:
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return key in self._data

    def _typed(self, key: str, kind: type, create: bool = False) -> Any:
        if not self._alive(key):
            if not create:
                return None
            self._data[key] = kind()
        value = self._data[key]
        if not isinstance(value, kind):
            raise TypeError(f"WRONGTYPE operation against key {key}")
        return value

    def _set(self, key: str, value: Any, ex: Optional[int] = None, nx: bool = False) -> bool:
        if nx and self._alive(key):
            return False
        self._data[key] = str(value)
        self._expires.pop(key, None)
        if ex is not None:
            self._expires[key] = self.clock() + ex
        return True

    def _delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return removed

    def _expire(self, key: str, seconds: int) -> bool:
        if not self._alive(key):
            return False
        self._expires[key] = self.clock() + seconds
        return True

    def _hset(self, key: str, mapping: Dict[str, Any]) -> int:
        bucket = self._typed(key, dict, create=True)
        added = sum(1 for field in mapping if field not in bucket)
        bucket.update({field: str(value) for field, value in mapping.items()})
        return added

    def _sadd(self, key: str, *members: str) -> int:
        bucket = self._typed(key, set, create=True)
        before = len(bucket)
        bucket.update(str(m) for m in members)
        return len(bucket) - before

    def _srem(self, key: str, *members: str) -> int:
        bucket = self._typed(key, set)
        if bucket is None:
            return 0
        before = len(bucket)
        bucket.difference_update(str(m) for m in members)
        if not bucket:
            self._delete(key)
        return before - len(bucket)

    def _rpush(self, key: str, *values: str) -> int:
        bucket = self._typed(key, list, create=True)
        bucket.extend(str(v) for v in values)
        return len(bucket)

    async def _execute_batch(self, commands: List[Tuple[str, tuple, dict]]) -> List[Any]:
        return [getattr(self, f"_{name}")(*args, **kwargs) for name, args, kwargs in commands]

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        return self._typed(key, str)

    async def set(self, key: str, value: Any, ex: Optional[int] = None, nx: bool = False) -> bool:
        return self._set(key, value, ex=ex, nx=nx)

    async def getdel(self, key: str) -> Optional[str]:
        value = self._typed(key, str)
        if value is not None:
            self._delete(key)
        return value

    async def delete(self, *keys: str) -> int:
        return self._delete(*keys)

    async def exists(self, key: str) -> bool:
        return self._alive(key)

    async def expire(self, key: str, seconds: int) -> bool:
        return self._expire(key, seconds)

    async def hset(self, key: str, mapping: Dict[str, Any]) -> int:
        return self._hset(key, mapping)

    async def hget(self, key: str, field: str) -> Optional[str]:
        bucket = self._typed(key, dict)
        return bucket.get(field) if bucket else None

    async def hgetall(self, key: str) -> Dict[str, str]:
        bucket = self._typed(key, dict)
        return dict(bucket) if bucket else {}

    async def sadd(self, key: str, *members: str) -> int:
        return self._sadd(key, *members)

    async def srem(self, key: str, *members: str) -> int:
        return self._srem(key, *members)

    async def smembers(self, key: str) -> Set[str]:
        bucket = self._typed(key, set)
        return set(bucket) if bucket else set()

    async def sismember(self, key: str, member: str) -> bool:
        bucket = self._typed(key, set)
        return bool(bucket) and str(member) in bucket

    async def scard(self, key: str) -> int:
        bucket = self._typed(key, set)
        return len(bucket) if bucket else 0

    async def rpush(self, key: str, *values: str) -> int:
        return self._rpush(key, *values)

    async def lpop(self, key: str) -> Optional[str]:
        bucket = self._typed(key, list)
        if not bucket:
            return None
        value = bucket.pop(0)
        if not bucket:
            self._delete(key)
        return value

    async def lrange(self, key: str, start: int, end: int) -> List[str]:
        bucket = self._typed(key, list)
        if not bucket:
            return []
        stop = None if end == -1 else end + 1
        return list(bucket[start:stop])

    async def llen(self, key: str) -> int:
        bucket = self._typed(key, list)
        return len(bucket) if bucket else 0

    async def scan_keys(self, pattern: str) -> List[str]:
        return sorted(k for k in list(self._data) if self._alive(k) and fnmatch.fnmatchcase(k, pattern))


class RedisStore(KeyValueStore):
    def __init__(self, url: str, logger: Optional[TradingLogger] = None, socket_timeout: float = 5.0):
        self.url = url
        self.logger = logger or TradingLogger("redis_store")
        self.client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            health_check_interval=30,
        )

    async def _execute_batch(self, commands: List[Tuple[str, tuple, dict]]) -> List[Any]:
        async with self.client.pipeline(transaction=True) as pipe:
            for name, args, kwargs in commands:
                getattr(pipe, name)(*args, **kwargs)
            return await pipe.execute()

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except Exception as e:
            self.logger.error(f"Redis ping failed: {str(e)}")
            return False

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: Any, ex: Optional[int] = None, nx: bool = False) -> bool:
        return bool(await self.client.set(key, value, ex=ex, nx=nx))

    async def getdel(self, key: str) -> Optional[str]:
        return await self.client.getdel(key)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self.client.delete(*keys)

    async def exists(self, key: str) -> bool:
        return bool(await self.client.exists(key))

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self.client.expire(key, seconds))

    async def hset(self, key: str, mapping: Dict[str, Any]) -> int:
        return await self.client.hset(key, mapping=mapping)

    async def hget(self, key: str, field: str) -> Optional[str]:
        return await self.client.hget(key, field)

    async def hgetall(self, key: str) -> Dict[str, str]:
        return await self.client.hgetall(key)

    async def sadd(self, key: str, *members: str) -> int:
        return await self.client.sadd(key, *members)

    async def srem(self, key: str, *members: str) -> int:
        return await self.client.srem(key, *members)

    async def smembers(self, key: str) -> Set[str]:
        return set(await self.client.smembers(key))

    async def sismember(self, key: str, member: str) -> bool:
        return bool(await self.client.sismember(key, member))

    async def scard(self, key: str) -> int:
        return await self.client.scard(key)

    async def rpush(self, key: str, *values: str) -> int:
        return await self.client.rpush(key, *values)

    async def lpop(self, key: str) -> Optional[str]:
        return await self.client.lpop(key)

    async def lrange(self, key: str, start: int, end: int) -> List[str]:
        return await self.client.lrange(key, start, end)

    async def llen(self, key: str) -> int:
        return await self.client.llen(key)

    async def scan_keys(self, pattern: str) -> List[str]:
        return sorted([key async for key in self.client.scan_iter(match=pattern, count=200)])

    async def close(self) -> None:
        await self.client.aclose()


def create_store(backend: str, redis_url: Optional[str] = None, logger: Optional[TradingLogger] = None) -> KeyValueStore:
    if backend == 'redis':
        return RedisStore(redis_url, logger=logger)
    return MemoryStore()
