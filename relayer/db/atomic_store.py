"""
Atomic key-value store shared by every worker instance.

The nonce counter lives here, so every implementation MUST make ``incr`` and
``atomic_assign_nonce`` linearizable per key. In-process locking is only
sufficient for the in-memory store, which serves a single process.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Optional, Protocol, TypeVar, runtime_checkable

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..core.recovery import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AtomicStore(ABC):
    """Contract for the shared atomic store."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    async def incr(self, key: str) -> int:
        """Atomically increment; a missing key is initialized to 0 first."""

    async def increment(self, key: str) -> int:
        return await self.incr(key)

    @abstractmethod
    async def acquire_lock(self, key: str, ttl_seconds: int) -> Optional[str]:
        """SET NX EX semantics; returns a lock id, or None when already held."""

    @abstractmethod
    async def release_lock(self, key: str, lock_id: str) -> bool:
        """Compare-and-delete; True only if ``lock_id`` still owned the lock."""

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.set(key, value)

    async def delete(self, key: str) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not support delete")


@runtime_checkable
class NonceAssignmentSupport(Protocol):
    """Stores that can sync-and-increment a nonce counter in one atomic step."""

    async def atomic_assign_nonce(self, key: str, pending_count: int) -> int:
        ...


class RedisAtomicStore(AtomicStore):
    """
    Redis-backed atomic store.

    - INCR for counters
    - SET NX EX for locks, Lua compare-and-delete for release
    - Lua sync-and-increment for nonce assignment
    """

    UNLOCK_SCRIPT = """
    if redis.call("GET", KEYS[1]) == ARGV[1] then
      return redis.call("DEL", KEYS[1])
    else
      return 0
    end
    """

    # lastUsed = max(lastUsed, pendingCount - 1); return ++lastUsed
    ASSIGN_NONCE_SCRIPT = """
    local current = tonumber(redis.call("GET", KEYS[1]) or "-1")
    local chain_last = tonumber(ARGV[1]) - 1
    if chain_last > current then
      redis.call("SET", KEYS[1], chain_last)
    end
    return redis.call("INCR", KEYS[1])
    """

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        redis_url: Optional[str] = None,
        key_prefix: str = "atomic",
    ):
        if client is None:
            if not redis_url:
                raise ValueError("RedisAtomicStore requires a client or redis_url")
            client = redis.from_url(redis_url, encoding="utf-8", decode_responses=True)
        self._redis = client
        self.key_prefix = key_prefix

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except RedisError as e:
            raise StoreUnavailableError(
                f"Atomic store {operation} failed: {e}", store="redis-atomic"
            ) from e

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self._redis.get(self._key(key)))

    async def set(self, key: str, value: str) -> None:
        await self._call("set", self._redis.set(self._key(key), value))

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._call("setex", self._redis.set(self._key(key), value, ex=ttl_seconds))

    async def delete(self, key: str) -> None:
        await self._call("delete", self._redis.delete(self._key(key)))

    async def incr(self, key: str) -> int:
        return int(await self._call("incr", self._redis.incr(self._key(key))))

    async def acquire_lock(self, key: str, ttl_seconds: int) -> Optional[str]:
        lock_id = uuid.uuid4().hex
        acquired = await self._call(
            "acquire_lock",
            self._redis.set(self._key(key), lock_id, ex=ttl_seconds, nx=True),
        )
        if acquired:
            logger.debug(f"Lock acquired: {key} with ID {lock_id}")
            return lock_id
        return None

    async def release_lock(self, key: str, lock_id: str) -> bool:
        result = await self._call(
            "release_lock",
            self._redis.eval(self.UNLOCK_SCRIPT, 1, self._key(key), lock_id),
        )
        if int(result) == 1:
            return True
        logger.warning(f"Lock release failed: {key} (lock not held or expired)")
        return False

    async def atomic_assign_nonce(self, key: str, pending_count: int) -> int:
        result = await self._call(
            "assign_nonce",
            self._redis.eval(self.ASSIGN_NONCE_SCRIPT, 1, self._key(key), pending_count),
        )
        return int(result)

    async def ping(self) -> bool:
        return bool(await self._call("ping", self._redis.ping()))

    async def close(self) -> None:
        await self._redis.aclose()


@dataclass
class _Entry:
    value: str
    expires_at: Optional[float] = None


class InMemoryAtomicStore(AtomicStore):
    """
    Process-local atomic store for tests and single-instance development.

    Two worker processes sharing nothing but this class WILL hand out
    duplicate nonces; use RedisAtomicStore for any multi-instance deployment.
    """

    def __init__(self) -> None:
        self._data: Dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    def _read(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and time.monotonic() >= entry.expires_at:
            del self._data[key]
            return None
        return entry.value

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._read(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            self._data[key] = _Entry(value=str(value))

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        async with self._lock:
            self._data[key] = _Entry(value=str(value), expires_at=time.monotonic() + ttl_seconds)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def incr(self, key: str) -> int:
        async with self._lock:
            value = int(self._read(key) or 0) + 1
            self._data[key] = _Entry(value=str(value))
            return value

    async def acquire_lock(self, key: str, ttl_seconds: int) -> Optional[str]:
        async with self._lock:
            if self._read(key) is not None:
                return None
            lock_id = uuid.uuid4().hex
            self._data[key] = _Entry(value=lock_id, expires_at=time.monotonic() + ttl_seconds)
            return lock_id

    async def release_lock(self, key: str, lock_id: str) -> bool:
        async with self._lock:
            if self._read(key) == lock_id:
                del self._data[key]
                return True
            return False

    async def atomic_assign_nonce(self, key: str, pending_count: int) -> int:
        async with self._lock:
            current = int(self._read(key) or -1)
            value = max(current, pending_count - 1) + 1
            self._data[key] = _Entry(value=str(value))
            return value

    def snapshot(self) -> Dict[str, Any]:
        return {key: entry.value for key, entry in self._data.items()}
