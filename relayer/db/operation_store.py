"""
Operation record storage.

One JSON document per operation plus a per-status sorted-set index used to
list pending work. Writes are last-write-wins per record; the worker tolerates
the rare lost update between overlapping invocations.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, List, Optional, Protocol, TypeVar, runtime_checkable

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..core.execution.models import OperationRecord, OperationStatus, now_ms
from ..core.recovery import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationStore(ABC):
    """Contract for the durable operation state machine storage."""

    @abstractmethod
    async def get(self, operation_id: str) -> Optional[OperationRecord]:
        ...

    @abstractmethod
    async def set(self, operation_id: str, record: OperationRecord) -> None:
        ...

    @abstractmethod
    async def get_by_status(self, status: OperationStatus) -> List[OperationRecord]:
        ...

    @abstractmethod
    async def delete(self, operation_id: str) -> None:
        ...

    @abstractmethod
    async def get_stats(self) -> Dict[str, Any]:
        ...


@runtime_checkable
class SupportsCleanup(Protocol):
    async def cleanup(self) -> int:
        ...


def _stats_payload(by_status: Dict[str, int], oldest_pending_ms: Optional[int]) -> Dict[str, Any]:
    stats: Dict[str, Any] = {
        "total": sum(by_status.values()),
        "byStatus": by_status,
    }
    if oldest_pending_ms is not None:
        stats["oldestPending"] = datetime.fromtimestamp(
            oldest_pending_ms / 1000, tz=timezone.utc
        ).isoformat()
    return stats


class RedisOperationStore(OperationStore):
    """
    Redis-backed operation store.

    - ``{prefix}:{operationId}`` holds the JSON record; terminal records carry
      a TTL, pending records never expire
    - ``{prefix}:status:{status}`` is a sorted set of ids scored by write time
    """

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        redis_url: Optional[str] = None,
        key_prefix: str = "relay:ops",
        operation_ttl_seconds: int = 86400,
    ):
        if client is None:
            if not redis_url:
                raise ValueError("RedisOperationStore requires a client or redis_url")
            client = redis.from_url(redis_url, encoding="utf-8", decode_responses=True)
        self._redis = client
        self.key_prefix = key_prefix
        self.operation_ttl_seconds = operation_ttl_seconds

    def _key(self, operation_id: str) -> str:
        return f"{self.key_prefix}:{operation_id}"

    def _status_key(self, status: OperationStatus) -> str:
        return f"{self.key_prefix}:status:{status.value}"

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except RedisError as e:
            raise StoreUnavailableError(
                f"Operation store {operation} failed: {e}", store="redis-operations"
            ) from e

    def _decode(self, operation_id: str, raw: Optional[str]) -> Optional[OperationRecord]:
        if not raw:
            return None
        try:
            return OperationRecord.from_dict(json.loads(raw), operation_id=operation_id)
        except (ValueError, TypeError, KeyError) as e:
            logger.error(f"Failed to parse operation {operation_id}: {e}")
            return None

    async def get(self, operation_id: str) -> Optional[OperationRecord]:
        raw = await self._call("get", self._redis.get(self._key(operation_id)))
        return self._decode(operation_id, raw)

    async def set(self, operation_id: str, record: OperationRecord) -> None:
        written_at = now_ms()
        cutoff = written_at - self.operation_ttl_seconds * 1000

        pipe = self._redis.pipeline(transaction=True)
        document = json.dumps(record.to_dict())
        if record.is_terminal:
            pipe.set(self._key(operation_id), document, ex=self.operation_ttl_seconds)
        else:
            # Plain SET also clears a TTL left by an earlier write
            pipe.set(self._key(operation_id), document)
        for status in OperationStatus:
            status_key = self._status_key(status)
            if status == record.status:
                pipe.zadd(status_key, {operation_id: written_at})
                if status.is_terminal:
                    pipe.zremrangebyscore(status_key, "-inf", cutoff)
            else:
                pipe.zrem(status_key, operation_id)
        await self._call("set", pipe.execute())

        logger.debug(f"Stored operation {operation_id} with status {record.status.value}")

    async def get_by_status(self, status: OperationStatus) -> List[OperationRecord]:
        status_key = self._status_key(status)
        operation_ids: List[str] = await self._call("zrange", self._redis.zrange(status_key, 0, -1))
        if not operation_ids:
            return []

        raw_values = await self._call(
            "mget", self._redis.mget([self._key(op_id) for op_id in operation_ids])
        )

        records: List[OperationRecord] = []
        stale: List[str] = []
        for op_id, raw in zip(operation_ids, raw_values):
            record = self._decode(op_id, raw)
            if record is None:
                stale.append(op_id)
                continue
            if record.status != status:
                # Index lagging behind a concurrent write; trust the document
                continue
            records.append(record)

        if stale:
            await self._call("zrem", self._redis.zrem(status_key, *stale))

        return records

    async def delete(self, operation_id: str) -> None:
        pipe = self._redis.pipeline(transaction=True)
        for status in OperationStatus:
            pipe.zrem(self._status_key(status), operation_id)
        pipe.delete(self._key(operation_id))
        await self._call("delete", pipe.execute())
        logger.debug(f"Deleted operation {operation_id}")

    async def cleanup(self) -> int:
        """
        Remove terminal records older than the retention window and drop
        index entries whose documents already expired. Pending records carry
        no TTL and are never removed here.
        """
        cutoff = now_ms() - self.operation_ttl_seconds * 1000
        cleaned = 0

        for status in OperationStatus:
            status_key = self._status_key(status)
            operation_ids: List[str] = await self._call(
                "zrange", self._redis.zrange(status_key, 0, -1)
            )
            for op_id in operation_ids:
                raw = await self._call("get", self._redis.get(self._key(op_id)))
                if raw is None:
                    await self._call("zrem", self._redis.zrem(status_key, op_id))
                    cleaned += 1
                    continue

                record = self._decode(op_id, raw)
                if record is None:
                    await self.delete(op_id)
                    cleaned += 1
                elif record.is_terminal and record.submitted_at < cutoff:
                    await self.delete(op_id)
                    cleaned += 1

        if cleaned:
            logger.info(f"Cleaned up {cleaned} old operations")
        return cleaned

    async def get_stats(self) -> Dict[str, Any]:
        by_status: Dict[str, int] = {}
        for status in OperationStatus:
            by_status[status.value] = int(
                await self._call("zcard", self._redis.zcard(self._status_key(status)))
            )

        oldest_pending: Optional[int] = None
        if by_status[OperationStatus.PENDING.value]:
            oldest = await self._call(
                "zrange",
                self._redis.zrange(self._status_key(OperationStatus.PENDING), 0, 0, withscores=True),
            )
            if oldest:
                oldest_pending = int(oldest[0][1])

        return _stats_payload(by_status, oldest_pending)

    async def ping(self) -> bool:
        return bool(await self._call("ping", self._redis.ping()))

    async def close(self) -> None:
        await self._redis.aclose()


class InMemoryOperationStore(OperationStore):
    """Process-local store for tests and single-instance development."""

    def __init__(self, retention_seconds: int = 86400) -> None:
        self.retention_seconds = retention_seconds
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def get(self, operation_id: str) -> Optional[OperationRecord]:
        async with self._lock:
            data = self._records.get(operation_id)
            if data is None:
                return None
            return OperationRecord.from_dict(copy.deepcopy(data), operation_id=operation_id)

    async def set(self, operation_id: str, record: OperationRecord) -> None:
        async with self._lock:
            self._records[operation_id] = copy.deepcopy(record.to_dict())

    async def get_by_status(self, status: OperationStatus) -> List[OperationRecord]:
        async with self._lock:
            return [
                OperationRecord.from_dict(copy.deepcopy(data), operation_id=op_id)
                for op_id, data in self._records.items()
                if data.get("status") == status.value
            ]

    async def delete(self, operation_id: str) -> None:
        async with self._lock:
            self._records.pop(operation_id, None)

    async def cleanup(self) -> int:
        cutoff = now_ms() - self.retention_seconds * 1000
        async with self._lock:
            expired = [
                op_id
                for op_id, data in self._records.items()
                if OperationStatus(data["status"]).is_terminal and data.get("submittedAt", 0) < cutoff
            ]
            for op_id in expired:
                del self._records[op_id]
        return len(expired)

    async def get_stats(self) -> Dict[str, Any]:
        async with self._lock:
            by_status = {status.value: 0 for status in OperationStatus}
            oldest_pending: Optional[int] = None
            for data in self._records.values():
                by_status[data["status"]] += 1
                if data["status"] == OperationStatus.PENDING.value:
                    submitted = data.get("submittedAt", 0)
                    if oldest_pending is None or submitted < oldest_pending:
                        oldest_pending = submitted
        return _stats_payload(by_status, oldest_pending)

    def raw(self, operation_id: str) -> Optional[Dict[str, Any]]:
        """Stored document exactly as written (for inspection)."""
        data = self._records.get(operation_id)
        return copy.deepcopy(data) if data is not None else None
