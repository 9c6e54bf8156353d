"""
Storage layer: the shared atomic store (nonce counters, locks, heartbeat)
and the durable operation record store.
"""

from .atomic_store import (
    AtomicStore,
    NonceAssignmentSupport,
    RedisAtomicStore,
    InMemoryAtomicStore,
)
from .operation_store import (
    OperationStore,
    SupportsCleanup,
    RedisOperationStore,
    InMemoryOperationStore,
)

__all__ = [
    "AtomicStore",
    "NonceAssignmentSupport",
    "RedisAtomicStore",
    "InMemoryAtomicStore",
    "OperationStore",
    "SupportsCleanup",
    "RedisOperationStore",
    "InMemoryOperationStore",
]
