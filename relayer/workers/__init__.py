"""
Background Workers

Workers for scheduled and background tasks.
"""

from .relay_retry_worker import (
    RelayRetryWorker,
    WorkerConfig,
    WorkerResult,
    run_relay_retry_worker,
    run_relay_retry_loop,
)

__all__ = [
    "RelayRetryWorker",
    "WorkerConfig",
    "WorkerResult",
    "run_relay_retry_worker",
    "run_relay_retry_loop",
]
