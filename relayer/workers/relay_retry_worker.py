"""
Relay Retry Worker

Reconciles pending relayed operations against the chain:
- confirms or fails operations whose transaction has a receipt
- rebroadcasts stuck operations with a fresh nonce and escalated gas
- fails operations that exhausted their retry budget

Designed to be run as a scheduled task (cron) or triggered on-demand. Every
invocation is idempotent; overlapping invocations are tolerated.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from eth_account.signers.local import LocalAccount

from ..core.execution.chain_client import ChainClient
from ..core.execution.gas_policy import GasEscalationPolicy
from ..core.execution.models import (
    OperationRecord,
    OperationStatus,
    SubmissionError,
    SubmissionPending,
    TransactionReceipt,
    now_ms,
)
from ..core.execution.nonce_manager import DistributedNonceManager
from ..core.execution.submission import SubmissionPort
from ..core.recovery import (
    ConfigurationError,
    MaxRetriesExceededError,
    OperationTimeoutError,
    RecoverableError,
    StoreUnavailableError,
    SubmissionTransportError,
    TransactionRevertedError,
    classify_error,
)
from ..db.atomic_store import AtomicStore
from ..db.operation_store import OperationStore, SupportsCleanup

logger = logging.getLogger(__name__)

HEARTBEAT_KEY = "worker:heartbeat"


@dataclass
class WorkerConfig:
    """Configuration for the relay retry worker."""
    chain_id: int = 1480
    max_retries: int = 3  # Rebroadcasts before an operation fails
    stuck_timeout_seconds: int = 300  # Age after which a pending tx is stuck
    max_operations: int = 10  # Max operations handled per invocation
    operation_timeout_seconds: float = 120.0  # Bound on one record's processing
    nonce_burn_enabled: bool = False
    nonce_burn_margin: float = 1.5
    burn_timeout_seconds: float = 60.0
    burn_poll_interval_seconds: float = 2.0
    cleanup_enabled: bool = True

    @classmethod
    def from_settings(cls, settings) -> "WorkerConfig":
        # Receipt, gas, nonce and submit calls plus a possible burn wait
        operation_timeout = settings.rpc_timeout_seconds * 5
        if settings.worker_nonce_burn_enabled:
            operation_timeout += settings.worker_burn_timeout_seconds
        return cls(
            chain_id=settings.chain_id,
            max_retries=settings.worker_max_retries,
            stuck_timeout_seconds=settings.worker_stuck_timeout_seconds,
            max_operations=settings.worker_max_operations,
            operation_timeout_seconds=operation_timeout,
            nonce_burn_enabled=settings.worker_nonce_burn_enabled,
            nonce_burn_margin=settings.worker_nonce_burn_margin,
            burn_timeout_seconds=settings.worker_burn_timeout_seconds,
            burn_poll_interval_seconds=settings.worker_burn_poll_interval_seconds,
            cleanup_enabled=settings.worker_cleanup_enabled,
        )


class Outcome(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    RETRIED = "retried"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class WorkerResult:
    """Result from a worker run."""
    started_at: datetime
    ended_at: datetime
    processed: int = 0
    confirmed: int = 0
    failed: int = 0
    retried: int = 0
    nonce_burned: int = 0
    skipped: int = 0
    cleaned: int = 0
    errors: List[str] = field(default_factory=list)
    unused_nonces: List[int] = field(default_factory=list)  # Assigned but never broadcast
    fatal_error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.fatal_error is None

    @property
    def duration_seconds(self) -> float:
        return (self.ended_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "startedAt": self.started_at.isoformat(),
            "endedAt": self.ended_at.isoformat(),
            "durationSeconds": self.duration_seconds,
            "processed": self.processed,
            "confirmed": self.confirmed,
            "failed": self.failed,
            "retried": self.retried,
            "nonceBurned": self.nonce_burned,
            "skipped": self.skipped,
            "cleaned": self.cleaned,
            "errors": self.errors,
            "unusedNonces": self.unused_nonces,
        }
        if self.fatal_error is not None:
            data["fatalError"] = self.fatal_error
        return data


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RelayRetryWorker:
    """
    Background worker that drives pending operations to a terminal state.

    One worker signs for exactly one relayer account on one chain.
    """

    def __init__(
        self,
        operation_store: OperationStore,
        atomic_store: AtomicStore,
        chain_client: ChainClient,
        nonce_manager: DistributedNonceManager,
        submission_port: SubmissionPort,
        account: LocalAccount,
        gas_policy: Optional[GasEscalationPolicy] = None,
        config: Optional[WorkerConfig] = None,
    ):
        """
        Initialize the worker.

        Args:
            operation_store: Durable operation records
            atomic_store: Shared store holding the heartbeat and nonce counters
            chain_client: JSON-RPC client for receipts and gas prices
            nonce_manager: Distributed nonce allocator
            submission_port: Re-broadcasts original requests
            account: Relayer signing account (used for nonce burns)
            gas_policy: Fee escalation policy
            config: Worker configuration
        """
        self._operations = operation_store
        self._atomic = atomic_store
        self._chain = chain_client
        self._nonces = nonce_manager
        self._submission = submission_port
        self._account = account
        self._gas_policy = gas_policy or GasEscalationPolicy()
        self._config = config or WorkerConfig()

    @property
    def config(self) -> WorkerConfig:
        return self._config

    @property
    def signer_address(self) -> str:
        return self._account.address

    async def close(self) -> None:
        """Release the submission port's connections."""
        await self._submission.close()

    async def run(self) -> WorkerResult:
        """
        Run one reconciliation cycle.

        Returns:
            WorkerResult with statistics; ``success`` is False only for a
            fatal error raised before any record was touched
        """
        result = WorkerResult(started_at=_utcnow(), ended_at=_utcnow())
        run_id = uuid.uuid4().hex[:12]
        structlog.contextvars.bind_contextvars(worker_run_id=run_id, signer=self.signer_address)

        try:
            try:
                pending = await self._prepare_batch()
            except ConfigurationError as e:
                logger.error(f"Worker process failed: {e.message}")
                result.fatal_error = e.message
                result.ended_at = _utcnow()
                return result

            for record in pending:
                result.processed += 1
                outcome = await self._process_with_timeout(record, result)
                if outcome == Outcome.CONFIRMED:
                    result.confirmed += 1
                elif outcome == Outcome.FAILED:
                    result.failed += 1
                elif outcome == Outcome.RETRIED:
                    result.retried += 1
                elif outcome == Outcome.SKIPPED:
                    result.skipped += 1

            if self._config.cleanup_enabled and isinstance(self._operations, SupportsCleanup):
                try:
                    result.cleaned = await self._operations.cleanup()
                except RecoverableError as e:
                    logger.warning(f"Operation cleanup failed: {e}")
                    result.errors.append(f"cleanup: {e.message}")
        finally:
            structlog.contextvars.unbind_contextvars("worker_run_id", "signer")

        result.ended_at = _utcnow()
        logger.info(
            f"Worker completed: {result.processed} processed, {result.confirmed} confirmed, "
            f"{result.failed} failed, {result.retried} retried, {result.nonce_burned} burned "
            f"in {result.duration_seconds:.1f}s"
        )
        return result

    async def _prepare_batch(self) -> List[OperationRecord]:
        """Write the heartbeat, then load the oldest pending operations.

        Raises:
            ConfigurationError: the shared stores are unreachable
        """
        try:
            await self._atomic.set(HEARTBEAT_KEY, str(now_ms()))
        except StoreUnavailableError as e:
            raise ConfigurationError(f"Atomic store unreachable: {e.message}", setting="REDIS_URL") from e
        logger.debug("Updated worker heartbeat")

        try:
            records = await self._operations.get_by_status(OperationStatus.PENDING)
        except StoreUnavailableError as e:
            raise ConfigurationError(f"Operation store unreachable: {e.message}", setting="REDIS_URL") from e

        records.sort(key=lambda r: (r.submitted_at, r.operation_id))
        batch = records[: self._config.max_operations]
        logger.info(f"Found {len(records)} pending operations, processing {len(batch)}")
        return batch

    async def _process_with_timeout(self, record: OperationRecord, result: WorkerResult) -> Outcome:
        structlog.contextvars.bind_contextvars(operation_id=record.operation_id)
        try:
            return await asyncio.wait_for(
                self._process_operation(record, result),
                timeout=self._config.operation_timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = OperationTimeoutError(
                f"Processing exceeded {self._config.operation_timeout_seconds}s",
                operation=record.operation_id,
            )
            logger.error(f"Operation {record.operation_id} timed out")
            result.errors.append(f"{record.operation_id}: {error.message}")
            return Outcome.ERROR
        except Exception as e:
            message = getattr(e, "message", None) or str(e)
            context = classify_error(e)
            log = logger.warning if context.recoverable else logger.error
            log(
                f"Error processing operation {record.operation_id} "
                f"({context.category.value}, recoverable={context.recoverable}): {message}"
            )
            result.errors.append(f"{record.operation_id}: {message}")
            return Outcome.ERROR
        finally:
            structlog.contextvars.unbind_contextvars("operation_id")

    async def _process_operation(self, record: OperationRecord, result: WorkerResult) -> Outcome:
        logger.debug(f"Processing operation {record.operation_id}")

        receipt = await self._chain.get_transaction_receipt(record.transaction_hash)
        if receipt is not None:
            return await self._resolve_receipt(record, receipt)

        age_ms = record.age_ms()
        if age_ms <= self._config.stuck_timeout_seconds * 1000:
            return Outcome.SKIPPED

        if record.retry_count >= self._config.max_retries:
            error = MaxRetriesExceededError(self._config.max_retries, operation_id=record.operation_id)
            if not await self._write(record, status=OperationStatus.FAILED, error=error.message):
                return Outcome.SKIPPED
            logger.warning(f"Operation {record.operation_id} failed: {error.message}")
            return Outcome.FAILED

        return await self._retry(record, result)

    async def _resolve_receipt(self, record: OperationRecord, receipt: TransactionReceipt) -> Outcome:
        if receipt.is_success:
            if not await self._write(record, status=OperationStatus.CONFIRMED, final_receipt=receipt.to_dict()):
                return Outcome.SKIPPED
            logger.info(f"Operation {record.operation_id} confirmed in block {receipt.block_number}")
            return Outcome.CONFIRMED

        error = TransactionRevertedError(tx_hash=record.transaction_hash, chain_id=self._config.chain_id)
        if not await self._write(record, status=OperationStatus.FAILED, error=error.message):
            return Outcome.SKIPPED
        logger.info(f"Operation {record.operation_id} reverted")
        return Outcome.FAILED

    async def _retry(self, record: OperationRecord, result: WorkerResult) -> Outcome:
        """Burn the stuck nonce if enabled, then rebroadcast on a fresh one."""
        if self._config.nonce_burn_enabled and record.nonce is not None:
            burn = await self._nonces.burn_nonce(
                self._account,
                record.nonce,
                record.last_attempted_gas,
                self._gas_policy,
                safety_margin=self._config.nonce_burn_margin,
                timeout_seconds=self._config.burn_timeout_seconds,
                poll_interval_seconds=self._config.burn_poll_interval_seconds,
            )
            if burn.confirmed:
                result.nonce_burned += 1
            else:
                logger.warning(f"Nonce {record.nonce} burn unconfirmed: {burn.error}")

        # Price first: a failed RPC must not leave an allocated nonce behind
        base_fee = await self._chain.get_gas_price()
        gas = self._gas_policy.escalate(base_fee, record.retry_count)
        nonce = await self._nonces.assign_nonce(self.signer_address, self._config.chain_id)

        logger.info(
            f"Retrying operation {record.operation_id} (attempt {record.retry_count + 1}) "
            f"with nonce {nonce}, maxFeePerGas {gas.max_fee_per_gas}"
        )
        try:
            submission = await self._submission.submit(record.original_request, nonce, gas)
        except SubmissionTransportError as e:
            self._note_unused_nonce(record, nonce, result)
            raise SubmissionTransportError(
                f"{e.message} (nonce {nonce} unused)",
                endpoint=e.context.details.get("endpoint"),
            ) from e

        if isinstance(submission, SubmissionPending):
            written = await self._write(
                record,
                retry_count=record.retry_count + 1,
                transaction_hash=submission.transaction_hash,
                nonce=nonce,
                submitted_at=now_ms(),
                last_attempted_gas=gas,
            )
            if not written:
                return Outcome.SKIPPED
            logger.info(f"Operation {record.operation_id} rebroadcast as {submission.transaction_hash}")
            return Outcome.RETRIED
        if isinstance(submission, SubmissionError):
            logger.warning(f"Resubmission of {record.operation_id} rejected: {submission.error}")
            self._note_unused_nonce(record, nonce, result)
            result.errors.append(f"{record.operation_id}: {submission.error} (nonce {nonce} unused)")
            return Outcome.ERROR
        raise TypeError(f"Unexpected submission result: {submission!r}")

    def _note_unused_nonce(self, record: OperationRecord, nonce: int, result: WorkerResult) -> None:
        # Later relayer transactions queue behind this gap until it is burned or reused
        logger.warning(
            f"Nonce {nonce} allocated for {record.operation_id} was not broadcast; "
            f"burn it with the relayer account to unblock later transactions"
        )
        result.unused_nonces.append(nonce)

    async def _write(self, record: OperationRecord, **changes: Any) -> bool:
        """Persist ``changes`` unless another invocation already finished the record."""
        current = await self._operations.get(record.operation_id)
        if current is not None and current.is_terminal:
            logger.info(f"Operation {record.operation_id} already {current.status.value}; not overwriting")
            return False

        for name, value in changes.items():
            setattr(record, name, value)
        await self._operations.set(record.operation_id, record)
        return True


async def run_relay_retry_worker(worker: RelayRetryWorker) -> WorkerResult:
    """
    Run the relay retry worker once.

    Convenience function for scheduled execution.
    """
    return await worker.run()


async def run_relay_retry_loop(
    worker: RelayRetryWorker,
    interval_seconds: int = 60,
    max_iterations: Optional[int] = None,
) -> None:
    """
    Run the relay retry worker in a continuous loop.

    Useful for background processing in development or simple deployments.

    Args:
        worker: Configured worker
        interval_seconds: Seconds between runs
        max_iterations: Max iterations (None for infinite)
    """
    iterations = 0
    while max_iterations is None or iterations < max_iterations:
        try:
            result = await worker.run()
            if result.success:
                logger.info(f"Worker iteration {iterations + 1}: {result.processed} operations processed")
            else:
                logger.error(f"Worker iteration {iterations + 1} failed: {result.fatal_error}")
        except Exception as e:
            logger.error(f"Worker iteration {iterations + 1} failed: {e}")

        iterations += 1

        if max_iterations is None or iterations < max_iterations:
            logger.info(f"Sleeping {interval_seconds}s until next run...")
            await asyncio.sleep(interval_seconds)
