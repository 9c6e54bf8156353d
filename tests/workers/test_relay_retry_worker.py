"""
Tests for Relay Retry Worker

Drives the worker against in-memory stores, a scripted chain and a recording
submission port.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from unittest.mock import AsyncMock

import pytest
from eth_account import Account

from relayer.core.execution.gas_policy import GasEscalationPolicy
from relayer.core.execution.models import (
    GasParams,
    NonceBurnResult,
    OperationRecord,
    OperationStatus,
    ReceiptStatus,
    SubmissionError,
    SubmissionPending,
    TransactionReceipt,
    now_ms,
)
from relayer.core.execution.nonce_manager import DistributedNonceManager
from relayer.core.execution.submission import SubmissionPort
from relayer.core.recovery import (
    ChainRpcError,
    NonceBurnError,
    StoreUnavailableError,
    SubmissionTransportError,
)
from relayer.db.atomic_store import InMemoryAtomicStore
from relayer.db.operation_store import InMemoryOperationStore
from relayer.workers.relay_retry_worker import (
    HEARTBEAT_KEY,
    RelayRetryWorker,
    WorkerConfig,
    WorkerResult,
    run_relay_retry_loop,
    run_relay_retry_worker,
)

GWEI = 10**9
CHAIN_ID = 1480
STUCK_AGE_MS = 400_000


# =============================================================================
# Fakes
# =============================================================================


class FakeChain:
    """Scripted chain: receipts by hash, a gas price and a pending count."""

    def __init__(self, pending_count: int = 0, gas_price: int = 100 * GWEI):
        self.chain_id = CHAIN_ID
        self.pending_count = pending_count
        self.gas_price = gas_price
        self.receipts: Dict[str, TransactionReceipt] = {}
        self.receipt_errors: Dict[str, Exception] = {}
        self.receipt_delay = 0.0

    def mine(self, tx_hash: str, success: bool = True) -> None:
        self.receipts[tx_hash] = TransactionReceipt(
            transaction_hash=tx_hash,
            status=ReceiptStatus.SUCCESS if success else ReceiptStatus.REVERTED,
            block_number=1000,
        )

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        if self.receipt_delay:
            await asyncio.sleep(self.receipt_delay)
        if tx_hash in self.receipt_errors:
            raise self.receipt_errors[tx_hash]
        return self.receipts.get(tx_hash)

    async def get_transaction_count(self, address: str, block_tag: str = "pending") -> int:
        await asyncio.sleep(0)
        return self.pending_count

    async def get_gas_price(self) -> int:
        return self.gas_price


class RecordingSubmissionPort(SubmissionPort):
    """Accepts every submission unless told otherwise."""

    def __init__(self):
        self.calls: List[dict] = []
        self.responses: List[object] = []

    async def submit(self, original_request, nonce, gas):
        self.calls.append({"request": original_request, "nonce": nonce, "gas": gas})
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return SubmissionPending(operation_id="relay-op", transaction_hash=f"0xretry{len(self.calls)}")


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def account():
    return Account.from_key("0x" + "22" * 32)


@pytest.fixture
def chain():
    return FakeChain(pending_count=6)


@pytest.fixture
def operation_store():
    return InMemoryOperationStore()


@pytest.fixture
def atomic_store():
    return InMemoryAtomicStore()


@pytest.fixture
def submission_port():
    return RecordingSubmissionPort()


@pytest.fixture
def nonce_manager(atomic_store, chain):
    return DistributedNonceManager(atomic_store, chain)


@pytest.fixture
def make_worker(operation_store, atomic_store, chain, nonce_manager, submission_port, account):
    def _make(**config_overrides) -> RelayRetryWorker:
        config = WorkerConfig(chain_id=CHAIN_ID, **config_overrides)
        return RelayRetryWorker(
            operation_store=operation_store,
            atomic_store=atomic_store,
            chain_client=chain,
            nonce_manager=nonce_manager,
            submission_port=submission_port,
            account=account,
            gas_policy=GasEscalationPolicy(),
            config=config,
        )
    return _make


async def add_operation(
    store: InMemoryOperationStore,
    operation_id: str = "op-1",
    age_ms: int = 0,
    **kwargs,
) -> OperationRecord:
    record = OperationRecord(
        operation_id=operation_id,
        transaction_hash=kwargs.pop("transaction_hash", f"0x{operation_id}"),
        original_request=kwargs.pop("original_request", {"type": "signed", "id": operation_id}),
        submitted_at=now_ms() - age_ms,
        **kwargs,
    )
    await store.set(operation_id, record)
    return record


async def age_operation(store: InMemoryOperationStore, operation_id: str, age_ms: int = STUCK_AGE_MS) -> None:
    record = await store.get(operation_id)
    record.submitted_at = now_ms() - age_ms
    await store.set(operation_id, record)


# =============================================================================
# WorkerConfig / WorkerResult Tests
# =============================================================================


class TestWorkerConfig:
    """Tests for WorkerConfig."""

    def test_default_values(self):
        config = WorkerConfig()

        assert config.max_retries == 3
        assert config.stuck_timeout_seconds == 300
        assert config.max_operations == 10
        assert config.nonce_burn_enabled is False
        assert config.cleanup_enabled is True

    def test_from_settings(self):
        from relayer.config import Settings

        settings = Settings(
            _env_file=None,
            chain_id=14800,
            worker_max_retries=5,
            worker_stuck_timeout_seconds=120,
            worker_max_operations=25,
            worker_nonce_burn_enabled=True,
            worker_burn_timeout_seconds=30,
            rpc_timeout_seconds=10,
        )

        config = WorkerConfig.from_settings(settings)

        assert config.chain_id == 14800
        assert config.max_retries == 5
        assert config.stuck_timeout_seconds == 120
        assert config.max_operations == 25
        assert config.nonce_burn_enabled is True
        assert config.operation_timeout_seconds == 80


class TestWorkerResult:
    """Tests for WorkerResult."""

    def test_duration_and_success(self):
        now = datetime.now(timezone.utc)
        result = WorkerResult(started_at=now, ended_at=now + timedelta(seconds=2.5))

        assert result.duration_seconds == 2.5
        assert result.success is True

    def test_fatal_error_is_failure(self):
        now = datetime.now(timezone.utc)
        result = WorkerResult(started_at=now, ended_at=now, fatal_error="RELAYER_PRIVATE_KEY not configured")

        assert result.success is False
        assert result.to_dict()["fatalError"] == "RELAYER_PRIVATE_KEY not configured"

    def test_to_dict(self):
        now = datetime.now(timezone.utc)
        result = WorkerResult(
            started_at=now,
            ended_at=now,
            processed=4,
            confirmed=1,
            failed=1,
            retried=1,
            nonce_burned=1,
            skipped=1,
            cleaned=3,
            errors=["op-9: boom (nonce 12 unused)"],
            unused_nonces=[12],
        )

        data = result.to_dict()

        assert data["processed"] == 4
        assert data["nonceBurned"] == 1
        assert data["cleaned"] == 3
        assert data["errors"] == ["op-9: boom (nonce 12 unused)"]
        assert data["unusedNonces"] == [12]
        assert "fatalError" not in data


# =============================================================================
# Receipt resolution
# =============================================================================


class TestReceiptResolution:
    """Pending operations whose transaction has a receipt."""

    @pytest.mark.asyncio
    async def test_success_receipt_confirms(self, make_worker, operation_store, chain):
        await add_operation(operation_store, retry_count=2)
        chain.mine("0xop-1")

        result = await make_worker().run()

        record = await operation_store.get("op-1")
        assert record.status == OperationStatus.CONFIRMED
        assert record.final_receipt["transactionHash"] == "0xop-1"
        assert record.final_receipt["status"] == "success"
        assert result.confirmed == 1
        assert result.processed == 1

    @pytest.mark.asyncio
    async def test_reverted_receipt_fails(self, make_worker, operation_store, chain, submission_port):
        await add_operation(operation_store, age_ms=STUCK_AGE_MS)
        chain.mine("0xop-1", success=False)

        result = await make_worker().run()

        record = await operation_store.get("op-1")
        assert record.status == OperationStatus.FAILED
        assert record.error == "Transaction reverted on chain"
        assert result.failed == 1
        assert submission_port.calls == []

    @pytest.mark.asyncio
    async def test_terminal_records_not_loaded(self, make_worker, operation_store, chain):
        await add_operation(operation_store, "done", status=OperationStatus.CONFIRMED, age_ms=STUCK_AGE_MS)
        before = operation_store.raw("done")

        result = await make_worker().run()

        assert result.processed == 0
        assert operation_store.raw("done") == before


# =============================================================================
# No receipt
# =============================================================================


class TestStuckOperations:
    """Pending operations without a receipt."""

    @pytest.mark.asyncio
    async def test_young_operation_untouched(self, make_worker, operation_store, submission_port):
        await add_operation(operation_store, age_ms=299_000)
        before = operation_store.raw("op-1")

        result = await make_worker().run()

        assert operation_store.raw("op-1") == before
        assert result.skipped == 1
        assert result.retried == 0
        assert submission_port.calls == []

    @pytest.mark.asyncio
    async def test_stuck_operation_rebroadcast(self, make_worker, operation_store, submission_port, atomic_store):
        original = await add_operation(operation_store, age_ms=STUCK_AGE_MS, nonce=5)
        started = now_ms()

        result = await make_worker().run()

        assert result.retried == 1
        call = submission_port.calls[0]
        assert call["request"] == original.original_request
        assert call["nonce"] == 6
        assert call["gas"] == GasParams(max_fee_per_gas=120 * GWEI, max_priority_fee_per_gas=2 * GWEI)

        record = await operation_store.get("op-1")
        assert record.status == OperationStatus.PENDING
        assert record.retry_count == 1
        assert record.transaction_hash == "0xretry1"
        assert record.nonce == 6
        assert record.submitted_at >= started
        assert operation_store.raw("op-1")["lastAttemptedGas"] == {
            "maxFeePerGas": "120000000000",
            "maxPriorityFeePerGas": "2000000000",
        }

    @pytest.mark.asyncio
    async def test_escalation_uses_retry_count_before_increment(self, make_worker, operation_store, submission_port):
        await add_operation(operation_store, age_ms=STUCK_AGE_MS, retry_count=2)

        await make_worker().run()

        assert submission_port.calls[0]["gas"].max_fee_per_gas == 172_800_000_000
        assert (await operation_store.get("op-1")).retry_count == 3

    @pytest.mark.asyncio
    async def test_submission_error_leaves_record(self, make_worker, operation_store, submission_port):
        await add_operation(operation_store, age_ms=STUCK_AGE_MS, retry_count=1)
        before = operation_store.raw("op-1")
        submission_port.responses.append(SubmissionError(error="relay rejected"))

        result = await make_worker().run()

        assert operation_store.raw("op-1") == before
        assert result.errors == ["op-1: relay rejected (nonce 6 unused)"]
        assert result.unused_nonces == [6]
        assert result.retried == 0
        assert result.success is True

    @pytest.mark.asyncio
    async def test_submission_transport_error_leaves_record(self, make_worker, operation_store, submission_port):
        await add_operation(operation_store, age_ms=STUCK_AGE_MS)
        before = operation_store.raw("op-1")
        submission_port.responses.append(SubmissionTransportError("Submission failed: ConnectError"))

        result = await make_worker().run()

        assert operation_store.raw("op-1") == before
        assert result.errors == ["op-1: Submission failed: ConnectError (nonce 6 unused)"]
        assert result.unused_nonces == [6]

    @pytest.mark.asyncio
    async def test_gas_price_failure_allocates_no_nonce(self, make_worker, operation_store, chain, atomic_store):
        await add_operation(operation_store, age_ms=STUCK_AGE_MS)
        chain.get_gas_price = AsyncMock(side_effect=ChainRpcError("eth_gasPrice failed: ReadTimeout"))
        worker = make_worker()

        result = await worker.run()

        assert result.errors == ["op-1: eth_gasPrice failed: ReadTimeout"]
        assert result.unused_nonces == []
        key = f"nonce:{CHAIN_ID}:{worker.signer_address.lower()}:lastUsed"
        assert await atomic_store.get(key) is None

    @pytest.mark.asyncio
    async def test_max_retries_exceeded(self, make_worker, operation_store, submission_port):
        await add_operation(operation_store, age_ms=STUCK_AGE_MS, retry_count=3)

        result = await make_worker(max_retries=3).run()

        record = await operation_store.get("op-1")
        assert record.status == OperationStatus.FAILED
        assert record.error == "Max retries (3) exceeded"
        assert result.failed == 1
        assert submission_port.calls == []

    @pytest.mark.asyncio
    async def test_retries_until_exhausted(self, make_worker, operation_store, submission_port):
        await add_operation(operation_store, age_ms=STUCK_AGE_MS)
        worker = make_worker(max_retries=3)

        for expected_count in (1, 2, 3):
            result = await worker.run()
            assert result.retried == 1
            assert (await operation_store.get("op-1")).retry_count == expected_count
            await age_operation(operation_store, "op-1")

        result = await worker.run()

        record = await operation_store.get("op-1")
        assert result.failed == 1
        assert record.status == OperationStatus.FAILED
        assert record.error == "Max retries (3) exceeded"
        assert [call["nonce"] for call in submission_port.calls] == [6, 7, 8]
        assert [call["gas"].max_fee_per_gas for call in submission_port.calls] == [
            120_000_000_000,
            144_000_000_000,
            172_800_000_000,
        ]


# =============================================================================
# Batch behavior
# =============================================================================


class TestBatch:
    """Ordering, limits and per-record isolation."""

    @pytest.mark.asyncio
    async def test_heartbeat_written(self, make_worker, atomic_store):
        before = now_ms()

        await make_worker().run()

        assert int(await atomic_store.get(HEARTBEAT_KEY)) >= before

    @pytest.mark.asyncio
    async def test_oldest_first_and_capped(self, make_worker, operation_store, chain):
        await add_operation(operation_store, "newest", age_ms=1_000)
        await add_operation(operation_store, "oldest", age_ms=30_000)
        await add_operation(operation_store, "middle", age_ms=20_000)
        for op_id in ("newest", "oldest", "middle"):
            chain.mine(f"0x{op_id}")

        result = await make_worker(max_operations=2).run()

        assert result.processed == 2
        assert (await operation_store.get("oldest")).status == OperationStatus.CONFIRMED
        assert (await operation_store.get("middle")).status == OperationStatus.CONFIRMED
        assert (await operation_store.get("newest")).status == OperationStatus.PENDING

    @pytest.mark.asyncio
    async def test_record_error_does_not_stop_batch(self, make_worker, operation_store, chain):
        await add_operation(operation_store, "broken", age_ms=20_000)
        await add_operation(operation_store, "fine", age_ms=10_000)
        chain.receipt_errors["0xbroken"] = ChainRpcError("eth_getTransactionReceipt failed: ReadTimeout")
        chain.mine("0xfine")

        result = await make_worker().run()

        assert result.processed == 2
        assert result.confirmed == 1
        assert result.errors == ["broken: eth_getTransactionReceipt failed: ReadTimeout"]
        assert (await operation_store.get("broken")).status == OperationStatus.PENDING

    @pytest.mark.asyncio
    async def test_record_errors_logged_with_classification(self, make_worker, operation_store, chain, caplog):
        caplog.set_level(logging.WARNING, logger="relayer.workers.relay_retry_worker")
        await add_operation(operation_store, "flaky")
        await add_operation(operation_store, "odd", age_ms=1)
        chain.receipt_errors["0xflaky"] = ChainRpcError("eth_getTransactionReceipt failed: ReadTimeout")
        chain.receipt_errors["0xodd"] = ValueError("execution reverted: paused")

        await make_worker().run()

        records = {r.getMessage().split(" ")[3]: r for r in caplog.records if "Error processing" in r.getMessage()}
        assert records["flaky"].levelno == logging.WARNING
        assert "(network, recoverable=True)" in records["flaky"].getMessage()
        assert records["odd"].levelno == logging.ERROR
        assert "(transaction_reverted, recoverable=False)" in records["odd"].getMessage()

    @pytest.mark.asyncio
    async def test_nonce_allocation_failure_leaves_record(self, make_worker, operation_store, atomic_store):
        await add_operation(operation_store, age_ms=STUCK_AGE_MS)
        before = operation_store.raw("op-1")
        atomic_store.atomic_assign_nonce = AsyncMock(side_effect=StoreUnavailableError("store down"))

        result = await make_worker().run()

        assert operation_store.raw("op-1") == before
        assert len(result.errors) == 1
        assert result.errors[0].startswith("op-1: Nonce store unavailable")

    @pytest.mark.asyncio
    async def test_per_record_timeout(self, make_worker, operation_store, chain):
        await add_operation(operation_store)
        chain.receipt_delay = 1.0

        result = await make_worker(operation_timeout_seconds=0.05).run()

        assert len(result.errors) == 1
        assert "exceeded" in result.errors[0]
        assert (await operation_store.get("op-1")).status == OperationStatus.PENDING

    @pytest.mark.asyncio
    async def test_terminal_record_not_overwritten(self, make_worker, operation_store, chain):
        class RacingStore(InMemoryOperationStore):
            """Another invocation confirms the record right after the batch is read."""

            async def get_by_status(self, status):
                records = await super().get_by_status(status)
                for record in records:
                    confirmed = await self.get(record.operation_id)
                    confirmed.status = OperationStatus.CONFIRMED
                    await self.set(record.operation_id, confirmed)
                return records

        racing = RacingStore()
        await add_operation(racing, age_ms=STUCK_AGE_MS)
        chain.mine("0xop-1", success=False)
        worker = make_worker()
        worker._operations = racing

        result = await worker.run()

        assert (await racing.get("op-1")).status == OperationStatus.CONFIRMED
        assert result.failed == 0
        assert result.skipped == 1

    @pytest.mark.asyncio
    async def test_heartbeat_failure_is_fatal(self, make_worker, operation_store, atomic_store):
        await add_operation(operation_store, age_ms=STUCK_AGE_MS)
        before = operation_store.raw("op-1")
        atomic_store.set = AsyncMock(side_effect=StoreUnavailableError("Connection refused"))

        result = await make_worker().run()

        assert result.success is False
        assert "Atomic store unreachable" in result.fatal_error
        assert result.processed == 0
        assert operation_store.raw("op-1") == before

    @pytest.mark.asyncio
    async def test_operation_store_failure_is_fatal(self, make_worker, operation_store):
        operation_store.get_by_status = AsyncMock(side_effect=StoreUnavailableError("Connection refused"))

        result = await make_worker().run()

        assert result.success is False
        assert "Operation store unreachable" in result.fatal_error

    @pytest.mark.asyncio
    async def test_cleanup_reported(self, make_worker, operation_store):
        old = now_ms() - 2 * 86_400_000
        await add_operation(operation_store, "old", status=OperationStatus.CONFIRMED, age_ms=now_ms() - old)

        result = await make_worker().run()

        assert result.cleaned == 1
        assert await operation_store.get("old") is None

    @pytest.mark.asyncio
    async def test_cleanup_disabled(self, make_worker, operation_store):
        operation_store.cleanup = AsyncMock(return_value=5)

        result = await make_worker(cleanup_enabled=False).run()

        assert result.cleaned == 0
        operation_store.cleanup.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_overlapping_workers_never_share_a_nonce(self, atomic_store, chain, account):
        nonce_manager = DistributedNonceManager(atomic_store, chain)
        ports = []
        workers = []
        for prefix in ("a", "b"):
            store = InMemoryOperationStore()
            for i in range(5):
                await add_operation(store, f"{prefix}{i}", age_ms=STUCK_AGE_MS + i)
            port = RecordingSubmissionPort()
            ports.append(port)
            workers.append(RelayRetryWorker(
                operation_store=store,
                atomic_store=atomic_store,
                chain_client=chain,
                nonce_manager=nonce_manager,
                submission_port=port,
                account=account,
                config=WorkerConfig(chain_id=CHAIN_ID),
            ))

        results = await asyncio.gather(*(worker.run() for worker in workers))

        nonces = [call["nonce"] for port in ports for call in port.calls]
        assert sum(r.retried for r in results) == 10
        assert sorted(nonces) == list(range(6, 16))


# =============================================================================
# Nonce burning
# =============================================================================


class TestNonceBurning:
    """Burn-then-reissue behavior."""

    @pytest.mark.asyncio
    async def test_burn_precedes_new_nonce(self, make_worker, operation_store, nonce_manager):
        await add_operation(
            operation_store,
            age_ms=STUCK_AGE_MS,
            nonce=4,
            last_attempted_gas=GasParams(max_fee_per_gas=150 * GWEI, max_priority_fee_per_gas=2 * GWEI),
        )
        order = []
        original_assign = nonce_manager.assign_nonce

        async def burn(account, nonce, last_gas, policy, **kwargs):
            order.append(("burn", nonce))
            return NonceBurnResult(nonce=nonce, transaction_hash="0xburn", confirmed=True)

        async def assign(address, chain_id):
            nonce = await original_assign(address, chain_id)
            order.append(("assign", nonce))
            return nonce

        nonce_manager.burn_nonce = AsyncMock(side_effect=burn)
        nonce_manager.assign_nonce = AsyncMock(side_effect=assign)

        result = await make_worker(nonce_burn_enabled=True, nonce_burn_margin=1.5).run()

        assert order == [("burn", 4), ("assign", 6)]
        assert result.nonce_burned == 1
        assert result.retried == 1
        kwargs = nonce_manager.burn_nonce.await_args.kwargs
        assert kwargs["safety_margin"] == 1.5
        assert nonce_manager.burn_nonce.await_args.args[2].max_fee_per_gas == 150 * GWEI

    @pytest.mark.asyncio
    async def test_unconfirmed_burn_still_reissues(self, make_worker, operation_store, nonce_manager):
        await add_operation(operation_store, age_ms=STUCK_AGE_MS, nonce=4)
        nonce_manager.burn_nonce = AsyncMock(
            return_value=NonceBurnResult(nonce=4, confirmed=False, error="RPC error: nonce too low")
        )

        result = await make_worker(nonce_burn_enabled=True).run()

        assert result.nonce_burned == 0
        assert result.retried == 1

    @pytest.mark.asyncio
    async def test_burn_error_leaves_record(self, make_worker, operation_store, nonce_manager, submission_port):
        await add_operation(operation_store, age_ms=STUCK_AGE_MS, nonce=4)
        before = operation_store.raw("op-1")
        nonce_manager.burn_nonce = AsyncMock(side_effect=NonceBurnError("Burn broadcast failed: insufficient funds", nonce=4))

        result = await make_worker(nonce_burn_enabled=True).run()

        assert operation_store.raw("op-1") == before
        assert result.errors == ["op-1: Burn broadcast failed: insufficient funds"]
        assert submission_port.calls == []

    @pytest.mark.asyncio
    async def test_no_burn_without_known_nonce(self, make_worker, operation_store, nonce_manager):
        await add_operation(operation_store, age_ms=STUCK_AGE_MS)
        nonce_manager.burn_nonce = AsyncMock()

        result = await make_worker(nonce_burn_enabled=True).run()

        nonce_manager.burn_nonce.assert_not_awaited()
        assert result.retried == 1

    @pytest.mark.asyncio
    async def test_no_burn_when_disabled(self, make_worker, operation_store, nonce_manager):
        await add_operation(operation_store, age_ms=STUCK_AGE_MS, nonce=4)
        nonce_manager.burn_nonce = AsyncMock()

        await make_worker().run()

        nonce_manager.burn_nonce.assert_not_awaited()


# =============================================================================
# Convenience functions
# =============================================================================


class TestConvenienceFunctions:

    @pytest.mark.asyncio
    async def test_run_once(self, make_worker, operation_store, chain):
        await add_operation(operation_store)
        chain.mine("0xop-1")

        result = await run_relay_retry_worker(make_worker())

        assert result.confirmed == 1

    @pytest.mark.asyncio
    async def test_loop_runs_requested_iterations(self, make_worker):
        worker = make_worker()
        worker.run = AsyncMock(side_effect=[
            WorkerResult(started_at=datetime.now(timezone.utc), ended_at=datetime.now(timezone.utc)),
            RuntimeError("transient"),
        ])

        await run_relay_retry_loop(worker, interval_seconds=0, max_iterations=2)

        assert worker.run.await_count == 2
