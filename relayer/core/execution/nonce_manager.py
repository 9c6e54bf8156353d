"""
Distributed nonce management for the relayer signer.

Nonces are allocated from a counter in the shared atomic store so that any
number of worker instances can sign for the same address without handing out
the same nonce twice. The counter is reconciled with the chain's pending
transaction count on every assignment, so it never falls behind transactions
sent outside the allocator.
"""

import asyncio
import json
import logging
from typing import Optional

from eth_account.signers.local import LocalAccount

from ...db.atomic_store import AtomicStore, NonceAssignmentSupport
from ..recovery import (
    ChainRpcError,
    NonceAllocationError,
    NonceBurnError,
    StoreUnavailableError,
)
from .chain_client import ChainClient
from .gas_policy import GasEscalationPolicy
from .models import GasParams, NonceBurnResult, NonceState, now_ms

logger = logging.getLogger(__name__)

ASSIGNMENT_TTL_SECONDS = 3600
MAX_LOCK_BACKOFF_SECONDS = 5.0
BURN_GAS_LIMIT = 21000

# Node replies meaning the nonce slot is already consumed or occupied
_BURN_SLOT_TAKEN_MARKERS = (
    "nonce too low",
    "already known",
    "replacement transaction underpriced",
)


class DistributedNonceManager:
    """
    Allocates strictly increasing nonces per (chain, address).

    Features:
    - Single atomic sync-and-increment when the store supports it
    - Distributed lock fallback with exponential backoff
    - Fails closed: never guesses a nonce when the store or RPC is unreachable
    - Operator tools: state inspection, reset, and nonce burning
    """

    def __init__(
        self,
        atomic_store: AtomicStore,
        chain_client: ChainClient,
        lock_ttl_seconds: int = 5,
        max_lock_retries: int = 50,
        lock_retry_delay_seconds: float = 0.1,
    ):
        self.store = atomic_store
        self.chain = chain_client
        self.lock_ttl_seconds = lock_ttl_seconds
        self.max_lock_retries = max_lock_retries
        self.lock_retry_delay_seconds = lock_retry_delay_seconds

    @classmethod
    def from_settings(cls, atomic_store: AtomicStore, chain_client: ChainClient, settings) -> "DistributedNonceManager":
        return cls(
            atomic_store,
            chain_client,
            lock_ttl_seconds=settings.nonce_lock_ttl_seconds,
            max_lock_retries=settings.nonce_max_lock_retries,
            lock_retry_delay_seconds=settings.nonce_lock_retry_delay_seconds,
        )

    def _get_key(self, chain_id: int, address: str) -> str:
        return f"nonce:{chain_id}:{address.lower()}"

    async def _pending_count(self, address: str, chain_id: int) -> int:
        try:
            return await self.chain.get_transaction_count(address, "pending")
        except ChainRpcError as e:
            raise NonceAllocationError(
                f"Failed to read pending transaction count: {e.message}",
                address=address,
                chain_id=chain_id,
            ) from e

    async def _acquire_lock(self, lock_key: str, address: str, chain_id: int) -> str:
        delay = self.lock_retry_delay_seconds
        for attempt in range(self.max_lock_retries):
            lock_id = await self.store.acquire_lock(lock_key, self.lock_ttl_seconds)
            if lock_id:
                return lock_id
            logger.debug(f"Nonce lock {lock_key} busy (attempt {attempt + 1}), retrying in {delay:.2f}s")
            await asyncio.sleep(delay)
            delay = min(delay * 1.5, MAX_LOCK_BACKOFF_SECONDS)

        raise NonceAllocationError(
            f"Failed to acquire nonce lock after {self.max_lock_retries} attempts",
            address=address,
            chain_id=chain_id,
        )

    async def _release_lock(self, lock_key: str, lock_id: str) -> None:
        try:
            released = await self.store.release_lock(lock_key, lock_id)
        except StoreUnavailableError as e:
            # TTL expiry frees the lock eventually
            logger.error(f"Failed to release nonce lock {lock_key}: {e}")
            return
        if not released:
            logger.warning(f"Nonce lock {lock_key} expired before release")

    async def _assign_under_lock(self, base_key: str, pending: int, address: str, chain_id: int) -> int:
        lock_key = f"{base_key}:lock"
        counter_key = f"{base_key}:lastUsed"

        lock_id = await self._acquire_lock(lock_key, address, chain_id)
        try:
            current = await self.store.get(counter_key)
            last_used = int(current) if current is not None else -1
            if current is None or pending - 1 > last_used:
                synced = max(last_used, pending - 1)
                if synced != last_used:
                    logger.info(f"Syncing nonce counter for {address} on chain {chain_id}: {last_used} -> {synced}")
                await self.store.set(counter_key, str(synced))

            nonce = await self.store.incr(counter_key)

            metadata = json.dumps({
                "nonce": nonce,
                "assignedAt": now_ms(),
                "blockchainPending": pending,
            })
            await self.store.set_with_ttl(f"{base_key}:assignment:{nonce}", metadata, ASSIGNMENT_TTL_SECONDS)
            return nonce
        finally:
            await self._release_lock(lock_key, lock_id)

    async def assign_nonce(self, address: str, chain_id: int) -> int:
        """
        Reserve the next nonce for an address.

        Args:
            address: Signer address
            chain_id: Chain the nonce is valid on

        Returns:
            A nonce no other caller has received

        Raises:
            NonceAllocationError: store unreachable, lock not acquired or RPC failure
        """
        base_key = self._get_key(chain_id, address)
        pending = await self._pending_count(address, chain_id)

        try:
            if isinstance(self.store, NonceAssignmentSupport):
                nonce = await self.store.atomic_assign_nonce(f"{base_key}:lastUsed", pending)
            else:
                nonce = await self._assign_under_lock(base_key, pending, address, chain_id)
        except StoreUnavailableError as e:
            raise NonceAllocationError(
                f"Nonce store unavailable: {e.message}",
                address=address,
                chain_id=chain_id,
            ) from e

        logger.info(f"Assigned nonce {nonce} to {address} on chain {chain_id} (chain pending: {pending})")
        return nonce

    async def reset_nonce(self, address: str, chain_id: int) -> int:
        """
        Reset the counter to the confirmed transaction count minus one.

        Recovery tool for operators; pending transactions above the confirmed
        count may be replaced by subsequent assignments.
        """
        base_key = self._get_key(chain_id, address)
        lock_key = f"{base_key}:lock"

        try:
            confirmed = await self.chain.get_transaction_count(address, "latest")
        except ChainRpcError as e:
            raise NonceAllocationError(
                f"Failed to read confirmed transaction count: {e.message}",
                address=address,
                chain_id=chain_id,
            ) from e

        try:
            lock_id = await self._acquire_lock(lock_key, address, chain_id)
            try:
                await self.store.set(f"{base_key}:lastUsed", str(confirmed - 1))
            finally:
                await self._release_lock(lock_key, lock_id)
        except StoreUnavailableError as e:
            raise NonceAllocationError(
                f"Nonce store unavailable: {e.message}",
                address=address,
                chain_id=chain_id,
            ) from e

        logger.warning(f"Reset nonce counter for {address} on chain {chain_id} to {confirmed - 1}")
        return confirmed - 1

    async def get_nonce_state(self, address: str, chain_id: int) -> NonceState:
        """Compare the allocator counter against the chain view."""
        base_key = self._get_key(chain_id, address)
        current = await self.store.get(f"{base_key}:lastUsed")
        pending = await self.chain.get_transaction_count(address, "pending")
        confirmed = await self.chain.get_transaction_count(address, "latest")

        return NonceState(
            address=address,
            chain_id=chain_id,
            last_used=int(current) if current is not None else -1,
            blockchain_pending=pending - 1,
            blockchain_confirmed=confirmed - 1,
        )

    async def burn_nonce(
        self,
        account: LocalAccount,
        nonce: int,
        last_attempted_gas: GasParams,
        gas_policy: GasEscalationPolicy,
        safety_margin: float = 1.5,
        timeout_seconds: float = 60.0,
        poll_interval_seconds: float = 2.0,
    ) -> NonceBurnResult:
        """
        Replace whatever occupies ``nonce`` with a zero-value self-transfer.

        Returns an unconfirmed result (not an exception) when the node reports
        the slot as already consumed or occupied by a better-priced transaction.

        Raises:
            NonceBurnError: signing or broadcast failed for any other reason
        """
        chain_id = self.chain.chain_id
        try:
            base_fee = await self.chain.get_gas_price()
        except ChainRpcError as e:
            raise NonceBurnError(f"Failed to read gas price: {e.message}", nonce=nonce, chain_id=chain_id) from e

        gas = gas_policy.burn_fees(base_fee, last_attempted_gas, safety_margin)

        try:
            signed = account.sign_transaction({
                "type": 2,
                "chainId": chain_id,
                "nonce": nonce,
                "to": account.address,
                "value": 0,
                "gas": BURN_GAS_LIMIT,
                "maxFeePerGas": gas.max_fee_per_gas,
                "maxPriorityFeePerGas": gas.max_priority_fee_per_gas,
                "data": b"",
            })
        except (TypeError, ValueError) as e:
            raise NonceBurnError(f"Failed to sign burn transaction: {e}", nonce=nonce, chain_id=chain_id) from e

        raw_tx = "0x" + bytes(signed.raw_transaction).hex()

        logger.info(
            f"Burning nonce {nonce} for {account.address} on chain {chain_id} "
            f"(maxFeePerGas={gas.max_fee_per_gas}, maxPriorityFeePerGas={gas.max_priority_fee_per_gas})"
        )

        try:
            tx_hash = await self.chain.send_raw_transaction(raw_tx)
        except ChainRpcError as e:
            lowered = e.message.lower()
            if any(marker in lowered for marker in _BURN_SLOT_TAKEN_MARKERS):
                logger.warning(f"Nonce {nonce} burn not broadcast: {e.message}")
                return NonceBurnResult(nonce=nonce, confirmed=False, gas=gas, error=e.message)
            raise NonceBurnError(f"Burn broadcast failed: {e.message}", nonce=nonce, chain_id=chain_id) from e

        receipt = await self.chain.wait_for_receipt(
            tx_hash,
            timeout_seconds=timeout_seconds,
            poll_interval_seconds=poll_interval_seconds,
        )
        if receipt is None:
            logger.warning(f"Burn transaction {tx_hash} for nonce {nonce} not mined within {timeout_seconds}s")
            return NonceBurnResult(
                nonce=nonce,
                transaction_hash=tx_hash,
                confirmed=False,
                gas=gas,
                error=f"Burn not confirmed within {timeout_seconds}s",
            )

        logger.info(f"Burned nonce {nonce} in block {receipt.block_number} ({tx_hash})")
        return NonceBurnResult(nonce=nonce, transaction_hash=tx_hash, confirmed=True, gas=gas)
