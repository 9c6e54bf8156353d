"""
JSON-RPC client for the relay chain.

Read-only calls used by the worker plus raw-transaction broadcast used when
burning a nonce. Every call is bounded by the client timeout.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, List, Optional

import httpx

from ..recovery import ChainRpcError
from .models import TransactionReceipt

logger = logging.getLogger(__name__)


class ChainClient:
    """Thin async wrapper around an EVM JSON-RPC endpoint."""

    def __init__(
        self,
        rpc_url: str,
        chain_id: int,
        timeout_seconds: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not rpc_url:
            raise ValueError("rpc_url is required")
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._ids = itertools.count(1)

    async def _rpc_call(self, method: str, params: List[Any]) -> Any:
        """Make an RPC call to the chain."""
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": next(self._ids),
        }

        try:
            response = await self._client.post(self.rpc_url, json=payload)
            response.raise_for_status()
            result = response.json()
        except httpx.HTTPError as e:
            raise ChainRpcError(
                f"{method} failed: {e.__class__.__name__}: {e}",
                method=method,
                chain_id=self.chain_id,
            ) from e
        except ValueError as e:
            raise ChainRpcError(
                f"{method} returned invalid JSON",
                method=method,
                chain_id=self.chain_id,
            ) from e

        if "error" in result and result["error"]:
            error = result["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ChainRpcError(
                f"RPC error: {message}",
                method=method,
                chain_id=self.chain_id,
                rpc_error=error,
            )

        return result.get("result")

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        """
        Fetch a receipt.

        Returns None while the transaction is unknown or unmined; that is the
        normal state of an in-flight transaction, not an error.
        """
        result = await self._rpc_call("eth_getTransactionReceipt", [tx_hash])
        if not result:
            return None
        return TransactionReceipt.from_rpc(result)

    async def get_transaction_count(self, address: str, block_tag: str = "pending") -> int:
        result = await self._rpc_call("eth_getTransactionCount", [address, block_tag])
        return int(result, 16)

    async def get_gas_price(self) -> int:
        result = await self._rpc_call("eth_gasPrice", [])
        return int(result, 16)

    async def get_block_number(self) -> int:
        result = await self._rpc_call("eth_blockNumber", [])
        return int(result, 16)

    async def get_chain_id(self) -> int:
        result = await self._rpc_call("eth_chainId", [])
        return int(result, 16)

    async def send_raw_transaction(self, raw_tx: str) -> str:
        return await self._rpc_call("eth_sendRawTransaction", [raw_tx])

    async def wait_for_receipt(
        self,
        tx_hash: str,
        timeout_seconds: float = 60.0,
        poll_interval_seconds: float = 2.0,
    ) -> Optional[TransactionReceipt]:
        """Poll for a receipt; None when the timeout elapses first."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds

        while True:
            try:
                receipt = await self.get_transaction_receipt(tx_hash)
            except ChainRpcError as e:
                logger.warning(f"Receipt poll for {tx_hash} failed: {e}")
                receipt = None

            if receipt is not None:
                return receipt

            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(poll_interval_seconds, remaining))

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
