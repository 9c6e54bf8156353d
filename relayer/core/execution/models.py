"""
Relayer execution models and types.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union


def now_ms() -> int:
    """Current Unix time in milliseconds (the record wire format)."""
    return int(time.time() * 1000)


def _to_int(value: Any) -> Optional[int]:
    """Parse wei/counter values that may arrive as int, decimal or hex strings."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid integer value: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.lower().startswith("0x"):
            return int(text, 16)
        return int(text)
    raise ValueError(f"Invalid integer value: {value!r}")


class OperationStatus(str, Enum):
    """Operation lifecycle status."""
    PENDING = "pending"          # Broadcast, outcome unknown
    CONFIRMED = "confirmed"      # Receipt with success status
    FAILED = "failed"            # Reverted or retries exhausted

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.CONFIRMED, OperationStatus.FAILED)


class ReceiptStatus(str, Enum):
    SUCCESS = "success"
    REVERTED = "reverted"


@dataclass(frozen=True)
class GasParams:
    """EIP-1559 fee bid of a single broadcast attempt."""
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None

    def to_dict(self) -> Dict[str, str]:
        # Decimal strings: wei values overflow JSON numbers in other runtimes
        data: Dict[str, str] = {}
        if self.max_fee_per_gas is not None:
            data["maxFeePerGas"] = str(self.max_fee_per_gas)
        if self.max_priority_fee_per_gas is not None:
            data["maxPriorityFeePerGas"] = str(self.max_priority_fee_per_gas)
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "GasParams":
        if not data:
            return cls()
        return cls(
            max_fee_per_gas=_to_int(data.get("maxFeePerGas")),
            max_priority_fee_per_gas=_to_int(data.get("maxPriorityFeePerGas")),
        )


@dataclass
class TransactionReceipt:
    """Subset of an eth_getTransactionReceipt result the engine cares about."""
    transaction_hash: str
    status: ReceiptStatus
    block_number: Optional[int] = None
    block_hash: Optional[str] = None
    gas_used: Optional[int] = None
    effective_gas_price: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return self.status == ReceiptStatus.SUCCESS

    @classmethod
    def from_rpc(cls, data: Dict[str, Any]) -> "TransactionReceipt":
        status = _to_int(data.get("status"))
        return cls(
            transaction_hash=data.get("transactionHash", ""),
            status=ReceiptStatus.SUCCESS if status == 1 else ReceiptStatus.REVERTED,
            block_number=_to_int(data.get("blockNumber")),
            block_hash=data.get("blockHash"),
            gas_used=_to_int(data.get("gasUsed")),
            effective_gas_price=_to_int(data.get("effectiveGasPrice")),
            raw=data,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transactionHash": self.transaction_hash,
            "status": self.status.value,
            "blockNumber": str(self.block_number) if self.block_number is not None else None,
            "blockHash": self.block_hash,
            "gasUsed": str(self.gas_used) if self.gas_used is not None else None,
            "effectiveGasPrice": (
                str(self.effective_gas_price) if self.effective_gas_price is not None else None
            ),
        }


@dataclass
class OperationRecord:
    """
    Durable state of one relayed operation.

    Created `pending` by the component that accepts the user's signed request;
    mutated only by the retry worker afterwards.
    """
    operation_id: str
    transaction_hash: str
    original_request: Dict[str, Any]
    status: OperationStatus = OperationStatus.PENDING
    nonce: Optional[int] = None
    retry_count: int = 0
    last_attempted_gas: GasParams = field(default_factory=GasParams)
    submitted_at: int = field(default_factory=now_ms)   # Unix ms

    # Terminal detail
    final_receipt: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def age_ms(self, now: Optional[int] = None) -> int:
        return (now if now is not None else now_ms()) - self.submitted_at

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "operationId": self.operation_id,
            "status": self.status.value,
            "transactionHash": self.transaction_hash,
            "originalRequest": self.original_request,
            "retryCount": self.retry_count,
            "lastAttemptedGas": self.last_attempted_gas.to_dict(),
            "submittedAt": self.submitted_at,
        }
        if self.nonce is not None:
            data["nonce"] = self.nonce
        if self.final_receipt is not None:
            data["finalReceipt"] = self.final_receipt
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], operation_id: Optional[str] = None) -> "OperationRecord":
        op_id = operation_id or data.get("operationId")
        if not op_id:
            raise ValueError("Operation record is missing operationId")
        return cls(
            operation_id=op_id,
            status=OperationStatus(data.get("status", OperationStatus.PENDING.value)),
            transaction_hash=data.get("transactionHash", ""),
            original_request=data.get("originalRequest") or {},
            nonce=_to_int(data.get("nonce")),
            retry_count=int(data.get("retryCount", 0)),
            last_attempted_gas=GasParams.from_dict(data.get("lastAttemptedGas")),
            submitted_at=int(data.get("submittedAt", 0)),
            final_receipt=data.get("finalReceipt"),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class SubmissionPending:
    """The relay endpoint accepted the request and broadcast a transaction."""
    operation_id: str
    transaction_hash: str


@dataclass(frozen=True)
class SubmissionError:
    """The relay endpoint refused or failed the request."""
    error: str


SubmissionResult = Union[SubmissionPending, SubmissionError]


@dataclass
class NonceState:
    """Allocator counter versus chain view; all values 0-indexed, -1 for none."""
    address: str
    chain_id: int
    last_used: int
    blockchain_pending: int
    blockchain_confirmed: int

    @property
    def in_flight(self) -> int:
        return max(self.last_used - self.blockchain_confirmed, 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "chainId": self.chain_id,
            "lastUsed": self.last_used,
            "blockchainPending": self.blockchain_pending,
            "blockchainConfirmed": self.blockchain_confirmed,
            "inFlight": self.in_flight,
        }


@dataclass
class NonceBurnResult:
    """Outcome of replacing a stuck transaction with a zero-value self-transfer."""
    nonce: int
    transaction_hash: Optional[str] = None
    confirmed: bool = False
    gas: GasParams = field(default_factory=GasParams)
    error: Optional[str] = None
