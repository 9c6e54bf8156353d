"""
Transaction Execution Layer

Provides the infrastructure for reconciling relayed transactions:
- DistributedNonceManager: Allocates nonces across worker instances
- GasEscalationPolicy: Computes escalated and nonce-burn fee bids
- ChainClient: JSON-RPC reads and raw transaction broadcast
- SubmissionPort: Re-broadcasts stored requests through the relay endpoint

Usage:
    from relayer.core.execution import (
        ChainClient,
        DistributedNonceManager,
        GasEscalationPolicy,
    )

    chain = ChainClient("https://rpc.vana.org", 1480)
    nonces = DistributedNonceManager(atomic_store, chain)
    nonce = await nonces.assign_nonce(address, 1480)

    gas = GasEscalationPolicy().escalate(await chain.get_gas_price(), attempt=0)
"""

from .models import (
    OperationStatus,
    ReceiptStatus,
    GasParams,
    TransactionReceipt,
    OperationRecord,
    SubmissionPending,
    SubmissionError,
    SubmissionResult,
    NonceState,
    NonceBurnResult,
    now_ms,
)
from .gas_policy import GasEscalationPolicy
from .chain_client import ChainClient
from .nonce_manager import DistributedNonceManager
from .submission import SubmissionPort, HttpSubmissionPort, parse_submission_response

__all__ = [
    # Models
    "OperationStatus",
    "ReceiptStatus",
    "GasParams",
    "TransactionReceipt",
    "OperationRecord",
    "SubmissionPending",
    "SubmissionError",
    "SubmissionResult",
    "NonceState",
    "NonceBurnResult",
    "now_ms",
    # Components
    "GasEscalationPolicy",
    "ChainClient",
    "DistributedNonceManager",
    "SubmissionPort",
    "HttpSubmissionPort",
    "parse_submission_response",
]
