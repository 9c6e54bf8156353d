"""
Error Classification

Defines error types for the relayer engine.
Errors are classified as recoverable (the record is left as-is and retried on a
later worker pass) or unrecoverable (terminal for the record, or fatal for the
whole invocation when raised before the batch starts).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import httpx
import redis.exceptions


class ErrorCategory(str, Enum):
    """Categories of errors for recovery decisions."""

    CONFIGURATION = "configuration"  # Missing credential, bad settings
    STORE = "store"                  # Atomic / operation store failure
    NETWORK = "network"              # RPC or submission transport
    TIMEOUT = "timeout"              # Operation timed out
    NONCE = "nonce"                  # Nonce could not be allocated or burned
    SUBMISSION = "submission"        # Relay endpoint rejected the request
    TRANSACTION_REVERTED = "transaction_reverted"  # On-chain revert
    MAX_RETRIES = "max_retries"      # Retry budget exhausted
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Additional context about an error."""

    category: ErrorCategory = ErrorCategory.UNKNOWN
    recoverable: bool = True
    suggested_action: Optional[str] = None
    operation_id: Optional[str] = None
    chain_id: Optional[int] = None
    tx_hash: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class RecoverableError(Exception):
    """
    Base class for errors that leave the operation retryable.

    These errors are typically transient:
    - RPC/network issues
    - Store hiccups
    - Nonce lock contention
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        context: Optional[ErrorContext] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.context = context or ErrorContext(category=category, recoverable=True)


class UnrecoverableError(Exception):
    """
    Base class for errors that must not be retried.

    - Transaction reverts
    - Exhausted retry budget
    - Fatal configuration problems
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        context: Optional[ErrorContext] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.context = context or ErrorContext(category=category, recoverable=False)


# Specific recoverable errors
class StoreUnavailableError(RecoverableError):
    """Atomic or operation store could not be reached."""

    def __init__(self, message: str = "Store unavailable", store: Optional[str] = None):
        super().__init__(
            message,
            category=ErrorCategory.STORE,
            context=ErrorContext(
                category=ErrorCategory.STORE,
                recoverable=True,
                suggested_action="Check store connectivity",
                details={"store": store} if store else {},
            ),
        )


class ChainRpcError(RecoverableError):
    """JSON-RPC call failed at the transport level or returned an error object."""

    def __init__(
        self,
        message: str = "RPC call failed",
        method: Optional[str] = None,
        chain_id: Optional[int] = None,
        rpc_error: Optional[Any] = None,
    ):
        super().__init__(
            message,
            category=ErrorCategory.NETWORK,
            context=ErrorContext(
                category=ErrorCategory.NETWORK,
                recoverable=True,
                chain_id=chain_id,
                suggested_action="Retry on next worker pass",
                details={"method": method, "rpc_error": rpc_error},
            ),
        )
        self.method = method
        self.rpc_error = rpc_error


class NonceAllocationError(RecoverableError):
    """The allocator could not issue a nonce. Never fabricated, always raised."""

    def __init__(
        self,
        message: str = "Nonce allocation failed",
        address: Optional[str] = None,
        chain_id: Optional[int] = None,
    ):
        super().__init__(
            message,
            category=ErrorCategory.NONCE,
            context=ErrorContext(
                category=ErrorCategory.NONCE,
                recoverable=True,
                chain_id=chain_id,
                suggested_action="Retry not possible this cycle",
                details={"address": address},
            ),
        )


class NonceBurnError(RecoverableError):
    """Burn transaction could not be signed or broadcast."""

    def __init__(
        self,
        message: str = "Nonce burn failed",
        nonce: Optional[int] = None,
        chain_id: Optional[int] = None,
    ):
        super().__init__(
            message,
            category=ErrorCategory.NONCE,
            context=ErrorContext(
                category=ErrorCategory.NONCE,
                recoverable=True,
                chain_id=chain_id,
                details={"nonce": nonce},
            ),
        )
        self.nonce = nonce


class SubmissionTransportError(RecoverableError):
    """The submission port could not be reached."""

    def __init__(self, message: str = "Submission transport failed", endpoint: Optional[str] = None):
        super().__init__(
            message,
            category=ErrorCategory.NETWORK,
            context=ErrorContext(
                category=ErrorCategory.NETWORK,
                recoverable=True,
                suggested_action="Retry on next worker pass",
                details={"endpoint": endpoint} if endpoint else {},
            ),
        )


class OperationTimeoutError(RecoverableError):
    """A per-record step exceeded its time budget."""

    def __init__(self, message: str = "Operation timed out", operation: Optional[str] = None):
        super().__init__(
            message,
            category=ErrorCategory.TIMEOUT,
            context=ErrorContext(
                category=ErrorCategory.TIMEOUT,
                recoverable=True,
                operation_id=operation,
                suggested_action="Retry on next worker pass",
            ),
        )


# Specific unrecoverable errors
class ConfigurationError(UnrecoverableError):
    """Fatal for the whole invocation; raised before any record is touched."""

    def __init__(self, message: str = "Invalid configuration", setting: Optional[str] = None):
        super().__init__(
            message,
            category=ErrorCategory.CONFIGURATION,
            context=ErrorContext(
                category=ErrorCategory.CONFIGURATION,
                recoverable=False,
                suggested_action=f"Set {setting}" if setting else "Review relayer configuration",
                details={"setting": setting} if setting else {},
            ),
        )


class TransactionRevertedError(UnrecoverableError):
    """Transaction reverted on-chain."""

    def __init__(
        self,
        message: str = "Transaction reverted on chain",
        tx_hash: Optional[str] = None,
        chain_id: Optional[int] = None,
    ):
        super().__init__(
            message,
            category=ErrorCategory.TRANSACTION_REVERTED,
            context=ErrorContext(
                category=ErrorCategory.TRANSACTION_REVERTED,
                recoverable=False,
                tx_hash=tx_hash,
                chain_id=chain_id,
                suggested_action="Review transaction parameters",
            ),
        )


class MaxRetriesExceededError(UnrecoverableError):
    """Operation used up its rebroadcast budget."""

    def __init__(self, max_retries: int, operation_id: Optional[str] = None):
        super().__init__(
            f"Max retries ({max_retries}) exceeded",
            category=ErrorCategory.MAX_RETRIES,
            context=ErrorContext(
                category=ErrorCategory.MAX_RETRIES,
                recoverable=False,
                operation_id=operation_id,
                suggested_action="Inspect relayer balance and network fees",
                details={"max_retries": max_retries},
            ),
        )
        self.max_retries = max_retries


def classify_error(error: Exception) -> ErrorContext:
    """
    Classify an exception and return its error context.

    Library exceptions are matched by type first, then by message.
    """
    if isinstance(error, (RecoverableError, UnrecoverableError)):
        return error.context

    if isinstance(error, redis.exceptions.RedisError):
        return ErrorContext(
            category=ErrorCategory.STORE,
            recoverable=True,
            suggested_action="Check store connectivity",
        )

    if isinstance(error, (httpx.TimeoutException, TimeoutError)):
        return ErrorContext(
            category=ErrorCategory.TIMEOUT,
            recoverable=True,
            suggested_action="Retry on next worker pass",
        )

    if isinstance(error, httpx.HTTPError):
        return ErrorContext(
            category=ErrorCategory.NETWORK,
            recoverable=True,
            suggested_action="Check RPC connectivity",
        )

    message = str(error).lower()

    nonce_patterns = ["nonce too low", "already known", "replacement transaction underpriced"]
    if any(p in message for p in nonce_patterns):
        return ErrorContext(
            category=ErrorCategory.NONCE,
            recoverable=True,
            suggested_action="Nonce slot already occupied; reallocate",
        )

    timeout_patterns = ["timeout", "timed out", "deadline"]
    if any(p in message for p in timeout_patterns):
        return ErrorContext(
            category=ErrorCategory.TIMEOUT,
            recoverable=True,
            suggested_action="Retry on next worker pass",
        )

    network_patterns = ["connection", "network", "unreachable", "refused", "dns", "socket"]
    if any(p in message for p in network_patterns):
        return ErrorContext(
            category=ErrorCategory.NETWORK,
            recoverable=True,
            suggested_action="Check network connectivity",
        )

    revert_patterns = ["revert", "execution reverted"]
    if any(p in message for p in revert_patterns):
        return ErrorContext(
            category=ErrorCategory.TRANSACTION_REVERTED,
            recoverable=False,
            suggested_action="Review transaction parameters",
        )

    # Unknown errors stay recoverable: the record is simply retried next pass
    return ErrorContext(
        category=ErrorCategory.UNKNOWN,
        recoverable=True,
        suggested_action="Retry operation",
    )
