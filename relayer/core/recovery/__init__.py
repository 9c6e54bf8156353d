"""
Error Recovery Module

Error taxonomy and classification for the relayer engine.
"""

from .errors import (
    ErrorCategory,
    ErrorContext,
    RecoverableError,
    UnrecoverableError,
    StoreUnavailableError,
    ChainRpcError,
    NonceAllocationError,
    NonceBurnError,
    SubmissionTransportError,
    OperationTimeoutError,
    ConfigurationError,
    TransactionRevertedError,
    MaxRetriesExceededError,
    classify_error,
)

__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "RecoverableError",
    "UnrecoverableError",
    "StoreUnavailableError",
    "ChainRpcError",
    "NonceAllocationError",
    "NonceBurnError",
    "SubmissionTransportError",
    "OperationTimeoutError",
    "ConfigurationError",
    "TransactionRevertedError",
    "MaxRetriesExceededError",
    "classify_error",
]
