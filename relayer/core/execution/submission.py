"""
Submission port: hands a user's original request back to the relay endpoint
for re-broadcast with explicit nonce and fee overrides.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from ..recovery import SubmissionTransportError
from .models import GasParams, SubmissionError, SubmissionPending, SubmissionResult

logger = logging.getLogger(__name__)


class SubmissionPort(ABC):
    """Re-broadcasts a stored request under a given nonce and fee bid."""

    @abstractmethod
    async def submit(
        self,
        original_request: Dict[str, Any],
        nonce: int,
        gas: GasParams,
    ) -> SubmissionResult:
        ...

    async def close(self) -> None:
        return None


def parse_submission_response(data: Any) -> SubmissionResult:
    """Map a relay endpoint reply onto the submission result variant."""
    if not isinstance(data, dict):
        return SubmissionError(error=f"Unexpected submission response: {data!r}")

    kind = data.get("type")
    if kind == "pending":
        tx_hash = data.get("transactionHash") or data.get("hash")
        operation_id = data.get("operationId")
        if not tx_hash or not operation_id:
            return SubmissionError(error="Pending submission response missing operationId or transactionHash")
        return SubmissionPending(operation_id=operation_id, transaction_hash=tx_hash)

    if kind == "error":
        return SubmissionError(error=str(data.get("error") or "Unknown submission error"))

    return SubmissionError(error=f"Unsupported submission response type: {kind!r}")


class HttpSubmissionPort(SubmissionPort):
    """POSTs ``{request, overrides}`` to the relay endpoint."""

    def __init__(
        self,
        submit_url: str,
        timeout_seconds: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not submit_url:
            raise ValueError("submit_url is required")
        self.submit_url = submit_url
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def submit(
        self,
        original_request: Dict[str, Any],
        nonce: int,
        gas: GasParams,
    ) -> SubmissionResult:
        overrides: Dict[str, Any] = {"nonce": nonce}
        overrides.update(gas.to_dict())
        payload = {"request": original_request, "overrides": overrides}

        try:
            response = await self._client.post(self.submit_url, json=payload)
        except httpx.HTTPError as e:
            raise SubmissionTransportError(
                f"Submission failed: {e.__class__.__name__}: {e}",
                endpoint=self.submit_url,
            ) from e

        try:
            data = response.json()
        except ValueError:
            if response.status_code >= 400:
                return SubmissionError(error=f"Relay endpoint returned HTTP {response.status_code}")
            return SubmissionError(error="Relay endpoint returned invalid JSON")

        result = parse_submission_response(data)
        if isinstance(result, SubmissionError) and response.status_code >= 400 and not (isinstance(data, dict) and data.get("type")):
            return SubmissionError(error=f"Relay endpoint returned HTTP {response.status_code}: {data}")

        logger.debug(f"Submission with nonce {nonce} returned {type(result).__name__}")
        return result

    async def close(self) -> None:
        await self._client.aclose()
