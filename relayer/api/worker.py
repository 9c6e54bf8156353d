"""
Worker API Endpoints

Trigger surface for the relay retry worker. Intended for a cron job
(GET) or a manual trigger (POST); both run one reconciliation cycle.
"""

import hmac
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from ..core.execution.submission import SubmissionPort
from ..core.recovery import ConfigurationError
from ..workers.factory import RelayerComponents, build_worker, get_relayer_components

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api")


def get_submission_port() -> Optional[SubmissionPort]:
    """None means: build the HTTP port from RELAY_SUBMIT_URL."""
    return None


def _authorized(authorization: Optional[str], expected_token: str) -> bool:
    if not expected_token:
        return True
    if authorization is None:
        return False
    return hmac.compare_digest(authorization.encode(), f"Bearer {expected_token}".encode())


@router.api_route("/worker", methods=["GET", "POST"])
async def trigger_worker(
    authorization: Optional[str] = Header(None),
    components: RelayerComponents = Depends(get_relayer_components),
    submission_port: Optional[SubmissionPort] = Depends(get_submission_port),
):
    """Run one worker cycle and report its summary."""
    if not _authorized(authorization, components.settings.worker_auth_token):
        return JSONResponse({"error": "Unauthorized"}, status_code=401)

    logger.info("Starting operation processing")

    try:
        worker = build_worker(components, submission_port=submission_port)
    except ConfigurationError as e:
        logger.error(f"Worker process failed: {e.message}")
        return JSONResponse(
            {"error": "Worker process failed", "details": e.message},
            status_code=500,
        )

    try:
        result = await worker.run()
    finally:
        # Only close a port built for this request; injected ports are shared
        if submission_port is None:
            await worker.close()

    if not result.success:
        return JSONResponse(
            {"error": "Worker process failed", "details": result.fatal_error},
            status_code=500,
        )

    return {
        "success": True,
        "results": result.to_dict(),
        "cleaned": result.cleaned,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
