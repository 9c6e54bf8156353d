"""
Relayer health endpoint.

Reports store connectivity, chain connectivity, nonce synchronization,
operation queue depth and worker liveness.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from eth_account import Account
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..core.execution.models import now_ms
from ..core.recovery import RecoverableError
from ..db.atomic_store import InMemoryAtomicStore
from ..workers.factory import RelayerComponents, get_relayer_components
from ..workers.relay_retry_worker import HEARTBEAT_KEY

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/health")

HEARTBEAT_STALE_MS = 120_000
QUEUE_DEPTH_WARNING = 100
FAILED_OPERATIONS_ERROR = 10


def _error(message: str, e: Exception) -> Dict[str, Any]:
    return {"status": "error", "message": message, "details": str(e)}


async def _check_store(components: RelayerComponents) -> Dict[str, Any]:
    store = components.atomic_store
    if isinstance(store, InMemoryAtomicStore):
        return {"status": "warning", "message": "Redis not configured (in-memory stores, single instance only)"}
    try:
        await store.set_with_ttl("health:check", str(now_ms()), 10)
        value = await store.get("health:check")
        await store.delete("health:check")
    except RecoverableError as e:
        return _error("Redis connection failed", e)
    if not value:
        return {"status": "error", "message": "Redis write not readable"}
    return {"status": "ok", "message": "Redis connected and operational"}


async def _check_blockchain(components: RelayerComponents) -> Dict[str, Any]:
    chain = components.chain_client
    try:
        block_number = await chain.get_block_number()
        gas_price = await chain.get_gas_price()
        chain_id = await chain.get_chain_id()
    except RecoverableError as e:
        return _error("Blockchain connection failed", e)

    details = {"chainId": chain_id, "blockNumber": str(block_number), "gasPrice": str(gas_price)}
    if chain_id != chain.chain_id:
        return {
            "status": "error",
            "message": f"RPC serves chain {chain_id}, expected {chain.chain_id}",
            "details": details,
        }
    return {"status": "ok", "message": "Blockchain connected", "details": details}


async def _check_nonce(components: RelayerComponents) -> Dict[str, Any]:
    settings = components.settings
    if not settings.has_relayer_key:
        return {"status": "warning", "message": "Nonce management not available"}
    try:
        address = Account.from_key(settings.relayer_private_key).address
        state = await components.nonce_manager.get_nonce_state(address, settings.chain_id)
    except (RecoverableError, ValueError) as e:
        return _error("Failed to check nonce state", e)

    in_sync = abs(state.last_used - state.blockchain_pending) <= 1
    return {
        "status": "ok" if in_sync else "warning",
        "message": "Nonce in sync" if in_sync else "Nonce out of sync",
        "details": state.to_dict(),
    }


async def _check_operations(components: RelayerComponents) -> Dict[str, Any]:
    try:
        stats = await components.operation_store.get_stats()
    except RecoverableError as e:
        return _error("Failed to check operation queue", e)

    status, message = "ok", "Operation queue healthy"
    if stats["total"] > QUEUE_DEPTH_WARNING:
        status, message = "warning", "High operation queue depth"
    if stats["byStatus"].get("failed", 0) > FAILED_OPERATIONS_ERROR:
        status, message = "error", "High failure rate detected"
    return {"status": status, "message": message, "stats": stats}


async def _check_worker(components: RelayerComponents) -> Dict[str, Any]:
    try:
        heartbeat = await components.atomic_store.get(HEARTBEAT_KEY)
    except RecoverableError as e:
        return _error("Failed to check worker status", e)

    interval = f"Every {components.settings.worker_interval_seconds}s"
    if not heartbeat:
        return {"status": "warning", "message": "No worker heartbeat found", "nextRun": interval}

    last_run_ms = int(heartbeat)
    healthy = now_ms() - last_run_ms < HEARTBEAT_STALE_MS
    return {
        "status": "ok" if healthy else "warning",
        "message": "Worker active" if healthy else "Worker may be stalled",
        "lastRun": datetime.fromtimestamp(last_run_ms / 1000, tz=timezone.utc).isoformat(),
        "nextRun": interval,
    }


@router.get("/relayer")
async def relayer_health(components: RelayerComponents = Depends(get_relayer_components)):
    """Comprehensive health check for the relayer system."""
    checks = {
        "redis": await _check_store(components),
        "blockchain": await _check_blockchain(components),
        "nonce": await _check_nonce(components),
        "operations": await _check_operations(components),
        "worker": await _check_worker(components),
    }

    statuses = [check["status"] for check in checks.values()]
    has_error = "error" in statuses
    has_warning = "warning" in statuses

    body = {
        "status": "unhealthy" if has_error else "degraded" if has_warning else "healthy",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if has_error:
        logger.warning(f"Relayer health check failed: {[k for k, c in checks.items() if c['status'] == 'error']}")
    return JSONResponse(body, status_code=503 if has_error else 200)
