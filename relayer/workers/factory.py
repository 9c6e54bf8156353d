"""
Builds the relayer runtime (stores, chain client, nonce manager, worker)
from settings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from eth_account import Account

from ..config import Settings, settings as default_settings
from ..core.execution.chain_client import ChainClient
from ..core.execution.gas_policy import GasEscalationPolicy
from ..core.execution.nonce_manager import DistributedNonceManager
from ..core.execution.submission import HttpSubmissionPort, SubmissionPort
from ..core.recovery import ConfigurationError
from ..db.atomic_store import AtomicStore, InMemoryAtomicStore, RedisAtomicStore
from ..db.operation_store import InMemoryOperationStore, OperationStore, RedisOperationStore
from .relay_retry_worker import RelayRetryWorker, WorkerConfig

logger = logging.getLogger(__name__)


@dataclass
class RelayerComponents:
    """Shared collaborators; the worker is built on top when credentials exist."""
    settings: Settings
    atomic_store: AtomicStore
    operation_store: OperationStore
    chain_client: ChainClient
    nonce_manager: DistributedNonceManager
    gas_policy: GasEscalationPolicy

    async def close(self) -> None:
        await self.chain_client.close()
        for store in (self.atomic_store, self.operation_store):
            close = getattr(store, "close", None)
            if close is not None:
                await close()


def build_components(settings: Optional[Settings] = None) -> RelayerComponents:
    settings = settings or default_settings

    if settings.has_redis:
        atomic_store: AtomicStore = RedisAtomicStore(
            redis_url=settings.redis_url,
            key_prefix=settings.atomic_key_prefix,
        )
        operation_store: OperationStore = RedisOperationStore(
            redis_url=settings.redis_url,
            key_prefix=settings.operation_key_prefix,
            operation_ttl_seconds=settings.operation_ttl_seconds,
        )
    else:
        logger.warning(
            "REDIS_URL not set; using in-memory stores. "
            "Nonces are NOT safe across multiple worker instances."
        )
        atomic_store = InMemoryAtomicStore()
        operation_store = InMemoryOperationStore(retention_seconds=settings.operation_ttl_seconds)

    chain_client = ChainClient(
        settings.rpc_url,
        settings.chain_id,
        timeout_seconds=settings.rpc_timeout_seconds,
    )

    return RelayerComponents(
        settings=settings,
        atomic_store=atomic_store,
        operation_store=operation_store,
        chain_client=chain_client,
        nonce_manager=DistributedNonceManager.from_settings(atomic_store, chain_client, settings),
        gas_policy=GasEscalationPolicy.from_settings(settings),
    )


def build_worker(
    components: RelayerComponents,
    submission_port: Optional[SubmissionPort] = None,
) -> RelayRetryWorker:
    """
    Assemble the retry worker.

    Raises:
        ConfigurationError: signing key or relay endpoint missing or invalid
    """
    settings = components.settings

    if not settings.has_relayer_key:
        raise ConfigurationError("RELAYER_PRIVATE_KEY not configured", setting="RELAYER_PRIVATE_KEY")
    try:
        account = Account.from_key(settings.relayer_private_key)
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"Invalid RELAYER_PRIVATE_KEY: {e}", setting="RELAYER_PRIVATE_KEY") from e

    if submission_port is None:
        if not settings.relay_submit_url:
            raise ConfigurationError("RELAY_SUBMIT_URL not configured", setting="RELAY_SUBMIT_URL")
        submission_port = HttpSubmissionPort(
            settings.relay_submit_url,
            timeout_seconds=settings.rpc_timeout_seconds,
        )

    return RelayRetryWorker(
        operation_store=components.operation_store,
        atomic_store=components.atomic_store,
        chain_client=components.chain_client,
        nonce_manager=components.nonce_manager,
        submission_port=submission_port,
        account=account,
        gas_policy=components.gas_policy,
        config=WorkerConfig.from_settings(settings),
    )


# Singleton instance
_components: Optional[RelayerComponents] = None


def get_relayer_components() -> RelayerComponents:
    """Get the process-wide relayer components."""
    global _components
    if _components is None:
        _components = build_components()
    return _components


async def close_relayer_components() -> None:
    global _components
    if _components is not None:
        await _components.close()
        _components = None
