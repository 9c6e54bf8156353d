from pathlib import Path
from typing import Any

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Server Settings
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8000, description="Server port")
    log_level: str = Field(default="INFO", description="Logging level")

    # Shared stores
    redis_url: str = Field(
        default="",
        description="Redis connection string for the atomic and operation stores (empty = in-memory, single instance only)",
    )
    atomic_key_prefix: str = Field(default="atomic", description="Key prefix for the atomic store")
    operation_key_prefix: str = Field(
        default="relay:ops",
        description="Key prefix for operation records",
        validation_alias=AliasChoices("operation_key_prefix", "RELAY_OPERATION_KEY_PREFIX"),
    )
    operation_ttl_seconds: int = Field(
        default=86400,
        ge=60,
        description="TTL applied to stored operation records",
        validation_alias=AliasChoices("operation_ttl_seconds", "RELAY_OPERATION_TTL"),
    )

    # Chain
    rpc_url: str = Field(default="https://rpc.vana.org", description="JSON-RPC endpoint of the relay chain")
    chain_id: int = Field(default=1480, description="Chain ID the relayer broadcasts to")
    rpc_timeout_seconds: float = Field(default=15.0, gt=0, description="Timeout for a single RPC call")

    # Relayer credentials
    relayer_private_key: str = Field(default="", description="Private key of the gas-paying relayer account")
    relay_submit_url: str = Field(default="", description="Endpoint that signs and broadcasts relayed requests")
    worker_auth_token: str = Field(default="", description="Bearer token required to trigger the worker over HTTP")

    # Nonce allocator
    nonce_lock_ttl_seconds: int = Field(default=5, ge=1, description="TTL for the nonce allocation lock")
    nonce_max_lock_retries: int = Field(default=50, ge=1, description="Attempts to acquire the nonce lock")
    nonce_lock_retry_delay_seconds: float = Field(default=0.1, gt=0, description="Initial lock retry delay")

    # Retry worker
    worker_max_retries: int = Field(default=3, ge=0, description="Rebroadcasts allowed before an operation fails")
    worker_gas_escalation: float = Field(default=1.2, ge=1.0, description="Per-attempt gas escalation factor")
    worker_max_gas_multiplier: float = Field(default=3.0, ge=1.0, description="Cap on the gas escalation multiplier")
    worker_priority_fee_wei: int = Field(default=2_000_000_000, ge=0, description="Fixed priority fee bid")
    worker_stuck_timeout_seconds: int = Field(default=300, ge=1, description="Age after which a pending tx is stuck")
    worker_max_operations: int = Field(default=10, ge=1, description="Max operations handled per invocation")
    worker_nonce_burn_enabled: bool = Field(default=False, description="Burn the stuck nonce before retrying")
    worker_nonce_burn_margin: float = Field(default=1.5, gt=1.0, description="Fee margin for nonce-burning transactions")
    worker_burn_timeout_seconds: float = Field(default=60.0, gt=0, description="Max wait for a burn to confirm")
    worker_burn_poll_interval_seconds: float = Field(default=2.0, gt=0, description="Receipt poll interval while burning")
    worker_interval_seconds: int = Field(default=60, ge=1, description="Interval of the built-in worker loop")
    worker_cleanup_enabled: bool = Field(default=True, description="Run store cleanup after each invocation")

    def model_post_init(self, __context: Any) -> None:
        super().model_post_init(__context)
        if self.relayer_private_key and not self.relayer_private_key.startswith("0x"):
            object.__setattr__(self, "relayer_private_key", f"0x{self.relayer_private_key}")

    @property
    def has_redis(self) -> bool:
        return bool(self.redis_url)

    @property
    def has_relayer_key(self) -> bool:
        return bool(self.relayer_private_key)


# Global settings instance
settings = Settings()
