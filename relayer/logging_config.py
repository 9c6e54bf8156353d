"""
Logging setup for the relayer.

structlog renders both structlog and stdlib (``logging.getLogger``) records.
Every line carries the chain the process relays for; worker runs add
``worker_run_id``, ``signer`` and ``operation_id`` through contextvars.
Relayer credentials are masked before anything is rendered.
"""

import logging
import sys
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog

from .config import Settings, settings as default_settings

REDACTED = "[redacted]"
QUIET_LOGGERS = ("uvicorn.access", "httpcore", "httpx")

EventDict = Dict[str, Any]


def add_chain_context(chain_id: int) -> Callable[[Any, str, EventDict], EventDict]:
    """Stamp every event with the relay chain unless the caller set one."""

    def processor(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("chain_id", chain_id)
        return event_dict

    return processor


def redact_secrets(secrets: Iterable[str]) -> Callable[[Any, str, EventDict], EventDict]:
    """Mask secret values wherever they appear in string fields."""
    values: List[str] = []
    for secret in secrets:
        if not secret:
            continue
        values.append(secret)
        # Keys show up both with and without the 0x prefix
        if secret.startswith("0x"):
            values.append(secret[2:])
    values.sort(key=len, reverse=True)

    def processor(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        if not values:
            return event_dict
        for key, value in event_dict.items():
            if isinstance(value, str):
                for secret in values:
                    value = value.replace(secret, REDACTED)
                event_dict[key] = value
        return event_dict

    return processor


def setup_logging(log_level: Optional[str] = None, config: Optional[Settings] = None) -> None:
    """Configure structlog for the API process, the CLI and the worker loop.

    Args:
        log_level: Override log level (default: from settings.log_level)
        config: Settings providing the chain id and the secrets to mask
    """
    config = config or default_settings
    level = getattr(logging, (log_level or config.log_level).upper(), logging.INFO)
    is_dev = level == logging.DEBUG

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        add_chain_context(config.chain_id),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if not is_dev:
        shared_processors.append(structlog.processors.format_exc_info)
    # Last, so rendered tracebacks are masked too
    shared_processors.append(redact_secrets([config.relayer_private_key, config.worker_auth_token]))

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = structlog.dev.ConsoleRenderer() if is_dev else structlog.processors.JSONRenderer()
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
