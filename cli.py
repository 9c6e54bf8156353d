#!/usr/bin/env python3
"""Operator CLI for the relayer transaction engine"""

import argparse
import asyncio
import json
import sys
from typing import Optional

from eth_account import Account

from relayer.config import settings
from relayer.core.recovery import ConfigurationError, RecoverableError
from relayer.logging_config import setup_logging
from relayer.workers import run_relay_retry_loop, run_relay_retry_worker
from relayer.workers.factory import RelayerComponents, build_components, build_worker


def _relayer_address(address: Optional[str]) -> str:
    if address:
        return address
    if not settings.has_relayer_key:
        raise ConfigurationError("Pass --address or set RELAYER_PRIVATE_KEY", setting="RELAYER_PRIVATE_KEY")
    return Account.from_key(settings.relayer_private_key).address


def print_worker_result(result) -> None:
    """Pretty print a worker summary"""
    if not result.success:
        print(f"❌ Worker process failed: {result.fatal_error}")
        return

    print(f"\n🔁 Worker run ({result.duration_seconds:.1f}s)")
    print("=" * 50)
    print(f"Processed:    {result.processed}")
    print(f"Confirmed:    {result.confirmed}")
    print(f"Failed:       {result.failed}")
    print(f"Retried:      {result.retried}")
    print(f"Nonce burned: {result.nonce_burned}")
    print(f"Skipped:      {result.skipped}")
    print(f"Cleaned:      {result.cleaned}")

    if result.errors:
        print("\n⚠️  Errors:")
        for error in result.errors:
            print(f" - {error}")

    if result.unused_nonces:
        print(f"\n⚠️  Nonces allocated but not broadcast: {', '.join(map(str, result.unused_nonces))}")
        print("   Later relayer transactions wait behind these until they are burned")


async def cli_worker_run(components: RelayerComponents) -> int:
    worker = build_worker(components)
    try:
        result = await run_relay_retry_worker(worker)
    finally:
        await worker.close()
    print_worker_result(result)
    return 0 if result.success else 1


async def cli_worker_loop(components: RelayerComponents, interval: int, iterations: Optional[int]) -> int:
    worker = build_worker(components)
    print(f"🔁 Running worker every {interval}s (Ctrl+C to stop)")
    try:
        await run_relay_retry_loop(worker, interval_seconds=interval, max_iterations=iterations)
    finally:
        await worker.close()
    return 0


async def cli_nonce_state(components: RelayerComponents, address: Optional[str]) -> int:
    address = _relayer_address(address)
    state = await components.nonce_manager.get_nonce_state(address, settings.chain_id)

    print(f"\n🔢 Nonce state for {state.address} on chain {state.chain_id}")
    print("=" * 50)
    print(f"Allocator last used:  {state.last_used}")
    print(f"Chain pending:        {state.blockchain_pending}")
    print(f"Chain confirmed:      {state.blockchain_confirmed}")
    print(f"In flight:            {state.in_flight}")
    if abs(state.last_used - state.blockchain_pending) > 1:
        print("\n⚠️  Allocator and chain are out of sync")
    return 0


async def cli_nonce_reset(components: RelayerComponents, address: Optional[str], assume_yes: bool) -> int:
    address = _relayer_address(address)
    if not assume_yes:
        answer = input(f"Reset nonce counter for {address} on chain {settings.chain_id}? [y/N] ").strip()
        if answer.lower() not in ("y", "yes"):
            print("Aborted.")
            return 1

    last_used = await components.nonce_manager.reset_nonce(address, settings.chain_id)
    print(f"✅ Nonce counter reset; next assignment will be {last_used + 1} or the chain's pending count")
    return 0


async def cli_operations_stats(components: RelayerComponents) -> int:
    stats = await components.operation_store.get_stats()
    print(json.dumps(stats, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Relayer transaction engine CLI")
    subparsers = parser.add_subparsers(dest="command")

    worker_parser = subparsers.add_parser("worker", help="Run the retry worker")
    worker_sub = worker_parser.add_subparsers(dest="action")
    worker_sub.add_parser("run", help="Run one reconciliation cycle")
    loop_parser = worker_sub.add_parser("loop", help="Run the worker continuously")
    loop_parser.add_argument("--interval", type=int, default=settings.worker_interval_seconds, help="Seconds between runs")
    loop_parser.add_argument("--iterations", type=int, help="Stop after N runs")

    nonce_parser = subparsers.add_parser("nonce", help="Inspect or reset the nonce counter")
    nonce_sub = nonce_parser.add_subparsers(dest="action")
    state_parser = nonce_sub.add_parser("state", help="Compare allocator and chain nonces")
    state_parser.add_argument("--address", help="Signer address (default: relayer account)")
    reset_parser = nonce_sub.add_parser("reset", help="Reset the counter to the confirmed nonce")
    reset_parser.add_argument("--address", help="Signer address (default: relayer account)")
    reset_parser.add_argument("--yes", action="store_true", help="Skip confirmation prompt")

    operations_parser = subparsers.add_parser("operations", help="Operation store tools")
    operations_sub = operations_parser.add_subparsers(dest="action")
    operations_sub.add_parser("stats", help="Show operation counts by status")

    return parser


async def main() -> int:
    parser = build_parser()
    args = parser.parse_args()

    if not args.command or not getattr(args, "action", None):
        parser.print_help()
        return 1

    setup_logging()
    components = build_components()
    try:
        if args.command == "worker" and args.action == "run":
            return await cli_worker_run(components)
        elif args.command == "worker" and args.action == "loop":
            return await cli_worker_loop(components, args.interval, args.iterations)
        elif args.command == "nonce" and args.action == "state":
            return await cli_nonce_state(components, args.address)
        elif args.command == "nonce" and args.action == "reset":
            return await cli_nonce_reset(components, args.address, args.yes)
        elif args.command == "operations" and args.action == "stats":
            return await cli_operations_stats(components)

        print(f"❌ Unknown command: {args.command} {args.action}")
        parser.print_help()
        return 1
    except ConfigurationError as e:
        print(f"❌ Configuration error: {e.message}")
        return 2
    except RecoverableError as e:
        print(f"❌ Error: {e.message}")
        return 1
    finally:
        await components.close()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
