#!/usr/bin/env python3
"""Entry point for the Bridge Relayer.

Commands:
  run     relay transfers until interrupted (default)
  status  print checkpoints, per-state counts and failed transfers
  retry   move a failed or orphaned transfer back into the pipeline
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


logger = logging.getLogger(__name__)

from bridge_relayer.errors import LedgerError, MissingCheckpointError, RelayerHaltError
from bridge_relayer.ledger import TransferLedger
from bridge_relayer.relayer import BridgeRelayer

DEFAULT_LEDGER_PATH = "data/ledger.sqlite3"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bridge Relayer - relay lock/mint and burn/unlock transfers between two chains",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  CHAIN1_RPC, CHAIN2_RPC                       - RPC endpoints
  CHAIN1_BRIDGE_ADDRESS, CHAIN2_BRIDGE_ADDRESS - Bridge contracts
  CHAIN1_START_HEIGHT, CHAIN2_START_HEIGHT     - First block to scan (first run only)
  CHAIN1_CONFIRMATIONS, CHAIN2_CONFIRMATIONS   - Finality depth (default: 12)
  LEDGER_PATH                                  - SQLite ledger (default: data/ledger.sqlite3)
  RELAYER_PRIVATE_KEY                          - Relayer key (required with --local)
  LOG_LEVEL                                    - Logging level (overridden by --log-level)
        """
    )
    parser.add_argument(
        "--local",
        action="store_true",
        default=False,
        help="Sign with RELAYER_PRIVATE_KEY instead of the ROFL appd"
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    parser.add_argument(
        "--ledger",
        default=os.environ.get("LEDGER_PATH", DEFAULT_LEDGER_PATH),
        help="Ledger path for the status and retry commands"
    )

    commands = parser.add_subparsers(dest="command")
    commands.add_parser("run", help="Relay transfers until interrupted")
    commands.add_parser("status", help="Show ledger status as JSON")
    retry = commands.add_parser("retry", help="Retry a failed or orphaned transfer")
    retry.add_argument("transfer_id", help="0x-prefixed transfer id")
    return parser


async def run_relayer(local: bool) -> int:
    try:
        relayer = BridgeRelayer.from_env(local_mode=local)
    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - CHAIN1_RPC / CHAIN2_RPC: RPC endpoints of both chains")
        logger.error("  - CHAIN1_BRIDGE_ADDRESS / CHAIN2_BRIDGE_ADDRESS: Bridge contracts")
        logger.error("  - CHAIN1_START_HEIGHT / CHAIN2_START_HEIGHT: Required on first run")
        if local:
            logger.error("  - RELAYER_PRIVATE_KEY: Required for local mode")
        return 1

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, relayer.stop)

    try:
        await relayer.run()
    except RelayerHaltError as e:
        logger.critical(f"Relayer halted: {e}")
        return 2
    except (ValueError, MissingCheckpointError) as e:
        # Chain id mismatch or missing checkpoint detected at startup
        logger.error(f"Startup Error: {e}")
        return 1
    return 0


async def show_status(ledger_path: str) -> int:
    ledger = await TransferLedger.create(ledger_path)
    try:
        print(json.dumps(await ledger.status(), indent=2))
    except RelayerHaltError as e:
        logger.critical(f"Ledger audit failed: {e}")
        return 2
    finally:
        await ledger.close()
    return 0


async def retry_transfer(ledger_path: str, transfer_id: str) -> int:
    ledger = await TransferLedger.create(ledger_path)
    try:
        new_state = await ledger.retry(transfer_id)
    except LedgerError as e:
        logger.error(f"Retry failed: {e}")
        return 1
    finally:
        await ledger.close()
    logger.info(f"Transfer {transfer_id} moved to {new_state.value}")
    return 0


async def main() -> None:
    """Main entry point for the Bridge Relayer."""
    args = build_parser().parse_args()
    setup_logging(args.log_level)

    match args.command:
        case "status":
            code = await show_status(args.ledger)
        case "retry":
            code = await retry_transfer(args.ledger, args.transfer_id)
        case _:
            logger.info(f"=== Bridge Relayer Starting ({'LOCAL' if args.local else 'ROFL'} mode) ===")
            try:
                code = await run_relayer(args.local)
            except Exception as e:
                logger.error(f"Fatal Error: {e}", exc_info=True)
                code = 1

    sys.exit(code)


if __name__ == "__main__":
    asyncio.run(main())
