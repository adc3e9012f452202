"""Command-line entry point: ``python -m erc20_collector [CHAIN_ID]``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence

from pydantic import ValidationError

from erc20_collector.chains import DEFAULT_CHAIN_ID, describe_supported_chains, resolve_chain
from erc20_collector.config import get_settings
from erc20_collector.errors import CollectorError, UnsupportedChainError
from erc20_collector.runner import run_collector

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_STOPPED = 130

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="erc20-collect",
        description="Stream ERC20 Transfer events of one chain into ClickHouse.",
        epilog=f"Supported chains: {describe_supported_chains()}",
    )
    parser.add_argument(
        "chain_id",
        nargs="?",
        default=str(DEFAULT_CHAIN_ID),
        help=f"Source chain id (default: {DEFAULT_CHAIN_ID})",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run the collector and return the process exit code.

    Exit codes:
        0: the stream was exhausted (caught up to the chain tip).
        1: a fatal error (unsupported chain, bad settings, source/sink/checkpoint fault).
        130: stopped by SIGINT/SIGTERM after draining buffered transfers.
    """
    args = build_parser().parse_args(argv)

    try:
        chain = resolve_chain(args.chain_id)
    except UnsupportedChainError as e:
        print(f"{e}", file=sys.stderr)
        print(f"Available chains: {describe_supported_chains()}", file=sys.stderr)
        return EXIT_FAILURE

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_FAILURE

    logging.basicConfig(level=settings.get_logging_level(), format=LOG_FORMAT)
    logger.info("Collecting ERC20 transfers for %s (Chain ID: %d)", chain.name, chain.chain_id)
    logger.debug("Settings: %s", settings.redacted_summary())

    try:
        stats = asyncio.run(run_collector(chain, settings))
    except CollectorError as e:
        logger.error("Error: %s", e)
        return EXIT_FAILURE
    except Exception:
        logger.exception("Unexpected error")
        return EXIT_FAILURE

    if stats.stopped:
        return EXIT_STOPPED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
