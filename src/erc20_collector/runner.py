"""Wiring for one collector run.

Builds the event source, ClickHouse sink and optional checkpoint store from
settings, runs the ingestion loop, and releases every client on the way out.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import TYPE_CHECKING

from redis.asyncio import Redis

from erc20_collector.ingestor.signatures import SignatureRegistry
from erc20_collector.ingestor.source import Web3LogSource
from erc20_collector.pipeline import IngestionLoop, IngestionStats
from erc20_collector.storage.checkpoint import CursorCheckpoint
from erc20_collector.storage.clickhouse import ClickHouseSink
from erc20_collector.storage.transfers import TransferTableWriter

if TYPE_CHECKING:
    from erc20_collector.chains import ChainInfo
    from erc20_collector.config import Settings

logger = logging.getLogger(__name__)

STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def install_stop_handlers(stack: contextlib.ExitStack, ingestion: IngestionLoop) -> None:
    """Route SIGINT/SIGTERM to ``ingestion.request_stop`` for the lifetime of ``stack``."""
    loop = asyncio.get_running_loop()
    for sig in STOP_SIGNALS:
        try:
            loop.add_signal_handler(sig, ingestion.request_stop)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform / not the main thread.
            logger.debug("Cannot install handler for %s", sig.name)
            continue
        stack.callback(loop.remove_signal_handler, sig)


async def run_collector(chain: ChainInfo, settings: Settings) -> IngestionStats:
    """Collect transfers of ``chain`` until the tip is reached or a stop signal arrives.

    Raises:
        CollectorError: On any fatal setup, source, sink or checkpoint error.
    """
    registry = SignatureRegistry()
    start_position = settings.ingest.start_block
    recreate_table = True

    async with contextlib.AsyncExitStack() as stack:
        source = Web3LogSource(
            settings.source.url or chain.rpc_url,
            page_size_blocks=settings.source.page_size_blocks,
            stop_block=settings.ingest.stop_block,
            max_requests_per_second=settings.source.max_requests_per_second,
            request_timeout_seconds=settings.source.request_timeout_seconds,
            max_concurrent_block_requests=settings.source.max_concurrent_block_requests,
            poa=chain.poa,
        )
        stack.push_async_callback(source.aclose)

        checkpoint: CursorCheckpoint | None = None
        if settings.checkpoint.enabled:
            redis = Redis.from_url(settings.checkpoint.redis_url)
            stack.push_async_callback(redis.aclose)
            checkpoint = CursorCheckpoint(redis, key_prefix=settings.checkpoint.key_prefix)
            stored = await checkpoint.load(chain.chain_id)
            if stored is not None:
                start_position = stored
                recreate_table = False
                logger.info("Resuming %s from checkpoint at block %d", chain.label(), stored)

        sink = await ClickHouseSink.connect(settings.clickhouse)
        stack.push_async_callback(sink.aclose)

        writer = TransferTableWriter(sink, chain.chain_id, database=settings.clickhouse.database)
        ingestion = IngestionLoop(
            source,
            writer,
            registry=registry,
            batch_size=settings.ingest.batch_size,
            start_position=start_position,
            recreate_table=recreate_table,
            checkpoint=checkpoint,
        )
        with contextlib.ExitStack() as signals:
            install_stop_handlers(signals, ingestion)
            return await ingestion.run()
