"""Storage layer - ClickHouse sink, transfer tables and cursor checkpoints."""

from erc20_collector.storage.checkpoint import CursorCheckpoint
from erc20_collector.storage.clickhouse import BatchSink, ClickHouseSink
from erc20_collector.storage.transfers import TransferTableWriter

__all__ = [
    "BatchSink",
    "ClickHouseSink",
    "CursorCheckpoint",
    "TransferTableWriter",
]
