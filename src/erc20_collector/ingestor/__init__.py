"""Ingestion layer - log paging, decoding, cursor and batching."""

from erc20_collector.ingestor.batch import BatchAccumulator
from erc20_collector.ingestor.cursor import CursorTracker
from erc20_collector.ingestor.models import (
    BlockContext,
    Page,
    RawLog,
    TransferFields,
    TransferRecord,
)
from erc20_collector.ingestor.signatures import (
    LogFilter,
    SignatureRegistry,
    compute_topic,
)
from erc20_collector.ingestor.source import EventSource, Web3LogSource

__all__ = [
    "BatchAccumulator",
    "BlockContext",
    "CursorTracker",
    "EventSource",
    "LogFilter",
    "Page",
    "RawLog",
    "SignatureRegistry",
    "TransferFields",
    "TransferRecord",
    "Web3LogSource",
    "compute_topic",
]
