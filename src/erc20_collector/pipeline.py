"""Ingestion loop for the ERC20 transfer collector.

This module provides the IngestionLoop class that pulls pages of raw logs from
an event source, decodes them into transfer records, and writes them to the
chain table in batches.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from erc20_collector.errors import SinkFault
from erc20_collector.ingestor.batch import DEFAULT_BATCH_SIZE, BatchAccumulator
from erc20_collector.ingestor.cursor import CursorTracker
from erc20_collector.ingestor.models import Page, RawLog, TransferRecord
from erc20_collector.ingestor.signatures import SignatureRegistry
from erc20_collector.progress import ProgressReporter

if TYPE_CHECKING:
    from erc20_collector.ingestor.source import EventSource
    from erc20_collector.storage.checkpoint import CursorCheckpoint
    from erc20_collector.storage.transfers import TransferTableWriter

logger = logging.getLogger(__name__)


class LoopState(str, Enum):
    """Ingestion loop lifecycle states."""

    IDLE = "idle"
    INITIALIZING = "initializing"
    STREAMING = "streaming"
    DRAINING = "draining"
    TERMINATED = "terminated"
    FAULTED = "faulted"


@dataclass
class IngestionStats:
    """Counters for one run of the ingestion loop."""

    started_at: datetime | None = None
    finished_at: datetime | None = None
    pages: int = 0
    events_seen: int = 0
    records_decoded: int = 0
    skipped: int = 0
    rows_written: int = 0
    batches_written: int = 0
    batches_dropped: int = 0
    rows_dropped: int = 0
    total_value: int = 0
    mints: int = 0
    burns: int = 0
    exhausted: bool = False
    stopped: bool = False
    last_error: str | None = None


class IngestionLoop:
    """Sequential page -> decode -> batch -> flush loop.

    Pages are pulled one at a time; a full batch is flushed before the next
    page is requested, so the loop never holds more than one page beyond the
    batch capacity.

    Flow:
        EventSource page → SignatureRegistry.decode → BatchAccumulator → TransferTableWriter

    Failure policy:
        - A log that does not decode is skipped and counted.
        - A failed flush is logged and the batch is dropped (at-most-once).
        - Source errors, cursor regressions and table-setup errors are fatal:
          the loop moves to FAULTED and re-raises.

    Example:
        ```python
        loop = IngestionLoop(source, writer, batch_size=1000)
        stats = await loop.run()
        ```
    """

    def __init__(
        self,
        source: EventSource,
        writer: TransferTableWriter,
        *,
        registry: SignatureRegistry | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        start_position: int = 0,
        recreate_table: bool = True,
        checkpoint: CursorCheckpoint | None = None,
        progress: ProgressReporter | None = None,
    ) -> None:
        """Initialize the loop.

        Args:
            source: Paged event source.
            writer: Destination table writer.
            registry: Signature registry; defaults to the ERC20 Transfer event.
            batch_size: Records per flush.
            start_position: First block to request.
            recreate_table: Drop and recreate the table before streaming.
            checkpoint: Optional cursor checkpoint, saved after successful flushes.
            progress: Progress reporter for per-page throughput lines.
        """
        self._source = source
        self._writer = writer
        self._registry = registry or SignatureRegistry()
        self._batch = BatchAccumulator(batch_size)
        self._cursor = CursorTracker(start_position)
        self._recreate_table = recreate_table
        self._checkpoint = checkpoint
        self._progress = progress or ProgressReporter()

        self._state = LoopState.IDLE
        self._stats = IngestionStats()
        self._stop_event = asyncio.Event()
        # Page-start position of the oldest record still buffered.
        self._buffer_origin: int | None = None
        # Page-start position of the oldest dropped batch; the checkpoint never passes it.
        self._resume_floor: int | None = None

    @property
    def state(self) -> LoopState:
        """Current loop state."""
        return self._state

    @property
    def stats(self) -> IngestionStats:
        """Current run statistics."""
        return self._stats

    @property
    def cursor(self) -> int:
        """Next block the loop will request."""
        return self._cursor.current()

    @property
    def pending(self) -> int:
        """Records buffered but not yet flushed."""
        return len(self._batch)

    def request_stop(self) -> None:
        """Ask the loop to stop after the current page.

        Safe to call from a signal handler. An in-flight flush completes and
        buffered records are drained before the loop returns.
        """
        if not self._stop_event.is_set():
            logger.info("Stop requested")
        self._stop_event.set()

    def resume_position(self) -> int:
        """Earliest block whose transfers are not known to be written.

        Blocks of a dropped batch count as not written, so a restart from the
        saved checkpoint replays them.
        """
        if self._batch and self._buffer_origin is not None:
            position = self._buffer_origin
        else:
            position = self._cursor.current()
        if self._resume_floor is not None:
            position = min(position, self._resume_floor)
        return position

    async def run(self) -> IngestionStats:
        """Run the loop until the stream is exhausted or a stop is requested.

        Returns:
            The run statistics.

        Raises:
            RuntimeError: If the loop has already been run.
            SinkFault: If the table cannot be set up.
            SourceFault: If the event source fails.
            CursorRegressionError: If the source reports a position behind the cursor.
        """
        if self._state != LoopState.IDLE:
            raise RuntimeError(f"Cannot run ingestion loop in state {self._state}")

        self._stats.started_at = datetime.now(UTC)
        self._progress.start()

        self._state = LoopState.INITIALIZING
        try:
            await self._writer.create_table(recreate=self._recreate_table)
        except Exception as e:
            self._fault(e)
            raise

        self._state = LoopState.STREAMING
        logger.info("Starting ERC20 transfer scan at block %d", self._cursor.current())
        await self._stream()

        self._state = LoopState.DRAINING
        if self._batch:
            if await self._flush():
                await self._save_checkpoint()

        self._stats.finished_at = datetime.now(UTC)
        self._state = LoopState.TERMINATED
        self._log_summary()
        return self._stats

    async def _stream(self) -> None:
        stream = self._source.stream(self._registry.log_filter(), self._cursor.current())
        try:
            async for page in stream:
                if page is None:
                    break
                await self._consume_page(page)
                if self._stop_event.is_set():
                    self._stats.stopped = True
                    logger.info("Stopping at block %d", self._cursor.current())
                    return
        except Exception as e:
            self._fault(e)
            raise
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        self._stats.exhausted = True
        logger.info("Reached the tip of the blockchain")

    async def _consume_page(self, page: Page) -> None:
        page_start = self._cursor.current()
        self._cursor.check(page.next_position)

        flushed = False
        sample: TransferRecord | None = None
        for raw in page.logs:
            self._stats.events_seen += 1
            record = self._build_record(raw, page)
            if record is None:
                self._stats.skipped += 1
                continue

            if not self._batch:
                self._buffer_origin = page_start
            self._batch.append(record)
            self._stats.records_decoded += 1
            self._stats.total_value += record.value
            if record.is_mint:
                self._stats.mints += 1
            if record.is_burn:
                self._stats.burns += 1
            if sample is None:
                sample = record

            if self._batch.is_full():
                flushed = await self._flush() or flushed

        self._cursor.advance(page.next_position)
        self._stats.pages += 1

        if sample is not None:
            logger.debug(
                "Sample transfer from block %d (%s): log_index=%d tx=%s contract=%s from=%s to=%s value=%d",
                sample.block_number,
                sample.block_timestamp.isoformat(),
                sample.log_index,
                sample.transaction_hash,
                sample.contract_address,
                sample.from_address,
                sample.to_address,
                sample.value,
            )
        self._progress.report(
            next_block=self._cursor.current(),
            events=self._stats.events_seen,
            pending=len(self._batch),
        )
        if flushed:
            await self._save_checkpoint()

    def _build_record(self, raw: RawLog, page: Page) -> TransferRecord | None:
        fields = self._registry.decode(raw)
        if fields is None:
            return None
        block = page.block_context_for(raw)
        if block is None:
            logger.debug("Skipping log without block context: %s", raw)
            return None
        try:
            return TransferRecord.from_decoded(raw, fields, block)
        except ValueError as e:
            logger.debug("Skipping malformed transfer log: %s", e)
            return None

    async def _flush(self) -> bool:
        """Write the buffered batch. Returns False if the batch was dropped."""
        records = self._batch.drain()
        origin, self._buffer_origin = self._buffer_origin, None
        try:
            written = await self._writer.insert_batch(records)
        except SinkFault as e:
            self._stats.batches_dropped += 1
            self._stats.rows_dropped += len(records)
            if self._resume_floor is None:
                # Buffer origins only grow, so the first drop is the lowest.
                self._resume_floor = origin
            logger.error(
                "Dropping batch of %d transfers (cursor=%d): %s",
                len(records),
                self._cursor.current(),
                e,
            )
            return False

        self._stats.batches_written += 1
        self._stats.rows_written += written
        logger.info("Inserted %d transfers into %s", written, self._writer.qualified_name)
        return True

    async def _save_checkpoint(self) -> None:
        if self._checkpoint is None:
            return
        await self._checkpoint.save(self._writer.chain_id, self.resume_position())

    def _fault(self, error: Exception) -> None:
        self._state = LoopState.FAULTED
        self._stats.last_error = str(error)
        self._stats.finished_at = datetime.now(UTC)
        logger.error("Ingestion loop faulted at block %d: %s", self._cursor.current(), error)

    def _log_summary(self) -> None:
        logger.info(
            "Scan complete: %d transfer events in %.1f seconds (%d written, %d skipped, %d dropped)",
            self._stats.events_seen,
            self._progress.elapsed(),
            self._stats.rows_written,
            self._stats.skipped,
            self._stats.rows_dropped,
        )
        logger.info("Total transfer value: %d", self._stats.total_value)
        logger.info("Mints: %d, burns: %d", self._stats.mints, self._stats.burns)
        logger.info("All data saved to ClickHouse table: %s", self._writer.qualified_name)
