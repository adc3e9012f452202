"""Per-chain ERC20 transfer table: schema and batched writes."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from erc20_collector.chains import table_name_for
from erc20_collector.ingestor.models import TransferRecord
from erc20_collector.storage.clickhouse import JSON_EACH_ROW, BatchSink

logger = logging.getLogger(__name__)

DEFAULT_DATABASE = "token_intelligence"

CREATE_TRANSFERS_TABLE_TEMPLATE = """
    CREATE TABLE IF NOT EXISTS {qualified_name} (
        block_number UInt64,
        block_timestamp DateTime,
        log_index UInt32,
        transaction_hash String,
        contract_address LowCardinality(String),
        from_address String,
        to_address String,
        value UInt256,
        db_write_timestamp DateTime DEFAULT now(),
        INDEX idx_contract contract_address TYPE bloom_filter GRANULARITY 1
    ) ENGINE = MergeTree()
    ORDER BY (contract_address, block_number, log_index)
    PARTITION BY toDate(block_timestamp)
"""


class TransferTableWriter:
    """Creates the chain table and appends batches of transfers to it.

    Table creation is idempotent (drop and recreate, or create-if-missing when
    resuming). Row inserts are append-only and are not retried.
    """

    def __init__(
        self,
        sink: BatchSink,
        chain_id: int,
        *,
        database: str = DEFAULT_DATABASE,
    ) -> None:
        self._sink = sink
        self._chain_id = chain_id
        self._database = database

    @property
    def chain_id(self) -> int:
        return self._chain_id

    @property
    def table_name(self) -> str:
        return table_name_for(self._chain_id)

    @property
    def qualified_name(self) -> str:
        return f"{self._database}.{self.table_name}"

    def create_table_statement(self) -> str:
        return CREATE_TRANSFERS_TABLE_TEMPLATE.format(qualified_name=self.qualified_name)

    async def create_table(self, *, recreate: bool = True) -> None:
        """Create the database and the chain table.

        Args:
            recreate: Drop an existing table first. Pass False when resuming
                from a checkpoint so already written rows are kept.

        Raises:
            SinkFault: If any DDL statement fails.
        """
        logger.info("Setting up ClickHouse table %s...", self.qualified_name)
        await self._sink.command(f"CREATE DATABASE IF NOT EXISTS {self._database}")
        if recreate:
            await self._sink.command(f"DROP TABLE IF EXISTS {self.qualified_name}")
        await self._sink.command(self.create_table_statement())
        logger.info("Table ready: %s (recreated=%s)", self.qualified_name, recreate)

    async def insert_batch(self, records: Sequence[TransferRecord]) -> int:
        """Insert a batch in a single bulk request.

        Returns:
            Number of rows sent.

        Raises:
            SinkFault: If the insert fails. Part of the batch may have been
                committed by the engine even then.
        """
        if not records:
            return 0
        rows = [record.to_row() for record in records]
        await self._sink.insert(self.qualified_name, rows, JSON_EACH_ROW)
        return len(rows)
