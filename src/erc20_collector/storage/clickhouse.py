"""ClickHouse connection and the batch sink contract.

The sink contract covers DDL commands and bulk inserts of
self-describing rows. ``ClickHouseSink`` implements it on top of the
``clickhouse-connect`` async client, sending rows as ``JSONEachRow``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any, Protocol

import clickhouse_connect
from clickhouse_connect.driver.exceptions import ClickHouseError

from erc20_collector.errors import SinkFault

if TYPE_CHECKING:
    from clickhouse_connect.driver.asyncclient import AsyncClient

    from erc20_collector.config import ClickHouseSettings

logger = logging.getLogger(__name__)

JSON_EACH_ROW = "JSONEachRow"


class BatchSink(Protocol):
    """Storage engine capability used by the table writer."""

    async def command(self, statement: str) -> None: ...

    async def insert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        fmt: str = JSON_EACH_ROW,
    ) -> None: ...


def encode_json_each_row(rows: Sequence[Mapping[str, Any]]) -> bytes:
    """Encode rows as newline-delimited JSON objects."""
    return "".join(json.dumps(row, separators=(",", ":")) + "\n" for row in rows).encode()


class ClickHouseSink:
    """BatchSink backed by a clickhouse-connect async client.

    Example:
        ```python
        sink = await ClickHouseSink.connect(settings.clickhouse)
        try:
            await sink.command("SELECT 1")
        finally:
            await sink.aclose()
        ```
    """

    def __init__(self, client: AsyncClient) -> None:
        self._client = client

    @classmethod
    async def connect(cls, settings: ClickHouseSettings) -> ClickHouseSink:
        """Open a client from settings.

        Raises:
            SinkFault: If the server cannot be reached.
        """
        try:
            client = await clickhouse_connect.get_async_client(
                host=settings.host,
                port=settings.port,
                username=settings.username,
                password=settings.password.get_secret_value() if settings.password else "",
                secure=settings.secure,
            )
        except (ClickHouseError, OSError) as e:
            raise SinkFault(f"Cannot connect to ClickHouse at {settings.host}:{settings.port}: {e}") from e
        logger.debug("Connected to ClickHouse at %s:%d", settings.host, settings.port)
        return cls(client)

    async def command(self, statement: str) -> None:
        try:
            await self._client.command(statement)
        except (ClickHouseError, OSError) as e:
            raise SinkFault(f"ClickHouse command failed: {e}") from e

    async def insert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        fmt: str = JSON_EACH_ROW,
    ) -> None:
        """Bulk insert rows in one request.

        A failed request may still have committed part of the rows; ClickHouse
        only guarantees atomicity per inserted block.
        """
        if not rows:
            return
        if fmt != JSON_EACH_ROW:
            raise ValueError(f"Unsupported insert format: {fmt}")
        try:
            await self._client.raw_insert(
                table,
                column_names=list(rows[0].keys()),
                insert_block=encode_json_each_row(rows),
                fmt=fmt,
            )
        except (ClickHouseError, OSError) as e:
            raise SinkFault(f"Insert of {len(rows)} rows into {table} failed: {e}") from e

    async def aclose(self) -> None:
        try:
            result = self._client.close()
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.warning("Failed to close ClickHouse client: %s", e)
