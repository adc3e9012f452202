"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from typing import Any

import pytest

from erc20_collector.errors import SinkFault
from erc20_collector.ingestor.models import BlockContext, Page, RawLog
from erc20_collector.ingestor.signatures import TRANSFER_SIGNATURE, LogFilter, compute_topic

TRANSFER_TOPIC = compute_topic(TRANSFER_SIGNATURE)
BASE_TIMESTAMP = 1_700_000_000

TOKEN = "0x" + "a" * 40
ALICE = "0x" + "1" * 40
BOB = "0x" + "2" * 40


def address_topic(address: str) -> str:
    return "0x" + address.lower().replace("0x", "").zfill(64)


def value_data(value: int) -> str:
    return "0x" + format(value, "064x")


class FakeSource:
    """Event source replaying a fixed list of pages.

    Items may be a Page, None (exhaustion sentinel) or an exception to raise.
    ``before_page`` is called with the item index before each item is yielded.
    """

    def __init__(
        self,
        items: Sequence[Page | None | Exception],
        *,
        before_page: Callable[[int], None] | None = None,
    ) -> None:
        self.items = list(items)
        self.before_page = before_page
        self.calls: list[tuple[LogFilter, int]] = []
        self.yielded = 0

    async def stream(self, log_filter: LogFilter, start_position: int) -> AsyncIterator[Page | None]:
        self.calls.append((log_filter, start_position))
        for index, item in enumerate(self.items):
            if self.before_page is not None:
                self.before_page(index)
            if isinstance(item, Exception):
                raise item
            self.yielded += 1
            yield item


class RecordingSink:
    """BatchSink that records DDL and inserts; selected inserts can fail."""

    def __init__(self, *, fail_inserts: Sequence[int] = (), fail_commands: bool = False) -> None:
        self.commands: list[str] = []
        self.inserts: list[tuple[str, list[dict[str, Any]], str]] = []
        self.insert_attempts = 0
        self._fail_inserts = set(fail_inserts)
        self._fail_commands = fail_commands

    async def command(self, statement: str) -> None:
        if self._fail_commands:
            raise SinkFault("DDL rejected")
        self.commands.append(statement)

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]], fmt: str = "JSONEachRow") -> None:
        attempt = self.insert_attempts
        self.insert_attempts += 1
        if attempt in self._fail_inserts:
            raise SinkFault("connection reset")
        self.inserts.append((table, [dict(r) for r in rows], fmt))

    @property
    def rows(self) -> list[dict[str, Any]]:
        return [row for _, rows, _ in self.inserts for row in rows]

    @property
    def batch_sizes(self) -> list[int]:
        return [len(rows) for _, rows, _ in self.inserts]


@pytest.fixture
def make_transfer_log() -> Callable[..., RawLog]:
    """Factory for well-formed Transfer logs."""

    def _make(
        block_number: int,
        log_index: int,
        *,
        value: int = 1000,
        contract: str = TOKEN,
        from_address: str = ALICE,
        to_address: str = BOB,
        tx_hash: str | None = None,
    ) -> RawLog:
        return RawLog(
            address=contract,
            topics=(TRANSFER_TOPIC, address_topic(from_address), address_topic(to_address)),
            data=value_data(value),
            block_number=block_number,
            log_index=log_index,
            transaction_hash=tx_hash or "0x" + format(block_number * 1000 + log_index, "064x"),
        )

    return _make


@pytest.fixture
def malformed_log() -> RawLog:
    """A Transfer-topic log with a truncated data payload."""
    return RawLog(
        address=TOKEN,
        topics=(TRANSFER_TOPIC, address_topic(ALICE), address_topic(BOB)),
        data="0x1234",
        block_number=100,
        log_index=99,
        transaction_hash="0x" + "f" * 64,
    )


@pytest.fixture
def make_page() -> Callable[..., Page]:
    """Factory for pages whose block contexts are derived from their logs."""

    def _make(logs: Sequence[RawLog], next_position: int) -> Page:
        numbers = sorted({log.block_number for log in logs if log.block_number is not None})
        blocks = tuple(BlockContext(number=n, timestamp=BASE_TIMESTAMP + n) for n in numbers)
        return Page(logs=tuple(logs), blocks=blocks, next_position=next_position)

    return _make


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def source_factory() -> type[FakeSource]:
    return FakeSource


@pytest.fixture
def sink_factory() -> type[RecordingSink]:
    return RecordingSink
