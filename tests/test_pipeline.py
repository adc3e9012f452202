"""Tests for the ingestion loop."""

from __future__ import annotations

from unittest.mock import AsyncMock, call

import pytest

from erc20_collector.errors import CursorRegressionError, SinkFault, SourceFault
from erc20_collector.ingestor.models import BlockContext, Page, RawLog
from erc20_collector.pipeline import IngestionLoop, LoopState
from erc20_collector.storage.transfers import TransferTableWriter

CHAIN_ID = 130
TABLE = "token_intelligence.erc20_transfers_130"


def build_loop(source, sink, **kwargs) -> IngestionLoop:
    return IngestionLoop(source, TransferTableWriter(sink, CHAIN_ID), **kwargs)


class TestLoopState:
    """Tests for loop state management."""

    def test_initial_state_is_idle(self, source_factory, recording_sink):
        """A new loop has not touched the table or the source."""
        loop = build_loop(source_factory([]), recording_sink)
        assert loop.state == LoopState.IDLE
        assert loop.cursor == 0
        assert loop.pending == 0

    def test_initial_stats(self, source_factory, recording_sink):
        """Counters start at zero."""
        stats = build_loop(source_factory([]), recording_sink).stats
        assert stats.started_at is None
        assert stats.events_seen == 0
        assert stats.skipped == 0
        assert stats.rows_written == 0

    @pytest.mark.asyncio
    async def test_terminated_after_exhaustion(self, source_factory, recording_sink):
        """An exhausted stream ends in TERMINATED."""
        loop = build_loop(source_factory([None]), recording_sink)
        stats = await loop.run()

        assert loop.state == LoopState.TERMINATED
        assert stats.exhausted is True
        assert stats.finished_at is not None

    @pytest.mark.asyncio
    async def test_cannot_run_twice(self, source_factory, recording_sink):
        """A loop instance runs once."""
        loop = build_loop(source_factory([None]), recording_sink)
        await loop.run()
        with pytest.raises(RuntimeError):
            await loop.run()

    @pytest.mark.asyncio
    async def test_iterator_end_counts_as_exhaustion(self, source_factory, recording_sink, make_page, make_transfer_log):
        """A source that simply stops iterating is treated like the sentinel."""
        page = make_page([make_transfer_log(5, 0)], next_position=6)
        stats = await build_loop(source_factory([page]), recording_sink, start_position=5).run()

        assert stats.exhausted is True
        assert recording_sink.batch_sizes == [1]


class TestTableSetup:
    """Tests for the INITIALIZING phase."""

    @pytest.mark.asyncio
    async def test_recreates_table_before_streaming(self, source_factory, recording_sink):
        """Fresh runs drop and recreate the chain table."""
        await build_loop(source_factory([None]), recording_sink).run()

        assert recording_sink.commands[0] == "CREATE DATABASE IF NOT EXISTS token_intelligence"
        assert recording_sink.commands[1] == f"DROP TABLE IF EXISTS {TABLE}"
        assert "CREATE TABLE IF NOT EXISTS" in recording_sink.commands[2]

    @pytest.mark.asyncio
    async def test_resume_keeps_table(self, source_factory, recording_sink):
        """Resumed runs never drop the table."""
        await build_loop(source_factory([None]), recording_sink, recreate_table=False).run()
        assert not any(c.startswith("DROP") for c in recording_sink.commands)

    @pytest.mark.asyncio
    async def test_setup_failure_is_fatal(self, source_factory, sink_factory):
        """A DDL failure faults the loop before any page is requested."""
        source = source_factory([None])
        loop = build_loop(source, sink_factory(fail_commands=True))

        with pytest.raises(SinkFault):
            await loop.run()

        assert loop.state == LoopState.FAULTED
        assert loop.stats.last_error == "DDL rejected"
        assert source.calls == []


class TestEndToEnd:
    """Three-page scenario with a malformed log and capacity 2."""

    @pytest.mark.asyncio
    async def test_scenario(self, source_factory, recording_sink, make_page, make_transfer_log, malformed_log):
        page1 = make_page(
            [make_transfer_log(100, 0), make_transfer_log(100, 1), malformed_log],
            next_position=101,
        )
        page2 = make_page([make_transfer_log(101, 0)], next_position=102)

        observed: list[tuple[int, int, int]] = []
        loop: IngestionLoop

        def before_page(index: int) -> None:
            observed.append((len(recording_sink.inserts), loop.stats.skipped, loop.cursor))

        source = source_factory([page1, page2, None], before_page=before_page)
        loop = build_loop(source, recording_sink, batch_size=2, start_position=100)
        stats = await loop.run()

        # Before page2 is pulled: one insert of 2 rows, one skip, cursor at 101.
        assert observed[1] == (1, 1, 101)
        assert recording_sink.batch_sizes == [2, 1]
        assert recording_sink.inserts[0][0] == TABLE
        assert recording_sink.inserts[0][2] == "JSONEachRow"
        assert stats.skipped == 1
        assert stats.rows_written == 3
        assert loop.cursor == 102
        assert source.calls[0][1] == 100


class TestProperties:
    """Behavioural guarantees of the loop."""

    @pytest.mark.asyncio
    async def test_ordering_per_contract(self, source_factory, recording_sink, make_page, make_transfer_log):
        """Within a contract, (block_number, log_index) never decreases in flush order."""
        token_a = "0x" + "a" * 40
        token_b = "0x" + "b" * 40
        pages = [
            make_page(
                [
                    make_transfer_log(block, index, contract=token_a if index % 2 == 0 else token_b)
                    for index in range(4)
                ],
                next_position=block + 1,
            )
            for block in range(10, 15)
        ]
        await build_loop(source_factory([*pages, None]), recording_sink, batch_size=3, start_position=10).run()

        for token in (token_a, token_b):
            keys = [
                (row["block_number"], row["log_index"])
                for row in recording_sink.rows
                if row["contract_address"] == token
            ]
            assert keys == sorted(keys)
            assert len(keys) == 10

    @pytest.mark.asyncio
    async def test_completeness_modulo_skips(self, source_factory, recording_sink, make_page, make_transfer_log, malformed_log):
        """N well-formed and M malformed logs give N rows and M skips."""
        transfer = make_transfer_log(1, 9)
        erc721_style = RawLog(
            address=transfer.address,
            topics=(*transfer.topics, "0x" + "0" * 63 + "7"),
            data="0x",
            block_number=1,
            log_index=9,
            transaction_hash=transfer.transaction_hash,
        )
        logs = [make_transfer_log(1, i) for i in range(5)] + [malformed_log, erc721_style]
        page = make_page(logs, next_position=2)
        stats = await build_loop(source_factory([page, None]), recording_sink, batch_size=4, start_position=1).run()

        assert len(recording_sink.rows) == 5
        assert stats.skipped == 2
        assert stats.events_seen == 7

    @pytest.mark.parametrize(
        ("page_sizes", "capacity", "expected"),
        [
            ([7], 3, [3, 3, 1]),
            ([2, 2, 2], 3, [3, 3]),
            ([5, 1, 1, 3], 4, [4, 4, 2]),
        ],
    )
    @pytest.mark.asyncio
    async def test_batch_sizing(self, source_factory, recording_sink, make_page, make_transfer_log, page_sizes, capacity, expected):
        """K records with capacity C give ceil(K/C) inserts, the last of K mod C."""
        pages = [
            make_page([make_transfer_log(block, i) for i in range(size)], next_position=block + 1)
            for block, size in enumerate(page_sizes)
        ]
        await build_loop(source_factory([*pages, None]), recording_sink, batch_size=capacity).run()
        assert recording_sink.batch_sizes == expected

    @pytest.mark.asyncio
    async def test_mints_and_burns_counted(self, source_factory, recording_sink, make_page, make_transfer_log):
        """Transfers from or to the zero address are counted as mints or burns."""
        zero = "0x" + "0" * 40
        page = make_page(
            [
                make_transfer_log(1, 0, from_address=zero),
                make_transfer_log(1, 1, to_address=zero),
                make_transfer_log(1, 2),
            ],
            next_position=2,
        )
        stats = await build_loop(source_factory([page, None]), recording_sink, start_position=1).run()

        assert stats.mints == 1
        assert stats.burns == 1

    @pytest.mark.asyncio
    async def test_value_precision(self, source_factory, recording_sink, make_page, make_transfer_log):
        """A 256-bit value reaches the sink without loss."""
        value = 2**255 + 12345
        page = make_page([make_transfer_log(1, 0, value=value)], next_position=2)
        stats = await build_loop(source_factory([page, None]), recording_sink, start_position=1).run()

        assert recording_sink.rows[0]["value"] == str(value)
        assert int(recording_sink.rows[0]["value"]) == value
        assert stats.total_value == value

    @pytest.mark.asyncio
    async def test_graceful_drain(self, source_factory, recording_sink, make_page, make_transfer_log):
        """A partial batch at exhaustion is flushed exactly once."""
        page = make_page([make_transfer_log(1, i) for i in range(3)], next_position=2)
        loop = build_loop(source_factory([page, None]), recording_sink, batch_size=10, start_position=1)
        await loop.run()

        assert recording_sink.batch_sizes == [3]
        assert loop.pending == 0

    @pytest.mark.asyncio
    async def test_cursor_monotonicity(self, source_factory, recording_sink, make_page, make_transfer_log):
        """The cursor never moves backwards across pages."""
        seen: list[int] = []
        loop: IngestionLoop
        pages = [
            make_page([make_transfer_log(1, 0)], next_position=5),
            make_page([], next_position=5),
            make_page([make_transfer_log(7, 0)], next_position=9),
        ]
        source = source_factory([*pages, None], before_page=lambda _i: seen.append(loop.cursor))
        loop = build_loop(source, recording_sink, start_position=1)
        await loop.run()

        seen.append(loop.cursor)
        assert seen == [1, 5, 5, 9, 9]

    @pytest.mark.asyncio
    async def test_cursor_regression_is_fatal(self, source_factory, recording_sink, make_page, make_transfer_log):
        """A page reporting a lower position faults the loop and stops pulling pages."""
        good = make_page([make_transfer_log(10, 0)], next_position=11)
        bad = make_page([make_transfer_log(9, 0), make_transfer_log(9, 1)], next_position=9)
        never = make_page([make_transfer_log(12, 0)], next_position=13)
        source = source_factory([good, bad, never, None])
        loop = build_loop(source, recording_sink, batch_size=2, start_position=10)

        with pytest.raises(CursorRegressionError):
            await loop.run()

        assert loop.state == LoopState.FAULTED
        assert loop.cursor == 11
        assert source.yielded == 2
        assert recording_sink.inserts == []


class TestFailurePolicy:
    """Sink faults drop the batch; source faults are fatal."""

    @pytest.mark.asyncio
    async def test_sink_fault_drops_batch_and_continues(self, source_factory, sink_factory, make_page, make_transfer_log):
        """A failed flush is dropped and streaming goes on."""
        sink = sink_factory(fail_inserts=[0])
        pages = [
            make_page([make_transfer_log(1, 0), make_transfer_log(1, 1)], next_position=2),
            make_page([make_transfer_log(2, 0), make_transfer_log(2, 1)], next_position=3),
        ]
        loop = build_loop(source_factory([*pages, None]), sink, batch_size=2, start_position=1)
        stats = await loop.run()

        assert loop.state == LoopState.TERMINATED
        assert stats.batches_dropped == 1
        assert stats.rows_dropped == 2
        assert stats.rows_written == 2
        assert [row["block_number"] for row in sink.rows] == [2, 2]
        assert loop.cursor == 3

    @pytest.mark.asyncio
    async def test_source_fault_is_fatal(self, source_factory, recording_sink, make_page, make_transfer_log):
        """A source error faults the loop without flushing buffered records."""
        page = make_page([make_transfer_log(1, 0)], next_position=2)
        loop = build_loop(
            source_factory([page, SourceFault("RPC call get_logs failed")]),
            recording_sink,
            batch_size=10,
            start_position=1,
        )

        with pytest.raises(SourceFault):
            await loop.run()

        assert loop.state == LoopState.FAULTED
        assert loop.cursor == 2
        assert loop.pending == 1
        assert recording_sink.inserts == []

    @pytest.mark.asyncio
    async def test_log_without_block_context_is_skipped(self, source_factory, recording_sink, make_transfer_log):
        """Logs whose block is missing from the page are counted as skips."""
        page = Page(
            logs=(make_transfer_log(1, 0), make_transfer_log(2, 0)),
            blocks=(BlockContext(number=1, timestamp=1_700_000_000),),
            next_position=3,
        )
        stats = await build_loop(source_factory([page, None]), recording_sink, start_position=1).run()

        assert stats.skipped == 1
        assert [row["block_number"] for row in recording_sink.rows] == [1]


class TestStopRequest:
    """Tests for external cancellation."""

    @pytest.mark.asyncio
    async def test_stop_between_pages_drains(self, source_factory, recording_sink, make_page, make_transfer_log):
        """A stop request ends the loop after the current page and drains the buffer."""
        loop: IngestionLoop
        pages = [
            make_page([make_transfer_log(1, 0)], next_position=2),
            make_page([make_transfer_log(2, 0)], next_position=3),
        ]

        def before_page(index: int) -> None:
            if index == 0:
                loop.request_stop()

        source = source_factory([*pages, None], before_page=before_page)
        loop = build_loop(source, recording_sink, batch_size=10, start_position=1)
        stats = await loop.run()

        assert stats.stopped is True
        assert stats.exhausted is False
        assert source.yielded == 1
        assert recording_sink.batch_sizes == [1]
        assert loop.state == LoopState.TERMINATED


class TestCheckpoint:
    """Tests for checkpoint persistence."""

    @pytest.mark.asyncio
    async def test_saves_resume_position_after_flushes(self, source_factory, recording_sink, make_page, make_transfer_log):
        """The saved position never skips past a buffered record."""
        checkpoint = AsyncMock()
        pages = [
            make_page([make_transfer_log(100, i) for i in range(3)], next_position=101),
            make_page([make_transfer_log(101, 0)], next_position=102),
            make_page([], next_position=103),
        ]
        loop = build_loop(
            source_factory([*pages, None]),
            recording_sink,
            batch_size=2,
            start_position=100,
            checkpoint=checkpoint,
        )
        await loop.run()

        assert checkpoint.save.await_args_list == [call(CHAIN_ID, 100), call(CHAIN_ID, 102)]

    @pytest.mark.asyncio
    async def test_no_save_when_flush_fails(self, source_factory, sink_factory, make_page, make_transfer_log):
        """A dropped batch does not move the checkpoint."""
        checkpoint = AsyncMock()
        page = make_page([make_transfer_log(1, 0), make_transfer_log(1, 1)], next_position=2)
        loop = build_loop(
            source_factory([page, None]),
            sink_factory(fail_inserts=[0]),
            batch_size=2,
            start_position=1,
            checkpoint=checkpoint,
        )
        await loop.run()

        checkpoint.save.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dropped_batch_holds_checkpoint_back(self, source_factory, sink_factory, make_page, make_transfer_log):
        """A later successful flush does not move the checkpoint past dropped rows."""
        checkpoint = AsyncMock()
        sink = sink_factory(fail_inserts=[0])
        pages = [
            make_page([make_transfer_log(1, 0), make_transfer_log(1, 1)], next_position=2),
            make_page([make_transfer_log(2, 0), make_transfer_log(2, 1)], next_position=3),
        ]
        loop = build_loop(
            source_factory([*pages, None]),
            sink,
            batch_size=2,
            start_position=1,
            checkpoint=checkpoint,
        )
        await loop.run()

        assert sink.batch_sizes == [2]
        assert checkpoint.save.await_args_list == [call(CHAIN_ID, 1)]
        assert loop.resume_position() == 1

    @pytest.mark.asyncio
    async def test_resume_position_without_drops_follows_cursor(self, source_factory, recording_sink, make_page, make_transfer_log):
        """With every batch written, the resume position is the cursor."""
        page = make_page([make_transfer_log(1, 0), make_transfer_log(1, 1)], next_position=2)
        loop = build_loop(source_factory([page, None]), recording_sink, batch_size=2, start_position=1)
        await loop.run()

        assert loop.resume_position() == 2
