"""Throughput reporting for the ingestion loop.

One log line per page, kept short and grep-friendly:
    Block 1,204,001 | 48,210 events | 210 pending | 12.4s | 3.9k events/s
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


def format_rate(rate_per_s: float) -> str:
    if rate_per_s <= 0:
        return "0/s"
    if rate_per_s >= 1_000_000:
        return f"{rate_per_s/1_000_000:.1f}M/s"
    if rate_per_s >= 1_000:
        return f"{rate_per_s/1_000:.1f}k/s"
    return f"{rate_per_s:.1f}/s"


@dataclass
class ProgressReporter:
    """Tracks elapsed time since start and logs per-page counters."""

    clock: Callable[[], float] = field(default=time.monotonic)

    def __post_init__(self) -> None:
        self._start = self.clock()

    def start(self) -> None:
        """Reset the elapsed-time origin."""
        self._start = self.clock()

    def elapsed(self) -> float:
        return max(1e-6, self.clock() - self._start)

    def rate(self, events: int) -> float:
        return events / self.elapsed()

    def report(self, *, next_block: int, events: int, pending: int) -> str:
        elapsed = self.elapsed()
        line = (
            f"Block {next_block:,} | {events:,} events | {pending:,} pending | "
            f"{elapsed:.1f}s | {format_rate(self.rate(events)).replace('/s', ' events/s')}"
        )
        logger.info("%s", line)
        return line
