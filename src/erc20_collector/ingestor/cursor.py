"""Cursor tracking for the event stream."""

from __future__ import annotations

from erc20_collector.errors import CursorRegressionError


class CursorTracker:
    """Holds the next block number to request from the event source.

    The position only moves forward. A source reporting a position behind the
    current one is violating the stream protocol, and ``advance`` raises
    instead of ignoring it.
    """

    def __init__(self, start: int = 0) -> None:
        if start < 0:
            raise ValueError(f"Cursor start must be non-negative, got {start}")
        self._next_block = start

    def current(self) -> int:
        return self._next_block

    def check(self, new_position: int) -> None:
        """Raise CursorRegressionError if ``new_position`` would move the cursor back."""
        if new_position < self._next_block:
            raise CursorRegressionError(self._next_block, new_position)

    def advance(self, new_position: int) -> None:
        """Move the cursor to ``new_position``.

        Raises:
            CursorRegressionError: If ``new_position`` is lower than the current position.
        """
        self.check(new_position)
        self._next_block = new_position

    def __repr__(self) -> str:
        return f"CursorTracker(next_block={self._next_block})"
