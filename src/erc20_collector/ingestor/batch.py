"""Batch accumulation of decoded transfers."""

from __future__ import annotations

from erc20_collector.ingestor.models import TransferRecord

DEFAULT_BATCH_SIZE = 1000


class BatchAccumulator:
    """Buffers decoded records until a flush.

    The ingestion loop drains the buffer as soon as ``is_full()`` turns true,
    so a drained batch never holds more than ``capacity`` records.
    """

    def __init__(self, capacity: int = DEFAULT_BATCH_SIZE) -> None:
        if capacity < 1:
            raise ValueError(f"Batch capacity must be at least 1, got {capacity}")
        self._capacity = capacity
        self._records: list[TransferRecord] = []

    @property
    def capacity(self) -> int:
        return self._capacity

    def append(self, record: TransferRecord) -> None:
        self._records.append(record)

    def is_full(self) -> bool:
        return len(self._records) >= self._capacity

    def drain(self) -> list[TransferRecord]:
        """Return the buffered records and reset the buffer."""
        records, self._records = self._records, []
        return records

    def __len__(self) -> int:
        return len(self._records)

    def __bool__(self) -> bool:
        return bool(self._records)
