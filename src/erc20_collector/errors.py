"""Error taxonomy for the collector.

Configuration errors are raised before any streaming starts. Source faults,
cursor regressions and table-setup failures are fatal for a run. Sink faults
raised while flushing a batch are handled by the ingestion loop, which drops
the batch and keeps streaming.
"""


class CollectorError(Exception):
    """Base exception for collector errors."""


class InvalidConfiguration(CollectorError):
    """Raised when the collector is configured with unusable values."""


class InvalidSignature(InvalidConfiguration):
    """Raised when an event signature cannot be parsed."""


class UnsupportedChainError(InvalidConfiguration):
    """Raised when a chain id is not in the supported whitelist."""

    def __init__(self, chain_id: object) -> None:
        super().__init__(f"Unsupported chain ID: {chain_id}")
        self.chain_id = chain_id


class SourceFault(CollectorError):
    """Raised when the event source errors or disconnects mid-stream."""


class SinkFault(CollectorError):
    """Raised when the storage engine rejects a command or an insert."""


class CursorRegressionError(CollectorError):
    """Raised when the source reports a position behind the tracked cursor."""

    def __init__(self, current: int, reported: int) -> None:
        super().__init__(
            f"Event source reported position {reported} behind cursor {current}"
        )
        self.current = current
        self.reported = reported


class CheckpointError(CollectorError):
    """Raised when a persisted cursor checkpoint cannot be read."""
