"""Data models for the ingestor module."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, TypeAlias

ZERO_ADDRESS = "0x" + "0" * 40

MAX_UINT256 = 2**256 - 1
MAX_UINT64 = 2**64 - 1
MAX_UINT32 = 2**32 - 1

# ClickHouse DateTime text format (second precision, UTC).
CLICKHOUSE_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def to_hex(value: Any) -> str:
    """Normalize HexBytes / bytes / str into a lower-case 0x-prefixed hex string."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    if not text.startswith("0x"):
        text = "0x" + text
    return text


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


@dataclass(frozen=True)
class RawLog:
    """A raw, undecoded log as delivered by the event source.

    Block attribution is per log where the source provides it; a log without
    ``block_number`` relies on the page-level block context. Nodes that report
    ``blockTimestamp`` on logs spare the source a header lookup.
    """

    address: str
    topics: tuple[str, ...]
    data: str
    block_number: int | None = None
    log_index: int | None = None
    transaction_hash: str | None = None
    block_timestamp: int | None = None

    @classmethod
    def from_web3(cls, log: Any) -> RawLog:
        """Create a RawLog from a web3 ``eth_getLogs`` entry (AttributeDict or dict)."""
        tx_hash = log.get("transactionHash")
        return cls(
            address=to_hex(log["address"]),
            topics=tuple(to_hex(t) for t in log.get("topics") or ()),
            data=to_hex(log.get("data") or b""),
            block_number=_optional_int(log.get("blockNumber")),
            log_index=_optional_int(log.get("logIndex")),
            transaction_hash=to_hex(tx_hash) if tx_hash is not None else None,
            block_timestamp=_optional_int(log.get("blockTimestamp")),
        )


@dataclass(frozen=True)
class BlockContext:
    """Block number and Unix timestamp reported alongside a page."""

    number: int
    timestamp: int

    @property
    def time(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=UTC)


@dataclass(frozen=True)
class Page:
    """One page of raw logs from the event source.

    Attributes:
        logs: Raw logs in source order.
        blocks: Block contexts for the blocks the logs belong to.
        next_position: Block number the next page starts at.
    """

    logs: tuple[RawLog, ...]
    blocks: tuple[BlockContext, ...]
    next_position: int

    def block_context_for(self, log: RawLog) -> BlockContext | None:
        """Resolve the block context of a log.

        A log that names its block is matched against the page's blocks. A log
        without a block number takes the page-level context, which only exists
        when the page reports exactly one block.
        """
        if log.block_number is None:
            return self.blocks[0] if len(self.blocks) == 1 else None
        for block in self.blocks:
            if block.number == log.block_number:
                return block
        return None


@dataclass(frozen=True)
class TransferFields:
    """Decoded indexed and body fields of a Transfer event."""

    from_address: str
    to_address: str
    value: int


# Decoding either yields the transfer fields or nothing; None is a skip.
DecodedLog: TypeAlias = TransferFields | None


@dataclass(frozen=True)
class TransferRecord:
    """One decoded ERC20 transfer, ready to be written to the chain table."""

    block_number: int
    block_timestamp: datetime
    log_index: int
    transaction_hash: str
    contract_address: str
    from_address: str
    to_address: str
    value: int

    def __post_init__(self) -> None:
        if not 0 <= self.block_number <= MAX_UINT64:
            raise ValueError(f"block_number out of uint64 range: {self.block_number}")
        if not 0 <= self.log_index <= MAX_UINT32:
            raise ValueError(f"log_index out of uint32 range: {self.log_index}")
        if not 0 <= self.value <= MAX_UINT256:
            raise ValueError(f"value out of uint256 range: {self.value}")
        if self.block_timestamp.tzinfo is None:
            raise ValueError("block_timestamp must be timezone-aware")

    @classmethod
    def from_decoded(
        cls,
        raw: RawLog,
        fields: TransferFields,
        block: BlockContext,
    ) -> TransferRecord:
        """Combine a raw log, its decoded fields and its block context.

        Raises:
            ValueError: If the raw log lacks its log index or transaction hash,
                or a field is out of range.
        """
        if raw.log_index is None:
            raise ValueError("log is missing its log index")
        if raw.transaction_hash is None:
            raise ValueError("log is missing its transaction hash")
        return cls(
            block_number=block.number,
            block_timestamp=block.time,
            log_index=raw.log_index,
            transaction_hash=raw.transaction_hash.lower(),
            contract_address=raw.address.lower(),
            from_address=fields.from_address,
            to_address=fields.to_address,
            value=fields.value,
        )

    @property
    def is_mint(self) -> bool:
        return self.from_address == ZERO_ADDRESS

    @property
    def is_burn(self) -> bool:
        return self.to_address == ZERO_ADDRESS

    def to_row(self) -> dict[str, Any]:
        """Row for a JSONEachRow insert.

        ``value`` is sent as a decimal string so 256-bit amounts survive JSON
        encoding; ClickHouse parses it into UInt256.
        """
        return {
            "block_number": self.block_number,
            "block_timestamp": self.block_timestamp.astimezone(UTC).strftime(
                CLICKHOUSE_DATETIME_FORMAT
            ),
            "log_index": self.log_index,
            "transaction_hash": self.transaction_hash,
            "contract_address": self.contract_address,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "value": str(self.value),
        }
