"""Event signature registry and Transfer log decoding.

Signatures are accepted in either canonical form
(``Transfer(address,address,uint256)``) or human-readable form
(``Transfer(address indexed from, address indexed to, uint256 value)``); the
topic id is the keccak-256 hash of the canonical form.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

from web3 import Web3

from erc20_collector.errors import InvalidSignature
from erc20_collector.ingestor.models import DecodedLog, RawLog, TransferFields

TRANSFER_SIGNATURE = "Transfer(address indexed from, address indexed to, uint256 value)"

_SIGNATURE_RE = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*\((.*)\)\s*$")
_TYPE_RE = re.compile(r"^([a-z]+)([0-9]*)((?:\[[0-9]*\])*)$")
_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_HEX_RE = re.compile(r"[0-9a-f]*")

_WORD_HEX_LEN = 64
_ADDRESS_HEX_LEN = 40

# Size-less aliases hash under their canonical width.
_TYPE_ALIASES = {"uint": "uint256", "int": "int256"}


def _canonical_type(type_: str) -> str | None:
    """Return the canonical ABI elementary type (arrays allowed), or None."""
    match = _TYPE_RE.match(type_)
    if match is None:
        return None
    base, size, arrays = match.groups()
    if base in ("address", "bool", "string", "function"):
        valid = not size
    elif base == "bytes":
        valid = not size or 1 <= int(size) <= 32
    elif base in ("uint", "int"):
        valid = not size or (8 <= int(size) <= 256 and int(size) % 8 == 0)
    else:
        valid = False
    if not valid:
        return None
    if not size:
        base = _TYPE_ALIASES.get(base, base)
    return f"{base}{size}{arrays}"


def canonicalize_signature(signature: str) -> str:
    """Strip parameter names and ``indexed`` markers from an event signature.

    Parameter types must be ABI elementary types or arrays of them; ``uint``
    and ``int`` are widened to 256 bits. Tuple parameters are not supported.

    Raises:
        InvalidSignature: If the signature is not ``Name(type[ indexed][ name], ...)``.
    """
    match = _SIGNATURE_RE.match(signature)
    if match is None:
        raise InvalidSignature(f"Malformed event signature: {signature!r}")
    name, params = match.group(1), match.group(2).strip()
    if not params:
        return f"{name}()"
    if "(" in params or ")" in params:
        raise InvalidSignature(f"Tuple parameters are not supported: {signature!r}")

    types: list[str] = []
    for param in params.split(","):
        parts = param.split()
        canonical = _canonical_type(parts[0]) if parts else None
        if canonical is None:
            raise InvalidSignature(f"Malformed parameter {param.strip()!r} in {signature!r}")
        rest = parts[1:]
        if rest and rest[0] == "indexed":
            rest = rest[1:]
        if len(rest) > 1 or (rest and not _NAME_RE.match(rest[0])):
            raise InvalidSignature(f"Malformed parameter {param.strip()!r} in {signature!r}")
        types.append(canonical)
    return f"{name}({','.join(types)})"


def compute_topic(signature: str) -> str:
    """Compute the topic0 id (0x-prefixed keccak-256 hex) of an event signature."""
    return Web3.to_hex(Web3.keccak(text=canonicalize_signature(signature)))


def _strip_hex(value: str) -> str | None:
    text = value.lower()
    if text.startswith("0x"):
        text = text[2:]
    if not _HEX_RE.fullmatch(text):
        return None
    return text


def _word_to_address(topic: str) -> str | None:
    word = _strip_hex(topic)
    if word is None or len(word) != _WORD_HEX_LEN:
        return None
    padding, address = word[:-_ADDRESS_HEX_LEN], word[-_ADDRESS_HEX_LEN:]
    if padding.strip("0"):
        return None
    return "0x" + address


@dataclass(frozen=True)
class LogFilter:
    """Topic filter handed to the event source (topic0 any-of)."""

    topic0: tuple[str, ...]

    def to_web3_topics(self) -> list[list[str]]:
        return [list(self.topic0)]


class SignatureRegistry:
    """Maps event signatures to topic ids and decodes Transfer logs.

    Example:
        ```python
        registry = SignatureRegistry()
        fields = registry.decode(raw_log)
        if fields is None:
            skipped += 1
        ```
    """

    def __init__(self, signatures: Iterable[str] = (TRANSFER_SIGNATURE,)) -> None:
        """Initialize the registry.

        Args:
            signatures: Event signatures to subscribe to.

        Raises:
            InvalidSignature: If a signature is malformed or none is given.
        """
        self._signatures: dict[str, str] = {}
        for signature in signatures:
            canonical = canonicalize_signature(signature)
            self._signatures[compute_topic(canonical)] = canonical
        if not self._signatures:
            raise InvalidSignature("At least one event signature is required")

    @property
    def topics(self) -> tuple[str, ...]:
        return tuple(self._signatures)

    def signature_for(self, topic: str) -> str | None:
        return self._signatures.get(topic.lower())

    def log_filter(self) -> LogFilter:
        return LogFilter(topic0=self.topics)

    def decode(self, raw_log: RawLog) -> DecodedLog:
        """Decode the ``from``/``to``/``value`` fields of a Transfer log.

        Returns None when the log does not have the Transfer shape: three
        topics (topic0 registered, two address words) and exactly one 32-byte
        data word. ERC721 transfers index the token id as a fourth topic and
        are rejected here.
        """
        if len(raw_log.topics) != 3:
            return None
        if self.signature_for(raw_log.topics[0]) is None:
            return None

        from_address = _word_to_address(raw_log.topics[1])
        to_address = _word_to_address(raw_log.topics[2])
        if from_address is None or to_address is None:
            return None

        data = _strip_hex(raw_log.data)
        if data is None or len(data) != _WORD_HEX_LEN:
            return None

        return TransferFields(
            from_address=from_address,
            to_address=to_address,
            value=int(data, 16),
        )
