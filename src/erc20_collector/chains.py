"""Supported source chains.

Each chain gets its own destination table, named from its chain id, and a
default public JSON-RPC endpoint that ``RPC_URL`` can override.
"""

from __future__ import annotations

from dataclasses import dataclass

from erc20_collector.errors import UnsupportedChainError

DEFAULT_CHAIN_ID = 130
TABLE_NAME_PREFIX = "erc20_transfers_"


@dataclass(frozen=True)
class ChainInfo:
    """A chain the collector can ingest from."""

    chain_id: int
    name: str
    rpc_url: str
    # Chains whose block headers carry oversized extraData (PoA / Clique).
    poa: bool = False

    def label(self) -> str:
        return f"{self.chain_id} ({self.name})"


SUPPORTED_CHAINS: dict[int, ChainInfo] = {
    chain.chain_id: chain
    for chain in (
        ChainInfo(1, "Ethereum", "https://ethereum-rpc.publicnode.com"),
        ChainInfo(10, "Optimism", "https://mainnet.optimism.io"),
        ChainInfo(56, "BSC", "https://bsc-dataseed.bnbchain.org", poa=True),
        ChainInfo(130, "Unichain", "https://mainnet.unichain.org"),
        ChainInfo(137, "Polygon", "https://polygon-rpc.com", poa=True),
        ChainInfo(480, "World Chain", "https://worldchain-mainnet.g.alchemy.com/public"),
        ChainInfo(1868, "Lightlink", "https://replicator.phoenix.lightlink.io/rpc/v1"),
        ChainInfo(7777777, "Zora", "https://rpc.zora.energy"),
        ChainInfo(8453, "Base", "https://mainnet.base.org"),
        ChainInfo(42161, "Arbitrum", "https://arb1.arbitrum.io/rpc"),
        ChainInfo(43114, "Avalanche", "https://api.avax.network/ext/bc/C/rpc"),
        ChainInfo(81457, "Blast", "https://rpc.blast.io"),
    )
}


def table_name_for(chain_id: int) -> str:
    """Return the destination table name for a chain id."""
    return f"{TABLE_NAME_PREFIX}{chain_id}"


def resolve_chain(chain_id: int | str) -> ChainInfo:
    """Look up a supported chain.

    Args:
        chain_id: Chain id as an int or a decimal string (e.g. from argv).

    Returns:
        The matching ChainInfo.

    Raises:
        UnsupportedChainError: If the id is not numeric or not whitelisted.
    """
    try:
        key = int(str(chain_id).strip())
    except ValueError:
        raise UnsupportedChainError(chain_id) from None
    chain = SUPPORTED_CHAINS.get(key)
    if chain is None:
        raise UnsupportedChainError(chain_id)
    return chain


def describe_supported_chains() -> str:
    """Human-readable whitelist, e.g. ``1 (Ethereum), 10 (Optimism), ...``."""
    return ", ".join(chain.label() for chain in SUPPORTED_CHAINS.values())
