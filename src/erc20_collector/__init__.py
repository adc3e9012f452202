"""ERC20 Transfer Collector - stream token transfers from EVM chains into ClickHouse."""

__version__ = "0.1.0"
