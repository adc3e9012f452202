"""Event sources: the paged log stream contract and a JSON-RPC implementation.

The JSON-RPC source pages through ``eth_getLogs`` in fixed block ranges:
- Topic filtering on the server side
- Per-log block attribution (log ``blockTimestamp`` when the node reports it,
  otherwise header lookups with a bounded number in flight)
- Rate limiting to respect provider limits
- No retries: any RPC failure is surfaced as ``SourceFault``
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol

from web3 import AsyncWeb3
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

from erc20_collector.errors import SourceFault
from erc20_collector.ingestor.models import BlockContext, Page, RawLog
from erc20_collector.ingestor.signatures import LogFilter

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE_BLOCKS = 2000
DEFAULT_MAX_REQUESTS_PER_SECOND = 25.0
DEFAULT_REQUEST_TIMEOUT = 30
DEFAULT_MAX_CONCURRENT_BLOCK_REQUESTS = 8


class EventSource(Protocol):
    """A paged, filterable stream of raw logs.

    ``stream`` yields pages in block order starting at ``start_position``. A
    ``None`` page (or the end of iteration) means the stream is exhausted,
    i.e. the source has caught up with the chain tip.
    """

    def stream(self, log_filter: LogFilter, start_position: int) -> AsyncIterator[Page | None]: ...


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


class Web3LogSource:
    """Event source backed by a JSON-RPC node via ``eth_getLogs``.

    Example:
        ```python
        source = Web3LogSource("https://mainnet.unichain.org", page_size_blocks=2000)
        async for page in source.stream(registry.log_filter(), start_position=0):
            if page is None:
                break
            ...
        await source.aclose()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        page_size_blocks: int = DEFAULT_PAGE_SIZE_BLOCKS,
        stop_block: int | None = None,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT,
        max_concurrent_block_requests: int = DEFAULT_MAX_CONCURRENT_BLOCK_REQUESTS,
        poa: bool = False,
        web3: AsyncWeb3[Any] | None = None,
    ) -> None:
        """Initialize the source.

        Args:
            rpc_url: JSON-RPC endpoint URL.
            page_size_blocks: Block range covered by one page.
            stop_block: Optional last block to stream; defaults to the chain tip.
            max_requests_per_second: Rate limit for RPC calls.
            request_timeout_seconds: HTTP timeout for one RPC call.
            max_concurrent_block_requests: Block header lookups in flight per page.
            poa: Inject the PoA extraData middleware (BSC, Polygon).
            web3: Pre-built client, mainly for tests.
        """
        if page_size_blocks < 1:
            raise ValueError("page_size_blocks must be at least 1")
        if max_concurrent_block_requests < 1:
            raise ValueError("max_concurrent_block_requests must be at least 1")
        self._rpc_url = rpc_url
        self._page_size = page_size_blocks
        self._stop_block = stop_block
        self._rate_limiter = RateLimiter.create(max_requests_per_second)
        self._block_requests = asyncio.Semaphore(max_concurrent_block_requests)
        self._w3 = web3 or self._new_web3_client(
            rpc_url, timeout=request_timeout_seconds, poa=poa
        )

    def _new_web3_client(self, rpc_url: str, *, timeout: int, poa: bool) -> AsyncWeb3[Any]:
        client = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        if poa:
            try:
                client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
            except Exception as e:
                logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)
        return client

    async def _call(self, func_name: str, *args: Any) -> Any:
        await self._rate_limiter.acquire()
        try:
            method = getattr(self._w3.eth, func_name)
            return await method(*args)
        except Exception as e:
            raise SourceFault(f"RPC call {func_name} failed: {e}") from e

    async def _tip(self) -> int:
        latest = await self._call("get_block", "latest")
        tip = int(latest["number"])
        if self._stop_block is not None:
            tip = min(tip, self._stop_block)
        return tip

    async def _block_context(self, block_number: int) -> BlockContext:
        async with self._block_requests:
            block = await self._call("get_block", block_number)
        return BlockContext(number=block_number, timestamp=int(block["timestamp"]))

    async def fetch_page(self, log_filter: LogFilter, from_block: int, to_block: int) -> Page:
        """Fetch the logs of one block range together with their block contexts.

        Raises:
            SourceFault: If an RPC call fails or returns malformed logs.
        """
        logs = await self._call(
            "get_logs",
            {
                "fromBlock": from_block,
                "toBlock": to_block,
                "topics": log_filter.to_web3_topics(),
            },
        )
        try:
            raw_logs = tuple(RawLog.from_web3(log) for log in logs)
        except (KeyError, TypeError, ValueError) as e:
            raise SourceFault(f"Malformed log in blocks {from_block}-{to_block}: {e}") from e

        known: dict[int, int] = {}
        for r in raw_logs:
            if r.block_number is not None and r.block_timestamp is not None:
                known[r.block_number] = r.block_timestamp
        missing = sorted({r.block_number for r in raw_logs if r.block_number is not None} - known.keys())
        fetched = await asyncio.gather(*(self._block_context(n) for n in missing))

        blocks = [BlockContext(number=n, timestamp=ts) for n, ts in known.items()]
        blocks.extend(fetched)
        blocks.sort(key=lambda b: b.number)
        return Page(logs=raw_logs, blocks=tuple(blocks), next_position=to_block + 1)

    async def stream(self, log_filter: LogFilter, start_position: int) -> AsyncIterator[Page | None]:
        """Yield pages from ``start_position`` until the tip, then a final ``None``."""
        tip = await self._tip()
        from_block = start_position
        logger.info("Streaming logs from block %d (tip %d)", from_block, tip)

        while True:
            if from_block > tip:
                # Re-check once: the chain may have moved while we were paging.
                tip = await self._tip()
                if from_block > tip:
                    yield None
                    return
            to_block = min(tip, from_block + self._page_size - 1)
            page = await self.fetch_page(log_filter, from_block, to_block)
            yield page
            from_block = page.next_position

    async def aclose(self) -> None:
        """Close async HTTP provider sessions to avoid leaked aiohttp sessions."""
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if not callable(disconnect):
            return
        try:
            result = disconnect()
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.warning("Failed to close RPC provider session: %s", e)
