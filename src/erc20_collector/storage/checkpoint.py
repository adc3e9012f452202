"""Redis-backed cursor checkpoints for resuming a chain after a restart."""

from __future__ import annotations

import logging

from redis.asyncio import Redis
from redis.exceptions import RedisError

from erc20_collector.errors import CheckpointError

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "erc20_collector:cursor:"


class CursorCheckpoint:
    """Persists the resume position of each chain under one Redis key.

    Loading is strict: a run that cannot tell whether it should resume must
    not fall back to recreating the table. Saving is best effort, a failed
    save only delays the resume point.
    """

    def __init__(self, redis: Redis, *, key_prefix: str = DEFAULT_KEY_PREFIX) -> None:
        self._redis = redis
        self._key_prefix = key_prefix

    def _key(self, chain_id: int) -> str:
        return f"{self._key_prefix}{chain_id}"

    async def load(self, chain_id: int) -> int | None:
        """Return the stored resume position, or None if the chain has none.

        Raises:
            CheckpointError: If Redis is unreachable or the value is corrupt.
        """
        try:
            value = await self._redis.get(self._key(chain_id))
        except RedisError as e:
            raise CheckpointError(f"Failed to read checkpoint for chain {chain_id}: {e}") from e
        if value is None:
            return None
        if isinstance(value, bytes):
            value = value.decode()
        try:
            position = int(value)
        except ValueError:
            raise CheckpointError(
                f"Corrupt checkpoint for chain {chain_id}: {value!r}"
            ) from None
        if position < 0:
            raise CheckpointError(f"Corrupt checkpoint for chain {chain_id}: {position}")
        return position

    async def save(self, chain_id: int, position: int) -> bool:
        """Store the resume position. Returns False if Redis rejected the write."""
        try:
            await self._redis.set(self._key(chain_id), str(position))
        except RedisError as e:
            logger.warning("Checkpoint save failed (chain=%d, block=%d): %s", chain_id, position, e)
            return False
        return True

