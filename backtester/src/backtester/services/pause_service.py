"""
Pause requests for running backtests.

A user pauses a run by setting a flag in Redis; the processor polls the
flag at heartbeat ticks.  Flags expire on their own so that a crashed
worker does not leave a run paused forever.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

PAUSE_KEY_PREFIX = "backtest:pause:"
DEFAULT_PAUSE_TTL_SECONDS = 3600


class PauseService:
    def __init__(
        self,
        client: Optional[Any] = None,
        host: str = "localhost",
        port: int = 6379,
        ttl_seconds: int = DEFAULT_PAUSE_TTL_SECONDS,
    ) -> None:
        self._redis = client if client is not None else aioredis.Redis(host=host, port=port, decode_responses=True)
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key(run_id: str) -> str:
        return f"{PAUSE_KEY_PREFIX}{run_id}"

    async def request_pause(self, run_id: str) -> None:
        await self._redis.set(self.key(run_id), "1", ex=self.ttl_seconds)
        logger.info("Pause requested for run %s", run_id)

    async def is_pause_requested(self, run_id: str) -> bool:
        return bool(await self._redis.exists(self.key(run_id)))

    async def clear_pause_flag(self, run_id: str) -> None:
        await self._redis.delete(self.key(run_id))
