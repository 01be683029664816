"""
Redis backed queue of backtest jobs.

Jobs are pushed as JSON onto a Redis list and popped with a blocking
``BLPOP`` so that several workers can share one queue.  The recovery
sweep re-enqueues orphaned runs through ``push``.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import redis.asyncio as aioredis
from pydantic import ValidationError

from ..models import BacktestJob

logger = logging.getLogger(__name__)

JOB_QUEUE_KEY = "backtest:jobs"


class RedisJobQueue:
    def __init__(
        self,
        client: Optional[Any] = None,
        host: str = "localhost",
        port: int = 6379,
        key: str = JOB_QUEUE_KEY,
    ) -> None:
        self._redis = client if client is not None else aioredis.Redis(host=host, port=port, decode_responses=True)
        self.key = key

    async def push(self, job: BacktestJob) -> None:
        await self._redis.rpush(self.key, job.model_dump_json())
        logger.info("Enqueued backtest job for run %s", job.run_id)

    async def pop(self, timeout: int = 5) -> Optional[BacktestJob]:
        """Wait up to ``timeout`` seconds for a job; malformed payloads are dropped."""
        item = await self._redis.blpop([self.key], timeout=timeout)
        if item is None:
            return None
        _, payload = item
        try:
            return BacktestJob.model_validate_json(payload)
        except ValidationError as exc:
            logger.warning("Dropping malformed backtest job %r: %s", payload, exc)
            return None
