"""
Event buses used to stream backtest telemetry.

``EventBus`` is an in-process bus with one asyncio queue per topic.
``RedisEventBus`` publishes the same topics to Redis Pub/Sub channels so
that consumers in other processes (dashboards, the metrics exporter) can
follow a run.  Both expose the same ``publish``/``subscribe`` interface.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, AsyncIterator, Dict, Optional

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


class EventBus:
    """In-memory event bus; each topic has its own asyncio queue."""

    def __init__(self) -> None:
        self._queues: Dict[str, asyncio.Queue] = defaultdict(asyncio.Queue)

    async def publish(self, event_type: str, data: Any) -> None:
        """Publish an event to subscribers of the given topic."""
        await self._queues[event_type].put(data)

    async def subscribe(self, event_type: str) -> AsyncIterator[Any]:
        """Yield events of a given topic as they arrive."""
        queue = self._queues[event_type]
        while True:
            yield await queue.get()


class RedisEventBus(EventBus):
    """
    Redis-based event bus using Pub/Sub.  Payloads are published as JSON
    on a channel named after the topic.  Pass an existing
    ``redis.asyncio`` client or a host and port.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        client: Optional[Any] = None,
    ) -> None:
        super().__init__()
        self._redis = client if client is not None else aioredis.Redis(host=host, port=port, decode_responses=True)

    async def publish(self, event_type: str, data: Any) -> None:
        await self._redis.publish(event_type, json.dumps(data, default=str))

    async def subscribe(self, event_type: str) -> AsyncIterator[Any]:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(event_type)
        try:
            while True:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message and message["type"] == "message":
                    try:
                        yield json.loads(message["data"])
                    except (TypeError, ValueError):
                        logger.debug("Non-JSON payload on %s", event_type)
                        yield message["data"]
        finally:
            await pubsub.unsubscribe(event_type)
