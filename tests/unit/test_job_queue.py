"""Tests for the Redis backed job queue."""

from __future__ import annotations

import pytest  # type: ignore

from backtester.models import BacktestJob
from backtester.services.job_queue import JOB_QUEUE_KEY, RedisJobQueue
from tests.helpers.fake_redis import FakeRedis


@pytest.mark.asyncio  # type: ignore
async def test_jobs_are_popped_in_push_order() -> None:
    client = FakeRedis()
    queue = RedisJobQueue(client=client)
    first = BacktestJob(run_id="r1", user_id="u", dataset_id="d", strategy_id="momentum", deterministic_seed="s")
    second = BacktestJob(run_id="r2", user_id="u", dataset_id="d", strategy_id="momentum")

    await queue.push(first)
    await queue.push(second)
    assert len(client.lists[JOB_QUEUE_KEY]) == 2

    assert await queue.pop() == first
    assert await queue.pop() == second
    assert await queue.pop(timeout=1) is None


@pytest.mark.asyncio  # type: ignore
async def test_malformed_job_is_dropped() -> None:
    client = FakeRedis()
    queue = RedisJobQueue(client=client)
    await client.rpush(JOB_QUEUE_KEY, '{"run_id": ""}', "not json")

    assert await queue.pop() is None
    assert await queue.pop() is None
    assert client.lists[JOB_QUEUE_KEY] == []
