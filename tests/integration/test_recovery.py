"""Tests for re-enqueuing runs orphaned by a worker restart."""

from __future__ import annotations

import datetime as dt
from typing import List

import pytest  # type: ignore

from backtester.checkpoint import CheckpointManager
from backtester.models import BacktestJob, RunStatus
from backtester.portfolio import Portfolio
from backtester.recovery import MAX_AUTO_RESUME_COUNT, RecoveryService
from backtester.rng import DeterministicRandom
from backtester.services.result_store import InMemoryResultStore
from backtester.throttle import ThrottleState
from tests.helpers.market import START, make_run

NOW = dt.datetime(2024, 3, 1, tzinfo=dt.timezone.utc)


def checkpointed_run(run_id: str, status: RunStatus, saved_at: dt.datetime, **kwargs):
    run = make_run(run_id, **kwargs)
    run.status = status
    run.checkpoint = CheckpointManager(run_id).build(
        9, START, DeterministicRandom(run.seed), Portfolio(10_000.0), ThrottleState(), 10_000.0
    )
    run.last_checkpoint_at = saved_at
    run.processed_count = 10
    return run


@pytest.fixture
def queue() -> List[BacktestJob]:
    return []


@pytest.fixture
def service(queue):
    store = InMemoryResultStore()

    async def enqueue(job: BacktestJob) -> None:
        queue.append(job)

    return RecoveryService(store, enqueue)


@pytest.mark.asyncio  # type: ignore
async def test_orphaned_runs_are_requeued(service, queue) -> None:
    store = service.store
    await store.create_run(checkpointed_run("running", RunStatus.RUNNING, NOW - dt.timedelta(hours=1)))
    await store.create_run(checkpointed_run("paused", RunStatus.PAUSED, NOW - dt.timedelta(hours=2)))
    done = make_run("done")
    done.status = RunStatus.COMPLETED
    await store.create_run(done)
    await store.create_run(make_run("waiting"))

    report = await service.recover_orphaned_runs(now=NOW)

    assert sorted(report.requeued) == ["paused", "running"]
    assert report.failed == [] and report.stale_checkpoints == []
    assert sorted(job.run_id for job in queue) == ["paused", "running"]
    for run_id in ("paused", "running"):
        run = await store.get_run(run_id)
        assert run.status is RunStatus.PENDING
        assert run.auto_resume_count == 1
        assert run.checkpoint is not None
    assert (await store.get_run("done")).status is RunStatus.COMPLETED


@pytest.mark.asyncio  # type: ignore
async def test_job_carries_seed_and_strategy(service, queue) -> None:
    await service.store.create_run(
        checkpointed_run("r1", RunStatus.RUNNING, NOW, seed=None, strategy_id="momentum")
    )
    await service.recover_orphaned_runs(now=NOW)
    (job,) = queue
    assert job.deterministic_seed == "r1"
    assert job.strategy_id == "momentum"
    assert (job.user_id, job.dataset_id) == ("user-1", "dataset-1")


@pytest.mark.asyncio  # type: ignore
async def test_recovery_gives_up_after_max_attempts(service, queue) -> None:
    run = checkpointed_run("r1", RunStatus.RUNNING, NOW)
    run.auto_resume_count = MAX_AUTO_RESUME_COUNT
    await service.store.create_run(run)

    report = await service.recover_orphaned_runs(now=NOW)

    assert report.failed == ["r1"]
    assert queue == []
    failed = await service.store.get_run("r1")
    assert failed.status is RunStatus.FAILED
    assert "Exceeded maximum automatic recovery attempts" in failed.error_message


@pytest.mark.asyncio  # type: ignore
async def test_stale_checkpoint_restarts_from_scratch(service, queue) -> None:
    await service.store.create_run(checkpointed_run("r1", RunStatus.PAUSED, NOW - dt.timedelta(hours=200)))

    report = await service.recover_orphaned_runs(now=NOW)

    assert report.stale_checkpoints == ["r1"]
    assert report.requeued == ["r1"]
    run = await service.store.get_run("r1")
    assert run.checkpoint is None
    assert run.processed_count == 0
    assert run.status is RunStatus.PENDING


@pytest.mark.asyncio  # type: ignore
async def test_run_without_dataset_is_failed(service, queue) -> None:
    run = checkpointed_run("r1", RunStatus.RUNNING, NOW)
    run.dataset_id = ""
    await service.store.create_run(run)
    await service.store.create_run(checkpointed_run("r2", RunStatus.RUNNING, NOW))

    report = await service.recover_orphaned_runs(now=NOW)

    assert report.failed == ["r1"]
    assert report.requeued == ["r2"]
    failed = await service.store.get_run("r1")
    assert failed.status is RunStatus.FAILED
    assert failed.error_message.startswith("Recovery failed: Missing required fields")


@pytest.mark.asyncio  # type: ignore
async def test_nothing_to_recover(service, queue) -> None:
    report = await service.recover_orphaned_runs(now=NOW)
    assert report.requeued == report.failed == report.stale_checkpoints == []
