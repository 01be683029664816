"""Run lifecycle tests: the processor driving the engine against a result store."""

from __future__ import annotations

import dataclasses
import datetime as dt
from typing import Any, Dict, List

import pytest  # type: ignore

from backtester.checkpoint import CheckpointManager
from backtester.engine import BacktestEngine, BacktestOutcome
from backtester.exceptions import InvalidStatusTransition
from backtester.models import BacktestJob, PartialResults, PersistedCounts, RunStatus
from backtester.portfolio import Portfolio
from backtester.processor import BacktestProcessor
from backtester.recovery import RecoveryService
from backtester.rng import DeterministicRandom
from backtester.services.pause_service import PauseService
from backtester.services.result_store import InMemoryResultStore
from backtester.services.telemetry import METRIC_TOPIC, STATUS_TOPIC, BacktestTelemetry
from backtester.strategies import MomentumStrategy
from backtester.strategies.base import StrategyContext, StrategyResult
from backtester.throttle import ThrottleState
from tests.helpers.fake_bus import FakeBus
from tests.helpers.fake_redis import FakeRedis
from tests.helpers.market import (
    ScriptedStrategy,
    candle_loader,
    make_dataset,
    make_run,
    registry_with,
    two_instrument_candles,
)

N_TICKS = 100


class WorkerCrashed(BaseException):
    """Simulates the worker process dying; escapes every ``except Exception``."""


class CrashingStore(InMemoryResultStore):
    """Dies on the n-th checkpoint write, once."""

    def __init__(self, crash_on: int) -> None:
        super().__init__()
        self.crash_on = crash_on
        self.checkpoint_writes = 0

    async def save_checkpoint(self, run_id, checkpoint, processed_count, total_count) -> None:
        self.checkpoint_writes += 1
        if self.checkpoint_writes == self.crash_on:
            raise WorkerCrashed()
        await super().save_checkpoint(run_id, checkpoint, processed_count, total_count)


def job_for(run_id: str = "run-1", strategy_id: str = "momentum") -> BacktestJob:
    return BacktestJob(run_id=run_id, user_id="user-1", dataset_id="dataset-1", strategy_id=strategy_id)


def build_processor(store, registry=None, bus=None, **kwargs) -> BacktestProcessor:
    telemetry = BacktestTelemetry(bus) if bus is not None else None
    engine = BacktestEngine(registry or registry_with(), telemetry=telemetry)
    return BacktestProcessor(
        store, candle_loader(two_instrument_candles(N_TICKS)), engine, telemetry=telemetry, **kwargs
    )


async def uninterrupted(**run_kwargs):
    store = InMemoryResultStore()
    await store.create_run(make_run(**run_kwargs))
    await build_processor(store).process(job_for(), make_dataset())
    return store


@pytest.mark.asyncio  # type: ignore
async def test_run_completes_with_metrics_from_persisted_history() -> None:
    bus = FakeBus()
    store = InMemoryResultStore()
    await store.create_run(make_run())
    outcome = await build_processor(store, bus=bus).process(job_for(), make_dataset())

    run = await store.get_run("run-1")
    assert outcome is not None
    assert run.status is RunStatus.COMPLETED
    assert run.checkpoint is None
    assert run.processed_count == N_TICKS
    results = await store.load_results("run-1")
    assert run.final_metrics["total_trades"] == len(results.trades) > 0
    assert run.final_metrics["final_value"] == outcome.final_value

    statuses = [event["status"] for event in bus.of(STATUS_TOPIC)]
    assert statuses == ["running", "completed"]
    assert bus.of(STATUS_TOPIC)[0]["payload"] == {"is_resuming": False, "total_ticks": N_TICKS}
    progress = [m["value"] for m in bus.of(METRIC_TOPIC) if m["name"] == "progress"]
    assert progress[-1] == 100.0


@pytest.mark.asyncio  # type: ignore
async def test_crash_then_recovery_reproduces_uninterrupted_run() -> None:
    baseline = await uninterrupted()

    store = CrashingStore(crash_on=2)
    await store.create_run(make_run())
    with pytest.raises(WorkerCrashed):
        await build_processor(store).process(job_for(), make_dataset())

    crashed = await store.get_run("run-1")
    assert crashed.status is RunStatus.RUNNING
    assert crashed.checkpoint.last_processed_index == 24
    # rows flushed for the failed checkpoint are orphans now
    assert (await store.get_persisted_counts("run-1")).snapshots > crashed.checkpoint.persisted_counts.snapshots

    queued: List[BacktestJob] = []

    async def enqueue(job: BacktestJob) -> None:
        queued.append(job)

    report = await RecoveryService(store, enqueue).recover_orphaned_runs()
    assert report.requeued == ["run-1"]
    assert queued[0].deterministic_seed == "seed-1"

    bus = FakeBus()
    await build_processor(store, bus=bus).process(queued[0], make_dataset())

    run = await store.get_run("run-1")
    expected = await baseline.get_run("run-1")
    assert run.status is RunStatus.COMPLETED
    assert run.auto_resume_count == 1
    assert bus.of(STATUS_TOPIC)[0]["payload"]["is_resuming"] is True
    assert await store.load_results("run-1") == await baseline.load_results("run-1")
    assert run.final_metrics == pytest.approx(expected.final_metrics)


@pytest.mark.asyncio  # type: ignore
async def test_pause_then_resume_reproduces_uninterrupted_run() -> None:
    baseline = await uninterrupted()

    redis = FakeRedis()
    pauses = PauseService(client=redis)
    store = InMemoryResultStore()
    await store.create_run(make_run())
    processor = build_processor(store, pause_service=pauses)

    await pauses.request_pause("run-1")
    outcome = await processor.process(job_for(), make_dataset())
    assert outcome is not None and outcome.paused
    paused = await store.get_run("run-1")
    assert paused.status is RunStatus.PAUSED
    assert paused.checkpoint.last_processed_index == 9
    assert not await pauses.is_pause_requested("run-1")

    resumed = await processor.request_resume("run-1")
    assert resumed.status is RunStatus.PENDING
    await processor.process(job_for(), make_dataset())

    run = await store.get_run("run-1")
    assert run.status is RunStatus.COMPLETED
    assert await store.load_results("run-1") == await baseline.load_results("run-1")


@pytest.mark.asyncio  # type: ignore
async def test_resume_requires_paused_run() -> None:
    store = InMemoryResultStore()
    await store.create_run(make_run())
    processor = build_processor(store)
    await processor.process(job_for(), make_dataset())
    with pytest.raises(InvalidStatusTransition, match="COMPLETED"):
        await processor.request_resume("run-1")
    with pytest.raises(KeyError):
        await processor.request_resume("missing")


def _delegating(hook) -> ScriptedStrategy:
    inner = MomentumStrategy()
    inner.prepare({})

    def script(context: StrategyContext) -> StrategyResult:
        hook(context)
        return inner.execute(context)

    return ScriptedStrategy(script)


@pytest.mark.asyncio  # type: ignore
async def test_user_cancel_keeps_partial_results() -> None:
    holder: Dict[str, Any] = {}

    def hook(context: StrategyContext) -> None:
        if context.metadata["tick"] == 12:
            assert holder["processor"].cancel(context.metadata["run_id"])

    bus = FakeBus()
    store = InMemoryResultStore()
    await store.create_run(make_run(strategy_id="cancelling"))
    processor = build_processor(store, registry=registry_with(cancelling=lambda: _delegating(hook)), bus=bus)
    holder["processor"] = processor

    assert await processor.process(job_for(strategy_id="cancelling"), make_dataset()) is None

    run = await store.get_run("run-1")
    assert run.status is RunStatus.CANCELLED
    assert run.error_message == "Cancelled by user"
    results = await store.load_results("run-1")
    assert len(results.snapshots) == 4
    assert bus.of(STATUS_TOPIC)[-1]["status"] == "cancelled"
    assert processor.cancel("run-1") is False


@pytest.mark.asyncio  # type: ignore
async def test_external_failure_stops_run_and_keeps_checkpoint() -> None:
    store = InMemoryResultStore()

    def hook(context: StrategyContext) -> None:
        if context.metadata["tick"] == 12:
            record = store._runs[context.metadata["run_id"]]
            record.status = RunStatus.FAILED
            record.error_message = "Killed by operator"

    await store.create_run(make_run(strategy_id="doomed", checkpoint_interval=5, heartbeat_interval=5))
    processor = build_processor(store, registry=registry_with(doomed=lambda: _delegating(hook)))
    await processor.process(job_for(strategy_id="doomed"), make_dataset())

    run = await store.get_run("run-1")
    assert run.status is RunStatus.FAILED
    assert run.error_message == "Killed by operator"
    assert run.checkpoint is not None
    assert run.checkpoint.last_processed_index == 14


@pytest.mark.asyncio  # type: ignore
async def test_unregistered_strategy_fails_run() -> None:
    bus = FakeBus()
    store = InMemoryResultStore()
    await store.create_run(make_run(strategy_id="ghost"))
    await build_processor(store, bus=bus).process(job_for(strategy_id="ghost"), make_dataset())

    run = await store.get_run("run-1")
    assert run.status is RunStatus.FAILED
    assert "ghost" in run.error_message
    assert bus.of(STATUS_TOPIC)[-1]["status"] == "failed"
    assert (await store.load_results("run-1")).is_empty()


@pytest.mark.parametrize(
    "dataset_kwargs,processor_kwargs,message",
    [
        ({"n_ticks": N_TICKS, "instruments": ("SOL",)}, {}, "No market data"),
        ({"instruments": ("BTC",)}, {"known_instruments": ["ETH"]}, "No instruments"),
    ],
)
@pytest.mark.asyncio  # type: ignore
async def test_data_problems_fail_run(dataset_kwargs, processor_kwargs, message) -> None:
    store = InMemoryResultStore()
    await store.create_run(make_run())
    await build_processor(store, **processor_kwargs).process(job_for(), make_dataset(**dataset_kwargs))

    run = await store.get_run("run-1")
    assert run.status is RunStatus.FAILED
    assert message in run.error_message


@pytest.mark.asyncio  # type: ignore
async def test_non_pending_run_is_skipped() -> None:
    store = InMemoryResultStore()
    run = make_run()
    run.status = RunStatus.COMPLETED
    await store.create_run(run)
    assert await build_processor(store).process(job_for(), make_dataset()) is None
    assert (await store.get_run("run-1")).status is RunStatus.COMPLETED
    assert await build_processor(store).process(job_for("unknown"), make_dataset()) is None


@pytest.mark.asyncio  # type: ignore
async def test_corrupted_checkpoint_fails_run() -> None:
    state = CheckpointManager("run-1").build(
        9, make_run().config.start_date, DeterministicRandom("seed-1"), Portfolio(10_000.0), ThrottleState(), 10_000.0
    )
    run = make_run()
    run.checkpoint = dataclasses.replace(state, peak_value=20_000.0)
    store = InMemoryResultStore()
    await store.create_run(run)
    await build_processor(store).process(job_for(), make_dataset())

    failed = await store.get_run("run-1")
    assert failed.status is RunStatus.FAILED
    assert "checksum" in failed.error_message
    assert failed.checkpoint is not None


async def _requeue(store) -> BacktestJob:
    queued: List[BacktestJob] = []

    async def enqueue(job: BacktestJob) -> None:
        queued.append(job)

    await RecoveryService(store, enqueue).recover_orphaned_runs(now=dt.datetime(2100, 1, 1, tzinfo=dt.timezone.utc))
    return queued[0]


@pytest.mark.asyncio  # type: ignore
async def test_crash_before_first_checkpoint_discards_flushed_rows() -> None:
    baseline = await uninterrupted()

    store = CrashingStore(crash_on=1)
    await store.create_run(make_run())
    with pytest.raises(WorkerCrashed):
        await build_processor(store).process(job_for(), make_dataset())
    crashed = await store.get_run("run-1")
    assert crashed.checkpoint is None
    assert (await store.get_persisted_counts("run-1")).snapshots > 0

    await build_processor(store).process(await _requeue(store), make_dataset())

    run = await store.get_run("run-1")
    expected = await baseline.get_run("run-1")
    assert run.status is RunStatus.COMPLETED
    assert await store.load_results("run-1") == await baseline.load_results("run-1")
    assert run.final_metrics["total_trades"] == expected.final_metrics["total_trades"]


@pytest.mark.asyncio  # type: ignore
async def test_restart_after_stale_checkpoint_discards_flushed_rows() -> None:
    baseline = await uninterrupted()

    store = CrashingStore(crash_on=2)
    await store.create_run(make_run())
    with pytest.raises(WorkerCrashed):
        await build_processor(store).process(job_for(), make_dataset())

    job = await _requeue(store)
    assert (await store.get_run("run-1")).checkpoint is None
    await build_processor(store).process(job, make_dataset())

    run = await store.get_run("run-1")
    assert run.status is RunStatus.COMPLETED
    assert await store.load_results("run-1") == await baseline.load_results("run-1")


class UnwritableStore(InMemoryResultStore):
    async def persist_incremental(self, run_id, results) -> None:
        raise ConnectionError("database went away")


@pytest.mark.asyncio  # type: ignore
async def test_cancel_with_unwritable_store_fails_run() -> None:
    holder: Dict[str, Any] = {}

    def hook(context: StrategyContext) -> None:
        if context.metadata["tick"] == 5:
            holder["processor"].cancel(context.metadata["run_id"])

    bus = FakeBus()
    store = UnwritableStore()
    await store.create_run(make_run(strategy_id="cancelling"))
    processor = build_processor(store, registry=registry_with(cancelling=lambda: _delegating(hook)), bus=bus)
    holder["processor"] = processor

    assert await processor.process(job_for(strategy_id="cancelling"), make_dataset()) is None

    run = await store.get_run("run-1")
    assert run.status is RunStatus.FAILED
    assert "Failed to persist results" in run.error_message
    assert bus.of(STATUS_TOPIC)[-1]["status"] == "failed"


class PausingWithoutCheckpoint(BacktestEngine):
    async def run(self, run, aligner, **kwargs) -> BacktestOutcome:
        return BacktestOutcome(
            run_id=run.id,
            status=RunStatus.PAUSED,
            portfolio=Portfolio(10_000.0),
            processed=10,
            total=len(aligner),
            peak_value=10_000.0,
            results=PartialResults(),
            persisted=PersistedCounts(),
        )


@pytest.mark.asyncio  # type: ignore
async def test_pause_without_checkpoint_fails_run() -> None:
    store = InMemoryResultStore()
    await store.create_run(make_run())
    processor = BacktestProcessor(
        store, candle_loader(two_instrument_candles(N_TICKS)), PausingWithoutCheckpoint(registry_with())
    )
    assert await processor.process(job_for(), make_dataset()) is None

    run = await store.get_run("run-1")
    assert run.status is RunStatus.FAILED
    assert "paused without a checkpoint" in run.error_message
