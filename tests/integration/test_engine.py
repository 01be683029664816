"""End-to-end tests of the simulation loop without the job processor."""

from __future__ import annotations

from typing import List

import pytest  # type: ignore

from backtester.checkpoint import CheckpointManager
from backtester.engine import BacktestEngine, CancellationToken
from backtester.exceptions import ExternalCancellation, StrategyNotRegistered
from backtester.market_data import MarketDataAligner
from backtester.models import RunStatus, SignalAction, TradingSignal
from backtester.services.result_store import InMemoryResultStore
from backtester.services.telemetry import LOG_TOPIC, METRIC_TOPIC, BacktestTelemetry
from backtester.strategies.base import StrategyContext, StrategyResult
from tests.helpers.fake_bus import FakeBus
from tests.helpers.market import (
    HOUR,
    START,
    NoSignalStrategy,
    ScriptedStrategy,
    hourly_candles,
    make_run,
    registry_with,
    two_instrument_candles,
)


def momentum_engine(telemetry=None) -> BacktestEngine:
    return BacktestEngine(registry_with(), telemetry=telemetry)


@pytest.mark.asyncio  # type: ignore
async def test_no_signals_keeps_capital() -> None:
    run = make_run(strategy_id="idle", n_ticks=2, initial_capital=1000.0, fee_rate=0.0)
    engine = BacktestEngine(registry_with(idle=NoSignalStrategy))
    outcome = await engine.run(run, MarketDataAligner(hourly_candles("BTC", [102.0, 108.0])))

    assert outcome.status is RunStatus.COMPLETED
    assert outcome.results.trades == []
    assert outcome.final_value == 1000.0
    assert outcome.processed == outcome.total == 2
    assert outcome.results.snapshots[-1].portfolio_value == 1000.0


@pytest.mark.asyncio  # type: ignore
async def test_same_seed_same_results() -> None:
    candles = two_instrument_candles(120)
    first = await momentum_engine().run(make_run(n_ticks=120), MarketDataAligner(candles))
    second = await momentum_engine().run(make_run(n_ticks=120), MarketDataAligner(candles))

    assert first.results.trades
    assert first.results == second.results
    assert first.final_value == second.final_value

    other = await momentum_engine().run(make_run(n_ticks=120, seed="seed-2"), MarketDataAligner(candles))
    assert [t.quantity for t in other.results.trades] != [t.quantity for t in first.results.trades]


@pytest.mark.asyncio  # type: ignore
async def test_portfolio_accounting_holds_every_tick() -> None:
    outcome = await momentum_engine().run(
        make_run(n_ticks=80, snapshot_interval=1), MarketDataAligner(two_instrument_candles(80))
    )
    assert len(outcome.results.snapshots) == 80
    for snap in outcome.results.snapshots:
        assert snap.cash_balance >= 0
        holdings = sum(h["value"] for h in snap.holdings.values())
        assert snap.cash_balance + holdings == pytest.approx(snap.portfolio_value)
        for h in snap.holdings.values():
            assert h["quantity"] > 0
            assert h["value"] == pytest.approx(h["quantity"] * h["price"])
        assert 0.0 <= snap.drawdown < 1.0


@pytest.mark.asyncio  # type: ignore
async def test_raising_strategy_only_loses_the_tick() -> None:
    def script(context: StrategyContext) -> StrategyResult:
        if context.metadata["tick"] == 3:
            raise ValueError("bad indicator")
        return StrategyResult(success=True, signals=[TradingSignal(SignalAction.BUY, "BTC", percentage=0.1)])

    bus = FakeBus()
    engine = BacktestEngine(registry_with(scripted=lambda: ScriptedStrategy(script)), BacktestTelemetry(bus))
    run = make_run(strategy_id="scripted", n_ticks=10)
    outcome = await engine.run(run, MarketDataAligner(hourly_candles("BTC", [100.0] * 10)))

    assert outcome.status is RunStatus.COMPLETED
    assert len(outcome.tick_errors) == 1
    assert "bad indicator" in outcome.tick_errors[0]
    (log,) = bus.of(LOG_TOPIC)
    assert log["level"] == "warning"
    assert all(t.timestamp != START + 3 * HOUR for t in outcome.results.trades)
    assert {m["name"] for m in bus.of(METRIC_TOPIC)} == {"portfolio_value"}


@pytest.mark.asyncio  # type: ignore
async def test_unknown_strategy_aborts_before_first_tick() -> None:
    run = make_run(strategy_id="missing", n_ticks=5)
    with pytest.raises(StrategyNotRegistered):
        await momentum_engine().run(run, MarketDataAligner(hourly_candles("BTC", [1.0] * 5)))


@pytest.mark.asyncio  # type: ignore
async def test_strategy_never_sees_the_future() -> None:
    violations: List[str] = []
    seen_ticks: List[int] = []

    def script(context: StrategyContext) -> StrategyResult:
        seen_ticks.append(context.metadata["tick"])
        for instrument, history in context.price_history.items():
            if any(c.timestamp > context.timestamp for c in history):
                violations.append(f"{instrument}@{context.timestamp}")
        return StrategyResult(success=True)

    engine = BacktestEngine(registry_with(scripted=lambda: ScriptedStrategy(script)))
    await engine.run(make_run(strategy_id="scripted", n_ticks=30), MarketDataAligner(two_instrument_candles(30)))

    assert violations == []
    assert seen_ticks == list(range(30))


@pytest.mark.asyncio  # type: ignore
async def test_cancellation_stops_at_heartbeat_with_partial_results() -> None:
    token = CancellationToken()
    token.cancel("Cancelled by user")
    with pytest.raises(ExternalCancellation) as excinfo:
        await momentum_engine().run(
            make_run(n_ticks=50), MarketDataAligner(two_instrument_candles(50)), cancel_token=token
        )
    assert excinfo.value.status is RunStatus.CANCELLED
    assert excinfo.value.reason == "Cancelled by user"
    assert len(excinfo.value.partial.snapshots) == 2


@pytest.mark.asyncio  # type: ignore
async def test_pause_and_resume_match_uninterrupted_run() -> None:
    candles = two_instrument_candles(100)

    baseline_store = InMemoryResultStore()
    baseline_run = make_run()
    await baseline_store.create_run(baseline_run)
    baseline = await momentum_engine().run(baseline_run, MarketDataAligner(candles), store=baseline_store)

    store = InMemoryResultStore()
    run = make_run()
    await store.create_run(run)
    probes = 0

    async def pause_probe() -> bool:
        nonlocal probes
        probes += 1
        return probes == 2

    paused = await momentum_engine().run(run, MarketDataAligner(candles), store=store, pause_probe=pause_probe)
    assert paused.paused
    assert paused.processed == 20
    assert paused.checkpoint is not None
    assert paused.checkpoint.last_processed_index == 19

    restored = CheckpointManager.restore(paused.checkpoint)
    await store.cleanup_orphaned_results(run.id, restored.persisted_counts)
    resumed = await momentum_engine().run(run, MarketDataAligner(candles), store=store, restored=restored)

    assert resumed.status is RunStatus.COMPLETED
    assert resumed.final_value == baseline.final_value
    assert await store.load_results(run.id) == await baseline_store.load_results(baseline_run.id)
