"""
The backtest simulation loop.

``BacktestEngine.run`` replays one run over a ``MarketDataAligner``.  Every
tick goes through the same steps, strictly in order:

1. advance the aligner cursors and mark the portfolio to the visible closes;
2. ask the strategy for signals (a raising strategy yields none);
3. throttle the signals;
4. execute the accepted signals through the trade ledger;
5. update peak value, take periodic snapshots and checkpoints;
6. on heartbeat ticks report progress, then honour cancellation and pause
   requests.

The order of RNG draws and throttle updates depends only on the data and
the seed, which makes two runs with the same inputs identical.  A run
resumed from a checkpoint restores the RNG, portfolio, throttle and peak
value and continues at the next tick.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, List, Mapping, Optional

from .checkpoint import CheckpointManager, RestoredState
from .exceptions import ExternalCancellation
from .market_data import MarketDataAligner
from .models import (
    BacktestRun,
    CheckpointState,
    PartialResults,
    PerformanceSnapshot,
    PersistedCounts,
    RunStatus,
    SignalAction,
    SignalRecord,
    TradingSignal,
    to_epoch_ms,
)
from .portfolio import Portfolio, TradeLedger
from .rng import DeterministicRandom
from .slippage import SlippageModel
from .strategies import StrategyFactory
from .strategies.base import StrategyContext
from .strategy_adapter import StrategyExecutionAdapter
from .throttle import SignalThrottle, ThrottleState

if TYPE_CHECKING:
    from .services.result_store import ResultStore
    from .services.telemetry import BacktestTelemetry

logger = logging.getLogger(__name__)

HeartbeatHook = Callable[[int, int], Awaitable[None]]
PauseProbe = Callable[[], Awaitable[bool]]
CancelProbe = Callable[[], Awaitable[Optional[str]]]


class CancellationToken:
    """Cooperative stop flag checked by the engine on heartbeat ticks.

    ``cancel`` sets the flag directly.  An optional ``probe`` is awaited on
    every check; a non-empty reason from it means the run was forced into
    FAILED from outside.
    """

    def __init__(self, probe: Optional[CancelProbe] = None) -> None:
        self._probe = probe
        self.reason: Optional[str] = None
        self.status: Optional[RunStatus] = None

    @property
    def cancelled(self) -> bool:
        return self.status is not None

    def cancel(self, reason: str, status: RunStatus = RunStatus.CANCELLED) -> None:
        if self.status is None:
            self.reason = reason
            self.status = status

    async def check(self) -> bool:
        if self.status is None and self._probe is not None:
            reason = await self._probe()
            if reason:
                self.cancel(reason, RunStatus.FAILED)
        return self.cancelled


@dataclass
class BacktestOutcome:
    """What a finished or paused engine pass hands back to its caller.

    With a result store, ``results`` only holds rows produced after the
    last flush (normally nothing).  Without one it holds every row.
    """

    run_id: str
    status: RunStatus
    portfolio: Portfolio
    processed: int
    total: int
    peak_value: float
    results: PartialResults
    persisted: PersistedCounts
    checkpoint: Optional[CheckpointState] = None
    tick_errors: List[str] = field(default_factory=list)

    @property
    def final_value(self) -> float:
        return self.portfolio.total_value

    @property
    def paused(self) -> bool:
        return self.status is RunStatus.PAUSED


def _signal_record(signal: TradingSignal, price: float, timestamp: dt.datetime) -> SignalRecord:
    if signal.is_risk_control:
        signal_type = "RISK_CONTROL"
    elif signal.action is SignalAction.BUY:
        signal_type = "ENTRY"
    else:
        signal_type = "EXIT"
    direction = {SignalAction.BUY: "LONG", SignalAction.SELL: "SHORT"}.get(signal.action, "FLAT")
    quantity = signal.quantity if signal.quantity is not None else signal.percentage
    return SignalRecord(
        timestamp=timestamp,
        instrument=signal.instrument,
        signal_type=signal_type,
        direction=direction,
        quantity=quantity if quantity is not None else 0.0,
        price=price,
        reason=signal.reason,
        confidence=signal.confidence,
    )


class BacktestEngine:
    def __init__(
        self,
        registry: Mapping[str, StrategyFactory],
        telemetry: Optional["BacktestTelemetry"] = None,
    ) -> None:
        self.adapter = StrategyExecutionAdapter(registry)
        self.telemetry = telemetry
        self.throttle = SignalThrottle()

    async def _log(self, run_id: str, level: str, message: str) -> None:
        if self.telemetry is not None:
            await self.telemetry.publish_log(run_id, level, message)

    async def _metric(self, run_id: str, name: str, value: float, unit: str = "") -> None:
        if self.telemetry is not None:
            await self.telemetry.publish_metric(run_id, name, value, unit)

    async def run(
        self,
        run: BacktestRun,
        aligner: MarketDataAligner,
        *,
        store: Optional["ResultStore"] = None,
        restored: Optional[RestoredState] = None,
        cancel_token: Optional[CancellationToken] = None,
        pause_probe: Optional[PauseProbe] = None,
        on_heartbeat: Optional[HeartbeatHook] = None,
    ) -> BacktestOutcome:
        """Simulate ``run`` over every tick of ``aligner``.

        Parameters
        ----------
        run : BacktestRun
            The run and its configuration snapshot.
        aligner : MarketDataAligner
            Market data for the run.  It must not have been advanced past
            the resume index.
        store : ResultStore, optional
            Where results and checkpoints are written.  Without a store the
            results stay in memory and are returned in the outcome.
        restored : RestoredState, optional
            State rebuilt from a validated checkpoint.  Orphan cleanup must
            already have happened.
        cancel_token : CancellationToken, optional
            Checked on heartbeat ticks.
        pause_probe : callable, optional
            Awaited on heartbeat ticks; ``True`` pauses the run after a
            checkpoint.
        on_heartbeat : callable, optional
            Awaited with ``(processed, total)`` on heartbeat ticks.

        Raises
        ------
        StrategyNotRegistered
            If the run's strategy id is not in the registry.
        PersistenceFailure
            If a flush or checkpoint write fails.
        ExternalCancellation
            If the cancellation token fired.  ``partial`` carries the rows
            produced since the last flush.
        """
        config = run.config
        bound = self.adapter.bind(config.strategy_id, config.strategy_params)
        ledger = TradeLedger(config.fee_rate, SlippageModel(config.slippage), config.sizing)
        intervals = config.checkpoint

        if restored is not None:
            start_index = restored.start_index
            portfolio = restored.portfolio
            rng = restored.rng
            throttle_state = restored.throttle
            peak_value = restored.peak_value
            persisted = restored.persisted_counts
            logger.info("Resuming run %s at tick %d", run.id, start_index)
        else:
            start_index = 0
            portfolio = Portfolio(config.initial_capital)
            rng = DeterministicRandom(run.seed)
            throttle_state = ThrottleState()
            peak_value = config.initial_capital
            persisted = PersistedCounts()

        manager = CheckpointManager(run.id, store, persisted)
        buffers = PartialResults()
        tick_errors: List[str] = []
        total = len(aligner)
        last_index = total - 1
        instruments = aligner.instruments

        for index in range(start_index, total):
            timestamp = aligner.advance(index)
            prices = aligner.prices()
            portfolio.revalue(prices)

            history: Dict[str, list] = {inst: aligner.history(inst) for inst in instruments}
            context = StrategyContext(
                instruments=instruments,
                price_history=history,
                timestamp=timestamp,
                config=config.strategy_params,
                positions=portfolio.quantities(),
                available_balance=portfolio.cash,
                metadata={"run_id": run.id, "tick": index},
            )
            signals, error = self.adapter.evaluate(bound, context, index)
            if error is not None:
                tick_errors.append(str(error))
                await self._log(run.id, "warning", str(error))

            tradable = [s for s in signals if s.instrument in prices]
            if len(tradable) != len(signals):
                logger.debug("Run %s tick %d: dropped signals for instruments without data", run.id, index)
            accepted = self.throttle.filter(tradable, throttle_state, config.throttle, to_epoch_ms(timestamp))

            for signal in accepted:
                candle = aligner.candle(signal.instrument)
                if candle is None:
                    continue
                buffers.signals.append(_signal_record(signal, candle.close, timestamp))
                execution = ledger.execute(portfolio, signal, candle, rng, timestamp)
                if execution is None:
                    continue
                buffers.trades.append(execution.trade)
                buffers.fills.append(execution.fill)
                logger.debug(
                    "Run %s %s %.8f %s @ %.8f (fee %.8f)",
                    run.id,
                    execution.trade.action.value,
                    execution.trade.quantity,
                    signal.instrument,
                    execution.trade.price,
                    execution.trade.fee,
                )

            value = portfolio.total_value
            peak_value = max(peak_value, value)
            drawdown = (peak_value - value) / peak_value if peak_value > 0 else 0.0

            if (index + 1) % intervals.snapshot_interval == 0 or index == last_index:
                buffers.snapshots.append(
                    PerformanceSnapshot(
                        timestamp=timestamp,
                        portfolio_value=value,
                        cash_balance=portfolio.cash,
                        holdings=portfolio.holdings(),
                        cumulative_return=(value - config.initial_capital) / config.initial_capital,
                        drawdown=drawdown,
                    )
                )
                await self._metric(run.id, "portfolio_value", value, "USD")

            if (index + 1) % intervals.checkpoint_interval == 0 and index < last_index:
                await manager.checkpoint(index, timestamp, rng, portfolio, throttle_state, peak_value, buffers, total)

            if (index + 1) % intervals.heartbeat_interval == 0:
                if on_heartbeat is not None:
                    await on_heartbeat(index + 1, total)
                if index == last_index:
                    continue
                if cancel_token is not None and await cancel_token.check():
                    logger.info("Run %s stopped at tick %d: %s", run.id, index, cancel_token.reason)
                    raise ExternalCancellation(
                        cancel_token.reason or "cancelled", cancel_token.status, partial=buffers.drain()
                    )
                if pause_probe is not None and await pause_probe():
                    state = await manager.checkpoint(
                        index, timestamp, rng, portfolio, throttle_state, peak_value, buffers, total
                    )
                    logger.info("Run %s paused after tick %d", run.id, index)
                    return BacktestOutcome(
                        run_id=run.id,
                        status=RunStatus.PAUSED,
                        portfolio=portfolio,
                        processed=index + 1,
                        total=total,
                        peak_value=peak_value,
                        results=buffers,
                        persisted=manager.persisted,
                        checkpoint=state,
                        tick_errors=tick_errors,
                    )

        await manager.flush(buffers)
        logger.info(
            "Run %s finished %d ticks: final value %.2f, %d recovered tick errors",
            run.id,
            total,
            portfolio.total_value,
            len(tick_errors),
        )
        return BacktestOutcome(
            run_id=run.id,
            status=RunStatus.COMPLETED,
            portfolio=portfolio,
            processed=total,
            total=total,
            peak_value=peak_value,
            results=buffers,
            persisted=manager.persisted,
            checkpoint=manager.last_checkpoint,
            tick_errors=tick_errors,
        )
