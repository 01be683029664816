"""
Backtest job processor.

The processor is the glue between a queued ``BacktestJob`` and the
simulation engine.  It owns the run's lifecycle:

* skip jobs whose run is no longer PENDING;
* resolve the instrument universe and load market data;
* on resume, validate the stored checkpoint and remove orphaned rows;
* move the run to RUNNING and start the engine with heartbeat, pause and
  cancellation hooks wired to the result store and the pause service;
* on completion compute the metrics from the persisted history and mark
  the run COMPLETED.

Fatal errors mark the run FAILED with the error message; the last
checkpoint is kept for diagnosis.  A user cancellation keeps the partial
results produced so far and marks the run CANCELLED.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional

from .checkpoint import CheckpointManager, RestoredState, ensure_transition
from .engine import BacktestEngine, BacktestOutcome, CancellationToken
from .exceptions import BacktestError, ExternalCancellation, PersistenceFailure
from .market_data import MarketDataLoader, resolve_instruments
from .metrics import MetricsCalculator
from .models import TERMINAL_STATUSES, BacktestJob, BacktestRun, MarketDataset, PersistedCounts, RunStatus
from .services.pause_service import PauseService
from .services.result_store import ResultStore
from .services.telemetry import BacktestTelemetry

logger = logging.getLogger(__name__)

# The run status record is polled on every n-th heartbeat.
WATCHDOG_POLL_EVERY = 3


class BacktestProcessor:
    def __init__(
        self,
        store: ResultStore,
        loader: MarketDataLoader,
        engine: BacktestEngine,
        telemetry: Optional[BacktestTelemetry] = None,
        pause_service: Optional[PauseService] = None,
        known_instruments: Optional[Iterable[str]] = None,
    ) -> None:
        self.store = store
        self.loader = loader
        self.engine = engine
        self.telemetry = telemetry
        self.pause_service = pause_service
        self.known_instruments = list(known_instruments) if known_instruments is not None else None
        self._tokens: Dict[str, CancellationToken] = {}

    async def _status(self, run_id: str, status: str, message: Optional[str] = None, payload=None) -> None:
        if self.telemetry is not None:
            await self.telemetry.publish_status(run_id, status, message, payload)

    def cancel(self, run_id: str, reason: str = "Cancelled by user") -> bool:
        """Ask an active run to stop at its next heartbeat.  Returns False if the run is not active here."""
        token = self._tokens.get(run_id)
        if token is None:
            return False
        token.cancel(reason, RunStatus.CANCELLED)
        return True

    async def request_resume(self, run_id: str) -> BacktestRun:
        """Move a PAUSED run back to PENDING so that it can be enqueued again."""
        run = await self.store.get_run(run_id)
        if run is None:
            raise KeyError(f"Backtest run {run_id} not found")
        ensure_transition(run.status, RunStatus.PENDING)
        await self.store.update_status(run_id, RunStatus.PENDING)
        await self._status(run_id, "pending", "Resume requested")
        logger.info("Run %s queued for resume from checkpoint", run_id)
        run.status = RunStatus.PENDING
        return run

    def _watchdog(self, run_id: str):
        calls = 0

        async def probe() -> Optional[str]:
            nonlocal calls
            calls += 1
            if calls % WATCHDOG_POLL_EVERY:
                return None
            if await self.store.get_status(run_id) is RunStatus.FAILED:
                return "Run was marked FAILED externally"
            return None

        return probe

    def _pause_probe(self, run_id: str):
        if self.pause_service is None:
            return None
        pause_service = self.pause_service

        async def probe() -> bool:
            try:
                return await pause_service.is_pause_requested(run_id)
            except Exception as exc:
                logger.warning("Could not read pause flag for run %s: %s", run_id, exc)
                return False

        return probe

    def _heartbeat(self, run_id: str):
        async def heartbeat(processed: int, total: int) -> None:
            await self.store.record_heartbeat(run_id, processed, total)
            if self.telemetry is not None:
                await self.telemetry.publish_metric(run_id, "progress", processed * 100.0 / max(total, 1), "%")

        return heartbeat

    async def process(self, job: BacktestJob, dataset: MarketDataset) -> Optional[BacktestOutcome]:
        """Run the backtest behind ``job`` to completion, pause, cancellation or failure.

        :return: the engine outcome for completed or paused runs, otherwise ``None``
        """
        run = await self.store.get_run(job.run_id)
        if run is None:
            logger.error("Backtest run %s not found; dropping job", job.run_id)
            return None
        if run.status is not RunStatus.PENDING:
            logger.info("Skipping run %s in status %s", run.id, run.status.value)
            return None
        if job.deterministic_seed and not run.config.seed:
            run.config = run.config.model_copy(update={"seed": job.deterministic_seed})

        is_resuming = run.checkpoint is not None
        token = CancellationToken(self._watchdog(run.id))
        self._tokens[run.id] = token
        try:
            config = run.config
            requested = config.instruments or dataset.instrument_universe
            instruments, warnings = resolve_instruments(requested, self.known_instruments)
            aligner = await self.loader.load(
                dataset, instruments, config.start_date, config.end_date, config.max_lookback
            )

            restored: Optional[RestoredState] = None
            if run.checkpoint is not None:
                restored = CheckpointManager.restore(run.checkpoint)
            # rows flushed after the last checkpoint, or with no checkpoint at all, are orphans
            await self.store.cleanup_orphaned_results(
                run.id, restored.persisted_counts if restored is not None else PersistedCounts()
            )

            ensure_transition(run.status, RunStatus.RUNNING)
            run.warnings.extend(w for w in warnings if w not in run.warnings)
            await self.store.update_run(run)
            await self.store.update_status(run.id, RunStatus.RUNNING)
            run.status = RunStatus.RUNNING
            logger.info(
                "Run %s %s with %d instruments over %d ticks",
                run.id,
                "resuming" if is_resuming else "starting",
                len(instruments),
                len(aligner),
            )
            await self._status(run.id, "running", payload={"is_resuming": is_resuming, "total_ticks": len(aligner)})

            outcome = await self.engine.run(
                run,
                aligner,
                store=self.store,
                restored=restored,
                cancel_token=token,
                pause_probe=self._pause_probe(run.id),
                on_heartbeat=self._heartbeat(run.id),
            )
            if outcome.paused:
                await self._pause(run, outcome)
            else:
                await self._complete(run, outcome)
            return outcome
        except ExternalCancellation as exc:
            await self._stopped(run, exc)
            return None
        except Exception as exc:
            logger.exception("Backtest run %s failed", run.id)
            await self._fail(run.id, exc)
            return None
        finally:
            self._tokens.pop(run.id, None)

    async def _pause(self, run: BacktestRun, outcome: BacktestOutcome) -> None:
        ensure_transition(run.status, RunStatus.PAUSED)
        if outcome.checkpoint is None:
            raise BacktestError(f"Run {run.id} paused without a checkpoint")
        await self.store.mark_paused(run.id, outcome.checkpoint)
        if self.pause_service is not None:
            await self.pause_service.clear_pause_flag(run.id)
        logger.info("Run %s paused at %d/%d", run.id, outcome.processed, outcome.total)
        await self._status(
            run.id, "paused", payload={"processed": outcome.processed, "total": outcome.total}
        )

    async def _complete(self, run: BacktestRun, outcome: BacktestOutcome) -> None:
        results = await self.store.load_results(run.id)
        calculator = MetricsCalculator(run.config.metrics)
        metrics = calculator.calculate(
            run.config.initial_capital,
            results.snapshots,
            results.trades,
            run.config.duration_days,
            final_value=outcome.final_value,
        ).to_dict()
        ensure_transition(run.status, RunStatus.COMPLETED)
        await self.store.persist_success(run.id, metrics)
        if self.telemetry is not None:
            for name in ("final_value", "total_return", "sharpe_ratio", "max_drawdown"):
                await self.telemetry.publish_metric(run.id, name, metrics[name])
        logger.info(
            "Run %s completed: %d trades, final value %.2f", run.id, metrics["total_trades"], metrics["final_value"]
        )
        await self._status(run.id, "completed", payload={"metrics": metrics})

    async def _stopped(self, run: BacktestRun, exc: ExternalCancellation) -> None:
        if exc.status is RunStatus.FAILED:
            # the watchdog already owns the status; keep the last checkpoint
            logger.warning("Run %s aborted: %s", run.id, exc.reason)
            await self._status(run.id, "failed", exc.reason)
            return
        if exc.partial is not None:
            try:
                await CheckpointManager(run.id, self.store).flush(exc.partial)
            except PersistenceFailure as err:
                logger.exception("Could not keep partial results of cancelled run %s", run.id)
                await self._fail(run.id, err)
                return
        await self.store.mark_cancelled(run.id, exc.reason)
        logger.info("Run %s cancelled: %s", run.id, exc.reason)
        await self._status(run.id, "cancelled", exc.reason)

    async def _fail(self, run_id: str, exc: BaseException) -> None:
        message = str(exc) or exc.__class__.__name__
        status = await self.store.get_status(run_id)
        if status in TERMINAL_STATUSES:
            logger.info("Run %s already %s; not marking FAILED", run_id, status.value)
            return
        await self.store.mark_failed(run_id, message)
        await self._status(run_id, "failed", message)
