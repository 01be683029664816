"""
Crash recovery for backtest runs.

After a restart, runs left in RUNNING or PAUSED have no worker attached.
``RecoveryService.recover_orphaned_runs`` resets them to PENDING and
hands them back to the job queue so that the processor resumes them from
their last checkpoint.  A run is given up on (marked FAILED) after
``max_auto_resume`` automatic attempts.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from .checkpoint import CheckpointManager
from .config import CheckpointConfig
from .models import BacktestJob, BacktestRun, RunStatus
from .services.result_store import ResultStore

logger = logging.getLogger(__name__)

MAX_AUTO_RESUME_COUNT = 3

Enqueue = Callable[[BacktestJob], Awaitable[None]]


@dataclass
class RecoveryReport:
    requeued: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    stale_checkpoints: List[str] = field(default_factory=list)


class RecoveryService:
    def __init__(
        self,
        store: ResultStore,
        enqueue: Enqueue,
        max_auto_resume: int = MAX_AUTO_RESUME_COUNT,
        max_checkpoint_age_hours: Optional[float] = None,
    ) -> None:
        self.store = store
        self.enqueue = enqueue
        self.max_auto_resume = max_auto_resume
        self.max_checkpoint_age_hours = (
            max_checkpoint_age_hours
            if max_checkpoint_age_hours is not None
            else CheckpointConfig().max_checkpoint_age_hours
        )

    async def recover_orphaned_runs(self, now: Optional[dt.datetime] = None) -> RecoveryReport:
        report = RecoveryReport()
        orphaned = await self.store.list_runs([RunStatus.RUNNING, RunStatus.PAUSED])
        if not orphaned:
            logger.info("No orphaned RUNNING/PAUSED backtests found")
            return report
        logger.info("Found %d orphaned backtest(s) to recover", len(orphaned))
        for run in orphaned:
            try:
                await self._recover(run, report, now)
            except Exception as exc:
                logger.exception("Failed to recover backtest %s", run.id)
                await self.store.mark_failed(run.id, f"Recovery failed: {exc}")
                report.failed.append(run.id)
        return report

    async def _recover(self, run: BacktestRun, report: RecoveryReport, now: Optional[dt.datetime]) -> None:
        if run.auto_resume_count >= self.max_auto_resume:
            logger.warning(
                "Backtest %s reached max auto-resume count (%d/%d); marking FAILED",
                run.id,
                run.auto_resume_count,
                self.max_auto_resume,
            )
            await self.store.mark_failed(
                run.id, f"Exceeded maximum automatic recovery attempts ({self.max_auto_resume})"
            )
            report.failed.append(run.id)
            return

        if run.checkpoint is not None and CheckpointManager.is_stale(
            run.last_checkpoint_at, self.max_checkpoint_age_hours, now
        ):
            logger.warning("Clearing stale checkpoint for backtest %s", run.id)
            run.checkpoint = None
            run.last_checkpoint_at = None
            run.processed_count = 0
            report.stale_checkpoints.append(run.id)

        if not run.user_id or not run.dataset_id:
            raise ValueError(
                f"Missing required fields for recovery: user_id={run.user_id or 'missing'}, "
                f"dataset_id={run.dataset_id or 'missing'}"
            )

        run.auto_resume_count += 1
        run.status = RunStatus.PENDING
        await self.store.update_run(run)
        await self.enqueue(
            BacktestJob(
                run_id=run.id,
                user_id=run.user_id,
                dataset_id=run.dataset_id,
                strategy_id=run.config.strategy_id,
                deterministic_seed=run.seed,
            )
        )
        report.requeued.append(run.id)
        logger.info(
            "Re-queued backtest %s for recovery (attempt %d/%d, checkpoint=%s)",
            run.id,
            run.auto_resume_count,
            self.max_auto_resume,
            run.checkpoint is not None,
        )
