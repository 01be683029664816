"""
Result store
============

The persistence collaborator of the backtester.  A result store keeps run
records (status, configuration snapshot, checkpoint, final metrics) and the
result rows a run produces: trades, signals, fills and performance
snapshots.

Rows are append-only and numbered per run and entity.  That numbering is
what makes crash recovery possible: a checkpoint records how many rows of
each entity existed when it was written, and
``cleanup_orphaned_results`` deletes anything numbered beyond that.

``ResultStore`` describes the interface.  ``InMemoryResultStore`` keeps
everything in dictionaries and is used by tests and the CLI; see
``db_result_store`` for the SQLAlchemy implementation.
"""

from __future__ import annotations

import asyncio
import copy
import datetime as dt
import logging
from typing import Dict, Iterable, List, Optional, Protocol

from ..models import (
    BacktestRun,
    CheckpointState,
    PartialResults,
    PersistedCounts,
    RunStatus,
)

logger = logging.getLogger(__name__)


class ResultStore(Protocol):
    async def create_run(self, run: BacktestRun) -> None:
        ...

    async def get_run(self, run_id: str) -> Optional[BacktestRun]:
        ...

    async def get_status(self, run_id: str) -> Optional[RunStatus]:
        ...

    async def list_runs(self, statuses: Iterable[RunStatus]) -> List[BacktestRun]:
        ...

    async def update_run(self, run: BacktestRun) -> None:
        ...

    async def update_status(self, run_id: str, status: RunStatus, error_message: Optional[str] = None) -> None:
        ...

    async def record_heartbeat(self, run_id: str, processed_count: int, total_count: int) -> None:
        ...

    async def persist_incremental(self, run_id: str, results: PartialResults) -> None:
        ...

    async def save_checkpoint(
        self, run_id: str, checkpoint: CheckpointState, processed_count: int, total_count: int
    ) -> None:
        ...

    async def clear_checkpoint(self, run_id: str) -> None:
        ...

    async def get_persisted_counts(self, run_id: str) -> PersistedCounts:
        ...

    async def cleanup_orphaned_results(self, run_id: str, expected: PersistedCounts) -> PersistedCounts:
        ...

    async def load_results(self, run_id: str) -> PartialResults:
        ...

    async def persist_success(self, run_id: str, metrics: Dict[str, float]) -> None:
        ...

    async def mark_failed(self, run_id: str, message: str) -> None:
        ...

    async def mark_cancelled(self, run_id: str, message: Optional[str] = None) -> None:
        ...

    async def mark_paused(self, run_id: str, checkpoint: CheckpointState) -> None:
        ...


class InMemoryResultStore:
    """Result store kept in process memory."""

    def __init__(self) -> None:
        self._runs: Dict[str, BacktestRun] = {}
        self._results: Dict[str, PartialResults] = {}
        self._lock = asyncio.Lock()

    def _require(self, run_id: str) -> BacktestRun:
        run = self._runs.get(run_id)
        if run is None:
            raise KeyError(f"Backtest run {run_id} not found")
        return run

    def _rows(self, run_id: str) -> PartialResults:
        return self._results.setdefault(run_id, PartialResults())

    async def create_run(self, run: BacktestRun) -> None:
        async with self._lock:
            self._runs[run.id] = copy.deepcopy(run)

    async def get_run(self, run_id: str) -> Optional[BacktestRun]:
        run = self._runs.get(run_id)
        return copy.deepcopy(run) if run is not None else None

    async def get_status(self, run_id: str) -> Optional[RunStatus]:
        run = self._runs.get(run_id)
        return run.status if run is not None else None

    async def list_runs(self, statuses: Iterable[RunStatus]) -> List[BacktestRun]:
        wanted = set(statuses)
        return [copy.deepcopy(r) for r in self._runs.values() if r.status in wanted]

    async def update_run(self, run: BacktestRun) -> None:
        async with self._lock:
            self._require(run.id)
            self._runs[run.id] = copy.deepcopy(run)

    async def update_status(self, run_id: str, status: RunStatus, error_message: Optional[str] = None) -> None:
        async with self._lock:
            run = self._require(run_id)
            run.status = status
            if error_message is not None:
                run.error_message = error_message

    async def record_heartbeat(self, run_id: str, processed_count: int, total_count: int) -> None:
        async with self._lock:
            run = self._require(run_id)
            run.processed_count = processed_count
            run.total_count = total_count

    async def persist_incremental(self, run_id: str, results: PartialResults) -> None:
        async with self._lock:
            self._require(run_id)
            rows = self._rows(run_id)
            rows.trades.extend(results.trades)
            rows.signals.extend(results.signals)
            rows.fills.extend(results.fills)
            rows.snapshots.extend(results.snapshots)

    async def save_checkpoint(
        self, run_id: str, checkpoint: CheckpointState, processed_count: int, total_count: int
    ) -> None:
        async with self._lock:
            run = self._require(run_id)
            run.checkpoint = checkpoint
            run.last_checkpoint_at = dt.datetime.now(dt.timezone.utc)
            run.processed_count = processed_count
            run.total_count = total_count

    async def clear_checkpoint(self, run_id: str) -> None:
        async with self._lock:
            run = self._require(run_id)
            run.checkpoint = None
            run.last_checkpoint_at = None

    async def get_persisted_counts(self, run_id: str) -> PersistedCounts:
        return self._rows(run_id).counts()

    async def cleanup_orphaned_results(self, run_id: str, expected: PersistedCounts) -> PersistedCounts:
        async with self._lock:
            rows = self._rows(run_id)
            before = rows.counts()
            del rows.trades[expected.trades :]
            del rows.signals[expected.signals :]
            del rows.fills[expected.fills :]
            del rows.snapshots[expected.snapshots :]
            after = rows.counts()
        deleted = PersistedCounts(
            before.trades - after.trades,
            before.signals - after.signals,
            before.fills - after.fills,
            before.snapshots - after.snapshots,
        )
        if deleted.any():
            logger.info("Removed orphaned results for run %s: %s", run_id, deleted.to_dict())
        return deleted

    async def load_results(self, run_id: str) -> PartialResults:
        rows = self._rows(run_id)
        return PartialResults(list(rows.trades), list(rows.signals), list(rows.fills), list(rows.snapshots))

    async def persist_success(self, run_id: str, metrics: Dict[str, float]) -> None:
        async with self._lock:
            run = self._require(run_id)
            run.final_metrics = dict(metrics)
            run.status = RunStatus.COMPLETED
            run.checkpoint = None
            run.last_checkpoint_at = None

    async def mark_failed(self, run_id: str, message: str) -> None:
        await self.update_status(run_id, RunStatus.FAILED, message)

    async def mark_cancelled(self, run_id: str, message: Optional[str] = None) -> None:
        await self.update_status(run_id, RunStatus.CANCELLED, message)

    async def mark_paused(self, run_id: str, checkpoint: CheckpointState) -> None:
        async with self._lock:
            run = self._require(run_id)
            run.status = RunStatus.PAUSED
            run.checkpoint = checkpoint
            run.last_checkpoint_at = dt.datetime.now(dt.timezone.utc)
