"""
Checkpointing and the run state machine.

A checkpoint is written every ``checkpoint_interval`` ticks.  The order of
operations is fixed:

1. flush buffered trades, signals, fills and snapshots to the store;
2. compute a checksum over the serialised RNG, portfolio, throttle state
   and tick index;
3. write the checkpoint;
4. clear the in-memory buffers.

If the process dies between steps 1 and 3 the store holds more rows than
the last checkpoint recorded.  ``BacktestResultStore.cleanup_orphaned_results``
removes that excess before a resume, so results are never duplicated.
"""

from __future__ import annotations

import datetime as dt
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

from .exceptions import CheckpointIntegrityError, InvalidStatusTransition, PersistenceFailure
from .models import CheckpointState, PartialResults, PersistedCounts, RunStatus, to_utc
from .portfolio import Portfolio
from .rng import DeterministicRandom
from .throttle import ThrottleState

if TYPE_CHECKING:
    from .services.result_store import ResultStore

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[RunStatus, frozenset] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED}),
    # RUNNING -> PENDING is used by crash recovery to re-enqueue orphaned runs
    RunStatus.RUNNING: frozenset(
        {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED, RunStatus.PAUSED, RunStatus.PENDING}
    ),
    RunStatus.PAUSED: frozenset({RunStatus.PENDING, RunStatus.FAILED, RunStatus.CANCELLED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}


def can_transition(current: RunStatus, target: RunStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: RunStatus, target: RunStatus) -> None:
    if not can_transition(current, target):
        raise InvalidStatusTransition(f"Cannot move run from {current.value} to {target.value}")


def compute_checksum(
    index: int,
    rng_state: int,
    portfolio: Dict[str, Any],
    throttle: Dict[str, Any],
    peak_value: float,
) -> str:
    payload = {
        "index": index,
        "rng_state": rng_state,
        "portfolio": portfolio,
        "throttle": throttle,
        "peak_value": peak_value,
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


@dataclass
class RestoredState:
    start_index: int
    portfolio: Portfolio
    rng: DeterministicRandom
    throttle: ThrottleState
    peak_value: float
    persisted_counts: PersistedCounts


class CheckpointManager:
    """Build, write, validate and restore checkpoints for one run.

    Without a store the manager only builds checkpoint values; buffers are
    then kept in memory for the caller.
    """

    def __init__(
        self,
        run_id: str,
        store: Optional["ResultStore"] = None,
        persisted: Optional[PersistedCounts] = None,
    ) -> None:
        self.run_id = run_id
        self.store = store
        self.persisted = persisted or PersistedCounts()
        self.last_checkpoint: Optional[CheckpointState] = None

    def build(
        self,
        index: int,
        timestamp: dt.datetime,
        rng: DeterministicRandom,
        portfolio: Portfolio,
        throttle: ThrottleState,
        peak_value: float,
    ) -> CheckpointState:
        portfolio_data = portfolio.to_dict()
        throttle_data = throttle.to_dict()
        return CheckpointState(
            last_processed_index=index,
            last_processed_at=to_utc(timestamp).isoformat(),
            rng_state=rng.state,
            portfolio=portfolio_data,
            throttle=throttle_data,
            peak_value=peak_value,
            persisted_counts=self.persisted,
            checksum=compute_checksum(index, rng.state, portfolio_data, throttle_data, peak_value),
        )

    @staticmethod
    def validate(state: CheckpointState) -> None:
        expected = compute_checksum(
            state.last_processed_index, state.rng_state, state.portfolio, state.throttle, state.peak_value
        )
        if expected != state.checksum:
            raise CheckpointIntegrityError(
                f"Checkpoint at index {state.last_processed_index} failed checksum validation"
            )

    @classmethod
    def restore(cls, state: CheckpointState) -> RestoredState:
        """Validate ``state`` and rebuild fresh mutable objects from it."""
        cls.validate(state)
        return RestoredState(
            start_index=state.last_processed_index + 1,
            portfolio=Portfolio.from_dict(state.portfolio),
            rng=DeterministicRandom.from_state(state.rng_state),
            throttle=ThrottleState.from_dict(state.throttle),
            peak_value=state.peak_value,
            persisted_counts=state.persisted_counts,
        )

    @staticmethod
    def is_stale(saved_at: Optional[dt.datetime], max_age_hours: float, now: Optional[dt.datetime] = None) -> bool:
        if saved_at is None:
            return True
        now = now or dt.datetime.now(dt.timezone.utc)
        return (to_utc(now) - to_utc(saved_at)).total_seconds() > max_age_hours * 3600

    async def flush(self, buffers: PartialResults, clear: bool = True) -> PersistedCounts:
        """Write buffered rows to the store; the buffers are cleared unless ``clear`` is False."""
        if self.store is None or buffers.is_empty():
            return self.persisted
        try:
            await self.store.persist_incremental(self.run_id, buffers)
        except PersistenceFailure:
            raise
        except Exception as exc:
            raise PersistenceFailure(f"Failed to persist results for run {self.run_id}: {exc}") from exc
        self.persisted = self.persisted + buffers.counts()
        if clear:
            buffers.drain()
        return self.persisted

    async def checkpoint(
        self,
        index: int,
        timestamp: dt.datetime,
        rng: DeterministicRandom,
        portfolio: Portfolio,
        throttle: ThrottleState,
        peak_value: float,
        buffers: PartialResults,
        total: int,
    ) -> CheckpointState:
        await self.flush(buffers, clear=False)
        state = self.build(index, timestamp, rng, portfolio, throttle, peak_value)
        if self.store is not None:
            try:
                await self.store.save_checkpoint(self.run_id, state, index + 1, total)
            except PersistenceFailure:
                raise
            except Exception as exc:
                raise PersistenceFailure(f"Failed to save checkpoint for run {self.run_id}: {exc}") from exc
            buffers.drain()
        self.last_checkpoint = state
        logger.debug("Run %s checkpoint at index %d (%d/%d)", self.run_id, index, index + 1, total)
        return state
