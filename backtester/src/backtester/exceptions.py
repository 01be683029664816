"""
Exception hierarchy for backtest runs.

Every error that changes the outcome of a run derives from
``BacktestError`` so that the job processor can tell simulation failures
apart from programming errors.  Whether an error is fatal or recovered is
decided by the caller; see ``engine`` and ``processor``.
"""

from __future__ import annotations

from typing import Any, Optional


class BacktestError(RuntimeError):
    """Base class for errors raised while running a backtest."""


class StrategyNotRegistered(BacktestError):
    """The requested strategy id has no registration for this run."""

    def __init__(self, strategy_id: str) -> None:
        super().__init__(f"Strategy '{strategy_id}' is not registered")
        self.strategy_id = strategy_id


class InstrumentUniverseUnresolved(BacktestError):
    """No tradable instruments could be resolved for the dataset."""


class DataLoadFailed(BacktestError):
    """The merged candle set for the run is empty or unreadable."""


class TickExecutionError(BacktestError):
    """A strategy raised while evaluating a single tick."""

    def __init__(self, index: int, message: str) -> None:
        super().__init__(f"Strategy failed at tick {index}: {message}")
        self.index = index


class PersistenceFailure(BacktestError):
    """Flushing results or writing a checkpoint failed."""


class CheckpointIntegrityError(BacktestError):
    """A stored checkpoint does not match its checksum."""


class InvalidStatusTransition(BacktestError):
    """A run was asked to move between two states that are not connected."""


class ExternalCancellation(BacktestError):
    """The run was stopped from outside the simulation loop.

    ``status`` is the state the run should end in: ``FAILED`` when a
    watchdog forced the failure, ``CANCELLED`` when a user asked for it.
    ``partial`` holds the results produced since the last flush.
    """

    def __init__(self, reason: str, status: Any, partial: Optional[Any] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status = status
        self.partial = partial
