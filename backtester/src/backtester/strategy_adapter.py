"""
Strategy execution adapter.

The adapter owns the registry of strategy factories handed to the engine
and is the only place strategies are called from.  ``bind`` resolves a
strategy once per run; an unknown id is fatal.  ``evaluate`` runs one
tick; a strategy that raises or reports failure yields no signals for
that tick and the run continues.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional, Tuple

from .exceptions import StrategyNotRegistered, TickExecutionError
from .models import TradingSignal
from .strategies import StrategyFactory
from .strategies.base import StrategyContext, StrategyResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BoundStrategy:
    strategy_id: str
    execute: Callable[[StrategyContext], StrategyResult]
    prepare: Optional[Callable[[Mapping[str, Any]], None]] = None


class StrategyExecutionAdapter:
    def __init__(self, registry: Mapping[str, StrategyFactory]) -> None:
        self._registry = dict(registry)

    def bind(self, strategy_id: str, config: Optional[Mapping[str, Any]] = None) -> BoundStrategy:
        """Build the run's strategy instance and call its ``prepare`` hook if it has one.

        :raises StrategyNotRegistered: if ``strategy_id`` is unknown
        """
        factory = self._registry.get(strategy_id)
        if factory is None:
            raise StrategyNotRegistered(strategy_id)
        strategy = factory()
        bound = BoundStrategy(strategy_id, strategy.execute, strategy.prepare)
        if bound.prepare is not None:
            bound.prepare(dict(config or {}))
        return bound

    def evaluate(
        self, bound: BoundStrategy, context: StrategyContext, index: int
    ) -> Tuple[List[TradingSignal], Optional[TickExecutionError]]:
        """Run one tick and return its signals plus the recovered error, if any."""
        try:
            result = bound.execute(context)
        except StrategyNotRegistered:
            raise
        except Exception as exc:
            error = TickExecutionError(index, str(exc))
            error.__cause__ = exc
            logger.warning("Strategy %s failed at tick %d (%s): %s", bound.strategy_id, index, context.timestamp, exc)
            return [], error
        if not result.success:
            logger.warning(
                "Strategy %s reported failure at tick %d: %s", bound.strategy_id, index, result.error or "unknown"
            )
            return [], None
        return list(result.signals), None
