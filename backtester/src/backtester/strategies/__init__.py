"""
Strategy modules for the backtester.

Each strategy subclasses ``BaseStrategy`` and implements ``execute``,
which turns a per-tick ``StrategyContext`` into trading signals.
Strategies are registered with the engine through an explicit mapping of
strategy id to factory; ``default_registry`` returns the bundled ones.
Every run builds its own strategy instance from the factory.
"""

from typing import Callable, Dict

from .base import BaseStrategy, StrategyContext, StrategyResult  # noqa: F401
from .momentum import MomentumStrategy  # noqa: F401


StrategyFactory = Callable[[], BaseStrategy]


def default_registry() -> Dict[str, StrategyFactory]:
    return {"momentum": MomentumStrategy}
