"""
Contract between the backtest engine and trading strategies.

A strategy receives a ``StrategyContext`` once per tick and answers with a
``StrategyResult``.  ``execute`` is the only required capability.  A
strategy that needs to read its parameters before the first tick may
define ``prepare(config)``; the engine looks the hook up once when the
run starts.
"""

from __future__ import annotations

import abc
import datetime as dt
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, List, Mapping, Optional, Sequence

from ..models import Candle, TradingSignal


@dataclass(frozen=True)
class StrategyContext:
    instruments: Sequence[str]
    price_history: Mapping[str, Sequence[Candle]]
    timestamp: dt.datetime
    config: Mapping[str, Any]
    positions: Mapping[str, float]
    available_balance: float
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StrategyResult:
    success: bool
    signals: List[TradingSignal] = field(default_factory=list)
    error: Optional[str] = None


class BaseStrategy(abc.ABC):
    """Abstract base class for backtestable strategies."""

    # Optional hook called once with the run's strategy parameters.
    prepare: ClassVar[Optional[Callable[..., None]]] = None

    def __init__(self, name: str) -> None:
        self.name = name

    @abc.abstractmethod
    def execute(self, context: StrategyContext) -> StrategyResult:
        """Evaluate one tick and return the signals to act on."""
        raise NotImplementedError
