"""
A simple momentum strategy.

For each instrument the strategy compares the last two visible closes.
If the price rose by more than a threshold it emits a BUY; if it fell by
more than the threshold while a position is held it emits a SELL.

Parameters (from the run's ``strategy_params``):

* ``price_delta_pct``: percentage change threshold to trigger trades
  (default 0.2, meaning 0.2%).
* ``percentage``: fraction of portfolio value to buy, or of the position
  to sell.  When omitted the ledger sizes the order itself.
* ``scale_confidence``: when true, confidence grows with the size of the
  move (five thresholds = full confidence).

This strategy is intentionally naive and serves as a reference for the
strategy contract and for tests.
"""

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional

from ..models import SignalAction, SignalOrigin, TradingSignal
from .base import BaseStrategy, StrategyContext, StrategyResult

logger = logging.getLogger(__name__)


class MomentumStrategy(BaseStrategy):
    def __init__(self, name: str = "momentum") -> None:
        super().__init__(name)
        self.threshold = 0.002
        self.percentage: Optional[float] = None
        self.scale_confidence = False

    def prepare(self, config: Mapping[str, Any]) -> None:
        self.threshold = float(config.get("price_delta_pct", 0.2)) / 100.0
        pct = config.get("percentage")
        self.percentage = float(pct) if pct is not None else None
        self.scale_confidence = bool(config.get("scale_confidence", False))
        logger.info(
            "Momentum strategy prepared with threshold %.3f%% and percentage %s",
            self.threshold * 100,
            self.percentage,
        )

    def _confidence(self, change: float) -> Optional[float]:
        if not self.scale_confidence or self.threshold <= 0:
            return None
        return min(1.0, abs(change) / (self.threshold * 5))

    def execute(self, context: StrategyContext) -> StrategyResult:
        signals: List[TradingSignal] = []
        for instrument in context.instruments:
            history = context.price_history.get(instrument) or []
            if len(history) < 2:
                continue
            prev, last = history[-2].close, history[-1].close
            if prev <= 0:
                continue
            change = (last - prev) / prev
            held = context.positions.get(instrument, 0.0)
            if change > self.threshold:
                signals.append(
                    TradingSignal(
                        action=SignalAction.BUY,
                        instrument=instrument,
                        percentage=self.percentage,
                        confidence=self._confidence(change),
                        reason=f"momentum up {change * 100:.3f}%",
                        origin=SignalOrigin.ENTRY,
                    )
                )
            elif change < -self.threshold and held > 0:
                signals.append(
                    TradingSignal(
                        action=SignalAction.SELL,
                        instrument=instrument,
                        percentage=self.percentage,
                        confidence=self._confidence(change),
                        reason=f"momentum down {change * 100:.3f}%",
                        origin=SignalOrigin.EXIT,
                    )
                )
        return StrategyResult(success=True, signals=signals)
