"""
Performance metrics for completed backtests.

Ratios are computed from the series of sampled portfolio values (the
initial capital followed by every performance snapshot).  Trade metrics
only look at SELL trades, the only ones that realise P&L.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Sequence

import numpy as np

from .config import MetricsConfig, TimeframeType
from .models import PerformanceSnapshot, SignalAction, Trade

# Standard deviations below this are treated as zero.
STD_EPSILON = 1e-12


def periods_per_year(timeframe: TimeframeType, use_crypto_calendar: bool = True) -> int:
    if timeframe is TimeframeType.HOURLY:
        return 8760 if use_crypto_calendar else 6552
    if timeframe is TimeframeType.DAILY:
        return 365 if use_crypto_calendar else 252
    if timeframe is TimeframeType.WEEKLY:
        return 52
    return 12


@dataclass(frozen=True)
class PerformanceMetrics:
    final_value: float
    total_return: float
    annualized_return: float
    roi: float
    sharpe_ratio: float
    sortino_ratio: float
    max_drawdown: float
    volatility: float
    downside_deviation: float
    win_rate: float
    profit_factor: float
    total_trades: int
    winning_trades: int
    total_realized_pnl: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class MetricsCalculator:
    def __init__(self, config: Optional[MetricsConfig] = None) -> None:
        self.config = config or MetricsConfig()

    @property
    def periods(self) -> int:
        return periods_per_year(self.config.timeframe, self.config.use_crypto_calendar)

    def _scale(self) -> float:
        return math.sqrt(self.periods) if self.config.annualize else 1.0

    def _period_risk_free(self) -> float:
        return self.config.risk_free_rate / self.periods

    @staticmethod
    def returns(values: Sequence[float]) -> np.ndarray:
        """Period-over-period returns; a zero previous value yields a zero return."""
        arr = np.asarray(values, dtype=float)
        if arr.size < 2:
            return np.array([], dtype=float)
        prev, curr = arr[:-1], arr[1:]
        out = np.zeros_like(curr)
        nonzero = prev != 0
        out[nonzero] = (curr[nonzero] - prev[nonzero]) / prev[nonzero]
        return out

    def sharpe_ratio(self, returns: Sequence[float]) -> float:
        """``(mean - risk_free) / std`` with population standard deviation; 0 if std is (near) 0."""
        arr = np.asarray(returns, dtype=float)
        if arr.size == 0:
            return 0.0
        excess = arr - self._period_risk_free()
        std = float(excess.std())
        if std < STD_EPSILON:
            return 0.0
        return float(excess.mean() / std * self._scale())

    def _period_downside(self, arr: np.ndarray) -> float:
        target = self._period_risk_free()
        downside = arr[arr < target]
        if downside.size == 0:
            return 0.0
        # variance over the full sample, not just the downside subset
        return math.sqrt(float(np.sum((downside - target) ** 2) / arr.size))

    def downside_deviation(self, returns: Sequence[float]) -> float:
        arr = np.asarray(returns, dtype=float)
        if arr.size == 0:
            return 0.0
        return self._period_downside(arr) * self._scale()

    def sortino_ratio(self, returns: Sequence[float]) -> float:
        arr = np.asarray(returns, dtype=float)
        if arr.size == 0:
            return 0.0
        deviation = self._period_downside(arr)
        if deviation == 0:
            return 0.0
        mean_excess = float((arr - self._period_risk_free()).mean())
        return mean_excess / deviation * self._scale()

    def volatility(self, returns: Sequence[float]) -> float:
        arr = np.asarray(returns, dtype=float)
        if arr.size == 0:
            return 0.0
        return float(arr.std()) * self._scale()

    @staticmethod
    def max_drawdown(values: Sequence[float]) -> float:
        """Largest decline from a running peak, as a fraction of that peak."""
        arr = np.asarray(values, dtype=float)
        if arr.size == 0:
            return 0.0
        peak = np.maximum.accumulate(arr)
        with np.errstate(divide="ignore", invalid="ignore"):
            drawdown = np.where(peak > 0, (peak - arr) / peak, 0.0)
        return float(drawdown.max())

    @staticmethod
    def _sells(trades: Sequence[Trade]) -> list:
        return [t for t in trades if t.action is SignalAction.SELL]

    def win_rate(self, trades: Sequence[Trade]) -> float:
        sells = self._sells(trades)
        if not sells:
            return 0.0
        return sum(1 for t in sells if (t.realized_pnl or 0.0) > 0) / len(sells)

    def profit_factor(self, trades: Sequence[Trade]) -> float:
        sells = self._sells(trades)
        gross_profit = sum(t.realized_pnl for t in sells if (t.realized_pnl or 0.0) > 0)
        gross_loss = abs(sum(t.realized_pnl for t in sells if (t.realized_pnl or 0.0) < 0))
        if gross_loss == 0:
            return self.config.max_profit_factor if gross_profit > 0 else 1.0
        return gross_profit / gross_loss

    @staticmethod
    def roi(trades: Sequence[Trade]) -> float:
        """Realized P&L as a percentage of the notional spent on BUY trades."""
        invested = sum(t.total_value for t in trades if t.action is SignalAction.BUY)
        if invested <= 0:
            return 0.0
        realized = sum(t.realized_pnl or 0.0 for t in trades if t.action is SignalAction.SELL)
        return realized / invested * 100.0

    @staticmethod
    def annualized_return(total_return: float, duration_days: float) -> float:
        if duration_days <= 0:
            return total_return
        if 1 + total_return <= 0:
            return -1.0
        return (1 + total_return) ** (365.0 / duration_days) - 1

    def calculate(
        self,
        initial_capital: float,
        snapshots: Sequence[PerformanceSnapshot],
        trades: Sequence[Trade],
        duration_days: float,
        final_value: Optional[float] = None,
    ) -> PerformanceMetrics:
        values = [initial_capital] + [s.portfolio_value for s in snapshots]
        if final_value is None:
            final_value = values[-1]
        returns = self.returns(values)
        total_return = (final_value - initial_capital) / initial_capital
        sells = self._sells(trades)
        return PerformanceMetrics(
            final_value=final_value,
            total_return=total_return,
            annualized_return=self.annualized_return(total_return, duration_days),
            roi=self.roi(trades),
            sharpe_ratio=self.sharpe_ratio(returns),
            sortino_ratio=self.sortino_ratio(returns),
            max_drawdown=self.max_drawdown(values),
            volatility=self.volatility(returns),
            downside_deviation=self.downside_deviation(returns),
            win_rate=self.win_rate(trades),
            profit_factor=self.profit_factor(trades),
            total_trades=len(trades),
            winning_trades=sum(1 for t in sells if (t.realized_pnl or 0.0) > 0),
            total_realized_pnl=sum(t.realized_pnl or 0.0 for t in sells),
        )
