"""
Portfolio state and the trade execution ledger.

``Portfolio`` holds cash and open positions.  ``TradeLedger`` is the only
code that mutates it: each accepted signal is resolved into a quantity,
filled at a slipped price, charged a fee and booked.  After every
revaluation the portfolio satisfies::

    cash + sum(position.quantity * last_price) == total_value

and cash never goes negative; a BUY that cannot be paid for is rejected.
"""

from __future__ import annotations

import copy
import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from .config import PositionSizingConfig
from .models import Candle, SignalAction, SimulatedFill, Trade, TradingSignal
from .rng import DeterministicRandom
from .slippage import SlippageModel

logger = logging.getLogger(__name__)

# Positions smaller than this after a sell are treated as closed.
QUANTITY_EPSILON = 1e-12
# Share of portfolio value assumed when estimating slippage for unsized orders.
ESTIMATE_ALLOCATION = 0.1


@dataclass
class Position:
    instrument: str
    quantity: float = 0.0
    average_price: float = 0.0
    last_price: float = 0.0

    @property
    def market_value(self) -> float:
        return self.quantity * self.last_price

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instrument": self.instrument,
            "quantity": self.quantity,
            "average_price": self.average_price,
            "last_price": self.last_price,
        }


class Portfolio:
    def __init__(self, cash: float, positions: Optional[Dict[str, Position]] = None) -> None:
        self.cash = float(cash)
        self.positions: Dict[str, Position] = positions or {}
        self.total_value = self._value()

    def _value(self) -> float:
        # sorted so that a restored portfolio sums in the same order
        return self.cash + sum(self.positions[inst].market_value for inst in sorted(self.positions))

    def revalue(self, prices: Optional[Mapping[str, float]] = None) -> float:
        """Mark positions to ``prices`` (instruments not quoted keep their last price)."""
        for instrument, price in (prices or {}).items():
            position = self.positions.get(instrument)
            if position is not None:
                position.last_price = price
        self.total_value = self._value()
        return self.total_value

    def quantities(self) -> Dict[str, float]:
        return {inst: pos.quantity for inst, pos in self.positions.items()}

    def holdings(self) -> Dict[str, Dict[str, float]]:
        return {
            inst: {"quantity": pos.quantity, "value": pos.market_value, "price": pos.last_price}
            for inst, pos in self.positions.items()
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cash": self.cash,
            "total_value": self.total_value,
            "positions": {inst: pos.to_dict() for inst, pos in sorted(self.positions.items())},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Portfolio":
        data = copy.deepcopy(dict(data))
        positions = {
            inst: Position(
                instrument=inst,
                quantity=float(raw["quantity"]),
                average_price=float(raw["average_price"]),
                last_price=float(raw.get("last_price", raw["average_price"])),
            )
            for inst, raw in data.get("positions", {}).items()
        }
        return cls(float(data["cash"]), positions)


def _clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


@dataclass(frozen=True)
class Execution:
    trade: Trade
    fill: SimulatedFill


class TradeLedger:
    """Resolve signals into fills and book them against a portfolio."""

    def __init__(
        self,
        fee_rate: float,
        slippage: Optional[SlippageModel] = None,
        sizing: Optional[PositionSizingConfig] = None,
    ) -> None:
        self.fee_rate = fee_rate
        self.slippage = slippage or SlippageModel()
        self.sizing = sizing or PositionSizingConfig()

    def buy_allocation(self, signal: TradingSignal, rng: DeterministicRandom) -> float:
        lo, hi = self.sizing.min_allocation, self.sizing.max_allocation
        if signal.confidence is not None:
            return lo + _clamp(signal.confidence, 0.0, 1.0) * (hi - lo)
        return _clamp(rng.random(), lo, hi)

    def sell_fraction(self, signal: TradingSignal, rng: DeterministicRandom) -> float:
        floor = self.sizing.min_sell_fraction
        if signal.percentage is not None:
            return _clamp(signal.percentage, 0.0, 1.0)
        if signal.confidence is not None:
            return floor + _clamp(signal.confidence, 0.0, 1.0) * (1 - floor)
        return _clamp(rng.random(), floor, 1.0)

    def execute(
        self,
        portfolio: Portfolio,
        signal: TradingSignal,
        candle: Candle,
        rng: DeterministicRandom,
        timestamp: dt.datetime,
    ) -> Optional[Execution]:
        """Execute ``signal`` at ``candle``'s close and return the booked trade.

        Returns ``None`` when the signal produces no trade: HOLD, nothing to
        sell, a non-positive quantity or not enough cash.

        Quantity is resolved in priority order: explicit quantity, then
        percentage, then confidence-scaled allocation, then a random
        fraction drawn from ``rng``.
        """
        if signal.action is SignalAction.HOLD:
            return None
        base_price = candle.close
        if base_price <= 0:
            logger.debug("No usable price for %s at %s", signal.instrument, timestamp)
            return None

        side = signal.action
        estimated = signal.quantity
        if estimated is None:
            estimated = portfolio.total_value * ESTIMATE_ALLOCATION / base_price
        quote = self.slippage.quote(base_price, estimated, side, candle.volume * candle.close)
        price = quote.execution_price

        if side is SignalAction.BUY:
            booked = self._buy(portfolio, signal, price, rng)
        else:
            booked = self._sell(portfolio, signal, price, rng)
        if booked is None:
            return None
        quantity, trade_value, fee, cost_basis, pnl, pnl_pct = booked

        portfolio.revalue({signal.instrument: base_price})
        trade = Trade(
            timestamp=timestamp,
            instrument=signal.instrument,
            action=side,
            quantity=quantity,
            price=price,
            total_value=trade_value,
            fee=fee,
            cost_basis=cost_basis,
            realized_pnl=pnl,
            realized_pnl_percent=pnl_pct,
            metadata={
                "reason": signal.reason,
                "confidence": signal.confidence,
                "base_price": base_price,
                "slippage_bps": quote.slippage_bps,
            },
        )
        fill = SimulatedFill(
            timestamp=timestamp,
            instrument=signal.instrument,
            side=side,
            quantity=quantity,
            price=price,
            fee=fee,
            slippage_bps=quote.slippage_bps,
        )
        return Execution(trade, fill)

    def _buy(self, portfolio: Portfolio, signal: TradingSignal, price: float, rng: DeterministicRandom):
        if signal.quantity is not None:
            quantity = signal.quantity
        elif signal.percentage is not None:
            quantity = portfolio.total_value * signal.percentage / price
        else:
            quantity = portfolio.total_value * self.buy_allocation(signal, rng) / price
        if quantity <= 0:
            return None
        trade_value = quantity * price
        fee = trade_value * self.fee_rate
        if portfolio.cash < trade_value + fee:
            logger.debug(
                "Insufficient cash for BUY %s: need %.8f, have %.8f",
                signal.instrument,
                trade_value + fee,
                portfolio.cash,
            )
            return None
        portfolio.cash -= trade_value + fee
        position = portfolio.positions.get(signal.instrument)
        if position is None:
            position = portfolio.positions[signal.instrument] = Position(signal.instrument)
        new_quantity = position.quantity + quantity
        position.average_price = (position.average_price * position.quantity + price * quantity) / new_quantity
        position.quantity = new_quantity
        return quantity, trade_value, fee, position.average_price, None, None

    def _sell(self, portfolio: Portfolio, signal: TradingSignal, price: float, rng: DeterministicRandom):
        position = portfolio.positions.get(signal.instrument)
        if position is None or position.quantity <= 0:
            return None
        held = position.quantity
        if signal.quantity is not None:
            quantity = signal.quantity
        else:
            quantity = held * self.sell_fraction(signal, rng)
        quantity = min(quantity, held)
        if quantity <= 0:
            return None
        cost_basis = position.average_price
        trade_value = quantity * price
        fee = trade_value * self.fee_rate
        pnl = (price - cost_basis) * quantity - fee
        pnl_pct = (price - cost_basis) / cost_basis if cost_basis > 0 else 0.0
        portfolio.cash += trade_value - fee
        position.quantity = held - quantity
        if position.quantity <= QUANTITY_EPSILON:
            del portfolio.positions[signal.instrument]
        return quantity, trade_value, fee, cost_basis, pnl, pnl_pct
