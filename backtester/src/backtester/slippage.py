"""
Slippage model.

Converts a nominal price and an intended order size into the price the
simulated order actually fills at.  Slippage is expressed in basis points
and always works against the trader: buys fill above the nominal price,
sells below it.

Modes:

* ``none``: no slippage.
* ``fixed``: a constant ``fixed_bps`` (default 5).
* ``historical``: a constant ``fixed_bps`` (default 10) calibrated from
  past fills.
* ``volume``: ``base_bps + (order_value / daily_volume) * impact_factor``.
  When the daily volume is unknown the order is assumed to be 0.1% of it.

Every mode is capped at ``max_slippage_bps``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from .config import SlippageConfig, SlippageModelType
from .models import SignalAction

DEFAULT_FIXED_BPS = 5.0
DEFAULT_HISTORICAL_BPS = 10.0
DEFAULT_VOLUME_RATIO = 0.001


@dataclass(frozen=True)
class SlippageQuote:
    base_price: float
    slippage_bps: float
    execution_price: float


class SlippageModel:
    def __init__(self, config: Optional[SlippageConfig] = None) -> None:
        self.config = config or SlippageConfig()

    def slippage_bps(
        self,
        base_price: float,
        quantity: float,
        side: SignalAction,
        daily_volume: Optional[float] = None,
    ) -> float:
        """Return the slippage in basis points for an order.

        :param base_price: nominal price of the instrument, must be positive
        :param quantity: estimated order size in base units
        :param side: BUY or SELL; does not change the magnitude
        :param daily_volume: traded quote volume used by the volume mode
        """
        if not math.isfinite(base_price) or base_price <= 0:
            raise ValueError(f"Invalid base price for slippage: {base_price}")
        cfg = self.config
        if cfg.model is SlippageModelType.NONE:
            bps = 0.0
        elif cfg.model is SlippageModelType.FIXED:
            bps = cfg.fixed_bps if cfg.fixed_bps is not None else DEFAULT_FIXED_BPS
        elif cfg.model is SlippageModelType.HISTORICAL:
            bps = cfg.fixed_bps if cfg.fixed_bps is not None else DEFAULT_HISTORICAL_BPS
        else:
            order_value = abs(quantity) * base_price
            if daily_volume is not None and daily_volume > 0:
                ratio = order_value / daily_volume
            else:
                ratio = DEFAULT_VOLUME_RATIO
            bps = cfg.base_bps + ratio * cfg.volume_impact_factor
        return min(max(bps, 0.0), cfg.max_slippage_bps)

    @staticmethod
    def execution_price(base_price: float, slippage_bps: float, side: SignalAction) -> float:
        factor = slippage_bps / 10_000.0
        if side is SignalAction.BUY:
            return base_price * (1 + factor)
        return base_price * (1 - factor)

    def quote(
        self,
        base_price: float,
        quantity: float,
        side: SignalAction,
        daily_volume: Optional[float] = None,
    ) -> SlippageQuote:
        bps = self.slippage_bps(base_price, quantity, side, daily_volume)
        return SlippageQuote(base_price, bps, self.execution_price(base_price, bps, side))
