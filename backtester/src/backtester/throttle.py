"""
Signal throttle filter.

Strategies can emit the same signal on many consecutive ticks.  The
throttle keeps a small amount of state per run and suppresses repeats:

* a cooldown per ``(instrument, direction)`` pair,
* a cap on accepted trades in any rolling 24 hour window,
* a floor on the percentage sold by SELL signals without a quantity.

Stop-loss and take-profit exits bypass every rule and do not consume
cooldown or cap budget.  A config value of 0 disables the matching rule.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List

from .config import ThrottleConfig
from .models import SignalAction, TradingSignal

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


@dataclass
class ThrottleState:
    last_signal_time: Dict[str, int] = field(default_factory=dict)
    trade_timestamps: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_signal_time": dict(self.last_signal_time),
            "trade_timestamps": list(self.trade_timestamps),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThrottleState":
        return cls(
            last_signal_time={str(k): int(v) for k, v in (data.get("last_signal_time") or {}).items()},
            trade_timestamps=[int(ts) for ts in data.get("trade_timestamps") or []],
        )


def cooldown_key(signal: TradingSignal) -> str:
    return f"{signal.instrument}:{signal.action.value}"


class SignalThrottle:
    """Stateless filter; all mutable state lives in ``ThrottleState``."""

    def filter(
        self,
        signals: Iterable[TradingSignal],
        state: ThrottleState,
        config: ThrottleConfig,
        now_ms: int,
    ) -> List[TradingSignal]:
        """Return the signals allowed through at ``now_ms``.

        ``state`` is updated only for accepted, non-bypass signals.
        """
        self._prune(state, config, now_ms)
        accepted: List[TradingSignal] = []
        for signal in signals:
            if signal.action is SignalAction.HOLD:
                continue
            if signal.is_risk_control:
                accepted.append(signal)
                continue
            key = cooldown_key(signal)
            if config.cooldown_ms > 0:
                last = state.last_signal_time.get(key)
                if last is not None and now_ms - last < config.cooldown_ms:
                    logger.debug("Throttle: %s suppressed by cooldown", key)
                    continue
            if config.max_trades_per_day > 0 and len(state.trade_timestamps) >= config.max_trades_per_day:
                logger.debug("Throttle: %s suppressed by daily cap", key)
                continue
            signal = self._apply_sell_floor(signal, config)
            if config.cooldown_ms > 0:
                state.last_signal_time[key] = now_ms
            state.trade_timestamps.append(now_ms)
            accepted.append(signal)
        return accepted

    @staticmethod
    def _prune(state: ThrottleState, config: ThrottleConfig, now_ms: int) -> None:
        window_start = now_ms - DAY_MS
        state.trade_timestamps[:] = [ts for ts in state.trade_timestamps if ts > window_start]
        if config.cooldown_ms > 0:
            expiry = now_ms - config.cooldown_ms
            for key in [k for k, ts in state.last_signal_time.items() if ts <= expiry]:
                del state.last_signal_time[key]

    @staticmethod
    def _apply_sell_floor(signal: TradingSignal, config: ThrottleConfig) -> TradingSignal:
        if (
            signal.action is SignalAction.SELL
            and signal.quantity is None
            and config.min_sell_percent > 0
            and (signal.percentage or 0.0) < config.min_sell_percent
        ):
            return dataclasses.replace(signal, percentage=config.min_sell_percent)
        return signal
