"""
Domain models for backtest runs.

Records produced on the simulation hot path (candles, signals, trades,
fills, snapshots) are plain dataclasses.  Job payloads and datasets that
cross the process boundary are validated with Pydantic.  All records
serialise to JSON-compatible dictionaries so that the persistence layer
can store them without knowing their shape.
"""

from __future__ import annotations

import copy
import datetime as dt
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from .config import RunConfig


class RunStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})


class SignalAction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class SignalOrigin(str, Enum):
    """Why a strategy emitted a signal."""

    ENTRY = "ENTRY"
    EXIT = "EXIT"
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"


# Risk-control exits are never throttled.
RISK_CONTROL_ORIGINS = frozenset({SignalOrigin.STOP_LOSS, SignalOrigin.TAKE_PROFIT})


def to_utc(value: dt.datetime) -> dt.datetime:
    """Return ``value`` as an aware UTC datetime (naive values are assumed UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def to_epoch_ms(value: dt.datetime) -> int:
    return int(round(to_utc(value).timestamp() * 1000))


@dataclass(frozen=True)
class Candle:
    timestamp: dt.datetime
    instrument: str
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass(frozen=True)
class TradingSignal:
    """A strategy's request to trade one instrument.

    ``quantity`` takes precedence over ``percentage``.  For a BUY the
    percentage is a fraction of total portfolio value, for a SELL it is a
    fraction of the held quantity.
    """

    action: SignalAction
    instrument: str
    quantity: Optional[float] = None
    percentage: Optional[float] = None
    confidence: Optional[float] = None
    reason: str = ""
    origin: Optional[SignalOrigin] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_risk_control(self) -> bool:
        return self.origin in RISK_CONTROL_ORIGINS


class _Record:
    """Mixin giving dataclass records a JSON-friendly ``to_dict``."""

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            value = getattr(self, f.name)
            if isinstance(value, dt.datetime):
                value = to_utc(value).isoformat()
            elif isinstance(value, Enum):
                value = value.value
            elif isinstance(value, dict):
                value = copy.deepcopy(value)
            out[f.name] = value
        return out


@dataclass(frozen=True)
class Trade(_Record):
    timestamp: dt.datetime
    instrument: str
    action: SignalAction
    quantity: float
    price: float
    total_value: float
    fee: float
    cost_basis: float
    realized_pnl: Optional[float] = None
    realized_pnl_percent: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SimulatedFill(_Record):
    timestamp: dt.datetime
    instrument: str
    side: SignalAction
    quantity: float
    price: float
    fee: float
    slippage_bps: float
    order_type: str = "MARKET"
    status: str = "FILLED"


@dataclass(frozen=True)
class SignalRecord(_Record):
    timestamp: dt.datetime
    instrument: str
    signal_type: str
    direction: str
    quantity: Optional[float]
    price: Optional[float]
    reason: str
    confidence: Optional[float]


@dataclass(frozen=True)
class PerformanceSnapshot(_Record):
    timestamp: dt.datetime
    portfolio_value: float
    cash_balance: float
    holdings: Dict[str, Dict[str, float]]
    cumulative_return: float
    drawdown: float


@dataclass(frozen=True)
class PersistedCounts:
    """Number of result rows already written for a run, per entity."""

    trades: int = 0
    signals: int = 0
    fills: int = 0
    snapshots: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"trades": self.trades, "signals": self.signals, "fills": self.fills, "snapshots": self.snapshots}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PersistedCounts":
        data = data or {}
        return cls(
            trades=int(data.get("trades", 0)),
            signals=int(data.get("signals", 0)),
            fills=int(data.get("fills", 0)),
            snapshots=int(data.get("snapshots", 0)),
        )

    def __add__(self, other: "PersistedCounts") -> "PersistedCounts":
        return PersistedCounts(
            self.trades + other.trades,
            self.signals + other.signals,
            self.fills + other.fills,
            self.snapshots + other.snapshots,
        )

    def any(self) -> bool:
        return bool(self.trades or self.signals or self.fills or self.snapshots)


@dataclass
class PartialResults:
    """Result rows accumulated between two flushes."""

    trades: List[Trade] = field(default_factory=list)
    signals: List[SignalRecord] = field(default_factory=list)
    fills: List[SimulatedFill] = field(default_factory=list)
    snapshots: List[PerformanceSnapshot] = field(default_factory=list)

    def counts(self) -> PersistedCounts:
        return PersistedCounts(len(self.trades), len(self.signals), len(self.fills), len(self.snapshots))

    def is_empty(self) -> bool:
        return not self.counts().any()

    def drain(self) -> "PartialResults":
        """Return the buffered rows and leave this buffer empty."""
        drained = PartialResults(self.trades, self.signals, self.fills, self.snapshots)
        self.trades, self.signals, self.fills, self.snapshots = [], [], [], []
        return drained


@dataclass(frozen=True)
class CheckpointState:
    """Everything needed to resume a run at ``last_processed_index + 1``.

    Instances are immutable; restoring one always builds fresh portfolio,
    RNG and throttle objects from deep copies of the stored dictionaries.
    """

    last_processed_index: int
    last_processed_at: str
    rng_state: int
    portfolio: Dict[str, Any]
    throttle: Dict[str, Any]
    peak_value: float
    persisted_counts: PersistedCounts
    checksum: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_processed_index": self.last_processed_index,
            "last_processed_at": self.last_processed_at,
            "rng_state": self.rng_state,
            "portfolio": copy.deepcopy(self.portfolio),
            "throttle": copy.deepcopy(self.throttle),
            "peak_value": self.peak_value,
            "persisted_counts": self.persisted_counts.to_dict(),
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CheckpointState":
        return cls(
            last_processed_index=int(data["last_processed_index"]),
            last_processed_at=str(data.get("last_processed_at", "")),
            rng_state=int(data["rng_state"]),
            portfolio=copy.deepcopy(data["portfolio"]),
            throttle=copy.deepcopy(data["throttle"]),
            peak_value=float(data["peak_value"]),
            persisted_counts=PersistedCounts.from_dict(data.get("persisted_counts")),
            checksum=str(data["checksum"]),
        )


class BacktestJob(BaseModel):
    """Payload of a queued backtest job."""

    run_id: str = Field(..., min_length=1)
    user_id: str
    dataset_id: str
    strategy_id: str
    deterministic_seed: Optional[str] = None
    mode: Literal["historical", "live_replay"] = "historical"


class MarketDataset(BaseModel):
    """Describes where the candles for a run come from."""

    id: str
    instrument_universe: List[str] = Field(default_factory=list)
    start_at: dt.datetime
    end_at: dt.datetime
    storage_location: Optional[str] = None
    timeframe: str = "1h"

    @field_validator("start_at", "end_at")
    @classmethod
    def _aware(cls, value: dt.datetime) -> dt.datetime:
        return to_utc(value)


@dataclass
class BacktestRun:
    """A backtest as seen by the persistence collaborator."""

    id: str
    config: RunConfig
    user_id: str = ""
    dataset_id: str = ""
    status: RunStatus = RunStatus.PENDING
    error_message: Optional[str] = None
    checkpoint: Optional[CheckpointState] = None
    last_checkpoint_at: Optional[dt.datetime] = None
    processed_count: int = 0
    total_count: int = 0
    auto_resume_count: int = 0
    final_metrics: Optional[Dict[str, Any]] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def seed(self) -> str:
        return self.config.seed or self.id
