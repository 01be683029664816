"""
Configuration models for the backtester.

A run's configuration snapshot is a ``RunConfig`` made of smaller models,
one per component.  Process-wide settings (database URI, Redis address,
Prometheus port and tick intervals) are read from the environment by
``Settings.from_env``.

Environment variables:

* ``BACKTEST_DB_URI``: SQLAlchemy URL of the result store.  When unset the
  in-memory store is used.
* ``REDIS_HOST`` / ``REDIS_PORT``: Redis instance for pause flags and the
  Redis event bus.
* ``PROMETHEUS_PORT``: port of the metrics exporter (disabled when unset).
* ``BACKTEST_CHECKPOINT_INTERVAL``: ticks between checkpoints (default 500).
* ``BACKTEST_HEARTBEAT_INTERVAL``: ticks between heartbeats (default 50).
* ``BACKTEST_DATA_ROOT``: directory that bulk CSV blobs are resolved under.
* ``LOG_LEVEL``: root log level for the CLI (default ``INFO``).
"""

from __future__ import annotations

import datetime as dt
import os
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class SlippageModelType(str, Enum):
    NONE = "none"
    FIXED = "fixed"
    VOLUME_BASED = "volume"
    HISTORICAL = "historical"


class TimeframeType(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class SlippageConfig(BaseModel):
    model: SlippageModelType = SlippageModelType.FIXED
    fixed_bps: Optional[float] = Field(None, ge=0)
    base_bps: float = Field(5.0, ge=0)
    volume_impact_factor: float = Field(100.0, ge=0)
    max_slippage_bps: float = Field(500.0, ge=0)


class ThrottleConfig(BaseModel):
    """Signal throttle rules.  A value of 0 disables the rule."""

    cooldown_ms: int = Field(86_400_000, ge=0)
    max_trades_per_day: int = Field(6, ge=0)
    min_sell_percent: float = Field(0.5, ge=0, le=1)


class PositionSizingConfig(BaseModel):
    min_allocation: float = Field(0.05, gt=0, le=1)
    max_allocation: float = Field(0.2, gt=0, le=1)
    min_sell_fraction: float = Field(0.25, gt=0, le=1)

    @model_validator(mode="after")
    def _ordered(self) -> "PositionSizingConfig":
        if self.min_allocation > self.max_allocation:
            raise ValueError("min_allocation must not exceed max_allocation")
        return self


class MetricsConfig(BaseModel):
    timeframe: TimeframeType = TimeframeType.DAILY
    risk_free_rate: float = 0.02
    use_crypto_calendar: bool = True
    annualize: bool = True
    max_profit_factor: float = Field(10.0, gt=0)


class CheckpointConfig(BaseModel):
    checkpoint_interval: int = Field(500, gt=0)
    heartbeat_interval: int = Field(50, gt=0)
    snapshot_interval: int = Field(24, gt=0)
    max_checkpoint_age_hours: float = Field(24 * 7, gt=0)


class RunConfig(BaseModel):
    """Configuration snapshot of one backtest run."""

    strategy_id: str
    start_date: dt.datetime
    end_date: dt.datetime
    initial_capital: float = Field(10_000.0, gt=0)
    fee_rate: float = Field(0.001, ge=0, lt=1)
    seed: Optional[str] = None
    strategy_params: Dict[str, Any] = Field(default_factory=dict)
    instruments: List[str] = Field(default_factory=list)
    max_lookback: Optional[int] = Field(None, gt=0)
    slippage: SlippageConfig = Field(default_factory=SlippageConfig)
    throttle: ThrottleConfig = Field(default_factory=ThrottleConfig)
    sizing: PositionSizingConfig = Field(default_factory=PositionSizingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    checkpoint: CheckpointConfig = Field(default_factory=CheckpointConfig)

    @field_validator("start_date", "end_date")
    @classmethod
    def _utc(cls, value: dt.datetime) -> dt.datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=dt.timezone.utc)
        return value.astimezone(dt.timezone.utc)

    @field_validator("instruments")
    @classmethod
    def _upper(cls, value: List[str]) -> List[str]:
        return [v.strip().upper() for v in value if v and v.strip()]

    @model_validator(mode="after")
    def _range(self) -> "RunConfig":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self

    @property
    def duration_days(self) -> float:
        return (self.end_date - self.start_date).total_seconds() / 86400.0


class Settings(BaseModel):
    db_uri: Optional[str] = None
    redis_host: Optional[str] = None
    redis_port: int = 6379
    prometheus_port: Optional[int] = None
    checkpoint_interval: int = 500
    heartbeat_interval: int = 50
    data_root: str = "."
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        prom = os.environ.get("PROMETHEUS_PORT")
        return cls(
            db_uri=os.environ.get("BACKTEST_DB_URI") or None,
            redis_host=os.environ.get("REDIS_HOST") or None,
            redis_port=int(os.environ.get("REDIS_PORT", "6379")),
            prometheus_port=int(prom) if prom else None,
            checkpoint_interval=int(os.environ.get("BACKTEST_CHECKPOINT_INTERVAL", "500")),
            heartbeat_interval=int(os.environ.get("BACKTEST_HEARTBEAT_INTERVAL", "50")),
            data_root=os.environ.get("BACKTEST_DATA_ROOT", "."),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )

    def checkpoint_config(self) -> CheckpointConfig:
        return CheckpointConfig(
            checkpoint_interval=self.checkpoint_interval,
            heartbeat_interval=self.heartbeat_interval,
        )
