"""Tests for configuration models and environment settings."""

from __future__ import annotations

import datetime as dt

import pytest  # type: ignore
from pydantic import ValidationError

from backtester.config import PositionSizingConfig, RunConfig, Settings, ThrottleConfig
from backtester.models import BacktestJob, BacktestRun, MarketDataset


def test_run_config_normalises_dates_and_instruments() -> None:
    config = RunConfig(
        strategy_id="momentum",
        start_date=dt.datetime(2024, 1, 1),
        end_date=dt.datetime(2024, 1, 11),
        instruments=["btc", " eth ", ""],
    )
    assert config.start_date.tzinfo is not None
    assert config.instruments == ["BTC", "ETH"]
    assert config.duration_days == pytest.approx(10.0)
    assert config.throttle == ThrottleConfig()
    assert config.throttle.cooldown_ms == 86_400_000
    assert config.metrics.risk_free_rate == 0.02


@pytest.mark.parametrize(
    "overrides",
    [
        {"end_date": dt.datetime(2023, 12, 31)},
        {"initial_capital": 0},
        {"fee_rate": -0.01},
    ],
)
def test_run_config_rejects_invalid_values(overrides) -> None:
    values = {
        "strategy_id": "momentum",
        "start_date": dt.datetime(2024, 1, 1),
        "end_date": dt.datetime(2024, 1, 2),
    }
    values.update(overrides)
    with pytest.raises(ValidationError):
        RunConfig(**values)


def test_sizing_bounds_are_ordered() -> None:
    with pytest.raises(ValidationError):
        PositionSizingConfig(min_allocation=0.5, max_allocation=0.1)


def test_run_seed_defaults_to_run_id() -> None:
    config = RunConfig(strategy_id="m", start_date=dt.datetime(2024, 1, 1), end_date=dt.datetime(2024, 1, 2))
    assert BacktestRun(id="abc", config=config).seed == "abc"
    seeded = config.model_copy(update={"seed": "fixed"})
    assert BacktestRun(id="abc", config=seeded).seed == "fixed"


def test_job_and_dataset_validation() -> None:
    with pytest.raises(ValidationError):
        BacktestJob(run_id="", user_id="u", dataset_id="d", strategy_id="s")
    with pytest.raises(ValidationError):
        BacktestJob(run_id="r", user_id="u", dataset_id="d", strategy_id="s", mode="paper")
    dataset = MarketDataset(id="d", start_at=dt.datetime(2024, 1, 1), end_at=dt.datetime(2024, 1, 2))
    assert dataset.start_at.tzinfo is not None


def test_settings_from_env(monkeypatch) -> None:
    monkeypatch.setenv("BACKTEST_DB_URI", "sqlite+aiosqlite:///bt.db")
    monkeypatch.setenv("REDIS_HOST", "redis")
    monkeypatch.setenv("PROMETHEUS_PORT", "9105")
    monkeypatch.setenv("BACKTEST_CHECKPOINT_INTERVAL", "100")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    settings = Settings.from_env()
    assert settings.db_uri == "sqlite+aiosqlite:///bt.db"
    assert settings.redis_host == "redis"
    assert settings.prometheus_port == 9105
    assert settings.log_level == "DEBUG"
    assert settings.checkpoint_config().checkpoint_interval == 100
    assert settings.checkpoint_config().heartbeat_interval == 50


def test_settings_defaults(monkeypatch) -> None:
    for name in ("BACKTEST_DB_URI", "REDIS_HOST", "PROMETHEUS_PORT", "BACKTEST_CHECKPOINT_INTERVAL"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings.from_env()
    assert settings.db_uri is None
    assert settings.prometheus_port is None
    assert settings.checkpoint_interval == 500
